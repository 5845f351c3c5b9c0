#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, List, Optional


class ConfigurationError(Exception):
    """Raised before any work starts when required settings are missing.

    Attributes:
        missing: Names of the settings that were absent.
    """

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])


class FeedFetchError(Exception):
    """Raised when an RSS/Atom feed cannot be fetched or parsed."""


class EnrichmentError(Exception):
    """Raised when article content cannot be fetched or extracted."""


class ContentFilterError(Exception):
    """Raised when the AI provider's content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by AI provider", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


__all__ = ["ConfigurationError", "FeedFetchError", "EnrichmentError", "ContentFilterError"]
