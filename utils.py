#!/usr/bin/env python3
"""
Utility classes and functions for the feed notifier.

This module contains shared helpers used by the fetcher, summarizer and run
controller: article identity hashing, retry backoff, HTML cleanup and the
Markdown to Telegram HTML conversion.
"""

from hashlib import sha256
from html import escape
from typing import Iterable, Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger
from models import IDENTITY_FIELD_CHOICES, FeedItem

logger = get_logger("utils")


def compute_identity(item: FeedItem, fields: Iterable[str] = ("link",)) -> str:
    """Return the SHA-256 hex digest identifying an article.

    The selected fields are concatenated in the given order with no separator,
    so ``("title", "link")`` hashes ``title + link``. The description never
    takes part.

    Raises:
        ValueError: if a field name is not one of ``title`` or ``link``.
    """
    parts = []
    for name in fields:
        if name not in IDENTITY_FIELD_CHOICES:
            raise ValueError(f"Unsupported identity field: {name!r}")
        parts.append(getattr(item, name) or "")
    if not parts:
        raise ValueError("At least one identity field is required")
    return sha256("".join(parts).encode("utf-8")).hexdigest()


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds for a 0-based attempt number."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images removed)
    - Converts resulting HTML to Markdown with markdownify
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')

        for tag in soup([
            "script", "style", "iframe", "form", "object", "embed", "noscript",
            "frame", "frameset", "applet", "meta", "base", "link"
        ]):
            tag.decompose()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if attr.lower().startswith('on'):
                    del tag[attr]
                if attr.lower() in ['href', 'src'] and tag.has_attr(attr):
                    val = str(tag[attr])
                    if val.lower().startswith('javascript:'):
                        del tag[attr]

        def _rewrite_url(value: str, attr: str) -> Optional[str]:
            if not value:
                return None
            if attr == 'href' and value.startswith('mailto:'):
                return value
            if value.startswith(('http://', 'https://')):
                return value
            if base_url:
                resolved = urljoin(base_url, value)
                if resolved.startswith(('http://', 'https://')):
                    return resolved
            return None

        for tag in soup.find_all(['a', 'img']):
            for attr in ['href', 'src']:
                if not tag.has_attr(attr):
                    continue
                val = str(tag[attr])
                if not val:
                    continue
                rewritten = _rewrite_url(val, attr)
                if rewritten:
                    tag[attr] = rewritten
                elif attr == 'href':
                    tag[attr] = '#'
                else:
                    del tag[attr]

        # wrap_width=0 keeps URLs on a single line
        return md(str(soup), heading_style="ATX", wrap_width=0).strip()
    except Exception as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return html_content


_BOLD_RE = re.compile(r"\*\*([^*\n]+)\*\*")
_ITALIC_RE = re.compile(r"(?<![*\w])\*([^*\n]+)\*(?![*\w])")
_HEADING_RE = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_BULLET_RE = re.compile(r"^(\s*)[-*]\s+", re.MULTILINE)


def markdown_to_telegram_html(text: str) -> str:
    """Convert the light Markdown an LLM produces into Telegram-safe HTML.

    Only ``<b>`` and ``<i>`` are emitted. Everything else is escaped, so the
    result is always accepted by Telegram's HTML parse mode.
    """
    if not text:
        return ""
    out = escape(text.strip(), quote=False)
    out = _HEADING_RE.sub(r"<b>\1</b>", out)
    out = _BULLET_RE.sub(r"\1• ", out)
    out = _BOLD_RE.sub(r"<b>\1</b>", out)
    out = _ITALIC_RE.sub(r"<i>\1</i>", out)
    return out
