#!/usr/bin/env python3
"""
Value types shared by the fetcher, the delivery client and the run controller.

Everything here is plain data: feed descriptors, parsed feed items, the
classified outcome of one delivery attempt, and the report of a run.
"""

from dataclasses import dataclass
from typing import Optional, Union

# FeedItem fields that may take part in an article identity
IDENTITY_FIELD_CHOICES = ("title", "link")


@dataclass(frozen=True)
class FeedSource:
    """A configured feed, in declaration order."""
    name: str
    url: str


@dataclass(frozen=True)
class FeedItem:
    """A single parsed feed entry. Read-only once produced by the fetcher."""
    title: str
    link: str
    description: Optional[str] = None


@dataclass(frozen=True)
class Delivered:
    """The target accepted the message."""


@dataclass(frozen=True)
class RateLimited:
    """The target asked us to wait at least `retry_after` seconds before retrying."""
    retry_after: float


@dataclass(frozen=True)
class Failed:
    """Any other failure; the item is not retried within this run."""
    reason: str
    status: Optional[int] = None


DeliveryOutcome = Union[Delivered, RateLimited, Failed]


@dataclass
class RunReport:
    """Counters collected over one run."""
    posts_sent: int = 0
    feeds_processed: int = 0
    feeds_failed: int = 0
    items_failed: int = 0
    items_skipped_seen: int = 0
    cap_reached: bool = False
    elapsed: float = 0.0
