#!/usr/bin/env python3
"""
RSS feed fetcher and article content extractor.

This module fetches RSS/Atom feeds into FeedItem lists and, for enrichment,
downloads an article page and reduces it to a length-capped plain-text body
using readability with a few common article selectors as fallback.
"""

from asyncio import TimeoutError, get_running_loop
from functools import partial
from typing import Any, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup
from readability import Document

from config import config, get_logger
from errors import EnrichmentError, FeedFetchError
from models import FeedItem
from telemetry import trace_span
from utils import truncate_string

logger = get_logger("fetcher")

NOISE_SELECTORS = "script, style, nav, footer, header, aside, noscript, form, .advertisement, .ad"
ARTICLE_SELECTORS = (
    "article",
    "[role='main']",
    ".post-content",
    ".article-content",
    ".entry-content",
    ".content",
    "main",
)
# Readability output shorter than this is treated as a miss
MIN_READABLE_CHARS = 200


def _collapse_whitespace(text: str) -> str:
    lines = (line.strip() for line in text.splitlines())
    return " ".join(" ".join(line.split()) for line in lines if line)


def extract_article_text(html_content: str, limit: int) -> str:
    """Reduce an HTML page to plain article text of at most ``limit`` characters (plus "...")."""
    text = ""
    try:
        readable_html = Document(html_content).summary(html_partial=True)
        text = _collapse_whitespace(BeautifulSoup(readable_html, "html.parser").get_text("\n"))
    except (ValueError, RuntimeError) as e:
        logger.debug(f"Readability could not parse page: {e}")

    if len(text) < MIN_READABLE_CHARS:
        soup = BeautifulSoup(html_content, "html.parser")
        for tag in soup.select(NOISE_SELECTORS):
            tag.decompose()
        fallback = ""
        for selector in ARTICLE_SELECTORS:
            node = soup.select_one(selector)
            if node is not None:
                fallback = _collapse_whitespace(node.get_text("\n"))
                if fallback:
                    break
        if not fallback and soup.body is not None:
            fallback = _collapse_whitespace(soup.body.get_text("\n"))
        if len(fallback) > len(text):
            text = fallback

    if len(text) > limit:
        text = text[:limit] + "..."
    return text


class FeedFetcher:
    """Fetches feeds and article pages over a shared aiohttp session."""

    def __init__(self, timeout: Optional[int] = None, article_text_limit: Optional[int] = None) -> None:
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.article_text_limit = article_text_limit or config.ARTICLE_TEXT_LIMIT
        self.headers = {"User-Agent": config.USER_AGENT}

    async def run_in_executor(self, func, *args) -> Any:
        """Run CPU-bound parsing off the event loop and wait for it."""
        return await get_running_loop().run_in_executor(None, partial(func, *args))

    async def _get(self, url: str, session: ClientSession, accept: str) -> tuple:
        headers = dict(self.headers, Accept=accept)
        async with session.get(url, headers=headers, timeout=ClientTimeout(total=self.timeout),
                               allow_redirects=True) as response:
            if not 200 <= response.status < 300:
                return response.status, None, None
            content_type = response.headers.get("Content-Type", "")
            return response.status, content_type, await response.read()

    @trace_span("fetch_feed", tracer_name="fetcher", attr_from_args=lambda self, url, session: {"feed.url": url})
    async def fetch_feed(self, url: str, session: ClientSession) -> List[FeedItem]:
        """Fetch and parse one feed, returning items in the feed's own order (newest first).

        Raises:
            FeedFetchError: on transport errors, non-2xx responses or unparseable feeds.
        """
        try:
            status, _, content = await self._get(
                url, session, "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"
            )
        except TimeoutError as e:
            raise FeedFetchError(f"Timed out after {self.timeout}s fetching {url}") from e
        except ClientError as e:
            raise FeedFetchError(f"Network error fetching {url}: {type(e).__name__}: {e}") from e
        if content is None:
            raise FeedFetchError(f"HTTP {status} fetching {url}")

        feed = await self.run_in_executor(
            lambda c: feedparser.parse(c, sanitize_html=True, resolve_relative_uris=True), content
        )
        return self.parse_entries(url, feed)

    def parse_entries(self, url: str, feed) -> List[FeedItem]:
        """Turn a feedparser result into FeedItems, dropping entries without a link."""
        entries = feed.get("entries") or []
        if feed.get("bozo"):
            exc = feed.get("bozo_exception")
            if not entries:
                raise FeedFetchError(f"Invalid RSS/Atom feed: {url} ({exc})")
            logger.warning(f"Feed parsing warning for {url}: {exc}")

        items: List[FeedItem] = []
        for entry in entries:
            link = (entry.get("link") or "").strip()
            if not link:
                logger.debug(f"Skipping entry without link in {url}")
                continue
            title = " ".join((entry.get("title") or "").split()) or "No Title"
            description = (entry.get("summary") or entry.get("description") or "").strip() or None
            items.append(FeedItem(title=title, link=link, description=description))
        return items

    @trace_span("fetch_article_text", tracer_name="fetcher",
                attr_from_args=lambda self, url, session: {"article.url": url})
    async def fetch_article_text(self, url: str, session: ClientSession) -> str:
        """Download an article and return its extracted plain text.

        Raises:
            EnrichmentError: when the page cannot be fetched, is not HTML, or yields no text.
        """
        logger.info(f"📄 Fetching article content from {url}")
        try:
            status, content_type, content = await self._get(url, session, "text/html,application/xhtml+xml")
        except TimeoutError as e:
            raise EnrichmentError(f"Timed out after {self.timeout}s fetching {url}") from e
        except ClientError as e:
            raise EnrichmentError(f"Network error fetching {url}: {type(e).__name__}: {e}") from e
        if content is None:
            raise EnrichmentError(f"HTTP {status} fetching {url}")
        if content_type and "html" not in content_type.lower():
            raise EnrichmentError(f"Unsupported content type {content_type!r} at {url}")

        html_content = content.decode("utf-8", errors="replace")
        text = await self.run_in_executor(extract_article_text, html_content, self.article_text_limit)
        if not text:
            raise EnrichmentError(f"No article text found at {url}")
        logger.debug(f"Extracted {len(text)} characters from {truncate_string(url, 80)}")
        return text
