#!/usr/bin/env python3
"""
Run controller for one notification pass.

For every configured feed (in declaration order) the controller walks the
items oldest-first, skips identities already in the seen-set, optionally
enriches the message with an AI summary, and delivers it. Successful
deliveries are recorded in the in-memory seen-set; the set is written back
when the run ends, including when it ends early or with an exception.

Everything runs on a single path: one network call or one sleep at a time.
Delivery pacing and the rate-limit backoff both go through the injected
``sleep`` callable.
"""

from asyncio import sleep as asyncio_sleep
from html import escape
from time import time
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from config import config, get_logger
from errors import EnrichmentError, FeedFetchError
from models import Delivered, FeedItem, FeedSource, RateLimited, RunReport
from state import SeenSet, SeenStore
from telemetry import trace_span
from utils import clean_html_to_markdown, compute_identity, format_duration, markdown_to_telegram_html, truncate_string

logger = get_logger("notifier")

NO_SUMMARY_PLACEHOLDER = "NO AI DESCRIPTION"
DESCRIPTION_LIMIT = 600


class FeedNotifier:
    """Delivers unseen feed items to a notification target, oldest first."""

    def __init__(
        self,
        feeds: Sequence[FeedSource],
        store: SeenStore,
        delivery,
        fetcher,
        *,
        session=None,
        summarizer=None,
        max_posts_per_run: Optional[int] = None,
        pacing_seconds: Optional[float] = None,
        rate_limit_retries: Optional[int] = None,
        identity_fields: Optional[Iterable[str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio_sleep,
    ) -> None:
        self.feeds = list(feeds)
        self.store = store
        self.delivery = delivery
        self.fetcher = fetcher
        self.session = session
        self.summarizer = summarizer
        self.max_posts_per_run = max_posts_per_run if max_posts_per_run is not None else config.MAX_POSTS_PER_RUN
        self.pacing_seconds = pacing_seconds if pacing_seconds is not None else config.SEND_PACING_SECONDS
        self.rate_limit_retries = (
            rate_limit_retries if rate_limit_retries is not None else config.RATE_LIMIT_MAX_RETRIES
        )
        self.identity_fields = tuple(identity_fields or config.IDENTITY_FIELDS)
        self._sleep = sleep

    def _cap_reached(self, report: RunReport) -> bool:
        if report.posts_sent >= self.max_posts_per_run:
            report.cap_reached = True
        return report.cap_reached

    @trace_span("notifier.run", tracer_name="notifier")
    async def run(self) -> RunReport:
        """Process all feeds once and return the run's counters.

        The seen-set is persisted on every exit path, so identities delivered
        before an unexpected exception are not sent again next run.
        """
        report = RunReport()
        start_time = time()
        logger.info(f"🚀 Starting run: {len(self.feeds)} feeds, limit {self.max_posts_per_run} posts")

        with self.store.session() as seen:
            for feed in self.feeds:
                if self._cap_reached(report):
                    logger.info(f"✅ Reached limit of {self.max_posts_per_run} posts, stopping")
                    break
                await self._process_feed(feed, seen, report)

        report.elapsed = time() - start_time
        logger.info(
            f"🎉 Run finished in {format_duration(report.elapsed)}: {report.posts_sent} sent, "
            f"{report.items_failed} failed, {report.items_skipped_seen} already seen, "
            f"{report.feeds_failed}/{len(self.feeds)} feeds failed"
        )
        return report

    async def _process_feed(self, feed: FeedSource, seen: SeenSet, report: RunReport) -> None:
        logger.info(f"📡 Fetching {feed.name}: {feed.url}")
        try:
            items = await self.fetcher.fetch_feed(feed.url, self.session)
        except FeedFetchError as e:
            report.feeds_failed += 1
            logger.warning(f"⚠️ Feed {feed.name} failed, skipping: {e}")
            return
        report.feeds_processed += 1
        logger.info(f"   Found {len(items)} items in {feed.name}")

        # Feeds list newest first; deliver in publication order
        for item in reversed(items):
            if self._cap_reached(report):
                break

            identity = compute_identity(item, self.identity_fields)
            if identity in seen:
                report.items_skipped_seen += 1
                continue

            payload = await self.build_payload(item)
            message = self.format_message(item, payload)
            if await self.deliver(item, message):
                seen.add(identity)
                report.posts_sent += 1
                logger.info(f"   ✉️ Sent: {item.title}")
            else:
                report.items_failed += 1

            if self._cap_reached(report):
                logger.info(f"✅ Reached limit of {self.max_posts_per_run} posts, stopping")
                break
            await self._sleep(self.pacing_seconds)

    async def build_payload(self, item: FeedItem) -> str:
        """Enrichment text appended below the title and link. Never raises for enrichment failures."""
        if self.summarizer is None:
            if not item.description:
                return ""
            text = truncate_string(clean_html_to_markdown(item.description, base_url=item.link), DESCRIPTION_LIMIT)
            return markdown_to_telegram_html(text)

        try:
            content = await self.fetcher.fetch_article_text(item.link, self.session)
        except EnrichmentError as e:
            logger.warning(f"   ⚠️ Article content unavailable: {e}")
            return NO_SUMMARY_PLACEHOLDER

        summary = await self.summarizer.summarize(item.title, content)
        if not summary:
            logger.warning(f"   ⚠️ AI summary failed for '{item.title}'")
            return NO_SUMMARY_PLACEHOLDER
        return f"\n\n💡 {summary}"

    def format_message(self, item: FeedItem, payload: str) -> str:
        title = escape(item.title, quote=False)
        link = escape(item.link, quote=False)
        return f"📰 {title}\n{link}\n{payload}"

    async def deliver(self, item: FeedItem, message: str) -> bool:
        """Send one message, honouring rate-limit waits up to the retry bound."""
        retries = 0
        while True:
            outcome = await self.delivery.send(message)
            if isinstance(outcome, Delivered):
                return True
            if isinstance(outcome, RateLimited):
                if retries >= self.rate_limit_retries:
                    logger.error(
                        f"   ⚠️ Still rate limited after {retries} retries, skipping '{item.title}' until next run"
                    )
                    return False
                retries += 1
                logger.warning(
                    f"   ⏳ Rate limited, retrying in {outcome.retry_after:g}s "
                    f"(retry {retries}/{self.rate_limit_retries})"
                )
                await self._sleep(outcome.retry_after)
                continue
            logger.error(f"   ⚠️ Send failed, skipping '{item.title}': {outcome.reason}")
            return False
