import json

import pytest

from errors import EnrichmentError, FeedFetchError
from models import Delivered, Failed, FeedItem, FeedSource, RateLimited
from notifier import FeedNotifier, NO_SUMMARY_PLACEHOLDER
from state import SeenStore
from utils import compute_identity


def item(letter):
    return FeedItem(title=f"Article {letter}", link=f"https://example.com/{letter.lower()}")


class FakeFetcher:
    """Returns canned feeds; an Exception value is raised instead of returned."""

    def __init__(self, feeds, articles=None):
        self.feeds = feeds
        self.articles = articles or {}
        self.fetched = []

    async def fetch_feed(self, url, session):
        self.fetched.append(url)
        result = self.feeds[url]
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def fetch_article_text(self, url, session):
        result = self.articles.get(url, EnrichmentError(f"no article for {url}"))
        if isinstance(result, Exception):
            raise result
        return result


class FakeDelivery:
    """Plays back scripted outcomes (Delivered once the script runs out)."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.sent = []

    async def send(self, text):
        self.sent.append(text)
        if self.outcomes:
            return self.outcomes.pop(0)
        return Delivered()


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeSummarizer:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def summarize(self, title, content):
        self.calls.append((title, content))
        return self.result


def sent_titles(delivery):
    return [text.splitlines()[0].replace("📰 ", "") for text in delivery.sent]


def make_notifier(tmp_path, feeds, fetcher, delivery, **kwargs):
    kwargs.setdefault("max_posts_per_run", 100)
    kwargs.setdefault("pacing_seconds", 2)
    kwargs.setdefault("rate_limit_retries", 3)
    kwargs.setdefault("identity_fields", ("link",))
    kwargs.setdefault("sleep", SleepRecorder())
    store = kwargs.pop("store", SeenStore(str(tmp_path / "state.json")))
    return FeedNotifier(feeds, store, delivery, fetcher, **kwargs)


FEED_A = FeedSource("a", "https://feeds.example.com/a.xml")
FEED_B = FeedSource("b", "https://feeds.example.com/b.xml")
FEED_C = FeedSource("c", "https://feeds.example.com/c.xml")


@pytest.mark.asyncio
async def test_items_delivered_oldest_first(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("C"), item("B"), item("A")]})
    delivery = FakeDelivery()

    report = await make_notifier(tmp_path, [FEED_A], fetcher, delivery).run()

    assert sent_titles(delivery) == ["Article A", "Article B", "Article C"]
    assert report.posts_sent == 3


@pytest.mark.asyncio
async def test_second_run_delivers_nothing(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("B"), item("A")]})

    first = FakeDelivery()
    report1 = await make_notifier(tmp_path, [FEED_A], fetcher, first).run()
    second = FakeDelivery()
    report2 = await make_notifier(tmp_path, [FEED_A], fetcher, second).run()

    assert report1.posts_sent == 2
    assert report2.posts_sent == 0
    assert second.sent == []
    assert report2.items_skipped_seen == 2


@pytest.mark.asyncio
async def test_cap_limits_deliveries_and_leaves_rest_eligible(tmp_path):
    fetcher = FakeFetcher({
        FEED_A.url: [item("B"), item("A")],
        FEED_B.url: [item("E"), item("D"), item("C")],
    })
    delivery = FakeDelivery()

    report = await make_notifier(tmp_path, [FEED_A, FEED_B], fetcher, delivery, max_posts_per_run=2).run()

    assert report.posts_sent == 2
    assert report.cap_reached is True
    assert sent_titles(delivery) == ["Article A", "Article B"]
    # Stopped before touching the second feed
    assert fetcher.fetched == [FEED_A.url]

    seen = SeenStore(str(tmp_path / "state.json")).load()
    assert len(seen) == 2

    next_delivery = FakeDelivery()
    report2 = await make_notifier(tmp_path, [FEED_A, FEED_B], fetcher, next_delivery).run()
    assert sent_titles(next_delivery) == ["Article C", "Article D", "Article E"]
    assert report2.posts_sent == 3


@pytest.mark.asyncio
async def test_failed_feed_does_not_stop_other_feeds(tmp_path):
    fetcher = FakeFetcher({
        FEED_A.url: [item("A")],
        FEED_B.url: FeedFetchError("HTTP 500"),
        FEED_C.url: [item("C")],
    })
    delivery = FakeDelivery()

    report = await make_notifier(tmp_path, [FEED_A, FEED_B, FEED_C], fetcher, delivery).run()

    assert sent_titles(delivery) == ["Article A", "Article C"]
    assert report.feeds_failed == 1
    assert report.feeds_processed == 2


@pytest.mark.asyncio
async def test_rate_limit_waits_then_retries_same_message(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("A")]})
    delivery = FakeDelivery([RateLimited(retry_after=5)])
    sleeper = SleepRecorder()

    report = await make_notifier(tmp_path, [FEED_A], fetcher, delivery, sleep=sleeper).run()

    assert len(delivery.sent) == 2
    assert delivery.sent[0] == delivery.sent[1]
    assert sleeper.calls[0] >= 5
    assert report.posts_sent == 1
    seen = SeenStore(str(tmp_path / "state.json")).load()
    assert compute_identity(item("A")) in seen


@pytest.mark.asyncio
async def test_rate_limit_retries_are_bounded(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("B"), item("A")]})
    delivery = FakeDelivery([RateLimited(retry_after=1)] * 3)

    report = await make_notifier(tmp_path, [FEED_A], fetcher, delivery, rate_limit_retries=2).run()

    # A: first attempt + 2 retries, then skipped; B delivered on its first attempt
    assert sent_titles(delivery) == ["Article A"] * 3 + ["Article B"]
    assert report.posts_sent == 1
    assert report.items_failed == 1
    seen = SeenStore(str(tmp_path / "state.json")).load()
    assert compute_identity(item("A")) not in seen
    assert compute_identity(item("B")) in seen


@pytest.mark.asyncio
async def test_failed_delivery_is_not_marked_seen(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("B"), item("A")]})
    delivery = FakeDelivery([Failed(reason="Bad Request: chat not found", status=400)])

    report = await make_notifier(tmp_path, [FEED_A], fetcher, delivery).run()

    assert report.items_failed == 1
    assert report.posts_sent == 1
    retry_delivery = FakeDelivery()
    await make_notifier(tmp_path, [FEED_A], fetcher, retry_delivery).run()
    assert sent_titles(retry_delivery) == ["Article A"]


@pytest.mark.asyncio
async def test_pacing_applied_after_every_attempt(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("C"), item("B"), item("A")]})
    delivery = FakeDelivery([Delivered(), Failed(reason="boom")])
    sleeper = SleepRecorder()

    await make_notifier(tmp_path, [FEED_A], fetcher, delivery, sleep=sleeper, pacing_seconds=2).run()

    assert sleeper.calls == [2, 2, 2]


@pytest.mark.asyncio
async def test_no_pacing_after_cap_reached(tmp_path):
    fetcher = FakeFetcher({FEED_A.url: [item("B"), item("A")]})
    sleeper = SleepRecorder()

    await make_notifier(tmp_path, [FEED_A], fetcher, FakeDelivery(), sleep=sleeper, max_posts_per_run=1).run()

    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_state_persisted_when_run_raises(tmp_path):
    class ExplodingDelivery(FakeDelivery):
        async def send(self, text):
            if self.sent:
                raise RuntimeError("unexpected")
            return await super().send(text)

    fetcher = FakeFetcher({FEED_A.url: [item("B"), item("A")]})

    with pytest.raises(RuntimeError):
        await make_notifier(tmp_path, [FEED_A], fetcher, ExplodingDelivery()).run()

    data = json.loads((tmp_path / "state.json").read_text())
    assert data == {compute_identity(item("A")): True}


@pytest.mark.asyncio
async def test_delivered_item_resent_when_state_never_persisted(tmp_path):
    """Deliveries are durable only once the run finalizes; an unsaved run leads to a resend."""

    class UnwritableStore(SeenStore):
        def save(self, seen):
            return False

    fetcher = FakeFetcher({FEED_A.url: [item("A")]})
    first = FakeDelivery()
    store = UnwritableStore(str(tmp_path / "state.json"))
    await make_notifier(tmp_path, [FEED_A], fetcher, first, store=store).run()

    second = FakeDelivery()
    await make_notifier(tmp_path, [FEED_A], fetcher, second).run()

    assert sent_titles(first) == ["Article A"]
    assert sent_titles(second) == ["Article A"]


@pytest.mark.asyncio
async def test_summary_appended_when_enrichment_succeeds(tmp_path):
    a = item("A")
    fetcher = FakeFetcher({FEED_A.url: [a]}, articles={a.link: "Full article text"})
    summarizer = FakeSummarizer("<b>Summary:</b> short")
    delivery = FakeDelivery()

    await make_notifier(tmp_path, [FEED_A], fetcher, delivery, summarizer=summarizer).run()

    assert summarizer.calls == [("Article A", "Full article text")]
    assert delivery.sent == ["📰 Article A\nhttps://example.com/a\n\n\n💡 <b>Summary:</b> short"]


@pytest.mark.asyncio
async def test_enrichment_failure_uses_placeholder(tmp_path):
    a, b = item("A"), item("B")
    fetcher = FakeFetcher({FEED_A.url: [b, a]}, articles={b.link: "text"})
    delivery = FakeDelivery()

    report = await make_notifier(
        tmp_path, [FEED_A], fetcher, delivery, summarizer=FakeSummarizer(None)
    ).run()

    # A: article fetch fails; B: summarizer gives up
    assert report.posts_sent == 2
    assert all(text.endswith(NO_SUMMARY_PLACEHOLDER) for text in delivery.sent)


@pytest.mark.asyncio
async def test_message_escapes_html_and_uses_description_without_summarizer(tmp_path):
    entry = FeedItem(
        title="Rust <3 & Go",
        link="https://example.com/?a=1&b=2",
        description="<p>Some <strong>bold</strong> text</p>",
    )
    fetcher = FakeFetcher({FEED_A.url: [entry]})
    delivery = FakeDelivery()

    await make_notifier(tmp_path, [FEED_A], fetcher, delivery).run()

    assert delivery.sent == ["📰 Rust &lt;3 &amp; Go\nhttps://example.com/?a=1&amp;b=2\nSome <b>bold</b> text"]


@pytest.mark.asyncio
async def test_duplicate_link_within_one_feed_sent_once(tmp_path):
    dup = FeedItem(title="Same link, other title", link="https://example.com/a")
    fetcher = FakeFetcher({FEED_A.url: [dup, item("A")]})
    delivery = FakeDelivery()

    report = await make_notifier(tmp_path, [FEED_A], fetcher, delivery).run()

    assert report.posts_sent == 1
    assert report.items_skipped_seen == 1
