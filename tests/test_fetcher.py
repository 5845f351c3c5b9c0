import pytest
from aiohttp import ClientConnectionError

from errors import EnrichmentError, FeedFetchError
from fetcher import FeedFetcher, extract_article_text

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <link>https://example.com/</link>
    <description>Example feed</description>
    <item>
      <title>Newest   post</title>
      <link>https://example.com/3</link>
      <description>Third &lt;b&gt;summary&lt;/b&gt;</description>
    </item>
    <item>
      <title>No link here</title>
    </item>
    <item>
      <title></title>
      <link>https://example.com/2</link>
    </item>
    <item>
      <title>Oldest post</title>
      <link>https://example.com/1</link>
    </item>
  </channel>
</rss>
"""

ARTICLE_HTML = """
<html>
  <head><title>Post</title><style>body { color: red; }</style></head>
  <body>
    <nav>Home | About | Contact</nav>
    <header>Site header</header>
    <div class="post-content">
      <p>First paragraph of the article.</p>
      <p>Second   paragraph
         spans lines.</p>
    </div>
    <script>var tracking = true;</script>
    <footer>Copyright</footer>
  </body>
</html>
"""


class FakeResponse:
    def __init__(self, status, content=b"", content_type="application/rss+xml"):
        self.status = status
        self._content = content
        self.headers = {"Content-Type": content_type}

    async def read(self):
        return self._content

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


@pytest.mark.asyncio
async def test_fetch_feed_keeps_feed_order_and_drops_linkless_entries():
    fetcher = FeedFetcher(timeout=15)
    session = FakeSession(FakeResponse(200, RSS))

    items = await fetcher.fetch_feed("https://example.com/feed.xml", session)

    assert [i.link for i in items] == ["https://example.com/3", "https://example.com/2", "https://example.com/1"]
    assert items[0].title == "Newest post"
    assert items[1].title == "No Title"
    assert "summary" in items[0].description
    assert items[2].description is None
    assert session.requests[0][1]["timeout"].total == 15


@pytest.mark.asyncio
async def test_fetch_feed_http_error_raises():
    fetcher = FeedFetcher(timeout=15)

    with pytest.raises(FeedFetchError, match="HTTP 503"):
        await fetcher.fetch_feed("https://example.com/feed.xml", FakeSession(FakeResponse(503)))


@pytest.mark.asyncio
async def test_fetch_feed_network_error_raises():
    fetcher = FeedFetcher(timeout=15)
    session = FakeSession(error=ClientConnectionError("refused"))

    with pytest.raises(FeedFetchError, match="refused"):
        await fetcher.fetch_feed("https://example.com/feed.xml", session)


@pytest.mark.asyncio
async def test_fetch_feed_garbage_raises():
    fetcher = FeedFetcher(timeout=15)
    session = FakeSession(FakeResponse(200, b"<html><body>not a feed</body"))

    with pytest.raises(FeedFetchError):
        await fetcher.fetch_feed("https://example.com/feed.xml", session)


def test_extract_article_text_prefers_content_and_strips_noise():
    text = extract_article_text(ARTICLE_HTML, limit=3000)

    assert "First paragraph of the article." in text
    assert "Second paragraph spans lines." in text
    assert "tracking" not in text
    assert "color: red" not in text


def test_extract_article_text_caps_length():
    html = "<html><body><article><p>" + ("word " * 2000) + "</p></article></body></html>"

    text = extract_article_text(html, limit=300)

    assert len(text) == 303
    assert text.endswith("...")


@pytest.mark.asyncio
async def test_fetch_article_text_rejects_non_html():
    fetcher = FeedFetcher(timeout=15)
    session = FakeSession(FakeResponse(200, b"%PDF-1.7", content_type="application/pdf"))

    with pytest.raises(EnrichmentError, match="Unsupported content type"):
        await fetcher.fetch_article_text("https://example.com/paper.pdf", session)


@pytest.mark.asyncio
async def test_fetch_article_text_http_error():
    fetcher = FeedFetcher(timeout=15)

    with pytest.raises(EnrichmentError, match="HTTP 404"):
        await fetcher.fetch_article_text("https://example.com/gone", FakeSession(FakeResponse(404)))


@pytest.mark.asyncio
async def test_fetch_article_text_success():
    fetcher = FeedFetcher(timeout=15)
    session = FakeSession(FakeResponse(200, ARTICLE_HTML.encode(), content_type="text/html; charset=utf-8"))

    text = await fetcher.fetch_article_text("https://example.com/post", session)

    assert "First paragraph of the article." in text
