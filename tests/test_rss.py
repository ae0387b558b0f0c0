import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from feedkeeper.feed import Label
from feedkeeper.rss import (
    FeedItem,
    FetchError,
    HTTPFeedClient,
    ParsedFeed,
    RSSReader,
    RSSSource,
    html_to_markdown,
    new_rss_reader,
    parse_feed,
)

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

RSS_DOC = b"""<?xml version="1.0"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
<channel>
<title>Tech Blog</title>
<item>
<title>New Tech Article</title>
<link>http://techblog.com/1</link>
<description>Content about new technology</description>
<content:encoded><![CDATA[<p>Full <b>body</b></p>]]></content:encoded>
<pubDate>Mon, 01 Jan 2024 11:00:00 +0000</pubDate>
</item>
<item>
<title>Second</title>
<link>http://techblog.com/2</link>
</item>
</channel>
</rss>
"""

ATOM_DOC = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
<title>Atom Blog</title>
<entry>
<title>Atom Entry</title>
<link rel="alternate" href="http://example.com/a"/>
<summary>Summary text</summary>
<published>2024-01-01T10:30:00Z</published>
</entry>
</feed>
"""


class _FakeClient:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = 0

    def get(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


# --- new_rss_reader ---


def test_new_rss_reader_empty_url_and_rsshub():
    with pytest.raises(ValueError, match="URL or RSSHubEndpoint can not be empty at the same time"):
        new_rss_reader(RSSSource())


def test_new_rss_reader_invalid_url_format():
    with pytest.raises(ValueError, match="URL must be a valid HTTP/HTTPS URL"):
        new_rss_reader(RSSSource(url="invalid-url"))


def test_new_rss_reader_url_only():
    reader = new_rss_reader(RSSSource(url="http://example.com/feed"))
    assert isinstance(reader, RSSReader)
    assert reader.config.url == "http://example.com/feed"


def test_new_rss_reader_rsshub_only():
    reader = new_rss_reader(
        RSSSource(rsshub_endpoint="http://rsshub.app/", rsshub_route_path="/_/test")
    )
    assert reader.config.url == "http://rsshub.app/_/test"
    assert reader.config.rsshub_endpoint == "http://rsshub.app/"
    assert reader.config.rsshub_route_path == "/_/test"


def test_new_rss_reader_error_is_wrapped():
    with pytest.raises(ValueError, match="invalid RSS config"):
        new_rss_reader(RSSSource(url="ftp://example.com"))


# --- read ---


def test_read_basic_feed():
    published = NOW - timedelta(hours=1)
    reader = new_rss_reader(RSSSource(url="http://techblog.com/feed"))
    client = _FakeClient(
        ParsedFeed(
            items=[
                FeedItem(
                    title="New Tech Article",
                    description="Content about new technology",
                    link="http://techblog.com/1",
                    published=published,
                )
            ]
        )
    )
    reader.client = client
    feeds = reader.read()
    assert len(feeds) == 1
    labels = feeds[0].labels
    assert Label("type", "rss") in labels
    assert Label("title", "New Tech Article") in labels
    assert Label("link", "http://techblog.com/1") in labels
    assert Label("content", "Content about new technology") in labels
    assert datetime.fromisoformat(labels.get("pub_time")) == published
    assert client.calls == 1


def test_read_client_error_is_wrapped():
    reader = new_rss_reader(RSSSource(url="http://techblog.com/feed"))
    reader.client = _FakeClient(error=RuntimeError("network error"))
    with pytest.raises(FetchError, match="fetching RSS feed: network error"):
        reader.read()


def test_read_empty_feed():
    reader = new_rss_reader(RSSSource(url="http://techblog.com/empty"))
    reader.client = _FakeClient(ParsedFeed(items=[]))
    assert reader.read() == []


def test_read_sets_feed_time_from_clock():
    reader = RSSReader(
        RSSSource(url="http://example.com/feed"),
        client=_FakeClient(ParsedFeed(items=[FeedItem(title="t", published=NOW)])),
        clock=lambda: NOW,
    )
    feeds = reader.read()
    assert feeds[0].time == NOW


# --- parse_time ---


def test_parse_time_missing_uses_clock():
    reader = RSSReader(RSSSource(url="http://example.com"), clock=lambda: NOW)
    result = reader.parse_time(FeedItem(published=None))
    assert result == NOW
    assert result.tzinfo is not None


def test_parse_time_missing_defaults_to_now():
    reader = RSSReader(RSSSource(url="http://example.com"))
    result = reader.parse_time(FeedItem())
    assert abs(result - datetime.now(timezone.utc)) < timedelta(seconds=1)


def test_parse_time_valid():
    fixed = datetime(2024, 1, 1, 10, 30, 0, tzinfo=timezone.utc)
    reader = RSSReader(RSSSource(url="http://example.com"))
    result = reader.parse_time(FeedItem(published=fixed))
    assert result == fixed
    assert result.utcoffset() == datetime.now().astimezone().utcoffset() or result == fixed


# --- combine_content ---


@pytest.mark.parametrize(
    ("content", "description", "expected"),
    [
        ("test content", "", "test content"),
        ("", "test description", "test description"),
        ("test content", "test description", "test description\n\ntest content"),
        ("", "", ""),
    ],
)
def test_combine_content(content, description, expected):
    reader = RSSReader(RSSSource(url="http://example.com"))
    assert reader.combine_content(content, description) == expected


# --- parse_feed ---


def test_parse_feed_rss():
    parsed = parse_feed(RSS_DOC)
    assert parsed.title == "Tech Blog"
    assert len(parsed.items) == 2
    first = parsed.items[0]
    assert first.title == "New Tech Article"
    assert first.link == "http://techblog.com/1"
    assert first.description == "Content about new technology"
    assert first.content == "<p>Full <b>body</b></p>"
    assert first.published == datetime(2024, 1, 1, 11, 0, tzinfo=timezone.utc)
    assert parsed.items[1].published is None


def test_parse_feed_atom():
    parsed = parse_feed(ATOM_DOC)
    assert parsed.title == "Atom Blog"
    entry = parsed.items[0]
    assert entry.link == "http://example.com/a"
    assert entry.description == "Summary text"
    assert entry.published == datetime(2024, 1, 1, 10, 30, tzinfo=timezone.utc)


def test_parse_feed_rejects_invalid_xml():
    with pytest.raises(ValueError, match="invalid feed document"):
        parse_feed(b"<rss><channel>")


def test_parse_feed_rejects_unknown_root():
    with pytest.raises(ValueError, match="unsupported feed format"):
        parse_feed(b"<html></html>")


# --- html_to_markdown ---


def test_html_to_markdown_plain_text_unchanged():
    assert html_to_markdown("Content about new technology") == "Content about new technology"


def test_html_to_markdown_inline_markup():
    assert html_to_markdown("<p>Hello <strong>world</strong></p>") == "Hello **world**"
    assert html_to_markdown('<a href="http://example.com">x</a>') == "[x](http://example.com)"


def test_html_to_markdown_list_and_heading():
    result = html_to_markdown("<h2>Title</h2><ul><li>one</li><li>two</li></ul>")
    assert result == "## Title\n\n- one\n- two"


def test_html_to_markdown_drops_scripts():
    assert html_to_markdown("<p>a</p><script>var x = 1;</script>") == "a"


# --- HTTP client ---


@pytest.fixture
def feed_server():
    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/feed":
                self.send_response(200)
                self.send_header("Content-Type", "application/rss+xml")
                self.end_headers()
                self.wfile.write(RSS_DOC)
            else:
                self.send_response(404)
                self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_http_client_fetches_and_parses(feed_server):
    parsed = HTTPFeedClient(f"{feed_server}/feed", timeout=5).get()
    assert [item.title for item in parsed.items] == ["New Tech Article", "Second"]


def test_http_client_not_found_raises(feed_server):
    with pytest.raises(FetchError):
        HTTPFeedClient(f"{feed_server}/missing", timeout=5).get()


def test_reader_over_http(feed_server):
    reader = new_rss_reader(RSSSource(url=f"{feed_server}/feed"))
    feeds = reader.read()
    assert len(feeds) == 2
    assert feeds[0].labels.get("content") == "Content about new technology\n\nFull **body**"