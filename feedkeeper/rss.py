"""Reading RSS, RDF and Atom feeds into labelled feed items."""

from __future__ import annotations

import re
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from html.parser import HTMLParser
from xml.etree import ElementTree

from defusedxml import ElementTree as SafeElementTree

from feedkeeper.feed import (
    LABEL_CONTENT,
    LABEL_LINK,
    LABEL_PUB_TIME,
    LABEL_TITLE,
    LABEL_TYPE,
    Feed,
    Label,
    Labels,
)


class FetchError(Exception):
    """Raised when a feed cannot be fetched or parsed."""


@dataclass
class RSSSource:
    """Where an RSS feed is read from: a URL, or an RSSHub endpoint and route."""

    url: str = ""
    rsshub_endpoint: str = ""
    rsshub_route_path: str = ""

    def validate(self) -> None:
        """Check the source and fill in the URL from RSSHub settings if needed."""
        if not self.url and not self.rsshub_endpoint:
            raise ValueError("URL or RSSHubEndpoint can not be empty at the same time")
        if not self.url:
            self.url = (
                self.rsshub_endpoint.removesuffix("/")
                + "/"
                + self.rsshub_route_path.removeprefix("/")
            )
        if self.url and not self.url.startswith(("http://", "https://")):
            raise ValueError("URL must be a valid HTTP/HTTPS URL")


@dataclass
class FeedItem:
    """One entry of a parsed feed document."""

    title: str = ""
    link: str = ""
    description: str = ""
    content: str = ""
    published: datetime | None = None


@dataclass
class ParsedFeed:
    """A parsed feed document."""

    title: str = ""
    items: list[FeedItem] = field(default_factory=list)


def _local(tag: object) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def _child(elem: ElementTree.Element, name: str) -> ElementTree.Element | None:
    return next((c for c in elem if _local(c.tag) == name), None)


def _inner(elem: ElementTree.Element | None) -> str:
    if elem is None:
        return ""
    parts = [elem.text or ""]
    parts.extend(ElementTree.tostring(c, encoding="unicode") for c in elem)
    return "".join(parts).strip()


def _parse_date(text: str) -> datetime | None:
    text = text.strip()
    if not text:
        return None
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _rss_item(elem: ElementTree.Element) -> FeedItem:
    date = _child(elem, "pubDate")
    if date is None:
        date = _child(elem, "date")
    return FeedItem(
        title=_inner(_child(elem, "title")),
        link=_inner(_child(elem, "link")),
        description=_inner(_child(elem, "description")),
        content=_inner(_child(elem, "encoded")),
        published=_parse_date(_inner(date)),
    )


def _atom_link(elem: ElementTree.Element) -> str:
    hrefs = [
        (c.get("rel", "alternate"), c.get("href", ""))
        for c in elem
        if _local(c.tag) == "link"
    ]
    for rel, href in hrefs:
        if rel == "alternate" and href:
            return href
    return next((href for _, href in hrefs if href), "")


def _atom_entry(elem: ElementTree.Element) -> FeedItem:
    date = _child(elem, "published")
    if date is None:
        date = _child(elem, "updated")
    return FeedItem(
        title=_inner(_child(elem, "title")),
        link=_atom_link(elem),
        description=_inner(_child(elem, "summary")),
        content=_inner(_child(elem, "content")),
        published=_parse_date(_inner(date)),
    )


def parse_feed(data: bytes | str) -> ParsedFeed:
    """Parse an RSS 2.0, RDF (RSS 1.0) or Atom document."""
    try:
        root = SafeElementTree.fromstring(data)
    except ElementTree.ParseError as exc:
        raise ValueError(f"invalid feed document: {exc}") from exc

    kind = _local(root.tag)
    if kind == "rss":
        channel = _child(root, "channel")
        if channel is None:
            raise ValueError("rss document has no channel")
        items = [_rss_item(c) for c in channel if _local(c.tag) == "item"]
        return ParsedFeed(title=_inner(_child(channel, "title")), items=items)
    if kind == "RDF":
        channel = _child(root, "channel")
        title = _inner(_child(channel, "title")) if channel is not None else ""
        items = [_rss_item(c) for c in root if _local(c.tag) == "item"]
        return ParsedFeed(title=title, items=items)
    if kind == "feed":
        items = [_atom_entry(c) for c in root if _local(c.tag) == "entry"]
        return ParsedFeed(title=_inner(_child(root, "title")), items=items)
    raise ValueError(f"unsupported feed format: {kind}")


_BLOCK_TAGS = frozenset(
    {"p", "div", "section", "article", "header", "footer", "table", "tr", "figure"}
)
_HEADINGS = {f"h{n}": n for n in range(1, 7)}


class _MarkdownConverter(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._out: list[str] = []
        self._links: list[str] = []
        self._lists: list[list] = []
        self._pre = 0
        self._skip = 0

    def _last(self) -> str:
        return next((part[-1] for part in reversed(self._out) if part), "")

    def _write(self, text: str) -> None:
        self._out.append(text)

    def _block(self) -> None:
        if self._out:
            self._write("\n\n")

    def _newline(self) -> None:
        if self._last() not in ("", "\n"):
            self._write("\n")

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attributes = {k: v or "" for k, v in attrs}
        if tag in ("script", "style"):
            self._skip += 1
        elif tag in _BLOCK_TAGS:
            self._block()
        elif tag in _HEADINGS:
            self._block()
            self._write("#" * _HEADINGS[tag] + " ")
        elif tag == "br":
            self._write("\n")
        elif tag == "hr":
            self._block()
            self._write("---")
            self._block()
        elif tag in ("strong", "b"):
            self._write("**")
        elif tag in ("em", "i"):
            self._write("_")
        elif tag == "code" and not self._pre:
            self._write("`")
        elif tag == "pre":
            self._block()
            self._write("```\n")
            self._pre += 1
        elif tag == "a":
            self._links.append(attributes.get("href", ""))
            self._write("[")
        elif tag == "img":
            self._write(f"![{attributes.get('alt', '')}]({attributes.get('src', '')})")
        elif tag in ("ul", "ol"):
            if not self._lists:
                self._block()
            self._lists.append([tag, 0])
        elif tag == "li":
            self._newline()
            indent = "  " * max(len(self._lists) - 1, 0)
            if self._lists and self._lists[-1][0] == "ol":
                self._lists[-1][1] += 1
                self._write(f"{indent}{self._lists[-1][1]}. ")
            else:
                self._write(f"{indent}- ")
        elif tag == "blockquote":
            self._block()
            self._write("> ")

    def handle_endtag(self, tag: str) -> None:
        if tag in ("script", "style"):
            self._skip = max(self._skip - 1, 0)
        elif tag in _BLOCK_TAGS or tag in _HEADINGS or tag == "blockquote":
            self._block()
        elif tag in ("strong", "b"):
            self._write("**")
        elif tag in ("em", "i"):
            self._write("_")
        elif tag == "code" and not self._pre:
            self._write("`")
        elif tag == "pre" and self._pre:
            self._pre -= 1
            self._newline()
            self._write("```")
            self._block()
        elif tag == "a" and self._links:
            href = self._links.pop()
            self._write(f"]({href})" if href else "]")
        elif tag in ("ul", "ol") and self._lists:
            self._lists.pop()
            if not self._lists:
                self._block()

    def handle_data(self, data: str) -> None:
        if self._skip:
            return
        if self._pre:
            self._write(data)
            return
        text = re.sub(r"\s+", " ", data)
        if self._last() in ("", "\n", " "):
            text = text.lstrip()
        if text:
            self._write(text)

    def result(self) -> str:
        text = "".join(self._out)
        text = "\n".join(line.rstrip() for line in text.split("\n"))
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_markdown(html: str) -> str:
    """Convert an HTML fragment to Markdown; plain text passes through."""
    converter = _MarkdownConverter()
    converter.feed(html)
    converter.close()
    return converter.result()


class HTTPFeedClient:
    """Fetches and parses a feed document over HTTP."""

    def __init__(self, url: str, timeout: float = 60.0) -> None:
        self.url = url
        self.timeout = timeout

    def get(self) -> ParsedFeed:
        """Download and parse the feed."""
        request = urllib.request.Request(self.url, headers={"User-Agent": "feedkeeper"})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read()
        except (urllib.error.URLError, OSError) as exc:
            raise FetchError(f"requesting {self.url}: {exc}") from exc
        try:
            return parse_feed(body)
        except ValueError as exc:
            raise FetchError(f"parsing {self.url}: {exc}") from exc


def _local_now() -> datetime:
    return datetime.now().astimezone()


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class RSSReader:
    """Reads feed items from an RSS source and turns them into labelled feeds."""

    def __init__(
        self,
        config: RSSSource,
        client: HTTPFeedClient | None = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.config = config
        self.client = client if client is not None else HTTPFeedClient(config.url)
        self._clock = clock

    def read(self) -> list[Feed]:
        """Fetch the feed and convert each item."""
        try:
            parsed = self.client.get()
        except Exception as exc:
            raise FetchError(f"fetching RSS feed: {exc}") from exc
        now = self._clock()
        return [self._to_feed(now, item) for item in parsed.items]

    def _to_feed(self, now: datetime, item: FeedItem) -> Feed:
        content = html_to_markdown(self.combine_content(item.content, item.description))
        labels = Labels(
            [
                Label(LABEL_TYPE, "rss"),
                Label(LABEL_TITLE, item.title),
                Label(LABEL_LINK, item.link),
                Label(LABEL_PUB_TIME, _rfc3339(self.parse_time(item))),
                Label(LABEL_CONTENT, content),
            ]
        )
        return Feed(labels=labels, time=now)

    def parse_time(self, item: FeedItem) -> datetime:
        """Return the item's publication time in local time, or now if it has none."""
        if item.published is None:
            return self._clock().astimezone()
        return item.published.astimezone()

    def combine_content(self, content: str, description: str) -> str:
        """Join description and content, separated by a blank line."""
        if not content:
            return description
        if not description:
            return content
        return "\n\n".join((description, content))


def new_rss_reader(config: RSSSource) -> RSSReader:
    """Validate the source and build a reader for it."""
    try:
        config.validate()
    except ValueError as exc:
        raise ValueError(f"invalid RSS config: {exc}") from exc
    return RSSReader(config)