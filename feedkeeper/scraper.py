"""Periodic scraping of a single source into feed storage."""

from __future__ import annotations

import hashlib
import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from feedkeeper.feed import (
    LABEL_LINK,
    LABEL_PUB_TIME,
    LABEL_SOURCE,
    Feed,
    Label,
    Labels,
    Reader,
)
from feedkeeper.rss import RSSSource, new_rss_reader

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
MAX_PAST = 15 * DAY
MIN_INTERVAL = timedelta(minutes=10)
DEFAULT_INTERVAL = timedelta(hours=1)

KEY_PREFIX = "scraper.feed.try-append."
# Keep the key until the feed can no longer fall inside the scrape window.
KEY_TTL = MAX_PAST + timedelta(minutes=1)

RETRY_MIN_INTERVAL = timedelta(minutes=1)
RETRY_MAX_INTERVAL = timedelta(minutes=16)
MAX_START_OFFSET = timedelta(minutes=1)


class KeyNotFoundError(KeyError):
    """Raised by a key/value store when a key is absent."""


class FeedStorage(Protocol):
    """Where scraped feeds are stored."""

    def append(self, *feeds: Feed) -> None:
        """Store the given feeds."""

    def exists(self, feed_id: int, hint: datetime) -> bool:
        """Tell whether a feed with this id was stored around ``hint``."""


class KVStorage(Protocol):
    """A byte key/value store with expiring entries."""

    def get(self, key: bytes) -> bytes:
        """Return the value of ``key``; raise KeyNotFoundError if it is absent."""

    def set(self, key: bytes, value: bytes, ttl: timedelta) -> None:
        """Store ``value`` under ``key`` for ``ttl``."""


@dataclass
class ScraperConfig:
    """Settings of one scraper."""

    name: str = ""
    past: timedelta = timedelta(0)
    interval: timedelta = timedelta(0)
    labels: Labels = field(default_factory=Labels)
    rss: RSSSource | None = None

    def validate(self) -> None:
        """Apply defaults and limits; raise ValueError if the name is missing."""
        if self.past <= timedelta(0):
            self.past = DAY
        if self.past > MAX_PAST:
            self.past = MAX_PAST
        if self.interval <= timedelta(0):
            self.interval = DEFAULT_INTERVAL
        if self.interval < MIN_INTERVAL:
            self.interval = MIN_INTERVAL
        if not self.name:
            raise ValueError("name cannot be empty")


@dataclass
class ScraperDependencies:
    """Storages a scraper writes to."""

    feed_storage: FeedStorage | None = None
    kv_storage: KVStorage | None = None


def new_reader(config: ScraperConfig) -> Reader:
    """Build the reader for the source the config names."""
    if config.rss is not None:
        return new_rss_reader(config.rss)
    raise ValueError("source not supported")


def feed_id(source: str, link: str) -> int:
    """Return a stable 64-bit identifier of a feed from its source and link."""
    digest = hashlib.blake2b(digest_size=8)
    for part in (source, link):
        encoded = part.encode("utf-8")
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return int.from_bytes(digest.digest(), "big")


def _parse_time(text: str) -> datetime:
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _local_now() -> datetime:
    return datetime.now().astimezone()


class Scraper:
    """Reads a source on a schedule and appends new feeds to storage."""

    name = "Scraper"

    def __init__(
        self,
        instance: str,
        config: ScraperConfig,
        dependencies: ScraperDependencies,
        source: Reader,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.instance = instance
        self.config = config
        self.dependencies = dependencies
        self.source = source
        self.ready = threading.Event()
        self._clock = clock
        self._stopped = threading.Event()

    def run(self) -> None:
        """Scrape every interval until closed; the first scrape is randomly delayed."""
        delay = random.uniform(0, MAX_START_OFFSET.total_seconds())
        logger.debug("scraper %s: computed scrape offset %.1fs", self.instance, delay)
        self.ready.set()
        while not self._stopped.wait(delay):
            self._scrape_until_success()
            delay = self.config.interval.total_seconds()

    def close(self) -> None:
        """Stop a running scraper."""
        self._stopped.set()

    def _scrape_until_success(self) -> None:
        wait = RETRY_MIN_INTERVAL
        while not self._stopped.is_set():
            try:
                self.scrape_once()
                return
            except Exception:
                logger.exception("scraper %s: scrape failed", self.instance)
            if self._stopped.wait(wait.total_seconds()):
                return
            wait = min(wait * 2, RETRY_MAX_INTERVAL)

    def scrape_once(self) -> list[Feed]:
        """Read the source, keep the new feeds and store them; return what was stored."""
        feeds = self.source.read()
        logger.debug("scraper %s: read %d feeds", self.instance, len(feeds))
        processed = self.process_feeds(feeds)
        logger.debug("scraper %s: processed %d feeds", self.instance, len(processed))
        if processed:
            self.dependencies.feed_storage.append(*processed)
        return processed

    def process_feeds(self, feeds: list[Feed]) -> list[Feed]:
        """Drop old feeds, add labels and ids, and drop feeds already stored."""
        feeds = self._filter_past(feeds)
        feeds = self._add_meta_labels(feeds)
        feeds = self._fill_ids(feeds)
        return self._filter_exists(feeds)

    def _filter_past(self, feeds: list[Feed]) -> list[Feed]:
        now = self._clock()
        start = now - self.config.past
        return [
            feed
            for feed in feeds
            if start <= _parse_time(feed.labels.get(LABEL_PUB_TIME)) <= now
        ]

    def _add_meta_labels(self, feeds: list[Feed]) -> list[Feed]:
        extra = [*self.config.labels, Label(LABEL_SOURCE, self.config.name)]
        for feed in feeds:
            feed.labels = Labels([*feed.labels, *extra])
            feed.labels.ensure_sorted()
        return feeds

    def _fill_ids(self, feeds: list[Feed]) -> list[Feed]:
        # Publication time and title change for some sources, so neither is hashed.
        for feed in feeds:
            feed.id = feed_id(feed.labels.get(LABEL_SOURCE), feed.labels.get(LABEL_LINK))
        return feeds

    def _filter_exists(self, feeds: list[Feed]) -> list[Feed]:
        kv = self.dependencies.kv_storage
        storage = self.dependencies.feed_storage
        kept: list[Feed] = []

        def keep(feed: Feed) -> None:
            moment = feed.time if feed.time is not None else self._clock()
            try:
                kv.set(_key(feed), moment.isoformat().encode("utf-8"), KEY_TTL)
            except Exception:
                logger.exception("set last try store time")
            kept.append(feed)

        for feed in feeds:
            try:
                stored = kv.get(_key(feed))
            except KeyNotFoundError:
                keep(feed)
                continue
            except Exception:
                logger.exception("get last stored time, fallback to continue writing")
                keep(feed)
                continue

            try:
                hint = _parse_time(stored.decode("utf-8"))
            except ValueError:
                logger.exception("parse last try stored time, fallback to continue writing")
                keep(feed)
                continue

            try:
                exists = storage.exists(feed.id, hint)
            except Exception:
                logger.exception("check feed exists, fallback to continue writing")
                keep(feed)
                continue
            if not exists:
                keep(feed)

        return kept


def _key(feed: Feed) -> bytes:
    return f"{KEY_PREFIX}{feed.id}".encode("utf-8")


def new_scraper(
    instance: str, config: ScraperConfig, dependencies: ScraperDependencies
) -> Scraper:
    """Validate the config and build a scraper for its source."""
    try:
        config.validate()
    except ValueError as exc:
        raise ValueError(f"invalid scraper config: {exc}") from exc
    try:
        source = new_reader(config)
    except ValueError as exc:
        raise ValueError(f"creating source: {exc}") from exc
    return Scraper(instance, config, dependencies, source)