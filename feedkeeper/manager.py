"""Keeping a set of scrapers running in line with the scrape settings."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta

from feedkeeper.rss import RSSSource
from feedkeeper.scraper import (
    FeedStorage,
    KVStorage,
    Scraper,
    ScraperConfig,
    ScraperDependencies,
    new_scraper,
)
from feedkeeper.feed import Labels

logger = logging.getLogger(__name__)

READY_TIMEOUT = timedelta(seconds=10)

ScraperFactory = Callable[[str, ScraperConfig, ScraperDependencies], Scraper]


@dataclass
class RSSSettings:
    """RSS settings of one source: a URL or an RSSHub route."""

    url: str = ""
    rsshub_route_path: str = ""


@dataclass
class SourceSettings:
    """Settings of one scraped source."""

    name: str = ""
    interval: timedelta = timedelta(0)
    labels: Mapping[str, str] = field(default_factory=dict)
    rss: RSSSettings | None = None


@dataclass
class ScrapeSettings:
    """The scrape section of the application settings."""

    past: timedelta = timedelta(0)
    interval: timedelta = timedelta(0)
    rsshub_endpoint: str = ""
    sources: list[SourceSettings] = field(default_factory=list)


@dataclass
class ManagerConfig:
    """The scraper configurations a manager keeps running."""

    scrapers: list[ScraperConfig] = field(default_factory=list)

    def validate(self) -> None:
        """Check that names are unique and that every scraper config is valid."""
        seen: set[str] = set()
        for config in self.scrapers:
            if config.name in seen:
                raise ValueError("scraper name must be unique")
            seen.add(config.name)
        for config in self.scrapers:
            try:
                config.validate()
            except ValueError as exc:
                raise ValueError(f"invalid scraper {config.name}: {exc}") from exc

    @classmethod
    def from_settings(cls, settings: ScrapeSettings) -> ManagerConfig:
        """Build scraper configs from the scrape settings."""
        scrapers = []
        for source in settings.sources:
            config = ScraperConfig(
                name=source.name,
                past=settings.past,
                interval=source.interval,
                labels=Labels.from_mapping(source.labels),
            )
            if config.interval <= timedelta(0):
                config.interval = settings.interval
            if source.rss is not None:
                config.rss = RSSSource(
                    url=source.rss.url,
                    rsshub_endpoint=settings.rsshub_endpoint,
                    rsshub_route_path=source.rss.rsshub_route_path,
                )
            scrapers.append(config)
        return cls(scrapers=scrapers)


@dataclass
class ManagerDependencies:
    """What a manager needs to build scrapers."""

    scraper_factory: ScraperFactory = new_scraper
    feed_storage: FeedStorage | None = None
    kv_storage: KVStorage | None = None


def _config_from(settings: ScrapeSettings) -> ManagerConfig:
    config = ManagerConfig.from_settings(settings)
    try:
        config.validate()
    except ValueError as exc:
        raise ValueError(f"invalid configuration: {exc}") from exc
    return config


class Manager:
    """Runs one scraper per configured source and applies new settings."""

    name = "ScrapeManager"

    def __init__(
        self,
        instance: str,
        config: ManagerConfig,
        dependencies: ManagerDependencies,
    ) -> None:
        self.instance = instance
        self.config = config
        self.dependencies = dependencies
        self.scrapers: dict[str, Scraper] = {}
        self.ready = threading.Event()
        self._stopped = threading.Event()
        self._lock = threading.RLock()

    def run(self) -> None:
        """Start every scraper, then block until the manager is closed."""
        with self._lock:
            scrapers = list(self.scrapers.values())
        for scraper in scrapers:
            try:
                _run_until_ready(scraper)
            except Exception as exc:
                raise RuntimeError(f"running scraper {scraper.config.name}: {exc}") from exc
        self.ready.set()
        self._stopped.wait()

    def reload(self, settings: ScrapeSettings) -> None:
        """Apply new settings: keep unchanged scrapers, restart changed, stop removed."""
        config = _config_from(settings)
        with self._lock:
            if config == self.config:
                logger.debug("no changes in scrape config")
                return
            self._reload(config)

    def close(self) -> None:
        """Stop the manager and every scraper it runs."""
        self._stopped.set()
        with self._lock:
            for scraper in self.scrapers.values():
                try:
                    scraper.close()
                except Exception as exc:
                    raise RuntimeError(
                        f"closing scraper {scraper.config.name}: {exc}"
                    ) from exc

    def _new_scraper(self, config: ScraperConfig) -> Scraper:
        return self.dependencies.scraper_factory(
            config.name,
            config,
            ScraperDependencies(
                feed_storage=self.dependencies.feed_storage,
                kv_storage=self.dependencies.kv_storage,
            ),
        )

    def _reload(self, config: ManagerConfig) -> None:
        new_scrapers: dict[str, Scraper] = {}
        try:
            for scraper_config in config.scrapers:
                try:
                    self._run_or_restart(scraper_config, new_scrapers)
                except Exception as exc:
                    raise RuntimeError(
                        f"run or restart scraper {scraper_config.name}: {exc}"
                    ) from exc
        except RuntimeError as exc:
            raise RuntimeError(f"run or restart RSS scrapers: {exc}") from exc

        for name, old in self.scrapers.items():
            if name in new_scrapers:
                continue
            try:
                old.close()
            except Exception as exc:
                raise RuntimeError(
                    f"stop obsolete scrapers: closing scraper {name}: {exc}"
                ) from exc

        self.scrapers = new_scrapers
        self.config = config

    def _run_or_restart(
        self, config: ScraperConfig, new_scrapers: dict[str, Scraper]
    ) -> None:
        existing = self.scrapers.get(config.name)
        if existing is not None:
            if existing.config == config:
                new_scrapers[config.name] = existing
                return
            try:
                existing.close()
            except Exception as exc:
                raise RuntimeError(f"closing: {exc}") from exc

        if config.name in new_scrapers:
            return
        try:
            scraper = self._new_scraper(config)
        except Exception as exc:
            raise RuntimeError(f"creating: {exc}") from exc
        new_scrapers[config.name] = scraper
        try:
            _run_until_ready(scraper)
        except Exception as exc:
            raise RuntimeError(f"running: {exc}") from exc


def _run_until_ready(scraper: Scraper, timeout: timedelta = READY_TIMEOUT) -> None:
    """Start ``scraper.run`` in a thread and wait until the scraper is ready."""
    failures: list[BaseException] = []
    finished = threading.Event()

    def target() -> None:
        try:
            scraper.run()
        except BaseException as exc:  # noqa: BLE001 - reported to the waiter
            failures.append(exc)
            logger.exception("scraper %s stopped with an error", scraper.config.name)
        finally:
            finished.set()

    threading.Thread(target=target, name=f"scraper-{scraper.config.name}", daemon=True).start()

    deadline = time.monotonic() + timeout.total_seconds()
    while not scraper.ready.wait(0.01):
        if finished.is_set():
            if failures:
                raise RuntimeError(f"run failed: {failures[0]}") from failures[0]
            raise RuntimeError("run returned before ready")
        if time.monotonic() >= deadline:
            raise TimeoutError("timed out waiting for ready")


def new_manager(
    instance: str,
    settings: ScrapeSettings,
    dependencies: ManagerDependencies,
) -> Manager:
    """Validate the settings and build a manager with one scraper per source."""
    config = _config_from(settings)
    manager = Manager(instance, config, dependencies)
    for scraper_config in config.scrapers:
        try:
            manager.scrapers[scraper_config.name] = manager._new_scraper(scraper_config)
        except Exception as exc:
            raise RuntimeError(f"creating scraper {scraper_config.name}: {exc}") from exc
    return manager