"""Settings, on-disk metadata and file naming of a feed storage block."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from pathlib import Path

ARCHIVE_META_FILENAME = "archive.json"
METADATA_FILENAME = "metadata.json"
CHUNK_DIRNAME = "chunk"
INDEX_DIRNAME = "index"
INDEX_PRIMARY_FILENAME = "primary"
INDEX_INVERTED_FILENAME = "inverted"
INDEX_VECTOR_FILENAME = "vector"

# Estimated maximum number of feeds in a chunk; concurrent writers may exceed it.
ESTIMATED_CHUNK_FEEDS_LIMIT = 5000

DAY = timedelta(days=1)
MIN_DURATION = DAY
MAX_DURATION = 15 * DAY
DEFAULT_DURATION = timedelta(hours=25)
DEFAULT_FLUSH_INTERVAL = timedelta(milliseconds=200)

_MAX_CHUNK_ID = 2**32 - 1
_DIGITS = re.compile(r"[0-9]+")


class State(StrEnum):
    """Lifecycle state of a block."""

    # Writable; all data is in memory; the head of the block chain.
    HOT = "hot"
    # Read only; indexes are stored on disk.
    COLD = "cold"


def _to_nanoseconds(value: timedelta) -> int:
    return ((value.days * 86400 + value.seconds) * 1_000_000 + value.microseconds) * 1000


def _from_nanoseconds(value: int) -> timedelta:
    return timedelta(microseconds=value // 1000)


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime:
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class ForCreateConfig:
    """Settings used only when a block is created for the first time."""

    start: datetime | None = None
    duration: timedelta = timedelta(0)
    embedding_llm: str = ""


@dataclass
class Metadata:
    """Time span and embedding model of a block, stored in its directory."""

    start: datetime
    duration: timedelta
    embedding_llm: str

    def to_json(self) -> str:
        """Encode as compact JSON; the duration is in nanoseconds."""
        return json.dumps(
            {
                "start": _format_time(self.start),
                "duration": _to_nanoseconds(self.duration),
                "embedding_llm": self.embedding_llm,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> Metadata:
        """Decode metadata; raise ValueError if it is malformed."""
        try:
            data = json.loads(text)
            return cls(
                start=_parse_time(data["start"]),
                duration=_from_nanoseconds(int(data.get("duration", 0))),
                embedding_llm=str(data.get("embedding_llm", "")),
            )
        except (TypeError, KeyError, ValueError, AttributeError) as exc:
            raise ValueError(f"invalid metadata: {exc}") from exc


@dataclass
class ArchiveMetadata:
    """Metadata of a cold block; its presence marks the block as cold."""

    feed_count: int = 0

    def to_json(self) -> str:
        """Encode as compact JSON."""
        return json.dumps({"feed_count": self.feed_count}, separators=(",", ":"))


@dataclass
class BlockConfig:
    """Settings of a block; ``validate`` fills in its time span and embedding model."""

    dir: str = ""
    flush_interval: timedelta = timedelta(0)
    for_create: ForCreateConfig | None = None

    start: datetime | None = field(default=None, init=False)
    duration: timedelta = field(default=timedelta(0), init=False)
    embedding_llm: str = field(default="", init=False)

    @property
    def end(self) -> datetime | None:
        """The end of the block's time span, exclusive."""
        if self.start is None:
            return None
        return self.start + self.duration

    def validate(self) -> None:
        """Apply defaults and copy the span from the create settings or from disk."""
        if not self.dir:
            raise ValueError("dir is required")
        if not self.flush_interval:
            self.flush_interval = DEFAULT_FLUSH_INTERVAL

        if self.for_create is not None:
            try:
                self._validate_for_create(self.for_create)
            except ValueError as exc:
                raise ValueError(f"validate for create: {exc}") from exc
        else:
            try:
                self._validate_for_load()
            except ValueError as exc:
                raise ValueError(f"validate for load: {exc}") from exc

    def _validate_for_create(self, create: ForCreateConfig) -> None:
        if create.start is None:
            raise ValueError("start is required")
        if not create.duration:
            create.duration = DEFAULT_DURATION
        if not MIN_DURATION <= create.duration <= MAX_DURATION:
            raise ValueError("duration must be between 24h0m0s and 360h0m0s")
        if not create.embedding_llm:
            raise ValueError("embedding LLM is required")

        self.start = create.start
        self.duration = create.duration
        self.embedding_llm = create.embedding_llm

    def _validate_for_load(self) -> None:
        path = Path(self.dir) / METADATA_FILENAME
        try:
            raw = path.read_bytes()
        except FileNotFoundError as exc:
            raise ValueError("metadata file not found") from exc
        except OSError as exc:
            raise ValueError(f"reading metadata file: {exc}") from exc

        try:
            metadata = Metadata.from_json(raw)
        except ValueError as exc:
            raise ValueError(f"unmarshalling metadata: {exc}") from exc

        self.start = metadata.start
        self.duration = metadata.duration
        self.embedding_llm = metadata.embedding_llm


def chunk_filename(chunk: int) -> str:
    """Return the file name of the chunk with this id."""
    return str(chunk)


def parse_chunk_filename(name: str) -> int:
    """Return the chunk id a file name stands for; raise ValueError if it is not one."""
    if not _DIGITS.fullmatch(name) or int(name) > _MAX_CHUNK_ID:
        raise ValueError(f"invalid chunk filename format: {name!r}")
    return int(name)