"""Core feed data types shared by readers, scrapers and storage."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from operator import attrgetter
from typing import Protocol

LABEL_TYPE = "type"
LABEL_SOURCE = "source"
LABEL_TITLE = "title"
LABEL_LINK = "link"
LABEL_PUB_TIME = "pub_time"
LABEL_CONTENT = "content"


@dataclass(frozen=True, slots=True)
class Label:
    """A single key/value attribute of a feed."""

    key: str
    value: str


class Labels(list[Label]):
    """An ordered collection of labels."""

    def get(self, key: str) -> str:
        """Return the value of the first label named ``key``, or an empty string."""
        return next((label.value for label in self if label.key == key), "")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str] | None) -> Labels:
        """Build labels from a mapping, sorted by key."""
        labels = cls(Label(key, value) for key, value in (mapping or {}).items())
        labels.ensure_sorted()
        return labels

    def ensure_sorted(self) -> None:
        """Sort the labels by key in place, keeping the order of equal keys."""
        self.sort(key=attrgetter("key"))


@dataclass
class Feed:
    """A scraped item with its labels and the time it was read."""

    labels: Labels = field(default_factory=Labels)
    time: datetime | None = None
    id: int = 0


class Reader(Protocol):
    """A source of feeds."""

    def read(self) -> list[Feed]:
        """Fetch the current feeds from the source."""