"""Query options, label filters and result ranking for feed blocks."""

from __future__ import annotations

import heapq
import itertools
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from feedkeeper.feed import Feed, Labels

DEFAULT_THRESHOLD = 0.55
DEFAULT_LIMIT = 10
MAX_LIMIT = 500
DEFAULT_LOOKBACK = timedelta(hours=24)

# A filter result maps feed ids to scores. ``None`` matches every feed and an
# empty mapping matches none; non-vector filters score every id 0.
FilterResult = dict[int, float] | None


@dataclass(frozen=True)
class LabelFilter:
    """A condition on one label: ``key=value`` or ``key!=value``."""

    key: str
    value: str
    equal: bool = True

    @classmethod
    def parse(cls, text: str) -> LabelFilter:
        """Parse ``key=value`` or ``key!=value``; raise ValueError otherwise."""
        index = text.find("=")
        if index < 0:
            raise ValueError(f"invalid label filter {text!r}: missing operator")
        equal = not (index > 0 and text[index - 1] == "!")
        key = text[:index] if equal else text[: index - 1]
        key = key.strip()
        if not key:
            raise ValueError(f"invalid label filter {text!r}: empty label key")
        return cls(key=key, value=text[index + 1 :].strip(), equal=equal)

    def matches(self, labels: Labels) -> bool:
        """Tell whether the labels satisfy this filter."""
        return (labels.get(self.key) == self.value) == self.equal


class _TimeSpan(Protocol):
    start: datetime | None
    end: datetime | None


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class QueryOptions:
    """What to look for in a block: a semantic query, label filters and a time range."""

    query: str = ""
    threshold: float = 0.0
    label_filters: list[str] = field(default_factory=list)
    limit: int = 0
    start: datetime | None = None
    end: datetime | None = None
    parsed_filters: list[LabelFilter] = field(default_factory=list, init=False)

    def validate(self) -> None:
        """Parse the label filters and apply defaults; raise ValueError if invalid."""
        if not 0 <= self.threshold <= 1:
            raise ValueError("threshold must be between 0 and 1")
        parsed = []
        for text in self.label_filters:
            if not text:
                raise ValueError("label filter is required")
            try:
                parsed.append(LabelFilter.parse(text))
            except ValueError as exc:
                raise ValueError(f"parse label filter: {exc}") from exc
        self.parsed_filters = parsed
        if self.threshold == 0:
            self.threshold = DEFAULT_THRESHOLD
        if self.limit <= 0:
            self.limit = DEFAULT_LIMIT
        if self.limit > MAX_LIMIT:
            raise ValueError("limit must be less than or equal to 500")
        if self.start is None:
            self.start = _local_now() - DEFAULT_LOOKBACK
        if self.end is None:
            self.end = _local_now()
        if self.end < self.start:
            raise ValueError("end time must be after start time")

    def hit_time_range_condition(self, block: _TimeSpan) -> bool:
        """Tell whether the block's time span overlaps the query's range."""
        b_start, b_end = block.start, block.end
        q_start, q_end = self.start, self.end
        if q_start is None and q_end is None:
            return True
        if q_start is None:
            return b_start < q_end
        if q_end is None:
            return not b_end < q_start

        def within(moment: datetime, start: datetime, end: datetime) -> bool:
            return start <= moment < end

        query_as_base = within(b_start, q_start, q_end) or within(b_end, q_start, q_end)
        block_as_base = within(q_start, b_start, b_end) or within(q_end, b_start, b_end)
        return query_as_base or block_as_base


@dataclass
class FeedVO:
    """A feed as returned by a query, with its vectors and similarity score."""

    feed: Feed
    vectors: list[list[float]] = field(default_factory=list)
    score: float = 0.0

    @property
    def time(self) -> datetime | None:
        return self.feed.time


def _rank(item: FeedVO) -> tuple[float, float]:
    moment = item.time
    return (item.score, moment.timestamp() if moment is not None else float("-inf"))


class FeedVOHeap:
    """Keeps the ``limit`` best feeds: higher score first, then the newer one."""

    def __init__(self, limit: int, items: Iterable[FeedVO] = ()) -> None:
        self.limit = limit
        self._heap: list[tuple[tuple[float, float], int, FeedVO]] = []
        self._counter = itertools.count()
        for item in items:
            self.try_evict_push(item)

    def __len__(self) -> int:
        return len(self._heap)

    def try_evict_push(self, item: FeedVO) -> bool:
        """Add the item, evicting the worst one when full; return whether it was kept."""
        entry = (_rank(item), next(self._counter), item)
        if len(self._heap) < self.limit:
            heapq.heappush(self._heap, entry)
            return True
        if self._heap and self._heap[0][0] < entry[0]:
            heapq.heapreplace(self._heap, entry)
            return True
        return False

    def to_list(self) -> list[FeedVO]:
        """Return the kept feeds, best first."""
        return [entry[2] for entry in sorted(self._heap, key=lambda e: e[0], reverse=True)]


def is_matched_all(result: FilterResult) -> bool:
    """Tell whether a filter result matches every feed."""
    return result is None


def is_matched_nothing(result: FilterResult) -> bool:
    """Tell whether a filter result matches no feed."""
    return result is not None and len(result) == 0


def intersect_label_results(results: Iterable[Iterable[int]]) -> FilterResult:
    """AND together the id sets found for each label filter.

    No filters match everything; the iteration stops at the first empty set.
    """
    matched: set[int] | None = None
    for ids in results:
        found = set(ids)
        if not found:
            return {}
        matched = found if matched is None else matched & found
        if not matched:
            return {}
    if matched is None:
        return None
    return dict.fromkeys(matched, 0.0)


def merge_filter_results(x: FilterResult, y: FilterResult) -> FilterResult:
    """Intersect two filter results, keeping the scores of ``y``."""
    if x and y:
        return {feed_id: score for feed_id, score in y.items() if feed_id in x}
    if x:
        return x
    if y:
        return y
    if is_matched_nothing(x) or is_matched_nothing(y):
        return {}
    return None


def scores_of(result: Mapping[int, float]) -> list[float]:
    """Return the scores of a filter result, highest first."""
    return sorted(result.values(), reverse=True)