"""A time-bounded block of feed storage: chunk files plus their indexes."""

from __future__ import annotations

import logging
import queue
import shutil
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from itertools import pairwise
from pathlib import Path
from typing import BinaryIO, Protocol

from feedkeeper.blockconfig import (
    ARCHIVE_META_FILENAME,
    CHUNK_DIRNAME,
    ESTIMATED_CHUNK_FEEDS_LIMIT,
    INDEX_DIRNAME,
    INDEX_INVERTED_FILENAME,
    INDEX_PRIMARY_FILENAME,
    INDEX_VECTOR_FILENAME,
    METADATA_FILENAME,
    ArchiveMetadata,
    BlockConfig,
    Metadata,
    State,
    chunk_filename,
    parse_chunk_filename,
)
from feedkeeper.feed import Feed, Labels
from feedkeeper.query import (
    FeedVO,
    FeedVOHeap,
    FilterResult,
    LabelFilter,
    QueryOptions,
    intersect_label_results,
    is_matched_all,
    is_matched_nothing,
    merge_filter_results,
)

logger = logging.getLogger(__name__)

RECONCILE_INTERVAL = timedelta(seconds=30)
COLDING_WINDOW = timedelta(minutes=30)
MAX_BATCH = 1000
WRITE_QUEUE_SIZE = 1024
APPEND_ATTEMPTS = 3
APPEND_RETRY_INTERVAL = timedelta(milliseconds=100)
GRACEFUL_FLUSH_TIMEOUT = timedelta(seconds=5)
MAX_EMBEDDING_WORKERS = 16


class BlockError(Exception):
    """Raised when a block cannot read, write or load its data."""


@dataclass(frozen=True)
class FeedRef:
    """Where a feed lives: its chunk, its offset in the chunk, and its time."""

    chunk: int
    offset: int
    time: datetime


@dataclass
class ChunkFeed:
    """A feed as stored in a chunk, with its embedding vectors."""

    feed: Feed
    vectors: list[list[float]] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.feed.id

    @property
    def labels(self) -> Labels:
        return self.feed.labels

    @property
    def time(self) -> datetime | None:
        return self.feed.time


class ChunkFile(Protocol):
    """An append-only file of feeds."""

    def count(self) -> int: ...

    def append(
        self, feeds: list[ChunkFeed], on_success: Callable[[ChunkFeed, int], None]
    ) -> None: ...

    def read(self, offset: int) -> ChunkFeed: ...

    def range(self, callback: Callable[[ChunkFeed, int], None]) -> None: ...

    def ensure_readonly(self) -> None: ...

    def close(self) -> None: ...


class ChunkFactory(Protocol):
    """Opens or creates the chunk file at ``path``."""

    def __call__(self, instance: str, path: Path, readonly_at_first: bool) -> ChunkFile: ...


class IndexCodec(Protocol):
    """An index that can be saved to and restored from a binary stream."""

    def encode_to(self, stream: BinaryIO) -> None: ...

    def decode_from(self, stream: BinaryIO) -> None: ...

    def close(self) -> None: ...


class PrimaryIndex(IndexCodec, Protocol):
    """Maps feed ids to their location."""

    def add(self, feed_id: int, ref: FeedRef) -> None: ...

    def search(self, feed_id: int) -> FeedRef | None: ...

    def ids(self) -> Iterable[int]: ...

    def count(self) -> int: ...


class InvertedIndex(IndexCodec, Protocol):
    """Finds feed ids by label."""

    def add(self, feed_id: int, labels: Labels) -> None: ...

    def search(self, label_filter: LabelFilter) -> Iterable[int]: ...


class VectorIndex(IndexCodec, Protocol):
    """Finds feed ids by embedding similarity."""

    def add(self, feed_id: int, vectors: list[list[float]]) -> None: ...

    def search(self, vector: list[float], threshold: float, limit: int) -> dict[int, float]: ...


class Embedder(Protocol):
    """Turns text and labels into embedding vectors."""

    def embedding(self, text: str) -> list[float]: ...

    def embedding_labels(self, labels: Labels) -> list[list[float]]: ...


@dataclass
class BlockDependencies:
    """Factories a block builds its chunks, indexes and embedder with."""

    chunk_factory: ChunkFactory
    primary_factory: Callable[[str], PrimaryIndex]
    inverted_factory: Callable[[str], InvertedIndex]
    vector_factory: Callable[[str], VectorIndex]
    llm_factory: Callable[[str], Embedder]


def _local_now() -> datetime:
    return datetime.now().astimezone()


class Block:
    """Feeds of one time span: hot blocks take writes, cold ones are read from disk."""

    name = "FeedBlock"

    def __init__(
        self,
        instance: str,
        config: BlockConfig,
        dependencies: BlockDependencies,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.instance = instance
        self.config = config
        self.dependencies = dependencies
        self.ready = threading.Event()
        self._clock = clock
        self._lock = threading.RLock()
        self._to_write: queue.Queue[list[ChunkFeed]] = queue.Queue(maxsize=WRITE_QUEUE_SIZE)
        self._stopped = threading.Event()
        self._writer: threading.Thread | None = None
        self._chunks: list[ChunkFile] = []
        self._primary: PrimaryIndex | None = None
        self._vector: VectorIndex | None = None
        self._inverted: InvertedIndex | None = None
        self._primary, self._vector, self._inverted = self._new_indexes()
        self._state = State.HOT
        self._cold_loaded = False
        self._last_data_access = clock()

    @property
    def state(self) -> State:
        return self._state

    @property
    def start(self) -> datetime | None:
        return self.config.start

    @property
    def end(self) -> datetime | None:
        return self.config.end

    # --- lifecycle ---

    def run(self) -> None:
        """Write queued feeds in the background and reconcile state until closed."""
        self._writer = threading.Thread(
            target=self._write_loop, name=f"block-writer-{self.instance}", daemon=True
        )
        self._writer.start()
        self.ready.set()
        while not self._stopped.wait(RECONCILE_INTERVAL.total_seconds()):
            try:
                self.reconcile_state(self._clock())
            except Exception:
                logger.exception("block %s: reconciling state", self.instance)

    def close(self) -> None:
        """Stop the block, write what is still queued, and close every file."""
        self._stopped.set()
        if self._writer is not None:
            self._writer.join(GRACEFUL_FLUSH_TIMEOUT.total_seconds() + 1)
        with self._lock:
            self._reset_mem()

    def reload(self, config: BlockConfig) -> None:
        """Apply new settings; the directory and create settings cannot change."""
        current = self.config
        if config.for_create is not None:
            raise ValueError("cannot reload the for create config")
        if config.dir and config.dir != current.dir:
            raise ValueError(
                "cannot reload the dir, MUST pass the same dir, or set it to empty for unchange"
            )
        if not config.dir:
            config.dir = current.dir
        if not config.flush_interval:
            config.flush_interval = current.flush_interval
        config.for_create = current.for_create
        try:
            config.validate()
        except ValueError as exc:
            raise ValueError(f"validate config: {exc}") from exc
        self.config = config

    # --- writing ---

    def append(self, *feeds: Feed) -> None:
        """Embed the feeds and queue them for writing."""
        if self._state is not State.HOT:
            raise BlockError("block is not writable")
        self._last_data_access = self._clock()
        embedded = self._fill_embedding(list(feeds))
        self._to_write.put(embedded)

    def flush(self) -> bool:
        """Write a batch of queued feeds; return True when the queue was drained."""
        buffer: list[ChunkFeed] = []
        eof = True
        while True:
            try:
                batch = self._to_write.get_nowait()
            except queue.Empty:
                eof = True
                break
            buffer.extend(batch)
            if len(buffer) >= MAX_BATCH:
                eof = False
                break
        if not buffer:
            return eof

        wait = APPEND_RETRY_INTERVAL.total_seconds()
        for attempt in range(1, APPEND_ATTEMPTS + 1):
            try:
                self._append(buffer)
                break
            except Exception as exc:
                if attempt == APPEND_ATTEMPTS:
                    logger.error("block %s: append feeds: %s", self.instance, exc)
                    break
                time.sleep(wait)
                wait *= 2
        return eof

    def _write_loop(self) -> None:
        while not self._stopped.wait(self.config.flush_interval.total_seconds()):
            self.flush()
        deadline = time.monotonic() + GRACEFUL_FLUSH_TIMEOUT.total_seconds()
        while not self.flush() and time.monotonic() < deadline:
            pass

    def _append(self, feeds: list[ChunkFeed]) -> None:
        with self._lock:
            if not self._chunks:
                raise BlockError("block has no head chunk")
            if self._chunks[-1].count() + len(feeds) > ESTIMATED_CHUNK_FEEDS_LIMIT:
                try:
                    self._next_chunk()
                except Exception as exc:
                    raise BlockError(f"creating new chunk: {exc}") from exc
            head_id = len(self._chunks) - 1
            head = self._chunks[-1]
            primary, inverted, vector = self._primary, self._inverted, self._vector

        def on_success(feed: ChunkFeed, offset: int) -> None:
            # The primary index goes first: queries start from it.
            primary.add(feed.id, FeedRef(chunk=head_id, offset=offset, time=feed.time))
            inverted.add(feed.id, feed.labels)
            if feed.vectors:
                try:
                    vector.add(feed.id, feed.vectors)
                except Exception as exc:
                    raise BlockError(f"adding to vector index: {exc}") from exc

        try:
            head.append(feeds, on_success)
        except Exception as exc:
            raise BlockError(f"writing to head chunk: {exc}") from exc

    def _next_chunk(self) -> None:
        old_head = self._chunks[-1]
        chunk_id = len(self._chunks)
        self._chunks.append(self._new_chunk(chunk_id, readonly=False))
        try:
            old_head.ensure_readonly()
        except Exception as exc:
            raise BlockError(f"ensuring old chunk readonly: {exc}") from exc
        logger.info("block %s: new chunk created: %d", self.instance, chunk_id)

    def _fill_embedding(self, feeds: list[Feed]) -> list[ChunkFeed]:
        if not feeds:
            return []
        llm = self.dependencies.llm_factory(self.config.embedding_llm)
        with ThreadPoolExecutor(max_workers=min(MAX_EMBEDDING_WORKERS, len(feeds))) as pool:
            futures = [(feed, pool.submit(llm.embedding_labels, feed.labels)) for feed in feeds]

        embedded: list[ChunkFeed] = []
        errors: list[Exception] = []
        for feed, future in futures:
            try:
                embedded.append(ChunkFeed(feed=feed, vectors=future.result()))
            except Exception as exc:
                errors.append(exc)

        if errors and len(errors) == len(feeds):
            raise BlockError(f"fill embedding: {errors[0]}") from errors[0]
        if errors:
            logger.error(
                "block %s: fill embedding: %s (error count %d)",
                self.instance,
                errors[0],
                len(errors),
            )
        return embedded

    # --- reading ---

    def query(self, query: QueryOptions) -> list[FeedVO]:
        """Return the best matching feeds in the query's time range, best first."""
        query = replace(query)
        try:
            query.validate()
        except ValueError as exc:
            raise ValueError(f"validate query: {exc}") from exc
        self._last_data_access = self._clock()
        self._ensure_loaded()

        result = self._apply_filters(query)
        if is_matched_nothing(result):
            return []

        with self._lock:
            chunks = list(self._chunks)
            primary = self._primary

        heap = FeedVOHeap(query.limit)
        for ref, score in self._refs(result, primary):
            if ref.time < query.start or not ref.time < query.end:
                continue
            if not 0 <= ref.chunk < len(chunks):
                logger.error(
                    "block %s: chunk file not found, data may be corrupted: %d",
                    self.instance,
                    ref.chunk,
                )
                continue
            try:
                stored = chunks[ref.chunk].read(ref.offset)
            except Exception as exc:
                logger.error("block %s: reading chunk file %d: %s", self.instance, ref.chunk, exc)
                continue
            heap.try_evict_push(FeedVO(feed=stored.feed, vectors=stored.vectors, score=score))
        return heap.to_list()

    def exists(self, feed_id: int) -> bool:
        """Tell whether a feed with this id is stored in the block."""
        self._ensure_loaded()
        with self._lock:
            primary = self._primary
        return primary is not None and primary.search(feed_id) is not None

    def _refs(
        self, result: FilterResult, primary: PrimaryIndex
    ) -> Iterator[tuple[FeedRef, float]]:
        scored = dict.fromkeys(primary.ids(), 0.0) if is_matched_all(result) else result
        for feed_id, score in scored.items():
            ref = primary.search(feed_id)
            if ref is None:
                logger.error(
                    "block %s: feed %d not found in primary index via other index",
                    self.instance,
                    feed_id,
                )
                continue
            yield ref, score

    def _apply_filters(self, query: QueryOptions) -> FilterResult:
        with self._lock:
            inverted, vector = self._inverted, self._vector

        labels_result = intersect_label_results(
            inverted.search(label_filter) for label_filter in query.parsed_filters
        )
        if is_matched_nothing(labels_result):
            return {}

        vectors_result = self._apply_vector_filter(vector, query)
        if is_matched_nothing(vectors_result):
            return {}

        return merge_filter_results(labels_result, vectors_result)

    def _apply_vector_filter(self, vector: VectorIndex, query: QueryOptions) -> FilterResult:
        if not query.query:
            return None
        llm = self.dependencies.llm_factory(self.config.embedding_llm)
        try:
            query_vector = llm.embedding(query.query)
        except Exception as exc:
            raise BlockError(f"embed query: {exc}") from exc
        try:
            return dict(vector.search(query_vector, query.threshold, query.limit))
        except Exception as exc:
            raise BlockError(f"applying vector filter: {exc}") from exc

    # --- state ---

    def transform_to_cold(self) -> None:
        """Save the indexes to disk, free memory and make the block read only."""
        index_dir = Path(self.config.dir) / INDEX_DIRNAME
        with self._lock:
            for filename, index, label in (
                (INDEX_PRIMARY_FILENAME, self._primary, "primary"),
                (INDEX_INVERTED_FILENAME, self._inverted, "inverted"),
                (INDEX_VECTOR_FILENAME, self._vector, "vector"),
            ):
                try:
                    _write_index_file(index_dir / filename, index)
                except Exception as exc:
                    raise BlockError(f"writing {label} index: {exc}") from exc

            archive = ArchiveMetadata(feed_count=self._primary.count())
            try:
                (Path(self.config.dir) / ARCHIVE_META_FILENAME).write_text(archive.to_json())
            except OSError as exc:
                raise BlockError(f"writing archive metadata: {exc}") from exc

            self._reset_mem()
            self._state = State.COLD
            self._cold_loaded = False

    def clear_on_disk(self) -> None:
        """Remove the block's directory and everything in it."""
        path = Path(self.config.dir)
        if path.exists():
            shutil.rmtree(path)

    def reconcile_state(self, now: datetime) -> None:
        """Free a loaded cold block that has not been read for a while."""
        with self._lock:
            if self._cold_loaded and now - COLDING_WINDOW > self._last_data_access:
                self._reset_mem()
                self._cold_loaded = False
                logger.info("block %s: block is archived", self.instance)

    # --- disk ---

    def _init_on_disk(self) -> None:
        directory = Path(self.config.dir)
        metadata = Metadata(
            start=self.config.start,
            duration=self.config.duration,
            embedding_llm=self.config.embedding_llm,
        )
        try:
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            (directory / METADATA_FILENAME).write_text(metadata.to_json())
            (directory / CHUNK_DIRNAME).mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise BlockError(f"creating block directory: {exc}") from exc
        self._chunks.append(self._new_chunk(0, readonly=False))
        self._state = State.HOT

    def _load_state(self) -> State:
        try:
            (Path(self.config.dir) / ARCHIVE_META_FILENAME).stat()
        except FileNotFoundError:
            return State.HOT
        except OSError as exc:
            raise BlockError(f"checking meta file: {exc}") from exc
        return State.COLD

    def _ensure_loaded(self) -> None:
        if self._state is not State.COLD:
            return
        with self._lock:
            if self._cold_loaded:
                return
            try:
                self._load()
            except BlockError as exc:
                raise BlockError(f"ensuring block loaded: decoding from disk: {exc}") from exc
            self._cold_loaded = True
        logger.info("block %s: cold block loaded", self.instance)

    def _load(self) -> None:
        cold = self._state is State.COLD
        try:
            self._load_chunks(cold)
        except BlockError as exc:
            raise BlockError(f"loading chunks: {exc}") from exc

        self._close_indexes()
        self._primary, self._vector, self._inverted = self._new_indexes()
        if cold:
            self._load_indexes()
        else:
            for position, chunk in enumerate(self._chunks):
                self._replay_index(position, chunk)

    def _load_chunks(self, cold: bool) -> None:
        for chunk_id in self._load_chunk_ids():
            self._chunks.append(self._new_chunk(chunk_id, readonly=cold))

    def _load_chunk_ids(self) -> list[int]:
        chunk_dir = Path(self.config.dir) / CHUNK_DIRNAME
        try:
            entries = list(chunk_dir.iterdir())
        except OSError as exc:
            raise BlockError(f"reading chunk directory: {exc}") from exc

        ids = []
        for entry in entries:
            if entry.is_dir():
                continue
            try:
                ids.append(parse_chunk_filename(entry.name))
            except ValueError as exc:
                raise BlockError(f"converting chunk file name to int: {exc}") from exc
        ids.sort()
        if any(current != previous + 1 for previous, current in pairwise(ids)):
            raise BlockError("chunk IDs are not continuous, data may be corrupted")
        return ids

    def _load_indexes(self) -> None:
        index_dir = Path(self.config.dir) / INDEX_DIRNAME
        for filename, index, label in (
            (INDEX_PRIMARY_FILENAME, self._primary, "primary"),
            (INDEX_INVERTED_FILENAME, self._inverted, "inverted"),
            (INDEX_VECTOR_FILENAME, self._vector, "vector"),
        ):
            try:
                with (index_dir / filename).open("rb") as stream:
                    index.decode_from(stream)
            except Exception as exc:
                raise BlockError(f"decoding {label} index: {exc}") from exc

    def _replay_index(self, position: int, chunk: ChunkFile) -> None:
        primary, inverted, vector = self._primary, self._inverted, self._vector

        def replay(feed: ChunkFeed, offset: int) -> None:
            primary.add(feed.id, FeedRef(chunk=position, offset=offset, time=feed.time))
            inverted.add(feed.id, feed.labels)
            if feed.vectors:
                vector.add(feed.id, feed.vectors)

        try:
            chunk.range(replay)
        except Exception as exc:
            raise BlockError(f"replaying index for chunk {position}: {exc}") from exc

    def _new_chunk(self, chunk_id: int, readonly: bool) -> ChunkFile:
        path = Path(self.config.dir) / CHUNK_DIRNAME / chunk_filename(chunk_id)
        try:
            return self.dependencies.chunk_factory(f"{self.instance}-{chunk_id}", path, readonly)
        except Exception as exc:
            raise BlockError(f"creating chunk file {path}: {exc}") from exc

    def _new_indexes(self) -> tuple[PrimaryIndex, VectorIndex, InvertedIndex]:
        deps = self.dependencies
        try:
            primary = deps.primary_factory(self.instance)
        except Exception as exc:
            raise BlockError(f"creating primary index: {exc}") from exc
        try:
            vector = deps.vector_factory(self.instance)
        except Exception as exc:
            raise BlockError(f"creating vector index: {exc}") from exc
        try:
            inverted = deps.inverted_factory(self.instance)
        except Exception as exc:
            raise BlockError(f"creating inverted index: {exc}") from exc
        return primary, vector, inverted

    def _close_indexes(self) -> None:
        for index, label in (
            (self._primary, "primary"),
            (self._vector, "vector"),
            (self._inverted, "inverted"),
        ):
            if index is None:
                continue
            try:
                index.close()
            except Exception as exc:
                raise BlockError(f"closing {label} index: {exc}") from exc

    def _reset_mem(self) -> None:
        self._close_indexes()
        for chunk in self._chunks:
            try:
                chunk.close()
            except Exception as exc:
                raise BlockError(f"closing chunk: {exc}") from exc
        self._primary = self._vector = self._inverted = None
        self._chunks = []


def _write_index_file(path: Path, index: IndexCodec) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    with path.open("wb") as stream:
        index.encode_to(stream)


def new_block(instance: str, config: BlockConfig, dependencies: BlockDependencies) -> Block:
    """Create a new block on disk, or load an existing one from its directory."""
    try:
        config.validate()
    except ValueError as exc:
        raise ValueError(f"validate config: {exc}") from exc

    block = Block(instance, config, dependencies)
    if config.for_create is not None:
        block._init_on_disk()
        return block

    block._state = block._load_state()
    # A cold block is loaded lazily, on its first read.
    if block._state is State.HOT:
        try:
            block._load()
        except BlockError as exc:
            raise BlockError(f"decoding from disk: {exc}") from exc
    return block