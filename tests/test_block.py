import json
import math
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from feedkeeper.block import BlockDependencies, BlockError, FeedRef, new_block
from feedkeeper.blockconfig import (
    ARCHIVE_META_FILENAME,
    CHUNK_DIRNAME,
    DEFAULT_FLUSH_INTERVAL,
    ESTIMATED_CHUNK_FEEDS_LIMIT,
    INDEX_DIRNAME,
    METADATA_FILENAME,
    ArchiveMetadata,
    BlockConfig,
    ForCreateConfig,
    Metadata,
    State,
)
from feedkeeper.feed import Feed, Label, Labels
from feedkeeper.query import QueryOptions

T0 = datetime(2025, 3, 3, tzinfo=timezone.utc)
WORDS = ("go", "python", "rust")


class FakeChunk:
    def __init__(self, store, base_count=0):
        self.store = store
        self.base_count = base_count
        self.readonly = False
        self.closed = False

    def count(self):
        return self.base_count + len(self.store)

    def append(self, feeds, on_success):
        for feed in feeds:
            self.store.append(feed)
            on_success(feed, len(self.store) - 1)

    def read(self, offset):
        return self.store[offset]

    def range(self, callback):
        for offset, feed in enumerate(self.store):
            callback(feed, offset)

    def ensure_readonly(self):
        self.readonly = True

    def close(self):
        self.closed = True


class FakeChunkFactory:
    def __init__(self, base_count=0):
        self.stores = {}
        self.created = []
        self.base_count = base_count

    def __call__(self, instance, path, readonly_at_first):
        path = Path(path)
        path.touch()
        store = self.stores.setdefault(path, [])
        chunk = FakeChunk(store, self.base_count if path.name == "0" else 0)
        chunk.readonly = readonly_at_first
        self.created.append(chunk)
        return chunk


class FakePrimary:
    def __init__(self):
        self.refs = {}

    def add(self, feed_id, ref):
        self.refs[feed_id] = ref

    def search(self, feed_id):
        return self.refs.get(feed_id)

    def ids(self):
        return set(self.refs)

    def count(self):
        return len(self.refs)

    def encode_to(self, stream):
        rows = [[i, r.chunk, r.offset, r.time.isoformat()] for i, r in self.refs.items()]
        stream.write(json.dumps(rows).encode())

    def decode_from(self, stream):
        for i, c, o, t in json.loads(stream.read() or b"[]"):
            self.refs[i] = FeedRef(chunk=c, offset=o, time=datetime.fromisoformat(t))

    def close(self):
        pass


class FakeInverted:
    def __init__(self):
        self.labels = {}

    def add(self, feed_id, labels):
        self.labels[feed_id] = [[label.key, label.value] for label in labels]

    def search(self, label_filter):
        return {
            i
            for i, pairs in self.labels.items()
            if label_filter.matches(Labels(Label(k, v) for k, v in pairs))
        }

    def encode_to(self, stream):
        stream.write(json.dumps({str(i): p for i, p in self.labels.items()}).encode())

    def decode_from(self, stream):
        for i, pairs in json.loads(stream.read() or b"{}").items():
            self.labels[int(i)] = pairs

    def close(self):
        pass


def _cosine(a, b):
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return sum(x * y for x, y in zip(a, b)) / norm if norm else 0.0


class FakeVector:
    def __init__(self):
        self.vectors = {}

    def add(self, feed_id, vectors):
        self.vectors[feed_id] = vectors

    def search(self, vector, threshold, limit):
        scores = {}
        for i, vs in self.vectors.items():
            best = max(_cosine(vector, v) for v in vs)
            if best >= threshold:
                scores[i] = best
        return dict(sorted(scores.items(), key=lambda kv: kv[1], reverse=True)[:limit])

    def encode_to(self, stream):
        stream.write(json.dumps({str(i): v for i, v in self.vectors.items()}).encode())

    def decode_from(self, stream):
        for i, vs in json.loads(stream.read() or b"{}").items():
            self.vectors[int(i)] = vs

    def close(self):
        pass


class FakeLLM:
    def __init__(self, failing_titles=()):
        self.failing = set(failing_titles)

    def embedding(self, text):
        words = text.lower().split()
        return [1.0 if w in words else 0.0 for w in WORDS]

    def embedding_labels(self, labels):
        title = labels.get("title")
        if title in self.failing:
            raise RuntimeError("embedding unavailable")
        return [self.embedding(title)]


def make_deps(chunks=None, llm=None):
    chunks = chunks or FakeChunkFactory()
    llm = llm or FakeLLM()
    deps = BlockDependencies(
        chunk_factory=chunks,
        primary_factory=lambda instance: FakePrimary(),
        inverted_factory=lambda instance: FakeInverted(),
        vector_factory=lambda instance: FakeVector(),
        llm_factory=lambda name: llm,
    )
    return deps, chunks


def create_config(tmp_path):
    return BlockConfig(
        dir=str(tmp_path / "block"),
        for_create=ForCreateConfig(start=T0, duration=timedelta(days=1), embedding_llm="embed"),
    )


def make_feed(feed_id, title, source="a", hours=1):
    return Feed(
        labels=Labels([Label("source", source), Label("title", title)]),
        time=T0 + timedelta(hours=hours),
        id=feed_id,
    )


def whole_day(**kwargs):
    return QueryOptions(start=T0, end=T0 + timedelta(days=1), **kwargs)


def titles(results):
    return sorted(r.feed.labels.get("title") for r in results)


@pytest.fixture
def filled(tmp_path):
    deps, chunks = make_deps()
    block = new_block("b", create_config(tmp_path), deps)
    block.append(make_feed(1, "go tips", "a", 1), make_feed(2, "python tips", "b", 2))
    block.flush()
    return block, deps, chunks


def test_create_writes_metadata_and_head_chunk(tmp_path):
    deps, _ = make_deps()
    block = new_block("b", create_config(tmp_path), deps)
    directory = tmp_path / "block"
    assert block.state is State.HOT
    meta = Metadata.from_json((directory / METADATA_FILENAME).read_text())
    assert meta == Metadata(T0, timedelta(days=1), "embed")
    assert [p.name for p in (directory / CHUNK_DIRNAME).iterdir()] == ["0"]
    assert block.start == T0
    assert block.end == T0 + timedelta(days=1)


def test_invalid_config_is_rejected(tmp_path):
    deps, _ = make_deps()
    with pytest.raises(ValueError, match="validate config: dir is required"):
        new_block("b", BlockConfig(), deps)
    with pytest.raises(ValueError, match="metadata file not found"):
        new_block("b", BlockConfig(dir=str(tmp_path)), deps)


def test_append_flush_query_and_exists(filled):
    block, _, _ = filled
    assert titles(block.query(whole_day())) == ["go tips", "python tips"]
    assert block.exists(1) is True
    assert block.exists(99) is False


def test_query_before_flush_is_empty(tmp_path):
    deps, _ = make_deps()
    block = new_block("b", create_config(tmp_path), deps)
    block.append(make_feed(1, "go tips"))
    assert block.query(whole_day()) == []
    assert block.flush() is True
    assert titles(block.query(whole_day())) == ["go tips"]


def test_label_filters(filled):
    block, _, _ = filled
    assert titles(block.query(whole_day(label_filters=["source=b"]))) == ["python tips"]
    assert titles(block.query(whole_day(label_filters=["source!=b"]))) == ["go tips"]
    assert block.query(whole_day(label_filters=["source=z"])) == []


def test_semantic_query(filled):
    block, _, _ = filled
    results = block.query(whole_day(query="python"))
    assert titles(results) == ["python tips"]
    assert results[0].score >= 0.55


def test_time_range_and_limit(tmp_path):
    deps, _ = make_deps()
    block = new_block("b", create_config(tmp_path), deps)
    block.append(*(make_feed(i, f"t{i}", hours=i) for i in (1, 2, 3)))
    block.flush()
    ranged = block.query(QueryOptions(start=T0, end=T0 + timedelta(hours=2)))
    assert titles(ranged) == ["t1"]
    limited = block.query(whole_day(limit=2))
    assert [r.time for r in limited] == [T0 + timedelta(hours=3), T0 + timedelta(hours=2)]


def test_invalid_query(filled):
    block, _, _ = filled
    with pytest.raises(ValueError, match="limit must be less than or equal to 500"):
        block.query(whole_day(limit=501))


def test_transform_to_cold(filled, tmp_path):
    block, _, _ = filled
    block.transform_to_cold()
    directory = tmp_path / "block"
    assert block.state is State.COLD
    archive = (directory / ARCHIVE_META_FILENAME).read_text()
    assert archive == ArchiveMetadata(feed_count=2).to_json()
    assert sorted(p.name for p in (directory / INDEX_DIRNAME).iterdir()) == [
        "inverted",
        "primary",
        "vector",
    ]
    assert titles(block.query(whole_day())) == ["go tips", "python tips"]
    assert block.exists(1) is True
    with pytest.raises(BlockError, match="block is not writable"):
        block.append(make_feed(3, "rust tips"))


def test_load_hot_block_replays_chunks(filled, tmp_path):
    _, deps, _ = filled
    loaded = new_block("b2", BlockConfig(dir=str(tmp_path / "block")), deps)
    assert loaded.state is State.HOT
    assert loaded.start == T0
    assert titles(loaded.query(whole_day(query="go"))) == ["go tips"]
    assert loaded.exists(2) is True


def test_load_cold_block_is_lazy(filled, tmp_path):
    block, deps, _ = filled
    block.transform_to_cold()
    loaded = new_block("b2", BlockConfig(dir=str(tmp_path / "block")), deps)
    assert loaded.state is State.COLD
    assert loaded.exists(1) is True
    assert titles(loaded.query(whole_day(label_filters=["source=a"]))) == ["go tips"]


def _prepare_dir(tmp_path, names):
    directory = tmp_path / "block"
    (directory / CHUNK_DIRNAME).mkdir(parents=True)
    (directory / METADATA_FILENAME).write_text(Metadata(T0, timedelta(days=1), "embed").to_json())
    for name in names:
        (directory / CHUNK_DIRNAME / name).touch()
    return directory


def test_chunk_id_gap_fails_load(tmp_path):
    directory = _prepare_dir(tmp_path, ["0", "2"])
    deps, _ = make_deps()
    with pytest.raises(BlockError, match="not continuous"):
        new_block("b", BlockConfig(dir=str(directory)), deps)


def test_bad_chunk_name_fails_load(tmp_path):
    directory = _prepare_dir(tmp_path, ["abc"])
    deps, _ = make_deps()
    with pytest.raises(BlockError, match="converting chunk file name"):
        new_block("b", BlockConfig(dir=str(directory)), deps)


def test_full_head_chunk_grows(tmp_path):
    deps, chunks = make_deps(chunks=FakeChunkFactory(ESTIMATED_CHUNK_FEEDS_LIMIT - 1))
    block = new_block("b", create_config(tmp_path), deps)
    block.append(make_feed(1, "go tips"), make_feed(2, "python tips"))
    block.flush()
    names = sorted(p.name for p in (tmp_path / "block" / CHUNK_DIRNAME).iterdir())
    assert names == ["0", "1"]
    assert chunks.created[0].readonly is True
    assert len(chunks.created[1].store) == 2
    assert titles(block.query(whole_day())) == ["go tips", "python tips"]


def test_all_embeddings_failing(tmp_path):
    deps, _ = make_deps(llm=FakeLLM(failing_titles={"go tips"}))
    block = new_block("b", create_config(tmp_path), deps)
    with pytest.raises(BlockError, match="fill embedding"):
        block.append(make_feed(1, "go tips"))
    assert block.flush() is True
    assert block.query(whole_day()) == []


def test_partial_embedding_failure_keeps_others(tmp_path):
    deps, _ = make_deps(llm=FakeLLM(failing_titles={"go tips"}))
    block = new_block("b", create_config(tmp_path), deps)
    block.append(make_feed(1, "go tips"), make_feed(2, "python tips"))
    block.flush()
    assert titles(block.query(whole_day())) == ["python tips"]
    assert block.exists(1) is False


def test_reconcile_unloads_idle_cold_block(filled, tmp_path):
    block, deps, chunks = filled
    block.transform_to_cold()
    loaded = new_block("b2", BlockConfig(dir=str(tmp_path / "block")), deps)
    assert loaded.exists(1) is True
    before = len(chunks.created)

    loaded.reconcile_state(datetime.now(timezone.utc))
    assert loaded.exists(1) is True
    assert len(chunks.created) == before

    loaded.reconcile_state(datetime.now(timezone.utc) + timedelta(hours=1))
    assert chunks.created[-1].closed is True
    assert loaded.exists(1) is True
    assert len(chunks.created) == before + 1


def test_reload(filled, tmp_path):
    block, _, _ = filled
    with pytest.raises(ValueError, match="cannot reload the dir"):
        block.reload(BlockConfig(dir=str(tmp_path / "other")))
    with pytest.raises(ValueError, match="cannot reload the for create config"):
        block.reload(BlockConfig(for_create=ForCreateConfig(start=T0)))
    block.reload(BlockConfig())
    assert block.config.dir == str(tmp_path / "block")
    assert block.config.flush_interval == DEFAULT_FLUSH_INTERVAL
    assert block.start == T0


def test_run_writes_in_background_and_close_stops(tmp_path):
    deps, chunks = make_deps()
    config = create_config(tmp_path)
    config.flush_interval = timedelta(milliseconds=10)
    block = new_block("b", config, deps)
    runner = threading.Thread(target=block.run, daemon=True)
    runner.start()
    assert block.ready.wait(5)

    block.append(make_feed(1, "go tips"))
    deadline = time.monotonic() + 5
    while not block.exists(1) and time.monotonic() < deadline:
        time.sleep(0.01)
    assert block.exists(1) is True

    block.close()
    runner.join(5)
    assert not runner.is_alive()
    assert chunks.created[0].closed is True


def test_clear_on_disk(filled, tmp_path):
    block, deps, _ = filled
    block.clear_on_disk()
    assert not (tmp_path / "block").exists()
    with pytest.raises(ValueError, match="metadata file not found"):
        new_block("b2", BlockConfig(dir=str(tmp_path / "block")), deps)
    block.clear_on_disk()
    assert not (tmp_path / "block").exists()


def test_hit_time_range_condition(filled):
    block, _, _ = filled
    overlapping = QueryOptions(start=T0 + timedelta(hours=12), end=T0 + timedelta(hours=36))
    disjoint = QueryOptions(start=T0 + timedelta(days=2), end=T0 + timedelta(days=3))
    assert overlapping.hit_time_range_condition(block) is True
    assert disjoint.hit_time_range_condition(block) is False