from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from core.errors import SizeLimitExceeded
from core.types import ContextWriteMode
from storage.blob import BlobNotFound, InMemoryBlobStore, LocalBlobStore
from storage.context_store import ContextStore, merge_append, summarize

APPEND = ContextWriteMode.APPEND


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def store():
    return ContextStore(InMemoryBlobStore())


def test_append_concatenates_lists(store):
    store.write("r1", "a1", "k", [{"x": 1}], APPEND)
    store.write("r1", "a1", "k", [{"x": 2}], APPEND)

    record = store.read("r1", "a1", "k")
    assert record.data == [{"x": 1}, {"x": 2}]
    assert record.version == 2


def test_append_joins_strings(store):
    store.write("r1", "a1", "notes", "first", APPEND)
    store.write("r1", "a1", "notes", "second", APPEND)
    assert store.read("r1", "a1", "notes").data == "first\n\nsecond"


def test_append_to_missing_key_is_a_plain_write(store):
    store.write("r1", "a1", "k", {"a": 1}, APPEND)
    assert store.read("r1", "a1", "k").data == {"a": 1}


def test_overwrite_keeps_one_active_version(store):
    store.write("r1", "a1", "k", {"v": 1})
    result = store.write("r1", "a1", "k", {"v": 2})

    assert result.version == 2
    assert store.read("r1", "a1", "k").data == {"v": 2}
    versions = store.versions("r1", "a1", "k")
    assert [v["version"] for v in versions] == [2, 1]
    assert [v["is_active"] for v in versions] == [True, False]


def test_read_specific_version(store):
    store.write("r1", "a1", "k", "old")
    store.write("r1", "a1", "k", "new")
    assert store.read("r1", "a1", "k", version=1).data == "old"
    assert store.read("r1", "a1", "k", version=9) is None


def test_summary_only_skips_blob_store(store):
    store.write("r1", "a1", "k", {"alpha": 1, "beta": 2})
    store.blob_store.delete(store.blob_store.list())

    record = store.read("r1", "a1", "k", summary_only=True)
    assert record.data is None
    assert record.summary == "Object with keys: alpha, beta"


def test_read_without_key_lists_newest_first():
    clock = FakeClock()
    store = ContextStore(clock=clock)
    store.write("r1", "a1", "first", "1")
    clock.advance(seconds=1)
    store.write("r1", "a2", "second", "2")
    store.write("r2", "a1", "other", "3")

    records = store.read("r1")
    assert [r.context_key for r in records] == ["second", "first"]
    assert [r.context_key for r in store.read("r1", agent_id="a1")] == ["first"]


def test_missing_key_reads_none(store):
    assert store.read("r1", "a1", "nothing") is None


def test_size_limit_rejects_without_consuming_version():
    store = ContextStore(max_bytes=32)
    with pytest.raises(SizeLimitExceeded) as exc_info:
        store.write("r1", "a1", "k", "x" * 100)
    assert exc_info.value.size_bytes == 100

    result = store.write("r1", "a1", "k", "small")
    assert result.version == 1


def test_size_limit_applies_to_merged_payload():
    store = ContextStore(max_bytes=11)
    store.write("r1", "a1", "k", "12345", APPEND)
    with pytest.raises(SizeLimitExceeded):
        store.write("r1", "a1", "k", "67890", APPEND)
    assert store.read("r1", "a1", "k").data == "12345"


def test_storage_path_layout(store):
    result = store.write("r1", "a1", "micro_output_1_p1", [1])
    assert result.storage_path.startswith("r1/a1/micro_output_1_p1_v1_")
    assert result.storage_path.endswith(".json")
    assert store.write("r1", "a1", "text", "hi").storage_path.endswith(".txt")


def test_sweep_removes_only_old_inactive_versions():
    clock = FakeClock()
    store = ContextStore(clock=clock)
    store.write("r1", "a1", "k", "v1")
    store.write("r1", "a1", "k", "v2")
    clock.advance(days=31)
    store.write("r1", "a1", "k", "v3")

    removed = store.sweep(older_than=timedelta(days=30))

    assert removed == 2
    assert [v["version"] for v in store.versions("r1", "a1", "k")] == [3]
    assert store.read("r1", "a1", "k").data == "v3"
    assert len(store.blob_store.list()) == 1


def test_sweep_never_removes_active_version():
    clock = FakeClock()
    store = ContextStore(clock=clock)
    store.write("r1", "a1", "k", "only")
    clock.advance(days=400)
    assert store.sweep(older_than=timedelta(days=30)) == 0
    assert store.read("r1", "a1", "k").data == "only"


def test_sweep_scoped_to_run():
    clock = FakeClock()
    store = ContextStore(clock=clock)
    for run_id in ("r1", "r2"):
        store.write(run_id, "a1", "k", "old")
        store.write(run_id, "a1", "k", "new")
    clock.advance(days=31)

    assert store.sweep(run_id="r1") == 1
    assert len(store.versions("r2", "a1", "k")) == 2


def test_concurrent_appends_lose_nothing(store):
    def append(i):
        store.write("r1", "a1", "k", [i], APPEND)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(append, range(40)))

    record = store.read("r1", "a1", "k")
    assert sorted(record.data) == list(range(40))
    assert record.version == 40
    assert sum(v["is_active"] for v in store.versions("r1", "a1", "k")) == 1


def test_local_blob_store_round_trip(tmp_path):
    store = ContextStore(LocalBlobStore(str(tmp_path)))
    store.write("r1", "a1", "k", {"v": 1})
    store.write("r1", "a1", "k", {"v": 2})

    assert store.read("r1", "a1", "k").data == {"v": 2}
    assert len(list((tmp_path / "r1" / "a1").iterdir())) == 2


def test_local_blob_store_rejects_escaping_paths(tmp_path):
    blobs = LocalBlobStore(str(tmp_path))
    with pytest.raises(ValueError):
        blobs.put("../outside.txt", b"x")
    with pytest.raises(BlobNotFound):
        blobs.get("missing.txt")


def test_delete_run_removes_all_versions_and_blobs():
    blobs = InMemoryBlobStore()
    store = ContextStore(blobs)
    store.write("r1", "a1", "k", {"v": 1})
    store.write("r1", "a1", "k", {"v": 2})
    store.write("r1", "a2", "micro_output_1_10.1000/xyz", {"v": 1})
    store.write("r2", "a1", "k", {"v": 1})

    assert store.delete_run("r1") == 3

    assert store.read("r1") == []
    assert store.read("r2", "a1", "k").data == {"v": 1}
    assert len(blobs.list()) == 1
    assert store.delete_run("r1") == 0


class TestHelpers:
    def test_summarize(self):
        assert summarize("x" * 300) == "x" * 200 + "..."
        assert summarize([1, 2, 3]) == "List with 3 items"
        assert summarize({k: 1 for k in "abcdefg"}) == "Object with keys: a, b, c, d, e"

    def test_merge_append_mismatched_types_overwrites(self):
        assert merge_append("text", [1]) == [1]
        assert merge_append({"a": 1, "b": 1}, {"b": 2}) == {"a": 1, "b": 2}
