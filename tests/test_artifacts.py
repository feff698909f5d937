from __future__ import annotations

import threading

import pytest

from gateci.artifacts import BINARY, JSON, ArtifactStore
from gateci.errors import ArtifactNotFound, DuplicateArtifact


def test_put_then_get(store):
    info = store.put("run1", "build", "app.tar", b"payload")
    assert info.size == 7
    assert info.content_type == BINARY
    assert store.get("run1", "build", "app.tar") == b"payload"
    assert store.info("run1", "build", "app.tar") == info
    assert store.exists("run1", "build", "app.tar")


def test_content_type_is_guessed_from_the_name(store):
    assert store.put("run1", "sast", "reports/sast.json", b"{}").content_type == JSON


def test_second_write_to_same_key_is_rejected_and_first_kept(store):
    store.put("run1", "build", "app.tar", b"first")
    with pytest.raises(DuplicateArtifact):
        store.put("run1", "build", "app.tar", b"second")
    assert store.get("run1", "build", "app.tar") == b"first"


def test_same_name_in_other_run_or_stage_is_a_different_key(store):
    store.put("run1", "build", "out", b"a")
    store.put("run2", "build", "out", b"b")
    store.put("run1", "scan", "out", b"c")
    assert store.get("run2", "build", "out") == b"b"
    assert store.get("run1", "scan", "out") == b"c"


def test_concurrent_puts_to_one_key_have_exactly_one_winner(tmp_path):
    store = ArtifactStore(tmp_path / "a")
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def writer(i):
        barrier.wait()
        try:
            store.put("run", "stage", "name", f"content-{i}".encode())
            result = "ok"
        except DuplicateArtifact:
            result = "dup"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 7


def test_missing_artifact_raises_not_found(store):
    with pytest.raises(ArtifactNotFound):
        store.get("run1", "build", "nope")


def test_materialize_copies_content(store, tmp_path):
    store.put("run1", "build", "app.tar", b"bytes")
    dest = store.materialize("run1", "build", "app.tar", tmp_path / "in" / "build" / "app.tar")
    assert dest.read_bytes() == b"bytes"


def test_identical_content_is_stored_once(store):
    a = store.put("run1", "a", "x", b"same")
    b = store.put("run1", "b", "y", b"same")
    assert a.digest == b.digest
    assert len(list((store.root / "blobs").glob("*/*"))) == 1


def test_list_and_evict(store):
    store.put("run1", "a", "x", b"shared")
    store.put("run1", "a", "only-run1", b"mine")
    store.put("run2", "a", "x", b"shared")

    assert [i.name for i in store.list("run1")] == ["only-run1", "x"]
    assert store.runs() == ["run1", "run2"]

    assert store.evict("run1") == 2
    assert store.list("run1") == []
    assert store.runs() == ["run2"]
    # blob still referenced by run2 survives garbage collection
    assert store.get("run2", "a", "x") == b"shared"
    assert len(list((store.root / "blobs").glob("*/*"))) == 1
