import sys
import threading
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from store import EmbeddingStore


@pytest.fixture()
def store(tmp_path):
    s = EmbeddingStore(tmp_path / "embeddings.db")
    yield s
    s.close()


def _vec(*values):
    return np.array(values, dtype=np.float32)


def test_put_and_get(store):
    store.put("a", _vec(1, 2, 3))
    assert store.contains("a")
    np.testing.assert_array_equal(store.get("a"), _vec(1, 2, 3))
    assert store.get("missing") is None
    assert not store.contains("missing")


def test_get_all_in_insertion_order(store):
    for item_id in ["c", "a", "b"]:
        store.put(item_id, _vec(1, 0))
    assert [item_id for item_id, _ in store.get_all()] == ["c", "a", "b"]


def test_overwrite_keeps_position(store):
    store.put("a", _vec(1, 0))
    store.put("b", _vec(0, 1))
    store.put("a", _vec(0.5, 0.5))

    entries = store.get_all()
    assert [item_id for item_id, _ in entries] == ["a", "b"]
    np.testing.assert_array_equal(entries[0][1], _vec(0.5, 0.5))
    assert store.count() == 2


def test_delete(store):
    store.put("a", _vec(1))
    store.put("b", _vec(2))
    assert store.delete_by_id("a") is True
    assert store.delete_by_id("a") is False
    assert store.ids() == {"b"}
    assert store.count() == 1


def test_clear(store):
    for i in range(4):
        store.put(f"p{i}", _vec(i))
    assert store.clear() == 4
    assert store.count() == 0
    assert store.get_all() == []


def test_rejects_non_vector(store):
    with pytest.raises(ValueError):
        store.put("a", np.zeros((2, 2), dtype=np.float32))
    assert store.count() == 0


def test_vectors_stored_as_float32(store):
    store.put("a", [0.1, 0.2])
    v = store.get("a")
    assert v.dtype == np.float32
    np.testing.assert_allclose(v, [0.1, 0.2], rtol=1e-6)


def test_returned_vectors_are_writable_copies(store):
    store.put("a", _vec(1, 2))
    v = store.get("a")
    v[0] = 99
    np.testing.assert_array_equal(store.get("a"), _vec(1, 2))


def test_persists_across_reopen(tmp_path):
    db = tmp_path / "sub" / "embeddings.db"
    s = EmbeddingStore(db)
    s.put("x", _vec(1, 2))
    s.put("y", _vec(3, 4))
    s.close()

    reopened = EmbeddingStore(db)
    assert reopened.ids() == {"x", "y"}
    assert [item_id for item_id, _ in reopened.get_all()] == ["x", "y"]
    np.testing.assert_array_equal(reopened.get("y"), _vec(3, 4))
    reopened.close()


def test_in_memory_store():
    s = EmbeddingStore(":memory:")
    s.put("a", _vec(1))
    assert s.count() == 1
    s.close()


def test_corrupt_row_is_skipped(store):
    store.put("good", _vec(1, 2))
    store.put("bad", _vec(1, 2))
    # dim no longer matches the blob length
    store._conn.execute("UPDATE embedding SET dim = 5 WHERE item_id = 'bad'")
    store._conn.commit()
    assert [item_id for item_id, _ in store.get_all()] == ["good"]


def test_concurrent_writes_and_reads_never_tear(store):
    dim = 256
    writes = 200
    errors = []

    def writer():
        for i in range(writes):
            store.put(f"p{i % 20}", np.full(dim, float(i), dtype=np.float32))

    def reader():
        for _ in range(writes):
            for item_id, v in store.get_all():
                # a torn vector would mix values from two writes
                if v.shape != (dim,) or not np.all(v == v[0]):
                    errors.append(item_id)

    threads = [threading.Thread(target=writer), threading.Thread(target=reader), threading.Thread(target=reader)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert store.count() == 20
