import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from indexer import Indexer, IndexingProgress, IndexingStatus
from media_library import MediaLibrary, MediaLibraryError
from store import EmbeddingStore


class _FakeLibrary(MediaLibrary):
    def __init__(self, ids, broken=(), error=None):
        self.ids = list(ids)
        self.broken = set(broken)
        self.error = error
        self.loaded = []

    def list_item_ids(self):
        if self.error:
            raise self.error
        return list(self.ids)

    def load_pixels(self, item_id):
        if item_id in self.broken:
            raise OSError(f"cannot decode {item_id}")
        self.loaded.append(item_id)
        return Image.new("RGB", (8, 8))


def _mock_embedder(dim: int = 4):
    embedder = MagicMock()
    embedder.embedding_dim = dim

    def encode_image(image):
        vec = np.random.randn(dim).astype(np.float32)
        return vec / np.linalg.norm(vec)

    embedder.encode_image = MagicMock(side_effect=encode_image)
    return embedder


@pytest.fixture()
def store(tmp_path):
    s = EmbeddingStore(tmp_path / "embeddings.db")
    yield s
    s.close()


def test_indexes_every_item(store):
    library = _FakeLibrary([f"p{i}" for i in range(5)])
    indexer = Indexer(library, _mock_embedder(), store)

    final = indexer.run()

    assert final.status == IndexingStatus.COMPLETE
    assert final.total_items == 5
    assert final.indexed_count == 5
    assert final.total_new == 5
    assert final.processed == 5
    assert final.failed == 0
    assert store.ids() == {f"p{i}" for i in range(5)}
    assert final.message == "Indexing complete! Added 5 new images"


def test_failed_item_is_skipped_and_retried_later(store):
    library = _FakeLibrary([f"p{i}" for i in range(1, 6)], broken={"p3"})
    indexer = Indexer(library, _mock_embedder(), store)

    final = indexer.run()

    assert final.status == IndexingStatus.COMPLETE
    assert final.failed == 1
    assert final.indexed_count == 4
    assert store.count() == 4
    assert not store.contains("p3")
    assert indexer.missing_ids() == ["p3"]

    # fixed on the next run
    library.broken.clear()
    final = indexer.run()
    assert final.total_new == 1
    assert final.indexed_count == 5
    assert store.contains("p3")


def test_second_run_is_a_no_op(store):
    library = _FakeLibrary(["a", "b", "c"])
    embedder = _mock_embedder()
    indexer = Indexer(library, embedder, store)
    indexer.run()
    calls = embedder.encode_image.call_count
    before = {item_id: v.tolist() for item_id, v in store.get_all()}

    final = indexer.run()

    assert embedder.encode_image.call_count == calls
    assert {item_id: v.tolist() for item_id, v in store.get_all()} == before
    assert indexer.missing_ids() == []
    assert final.status == IndexingStatus.COMPLETE
    assert final.total_new == 0
    assert final.indexed_count == final.total_items == 3
    assert final.message == "All 3 images are already indexed"


def test_only_new_items_are_embedded(store):
    store.put("old", np.ones(4, dtype=np.float32))
    library = _FakeLibrary(["new1", "old", "new2"])
    indexer = Indexer(library, _mock_embedder(), store)

    final = indexer.run()

    assert library.loaded == ["new1", "new2"]
    assert final.total_new == 2
    assert final.indexed_count == 3


def test_state_sequence(store):
    library = _FakeLibrary(["a", "b"])
    indexer = Indexer(library, _mock_embedder(), store)

    states = [p.status for p in indexer.start_indexing()]

    assert states == [
        IndexingStatus.SCANNING,
        IndexingStatus.DIFFING,
        IndexingStatus.INDEXING,
        IndexingStatus.INDEXING,
        IndexingStatus.COMPLETE,
    ]


def test_progress_counts_are_monotonic(store):
    library = _FakeLibrary([f"p{i}" for i in range(6)], broken={"p2"})
    indexer = Indexer(library, _mock_embedder(), store)

    steps = [p for p in indexer.start_indexing() if p.status == IndexingStatus.INDEXING]

    assert [p.processed for p in steps] == [1, 2, 3, 4, 5, 6]
    assert [p.indexed_count for p in steps] == [1, 2, 2, 3, 4, 5]
    assert all(p.indexed_count <= p.total_items for p in steps)
    assert steps[0].message == "Indexing image 1 of 6"


def test_duplicate_ids_are_counted_once(store):
    library = _FakeLibrary(["a", "b", "a"])
    final = Indexer(library, _mock_embedder(), store).run()
    assert final.total_items == 2
    assert library.loaded == ["a", "b"]


def test_empty_library_completes(store):
    final = Indexer(_FakeLibrary([]), _mock_embedder(), store).run()
    assert final.status == IndexingStatus.COMPLETE
    assert final.total_items == 0
    assert final.indexed_count == 0


def test_library_error(store):
    library = _FakeLibrary([], error=MediaLibraryError("drive unplugged"))
    indexer = Indexer(library, _mock_embedder(), store)

    states = list(indexer.start_indexing())

    assert [p.status for p in states] == [IndexingStatus.SCANNING, IndexingStatus.ERROR]
    assert "drive unplugged" in states[-1].message
    assert indexer.last_progress.status == IndexingStatus.ERROR
    assert not indexer.running


def test_store_error_while_diffing(store):
    library = _FakeLibrary(["a", "b"])
    embedder = _mock_embedder()
    indexer = Indexer(library, embedder, store)
    store.ids = MagicMock(side_effect=RuntimeError("database is locked"))

    final = indexer.run()

    assert final.status == IndexingStatus.ERROR
    assert final.total_items == 2
    assert "database is locked" in final.message
    assert indexer.last_progress.status == IndexingStatus.ERROR
    assert not indexer.running
    embedder.encode_image.assert_not_called()


def test_final_count_includes_vectors_of_vanished_items(store):
    store.put("gone", np.ones(4, dtype=np.float32))
    library = _FakeLibrary(["a", "b"])

    final = Indexer(library, _mock_embedder(), store).run()

    assert final.status == IndexingStatus.COMPLETE
    assert final.indexed_count == store.count() == 3
    assert final.library_indexed == 2
    assert final.total_items == 2


def test_cancel_stops_between_items(store):
    library = _FakeLibrary([f"p{i}" for i in range(10)])
    indexer = Indexer(library, _mock_embedder(), store)

    seen = []
    for progress in indexer.start_indexing():
        seen.append(progress)
        if progress.status == IndexingStatus.INDEXING and progress.processed == 3:
            indexer.cancel()

    final = seen[-1]
    assert final.status == IndexingStatus.CANCELLED
    assert final.processed == 3
    assert store.count() == 3
    assert not indexer.running

    # the next run resumes with the remaining items
    resumed = indexer.run()
    assert resumed.status == IndexingStatus.COMPLETE
    assert resumed.total_new == 7
    assert store.count() == 10


def test_cancel_when_idle_does_not_affect_next_run(store):
    indexer = Indexer(_FakeLibrary(["a"]), _mock_embedder(), store)
    indexer.cancel()
    assert indexer.run().status == IndexingStatus.COMPLETE


def test_concurrent_start_is_ignored(store):
    library = _FakeLibrary(["a", "b"])
    indexer = Indexer(library, _mock_embedder(), store)

    first = indexer.start_indexing()
    assert next(first).status == IndexingStatus.SCANNING
    assert indexer.running

    assert list(indexer.start_indexing()) == []
    assert indexer.run() is None

    rest = list(first)
    assert rest[-1].status == IndexingStatus.COMPLETE
    assert not indexer.running


def test_runs_from_two_threads_do_not_double_embed(store):
    gate = threading.Event()

    class _SlowLibrary(_FakeLibrary):
        def load_pixels(self, item_id):
            gate.wait(timeout=5)
            return super().load_pixels(item_id)

    library = _SlowLibrary([f"p{i}" for i in range(3)])
    embedder = _mock_embedder()
    indexer = Indexer(library, embedder, store)

    results = []
    worker = threading.Thread(target=lambda: results.append(indexer.run()))
    worker.start()
    for _ in range(500):
        if indexer.running:
            break
        time.sleep(0.01)
    assert indexer.running

    # a second caller while the first run is blocked mid-item
    assert indexer.run() is None

    gate.set()
    worker.join()

    assert results[0].status == IndexingStatus.COMPLETE
    assert embedder.encode_image.call_count == 3


def test_progress_callback(store):
    received = []
    Indexer(_FakeLibrary(["a"]), _mock_embedder(), store).run(received.append)
    assert [p.status for p in received][-1] == IndexingStatus.COMPLETE
    assert len(received) == 4


def test_prune_removes_items_no_longer_listed(store):
    library = _FakeLibrary(["a", "b", "c"])
    indexer = Indexer(library, _mock_embedder(), store)
    indexer.run()

    library.ids = ["a"]
    assert indexer.prune() == {"pruned": 2, "total": 1}
    assert store.ids() == {"a"}


def test_get_stats(store):
    library = _FakeLibrary(["a", "b", "c"], broken={"c"})
    indexer = Indexer(library, _mock_embedder(), store)
    assert indexer.get_stats() == {"indexed": 0, "total": 3}
    indexer.run()
    assert indexer.get_stats() == {"indexed": 2, "total": 3}


def test_progress_fraction_and_dict():
    p = IndexingProgress(IndexingStatus.INDEXING, total_items=10, total_new=4, processed=1)
    assert p.fraction == 0.25
    assert not p.done

    d = IndexingProgress(IndexingStatus.COMPLETE).to_dict()
    assert d["status"] == "complete"
    assert d["fraction"] == 1.0
    assert IndexingProgress(IndexingStatus.COMPLETE).done
