"""Incremental indexer: embed every library item the store does not have yet.

    idle -> scanning -> diffing -> indexing -> complete
                                     |
                                     +-> cancelled   (cancel() between items)
    any state -> error                               (library or store unreachable)

The store is the checkpoint. A run that dies halfway leaves the unprocessed
ids missing, and the next run's diff picks them up. Items that fail to decode
or embed are skipped and likewise retried next time.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Iterator

from embedder import Embedder
from media_library import MediaLibrary
from store import EmbeddingStore

logger = logging.getLogger(__name__)


class IndexingStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    INDEXING = "indexing"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class IndexingProgress:
    status: IndexingStatus
    total_items: int = 0  # items the library listed
    indexed_count: int = 0  # embeddings held; the whole store once complete
    library_indexed: int = 0  # listed items that have an embedding
    total_new: int = 0  # items missing from the store at diff time
    processed: int = 0  # missing items attempted so far
    failed: int = 0
    message: str = ""

    @property
    def fraction(self) -> float:
        if self.total_new == 0:
            return 1.0
        return self.processed / self.total_new

    @property
    def done(self) -> bool:
        return self.status in (IndexingStatus.COMPLETE, IndexingStatus.CANCELLED, IndexingStatus.ERROR)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["fraction"] = self.fraction
        return data


ProgressCallback = Callable[[IndexingProgress], None]


class Indexer:
    def __init__(self, library: MediaLibrary, embedder: Embedder, store: EmbeddingStore):
        self._library = library
        self._embedder = embedder
        self._store = store
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        self._last = IndexingProgress(IndexingStatus.IDLE)

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    @property
    def last_progress(self) -> IndexingProgress:
        return self._last

    def cancel(self) -> None:
        """Ask the active run to stop before its next item."""
        if self.running:
            logger.info("Indexing cancellation requested")
            self._cancel.set()

    def missing_ids(self) -> list[str]:
        """Library items without an embedding, in enumeration order."""
        indexed = self._store.ids()
        return [i for i in self._library.list_item_ids() if i not in indexed]

    def get_stats(self) -> dict:
        return {"indexed": self._store.count(), "total": len(self._library.list_item_ids())}

    def _emit(self, progress: IndexingProgress) -> IndexingProgress:
        self._last = progress
        return progress

    def start_indexing(self) -> Iterator[IndexingProgress]:
        """Run one indexing pass, yielding progress after every state change and item.

        Yields nothing if another pass is already running.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("Indexing already in progress, ignoring start request")
            return
        try:
            self._cancel.clear()
            yield from self._run()
        finally:
            self._cancel.clear()
            self._run_lock.release()

    def _run(self) -> Iterator[IndexingProgress]:
        start = time.time()
        yield self._emit(IndexingProgress(IndexingStatus.SCANNING, message="Scanning library"))

        try:
            scanned = list(dict.fromkeys(self._library.list_item_ids()))
        except Exception as exc:
            logger.error("Media library unavailable: %s", exc, exc_info=True)
            yield self._emit(IndexingProgress(IndexingStatus.ERROR, message=f"Error: {exc}"))
            return

        total = len(scanned)
        yield self._emit(IndexingProgress(
            IndexingStatus.DIFFING, total_items=total, message="Checking store for existing embeddings",
        ))

        try:
            indexed = self._store.ids()
        except Exception as exc:
            logger.error("Embedding store unavailable: %s", exc, exc_info=True)
            yield self._emit(IndexingProgress(IndexingStatus.ERROR, total_items=total, message=f"Error: {exc}"))
            return

        missing = [item_id for item_id in scanned if item_id not in indexed]
        already = total - len(missing)
        logger.info("Found %d items, %d already indexed, %d new", total, already, len(missing))

        if not missing:
            yield self._emit(IndexingProgress(
                IndexingStatus.COMPLETE,
                total_items=total,
                indexed_count=total,
                library_indexed=total,
                message=f"All {total} images are already indexed",
            ))
            return

        added = 0
        failed = 0
        for n, item_id in enumerate(missing):
            if self._cancel.is_set():
                logger.info("Indexing cancelled after %d of %d items", n, len(missing))
                yield self._emit(IndexingProgress(
                    IndexingStatus.CANCELLED,
                    total_items=total,
                    indexed_count=already + added,
                    library_indexed=already + added,
                    total_new=len(missing),
                    processed=n,
                    failed=failed,
                    message=f"Cancelled after {added} new images",
                ))
                return

            try:
                image = self._library.load_pixels(item_id)
                vector = self._embedder.encode_image(image)
                self._store.put(item_id, vector)
                added += 1
            except Exception:
                failed += 1
                logger.warning("Failed to index %s", item_id, exc_info=True)

            yield self._emit(IndexingProgress(
                IndexingStatus.INDEXING,
                total_items=total,
                indexed_count=already + added,
                library_indexed=already + added,
                total_new=len(missing),
                processed=n + 1,
                failed=failed,
                message=f"Indexing image {n + 1} of {len(missing)}",
            ))

        try:
            stored = self._store.count()
        except Exception as exc:
            logger.error("Embedding store unavailable: %s", exc, exc_info=True)
            yield self._emit(IndexingProgress(IndexingStatus.ERROR, total_items=total, message=f"Error: {exc}"))
            return

        elapsed = time.time() - start
        logger.info("Indexing complete: +%d new, %d failed, %d stored (%.1fs)", added, failed, stored, elapsed)
        yield self._emit(IndexingProgress(
            IndexingStatus.COMPLETE,
            total_items=total,
            indexed_count=stored,
            library_indexed=already + added,
            total_new=len(missing),
            processed=len(missing),
            failed=failed,
            message=f"Indexing complete! Added {added} new images",
        ))

    def run(self, progress_callback: ProgressCallback | None = None) -> IndexingProgress | None:
        """Drain start_indexing(). Returns the final progress, or None if a run was active."""
        last = None
        for progress in self.start_indexing():
            last = progress
            if progress_callback:
                progress_callback(progress)
        return last

    def prune(self) -> dict:
        """Delete embeddings for items the library no longer lists.

        Never called automatically; items on a temporarily missing source
        stay indexed until this is invoked.
        """
        current = set(self._library.list_item_ids())
        stale = [i for i in self._store.ids() if i not in current]
        for item_id in stale:
            self._store.delete_by_id(item_id)
        logger.info("Pruned %d embeddings, %d remain", len(stale), self._store.count())
        return {"pruned": len(stale), "total": self._store.count()}
