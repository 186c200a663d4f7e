"""HTTP service daemon for photo-search.

Owns the embedding store, the indexer, the tokenizer and the ONNX encoders.
The MCP server and other callers connect as thin clients.

    uv run python service.py

Startup order:
    1. Write PID, start uvicorn  -- HTTP is up immediately
    2. Background thread: open the store, build the vocabulary, load encoders
    Handlers return {"loading": true} until startup finishes. If the
    vocabulary or the models cannot be loaded, search and indexing answer
    503 with the startup error; folder management keeps working.
"""

import asyncio
import json
import logging
import os
import signal
import sys
import threading

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.routing import Route

from config import (
    BPE_FILE,
    CONFIG_FILE,
    DEFAULT_LIMIT,
    DEFAULT_THRESHOLD,
    MODELS_DIR,
    NICE_VALUE,
    SERVICE_HOST,
    SERVICE_PID_FILE,
    SERVICE_PORT,
    STORE_DB,
)
from embedder import load_embedder
from indexer import Indexer
from media_library import FolderLibrary
from search import PhotoSearch
from store import EmbeddingStore
from tokenizer import ClipTokenizer
from vocab import Vocabulary, VocabularyError

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

_library: FolderLibrary | None = None
_store: EmbeddingStore | None = None
_indexer: Indexer | None = None
_search: PhotoSearch | None = None
_startup_error: str | None = None
_ready = threading.Event()


def _startup() -> None:
    """Open the store and library, then build the search stack."""
    global _library, _store, _indexer, _search, _startup_error

    _library = FolderLibrary(CONFIG_FILE)
    _store = EmbeddingStore(STORE_DB)
    logger.info("Store opened: %d embeddings", _store.count())

    try:
        vocab = Vocabulary.load(BPE_FILE)
    except VocabularyError as exc:
        _startup_error = str(exc)
        logger.error("Search unavailable: %s", exc)
        return

    embedder = load_embedder(MODELS_DIR)
    if embedder is None:
        _startup_error = f"No exported CLIP models in {MODELS_DIR}; run export.py first"
        logger.error("Search unavailable: %s", _startup_error)
        return
    embedder.load()

    _indexer = Indexer(_library, embedder, _store)
    _search = PhotoSearch(ClipTokenizer(vocab), embedder, _store)
    logger.info("Search ready")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


_LOADING = JSONResponse({"loading": True}, status_code=503)


def _not_loaded() -> JSONResponse | None:
    """Response for requests that need the store and library, or None if they are open."""
    if not _ready.is_set():
        return _LOADING
    if _store is None or _library is None:
        return JSONResponse({"error": _startup_error or "Service failed to start"}, status_code=503)
    return None


def _unavailable() -> JSONResponse | None:
    """Response for requests that need the search stack, or None if it is up."""
    resp = _not_loaded()
    if resp is not None:
        return resp
    if _search is None or _indexer is None:
        return JSONResponse({"error": _startup_error or "Search unavailable"}, status_code=503)
    return None


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True, "ready": _ready.is_set(), "error": _startup_error})


async def status(request: Request) -> JSONResponse:
    resp = _not_loaded()
    if resp is not None:
        return resp
    data = {
        "folders": _library.list_folders(),
        "indexed": _store.count(),
        "error": _startup_error,
    }
    if _indexer is not None:
        data["running"] = _indexer.running
        data["progress"] = _indexer.last_progress.to_dict()
    return JSONResponse(data)


async def search(request: Request) -> JSONResponse:
    resp = _unavailable()
    if resp is not None:
        return resp
    body = await request.json()
    query = body["query"]
    limit = int(body.get("limit", DEFAULT_LIMIT))
    threshold = float(body.get("threshold", DEFAULT_THRESHOLD))

    outcome = await asyncio.to_thread(_search.search, query, limit, threshold)
    return JSONResponse(outcome.to_dict())


async def stats(request: Request) -> JSONResponse:
    resp = _unavailable()
    if resp is not None:
        return resp
    return JSONResponse(await asyncio.to_thread(_indexer.get_stats))


async def index(request: Request) -> JSONResponse:
    resp = _unavailable()
    if resp is not None:
        return resp
    final = await asyncio.to_thread(_indexer.run)
    if final is None:
        return JSONResponse({"running": True, "progress": _indexer.last_progress.to_dict()})
    return JSONResponse(final.to_dict())


async def index_stream(request: Request) -> StreamingResponse:
    """SSE endpoint that streams indexing progress as it happens."""
    resp = _unavailable()
    if resp is not None:
        return resp

    async def generate():
        queue: asyncio.Queue = asyncio.Queue()
        loop = asyncio.get_running_loop()

        def _run():
            try:
                for progress in _indexer.start_indexing():
                    loop.call_soon_threadsafe(queue.put_nowait, progress)
            except Exception as exc:
                loop.call_soon_threadsafe(queue.put_nowait, exc)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        loop.run_in_executor(None, _run)

        while True:
            item = await queue.get()
            if item is None:
                break
            if isinstance(item, Exception):
                raise item
            yield f"data: {json.dumps(item.to_dict())}\n\n"

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def cancel(request: Request) -> JSONResponse:
    resp = _unavailable()
    if resp is not None:
        return resp
    running = _indexer.running
    _indexer.cancel()
    return JSONResponse({"cancelled": running})


async def prune(request: Request) -> JSONResponse:
    resp = _unavailable()
    if resp is not None:
        return resp
    return JSONResponse(await asyncio.to_thread(_indexer.prune))


async def delete(request: Request) -> JSONResponse:
    resp = _not_loaded()
    if resp is not None:
        return resp
    body = await request.json()
    deleted = _store.delete_by_id(body["id"])
    return JSONResponse({"deleted": deleted, "indexed": _store.count()})


async def list_folders(request: Request) -> JSONResponse:
    resp = _not_loaded()
    if resp is not None:
        return resp
    return JSONResponse(_library.list_folders())


async def add_folder(request: Request) -> PlainTextResponse:
    if not _ready.is_set() or _library is None:
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    return PlainTextResponse(_library.add_folder(body["path"]))


async def remove_folder(request: Request) -> PlainTextResponse:
    if not _ready.is_set() or _library is None:
        return PlainTextResponse("Service is loading, try again shortly.", status_code=503)
    body = await request.json()
    return PlainTextResponse(_library.remove_folder(body["path"]))


routes = [
    Route("/health", health, methods=["GET"]),
    Route("/status", status, methods=["GET"]),
    Route("/search", search, methods=["POST"]),
    Route("/stats", stats, methods=["GET"]),
    Route("/index", index, methods=["POST"]),
    Route("/index-stream", index_stream, methods=["POST"]),
    Route("/cancel", cancel, methods=["POST"]),
    Route("/prune", prune, methods=["POST"]),
    Route("/delete", delete, methods=["POST"]),
    Route("/folders", list_folders, methods=["GET"]),
    Route("/add-folder", add_folder, methods=["POST"]),
    Route("/remove-folder", remove_folder, methods=["POST"]),
]

app = Starlette(routes=routes)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _set_process_priority() -> None:
    """Lower process priority so indexing stays out of the user's way."""
    try:
        os.nice(NICE_VALUE)
        logger.info("Set nice value to %d", NICE_VALUE)
    except OSError:
        logger.debug("Could not set nice value")


def _write_pid() -> None:
    SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", SERVICE_PID_FILE)


def _cleanup_pid(*_args) -> None:
    SERVICE_PID_FILE.unlink(missing_ok=True)
    if _store is not None:
        _store.close()


def _background_startup() -> None:
    """Run _startup without blocking the event loop; handlers 503 until done."""
    def _load():
        global _startup_error
        try:
            _startup()
        except Exception as exc:
            _startup_error = f"Startup failed: {exc}"
            logger.exception("Background startup failed")
        finally:
            _ready.set()

    threading.Thread(target=_load, name="background-startup", daemon=True).start()


if __name__ == "__main__":
    import atexit

    import uvicorn

    _write_pid()
    atexit.register(_cleanup_pid)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    _set_process_priority()
    _background_startup()

    logger.info("Starting photo-search service on %s:%d", SERVICE_HOST, SERVICE_PORT)
    uvicorn.run(app, host=SERVICE_HOST, port=SERVICE_PORT, log_level="warning")
