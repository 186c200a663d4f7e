"""Thin MCP server for photo-search.

Delegates all work to the photo-search service daemon via HTTP.
No numpy, onnxruntime, or PIL imports in this process.
"""

import json
import logging

from mcp.server.fastmcp import FastMCP

from client import ServiceClient, ServiceError
from config import DEFAULT_LIMIT, DEFAULT_THRESHOLD

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

mcp = FastMCP("photo-search")
client = ServiceClient()


@mcp.tool()
def search_photos(query: str, limit: int = DEFAULT_LIMIT, threshold: float = DEFAULT_THRESHOLD) -> str:
    """Search photos by natural language description.

    Uses CLIP image embeddings to find photos whose content matches the
    query. Returns matching photo ids with cosine similarity scores.

    Args:
        query: Natural language description (e.g. "sunset at the beach").
        limit: Maximum number of results to return (default 20).
        threshold: Minimum similarity, 0.0 to 1.0 (default 0.2).
    """
    try:
        outcome = client.search(query, limit, threshold)
    except ServiceError as exc:
        return json.dumps({"error": f"Failed to perform semantic search: {exc}"})
    return json.dumps(outcome, indent=2)


@mcp.tool()
def index_photos() -> str:
    """Index photos that have no embedding yet.

    Scans the configured folders and embeds only new images. Safe to run
    repeatedly; an interrupted run resumes where it left off.
    """
    try:
        progress = client.index()
    except ServiceError as exc:
        return f"Indexing unavailable: {exc}"
    if progress.get("running"):
        return "Indexing is already in progress."
    if progress["status"] == "error":
        return progress["message"]
    failed = f", {progress['failed']} failed" if progress.get("failed") else ""
    return f"{progress['message']} ({progress['library_indexed']}/{progress['total_items']} indexed{failed})."


@mcp.tool()
def cancel_indexing() -> str:
    """Stop the indexing run in progress. Already-indexed photos are kept."""
    try:
        result = client.cancel()
    except ServiceError as exc:
        return f"Indexing unavailable: {exc}"
    return "Cancellation requested." if result["cancelled"] else "No indexing run in progress."


@mcp.tool()
def embedding_stats() -> str:
    """Report how many photos are indexed for semantic search."""
    try:
        s = client.stats()
    except ServiceError as exc:
        return json.dumps({"error": f"Failed to get embedding stats: {exc}"})
    return json.dumps({
        "indexedPhotos": s["indexed"],
        "totalPhotos": s["total"],
        "message": f"{s['indexed']} of {s['total']} photos are indexed for semantic search",
    })


@mcp.tool()
def add_folder(path: str) -> str:
    """Add a folder of photos to the library.

    The folder is scanned recursively for JPEG, PNG, WebP and HEIF images.
    New images are embedded on the next index_photos run.

    Args:
        path: Absolute path to a folder containing photos.
    """
    try:
        return client.add_folder(path)
    except ServiceError as exc:
        return f"Folder management unavailable: {exc}"


@mcp.tool()
def remove_folder(path: str) -> str:
    """Remove a folder from the library.

    Its embeddings stay in the index until prune_index is run.

    Args:
        path: Path to the folder to remove.
    """
    try:
        return client.remove_folder(path)
    except ServiceError as exc:
        return f"Folder management unavailable: {exc}"


@mcp.tool()
def list_folders() -> str:
    """List all configured photo folders."""
    try:
        folders = client.list_folders()
    except ServiceError as exc:
        return f"Folder management unavailable: {exc}"
    if not folders:
        return "No folders configured. Use add_folder to add one."
    return "\n".join(folders)


@mcp.tool()
def prune_index() -> str:
    """Delete embeddings for photos no longer present in the library."""
    try:
        stats = client.prune()
    except ServiceError as exc:
        return f"Pruning unavailable: {exc}"
    return f"Pruned {stats['pruned']} embeddings ({stats['total']} remain)."


if __name__ == "__main__":
    mcp.run(transport="stdio")
