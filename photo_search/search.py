"""Text-to-photo search: tokenize, embed the query, rank stored embeddings."""

import logging
from dataclasses import asdict, dataclass, field

from config import DEFAULT_LIMIT, DEFAULT_THRESHOLD
from embedder import Embedder
from similarity import rank
from store import EmbeddingStore
from tokenizer import ClipTokenizer

logger = logging.getLogger(__name__)

NOT_INDEXED_MESSAGE = "No photos have been indexed yet. Run indexing before searching."


@dataclass
class SearchHit:
    id: str
    similarity: float


@dataclass
class SearchOutcome:
    results: list[SearchHit] = field(default_factory=list)
    indexed: bool = True  # False when the store was empty at query time
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "results": [asdict(r) for r in self.results],
            "count": len(self.results),
            "indexed": self.indexed,
            "message": self.message,
        }


class PhotoSearch:
    def __init__(self, tokenizer: ClipTokenizer, embedder: Embedder, store: EmbeddingStore):
        self._tokenizer = tokenizer
        self._embedder = embedder
        self._store = store

    def embed_query(self, query: str):
        token_ids = self._tokenizer.tokenize(query)
        return self._embedder.encode_text(token_ids)

    def search(
        self,
        query: str,
        limit: int = DEFAULT_LIMIT,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> SearchOutcome:
        """Photos whose embedding is closest to the query text.

        An empty store yields indexed=False, distinct from a search that
        simply found nothing above threshold.
        """
        candidates = self._store.get_all()
        if not candidates:
            return SearchOutcome(indexed=False, message=NOT_INDEXED_MESSAGE)

        query_vec = self.embed_query(query)
        ranked = rank(query_vec, candidates, threshold=threshold, limit=limit)
        hits = [SearchHit(id=item_id, similarity=score) for item_id, score in ranked]

        logger.info("Search %r: %d of %d photos matched", query, len(hits), len(candidates))
        return SearchOutcome(
            results=hits,
            message=f"Found {len(hits)} photos matching '{query}'",
        )
