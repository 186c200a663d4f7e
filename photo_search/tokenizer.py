"""CLIP BPE tokenizer: query text -> 77 token ids for the text encoder."""

import logging
import re
import threading

from config import CONTEXT_LENGTH, END_OF_WORD, TRUNCATE_KEEPS_EOT
from vocab import Vocabulary

logger = logging.getLogger(__name__)

# ASCII semantics for \s and \w: non-ASCII letters fall into the symbol run.
_WORD_RE = re.compile(
    r"""'s|'t|'re|'ve|'m|'ll|'d| ?[a-z]+| ?[0-9]+| ?[^\s\w]+""",
    re.ASCII,
)


class BpeCache:
    """Per-word BPE results. Safe to share between threads."""

    def __init__(self):
        self._entries: dict[str, tuple[str, ...]] = {}
        self._lock = threading.Lock()

    def get(self, word: str) -> tuple[str, ...] | None:
        with self._lock:
            return self._entries.get(word)

    def put(self, word: str, tokens: tuple[str, ...]) -> None:
        with self._lock:
            self._entries[word] = tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def split_words(text: str) -> list[str]:
    """Lowercase and split text into coarse word candidates."""
    return [m for m in _WORD_RE.findall(text.lower()) if m]


class ClipTokenizer:
    def __init__(
        self,
        vocab: Vocabulary,
        context_length: int = CONTEXT_LENGTH,
        keep_eot_on_truncate: bool = TRUNCATE_KEEPS_EOT,
        cache: BpeCache | None = None,
    ):
        self.vocab = vocab
        self.context_length = context_length
        self.keep_eot_on_truncate = keep_eot_on_truncate
        self.cache = cache if cache is not None else BpeCache()

    def _best_pair(self, word: list[str]) -> tuple[str, str] | None:
        """Adjacent pair with the lowest merge rank, or None if nothing merges."""
        ranks = self.vocab.bpe_ranks
        best = None
        best_rank = None
        for pair in zip(word, word[1:]):
            rank = ranks.get(pair)
            if rank is not None and (best_rank is None or rank < best_rank):
                best, best_rank = pair, rank
        return best

    def bpe(self, token: str) -> tuple[str, ...]:
        """Apply merges to a single word. Returns the merged symbols."""
        if not token:
            return ()

        cached = self.cache.get(token)
        if cached is not None:
            return cached

        word = list(token[:-1]) + [token[-1] + END_OF_WORD]

        while len(word) > 1:
            pair = self._best_pair(word)
            if pair is None:
                break
            first, second = pair
            merged = []
            i = 0
            while i < len(word):
                if i < len(word) - 1 and word[i] == first and word[i + 1] == second:
                    merged.append(first + second)
                    i += 2
                else:
                    merged.append(word[i])
                    i += 1
            word = merged

        result = tuple(word)
        self.cache.put(token, result)
        return result

    def _byte_fallback(self, token: str) -> list[int]:
        """Ids for a token missing from the vocabulary, one per UTF-8 byte."""
        encoder = self.vocab.encoder
        byte_encoder = self.vocab.byte_encoder

        word_end = token.endswith(END_OF_WORD)
        raw = token[: -len(END_OF_WORD)] if word_end else token
        data = raw.encode("utf-8")

        ids = []
        for i, b in enumerate(data):
            char = byte_encoder[b]
            if word_end and i == len(data) - 1:
                candidates = (char + END_OF_WORD, char)
            else:
                candidates = (char, char + END_OF_WORD)
            for candidate in candidates:
                token_id = encoder.get(candidate)
                if token_id is not None:
                    ids.append(token_id)
                    break
        return ids

    def encode(self, text: str) -> list[int]:
        """Token ids for text, without special tokens or padding."""
        encoder = self.vocab.encoder
        ids = []
        for word in split_words(text):
            for bpe_token in self.bpe(word.strip()):
                token_id = encoder.get(bpe_token)
                if token_id is not None:
                    ids.append(token_id)
                else:
                    logger.warning("Token %r not in vocabulary, using byte fallback", bpe_token)
                    ids.extend(self._byte_fallback(bpe_token))
        return ids

    def tokenize(self, text: str) -> list[int]:
        """Return exactly context_length ids: <sot>, tokens, <eot>, <eot> padding."""
        sot, eot = self.vocab.sot_id, self.vocab.eot_id
        ids = [sot, *self.encode(text), eot]

        if len(ids) < self.context_length:
            ids.extend([eot] * (self.context_length - len(ids)))
        elif len(ids) > self.context_length:
            ids = ids[: self.context_length]
            if self.keep_eot_on_truncate:
                ids[-1] = eot
        return ids

