"""CLIP BPE vocabulary: token ids and merge ranks built from the merges file.

The id assignment has to match the table the text encoder was trained with,
so the construction order below is fixed:

    256 byte characters
    256 byte characters + "</w>"
    one token per merge, in file order
    <|startoftext|>, <|endoftext|>
"""

import gzip
import logging
from dataclasses import dataclass
from pathlib import Path

from config import BASE_VOCAB_SIZE, END_OF_WORD, EOT_TOKEN, SOT_TOKEN, VOCAB_SIZE

logger = logging.getLogger(__name__)

MAX_MERGES = VOCAB_SIZE - BASE_VOCAB_SIZE - 2


class VocabularyError(RuntimeError):
    """The merges resource is unusable; tokenization cannot proceed."""


def bytes_to_unicode() -> dict[int, str]:
    """Map every byte to a printable character, avoiding whitespace/control codepoints."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, (chr(c) for c in cs)))


def _read_lines(path: Path) -> list[str]:
    try:
        if path.suffix == ".gz":
            with gzip.open(path, "rt", encoding="utf-8") as f:
                return f.read().split("\n")
        return path.read_text(encoding="utf-8").split("\n")
    except (OSError, UnicodeDecodeError) as exc:
        raise VocabularyError(f"Cannot read BPE merges file {path}: {exc}") from exc


def parse_merges(lines: list[str], max_merges: int = MAX_MERGES) -> list[tuple[str, str]]:
    """Parse merge pairs from the first max_merges lines after the header.

    The budget counts raw lines, so a malformed line inside it is dropped
    rather than replaced by a later merge.
    """
    merges = []
    for line in lines[1:max_merges + 1]:
        if not line.strip():
            continue
        parts = line.split()
        if len(parts) != 2:
            logger.warning("Skipping malformed merge line: %r", line)
            continue
        merges.append((parts[0], parts[1]))
    return merges


@dataclass(frozen=True)
class Vocabulary:
    encoder: dict[str, int]
    decoder: dict[int, str]
    bpe_ranks: dict[tuple[str, str], int]
    byte_encoder: dict[int, str]

    @property
    def size(self) -> int:
        return len(self.encoder)

    @property
    def sot_id(self) -> int:
        return self.encoder[SOT_TOKEN]

    @property
    def eot_id(self) -> int:
        return self.encoder[EOT_TOKEN]

    @classmethod
    def from_merges(cls, merges: list[tuple[str, str]]) -> "Vocabulary":
        if not merges:
            raise VocabularyError("BPE merges file contains no merge rules")

        byte_encoder = bytes_to_unicode()
        # printable bytes first, then the remapped ones: the order CLIP was trained with
        base = list(byte_encoder.values())

        tokens = base + [t + END_OF_WORD for t in base]
        tokens.extend(a + b for a, b in merges)
        tokens.extend([SOT_TOKEN, EOT_TOKEN])

        # dict preserves first-seen order, so this dedupes without reordering
        unique = list(dict.fromkeys(tokens))
        encoder = {token: i for i, token in enumerate(unique)}
        decoder = {i: token for token, i in encoder.items()}
        bpe_ranks = {pair: i for i, pair in enumerate(merges)}

        for special in (SOT_TOKEN, EOT_TOKEN):
            if special not in encoder:
                raise VocabularyError(f"Special token {special} missing from vocabulary")

        return cls(
            encoder=encoder,
            decoder=decoder,
            bpe_ranks=bpe_ranks,
            byte_encoder=byte_encoder,
        )

    @classmethod
    def load(cls, path: Path, max_merges: int = MAX_MERGES) -> "Vocabulary":
        """Build the vocabulary from a merges file (plain text or .gz)."""
        path = Path(path)
        if not path.exists():
            raise VocabularyError(f"BPE merges file not found: {path}")

        lines = _read_lines(path)
        merges = parse_merges(lines, max_merges)
        if len(merges) != max_merges:
            logger.warning("Loaded %d merges, expected %d", len(merges), max_merges)

        vocab = cls.from_merges(merges)
        logger.info(
            "Vocabulary built: %d tokens (sot=%d, eot=%d)",
            vocab.size, vocab.sot_id, vocab.eot_id,
        )
        return vocab
