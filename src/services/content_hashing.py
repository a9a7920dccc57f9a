"""
Text normalization, exact fingerprints and MinHash signatures for near-duplicate detection.

Signatures come from ``datasketch.MinHash`` over word shingles. datasketch hashes each shingle
with SHA-1 and draws its ``(a_i, b_i)`` permutation pairs from a seeded generator, so a signature
computed today matches one computed by a different process next week as long as ``num_perm``
and ``seed`` are unchanged. Changing either invalidates every stored signature.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from typing import Sequence

from datasketch import MinHash

LOGGER = logging.getLogger(__name__)

DEFAULT_NUM_PERM = 128
DEFAULT_SHINGLE_SIZE = 3
DEFAULT_MIN_TOKENS = 5
DEFAULT_SEED = 1


# Arabic code points that Persian text commonly borrows; map to the Persian forms so that
# the same word typed on different keyboards hashes identically.
_PERSIAN_TRANSLATION = str.maketrans(
    {
        "\u064a": "\u06cc",  # ARABIC YEH -> FARSI YEH
        "\u0649": "\u06cc",  # ALEF MAKSURA -> FARSI YEH
        "\u0643": "\u06a9",  # ARABIC KAF -> KEHEH
        "\u0629": "\u0647",  # TEH MARBUTA -> HEH
        "\u0640": None,  # TATWEEL
        "\u200c": " ",  # ZWNJ
        "\u200d": None,  # ZWJ
        "\u200e": None,  # LRM
        "\u200f": None,  # RLM
    }
)
_ARABIC_DIACRITICS = re.compile("[\u064b-\u065f\u0670]")
_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def fold_text(text: str | None) -> str:
    """Case- and script-fold text without removing punctuation."""
    if not text:
        return ""
    folded = unicodedata.normalize("NFKC", text).casefold()
    folded = folded.translate(_PERSIAN_TRANSLATION)
    return _ARABIC_DIACRITICS.sub("", folded)


def normalize_text(text: str | None) -> str:
    """Lowercase, fold scripts, drop punctuation and collapse whitespace."""
    folded = fold_text(text)
    if not folded:
        return ""
    stripped = _PUNCTUATION.sub(" ", folded)
    return _WHITESPACE.sub(" ", stripped).strip()


def to_minhash(signature: Sequence[int], seed: int = DEFAULT_SEED) -> MinHash:
    """Rebuild a datasketch MinHash from stored signature components."""
    return MinHash(num_perm=len(signature), seed=seed, hashvalues=list(signature))


class ContentHasher:
    def __init__(
        self,
        num_perm: int = DEFAULT_NUM_PERM,
        shingle_size: int = DEFAULT_SHINGLE_SIZE,
        min_tokens: int = DEFAULT_MIN_TOKENS,
        seed: int = DEFAULT_SEED,
    ) -> None:
        if num_perm <= 0:
            raise ValueError("num_perm must be positive")
        if shingle_size <= 0:
            raise ValueError("shingle_size must be positive")
        self.num_perm = num_perm
        self.shingle_size = shingle_size
        self.min_tokens = max(min_tokens, 1)
        self.seed = seed

    @staticmethod
    def normalize(text: str | None) -> str:
        return normalize_text(text)

    def tokens(self, text: str | None) -> list[str]:
        normalized = normalize_text(text)
        return normalized.split() if normalized else []

    def shingles(self, text: str | None) -> set[str]:
        tokens = self.tokens(text)
        if not tokens:
            return set()
        if len(tokens) <= self.shingle_size:
            return {" ".join(tokens)}
        width = self.shingle_size
        return {" ".join(tokens[index : index + width]) for index in range(len(tokens) - width + 1)}

    def fingerprint(self, text: str | None) -> str | None:
        """SHA-256 hex digest of the normalized text, or None when nothing survives normalization."""
        normalized = normalize_text(text)
        if not normalized:
            return None
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def is_degenerate(self, text: str | None) -> bool:
        return len(self.tokens(text)) < self.min_tokens

    def minhash(self, text: str | None) -> MinHash | None:
        if self.is_degenerate(text):
            return None
        minhash = MinHash(num_perm=self.num_perm, seed=self.seed)
        minhash.update_batch([shingle.encode("utf-8") for shingle in sorted(self.shingles(text))])
        return minhash

    def signature(self, text: str | None) -> tuple[int, ...] | None:
        """MinHash signature over word shingles; None for degenerate (too short) text."""
        minhash = self.minhash(text)
        if minhash is None:
            return None
        return tuple(int(value) for value in minhash.hashvalues)

    @staticmethod
    def similarity(left: Sequence[int] | None, right: Sequence[int] | None) -> float:
        """Estimated Jaccard similarity: share of matching components; 0.0 when not comparable."""
        if left is None or right is None or len(left) == 0 or len(right) == 0:
            return 0.0
        if len(left) != len(right):
            LOGGER.warning(
                "Signature length mismatch (%s vs %s); treating as not similar.", len(left), len(right)
            )
            return 0.0
        matches = sum(1 for a, b in zip(left, right) if a == b)
        return matches / len(left)
