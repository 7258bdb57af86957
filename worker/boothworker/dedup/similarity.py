"""Pluggable name-similarity scorers used by clustering and ingest matching."""

import logging
import re
from typing import List, Optional, Protocol, Sequence, Tuple

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from boothworker.core.config import Settings
from boothworker.core.errors import ConfigError
from boothworker.etl.transform import normalize_text

logger = logging.getLogger(__name__)

GENERIC_WORDS = ("booth", "booths", "photobooth", "photo", "the")

_SUFFIX_RX = re.compile(r"^(?:\d+|[a-z]|i{1,3}|iv|vi{0,3}|ix|x)$")


class NameSimilarity(Protocol):
    threshold: float

    def score(self, left: str, right: str) -> float:
        ...

    def matches(self, left: str, right: str) -> bool:
        ...


def _core_tokens(name: str, generic_words: Sequence[str]) -> List[str]:
    tokens = normalize_text(name).split()
    while len(tokens) > 1 and _SUFFIX_RX.match(tokens[-1]):
        tokens.pop()
    kept = [token for token in tokens if token not in generic_words]
    return kept or tokens


class _GatedSimilarity:
    """Shared gates: cores with no token in common, or lengths too far apart, never match."""

    def __init__(
        self,
        threshold: float = 0.8,
        min_length_ratio: float = 0.4,
        generic_words: Sequence[str] = GENERIC_WORDS,
    ) -> None:
        self.threshold = threshold
        self.min_length_ratio = min_length_ratio
        self.generic_words = tuple(generic_words)

    def _cores(self, left_norm: str, right_norm: str) -> Optional[Tuple[List[str], List[str]]]:
        left_tokens = _core_tokens(left_norm, self.generic_words)
        right_tokens = _core_tokens(right_norm, self.generic_words)
        if not set(left_tokens) & set(right_tokens):
            return None
        shorter, longer = sorted((" ".join(left_tokens), " ".join(right_tokens)), key=len)
        if len(shorter) / len(longer) < self.min_length_ratio:
            return None
        return left_tokens, right_tokens

    def score(self, left: str, right: str) -> float:
        left_norm, right_norm = normalize_text(left), normalize_text(right)
        if not left_norm or not right_norm:
            return 0.0
        if left_norm == right_norm:
            return 1.0
        cores = self._cores(left_norm, right_norm)
        if cores is None:
            return 0.0
        return self._score_cores(*cores)

    def _score_cores(self, left_tokens: List[str], right_tokens: List[str]) -> float:
        raise NotImplementedError

    def matches(self, left: str, right: str) -> bool:
        return self.score(left, right) >= self.threshold


class HeuristicNameSimilarity(_GatedSimilarity):
    """Containment, short-suffix and edit-distance matching on normalised names.

    ``"Mauerpark Booth"`` and ``"Mauerpark 2"`` reduce to the same core once
    generic words and a trailing number/roman numeral/letter are dropped.
    Pairs whose cores have no token in common, or whose lengths differ by more
    than ``min_length_ratio``, score zero.
    """

    def _score_cores(self, left_tokens: List[str], right_tokens: List[str]) -> float:
        if left_tokens == right_tokens:
            return 0.95
        left_core, right_core = " ".join(left_tokens), " ".join(right_tokens)
        shorter, longer = sorted((left_core, right_core), key=len)
        if f" {shorter} " in f" {longer} ":
            return 0.9
        return Levenshtein.normalized_similarity(left_core, right_core)


class TokenSetNameSimilarity(_GatedSimilarity):
    """rapidfuzz ``token_set_ratio`` on name cores, scaled to 0..1, behind the same gates."""

    def _score_cores(self, left_tokens: List[str], right_tokens: List[str]) -> float:
        return fuzz.token_set_ratio(" ".join(left_tokens), " ".join(right_tokens)) / 100.0


def build_similarity(settings: Settings, scorer: Optional[str] = None) -> NameSimilarity:
    name = (scorer or settings.name_similarity_scorer or "heuristic").lower()
    if name == "heuristic":
        return HeuristicNameSimilarity(
            threshold=settings.name_similarity_threshold,
            min_length_ratio=settings.name_min_length_ratio,
        )
    if name == "token_set":
        return TokenSetNameSimilarity(
            threshold=settings.name_similarity_threshold,
            min_length_ratio=settings.name_min_length_ratio,
        )
    raise ConfigError(f"Unknown NAME_SIMILARITY_SCORER: {name}")
