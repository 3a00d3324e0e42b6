"""
Deterministic narrowing of candidate items by an optional locality filter.

Resolution order, each step only used when the previous one matched nothing:
exact region match, substring match on region or name, then either a hard
failure (strict mode) or the first `fallback_cap` candidates.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import unicodedata
from typing import List, Optional, Sequence

from .errors import NoMatchingItemsError
from .models import CandidateItem

logger = logging.getLogger(__name__)

MATCH_ALL = "all"
MATCH_EXACT = "exact"
MATCH_SUBSTRING = "substring"
MATCH_FALLBACK = "fallback"


@dataclass
class Selection:
    items: List[CandidateItem]
    match_kind: str


def normalize(value: Optional[str]) -> str:
    """Strip diacritics, punctuation and whitespace; lower-case the rest."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    kept = (
        ch
        for ch in decomposed
        if not unicodedata.combining(ch) and unicodedata.category(ch)[0] in ("L", "N")
    )
    return "".join(kept).casefold()


def _match(candidates: Sequence[CandidateItem], needle: str) -> tuple[List[CandidateItem], str]:
    exact = [c for c in candidates if normalize(c.region) == needle]
    if exact:
        return exact, MATCH_EXACT
    partial = [
        c for c in candidates if needle in normalize(c.region) or needle in normalize(c.name)
    ]
    if partial:
        return partial, MATCH_SUBSTRING
    return [], ""


def unique_by_id(candidates: Sequence[CandidateItem]) -> List[CandidateItem]:
    """Drop candidates without an id and repeats of an id already seen, first one wins."""
    seen = set()
    unique: List[CandidateItem] = []
    for candidate in candidates:
        if not candidate.id or candidate.id in seen:
            continue
        seen.add(candidate.id)
        unique.append(candidate)
    if len(unique) != len(candidates):
        logger.warning("Dropped %d candidates with a missing or repeated id", len(candidates) - len(unique))
    return unique


def select_items(
    candidates: Sequence[CandidateItem],
    locality_filter: Optional[str],
    requested_max: int,
    hard_cap: int,
    fallback_cap: int,
    strict: bool = False,
) -> Selection:
    """
    Pick the items a job will process.

    Raises:
        NoMatchingItemsError: strict mode and the filter matched nothing.
    """
    candidates = unique_by_id(candidates)
    needle = normalize(locality_filter)
    if not needle:
        matches, kind = list(candidates), MATCH_ALL
    else:
        matches, kind = _match(candidates, needle)
        if not matches:
            if strict:
                raise NoMatchingItemsError(
                    f"No items match locality filter {locality_filter!r}"
                )
            logger.info(
                "Locality filter %r matched nothing; falling back to first %d candidates",
                locality_filter,
                fallback_cap,
            )
            matches, kind = list(candidates[: max(fallback_cap, 0)]), MATCH_FALLBACK

    limit = max(min(requested_max, hard_cap), 0)
    return Selection(items=matches[:limit], match_kind=kind)
