"""Confidence scoring between cached shows and media-server library items.

Titles are normalized (case-folded, season/part/edition markers and
punctuation removed, whitespace collapsed) and compared with a weighted
blend of token overlap and normalized edit similarity. The matcher only
proposes; persisting a mapping is left to the caller.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from rapidfuzz.distance import Levenshtein

from ..models import Show
from .library import LibraryItem

logger = logging.getLogger(__name__)

_ORDINALS = r"(?:\d+(?:st|nd|rd|th)|first|second|third|fourth|fifth|final)"
MARKER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\((?:tv|ova|ona|movie|special|dub|sub|uncut)\)"),
    re.compile(r"\((?:19|20)\d{2}\)"),
    re.compile(r"\bseason\s+\d+\b"),
    re.compile(rf"\b{_ORDINALS}\s+season\b"),
    re.compile(r"\bpart\s+(?:\d+|i{1,3}|iv|v)\b"),
    re.compile(r"\bthe\s+(?:animation|movie)\b"),
    re.compile(r"\b(?:uncut|remastered|dubbed|subbed)\b"),
)
PUNCTUATION_RE = re.compile(r"[^\w\s]+|_")
WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """Return the comparison form of a title."""

    normalized = (title or "").casefold()
    for pattern in MARKER_PATTERNS:
        normalized = pattern.sub(" ", normalized)
    normalized = PUNCTUATION_RE.sub(" ", normalized)
    return WHITESPACE_RE.sub(" ", normalized).strip()


def token_overlap(a: str, b: str) -> float:
    """Jaccard ratio of the whitespace tokens of two normalized titles."""

    tokens_a, tokens_b = set(a.split()), set(b.split())
    if not tokens_a and not tokens_b:
        return 1.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


class MatchStatus(str, Enum):
    AUTO_MATCHED = "auto_matched"
    SUGGESTED = "suggested"
    UNMAPPED = "unmapped"


@dataclass(slots=True, frozen=True)
class MatchCandidate:
    """A library item scored against a show."""

    item: LibraryItem
    score: float
    distance: int


@dataclass(slots=True)
class MatchDecision:
    """Classification of a show's ranked candidates."""

    status: MatchStatus
    ranked: list[MatchCandidate] = field(default_factory=list)
    accepted: MatchCandidate | None = None
    suggestions: list[MatchCandidate] = field(default_factory=list)

    @property
    def top(self) -> MatchCandidate | None:
        return self.ranked[0] if self.ranked else None


class Matcher:
    """Deterministic title matcher with accept / suggest / reject thresholds."""

    OVERLAP_WEIGHT = 0.6
    EDIT_WEIGHT = 0.4

    def __init__(
        self,
        *,
        auto_threshold: float = 0.92,
        suggest_threshold: float = 0.75,
    ) -> None:
        if suggest_threshold > auto_threshold:
            raise ValueError("suggest_threshold must not exceed auto_threshold")
        self.auto_threshold = auto_threshold
        self.suggest_threshold = suggest_threshold

    def score_titles(self, a: str, b: str) -> float:
        norm_a, norm_b = normalize_title(a), normalize_title(b)
        return self._score_normalized(norm_a, norm_b)

    def _score_normalized(self, norm_a: str, norm_b: str) -> float:
        overlap = token_overlap(norm_a, norm_b)
        edit = Levenshtein.normalized_similarity(norm_a, norm_b)
        return round(self.OVERLAP_WEIGHT * overlap + self.EDIT_WEIGHT * edit, 6)

    def match(
        self, show: Show, candidates: Sequence[LibraryItem]
    ) -> list[MatchCandidate]:
        """Return every candidate scored against the show, best first."""

        show_title = normalize_title(show.title)
        scored: list[MatchCandidate] = []
        for item in candidates:
            item_title = normalize_title(item.title)
            scored.append(
                MatchCandidate(
                    item=item,
                    score=self._score_normalized(show_title, item_title),
                    distance=Levenshtein.distance(show_title, item_title),
                )
            )
        scored.sort(key=lambda candidate: (-candidate.score, candidate.distance, candidate.item.key))
        return scored

    def decide(self, show: Show, candidates: Sequence[LibraryItem]) -> MatchDecision:
        ranked = self.match(show, candidates)
        top = ranked[0] if ranked else None
        if top is not None and top.score >= self.auto_threshold:
            decision = MatchDecision(MatchStatus.AUTO_MATCHED, ranked, accepted=top)
        elif top is not None and top.score >= self.suggest_threshold:
            suggestions = [
                candidate
                for candidate in ranked
                if candidate.score >= self.suggest_threshold
            ]
            decision = MatchDecision(MatchStatus.SUGGESTED, ranked, suggestions=suggestions)
        else:
            decision = MatchDecision(MatchStatus.UNMAPPED, ranked)

        logger.info(
            "Match for %s: %s (top=%s, score=%s)",
            show.slug,
            decision.status.value,
            top.item.title if top else None,
            f"{top.score:.3f}" if top else "n/a",
        )
        return decision
