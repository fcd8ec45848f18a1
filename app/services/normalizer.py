"""Conversion of raw listing rows into validated episode records."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ..errors import ValidationError
from ..models import EpisodeRecord, EpisodeType
from ..utils import collapse_whitespace
from .listing_fetcher import RawListingRow

logger = logging.getLogger(__name__)

# Closed table: markers not listed here reject the listing.
MARKER_TYPES: dict[str, EpisodeType] = {
    "canon": EpisodeType.CANON,
    "manga canon": EpisodeType.CANON,
    "mixed": EpisodeType.MIXED_CANON,
    "mixed canon": EpisodeType.MIXED_CANON,
    "mixed canon/filler": EpisodeType.MIXED_CANON,
    "anime canon": EpisodeType.ANIME_CANON,
    "filler": EpisodeType.FILLER,
}

UNTITLED = "Untitled"


def decode_marker(marker: str) -> EpisodeType | None:
    """Return the episode type for a listing marker, or ``None`` if unknown."""

    return MARKER_TYPES.get(collapse_whitespace(marker or "").lower())


def validate_numbering(numbers: Iterable[int]) -> list[str]:
    """Return problems with an episode numbering; empty when it is valid.

    Numbers must be positive, unique and strictly increasing.
    """

    problems: list[str] = []
    previous: int | None = None
    seen: set[int] = set()
    for position, number in enumerate(numbers, start=1):
        if number < 1:
            problems.append(f"row {position}: episode number {number} is not positive")
        if number in seen:
            problems.append(f"row {position}: duplicate episode number {number}")
        elif previous is not None and number < previous:
            problems.append(
                f"row {position}: episode number {number} follows {previous}"
            )
        seen.add(number)
        previous = number
    return problems


def normalize_listing(rows: Sequence[RawListingRow]) -> list[EpisodeRecord]:
    """Validate a full listing and convert it into episode records.

    Raises ``ValidationError`` listing every offending row if any row is
    malformed; nothing is returned for a partially valid listing.
    """

    if not rows:
        raise ValidationError("Listing contains no episodes")

    problems: list[str] = []
    decoded: list[tuple[int, str, EpisodeType]] = []
    for position, row in enumerate(rows, start=1):
        raw_number = (row.number or "").strip()
        try:
            number = int(raw_number)
        except ValueError:
            problems.append(f"row {position}: invalid episode number {raw_number!r}")
            continue
        episode_type = decode_marker(row.marker)
        if episode_type is None:
            problems.append(f"row {position}: unrecognised type marker {row.marker!r}")
            continue
        title = collapse_whitespace(row.title or "") or UNTITLED
        decoded.append((number, title, episode_type))

    problems.extend(validate_numbering(number for number, _, _ in decoded))
    if problems:
        logger.warning("Rejected listing with %d problem(s)", len(problems))
        raise ValidationError("Listing failed validation", problems)

    return [
        EpisodeRecord(number=number, title=title, episode_type=episode_type)
        for number, title, episode_type in decoded
    ]
