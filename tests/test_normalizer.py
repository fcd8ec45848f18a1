from __future__ import annotations

import pytest

from app.errors import ValidationError
from app.models import EpisodeType
from app.services.listing_fetcher import RawListingRow
from app.services.normalizer import decode_marker, normalize_listing, validate_numbering


def _row(number: str, marker: str, title: str = "Episode") -> RawListingRow:
    return RawListingRow(number=number, title=title, marker=marker)


@pytest.mark.parametrize(
    ("marker", "expected"),
    [
        ("Manga Canon", EpisodeType.CANON),
        ("canon", EpisodeType.CANON),
        ("Mixed Canon/Filler", EpisodeType.MIXED_CANON),
        ("  Anime   Canon ", EpisodeType.ANIME_CANON),
        ("FILLER", EpisodeType.FILLER),
        ("Recap", None),
        ("", None),
    ],
)
def test_decode_marker(marker: str, expected: EpisodeType | None) -> None:
    assert decode_marker(marker) is expected


def test_normalize_listing_preserves_order_and_types() -> None:
    episodes = normalize_listing(
        [
            _row("1", "Manga Canon", "I'm Luffy!"),
            _row("2", "Filler", "  The Great\nSwordsman "),
            _row("3", "Anime Canon", ""),
        ]
    )

    assert [episode.number for episode in episodes] == [1, 2, 3]
    assert [episode.episode_type for episode in episodes] == [
        EpisodeType.CANON,
        EpisodeType.FILLER,
        EpisodeType.ANIME_CANON,
    ]
    assert episodes[1].title == "The Great Swordsman"
    assert episodes[2].title == "Untitled"


def test_normalize_listing_rejects_whole_listing_on_unknown_marker() -> None:
    with pytest.raises(ValidationError) as excinfo:
        normalize_listing([_row("1", "Canon"), _row("2", "Recap"), _row("3", "Filler")])

    assert excinfo.value.problems == ["row 2: unrecognised type marker 'Recap'"]


def test_normalize_listing_collects_every_problem() -> None:
    with pytest.raises(ValidationError) as excinfo:
        normalize_listing(
            [_row("1", "Canon"), _row("x", "Canon"), _row("1", "Filler"), _row("0", "Filler")]
        )

    problems = excinfo.value.problems
    assert "row 2: invalid episode number 'x'" in problems
    assert any("duplicate episode number 1" in problem for problem in problems)
    assert any("is not positive" in problem for problem in problems)


def test_normalize_listing_rejects_empty_listing() -> None:
    with pytest.raises(ValidationError, match="no episodes"):
        normalize_listing([])


def test_validate_numbering() -> None:
    assert validate_numbering([1, 2, 5, 6]) == []
    assert validate_numbering([1, 3, 2]) == ["row 3: episode number 2 follows 3"]
    assert validate_numbering([1, 1]) == ["row 2: duplicate episode number 1"]
