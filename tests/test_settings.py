"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import Settings
from app.models import DEFAULT_TARGET_TYPES, EpisodeType, SyncOptions


def test_canon_types_subset_selection() -> None:
    """Settings should respect custom episode type selections."""

    settings = Settings(_env_file=None, CANON_TYPES="canon,anime-canon")

    assert settings.canon_types == frozenset({EpisodeType.CANON, EpisodeType.ANIME_CANON})


def test_canon_types_accepts_case_insensitive_values() -> None:
    settings = Settings(_env_file=None, CANON_TYPES=["Mixed Canon", "CANON"])

    assert settings.canon_types == frozenset({EpisodeType.MIXED_CANON, EpisodeType.CANON})


def test_canon_types_blank_defaults() -> None:
    """Blank selections fall back to every non-filler type."""

    settings = Settings(_env_file=None, CANON_TYPES="")

    assert settings.canon_types == DEFAULT_TARGET_TYPES
    assert EpisodeType.FILLER not in settings.canon_types


def test_canon_types_invalid_raises() -> None:
    with pytest.raises(ValueError, match="Unknown episode type"):
        Settings(_env_file=None, CANON_TYPES="recap")


def test_canon_types_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CANON_TYPES", "canon, filler")

    settings = Settings(_env_file=None)

    assert settings.canon_types == frozenset({EpisodeType.CANON, EpisodeType.FILLER})


def test_suggest_threshold_must_not_exceed_auto() -> None:
    with pytest.raises(ValueError, match="must not exceed"):
        Settings(
            _env_file=None,
            MATCH_AUTO_THRESHOLD=0.8,
            MATCH_SUGGEST_THRESHOLD=0.9,
        )


def test_collection_name_requires_title_placeholder() -> None:
    with pytest.raises(ValueError, match="placeholder"):
        Settings(_env_file=None, COLLECTION_NAME="Canon episodes")


def test_plex_configured_requires_all_fields() -> None:
    assert not Settings(_env_file=None, PLEX_URL="http://plex:32400").plex_configured
    assert Settings(
        _env_file=None,
        PLEX_URL="http://plex:32400",
        PLEX_TOKEN="token",
        PLEX_SECTION_ID="2",
    ).plex_configured


def test_sync_options_built_from_settings() -> None:
    settings = Settings(
        _env_file=None,
        SYNC_CONCURRENCY=2,
        SYNC_RETRY_LIMIT=5,
        REMOVE_FILLER=True,
        CANON_TYPES="canon",
        COLLECTION_NAME="{title} - Canon",
    )

    options = settings.sync_options()

    assert isinstance(options, SyncOptions)
    assert options.concurrency == 2
    assert options.retry_limit == 5
    assert options.remove_filler is True
    assert options.target_types == frozenset({EpisodeType.CANON})
    assert options.collection_name("One Piece") == "One Piece - Canon"


def test_sync_option_overrides_are_revalidated() -> None:
    options = SyncOptions()

    updated = options.with_overrides(dry_run=True, concurrency=None, target_types=["filler"])

    assert updated.dry_run is True
    assert updated.concurrency == options.concurrency
    assert updated.target_types == frozenset({EpisodeType.FILLER})
    assert options.dry_run is False
    with pytest.raises(ValueError):
        options.with_overrides(concurrency=0)
