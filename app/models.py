"""Pydantic models describing shows, mappings and sync outcomes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EpisodeType(str, Enum):
    """Classification of an episode relative to its source material."""

    CANON = "canon"
    MIXED_CANON = "mixed_canon"
    ANIME_CANON = "anime_canon"
    FILLER = "filler"


DEFAULT_TARGET_TYPES: frozenset[EpisodeType] = frozenset(
    {EpisodeType.CANON, EpisodeType.MIXED_CANON, EpisodeType.ANIME_CANON}
)


def parse_episode_types(value: object) -> frozenset[EpisodeType]:
    """Parse episode type selections from config values.

    Accepts a comma separated string or an iterable of strings/members;
    ``"Anime Canon"``, ``"anime-canon"`` and ``"anime_canon"`` are equivalent.
    Returns an empty set for blank input.
    """

    if value is None:
        return frozenset()
    if isinstance(value, str):
        raw_values = value.split(",")
    elif isinstance(value, Iterable):
        raw_values = [getattr(part, "value", part) for part in value]
    else:
        raise TypeError("Episode types must be a string or iterable of strings")

    parsed: set[EpisodeType] = set()
    for entry in raw_values:
        slug = str(entry).strip().lower().replace("-", "_").replace(" ", "_")
        if not slug:
            continue
        try:
            parsed.add(EpisodeType(slug))
        except ValueError as exc:
            raise ValueError(f"Unknown episode type: {entry!r}") from exc
    return frozenset(parsed)


class MappingStatus(str, Enum):
    AUTO_MATCHED = "auto_matched"
    CONFIRMED = "confirmed"
    SUGGESTED = "suggested"
    REJECTED = "rejected"


ACTIVE_MAPPING_STATUSES: frozenset[MappingStatus] = frozenset(
    {MappingStatus.AUTO_MATCHED, MappingStatus.CONFIRMED}
)


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class EpisodeRecord(BaseModel):
    """A single classified episode belonging to a show."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    number: int = Field(ge=1)
    title: str
    episode_type: EpisodeType


class Show(BaseModel):
    """A cached show as identified by the listing source."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    title: str
    last_fetched: datetime | None = None


class ShowMapping(BaseModel):
    """Association between a cached show and a media-server library item."""

    model_config = ConfigDict(from_attributes=True)

    show_id: int
    library_key: str
    library_title: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    status: MappingStatus
    collection_id: str | None = None
    show_slug: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MAPPING_STATUSES


class SyncOptions(BaseModel):
    """Per-run configuration handed to the orchestrator and reconciler."""

    model_config = ConfigDict(frozen=True)

    target_types: frozenset[EpisodeType] = DEFAULT_TARGET_TYPES
    remove_filler: bool = False
    dry_run: bool = False
    concurrency: int = Field(default=4, ge=1, le=64)
    timeout_seconds: float | None = Field(default=None, gt=0)
    retry_limit: int = Field(default=3, ge=0, le=20)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    retry_backoff_max_seconds: float = Field(default=30.0, ge=0)
    collection_name_template: str = "{title} (Canon)"

    @field_validator("target_types", mode="before")
    @classmethod
    def _coerce_target_types(cls, value: object) -> frozenset[EpisodeType]:
        return parse_episode_types(value) or DEFAULT_TARGET_TYPES

    def with_overrides(self, **overrides: Any) -> "SyncOptions":
        """Return a copy with the non-``None`` overrides applied and revalidated."""

        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        return SyncOptions.model_validate({**self.model_dump(), **updates})

    def collection_name(self, title: str) -> str:
        return self.collection_name_template.format(title=title)


class SyncResult(BaseModel):
    """Outcome of reconciling one show inside a sync run."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    show_id: int
    show_slug: str | None = None
    outcome: SyncOutcome
    added: int = 0
    removed: int = 0
    failed: int = 0
    retries: int = 0
    detail: str | None = None
    warnings: list[str] = Field(default_factory=list)
    recorded_at: datetime


class SyncRun(BaseModel):
    """A batch invocation and the results of every show it covered."""

    id: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[SyncResult] = Field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in SyncOutcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        counts["total"] = len(self.results)
        return counts

    def result_for(self, show_id: int) -> SyncResult | None:
        for result in self.results:
            if result.show_id == show_id:
                return result
        return None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["summary"] = self.summary
        return payload
