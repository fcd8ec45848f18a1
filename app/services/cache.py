"""Durable cache of shows, their episode classifications and mappings."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Collection, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import EpisodeRow, ShowMappingRecord, ShowRecord
from ..database import store_session
from ..errors import ValidationError
from ..models import EpisodeRecord, EpisodeType, MappingStatus, Show, ShowMapping
from ..utils import utcnow
from .normalizer import validate_numbering

logger = logging.getLogger(__name__)

TTL = timedelta | float | int


def _as_timedelta(ttl: TTL) -> timedelta:
    if not isinstance(ttl, timedelta):
        ttl = timedelta(seconds=ttl)
    if ttl < timedelta(0):
        raise ValueError("Freshness TTL must not be negative")
    return ttl


def is_stale_show(show: Show, ttl: TTL, now: datetime | None = None) -> bool:
    """Return True iff the show was never fetched or ``now - last_fetched > ttl``."""

    ttl = _as_timedelta(ttl)
    if show.last_fetched is None:
        return True
    return (now or utcnow()) - show.last_fetched > ttl


class ClassificationCache:
    """Store-backed record of shows, episode classifications and mappings."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _session(self):
        return store_session(self._session_factory)

    # Shows -----------------------------------------------------------------

    async def upsert_show(self, slug: str, title: str) -> int:
        """Create the show or update its title; return its id."""

        slug = (slug or "").strip()
        title = (title or "").strip()
        if not slug:
            raise ValueError("slug cannot be empty")
        if not title:
            raise ValueError(f"title cannot be empty for show {slug!r}")

        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    select(ShowRecord).where(ShowRecord.slug == slug)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = ShowRecord(slug=slug, title=title)
                    session.add(record)
                    await session.flush()
                    logger.info("Created show %s (id=%s)", slug, record.id)
                elif record.title != title:
                    record.title = title
                return record.id

    async def get_show(self, show_id: int) -> Show | None:
        async with self._session() as session:
            record = await session.get(ShowRecord, show_id)
            return Show.model_validate(record) if record is not None else None

    async def get_show_by_slug(self, slug: str) -> Show | None:
        async with self._session() as session:
            result = await session.execute(
                select(ShowRecord).where(ShowRecord.slug == slug)
            )
            record = result.scalar_one_or_none()
            return Show.model_validate(record) if record is not None else None

    async def list_shows(self) -> list[Show]:
        async with self._session() as session:
            result = await session.execute(
                select(ShowRecord).order_by(ShowRecord.title, ShowRecord.id)
            )
            return [Show.model_validate(record) for record in result.scalars()]

    async def delete_show(self, show_id: int) -> bool:
        """Delete a show together with its episodes and mapping."""

        async with self._session() as session:
            async with session.begin():
                record = await session.get(ShowRecord, show_id)
                if record is None:
                    return False
                await session.delete(record)
        logger.info("Deleted show %s", show_id)
        return True

    # Episodes --------------------------------------------------------------

    async def replace_episodes(
        self, show_id: int, episodes: Sequence[EpisodeRecord]
    ) -> None:
        """Atomically replace the full episode set of a show.

        The numbering is validated before anything is written; on failure the
        previously stored episodes are left untouched.
        """

        problems = validate_numbering(episode.number for episode in episodes)
        if problems:
            raise ValidationError("Episode numbering invariant violated", problems)

        async with self._session() as session:
            async with session.begin():
                if await session.get(ShowRecord, show_id) is None:
                    raise KeyError(f"Show {show_id} not found")
                await session.execute(
                    delete(EpisodeRow).where(EpisodeRow.show_id == show_id)
                )
                session.add_all(
                    EpisodeRow(
                        show_id=show_id,
                        number=episode.number,
                        title=episode.title,
                        episode_type=episode.episode_type.value,
                    )
                    for episode in episodes
                )
        logger.info("Stored %d episodes for show %s", len(episodes), show_id)

    async def get_episodes(
        self,
        show_id: int,
        types: Collection[EpisodeType] | None = None,
    ) -> list[EpisodeRecord]:
        """Return the show's episodes ordered by number, optionally filtered by type."""

        stmt = (
            select(EpisodeRow)
            .where(EpisodeRow.show_id == show_id)
            .order_by(EpisodeRow.number)
        )
        if types is not None:
            stmt = stmt.where(
                EpisodeRow.episode_type.in_([episode_type.value for episode_type in types])
            )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [
                EpisodeRecord(
                    number=row.number,
                    title=row.title,
                    episode_type=EpisodeType(row.episode_type),
                )
                for row in result.scalars()
            ]

    async def count_episodes(self, show_id: int) -> int:
        async with self._session() as session:
            result = await session.execute(
                select(func.count(EpisodeRow.id)).where(EpisodeRow.show_id == show_id)
            )
            return int(result.scalar_one())

    # Freshness -------------------------------------------------------------

    async def set_freshness(self, show_id: int, now: datetime | None = None) -> None:
        async with self._session() as session:
            async with session.begin():
                record = await session.get(ShowRecord, show_id)
                if record is None:
                    raise KeyError(f"Show {show_id} not found")
                record.last_fetched = now or utcnow()

    async def is_stale(
        self, show_id: int, ttl: TTL, now: datetime | None = None
    ) -> bool:
        show = await self.get_show(show_id)
        if show is None:
            raise KeyError(f"Show {show_id} not found")
        return is_stale_show(show, ttl, now)

    async def list_stale_shows(
        self, ttl: TTL, now: datetime | None = None
    ) -> list[Show]:
        now = now or utcnow()
        return [show for show in await self.list_shows() if is_stale_show(show, ttl, now)]

    # Mappings --------------------------------------------------------------

    @staticmethod
    def _to_mapping(record: ShowMappingRecord, slug: str | None) -> ShowMapping:
        return ShowMapping(
            show_id=record.show_id,
            library_key=record.library_key,
            library_title=record.library_title,
            confidence=record.confidence,
            status=MappingStatus(record.status),
            collection_id=record.collection_id,
            show_slug=slug,
        )

    async def get_mapping(self, show_id: int) -> ShowMapping | None:
        mappings = await self.list_mappings(show_ids=[show_id])
        return mappings[0] if mappings else None

    async def list_mappings(
        self,
        *,
        statuses: Collection[MappingStatus] | None = None,
        show_ids: Collection[int] | None = None,
    ) -> list[ShowMapping]:
        stmt = (
            select(ShowMappingRecord, ShowRecord.slug)
            .join(ShowRecord, ShowRecord.id == ShowMappingRecord.show_id)
            .order_by(ShowRecord.title, ShowRecord.id)
        )
        if statuses is not None:
            stmt = stmt.where(
                ShowMappingRecord.status.in_([status.value for status in statuses])
            )
        if show_ids is not None:
            stmt = stmt.where(ShowMappingRecord.show_id.in_(list(show_ids)))
        async with self._session() as session:
            result = await session.execute(stmt)
            return [self._to_mapping(record, slug) for record, slug in result.all()]

    async def save_mapping(self, mapping: ShowMapping) -> ShowMapping:
        """Create or replace the single mapping of a show."""

        async with self._session() as session:
            async with session.begin():
                show = await session.get(ShowRecord, mapping.show_id)
                if show is None:
                    raise KeyError(f"Show {mapping.show_id} not found")
                result = await session.execute(
                    select(ShowMappingRecord).where(
                        ShowMappingRecord.show_id == mapping.show_id
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = ShowMappingRecord(show_id=mapping.show_id)
                    session.add(record)
                    record.collection_id = mapping.collection_id
                elif (
                    record.library_key != mapping.library_key
                    or mapping.collection_id is not None
                ):
                    # A collection belongs to the library item it was created for.
                    record.collection_id = mapping.collection_id
                record.library_key = mapping.library_key
                record.library_title = mapping.library_title
                record.confidence = mapping.confidence
                record.status = mapping.status.value
                await session.flush()
                saved = self._to_mapping(record, show.slug)
        logger.info(
            "Mapping for show %s -> %s (%s, confidence=%.3f)",
            mapping.show_id,
            mapping.library_key,
            mapping.status.value,
            mapping.confidence,
        )
        return saved

    async def reject_mapping(self, show_id: int) -> ShowMapping:
        """Mark the show's mapping rejected and remember the rejected library key."""

        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    select(ShowMappingRecord, ShowRecord.slug)
                    .join(ShowRecord, ShowRecord.id == ShowMappingRecord.show_id)
                    .where(ShowMappingRecord.show_id == show_id)
                )
                row = result.first()
                if row is None:
                    raise KeyError(f"Show {show_id} has no mapping")
                record, slug = row
                rejected = list(record.rejected_keys or [])
                if record.library_key not in rejected:
                    rejected.append(record.library_key)
                record.rejected_keys = rejected
                record.status = MappingStatus.REJECTED.value
                return self._to_mapping(record, slug)

    async def get_rejected_keys(self, show_id: int) -> set[str]:
        async with self._session() as session:
            result = await session.execute(
                select(ShowMappingRecord.rejected_keys).where(
                    ShowMappingRecord.show_id == show_id
                )
            )
            return set(result.scalar_one_or_none() or [])

    async def delete_mapping(self, show_id: int) -> bool:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ShowMappingRecord).where(ShowMappingRecord.show_id == show_id)
                )
                return bool(result.rowcount)

    async def set_collection_id(self, show_id: int, collection_id: str | None) -> None:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    select(ShowMappingRecord).where(ShowMappingRecord.show_id == show_id)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    raise KeyError(f"Show {show_id} has no mapping")
                record.collection_id = collection_id
