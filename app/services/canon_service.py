"""Application service tying listing ingestion, matching and syncing together."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Collection

from ..errors import FetchError, LibraryNotConfigured, ValidationError
from ..models import (
    ACTIVE_MAPPING_STATUSES,
    EpisodeRecord,
    EpisodeType,
    MappingStatus,
    Show,
    ShowMapping,
    SyncOptions,
    SyncRun,
)
from .cache import ClassificationCache, is_stale_show
from .cancellation import CancellationToken
from .locks import KeyedLock
from .library import LibraryService
from .listing_fetcher import ListingFetcher, parse_show_slug
from .matcher import MatchDecision, Matcher, MatchStatus
from .normalizer import normalize_listing
from .orchestrator import SyncOrchestrator
from .reconciler import Reconciler
from .sync_log import SyncLog

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RefreshOutcome:
    show: Show
    refreshed: bool
    episode_count: int


@dataclass(slots=True)
class MappingProposal:
    decision: MatchDecision
    mapping: ShowMapping | None


@dataclass(slots=True)
class StaleRefreshReport:
    refreshed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {"refreshed": list(self.refreshed), "failed": dict(self.failed)}


class CanonSyncService:
    """Coordinates the listing source, classification cache and media server."""

    def __init__(
        self,
        *,
        cache: ClassificationCache,
        sync_log: SyncLog,
        fetcher: ListingFetcher,
        library: LibraryService | None,
        options: SyncOptions,
        matcher: Matcher | None = None,
        freshness_ttl: timedelta | float = timedelta(days=7),
        sync_interval_seconds: float = 0,
    ) -> None:
        self._cache = cache
        self._sync_log = sync_log
        self._fetcher = fetcher
        self._library = library
        self._options = options
        self._matcher = matcher or Matcher()
        self._freshness_ttl = freshness_ttl
        self._sync_interval = sync_interval_seconds
        self._orchestrator: SyncOrchestrator | None = None
        if library is not None:
            self._orchestrator = SyncOrchestrator(
                Reconciler(cache, library), sync_log, options, cache=cache
            )
        self._refresh_locks: KeyedLock[str] = KeyedLock()
        self._sync_task: asyncio.Task[None] | None = None
        self._active_token: CancellationToken | None = None

    @property
    def library_configured(self) -> bool:
        return self._library is not None

    def _require_library(self) -> LibraryService:
        if self._library is None:
            raise LibraryNotConfigured("No media server is configured")
        return self._library

    def _require_orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            raise LibraryNotConfigured("No media server is configured")
        return self._orchestrator

    # Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Launch the periodic refresh-and-sync loop when an interval is set."""

        if self._sync_interval <= 0 or self._sync_task is not None:
            return
        self._sync_task = asyncio.create_task(self._sync_loop())
        logger.info("Periodic sync enabled every %ss", self._sync_interval)

    async def stop(self) -> None:
        """Stop the periodic loop and cancel any in-flight sync run."""

        if self._active_token is not None:
            self._active_token.cancel("service stopping")
        if self._sync_task is None:
            return
        self._sync_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sync_task
        self._sync_task = None

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sync_interval)
            try:
                await self.refresh_stale()
                if self._library is not None:
                    await self.run_sync()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled sync failed: %s", exc)

    # Listings --------------------------------------------------------------

    async def add_show(self, slug_or_url: str) -> RefreshOutcome:
        return await self.refresh_show(parse_show_slug(slug_or_url))

    async def refresh_show(self, slug: str, *, force: bool = False) -> RefreshOutcome:
        """Fetch, classify and cache a show unless its cached copy is still fresh.

        A listing that fails validation is rejected before anything is written,
        so the previously cached episodes stay in place.
        """

        slug = parse_show_slug(slug)
        async with self._refresh_locks.hold(slug):
            existing = await self._cache.get_show_by_slug(slug)
            if (
                existing is not None
                and not force
                and not is_stale_show(existing, self._freshness_ttl)
            ):
                logger.debug("Show %s is fresh; skipping fetch", slug)
                return RefreshOutcome(
                    show=existing,
                    refreshed=False,
                    episode_count=await self._cache.count_episodes(existing.id),
                )

            listing = await self._fetcher.fetch(slug)
            episodes = normalize_listing(listing.rows)
            show_id = await self._cache.upsert_show(listing.slug, listing.title)
            await self._cache.replace_episodes(show_id, episodes)
            await self._cache.set_freshness(show_id)
            show = await self.get_show(show_id)
            logger.info("Refreshed %s: %d episodes", slug, len(episodes))
            return RefreshOutcome(show=show, refreshed=True, episode_count=len(episodes))

    async def refresh_stale(self) -> StaleRefreshReport:
        report = StaleRefreshReport()
        for show in await self._cache.list_stale_shows(self._freshness_ttl):
            try:
                await self.refresh_show(show.slug, force=True)
            except (FetchError, ValidationError) as exc:
                logger.warning("Refreshing %s failed: %s", show.slug, exc)
                report.failed[show.slug] = str(exc)
            else:
                report.refreshed.append(show.slug)
        return report

    async def list_shows(self) -> list[Show]:
        return await self._cache.list_shows()

    async def get_show(self, show_id: int) -> Show:
        show = await self._cache.get_show(show_id)
        if show is None:
            raise KeyError(f"Show {show_id} not found")
        return show

    async def get_episodes(
        self, show_id: int, types: Collection[EpisodeType] | None = None
    ) -> list[EpisodeRecord]:
        await self.get_show(show_id)
        return await self._cache.get_episodes(show_id, types)

    async def delete_show(self, show_id: int) -> bool:
        return await self._cache.delete_show(show_id)

    # Mappings --------------------------------------------------------------

    async def get_mapping(self, show_id: int) -> ShowMapping | None:
        return await self._cache.get_mapping(show_id)

    async def propose_mapping(self, show_id: int) -> MappingProposal:
        """Match the show against the library and persist the proposal.

        Confirmed mappings are never replaced, and library items previously
        rejected for this show are not proposed again.
        """

        library = self._require_library()
        show = await self.get_show(show_id)
        existing = await self._cache.get_mapping(show_id)
        rejected = await self._cache.get_rejected_keys(show_id)
        items = [
            item
            for item in await library.list_library_items()
            if item.key not in rejected
        ]
        decision = self._matcher.decide(show, items)

        if existing is not None and existing.status is MappingStatus.CONFIRMED:
            logger.info("Show %s already has a confirmed mapping", show.slug)
            return MappingProposal(decision=decision, mapping=existing)

        top = decision.top
        if top is None or decision.status is MatchStatus.UNMAPPED:
            return MappingProposal(decision=decision, mapping=existing)
        if decision.status is MatchStatus.AUTO_MATCHED:
            status = MappingStatus.AUTO_MATCHED
        else:
            status = MappingStatus.SUGGESTED
        mapping = await self._cache.save_mapping(
            ShowMapping(
                show_id=show_id,
                library_key=top.item.key,
                library_title=top.item.title,
                confidence=min(max(top.score, 0.0), 1.0),
                status=status,
            )
        )
        return MappingProposal(decision=decision, mapping=mapping)

    async def confirm_mapping(
        self,
        show_id: int,
        library_key: str | None = None,
        library_title: str | None = None,
    ) -> ShowMapping:
        """Confirm the current proposal, or pin the show to an explicit item."""

        await self.get_show(show_id)
        existing = await self._cache.get_mapping(show_id)
        if library_key is None:
            if existing is None:
                raise KeyError(f"Show {show_id} has no mapping to confirm")
            library_key = existing.library_key
            library_title = library_title or existing.library_title
        elif library_title is None:
            if existing is not None and existing.library_key == library_key:
                library_title = existing.library_title
            else:
                library_title = await self._lookup_title(library_key)
        return await self._cache.save_mapping(
            ShowMapping(
                show_id=show_id,
                library_key=library_key,
                library_title=library_title,
                confidence=1.0,
                status=MappingStatus.CONFIRMED,
            )
        )

    async def _lookup_title(self, library_key: str) -> str:
        library = self._require_library()
        for item in await library.list_library_items():
            if item.key == library_key:
                return item.title
        raise KeyError(f"Library item {library_key} not found")

    async def reject_mapping(self, show_id: int) -> ShowMapping:
        return await self._cache.reject_mapping(show_id)

    async def delete_mapping(self, show_id: int) -> bool:
        return await self._cache.delete_mapping(show_id)

    # Syncing ---------------------------------------------------------------

    async def run_sync(
        self,
        show_ids: Collection[int] | None = None,
        *,
        include_inactive: bool = False,
        **overrides: Any,
    ) -> SyncRun:
        """Reconcile mapped shows; ``overrides`` adjust the run's options."""

        orchestrator = self._require_orchestrator()
        options = self._options.with_overrides(**overrides)
        statuses = None if include_inactive or show_ids else ACTIVE_MAPPING_STATUSES
        mappings = await self._cache.list_mappings(statuses=statuses, show_ids=show_ids)
        token = CancellationToken(options.timeout_seconds)
        self._active_token = token
        try:
            return await orchestrator.run_batch(mappings, options, token=token)
        finally:
            if self._active_token is token:
                self._active_token = None

    def cancel_sync(self, reason: str = "stop requested") -> bool:
        if self._active_token is None:
            return False
        self._active_token.cancel(reason)
        return True

    async def get_run(self, run_id: str) -> SyncRun | None:
        return await self._sync_log.get_run(run_id)

    async def list_runs(self, limit: int = 20) -> list[SyncRun]:
        return await self._sync_log.list_runs(limit)
