"""Convergence of a show's media-server collection towards its canon episodes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, TypeVar

from ..errors import (
    LibraryErrorKind,
    LibraryServiceError,
    ReconcileCancelled,
    ReconcileFatal,
    ReconcileTransient,
)
from ..models import ShowMapping, SyncOptions, SyncOutcome
from .cache import ClassificationCache
from .cancellation import CancellationToken
from .library import LibraryService

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class ReconcilePlan:
    """The add/remove operations needed to converge one collection."""

    collection_id: str | None
    collection_name: str
    to_add: list[str] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)
    target_count: int = 0
    current_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.to_add or self.to_remove)


@dataclass(slots=True)
class ReconcileResult:
    outcome: SyncOutcome
    plan: ReconcilePlan
    collection_id: str | None = None
    created_collection: bool = False
    added: int = 0
    removed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def to_add(self) -> list[str]:
        return self.plan.to_add

    @property
    def to_remove(self) -> list[str]:
        return self.plan.to_remove

    @property
    def warnings(self) -> list[str]:
        return self.plan.warnings


class Reconciler:
    """Computes and applies the minimal membership change for a mapped show."""

    def __init__(self, cache: ClassificationCache, library: LibraryService) -> None:
        self._cache = cache
        self._library = library

    async def plan(
        self,
        mapping: ShowMapping,
        options: SyncOptions,
        token: CancellationToken | None = None,
    ) -> ReconcilePlan:
        """Compute ``toAdd``/``toRemove`` without touching the media server."""

        if not mapping.is_active:
            raise ReconcileFatal(
                f"Mapping for show {mapping.show_id} is {mapping.status.value}; "
                "it must be confirmed before syncing"
            )
        self._checkpoint(token)

        episodes = await self._cache.get_episodes(mapping.show_id)
        if not episodes:
            raise ReconcileFatal(f"Show {mapping.show_id} has no cached episodes")

        library_episodes = await self._call(
            self._library.list_episodes(mapping.library_key),
            f"listing episodes of {mapping.library_key}",
        )
        keys_by_number = {episode.number: episode.key for episode in library_episodes}

        warnings: list[str] = []
        if len(library_episodes) != len(episodes):
            warnings.append(
                f"Episode count mismatch: listing has {len(episodes)}, "
                f"library has {len(library_episodes)}"
            )
        targets = [
            episode for episode in episodes if episode.episode_type in options.target_types
        ]
        missing = [episode.number for episode in targets if episode.number not in keys_by_number]
        if missing:
            warnings.append(
                f"{len(missing)} target episode(s) missing from library "
                f"(first: {missing[0]})"
            )
        for warning in warnings:
            logger.warning("Show %s: %s", mapping.show_slug or mapping.show_id, warning)

        target_keys = [
            keys_by_number[episode.number]
            for episode in targets
            if episode.number in keys_by_number
        ]
        collection_name = options.collection_name(mapping.library_title)
        self._checkpoint(token)
        collection_id, members = await self._load_collection(mapping, collection_name)

        current = set(members)
        target_set = set(target_keys)
        to_add = [key for key in target_keys if key not in current]
        to_remove: list[str] = []
        if options.remove_filler:
            to_remove = [key for key in dict.fromkeys(members) if key not in target_set]

        return ReconcilePlan(
            collection_id=collection_id,
            collection_name=collection_name,
            to_add=to_add,
            to_remove=to_remove,
            target_count=len(target_set),
            current_count=len(current),
            warnings=warnings,
        )

    async def reconcile(
        self,
        mapping: ShowMapping,
        options: SyncOptions,
        token: CancellationToken | None = None,
    ) -> ReconcileResult:
        """Apply additions then removals, one item at a time."""

        plan = await self.plan(mapping, options, token)
        if options.dry_run or plan.is_noop:
            return ReconcileResult(
                outcome=SyncOutcome.SUCCESS,
                plan=plan,
                collection_id=plan.collection_id,
            )

        self._checkpoint(token)
        collection_id = plan.collection_id
        created = False
        if collection_id is None:
            # Only reachable with additions pending: removals need an existing collection.
            collection_id = await self._call(
                self._library.create_collection(mapping.library_key, plan.collection_name),
                f"creating collection {plan.collection_name!r}",
            )
            created = True

        added = removed = 0
        errors: list[str] = []
        transient_only = True
        operations = [("add", key) for key in plan.to_add]
        operations += [("remove", key) for key in plan.to_remove]

        for action, key in operations:
            self._checkpoint(
                token, added=added, removed=removed, collection_id=collection_id
            )
            try:
                if action == "add":
                    await self._library.add_to_collection(collection_id, key)
                else:
                    await self._library.remove_from_collection(collection_id, key)
            except LibraryServiceError as exc:
                if exc.kind is LibraryErrorKind.UNAUTHORIZED:
                    raise ReconcileFatal(
                        f"{action} {key}: {exc}",
                        added=added,
                        removed=removed,
                        failed=len(errors) + 1,
                        collection_id=collection_id,
                    ) from exc
                logger.warning("Collection update failed (%s %s): %s", action, key, exc)
                errors.append(f"{action} {key}: {exc}")
                transient_only &= exc.transient
            else:
                if action == "add":
                    added += 1
                else:
                    removed += 1

        failed = len(errors)
        if not failed:
            outcome = SyncOutcome.SUCCESS
        elif added or removed:
            outcome = SyncOutcome.PARTIAL_SUCCESS
        elif transient_only:
            raise ReconcileTransient(
                f"All {failed} collection updates failed: {errors[0]}",
                collection_id=collection_id,
            )
        else:
            outcome = SyncOutcome.FAILED


        logger.info(
            "Reconciled show %s: %s (+%d, -%d, %d failed)",
            mapping.show_slug or mapping.show_id,
            outcome.value,
            added,
            removed,
            failed,
        )
        return ReconcileResult(
            outcome=outcome,
            plan=plan,
            collection_id=collection_id,
            created_collection=created,
            added=added,
            removed=removed,
            failed=failed,
            errors=errors,
        )

    async def _load_collection(
        self, mapping: ShowMapping, name: str
    ) -> tuple[str | None, list[str]]:
        if mapping.collection_id:
            try:
                members = await self._library.get_collection_members(mapping.collection_id)
            except LibraryServiceError as exc:
                if exc.kind is LibraryErrorKind.NOT_FOUND:
                    raise ReconcileFatal(
                        f"Collection {mapping.collection_id} no longer exists; "
                        "the mapping is stale"
                    ) from exc
                raise self._translate(exc, "reading collection members") from exc
            return mapping.collection_id, members

        collection_id = await self._call(
            self._library.find_collection(mapping.library_key, name),
            f"looking up collection {name!r}",
        )
        if collection_id is None:
            return None, []
        members = await self._call(
            self._library.get_collection_members(collection_id),
            "reading collection members",
        )
        return collection_id, members

    async def _call(self, awaitable: Awaitable[T], action: str) -> T:
        try:
            return await awaitable
        except LibraryServiceError as exc:
            raise self._translate(exc, action) from exc

    @staticmethod
    def _translate(exc: LibraryServiceError, action: str) -> Exception:
        if exc.transient:
            return ReconcileTransient(f"{action}: {exc}")
        return ReconcileFatal(f"{action}: {exc}")

    @staticmethod
    def _checkpoint(
        token: CancellationToken | None,
        *,
        added: int = 0,
        removed: int = 0,
        collection_id: str | None = None,
    ) -> None:
        if token is not None and token.cancelled:
            raise ReconcileCancelled(
                f"Cancelled ({token.reason})",
                added=added,
                removed=removed,
                collection_id=collection_id,
            )
