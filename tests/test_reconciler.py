from __future__ import annotations

import asyncio

import pytest

from app.database import Database
from app.errors import (
    LibraryErrorKind,
    LibraryServiceError,
    ReconcileCancelled,
    ReconcileFatal,
    ReconcileTransient,
)
from app.models import EpisodeRecord, EpisodeType, MappingStatus, ShowMapping, SyncOptions, SyncOutcome
from app.services.cache import ClassificationCache
from app.services.cancellation import CancellationToken
from app.services.reconciler import Reconciler

CANON_ONLY = SyncOptions(target_types={EpisodeType.CANON})
ONE_PIECE = "CCCCCCCFFC"


async def _seed(
    cache: ClassificationCache,
    pattern: str = ONE_PIECE,
    *,
    status: MappingStatus = MappingStatus.CONFIRMED,
    collection_id: str | None = None,
) -> ShowMapping:
    types = {"C": EpisodeType.CANON, "F": EpisodeType.FILLER}
    show_id = await cache.upsert_show("one-piece", "One Piece")
    await cache.replace_episodes(
        show_id,
        [
            EpisodeRecord(number=number, title=f"Episode {number}", episode_type=types[code])
            for number, code in enumerate(pattern, start=1)
        ],
    )
    return await cache.save_mapping(
        ShowMapping(
            show_id=show_id,
            library_key="op",
            library_title="One Piece",
            status=status,
            collection_id=collection_id,
        )
    )


def test_one_piece_converges_and_is_idempotent(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            mapping = await _seed(cache)
            reconciler = Reconciler(cache, library)

            first = await reconciler.reconcile(mapping, CANON_ONLY)

            assert first.outcome is SyncOutcome.SUCCESS
            assert first.created_collection
            assert first.added == 8 and first.removed == 0
            assert first.to_add == [f"op-e{n}" for n in (1, 2, 3, 4, 5, 6, 7, 10)]
            assert library.members(first.collection_id) == first.to_add
            assert library.collections[first.collection_id]["name"] == "One Piece (Canon)"

            await cache.set_collection_id(mapping.show_id, first.collection_id)
            mapping = await cache.get_mapping(mapping.show_id)
            second = await reconciler.reconcile(mapping, CANON_ONLY)

            assert second.outcome is SyncOutcome.SUCCESS
            assert (second.added, second.removed) == (0, 0)
            assert second.plan.is_noop
            assert not second.created_collection
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_existing_collection_is_found_by_name(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            collection_id = library.add_collection("op", "One Piece (Canon)", ["op-e1", "op-e8"])
            mapping = await _seed(cache)

            result = await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)

            assert result.collection_id == collection_id
            assert not result.created_collection
            assert result.added == 7
            # Filler stays unless removal is requested.
            assert "op-e8" in library.members(collection_id)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_remove_filler_removes_non_targets(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            collection_id = library.add_collection(
                "op", "One Piece (Canon)", ["op-e1", "op-e8", "op-e9", "stray"]
            )
            mapping = await _seed(cache, collection_id=collection_id)
            options = CANON_ONLY.with_overrides(remove_filler=True)

            result = await Reconciler(cache, library).reconcile(mapping, options)

            assert result.outcome is SyncOutcome.SUCCESS
            assert result.to_remove == ["op-e8", "op-e9", "stray"]
            assert result.removed == 3
            assert sorted(library.members(collection_id)) == sorted(
                f"op-e{n}" for n in (1, 2, 3, 4, 5, 6, 7, 10)
            )
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_dry_run_plans_without_mutating(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            mapping = await _seed(cache)

            result = await Reconciler(cache, library).reconcile(
                mapping, CANON_ONLY.with_overrides(dry_run=True)
            )

            assert result.outcome is SyncOutcome.SUCCESS
            assert len(result.to_add) == 8
            assert result.added == 0
            assert library.collections == {}
            assert not any(call[0] == "create_collection" for call in library.calls)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_count_mismatch_warns_and_skips_missing(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 8)
            mapping = await _seed(cache)

            result = await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)

            assert result.added == 7
            assert any("count mismatch" in warning for warning in result.warnings)
            assert any("missing from library" in warning for warning in result.warnings)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_partial_success_when_some_adds_fail(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            library.fail(
                "add_to_collection",
                LibraryServiceError(LibraryErrorKind.UNKNOWN, "bad item"),
                key="op-e3",
            )
            mapping = await _seed(cache)

            result = await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)

            assert result.outcome is SyncOutcome.PARTIAL_SUCCESS
            assert result.added == 7
            assert result.failed == 1
            assert "op-e3" in result.errors[0]
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_all_adds_failing_transiently_raises_transient(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            library.fail("add_to_collection", library.transient())
            mapping = await _seed(cache)

            with pytest.raises(ReconcileTransient):
                await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_unauthorized_is_fatal(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            library.fail(
                "list_episodes", LibraryServiceError(LibraryErrorKind.UNAUTHORIZED, "401")
            )
            mapping = await _seed(cache)

            with pytest.raises(ReconcileFatal):
                await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_stale_collection_is_fatal(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            mapping = await _seed(cache, collection_id="gone")

            with pytest.raises(ReconcileFatal, match="stale"):
                await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_unconfirmed_mapping_is_refused(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            mapping = await _seed(cache, status=MappingStatus.SUGGESTED)

            with pytest.raises(ReconcileFatal, match="confirmed"):
                await Reconciler(cache, library).plan(mapping, CANON_ONLY)
            assert library.calls == []
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_cancellation_stops_between_items(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            mapping = await _seed(cache)
            token = CancellationToken()
            original_add = library.add_to_collection

            async def add_then_cancel(collection_id: str, episode_key: str) -> None:
                await original_add(collection_id, episode_key)
                if len(library.members(collection_id)) == 3:
                    token.cancel("operator stop")

            library.add_to_collection = add_then_cancel

            with pytest.raises(ReconcileCancelled) as excinfo:
                await Reconciler(cache, library).reconcile(mapping, CANON_ONLY, token)

            assert excinfo.value.added == 3
            assert "operator stop" in str(excinfo.value)
        finally:
            await database.dispose()

    asyncio.run(runner())


def test_unauthorized_item_keeps_applied_counts(database_url: str, library) -> None:
    async def runner() -> None:
        database = Database(database_url)
        await database.create_all()
        try:
            cache = ClassificationCache(database.session_factory)
            library.add_show("op", "One Piece", 10)
            library.fail(
                "add_to_collection",
                LibraryServiceError(LibraryErrorKind.UNAUTHORIZED, "401"),
                key="op-e4",
            )
            mapping = await _seed(cache)

            with pytest.raises(ReconcileFatal) as excinfo:
                await Reconciler(cache, library).reconcile(mapping, CANON_ONLY)

            error = excinfo.value
            assert (error.added, error.removed, error.failed) == (3, 0, 1)
            assert error.collection_id is not None
            assert library.members(error.collection_id) == ["op-e1", "op-e2", "op-e3"]
        finally:
            await database.dispose()

    asyncio.run(runner())
