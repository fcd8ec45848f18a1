"""Batch synchronisation of mapped shows with bounded concurrency and retries."""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Sequence

from ..errors import (
    ReconcileCancelled,
    ReconcileFatal,
    ReconcileTransient,
    StoreUnavailable,
)
from ..models import ShowMapping, SyncOptions, SyncOutcome, SyncResult, SyncRun
from ..utils import utcnow
from .cache import ClassificationCache
from .cancellation import CancellationToken
from .locks import KeyedLock
from .reconciler import ReconcileResult, Reconciler
from .sync_log import SyncLog

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Runs the reconciler over many shows and records a ``SyncRun``.

    At most ``options.concurrency`` shows are reconciled at once and a show is
    never reconciled by two workers at the same time. Transient failures are
    retried with exponential backoff; fatal failures are recorded as they are.
    Only an unreachable store aborts the whole batch.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        sync_log: SyncLog,
        options: SyncOptions,
        cache: ClassificationCache | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._sync_log = sync_log
        self._options = options
        self._cache = cache
        self._locks: KeyedLock[int] = KeyedLock()

    async def run_batch(
        self,
        mappings: Sequence[ShowMapping],
        options: SyncOptions | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> SyncRun:
        options = options or self._options
        token = token or CancellationToken(options.timeout_seconds)
        # One result per show and run.
        unique = list({mapping.show_id: mapping for mapping in mappings}.values())

        run = SyncRun(id=secrets.token_hex(16), started_at=utcnow())
        await self._sync_log.start_run(run)
        logger.info(
            "Sync run %s started for %d show(s) (concurrency=%d, dry_run=%s)",
            run.id,
            len(unique),
            options.concurrency,
            options.dry_run,
        )

        semaphore = asyncio.Semaphore(options.concurrency)
        tasks = [
            asyncio.create_task(self._run_show(mapping, options, token, semaphore))
            for mapping in unique
        ]
        try:
            results = await asyncio.gather(*tasks)
        except StoreUnavailable:
            logger.error("Store became unavailable; aborting sync run %s", run.id)
            token.cancel("store unavailable")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        run = run.model_copy(update={"results": list(results), "finished_at": utcnow()})
        await self._sync_log.finish_run(run)
        logger.info("Sync run %s finished: %s", run.id, run.summary)
        return run

    async def _run_show(
        self,
        mapping: ShowMapping,
        options: SyncOptions,
        token: CancellationToken,
        semaphore: asyncio.Semaphore,
    ) -> SyncResult:
        if not mapping.is_active:
            return _result(
                mapping,
                SyncOutcome.SKIPPED,
                detail=f"mapping is {mapping.status.value}; awaiting confirmation",
            )
        async with semaphore:
            if token.cancelled:
                return _result(
                    mapping, SyncOutcome.SKIPPED, detail=f"not started: {token.reason}"
                )
            async with self._locks.hold(mapping.show_id):
                if token.cancelled:
                    return _result(
                        mapping,
                        SyncOutcome.SKIPPED,
                        detail=f"not started: {token.reason}",
                    )
                return await self._reconcile_with_retries(mapping, options, token)

    async def _reconcile_with_retries(
        self,
        mapping: ShowMapping,
        options: SyncOptions,
        token: CancellationToken,
    ) -> SyncResult:
        label = mapping.show_slug or mapping.show_id
        attempt = mapping
        retries = 0
        while True:
            try:
                outcome = await self._reconciler.reconcile(attempt, options, token)
            except StoreUnavailable:
                raise
            except ReconcileTransient as exc:
                if exc.collection_id and exc.collection_id != attempt.collection_id:
                    # Retry against the collection that was already created.
                    attempt = attempt.model_copy(update={"collection_id": exc.collection_id})
                    await self._remember_collection(mapping, exc.collection_id)
                if retries >= options.retry_limit:
                    logger.warning(
                        "Show %s failed after %d retries: %s", label, retries, exc
                    )
                    return _result(
                        mapping,
                        SyncOutcome.FAILED,
                        retries=retries,
                        detail=f"transient failure, retries exhausted: {exc}",
                    )
                retries += 1
                delay = min(
                    options.retry_backoff_seconds * 2 ** (retries - 1),
                    options.retry_backoff_max_seconds,
                )
                logger.warning(
                    "Transient failure for show %s (attempt %d/%d), retrying in %.1fs: %s",
                    label,
                    retries,
                    options.retry_limit,
                    delay,
                    exc,
                )
                if await token.sleep(delay):
                    return _result(
                        mapping,
                        SyncOutcome.CANCELLED,
                        retries=retries,
                        detail=f"cancelled while waiting to retry: {token.reason}",
                    )
                continue
            except ReconcileCancelled as exc:
                logger.info("Show %s cancelled: %s", label, exc)
                await self._remember_collection(mapping, exc.collection_id)
                return _result(
                    mapping,
                    SyncOutcome.CANCELLED,
                    added=exc.added,
                    removed=exc.removed,
                    retries=retries,
                    detail=str(exc),
                )
            except ReconcileFatal as exc:
                logger.warning("Show %s failed: %s", label, exc)
                await self._remember_collection(mapping, exc.collection_id)
                return _result(
                    mapping,
                    SyncOutcome.FAILED,
                    added=exc.added,
                    removed=exc.removed,
                    failed=exc.failed,
                    retries=retries,
                    detail=str(exc),
                )
            except Exception as exc:
                logger.exception("Unexpected error while syncing show %s", label)
                return _result(
                    mapping,
                    SyncOutcome.FAILED,
                    retries=retries,
                    detail=f"unexpected error: {exc}",
                )

            await self._remember_collection(mapping, outcome.collection_id)
            return _result(
                mapping,
                outcome.outcome,
                added=outcome.added,
                removed=outcome.removed,
                failed=outcome.failed,
                retries=retries,
                detail=_describe(outcome, options),
                warnings=outcome.warnings,
            )

    async def _remember_collection(
        self, mapping: ShowMapping, collection_id: str | None
    ) -> None:
        if self._cache is None or not collection_id:
            return
        if collection_id == mapping.collection_id:
            return
        try:
            await self._cache.set_collection_id(mapping.show_id, collection_id)
        except KeyError:
            logger.warning(
                "Mapping for show %s vanished before collection %s could be stored",
                mapping.show_id,
                collection_id,
            )


def _describe(outcome: ReconcileResult, options: SyncOptions) -> str | None:
    if options.dry_run:
        return (
            f"dry run: would add {len(outcome.to_add)}, "
            f"remove {len(outcome.to_remove)}"
        )
    if outcome.errors:
        return "; ".join(outcome.errors)
    return None


def _result(
    mapping: ShowMapping,
    outcome: SyncOutcome,
    *,
    added: int = 0,
    removed: int = 0,
    failed: int = 0,
    retries: int = 0,
    detail: str | None = None,
    warnings: Sequence[str] = (),
) -> SyncResult:
    return SyncResult(
        show_id=mapping.show_id,
        show_slug=mapping.show_slug,
        outcome=outcome,
        added=added,
        removed=removed,
        failed=failed,
        retries=retries,
        detail=detail,
        warnings=list(warnings),
        recorded_at=utcnow(),
    )
