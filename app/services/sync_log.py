"""Persistence of sync runs and their per-show results (the audit log)."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..db_models import SyncResultRecord, SyncRunRecord
from ..database import store_session
from ..models import SyncOutcome, SyncResult, SyncRun


class SyncLog:
    """Writes SyncRun/SyncResult rows; results are inserted once, never updated."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _session(self):
        return store_session(self._session_factory)

    async def start_run(self, run: SyncRun) -> None:
        async with self._session() as session:
            async with session.begin():
                session.add(SyncRunRecord(id=run.id, started_at=run.started_at))

    async def finish_run(self, run: SyncRun) -> None:
        async with self._session() as session:
            async with session.begin():
                record = await session.get(SyncRunRecord, run.id)
                if record is None:
                    record = SyncRunRecord(id=run.id, started_at=run.started_at)
                    session.add(record)
                record.finished_at = run.finished_at
                record.summary = run.summary
                session.add_all(
                    SyncResultRecord(
                        run_id=run.id,
                        show_id=result.show_id,
                        show_slug=result.show_slug,
                        outcome=result.outcome.value,
                        added=result.added,
                        removed=result.removed,
                        failed=result.failed,
                        retries=result.retries,
                        detail=result.detail,
                        warnings=list(result.warnings),
                        recorded_at=result.recorded_at,
                    )
                    for result in run.results
                )

    async def get_run(self, run_id: str) -> SyncRun | None:
        async with self._session() as session:
            result = await session.execute(
                select(SyncRunRecord)
                .where(SyncRunRecord.id == run_id)
                .options(selectinload(SyncRunRecord.results))
            )
            record = result.scalar_one_or_none()
            return self._to_run(record) if record is not None else None

    async def list_runs(self, limit: int = 20) -> list[SyncRun]:
        async with self._session() as session:
            result = await session.execute(
                select(SyncRunRecord)
                .order_by(SyncRunRecord.started_at.desc())
                .limit(limit)
                .options(selectinload(SyncRunRecord.results))
            )
            return [self._to_run(record) for record in result.scalars()]

    @staticmethod
    def _to_run(record: SyncRunRecord) -> SyncRun:
        return SyncRun(
            id=record.id,
            started_at=record.started_at,
            finished_at=record.finished_at,
            results=[
                SyncResult(
                    show_id=row.show_id,
                    show_slug=row.show_slug,
                    outcome=SyncOutcome(row.outcome),
                    added=row.added,
                    removed=row.removed,
                    failed=row.failed,
                    retries=row.retries,
                    detail=row.detail,
                    warnings=list(row.warnings or []),
                    recorded_at=row.recorded_at,
                )
                for row in record.results
            ],
        )
