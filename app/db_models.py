"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


class ShowRecord(Base):
    """A show as identified by the listing source."""

    __tablename__ = "shows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True)
    title: Mapped[str] = mapped_column(String(255))
    last_fetched: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    episodes: Mapped[list["EpisodeRow"]] = relationship(
        back_populates="show",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EpisodeRow.number",
    )
    mapping: Mapped["ShowMappingRecord | None"] = relationship(
        back_populates="show",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )


class EpisodeRow(Base):
    """Classification of a single episode of a show."""

    __tablename__ = "episodes"
    __table_args__ = (
        UniqueConstraint("show_id", "number", name="uq_episode_show_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    show_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("shows.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(Text)
    episode_type: Mapped[str] = mapped_column(String(16))

    show: Mapped[ShowRecord] = relationship(back_populates="episodes")


class ShowMappingRecord(Base):
    """Link between a show and a media-server library item."""

    __tablename__ = "show_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    show_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("shows.id", ondelete="CASCADE"), unique=True
    )
    library_key: Mapped[str] = mapped_column(String(64))
    library_title: Mapped[str] = mapped_column(String(255))
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    status: Mapped[str] = mapped_column(String(16))
    collection_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rejected_keys: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    show: Mapped[ShowRecord] = relationship(back_populates="mapping")


class SyncRunRecord(Base):
    """A single batch invocation of the sync orchestrator."""

    __tablename__ = "sync_runs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    summary: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)

    results: Mapped[list["SyncResultRecord"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="SyncResultRecord.id",
    )


class SyncResultRecord(Base):
    """Immutable audit entry for one show within a sync run."""

    __tablename__ = "sync_results"
    __table_args__ = (
        UniqueConstraint("run_id", "show_id", name="uq_sync_result_run_show"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("sync_runs.id", ondelete="CASCADE"), index=True
    )
    # Plain column: audit rows outlive deleted shows.
    show_id: Mapped[int] = mapped_column(Integer)
    show_slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16))
    added: Mapped[int] = mapped_column(Integer, default=0)
    removed: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    retries: Mapped[int] = mapped_column(Integer, default=0)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime)

    run: Mapped[SyncRunRecord] = relationship(back_populates="results")
