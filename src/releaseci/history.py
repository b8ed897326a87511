# history.py
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload, sessionmaker

from .model import WorkflowRun

DEFAULT_DATABASE_URL = "sqlite:///.releaseci/runs.db"


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    error_kind: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    steps: Mapped[List["StepRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="StepRecord.position"
    )


class StepRecord(Base):
    __tablename__ = "step_results"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job: Mapped[str] = mapped_column(sa.Text, nullable=False)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    duration: Mapped[float] = mapped_column(sa.Float, nullable=False, default=0.0)
    target: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    run: Mapped[RunRecord] = relationship(back_populates="steps")


def _ts(value: Optional[float]) -> Optional[datetime]:
    return None if value is None else datetime.fromtimestamp(value, tz=timezone.utc)


class RunStore:
    """
    Finished runs and their step results.

    Only statuses, exit codes and timings are stored. Step output and
    secrets never reach the database.
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL):
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = sa.create_engine(url, pool_pre_ping=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(self.engine, expire_on_commit=False)

    def record(self, run: WorkflowRun) -> None:
        with self.Session.begin() as s:
            rec = RunRecord(
                id=run.id,
                workflow=run.workflow,
                ref=run.ref,
                sha=run.sha,
                status=run.status.value,
                error_kind=run.error_kind,
                error_message=run.error_message,
                started_at=_ts(run.started_at),
                finished_at=_ts(run.finished_at),
            )
            for i, r in enumerate(run.steps):
                rec.steps.append(
                    StepRecord(
                        position=i,
                        job=r.job,
                        name=r.name,
                        status=r.status.value,
                        exit_code=r.exit_code,
                        attempts=r.attempts,
                        duration=r.duration,
                        target=r.target,
                    )
                )
            s.add(rec)

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self.Session() as s:
            q = sa.select(RunRecord).where(RunRecord.id == run_id).options(selectinload(RunRecord.steps))
            return s.execute(q).scalar_one_or_none()

    def recent(self, limit: int = 20) -> List[RunRecord]:
        with self.Session() as s:
            q = (
                sa.select(RunRecord)
                .options(selectinload(RunRecord.steps))
                .order_by(RunRecord.started_at.desc())
                .limit(limit)
            )
            return list(s.execute(q).scalars())

    def close(self) -> None:
        self.engine.dispose()
