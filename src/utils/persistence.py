"""
Relational persistence for intake sessions, mastery and roadmaps.

Tables:
- assessment_sessions: one row per intake run (at most one IN_PROGRESS per user)
- assessment_responses: one row per (session, step), overwritten on resubmission
- skill_mastery: cached per-skill rollup
- mastery_events: append-only grading evidence
- roadmap_items: ordered remediation plan per user

Repositories never commit; wrap a unit of work in ``session_scope()``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

try:
    from ..config import config
    from ..models.mastery import EventType, MasteryEvent, MasteryStore, SkillMasteryState
except ImportError:
    from src.config import config
    from src.models.mastery import EventType, MasteryEvent, MasteryStore, SkillMasteryState

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SessionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


class RoadmapItemStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


# ==================== Tables ====================


class AssessmentSessionRow(Base):
    """One intake run."""

    __tablename__ = "assessment_sessions"

    id = Column(String(64), primary_key=True, default=lambda: f"as-{uuid.uuid4()}")
    user_id = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SessionStatus.IN_PROGRESS.value)
    current_step_index = Column(Integer, nullable=False, default=0)
    catalog_version = Column(String(64), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # At most one active session per user
        Index(
            "uq_assessment_sessions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
        Index("idx_assessment_sessions_user_started", "user_id", "started_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "current_step_index": self.current_step_index,
            "catalog_version": self.catalog_version,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


class AssessmentResponseRow(Base):
    """Latest answer and grade for one step of a session."""

    __tablename__ = "assessment_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        String(64), ForeignKey("assessment_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_id = Column(String(128), nullable=False)
    step_kind = Column(String(32), nullable=False)
    raw_answer = Column(JSON, nullable=True)
    grade_result = Column(JSON, nullable=False, default=dict)
    score = Column(Float, nullable=False, default=0.0)
    passed = Column(Boolean, nullable=False, default=False)
    error_code = Column(String(64), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)

    __table_args__ = (
        UniqueConstraint("session_id", "step_id", name="uq_assessment_responses_session_step"),
    )


class SkillMasteryRow(Base):
    """Cached mastery rollup for one (user, skill)."""

    __tablename__ = "skill_mastery"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False, index=True)
    skill_key = Column(String(128), nullable=False)
    mastery = Column(Float, nullable=False, default=0.0)
    confidence = Column(Float, nullable=False, default=0.0)
    attempts = Column(Integer, nullable=False, default=0)
    last_updated = Column(String(40), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "skill_key", name="uq_skill_mastery_user_skill"),
    )


class MasteryEventRow(Base):
    """Append-only grading evidence."""

    __tablename__ = "mastery_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    skill_key = Column(String(128), nullable=False)
    event_type = Column(String(16), nullable=False)
    score = Column(Float, nullable=False)
    confidence_weight = Column(Float, nullable=False)
    source = Column(String(64), nullable=True)
    session_id = Column(String(64), nullable=True, index=True)
    timestamp = Column(String(40), nullable=False)

    __table_args__ = (
        Index("idx_mastery_events_user_skill", "user_id", "skill_key"),
    )


class RoadmapItemRow(Base):
    """One resource in a user's roadmap."""

    __tablename__ = "roadmap_items"

    id = Column(String(64), primary_key=True, default=lambda: f"rm-{uuid.uuid4()}")
    user_id = Column(String(128), nullable=False, index=True)
    resource_id = Column(String(128), nullable=False)
    position = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=RoadmapItemStatus.NOT_STARTED.value)
    phase = Column(Integer, nullable=False)
    estimated_hours = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "resource_id", name="uq_roadmap_items_user_resource"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "resource_id": self.resource_id,
            "position": self.position,
            "status": self.status,
            "phase": self.phase,
            "estimated_hours": self.estimated_hours,
            "completed_at": _iso(self.completed_at),
        }


# ==================== Engine / sessions ====================


def make_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine for ``url`` (default: config.database.url)."""
    url = url or config.database.url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        connect_args=connect_args,
        echo=config.database.echo if echo is None else echo,
        future=True,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """Process-wide session factory bound to config.database.url."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = make_engine()
        _session_factory = make_session_factory(_engine)
    return _session_factory


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables."""
    if engine is None:
        get_session_factory()
        engine = _engine
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    One unit of work: commit on success, roll back on any error.

    Usage:
        with session_scope(factory) as db:
            SessionRepository(db).create("u-1")
    """
    db = (session_factory or get_session_factory())()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ==================== Repositories ====================


class SessionRepository:
    """Assessment session rows."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: str, catalog_version: Optional[str] = None) -> AssessmentSessionRow:
        row = AssessmentSessionRow(
            id=f"as-{uuid.uuid4()}",
            user_id=user_id,
            status=SessionStatus.IN_PROGRESS.value,
            current_step_index=0,
            catalog_version=catalog_version,
        )
        self.db.add(row)
        # Surfaces the active-session unique index violation here
        self.db.flush()
        return row

    def get(self, session_id: str) -> Optional[AssessmentSessionRow]:
        return self.db.get(AssessmentSessionRow, session_id)

    def active_for_user(self, user_id: str) -> Optional[AssessmentSessionRow]:
        stmt = select(AssessmentSessionRow).where(
            AssessmentSessionRow.user_id == user_id,
            AssessmentSessionRow.status == SessionStatus.IN_PROGRESS.value,
        )
        return self.db.execute(stmt).scalars().first()

    def latest_for_user(self, user_id: str) -> Optional[AssessmentSessionRow]:
        stmt = (
            select(AssessmentSessionRow)
            .where(AssessmentSessionRow.user_id == user_id)
            .order_by(AssessmentSessionRow.started_at.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def has_completed(self, user_id: str) -> bool:
        stmt = select(AssessmentSessionRow.id).where(
            AssessmentSessionRow.user_id == user_id,
            AssessmentSessionRow.status == SessionStatus.COMPLETED.value,
        )
        return self.db.execute(stmt).first() is not None

    def advance_step(self, session_id: str, expected_index: int, new_index: int) -> bool:
        """
        Compare-and-swap ``current_step_index``.

        Returns:
            True if this call moved the session, False if another writer
            got there first or the session is no longer IN_PROGRESS
        """
        stmt = (
            update(AssessmentSessionRow)
            .where(
                AssessmentSessionRow.id == session_id,
                AssessmentSessionRow.current_step_index == expected_index,
                AssessmentSessionRow.status == SessionStatus.IN_PROGRESS.value,
            )
            .values(current_step_index=new_index, updated_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def complete(self, session_id: str) -> bool:
        return self._close(session_id, SessionStatus.COMPLETED)

    def abandon(self, session_id: str) -> bool:
        return self._close(session_id, SessionStatus.ABANDONED)

    def abandon_stale(self, cutoff: datetime) -> int:
        """Abandon IN_PROGRESS sessions untouched since ``cutoff``."""
        stmt = (
            update(AssessmentSessionRow)
            .where(
                AssessmentSessionRow.status == SessionStatus.IN_PROGRESS.value,
                AssessmentSessionRow.updated_at < cutoff,
            )
            .values(status=SessionStatus.ABANDONED.value, updated_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def _close(self, session_id: str, status: SessionStatus) -> bool:
        now = _utc_now()
        values: Dict[str, Any] = {"status": status.value, "updated_at": now}
        if status is SessionStatus.COMPLETED:
            values["completed_at"] = now
        stmt = (
            update(AssessmentSessionRow)
            .where(
                AssessmentSessionRow.id == session_id,
                AssessmentSessionRow.status == SessionStatus.IN_PROGRESS.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1


class ResponseRepository:
    """Per-step answers and grades."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, session_id: str, step_id: str) -> Optional[AssessmentResponseRow]:
        stmt = select(AssessmentResponseRow).where(
            AssessmentResponseRow.session_id == session_id,
            AssessmentResponseRow.step_id == step_id,
        )
        return self.db.execute(stmt).scalars().first()

    def for_session(self, session_id: str) -> List[AssessmentResponseRow]:
        stmt = (
            select(AssessmentResponseRow)
            .where(AssessmentResponseRow.session_id == session_id)
            .order_by(AssessmentResponseRow.id)
        )
        return list(self.db.execute(stmt).scalars())

    def upsert(
        self,
        session_id: str,
        step_id: str,
        step_kind: str,
        raw_answer: Any,
        grade_result: Dict[str, Any],
    ) -> AssessmentResponseRow:
        """Insert, or overwrite the existing response for this step."""
        row = self.get(session_id, step_id)
        if row is None:
            row = AssessmentResponseRow(session_id=session_id, step_id=step_id)
            self.db.add(row)
        else:
            row.updated_at = _utc_now()
        row.step_kind = step_kind
        row.raw_answer = raw_answer
        row.grade_result = grade_result
        row.score = grade_result["score"]
        row.passed = grade_result["passed"]
        row.error_code = grade_result.get("error_code")
        self.db.flush()
        return row


class SqlMasteryStore(MasteryStore):
    """MasteryStore backed by skill_mastery and mastery_events."""

    def __init__(self, db: Session):
        self.db = db

    def _row(self, user_id: str, skill_key: str) -> Optional[SkillMasteryRow]:
        stmt = select(SkillMasteryRow).where(
            SkillMasteryRow.user_id == user_id,
            SkillMasteryRow.skill_key == skill_key,
        )
        return self.db.execute(stmt).scalars().first()

    @staticmethod
    def _to_state(row: SkillMasteryRow) -> SkillMasteryState:
        return SkillMasteryState(
            user_id=row.user_id,
            skill_key=row.skill_key,
            mastery=row.mastery,
            confidence=row.confidence,
            attempts=row.attempts,
            last_updated=row.last_updated,
        )

    def get(self, user_id: str, skill_key: str) -> Optional[SkillMasteryState]:
        row = self._row(user_id, skill_key)
        return self._to_state(row) if row else None

    def save(self, state: SkillMasteryState) -> None:
        row = self._row(state.user_id, state.skill_key)
        if row is None:
            row = SkillMasteryRow(user_id=state.user_id, skill_key=state.skill_key)
            self.db.add(row)
        row.mastery = state.mastery
        row.confidence = state.confidence
        row.attempts = state.attempts
        row.last_updated = state.last_updated
        self.db.flush()

    def append_event(self, event: MasteryEvent) -> None:
        self.db.add(
            MasteryEventRow(
                user_id=event.user_id,
                skill_key=event.skill_key,
                event_type=event.event_type.value,
                score=event.score,
                confidence_weight=event.confidence_weight,
                source=event.source,
                session_id=event.session_id,
                timestamp=event.timestamp,
            )
        )

    def states_for_user(self, user_id: str) -> Dict[str, SkillMasteryState]:
        stmt = select(SkillMasteryRow).where(SkillMasteryRow.user_id == user_id)
        return {row.skill_key: self._to_state(row) for row in self.db.execute(stmt).scalars()}

    def events_for_user(self, user_id: str) -> List[MasteryEvent]:
        stmt = (
            select(MasteryEventRow)
            .where(MasteryEventRow.user_id == user_id)
            .order_by(MasteryEventRow.id)
        )
        return [
            MasteryEvent(
                user_id=row.user_id,
                skill_key=row.skill_key,
                event_type=EventType(row.event_type),
                score=row.score,
                confidence_weight=row.confidence_weight,
                source=row.source,
                session_id=row.session_id,
                timestamp=row.timestamp,
            )
            for row in self.db.execute(stmt).scalars()
        ]


class RoadmapRepository:
    """Roadmap items per user."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, item_id: str) -> Optional[RoadmapItemRow]:
        return self.db.get(RoadmapItemRow, item_id)

    def for_user(self, user_id: str) -> List[RoadmapItemRow]:
        stmt = (
            select(RoadmapItemRow)
            .where(RoadmapItemRow.user_id == user_id)
            .order_by(RoadmapItemRow.position)
        )
        return list(self.db.execute(stmt).scalars())

    def replace_pending(self, user_id: str, entries: Sequence[Any]) -> List[RoadmapItemRow]:
        """
        Replace every non-completed item of ``user_id``.

        Completed items keep their status and move to the front; ``entries``
        (objects with resource_id, phase, estimated_hours) follow in order.
        Entries for already completed resources are skipped.
        """
        existing = self.for_user(user_id)
        completed = [r for r in existing if r.status == RoadmapItemStatus.COMPLETED.value]
        for row in existing:
            if row.status != RoadmapItemStatus.COMPLETED.value:
                self.db.delete(row)
        self.db.flush()

        for position, row in enumerate(completed):
            row.position = position

        done = {r.resource_id for r in completed}
        position = len(completed)
        for entry in entries:
            if entry.resource_id in done:
                continue
            self.db.add(
                RoadmapItemRow(
                    id=f"rm-{uuid.uuid4()}",
                    user_id=user_id,
                    resource_id=entry.resource_id,
                    position=position,
                    status=RoadmapItemStatus.NOT_STARTED.value,
                    phase=entry.phase,
                    estimated_hours=entry.estimated_hours,
                )
            )
            position += 1
        self.db.flush()
        return self.for_user(user_id)

    def set_status(self, item_id: str, status: RoadmapItemStatus) -> Optional[RoadmapItemRow]:
        row = self.get(item_id)
        if row is None:
            return None
        now = _utc_now()
        row.status = status.value
        row.updated_at = now
        row.completed_at = now if status is RoadmapItemStatus.COMPLETED else None
        self.db.flush()
        return row
