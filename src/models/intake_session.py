"""
Intake Session - the assessment wizard's state machine.

States: IN_PROGRESS -> COMPLETED, IN_PROGRESS -> ABANDONED.

Every operation is a function of the persisted session row and the request
payload; nothing is cached in memory between calls. Step advances use a
conditional update on ``current_step_index`` so two concurrent submissions
for the same step cannot both win.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

try:
    from ..agents.grading_agent import GradeResult, Grader
    from ..config import config
    from ..exceptions import NotFoundError, StateConflictError
    from ..utils.persistence import (
        AssessmentSessionRow,
        ResponseRepository,
        SessionRepository,
        SessionStatus,
        SqlMasteryStore,
        session_scope,
    )
    from ..utils.progress import mastery_histogram, mastery_summary
    from .catalog import Catalog, get_catalog
    from .intake_steps import IntakeStep, StepKind
    from .mastery import EventType, MasteryAggregator
    from .roadmap import RoadmapOptions, RoadmapService
except ImportError:
    from src.agents.grading_agent import GradeResult, Grader
    from src.config import config
    from src.exceptions import NotFoundError, StateConflictError
    from src.utils.persistence import (
        AssessmentSessionRow,
        ResponseRepository,
        SessionRepository,
        SessionStatus,
        SqlMasteryStore,
        session_scope,
    )
    from src.utils.progress import mastery_histogram, mastery_summary
    from src.models.catalog import Catalog, get_catalog
    from src.models.intake_steps import IntakeStep, StepKind
    from src.models.mastery import EventType, MasteryAggregator
    from src.models.roadmap import RoadmapOptions, RoadmapService

logger = logging.getLogger(__name__)

# Self-report and calibration steps record ATTEMPT events
CALIBRATION_KINDS = (StepKind.QUESTIONNAIRE, StepKind.MICRO_MCQ_BURST)

WEEKLY_HOURS_FIELD = "weekly_hours"


@dataclass
class StartResult:
    session_id: str
    first_step: Dict[str, Any]
    total_steps: int
    estimated_minutes: int
    resumed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "first_step": self.first_step,
            "total_steps": self.total_steps,
            "estimated_minutes": self.estimated_minutes,
            "resumed": self.resumed,
        }


@dataclass
class StepView:
    """What the wizard renders for a session."""

    session_id: str
    status: str
    step: Optional[Dict[str, Any]]
    step_index: int
    total_steps: int
    progress: int
    can_go_back: bool
    previous_answer: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "step": self.step,
            "step_index": self.step_index,
            "total_steps": self.total_steps,
            "progress": self.progress,
            "can_go_back": self.can_go_back,
            "previous_answer": self.previous_answer,
        }


@dataclass
class SubmitResult:
    grade_result: GradeResult
    is_complete: bool
    next_step: Optional[Dict[str, Any]]
    progress: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grade_result": self.grade_result.to_dict(),
            "is_complete": self.is_complete,
            "next_step": self.next_step,
            "progress": self.progress,
        }


class IntakeSessionService:
    """
    Runs intake sessions: start, step loop (submit/back), completion.

    Features:
    - At most one IN_PROGRESS session per user
    - Resubmitting a step after going back overwrites its response
    - Mastery events are appended for every graded step
    - The roadmap is generated once, when the last step is submitted

    Usage:
        service = IntakeSessionService(catalog, session_factory)
        started = service.start("u-1")
        result = service.submit_answer(started.session_id, "q_welcome", {...})
    """

    def __init__(
        self,
        catalog: Optional[Catalog] = None,
        session_factory: Optional[sessionmaker] = None,
        grader: Optional[Grader] = None,
        roadmap_service: Optional[RoadmapService] = None,
    ):
        self.catalog = catalog or get_catalog()
        self.session_factory = session_factory
        self.grader = grader or Grader()
        self.roadmap_service = roadmap_service or RoadmapService(self.catalog, session_factory)

    @property
    def steps(self):
        return self.catalog.steps

    @property
    def total_steps(self) -> int:
        return len(self.catalog.steps)

    # ==================== Lifecycle ====================

    def start(self, user_id: str) -> StartResult:
        """
        Start a new session at step 0.

        Raises:
            StateConflictError: SESSION_ALREADY_ACTIVE
        """
        try:
            with session_scope(self.session_factory) as db:
                repo = SessionRepository(db)
                active = repo.active_for_user(user_id)
                if active is not None:
                    raise self._already_active(user_id, active.id)
                session_id = repo.create(user_id, self.catalog.version).id
        except IntegrityError as e:
            # Lost the race against a concurrent start
            raise self._already_active(user_id) from e

        logger.info("Started intake session %s for user %s", session_id, user_id)
        return StartResult(
            session_id=session_id,
            first_step=self.steps.at(0).to_client_dict(),
            total_steps=self.total_steps,
            estimated_minutes=self.steps.total_estimated_minutes(),
        )

    def start_or_resume(self, user_id: str) -> StartResult:
        """Return the user's active session, or start one."""
        with session_scope(self.session_factory) as db:
            active = SessionRepository(db).active_for_user(user_id)
            if active is not None:
                logger.info("Resuming intake session %s for user %s", active.id, user_id)
                return StartResult(
                    session_id=active.id,
                    first_step=self.steps.at(active.current_step_index).to_client_dict(),
                    total_steps=self.total_steps,
                    estimated_minutes=self.steps.total_estimated_minutes(),
                    resumed=True,
                )
        return self.start(user_id)

    def abandon(self, session_id: str) -> Dict[str, Any]:
        """
        Abandon an IN_PROGRESS session.

        Raises:
            NotFoundError: SESSION_NOT_FOUND
            StateConflictError: SESSION_CLOSED
        """
        with session_scope(self.session_factory) as db:
            repo = SessionRepository(db)
            row = self._load(db, session_id)
            self._require_open(row)
            if not repo.abandon(session_id):
                db.refresh(row)
                raise self._closed(row)
            db.refresh(row)
            logger.info("Abandoned intake session %s", session_id)
            return row.to_dict()

    def abandon_stale(self, max_age: timedelta) -> int:
        """Abandon sessions with no activity for ``max_age``. Returns the count."""
        cutoff = datetime.now(timezone.utc) - max_age
        with session_scope(self.session_factory) as db:
            count = SessionRepository(db).abandon_stale(cutoff)
        if count:
            logger.info("Abandoned %d stale intake sessions (idle > %s)", count, max_age)
        return count

    # ==================== Step loop ====================

    def get_current_step(self, session_id: str) -> StepView:
        """
        Current step, previous answer (after going back) and progress.

        Raises:
            NotFoundError: SESSION_NOT_FOUND
        """
        with session_scope(self.session_factory) as db:
            return self._view(db, self._load(db, session_id))

    def submit_answer(self, session_id: str, step_id: str, answer: Any) -> SubmitResult:
        """
        Grade and record the answer for the current step, then advance.

        A grading failure still consumes the step (score 0, error code set).

        Raises:
            NotFoundError: SESSION_NOT_FOUND
            StateConflictError: SESSION_CLOSED or STEP_MISMATCH
            AnswerValidationError: Malformed answer (step not consumed)
        """
        with session_scope(self.session_factory) as db:
            row = self._load(db, session_id)
            self._require_open(row)
            index = row.current_step_index
            user_id = row.user_id
            step = self.steps.at(index)
            if step.id != step_id:
                raise StateConflictError(
                    f"Step '{step_id}' is not the current step",
                    code=StateConflictError.STEP_MISMATCH,
                    extra={"expected_step_id": step.id, "submitted_step_id": step_id},
                )

        # No transaction held across the external grading call
        result = self.grader.grade(step, answer)

        new_index = index + 1
        is_complete = new_index >= self.total_steps
        with session_scope(self.session_factory) as db:
            repo = SessionRepository(db)
            if not repo.advance_step(session_id, index, new_index):
                current = repo.get(session_id)
                logger.warning(
                    "Submission for session %s step %s lost to a concurrent update",
                    session_id,
                    step_id,
                )
                if current is None or current.status != SessionStatus.IN_PROGRESS.value:
                    raise self._closed(current)
                raise StateConflictError(
                    f"Step '{step_id}' is no longer the current step",
                    code=StateConflictError.STEP_MISMATCH,
                    extra={"expected_step_id": self.steps.at(current.current_step_index).id},
                )

            ResponseRepository(db).upsert(
                session_id, step.id, step.kind.value, answer, result.to_dict()
            )
            self._record_mastery(db, user_id, session_id, step, result)

            if is_complete:
                repo.complete(session_id)
                self.roadmap_service.generate_in(db, user_id, self._roadmap_options(db, session_id))
                logger.info("Intake session %s completed for user %s", session_id, user_id)

        logger.info(
            "Session %s step %s graded: score=%.2f passed=%s by=%s%s",
            session_id,
            step.id,
            result.score,
            result.passed,
            result.graded_by,
            f" error={result.error_code}" if result.error_code else "",
        )
        return SubmitResult(
            grade_result=result,
            is_complete=is_complete,
            next_step=None if is_complete else self.steps.at(new_index).to_client_dict(),
            progress=100 if is_complete else self._progress(new_index),
        )

    def go_back(self, session_id: str) -> StepView:
        """
        Move to the previous step. Recorded mastery events are kept.

        Raises:
            NotFoundError: SESSION_NOT_FOUND
            StateConflictError: CANNOT_GO_BACK at the first step,
                SESSION_CLOSED once completed or abandoned
        """
        with session_scope(self.session_factory) as db:
            row = self._load(db, session_id)
            self._require_open(row)
            index = row.current_step_index
            if index == 0:
                raise StateConflictError(
                    "Already at the first step",
                    code=StateConflictError.CANNOT_GO_BACK,
                    extra={"session_id": session_id},
                )
            moved = SessionRepository(db).advance_step(session_id, index, index - 1)
            db.refresh(row)
            if not moved:
                self._require_open(row)
                raise StateConflictError(
                    "Session moved while going back",
                    code=StateConflictError.STEP_MISMATCH,
                    extra={"expected_step_id": self.steps.at(row.current_step_index).id},
                )
            return self._view(db, row)

    # ==================== Queries ====================

    def summary(self, session_id: str) -> Dict[str, Any]:
        """
        Per-step results, mastery profile, weak dimensions and roadmap.

        Raises:
            NotFoundError: SESSION_NOT_FOUND
        """
        with session_scope(self.session_factory) as db:
            row = self._load(db, session_id)
            responses = {r.step_id: r for r in ResponseRepository(db).for_session(session_id)}
            steps = []
            for step in self.steps:
                response = responses.get(step.id)
                steps.append({
                    "step_id": step.id,
                    "kind": step.kind.value,
                    "title": step.title,
                    "answered": response is not None,
                    "score": response.score if response else None,
                    "passed": response.passed if response else None,
                    "error_code": response.error_code if response else None,
                    "feedback": response.grade_result.get("feedback") if response else None,
                })

            profile = MasteryAggregator(self.catalog.taxonomy, SqlMasteryStore(db)).get_profile(
                row.user_id
            )
            mastery = profile.mastery_by_skill()
            completed = row.status == SessionStatus.COMPLETED.value
            return {
                "session": row.to_dict(),
                "progress": 100 if completed else self._progress(row.current_step_index),
                "steps": steps,
                "grading_unavailable_steps": [s["step_id"] for s in steps if s["error_code"]],
                "profile": profile.to_dict(),
                "weak_dimensions": [
                    d.to_dict()
                    for d in profile.weak_dimensions(config.roadmap.weak_threshold)
                ],
                "mastery_stats": mastery_summary(mastery),
                "mastery_histogram": [
                    {"range": label, "count": count}
                    for label, count in mastery_histogram(mastery)
                ],
                "roadmap": self.roadmap_service.roadmap_in(db, row.user_id) if completed else [],
                "roadmap_summary": (
                    self.roadmap_service.summary_in(db, row.user_id) if completed else None
                ),
            }

    def latest_session(self, user_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            row = SessionRepository(db).latest_for_user(user_id)
            return row.to_dict() if row else None

    def has_completed_intake(self, user_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            return SessionRepository(db).has_completed(user_id)

    # ==================== Helpers ====================

    def _load(self, db: Session, session_id: str) -> AssessmentSessionRow:
        row = SessionRepository(db).get(session_id)
        if row is None:
            raise NotFoundError(
                f"Session '{session_id}' not found",
                code=NotFoundError.SESSION_NOT_FOUND,
                extra={"session_id": session_id},
            )
        return row

    def _require_open(self, row: AssessmentSessionRow) -> None:
        if row.status != SessionStatus.IN_PROGRESS.value:
            raise self._closed(row)

    @staticmethod
    def _closed(row: Optional[AssessmentSessionRow]) -> StateConflictError:
        status = row.status if row is not None else None
        return StateConflictError(
            f"Session is {status or 'closed'}",
            code=StateConflictError.SESSION_CLOSED,
            extra={"status": status},
        )

    @staticmethod
    def _already_active(user_id: str, session_id: Optional[str] = None) -> StateConflictError:
        return StateConflictError(
            f"User {user_id} already has an intake session in progress",
            code=StateConflictError.SESSION_ALREADY_ACTIVE,
            extra={"session_id": session_id},
        )

    def _progress(self, index: int) -> int:
        return int(index / self.total_steps * 100) if self.total_steps else 100

    def _view(self, db: Session, row: AssessmentSessionRow) -> StepView:
        index = row.current_step_index
        if row.status != SessionStatus.IN_PROGRESS.value:
            return StepView(
                session_id=row.id,
                status=row.status,
                step=None,
                step_index=index,
                total_steps=self.total_steps,
                progress=100 if row.status == SessionStatus.COMPLETED.value else self._progress(index),
                can_go_back=False,
            )

        step = self.steps.at(index)
        previous = ResponseRepository(db).get(row.id, step.id)
        return StepView(
            session_id=row.id,
            status=row.status,
            step=step.to_client_dict(),
            step_index=index,
            total_steps=self.total_steps,
            progress=self._progress(index),
            can_go_back=index > 0,
            previous_answer=previous.raw_answer if previous else None,
        )

    def _record_mastery(
        self,
        db: Session,
        user_id: str,
        session_id: str,
        step: IntakeStep,
        result: GradeResult,
    ) -> None:
        if not result.counts_as_evidence or not result.skill_scores:
            return
        if step.kind in CALIBRATION_KINDS:
            event_type = EventType.ATTEMPT
        else:
            event_type = EventType.SUCCESS if result.passed else EventType.FAILURE

        aggregator = MasteryAggregator(self.catalog.taxonomy, SqlMasteryStore(db))
        aggregator.record_many(
            user_id,
            result.skill_scores,
            result.confidence,
            event_type,
            source=f"intake_{step.kind.value.lower()}",
            session_id=session_id,
        )

    def _roadmap_options(self, db: Session, session_id: str) -> RoadmapOptions:
        """Roadmap options, with study hours taken from the questionnaire."""
        hours: Optional[float] = None
        for response in ResponseRepository(db).for_session(session_id):
            answer = response.raw_answer
            if isinstance(answer, dict) and WEEKLY_HOURS_FIELD in answer:
                hours = config.roadmap.weekly_hours_answers.get(answer[WEEKLY_HOURS_FIELD])
        return RoadmapOptions(hours_per_week=hours)

