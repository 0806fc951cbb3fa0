"""
Unit tests for the intake session state machine.

Tests:
- Start / resume / abandon lifecycle
- Step loop: submit, go back, resubmit
- Conflict handling (wrong step, concurrent writers, closed sessions)
- Mastery recording and roadmap generation on completion
- Summary contents
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from src.agents.grading_agent import GradeResult
from src.exceptions import AnswerValidationError, GradingUnavailableError, NotFoundError, StateConflictError
from src.models.intake_session import IntakeSessionService
from src.models.mastery import EventType, MasteryAggregator
from src.utils.persistence import (
    ResponseRepository,
    SessionRepository,
    SqlMasteryStore,
    session_scope,
)
from tests.helpers import build_correct_answer


@pytest.fixture
def service(catalog, session_factory, grader):
    return IntakeSessionService(catalog, session_factory, grader)


def _submit_current(service, session_id, answer_for=build_correct_answer):
    view = service.get_current_step(session_id)
    step = service.steps.get(view.step["id"])
    return service.submit_answer(session_id, step.id, answer_for(step))


def _run_to_end(service, session_id, answer_for=build_correct_answer):
    result = None
    for _ in range(service.total_steps):
        result = _submit_current(service, session_id, answer_for)
    return result


def _events(catalog, session_factory, user_id):
    with session_scope(session_factory) as db:
        return MasteryAggregator(catalog.taxonomy, SqlMasteryStore(db)).events(user_id)


class TestLifecycle:
    """Start, resume and abandon."""

    def test_start_returns_first_step(self, service):
        started = service.start("u-1")

        assert started.session_id.startswith("as-")
        assert started.first_step["id"] == "level_self_prediction"
        assert started.total_steps == 27
        assert started.estimated_minutes == 67
        assert started.resumed is False

    def test_second_start_conflicts(self, service):
        first = service.start("u-1")

        with pytest.raises(StateConflictError) as exc_info:
            service.start("u-1")

        assert exc_info.value.code == StateConflictError.SESSION_ALREADY_ACTIVE
        assert exc_info.value.extra["session_id"] == first.session_id

    def test_other_users_unaffected(self, service):
        service.start("u-1")
        assert service.start("u-2").session_id

    def test_start_or_resume(self, service):
        started = service.start("u-1")
        _submit_current(service, started.session_id)

        resumed = service.start_or_resume("u-1")

        assert resumed.resumed is True
        assert resumed.session_id == started.session_id
        assert resumed.first_step["id"] == "quick_skill_probe"

    def test_abandon_then_start_again(self, service):
        started = service.start("u-1")
        abandoned = service.abandon(started.session_id)
        assert abandoned["status"] == "ABANDONED"

        with pytest.raises(StateConflictError) as exc_info:
            service.abandon(started.session_id)
        assert exc_info.value.code == StateConflictError.SESSION_CLOSED

        assert service.start("u-1").session_id != started.session_id

    def test_unknown_session(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            service.get_current_step("as-missing")
        assert exc_info.value.code == NotFoundError.SESSION_NOT_FOUND

    def test_abandon_stale(self, service):
        started = service.start("u-1")

        assert service.abandon_stale(timedelta(hours=1)) == 0
        assert service.abandon_stale(timedelta(seconds=-1)) == 1
        assert service.get_current_step(started.session_id).status == "ABANDONED"

    def test_latest_session_and_completion_flag(self, service):
        assert service.latest_session("u-1") is None
        started = service.start("u-1")
        assert service.latest_session("u-1")["id"] == started.session_id
        assert service.has_completed_intake("u-1") is False


class TestStepLoop:
    """Submit, go back and resubmit."""

    def test_submit_advances(self, service):
        started = service.start("u-1")

        result = _submit_current(service, started.session_id)

        assert result.is_complete is False
        assert result.next_step["id"] == "quick_skill_probe"
        assert result.progress == int(1 / 27 * 100)
        view = service.get_current_step(started.session_id)
        assert view.step_index == 1
        assert view.can_go_back is True

    def test_wrong_step_id(self, service):
        started = service.start("u-1")

        with pytest.raises(StateConflictError) as exc_info:
            service.submit_answer(started.session_id, "mcq_variables", {"selected_option_id": "a"})

        assert exc_info.value.code == StateConflictError.STEP_MISMATCH
        assert exc_info.value.extra["expected_step_id"] == "level_self_prediction"

    def test_invalid_answer_does_not_consume_step(self, service):
        started = service.start("u-1")
        _submit_current(service, started.session_id)
        _submit_current(service, started.session_id)
        _submit_current(service, started.session_id)
        _submit_current(service, started.session_id)
        view = service.get_current_step(started.session_id)
        assert view.step["id"] == "mcq_variables"

        with pytest.raises(AnswerValidationError):
            service.submit_answer(started.session_id, "mcq_variables", {"selected_option_id": "zzz"})

        assert service.get_current_step(started.session_id).step["id"] == "mcq_variables"

    def test_cannot_go_back_from_first_step(self, service):
        started = service.start("u-1")

        with pytest.raises(StateConflictError) as exc_info:
            service.go_back(started.session_id)

        assert exc_info.value.code == StateConflictError.CANNOT_GO_BACK

    def test_go_back_shows_previous_answer_and_resubmit_overwrites(
        self, service, catalog, session_factory
    ):
        started = service.start("u-1")
        first_step = catalog.steps.at(0)
        first_answer = build_correct_answer(first_step)
        service.submit_answer(started.session_id, first_step.id, first_answer)

        view = service.go_back(started.session_id)

        assert view.step_index == 0
        assert view.previous_answer == first_answer
        assert view.can_go_back is False

        service.submit_answer(started.session_id, first_step.id, first_answer)
        with session_scope(session_factory) as db:
            responses = ResponseRepository(db).for_session(started.session_id)
            assert [r.step_id for r in responses] == [first_step.id]

    def test_failed_grading_still_consumes_step(self, catalog, session_factory, grader):
        grader.code_runner.run.side_effect = GradingUnavailableError(
            "down", extra={"cause": "ConnectionError"}
        )
        service = IntakeSessionService(catalog, session_factory, grader)
        started = service.start("u-1")
        code_index = catalog.steps.index_of("code_unique_sorted")
        for _ in range(code_index):
            _submit_current(service, started.session_id)

        result = _submit_current(service, started.session_id)

        assert result.grade_result.error_code == "GRADING_UNAVAILABLE"
        assert result.grade_result.score == 0.0
        assert result.next_step["id"] == "code_count_words"
        summary = service.summary(started.session_id)
        assert summary["grading_unavailable_steps"] == ["code_unique_sorted"]


class TestConcurrency:
    """Conditional step advance."""

    def _racing_grader(self, session_factory, session_id, race):
        grader = MagicMock()

        def grade(step, answer):
            with session_scope(session_factory) as db:
                race(SessionRepository(db), session_id)
            return GradeResult(score=1.0, passed=True, confidence=0.5, skill_scores={})

        grader.grade.side_effect = grade
        return grader

    def test_concurrent_submission_loses(self, catalog, session_factory, grader):
        started = IntakeSessionService(catalog, session_factory, grader).start("u-1")
        racing = self._racing_grader(
            session_factory, started.session_id, lambda repo, sid: repo.advance_step(sid, 0, 1)
        )
        service = IntakeSessionService(catalog, session_factory, racing)

        with pytest.raises(StateConflictError) as exc_info:
            service.submit_answer(started.session_id, "level_self_prediction", {"x": 1})

        assert exc_info.value.code == StateConflictError.STEP_MISMATCH
        assert service.get_current_step(started.session_id).step_index == 1
        with session_scope(session_factory) as db:
            assert ResponseRepository(db).for_session(started.session_id) == []

    def test_abandoned_while_grading(self, catalog, session_factory, grader):
        started = IntakeSessionService(catalog, session_factory, grader).start("u-1")
        racing = self._racing_grader(
            session_factory, started.session_id, lambda repo, sid: repo.abandon(sid)
        )
        service = IntakeSessionService(catalog, session_factory, racing)

        with pytest.raises(StateConflictError) as exc_info:
            service.submit_answer(started.session_id, "level_self_prediction", {"x": 1})

        assert exc_info.value.code == StateConflictError.SESSION_CLOSED


class TestCompletion:
    """Running the whole intake."""

    def test_full_run_completes(self, service):
        started = service.start("u-1")

        result = _run_to_end(service, started.session_id)

        assert result.is_complete is True
        assert result.next_step is None
        assert result.progress == 100
        view = service.get_current_step(started.session_id)
        assert view.status == "COMPLETED"
        assert view.step is None
        assert view.progress == 100
        assert service.has_completed_intake("u-1") is True

    def test_closed_session_rejects_submit_and_back(self, service):
        started = service.start("u-1")
        _run_to_end(service, started.session_id)

        with pytest.raises(StateConflictError) as exc_info:
            service.submit_answer(started.session_id, "summary", {"acknowledged": True})
        assert exc_info.value.code == StateConflictError.SESSION_CLOSED

        with pytest.raises(StateConflictError) as exc_info:
            service.go_back(started.session_id)
        assert exc_info.value.code == StateConflictError.SESSION_CLOSED

    def test_new_session_allowed_after_completion(self, service):
        started = service.start("u-1")
        _run_to_end(service, started.session_id)
        assert service.start("u-1").session_id != started.session_id

    def test_mastery_events_recorded(self, service, catalog, session_factory):
        started = service.start("u-1")
        _run_to_end(service, started.session_id)

        events = _events(catalog, session_factory, "u-1")

        assert events
        assert all(e.session_id == started.session_id for e in events)
        by_source = {}
        for event in events:
            by_source.setdefault(event.source, set()).add(event.event_type)
        assert by_source["intake_questionnaire"] == {EventType.ATTEMPT}
        assert by_source["intake_micro_mcq_burst"] == {EventType.ATTEMPT}
        assert by_source["intake_mcq"] == {EventType.SUCCESS}

    def test_blank_answers_record_no_evidence(self, service, catalog, session_factory):
        started = service.start("u-1")

        _run_to_end(service, started.session_id, answer_for=lambda step: None)

        assert _events(catalog, session_factory, "u-1") == []
        summary = service.summary(started.session_id)
        assert summary["profile"]["total_skills_assessed"] == 0
        # Everything unassessed, so the roadmap covers every dimension
        assert summary["roadmap"]
        assert summary["roadmap_summary"]["total_items"] == len(summary["roadmap"])

    def test_roadmap_uses_weekly_hours_answer(self, service):
        started = service.start("u-1")
        _run_to_end(service, started.session_id, answer_for=lambda step: None)
        # Blank questionnaire: default 10 h/week over 16 weeks
        default_hours = service.summary(started.session_id)["roadmap_summary"]["total_hours"]
        assert 64 < default_hours <= 160

        def only_weekly_hours(step):
            # First option of weekly_hours is "under_5", i.e. 4 h/week
            return build_correct_answer(step) if step.id == "questionnaire_learning_style" else None

        other = service.start("u-2")
        _run_to_end(service, other.session_id, answer_for=only_weekly_hours)
        limited_hours = service.summary(other.session_id)["roadmap_summary"]["total_hours"]
        assert 0 < limited_hours <= 64

    def test_summary_contents(self, service):
        started = service.start("u-1")
        _run_to_end(service, started.session_id)

        summary = service.summary(started.session_id)

        assert summary["session"]["status"] == "COMPLETED"
        assert summary["progress"] == 100
        assert len(summary["steps"]) == 27
        assert all(s["answered"] for s in summary["steps"])
        assert summary["grading_unavailable_steps"] == []
        assert len(summary["profile"]["dimensions"]) == 8
        assert sum(b["count"] for b in summary["mastery_histogram"]) == (
            summary["profile"]["total_skills_assessed"]
        )
        assert summary["roadmap_summary"] is not None

    def test_summary_in_progress_has_no_roadmap(self, service):
        started = service.start("u-1")
        _submit_current(service, started.session_id)

        summary = service.summary(started.session_id)

        assert summary["roadmap"] == []
        assert summary["roadmap_summary"] is None
        assert summary["steps"][0]["answered"] is True
        assert summary["steps"][1]["answered"] is False
