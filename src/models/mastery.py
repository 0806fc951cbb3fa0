"""
Mastery Aggregator - per-user, per-skill mastery and confidence.

Every grading event is appended to an event log; the per-skill state is a
cached rollup of that log:

    mastery'    = (mastery * confidence + score * w) / (confidence + w)
    confidence' = confidence + w * (1 - confidence)

where ``w`` is the event's confidence weight. The first event on a skill
sets mastery to its score and confidence to its weight. Both values are
always clamped to [0, 1].
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

try:
    from ..exceptions import AnswerValidationError, CatalogIntegrityError
    from ..utils.progress import clamp01, mean_or_zero
    from .skills import SkillTaxonomy
except ImportError:
    from src.exceptions import AnswerValidationError, CatalogIntegrityError
    from src.utils.progress import clamp01, mean_or_zero
    from src.models.skills import SkillTaxonomy


class EventType(str, Enum):
    ATTEMPT = "ATTEMPT"  # self-report, no pass/fail
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    HINT = "HINT"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SkillMasteryState:
    """Cached rollup for one (user, skill)."""

    user_id: str
    skill_key: str
    mastery: float = 0.0
    confidence: float = 0.0
    attempts: int = 0
    last_updated: Optional[str] = None

    @property
    def assessed(self) -> bool:
        return self.attempts > 0

    def to_dict(self) -> dict:
        return {
            "skill_key": self.skill_key,
            "mastery": self.mastery,
            "confidence": self.confidence,
            "attempts": self.attempts,
            "last_updated": self.last_updated,
        }


@dataclass(frozen=True)
class MasteryEvent:
    """Append-only grading evidence for one skill."""

    user_id: str
    skill_key: str
    event_type: EventType
    score: float
    confidence_weight: float
    source: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "skill_key": self.skill_key,
            "event_type": self.event_type.value,
            "score": self.score,
            "confidence_weight": self.confidence_weight,
            "source": self.source,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
        }


def update_mastery(
    mastery: float,
    confidence: float,
    score: float,
    event_confidence: float,
    first_event: bool = False,
) -> Tuple[float, float]:
    """
    Fold one event into a skill's (mastery, confidence).

    Args:
        mastery: Prior mastery (0-1)
        confidence: Prior confidence (0-1)
        score: Event score (clamped to 0-1)
        event_confidence: Event confidence weight (clamped to 0-1)
        first_event: True when the skill has no prior events

    Returns:
        Tuple of (new_mastery, new_confidence)

    Raises:
        AnswerValidationError: If any input is NaN
    """
    for name, value in (
        ("mastery", mastery),
        ("confidence", confidence),
        ("score", score),
        ("event_confidence", event_confidence),
    ):
        if value is None or math.isnan(value):
            raise AnswerValidationError(
                f"Mastery update received a non-numeric {name}",
                code="INVALID_SCORE",
                extra={"field": name},
            )

    score = clamp01(score)
    event_confidence = clamp01(event_confidence)
    mastery = clamp01(mastery)
    confidence = clamp01(confidence)

    if first_event:
        return score, event_confidence

    total = confidence + event_confidence
    if total > 0:
        mastery = (mastery * confidence + score * event_confidence) / total
    confidence = confidence + event_confidence * (1 - confidence)
    return clamp01(mastery), clamp01(confidence)


# ==================== Storage ====================


class MasteryStore:
    """Storage interface for mastery states and events."""

    def get(self, user_id: str, skill_key: str) -> Optional[SkillMasteryState]:
        raise NotImplementedError

    def save(self, state: SkillMasteryState) -> None:
        raise NotImplementedError

    def append_event(self, event: MasteryEvent) -> None:
        raise NotImplementedError

    def states_for_user(self, user_id: str) -> Dict[str, SkillMasteryState]:
        raise NotImplementedError

    def events_for_user(self, user_id: str) -> List[MasteryEvent]:
        raise NotImplementedError


class InMemoryMasteryStore(MasteryStore):
    """Dict-backed store for pure use and tests."""

    def __init__(self):
        self._states: Dict[Tuple[str, str], SkillMasteryState] = {}
        self._events: List[MasteryEvent] = []

    def get(self, user_id: str, skill_key: str) -> Optional[SkillMasteryState]:
        return self._states.get((user_id, skill_key))

    def save(self, state: SkillMasteryState) -> None:
        self._states[(state.user_id, state.skill_key)] = state

    def append_event(self, event: MasteryEvent) -> None:
        self._events.append(event)

    def states_for_user(self, user_id: str) -> Dict[str, SkillMasteryState]:
        return {
            skill_key: state
            for (uid, skill_key), state in self._states.items()
            if uid == user_id
        }

    def events_for_user(self, user_id: str) -> List[MasteryEvent]:
        return [e for e in self._events if e.user_id == user_id]


# ==================== Profile ====================


@dataclass
class DimensionScore:
    """Rollup of one dimension over its assessed skills."""

    key: str
    label: str
    score: float
    confidence: float
    assessed_count: int
    skill_count: int

    @property
    def assessed(self) -> bool:
        return self.assessed_count > 0

    @property
    def assessed_ratio(self) -> float:
        return self.assessed_count / self.skill_count if self.skill_count else 0.0

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "score": round(self.score, 4),
            "confidence": round(self.confidence, 4),
            "assessed_count": self.assessed_count,
            "skill_count": self.skill_count,
            "assessed_ratio": round(self.assessed_ratio, 4),
        }


@dataclass
class MasteryProfile:
    """
    Aggregated profile for one user.

    Attributes:
        user_id: Learner id
        dimensions: One DimensionScore per dimension, display order
        skills: Assessed skill states keyed by skill key
        overall_score: Mean score over assessed dimensions
        overall_confidence: Mean confidence over assessed dimensions
        total_skills_assessed: Skills with at least one event
        total_skills: Skills in the taxonomy
    """

    user_id: str
    dimensions: List[DimensionScore]
    skills: Dict[str, SkillMasteryState]
    overall_score: float
    overall_confidence: float
    total_skills_assessed: int
    total_skills: int

    def dimension(self, key: str) -> Optional[DimensionScore]:
        return next((d for d in self.dimensions if d.key == key), None)

    def weak_dimensions(
        self, threshold: float = 0.5, include_unassessed: bool = False
    ) -> List[DimensionScore]:
        """
        Dimensions scoring below ``threshold``.

        Assessed dimensions come first, ascending by score (display order
        breaks ties). Unassessed dimensions follow in display order when
        ``include_unassessed`` is set.
        """
        assessed = sorted(
            (d for d in self.dimensions if d.assessed and d.score < threshold),
            key=lambda d: d.score,
        )
        if not include_unassessed:
            return assessed
        return assessed + [d for d in self.dimensions if not d.assessed]

    def mastery_by_skill(self) -> Dict[str, float]:
        return {key: state.mastery for key, state in self.skills.items()}

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "dimensions": [d.to_dict() for d in self.dimensions],
            "overall_score": round(self.overall_score, 4),
            "overall_confidence": round(self.overall_confidence, 4),
            "total_skills_assessed": self.total_skills_assessed,
            "total_skills": self.total_skills,
        }


def build_profile(
    taxonomy: SkillTaxonomy,
    user_id: str,
    states: Dict[str, SkillMasteryState],
) -> MasteryProfile:
    """
    Roll skill states up into dimensions and an overall score.

    Skills without events are left out of every denominator; a dimension
    without any assessed skill is left out of the overall means.
    """
    assessed = {k: s for k, s in states.items() if s.assessed and k in taxonomy}
    dimensions = []
    for dim in taxonomy.dimensions:
        dim_skills = taxonomy.skills_in_dimension(dim.key)
        dim_states = [assessed[s.key] for s in dim_skills if s.key in assessed]
        dimensions.append(
            DimensionScore(
                key=dim.key,
                label=dim.label,
                score=mean_or_zero(s.mastery for s in dim_states),
                confidence=mean_or_zero(s.confidence for s in dim_states),
                assessed_count=len(dim_states),
                skill_count=len(dim_skills),
            )
        )

    assessed_dims = [d for d in dimensions if d.assessed]
    return MasteryProfile(
        user_id=user_id,
        dimensions=dimensions,
        skills=assessed,
        overall_score=mean_or_zero(d.score for d in assessed_dims),
        overall_confidence=mean_or_zero(d.confidence for d in assessed_dims),
        total_skills_assessed=len(assessed),
        total_skills=len(taxonomy),
    )


# ==================== Aggregator ====================


class MasteryAggregator:
    """
    Records grading events and exposes mastery rollups.

    Usage:
        aggregator = MasteryAggregator(catalog.taxonomy, InMemoryMasteryStore())
        aggregator.record_event("u-1", "css_layout", 1.0, 0.6, EventType.SUCCESS)
        profile = aggregator.get_profile("u-1")
    """

    def __init__(self, taxonomy: SkillTaxonomy, store: MasteryStore):
        self.taxonomy = taxonomy
        self.store = store

    def record_event(
        self,
        user_id: str,
        skill_key: str,
        score: float,
        confidence: float,
        event_type: EventType = EventType.ATTEMPT,
        source: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SkillMasteryState:
        """
        Append one event and update the skill's cached state.

        Raises:
            CatalogIntegrityError: UNKNOWN_REFERENCE for an unknown skill key
            AnswerValidationError: If score or confidence is NaN
        """
        if skill_key not in self.taxonomy:
            raise CatalogIntegrityError(
                f"Unknown skill '{skill_key}'",
                code=CatalogIntegrityError.UNKNOWN_REFERENCE,
                extra={"skill_key": skill_key},
            )

        state = self.store.get(user_id, skill_key) or SkillMasteryState(user_id, skill_key)
        mastery, new_confidence = update_mastery(
            state.mastery,
            state.confidence,
            score,
            confidence,
            first_event=not state.assessed,
        )
        event = MasteryEvent(
            user_id=user_id,
            skill_key=skill_key,
            event_type=event_type,
            score=clamp01(score),
            confidence_weight=clamp01(confidence),
            source=source,
            session_id=session_id,
        )
        state.mastery = mastery
        state.confidence = new_confidence
        state.attempts += 1
        state.last_updated = event.timestamp

        self.store.append_event(event)
        self.store.save(state)
        return state

    def record_many(
        self,
        user_id: str,
        skill_scores: Dict[str, float],
        confidence: float,
        event_type: EventType,
        source: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[SkillMasteryState]:
        """Record one event per skill (a whole graded step)."""
        return [
            self.record_event(user_id, key, score, confidence, event_type, source, session_id)
            for key, score in skill_scores.items()
        ]

    def get_state(self, user_id: str, skill_key: str) -> Optional[SkillMasteryState]:
        return self.store.get(user_id, skill_key)

    def get_profile(self, user_id: str) -> MasteryProfile:
        return build_profile(self.taxonomy, user_id, self.store.states_for_user(user_id))

    def weak_dimensions(
        self, user_id: str, threshold: float = 0.5, include_unassessed: bool = False
    ) -> List[DimensionScore]:
        return self.get_profile(user_id).weak_dimensions(threshold, include_unassessed)

    def weak_skills(
        self, user_id: str, dimension: str, threshold: float = 0.5
    ) -> List[dict]:
        """Skills of a dimension below threshold (unassessed count as 0), weakest first."""
        states = self.store.states_for_user(user_id)
        weak = []
        for skill in self.taxonomy.skills_in_dimension(dimension):
            state = states.get(skill.key)
            mastery = state.mastery if state and state.assessed else 0.0
            if mastery < threshold:
                weak.append({
                    "skill_key": skill.key,
                    "mastery": mastery,
                    "confidence": state.confidence if state else 0.0,
                    "assessed": bool(state and state.assessed),
                })
        return sorted(weak, key=lambda w: w["mastery"])

    def events(self, user_id: str) -> List[MasteryEvent]:
        return self.store.events_for_user(user_id)
