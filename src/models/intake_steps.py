"""
Intake step configuration.

Each step kind is its own frozen dataclass; ``StepKind`` names the variants
and ``STEP_TYPES`` maps every kind to its class. Steps serialize for
clients without answer keys (correct options, hidden test cases, rubrics).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple

try:
    from ..exceptions import NotFoundError
except ImportError:
    from src.exceptions import NotFoundError


class StepKind(str, Enum):
    QUESTIONNAIRE = "QUESTIONNAIRE"
    MCQ = "MCQ"
    MICRO_MCQ_BURST = "MICRO_MCQ_BURST"
    SHORT_TEXT = "SHORT_TEXT"
    CODE = "CODE"
    DESIGN_COMPARISON = "DESIGN_COMPARISON"
    DESIGN_CRITIQUE = "DESIGN_CRITIQUE"
    SUMMARY = "SUMMARY"


# ==================== Payload pieces ====================


@dataclass(frozen=True)
class ChoiceOption:
    id: str
    text: str
    is_correct: bool = False

    def to_client_dict(self) -> dict:
        return {"id": self.id, "text": self.text}


@dataclass(frozen=True)
class FieldOption:
    value: str
    label: str


@dataclass(frozen=True)
class QuestionnaireField:
    """
    One questionnaire input.

    A field with ``skill_keys`` turns its answer into a 1-5 self rating:
    sliders use the numeric value directly, selects go through
    ``value_to_rating``.
    """

    id: str
    type: str
    label: str
    required: bool = True
    min: Optional[float] = None
    max: Optional[float] = None
    options: Tuple[FieldOption, ...] = ()
    skill_keys: Tuple[str, ...] = ()
    value_to_rating: Dict[str, float] = field(default_factory=dict)

    @property
    def option_values(self) -> List[str]:
        return [o.value for o in self.options]

    def rating_for(self, value: Any) -> Optional[float]:
        """Self rating (1-5) for an answer value, or None when unmapped."""
        if not self.skill_keys:
            return None
        if str(value) in self.value_to_rating:
            return float(self.value_to_rating[str(value)])
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        return None

    def to_client_dict(self) -> dict:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "required": self.required,
        }
        if self.min is not None:
            data["min"] = self.min
        if self.max is not None:
            data["max"] = self.max
        if self.options:
            data["options"] = [{"value": o.value, "label": o.label} for o in self.options]
        return data


@dataclass(frozen=True)
class BurstQuestion:
    id: str
    question: str
    options: Tuple[ChoiceOption, ...]
    explanation: str = ""

    @property
    def correct_option(self) -> ChoiceOption:
        return next(o for o in self.options if o.is_correct)


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    input: str
    expected_output: str
    hidden: bool = False
    weight: float = 1.0


@dataclass(frozen=True)
class DesignOption:
    description: str
    inline_html: Optional[str] = None
    image_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "inline_html": self.inline_html,
            "image_url": self.image_url,
        }


# ==================== Step variants ====================


@dataclass(frozen=True)
class IntakeStep:
    """
    Common step attributes.

    Attributes:
        id: Unique step id
        title: Display title
        sequence_index: Position in the intake (0-based)
        skill_keys: Skills this step probes
        estimated_minutes: Expected time on the step
        description: Short instructions
    """

    KIND: ClassVar[StepKind]

    id: str
    title: str
    sequence_index: int
    skill_keys: Tuple[str, ...]
    estimated_minutes: float
    description: str = ""

    @property
    def kind(self) -> StepKind:
        return self.KIND

    def to_client_dict(self) -> dict:
        """Serialize for the wizard UI (no answer keys)."""
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "description": self.description,
            "sequence_index": self.sequence_index,
            "skill_keys": list(self.skill_keys),
            "estimated_minutes": self.estimated_minutes,
        }
        data.update(self._client_payload())
        return data

    def _client_payload(self) -> dict:
        return {}


@dataclass(frozen=True)
class QuestionnaireStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.QUESTIONNAIRE

    fields: Tuple[QuestionnaireField, ...] = ()

    def _client_payload(self) -> dict:
        return {"fields": [f.to_client_dict() for f in self.fields]}


@dataclass(frozen=True)
class McqStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.MCQ

    question: str = ""
    options: Tuple[ChoiceOption, ...] = ()
    difficulty: str = "beginner"
    explanation: str = ""

    @property
    def correct_option(self) -> ChoiceOption:
        return next(o for o in self.options if o.is_correct)

    def _client_payload(self) -> dict:
        return {
            "question": self.question,
            "options": [o.to_client_dict() for o in self.options],
            "difficulty": self.difficulty,
        }


@dataclass(frozen=True)
class MicroMcqBurstStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.MICRO_MCQ_BURST

    questions: Tuple[BurstQuestion, ...] = ()
    level_mapping: Dict[str, int] = field(default_factory=dict)
    instructions: str = ""

    def detect_level(self, correct_count: int) -> str:
        """Highest level whose minimum correct count is reached."""
        level = "beginner"
        for name, minimum in sorted(self.level_mapping.items(), key=lambda kv: kv[1]):
            if correct_count >= minimum:
                level = name
        return level

    def _client_payload(self) -> dict:
        return {
            "instructions": self.instructions,
            "questions": [
                {
                    "id": q.id,
                    "question": q.question,
                    "options": [o.to_client_dict() for o in q.options],
                }
                for q in self.questions
            ],
        }


@dataclass(frozen=True)
class ShortTextStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.SHORT_TEXT

    question: str = ""
    rubric: str = ""
    max_score: float = 3.0
    min_length: int = 0
    max_length: Optional[int] = None
    placeholder: str = ""

    def _client_payload(self) -> dict:
        return {
            "question": self.question,
            "min_length": self.min_length,
            "max_length": self.max_length,
            "placeholder": self.placeholder,
        }


@dataclass(frozen=True)
class CodeStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.CODE

    problem_description: str = ""
    language: str = "javascript"
    starter_code: str = ""
    entrypoint: Optional[str] = None
    test_cases: Tuple[TestCase, ...] = ()
    hints: Tuple[str, ...] = ()
    pass_threshold: Optional[float] = None

    @property
    def visible_test_cases(self) -> List[TestCase]:
        return [t for t in self.test_cases if not t.hidden]

    def _client_payload(self) -> dict:
        return {
            "problem_description": self.problem_description,
            "language": self.language,
            "starter_code": self.starter_code,
            "test_cases": [
                {"input": t.input, "expected_output": t.expected_output}
                for t in self.visible_test_cases
            ],
            "hidden_test_count": len(self.test_cases) - len(self.visible_test_cases),
            "hints": list(self.hints),
        }


@dataclass(frozen=True)
class DesignComparisonStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.DESIGN_COMPARISON

    prompt: str = ""
    option_a: Optional[DesignOption] = None
    option_b: Optional[DesignOption] = None
    correct_option: str = "A"
    explanation: str = ""

    def _client_payload(self) -> dict:
        return {
            "prompt": self.prompt,
            "option_a": self.option_a.to_dict() if self.option_a else None,
            "option_b": self.option_b.to_dict() if self.option_b else None,
        }


@dataclass(frozen=True)
class DesignCritiqueStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.DESIGN_CRITIQUE

    prompt: str = ""
    design_description: str = ""
    inline_html: Optional[str] = None
    rubric: str = ""
    max_score: float = 3.0
    max_length: Optional[int] = None
    looking_for: Tuple[str, ...] = ()

    def _client_payload(self) -> dict:
        return {
            "prompt": self.prompt,
            "design_description": self.design_description,
            "inline_html": self.inline_html,
            "max_length": self.max_length,
        }


@dataclass(frozen=True)
class SummaryStep(IntakeStep):
    KIND: ClassVar[StepKind] = StepKind.SUMMARY

    show_roadmap_generation: bool = True

    def _client_payload(self) -> dict:
        return {"show_roadmap_generation": self.show_roadmap_generation}


STEP_TYPES: Dict[StepKind, type] = {
    StepKind.QUESTIONNAIRE: QuestionnaireStep,
    StepKind.MCQ: McqStep,
    StepKind.MICRO_MCQ_BURST: MicroMcqBurstStep,
    StepKind.SHORT_TEXT: ShortTextStep,
    StepKind.CODE: CodeStep,
    StepKind.DESIGN_COMPARISON: DesignComparisonStep,
    StepKind.DESIGN_CRITIQUE: DesignCritiqueStep,
    StepKind.SUMMARY: SummaryStep,
}


# ==================== Parsing ====================


def _options(raw: Iterable[dict]) -> Tuple[ChoiceOption, ...]:
    return tuple(
        ChoiceOption(id=o["id"], text=o["text"], is_correct=o.get("is_correct", False))
        for o in raw
    )


def _design_option(raw: Optional[dict]) -> Optional[DesignOption]:
    if raw is None:
        return None
    return DesignOption(
        description=raw["description"],
        inline_html=raw.get("inline_html"),
        image_url=raw.get("image_url"),
    )


def _kind_payload(kind: StepKind, data: dict) -> dict:
    if kind is StepKind.QUESTIONNAIRE:
        fields = []
        for f in data["fields"]:
            mapping = f.get("skill_mapping") or {}
            fields.append(
                QuestionnaireField(
                    id=f["id"],
                    type=f["type"],
                    label=f["label"],
                    required=f.get("required", True),
                    min=f.get("min"),
                    max=f.get("max"),
                    options=tuple(FieldOption(o["value"], o["label"]) for o in f.get("options", [])),
                    skill_keys=tuple(mapping.get("skill_keys", [])),
                    value_to_rating=dict(mapping.get("value_to_rating", {})),
                )
            )
        return {"fields": tuple(fields)}
    if kind is StepKind.MCQ:
        return {
            "question": data["question"],
            "options": _options(data["options"]),
            "difficulty": data.get("difficulty", "beginner"),
            "explanation": data.get("explanation", ""),
        }
    if kind is StepKind.MICRO_MCQ_BURST:
        return {
            "questions": tuple(
                BurstQuestion(
                    id=q["id"],
                    question=q["question"],
                    options=_options(q["options"]),
                    explanation=q.get("explanation", ""),
                )
                for q in data["questions"]
            ),
            "level_mapping": dict(data.get("level_mapping", {})),
            "instructions": data.get("instructions", ""),
        }
    if kind is StepKind.SHORT_TEXT:
        return {
            "question": data["question"],
            "rubric": data["rubric"],
            "max_score": float(data.get("max_score", 3)),
            "min_length": data.get("min_length", 0),
            "max_length": data.get("max_length"),
            "placeholder": data.get("placeholder", ""),
        }
    if kind is StepKind.CODE:
        return {
            "problem_description": data["problem_description"],
            "language": data["language"],
            "starter_code": data.get("starter_code", ""),
            "entrypoint": data.get("entrypoint"),
            "test_cases": tuple(
                TestCase(
                    input=t["input"],
                    expected_output=t["expected_output"],
                    hidden=t.get("hidden", False),
                    weight=float(t.get("weight", 1.0)),
                )
                for t in data["test_cases"]
            ),
            "hints": tuple(data.get("hints", [])),
            "pass_threshold": data.get("pass_threshold"),
        }
    if kind is StepKind.DESIGN_COMPARISON:
        return {
            "prompt": data["prompt"],
            "option_a": _design_option(data["option_a"]),
            "option_b": _design_option(data["option_b"]),
            "correct_option": data["correct_option"],
            "explanation": data.get("explanation", ""),
        }
    if kind is StepKind.DESIGN_CRITIQUE:
        return {
            "prompt": data["prompt"],
            "design_description": data.get("design_description", ""),
            "inline_html": data.get("inline_html"),
            "rubric": data["rubric"],
            "max_score": float(data.get("max_score", 3)),
            "max_length": data.get("max_length"),
            "looking_for": tuple(data.get("looking_for", [])),
        }
    return {"show_roadmap_generation": data.get("show_roadmap_generation", True)}


def step_from_dict(data: dict) -> IntakeStep:
    """Build the step variant matching ``data["kind"]``."""
    kind = StepKind(data["kind"])
    step_cls = STEP_TYPES[kind]
    return step_cls(
        id=data["id"],
        title=data["title"],
        description=data.get("description", ""),
        sequence_index=data["sequence_index"],
        skill_keys=tuple(data["skill_keys"]),
        estimated_minutes=float(data["estimated_minutes"]),
        **_kind_payload(kind, data),
    )


class StepConfiguration:
    """Ordered, immutable list of intake steps."""

    def __init__(self, steps: Iterable[IntakeStep]):
        self._steps: Tuple[IntakeStep, ...] = tuple(
            sorted(steps, key=lambda s: s.sequence_index)
        )
        self._index: Dict[str, int] = {s.id: i for i, s in enumerate(self._steps)}

    @classmethod
    def from_dict(cls, data: dict) -> "StepConfiguration":
        """Build from the parsed intake_steps.json document."""
        return cls(step_from_dict(s) for s in data["steps"])

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self):
        return iter(self._steps)

    @property
    def ordered(self) -> Tuple[IntakeStep, ...]:
        return self._steps

    def get(self, step_id: str) -> IntakeStep:
        return self._steps[self.index_of(step_id)]

    def at(self, index: int) -> IntakeStep:
        if not 0 <= index < len(self._steps):
            raise NotFoundError(
                f"No step at index {index}",
                code=NotFoundError.STEP_NOT_FOUND,
                extra={"index": index},
            )
        return self._steps[index]

    def index_of(self, step_id: str) -> int:
        try:
            return self._index[step_id]
        except KeyError:
            raise NotFoundError(
                f"Unknown step '{step_id}'",
                code=NotFoundError.STEP_NOT_FOUND,
                extra={"step_id": step_id},
            ) from None

    def by_kind(self, kind: StepKind) -> List[IntakeStep]:
        return [s for s in self._steps if s.kind is kind]

    def total_estimated_minutes(self) -> int:
        """Sum of step estimates, rounded up to whole minutes."""
        return int(math.ceil(sum(s.estimated_minutes for s in self._steps)))
