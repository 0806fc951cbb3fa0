"""
Grading Agent - grades intake step answers.

Rule-based grading for MCQ, micro bursts, questionnaires and design
comparisons; sandbox execution for code; LLM rubric grading for short
text and design critiques. External failures fail closed: the result has
score 0 and ``error_code="GRADING_UNAVAILABLE"``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from langchain_core.prompts import PromptTemplate
from langchain_openai import ChatOpenAI

try:
    from ..config import GradingConfig, config
    from ..exceptions import AnswerValidationError, GradingUnavailableError
    from ..models.intake_steps import (
        CodeStep,
        DesignComparisonStep,
        DesignCritiqueStep,
        IntakeStep,
        McqStep,
        MicroMcqBurstStep,
        QuestionnaireStep,
        ShortTextStep,
        StepKind,
        SummaryStep,
    )
    from ..utils.code_runner import CodeRunner
    from ..utils.progress import clamp01, mean_or_zero
    from ..utils.retry import call_with_retries
except ImportError:
    from src.config import GradingConfig, config
    from src.exceptions import AnswerValidationError, GradingUnavailableError
    from src.models.intake_steps import (
        CodeStep,
        DesignComparisonStep,
        DesignCritiqueStep,
        IntakeStep,
        McqStep,
        MicroMcqBurstStep,
        QuestionnaireStep,
        ShortTextStep,
        StepKind,
        SummaryStep,
    )
    from src.utils.code_runner import CodeRunner
    from src.utils.progress import clamp01, mean_or_zero
    from src.utils.retry import call_with_retries

logger = logging.getLogger(__name__)

MAX_CODE_LENGTH = 20_000


@dataclass
class GradeResult:
    """
    Result of grading one step.

    Attributes:
        score: Normalized score (0-1)
        passed: Whether the answer meets the step's pass policy
        confidence: Trust in this result (0-1), used as mastery event weight
        feedback: Feedback for the learner
        skill_scores: Score per skill this result is evidence for
        details: Kind-specific details (test verdicts, detected level, ...)
        graded_by: "rule", "sandbox", "ai" or "none"
        error_code: Set when grading failed closed (GRADING_UNAVAILABLE)
    """

    score: float
    passed: bool
    confidence: float
    feedback: str = ""
    skill_scores: Dict[str, float] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    graded_by: str = "rule"
    error_code: Optional[str] = None

    @property
    def counts_as_evidence(self) -> bool:
        """Whether this result should feed the mastery aggregator."""
        return self.error_code is None and self.graded_by != "none"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "score": self.score,
            "passed": self.passed,
            "confidence": self.confidence,
            "feedback": self.feedback,
            "skill_scores": dict(self.skill_scores),
            "details": self.details,
            "graded_by": self.graded_by,
            "error_code": self.error_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GradeResult":
        return cls(
            score=data["score"],
            passed=data["passed"],
            confidence=data.get("confidence", 0.0),
            feedback=data.get("feedback", ""),
            skill_scores=dict(data.get("skill_scores") or {}),
            details=dict(data.get("details") or {}),
            graded_by=data.get("graded_by", "rule"),
            error_code=data.get("error_code"),
        )

    @classmethod
    def blank(cls) -> "GradeResult":
        return cls(
            score=0.0,
            passed=False,
            confidence=0.0,
            feedback="No answer provided.",
            graded_by="none",
        )

    @classmethod
    def unavailable(cls, error: GradingUnavailableError) -> "GradeResult":
        return cls(
            score=0.0,
            passed=False,
            confidence=0.0,
            feedback="We couldn't grade this answer right now. You can retake the assessment later.",
            details={"cause": error.extra.get("cause")},
            graded_by="none",
            error_code=error.code,
        )


# ==================== AI rubric grading ====================


SHORT_TEXT_TEMPLATE = """You are an expert grader for a coding assessment. Grade the student's answer according to the rubric.

**Question:**
{question}

**Rubric:**
{rubric}

**Student's Answer:**
{answer}

**Instructions:**
1. Evaluate the answer against the rubric only
2. Give a score from 0 to {max_score}
3. Provide brief constructive feedback (1-2 sentences)

**Format your response as JSON only:**
{{
  "score": <number 0-{max_score}>,
  "feedback": "<brief feedback>"
}}"""


DESIGN_CRITIQUE_TEMPLATE = """You are an expert UI/UX reviewer grading a student's design critique.

**Task given to the student:**
{prompt}

**Design being critiqued:**
{design_description}

**Points a strong critique would raise:**
{looking_for}

**Rubric:**
{rubric}

**Student's Critique:**
{critique}

**Instructions:**
1. Credit valid points even if they are not in the list above
2. Give a score from 0 to {max_score}
3. Provide brief constructive feedback (1-2 sentences)

**Format your response as JSON only:**
{{
  "score": <number 0-{max_score}>,
  "feedback": "<brief feedback>"
}}"""


class RubricGrader:
    """
    LLM-backed rubric grading for open-ended answers.

    The chat model is created lazily so rule-based grading works without
    an API key. Any failure (vendor error, unparseable reply, score out of
    range) raises GradingUnavailableError; a score is never guessed.
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        llm: Any = None,
    ):
        """
        Initialize rubric grader.

        Args:
            model_name: LLM model name (default: config.model.model_name)
            temperature: LLM temperature (default: config.model.grading_temperature)
            llm: Pre-built chat model (tests)
        """
        self.model_name = model_name or config.model.model_name
        self.temperature = (
            config.model.grading_temperature if temperature is None else temperature
        )
        self._llm = llm

        self.short_text_prompt = PromptTemplate(
            input_variables=["question", "rubric", "answer", "max_score"],
            template=SHORT_TEXT_TEMPLATE,
        )
        self.critique_prompt = PromptTemplate(
            input_variables=[
                "prompt",
                "design_description",
                "looking_for",
                "rubric",
                "critique",
                "max_score",
            ],
            template=DESIGN_CRITIQUE_TEMPLATE,
        )

    @property
    def llm(self):
        if self._llm is None:
            # Retries are handled by call_with_retries
            self._llm = ChatOpenAI(
                model=self.model_name,
                temperature=self.temperature,
                api_key=config.model.api_key,
                base_url=config.model.base_url,
                timeout=config.model.request_timeout,
                max_tokens=config.model.max_tokens,
                max_retries=0,
            )
        return self._llm

    def grade_short_text(self, step: ShortTextStep, text: str) -> Tuple[float, str]:
        prompt = self.short_text_prompt.format(
            question=step.question,
            rubric=step.rubric,
            answer=text,
            max_score=_format_number(step.max_score),
        )
        return self._grade(prompt, step.max_score, step.id)

    def grade_design_critique(self, step: DesignCritiqueStep, critique: str) -> Tuple[float, str]:
        prompt = self.critique_prompt.format(
            prompt=step.prompt,
            design_description=step.design_description or "See the rendered design",
            looking_for="\n".join(f"- {point}" for point in step.looking_for) or "- (none listed)",
            rubric=step.rubric,
            critique=critique,
            max_score=_format_number(step.max_score),
        )
        return self._grade(prompt, step.max_score, step.id)

    def _grade(self, prompt: str, max_score: float, step_id: str) -> Tuple[float, str]:
        try:
            response = call_with_retries(
                lambda: self.llm.invoke(prompt), description=f"AI grading for {step_id}"
            )
        except Exception as e:
            logger.error("AI grading unavailable for step %s: %s", step_id, type(e).__name__)
            raise GradingUnavailableError(
                "AI grader is unavailable",
                extra={"cause": type(e).__name__, "step_id": step_id},
            ) from e

        content = getattr(response, "content", response)
        return self.parse_response(content, max_score, step_id)

    @staticmethod
    def parse_response(content: Any, max_score: float, step_id: str = "") -> Tuple[float, str]:
        """
        Parse ``{"score", "feedback"}`` from a model reply.

        Returns:
            Tuple of (rubric_score, feedback)

        Raises:
            GradingUnavailableError: Unparseable reply or score out of range
        """

        def malformed(reason: str) -> GradingUnavailableError:
            logger.error("AI grader reply rejected for step %s: %s", step_id, reason)
            return GradingUnavailableError(
                "AI grader returned an unusable reply",
                extra={"cause": "malformed_response", "reason": reason, "step_id": step_id},
            )

        text = content if isinstance(content, str) else str(content)

        # Extract JSON from markdown if present
        if "```json" in text:
            text = text.split("```json")[1].split("```")[0]
        elif "```" in text:
            text = text.split("```")[1].split("```")[0]
        text = text.strip()

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            match = re.search(r"\{.*\}", text, re.DOTALL)
            if not match:
                raise malformed("no JSON object in reply")
            try:
                data = json.loads(match.group(0))
            except json.JSONDecodeError:
                raise malformed("invalid JSON in reply")

        if not isinstance(data, dict) or "score" not in data:
            raise malformed("missing 'score' field")

        score = data["score"]
        if isinstance(score, bool) or not isinstance(score, (int, float)) or math.isnan(score):
            raise malformed("non-numeric score")
        if score < 0 or score > max_score:
            raise malformed(f"score {score} out of range [0, {max_score}]")

        feedback = data.get("feedback")
        return float(score), str(feedback) if feedback else "No feedback provided."


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


# ==================== Grader ====================


def _is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (dict, list, tuple)):
        return len(value) == 0
    return False


def _reject(step: IntakeStep, message: str, **extra: Any) -> AnswerValidationError:
    return AnswerValidationError(message, extra={"step_id": step.id, **extra})


class Grader:
    """
    Grades a raw answer for any step kind.

    Contract: ``grade(step, answer) -> GradeResult``. Blank answers score 0
    without any external call; malformed answers raise AnswerValidationError.

    Usage:
        grader = Grader()
        result = grader.grade(step, {"selected_option_id": "b"})
    """

    # Kind -> field holding the answer ("" means the whole object)
    ANSWER_FIELDS: Dict[StepKind, str] = {
        StepKind.QUESTIONNAIRE: "",
        StepKind.MCQ: "selected_option_id",
        StepKind.MICRO_MCQ_BURST: "answers",
        StepKind.SHORT_TEXT: "text",
        StepKind.CODE: "code",
        StepKind.DESIGN_COMPARISON: "selected_option",
        StepKind.DESIGN_CRITIQUE: "critique",
        StepKind.SUMMARY: "acknowledged",
    }

    def __init__(
        self,
        code_runner: Optional[CodeRunner] = None,
        rubric_grader: Optional[RubricGrader] = None,
        grading_config: Optional[GradingConfig] = None,
    ):
        self.code_runner = code_runner or CodeRunner()
        self.rubric_grader = rubric_grader or RubricGrader()
        self.settings = grading_config or config.grading

    def grade(self, step: IntakeStep, answer: Any) -> GradeResult:
        """
        Grade an answer.

        Args:
            step: Step being answered
            answer: Raw answer object (shape depends on step kind)

        Returns:
            GradeResult (error_code set when grading failed closed)

        Raises:
            AnswerValidationError: Malformed answer shape
        """
        if answer is None:
            return GradeResult.blank()
        if not isinstance(answer, dict):
            raise _reject(step, "Answer must be a JSON object")
        if self.is_blank(step, answer):
            logger.info("Blank answer for step %s, skipping grading", step.id)
            return GradeResult.blank()

        validate, grade = _HANDLERS[step.kind]
        validate(self, step, answer)
        try:
            return grade(self, step, answer)
        except GradingUnavailableError as e:
            logger.warning("Grading failed closed for step %s (%s)", step.id, e.code)
            return GradeResult.unavailable(e)

    def is_blank(self, step: IntakeStep, answer: Dict[str, Any]) -> bool:
        if not answer:
            return True
        key = self.ANSWER_FIELDS[step.kind]
        if not key:
            return all(_is_empty(v) for v in answer.values())
        value = answer.get(key)
        if step.kind is StepKind.MICRO_MCQ_BURST and isinstance(value, dict):
            return all(_is_empty(v) for v in value.values())
        return _is_empty(value)

    def _uniform(self, step: IntakeStep, score: float) -> Dict[str, float]:
        return {key: score for key in step.skill_keys}

    # ---------- QUESTIONNAIRE ----------

    def _validate_questionnaire(self, step: QuestionnaireStep, answer: Dict[str, Any]) -> None:
        for f in step.fields:
            value = answer.get(f.id)
            if _is_empty(value):
                if f.required:
                    raise _reject(step, f"Field '{f.id}' is required", field=f.id)
                continue
            if f.type == "slider":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise _reject(step, f"Field '{f.id}' must be a number", field=f.id)
                if (f.min is not None and value < f.min) or (f.max is not None and value > f.max):
                    raise _reject(
                        step, f"Field '{f.id}' must be between {f.min} and {f.max}", field=f.id
                    )
            elif f.type == "select":
                if not isinstance(value, str) or value not in f.option_values:
                    raise _reject(step, f"Field '{f.id}' has an unknown option", field=f.id)
            elif not isinstance(value, str):
                raise _reject(step, f"Field '{f.id}' must be text", field=f.id)

    def _grade_questionnaire(self, step: QuestionnaireStep, answer: Dict[str, Any]) -> GradeResult:
        skill_scores: Dict[str, float] = {}
        ratings: Dict[str, float] = {}
        for f in step.fields:
            value = answer.get(f.id)
            if _is_empty(value):
                continue
            rating = f.rating_for(value)
            if rating is None:
                continue
            ratings[f.id] = rating
            # Self rating 1-5 -> mastery 0-1
            for skill_key in f.skill_keys:
                skill_scores[skill_key] = clamp01((rating - 1) / 4)

        score = mean_or_zero(skill_scores.values()) if skill_scores else 1.0
        return GradeResult(
            score=score,
            passed=True,
            confidence=self.settings.questionnaire_confidence,
            feedback="Thanks! Your answers have been recorded.",
            skill_scores=skill_scores,
            details={"self_ratings": ratings},
            graded_by="rule",
        )

    # ---------- MCQ ----------

    def _validate_mcq(self, step: McqStep, answer: Dict[str, Any]) -> None:
        selected = answer.get("selected_option_id")
        if not isinstance(selected, str) or selected not in {o.id for o in step.options}:
            raise _reject(step, "Unknown option selected", field="selected_option_id")

    def _grade_mcq(self, step: McqStep, answer: Dict[str, Any]) -> GradeResult:
        correct = step.correct_option
        is_correct = answer["selected_option_id"] == correct.id
        score = 1.0 if is_correct else 0.0
        if is_correct:
            feedback = "Correct!"
        else:
            feedback = f'Incorrect. The correct answer was: "{correct.text}". {step.explanation}'.strip()
        return GradeResult(
            score=score,
            passed=is_correct,
            confidence=self.settings.confidence_for_difficulty(step.difficulty),
            feedback=feedback,
            skill_scores=self._uniform(step, score),
            details={
                "selected_option_id": answer["selected_option_id"],
                "correct_option_id": correct.id,
                "explanation": step.explanation,
            },
            graded_by="rule",
        )

    # ---------- MICRO_MCQ_BURST ----------

    def _validate_burst(self, step: MicroMcqBurstStep, answer: Dict[str, Any]) -> None:
        answers = answer.get("answers")
        if not isinstance(answers, dict):
            raise _reject(step, "'answers' must be an object", field="answers")
        questions = {q.id: q for q in step.questions}
        for question_id, option_id in answers.items():
            question = questions.get(question_id)
            if question is None:
                raise _reject(step, f"Unknown question '{question_id}'", field="answers")
            if option_id is None:
                continue
            if not isinstance(option_id, str) or option_id not in {o.id for o in question.options}:
                raise _reject(
                    step, f"Unknown option for question '{question_id}'", field="answers"
                )

    def _grade_burst(self, step: MicroMcqBurstStep, answer: Dict[str, Any]) -> GradeResult:
        answers = answer["answers"]
        question_results = []
        correct_count = 0
        for question in step.questions:
            is_correct = answers.get(question.id) == question.correct_option.id
            correct_count += int(is_correct)
            question_results.append({
                "question_id": question.id,
                "correct": is_correct,
                "explanation": question.explanation,
            })

        total = len(step.questions)
        score = correct_count / total if total else 0.0
        if correct_count == total:
            feedback = f"Excellent! You got all {total} questions correct. You seem to have a strong foundation."
        elif correct_count >= total - 1:
            feedback = f"Good job! You got {correct_count}/{total} correct. You have a solid understanding."
        elif correct_count > 0:
            feedback = f"You got {correct_count}/{total} correct. Let's build on your existing knowledge."
        else:
            feedback = "No worries! This assessment will help us find the right starting point for you."

        return GradeResult(
            score=score,
            # Calibration probe, always passes
            passed=True,
            confidence=self.settings.micro_burst_confidence,
            feedback=feedback,
            skill_scores=self._uniform(step, score),
            details={
                "correct_count": correct_count,
                "total_questions": total,
                "detected_level": step.detect_level(correct_count),
                "question_results": question_results,
            },
            graded_by="rule",
        )

    # ---------- SHORT_TEXT ----------

    def _validate_short_text(self, step: ShortTextStep, answer: Dict[str, Any]) -> None:
        text = answer.get("text")
        if not isinstance(text, str):
            raise _reject(step, "'text' must be a string", field="text")
        if step.max_length and len(text.strip()) > step.max_length:
            raise _reject(
                step, f"Answer exceeds {step.max_length} characters", field="text"
            )

    def _grade_short_text(self, step: ShortTextStep, answer: Dict[str, Any]) -> GradeResult:
        text = answer["text"].strip()
        if step.min_length and len(text) < step.min_length:
            score = self.settings.too_short_score
            return GradeResult(
                score=score,
                passed=False,
                confidence=self.settings.heuristic_confidence,
                feedback=f"Answer is too short. Please provide at least {step.min_length} characters.",
                skill_scores=self._uniform(step, score),
                details={"length": len(text), "min_length": step.min_length},
                graded_by="rule",
            )

        rubric_score, feedback = self.rubric_grader.grade_short_text(step, text)
        return self._ai_result(step, rubric_score, step.max_score, feedback)

    # ---------- CODE ----------

    def _validate_code(self, step: CodeStep, answer: Dict[str, Any]) -> None:
        code = answer.get("code")
        if not isinstance(code, str):
            raise _reject(step, "'code' must be a string", field="code")
        if len(code) > MAX_CODE_LENGTH:
            raise _reject(step, f"Code exceeds {MAX_CODE_LENGTH} characters", field="code")

    def _grade_code(self, step: CodeStep, answer: Dict[str, Any]) -> GradeResult:
        report = self.code_runner.run(
            step.language, answer["code"], step.test_cases, entrypoint=step.entrypoint
        )
        threshold = step.pass_threshold or self.settings.code_pass_threshold
        score = report.score
        passed = score >= threshold - 1e-9
        total = len(report.results)
        if passed and report.passed_count == total:
            feedback = f"All {total} tests passed!"
        elif passed:
            feedback = f"{report.passed_count}/{total} tests passed. That clears this challenge's bar."
        else:
            feedback = f"{report.passed_count}/{total} tests passed. Check your logic and try again."

        details = report.to_dict()
        details["pass_threshold"] = threshold
        return GradeResult(
            score=score,
            passed=passed,
            confidence=self.settings.code_confidence,
            feedback=feedback,
            skill_scores=self._uniform(step, score),
            details=details,
            graded_by="sandbox",
        )

    # ---------- DESIGN_COMPARISON ----------

    def _validate_design_comparison(self, step: DesignComparisonStep, answer: Dict[str, Any]) -> None:
        selected = answer.get("selected_option")
        if not isinstance(selected, str) or selected.strip().upper() not in ("A", "B"):
            raise _reject(step, "'selected_option' must be 'A' or 'B'", field="selected_option")

    def _grade_design_comparison(self, step: DesignComparisonStep, answer: Dict[str, Any]) -> GradeResult:
        selected = answer["selected_option"].strip().upper()
        is_correct = selected == step.correct_option
        score = 1.0 if is_correct else 0.0
        prefix = "Correct!" if is_correct else f"Not quite. Option {step.correct_option} is stronger."
        return GradeResult(
            score=score,
            passed=is_correct,
            confidence=self.settings.design_comparison_confidence,
            feedback=f"{prefix} {step.explanation}".strip(),
            skill_scores=self._uniform(step, score),
            details={"selected_option": selected, "correct_option": step.correct_option},
            graded_by="rule",
        )

    # ---------- DESIGN_CRITIQUE ----------

    def _validate_design_critique(self, step: DesignCritiqueStep, answer: Dict[str, Any]) -> None:
        critique = answer.get("critique")
        if not isinstance(critique, str):
            raise _reject(step, "'critique' must be a string", field="critique")
        if step.max_length and len(critique.strip()) > step.max_length:
            raise _reject(
                step, f"Critique exceeds {step.max_length} characters", field="critique"
            )

    def _grade_design_critique(self, step: DesignCritiqueStep, answer: Dict[str, Any]) -> GradeResult:
        rubric_score, feedback = self.rubric_grader.grade_design_critique(
            step, answer["critique"].strip()
        )
        return self._ai_result(step, rubric_score, step.max_score, feedback)

    # ---------- SUMMARY ----------

    def _validate_summary(self, step: SummaryStep, answer: Dict[str, Any]) -> None:
        if not isinstance(answer.get("acknowledged"), bool):
            raise _reject(step, "'acknowledged' must be a boolean", field="acknowledged")

    def _grade_summary(self, step: SummaryStep, answer: Dict[str, Any]) -> GradeResult:
        return GradeResult(
            score=1.0,
            passed=True,
            confidence=0.0,
            feedback="Assessment complete!",
            graded_by="rule",
        )

    def _ai_result(
        self, step: IntakeStep, rubric_score: float, max_score: float, feedback: str
    ) -> GradeResult:
        score = clamp01(rubric_score / max_score)
        return GradeResult(
            score=score,
            passed=score >= self.settings.ai_pass_ratio,
            confidence=self.settings.ai_confidence,
            feedback=feedback,
            skill_scores=self._uniform(step, score),
            details={"rubric_score": rubric_score, "max_score": max_score},
            graded_by="ai",
        )


_Handler = Callable[[Grader, Any, Dict[str, Any]], Any]

_HANDLERS: Dict[StepKind, Tuple[_Handler, _Handler]] = {
    StepKind.QUESTIONNAIRE: (Grader._validate_questionnaire, Grader._grade_questionnaire),
    StepKind.MCQ: (Grader._validate_mcq, Grader._grade_mcq),
    StepKind.MICRO_MCQ_BURST: (Grader._validate_burst, Grader._grade_burst),
    StepKind.SHORT_TEXT: (Grader._validate_short_text, Grader._grade_short_text),
    StepKind.CODE: (Grader._validate_code, Grader._grade_code),
    StepKind.DESIGN_COMPARISON: (Grader._validate_design_comparison, Grader._grade_design_comparison),
    StepKind.DESIGN_CRITIQUE: (Grader._validate_design_critique, Grader._grade_design_critique),
    StepKind.SUMMARY: (Grader._validate_summary, Grader._grade_summary),
}

# Every step kind must have a grader
_unhandled = set(StepKind) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No grader registered for step kinds: {sorted(k.value for k in _unhandled)}")
