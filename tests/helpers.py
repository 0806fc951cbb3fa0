"""
Test helpers shared by unit test modules and fixtures.
"""

from src.models.intake_steps import StepKind
from src.utils.code_runner import ExecutionReport, TestCaseResult


def make_report(passed_flags, weights=None):
    """Build an ExecutionReport from pass/fail flags."""
    weights = weights or [1.0] * len(passed_flags)
    return ExecutionReport(
        results=[
            TestCaseResult(
                index=i,
                passed=passed,
                weight=weight,
                hidden=False,
                input="",
                expected_output="",
            )
            for i, (passed, weight) in enumerate(zip(passed_flags, weights))
        ]
    )


def build_correct_answer(step):
    """A valid, fully correct answer for any step."""
    kind = step.kind
    if kind is StepKind.QUESTIONNAIRE:
        answer = {}
        for field in step.fields:
            if field.type == "slider":
                answer[field.id] = field.max
            elif field.options:
                answer[field.id] = field.options[0].value
            else:
                answer[field.id] = "Some text"
        return answer
    if kind is StepKind.MCQ:
        return {"selected_option_id": step.correct_option.id}
    if kind is StepKind.MICRO_MCQ_BURST:
        return {"answers": {q.id: q.correct_option.id for q in step.questions}}
    if kind is StepKind.SHORT_TEXT:
        return {"text": "word " * (step.min_length // 5 + 5)}
    if kind is StepKind.CODE:
        return {"code": f"function {step.entrypoint or 'solve'}(input) {{ return input; }}"}
    if kind is StepKind.DESIGN_COMPARISON:
        return {"selected_option": step.correct_option}
    if kind is StepKind.DESIGN_CRITIQUE:
        return {"critique": "The contrast is too low and the spacing is inconsistent."}
    return {"acknowledged": True}
