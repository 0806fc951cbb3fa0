"""
Unit tests for the Grading Agent.

Tests rule-based grading, sandbox scoring, AI rubric grading and the
fail-closed behaviour when an external grader is unavailable.
"""

import unittest
from unittest.mock import MagicMock, Mock, patch

import openai

from src.agents.grading_agent import GradeResult, Grader, RubricGrader
from src.config import GradingConfig, config
from src.exceptions import AnswerValidationError, GradingUnavailableError
from src.models.catalog import load_catalog
from tests.helpers import build_correct_answer, make_report


class TestGradeResult(unittest.TestCase):
    """Test GradeResult dataclass."""

    def test_to_dict_round_trip(self):
        result = GradeResult(
            score=0.75,
            passed=True,
            confidence=0.9,
            feedback="3/4 tests passed.",
            skill_scores={"prog_arrays": 0.75},
            graded_by="sandbox",
        )
        restored = GradeResult.from_dict(result.to_dict())
        self.assertEqual(restored, result)

    def test_blank_is_not_evidence(self):
        result = GradeResult.blank()
        self.assertEqual(result.score, 0.0)
        self.assertEqual(result.graded_by, "none")
        self.assertFalse(result.counts_as_evidence)

    def test_unavailable_carries_error_code(self):
        error = GradingUnavailableError("down", extra={"cause": "ConnectionError"})
        result = GradeResult.unavailable(error)
        self.assertEqual(result.error_code, "GRADING_UNAVAILABLE")
        self.assertEqual(result.details["cause"], "ConnectionError")
        self.assertFalse(result.passed)
        self.assertFalse(result.counts_as_evidence)


class GraderTestCase(unittest.TestCase):
    """Shared setup: real catalog steps, mocked external graders."""

    @classmethod
    def setUpClass(cls):
        cls.catalog = load_catalog()

    def setUp(self):
        self.code_runner = MagicMock()
        self.rubric_grader = MagicMock()
        self.rubric_grader.grade_short_text.return_value = (2.0, "Good explanation.")
        self.rubric_grader.grade_design_critique.return_value = (3.0, "Excellent critique.")
        self.grader = Grader(
            code_runner=self.code_runner,
            rubric_grader=self.rubric_grader,
            grading_config=GradingConfig(),
        )

    def step(self, step_id):
        return self.catalog.steps.get(step_id)


class TestBlankAndMalformedAnswers(GraderTestCase):
    def test_none_answer_is_blank(self):
        result = self.grader.grade(self.step("mcq_variables"), None)
        self.assertEqual(result.graded_by, "none")
        self.assertEqual(result.score, 0.0)

    def test_blank_short_text_skips_ai_grader(self):
        result = self.grader.grade(self.step("short_explain_callback"), {"text": "   "})
        self.assertEqual(result.score, 0.0)
        self.assertEqual(result.confidence, 0.0)
        self.rubric_grader.grade_short_text.assert_not_called()

    def test_blank_code_skips_sandbox(self):
        result = self.grader.grade(self.step("code_unique_sorted"), {"code": ""})
        self.assertEqual(result.graded_by, "none")
        self.code_runner.run.assert_not_called()

    def test_non_object_answer_rejected(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("mcq_variables"), "a")

    def test_unknown_mcq_option_rejected(self):
        with self.assertRaises(AnswerValidationError) as ctx:
            self.grader.grade(self.step("mcq_variables"), {"selected_option_id": "zzz"})
        self.assertEqual(ctx.exception.code, "INVALID_ANSWER")
        self.assertEqual(ctx.exception.extra["step_id"], "mcq_variables")

    def test_wrong_type_for_text_rejected(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("short_explain_callback"), {"text": 42})

    def test_text_over_max_length_rejected(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("short_explain_callback"), {"text": "x" * 501})

    def test_design_comparison_must_be_a_or_b(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("design_comparison_1"), {"selected_option": "C"})

    def test_summary_acknowledged_must_be_bool(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("summary"), {"acknowledged": "yes"})


class TestRuleGrading(GraderTestCase):
    def test_mcq_correct(self):
        step = self.step("mcq_variables")
        result = self.grader.grade(step, {"selected_option_id": step.correct_option.id})
        self.assertEqual(result.score, 1.0)
        self.assertTrue(result.passed)
        self.assertEqual(
            result.confidence, GradingConfig().confidence_for_difficulty(step.difficulty)
        )
        self.assertEqual(set(result.skill_scores), set(step.skill_keys))

    def test_mcq_incorrect_names_correct_answer(self):
        step = self.step("mcq_variables")
        wrong = next(o for o in step.options if not o.is_correct)
        result = self.grader.grade(step, {"selected_option_id": wrong.id})
        self.assertEqual(result.score, 0.0)
        self.assertFalse(result.passed)
        self.assertIn(step.correct_option.text, result.feedback)
        self.assertTrue(all(v == 0.0 for v in result.skill_scores.values()))

    def test_burst_partial_score_always_passes(self):
        step = self.step("quick_skill_probe")
        first = step.questions[0]
        answers = {first.id: first.correct_option.id}
        result = self.grader.grade(step, {"answers": answers})
        self.assertAlmostEqual(result.score, 1 / len(step.questions))
        self.assertTrue(result.passed)
        self.assertEqual(result.confidence, 0.8)
        self.assertEqual(result.details["correct_count"], 1)
        self.assertEqual(result.details["detected_level"], step.detect_level(1))

    def test_burst_unknown_question_rejected(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("quick_skill_probe"), {"answers": {"q_nope": "a"}})

    def test_questionnaire_maps_ratings_to_mastery(self):
        step = self.step("questionnaire_confidence")
        answer = build_correct_answer(step)
        slider = next(f for f in step.fields if f.skill_keys and f.type == "slider")
        answer[slider.id] = 3
        result = self.grader.grade(step, answer)
        self.assertTrue(result.passed)
        self.assertEqual(result.confidence, 0.2)
        for key in slider.skill_keys:
            self.assertAlmostEqual(result.skill_scores[key], 0.5)
        self.assertEqual(result.details["self_ratings"][slider.id], 3.0)

    def test_questionnaire_slider_out_of_range(self):
        step = self.step("questionnaire_confidence")
        answer = build_correct_answer(step)
        slider = next(f for f in step.fields if f.type == "slider")
        answer[slider.id] = 9
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(step, answer)

    def test_questionnaire_without_ratings_scores_one(self):
        step = self.step("questionnaire_learning_style")
        result = self.grader.grade(step, build_correct_answer(step))
        self.assertTrue(result.passed)
        self.assertEqual(result.skill_scores, {})
        self.assertEqual(result.score, 1.0)

    def test_design_comparison_case_insensitive(self):
        step = self.step("design_comparison_1")
        result = self.grader.grade(step, {"selected_option": step.correct_option.lower()})
        self.assertEqual(result.score, 1.0)
        self.assertEqual(result.details["selected_option"], step.correct_option)

    def test_design_comparison_wrong(self):
        step = self.step("design_comparison_1")
        wrong = "A" if step.correct_option == "B" else "B"
        result = self.grader.grade(step, {"selected_option": wrong})
        self.assertFalse(result.passed)
        self.assertIn(f"Option {step.correct_option}", result.feedback)

    def test_summary_is_not_evidence_for_skills(self):
        result = self.grader.grade(self.step("summary"), {"acknowledged": True})
        self.assertEqual(result.score, 1.0)
        self.assertEqual(result.skill_scores, {})


class TestCodeGrading(GraderTestCase):
    def test_all_tests_pass(self):
        self.code_runner.run.return_value = make_report([True] * 5)
        step = self.step("code_unique_sorted")
        result = self.grader.grade(step, {"code": "function uniqueSorted(a) { return a; }"})
        self.assertEqual(result.score, 1.0)
        self.assertTrue(result.passed)
        self.assertEqual(result.graded_by, "sandbox")
        self.assertEqual(result.confidence, 0.9)
        self.code_runner.run.assert_called_once_with(
            step.language, "function uniqueSorted(a) { return a; }", step.test_cases,
            entrypoint="uniqueSorted",
        )

    def test_three_of_four_does_not_pass(self):
        self.code_runner.run.return_value = make_report([True, True, True, False])
        result = self.grader.grade(self.step("code_count_words"), {"code": "x"})
        self.assertAlmostEqual(result.score, 0.75)
        self.assertFalse(result.passed)
        self.assertIn("3/4", result.feedback)
        self.assertEqual(result.details["pass_threshold"], 1.0)

    def test_weighted_score(self):
        self.code_runner.run.return_value = make_report([True, False], weights=[3.0, 1.0])
        result = self.grader.grade(self.step("code_reverse_words"), {"code": "x"})
        self.assertAlmostEqual(result.score, 0.75)

    def test_lower_threshold_from_config(self):
        grader = Grader(
            code_runner=self.code_runner,
            rubric_grader=self.rubric_grader,
            grading_config=GradingConfig(code_pass_threshold=0.7),
        )
        self.code_runner.run.return_value = make_report([True, True, True, False])
        result = grader.grade(self.step("code_count_words"), {"code": "x"})
        self.assertTrue(result.passed)

    def test_sandbox_down_fails_closed(self):
        self.code_runner.run.side_effect = GradingUnavailableError(
            "down", extra={"cause": "ConnectTimeout"}
        )
        result = self.grader.grade(self.step("code_unique_sorted"), {"code": "x"})
        self.assertEqual(result.score, 0.0)
        self.assertFalse(result.passed)
        self.assertEqual(result.error_code, "GRADING_UNAVAILABLE")

    def test_code_too_long_rejected(self):
        with self.assertRaises(AnswerValidationError):
            self.grader.grade(self.step("code_unique_sorted"), {"code": "x" * 20_001})


class TestAiGrading(GraderTestCase):
    def test_short_text_normalized(self):
        step = self.step("short_explain_callback")
        result = self.grader.grade(step, {"text": "A callback is a function passed " * 3})
        self.assertAlmostEqual(result.score, 2.0 / step.max_score)
        self.assertTrue(result.passed)
        self.assertEqual(result.graded_by, "ai")
        self.assertEqual(result.confidence, 0.7)

    def test_too_short_text_uses_heuristic(self):
        result = self.grader.grade(self.step("short_explain_callback"), {"text": "too short"})
        self.assertAlmostEqual(result.score, 0.1)
        self.assertFalse(result.passed)
        self.assertEqual(result.confidence, 0.3)
        self.assertEqual(result.graded_by, "rule")
        self.rubric_grader.grade_short_text.assert_not_called()

    def test_critique_full_marks(self):
        step = self.step("design_critique")
        result = self.grader.grade(step, {"critique": "Spacing and contrast need work."})
        self.assertAlmostEqual(result.score, 1.0)
        self.rubric_grader.grade_design_critique.assert_called_once()

    def test_ai_failure_fails_closed(self):
        self.rubric_grader.grade_short_text.side_effect = GradingUnavailableError(
            "bad reply", extra={"cause": "malformed_response"}
        )
        result = self.grader.grade(
            self.step("short_explain_callback"), {"text": "A long enough answer " * 4}
        )
        self.assertEqual(result.error_code, "GRADING_UNAVAILABLE")
        self.assertEqual(result.details["cause"], "malformed_response")


class TestRubricGrader(unittest.TestCase):
    """Test parsing and the chat-model call."""

    def test_parse_plain_json(self):
        score, feedback = RubricGrader.parse_response('{"score": 2, "feedback": "Nice"}', 3)
        self.assertEqual(score, 2.0)
        self.assertEqual(feedback, "Nice")

    def test_parse_fenced_json(self):
        content = '```json\n{"score": 1.5, "feedback": "Partly right"}\n```'
        score, _ = RubricGrader.parse_response(content, 3)
        self.assertEqual(score, 1.5)

    def test_parse_json_inside_prose(self):
        score, feedback = RubricGrader.parse_response('Here you go: {"score": 3} thanks', 3)
        self.assertEqual(score, 3.0)
        self.assertEqual(feedback, "No feedback provided.")

    def test_parse_rejects_out_of_range(self):
        with self.assertRaises(GradingUnavailableError) as ctx:
            RubricGrader.parse_response('{"score": 4}', 3)
        self.assertEqual(ctx.exception.extra["cause"], "malformed_response")

    def test_parse_rejects_non_numeric(self):
        for content in ('{"score": "two"}', '{"score": true}', '{"feedback": "x"}', "no json"):
            with self.assertRaises(GradingUnavailableError):
                RubricGrader.parse_response(content, 3)

    @patch("src.agents.grading_agent.ChatOpenAI")
    def test_llm_created_lazily_without_retries(self, mock_chat):
        grader = RubricGrader(model_name="gpt-4o-mini", temperature=0.0)
        mock_chat.assert_not_called()
        _ = grader.llm
        mock_chat.assert_called_once()
        self.assertEqual(mock_chat.call_args.kwargs["max_retries"], 0)

    def test_grade_short_text_uses_prompt(self):
        llm = Mock()
        llm.invoke.return_value = Mock(content='{"score": 2, "feedback": "Good"}')
        step = load_catalog().steps.get("short_explain_callback")
        grader = RubricGrader(llm=llm)

        score, feedback = grader.grade_short_text(step, "My answer")

        self.assertEqual((score, feedback), (2.0, "Good"))
        prompt = llm.invoke.call_args.args[0]
        self.assertIn("My answer", prompt)
        self.assertIn(step.rubric, prompt)

    @patch.object(config.grading, "retry_delay", 0.0)
    def test_vendor_error_becomes_unavailable(self):
        llm = Mock()
        llm.invoke.side_effect = openai.APIConnectionError(request=Mock())
        step = load_catalog().steps.get("design_critique")
        grader = RubricGrader(llm=llm)

        with self.assertRaises(GradingUnavailableError) as ctx:
            grader.grade_design_critique(step, "Critique")

        self.assertEqual(ctx.exception.extra["cause"], "APIConnectionError")
        self.assertGreater(llm.invoke.call_count, 1)


if __name__ == "__main__":
    unittest.main()
