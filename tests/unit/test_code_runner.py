"""
Unit tests for the code-execution sandbox client.

The HTTP layer is mocked; no sandbox is contacted.
"""

import unittest
from unittest.mock import MagicMock, patch

import requests

from src.agents.grading_agent import Grader
from src.config import config
from src.exceptions import GradingUnavailableError
from src.models.catalog import load_catalog
from src.models.intake_steps import TestCase
from src.utils.code_runner import CodeRunner, normalize_output, outputs_match


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestOutputNormalisation(unittest.TestCase):
    def test_trailing_whitespace_and_crlf(self):
        self.assertEqual(normalize_output("  [1, 2]  \r\nok   \r\n"), "[1, 2]\nok")

    def test_outputs_match(self):
        self.assertTrue(outputs_match("3\n", "3"))
        self.assertFalse(outputs_match("3", "4"))


class TestCodeRunner(unittest.TestCase):
    """Test CodeRunner against a mocked sandbox."""

    def setUp(self):
        self.runner = CodeRunner(url="http://sandbox.test/run", api_key="secret", timeout=5)
        self.cases = [
            TestCase(input="[3,1,3]", expected_output="[1,3]"),
            TestCase(input="[]", expected_output="[]", hidden=True),
            TestCase(input="[2,2]", expected_output="[2]", weight=2.0),
        ]

    @patch("src.utils.code_runner.requests.post")
    def test_run_uses_sandbox_verdicts(self, mock_post):
        mock_post.return_value = _response({
            "results": [
                {"passed": True, "stdout": "[1,3]"},
                {"passed": False, "stdout": "", "stderr": "TypeError"},
                {"passed": True, "stdout": "[2]"},
            ]
        })

        report = self.runner.run("javascript", "code", self.cases, entrypoint="uniqueSorted")

        self.assertEqual(report.passed_count, 2)
        self.assertAlmostEqual(report.score, 3.0 / 4.0)
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(payload["entrypoint"], "uniqueSorted")
        self.assertEqual(len(payload["test_cases"]), 3)
        self.assertEqual(
            mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer secret"
        )

    @patch("src.utils.code_runner.requests.post")
    def test_missing_verdict_compares_stdout(self, mock_post):
        mock_post.return_value = _response({
            "results": [
                {"stdout": "[1,3]  \n"},
                {"stdout": "[0]"},
                {"stdout": "[2]"},
            ]
        })

        report = self.runner.run("javascript", "code", self.cases)

        self.assertEqual([r.passed for r in report.results], [True, False, True])

    @patch("src.utils.code_runner.requests.post")
    def test_hidden_cases_only_reveal_verdict(self, mock_post):
        mock_post.return_value = _response({
            "results": [{"passed": True}, {"passed": True}, {"passed": True}]
        })

        details = self.runner.run("javascript", "code", self.cases).to_dict()

        hidden = details["results"][1]
        self.assertEqual(hidden, {"index": 1, "hidden": True, "passed": True})
        self.assertIn("input", details["results"][0])

    @patch("src.utils.code_runner.requests.post")
    def test_wrong_result_count_is_malformed(self, mock_post):
        mock_post.return_value = _response({"results": [{"passed": True}]})

        with self.assertRaises(GradingUnavailableError) as ctx:
            self.runner.run("javascript", "code", self.cases)

        self.assertEqual(ctx.exception.extra["cause"], "malformed_response")

    @patch("src.utils.code_runner.requests.post")
    def test_wrongly_typed_fields_are_malformed(self, mock_post):
        for bad in ({"stdout": 42}, {"stderr": ["boom"]}, {"passed": "yes"}, {"passed": 1}):
            with self.subTest(entry=bad):
                mock_post.return_value = _response({
                    "results": [{"passed": True}, bad, {"passed": True}]
                })

                with self.assertRaises(GradingUnavailableError) as ctx:
                    self.runner.run("javascript", "code", self.cases)

                self.assertEqual(ctx.exception.extra["cause"], "malformed_response")
                self.assertEqual(ctx.exception.extra["index"], 1)

    @patch("src.utils.code_runner.requests.post")
    def test_null_fields_are_accepted(self, mock_post):
        mock_post.return_value = _response({
            "results": [
                {"passed": None, "stdout": "[1,3]", "stderr": None},
                {"passed": True, "stdout": None},
                {"stdout": "[2]"},
            ]
        })

        report = self.runner.run("javascript", "code", self.cases)

        self.assertEqual([r.passed for r in report.results], [True, True, True])
        self.assertEqual(report.results[1].stdout, "")

    @patch("src.utils.code_runner.requests.post")
    def test_malformed_reply_fails_grading_closed(self, mock_post):
        mock_post.return_value = _response({
            "results": [{"stdout": 42}] * 5
        })
        step = load_catalog().steps.get("code_unique_sorted")
        grader = Grader(code_runner=self.runner, rubric_grader=MagicMock())

        result = grader.grade(step, {"code": "function uniqueSorted(a) { return a; }"})

        self.assertEqual(result.score, 0.0)
        self.assertFalse(result.passed)
        self.assertEqual(result.error_code, "GRADING_UNAVAILABLE")

    @patch("src.utils.code_runner.requests.post")
    def test_same_answer_grades_the_same_twice(self, mock_post):
        step = load_catalog().steps.get("code_count_words")
        mock_post.return_value = _response({
            "results": [{"passed": i != 1} for i in range(len(step.test_cases))]
        })
        grader = Grader(code_runner=self.runner, rubric_grader=MagicMock())
        answer = {"code": "function countWords(s) { return {}; }"}

        first = grader.grade(step, answer)
        second = grader.grade(step, answer)

        self.assertEqual(mock_post.call_count, 2)
        self.assertEqual(first.score, second.score)
        self.assertEqual(first.passed, second.passed)
        self.assertLess(first.score, 1.0)
        self.assertFalse(first.passed)

    @patch.object(config.grading, "retry_delay", 0.0)
    @patch("src.utils.code_runner.requests.post")
    def test_unreachable_after_retries(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")

        with self.assertRaises(GradingUnavailableError) as ctx:
            self.runner.run("javascript", "code", self.cases)

        self.assertEqual(ctx.exception.code, "GRADING_UNAVAILABLE")
        self.assertEqual(ctx.exception.extra["cause"], "ConnectionError")
        self.assertEqual(mock_post.call_count, config.grading.max_retries + 1)

    @patch.object(config.grading, "retry_delay", 0.0)
    @patch("src.utils.code_runner.requests.post")
    def test_transient_failure_recovers(self, mock_post):
        mock_post.side_effect = [
            requests.Timeout("slow"),
            _response({"results": [{"passed": True}] * 3}),
        ]

        report = self.runner.run("javascript", "code", self.cases)

        self.assertEqual(report.score, 1.0)


if __name__ == "__main__":
    unittest.main()
