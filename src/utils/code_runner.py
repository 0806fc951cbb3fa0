"""
Code-execution sandbox client.

Sends candidate code plus test cases to a remote judge over HTTP and turns
the per-test verdicts into a weighted score. The judge is opaque: it
receives ``{language, code, entrypoint, test_cases}`` and answers with one
``{passed?, stdout, stderr}`` entry per test case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import requests

try:
    from ..config import config
    from ..exceptions import GradingUnavailableError
    from .retry import call_with_retries
except ImportError:
    from src.config import config
    from src.exceptions import GradingUnavailableError
    from src.utils.retry import call_with_retries

logger = logging.getLogger(__name__)


def normalize_output(text: str) -> str:
    """Trim, normalise CRLF and strip trailing whitespace on every line."""
    lines = text.strip().replace("\r\n", "\n").split("\n")
    return "\n".join(line.rstrip() for line in lines)


def outputs_match(actual: str, expected: str) -> bool:
    return normalize_output(actual) == normalize_output(expected)


@dataclass
class TestCaseResult:
    """Verdict for one test case."""

    __test__ = False

    index: int
    passed: bool
    weight: float
    hidden: bool
    input: str
    expected_output: str
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Client view; hidden cases only reveal their verdict."""
        if self.hidden:
            return {"index": self.index, "hidden": True, "passed": self.passed}
        return {
            "index": self.index,
            "hidden": False,
            "passed": self.passed,
            "input": self.input,
            "expected_output": self.expected_output,
            "actual_output": self.stdout,
            "error": self.stderr or None,
        }


@dataclass
class ExecutionReport:
    """All verdicts of one sandbox run."""

    results: List[TestCaseResult]

    @property
    def total_weight(self) -> float:
        return sum(r.weight for r in self.results)

    @property
    def passed_weight(self) -> float:
        return sum(r.weight for r in self.results if r.passed)

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def score(self) -> float:
        """Fraction of test weight passed (0-1)."""
        total = self.total_weight
        return self.passed_weight / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed_count": self.passed_count,
            "total_count": len(self.results),
            "results": [r.to_dict() for r in self.results],
        }


class CodeRunner:
    """
    HTTP client for the code-execution sandbox.

    Usage:
        runner = CodeRunner()
        report = runner.run("javascript", code, step.test_cases, entrypoint="uniqueSorted")
        print(report.score)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url or config.sandbox.url
        self.api_key = api_key if api_key is not None else config.sandbox.api_key
        self.timeout = timeout or config.sandbox.timeout

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "skillpath-grader/0.1",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def run(
        self,
        language: str,
        code: str,
        test_cases: Sequence[Any],
        entrypoint: Optional[str] = None,
    ) -> ExecutionReport:
        """
        Execute code against test cases.

        Args:
            language: Sandbox language id (e.g. "javascript")
            code: Candidate source code
            test_cases: Objects with input, expected_output, hidden, weight
            entrypoint: Function the judge should call with each input

        Returns:
            ExecutionReport with one result per test case

        Raises:
            GradingUnavailableError: Sandbox unreachable after retries, or
                the reply is malformed
        """
        payload = {
            "language": language,
            "code": code,
            "entrypoint": entrypoint,
            "test_cases": [
                {"input": t.input, "expected_output": t.expected_output}
                for t in test_cases
            ],
        }

        def _post() -> Any:
            response = requests.post(
                self.url, json=payload, headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        try:
            data = call_with_retries(_post, description="Sandbox run")
        except requests.RequestException as e:
            logger.error("Sandbox unavailable: %s", e)
            raise GradingUnavailableError(
                "Code sandbox is unavailable",
                extra={"cause": type(e).__name__},
            ) from e

        return self._parse(data, test_cases)

    def _parse(self, data: Any, test_cases: Sequence[Any]) -> ExecutionReport:
        raw_results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(raw_results, list) or len(raw_results) != len(test_cases):
            logger.error("Sandbox returned a malformed reply")
            raise GradingUnavailableError(
                "Code sandbox returned a malformed reply",
                extra={"cause": "malformed_response"},
            )

        results = []
        for i, (raw, case) in enumerate(zip(raw_results, test_cases)):
            if not self._well_formed(raw):
                logger.error("Sandbox returned a malformed result for test case %d", i)
                raise GradingUnavailableError(
                    "Code sandbox returned a malformed test result",
                    extra={"cause": "malformed_response", "index": i},
                )
            stdout = raw.get("stdout") or ""
            stderr = raw.get("stderr") or ""
            verdict = raw.get("passed")
            passed = verdict if verdict is not None else outputs_match(stdout, case.expected_output)
            results.append(
                TestCaseResult(
                    index=i,
                    passed=passed,
                    weight=getattr(case, "weight", 1.0) or 1.0,
                    hidden=getattr(case, "hidden", False),
                    input=case.input,
                    expected_output=case.expected_output,
                    stdout=stdout,
                    stderr=stderr,
                )
            )
        return ExecutionReport(results=results)

    @staticmethod
    def _well_formed(raw: Any) -> bool:
        """One judge entry: optional bool verdict, optional str streams."""
        if not isinstance(raw, dict):
            return False
        if raw.get("passed") is not None and not isinstance(raw["passed"], bool):
            return False
        return all(
            raw.get(key) is None or isinstance(raw[key], str) for key in ("stdout", "stderr")
        )
