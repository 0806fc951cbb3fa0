"""
Utility modules for skillpath.

This module contains utility functions:
- validation: JSON Schema and integrity checks for the static catalogs
- progress: Mastery means, clamping and summary statistics
- retry: Exponential backoff for external grading calls
- code_runner: HTTP client for the code-execution sandbox

persistence (SQLAlchemy) is imported directly as src.utils.persistence.
"""

from .validation import (
    ResourcesValidator,
    SchemaValidator,
    SkillsValidator,
    StepsValidator,
    ValidationResult,
    toposort,
)
from .progress import (
    clamp01,
    mastery_histogram,
    mastery_summary,
    mean_or_zero,
)
from .retry import (
    call_with_retries,
    is_transient,
)
from .code_runner import (
    CodeRunner,
    ExecutionReport,
    TestCaseResult,
    normalize_output,
)

__all__ = [
    # Validation
    "ResourcesValidator",
    "SchemaValidator",
    "SkillsValidator",
    "StepsValidator",
    "ValidationResult",
    "toposort",
    # Progress analytics
    "clamp01",
    "mastery_histogram",
    "mastery_summary",
    "mean_or_zero",
    # External calls
    "call_with_retries",
    "is_transient",
    "CodeRunner",
    "ExecutionReport",
    "TestCaseResult",
    "normalize_output",
]
