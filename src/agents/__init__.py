"""
Grading agents for the intake assessment.

This module contains the grader:
- Rule-based grading (MCQ, micro bursts, questionnaires, design comparisons)
- Sandbox grading for code challenges
- LLM rubric grading for short text and design critiques (LangChain)
"""

from .grading_agent import (
    GradeResult,
    Grader,
    RubricGrader,
)

__all__ = [
    "GradeResult",
    "Grader",
    "RubricGrader",
]
