"""
Shared pytest fixtures and configuration for skillpath tests.

This file is automatically discovered by pytest and provides
fixtures available to all tests.
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

# Add project root to path so tests import the `src` package
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from src.agents.grading_agent import Grader
from src.models.catalog import load_catalog, reset_catalog
from src.models.resources import ResourceCatalog
from src.models.skills import SkillTaxonomy
from src.utils.persistence import init_db, make_session_factory
from tests.helpers import build_correct_answer, make_report


@pytest.fixture(scope="session")
def catalog():
    """
    Fixture providing the shipped catalog (skills, resources, 27 steps).

    Returns:
        Catalog: Validated, immutable catalog
    """
    return load_catalog()


@pytest.fixture(autouse=True)
def reset_default_catalog():
    """
    Auto-fixture to reset the process-wide catalog around each test.

    This ensures tests don't interfere with each other.
    """
    reset_catalog()
    yield
    reset_catalog()


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def code_runner():
    """Mock sandbox where every test passes."""
    runner = MagicMock()
    runner.run.side_effect = lambda language, code, test_cases, entrypoint=None: make_report(
        [True] * len(test_cases)
    )
    return runner


@pytest.fixture
def rubric_grader():
    """Mock AI grader awarding 2 of 3 rubric points."""
    grader = MagicMock()
    grader.grade_short_text.return_value = (2.0, "Good explanation.")
    grader.grade_design_critique.return_value = (2.0, "Solid critique.")
    return grader


@pytest.fixture
def grader(code_runner, rubric_grader):
    """Grader wired to mocked external collaborators."""
    return Grader(code_runner=code_runner, rubric_grader=rubric_grader)


@pytest.fixture
def correct_answer():
    return build_correct_answer


@pytest.fixture
def small_taxonomy():
    """Two dimensions, four skills."""
    return SkillTaxonomy.from_dict(
        {
            "dimensions": [
                {"key": "web", "label": "Web", "order": 1},
                {"key": "js", "label": "JavaScript", "order": 2},
            ],
            "skills": [
                {"key": "html", "dimension": "web", "label": "HTML"},
                {"key": "css", "dimension": "web", "label": "CSS"},
                {"key": "js_basics", "dimension": "js", "label": "JS basics"},
                {"key": "js_async", "dimension": "js", "label": "Async JS"},
            ],
        }
    )


@pytest.fixture
def small_resources():
    """
    Fixture providing a small resource catalog with a prerequisite chain.

    css_layout -> css_intro -> html_intro; js_promises -> js_intro
    """
    return ResourceCatalog.from_dict(
        {
            "phases": [
                {"phase": 1, "title": "Foundations", "estimated_weeks": 4},
                {"phase": 2, "title": "Dynamic Web", "estimated_weeks": 6},
            ],
            "resources": [
                {"id": "html_intro", "title": "HTML intro", "type": "READING", "phase": 1,
                 "skill_keys": ["html"], "difficulty": 1, "estimated_hours": 2},
                {"id": "css_layout", "title": "CSS layout", "type": "EXERCISE", "phase": 1,
                 "skill_keys": ["css"], "difficulty": 2, "estimated_hours": 3,
                 "prerequisites": ["css_intro"]},
                {"id": "css_intro", "title": "CSS intro", "type": "READING", "phase": 1,
                 "skill_keys": ["css"], "difficulty": 1, "estimated_hours": 2,
                 "prerequisites": ["html_intro"]},
                {"id": "js_intro", "title": "JS intro", "type": "READING", "phase": 1,
                 "skill_keys": ["js_basics"], "difficulty": 1, "estimated_hours": 2},
                {"id": "js_promises", "title": "Promises", "type": "EXERCISE", "phase": 2,
                 "skill_keys": ["js_async"], "difficulty": 3, "estimated_hours": 4,
                 "prerequisites": ["js_intro"]},
            ],
        }
    )


# Pytest hooks for better test output


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark tests in unit/ directory as unit tests
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Mark tests in integration/ directory as integration tests
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
