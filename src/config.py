"""
Configuration management for skillpath.

This module centralizes all configuration settings following 12-factor app principles:
- Secrets loaded from environment variables
- Sensible defaults for development
- Grading confidence table and retry policy in one place
- Single source of truth for catalog and schema paths
- Production-ready validation
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ModelConfig:
    """LLM model configuration with OpenAI API settings."""

    # OpenAI settings (env-driven for flexibility)
    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    model_name: str = field(
        default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    )
    base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL")
    )

    # Low temperature keeps rubric grading consistent between runs
    grading_temperature: float = 0.2
    max_tokens: int = 500

    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "60.0"))
    )


@dataclass
class GradingConfig:
    """Grader confidence table, pass policies and external-call retry policy."""

    # Confidence weights (how much a result of each kind is trusted)
    questionnaire_confidence: float = 0.2
    mcq_confidence: Dict[str, float] = field(
        default_factory=lambda: {
            "beginner": 0.6,
            "intermediate": 0.75,
            "advanced": 0.9,
        }
    )
    micro_burst_confidence: float = 0.8
    design_comparison_confidence: float = 0.7
    ai_confidence: float = 0.7
    code_confidence: float = 0.9
    # Rule-based fallback results (too-short text)
    heuristic_confidence: float = 0.3

    # Pass policies
    ai_pass_ratio: float = 0.5
    code_pass_threshold: float = field(
        default_factory=lambda: float(os.getenv("CODE_PASS_THRESHOLD", "1.0"))
    )
    too_short_score: float = 0.1

    # Retry policy for sandbox and AI calls
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("GRADING_MAX_RETRIES", "2"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("GRADING_RETRY_DELAY", "0.5"))
    )
    retry_backoff: float = field(
        default_factory=lambda: float(os.getenv("GRADING_RETRY_BACKOFF", "2.0"))
    )

    def confidence_for_difficulty(self, difficulty: Optional[str]) -> float:
        """Look up MCQ confidence, falling back to the beginner weight."""
        return self.mcq_confidence.get(difficulty or "beginner", self.mcq_confidence["beginner"])


@dataclass
class SandboxConfig:
    """Remote code-execution judge."""

    url: str = field(
        default_factory=lambda: os.getenv("SANDBOX_URL", "http://localhost:2358/run")
    )
    api_key: str = field(default_factory=lambda: os.getenv("SANDBOX_API_KEY", ""))
    timeout: float = field(
        default_factory=lambda: float(os.getenv("SANDBOX_TIMEOUT", "15.0"))
    )


@dataclass
class DatabaseConfig:
    """Relational store settings."""

    url: str = field(
        default_factory=lambda: os.getenv(
            "DATABASE_URL",
            "sqlite:///" + str(Path(__file__).parent.parent / "data" / "skillpath.db"),
        )
    )
    echo: bool = field(default_factory=lambda: _env_bool("DATABASE_ECHO"))


@dataclass
class RoadmapConfig:
    """Remediation roadmap generation defaults."""

    weak_threshold: float = 0.5
    max_weeks: int = 16
    hours_per_week: float = 10.0
    include_unassessed: bool = True

    # Target role -> dimensions the roadmap may target (None means all)
    role_focus: Dict[str, Optional[Tuple[str, ...]]] = field(
        default_factory=lambda: {
            "junior_fullstack": None,
            "frontend": ("javascript", "web_foundations", "design"),
            "backend": ("backend", "system_thinking", "dev_practices"),
        }
    )
    default_role: str = "junior_fullstack"

    # Answers to the weekly_hours questionnaire field
    weekly_hours_answers: Dict[str, float] = field(
        default_factory=lambda: {
            "under_5": 4.0,
            "5_10": 8.0,
            "10_20": 15.0,
            "20_plus": 20.0,
        }
    )


@dataclass
class PathConfig:
    """File system paths - single source of truth for all directories."""

    # Base paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent)
    data_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "data")

    # Computed from the base paths
    catalog_dir: Path = field(init=False)
    schemas_dir: Path = field(init=False)

    def __post_init__(self):
        """Initialize computed paths."""
        self.catalog_dir = Path(os.getenv("CATALOG_DIR", str(self.data_dir / "catalog")))
        self.schemas_dir = self.project_root / "schemas"

    def prepare_filesystem(self):
        """
        Create the data directory if it doesn't exist.

        Separated from __post_init__ to avoid side-effects on import.
        Call this explicitly from your app entrypoint.
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)


@dataclass
class LoggingConfig:
    """Logging configuration."""

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Config:
    """
    Main configuration class. Singleton pattern.

    Usage:
        from src.config import config

        # Access settings
        threshold = config.grading.code_pass_threshold
        url = config.database.url

        # Prepare filesystem (call once at startup)
        config.prepare_fs()
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.paths = PathConfig()
            cls._instance.model = ModelConfig()
            cls._instance.grading = GradingConfig()
            cls._instance.sandbox = SandboxConfig()
            cls._instance.database = DatabaseConfig()
            cls._instance.roadmap = RoadmapConfig()
            cls._instance.logging = LoggingConfig()

        return cls._instance

    def prepare_fs(self):
        """Prepare filesystem (create directories). Call once at startup."""
        self.paths.prepare_filesystem()

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        # Model validation
        if not self.model.api_key:
            errors.append("OPENAI_API_KEY not set in environment")

        if not (0 <= self.model.grading_temperature <= 2):
            errors.append(
                f"grading_temperature must be in [0, 2], got {self.model.grading_temperature}"
            )

        if self.model.max_tokens <= 0:
            errors.append(f"max_tokens must be > 0, got {self.model.max_tokens}")

        # Grading validation
        grading = self.grading
        probabilities = {
            "questionnaire_confidence": grading.questionnaire_confidence,
            "micro_burst_confidence": grading.micro_burst_confidence,
            "design_comparison_confidence": grading.design_comparison_confidence,
            "ai_confidence": grading.ai_confidence,
            "code_confidence": grading.code_confidence,
            "heuristic_confidence": grading.heuristic_confidence,
            "ai_pass_ratio": grading.ai_pass_ratio,
            "too_short_score": grading.too_short_score,
        }
        for difficulty, weight in grading.mcq_confidence.items():
            probabilities[f"mcq_confidence[{difficulty}]"] = weight
        for name, value in probabilities.items():
            if not (0 <= value <= 1):
                errors.append(f"Grading {name} must be in [0, 1], got {value}")

        if not (0 < grading.code_pass_threshold <= 1):
            errors.append(
                f"Grading code_pass_threshold must be in (0, 1], got {grading.code_pass_threshold}"
            )

        if grading.max_retries < 0:
            errors.append(f"Grading max_retries must be >= 0, got {grading.max_retries}")

        if grading.retry_delay < 0:
            errors.append(f"Grading retry_delay must be >= 0, got {grading.retry_delay}")

        if grading.retry_backoff < 1:
            errors.append(f"Grading retry_backoff must be >= 1, got {grading.retry_backoff}")

        # Sandbox validation
        if self.sandbox.timeout <= 0:
            errors.append(f"SANDBOX_TIMEOUT must be > 0, got {self.sandbox.timeout}")

        # Roadmap validation
        if not (0 <= self.roadmap.weak_threshold <= 1):
            errors.append(
                f"Roadmap weak_threshold must be in [0, 1], got {self.roadmap.weak_threshold}"
            )

        if self.roadmap.default_role not in self.roadmap.role_focus:
            errors.append(f"Roadmap default_role '{self.roadmap.default_role}' is not a known role")

        # Path validation
        if not self.paths.catalog_dir.exists():
            errors.append(f"Catalog directory not found: {self.paths.catalog_dir}")

        if not self.paths.schemas_dir.exists():
            errors.append(f"Schemas directory not found: {self.paths.schemas_dir}")

        # Logging validation
        if not isinstance(logging.getLevelName(self.logging.log_level.upper()), int):
            errors.append(f"LOG_LEVEL '{self.logging.log_level}' is not a logging level")

        return errors


# Global config instance
config = Config()


_logging_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """
    Apply LoggingConfig to the root logger.

    Safe to call more than once; only the first call installs a handler.
    """
    global _logging_configured

    root = logging.getLogger()
    root.setLevel((level or config.logging.log_level).upper())
    if _logging_configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(config.logging.log_format))
    root.addHandler(handler)
    _logging_configured = True
