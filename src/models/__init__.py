"""
Data models for the intake assessment.

This module contains core data models:
- SkillTaxonomy: Dimensions and skills (static catalog)
- ResourceCatalog: Learning resources with a prerequisite DAG (static catalog)
- StepConfiguration: The ordered intake steps, one dataclass per step kind
- Catalog: The three catalogs loaded and validated together
- MasteryAggregator: Per-skill mastery/confidence and dimension rollups

Note: the session state machine (intake_session) and the roadmap service
(roadmap) depend on src.utils.persistence and are imported directly.
"""

from .skills import Dimension, Skill, SkillTaxonomy
from .resources import LearningResource, Phase, ResourceCatalog, ResourceType
from .intake_steps import IntakeStep, StepConfiguration, StepKind, step_from_dict
from .catalog import Catalog, get_catalog, load_catalog, reset_catalog
from .mastery import (
    DimensionScore,
    EventType,
    InMemoryMasteryStore,
    MasteryAggregator,
    MasteryEvent,
    MasteryProfile,
    MasteryStore,
    SkillMasteryState,
    update_mastery,
)

__all__ = [
    # Static catalogs
    "Dimension",
    "Skill",
    "SkillTaxonomy",
    "LearningResource",
    "Phase",
    "ResourceCatalog",
    "ResourceType",
    "IntakeStep",
    "StepConfiguration",
    "StepKind",
    "step_from_dict",
    "Catalog",
    "get_catalog",
    "load_catalog",
    "reset_catalog",
    # Mastery
    "DimensionScore",
    "EventType",
    "InMemoryMasteryStore",
    "MasteryAggregator",
    "MasteryEvent",
    "MasteryProfile",
    "MasteryStore",
    "SkillMasteryState",
    "update_mastery",
]
