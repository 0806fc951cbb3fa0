"""
Catalog loading - skill taxonomy, resource catalog and step configuration.

The three JSON files are validated against their schemas, cross-checked
and bundled into one immutable, versioned ``Catalog`` that is injected
into the grader, aggregator and roadmap generator.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    from ..config import config
    from ..utils.validation import ResourcesValidator, SkillsValidator, StepsValidator
    from .intake_steps import StepConfiguration
    from .resources import ResourceCatalog
    from .skills import SkillTaxonomy
except ImportError:
    from src.config import config
    from src.utils.validation import ResourcesValidator, SkillsValidator, StepsValidator
    from src.models.intake_steps import StepConfiguration
    from src.models.resources import ResourceCatalog
    from src.models.skills import SkillTaxonomy

logger = logging.getLogger(__name__)

SKILLS_FILE = "skills.json"
RESOURCES_FILE = "resources.json"
STEPS_FILE = "intake_steps.json"


@dataclass(frozen=True)
class Catalog:
    """
    Loaded-once catalog bundle.

    Attributes:
        version: File version plus a content hash (e.g. "2025.12+3f9c0a1b2c4d")
        taxonomy: Skill dimensions and skills
        resources: Learning resources with prerequisites
        steps: Ordered intake steps
    """

    version: str
    taxonomy: SkillTaxonomy
    resources: ResourceCatalog
    steps: StepConfiguration


def _read_json(path: Path) -> tuple[dict, bytes]:
    raw = path.read_bytes()
    return json.loads(raw.decode("utf-8")), raw


def load_catalog(
    directory: Optional[Path | str] = None,
    schemas_dir: Optional[Path | str] = None,
) -> Catalog:
    """
    Load and validate the catalog files from a directory.

    Args:
        directory: Folder holding skills.json, resources.json, intake_steps.json
            (default: config.paths.catalog_dir)
        schemas_dir: Folder holding the JSON Schemas (default: config.paths.schemas_dir)

    Returns:
        Catalog

    Raises:
        CatalogIntegrityError: Schema violation, duplicate ids, unknown
            references or a prerequisite cycle
    """
    directory = Path(directory) if directory else config.paths.catalog_dir
    schemas = Path(schemas_dir) if schemas_dir else config.paths.schemas_dir

    skills_data, skills_raw = _read_json(directory / SKILLS_FILE)
    resources_data, resources_raw = _read_json(directory / RESOURCES_FILE)
    steps_data, steps_raw = _read_json(directory / STEPS_FILE)

    SkillsValidator(schemas / "skills.schema.json").validate(skills_data).raise_for_errors(
        SKILLS_FILE
    )
    taxonomy = SkillTaxonomy.from_dict(skills_data)

    ResourcesValidator(
        taxonomy.skill_keys, schemas / "resources.schema.json"
    ).validate(resources_data).raise_for_errors(RESOURCES_FILE)
    resources = ResourceCatalog.from_dict(resources_data)
    # Raises CYCLE_DETECTED on a bad deployment
    resources.topological_order()

    StepsValidator(
        taxonomy.skill_keys, schemas / "intake_steps.schema.json"
    ).validate(steps_data).raise_for_errors(STEPS_FILE)
    steps = StepConfiguration.from_dict(steps_data)

    digest = hashlib.sha256(skills_raw + resources_raw + steps_raw).hexdigest()[:12]
    version = f"{skills_data['version']}+{digest}"

    logger.info(
        "Loaded catalog %s: %d dimensions, %d skills, %d resources, %d steps",
        version,
        len(taxonomy.dimensions),
        len(taxonomy),
        len(resources),
        len(steps),
    )
    return Catalog(version=version, taxonomy=taxonomy, resources=resources, steps=steps)


# Default catalog instance (lazy initialization)
_default_catalog: Optional[Catalog] = None


def get_catalog() -> Catalog:
    """Get or load the default catalog (loaded once)."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = load_catalog()
    return _default_catalog


def reset_catalog() -> None:
    """Forget the cached default catalog (tests, hot reload)."""
    global _default_catalog
    _default_catalog = None
