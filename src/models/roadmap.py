"""
Remediation roadmap generation and tracking.

The generator turns a mastery profile into an ordered list of catalog
resources:

1. Weak dimensions (score below threshold), weakest first, optionally
   narrowed to the dimensions a target role cares about
2. Inside each dimension, resources that train a weak skill, by
   (phase, difficulty, catalog order)
3. Each candidate joins together with its missing prerequisites, but only
   if they all fit the remaining hour budget
4. The selection is ordered topologically so prerequisites come first
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session, sessionmaker

try:
    from ..config import config
    from ..exceptions import AnswerValidationError, NotFoundError
    from ..utils.persistence import (
        RoadmapItemRow,
        RoadmapItemStatus,
        RoadmapRepository,
        SqlMasteryStore,
        session_scope,
    )
    from .catalog import Catalog
    from .mastery import MasteryAggregator, MasteryProfile
    from .resources import LearningResource, ResourceCatalog
    from .skills import SkillTaxonomy
except ImportError:
    from src.config import config
    from src.exceptions import AnswerValidationError, NotFoundError
    from src.utils.persistence import (
        RoadmapItemRow,
        RoadmapItemStatus,
        RoadmapRepository,
        SqlMasteryStore,
        session_scope,
    )
    from src.models.catalog import Catalog
    from src.models.mastery import MasteryAggregator, MasteryProfile
    from src.models.resources import LearningResource, ResourceCatalog
    from src.models.skills import SkillTaxonomy

logger = logging.getLogger(__name__)

PREREQUISITE_REASON = "prerequisite"


@dataclass
class RoadmapOptions:
    """
    Generation knobs. Unset values come from config.roadmap.

    Attributes:
        target_role: Key of config.roadmap.role_focus
        max_weeks: Planning horizon
        hours_per_week: Study time per week
        threshold: Mastery below which a dimension/skill is weak
        include_unassessed: Treat dimensions/skills without evidence as weak
    """

    target_role: Optional[str] = None
    max_weeks: Optional[int] = None
    hours_per_week: Optional[float] = None
    threshold: Optional[float] = None
    include_unassessed: Optional[bool] = None

    def __post_init__(self):
        settings = config.roadmap
        if self.target_role is None:
            self.target_role = settings.default_role
        if self.max_weeks is None:
            self.max_weeks = settings.max_weeks
        if self.hours_per_week is None:
            self.hours_per_week = settings.hours_per_week
        if self.threshold is None:
            self.threshold = settings.weak_threshold
        if self.include_unassessed is None:
            self.include_unassessed = settings.include_unassessed

        if self.target_role not in settings.role_focus:
            raise AnswerValidationError(
                f"Unknown target role '{self.target_role}'",
                code="UNKNOWN_ROLE",
                extra={"known_roles": sorted(settings.role_focus)},
            )
        if self.max_weeks <= 0 or self.hours_per_week <= 0:
            raise AnswerValidationError(
                "max_weeks and hours_per_week must be positive",
                code="INVALID_OPTIONS",
            )

    @property
    def budget_hours(self) -> float:
        return self.max_weeks * self.hours_per_week

    @property
    def focus_dimensions(self) -> Optional[tuple]:
        return config.roadmap.role_focus[self.target_role]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_role": self.target_role,
            "max_weeks": self.max_weeks,
            "hours_per_week": self.hours_per_week,
            "threshold": self.threshold,
            "include_unassessed": self.include_unassessed,
        }


@dataclass(frozen=True)
class RoadmapEntry:
    """One scheduled resource."""

    resource_id: str
    title: str
    type: str
    phase: int
    difficulty: int
    estimated_hours: float
    skill_keys: tuple
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "title": self.title,
            "type": self.type,
            "phase": self.phase,
            "difficulty": self.difficulty,
            "estimated_hours": self.estimated_hours,
            "skill_keys": list(self.skill_keys),
            "reason": self.reason,
        }


@dataclass
class GeneratedRoadmap:
    entries: List[RoadmapEntry]
    target_dimensions: List[str]
    target_skills: List[str]
    budget_hours: float
    options: RoadmapOptions
    skipped: List[str] = field(default_factory=list)

    @property
    def resource_ids(self) -> List[str]:
        return [e.resource_id for e in self.entries]

    @property
    def total_hours(self) -> float:
        return sum(e.estimated_hours for e in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "target_dimensions": self.target_dimensions,
            "target_skills": self.target_skills,
            "total_hours": self.total_hours,
            "budget_hours": self.budget_hours,
            "skipped_over_budget": self.skipped,
            "options": self.options.to_dict(),
        }


class RoadmapGenerator:
    """
    Select and order remediation resources for a mastery profile.

    Usage:
        generator = RoadmapGenerator(catalog.taxonomy, catalog.resources)
        roadmap = generator.generate(profile, RoadmapOptions(target_role="frontend"))
        for entry in roadmap.entries:
            print(entry.resource_id, entry.reason)
    """

    def __init__(self, taxonomy: SkillTaxonomy, resources: ResourceCatalog):
        self.taxonomy = taxonomy
        self.resources = resources

    def generate(
        self,
        profile: MasteryProfile,
        options: Optional[RoadmapOptions] = None,
        completed_ids: Iterable[str] = (),
    ) -> GeneratedRoadmap:
        """
        Build a roadmap.

        Args:
            profile: Learner's mastery profile
            options: Generation options (defaults from config)
            completed_ids: Resources already done; never scheduled again

        Returns:
            GeneratedRoadmap with prerequisite-ordered entries

        Raises:
            CatalogIntegrityError: CYCLE_DETECTED if resource prerequisites loop
        """
        options = options or RoadmapOptions()
        # Fail on a broken catalog before selecting anything
        self.resources.topological_order()

        completed = set(completed_ids)
        mastery = profile.mastery_by_skill()
        weak_dims = profile.weak_dimensions(options.threshold, options.include_unassessed)
        focus = options.focus_dimensions
        if focus is not None:
            weak_dims = [d for d in weak_dims if d.key in focus]

        reasons: Dict[str, str] = {}
        target_skills: List[str] = []
        skipped: List[str] = []
        remaining = options.budget_hours

        for dim in weak_dims:
            weak_skills = self._weak_skills(dim.key, mastery, options)
            target_skills.extend(weak_skills)
            candidates = sorted(
                self.resources.for_skills(weak_skills), key=lambda r: r.sort_key
            )
            for resource in candidates:
                if resource.id in completed or resource.id in reasons:
                    continue
                needed = [
                    rid
                    for rid in self.resources.prerequisite_closure(resource.id)
                    if rid not in completed and rid not in reasons
                ]
                needed.append(resource.id)
                hours = self.resources.total_hours(needed)
                if hours > remaining + 1e-9:
                    skipped.append(resource.id)
                    continue
                for rid in needed:
                    reasons[rid] = dim.key if rid == resource.id else PREREQUISITE_REASON
                remaining -= hours

        ordered = self.resources.topological_order(reasons)
        entries = [self._entry(resource, reasons[resource.id]) for resource in ordered]
        logger.info(
            "Generated roadmap for %s: %d resources, %.1f/%.1f hours, weak dimensions %s",
            profile.user_id,
            len(entries),
            options.budget_hours - remaining,
            options.budget_hours,
            [d.key for d in weak_dims],
        )
        return GeneratedRoadmap(
            entries=entries,
            target_dimensions=[d.key for d in weak_dims],
            target_skills=target_skills,
            budget_hours=options.budget_hours,
            options=options,
            skipped=[rid for rid in skipped if rid not in reasons],
        )

    def _weak_skills(
        self, dimension: str, mastery: Dict[str, float], options: RoadmapOptions
    ) -> List[str]:
        weak = []
        for skill in self.taxonomy.skills_in_dimension(dimension):
            if skill.key in mastery:
                if mastery[skill.key] < options.threshold:
                    weak.append(skill.key)
            elif options.include_unassessed:
                weak.append(skill.key)
        return weak

    @staticmethod
    def _entry(resource: LearningResource, reason: str) -> RoadmapEntry:
        return RoadmapEntry(
            resource_id=resource.id,
            title=resource.title,
            type=resource.type.value,
            phase=resource.phase,
            difficulty=resource.difficulty,
            estimated_hours=resource.estimated_hours,
            skill_keys=resource.skill_keys,
            reason=reason,
        )


# ==================== Service ====================


class RoadmapService:
    """
    Persisted roadmaps: generation, listing, progress and status updates.

    Usage:
        service = RoadmapService(catalog, session_factory)
        service.regenerate("u-1", RoadmapOptions(target_role="backend"))
        print(service.next_item("u-1"))
    """

    def __init__(self, catalog: Catalog, session_factory: Optional[sessionmaker] = None):
        self.catalog = catalog
        self.session_factory = session_factory
        self.generator = RoadmapGenerator(catalog.taxonomy, catalog.resources)

    def generate_in(
        self, db: Session, user_id: str, options: Optional[RoadmapOptions] = None
    ) -> GeneratedRoadmap:
        """
        Generate and store a roadmap inside an open unit of work.

        Completed items are kept; every other item is replaced.
        """
        repo = RoadmapRepository(db)
        completed = [
            r.resource_id for r in repo.for_user(user_id)
            if r.status == RoadmapItemStatus.COMPLETED.value
        ]
        profile = MasteryAggregator(self.catalog.taxonomy, SqlMasteryStore(db)).get_profile(user_id)
        generated = self.generator.generate(profile, options, completed_ids=completed)
        repo.replace_pending(user_id, generated.entries)
        return generated

    def regenerate(self, user_id: str, options: Optional[RoadmapOptions] = None) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            self.generate_in(db, user_id, options)
            return [self._item_dict(r) for r in RoadmapRepository(db).for_user(user_id)]

    def roadmap(self, user_id: str) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [self._item_dict(r) for r in RoadmapRepository(db).for_user(user_id)]

    def roadmap_in(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        return [self._item_dict(r) for r in RoadmapRepository(db).for_user(user_id)]

    def summary(self, user_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return self.summary_in(db, user_id)

    def summary_in(self, db: Session, user_id: str) -> Dict[str, Any]:
        """Totals, status counts, hours and per-phase progress."""
        items = RoadmapRepository(db).for_user(user_id)
        counts = {status.value: 0 for status in RoadmapItemStatus}
        for item in items:
            counts[item.status] = counts.get(item.status, 0) + 1

        total_hours = sum(i.estimated_hours for i in items)
        completed_hours = sum(
            i.estimated_hours for i in items if i.status == RoadmapItemStatus.COMPLETED.value
        )
        phases = []
        for phase in self.catalog.resources.phases:
            in_phase = [i for i in items if i.phase == phase.phase]
            phases.append({
                "phase": phase.phase,
                "title": phase.title,
                "total": len(in_phase),
                "completed": sum(
                    1 for i in in_phase if i.status == RoadmapItemStatus.COMPLETED.value
                ),
                "hours": sum(i.estimated_hours for i in in_phase),
            })

        return {
            "user_id": user_id,
            "total_items": len(items),
            "status_counts": counts,
            "completed_items": counts[RoadmapItemStatus.COMPLETED.value],
            "in_progress_items": counts[RoadmapItemStatus.IN_PROGRESS.value],
            "total_hours": total_hours,
            "completed_hours": completed_hours,
            "remaining_hours": total_hours - completed_hours,
            "progress_percent": int(completed_hours / total_hours * 100) if total_hours else 0,
            "phases": phases,
        }

    def update_status(self, item_id: str, status: str) -> Dict[str, Any]:
        """
        Set an item's status.

        Raises:
            AnswerValidationError: INVALID_STATUS for an unknown status
            NotFoundError: ROADMAP_ITEM_NOT_FOUND
        """
        try:
            new_status = RoadmapItemStatus(status)
        except ValueError:
            raise AnswerValidationError(
                f"Unknown roadmap status '{status}'",
                code="INVALID_STATUS",
                extra={"allowed": [s.value for s in RoadmapItemStatus]},
            ) from None

        with session_scope(self.session_factory) as db:
            row = RoadmapRepository(db).set_status(item_id, new_status)
            if row is None:
                raise NotFoundError(
                    f"Roadmap item '{item_id}' not found",
                    code=NotFoundError.ROADMAP_ITEM_NOT_FOUND,
                    extra={"item_id": item_id},
                )
            logger.info("Roadmap item %s -> %s", item_id, new_status.value)
            return self._item_dict(row)

    def next_item(self, user_id: str) -> Optional[Dict[str, Any]]:
        """First in-progress item, else the first not-started one."""
        with session_scope(self.session_factory) as db:
            items = RoadmapRepository(db).for_user(user_id)
            for wanted in (RoadmapItemStatus.IN_PROGRESS, RoadmapItemStatus.NOT_STARTED):
                for item in items:
                    if item.status == wanted.value:
                        return self._item_dict(item)
            return None

    def _item_dict(self, row: RoadmapItemRow) -> Dict[str, Any]:
        data = row.to_dict()
        resource = self.catalog.resources.get(row.resource_id)
        # Resource may have left the catalog since generation
        data.update({
            "title": resource.title if resource else None,
            "type": resource.type.value if resource else None,
            "difficulty": resource.difficulty if resource else None,
            "skill_keys": list(resource.skill_keys) if resource else [],
        })
        return data
