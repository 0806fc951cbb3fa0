"""
Resource Catalog - learning resources linked by prerequisite resource ids.

The prerequisite relation is a DAG. Construction does not check it;
``topological_order`` does and raises CYCLE_DETECTED when it is violated.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

try:
    from ..exceptions import CatalogIntegrityError
    from ..utils.validation import toposort
except ImportError:
    from src.exceptions import CatalogIntegrityError
    from src.utils.validation import toposort


class ResourceType(str, Enum):
    PROJECT = "PROJECT"
    EXERCISE = "EXERCISE"
    READING = "READING"
    DESIGN = "DESIGN"
    COURSE = "COURSE"
    MILESTONE = "MILESTONE"


@dataclass(frozen=True)
class Phase:
    """Roadmap phase (1 Foundations, 2 Dynamic Web, 3 Full-Stack)."""

    phase: int
    title: str
    estimated_weeks: int
    description: str = ""
    focus_areas: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "title": self.title,
            "description": self.description,
            "focus_areas": list(self.focus_areas),
            "estimated_weeks": self.estimated_weeks,
        }


@dataclass(frozen=True)
class LearningResource:
    """
    Static catalog entry.

    Attributes:
        id: Unique resource id
        title: Display title
        type: ResourceType
        phase: 1, 2 or 3
        skill_keys: Skills the resource trains
        difficulty: 1 (easiest) to 5
        estimated_hours: Expected effort
        prerequisites: Resource ids that must come first
        description: Short description
        index: Declaration order in the catalog file
    """

    id: str
    title: str
    type: ResourceType
    phase: int
    skill_keys: Tuple[str, ...]
    difficulty: int
    estimated_hours: float
    prerequisites: Tuple[str, ...] = ()
    description: str = ""
    index: int = 0

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        """Tie-break order: phase, then difficulty, then declaration order."""
        return (self.phase, self.difficulty, self.index)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "phase": self.phase,
            "skill_keys": list(self.skill_keys),
            "difficulty": self.difficulty,
            "estimated_hours": self.estimated_hours,
            "prerequisites": list(self.prerequisites),
        }


class ResourceCatalog:
    """Immutable, ordered collection of learning resources."""

    def __init__(self, resources: Iterable[LearningResource], phases: Iterable[Phase] = ()):
        self._resources: Tuple[LearningResource, ...] = tuple(resources)
        self._by_id: Dict[str, LearningResource] = {r.id: r for r in self._resources}
        self._phases: Tuple[Phase, ...] = tuple(sorted(phases, key=lambda p: p.phase))

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceCatalog":
        """Build from the parsed resources.json document."""
        resources = [
            LearningResource(
                id=r["id"],
                title=r["title"],
                description=r.get("description", ""),
                type=ResourceType(r["type"]),
                phase=r["phase"],
                skill_keys=tuple(r["skill_keys"]),
                difficulty=r["difficulty"],
                estimated_hours=float(r["estimated_hours"]),
                prerequisites=tuple(r.get("prerequisites", [])),
                index=i,
            )
            for i, r in enumerate(data["resources"])
        ]
        phases = [
            Phase(
                phase=p["phase"],
                title=p["title"],
                description=p.get("description", ""),
                focus_areas=tuple(p.get("focus_areas", [])),
                estimated_weeks=p["estimated_weeks"],
            )
            for p in data.get("phases", [])
        ]
        return cls(resources, phases)

    @property
    def resources(self) -> Tuple[LearningResource, ...]:
        return self._resources

    @property
    def phases(self) -> Tuple[Phase, ...]:
        return self._phases

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self):
        return iter(self._resources)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._by_id

    def get(self, resource_id: str) -> Optional[LearningResource]:
        return self._by_id.get(resource_id)

    def by_phase(self, phase: int) -> List[LearningResource]:
        return [r for r in self._resources if r.phase == phase]

    def for_skills(self, skill_keys: Iterable[str]) -> List[LearningResource]:
        """Resources training at least one of the given skills, in catalog order."""
        wanted = set(skill_keys)
        return [r for r in self._resources if wanted.intersection(r.skill_keys)]

    def prerequisites_met(self, resource_id: str, completed_ids: Iterable[str]) -> bool:
        resource = self._require(resource_id)
        completed = set(completed_ids)
        return all(p in completed for p in resource.prerequisites)

    def total_hours(self, resource_ids: Iterable[str]) -> float:
        return sum(self._require(rid).estimated_hours for rid in resource_ids)

    def prerequisite_closure(self, resource_id: str) -> Set[str]:
        """All transitive prerequisites of a resource (the resource excluded)."""
        seen: Set[str] = set()
        stack = list(self._require(resource_id).prerequisites)
        while stack:
            current = stack.pop()
            if current in seen or current == resource_id:
                continue
            seen.add(current)
            stack.extend(self._require(current).prerequisites)
        return seen

    def topological_order(self, resource_ids: Optional[Iterable[str]] = None) -> List[LearningResource]:
        """
        Order resources so every prerequisite comes before its dependents.

        Only edges inside the requested set are considered. Ready resources
        are emitted by ascending phase, difficulty, then catalog order.

        Raises:
            CatalogIntegrityError: CYCLE_DETECTED if the prerequisites loop
        """
        ids = [r.id for r in self._resources] if resource_ids is None else list(resource_ids)
        for rid in ids:
            self._require(rid)

        acyclic, order = toposort(
            ids,
            lambda rid: self._by_id[rid].prerequisites,
            key=lambda rid: self._by_id[rid].sort_key,
        )
        if not acyclic:
            stuck = sorted(set(ids) - set(order))
            raise CatalogIntegrityError(
                f"Resource prerequisite graph has a cycle involving: {', '.join(stuck)}",
                code=CatalogIntegrityError.CYCLE_DETECTED,
                extra={"resource_ids": stuck},
            )
        return [self._by_id[rid] for rid in order]

    def _require(self, resource_id: str) -> LearningResource:
        resource = self._by_id.get(resource_id)
        if resource is None:
            raise CatalogIntegrityError(
                f"Unknown resource '{resource_id}'",
                code=CatalogIntegrityError.UNKNOWN_REFERENCE,
                extra={"resource_id": resource_id},
            )
        return resource
