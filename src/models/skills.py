"""
Skill taxonomy: dimensions and the individual skills grouped under them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class Dimension:
    """Top-level skill category."""

    key: str
    label: str
    order: int
    description: str = ""


@dataclass(frozen=True)
class Skill:
    """
    Individual skill.

    Attributes:
        key: Unique skill key (e.g. "css_layout")
        dimension: Key of the owning dimension
        label: Display name
        description: Short description
        weight: Relative importance inside the dimension (0, 1]
        prerequisites: Skill keys that should be learned first
    """

    key: str
    dimension: str
    label: str
    description: str = ""
    weight: float = 1.0
    prerequisites: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "dimension": self.dimension,
            "label": self.label,
            "description": self.description,
            "weight": self.weight,
            "prerequisites": list(self.prerequisites),
        }


class SkillTaxonomy:
    """
    Immutable lookup structure over dimensions and skills.

    Dimensions keep their display order; skills keep declaration order.
    """

    def __init__(
        self,
        dimensions: Iterable[Dimension],
        skills: Iterable[Skill],
        tag_map: Optional[Dict[str, Iterable[str]]] = None,
    ):
        self._dimensions: Tuple[Dimension, ...] = tuple(
            sorted(dimensions, key=lambda d: d.order)
        )
        self._skills: Tuple[Skill, ...] = tuple(skills)
        self._by_key: Dict[str, Skill] = {s.key: s for s in self._skills}
        self._dimension_by_key: Dict[str, Dimension] = {d.key: d for d in self._dimensions}
        self._tag_map: Dict[str, Tuple[str, ...]] = {
            tag.lower(): tuple(keys) for tag, keys in (tag_map or {}).items()
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SkillTaxonomy":
        """Build from the parsed skills.json document."""
        dimensions = [
            Dimension(
                key=d["key"],
                label=d["label"],
                order=d["order"],
                description=d.get("description", ""),
            )
            for d in data["dimensions"]
        ]
        skills = [
            Skill(
                key=s["key"],
                dimension=s["dimension"],
                label=s["label"],
                description=s.get("description", ""),
                weight=s.get("weight", 1.0),
                prerequisites=tuple(s.get("prerequisites", [])),
            )
            for s in data["skills"]
        ]
        return cls(dimensions, skills, data.get("tag_map"))

    @property
    def dimensions(self) -> Tuple[Dimension, ...]:
        return self._dimensions

    @property
    def skills(self) -> Tuple[Skill, ...]:
        return self._skills

    @property
    def skill_keys(self) -> List[str]:
        return [s.key for s in self._skills]

    def __len__(self) -> int:
        return len(self._skills)

    def __contains__(self, skill_key: object) -> bool:
        return skill_key in self._by_key

    def get_skill(self, skill_key: str) -> Optional[Skill]:
        return self._by_key.get(skill_key)

    def get_dimension(self, dimension_key: str) -> Optional[Dimension]:
        return self._dimension_by_key.get(dimension_key)

    def dimension_of(self, skill_key: str) -> Optional[str]:
        skill = self._by_key.get(skill_key)
        return skill.dimension if skill else None

    def skills_in_dimension(self, dimension_key: str) -> List[Skill]:
        return [s for s in self._skills if s.dimension == dimension_key]

    def map_tags_to_skill_keys(self, tags: Iterable[str]) -> List[str]:
        """
        Map challenge tags (e.g. "flexbox") to skill keys.

        Tags that already are skill keys map to themselves. Unknown tags are
        ignored. Result is de-duplicated, first occurrence wins.

        Example:
            >>> taxonomy.map_tags_to_skill_keys(["flexbox", "async"])
            ['css_layout', 'js_async']
        """
        result: List[str] = []
        for tag in tags:
            normalized = tag.strip().lower()
            if normalized in self._by_key:
                keys: Iterable[str] = (normalized,)
            else:
                keys = self._tag_map.get(normalized, ())
            for key in keys:
                if key not in result:
                    result.append(key)
        return result
