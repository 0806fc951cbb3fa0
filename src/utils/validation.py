"""
Schema validation utilities for the skillpath catalog.

Provides JSON Schema validation with clear error messages plus the
domain checks a schema cannot express:
- Format validation (URI)
- Unique ID checks
- Reference checks (skills, dimensions, prerequisites)
- Acyclic prerequisite graphs with deterministic topological sorting
"""

from __future__ import annotations

import heapq
import json
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from jsonschema import Draft7Validator, FormatChecker, ValidationError

try:
    from ..config import config
    from ..exceptions import CatalogIntegrityError
except ImportError:
    from src.config import config
    from src.exceptions import CatalogIntegrityError


class ValidationResult:
    """
    Result of a validation attempt.

    Attributes:
        valid: Whether data passed validation
        errors: List of error messages
        data: The validated data
        codes: Error code for each message (CatalogIntegrityError codes)
    """

    def __init__(
        self,
        valid: bool,
        errors: list[str],
        data: Any = None,
        codes: Optional[list[str]] = None,
    ):
        self.valid = valid
        self.errors = errors
        self.data = data
        self.codes = codes or []

    def __bool__(self) -> bool:
        """Allow using result in boolean context."""
        return self.valid

    def __str__(self) -> str:
        """Human-readable representation."""
        if self.valid:
            return "✓ Validation passed"
        return f"✗ Validation failed with {len(self.errors)} error(s):\n" + "\n".join(
            f"  - {error}" for error in self.errors
        )

    @property
    def code(self) -> str:
        """Code of the first error, used when raising."""
        return self.codes[0] if self.codes else CatalogIntegrityError.INVALID_CATALOG

    def raise_for_errors(self, source: str) -> None:
        """Raise CatalogIntegrityError when the result is invalid."""
        if self.valid:
            return
        raise CatalogIntegrityError(
            f"{source} failed validation: " + "; ".join(self.errors),
            code=self.code,
            extra={"source": source, "errors": list(self.errors)},
        )


class SchemaValidator:
    """
    JSON Schema validator.

    Usage:
        validator = SchemaValidator("path/to/schema.json")
        result = validator.validate(data)
        if not result:
            print(result.errors)
    """

    def __init__(self, schema_path: Path | str):
        """
        Initialize validator with a schema file.

        Args:
            schema_path: Path to JSON Schema file
        """
        self.schema_path = Path(schema_path)
        with open(self.schema_path, "r", encoding="utf-8") as f:
            self.schema = json.load(f)
        # Use FormatChecker to validate URI etc.
        self.validator = Draft7Validator(self.schema, format_checker=FormatChecker())

    def validate(self, data: Any) -> ValidationResult:
        """
        Validate data against schema.

        Args:
            data: Data to validate

        Returns:
            ValidationResult with validation status and any errors
        """
        errors = [self._format_error(error) for error in self.validator.iter_errors(data)]
        if errors:
            return ValidationResult(
                valid=False,
                errors=errors,
                data=data,
                codes=[CatalogIntegrityError.INVALID_CATALOG] * len(errors),
            )
        return ValidationResult(valid=True, errors=[], data=data)

    def _format_error(self, error: ValidationError) -> str:
        """
        Convert ValidationError to human-readable message with details.

        Args:
            error: jsonschema ValidationError

        Returns:
            Formatted error message with validator and schema path
        """
        path = " -> ".join(str(p) for p in error.path) if error.path else "root"
        validator_name = getattr(error, "validator", "unknown")
        schema_path = "/".join(str(p) for p in error.schema_path)
        return (
            f"At '{path}': {error.message} "
            f"[validator={validator_name}, schema_path=/{schema_path}]"
        )


# ==================== Graph helpers ====================


def toposort(
    nodes: Iterable[Hashable],
    prerequisites: Callable[[Hashable], Iterable[Hashable]],
    key: Optional[Callable[[Hashable], Any]] = None,
) -> Tuple[bool, List[Hashable]]:
    """
    Kahn's algorithm with deterministic tie-breaking.

    Edges pointing outside ``nodes`` are ignored. Among nodes whose
    prerequisites are all placed, the one with the smallest ``key`` goes
    first (node id when no key is given).

    Args:
        nodes: Nodes to order
        prerequisites: Returns the prerequisites of a node
        key: Sort key for ready nodes

    Returns:
        Tuple of (is_acyclic, ordered_nodes). When a cycle exists the
        ordered list holds only the nodes that could be placed.
    """
    node_list = list(dict.fromkeys(nodes))
    members = set(node_list)
    sort_key = key or (lambda n: n)

    indeg = {n: 0 for n in node_list}
    dependents: Dict[Hashable, List[Hashable]] = {n: [] for n in node_list}
    for n in node_list:
        for p in set(prerequisites(n)):
            if p in members and p != n:
                indeg[n] += 1
                dependents[p].append(n)
            elif p == n:
                # Self-loop never becomes ready
                indeg[n] += 1

    heap = [(sort_key(n), i, n) for i, n in enumerate(node_list) if indeg[n] == 0]
    heapq.heapify(heap)
    position = {n: i for i, n in enumerate(node_list)}
    order = []

    while heap:
        _, _, n = heapq.heappop(heap)
        order.append(n)
        for dep in dependents[n]:
            indeg[dep] -= 1
            if indeg[dep] == 0:
                heapq.heappush(heap, (sort_key(dep), position[dep], dep))

    return len(order) == len(node_list), order


def _find_duplicates(values: Iterable[Hashable]) -> set:
    counts = Counter(values)
    return {v for v, c in counts.items() if c > 1}


class _CatalogFileValidator(SchemaValidator):
    """Schema validation followed by domain checks collected as (message, code)."""

    schema_name = ""

    def __init__(self, schema_path: Optional[Path] = None):
        if schema_path is None:
            schema_path = config.paths.schemas_dir / self.schema_name
        super().__init__(schema_path)

    def validate(self, data: Any) -> ValidationResult:
        result = super().validate(data)
        if not result.valid:
            return result

        problems = self._domain_checks(data)
        if problems:
            return ValidationResult(
                valid=False,
                errors=[message for message, _ in problems],
                data=data,
                codes=[code for _, code in problems],
            )
        return result

    def _domain_checks(self, data: dict) -> list[tuple[str, str]]:
        raise NotImplementedError


class SkillsValidator(_CatalogFileValidator):
    """
    Validator for the skill taxonomy file.

    Checks unique dimension and skill keys, known dimensions and skill
    prerequisites, an acyclic skill prerequisite graph and tag_map targets.
    """

    schema_name = "skills.schema.json"

    def _domain_checks(self, data: dict) -> list[tuple[str, str]]:
        problems = []
        dimensions = data["dimensions"]
        skills = data["skills"]

        for dup in sorted(_find_duplicates(d["key"] for d in dimensions)):
            problems.append((f"Duplicate dimension key '{dup}'", CatalogIntegrityError.DUPLICATE_ID))
        for dup in sorted(_find_duplicates(s["key"] for s in skills)):
            problems.append((f"Duplicate skill key '{dup}'", CatalogIntegrityError.DUPLICATE_ID))

        dimension_keys = {d["key"] for d in dimensions}
        skill_keys = {s["key"] for s in skills}
        for skill in skills:
            if skill["dimension"] not in dimension_keys:
                problems.append((
                    f"Skill '{skill['key']}' references unknown dimension '{skill['dimension']}'",
                    CatalogIntegrityError.UNKNOWN_REFERENCE,
                ))
            for prereq in skill.get("prerequisites", []):
                if prereq not in skill_keys:
                    problems.append((
                        f"Skill '{skill['key']}' references unknown prerequisite '{prereq}'",
                        CatalogIntegrityError.UNKNOWN_REFERENCE,
                    ))

        for tag, targets in data.get("tag_map", {}).items():
            for target in targets:
                if target not in skill_keys:
                    problems.append((
                        f"Tag '{tag}' maps to unknown skill '{target}'",
                        CatalogIntegrityError.UNKNOWN_REFERENCE,
                    ))

        prereqs = {s["key"]: s.get("prerequisites", []) for s in skills}
        acyclic, _ = toposort(prereqs, lambda k: prereqs.get(k, []))
        if not acyclic:
            problems.append((
                "Skill prerequisite graph has a cycle",
                CatalogIntegrityError.CYCLE_DETECTED,
            ))
        return problems


class ResourcesValidator(_CatalogFileValidator):
    """
    Validator for the resource catalog file.

    Checks unique resource ids, known skill keys and prerequisite ids,
    self-prerequisites and an acyclic prerequisite graph.
    """

    schema_name = "resources.schema.json"

    def __init__(self, skill_keys: Iterable[str], schema_path: Optional[Path] = None):
        super().__init__(schema_path)
        self.skill_keys = set(skill_keys)

    def _domain_checks(self, data: dict) -> list[tuple[str, str]]:
        problems = []
        resources = data["resources"]

        for dup in sorted(_find_duplicates(p["phase"] for p in data["phases"])):
            problems.append((f"Duplicate phase {dup}", CatalogIntegrityError.DUPLICATE_ID))
        for dup in sorted(_find_duplicates(r["id"] for r in resources)):
            problems.append((f"Duplicate resource id '{dup}'", CatalogIntegrityError.DUPLICATE_ID))

        resource_ids = {r["id"] for r in resources}
        for resource in resources:
            for skill_key in resource["skill_keys"]:
                if skill_key not in self.skill_keys:
                    problems.append((
                        f"Resource '{resource['id']}' references unknown skill '{skill_key}'",
                        CatalogIntegrityError.UNKNOWN_REFERENCE,
                    ))
            for prereq in resource.get("prerequisites", []):
                if prereq == resource["id"]:
                    problems.append((
                        f"Resource '{resource['id']}' lists itself as a prerequisite",
                        CatalogIntegrityError.CYCLE_DETECTED,
                    ))
                elif prereq not in resource_ids:
                    problems.append((
                        f"Resource '{resource['id']}' references unknown prerequisite '{prereq}'",
                        CatalogIntegrityError.UNKNOWN_REFERENCE,
                    ))
        return problems


class StepsValidator(_CatalogFileValidator):
    """
    Validator for the intake step configuration file.

    Checks unique step ids and sequence indices, known skill keys,
    questionnaire mappings that stay within the step's own skills and
    exactly one correct option per multiple-choice question.
    """

    schema_name = "intake_steps.schema.json"

    def __init__(self, skill_keys: Iterable[str], schema_path: Optional[Path] = None):
        super().__init__(schema_path)
        self.skill_keys = set(skill_keys)

    def _domain_checks(self, data: dict) -> list[tuple[str, str]]:
        problems = []
        steps = data["steps"]

        for dup in sorted(_find_duplicates(s["id"] for s in steps)):
            problems.append((f"Duplicate step id '{dup}'", CatalogIntegrityError.DUPLICATE_ID))
        for dup in sorted(_find_duplicates(s["sequence_index"] for s in steps)):
            problems.append((
                f"Duplicate sequence_index {dup}",
                CatalogIntegrityError.DUPLICATE_ID,
            ))

        for step in steps:
            step_id = step["id"]
            for skill_key in step["skill_keys"]:
                if skill_key not in self.skill_keys:
                    problems.append((
                        f"Step '{step_id}' references unknown skill '{skill_key}'",
                        CatalogIntegrityError.UNKNOWN_REFERENCE,
                    ))

            for field_def in step.get("fields", []):
                mapping = field_def.get("skill_mapping") or {}
                for skill_key in mapping.get("skill_keys", []):
                    if skill_key not in step["skill_keys"]:
                        problems.append((
                            f"Step '{step_id}' field '{field_def['id']}' maps to "
                            f"'{skill_key}' which is not one of the step's skills",
                            CatalogIntegrityError.UNKNOWN_REFERENCE,
                        ))

            if "options" in step:
                problems.extend(self._check_single_correct(step_id, step["options"]))
            for question in step.get("questions", []):
                problems.extend(
                    self._check_single_correct(f"{step_id}/{question['id']}", question["options"])
                )
        return problems

    def _check_single_correct(self, where: str, options: list[dict]) -> list[tuple[str, str]]:
        problems = []
        for dup in sorted(_find_duplicates(o["id"] for o in options)):
            problems.append((f"'{where}' has duplicate option id '{dup}'", CatalogIntegrityError.DUPLICATE_ID))
        correct = sum(1 for o in options if o.get("is_correct", False))
        if correct != 1:
            problems.append((
                f"'{where}' must have exactly one correct option, found {correct}",
                CatalogIntegrityError.INVALID_CATALOG,
            ))
        return problems
