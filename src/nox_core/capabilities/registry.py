"""
nox-core — capability registry

File: src/nox_core/capabilities/registry.py
Last updated: 2026-10-18

Purpose
- Explicitly constructed catalog of capability definitions keyed by unique identifier.

What should be included in this file
- Registration with duplicate/contract checks, lookup and instantiation.
- Pure catalog queries by mode, category, risk level and free-text search.
- Dependency-ordered resolution that terminates on cyclic graphs.

Functional requirements
- Queries return metadata snapshots, never live instances.
- ``clear()`` followed by re-registration is idempotent (hot reload).

Non-functional requirements
- Read-mostly after initialization; mutation happens during setup/teardown only.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

import structlog

from nox_core.capabilities.base import (
    CapabilityContext,
    CapabilityDefinition,
    CapabilityInstance,
    CapabilityMetadata,
    JSONValue,
    RiskLevel,
    ValidationResult,
    satisfies_contract,
)
from nox_core.errors import (
    CapabilityNotFoundError,
    DependencyCycleError,
    DuplicateCapabilityError,
    InvalidCapabilityError,
)
from nox_core.modes import ModeName, parse_mode_name


class CapabilityRegistry:
    """Catalog of capability definitions owned by the top-level orchestrator."""

    def __init__(
        self,
        *,
        rollback_point_limit: int | None = None,
        logger: Any | None = None,
    ) -> None:
        self._definitions: dict[str, CapabilityDefinition] = {}
        self._categories: dict[str, list[str]] = {}
        self._rollback_point_limit = rollback_point_limit
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def register(self, definition: CapabilityDefinition) -> None:
        if not satisfies_contract(definition):
            raise InvalidCapabilityError(
                f"object does not satisfy the capability contract: {type(definition).__name__}"
            )
        metadata = definition.metadata
        if metadata.id in self._definitions:
            raise DuplicateCapabilityError(f"capability already registered: {metadata.id}")

        self._definitions[metadata.id] = definition
        self._categories.setdefault(metadata.category, []).append(metadata.id)
        self._logger.debug(
            "capability_registered",
            capability_id=metadata.id,
            category=metadata.category,
            risk_level=metadata.risk_level.value,
        )

    def register_many(self, definitions: Iterable[CapabilityDefinition]) -> None:
        for definition in definitions:
            self.register(definition)

    def get(self, capability_id: str) -> CapabilityDefinition:
        definition = self._definitions.get(capability_id)
        if definition is None:
            raise CapabilityNotFoundError(f"capability not found: {capability_id}")
        return definition

    def has(self, capability_id: str) -> bool:
        return capability_id in self._definitions

    def create(
        self, capability_id: str, context: CapabilityContext | None = None
    ) -> CapabilityInstance:
        """Instantiate a capability bound to ``context`` with fresh history and rollback stack."""

        return CapabilityInstance(
            self.get(capability_id),
            context,
            rollback_point_limit=self._rollback_point_limit,
        )

    def get_metadata(self, capability_id: str) -> CapabilityMetadata:
        return self.get(capability_id).metadata

    def all(self) -> tuple[CapabilityMetadata, ...]:
        return tuple(definition.metadata for definition in self._definitions.values())

    def definitions(self) -> tuple[CapabilityDefinition, ...]:
        return tuple(self._definitions.values())

    def get_by_mode(self, mode: ModeName | str) -> tuple[CapabilityMetadata, ...]:
        resolved = parse_mode_name(mode)
        return tuple(metadata for metadata in self.all() if metadata.is_available_in(resolved))

    def get_by_category(self, category: str) -> tuple[CapabilityMetadata, ...]:
        return tuple(self.get_metadata(item) for item in self._categories.get(category, ()))

    def get_by_risk_level(self, risk_level: RiskLevel | str) -> tuple[CapabilityMetadata, ...]:
        resolved = RiskLevel(risk_level)
        return tuple(metadata for metadata in self.all() if metadata.risk_level is resolved)

    def search(self, query: str) -> tuple[CapabilityMetadata, ...]:
        needle = query.strip().lower()
        return tuple(
            metadata
            for metadata in self.all()
            if needle in metadata.name.lower()
            or needle in metadata.description.lower()
            or needle in metadata.id.lower()
        )

    def categories(self) -> tuple[str, ...]:
        return tuple(category for category, ids in self._categories.items() if ids)

    def count(self) -> int:
        return len(self._definitions)

    def validate(self, capability_id: str, parameters: object) -> ValidationResult:
        return self.create(capability_id).validate(parameters)

    def supports_rollback(self, capability_id: str) -> bool:
        return self.get_metadata(capability_id).supports_rollback

    def get_dependents(self, capability_id: str) -> tuple[CapabilityMetadata, ...]:
        return tuple(metadata for metadata in self.all() if capability_id in metadata.dependencies)

    def get_dependency_tree(self, capability_id: str, *, strict: bool = False) -> tuple[str, ...]:
        """Return ``capability_id`` and its transitive dependencies, dependencies first.

        Nodes are marked visited before their dependencies are expanded, so a cycle back
        to an ancestor is skipped. With ``strict=True`` such a cycle raises
        ``DependencyCycleError`` instead.
        """

        ordered: list[str] = []
        visited: set[str] = set()
        in_progress: list[str] = []

        def traverse(current: str) -> None:
            if current in visited:
                if strict and current in in_progress:
                    cycle = [*in_progress[in_progress.index(current) :], current]
                    raise DependencyCycleError(
                        f"dependency cycle: {' -> '.join(cycle)}", cycle=cycle
                    )
                return
            visited.add(current)
            in_progress.append(current)
            for dependency in self.get_metadata(current).dependencies:
                traverse(dependency)
            in_progress.pop()
            ordered.append(current)

        traverse(capability_id)
        return tuple(ordered)

    def unregister(self, capability_id: str) -> None:
        definition = self._definitions.pop(capability_id, None)
        if definition is None:
            return
        bucket = self._categories.get(definition.metadata.category)
        if bucket is not None and capability_id in bucket:
            bucket.remove(capability_id)
            if not bucket:
                del self._categories[definition.metadata.category]
        self._logger.debug("capability_unregistered", capability_id=capability_id)

    def clear(self) -> None:
        self._definitions.clear()
        self._categories.clear()

    def stats(self) -> dict[str, Any]:
        by_category = {category: len(ids) for category, ids in self._categories.items() if ids}
        by_risk_level: dict[str, int] = {}
        by_mode = {mode.value: 0 for mode in ModeName}
        with_rollback = 0
        for metadata in self.all():
            by_risk_level[metadata.risk_level.value] = (
                by_risk_level.get(metadata.risk_level.value, 0) + 1
            )
            for mode in ModeName:
                if metadata.is_available_in(mode):
                    by_mode[mode.value] += 1
            if metadata.supports_rollback:
                with_rollback += 1
        return {
            "total": self.count(),
            "by_category": by_category,
            "by_risk_level": by_risk_level,
            "by_mode": by_mode,
            "with_rollback": with_rollback,
        }

    def export(self) -> dict[str, JSONValue]:
        return {
            "capabilities": [metadata.to_dict() for metadata in self.all()],
            "categories": list(self.categories()),
            "count": self.count(),
            "timestamp": time.time(),
        }


__all__ = ["CapabilityRegistry"]
