"""
Entity model: per-kind definitions and the dependency graph between kinds.

Each entity kind is described by an :class:`EntityDefinition` that knows how
to read the natural id out of a record payload and which payload fields
reference other kinds. :class:`EntityModel` assembles the definitions into a
validated, acyclic dependency graph. It is pure: no I/O, deterministic, and
immutable after construction.

Misconfiguration (an edge pointing at a kind with no definition, or a cycle)
raises :class:`EntityModelError` when the model is built, so a bad
declaration fails at startup rather than while processing messages.

Example:
    >>> model = default_entity_model()
    >>> sorted(k.value for k in model.dependencies_of(EntityKind.PLACEMENT))
    ['Grade', 'Person', 'Post', 'Site']
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Any

from .models import EntityKey, EntityKind, Record


class EntityModelError(Exception):
    """Raised when entity definitions do not form a valid dependency graph."""


@dataclass(frozen=True)
class DependencyEdge:
    """A declared reference from one kind's field to another kind."""

    source: EntityKind
    field: str
    target: EntityKind

    def __str__(self) -> str:
        return f"{self.source.value}.{self.field} -> {self.target.value}"


class EntityDefinition:
    """
    Field extraction and reference declarations for one entity kind.

    Subclasses override :meth:`natural_id` when a kind is keyed on something
    other than its ``id`` field.
    """

    id_field = "id"

    def __init__(self, kind: EntityKind, references: Mapping[str, EntityKind] | None = None):
        self.kind = kind
        self.references: dict[str, EntityKind] = dict(references or {})

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value!r})"

    @property
    def edges(self) -> list[DependencyEdge]:
        return [
            DependencyEdge(source=self.kind, field=name, target=target)
            for name, target in self.references.items()
        ]

    def natural_id(self, data: Mapping[str, Any]) -> str | None:
        """Return the natural id held in a payload, or None if absent."""
        return _clean(data.get(self.id_field))

    def key_for(self, data: Mapping[str, Any]) -> EntityKey | None:
        natural_id = self.natural_id(data)
        if natural_id is None:
            return None
        return EntityKey(kind=self.kind, natural_id=natural_id)

    def extract_references(self, record: Record) -> frozenset[EntityKey]:
        """Keys of every record this one references. Blank values are skipped."""
        keys = set()
        for name, target in self.references.items():
            value = _clean(record.data.get(name))
            if value is not None:
                keys.add(EntityKey(kind=target, natural_id=value))
        return frozenset(keys)


class UuidKeyedDefinition(EntityDefinition):
    """Membership kinds are keyed on ``uuid``; older payloads only carry ``id``."""

    id_field = "uuid"

    def natural_id(self, data: Mapping[str, Any]) -> str | None:
        return _clean(data.get(self.id_field)) or _clean(data.get("id"))


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class EntityModel:
    """
    Validated dependency graph over a closed set of entity definitions.

    Args:
        definitions: One definition per kind. Kinds without a definition are
            not synchronizable and may not be referenced.

    Raises:
        EntityModelError: On duplicate definitions, edges to undefined kinds,
            or a dependency cycle.
    """

    __slots__ = ("_definitions", "_dependencies", "_order")

    def __init__(self, definitions: Iterable[EntityDefinition]) -> None:
        self._definitions: dict[EntityKind, EntityDefinition] = {}
        for definition in definitions:
            if definition.kind in self._definitions:
                raise EntityModelError(f"Duplicate definition for {definition.kind.value}")
            self._definitions[definition.kind] = definition

        self._dependencies: dict[EntityKind, frozenset[EntityKind]] = {}
        for kind, definition in self._definitions.items():
            for edge in definition.edges:
                if edge.target not in self._definitions:
                    raise EntityModelError(f"Dependency edge {edge} points at an unknown kind")
            self._dependencies[kind] = frozenset(definition.references.values())

        try:
            self._order: tuple[EntityKind, ...] = tuple(
                TopologicalSorter(self._dependencies).static_order()
            )
        except CycleError as exc:
            cycle = exc.args[1]
            raise EntityModelError(
                "Cyclic entity dependency detected: " + " -> ".join(k.value for k in cycle)
            ) from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def edges(self) -> list[DependencyEdge]:
        return [edge for kind in self._order for edge in self._definitions[kind].edges]

    def definition_for(self, kind: EntityKind) -> EntityDefinition:
        try:
            return self._definitions[kind]
        except KeyError:
            raise EntityModelError(f"No definition registered for {kind.value}") from None

    def dependencies_of(self, kind: EntityKind) -> frozenset[EntityKind]:
        """Kinds that records of ``kind`` directly reference."""
        self.definition_for(kind)
        return self._dependencies[kind]

    def extract_references(self, record: Record) -> frozenset[EntityKey]:
        """Keys a record depends on, per its kind's declared edges."""
        return self.definition_for(record.key.kind).extract_references(record)

    def kind_for_table(self, table: str) -> EntityKind | None:
        """Map an upstream table name onto a defined kind (case-insensitive)."""
        wanted = table.strip().lower()
        for kind in self._definitions:
            if kind.value.lower() == wanted:
                return kind
        return None

    def topological_order(self) -> list[EntityKind]:
        """Kinds ordered so every dependency precedes its dependents."""
        return list(self._order)


def default_entity_model() -> EntityModel:
    """Build the entity model for the standard upstream schema."""
    k = EntityKind
    return EntityModel(
        [
            EntityDefinition(k.PERSON),
            EntityDefinition(k.SPECIALTY),
            EntityDefinition(k.SITE),
            EntityDefinition(k.GRADE),
            EntityDefinition(k.TRUST),
            EntityDefinition(k.PROGRAMME),
            EntityDefinition(k.CURRICULUM, {"specialtyId": k.SPECIALTY}),
            EntityDefinition(
                k.POST,
                {
                    "programmeId": k.PROGRAMME,
                    "employingBodyId": k.TRUST,
                    "trainingBodyId": k.TRUST,
                },
            ),
            EntityDefinition(
                k.PLACEMENT,
                {
                    "postId": k.POST,
                    "siteId": k.SITE,
                    "gradeId": k.GRADE,
                    "traineeId": k.PERSON,
                },
            ),
            EntityDefinition(
                k.PLACEMENT_SPECIALTY,
                {"placementId": k.PLACEMENT, "specialtyId": k.SPECIALTY},
            ),
            EntityDefinition(
                k.POST_SPECIALTY,
                {"postId": k.POST, "specialtyId": k.SPECIALTY},
            ),
            UuidKeyedDefinition(
                k.PROGRAMME_MEMBERSHIP,
                {"personId": k.PERSON, "programmeId": k.PROGRAMME},
            ),
            UuidKeyedDefinition(
                k.CURRICULUM_MEMBERSHIP,
                {
                    "personId": k.PERSON,
                    "programmeId": k.PROGRAMME,
                    "curriculumId": k.CURRICULUM,
                },
            ),
        ]
    )
