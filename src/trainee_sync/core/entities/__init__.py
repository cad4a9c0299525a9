"""
Entity model for synchronized records.

Provides the typed notification/record models and the dependency graph that
decides which records must exist before another can be written.

Example:
    >>> from trainee_sync.core.entities import default_entity_model, EntityKind
    >>> model = default_entity_model()
    >>> model.dependencies_of(EntityKind.POST)
"""

from trainee_sync.core.entities.models import (
    DeliveryMetadata,
    EntityKey,
    EntityKind,
    Notification,
    Operation,
    Record,
)
from trainee_sync.core.entities.registry import (
    DependencyEdge,
    EntityDefinition,
    EntityModel,
    EntityModelError,
    UuidKeyedDefinition,
    default_entity_model,
)

__all__ = [
    "DeliveryMetadata",
    "DependencyEdge",
    "EntityDefinition",
    "EntityKey",
    "EntityKind",
    "EntityModel",
    "EntityModelError",
    "Notification",
    "Operation",
    "Record",
    "UuidKeyedDefinition",
    "default_entity_model",
]
