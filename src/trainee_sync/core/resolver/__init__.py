"""
Dependency resolution and on-demand fetching of missing records.
"""

from trainee_sync.core.resolver.requests import (
    DataRequest,
    DataRequester,
    InMemoryRequestPublisher,
    RequestPublishError,
    RequestPublisher,
    RequestService,
)
from trainee_sync.core.resolver.resolver import DependencyResolver, Resolution

__all__ = [
    "DataRequest",
    "DataRequester",
    "DependencyResolver",
    "InMemoryRequestPublisher",
    "RequestPublishError",
    "RequestPublisher",
    "RequestService",
    "Resolution",
]
