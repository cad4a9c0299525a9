"""
Configuration models and loading.

This module provides Pydantic models for trainee-sync configuration
with multi-layer merging: defaults < user < project < env vars.
"""

from .loader import (
    clear_cache,
    get_env_settings,
    get_project_config_path,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
)
from .models import (
    CacheConfig,
    DeferredConfig,
    GatewayConfig,
    LoggingConfig,
    RepairConfig,
    RequestConfig,
    RetryConfig,
    StoreConfig,
    SyncConfig,
    WorkerConfig,
)

__all__ = [
    # Models
    "CacheConfig",
    "DeferredConfig",
    "GatewayConfig",
    "LoggingConfig",
    "RepairConfig",
    "RequestConfig",
    "RetryConfig",
    "StoreConfig",
    "SyncConfig",
    "WorkerConfig",
    # Loader functions
    "clear_cache",
    "get_env_settings",
    "get_project_config_path",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
]
