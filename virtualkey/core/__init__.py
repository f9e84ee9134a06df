"""VirtualKey core configuration."""

from virtualkey.core.config import (
    CacheConfig,
    LogLevel,
    ProvisionerConfig,
    StorageConfig,
    VirtualKeyConfig,
    get_config,
    reset_config,
    set_config,
)

__all__ = [
    "CacheConfig",
    "LogLevel",
    "ProvisionerConfig",
    "StorageConfig",
    "VirtualKeyConfig",
    "get_config",
    "reset_config",
    "set_config",
]
