"""
VirtualKey Configuration

Centralized settings for the provisioner, storage layer and metadata cache:
- Environment-based configuration (VIRTUALKEY_ prefix)
- Type-safe settings with Pydantic
- JSON file loading
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


def _home() -> Path:
    return Path.home() / ".virtualkey"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ProvisionerConfig(BaseModel):
    """Disk-image utility and container directory settings."""
    utility_path: str = "/usr/bin/hdiutil"
    mount_parent: str = "/tmp"
    mount_roots: list[str] = Field(default_factory=lambda: ["/private/tmp/", "/tmp/"])
    image_suffix: str = ".dmg"
    default_size_mb: int = Field(default=50, gt=0)
    default_filesystem: str = "HFS+"
    encryption: str = "AES-256"
    command_timeout: float = Field(default=60.0, gt=0)  # seconds
    mount_at_startup: bool = True


class StorageConfig(BaseModel):
    """Embedded credential store settings."""
    max_concurrent_operations: int = Field(default=3, ge=1)
    database_name: str = "WebAuthnClient"
    unified_filename: str = "WebAuthnClient.db"
    legacy_client_filename: str = "VirtualKeyCredentials.db"
    legacy_server_filename: str = "ServerCredentials.db"
    busy_timeout_ms: int = 5000


class CacheConfig(BaseModel):
    """Metadata cache settings."""
    filename: str = ".virtualkey-metadata.json"
    count_max_age: float = Field(default=3600.0, gt=0)  # seconds


class VirtualKeyConfig(BaseSettings):
    """
    Main VirtualKey Configuration

    Loads configuration from environment variables and/or config files.
    Environment variables are prefixed with VIRTUALKEY_
    (e.g., VIRTUALKEY_KEYS_DIR=/Volumes/keys, VIRTUALKEY_STORAGE__MAX_CONCURRENT_OPERATIONS=5).
    """

    keys_dir: Path = Field(default_factory=lambda: _home() / "VirtualKeys")
    data_dir: Path = Field(default_factory=lambda: _home() / "data")

    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = True

    provisioner: ProvisionerConfig = Field(default_factory=ProvisionerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    model_config = {
        "env_prefix": "VIRTUALKEY_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("keys_dir", "data_dir", mode="before")
    @classmethod
    def ensure_path(cls, v: Any) -> Path:
        """Ensure value is converted to an expanded Path."""
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser()

    @property
    def local_database_path(self) -> Path:
        return self.data_dir / self.storage.unified_filename

    def ensure_directories(self) -> None:
        """Create all required directories if they don't exist."""
        for dir_path in [self.keys_dir, self.data_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_file(cls, config_path: Path) -> "VirtualKeyConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[VirtualKeyConfig] = None


def get_config() -> VirtualKeyConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = VirtualKeyConfig()
    return _config


def set_config(config: VirtualKeyConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
