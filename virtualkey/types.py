"""
VirtualKey Types

Data model shared by the provisioner, storage, cache and transfer layers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class ContainerState(str, Enum):
    """Mount lifecycle of a single container."""
    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    UNMOUNTING = "unmounting"


@dataclass(frozen=True)
class Container:
    """A virtual hardware key: one disk image holding one credential store."""
    id: str
    name: str
    path: Path
    created_at: datetime
    last_accessed_at: datetime
    is_locked: bool = False
    credential_count: int = 0

    def with_updated_access(self, when: Optional[datetime] = None) -> "Container":
        return replace(self, last_accessed_at=when or datetime.now())

    def with_credential_count(self, count: int) -> "Container":
        return replace(self, credential_count=count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "is_locked": self.is_locked,
            "credential_count": self.credential_count,
        }


@dataclass
class ContainerConfiguration:
    """Parameters for creating a container."""
    name: str
    size_mb: int = 50
    passphrase: Optional[str] = None
    filesystem: str = "HFS+"


@dataclass(frozen=True)
class MountRecord:
    """Active mount of a container."""
    container_id: str
    mount_path: Path
    mounted_at: float


@dataclass
class ClientCredential:
    """
    Authenticator-side credential record.

    ``private_key_ref`` is a sealed private key (see ``storage.keys``);
    ``public_key`` is the 65-byte uncompressed P-256 point.
    """
    id: str
    rp_id: str
    user_handle: bytes
    public_key: bytes
    private_key_ref: Optional[str]
    created_at: datetime = field(default_factory=datetime.now)
    last_used: Optional[datetime] = None
    sign_count: int = 0
    is_resident: bool = False
    user_display_name: Optional[str] = None
    credential_type: str = "public-key"


@dataclass
class ServerCredential:
    """Relying-party-side mirror of a credential. Every field survives transfer."""
    id: str
    public_key_jwk: str
    username: str
    sign_count: int = 0
    algorithm: int = -7
    protocol_version: str = "fido2CBOR"
    attestation_format: str = "none"
    aaguid: Optional[bytes] = None
    is_discoverable: bool = False
    backup_eligible: bool = False
    backup_state: bool = False
    emoji: Optional[str] = None
    last_login_ip: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    is_enabled: bool = True
    is_admin: bool = False
    user_number: Optional[int] = None
    rp_id: str = ""

    def __post_init__(self) -> None:
        if self.aaguid is not None and len(self.aaguid) != 16:
            raise ValueError(f"aaguid must be 16 bytes, got {len(self.aaguid)}")


@dataclass
class StorageInfo:
    """Record counts reported by an embedded store."""
    credential_count: int = 0
    server_credential_count: int = 0
    container_count: int = 0

    @property
    def total(self) -> int:
        return self.credential_count + self.server_credential_count


def _timestamp(value: Any) -> float:
    """POSIX timestamp that converts to a ``datetime``; ValueError otherwise."""
    seconds = float(value)
    if not math.isfinite(seconds):
        raise ValueError(f"Timestamp is not finite: {value!r}")
    try:
        datetime.fromtimestamp(seconds)
    except (OverflowError, OSError) as e:
        raise ValueError(f"Timestamp out of range: {value!r}") from e
    return seconds


@dataclass
class MetadataEntry:
    """Cached per-container metadata."""
    container_id: str
    last_accessed_at: float
    credential_count: int = 0
    count_computed_at: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "last_accessed_at": self.last_accessed_at,
            "credential_count": self.credential_count,
            "count_computed_at": self.count_computed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetadataEntry":
        if not isinstance(data, dict):
            raise TypeError(f"Metadata entry must be a mapping, got {type(data).__name__}")
        computed = data.get("count_computed_at")
        return cls(
            container_id=str(data["container_id"]),
            last_accessed_at=_timestamp(data["last_accessed_at"]),
            credential_count=int(data.get("credential_count", 0)),
            count_computed_at=_timestamp(computed) if computed is not None else None,
        )


@dataclass
class TransferResult:
    """Outcome of an import."""
    imported: int = 0
    duplicates: int = 0
    skipped: int = 0
    client_seen: int = 0
    server_seen: int = 0
    legacy_layout: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "client_seen": self.client_seen,
            "server_seen": self.server_seen,
            "legacy_layout": self.legacy_layout,
        }
