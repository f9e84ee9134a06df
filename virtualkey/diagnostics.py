"""
VirtualKey Diagnostics

Operator-facing reports over a container: volume file structure, the
records it holds, how they differ from the local store, and removal of
leftover legacy databases.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import structlog

from virtualkey.codec import build_registration_attestation, decode_cose_key, parse_attestation_object
from virtualkey.provisioner.manager import ContainerProvisioner
from virtualkey.storage.factory import StorageFactory
from virtualkey.types import ClientCredential, ServerCredential

logger = structlog.get_logger(__name__)


# Database left behind by the earliest container layout.
ORPHAN_LEGACY_FILENAME = "VirtualKey.db"
SIDECAR_SUFFIXES = ("", "-shm", "-wal")

Identified = Union[str, ClientCredential, ServerCredential]


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


@dataclass
class SetComparison:
    duplicates: list[str] = field(default_factory=list)
    local_only: list[str] = field(default_factory=list)
    container_only: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "duplicates": self.duplicates,
            "local_only": self.local_only,
            "container_only": self.container_only,
        }


@dataclass
class CleanupReport:
    files_removed: list[str] = field(default_factory=list)
    bytes_freed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"files_removed": self.files_removed, "bytes_freed": self.bytes_freed}


def _ids(records: Iterable[Identified]) -> set[str]:
    return {r if isinstance(r, str) else r.id for r in records}


def compare(local: Iterable[Identified], container: Iterable[Identified]) -> SetComparison:
    """Intersection and both differences of two record sets, by credential id."""
    local_ids = _ids(local)
    container_ids = _ids(container)
    return SetComparison(
        duplicates=sorted(local_ids & container_ids),
        local_only=sorted(local_ids - container_ids),
        container_only=sorted(container_ids - local_ids),
    )


def attestation_preview(credential: ClientCredential) -> dict[str, Any]:
    """
    Registration attestation object for a stored client credential,
    decoded back into its parts.
    """
    attestation = build_registration_attestation(
        rp_id=credential.rp_id,
        credential_id=credential.id,
        public_key=credential.public_key,
        counter=credential.sign_count,
    )
    parsed = parse_attestation_object(attestation)
    auth_data = parsed.auth_data
    cose_key = decode_cose_key(auth_data.credential_public_key)

    return {
        "credential_id": credential.id,
        "rp_id": credential.rp_id,
        "attestation_object": _b64url(attestation),
        "fmt": parsed.fmt,
        "rp_id_hash": auth_data.rp_id_hash.hex(),
        "rp_id_matches": auth_data.matches_rp_id(credential.rp_id),
        "flags": auth_data.flags,
        "user_present": auth_data.user_present,
        "user_verified": auth_data.user_verified,
        "sign_count": auth_data.sign_count,
        "aaguid": auth_data.aaguid.hex() if auth_data.aaguid else None,
        "cose_key": {
            "kty": cose_key.kty,
            "alg": cose_key.alg,
            "crv": cose_key.crv,
            "x": cose_key.x.hex(),
            "y": cose_key.y.hex(),
        },
    }


class Diagnostics:
    """Reports that mount containers and read both stores."""

    def __init__(self, provisioner: ContainerProvisioner, storage: StorageFactory, local_path: Path):
        self.provisioner = provisioner
        self.storage = storage
        self.local_path = Path(local_path)

    async def analyze(self, container_id: str, passphrase: Optional[str] = None) -> dict[str, Any]:
        container = await self.provisioner.get(container_id)
        mount_path = await self.provisioner.mount(container.path, passphrase)
        layout = self.storage.layout(mount_path)

        files = [
            {"name": p.name, "size": p.stat().st_size, "is_dir": p.is_dir()}
            for p in sorted(mount_path.iterdir())
        ]
        databases = {p.name: p.stat().st_size for p in layout.existing_files()}
        clients, servers, legacy = await self.storage.read_container(mount_path)

        logger.info(
            "Analyzed virtual hardware key",
            container_id=container_id,
            client=len(clients),
            server=len(servers),
            legacy=legacy,
        )

        return {
            "container": container.to_dict(),
            "mount_path": str(mount_path),
            "layout": "legacy" if legacy else ("unified" if layout.has_unified else "empty"),
            "files": files,
            "databases": databases,
            "client_credentials": [
                {
                    "id": c.id,
                    "rp_id": c.rp_id,
                    "user_display_name": c.user_display_name,
                    "public_key_length": len(c.public_key),
                    "created_at": c.created_at.isoformat(),
                }
                for c in clients
            ],
            "server_credentials": [
                {
                    "id": s.id,
                    "username": s.username,
                    "algorithm": s.algorithm,
                    "sign_count": s.sign_count,
                    "is_admin": s.is_admin,
                }
                for s in servers
            ],
        }

    async def compare_container(self, container_id: str, passphrase: Optional[str] = None) -> dict[str, Any]:
        """Client and server set differences between the local store and a container."""
        container = await self.provisioner.get(container_id)
        mount_path = await self.provisioner.mount(container.path, passphrase)

        container_clients, container_servers, _ = await self.storage.read_container(mount_path)
        async with self.storage.open(self.local_path) as local:
            local_clients = await local.fetch_credentials()
            local_servers = await local.fetch_server_credentials()

        return {
            "container_id": container_id,
            "client": compare(local_clients, container_clients).to_dict(),
            "server": compare(local_servers, container_servers).to_dict(),
        }

    async def cleanup_legacy(self, container_id: str, passphrase: Optional[str] = None) -> CleanupReport:
        """
        Remove legacy database files from a container that already has the
        unified database. Containers without one are left untouched.
        """
        container = await self.provisioner.get(container_id)
        mount_path = await self.provisioner.mount(container.path, passphrase)
        layout = self.storage.layout(mount_path)
        report = CleanupReport()

        if not layout.has_unified:
            logger.warning("No unified database, keeping legacy files", container_id=container_id)
            return report

        for name in (layout.legacy_client.name, layout.legacy_server.name, ORPHAN_LEGACY_FILENAME):
            for suffix in SIDECAR_SUFFIXES:
                path = mount_path / f"{name}{suffix}"
                if not path.exists():
                    continue
                size = path.stat().st_size
                try:
                    path.unlink()
                except OSError as e:
                    logger.warning("Failed to remove legacy file", path=str(path), error=str(e))
                    continue
                report.files_removed.append(path.name)
                report.bytes_freed += size

        logger.info(
            "Cleaned legacy databases",
            container_id=container_id,
            removed=len(report.files_removed),
            bytes_freed=report.bytes_freed,
        )
        return report
