"""
Shared fixtures for VirtualKey tests.

The disk-image utility is replaced by an in-process fake: each image file
is backed by a volume directory, and attaching it links that directory
under a random mount point.
"""

from __future__ import annotations

import itertools
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytest

from virtualkey.core.config import ProvisionerConfig, VirtualKeyConfig
from virtualkey.errors import CreationFailedError, MountFailedError, UnmountFailedError
from virtualkey.main import build_services
from virtualkey.provisioner.diskimage import DiskImageUtility
from virtualkey.types import ServerCredential


class FakeDiskImageUtility(DiskImageUtility):
    """Volumes are directories; mounts are symlinks to them."""

    def __init__(self, volumes_dir: Path, mount_root: Path):
        super().__init__(mount_parent=str(mount_root), mount_roots=(str(mount_root),))
        self.volumes_dir = volumes_dir
        self.mount_root = mount_root
        self.calls: Counter = Counter()
        self.passphrases: dict[Path, Optional[str]] = {}
        self.attached: dict[Path, Path] = {}
        self.fail_attach: set[Path] = set()
        self._ids = itertools.count(1)

        volumes_dir.mkdir(parents=True, exist_ok=True)
        mount_root.mkdir(parents=True, exist_ok=True)

    def volume_for(self, image_path: Path) -> Path:
        return self.volumes_dir / Path(image_path).stem

    async def create(self, image_path, volume_name, size_mb=50, filesystem="HFS+", passphrase=None):
        self.calls["create"] += 1
        image_path = Path(image_path)
        if image_path.exists():
            raise CreationFailedError("Disk image creation failed: File exists", returncode=1)
        image_path.write_bytes(b"fake-udif")
        self.volume_for(image_path).mkdir(parents=True, exist_ok=True)
        self.passphrases[image_path] = passphrase

    async def attach(self, image_path, passphrase=None):
        self.calls["attach"] += 1
        image_path = Path(image_path)
        if image_path in self.fail_attach:
            raise MountFailedError(f"Failed to mount {image_path.name}: hdiutil: attach failed", returncode=1)
        expected = self.passphrases.get(image_path)
        if expected is not None and passphrase != expected:
            raise MountFailedError(
                f"Failed to mount {image_path.name}: Authentication error", returncode=1
            )

        current = self.attached.get(image_path)
        if current is not None and current.exists():
            return current

        volume = self.volume_for(image_path)
        volume.mkdir(parents=True, exist_ok=True)
        mount_point = self.mount_root / f"dmg.{next(self._ids)}"
        mount_point.symlink_to(volume, target_is_directory=True)
        self.attached[image_path] = mount_point
        return mount_point

    async def detach(self, mount_point):
        self.calls["detach"] += 1
        mount_point = Path(mount_point)
        if not mount_point.is_symlink():
            raise UnmountFailedError(f"Failed to unmount {mount_point}: no such mount", returncode=1)
        mount_point.unlink()
        for image, mp in list(self.attached.items()):
            if mp == mount_point:
                del self.attached[image]

    async def is_encrypted(self, image_path):
        self.calls["imageinfo"] += 1
        return self.passphrases.get(Path(image_path)) is not None


@pytest.fixture
def fake_utility(tmp_path):
    return FakeDiskImageUtility(tmp_path / "volumes", tmp_path / "mnt")


@pytest.fixture
def config(tmp_path):
    return VirtualKeyConfig(
        keys_dir=tmp_path / "keys",
        data_dir=tmp_path / "data",
        provisioner=ProvisionerConfig(mount_at_startup=False),
    )


@pytest.fixture
def services(config, fake_utility):
    services = build_services(config, utility=fake_utility)
    config.ensure_directories()
    return services


def make_server_credential(credential_id: str, **overrides) -> ServerCredential:
    """Server record with every field set away from its default."""
    fields = dict(
        id=credential_id,
        public_key_jwk='{"kty":"EC","crv":"P-256","x":"AQ","y":"Ag"}',
        username=f"user-{credential_id}",
        sign_count=42,
        algorithm=-7,
        protocol_version="fido2CBOR",
        attestation_format="packed",
        aaguid=bytes(range(16)),
        is_discoverable=True,
        backup_eligible=True,
        backup_state=True,
        emoji="🔑",
        last_login_ip="192.0.2.10",
        last_login_at=datetime(2024, 5, 1, 12, 30, 15),
        created_at=datetime(2024, 1, 2, 3, 4, 5),
        is_enabled=False,
        is_admin=True,
        user_number=7,
        rp_id="example.com",
    )
    fields.update(overrides)
    return ServerCredential(**fields)


@pytest.fixture
def server_record():
    return make_server_credential
