"""
VirtualKey Container Provisioner

Lifecycle of virtual hardware keys: disk images in a managed directory,
each holding one embedded credential store.

Mount records are keyed by the container identifier derived from the
image path. The record map and per-container states are shared between
tasks and guarded by a single lock that is never held across an await.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from virtualkey.cache import MetadataCache
from virtualkey.core.config import ProvisionerConfig
from virtualkey.errors import (
    AlreadyExistsError,
    InvalidDirectoryError,
    MountFailedError,
    NotFoundError,
    UtilityError,
    VirtualKeyError,
)
from virtualkey.provisioner.diskimage import DiskImageUtility
from virtualkey.provisioner.identity import identifier_from_path
from virtualkey.storage.factory import StorageFactory
from virtualkey.types import Container, ContainerConfiguration, ContainerState, MountRecord

logger = structlog.get_logger(__name__)


WRITE_PROBE_NAME = ".virtualkey-write-probe"


class ContainerProvisioner:
    """
    Creates, mounts, unmounts, lists and deletes containers.

    Usage:
        provisioner = ContainerProvisioner(keys_dir, utility, storage, cache)
        await provisioner.initialize()
        container = await provisioner.create("WorkKey", size_mb=10)
        mount_path = await provisioner.mount(container.path)
    """

    def __init__(
        self,
        keys_dir: Path,
        utility: DiskImageUtility,
        storage: StorageFactory,
        cache: MetadataCache,
        config: Optional[ProvisionerConfig] = None,
    ):
        self.keys_dir = Path(keys_dir)
        self.utility = utility
        self.storage = storage
        self.cache = cache
        self.config = config or ProvisionerConfig()

        self._lock = threading.Lock()
        self._mounts: dict[str, MountRecord] = {}
        self._states: dict[str, ContainerState] = {}
        self._mount_locks: dict[str, asyncio.Lock] = {}

        self._initialized = False

    # Lifecycle

    async def initialize(self) -> None:
        if self._initialized:
            return

        self.keys_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Initializing container provisioner", keys_dir=str(self.keys_dir))

        if self.config.mount_at_startup:
            mounted = await self._mount_unlocked_containers()
            logger.info("Startup mount sweep complete", mounted=mounted)

        self._initialized = True

    async def shutdown(self) -> None:
        logger.info("Shutting down container provisioner")
        await self.unmount_all()
        self._initialized = False

    async def _mount_unlocked_containers(self) -> int:
        mounted = 0
        for image in self._images():
            if await self.utility.is_encrypted(image):
                logger.debug("Skipping encrypted container at startup", path=str(image))
                continue
            try:
                await self.mount(image)
                mounted += 1
            except VirtualKeyError as e:
                logger.debug("Skipping container that failed to mount", path=str(image), error=str(e))
        return mounted

    # Directory

    def set_directory(self, directory: Path) -> None:
        """
        Switch the managed directory.

        Raises:
            InvalidDirectoryError: missing, not a directory or not writable
        """
        directory = Path(directory).expanduser()
        if not directory.exists():
            raise InvalidDirectoryError(f"Directory does not exist: {directory}")
        if not directory.is_dir():
            raise InvalidDirectoryError(f"Not a directory: {directory}")

        probe = directory / WRITE_PROBE_NAME
        try:
            probe.write_text("")
            probe.unlink()
        except OSError as e:
            raise InvalidDirectoryError(f"Directory is not writable: {directory}", cause=e) from e

        self.keys_dir = directory
        self.cache.set_directory(directory)
        logger.info("Managed directory changed", keys_dir=str(directory))

    def _images(self) -> list[Path]:
        if not self.keys_dir.is_dir():
            return []
        return sorted(
            p for p in self.keys_dir.iterdir()
            if p.is_file() and p.name.endswith(self.config.image_suffix)
        )

    def image_path(self, name: str) -> Path:
        return self.keys_dir / f"{name}{self.config.image_suffix}"

    def _find_image(self, container_id: str) -> Path:
        for image in self._images():
            if identifier_from_path(image) == container_id:
                return image
        raise NotFoundError(container_id)

    # State

    def _set_state(self, container_id: str, state: ContainerState) -> None:
        with self._lock:
            self._states[container_id] = state

    def state(self, container_id: str) -> ContainerState:
        with self._lock:
            return self._states.get(container_id, ContainerState.UNMOUNTED)

    def mounted(self) -> dict[str, MountRecord]:
        """Snapshot of active mount records."""
        with self._lock:
            return dict(self._mounts)

    def mount_path_for(self, container_id: str) -> Optional[Path]:
        """Cached mount path if the record exists and still points at a directory."""
        with self._lock:
            record = self._mounts.get(container_id)
        if record is not None and record.mount_path.exists():
            return record.mount_path
        return None

    def _mount_lock(self, container_id: str) -> asyncio.Lock:
        with self._lock:
            lock = self._mount_locks.get(container_id)
            if lock is None:
                lock = asyncio.Lock()
                self._mount_locks[container_id] = lock
            return lock

    # Operations

    async def create(
        self,
        name: str,
        size_mb: Optional[int] = None,
        passphrase: Optional[str] = None,
        filesystem: Optional[str] = None,
    ) -> Container:
        """
        Create a container, initialize its credential store and leave it mounted.

        Raises:
            AlreadyExistsError: a container with ``name`` exists
            CreationFailedError: the disk-image utility failed
            MountFailedError: the new image could not be mounted
            StorageInitFailedError: the credential store could not be created
        """
        if not name or "/" in name or name.startswith("."):
            raise ValueError(f"Invalid container name: {name!r}")
        configuration = ContainerConfiguration(
            name=name,
            size_mb=size_mb or self.config.default_size_mb,
            passphrase=passphrase or None,
            filesystem=filesystem or self.config.default_filesystem,
        )

        path = self.image_path(name)
        if path.exists():
            raise AlreadyExistsError(name)

        self.keys_dir.mkdir(parents=True, exist_ok=True)
        await self.utility.create(
            path,
            volume_name=configuration.name,
            size_mb=configuration.size_mb,
            filesystem=configuration.filesystem,
            passphrase=configuration.passphrase,
        )

        mount_path = await self.mount(path, configuration.passphrase)
        await self.storage.ensure_unified(mount_path)

        container_id = identifier_from_path(path)
        self.cache.record_count(container_id, 0)

        now = datetime.now()
        container = Container(
            id=container_id,
            name=name,
            path=path,
            created_at=now,
            last_accessed_at=now,
            is_locked=configuration.passphrase is not None,
            credential_count=0,
        )
        logger.info(
            "Created virtual hardware key",
            container_id=container_id,
            name=name,
            size_mb=configuration.size_mb,
            encrypted=container.is_locked,
        )
        return container

    async def mount(self, path: Path, passphrase: Optional[str] = None) -> Path:
        """
        Mount the image at ``path``, reusing a live cached mount.

        Raises:
            MountFailedError: the utility failed or reported no mount point
        """
        path = Path(path)
        container_id = identifier_from_path(path)

        async with self._mount_lock(container_id):
            with self._lock:
                record = self._mounts.get(container_id)

            if record is not None:
                if record.mount_path.exists():
                    self.cache.touch(container_id)
                    return record.mount_path
                logger.warning(
                    "Dropping stale mount record",
                    container_id=container_id,
                    mount_path=str(record.mount_path),
                )
                with self._lock:
                    if self._mounts.get(container_id) == record:
                        del self._mounts[container_id]

            self._set_state(container_id, ContainerState.MOUNTING)
            try:
                mount_path = await self.utility.attach(path, passphrase)
            except UtilityError as e:
                self._set_state(container_id, ContainerState.UNMOUNTED)
                logger.error("Mount failed", container_id=container_id, path=str(path), error=str(e))
                raise

            with self._lock:
                self._mounts[container_id] = MountRecord(
                    container_id=container_id,
                    mount_path=mount_path,
                    mounted_at=time.time(),
                )
                self._states[container_id] = ContainerState.MOUNTED

        self.cache.touch(container_id)
        logger.info("Mounted virtual hardware key", container_id=container_id, mount_path=str(mount_path))
        return mount_path

    async def unmount(self, mount_path: Path) -> None:
        """
        Detach ``mount_path`` and drop every record pointing at it.

        Raises:
            UnmountFailedError: the utility failed
        """
        mount_path = Path(mount_path)
        with self._lock:
            owners = [cid for cid, rec in self._mounts.items() if rec.mount_path == mount_path]
            for cid in owners:
                self._states[cid] = ContainerState.UNMOUNTING

        try:
            await self.utility.detach(mount_path)
        except UtilityError as e:
            logger.error("Unmount failed", mount_path=str(mount_path), error=str(e))
            raise
        finally:
            with self._lock:
                for cid in owners:
                    rec = self._mounts.get(cid)
                    if rec is not None and rec.mount_path == mount_path:
                        del self._mounts[cid]
                    self._states[cid] = ContainerState.UNMOUNTED

        logger.info("Unmounted virtual hardware key", mount_path=str(mount_path), containers=owners)

    async def unmount_container(self, container_id: str) -> bool:
        """Unmount by identifier. False if it was not mounted."""
        with self._lock:
            record = self._mounts.get(container_id)
        if record is None:
            return False
        await self.unmount(record.mount_path)
        return True

    async def unmount_all(self) -> int:
        """Detach every tracked mount, continuing past failures."""
        unmounted = 0
        for record in self.mounted().values():
            try:
                await self.unmount(record.mount_path)
                unmounted += 1
            except UtilityError as e:
                logger.warning(
                    "Failed to unmount during sweep",
                    container_id=record.container_id,
                    error=str(e),
                )
        return unmounted

    async def mount_container(self, container_id: str, passphrase: Optional[str] = None) -> Path:
        return await self.mount(self._find_image(container_id), passphrase)

    async def list(self) -> list[Container]:
        """Every container in the managed directory, counts served from the cache."""
        containers = []
        for image in self._images():
            containers.append(await self._describe(image))
        return containers

    async def get(self, container_id: str) -> Container:
        """
        Raises:
            NotFoundError: no image in the managed directory has this identifier
        """
        return await self._describe(self._find_image(container_id))

    async def delete(self, container_id: str, passphrase: Optional[str] = None) -> None:
        """
        Unmount if needed and remove the image file.

        An image attached without a record in this process (another process
        mounted it) is re-resolved through ``mount`` and detached first.

        Raises:
            NotFoundError: unknown container
            UnmountFailedError: the container could not be detached
        """
        image = self._find_image(container_id)
        if not await self.unmount_container(container_id):
            await self._detach_untracked(image, container_id, passphrase)

        image.unlink()
        self.cache.forget(container_id)
        with self._lock:
            self._states.pop(container_id, None)
            self._mount_locks.pop(container_id, None)

        logger.info("Deleted virtual hardware key", container_id=container_id, path=str(image))

    async def _detach_untracked(self, image: Path, container_id: str, passphrase: Optional[str]) -> None:
        if passphrase is None and await self.utility.is_encrypted(image):
            logger.warning(
                "Cannot resolve mount of encrypted container without passphrase",
                container_id=container_id,
            )
            return
        try:
            mount_path = await self.mount(image, passphrase)
        except MountFailedError as e:
            logger.warning("Container not mountable, deleting as is", container_id=container_id, error=str(e))
            return
        await self.unmount(mount_path)

    async def _describe(self, image: Path) -> Container:
        container_id = identifier_from_path(image)
        stat = image.stat()
        created = getattr(stat, "st_birthtime", None) or stat.st_ctime
        accessed = self.cache.get_access_time(container_id) or datetime.fromtimestamp(stat.st_mtime)
        is_locked = await self.utility.is_encrypted(image)

        return Container(
            id=container_id,
            name=image.name[: -len(self.config.image_suffix)] if self.config.image_suffix else image.name,
            path=image,
            created_at=datetime.fromtimestamp(created),
            last_accessed_at=accessed,
            is_locked=is_locked,
            credential_count=await self._count_for(image, container_id, is_locked),
        )

    # Counting

    async def count_credentials(self, container_id: str, refresh: bool = False) -> int:
        """Cached credential count, recomputed when stale or when ``refresh`` is set."""
        image = self._find_image(container_id)
        if refresh:
            self.cache.invalidate(container_id)
        return await self._count_for(image, container_id, await self.utility.is_encrypted(image))

    async def _count_for(self, image: Path, container_id: str, is_locked: bool) -> int:
        async def recompute() -> Optional[int]:
            mount_path = self.mount_path_for(container_id)
            if mount_path is None:
                if is_locked:
                    return None
                try:
                    mount_path = await self.mount(image)
                except VirtualKeyError as e:
                    logger.warning("Count skipped, mount failed", container_id=container_id, error=str(e))
                    return None
            return await self.storage.try_count_credentials(mount_path)

        try:
            return await self.cache.get_credential_count(container_id, recompute)
        except (VirtualKeyError, sqlite3.Error, OSError) as e:
            logger.warning("Credential count failed", container_id=container_id, error=str(e))
            return 0
