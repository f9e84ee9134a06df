"""
VirtualKey Transfer Engine

Moves credential records between the local store and a container's store.

Identity is the credential id string; a record already present at the
destination is counted as a duplicate unless ``overwrite_existing`` is set,
in which case the incoming record replaces it. Operations on the same
container are serialized.
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

import structlog

from virtualkey.cache import MetadataCache
from virtualkey.errors import (
    ExportFailedError,
    ImportFailedError,
    StorageInitFailedError,
)
from virtualkey.provisioner.manager import ContainerProvisioner
from virtualkey.storage.factory import StorageFactory
from virtualkey.storage.keys import has_usable_private_key
from virtualkey.types import TransferResult

logger = structlog.get_logger(__name__)


_STORAGE_FAILURES = (StorageInitFailedError, sqlite3.Error, OSError)


class TransferEngine:
    """
    Export to and import from containers.

    Usage:
        engine = TransferEngine(provisioner, storage, cache, local_path)
        written = await engine.export_credentials(container_id, ["c1"])
        result = await engine.import_credentials(container_id)
    """

    def __init__(
        self,
        provisioner: ContainerProvisioner,
        storage: StorageFactory,
        cache: MetadataCache,
        local_path: Path,
    ):
        self.provisioner = provisioner
        self.storage = storage
        self.cache = cache
        self.local_path = Path(local_path)
        self._locks: dict[str, asyncio.Lock] = {}

    def _container_lock(self, container_id: str) -> asyncio.Lock:
        lock = self._locks.get(container_id)
        if lock is None:
            lock = self._locks[container_id] = asyncio.Lock()
        return lock

    def forget(self, container_id: str) -> None:
        """Drop the serialization lock of a deleted container unless it is held."""
        lock = self._locks.get(container_id)
        if lock is not None and not lock.locked():
            del self._locks[container_id]

    async def export_credentials(
        self,
        container_id: str,
        credential_ids: Iterable[str],
        passphrase: Optional[str] = None,
        source: Optional[Path] = None,
    ) -> int:
        """
        Copy the requested credentials from ``source`` (the local store by
        default) into the container. Requested ids absent from the source
        are skipped.

        Returns:
            Number of client and server records written

        Raises:
            NotFoundError: unknown container
            MountFailedError: the container could not be mounted
            ExportFailedError: the stores could not be read or written
        """
        wanted = set(credential_ids)
        source = Path(source) if source is not None else self.local_path

        async with self._container_lock(container_id):
            mount_path = await self.provisioner.mount_container(container_id, passphrase)
            layout = self.storage.layout(mount_path)

            try:
                if not layout.has_unified:
                    logger.info("Creating credential store in container", container_id=container_id)
                    await self.storage.ensure_unified(mount_path)

                async with self.storage.open(source) as local:
                    clients = [c for c in await local.fetch_credentials() if c.id in wanted]
                    servers = [s for s in await local.fetch_server_credentials() if s.id in wanted]

                async with self.storage.open(layout.unified) as target:
                    for client in clients:
                        await target.save_credential(client)
                    for server in servers:
                        await target.save_server_credential(server)
                    info = await target.get_storage_info()
            except _STORAGE_FAILURES as e:
                logger.error("Export failed", container_id=container_id, error=str(e))
                raise ExportFailedError(f"Export to {container_id} failed: {e}", cause=e) from e

            written = len(clients) + len(servers)
            found = {c.id for c in clients} | {s.id for s in servers}
            missing = wanted - found
            if missing:
                logger.warning(
                    "Requested credentials not in source",
                    container_id=container_id,
                    missing=sorted(missing),
                )

            self.cache.touch(container_id)
            self.cache.record_count(container_id, info.total)

        logger.info(
            "Exported credentials",
            container_id=container_id,
            client=len(clients),
            server=len(servers),
            count=written,
        )
        return written

    async def import_credentials(
        self,
        container_id: str,
        passphrase: Optional[str] = None,
        overwrite_existing: bool = False,
        destination: Optional[Path] = None,
    ) -> TransferResult:
        """
        Copy every credential in the container into ``destination`` (the
        local store by default).

        Reads the unified database when present, otherwise the legacy pair.
        Client records without a usable private key are skipped.

        Raises:
            NotFoundError: unknown container
            MountFailedError: the container could not be mounted
            ImportFailedError: the stores could not be read or written
        """
        destination = Path(destination) if destination is not None else self.local_path
        result = TransferResult()

        async with self._container_lock(container_id):
            mount_path = await self.provisioner.mount_container(container_id, passphrase)

            try:
                clients, servers, result.legacy_layout = await self.storage.read_container(mount_path)
                result.client_seen = len(clients)
                result.server_seen = len(servers)

                async with self.storage.open(destination) as local:
                    for client in clients:
                        if not has_usable_private_key(client):
                            logger.warning(
                                "Skipping credential without usable private key",
                                container_id=container_id,
                                credential_id=client.id,
                            )
                            result.skipped += 1
                            continue
                        if await local.get_credential(client.id) is not None and not overwrite_existing:
                            result.duplicates += 1
                            continue
                        await local.save_credential(client)
                        result.imported += 1

                    for server in servers:
                        if await local.get_server_credential(server.id) is not None and not overwrite_existing:
                            result.duplicates += 1
                            continue
                        await local.save_server_credential(server)
                        result.imported += 1
            except _STORAGE_FAILURES as e:
                logger.error("Import failed", container_id=container_id, error=str(e))
                raise ImportFailedError(f"Import from {container_id} failed: {e}", cause=e) from e

            self.cache.touch(container_id)
            self.cache.record_count(container_id, result.client_seen + result.server_seen)

        logger.info("Imported credentials", container_id=container_id, **result.to_dict())
        return result
