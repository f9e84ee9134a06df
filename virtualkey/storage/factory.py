"""
VirtualKey Storage Factory

Constructs credential stores for the local database and for mounted
containers. Every construction passes through the operation limiter;
counting degrades to zero instead of raising.
"""

from __future__ import annotations

import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog

from virtualkey.core.config import StorageConfig
from virtualkey.errors import RateLimitedError, StorageInitFailedError, VirtualKeyError
from virtualkey.limiter import OperationLimiter
from virtualkey.storage.base import CredentialStorage
from virtualkey.storage.sqlite import SQLiteCredentialStorage
from virtualkey.types import ClientCredential, ServerCredential

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ContainerLayout:
    """Database file locations on a mounted volume."""
    mount_path: Path
    unified: Path
    legacy_client: Path
    legacy_server: Path

    @property
    def has_unified(self) -> bool:
        return self.unified.exists()

    @property
    def has_legacy(self) -> bool:
        return self.legacy_client.exists() or self.legacy_server.exists()

    def existing_files(self) -> list[Path]:
        return [p for p in (self.unified, self.legacy_client, self.legacy_server) if p.exists()]


class StorageFactory:
    """Limiter-gated store construction."""

    def __init__(
        self,
        limiter: OperationLimiter,
        config: Optional[StorageConfig] = None,
        backend_cls: type[SQLiteCredentialStorage] = SQLiteCredentialStorage,
    ):
        self.limiter = limiter
        self.config = config or StorageConfig()
        self.backend_cls = backend_cls

    def layout(self, mount_path: Path) -> ContainerLayout:
        mount_path = Path(mount_path)
        return ContainerLayout(
            mount_path=mount_path,
            unified=mount_path / self.config.unified_filename,
            legacy_client=mount_path / self.config.legacy_client_filename,
            legacy_server=mount_path / self.config.legacy_server_filename,
        )

    def create(self, db_path: Path) -> CredentialStorage:
        """Build an unopened store for ``db_path``."""
        return self.backend_cls(
            Path(db_path),
            database_name=self.config.database_name,
            busy_timeout_ms=self.config.busy_timeout_ms,
        )

    @asynccontextmanager
    async def open(self, db_path: Path) -> AsyncIterator[CredentialStorage]:
        """
        Open a store while holding a limiter slot.

        Raises:
            RateLimitedError: limiter at capacity
            StorageInitFailedError: the store could not be opened
        """
        with self.limiter.admit():
            storage = self.create(db_path)
            await storage.initialize()
            try:
                yield storage
            finally:
                await storage.close()

    async def count_credentials(self, mount_path: Path) -> int:
        """
        Client plus server records in a mounted container.

        Any failure, rate limiting included, counts as zero.
        """
        count = await self.try_count_credentials(mount_path)
        return count if count is not None else 0

    async def try_count_credentials(self, mount_path: Path) -> Optional[int]:
        """
        Like ``count_credentials`` but None when the count is unknown.

        Reads the unified database when present, otherwise sums the legacy
        pair.
        """
        layout = self.layout(mount_path)

        if layout.has_unified:
            return await self._count_file(layout.unified, client=True, server=True)

        total = 0
        for db_path, client in ((layout.legacy_client, True), (layout.legacy_server, False)):
            if not db_path.exists():
                continue
            count = await self._count_file(db_path, client=client, server=not client)
            if count is None:
                return None
            total += count
        return total

    async def _count_file(self, db_path: Path, client: bool, server: bool) -> Optional[int]:
        try:
            async with self.open(db_path) as storage:
                info = await storage.get_storage_info()
        except RateLimitedError:
            logger.warning("Credential count skipped, rate limited", path=str(db_path))
            return None
        except (VirtualKeyError, sqlite3.Error, OSError) as e:
            logger.warning("Credential count failed", path=str(db_path), error=str(e))
            return None

        count = 0
        if client:
            count += info.credential_count
        if server:
            count += info.server_credential_count
        return count

    async def ensure_unified(self, mount_path: Path) -> Path:
        """
        Create the unified database on a mounted volume.

        A volume that only has the legacy split layout has its client and
        server records copied into the new database. If that copy fails the
        partial unified file is removed so the legacy files stay
        authoritative.
        """
        layout = self.layout(mount_path)
        if layout.has_unified:
            return layout.unified

        migrate = layout.has_legacy
        clients: list[ClientCredential] = []
        servers: list[ServerCredential] = []
        try:
            if migrate:
                clients, servers, _ = await self.read_container(mount_path)
            async with self.open(layout.unified) as store:
                for client in clients:
                    await store.save_credential(client)
                for server in servers:
                    await store.save_server_credential(server)
        except (StorageInitFailedError, sqlite3.Error, OSError) as e:
            if migrate:
                layout.unified.unlink(missing_ok=True)
            if isinstance(e, StorageInitFailedError):
                raise
            raise StorageInitFailedError(
                f"Failed to create credential store at {layout.unified}: {e}", cause=e
            ) from e

        if migrate:
            logger.info(
                "Migrated legacy container layout",
                path=str(layout.unified),
                client=len(clients),
                server=len(servers),
            )
        else:
            logger.info("Initialized container credential store", path=str(layout.unified))
        return layout.unified

    async def read_container(
        self, mount_path: Path
    ) -> tuple[list[ClientCredential], list[ServerCredential], bool]:
        """
        Client and server records on a mounted volume, and whether they came
        from the legacy split layout.
        """
        layout = self.layout(mount_path)

        if layout.has_unified:
            async with self.open(layout.unified) as store:
                return await store.fetch_credentials(), await store.fetch_server_credentials(), False

        clients: list[ClientCredential] = []
        servers: list[ServerCredential] = []
        if not layout.has_legacy:
            logger.warning("Container has no credential store", mount_path=str(mount_path))
            return clients, servers, False

        logger.info("Reading legacy container layout", mount_path=str(mount_path))
        if layout.legacy_client.exists():
            async with self.open(layout.legacy_client) as store:
                clients = await store.fetch_credentials()
        if layout.legacy_server.exists():
            async with self.open(layout.legacy_server) as store:
                servers = await store.fetch_server_credentials()
        return clients, servers, True
