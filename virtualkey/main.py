"""
VirtualKey Service Wiring

Builds the provisioner, metadata cache, storage factory, transfer engine
and diagnostics from one configuration and hands them out together.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Optional

import structlog

from virtualkey.cache import MetadataCache
from virtualkey.core.config import VirtualKeyConfig, get_config
from virtualkey.diagnostics import Diagnostics
from virtualkey.limiter import OperationLimiter
from virtualkey.provisioner.diskimage import DiskImageUtility
from virtualkey.provisioner.manager import ContainerProvisioner
from virtualkey.storage.factory import StorageFactory
from virtualkey.transfer import TransferEngine
from virtualkey.types import Container


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


@dataclass
class VirtualKeyServices:
    """Explicitly constructed services sharing one limiter and cache."""
    config: VirtualKeyConfig
    limiter: OperationLimiter
    storage: StorageFactory
    cache: MetadataCache
    utility: DiskImageUtility
    provisioner: ContainerProvisioner
    transfer: TransferEngine
    diagnostics: Diagnostics

    async def __aenter__(self) -> "VirtualKeyServices":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        self.config.ensure_directories()
        await self.provisioner.initialize()
        logger.info("VirtualKey services ready", keys_dir=str(self.config.keys_dir))

    async def shutdown(self) -> None:
        await self.provisioner.shutdown()
        logger.info("VirtualKey services stopped", limiter=self.limiter.get_stats())

    async def create_container(
        self,
        name: str,
        size_mb: Optional[int] = None,
        passphrase: Optional[str] = None,
        filesystem: Optional[str] = None,
    ) -> Container:
        """Create a container and record its descriptor in the local store."""
        container = await self.provisioner.create(name, size_mb, passphrase, filesystem)
        async with self.storage.open(self.config.local_database_path) as local:
            await local.save_container(container)
        return container

    async def delete_container(self, container_id: str, passphrase: Optional[str] = None) -> None:
        await self.provisioner.delete(container_id, passphrase)
        self.transfer.forget(container_id)
        async with self.storage.open(self.config.local_database_path) as local:
            await local.delete_container(container_id)


def build_services(
    config: Optional[VirtualKeyConfig] = None,
    utility: Optional[DiskImageUtility] = None,
) -> VirtualKeyServices:
    """Wire all services from ``config`` (the global configuration by default)."""
    config = config or get_config()

    limiter = OperationLimiter(config.storage.max_concurrent_operations)
    storage = StorageFactory(limiter, config.storage)
    cache = MetadataCache(
        config.keys_dir,
        filename=config.cache.filename,
        count_max_age=config.cache.count_max_age,
    )
    utility = utility or DiskImageUtility(
        utility_path=config.provisioner.utility_path,
        mount_parent=config.provisioner.mount_parent,
        mount_roots=config.provisioner.mount_roots,
        timeout=config.provisioner.command_timeout,
        encryption=config.provisioner.encryption,
    )
    provisioner = ContainerProvisioner(config.keys_dir, utility, storage, cache, config.provisioner)

    return VirtualKeyServices(
        config=config,
        limiter=limiter,
        storage=storage,
        cache=cache,
        utility=utility,
        provisioner=provisioner,
        transfer=TransferEngine(provisioner, storage, cache, config.local_database_path),
        diagnostics=Diagnostics(provisioner, storage, config.local_database_path),
    )
