"""
VirtualKey Credential Storage Interface

The narrow save/fetch contract the transfer engine, metadata cache and
diagnostics depend on. Both the local store and every container's store
implement it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from virtualkey.types import ClientCredential, Container, ServerCredential, StorageInfo


class CredentialStorage(ABC):
    """Abstract embedded credential store."""

    async def __aenter__(self) -> "CredentialStorage":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def initialize(self) -> None:
        """Open the store, creating its schema if absent."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    # Client credentials

    @abstractmethod
    async def save_credential(self, credential: ClientCredential) -> None:
        """Insert or replace a client credential by id."""
        pass

    @abstractmethod
    async def fetch_credentials(self, rp_id: Optional[str] = None) -> list[ClientCredential]:
        """All client credentials, optionally only those for one relying party."""
        pass

    @abstractmethod
    async def get_credential(self, credential_id: str) -> Optional[ClientCredential]:
        pass

    @abstractmethod
    async def delete_credential(self, credential_id: str) -> bool:
        pass

    # Server credentials

    @abstractmethod
    async def save_server_credential(self, credential: ServerCredential) -> None:
        """Insert or replace a server credential by id."""
        pass

    @abstractmethod
    async def fetch_server_credentials(self) -> list[ServerCredential]:
        pass

    @abstractmethod
    async def get_server_credential(self, credential_id: str) -> Optional[ServerCredential]:
        pass

    @abstractmethod
    async def delete_server_credential(self, credential_id: str) -> bool:
        pass

    # Container descriptors

    @abstractmethod
    async def save_container(self, container: Container) -> None:
        pass

    @abstractmethod
    async def fetch_containers(self) -> list[Container]:
        pass

    @abstractmethod
    async def delete_container(self, container_id: str) -> bool:
        pass

    @abstractmethod
    async def get_storage_info(self) -> StorageInfo:
        pass
