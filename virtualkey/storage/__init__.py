"""VirtualKey credential storage."""

from virtualkey.storage.base import CredentialStorage
from virtualkey.storage.factory import ContainerLayout, StorageFactory
from virtualkey.storage.keys import (
    generate_client_credential,
    has_usable_private_key,
    open_private_key,
    public_key_bytes,
    seal_private_key,
)
from virtualkey.storage.sqlite import SQLiteCredentialStorage

__all__ = [
    "ContainerLayout",
    "CredentialStorage",
    "SQLiteCredentialStorage",
    "StorageFactory",
    "generate_client_credential",
    "has_usable_private_key",
    "open_private_key",
    "public_key_bytes",
    "seal_private_key",
]
