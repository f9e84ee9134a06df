"""
VirtualKey SQLite Credential Storage

Embedded store backing both the local credential database and the
database inside each mounted container:
- Single aiosqlite connection per store
- Upsert semantics keyed on credential id
- Rollback-journal mode so a container stays a single file on its volume
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from virtualkey.errors import StorageInitFailedError
from virtualkey.storage.base import CredentialStorage
from virtualkey.types import ClientCredential, Container, ServerCredential, StorageInfo

logger = structlog.get_logger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS credentials (
    id TEXT PRIMARY KEY,
    rp_id TEXT NOT NULL,
    user_handle BLOB NOT NULL,
    public_key BLOB NOT NULL,
    private_key_ref TEXT,
    created_at TEXT NOT NULL,
    last_used TEXT,
    sign_count INTEGER NOT NULL DEFAULT 0,
    is_resident INTEGER NOT NULL DEFAULT 0,
    user_display_name TEXT,
    credential_type TEXT NOT NULL DEFAULT 'public-key'
);

CREATE INDEX IF NOT EXISTS idx_credentials_rp_id ON credentials(rp_id);

CREATE TABLE IF NOT EXISTS server_credentials (
    id TEXT PRIMARY KEY,
    public_key_jwk TEXT NOT NULL,
    username TEXT NOT NULL,
    sign_count INTEGER NOT NULL DEFAULT 0,
    algorithm INTEGER NOT NULL DEFAULT -7,
    protocol_version TEXT NOT NULL,
    attestation_format TEXT NOT NULL,
    aaguid BLOB,
    is_discoverable INTEGER NOT NULL DEFAULT 0,
    backup_eligible INTEGER NOT NULL DEFAULT 0,
    backup_state INTEGER NOT NULL DEFAULT 0,
    emoji TEXT,
    last_login_ip TEXT,
    last_login_at TEXT,
    created_at TEXT,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    is_admin INTEGER NOT NULL DEFAULT 0,
    user_number INTEGER,
    rp_id TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_server_credentials_username ON server_credentials(username);

CREATE TABLE IF NOT EXISTS virtual_keys (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_accessed_at TEXT NOT NULL,
    is_locked INTEGER NOT NULL DEFAULT 0,
    credential_count INTEGER NOT NULL DEFAULT 0
);
"""


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteCredentialStorage(CredentialStorage):
    """
    aiosqlite-backed credential store.

    Usage:
        async with SQLiteCredentialStorage(path) as store:
            await store.save_credential(credential)
    """

    def __init__(
        self,
        path: Path,
        database_name: str = "WebAuthnClient",
        busy_timeout_ms: int = 5000,
    ):
        self.path = Path(path)
        self.database_name = database_name
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: Optional[aiosqlite.Connection] = None

    @staticmethod
    def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
        """Convert row to dictionary."""
        return {
            col[0]: row[idx]
            for idx, col in enumerate(cursor.description)
        }

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        if self._conn is not None:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(
                str(self.path),
                timeout=self.busy_timeout_ms / 1000,
            )
        except (OSError, sqlite3.Error) as e:
            raise StorageInitFailedError(
                f"Failed to open {self.database_name} store at {self.path}: {e}", cause=e
            ) from e

        try:
            for pragma in (
                "PRAGMA journal_mode = DELETE",
                "PRAGMA synchronous = FULL",
                f"PRAGMA busy_timeout = {self.busy_timeout_ms}",
            ):
                await conn.execute(pragma)
            await conn.executescript(SCHEMA)
            await conn.commit()
        except sqlite3.Error as e:
            await conn.close()
            raise StorageInitFailedError(
                f"Failed to initialize {self.database_name} schema at {self.path}: {e}", cause=e
            ) from e

        conn.row_factory = self._dict_factory
        self._conn = conn
        logger.debug("Opened credential store", path=str(self.path), database=self.database_name)

    async def close(self) -> None:
        if self._conn is None:
            return
        try:
            await self._conn.close()
        finally:
            self._conn = None
        logger.debug("Closed credential store", path=str(self.path))

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageInitFailedError(f"Credential store at {self.path} is not open")
        return self._conn

    async def _fetch_all(self, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        cursor = await self._require().execute(query, params)
        return list(await cursor.fetchall())

    async def _fetch_one(self, query: str, params: tuple = ()) -> Optional[dict[str, Any]]:
        cursor = await self._require().execute(query, params)
        return await cursor.fetchone()

    async def _write(self, query: str, params: tuple) -> int:
        conn = self._require()
        cursor = await conn.execute(query, params)
        await conn.commit()
        return cursor.rowcount

    async def _count(self, table: str) -> int:
        row = await self._fetch_one(f"SELECT COUNT(*) AS n FROM {table}")
        return int(row["n"]) if row else 0

    # Client credentials

    @staticmethod
    def _row_to_credential(row: dict[str, Any]) -> ClientCredential:
        return ClientCredential(
            id=row["id"],
            rp_id=row["rp_id"],
            user_handle=bytes(row["user_handle"]),
            public_key=bytes(row["public_key"]),
            private_key_ref=row["private_key_ref"],
            created_at=_from_iso(row["created_at"]) or datetime.now(),
            last_used=_from_iso(row["last_used"]),
            sign_count=row["sign_count"],
            is_resident=bool(row["is_resident"]),
            user_display_name=row["user_display_name"],
            credential_type=row["credential_type"],
        )

    async def save_credential(self, credential: ClientCredential) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO credentials
            (id, rp_id, user_handle, public_key, private_key_ref, created_at,
             last_used, sign_count, is_resident, user_display_name, credential_type)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                credential.id,
                credential.rp_id,
                credential.user_handle,
                credential.public_key,
                credential.private_key_ref,
                _to_iso(credential.created_at),
                _to_iso(credential.last_used),
                credential.sign_count,
                int(credential.is_resident),
                credential.user_display_name,
                credential.credential_type,
            ),
        )

    async def fetch_credentials(self, rp_id: Optional[str] = None) -> list[ClientCredential]:
        if rp_id is None:
            rows = await self._fetch_all("SELECT * FROM credentials ORDER BY created_at")
        else:
            rows = await self._fetch_all(
                "SELECT * FROM credentials WHERE rp_id = ? ORDER BY created_at", (rp_id,)
            )
        return [self._row_to_credential(row) for row in rows]

    async def get_credential(self, credential_id: str) -> Optional[ClientCredential]:
        row = await self._fetch_one("SELECT * FROM credentials WHERE id = ?", (credential_id,))
        return self._row_to_credential(row) if row else None

    async def delete_credential(self, credential_id: str) -> bool:
        return await self._write("DELETE FROM credentials WHERE id = ?", (credential_id,)) > 0

    # Server credentials

    @staticmethod
    def _row_to_server_credential(row: dict[str, Any]) -> ServerCredential:
        aaguid = row["aaguid"]
        return ServerCredential(
            id=row["id"],
            public_key_jwk=row["public_key_jwk"],
            username=row["username"],
            sign_count=row["sign_count"],
            algorithm=row["algorithm"],
            protocol_version=row["protocol_version"],
            attestation_format=row["attestation_format"],
            aaguid=bytes(aaguid) if aaguid is not None else None,
            is_discoverable=bool(row["is_discoverable"]),
            backup_eligible=bool(row["backup_eligible"]),
            backup_state=bool(row["backup_state"]),
            emoji=row["emoji"],
            last_login_ip=row["last_login_ip"],
            last_login_at=_from_iso(row["last_login_at"]),
            created_at=_from_iso(row["created_at"]),
            is_enabled=bool(row["is_enabled"]),
            is_admin=bool(row["is_admin"]),
            user_number=row["user_number"],
            rp_id=row["rp_id"],
        )

    async def save_server_credential(self, credential: ServerCredential) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO server_credentials
            (id, public_key_jwk, username, sign_count, algorithm, protocol_version,
             attestation_format, aaguid, is_discoverable, backup_eligible, backup_state,
             emoji, last_login_ip, last_login_at, created_at, is_enabled, is_admin,
             user_number, rp_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                credential.id,
                credential.public_key_jwk,
                credential.username,
                credential.sign_count,
                credential.algorithm,
                credential.protocol_version,
                credential.attestation_format,
                credential.aaguid,
                int(credential.is_discoverable),
                int(credential.backup_eligible),
                int(credential.backup_state),
                credential.emoji,
                credential.last_login_ip,
                _to_iso(credential.last_login_at),
                _to_iso(credential.created_at),
                int(credential.is_enabled),
                int(credential.is_admin),
                credential.user_number,
                credential.rp_id,
            ),
        )

    async def fetch_server_credentials(self) -> list[ServerCredential]:
        rows = await self._fetch_all("SELECT * FROM server_credentials ORDER BY rowid")
        return [self._row_to_server_credential(row) for row in rows]

    async def get_server_credential(self, credential_id: str) -> Optional[ServerCredential]:
        row = await self._fetch_one(
            "SELECT * FROM server_credentials WHERE id = ?", (credential_id,)
        )
        return self._row_to_server_credential(row) if row else None

    async def delete_server_credential(self, credential_id: str) -> bool:
        return await self._write(
            "DELETE FROM server_credentials WHERE id = ?", (credential_id,)
        ) > 0

    # Container descriptors

    async def save_container(self, container: Container) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO virtual_keys
            (id, name, path, created_at, last_accessed_at, is_locked, credential_count)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                container.id,
                container.name,
                str(container.path),
                _to_iso(container.created_at),
                _to_iso(container.last_accessed_at),
                int(container.is_locked),
                container.credential_count,
            ),
        )

    async def fetch_containers(self) -> list[Container]:
        rows = await self._fetch_all("SELECT * FROM virtual_keys ORDER BY created_at")
        return [
            Container(
                id=row["id"],
                name=row["name"],
                path=Path(row["path"]),
                created_at=_from_iso(row["created_at"]) or datetime.now(),
                last_accessed_at=_from_iso(row["last_accessed_at"]) or datetime.now(),
                is_locked=bool(row["is_locked"]),
                credential_count=row["credential_count"],
            )
            for row in rows
        ]

    async def delete_container(self, container_id: str) -> bool:
        return await self._write("DELETE FROM virtual_keys WHERE id = ?", (container_id,)) > 0

    async def get_storage_info(self) -> StorageInfo:
        return StorageInfo(
            credential_count=await self._count("credentials"),
            server_credential_count=await self._count("server_credentials"),
            container_count=await self._count("virtual_keys"),
        )
