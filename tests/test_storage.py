"""
VirtualKey Storage Tests

SQLite credential store, private key sealing and the storage factory.
"""

from datetime import datetime
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from virtualkey.core.config import StorageConfig
from virtualkey.errors import PrivateKeyReferenceError, RateLimitedError, StorageInitFailedError
from virtualkey.limiter import OperationLimiter
from virtualkey.storage import (
    SQLiteCredentialStorage,
    StorageFactory,
    generate_client_credential,
    has_usable_private_key,
    open_private_key,
    public_key_bytes,
    seal_private_key,
)
from virtualkey.types import Container


@pytest.fixture
async def store(tmp_path):
    async with SQLiteCredentialStorage(tmp_path / "WebAuthnClient.db") as store:
        yield store


@pytest.fixture
def factory():
    return StorageFactory(OperationLimiter(3), StorageConfig())


class TestSQLiteCredentialStorage:
    """Tests for the embedded credential store."""

    @pytest.mark.asyncio
    async def test_client_credential_round_trip(self, store):
        """Test client credential round trip."""
        credential, _ = generate_client_credential(
            "example.com", b"\x01\x02", user_display_name="Alice", credential_id="c1"
        )
        credential.sign_count = 5
        credential.last_used = datetime(2024, 3, 4, 5, 6, 7)
        await store.save_credential(credential)

        loaded = await store.get_credential("c1")
        assert loaded == credential

    @pytest.mark.asyncio
    async def test_server_credential_preserves_every_field(self, store, server_record):
        """Test server credential preserves every field."""
        record = server_record("s1")
        await store.save_server_credential(record)

        assert await store.get_server_credential("s1") == record
        assert await store.fetch_server_credentials() == [record]

    @pytest.mark.asyncio
    async def test_server_credential_optional_fields_none(self, store, server_record):
        """Test server credential optional fields none."""
        record = server_record(
            "s2", aaguid=None, emoji=None, last_login_ip=None,
            last_login_at=None, created_at=None, user_number=None,
        )
        await store.save_server_credential(record)
        assert await store.get_server_credential("s2") == record

    @pytest.mark.asyncio
    async def test_save_is_upsert(self, store, server_record):
        """Test save is upsert."""
        await store.save_server_credential(server_record("s1", sign_count=1))
        await store.save_server_credential(server_record("s1", sign_count=2))

        records = await store.fetch_server_credentials()
        assert len(records) == 1
        assert records[0].sign_count == 2

    @pytest.mark.asyncio
    async def test_fetch_by_relying_party(self, store):
        """Test fetch by relying party."""
        for rp_id, cred_id in [("a.example", "1"), ("b.example", "2"), ("a.example", "3")]:
            credential, _ = generate_client_credential(rp_id, b"u", credential_id=cred_id)
            await store.save_credential(credential)

        assert {c.id for c in await store.fetch_credentials("a.example")} == {"1", "3"}
        assert len(await store.fetch_credentials()) == 3

    @pytest.mark.asyncio
    async def test_delete(self, store, server_record):
        """Test delete."""
        credential, _ = generate_client_credential("example.com", b"u", credential_id="c1")
        await store.save_credential(credential)
        await store.save_server_credential(server_record("c1"))

        assert await store.delete_credential("c1")
        assert not await store.delete_credential("c1")
        assert await store.delete_server_credential("c1")
        assert await store.get_credential("c1") is None
        assert await store.get_server_credential("c1") is None

    @pytest.mark.asyncio
    async def test_storage_info(self, store, server_record):
        """Test storage info."""
        credential, _ = generate_client_credential("example.com", b"u")
        await store.save_credential(credential)
        await store.save_server_credential(server_record("s1"))
        await store.save_server_credential(server_record("s2"))

        now = datetime.now()
        await store.save_container(
            Container(id="k1", name="Work", path=Path("/keys/Work.dmg"), created_at=now, last_accessed_at=now)
        )

        info = await store.get_storage_info()
        assert info.credential_count == 1
        assert info.server_credential_count == 2
        assert info.container_count == 1
        assert info.total == 3

    @pytest.mark.asyncio
    async def test_container_descriptors(self, store):
        """Test container descriptors."""
        now = datetime(2024, 1, 1, 9, 0, 0)
        container = Container(
            id="k1", name="Work", path=Path("/keys/Work.dmg"),
            created_at=now, last_accessed_at=now, is_locked=True, credential_count=4,
        )
        await store.save_container(container)
        assert await store.fetch_containers() == [container]

        assert await store.delete_container("k1")
        assert await store.fetch_containers() == []

    @pytest.mark.asyncio
    async def test_operations_require_open_store(self, tmp_path):
        """Test operations require open store."""
        store = SQLiteCredentialStorage(tmp_path / "closed.db")
        with pytest.raises(StorageInitFailedError):
            await store.fetch_credentials()

    @pytest.mark.asyncio
    async def test_unopenable_path(self, tmp_path):
        """Test unopenable path."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StorageInitFailedError):
            await SQLiteCredentialStorage(blocker / "sub" / "db.sqlite").initialize()


class TestPrivateKeySealing:
    """Tests for private key references."""

    def test_seal_open_round_trip(self):
        """Test seal open round trip."""
        key = ec.generate_private_key(ec.SECP256R1())
        reference = seal_private_key(key, "cred-1")

        opened = open_private_key(reference, "cred-1")
        assert opened.private_numbers().private_value == key.private_numbers().private_value

    def test_reference_bound_to_credential_id(self):
        """Test reference bound to credential id."""
        reference = seal_private_key(ec.generate_private_key(ec.SECP256R1()), "cred-1")
        with pytest.raises(PrivateKeyReferenceError):
            open_private_key(reference, "cred-2")

    @pytest.mark.parametrize("reference", ["not base64!", "", "AAAA"])
    def test_malformed_reference(self, reference):
        """Test malformed reference."""
        with pytest.raises(PrivateKeyReferenceError):
            open_private_key(reference, "cred-1")

    def test_generated_credential(self):
        """Test generated credential."""
        credential, key = generate_client_credential("example.com", b"user", "Alice")

        assert credential.public_key == public_key_bytes(key)
        assert len(credential.public_key) == 65
        assert credential.is_resident
        assert has_usable_private_key(credential)

    def test_unusable_private_key(self):
        """Test unusable private key."""
        credential, _ = generate_client_credential("example.com", b"user")
        credential.private_key_ref = None
        assert not has_usable_private_key(credential)
        credential.private_key_ref = "garbage"
        assert not has_usable_private_key(credential)


class TestStorageFactory:
    """Tests for limiter-gated store construction."""

    @pytest.mark.asyncio
    async def test_open_holds_slot(self, factory, tmp_path):
        """Test open holds slot."""
        async with factory.open(tmp_path / "db.sqlite"):
            assert factory.limiter.in_flight == 1
        assert factory.limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_open_rate_limited(self, tmp_path):
        """Test open rate limited."""
        factory = StorageFactory(OperationLimiter(1), StorageConfig())
        async with factory.open(tmp_path / "a.db"):
            with pytest.raises(RateLimitedError):
                async with factory.open(tmp_path / "b.db"):
                    pass

    @pytest.mark.asyncio
    async def test_count_unified(self, factory, tmp_path, server_record):
        """Test count unified."""
        async with factory.open(factory.layout(tmp_path).unified) as store:
            credential, _ = generate_client_credential("example.com", b"u")
            await store.save_credential(credential)
            await store.save_server_credential(server_record("s1"))

        assert await factory.count_credentials(tmp_path) == 2

    @pytest.mark.asyncio
    async def test_count_legacy_layout(self, factory, tmp_path, server_record):
        """Test count legacy layout."""
        layout = factory.layout(tmp_path)
        async with factory.open(layout.legacy_client) as store:
            credential, _ = generate_client_credential("example.com", b"u")
            await store.save_credential(credential)
        async with factory.open(layout.legacy_server) as store:
            await store.save_server_credential(server_record("s1"))
            await store.save_server_credential(server_record("s2"))

        assert not layout.has_unified
        assert layout.has_legacy
        assert await factory.count_credentials(tmp_path) == 3

    @pytest.mark.asyncio
    async def test_count_empty_volume(self, factory, tmp_path):
        """Test count empty volume."""
        assert await factory.count_credentials(tmp_path) == 0

    @pytest.mark.asyncio
    async def test_read_container_prefers_unified(self, factory, tmp_path, server_record):
        """Test read container prefers unified."""
        layout = factory.layout(tmp_path)
        async with factory.open(layout.legacy_server) as store:
            await store.save_server_credential(server_record("legacy"))
        async with factory.open(layout.unified) as store:
            await store.save_server_credential(server_record("unified"))

        clients, servers, legacy = await factory.read_container(tmp_path)
        assert clients == []
        assert [s.id for s in servers] == ["unified"]
        assert legacy is False

    @pytest.mark.asyncio
    async def test_ensure_unified(self, factory, tmp_path):
        """Test creating the unified database on an empty volume."""
        path = await factory.ensure_unified(tmp_path)
        assert path == tmp_path / "WebAuthnClient.db"
        assert path.exists()
        assert await factory.count_credentials(tmp_path) == 0

    @pytest.mark.asyncio
    async def test_ensure_unified_migrates_legacy_records(self, factory, tmp_path, server_record):
        """Test that legacy records are copied into a newly created unified database."""
        layout = factory.layout(tmp_path)
        async with factory.open(layout.legacy_client) as store:
            credential, _ = generate_client_credential("example.com", b"u", credential_id="c1")
            await store.save_credential(credential)
        async with factory.open(layout.legacy_server) as store:
            await store.save_server_credential(server_record("s1"))

        await factory.ensure_unified(tmp_path)

        clients, servers, legacy = await factory.read_container(tmp_path)
        assert legacy is False
        assert clients == [credential]
        assert servers == [server_record("s1")]
        assert await factory.count_credentials(tmp_path) == 2

    @pytest.mark.asyncio
    async def test_failed_migration_leaves_legacy_authoritative(self, tmp_path, server_record):
        """Test that a migration which cannot read the legacy files creates no unified database."""
        factory = StorageFactory(OperationLimiter(1), StorageConfig())
        layout = factory.layout(tmp_path)
        async with factory.open(layout.legacy_server) as store:
            await store.save_server_credential(server_record("s1"))

        assert factory.limiter.acquire()
        with pytest.raises(RateLimitedError):
            await factory.ensure_unified(tmp_path)
        factory.limiter.release()

        assert not layout.has_unified
        assert await factory.count_credentials(tmp_path) == 1
