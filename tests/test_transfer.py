"""
VirtualKey Transfer Tests

Export to and import from containers backed by the fake disk-image utility.
"""

import asyncio

import pytest

from virtualkey.errors import MountFailedError, NotFoundError
from virtualkey.storage.keys import generate_client_credential
from virtualkey.storage.sqlite import SQLiteCredentialStorage


async def seed_local(services, client_ids=(), server_records=()):
    """Write client credentials and server records to the local store."""
    clients = []
    async with services.storage.open(services.config.local_database_path) as local:
        for cred_id in client_ids:
            credential, _ = generate_client_credential(
                "example.com", cred_id.encode(), user_display_name=cred_id, credential_id=cred_id
            )
            await local.save_credential(credential)
            clients.append(credential)
        for record in server_records:
            await local.save_server_credential(record)
    return clients


async def read_store(services, path):
    async with services.storage.open(path) as store:
        return await store.fetch_credentials(), await store.fetch_server_credentials()


class TestExport:
    """Tests for copying local credentials into a container."""

    @pytest.mark.asyncio
    async def test_single_credential_round_trip(self, services, tmp_path):
        """Test single credential round trip."""
        [c1] = await seed_local(services, ["c1"])
        container = await services.create_container("A", size_mb=10)

        written = await services.transfer.export_credentials(container.id, ["c1"])
        assert written == 1

        [listed] = await services.provisioner.list()
        assert listed.name == "A"
        assert listed.credential_count == 1

        fresh = tmp_path / "fresh" / "WebAuthnClient.db"
        result = await services.transfer.import_credentials(container.id, destination=fresh)
        assert result.imported == 1

        clients, servers = await read_store(services, fresh)
        assert clients == [c1]
        assert servers == []

    @pytest.mark.asyncio
    async def test_exports_only_requested_ids(self, services, server_record):
        """Test exports only requested ids."""
        await seed_local(services, ["c1", "c2"], [server_record("s1"), server_record("s2")])
        container = await services.provisioner.create("A")

        written = await services.transfer.export_credentials(container.id, ["c2", "s1", "missing"])
        assert written == 2

        mount_path = services.provisioner.mount_path_for(container.id)
        clients, servers = await read_store(services, mount_path / "WebAuthnClient.db")
        assert [c.id for c in clients] == ["c2"]
        assert [s.id for s in servers] == ["s1"]

    @pytest.mark.asyncio
    async def test_export_creates_missing_store(self, services):
        """Test export creates missing store."""
        await seed_local(services, ["c1"])
        container = await services.provisioner.create("A")
        mount_path = services.provisioner.mount_path_for(container.id)
        (mount_path / "WebAuthnClient.db").unlink()

        assert await services.transfer.export_credentials(container.id, ["c1"]) == 1
        assert (mount_path / "WebAuthnClient.db").exists()

    @pytest.mark.asyncio
    async def test_export_remounts_after_unmount(self, services, fake_utility):
        """Test export remounts after unmount."""
        await seed_local(services, ["c1"])
        container = await services.provisioner.create("A")
        await services.provisioner.unmount_container(container.id)

        assert await services.transfer.export_credentials(container.id, ["c1"]) == 1
        assert fake_utility.calls["attach"] == 2

    @pytest.mark.asyncio
    async def test_export_encrypted_needs_passphrase(self, services):
        """Test export encrypted needs passphrase."""
        await seed_local(services, ["c1"])
        container = await services.provisioner.create("Secret", passphrase="pw")
        await services.provisioner.unmount_container(container.id)

        with pytest.raises(MountFailedError):
            await services.transfer.export_credentials(container.id, ["c1"])
        assert await services.transfer.export_credentials(container.id, ["c1"], passphrase="pw") == 1

    @pytest.mark.asyncio
    async def test_export_into_legacy_layout_keeps_legacy_records(self, services, server_record, tmp_path):
        """Test that exporting to a legacy container merges rather than hides its records."""
        await seed_local(services, ["new1"])
        container = await services.provisioner.create("A")
        mount_path = services.provisioner.mount_path_for(container.id)
        layout = services.storage.layout(mount_path)
        layout.unified.unlink()

        async with services.storage.open(layout.legacy_client) as store:
            legacy, _ = generate_client_credential("example.com", b"u", credential_id="legacy1")
            await store.save_credential(legacy)
        async with services.storage.open(layout.legacy_server) as store:
            await store.save_server_credential(server_record("legacy-s1"))

        assert await services.transfer.export_credentials(container.id, ["new1"]) == 1
        assert services.cache.get(container.id).credential_count == 3

        report = await services.diagnostics.cleanup_legacy(container.id)
        assert "VirtualKeyCredentials.db" in report.files_removed

        fresh = tmp_path / "fresh.db"
        result = await services.transfer.import_credentials(container.id, destination=fresh)
        assert not result.legacy_layout
        assert result.client_seen == 2
        assert result.server_seen == 1

        clients, servers = await read_store(services, fresh)
        assert sorted(c.id for c in clients) == ["legacy1", "new1"]
        assert [s.id for s in servers] == ["legacy-s1"]

    @pytest.mark.asyncio
    async def test_export_unknown_container(self, services):
        """Test export unknown container."""
        with pytest.raises(NotFoundError):
            await services.transfer.export_credentials("missing", ["c1"])


class TestImport:
    """Tests for copying container credentials into the local store."""

    @pytest.mark.asyncio
    async def test_server_records_survive_round_trip(self, services, server_record, tmp_path):
        """Test server records survive round trip."""
        records = [server_record("s1"), server_record("s2", aaguid=None, emoji=None)]
        await seed_local(services, [], records)
        container = await services.provisioner.create("A")
        await services.transfer.export_credentials(container.id, ["s1", "s2"])

        fresh = tmp_path / "fresh.db"
        await services.transfer.import_credentials(container.id, destination=fresh)

        _, servers = await read_store(services, fresh)
        assert sorted(servers, key=lambda s: s.id) == records

    @pytest.mark.asyncio
    async def test_import_is_idempotent(self, services, server_record, tmp_path):
        """Test import is idempotent."""
        await seed_local(services, ["c1", "c2"], [server_record("s1")])
        container = await services.provisioner.create("A")
        await services.transfer.export_credentials(container.id, ["c1", "c2", "s1"])

        fresh = tmp_path / "fresh.db"
        first = await services.transfer.import_credentials(container.id, destination=fresh)
        second = await services.transfer.import_credentials(container.id, destination=fresh)

        assert first.imported == 3
        assert first.duplicates == 0
        assert second.imported == 0
        assert second.duplicates == 3

        clients, servers = await read_store(services, fresh)
        assert len(clients) == 2
        assert len(servers) == 1

    @pytest.mark.asyncio
    async def test_overwrite_existing(self, services, tmp_path):
        """Test overwrite existing."""
        await seed_local(services, ["c1"])
        container = await services.provisioner.create("A")
        await services.transfer.export_credentials(container.id, ["c1"])

        fresh = tmp_path / "fresh.db"
        async with services.storage.open(fresh) as store:
            stale, _ = generate_client_credential("old.example", b"old", credential_id="c1")
            await store.save_credential(stale)

        kept = await services.transfer.import_credentials(container.id, destination=fresh)
        assert kept.duplicates == 1
        clients, _ = await read_store(services, fresh)
        assert clients[0].rp_id == "old.example"

        replaced = await services.transfer.import_credentials(
            container.id, overwrite_existing=True, destination=fresh
        )
        assert replaced.imported == 1
        assert replaced.duplicates == 0
        clients, _ = await read_store(services, fresh)
        assert clients[0].rp_id == "example.com"

    @pytest.mark.asyncio
    async def test_skips_credentials_without_private_key(self, services, tmp_path):
        """Test skips credentials without private key."""
        container = await services.provisioner.create("A")
        mount_path = services.provisioner.mount_path_for(container.id)

        async with services.storage.open(mount_path / "WebAuthnClient.db") as store:
            good, _ = generate_client_credential("example.com", b"u", credential_id="good")
            broken, _ = generate_client_credential("example.com", b"u", credential_id="broken")
            broken.private_key_ref = None
            await store.save_credential(good)
            await store.save_credential(broken)

        fresh = tmp_path / "fresh.db"
        result = await services.transfer.import_credentials(container.id, destination=fresh)

        assert result.imported == 1
        assert result.skipped == 1
        assert result.client_seen == 2
        clients, _ = await read_store(services, fresh)
        assert [c.id for c in clients] == ["good"]

    @pytest.mark.asyncio
    async def test_reads_legacy_layout(self, services, server_record, tmp_path):
        """Test reads legacy layout."""
        container = await services.provisioner.create("A")
        mount_path = services.provisioner.mount_path_for(container.id)
        layout = services.storage.layout(mount_path)
        layout.unified.unlink()

        async with services.storage.open(layout.legacy_client) as store:
            credential, _ = generate_client_credential("example.com", b"u", credential_id="c1")
            await store.save_credential(credential)
        async with services.storage.open(layout.legacy_server) as store:
            await store.save_server_credential(server_record("s1"))

        fresh = tmp_path / "fresh.db"
        result = await services.transfer.import_credentials(container.id, destination=fresh)

        assert result.legacy_layout
        assert result.imported == 2
        clients, servers = await read_store(services, fresh)
        assert [c.id for c in clients] == ["c1"]
        assert [s.id for s in servers] == ["s1"]

    @pytest.mark.asyncio
    async def test_import_updates_cached_count(self, services):
        """Test import updates cached count."""
        await seed_local(services, ["c1", "c2"])
        container = await services.provisioner.create("A")
        await services.transfer.export_credentials(container.id, ["c1", "c2"])
        services.cache.invalidate(container.id)

        await services.transfer.import_credentials(container.id)

        assert services.cache.is_count_fresh(container.id)
        assert services.cache.get(container.id).credential_count == 2


def recording_backend(gate: asyncio.Event, opened: list) -> type:
    """Store class that records each open and blocks until ``gate`` is set."""

    class RecordingStorage(SQLiteCredentialStorage):
        async def initialize(self) -> None:
            opened.append(self.path.name)
            await gate.wait()
            await super().initialize()

    return RecordingStorage


class TestConcurrentTransfers:
    """Operations on one container are serialized."""

    @pytest.mark.asyncio
    async def test_concurrent_first_exports_are_serialized(self, services, tmp_path):
        """Test that two first-time exports do not both create the container store."""
        await seed_local(services, ["c1", "c2"])
        container = await services.provisioner.create("A")
        mount_path = services.provisioner.mount_path_for(container.id)
        (mount_path / "WebAuthnClient.db").unlink()

        gate = asyncio.Event()
        opened: list = []
        services.storage.backend_cls = recording_backend(gate, opened)

        first = asyncio.create_task(services.transfer.export_credentials(container.id, ["c1"]))
        second = asyncio.create_task(services.transfer.export_credentials(container.id, ["c2"]))
        for _ in range(5):
            await asyncio.sleep(0)

        assert opened == ["WebAuthnClient.db"]
        assert services.limiter.in_flight == 1

        gate.set()
        assert await asyncio.gather(first, second) == [1, 1]

        clients, _ = await read_store(services, mount_path / "WebAuthnClient.db")
        assert sorted(c.id for c in clients) == ["c1", "c2"]
        assert services.cache.get(container.id).credential_count == 2

    @pytest.mark.asyncio
    async def test_import_waits_for_running_export(self, services, tmp_path):
        """Test that an import queued behind an export sees the exported records."""
        await seed_local(services, ["c1"])
        container = await services.provisioner.create("A")

        gate = asyncio.Event()
        services.storage.backend_cls = recording_backend(gate, [])

        export = asyncio.create_task(services.transfer.export_credentials(container.id, ["c1"]))
        fresh = tmp_path / "fresh.db"
        imported = asyncio.create_task(
            services.transfer.import_credentials(container.id, destination=fresh)
        )
        for _ in range(5):
            await asyncio.sleep(0)
        gate.set()

        _, result = await asyncio.gather(export, imported)
        assert result.imported == 1
        assert result.client_seen == 1

    @pytest.mark.asyncio
    async def test_delete_drops_container_lock(self, services):
        """Test that deleting a container releases its serialization lock."""
        await seed_local(services, ["c1"])
        container = await services.create_container("A")
        await services.transfer.export_credentials(container.id, ["c1"])
        assert container.id in services.transfer._locks

        await services.delete_container(container.id)
        assert container.id not in services.transfer._locks
