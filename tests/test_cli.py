"""
VirtualKey CLI Tests
"""

import argparse
import io
import json
from unittest.mock import patch

import pytest

from virtualkey import cli
from virtualkey.core.config import reset_config
from virtualkey.main import build_services


@pytest.fixture
def config_file(tmp_path, config):
    path = tmp_path / "virtualkey.json"
    config.to_file(path)
    return path


@pytest.fixture
def run_cli(config_file, fake_utility, capsys):
    """Invoke ``main`` against the fake utility and decode its JSON output."""

    def run(*argv):
        with patch.object(cli, "build_services", lambda config: build_services(config, utility=fake_utility)):
            code = cli.main(["--config", str(config_file), *argv])
        out, err = capsys.readouterr()
        if code == 0:
            return code, json.loads(out)
        # Log lines may precede the error record on stderr.
        return code, json.loads(err.strip().splitlines()[-1])

    yield run
    reset_config()


class TestParser:
    """Tests for argument parsing."""

    def test_export_arguments(self):
        """Test export arguments."""
        args = cli.build_parser().parse_args(["export", "k1", "c1", "c2", "--passphrase-stdin"])
        assert args.command == "export"
        assert args.credential_ids == ["c1", "c2"]
        assert args.passphrase_stdin

    def test_passphrase_from_stdin(self):
        """Test passphrase from stdin."""
        args = argparse.Namespace(passphrase_stdin=True)
        with patch("sys.stdin", io.StringIO("hunter2\n")):
            assert cli._read_passphrase(args) == "hunter2"

    def test_no_passphrase_flag(self):
        """Test no passphrase flag."""
        assert cli._read_passphrase(argparse.Namespace()) is None

    def test_no_command_prints_help(self, capsys):
        """Test no command prints help."""
        assert cli.main([]) == 0
        assert "virtualkey" in capsys.readouterr().out


class TestCommands:
    """Tests for command handlers and the entry point."""

    @pytest.mark.asyncio
    async def test_create_records_descriptor(self, services):
        """Test create records descriptor."""
        args = argparse.Namespace(name="Work", size_mb=10, filesystem=None)
        created = await cli.cmd_create(services, args)

        async with services.storage.open(services.config.local_database_path) as local:
            descriptors = await local.fetch_containers()
        assert [d.id for d in descriptors] == [created["id"]]

        await cli.cmd_delete(services, argparse.Namespace(id=created["id"]))
        async with services.storage.open(services.config.local_database_path) as local:
            assert await local.fetch_containers() == []

    @pytest.mark.asyncio
    async def test_refresh(self, services):
        """Test refreshing a credential count."""
        container = await services.provisioner.create("Work")
        result = await cli.cmd_refresh(services, argparse.Namespace(id=container.id))
        assert result == {"id": container.id, "credential_count": 0}

    def test_main_create_and_list(self, run_cli):
        """Test main create and list."""
        code, created = run_cli("create", "Work", "--size-mb", "10")
        assert code == 0
        assert created["name"] == "Work"

        code, listed = run_cli("list")
        assert code == 0
        assert [c["name"] for c in listed] == ["Work"]

    def test_main_reports_errors(self, run_cli):
        """Test main reports errors."""
        code, error = run_cli("delete", "missing")
        assert code == 1
        assert error["error"] == "NotFoundError"
