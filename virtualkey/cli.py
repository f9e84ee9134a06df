"""
VirtualKey Command Line Interface

Operator access to containers: create, mount, transfer, inspect.
Results are printed as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from virtualkey.core.config import VirtualKeyConfig, get_config, set_config
from virtualkey.errors import VirtualKeyError
from virtualkey.main import VirtualKeyServices, build_services, setup_logging


Handler = Callable[[VirtualKeyServices, argparse.Namespace], Awaitable[Any]]


def _add_passphrase(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--passphrase-stdin",
        action="store_true",
        help="Read the container passphrase from the first line of stdin",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="virtualkey",
        description="Manage virtual hardware keys holding WebAuthn credentials",
    )
    parser.add_argument("--config", type=Path, help="JSON configuration file")
    parser.add_argument("--keys-dir", type=Path, help="Managed container directory")
    parser.add_argument("--log-level", default=None, help="Log level")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("list", help="List containers")

    create_parser = subparsers.add_parser("create", help="Create a container")
    create_parser.add_argument("name", help="Container name")
    create_parser.add_argument("--size-mb", type=int, default=None, help="Image size in MB")
    create_parser.add_argument("--filesystem", default=None, help="Filesystem for the volume")
    _add_passphrase(create_parser)

    mount_parser = subparsers.add_parser("mount", help="Mount a container")
    mount_parser.add_argument("id", help="Container id")
    _add_passphrase(mount_parser)

    unmount_parser = subparsers.add_parser("unmount", help="Unmount a container")
    unmount_parser.add_argument("id", help="Container id")

    delete_parser = subparsers.add_parser("delete", help="Delete a container")
    delete_parser.add_argument("id", help="Container id")
    _add_passphrase(delete_parser)

    export_parser = subparsers.add_parser("export", help="Export local credentials to a container")
    export_parser.add_argument("id", help="Container id")
    export_parser.add_argument("credential_ids", nargs="+", help="Credential ids to export")
    _add_passphrase(export_parser)

    import_parser = subparsers.add_parser("import", help="Import credentials from a container")
    import_parser.add_argument("id", help="Container id")
    import_parser.add_argument("--overwrite", action="store_true", help="Replace existing records")
    _add_passphrase(import_parser)

    for name, help_text in (
        ("compare", "Compare local and container credentials"),
        ("analyze", "Report a container's files and records"),
        ("cleanup", "Remove legacy databases from a container"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("id", help="Container id")
        _add_passphrase(sub)

    refresh_parser = subparsers.add_parser("refresh", help="Recompute a container's credential count")
    refresh_parser.add_argument("id", help="Container id")

    return parser


def _read_passphrase(args: argparse.Namespace) -> Optional[str]:
    if not getattr(args, "passphrase_stdin", False):
        return None
    return sys.stdin.readline().rstrip("\r\n") or None


async def cmd_list(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    return [container.to_dict() for container in await services.provisioner.list()]


async def cmd_create(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    container = await services.create_container(
        args.name,
        size_mb=args.size_mb,
        passphrase=_read_passphrase(args),
        filesystem=args.filesystem,
    )
    return container.to_dict()


async def cmd_mount(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    mount_path = await services.provisioner.mount_container(args.id, _read_passphrase(args))
    return {"id": args.id, "mount_path": str(mount_path)}


async def cmd_unmount(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    container = await services.provisioner.get(args.id)
    # Mount records do not outlive the process; re-resolve the live mount first.
    mount_path = await services.provisioner.mount(container.path)
    await services.provisioner.unmount(mount_path)
    return {"id": args.id, "unmounted": str(mount_path)}


async def cmd_delete(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    await services.delete_container(args.id, _read_passphrase(args))
    return {"id": args.id, "deleted": True}


async def cmd_export(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    written = await services.transfer.export_credentials(
        args.id, args.credential_ids, passphrase=_read_passphrase(args)
    )
    return {"id": args.id, "exported": written}


async def cmd_import(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    result = await services.transfer.import_credentials(
        args.id, passphrase=_read_passphrase(args), overwrite_existing=args.overwrite
    )
    return {"id": args.id, **result.to_dict()}


async def cmd_compare(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    return await services.diagnostics.compare_container(args.id, _read_passphrase(args))


async def cmd_analyze(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    return await services.diagnostics.analyze(args.id, _read_passphrase(args))


async def cmd_cleanup(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    report = await services.diagnostics.cleanup_legacy(args.id, _read_passphrase(args))
    return {"id": args.id, **report.to_dict()}


async def cmd_refresh(services: VirtualKeyServices, args: argparse.Namespace) -> Any:
    count = await services.provisioner.count_credentials(args.id, refresh=True)
    return {"id": args.id, "credential_count": count}


COMMANDS: dict[str, Handler] = {
    "list": cmd_list,
    "create": cmd_create,
    "mount": cmd_mount,
    "unmount": cmd_unmount,
    "delete": cmd_delete,
    "export": cmd_export,
    "import": cmd_import,
    "compare": cmd_compare,
    "analyze": cmd_analyze,
    "cleanup": cmd_cleanup,
    "refresh": cmd_refresh,
}


def load_config(args: argparse.Namespace) -> VirtualKeyConfig:
    config = VirtualKeyConfig.from_file(args.config) if args.config else get_config()
    if args.keys_dir:
        config = config.model_copy(update={"keys_dir": args.keys_dir.expanduser()})
    if args.log_level:
        config = config.model_copy(update={"log_level": args.log_level.upper()})
    set_config(config)
    return config


async def run_command(config: VirtualKeyConfig, handler: Handler, args: argparse.Namespace) -> Any:
    services = build_services(config)
    config.ensure_directories()
    return await handler(services, args)


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = load_config(args)
    setup_logging(str(getattr(config.log_level, "value", config.log_level)), json_logs=config.json_logs)

    try:
        result = asyncio.run(run_command(config, COMMANDS[args.command], args))
    except (VirtualKeyError, ValueError) as e:
        print(json.dumps({"error": type(e).__name__, "message": str(e)}), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
