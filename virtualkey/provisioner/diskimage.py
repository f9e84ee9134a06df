"""
VirtualKey Disk Image Utility

Async wrapper around the system disk-image tool (hdiutil). Every call is
a child process with a bounded timeout; passphrases travel on stdin and
never appear in the argument list.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import structlog

from virtualkey.errors import (
    CreationFailedError,
    MountFailedError,
    UnmountFailedError,
    UtilityError,
)

logger = structlog.get_logger(__name__)


ENCRYPTION_MARKERS = ("AES-128", "AES-256", "encrypted")

CREATION_HINTS = {
    "Device not configured": "The disk image subsystem is unavailable; check that the process may create disk images.",
    "Permission denied": "The keys directory is not writable by this user.",
    "No space left": "Not enough free disk space for the requested image size.",
}


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def parse_mount_point(output: str, roots: Sequence[str]) -> Optional[Path]:
    """First whitespace-separated token of ``output`` under one of ``roots``."""
    for line in output.splitlines():
        for token in line.split():
            if any(token.startswith(root) for root in roots):
                return Path(token)
    return None


def creation_hint(stderr: str) -> Optional[str]:
    for marker, hint in CREATION_HINTS.items():
        if marker in stderr:
            return hint
    return None


class DiskImageUtility:
    """
    hdiutil invoked as a child process.

    Usage:
        utility = DiskImageUtility(timeout=30.0)
        await utility.create(path, "WorkKey", size_mb=50)
        mount_point = await utility.attach(path)
    """

    def __init__(
        self,
        utility_path: str = "/usr/bin/hdiutil",
        mount_parent: str = "/tmp",
        mount_roots: Sequence[str] = ("/private/tmp/", "/tmp/"),
        timeout: float = 60.0,
        encryption: str = "AES-256",
    ):
        self.utility_path = utility_path
        self.mount_parent = mount_parent
        self.mount_roots = tuple(mount_roots)
        self.timeout = timeout
        self.encryption = encryption

    async def run(self, *args: str, stdin: Optional[str] = None) -> CommandResult:
        """
        Run the utility with ``args`` and wait up to ``timeout`` seconds.

        Raises:
            UtilityError: the process could not be started or timed out
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.utility_path,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise UtilityError(f"Failed to start {self.utility_path}: {e}", cause=e) from e

        payload = stdin.encode("utf-8") if stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=payload), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning("Disk image utility timed out, killing", command=args[0], timeout=self.timeout)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise UtilityError(
                f"{self.utility_path} {args[0]} timed out after {self.timeout}s",
                timed_out=True,
                cause=e,
            ) from e

        return CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def create(
        self,
        image_path: Path,
        volume_name: str,
        size_mb: int = 50,
        filesystem: str = "HFS+",
        passphrase: Optional[str] = None,
    ) -> None:
        args = [
            "create",
            "-size", f"{size_mb}m",
            "-fs", filesystem,
            "-volname", volume_name,
            "-type", "UDIF",
        ]
        if passphrase:
            args += ["-encryption", self.encryption, "-stdinpass"]
        args.append(str(image_path))

        try:
            result = await self.run(*args, stdin=passphrase if passphrase else None)
        except UtilityError as e:
            raise CreationFailedError(
                f"Disk image creation failed: {e}", timed_out=e.timed_out, cause=e
            ) from e

        if result.returncode != 0:
            message = f"Disk image creation failed: {result.stderr.strip() or 'unknown error'}"
            hint = creation_hint(result.stderr)
            if hint:
                message = f"{message}. {hint}"
            raise CreationFailedError(message, returncode=result.returncode, stderr=result.stderr)

        logger.info("Created disk image", path=str(image_path), size_mb=size_mb, encrypted=bool(passphrase))

    async def attach(self, image_path: Path, passphrase: Optional[str] = None) -> Path:
        """Attach the image under a random mount point and return that path."""
        args = ["attach", "-nobrowse", "-mountrandom", self.mount_parent]
        if passphrase:
            args.append("-stdinpass")
        args.append(str(image_path))

        try:
            result = await self.run(*args, stdin=passphrase if passphrase else None)
        except UtilityError as e:
            raise MountFailedError(
                f"Failed to mount {image_path.name}: {e}", timed_out=e.timed_out, cause=e
            ) from e

        if result.returncode != 0:
            raise MountFailedError(
                f"Failed to mount {image_path.name}: {result.stderr.strip() or 'unknown error'}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        mount_point = parse_mount_point(result.stdout, self.mount_roots)
        if mount_point is None:
            raise MountFailedError(
                f"Mounted {image_path.name} but no mount point was reported",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        logger.debug("Attached disk image", path=str(image_path), mount_point=str(mount_point))
        return mount_point

    async def detach(self, mount_point: Path) -> None:
        try:
            result = await self.run("detach", str(mount_point))
        except UtilityError as e:
            raise UnmountFailedError(
                f"Failed to unmount {mount_point}: {e}", timed_out=e.timed_out, cause=e
            ) from e

        if result.returncode != 0:
            raise UnmountFailedError(
                f"Failed to unmount {mount_point}: {result.stderr.strip() or 'unknown error'}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        logger.debug("Detached disk image", mount_point=str(mount_point))

    async def is_encrypted(self, image_path: Path) -> bool:
        """Inspect image info for an encryption marker. Failures read as unencrypted."""
        try:
            result = await self.run("imageinfo", str(image_path))
        except UtilityError as e:
            logger.warning("Image info failed", path=str(image_path), error=str(e))
            return False

        if result.returncode != 0:
            return False
        return any(marker in result.stdout for marker in ENCRYPTION_MARKERS)
