"""
VirtualKey Errors

Typed failures raised by the provisioner, storage and transfer layers.
Counting and listing paths catch these and degrade; mutating operations
let them propagate to the caller.
"""

from __future__ import annotations

from typing import Optional


class VirtualKeyError(Exception):
    """Base exception for virtual key errors."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class AlreadyExistsError(VirtualKeyError):
    """A container with the requested name already exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Virtual hardware key '{name}' already exists")


class NotFoundError(VirtualKeyError):
    """The referenced container is unknown."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"Virtual hardware key not found: {container_id}")


class UtilityError(VirtualKeyError):
    """The disk-image utility exited non-zero, timed out or produced unusable output."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
        cause: Optional[Exception] = None,
    ):
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        super().__init__(message, cause=cause)


class CreationFailedError(UtilityError):
    """Disk image creation failed."""
    pass


class MountFailedError(UtilityError):
    """Disk image could not be attached, or its mount point was not reported."""
    pass


class UnmountFailedError(UtilityError):
    """Disk image could not be detached."""
    pass


class StorageInitFailedError(VirtualKeyError):
    """The embedded credential store could not be constructed."""
    pass


class RateLimitedError(StorageInitFailedError):
    """The operation limiter is at capacity."""

    def __init__(self, in_flight: int, limit: int):
        self.in_flight = in_flight
        self.limit = limit
        super().__init__(
            f"Rate limited - too many concurrent storage operations ({in_flight}/{limit})"
        )


class ExportFailedError(VirtualKeyError):
    """Export to a container failed."""
    pass


class ImportFailedError(VirtualKeyError):
    """Import from a container failed."""
    pass


class InvalidDirectoryError(VirtualKeyError):
    """A managed directory is missing, not a directory or not writable."""
    pass


class CodecError(VirtualKeyError, ValueError):
    """Malformed authenticator structure."""
    pass


class InvalidPublicKeyError(CodecError):
    """Public key bytes are not a P-256 uncompressed point."""
    pass


class PrivateKeyReferenceError(VirtualKeyError):
    """A sealed private-key reference could not be decoded."""
    pass
