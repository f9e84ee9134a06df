"""VirtualKey container provisioning."""

from virtualkey.provisioner.diskimage import DiskImageUtility, parse_mount_point
from virtualkey.provisioner.identity import identifier_from_path
from virtualkey.provisioner.manager import ContainerProvisioner

__all__ = [
    "ContainerProvisioner",
    "DiskImageUtility",
    "identifier_from_path",
    "parse_mount_point",
]
