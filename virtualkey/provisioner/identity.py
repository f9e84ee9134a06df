"""Stable container identifiers derived from image paths."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Union


def identifier_from_path(path: Union[str, Path]) -> str:
    """
    UUID-formatted identifier for a disk image path.

    The first 32 hex digits of SHA-256 over the path string, grouped
    8-4-4-4-12. Identical paths always produce the same identifier, so
    containers keep their id across listings and process restarts.
    """
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()
    return f"{digest[0:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"
