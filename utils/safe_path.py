"""Containment checks for paths built from untrusted names."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Union

from core.errors import PathEscapeError

PathLike = Union[str, "os.PathLike[str]"]


def safe_join(base: PathLike, untrusted: PathLike) -> Path:
    """Join *untrusted* onto *base*, refusing results outside *base*.

    Both sides are normalized lexically (``..`` and ``.`` collapsed, no
    symlink resolution), so the check never touches the filesystem. An
    absolute *untrusted* path replaces the base during the join and is
    therefore rejected unless it happens to point inside the base.
    """
    base_abs = os.path.abspath(os.fspath(base))
    joined = os.path.abspath(os.path.join(base_abs, os.fspath(untrusted)))
    if joined != base_abs and not joined.startswith(base_abs.rstrip(os.sep) + os.sep):
        raise PathEscapeError(f"unsafe path: {os.fspath(untrusted)}")
    return Path(joined)


def check_entry_name(name: str) -> str:
    """Reject archive member names that are absolute or carry ``..`` segments.

    Returns the name with backslashes folded to forward slashes.
    """
    normalized = str(name).replace("\\", "/")
    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise PathEscapeError(f"unsafe path: {name}")
    if ".." in normalized.split("/"):
        raise PathEscapeError(f"unsafe path: {name}")
    return normalized
