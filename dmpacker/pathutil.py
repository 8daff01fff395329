from __future__ import annotations

import os
from typing import Iterator

from .errors import UnsafeEntryPath


def norm_path(p: str) -> str:
    """Normalize package entry paths to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise UnsafeEntryPath(f"entry path may not contain '..': {p}")
    if not parts:
        raise UnsafeEntryPath("empty entry path")
    return "/".join(parts)


def rel_entry_path(base: str, path: str) -> str:
    """Entry name for ``path`` relative to the package root ``base``."""
    return norm_path(os.path.relpath(path, start=base))


def target_path(base: str, entry_name: str) -> str:
    """Filesystem destination for an entry; never escapes ``base``."""
    if entry_name.startswith(("/", "\\")) or os.path.isabs(entry_name) or os.path.splitdrive(entry_name)[0]:
        raise UnsafeEntryPath(f"entry path may not be absolute: {entry_name}")
    return os.path.join(base, *norm_path(entry_name).split("/"))


def walk_sorted(root: str) -> Iterator[str]:
    """Yield every non-directory path under ``root`` in sorted order."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            yield os.path.join(dirpath, name)
