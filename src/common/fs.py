"""Small filesystem helpers shared by the store modules."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from typing import Any, Mapping


def atomic_write_text(path: str, content: str) -> None:
    """Write ``content`` so readers see either the old file or the new one.

    The temp file is fsynced before the rename.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        dir=directory, prefix=os.path.basename(path) + ".", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.remove(temp_path)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: str, payload: Mapping[str, Any]) -> None:
    atomic_write_text(path, json.dumps(dict(payload), ensure_ascii=False, indent=2, sort_keys=True) + "\n")


def remove_path(path: str) -> None:
    """Remove a file, symlink or directory tree; missing paths are ignored."""
    if os.path.islink(path) or os.path.isfile(path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
    elif os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=False)


def remove_empty_parents(path: str, stop_at: str) -> None:
    """Delete empty directories from ``path`` upwards, never touching ``stop_at``."""
    stop_at = os.path.abspath(stop_at)
    current = os.path.abspath(path)
    while current.startswith(stop_at + os.sep) and current != stop_at:
        try:
            os.rmdir(current)
        except OSError:
            return
        current = os.path.dirname(current)
