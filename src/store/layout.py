"""On-disk layout of a store entry.

    <store>/<package id as path>/
        _package/                      pristine files
        integrity.json                 completion record
        _side_effects/<engine>/_package/ build output per target engine
        .staging-*                     in-progress transfers
"""

from __future__ import annotations

import json
import logging
import os
from typing import Dict, Iterator, List, Optional, Tuple

from constants import Constants
from resolving.ids import package_id_to_relpath

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"


def entry_location(store_dir: str, package_id: str) -> str:
    return os.path.join(store_dir, package_id_to_relpath(package_id))


def package_dir(location: str) -> str:
    return os.path.join(location, Constants.PACKAGE_DIR)


def integrity_path(location: str) -> str:
    return os.path.join(location, Constants.INTEGRITY_FILE)


def validate_engine(engine: str) -> str:
    """Engines become directory names, so separators are rejected."""
    if not engine or engine in (".", "..") or "/" in engine or os.sep in engine:
        raise ValueError(f"Invalid target engine: {engine!r}")
    return engine


def side_effects_dir(location: str, engine: str) -> str:
    return os.path.join(
        location, Constants.SIDE_EFFECTS_DIR, validate_engine(engine), Constants.PACKAGE_DIR
    )


def list_cache_by_engine(location: str) -> Dict[str, str]:
    """Map each engine with a cached build to that build's directory."""
    root = os.path.join(location, Constants.SIDE_EFFECTS_DIR)
    if not os.path.isdir(root):
        return {}
    result = {}
    for engine in sorted(os.listdir(root)):
        built = os.path.join(root, engine, Constants.PACKAGE_DIR)
        if os.path.isdir(built):
            result[engine] = built
    return result


def list_files(directory: str) -> List[str]:
    """Relative posix paths of all regular files under ``directory``."""
    filenames = []
    for dirpath, _dirnames, files in os.walk(directory):
        for name in files:
            full = os.path.join(dirpath, name)
            filenames.append(os.path.relpath(full, directory).replace(os.sep, "/"))
    return sorted(filenames)


def read_integrity_record(location: str) -> Optional[dict]:
    """The completion record of an entry, or None when absent or unreadable."""
    path = integrity_path(location)
    try:
        with open(path, encoding="utf-8") as fh:
            record = json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable integrity record %s: %s", path, exc)
        return None
    return record if isinstance(record, dict) else None


def iter_store_entries(store_dir: str) -> Iterator[Tuple[str, Optional[str]]]:
    """Yield ``(location, package_id)`` for every entry, complete or not.

    ``package_id`` is None for entries without a readable completion record.
    """
    if not os.path.isdir(store_dir):
        return
    for dirpath, dirnames, filenames in os.walk(store_dir):
        if dirpath == store_dir:
            dirnames[:] = [d for d in dirnames if d != Constants.LOCKS_DIR]
            continue
        is_entry = (
            Constants.INTEGRITY_FILE in filenames
            or Constants.PACKAGE_DIR in dirnames
            or any(d.startswith(STAGING_PREFIX) for d in dirnames)
        )
        if not is_entry:
            continue
        dirnames[:] = []
        record = read_integrity_record(dirpath)
        package_id = record.get("id") if record else None
        yield dirpath, package_id
