"""Package identity helpers.

A registry package id looks like ``registry.npmjs.org/left-pad/1.3.0``
(``<registry host>/<name>/<version>``; scoped names keep their slash).
Local packages use ``link:<path relative to the lockfile directory>``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

LOCAL_ID_PREFIXES = ("link:", "file:")


@dataclass(frozen=True)
class PackageIdParts:
    """Decoded registry package id."""
    host: str
    name: str
    version: str


def encode_registry(registry: str) -> str:
    """Host part of a registry URL, with ``:`` made path-safe."""
    netloc = urlsplit(registry).netloc or registry.strip("/")
    if "@" in netloc:
        netloc = netloc.rsplit("@", 1)[1]
    return netloc.replace(":", "+")


def create_package_id(registry: str, name: str, version: str) -> str:
    return f"{encode_registry(registry)}/{name}/{version}"


def create_local_package_id(directory: str, lockfile_directory: str) -> str:
    relative = os.path.relpath(directory, lockfile_directory).replace(os.sep, "/")
    return f"link:{relative}"


def is_local_package_id(package_id: str) -> bool:
    return package_id.startswith(LOCAL_ID_PREFIXES)


def parse_package_id(package_id: str) -> Optional[PackageIdParts]:
    """Split a registry id; None for local ids and anything malformed."""
    if is_local_package_id(package_id) or "/" not in package_id:
        return None
    host, rest = package_id.split("/", 1)
    if "/" not in rest:
        return None
    name, version = rest.rsplit("/", 1)
    if not host or not name or not version:
        return None
    if name.startswith("@") and "/" not in name:
        return None
    return PackageIdParts(host=host, name=name, version=version)


def package_id_to_relpath(package_id: str) -> str:
    """Relative store path for an id.

    Raises:
        ValueError: For ids that would escape the store directory.
    """
    segments = package_id.replace(":", "+").split("/")
    if package_id.startswith("/") or any(s in ("", ".", "..") for s in segments):
        raise ValueError(f"Invalid package id: {package_id!r}")
    return os.path.join(*segments)
