"""Data models exchanged across the store controller surface.

``PackageResponse`` and ``ManifestState`` are closed sum types: consumers
branch with ``isinstance`` over every variant and treat anything else as a
programming error.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from resolving.models import (
    DirectoryResolution,
    LocalPackages,
    PreferredVersion,
    Resolution,
)


@dataclass(frozen=True)
class PackageFilesResponse:
    """Files of a package in the store; ``from_store`` means no download happened."""
    from_store: bool
    filenames: List[str]


@dataclass(frozen=True)
class FetchHandle:
    """The single authority for one (package id, engine) fetch.

    ``in_store_location`` is known up front. The futures settle independently:
    ``files`` once content is in place, ``finishing`` once its integrity is
    durably recorded (never before ``files``), ``raw_manifest`` as soon as
    ``package.json`` is readable.
    """
    in_store_location: str
    files: "asyncio.Future[PackageFilesResponse]"
    finishing: "asyncio.Future[None]"
    raw_manifest: "Optional[asyncio.Future[Dict[str, Any]]]" = None


@dataclass(frozen=True)
class FetchPackageToStoreOptions:
    package_id: str
    resolution: Resolution
    prefix: str
    force: bool = False
    fetch_raw_manifest: bool = False
    pkg_name: Optional[str] = None
    target_engine: Optional[str] = None
    download_priority: int = 0


@dataclass(frozen=True)
class ManifestReady:
    manifest: Mapping[str, Any]


@dataclass(frozen=True)
class ManifestPending:
    future: "asyncio.Future[Dict[str, Any]]"


ManifestState = Union[ManifestReady, ManifestPending]


@dataclass(frozen=True)
class LocalPackageResponse:
    """A package served from a local directory; nothing is pending."""
    id: str
    resolution: DirectoryResolution
    manifest: Mapping[str, Any]
    updated: bool
    normalized_pref: Optional[str] = None
    resolved_via: Optional[str] = None


@dataclass(frozen=True)
class RegistryPackageResponse:  # pylint: disable=too-many-instance-attributes
    """A package that lives in the store.

    ``files``/``finishing`` are None when no fetch was started (``skip_fetch``
    or reuse of the current identity).
    ``latest`` is informational only; it never drives install decisions.
    """
    id: str
    resolution: Resolution
    updated: bool
    in_store_location: str
    manifest: ManifestState
    cache_by_engine: Mapping[str, str] = field(default_factory=dict)
    files: "Optional[asyncio.Future[PackageFilesResponse]]" = None
    finishing: "Optional[asyncio.Future[None]]" = None
    latest: Optional[str] = None
    normalized_pref: Optional[str] = None
    resolved_via: Optional[str] = None


PackageResponse = Union[LocalPackageResponse, RegistryPackageResponse]


@dataclass
class RequestPackageOptions:  # pylint: disable=too-many-instance-attributes
    """Per-call inputs of ``request_package``."""
    prefix: str
    lockfile_directory: str
    registry: str
    current_package_id: Optional[str] = None
    current_resolution: Optional[Resolution] = None
    default_tag: str = "latest"
    download_priority: int = 0
    local_packages: LocalPackages = field(default_factory=dict)
    preferred_versions: Dict[str, PreferredVersion] = field(default_factory=dict)
    side_effects_cache: bool = False
    skip_fetch: bool = False
    update: bool = False
    force: bool = False
    target_engine: Optional[str] = None


@dataclass(frozen=True)
class PackageLocation:
    directory: str
    is_built: bool


@dataclass(frozen=True)
class PackageUsages:
    """A package id and the project prefixes depending on it."""
    package_id: str
    usages: List[str]


async def resolve_manifest(response: PackageResponse) -> Mapping[str, Any]:
    """Await whatever manifest a response carries."""
    if isinstance(response, LocalPackageResponse):
        return response.manifest
    if isinstance(response, RegistryPackageResponse):
        state = response.manifest
        if isinstance(state, ManifestReady):
            return state.manifest
        if isinstance(state, ManifestPending):
            return await state.future
        raise TypeError(f"Unknown manifest state: {type(state).__name__}")
    raise TypeError(f"Unknown package response: {type(response).__name__}")
