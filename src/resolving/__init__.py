"""Dependency resolution: wanted dependency -> pinned package identity."""

from .ids import create_package_id, parse_package_id, package_id_to_relpath
from .models import (
    DirectoryResolution,
    LocalPackage,
    PreferredKind,
    PreferredVersion,
    Resolution,
    ResolveContext,
    ResolveResult,
    Resolver,
    TarballResolution,
    WantedDependency,
)
from .npm import NpmResolver

__all__ = [
    "create_package_id",
    "parse_package_id",
    "package_id_to_relpath",
    "DirectoryResolution",
    "LocalPackage",
    "PreferredKind",
    "PreferredVersion",
    "Resolution",
    "ResolveContext",
    "ResolveResult",
    "Resolver",
    "TarballResolution",
    "WantedDependency",
    "NpmResolver",
]
