"""Data models for dependency resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Union

LOCAL_PREF_PREFIXES = ("file:", "link:")


class PreferredKind(Enum):
    """How a preferred-version selector is interpreted."""
    VERSION = "version"
    RANGE = "range"
    TAG = "tag"


@dataclass(frozen=True)
class WantedDependency:
    """One dependency edge as requested by a manifest: name plus selector."""
    alias: str
    pref: str = ""

    @property
    def is_local(self) -> bool:
        """True when the selector points at a filesystem path."""
        pref = self.pref.strip()
        return pref.startswith(LOCAL_PREF_PREFIXES) or pref.startswith((".", "/"))

    def local_path(self) -> str:
        """Path part of a local selector."""
        pref = self.pref.strip()
        for prefix in LOCAL_PREF_PREFIXES:
            if pref.startswith(prefix):
                return pref[len(prefix):]
        return pref


@dataclass(frozen=True)
class TarballResolution:
    """Content served as a tarball, optionally pinned by an SRI integrity."""
    tarball: str
    integrity: Optional[str] = None
    registry: Optional[str] = None
    type: str = "tarball"


@dataclass(frozen=True)
class DirectoryResolution:
    """Content that lives in a local directory and is never copied to the store."""
    directory: str
    type: str = "directory"


Resolution = Union[TarballResolution, DirectoryResolution]


@dataclass(frozen=True)
class PreferredVersion:
    """A version the installer would rather reuse if it satisfies the selector."""
    selector: str
    kind: PreferredKind = PreferredKind.VERSION


@dataclass(frozen=True)
class LocalPackage:
    """A workspace package available from disk."""
    directory: str
    manifest: Mapping[str, Any]


# name -> version -> package
LocalPackages = Mapping[str, Mapping[str, LocalPackage]]


@dataclass
class ResolveContext:
    """Per-request resolution inputs."""
    registry: str
    prefix: str
    lockfile_directory: str
    default_tag: str = "latest"
    preferred_versions: Dict[str, PreferredVersion] = field(default_factory=dict)
    download_priority: int = 0


@dataclass
class ResolveResult:
    """Resolution outcome. ``manifest`` is None when the resolver had none."""
    id: str
    resolution: Resolution
    manifest: Optional[Dict[str, Any]]
    latest: Optional[str] = None
    resolved_via: Optional[str] = None
    normalized_pref: Optional[str] = None


class Resolver(Protocol):
    """Anything able to turn a wanted dependency into a pinned identity."""

    async def resolve(
        self, wanted: WantedDependency, context: ResolveContext
    ) -> ResolveResult:
        ...
