"""npm registry resolver.

Turns a ``WantedDependency`` into a pinned package id by reading the
registry's abbreviated packument and applying npm semver rules. Local
``file:``/``link:`` selectors resolve to a directory without touching the
network.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote

import aiohttp

from constants import Constants
from common.errors import ResolutionError
from common.http_client import HttpClient
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from fetching.integrity import integrity_from_shasum
from .cache import MetadataCache
from .ids import create_local_package_id, create_package_id
from .models import (
    DirectoryResolution,
    PreferredKind,
    PreferredVersion,
    ResolveContext,
    ResolveResult,
    TarballResolution,
    WantedDependency,
)
from .semver import max_satisfying, parse_version, satisfies, selector_kind

logger = logging.getLogger(__name__)

PackumentFetcher = Callable[[str, str, int], Awaitable[Optional[Dict[str, Any]]]]


def packument_url(registry: str, name: str) -> str:
    """Metadata URL; the scope separator of scoped names is escaped."""
    return registry.rstrip("/") + "/" + quote(name, safe="@")


class NpmResolver:
    """Resolver for npm-compatible registries."""

    def __init__(
        self,
        http_client: Optional[HttpClient] = None,
        *,
        fetch_packument: Optional[PackumentFetcher] = None,
        cache: Optional[MetadataCache] = None,
    ):
        """Initialize the resolver.

        Args:
            http_client: Client used by the default packument fetcher.
            fetch_packument: Override for metadata retrieval; takes
                (registry, name, priority) and returns the packument or None
                when the package does not exist.
            cache: Packument cache shared across requests.
        """
        if fetch_packument is None and http_client is None:
            raise ValueError("NpmResolver needs an http_client or a fetch_packument override")
        self._http = http_client
        self._fetch_packument = fetch_packument or self._fetch_packument_http
        self._cache = cache if cache is not None else MetadataCache(
            default_ttl=Constants.METADATA_CACHE_TTL_SEC
        )
        self._inflight: Dict[str, asyncio.Future] = {}

    async def resolve(self, wanted: WantedDependency, context: ResolveContext) -> ResolveResult:
        """Resolve ``wanted`` against the registry (or the filesystem).

        Raises:
            ResolutionError: Unknown package, unsatisfiable selector,
                unreachable registry or missing local directory.
        """
        if wanted.is_local:
            return await asyncio.to_thread(self._resolve_local, wanted, context)

        packument = await self._get_packument(context.registry, wanted.alias, context.download_priority)
        versions: Dict[str, Any] = packument.get("versions") or {}
        dist_tags: Dict[str, str] = packument.get("dist-tags") or {}
        pref = wanted.pref.strip() or context.default_tag

        version = self._pick_version(
            wanted.alias, pref, versions, dist_tags, context.preferred_versions.get(wanted.alias)
        )
        if version is None:
            raise ResolutionError(
                f"No matching version found for {wanted.alias}@{pref}"
                + (f" (latest: {dist_tags['latest']})" if "latest" in dist_tags else "")
            )

        manifest = dict(versions[version])
        dist = manifest.get("dist") or {}
        if not dist.get("tarball"):
            raise ResolutionError(f"Registry metadata for {wanted.alias}@{version} has no tarball")
        integrity = dist.get("integrity")
        if not integrity and dist.get("shasum"):
            integrity = integrity_from_shasum(dist["shasum"])

        normalized_pref = pref
        if not wanted.pref.strip():
            normalized_pref = f"^{version}"

        result = ResolveResult(
            id=create_package_id(context.registry, wanted.alias, version),
            resolution=TarballResolution(
                tarball=dist["tarball"], integrity=integrity, registry=context.registry
            ),
            manifest=manifest,
            latest=dist_tags.get("latest"),
            resolved_via="npm-registry",
            normalized_pref=normalized_pref,
        )
        if is_debug_enabled(logger):
            logger.debug(
                "Resolved %s@%s to %s",
                wanted.alias,
                pref,
                result.id,
                extra=extra_context(
                    event="resolved",
                    component="resolver",
                    package_id=result.id,
                    latest=result.latest,
                ),
            )
        return result

    def _pick_version(
        self,
        name: str,
        pref: str,
        versions: Dict[str, Any],
        dist_tags: Dict[str, str],
        preferred: Optional[PreferredVersion],
    ) -> Optional[str]:
        kind = selector_kind(pref)
        if kind == PreferredKind.TAG:
            tagged = dist_tags.get(pref)
            return tagged if tagged in versions else None

        preferred_version = self._preferred_candidate(preferred, versions, dist_tags)
        if kind == PreferredKind.VERSION:
            parsed = parse_version(pref)
            for candidate in versions:
                if parse_version(candidate) == parsed:
                    return candidate
            return None

        if preferred_version and satisfies(preferred_version, pref):
            logger.debug("Using preferred version %s for %s@%s", preferred_version, name, pref)
            return preferred_version
        latest = dist_tags.get("latest")
        if latest in versions and satisfies(latest, pref):
            return latest
        return max_satisfying(versions.keys(), pref)

    @staticmethod
    def _preferred_candidate(
        preferred: Optional[PreferredVersion],
        versions: Dict[str, Any],
        dist_tags: Dict[str, str],
    ) -> Optional[str]:
        if preferred is None:
            return None
        if preferred.kind == PreferredKind.TAG:
            candidate = dist_tags.get(preferred.selector)
        elif preferred.kind == PreferredKind.RANGE:
            candidate = max_satisfying(versions.keys(), preferred.selector)
        else:
            candidate = preferred.selector
        return candidate if candidate in versions else None

    async def _get_packument(self, registry: str, name: str, priority: int) -> Dict[str, Any]:
        cached = self._cache.get(registry, name)
        if cached is not None:
            return cached

        key = f"{registry}:{name}"
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load_packument(registry, name, priority))
            self._inflight[key] = pending
            pending.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(pending)

    async def _load_packument(self, registry: str, name: str, priority: int) -> Dict[str, Any]:
        try:
            packument = await self._fetch_packument(registry, name, priority)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ResolutionError(
                f"Registry {safe_url(registry)} is unreachable while resolving {name}: {exc}"
            ) from exc
        if packument is None:
            raise ResolutionError(f"Package {name} not found in registry {safe_url(registry)}")
        self._cache.set(registry, name, packument)
        return packument

    async def _fetch_packument_http(
        self, registry: str, name: str, priority: int
    ) -> Optional[Dict[str, Any]]:
        assert self._http is not None
        url = packument_url(registry, name)
        status, data = await self._http.get_json(
            url, headers={"Accept": Constants.PACKUMENT_ACCEPT}, priority=priority
        )
        if status == 404:
            return None
        if status != 200 or not isinstance(data, dict):
            raise ResolutionError(
                f"Unexpected registry response {status} for {safe_url(url)}"
            )
        return data

    @staticmethod
    def _resolve_local(wanted: WantedDependency, context: ResolveContext) -> ResolveResult:
        directory = os.path.abspath(os.path.join(context.prefix, wanted.local_path()))
        manifest_path = os.path.join(directory, "package.json")
        if not os.path.isdir(directory):
            raise ResolutionError(f"Local dependency {wanted.alias} not found at {directory}")
        try:
            with open(manifest_path, encoding="utf-8") as fh:
                manifest = json.load(fh)
        except FileNotFoundError:
            manifest = {"name": wanted.alias, "version": "0.0.0"}
        except (OSError, json.JSONDecodeError) as exc:
            raise ResolutionError(f"Cannot read {manifest_path}: {exc}") from exc
        relative = os.path.relpath(directory, context.prefix).replace(os.sep, "/")
        return ResolveResult(
            id=create_local_package_id(directory, context.lockfile_directory),
            resolution=DirectoryResolution(directory=directory),
            manifest=manifest,
            resolved_via="local-filesystem",
            normalized_pref=f"link:{relative}",
        )

    async def close(self) -> None:
        """Drop cached metadata; the HTTP client is owned by the caller."""
        self._cache.clear()
