"""Package request pipeline: wanted dependency -> package response.

Steps, in order: workspace (local package) match, reuse of the current
identity when it still satisfies the selector, and finally a resolver call
chained into the fetch engine. Reusing the current identity starts no fetch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from common.errors import FetchError
from common.logging_utils import extra_context, is_debug_enabled
from fetching.tarball import read_manifest
from resolving.ids import create_local_package_id, parse_package_id
from resolving.models import (
    DirectoryResolution,
    LocalPackage,
    PreferredKind,
    ResolveContext,
    Resolver,
    TarballResolution,
    WantedDependency,
)
from resolving.semver import max_satisfying, selector_kind, satisfies, sort_versions
from .fetch import FetchEngine
from .layout import list_cache_by_engine, package_dir, read_integrity_record
from .models import (
    FetchPackageToStoreOptions,
    LocalPackageResponse,
    ManifestPending,
    ManifestReady,
    PackageResponse,
    RegistryPackageResponse,
    RequestPackageOptions,
)

logger = logging.getLogger(__name__)


def match_local_package(
    wanted: WantedDependency, versions: Mapping[str, LocalPackage], default_tag: str
) -> Optional[LocalPackage]:
    """Pick the workspace package satisfying ``wanted``, if any."""
    if not versions:
        return None
    pref = wanted.pref.strip()
    if pref in ("", "*", default_tag):
        highest = sort_versions(versions)
        return versions[highest[-1]] if highest else None
    kind = selector_kind(pref)
    if kind == PreferredKind.VERSION:
        return versions.get(pref)
    if kind == PreferredKind.RANGE:
        chosen = max_satisfying(versions, pref)
        return versions[chosen] if chosen is not None else None
    return None


def _still_satisfied(wanted: WantedDependency, version: str) -> bool:
    pref = wanted.pref.strip()
    if not pref:
        return True
    if selector_kind(pref) == PreferredKind.TAG:
        # Tags may have moved; the pinned version stands until an update.
        return True
    return satisfies(version, pref)


def _stored_manifest(location: str, name: str, version: str) -> Dict[str, Any]:
    """Manifest of a complete store entry, else the one implied by the id."""
    if read_integrity_record(location) is not None:
        try:
            return read_manifest(package_dir(location))
        except FetchError as exc:
            logger.debug("Falling back to the id manifest for %s: %s", location, exc)
    return {"name": name, "version": version}


class PackageRequester:
    """Implements ``request_package`` on top of a resolver and a fetch engine."""

    def __init__(self, resolver: Resolver, fetch_engine: FetchEngine):
        self.resolver = resolver
        self.fetch_engine = fetch_engine

    async def request_package(
        self, wanted: WantedDependency, options: RequestPackageOptions
    ) -> PackageResponse:
        """Resolve ``wanted`` and make sure its content will be in the store.

        Raises:
            ResolutionError: Propagated from the resolver.
        """
        local = match_local_package(
            wanted, options.local_packages.get(wanted.alias, {}), options.default_tag
        )
        if local is not None:
            package_id = create_local_package_id(local.directory, options.lockfile_directory)
            return LocalPackageResponse(
                id=package_id,
                resolution=DirectoryResolution(directory=local.directory),
                manifest=local.manifest,
                updated=options.current_package_id != package_id,
                normalized_pref=wanted.pref or None,
                resolved_via="workspace",
            )

        reused = await self._reuse_current(wanted, options)
        if reused is not None:
            return reused

        result = await self.resolver.resolve(
            wanted,
            ResolveContext(
                registry=options.registry,
                prefix=options.prefix,
                lockfile_directory=options.lockfile_directory,
                default_tag=options.default_tag,
                preferred_versions=options.preferred_versions,
                download_priority=options.download_priority,
            ),
        )
        updated = options.current_package_id != result.id

        if isinstance(result.resolution, DirectoryResolution):
            return LocalPackageResponse(
                id=result.id,
                resolution=result.resolution,
                manifest=result.manifest or {},
                updated=updated,
                normalized_pref=result.normalized_pref,
                resolved_via=result.resolved_via,
            )

        location = self.fetch_engine.location_for(result.id)
        cache_by_engine = list_cache_by_engine(location) if options.side_effects_cache else {}

        if options.skip_fetch and result.manifest is not None:
            return RegistryPackageResponse(
                id=result.id,
                resolution=result.resolution,
                updated=updated,
                in_store_location=location,
                manifest=ManifestReady(result.manifest),
                cache_by_engine=cache_by_engine,
                latest=result.latest,
                normalized_pref=result.normalized_pref,
                resolved_via=result.resolved_via,
            )

        handle = self.fetch_engine.fetch_package(
            FetchPackageToStoreOptions(
                package_id=result.id,
                resolution=result.resolution,
                prefix=options.prefix,
                force=options.force,
                fetch_raw_manifest=result.manifest is None,
                pkg_name=wanted.alias,
                target_engine=options.target_engine,
                download_priority=options.download_priority,
            )
        )
        manifest = (
            ManifestReady(result.manifest)
            if result.manifest is not None
            else ManifestPending(handle.raw_manifest)
        )
        return RegistryPackageResponse(
            id=result.id,
            resolution=result.resolution,
            updated=updated,
            in_store_location=handle.in_store_location,
            manifest=manifest,
            cache_by_engine=cache_by_engine,
            files=handle.files,
            finishing=handle.finishing,
            latest=result.latest,
            normalized_pref=result.normalized_pref,
            resolved_via=result.resolved_via,
        )

    async def _reuse_current(
        self, wanted: WantedDependency, options: RequestPackageOptions
    ) -> Optional[RegistryPackageResponse]:
        if options.update or options.force:
            return None
        if options.current_package_id is None or not isinstance(
            options.current_resolution, TarballResolution
        ):
            return None
        parts = parse_package_id(options.current_package_id)
        if parts is None or parts.name != wanted.alias:
            return None
        if not _still_satisfied(wanted, parts.version):
            return None

        if is_debug_enabled(logger):
            logger.debug(
                "Reusing %s for %s@%s",
                options.current_package_id,
                wanted.alias,
                wanted.pref,
                extra=extra_context(
                    event="reuse_current", component="request", package_id=options.current_package_id
                ),
            )
        # No fetch is started; the caller chains into fetch_package when it needs the files.
        location = self.fetch_engine.location_for(options.current_package_id)
        manifest = await asyncio.to_thread(_stored_manifest, location, parts.name, parts.version)
        return RegistryPackageResponse(
            id=options.current_package_id,
            resolution=options.current_resolution,
            updated=False,
            in_store_location=location,
            manifest=ManifestReady(manifest),
            cache_by_engine=list_cache_by_engine(location) if options.side_effects_cache else {},
            normalized_pref=wanted.pref or None,
            resolved_via="current-lockfile",
        )
