"""Store controller: the public surface of the package store."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from typing import Dict, Iterable, List, Optional

from constants import Constants
from common.errors import StoreError
from common.fs import remove_empty_parents, remove_path
from common.http_client import HttpClient
from common.logging_utils import extra_context
from fetching.tarball import TarballFetcher
from options.extend import StrictInstallOptions
from resolving.ids import is_local_package_id, parse_package_id
from resolving.models import Resolver, WantedDependency
from resolving.npm import NpmResolver
from .fetch import FetchEngine
from .importer import ImportEngine
from .layout import (
    STAGING_PREFIX,
    iter_store_entries,
    package_dir,
    read_integrity_record,
    side_effects_dir,
)
from .locking import StoreLock
from .models import (
    FetchHandle,
    FetchPackageToStoreOptions,
    PackageFilesResponse,
    PackageLocation,
    PackageResponse,
    PackageUsages,
    RequestPackageOptions,
)
from .request import PackageRequester
from .state import StoreState, query_matches

logger = logging.getLogger(__name__)


class StoreController:
    """Requests, fetches, imports and garbage-collects packages in one store."""

    def __init__(
        self,
        store_dir: str,
        resolver: Resolver,
        fetch_engine: FetchEngine,
        importer: ImportEngine,
        locker: StoreLock,
        state: Optional[StoreState] = None,
        *,
        http_client: Optional[HttpClient] = None,
    ):
        self.store_dir = store_dir
        self.resolver = resolver
        self.fetch_engine = fetch_engine
        self.importer = importer
        self.locker = locker
        self.state = state if state is not None else StoreState.load(store_dir)
        self._requester = PackageRequester(resolver, fetch_engine)
        self._http = http_client

    @classmethod
    def from_options(cls, options: StrictInstallOptions) -> "StoreController":
        """Build a controller with the npm resolver and tarball transport."""
        http_client = HttpClient(options.user_agent)
        locker = StoreLock(
            options.locks,
            stale_duration_ms=options.lock_stale_duration,
            enabled=options.lock,
        )
        fetch_engine = FetchEngine(
            options.store,
            TarballFetcher(http_client),
            locker,
            verify_store_integrity=options.verify_store_integrity,
        )
        importer = ImportEngine(
            side_effects_cache_read=options.side_effects_cache_read,
            target_engine=options.target_engine,
        )
        return cls(
            options.store,
            NpmResolver(http_client),
            fetch_engine,
            importer,
            locker,
            http_client=http_client,
        )

    async def request_package(
        self, wanted: WantedDependency, options: RequestPackageOptions
    ) -> PackageResponse:
        return await self._requester.request_package(wanted, options)

    def fetch_package(self, opts: FetchPackageToStoreOptions) -> FetchHandle:
        return self.fetch_engine.fetch_package(opts)

    async def import_package(
        self, from_: str, to: str, files_response: PackageFilesResponse, force: bool = False
    ) -> bool:
        return await self.importer.import_package(from_, to, files_response, force=force)

    def get_package_location(
        self,
        package_id: str,
        name: str,
        lockfile_directory: str,
        target_engine: Optional[str] = None,
    ) -> PackageLocation:
        """Directory a package's files should be read from.

        ``is_built`` is True when a cached build for ``target_engine``
        (default: the importer's engine) exists.
        """
        if is_local_package_id(package_id):
            relative = package_id.split(":", 1)[1]
            return PackageLocation(
                directory=os.path.normpath(os.path.join(lockfile_directory, relative)),
                is_built=False,
            )
        location = self.fetch_engine.location_for(package_id)
        engine = target_engine or (
            self.importer.target_engine if self.importer.side_effects_cache_read else None
        )
        if engine:
            built = side_effects_dir(location, engine)
            if os.path.isdir(built):
                return PackageLocation(directory=built, is_built=True)
        logger.debug("Location of %s (%s) is %s", name, package_id, location)
        return PackageLocation(directory=package_dir(location), is_built=False)

    async def update_connections(
        self,
        prefix: str,
        add_dependencies: Iterable[str] = (),
        remove_dependencies: Iterable[str] = (),
        prune: bool = False,
    ) -> None:
        async with self.state.writer():
            self.state.update_connections(prefix, add_dependencies, remove_dependencies, prune)

    async def prune(self) -> List[str]:
        """Remove unreferenced store entries; returns the removed locations.

        The connections every run has persisted count as references, not
        only the ones this controller loaded.
        """
        async with self.state.writer(), self.locker.hold(Constants.STORE_STATE_FILE):
            await asyncio.to_thread(self.state.refresh)
            referenced = self.state.referenced_ids()
            keep = set()
            for package_id in referenced:
                if parse_package_id(package_id) is not None:
                    keep.add(os.path.normpath(self.fetch_engine.location_for(package_id)))
            active = {os.path.normpath(loc) for loc in self.fetch_engine.active_locations()}
            entries = await asyncio.to_thread(lambda: list(iter_store_entries(self.store_dir)))

            removed: List[str] = []
            removed_ids = set()
            for location, package_id in entries:
                normalized = os.path.normpath(location)
                if normalized in keep or normalized in active:
                    continue
                if package_id is not None and package_id in referenced:
                    continue
                async with self.locker.hold(package_id or normalized):
                    await asyncio.to_thread(remove_path, location)
                    await asyncio.to_thread(
                        remove_empty_parents, os.path.dirname(location), self.store_dir
                    )
                removed.append(location)
                if package_id is not None:
                    removed_ids.add(package_id)
                logger.debug("Pruned %s", location)

            self.fetch_engine.forget(removed_ids)
        logger.info(
            "Removed %d unreferenced package(s) from the store",
            len(removed),
            extra=extra_context(event="store_prune", component="store", removed=len(removed)),
        )
        return removed

    async def save_state(self) -> None:
        """Persist this run's connection changes on top of the current file."""
        async with self.state.writer(), self.locker.hold(Constants.STORE_STATE_FILE):
            await asyncio.to_thread(self.state.refresh)
            await asyncio.to_thread(self.state.save)

    async def upload(self, built_pkg_location: str, package_id: str, engine: str) -> None:
        """Store a build of ``package_id`` for ``engine`` in the side-effects cache.

        Raises:
            StoreError: The package is not in the store or the copy failed.
        """
        location = self.fetch_engine.location_for(package_id)
        try:
            target = side_effects_dir(location, engine)
        except ValueError as exc:
            raise StoreError(str(exc), package_id=package_id) from exc
        if read_integrity_record(location) is None:
            raise StoreError(f"Cannot upload a build of {package_id}: it is not in the store", package_id=package_id)

        async with self.locker.hold(package_id):
            try:
                await asyncio.to_thread(self._replace_tree, built_pkg_location, target)
            except OSError as exc:
                raise StoreError(
                    f"Cannot upload build of {package_id} for {engine}: {exc}", package_id=package_id
                ) from exc
        logger.info(
            "Cached build of %s for %s",
            package_id,
            engine,
            extra=extra_context(event="side_effects_upload", component="store", package_id=package_id),
        )

    @staticmethod
    def _replace_tree(source: str, target: str) -> None:
        parent = os.path.dirname(target)
        os.makedirs(parent, exist_ok=True)
        staging = os.path.join(parent, f"{STAGING_PREFIX}{uuid.uuid4().hex}")
        try:
            shutil.copytree(source, staging, symlinks=True)
            remove_path(target)
            os.replace(staging, target)
        finally:
            remove_path(staging)

    def find_package_usages(self, queries: Iterable[str]) -> Dict[str, List[PackageUsages]]:
        """Map each query to the referenced packages it selects and their users.

        A query is a package id, a package name, or ``name@range``. An id
        nobody references maps to one entry with no usages.
        """
        usages = self.state.usages()
        result: Dict[str, List[PackageUsages]] = {}
        for query in queries:
            matches = [
                PackageUsages(package_id=package_id, usages=prefixes)
                for package_id, prefixes in sorted(usages.items())
                if query_matches(query, package_id)
            ]
            if not matches and parse_package_id(query) is not None:
                matches = [PackageUsages(package_id=query, usages=[])]
            result[query] = matches
        return result

    async def close(self) -> None:
        close = getattr(self.resolver, "close", None)
        if close is not None:
            await close()
        if self._http is not None:
            await self._http.stop()
