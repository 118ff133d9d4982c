"""Fetch-to-store engine.

Each (package id, target engine) has at most one in-flight transfer per
engine instance; concurrent callers attach to it. Across processes the same
guarantee comes from the per-identity store lock: whoever gets the lock
second finds the completed entry and reports a store hit.

An entry is valid only once ``integrity.json`` has been written. Content
without that record (a crash between files-ready and finishing) is
discarded by the next fetch.

``force`` always starts a fresh transfer. The new transfer replaces the
shared entry, so later non-forced callers attach to it. Handles handed out
earlier keep following their original transfer.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from common.errors import FetchError
from common.fs import atomic_write_json, remove_path
from common.logging_utils import extra_context, is_debug_enabled
from fetching.integrity import DEFAULT_ALGORITHM, file_integrity
from fetching.tarball import Transport, read_manifest
from .layout import (
    STAGING_PREFIX,
    entry_location,
    integrity_path,
    package_dir,
    read_integrity_record,
)
from .locking import StoreLock
from .models import FetchHandle, FetchPackageToStoreOptions, PackageFilesResponse

logger = logging.getLogger(__name__)


def _mark_retrieved(future: asyncio.Future) -> None:
    # Callers may legitimately never await a signal; the error is still
    # delivered to anyone who does.
    if not future.cancelled():
        future.exception()


@dataclass
class _Transfer:
    location: str
    files: "asyncio.Future[PackageFilesResponse]"
    finishing: "asyncio.Future[None]"
    manifest: "asyncio.Future[Dict[str, Any]]"
    task: Optional[asyncio.Task] = None

    def handle(self, with_manifest: bool) -> FetchHandle:
        return FetchHandle(
            in_store_location=self.location,
            files=self.files,
            finishing=self.finishing,
            raw_manifest=self.manifest if with_manifest else None,
        )

    def fail(self, error: BaseException) -> None:
        for future in (self.files, self.manifest, self.finishing):
            if not future.done():
                future.set_exception(error)


class FetchEngine:
    """Fetches resolved packages into the store exactly once per identity."""

    def __init__(
        self,
        store_dir: str,
        transport: Transport,
        locker: StoreLock,
        *,
        verify_store_integrity: bool = True,
    ):
        self.store_dir = store_dir
        self._transport = transport
        self._locker = locker
        self._verify = verify_store_integrity
        self._transfers: Dict[Tuple[str, Optional[str]], _Transfer] = {}
        self._running: Dict[str, int] = {}
        self._mutex = threading.Lock()

    def location_for(self, package_id: str) -> str:
        """Store location of ``package_id``; pure path computation."""
        return entry_location(self.store_dir, package_id)

    def active_locations(self) -> Set[str]:
        """Locations with a transfer that has not settled ``finishing`` yet."""
        with self._mutex:
            return {loc for loc, count in self._running.items() if count > 0}

    def forget(self, package_ids: Set[str]) -> None:
        """Drop settled transfers for ids whose entries were removed."""
        with self._mutex:
            for key in [k for k, t in self._transfers.items() if k[0] in package_ids and t.finishing.done()]:
                del self._transfers[key]

    def fetch_package(self, opts: FetchPackageToStoreOptions) -> FetchHandle:
        """Start (or join) the fetch of ``opts.package_id``.

        Returns immediately; must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        key = (opts.package_id, opts.target_engine)
        with self._mutex:
            existing = self._transfers.get(key)
            if existing is not None and not opts.force:
                if is_debug_enabled(logger):
                    logger.debug(
                        "Attaching to existing fetch of %s",
                        opts.package_id,
                        extra=extra_context(event="fetch_dedup", component="fetch", package_id=opts.package_id),
                    )
                return existing.handle(opts.fetch_raw_manifest)

            transfer = _Transfer(
                location=self.location_for(opts.package_id),
                files=loop.create_future(),
                finishing=loop.create_future(),
                manifest=loop.create_future(),
            )
            for future in (transfer.files, transfer.finishing, transfer.manifest):
                future.add_done_callback(_mark_retrieved)
            self._transfers[key] = transfer
            self._running[transfer.location] = self._running.get(transfer.location, 0) + 1

        transfer.task = loop.create_task(self._run(opts, key, transfer))
        return transfer.handle(opts.fetch_raw_manifest)

    async def _run(self, opts: FetchPackageToStoreOptions, key, transfer: _Transfer) -> None:
        try:
            async with self._locker.hold(opts.package_id):
                await self._fetch_to_store(opts, transfer)
        except asyncio.CancelledError:
            for future in (transfer.files, transfer.manifest, transfer.finishing):
                future.cancel()
            self._drop(key, transfer)
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            error = exc if isinstance(exc, FetchError) else FetchError(
                f"Fetching {opts.package_id} failed: {exc}", package_id=opts.package_id
            )
            if error is not exc:
                error.__cause__ = exc
            if error.package_id is None:
                error.package_id = opts.package_id
            logger.error(
                "Fetch failed for %s: %s",
                opts.package_id,
                error,
                extra=extra_context(event="fetch_failed", component="fetch", package_id=opts.package_id),
            )
            transfer.fail(error)
            self._drop(key, transfer)
        finally:
            with self._mutex:
                self._running[transfer.location] -= 1
                if self._running[transfer.location] <= 0:
                    del self._running[transfer.location]

    def _drop(self, key, transfer: _Transfer) -> None:
        """Forget a failed transfer so a reissued call starts over."""
        with self._mutex:
            if self._transfers.get(key) is transfer:
                del self._transfers[key]

    async def _fetch_to_store(self, opts: FetchPackageToStoreOptions, transfer: _Transfer) -> None:
        location = transfer.location
        target = package_dir(location)

        if not opts.force:
            cached = await asyncio.to_thread(self._read_complete_entry, location)
            if cached is not None:
                logger.debug("Store hit for %s", opts.package_id)
                transfer.files.set_result(PackageFilesResponse(from_store=True, filenames=cached))
                await self._settle_manifest(transfer, target)
                transfer.finishing.set_result(None)
                return

        await asyncio.to_thread(self._discard_entry, location)
        staging = os.path.join(location, f"{STAGING_PREFIX}{uuid.uuid4().hex}")

        def _on_manifest(manifest: Dict[str, Any]) -> None:
            if not transfer.manifest.done():
                transfer.manifest.set_result(manifest)

        try:
            filenames = await self._transport.fetch(
                opts.resolution,
                staging,
                priority=opts.download_priority,
                on_manifest=_on_manifest,
            )
            await asyncio.to_thread(os.replace, staging, target)
        finally:
            await asyncio.to_thread(remove_path, staging)

        transfer.files.set_result(PackageFilesResponse(from_store=False, filenames=filenames))
        await self._settle_manifest(transfer, target)

        await asyncio.to_thread(self._write_integrity, opts, location, filenames)
        transfer.finishing.set_result(None)
        logger.info(
            "Added %s to the store",
            opts.package_id,
            extra=extra_context(
                event="store_add",
                component="fetch",
                package_id=opts.package_id,
                files=len(filenames),
            ),
        )

    @staticmethod
    async def _settle_manifest(transfer: _Transfer, target: str) -> None:
        """A missing or broken manifest fails only the manifest signal."""
        if transfer.manifest.done():
            return
        try:
            manifest = await asyncio.to_thread(read_manifest, target)
        except FetchError as exc:
            transfer.manifest.set_exception(exc)
        else:
            transfer.manifest.set_result(manifest)

    def _read_complete_entry(self, location: str) -> Optional[List[str]]:
        """Filenames of a valid entry, or None when it must be (re)fetched."""
        record = read_integrity_record(location)
        if record is None:
            return None
        files = record.get("files") or {}
        root = package_dir(location)
        for name, info in files.items():
            path = os.path.join(root, *name.split("/"))
            try:
                size = os.path.getsize(path)
            except OSError:
                logger.warning("Store entry %s is missing %s; refetching", location, name)
                return None
            if size != info.get("size"):
                logger.warning("Store entry %s has a modified %s; refetching", location, name)
                return None
            if self._verify and file_integrity(path, info.get("algorithm", DEFAULT_ALGORITHM)) != info.get("integrity"):
                logger.warning("Store entry %s failed verification of %s; refetching", location, name)
                return None
        return sorted(files)

    @staticmethod
    def _discard_entry(location: str) -> None:
        """Remove the completion record first so a crash mid-way leaves no valid entry."""
        remove_path(integrity_path(location))
        remove_path(package_dir(location))
        os.makedirs(location, exist_ok=True)

    @staticmethod
    def _write_integrity(opts: FetchPackageToStoreOptions, location: str, filenames: List[str]) -> None:
        root = package_dir(location)
        files = {}
        for name in filenames:
            path = os.path.join(root, *name.split("/"))
            files[name] = {
                "algorithm": DEFAULT_ALGORITHM,
                "integrity": file_integrity(path),
                "size": os.path.getsize(path),
                "mode": os.stat(path).st_mode & 0o777,
            }
        atomic_write_json(
            integrity_path(location),
            {
                "id": opts.package_id,
                "resolution_integrity": getattr(opts.resolution, "integrity", None),
                "fetched_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                "files": files,
            },
        )
