"""Tarball transport: download, verify and unpack package archives."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import posixpath
import shutil
import tarfile
import tempfile
from typing import Any, Callable, Dict, List, Optional, Protocol

import aiohttp

from common.errors import FetchError
from common.http_client import HttpClient
from common.logging_utils import extra_context, safe_url, Timer
from resolving.models import Resolution, TarballResolution
from .integrity import IntegrityHasher

logger = logging.getLogger(__name__)

ManifestCallback = Callable[[Dict[str, Any]], None]

_CHUNK_SIZE = 64 * 1024


class Transport(Protocol):
    """Puts the files of a resolved package into ``target_dir``."""

    async def fetch(
        self,
        resolution: Resolution,
        target_dir: str,
        *,
        priority: int = 0,
        on_manifest: Optional[ManifestCallback] = None,
    ) -> List[str]:
        """Return the relative (posix) filenames written under ``target_dir``."""
        ...


def _member_path(name: str) -> Optional[str]:
    """Archive path without its top-level directory; None if unsafe or empty."""
    normalized = posixpath.normpath(name.replace("\\", "/"))
    if normalized.startswith("/") or normalized.startswith(".."):
        return None
    parts = normalized.split("/")[1:]
    if not parts or any(p in ("", ".", "..") for p in parts):
        return None
    return "/".join(parts)


def extract_tarball(
    archive_path: str, target_dir: str, on_manifest: Optional[ManifestCallback] = None
) -> List[str]:
    """Unpack a gzipped npm tarball, stripping its top-level directory.

    Only regular files are written; links and device entries are skipped.
    ``on_manifest`` is called with the parsed ``package.json`` as soon as
    that member is written, before the remaining members are unpacked.

    Raises:
        tarfile.TarError: On a corrupt archive.
        OSError: On filesystem failures.
    """
    filenames: List[str] = []
    os.makedirs(target_dir, exist_ok=True)
    with tarfile.open(archive_path, "r:*") as archive:
        for member in archive:
            if not member.isfile():
                continue
            relative = _member_path(member.name)
            if relative is None:
                logger.warning("Skipping unsafe archive entry %s", member.name)
                continue
            dest = os.path.join(target_dir, *relative.split("/"))
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            source = archive.extractfile(member)
            if source is None:
                continue
            with source, open(dest, "wb") as out:
                shutil.copyfileobj(source, out)
            os.chmod(dest, 0o755 if member.mode & 0o111 else 0o644)
            filenames.append(relative)
            if relative == "package.json" and on_manifest is not None:
                _notify_manifest(dest, on_manifest)
    return sorted(set(filenames))


def _notify_manifest(path: str, on_manifest: ManifestCallback) -> None:
    # A broken manifest is reported later by whoever reads it from disk.
    try:
        with open(path, encoding="utf-8") as fh:
            manifest = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Cannot parse %s while unpacking: %s", path, exc)
        return
    if isinstance(manifest, dict):
        on_manifest(manifest)


def read_manifest(package_dir: str) -> Dict[str, Any]:
    """Load ``package.json`` from an unpacked package."""
    path = os.path.join(package_dir, "package.json")
    try:
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise FetchError(f"Cannot read package manifest {path}: {exc}") from exc


class TarballFetcher:
    """Transport for ``TarballResolution`` over HTTP."""

    def __init__(self, http_client: HttpClient):
        self._http = http_client

    async def fetch(
        self,
        resolution: Resolution,
        target_dir: str,
        *,
        priority: int = 0,
        on_manifest: Optional[ManifestCallback] = None,
    ) -> List[str]:
        """Download ``resolution.tarball`` and unpack it into ``target_dir``.

        The archive is verified before anything is unpacked. ``on_manifest``
        runs on the event loop once ``package.json`` is unpacked, which is
        before this call returns its filenames.

        Raises:
            FetchError: Transport failure, bad status or corrupt archive.
            IntegrityError: Content does not match ``resolution.integrity``.
        """
        if not isinstance(resolution, TarballResolution):
            raise FetchError(f"Cannot fetch resolution of type {resolution.type!r} as a tarball")

        url = resolution.tarball
        notify: Optional[ManifestCallback] = None
        if on_manifest is not None:
            loop = asyncio.get_running_loop()

            def notify(manifest: Dict[str, Any]) -> None:
                loop.call_soon_threadsafe(on_manifest, manifest)

        parent = os.path.dirname(os.path.abspath(target_dir))
        os.makedirs(parent, exist_ok=True)
        fd, archive_path = tempfile.mkstemp(prefix=".download-", suffix=".tgz", dir=parent)
        try:
            with Timer() as timer:
                with os.fdopen(fd, "wb") as archive:
                    await self._download(url, archive, resolution.integrity, priority)
                filenames = await asyncio.to_thread(extract_tarball, archive_path, target_dir, notify)
            logger.info(
                "Fetched %s (%d files)",
                safe_url(url),
                len(filenames),
                extra=extra_context(
                    event="tarball_fetched",
                    component="tarball",
                    duration_ms=timer.duration_ms(),
                ),
            )
        except tarfile.TarError as exc:
            raise FetchError(f"Corrupt archive from {safe_url(url)}: {exc}") from exc
        except OSError as exc:
            raise FetchError(f"Cannot unpack {safe_url(url)}: {exc}") from exc
        finally:
            try:
                os.remove(archive_path)
            except FileNotFoundError:
                pass
        return filenames

    async def _download(self, url: str, sink, integrity: Optional[str], priority: int) -> None:
        hasher = IntegrityHasher(integrity)
        try:
            async with self._http.open_response(url, priority=priority) as response:
                if response.status != 200:
                    raise FetchError(f"GET {safe_url(url)} returned {response.status}")
                async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
                    hasher.update(chunk)
                    sink.write(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(f"Download of {safe_url(url)} failed: {exc}") from exc
        hasher.verify(source=safe_url(url))
