"""Materialize store entries into project directories."""

from __future__ import annotations

import asyncio
import filecmp
import logging
import os
import shutil
import uuid
from typing import List, Optional

from common.errors import PackageImportError
from common.fs import remove_path
from common.logging_utils import extra_context
from .layout import list_files, package_dir, side_effects_dir
from .models import PackageFilesResponse

logger = logging.getLogger(__name__)


def _link_or_copy(source: str, dest: str) -> None:
    try:
        os.link(source, dest)
    except OSError:
        shutil.copy2(source, dest)


def _same_file(source: str, dest: str) -> bool:
    try:
        if os.path.samefile(source, dest):
            return True
        return filecmp.cmp(source, dest, shallow=True)
    except OSError:
        return False


class ImportEngine:
    """Links the files of a store entry into ``node_modules``-style targets."""

    def __init__(self, side_effects_cache_read: bool = False, target_engine: Optional[str] = None):
        self.side_effects_cache_read = side_effects_cache_read
        self.target_engine = target_engine

    def _source(self, from_: str, files_response: PackageFilesResponse):
        if self.side_effects_cache_read and self.target_engine:
            built = side_effects_dir(from_, self.target_engine)
            if os.path.isdir(built):
                logger.debug("Importing cached build for %s from %s", self.target_engine, built)
                return built, list_files(built)
        pristine = package_dir(from_)
        if os.path.isdir(pristine):
            return pristine, list(files_response.filenames)
        return from_, list(files_response.filenames)

    async def import_package(
        self,
        from_: str,
        to: str,
        files_response: PackageFilesResponse,
        force: bool = False,
    ) -> bool:
        """Import ``from_`` (a store location) into ``to``.

        Returns True when files were written, False when ``to`` was already
        up to date.

        Raises:
            PackageImportError: On any filesystem failure.
        """
        try:
            return await asyncio.to_thread(self._import, from_, to, files_response, force)
        except OSError as exc:
            raise PackageImportError(f"Cannot import {from_} into {to}: {exc}") from exc

    def _import(self, from_: str, to: str, files_response: PackageFilesResponse, force: bool) -> bool:
        source, filenames = self._source(from_, files_response)
        if files_response.from_store and not force and self._up_to_date(source, to, filenames):
            logger.debug("%s is up to date", to)
            return False

        staging = f"{to.rstrip(os.sep)}_tmp_{uuid.uuid4().hex}"
        try:
            for name in filenames:
                parts = name.split("/")
                dest = os.path.join(staging, *parts)
                os.makedirs(os.path.dirname(dest), exist_ok=True)
                _link_or_copy(os.path.join(source, *parts), dest)
            os.makedirs(staging, exist_ok=True)
            remove_path(to)
            os.replace(staging, to)
        finally:
            remove_path(staging)

        logger.info(
            "Imported %s",
            to,
            extra=extra_context(event="package_imported", component="import", files=len(filenames)),
        )
        return True

    @staticmethod
    def _up_to_date(source: str, to: str, filenames: List[str]) -> bool:
        if not os.path.isdir(to) or sorted(list_files(to)) != sorted(filenames):
            return False
        return all(
            _same_file(os.path.join(source, *name.split("/")), os.path.join(to, *name.split("/")))
            for name in filenames
        )
