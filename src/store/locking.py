"""Cross-process store locks.

One lock file per package identity lives in the locks directory. A lock
older than the staleness window is assumed to belong to a dead process and
is broken. This prevents deadlocks but does not guarantee correctness.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from constants import Constants
from common.logging_utils import extra_context

logger = logging.getLogger(__name__)


class StoreLock:
    """Async, file-based mutual exclusion keyed by arbitrary strings."""

    def __init__(
        self,
        locks_dir: str,
        *,
        stale_duration_ms: int = Constants.DEFAULT_LOCK_STALE_DURATION_MS,
        poll_interval: float = Constants.LOCK_POLL_INTERVAL_SEC,
        enabled: bool = True,
    ):
        self.locks_dir = locks_dir
        self.stale_duration_ms = stale_duration_ms
        self.poll_interval = poll_interval
        self.enabled = enabled

    def lock_path(self, key: str) -> str:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return os.path.join(self.locks_dir, f"{digest}.lock")

    def is_stale(self, path: str) -> bool:
        try:
            age_ms = (time.time() - os.path.getmtime(path)) * 1000
        except FileNotFoundError:
            return False
        return age_ms > self.stale_duration_ms

    def _try_acquire(self, path: str, key: str) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"pid={os.getpid()}\nkey={key}\n")
        return True

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        if not self.enabled:
            yield
            return
        os.makedirs(self.locks_dir, exist_ok=True)
        path = self.lock_path(key)
        waited = False
        while not self._try_acquire(path, key):
            if self.is_stale(path):
                logger.warning(
                    "Breaking stale store lock for %s",
                    key,
                    extra=extra_context(event="stale_lock", component="locking", lock=path),
                )
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass
                continue
            if not waited:
                logger.debug("Waiting for store lock on %s", key)
                waited = True
            await asyncio.sleep(self.poll_interval)
        try:
            yield
        finally:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
