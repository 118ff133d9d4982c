"""Store bookkeeping: which project prefixes use which package ids."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Dict, Iterable, List, Optional, Set

from constants import Constants
from common.errors import StoreError
from common.fs import atomic_write_json
from resolving.ids import parse_package_id
from resolving.semver import satisfies, selector_kind
from resolving.models import PreferredKind

logger = logging.getLogger(__name__)


def split_query(query: str):
    """Split ``name@range`` at the last ``@`` that is not the scope marker."""
    index = query.rfind("@")
    if index > 0:
        return query[:index], query[index + 1:]
    return query, None


def query_matches(query: str, package_id: str) -> bool:
    """True when ``query`` (an id, a name or ``name@range``) selects ``package_id``."""
    if query == package_id:
        return True
    parts = parse_package_id(package_id)
    if parts is None:
        return False
    name, selector = split_query(query)
    if name != parts.name:
        return False
    if selector is None:
        return True
    if selector_kind(selector) == PreferredKind.TAG:
        return False
    return satisfies(parts.version, selector)


class StoreState:
    """The connection table persisted as ``store.json``.

    Several processes may share one store. Each instance remembers the
    prefixes it changed; ``refresh`` re-reads the file and keeps this
    process's version of those prefixes only, so a save never drops the
    connections another run persisted in the meantime.
    """

    def __init__(self, path: str, connections: Optional[Dict[str, List[str]]] = None):
        self.path = path
        self.connections: Dict[str, List[str]] = connections or {}
        self._changed: Set[str] = set()
        self._writer = asyncio.Lock()

    @staticmethod
    def _read(path: str) -> Dict[str, List[str]]:
        """Parse the table at ``path``; a missing file yields an empty table.

        Raises:
            StoreError: If the file exists but cannot be parsed.
        """
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Cannot read store state {path}: {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("connections", {}), dict):
            raise StoreError(f"Malformed store state in {path}")
        if data.get("version", Constants.STORE_STATE_VERSION) != Constants.STORE_STATE_VERSION:
            raise StoreError(f"Unsupported store state version {data.get('version')!r} in {path}")
        return {
            prefix: sorted(set(ids))
            for prefix, ids in data.get("connections", {}).items()
            if isinstance(ids, list)
        }

    @classmethod
    def load(cls, store_dir: str) -> "StoreState":
        """Read the table of ``store_dir``.

        Raises:
            StoreError: If the file exists but cannot be parsed.
        """
        path = os.path.join(store_dir, Constants.STORE_STATE_FILE)
        return cls(path, cls._read(path))

    def writer(self) -> asyncio.Lock:
        """The single-writer lock shared by mutations, prune and save."""
        return self._writer

    def update_connections(
        self,
        prefix: str,
        add_dependencies: Iterable[str] = (),
        remove_dependencies: Iterable[str] = (),
        prune: bool = False,
    ) -> None:
        """Apply one connection change; callers hold ``writer()``."""
        add = set(add_dependencies)
        current: Set[str] = set() if prune else set(self.connections.get(prefix, ()))
        current |= add
        current -= set(remove_dependencies) - add
        if current:
            self.connections[prefix] = sorted(current)
        else:
            self.connections.pop(prefix, None)
        self._changed.add(prefix)

    def refresh(self) -> None:
        """Merge the persisted table with the prefixes changed here.

        Callers hold the store-wide state lock so no other process writes
        between this read and the following ``save``.
        """
        merged = self._read(self.path)
        for prefix in self._changed:
            if prefix in self.connections:
                merged[prefix] = self.connections[prefix]
            else:
                merged.pop(prefix, None)
        self.connections = merged

    def referenced_ids(self) -> Set[str]:
        return {pkg for ids in self.connections.values() for pkg in ids}

    def usages(self) -> Dict[str, List[str]]:
        """Package id to the sorted prefixes depending on it."""
        result: Dict[str, Set[str]] = {}
        for prefix, ids in self.connections.items():
            for pkg in ids:
                result.setdefault(pkg, set()).add(prefix)
        return {pkg: sorted(prefixes) for pkg, prefixes in result.items()}

    def save(self) -> None:
        atomic_write_json(
            self.path,
            {
                "version": Constants.STORE_STATE_VERSION,
                "connections": {prefix: sorted(ids) for prefix, ids in self.connections.items()},
            },
        )
        self._changed.clear()
        logger.debug("Saved store state to %s", self.path)
