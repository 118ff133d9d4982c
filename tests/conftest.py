"""Shared fakes for store tests."""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import pytest

from resolving.ids import create_package_id
from resolving.models import ResolveResult, TarballResolution
from store.controller import StoreController
from store.fetch import FetchEngine
from store.importer import ImportEngine
from store.locking import StoreLock
from store.models import FetchPackageToStoreOptions

REGISTRY = "https://registry.npmjs.org/"


def package_files(name: str, version: str) -> Dict[str, str]:
    """Minimal package content keyed by relative path."""
    return {
        "package.json": json.dumps({"name": name, "version": version}),
        "index.js": f"module.exports = '{name}@{version}';\n",
        "lib/util.js": "exports.noop = () => {};\n",
    }


def tarball_for(name: str, version: str) -> TarballResolution:
    return TarballResolution(
        tarball=f"{REGISTRY}{name}/-/{name.split('/')[-1]}-{version}.tgz",
        registry=REGISTRY,
    )


def fetch_options(name: str, version: str, **overrides) -> FetchPackageToStoreOptions:
    values = dict(
        package_id=create_package_id(REGISTRY, name, version),
        resolution=tarball_for(name, version),
        prefix="/project",
        pkg_name=name,
    )
    values.update(overrides)
    return FetchPackageToStoreOptions(**values)


class FakeTransport:
    """Writes canned package files instead of downloading anything.

    ``gate`` (an asyncio.Event set by the test) holds every transfer until
    released; ``failures`` makes the next N calls raise.
    """

    def __init__(self, delay: float = 0.0):
        self.calls: List[str] = []
        self.delay = delay
        self.gate: Optional[asyncio.Event] = None
        self.failures = 0

    async def fetch(self, resolution, target_dir, *, priority=0, on_manifest=None):
        self.calls.append(resolution.tarball)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        # ".../left-pad/-/left-pad-1.3.0.tgz" -> ("left-pad", "1.3.0")
        base = resolution.tarball.rsplit("/-/", 1)
        name = base[0][len(REGISTRY):]
        version = base[1][len(name.split("/")[-1]) + 1:-len(".tgz")]
        os.makedirs(target_dir, exist_ok=True)
        if self.failures:
            self.failures -= 1
            with open(os.path.join(target_dir, "partial.js"), "w", encoding="utf-8") as fh:
                fh.write("partial")
            raise OSError("connection reset")
        files = package_files(name, version)
        for relative, content in files.items():
            path = os.path.join(target_dir, *relative.split("/"))
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(content)
        if on_manifest is not None:
            on_manifest(json.loads(files["package.json"]))
        return sorted(files)


class FakeResolver:
    """Resolves every name to a fixed version from ``versions``."""

    def __init__(self, versions: Dict[str, str], with_manifest: bool = True):
        self.versions = versions
        self.with_manifest = with_manifest
        self.calls: List[str] = []

    async def resolve(self, wanted, context) -> ResolveResult:
        self.calls.append(wanted.alias)
        version = self.versions[wanted.alias]
        manifest: Optional[Dict[str, Any]] = None
        if self.with_manifest:
            manifest = {"name": wanted.alias, "version": version}
        return ResolveResult(
            id=create_package_id(context.registry, wanted.alias, version),
            resolution=tarball_for(wanted.alias, version),
            manifest=manifest,
            latest=version,
            resolved_via="fake",
            normalized_pref=wanted.pref or f"^{version}",
        )


def make_engine(store_dir: str, transport, verify: bool = True) -> FetchEngine:
    locker = StoreLock(os.path.join(store_dir, "_locks"), poll_interval=0.01)
    return FetchEngine(store_dir, transport, locker, verify_store_integrity=verify)


def make_controller(store_dir: str, transport, resolver=None, engine: Optional[str] = None) -> StoreController:
    fetch_engine = make_engine(store_dir, transport)
    return StoreController(
        store_dir,
        resolver or FakeResolver({}),
        fetch_engine,
        ImportEngine(side_effects_cache_read=engine is not None, target_engine=engine),
        fetch_engine._locker,
    )


@pytest.fixture
def store_dir(tmp_path):
    path = tmp_path / "store"
    path.mkdir()
    return str(path)


@pytest.fixture
def transport():
    return FakeTransport()
