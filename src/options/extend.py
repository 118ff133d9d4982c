"""Install option resolution.

``extend_install_options`` turns the partial options a caller (CLI, rc file,
programmatic use) supplies into a complete, immutable
``StrictInstallOptions`` record. Everything downstream reads options from
that record only.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, fields
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from constants import Constants
from common.errors import ConfigurationError
from common.logging_utils import extra_context, is_debug_enabled
from options.environment import EnvironmentFacts
from options.registries import DEFAULT_REGISTRIES, normalize_registries

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")

# Historical option names accepted from rc files.
_ALIASES = {
    "raw_npm_config": "raw_config",
    "node_version": "runtime_version",
    "store_dir": "store",
    "store_path": "store",
}

_STDIO_MODES = ("inherit", "pipe")


@dataclass(frozen=True)
class PackageManager:
    """Name and version of the invoking tool."""

    name: str
    version: str


@dataclass(frozen=True)
class StrictInstallOptions:  # pylint: disable=too-many-instance-attributes
    """Fully resolved install configuration; created once per install run."""

    bin: str
    child_concurrency: int
    depth: int
    engine_strict: bool
    force: bool
    force_shared_lockfile: bool
    frozen_lockfile: bool
    hooks: Mapping[str, Any]
    ignore_current_prefs: bool
    ignore_scripts: bool
    include: Mapping[str, bool]
    independent_leaves: bool
    local_packages: Mapping[str, Any]
    lock: bool
    lock_stale_duration: int
    lockfile: bool
    lockfile_directory: str
    lockfile_only: bool
    locks: str
    own_lifecycle_hooks_stdio: str
    package_manager: PackageManager
    prefer_frozen_lockfile: bool
    prefix: str
    prune_lockfile_importers: bool
    prune_store: bool
    raw_config: Mapping[str, Any]
    registries: Mapping[str, str]
    repeat_install_depth: int
    runtime_version: str
    shamefully_flatten: bool
    side_effects_cache_read: bool
    side_effects_cache_write: bool
    store: str
    strict_peer_dependencies: bool
    tag: str
    target_engine: str
    unsafe_perm: bool
    update: bool
    user_agent: str
    verify_store_integrity: bool


_FIELD_NAMES = frozenset(f.name for f in fields(StrictInstallOptions))


def normalize_option_key(key: str) -> str:
    """Map ``lockfileOnly`` / ``lockfile-only`` / ``lockfile_only`` to one form."""
    snake = _CAMEL_BOUNDARY.sub(r"_\1", key).replace("-", "_").lower()
    return _ALIASES.get(snake, snake)


def resolve_store_path(
    store: Optional[str], prefix: str, env: EnvironmentFacts
) -> str:
    """Absolute store directory; relative paths are anchored at ``prefix``."""
    raw = store or env.store_dir_override or Constants.DEFAULT_STORE_DIR
    if raw.startswith("~"):
        raw = env.home + raw[1:]
    if not os.path.isabs(raw):
        raw = os.path.join(prefix, raw)
    return os.path.normpath(raw)


def _defaults(user: Mapping[str, Any], env: EnvironmentFacts) -> Dict[str, Any]:
    package_manager = user.get("package_manager") or PackageManager(
        name=Constants.PACKAGE_MANAGER_NAME,
        version=Constants.PACKAGE_MANAGER_VERSION,
    )
    if isinstance(package_manager, Mapping):
        package_manager = PackageManager(**package_manager)
    prefix = os.path.abspath(os.path.join(env.cwd, user.get("prefix") or env.cwd))
    store = resolve_store_path(user.get("store"), prefix, env)
    lockfile_directory = user.get("lockfile_directory") or prefix
    return {
        "bin": os.path.join(prefix, "node_modules", ".bin"),
        "child_concurrency": Constants.DEFAULT_CHILD_CONCURRENCY,
        "depth": 0,
        "engine_strict": False,
        "force": False,
        "force_shared_lockfile": False,
        "frozen_lockfile": False,
        "hooks": {},
        "ignore_current_prefs": False,
        "ignore_scripts": False,
        "include": {
            "dependencies": True,
            "dev_dependencies": True,
            "optional_dependencies": True,
        },
        "independent_leaves": False,
        "local_packages": {},
        "lock": True,
        "lock_stale_duration": Constants.DEFAULT_LOCK_STALE_DURATION_MS,
        "lockfile": True,
        "lockfile_directory": os.path.abspath(os.path.join(prefix, lockfile_directory)),
        "lockfile_only": False,
        "locks": os.path.join(store, Constants.LOCKS_DIR),
        "own_lifecycle_hooks_stdio": "inherit",
        "package_manager": package_manager,
        "prefer_frozen_lockfile": True,
        "prefix": prefix,
        "prune_lockfile_importers": False,
        "prune_store": False,
        "raw_config": {},
        "registries": dict(DEFAULT_REGISTRIES),
        "repeat_install_depth": -1,
        "runtime_version": env.runtime_version,
        "shamefully_flatten": False,
        "side_effects_cache_read": False,
        "side_effects_cache_write": False,
        "store": store,
        "strict_peer_dependencies": False,
        "tag": Constants.DEFAULT_TAG,
        "target_engine": env.default_engine(),
        "unsafe_perm": env.unsafe_perm,
        "update": False,
        "user_agent": (
            f"{package_manager.name}/{package_manager.version} npm/? "
            f"python/{env.runtime_version} {env.platform} {env.arch}"
        ),
        "verify_store_integrity": True,
    }


def _clean_user_options(opts: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Normalize keys and drop explicitly unset values so defaults fill them."""
    cleaned: Dict[str, Any] = {}
    unknown = []
    for key, value in (opts or {}).items():
        if value is None:
            continue
        name = normalize_option_key(key)
        if name not in _FIELD_NAMES:
            unknown.append(key)
            continue
        cleaned[name] = value
    if unknown:
        # Callers pass through keys meant for other components.
        logger.debug("Ignoring unknown install option(s): %s", ", ".join(sorted(unknown)))
    return cleaned


def _validate(opts: Mapping[str, Any]) -> None:
    if not opts["lockfile"] and opts["lockfile_only"]:
        raise ConfigurationError(
            f"Cannot generate a {Constants.WANTED_LOCKFILE} because lockfile is set to false"
        )
    if int(opts["child_concurrency"]) < 1:
        raise ConfigurationError("child_concurrency must be at least 1")
    if int(opts["lock_stale_duration"]) <= 0:
        raise ConfigurationError("lock_stale_duration must be a positive number of milliseconds")
    if opts["own_lifecycle_hooks_stdio"] not in _STDIO_MODES:
        raise ConfigurationError(
            f"own_lifecycle_hooks_stdio must be one of {', '.join(_STDIO_MODES)}"
        )


def extend_install_options(
    opts: Optional[Mapping[str, Any]] = None,
    env: Optional[EnvironmentFacts] = None,
) -> StrictInstallOptions:
    """Resolve partial install options into a ``StrictInstallOptions``.

    Args:
        opts: Partial options; camelCase, kebab-case and snake_case keys are
            accepted. ``None`` values count as unset. Never mutated.
        env: Host facts; detected from the running process when omitted.

    Returns:
        A fresh, immutable options record.

    Raises:
        ConfigurationError: An invalid option combination. Unknown keys
            are ignored.
    """
    env = env or EnvironmentFacts.detect()
    user = _clean_user_options(opts)
    defaults = _defaults(user, env)

    merged: Dict[str, Any] = {**defaults, **user}
    # The resolved store path is authoritative.
    merged["store"] = defaults["store"]
    merged["prefix"] = defaults["prefix"]
    merged["lockfile_directory"] = defaults["lockfile_directory"]
    merged["package_manager"] = defaults["package_manager"]
    _validate(merged)

    package_manager: PackageManager = merged["package_manager"]
    if merged["user_agent"].startswith("npm/"):
        merged["user_agent"] = (
            f"{package_manager.name}/{package_manager.version} {merged['user_agent']}"
        )

    merged["registries"] = normalize_registries(merged["registries"])
    raw_config = dict(merged["raw_config"])
    raw_config["registry"] = merged["registries"]["default"]
    merged["raw_config"] = raw_config

    for key in ("hooks", "include", "local_packages", "raw_config", "registries"):
        merged[key] = MappingProxyType(dict(merged[key]))
    merged["child_concurrency"] = int(merged["child_concurrency"])
    merged["lock_stale_duration"] = int(merged["lock_stale_duration"])

    if is_debug_enabled(logger):
        logger.debug(
            "Install options resolved",
            extra=extra_context(
                event="options_resolved",
                component="options",
                store=merged["store"],
                registry=merged["registries"]["default"],
            ),
        )
    return StrictInstallOptions(**merged)
