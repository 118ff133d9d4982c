"""Registry URL normalization."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Mapping, Optional

from constants import Constants

DEFAULT_REGISTRIES: Mapping[str, str] = MappingProxyType(
    {"default": Constants.REGISTRY_URL_NPM}
)


def normalize_registry_url(url: str) -> str:
    """Return ``url`` with exactly one trailing slash."""
    return url.rstrip("/") + "/"


def normalize_registries(registries: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Return a fresh mapping with a ``default`` entry and normalized URLs.

    Keys other than ``default`` are npm scopes (``@scope``); a missing ``@``
    is added.
    """
    result: Dict[str, str] = {"default": DEFAULT_REGISTRIES["default"]}
    for key, url in (registries or {}).items():
        if not url:
            continue
        if key != "default" and not key.startswith("@"):
            key = f"@{key}"
        result[key] = normalize_registry_url(url)
    return result


def pick_registry_for_package(registries: Mapping[str, str], package_name: str) -> str:
    """Scoped packages use their scope's registry when one is configured."""
    if package_name.startswith("@") and "/" in package_name:
        scope = package_name.split("/", 1)[0]
        if scope in registries:
            return registries[scope]
    return registries.get("default", DEFAULT_REGISTRIES["default"])
