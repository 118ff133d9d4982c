"""Error taxonomy shared by the store, resolver and fetchers.

Every error carries a stable ``code`` so the CLI and callers can branch on
the failure class without string matching.
"""

from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Base class for all store subsystem failures."""

    code = "ERR_PKGSTORE"

    def __init__(self, message: str, *, package_id: Optional[str] = None):
        super().__init__(message)
        self.package_id = package_id


class ConfigurationError(StoreError):
    """Invalid option combination; raised before any I/O."""

    code = "ERR_PKGSTORE_CONFIG"


class ResolutionError(StoreError):
    """Unsatisfiable selector, unreachable registry or missing local path."""

    code = "ERR_PKGSTORE_RESOLUTION"


class FetchError(StoreError):
    """Transport failure or corrupt archive."""

    code = "ERR_PKGSTORE_FETCH"


class IntegrityError(FetchError):
    """Downloaded bytes do not match the expected integrity."""

    code = "ERR_PKGSTORE_INTEGRITY"


class PackageImportError(StoreError):
    """Filesystem failure while materializing a package."""

    code = "ERR_PKGSTORE_IMPORT"
