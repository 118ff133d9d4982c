"""Content-addressed package store."""

from .controller import StoreController
from .models import (
    FetchHandle,
    FetchPackageToStoreOptions,
    LocalPackageResponse,
    ManifestPending,
    ManifestReady,
    PackageFilesResponse,
    PackageLocation,
    PackageResponse,
    PackageUsages,
    RegistryPackageResponse,
    RequestPackageOptions,
    resolve_manifest,
)

__all__ = [
    "StoreController",
    "FetchHandle",
    "FetchPackageToStoreOptions",
    "LocalPackageResponse",
    "ManifestPending",
    "ManifestReady",
    "PackageFilesResponse",
    "PackageLocation",
    "PackageResponse",
    "PackageUsages",
    "RegistryPackageResponse",
    "RequestPackageOptions",
    "resolve_manifest",
]
