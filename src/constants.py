"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    CONFIG_ERROR = 3
    RESOLUTION_ERROR = 4


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PACKAGE_MANAGER_NAME = "pkgstore"
    PACKAGE_MANAGER_VERSION = "0.4.0"

    REGISTRY_URL_NPM = "https://registry.npmjs.org/"
    # Abbreviated metadata is enough for resolution and much smaller.
    PACKUMENT_ACCEPT = (
        "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"
    )
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    NETWORK_CONCURRENCY = 16
    METADATA_CACHE_TTL_SEC = 300

    WANTED_LOCKFILE = "pkgstore-lock.yaml"
    RC_FILE = ".pkgstorerc.yaml"
    STORE_STATE_FILE = "store.json"
    STORE_STATE_VERSION = 1
    INTEGRITY_FILE = "integrity.json"
    PACKAGE_DIR = "_package"  # npm names cannot start with "_"
    SIDE_EFFECTS_DIR = "_side_effects"
    LOCKS_DIR = "_locks"
    DEFAULT_STORE_DIR = "~/.pkgstore-store"
    ENV_STORE_DIR = "PKGSTORE_STORE_DIR"

    DEFAULT_CHILD_CONCURRENCY = 5
    DEFAULT_LOCK_STALE_DURATION_MS = 5 * 60 * 1000  # 5 minutes
    DEFAULT_TAG = "latest"
    LOCK_POLL_INTERVAL_SEC = 0.05

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "PKGSTORE_LOG_LEVEL"
    ENV_LOG_FORMAT = "PKGSTORE_LOG_FORMAT"
