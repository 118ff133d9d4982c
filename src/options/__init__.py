"""Install option resolution."""

from .environment import EnvironmentFacts
from .extend import PackageManager, StrictInstallOptions, extend_install_options
from .rc import find_rc_file, load_rc_file
from .registries import DEFAULT_REGISTRIES, normalize_registries, pick_registry_for_package

__all__ = [
    "EnvironmentFacts",
    "PackageManager",
    "StrictInstallOptions",
    "extend_install_options",
    "find_rc_file",
    "load_rc_file",
    "DEFAULT_REGISTRIES",
    "normalize_registries",
    "pick_registry_for_package",
]
