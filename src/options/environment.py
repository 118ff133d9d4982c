"""Host facts consumed by option resolution.

Kept behind a small value object so tests can simulate any platform.
"""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass
from typing import Optional

from constants import Constants

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "aarch64": "arm64",
    "armv7l": "arm",
}


@dataclass(frozen=True)
class EnvironmentFacts:
    """Snapshot of the host the install runs on."""

    platform: str
    arch: str
    runtime_version: str
    cwd: str
    uid: Optional[int] = None
    # True when the process can both read and change its uid/gid.
    can_switch_identity: bool = False
    home: str = "~"
    store_dir_override: Optional[str] = None

    @classmethod
    def detect(cls) -> "EnvironmentFacts":
        """Read the facts of the running interpreter."""
        can_switch = all(
            hasattr(os, attr) for attr in ("getuid", "setuid", "getgid", "setgid")
        )
        machine = platform.machine().lower()
        return cls(
            platform=sys.platform,
            arch=_ARCH_ALIASES.get(machine, machine or "unknown"),
            runtime_version=platform.python_version(),
            cwd=os.getcwd(),
            uid=os.getuid() if hasattr(os, "getuid") else None,
            can_switch_identity=can_switch,
            home=os.path.expanduser("~"),
            store_dir_override=os.environ.get(Constants.ENV_STORE_DIR) or None,
        )

    @property
    def is_windows_family(self) -> bool:
        return self.platform in ("win32", "cygwin")

    @property
    def unsafe_perm(self) -> bool:
        """Lifecycle scripts run as the current user unless we are root on POSIX."""
        return (
            self.is_windows_family
            or not self.can_switch_identity
            or self.uid != 0
        )

    def default_engine(self) -> str:
        """Target engine key used by the side-effects cache."""
        major_minor = ".".join(self.runtime_version.split(".")[:2])
        return f"{self.platform}-{self.arch}-python{major_minor}"
