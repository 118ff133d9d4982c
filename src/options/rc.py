"""Loading of ``.pkgstorerc.yaml`` option files."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import yaml

from constants import Constants
from common.errors import ConfigurationError

logger = logging.getLogger(__name__)


def find_rc_file(prefix: str) -> Optional[str]:
    """Return the rc file path inside ``prefix`` if one exists."""
    candidate = os.path.join(prefix, Constants.RC_FILE)
    return candidate if os.path.isfile(candidate) else None


def load_rc_file(path: str) -> Dict[str, Any]:
    """Read install options from a YAML rc file.

    Args:
        path: Path to the YAML document. Its top level must be a mapping.

    Returns:
        The raw option mapping; keys are normalized later by
        ``extend_install_options``.

    Raises:
        ConfigurationError: When the file is unreadable or malformed.
    """
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level")
    logger.debug("Loaded %d option(s) from %s", len(data), path)
    return data
