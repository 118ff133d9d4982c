"""npm-flavoured semver helpers on top of ``semantic_version``."""

import re
from typing import Iterable, List, Optional

import semantic_version

from .models import PreferredKind


def parse_version(version: str) -> Optional[semantic_version.Version]:
    """Parse a version string, tolerating a leading ``v`` or ``=``."""
    try:
        return semantic_version.Version(version.strip().lstrip("v="))
    except ValueError:
        return None


def _normalize_spec(spec_str: str) -> str:
    """Normalize npm range syntax (hyphen, x-ranges) into SimpleSpec-compatible form."""
    s = spec_str.strip()

    # Hyphen ranges: "1.2.3 - 1.4.5" => ">=1.2.3,<=1.4.5"
    m = re.match(r'^\s*([0-9A-Za-z\.\-\+]+)\s+-\s+([0-9A-Za-z\.\-\+]+)\s*$', s)
    if m:
        return f">={m.group(1)},<={m.group(2)}"

    s2 = s.replace('*', 'x').lower()
    m = re.match(r'^\s*(\d+)\.(\d+)\.x\s*$', s2)
    if m:
        major, minor = int(m.group(1)), int(m.group(2))
        return f">={major}.{minor}.0,<{major}.{minor + 1}.0"

    m = re.match(r'^\s*(\d+)(?:\.x)?\s*$', s2)
    if m:
        major = int(m.group(1))
        return f">={major}.0.0,<{major + 1}.0.0"

    return spec_str


def parse_range(spec_str: str):
    """Return a spec object exposing ``match``/``select``, or None if unparsable."""
    spec_str = spec_str.strip() or "*"
    try:
        return semantic_version.NpmSpec(spec_str)
    except ValueError:
        pass
    try:
        return semantic_version.SimpleSpec(_normalize_spec(spec_str))
    except ValueError:
        return None


def selector_kind(selector: str) -> PreferredKind:
    """Classify a selector as exact version, range or dist-tag."""
    selector = selector.strip()
    if parse_version(selector) is not None:
        return PreferredKind.VERSION
    if parse_range(selector) is not None:
        return PreferredKind.RANGE
    return PreferredKind.TAG


def satisfies(version: str, selector: str) -> bool:
    """True when ``version`` matches the npm range ``selector``."""
    parsed = parse_version(version)
    if parsed is None:
        return False
    spec = parse_range(selector)
    if spec is None:
        return False
    return spec.match(parsed)


def max_satisfying(versions: Iterable[str], selector: str) -> Optional[str]:
    """Highest version in ``versions`` matching ``selector``.

    Returns the original string so registry keys round-trip unchanged.
    """
    spec = parse_range(selector)
    if spec is None:
        return None
    best = None
    best_raw = None
    for raw in versions:
        parsed = parse_version(raw)
        if parsed is None or not spec.match(parsed):
            continue
        if best is None or parsed > best:
            best, best_raw = parsed, raw
    return best_raw


def sort_versions(versions: Iterable[str]) -> List[str]:
    """Valid versions in ascending order; invalid ones are dropped."""
    parsed = [(parse_version(v), v) for v in versions]
    return [raw for ver, raw in sorted((p for p in parsed if p[0] is not None), key=lambda p: p[0])]
