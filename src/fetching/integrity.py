"""Subresource-integrity (SRI) primitives.

npm registries publish ``dist.integrity`` strings such as
``sha512-<base64>``; old packages only carry a hex ``shasum`` (sha1).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import List, Optional, Tuple

from common.errors import IntegrityError

# Strongest first.
SUPPORTED_ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")
DEFAULT_ALGORITHM = "sha512"
_CHUNK = 64 * 1024


def parse_integrity(integrity: str) -> List[Tuple[str, str]]:
    """Return ``(algorithm, base64 digest)`` pairs for supported algorithms."""
    pairs = []
    for token in integrity.split():
        algorithm, sep, digest = token.partition("-")
        if not sep:
            continue
        digest = digest.split("?", 1)[0]
        if algorithm in SUPPORTED_ALGORITHMS and digest:
            pairs.append((algorithm, digest))
    return pairs


def integrity_from_shasum(shasum: str) -> str:
    """Convert a hex sha1 ``shasum`` into an SRI string."""
    return "sha1-" + base64.b64encode(bytes.fromhex(shasum)).decode("ascii")


def format_integrity(algorithm: str, digest: bytes) -> str:
    return f"{algorithm}-{base64.b64encode(digest).decode('ascii')}"


class IntegrityHasher:
    """Incrementally hash a byte stream and check it against an SRI string.

    Without an expected integrity the stream is hashed with sha512 and
    ``verify`` only reports the computed value.
    """

    def __init__(self, expected: Optional[str] = None):
        self.expected = expected
        pairs = parse_integrity(expected) if expected else []
        if expected and not pairs:
            raise IntegrityError(f"Unsupported integrity value: {expected}")
        rank = {name: index for index, name in enumerate(SUPPORTED_ALGORITHMS)}
        self._expected_pairs = sorted(pairs, key=lambda p: rank[p[0]])
        self.algorithm = self._expected_pairs[0][0] if pairs else DEFAULT_ALGORITHM
        self._hash = hashlib.new(self.algorithm)

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()

    def verify(self, source: str = "") -> str:
        """Return the computed SRI string.

        Raises:
            IntegrityError: When it does not match any expected digest of the
                chosen algorithm.
        """
        actual = format_integrity(self.algorithm, self._hash.digest())
        if not self._expected_pairs:
            return actual
        candidates = [
            f"{algo}-{digest}" for algo, digest in self._expected_pairs if algo == self.algorithm
        ]
        if not any(hmac.compare_digest(actual, c) for c in candidates):
            raise IntegrityError(
                f"Integrity check failed for {source or 'stream'}: "
                f"expected {candidates[0]}, got {actual}"
            )
        return actual


def file_integrity(path: str, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """SRI string of a file's content."""
    digest = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return format_integrity(algorithm, digest.digest())
