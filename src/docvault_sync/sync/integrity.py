"""Checksum computation and comparison.

Files are hashed in fixed-size chunks so large documents never need to be
held in memory.  The algorithm must match the one the document service
reports in ``RemoteNode.checksum`` (SHA-256 by default).
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from ..errors import ChecksumMismatch

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class IntegrityValidator:
    """Compute and verify content checksums.

    Args:
        algorithm: Any name accepted by ``hashlib.new()``.
        chunk_size: Read size used when hashing files.
    """

    def __init__(
        self, algorithm: str = "sha256", chunk_size: int = CHUNK_SIZE
    ) -> None:
        if algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported checksum algorithm: '{algorithm}'")
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    def file_checksum(self, path: Path) -> str:
        """Return the hex digest of the file at *path*."""
        digest = hashlib.new(self.algorithm)
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(self.chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def bytes_checksum(self, data: bytes) -> str:
        return hashlib.new(self.algorithm, data).hexdigest()

    def matches(self, path: Path, expected: str | None) -> bool:
        """``True`` if *path* hashes to *expected*.

        A missing *expected* checksum cannot be contradicted and counts as
        a match.
        """
        if not expected:
            return True
        return self.file_checksum(path) == expected.lower()

    def verify(
        self, path: Path, expected: str | None, relative_path: str
    ) -> str:
        """Hash *path* and compare against *expected*.

        Returns:
            The actual checksum.

        Raises:
            ChecksumMismatch: If *expected* is set and differs.
        """
        actual = self.file_checksum(path)
        if expected and actual != expected.lower():
            logger.warning(
                "Checksum mismatch for %s: expected %s, got %s",
                relative_path,
                expected,
                actual,
            )
            raise ChecksumMismatch(relative_path, expected, actual)
        return actual
