"""Tests for sync/integrity.py -- checksum computation and verification."""

import hashlib

import pytest

from docvault_sync.errors import ChecksumMismatch
from docvault_sync.sync.integrity import IntegrityValidator


class TestIntegrityValidator:
    """Tests for IntegrityValidator."""

    def test_file_checksum_matches_hashlib(self, tmp_path):
        """Chunked hashing gives the same digest as hashing in one go."""
        data = b"x" * 200_000
        path = tmp_path / "big.bin"
        path.write_bytes(data)

        validator = IntegrityValidator(chunk_size=1024)
        assert validator.file_checksum(path) == hashlib.sha256(data).hexdigest()

    def test_bytes_checksum(self):
        validator = IntegrityValidator()
        assert validator.bytes_checksum(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_other_algorithm(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        validator = IntegrityValidator("md5")
        assert validator.file_checksum(path) == hashlib.md5(b"hello").hexdigest()

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValueError, match="Unsupported checksum algorithm"):
            IntegrityValidator("crc-nope")

    def test_matches_is_case_insensitive(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        expected = hashlib.sha256(b"hello").hexdigest().upper()
        assert IntegrityValidator().matches(path, expected)

    def test_matches_without_expected(self, tmp_path):
        """A missing expected checksum cannot be contradicted."""
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        assert IntegrityValidator().matches(path, None)

    def test_verify_returns_actual(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")
        expected = hashlib.sha256(b"hello").hexdigest()
        assert IntegrityValidator().verify(path, expected, "a.txt") == expected

    def test_verify_mismatch_raises(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello")

        with pytest.raises(ChecksumMismatch) as exc_info:
            IntegrityValidator().verify(path, "deadbeef", "docs/a.txt")

        assert exc_info.value.relative_path == "docs/a.txt"
        assert exc_info.value.expected == "deadbeef"
        assert exc_info.value.actual == hashlib.sha256(b"hello").hexdigest()
