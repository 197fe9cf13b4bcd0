"""
Tests for the Evidence Hasher
==============================
  - Bytes and file paths hash to the same SHA-256.
  - Missing and unreadable paths raise OSError subclasses.
  - Non-bytes, non-path input is rejected.
  - Bounded reads raise FileReadTimeout.
"""

import hashlib
import time

import pytest

from services import hashing
from services.errors import FileAccessError, FileMissing, FileReadTimeout, InvalidInput
from services.hashing import digest, digest_file, digest_json, is_digest


class TestDigestBytes:
    def test_matches_sha256(self):
        data = b"bodycam-0001.mp4 contents"
        assert digest(data) == hashlib.sha256(data).hexdigest()

    def test_deterministic_and_distinct(self):
        assert digest(b"one") == digest(b"one")
        assert digest(b"one") != digest(b"two")

    def test_bytearray_and_memoryview(self):
        data = b"frame"
        assert digest(bytearray(data)) == digest(data)
        assert digest(memoryview(data)) == digest(data)


class TestDigestPath:
    def test_path_matches_bytes(self, tmp_path):
        data = b"x" * (hashing.HASH_BLOCK_SIZE * 2 + 17)
        path = tmp_path / "evidence.bin"
        path.write_bytes(data)
        assert digest(path) == digest(data)
        assert digest(str(path)) == digest(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileMissing) as exc:
            digest(tmp_path / "absent.bin")
        assert isinstance(exc.value, OSError)

    def test_unreadable_path(self, tmp_path):
        with pytest.raises(FileAccessError) as exc:
            digest(tmp_path)  # a directory cannot be opened for reading
        assert isinstance(exc.value, IOError)

    def test_invalid_input(self):
        with pytest.raises(InvalidInput):
            digest(12345)
        with pytest.raises(ValueError):
            digest(None)


class TestDigestFile:
    def test_within_timeout(self, tmp_path):
        path = tmp_path / "e.bin"
        path.write_bytes(b"abc")
        assert digest_file(path, timeout=5) == digest(b"abc")

    def test_timeout(self, monkeypatch, tmp_path):
        def slow(path):
            time.sleep(0.5)
            return "0" * 64

        monkeypatch.setattr(hashing, "digest", slow)
        with pytest.raises(FileReadTimeout) as exc:
            digest_file(tmp_path / "slow.bin", timeout=0.05)
        assert isinstance(exc.value, FileAccessError)


class TestHelpers:
    def test_digest_json_ignores_key_order(self):
        assert digest_json({"a": 1, "b": 2}) == digest_json({"b": 2, "a": 1})

    def test_is_digest(self):
        assert is_digest(digest(b"x"))
        assert not is_digest("ABC")
        assert not is_digest(digest(b"x").upper())
        assert not is_digest(None)
