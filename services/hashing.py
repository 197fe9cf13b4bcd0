"""
Evidence Hasher
===============
SHA-256 content digests for evidence files and transaction payloads.

All functions are pure and safe to call from multiple threads.
"""

import hashlib
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Optional, Union

from algorithms.base import canonical_json
from services.errors import FileAccessError, FileMissing, FileReadTimeout, InvalidInput

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1 << 16  # 64 KiB
DIGEST_LENGTH = 64

_HEX = frozenset("0123456789abcdef")

# Shared pool for bounded file reads
_reader_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="digest-reader")


def _digest_path(path: Union[str, os.PathLike]) -> str:
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(HASH_BLOCK_SIZE)
                if not chunk:
                    break
                h.update(chunk)
    except FileNotFoundError as exc:
        raise FileMissing(f"Evidence file not found: {path}") from exc
    except OSError as exc:
        raise FileAccessError(f"Cannot read evidence file {path}: {exc}") from exc
    return h.hexdigest()


def digest(data: Union[bytes, bytearray, memoryview, str, os.PathLike]) -> str:
    """
    Return the lowercase hex SHA-256 of *data*.

    Bytes-like input is hashed directly. A ``str`` or path-like value is
    treated as a file path and streamed from disk.

    Raises:
        FileMissing: the path does not exist.
        FileAccessError: the path exists but cannot be read.
        InvalidInput: *data* is neither bytes nor a path.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        return hashlib.sha256(data).hexdigest()
    if isinstance(data, (str, os.PathLike)):
        if not os.fspath(data):
            raise InvalidInput("Empty path given to digest()")
        return _digest_path(data)
    raise InvalidInput(f"digest() expects bytes or a file path, got {type(data).__name__}")


def digest_file(path: Union[str, os.PathLike], timeout: Optional[float] = None) -> str:
    """
    Digest a file, giving up after *timeout* seconds.

    The read continues in the background after a timeout; its result is
    discarded.
    """
    if timeout is None:
        return digest(path)
    future = _reader_pool.submit(digest, path)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        logger.warning("Digest of %s exceeded %.1fs", path, timeout)
        raise FileReadTimeout(f"Reading {path} exceeded {timeout}s") from exc


def digest_json(obj: Any) -> str:
    """SHA-256 of the canonical JSON representation of *obj*."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def is_digest(value: Any) -> bool:
    """True if *value* looks like a lowercase hex SHA-256 digest."""
    return (
        isinstance(value, str)
        and len(value) == DIGEST_LENGTH
        and all(c in _HEX for c in value)
    )
