"""
Utility functions for thingfish
===============================

Object id helpers, glob pattern compilation and xxhash content digests.
"""

import re
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Pattern

import xxhash


CHUNK_SIZE = 8192

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)


def normalize_oid(oid: Any) -> str:
    """
    Return the canonical form of an object id.

    Accepts strings in any case as well as ``uuid.UUID`` instances.
    """
    return str(oid).strip().lower()


def make_oid() -> str:
    """Generate a new canonical object id."""
    return str(uuid.uuid4())


def is_valid_oid(oid: Any) -> bool:
    """Check whether ``oid`` is a well-formed UUID (any case)."""
    return bool(_UUID_PATTERN.match(normalize_oid(oid)))


def glob_to_regexp(pattern: str) -> Pattern:
    """
    Compile a glob-style pattern into a case-insensitive regular expression.

    Only ``*`` is special; it matches any run of characters. Every other
    character matches itself, and the pattern must match the whole value.

    >>> bool(glob_to_regexp("dev*").match("Devil's Tower"))
    True
    """
    parts = [re.escape(part) for part in str(pattern).split("*")]
    return re.compile("^" + ".*".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def hash_stream(stream: BinaryIO) -> str:
    """
    Calculate the XXH3_64 digest of a binary stream, read in chunks.

    Args:
        stream: Readable binary file-like object

    Returns:
        Hex string of the content hash
    """
    hasher = xxhash.xxh3_64()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        hasher.update(chunk)
    return hasher.hexdigest()


def hash_bytes(data: bytes) -> str:
    """Calculate the XXH3_64 digest of a byte string."""
    return xxhash.xxh3_64(data).hexdigest()


def hash_file_content(file_path: Path) -> str:
    """
    Hash a single file's content.

    Args:
        file_path: Path to the file to hash

    Returns:
        Hex string hash of the file content
    """
    with open(file_path, "rb") as f:
        return hash_stream(f)
