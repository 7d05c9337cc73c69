"""Content hashing for lessonup.

This module provides:
- SHA-256 hashing of files and in-memory payloads
- Transfer fingerprints used to find previous resumable uploads
"""

import hashlib
from pathlib import Path

HASH_BLOCK_SIZE = 64 * 1024


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file.

    Reads the file in blocks to handle large files efficiently.

    Args:
        path: Path to the file to hash.

    Returns:
        Hexadecimal SHA-256 hash string.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


def compute_bytes_hash(data: bytes) -> str:
    """Compute SHA-256 hash of an in-memory payload."""
    return hashlib.sha256(data).hexdigest()


def compute_fingerprint(
    lesson_id: str,
    file_name: str,
    file_size: int,
    content_hash: str,
) -> str:
    """Compute the stable fingerprint of a transfer.

    The same file uploaded to the same lesson always yields the same
    fingerprint, so an unfinished upload can be found again after a restart
    even when the task id changed.

    Args:
        lesson_id: Destination lesson.
        file_name: Name of the source file.
        file_size: Size of the source file in bytes.
        content_hash: SHA-256 of the file content.

    Returns:
        Hexadecimal fingerprint string.
    """
    key = f"{lesson_id}\x00{file_name}\x00{file_size}\x00{content_hash}"
    return "lessonup-" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
