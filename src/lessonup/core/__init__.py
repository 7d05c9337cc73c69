"""Core module - Shared config, hashing, and types."""

from lessonup.core.config import MIB, ServerConfig, UploadSettings
from lessonup.core.hashing import (
    compute_bytes_hash,
    compute_file_hash,
    compute_fingerprint,
)
from lessonup.core.types import UploadStatus

__all__ = [
    # Config
    "MIB",
    "ServerConfig",
    "UploadSettings",
    # Hashing
    "compute_bytes_hash",
    "compute_file_hash",
    "compute_fingerprint",
    # Types
    "UploadStatus",
]
