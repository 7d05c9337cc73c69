"""Shared types for lessonup.

This module defines types and enums used across the client components.
"""

from __future__ import annotations

from enum import Enum


class UploadStatus(str, Enum):
    """Lifecycle status of an upload task.

    Stored as its string value in the persisted queue snapshot.
    """

    QUEUED = "queued"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (UploadStatus.COMPLETE, UploadStatus.CANCELLED)

    @property
    def is_resumable(self) -> bool:
        """Check if a task in this status is restored after a restart."""
        return self in (UploadStatus.QUEUED, UploadStatus.UPLOADING, UploadStatus.PAUSED)
