"""Upload task model and its state machine.

This module provides:
- SourceFile: In-memory handle on the bytes to upload (never persisted)
- UploadTask: Serializable descriptor of one file's transfer lifecycle
- ALLOWED_TRANSITIONS: The only valid status changes

State machine:
    queued    -> uploading                          (admitted by scheduler)
    uploading -> complete | paused | queued | failed
    paused    -> queued                             (network restored / resume)
    failed    -> queued                             (manual retry)
    {queued, uploading, paused, failed} -> cancelled
"""

from __future__ import annotations

import asyncio
import mimetypes
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lessonup.client.upload.types import InvalidTransitionError, SourceUnavailableError
from lessonup.core.hashing import compute_bytes_hash, compute_file_hash, compute_fingerprint
from lessonup.core.types import UploadStatus

ALLOWED_TRANSITIONS: dict[UploadStatus, frozenset[UploadStatus]] = {
    UploadStatus.QUEUED: frozenset({UploadStatus.UPLOADING, UploadStatus.CANCELLED}),
    UploadStatus.UPLOADING: frozenset({
        UploadStatus.COMPLETE,
        UploadStatus.PAUSED,
        UploadStatus.QUEUED,
        UploadStatus.FAILED,
        UploadStatus.CANCELLED,
    }),
    UploadStatus.PAUSED: frozenset({UploadStatus.QUEUED, UploadStatus.CANCELLED}),
    UploadStatus.FAILED: frozenset({UploadStatus.QUEUED, UploadStatus.CANCELLED}),
    UploadStatus.COMPLETE: frozenset(),
    UploadStatus.CANCELLED: frozenset(),
}

# Assumed throughput for the ETA shown before the first progress event
INITIAL_ESTIMATE_BYTES_PER_SECOND = 1024 * 1024

# Fields of UploadTask.to_dict() that are not constructor arguments
_DESCRIPTOR_ALIASES = {"total_bytes": "_total_bytes"}


class SourceFile:
    """Bytes to upload, backed by a local file or an in-memory buffer.

    Only a reference is held; reads happen lazily per chunk.
    """

    def __init__(
        self,
        name: str,
        size: int,
        content_type: str | None = None,
        *,
        path: Path | None = None,
        data: bytes | None = None,
    ) -> None:
        if path is not None and data is None:
            self._source: Path | bytes = path
        elif data is not None and path is None:
            self._source = data
        else:
            raise ValueError("SourceFile needs exactly one of path or data")
        self.name = name
        self.size = size
        self.content_type = (
            content_type
            or mimetypes.guess_type(name)[0]
            or "application/octet-stream"
        )

    @classmethod
    def from_path(cls, path: Path, content_type: str | None = None) -> SourceFile:
        """Create a source for a file on disk."""
        path = Path(path)
        try:
            size = path.stat().st_size
        except OSError as e:
            raise SourceUnavailableError(f"File not found: {path}") from e
        return cls(path.name, size, content_type, path=path)

    @classmethod
    def from_bytes(
        cls,
        name: str,
        data: bytes,
        content_type: str | None = None,
    ) -> SourceFile:
        """Create a source for an in-memory payload."""
        return cls(name, len(data), content_type, data=data)

    def read_range(self, offset: int, length: int) -> bytes:
        """Read up to length bytes starting at offset.

        Raises:
            SourceUnavailableError: If the backing file can no longer be read.
        """
        if isinstance(self._source, bytes):
            return self._source[offset:offset + length]
        try:
            with open(self._source, "rb") as f:
                f.seek(offset)
                return f.read(length)
        except OSError as e:
            raise SourceUnavailableError(f"Cannot read {self._source}: {e}") from e

    async def read_chunk(self, offset: int, length: int) -> bytes:
        """Read a chunk without blocking the event loop on file I/O."""
        if isinstance(self._source, bytes):
            return self.read_range(offset, length)
        return await asyncio.to_thread(self.read_range, offset, length)

    async def content_hash(self) -> str:
        """Compute the SHA-256 of the content without blocking the event loop."""
        if isinstance(self._source, bytes):
            return await asyncio.to_thread(compute_bytes_hash, self._source)
        try:
            return await asyncio.to_thread(compute_file_hash, self._source)
        except OSError as e:
            raise SourceUnavailableError(f"Cannot read {self._source}: {e}") from e

    def __repr__(self) -> str:
        return f"SourceFile({self.name!r}, size={self.size})"


def generate_task_id() -> str:
    """Generate an opaque task id (upload-<ms>-<random>)."""
    return f"upload-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


@dataclass(eq=False)
class UploadTask:
    """One file's transfer lifecycle.

    The descriptor part (everything but the payload and the derived timing)
    is serializable with to_dict() and survives restarts. The payload is
    never persisted: tasks restored from disk are flagged
    rehydration_pending until the caller re-supplies the file.

    Attributes:
        id: Opaque task id, stable for the task's lifetime.
        lesson_id: Destination lesson.
        category: Destination category within the lesson.
        file_name: Name of the source file.
        content_type: MIME type of the source file.
        status: Current lifecycle status.
        progress: Percentage 0-100, never decreases.
        uploaded_bytes: Bytes acknowledged by the server.
        retry_count: Automatic retries consumed.
        error: Last surfaced error message.
        stage: Human-readable phase label.
        content_hash: SHA-256 of the content (set exactly once).
        storage_path: Destination path assigned by the signed URL provider.
        endpoint_url: Resumable endpoint issued with the signed URL.
        resumable_url: URL of the created resumable upload.
        upload_token: Token of the current signed URL.
        signed_url_expiry: Unix timestamp when the signed URL expires.
        created_at: Enqueue time (FIFO order).
        started_at: First admission time.
        stage_started_at: When the current stage began.
        next_attempt_at: Earliest admission time while backing off.
        rehydration_pending: Restored from disk, waiting for the file.
    """

    id: str
    lesson_id: str
    category: str
    file_name: str
    _total_bytes: int
    content_type: str = "application/octet-stream"
    status: UploadStatus = UploadStatus.QUEUED
    progress: int = 0
    uploaded_bytes: int = 0
    retry_count: int = 0
    error: str | None = None
    stage: str | None = None
    content_hash: str | None = None
    storage_path: str | None = None
    endpoint_url: str | None = None
    resumable_url: str | None = None
    upload_token: str | None = field(default=None, repr=False)
    signed_url_expiry: float | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    stage_started_at: float | None = None
    next_attempt_at: float | None = None
    rehydration_pending: bool = False

    # Transient: never serialized
    payload: SourceFile | None = field(default=None, repr=False)
    elapsed_seconds: int | None = field(default=None, repr=False)
    stage_elapsed_seconds: int | None = field(default=None, repr=False)
    estimated_seconds_remaining: int | None = field(default=None, repr=False)

    @classmethod
    def create(
        cls,
        source: SourceFile,
        lesson_id: str,
        category: str,
        now: float | None = None,
    ) -> UploadTask:
        """Create a new queued task for a source file."""
        return cls(
            id=generate_task_id(),
            lesson_id=lesson_id,
            category=category,
            file_name=source.name,
            _total_bytes=source.size,
            content_type=source.content_type,
            created_at=time.time() if now is None else now,
            stage="Queued",
            payload=source,
            estimated_seconds_remaining=-(-source.size // INITIAL_ESTIMATE_BYTES_PER_SECOND),
        )

    @property
    def total_bytes(self) -> int:
        """Size of the file, fixed at creation."""
        return self._total_bytes

    @property
    def fingerprint(self) -> str | None:
        """Stable transfer fingerprint (None until the content hash is known)."""
        if self.content_hash is None:
            return None
        return compute_fingerprint(
            self.lesson_id, self.file_name, self.total_bytes, self.content_hash
        )

    def matches(self, name: str, size: int, lesson_id: str) -> bool:
        """Check if this task targets the same file and lesson."""
        return (
            self.file_name == name
            and self.total_bytes == size
            and self.lesson_id == lesson_id
        )

    # === State machine ===

    def can_transition(self, new_status: UploadStatus) -> bool:
        """Check if moving to new_status is a valid edge."""
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: UploadStatus) -> None:
        """Move to new_status.

        Raises:
            InvalidTransitionError: If the edge is not in the state machine.
        """
        if not self.can_transition(new_status):
            raise InvalidTransitionError(
                f"Task {self.id}: invalid transition "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    # === Mutators used by the scheduler and engine ===

    def set_content_hash(self, content_hash: str) -> None:
        """Record the content hash.

        Raises:
            ValueError: If a different hash was already recorded.
        """
        if self.content_hash is not None and self.content_hash != content_hash:
            raise ValueError(f"Task {self.id}: content hash is immutable")
        self.content_hash = content_hash

    def set_stage(self, stage: str, now: float) -> None:
        """Set the stage label and reset the stage timer."""
        self.stage = stage
        self.stage_started_at = now

    def record_progress(self, uploaded_bytes: int, now: float) -> None:
        """Record acknowledged bytes.

        uploaded_bytes follows the server; progress only moves forward.
        """
        self.uploaded_bytes = uploaded_bytes
        if self.total_bytes > 0:
            percent = round(uploaded_bytes * 100 / self.total_bytes)
        else:
            percent = 100
        self.progress = max(self.progress, min(percent, 100))

        if self.started_at is not None and uploaded_bytes > 0:
            elapsed = now - self.started_at
            if elapsed > 0:
                rate = uploaded_bytes / elapsed
                remaining = self.total_bytes - uploaded_bytes
                self.estimated_seconds_remaining = int(-(-remaining // rate))

    def refresh_timing(self, now: float) -> None:
        """Recompute the derived elapsed-time values."""
        if self.started_at is not None:
            self.elapsed_seconds = int(now - self.started_at)
        if self.stage_started_at is not None:
            self.stage_elapsed_seconds = int(now - self.stage_started_at)

    # === Serialization ===

    def to_dict(self) -> dict[str, Any]:
        """Serialize the descriptor (no payload, no derived timing)."""
        return {
            "id": self.id,
            "lesson_id": self.lesson_id,
            "category": self.category,
            "file_name": self.file_name,
            "total_bytes": self.total_bytes,
            "content_type": self.content_type,
            "status": self.status.value,
            "progress": self.progress,
            "uploaded_bytes": self.uploaded_bytes,
            "retry_count": self.retry_count,
            "error": self.error,
            "stage": self.stage,
            "content_hash": self.content_hash,
            "storage_path": self.storage_path,
            "endpoint_url": self.endpoint_url,
            "resumable_url": self.resumable_url,
            "signed_url_expiry": self.signed_url_expiry,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "stage_started_at": self.stage_started_at,
            "next_attempt_at": self.next_attempt_at,
            "rehydration_pending": self.rehydration_pending,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadTask:
        """Rebuild a task from a persisted descriptor.

        Unknown keys are ignored so older snapshots still load.
        """
        known = {f for f in cls.__dataclass_fields__}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _DESCRIPTOR_ALIASES.get(key, key)
            if name in known and name != "payload":
                kwargs[name] = value
        kwargs["status"] = UploadStatus(kwargs.get("status", UploadStatus.QUEUED.value))
        return cls(**kwargs)

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"UploadTask({self.id}, {self.file_name!r}, "
            f"status={self.status.value}, progress={self.progress})"
        )
