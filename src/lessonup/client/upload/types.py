"""Shared types and dataclasses for upload operations.

This module provides:
- UploadError and its subclasses: Error taxonomy of the upload queue
- UploadUrlRequest, UploadAuthorization: Signed URL contract
- VerifyRequest, VerificationResult: Integrity verification contract
- SignedUrlProvider, IntegrityVerifier, ResumableTransport: Collaborator protocols
- TaskEventType, TaskEvent: Records published by the scheduler
- Type aliases for callbacks
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from lessonup.client.upload.task import UploadTask


# =============================================================================
# Errors
# =============================================================================


class UploadError(Exception):
    """Base exception for upload errors."""


class TransferError(UploadError):
    """Network or protocol failure during a transfer (retryable)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(TransferError):
    """Signed upload URL expired or was rejected mid-transfer.

    Recovered by the transfer engine through re-authorization; never
    surfaced to the caller on its own.
    """


class IntegrityMismatchError(UploadError):
    """Uploaded bytes failed server-side verification."""


class PersistenceWriteError(UploadError):
    """Local durable-state write failed (e.g., disk full). Logged only."""


class SourceUnavailableError(UploadError):
    """The source file payload cannot be read."""


class InvalidTransitionError(UploadError):
    """A status change outside the task state machine was attempted."""


# =============================================================================
# Backend contracts
# =============================================================================


@dataclass(frozen=True)
class UploadUrlRequest:
    """Input of the upload authorization request."""

    file_name: str
    file_size: int
    lesson_id: str
    category: str
    content_hash: str


@dataclass(frozen=True)
class UploadAuthorization:
    """Signed upload authorization returned by the backend.

    Attributes:
        upload_url: Resumable endpoint to create the upload on (None = default).
        storage_path: Destination path assigned in cloud storage.
        token: Short-lived token authorizing writes to storage_path.
    """

    upload_url: str | None
    storage_path: str
    token: str


@dataclass(frozen=True)
class VerifyRequest:
    """Input of the integrity verification request."""

    storage_path: str
    expected_size: int
    expected_hash: str
    lesson_id: str


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of the integrity verification."""

    verified: bool
    error: str | None = None


class SignedUrlProvider(Protocol):
    """Issues (and re-issues) time-limited upload authorizations."""

    async def request_upload_url(self, request: UploadUrlRequest) -> UploadAuthorization:
        """Obtain a signed upload URL for one file."""
        ...


class IntegrityVerifier(Protocol):
    """Confirms that stored bytes match the expected size and hash."""

    async def verify_upload(self, request: VerifyRequest) -> VerificationResult:
        """Verify an uploaded file."""
        ...


class ResumableTransport(Protocol):
    """Client side of a resumable-transfer protocol.

    Implementations raise AuthExpiredError on authorization failures and
    TransferError on any other network or protocol failure.
    """

    async def create(
        self,
        endpoint: str,
        size: int,
        metadata: Mapping[str, str],
        token: str,
    ) -> str:
        """Create an upload and return its URL."""
        ...

    async def get_offset(self, upload_url: str, token: str) -> int | None:
        """Return the acknowledged offset, or None if the upload is gone."""
        ...

    async def upload_chunk(
        self,
        upload_url: str,
        offset: int,
        data: bytes,
        token: str,
    ) -> int:
        """Send one chunk at offset and return the new acknowledged offset."""
        ...


# =============================================================================
# Scheduler events
# =============================================================================


class TaskEventType(Enum):
    """Kinds of records published by the scheduler."""

    TASK_UPDATED = auto()
    QUEUE_UPDATED = auto()
    COMPLETED = auto()
    FAILED = auto()
    DUPLICATE_SKIPPED = auto()
    REHYDRATION_REQUIRED = auto()
    PREFLIGHT_WARNING = auto()


@dataclass(frozen=True)
class TaskEvent:
    """A record of something that happened in the upload queue.

    Attributes:
        type: What happened.
        task: Snapshot of the affected task (None for queue-wide events).
        tasks: Snapshot of the whole queue (QUEUE_UPDATED only).
        message: Human-readable detail (errors, warnings, skip reasons).
        timestamp: Unix timestamp when the event was published.
    """

    type: TaskEventType
    task: UploadTask | None = None
    tasks: tuple[UploadTask, ...] = ()
    message: str | None = None
    timestamp: float = field(default_factory=time.time)

    def __repr__(self) -> str:
        """Human-readable representation."""
        subject = self.task.id if self.task is not None else f"{len(self.tasks)} tasks"
        return f"TaskEvent({self.type.name}, {subject})"


# Type aliases for listeners and callbacks
EventListener = Callable[[TaskEvent], None]
TaskCallback = Callable[["UploadTask"], None]
QueueCallback = Callable[[list["UploadTask"]], None]
ErrorCallback = Callable[["UploadTask", str], None]
