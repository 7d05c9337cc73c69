"""Resumable upload queue.

Architecture:
    enqueue() → QueueScheduler → TransferEngine → ResumableTransport
                      ↓                 ↓
                  EventBus       SignedUrlProvider / IntegrityVerifier

Components:
- **QueueScheduler**: Task list, admission under the concurrency policy, retry/backoff
- **TransferEngine**: One task's hash, authorize, transfer and verify pipeline
- **TusTransport**: tus 1.0.0 client (create, offset query, chunk upload)
- **NetworkMonitor**: Pauses transfers while offline, resumes them when back
- **EventBus / UploadCallbacks**: Observer and async-iterator access to task changes
- **RetryPolicy / Clock**: Backoff decisions and the injectable time source

All public symbols are re-exported here.
"""

from lessonup.client.upload.engine import TransferEngine
from lessonup.client.upload.events import EventBus, UploadCallbacks
from lessonup.client.upload.network import NetworkMonitor
from lessonup.client.upload.preflight import PreflightReport, UploadKind, preflight_file
from lessonup.client.upload.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    NETWORK_CHECK_INTERVAL,
    Clock,
    RetryPolicy,
    SystemClock,
)
from lessonup.client.upload.scheduler import QueueScheduler
from lessonup.client.upload.task import ALLOWED_TRANSITIONS, SourceFile, UploadTask
from lessonup.client.upload.transport import TusTransport
from lessonup.client.upload.types import (
    AuthExpiredError,
    IntegrityMismatchError,
    IntegrityVerifier,
    InvalidTransitionError,
    PersistenceWriteError,
    ResumableTransport,
    SignedUrlProvider,
    SourceUnavailableError,
    TaskEvent,
    TaskEventType,
    TransferError,
    UploadAuthorization,
    UploadError,
    UploadUrlRequest,
    VerificationResult,
    VerifyRequest,
)

__all__ = [
    # Scheduler and engine
    "QueueScheduler",
    "TransferEngine",
    "TusTransport",
    "NetworkMonitor",
    # Tasks
    "ALLOWED_TRANSITIONS",
    "SourceFile",
    "UploadTask",
    # Events
    "EventBus",
    "TaskEvent",
    "TaskEventType",
    "UploadCallbacks",
    # Preflight
    "PreflightReport",
    "UploadKind",
    "preflight_file",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRY_ATTEMPTS",
    "NETWORK_CHECK_INTERVAL",
    "Clock",
    "RetryPolicy",
    "SystemClock",
    # Contracts
    "IntegrityVerifier",
    "ResumableTransport",
    "SignedUrlProvider",
    "UploadAuthorization",
    "UploadUrlRequest",
    "VerificationResult",
    "VerifyRequest",
    # Errors
    "AuthExpiredError",
    "IntegrityMismatchError",
    "InvalidTransitionError",
    "PersistenceWriteError",
    "SourceUnavailableError",
    "TransferError",
    "UploadError",
]
