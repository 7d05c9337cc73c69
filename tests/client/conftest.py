"""Fakes for the upload queue collaborators.

- FakeClock: manual time, sleeps advance it instantly
- FakeProvider / FakeVerifier: scripted backend contracts
- FakeTransport: in-memory resumable upload server
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from lessonup.client.state import UploadStore
from lessonup.client.upload.retry import RetryPolicy
from lessonup.client.upload.scheduler import QueueScheduler
from lessonup.client.upload.types import (
    AuthExpiredError,
    TransferError,
    UploadAuthorization,
    UploadUrlRequest,
    VerificationResult,
    VerifyRequest,
)
from lessonup.core.config import UploadSettings

ENDPOINT = "https://storage.test/upload/resumable"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Clock whose sleeps return at once after advancing time."""

    def __init__(self, start: float = START_TIME) -> None:
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds
        await asyncio.sleep(0)


class FakeProvider:
    """SignedUrlProvider issuing token-1, token-2, ..."""

    def __init__(self, endpoint: str | None = ENDPOINT) -> None:
        self.endpoint = endpoint
        self.requests: list[UploadUrlRequest] = []
        self.errors: list[Exception] = []

    async def request_upload_url(self, request: UploadUrlRequest) -> UploadAuthorization:
        self.requests.append(request)
        if self.errors:
            raise self.errors.pop(0)
        return UploadAuthorization(
            upload_url=self.endpoint,
            storage_path=f"lessons/{request.lesson_id}/{request.category}/{request.file_name}",
            token=f"token-{len(self.requests)}",
        )


class FakeVerifier:
    """IntegrityVerifier returning scripted results (verified by default)."""

    def __init__(self) -> None:
        self.requests: list[VerifyRequest] = []
        self.results: list[VerificationResult] = []

    async def verify_upload(self, request: VerifyRequest) -> VerificationResult:
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        return VerificationResult(verified=True)


class FakeTransport:
    """In-memory resumable upload server.

    Attributes:
        uploads: Upload URL -> bytes received.
        calls: ("create" | "head" | "patch", url, ...) in call order.
        chunk_failures: Errors raised by the next upload_chunk calls.
        rejected_tokens: Tokens answered with AuthExpiredError.
        gate: When set to an unset Event, upload_chunk blocks on it.
    """

    def __init__(self) -> None:
        self.uploads: dict[str, bytearray] = {}
        self.sizes: dict[str, int] = {}
        self.metadata: dict[str, dict[str, str]] = {}
        self.calls: list[tuple[object, ...]] = []
        self.chunk_failures: list[Exception] = []
        self.rejected_tokens: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.waiting = 0

    def _check(self, token: str) -> None:
        if token in self.rejected_tokens:
            raise AuthExpiredError(f"token {token} rejected", 401)

    def seed(self, url: str, data: bytes, size: int) -> None:
        """Pretend an earlier run already created url and sent data."""
        self.uploads[url] = bytearray(data)
        self.sizes[url] = size

    def calls_of(self, kind: str) -> list[tuple[object, ...]]:
        return [call for call in self.calls if call[0] == kind]

    async def create(
        self,
        endpoint: str,
        size: int,
        metadata: Mapping[str, str],
        token: str,
    ) -> str:
        self._check(token)
        url = f"{endpoint}/{len(self.uploads) + 1}"
        self.calls.append(("create", url, size))
        self.uploads[url] = bytearray()
        self.sizes[url] = size
        self.metadata[url] = dict(metadata)
        return url

    async def get_offset(self, upload_url: str, token: str) -> int | None:
        self._check(token)
        self.calls.append(("head", upload_url))
        stored = self.uploads.get(upload_url)
        return None if stored is None else len(stored)

    async def upload_chunk(
        self,
        upload_url: str,
        offset: int,
        data: bytes,
        token: str,
    ) -> int:
        self._check(token)
        self.calls.append(("patch", upload_url, offset, len(data)))
        if self.gate is not None:
            self.waiting += 1
            try:
                await self.gate.wait()
            finally:
                self.waiting -= 1
        if self.chunk_failures:
            raise self.chunk_failures.pop(0)
        stored = self.uploads[upload_url]
        if offset != len(stored):
            raise TransferError(f"offset {offset} != {len(stored)}", 409)
        stored.extend(data)
        await asyncio.sleep(0)
        return len(stored)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Let the event loop run until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store(tmp_path: Path) -> UploadStore:
    s = UploadStore(tmp_path / "uploads.db")
    yield s
    s.close()


@pytest.fixture
def make_scheduler(
    provider: FakeProvider,
    verifier: FakeVerifier,
    transport: FakeTransport,
    clock: FakeClock,
) -> Callable[..., QueueScheduler]:
    """Build a scheduler wired to the fakes; keyword arguments override."""

    def factory(**kwargs: object) -> QueueScheduler:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("retry_policy", RetryPolicy())
        kwargs.setdefault("settings", UploadSettings(chunk_size=4))
        return QueueScheduler(provider, verifier, transport, **kwargs)  # type: ignore[arg-type]

    return factory
