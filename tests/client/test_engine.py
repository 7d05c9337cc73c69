"""Tests for the per-task transfer engine."""

from __future__ import annotations

import asyncio

import pytest
from conftest import ENDPOINT, FakeClock, FakeProvider, FakeTransport, FakeVerifier, wait_until

from lessonup.client.state import UploadStore
from lessonup.client.upload.engine import TransferEngine
from lessonup.client.upload.task import SourceFile, UploadTask
from lessonup.client.upload.types import (
    IntegrityMismatchError,
    SourceUnavailableError,
    TransferError,
    VerificationResult,
)
from lessonup.core.config import UploadSettings
from lessonup.core.hashing import compute_bytes_hash

DATA = b"hello lesson"  # 12 bytes


def make_task(data: bytes = DATA, name: str = "notes.txt") -> UploadTask:
    return UploadTask.create(SourceFile.from_bytes(name, data), "lesson-1", "slides")


def make_engine(
    task: UploadTask,
    provider: FakeProvider,
    verifier: FakeVerifier,
    transport: FakeTransport,
    clock: FakeClock,
    store: UploadStore | None = None,
    settings: UploadSettings | None = None,
    on_update=None,  # type: ignore[no-untyped-def]
) -> TransferEngine:
    return TransferEngine(
        task,
        provider,
        verifier,
        transport,
        settings or UploadSettings(chunk_size=5),
        clock,
        store=store,
        on_update=on_update,
    )


class TestTransferPipeline:
    """Tests for the hash, authorize, transfer, verify pipeline."""

    @pytest.mark.asyncio
    async def test_uploads_in_chunks_and_verifies(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Should send 5-byte chunks, then verify size and hash."""
        task = make_task()
        engine = make_engine(task, provider, verifier, transport, clock)

        await engine.run()

        patches = transport.calls_of("patch")
        assert [call[2] for call in patches] == [0, 5, 10]
        url = transport.calls_of("create")[0][1]
        assert bytes(transport.uploads[url]) == DATA

        assert task.content_hash == compute_bytes_hash(DATA)
        assert task.uploaded_bytes == len(DATA)
        assert task.progress == 100
        assert task.stage == "Verifying integrity..."

        assert len(verifier.requests) == 1
        request = verifier.requests[0]
        assert request.expected_size == len(DATA)
        assert request.expected_hash == compute_bytes_hash(DATA)
        assert request.storage_path == "lessons/lesson-1/slides/notes.txt"
        assert request.lesson_id == "lesson-1"

    @pytest.mark.asyncio
    async def test_records_authorization_on_task(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Should store endpoint, storage path, token and expiry."""
        task = make_task()
        await make_engine(task, provider, verifier, transport, clock).run()

        assert task.endpoint_url == ENDPOINT
        assert task.storage_path == "lessons/lesson-1/slides/notes.txt"
        assert task.upload_token == "token-1"
        assert task.signed_url_expiry == clock.now() + 3600

    @pytest.mark.asyncio
    async def test_sends_metadata_on_create(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Created uploads should carry file and lesson metadata."""
        task = make_task()
        await make_engine(task, provider, verifier, transport, clock).run()

        metadata = next(iter(transport.metadata.values()))
        assert metadata["filename"] == "notes.txt"
        assert metadata["lessonId"] == "lesson-1"
        assert metadata["category"] == "slides"
        assert metadata["sha256"] == compute_bytes_hash(DATA)

    @pytest.mark.asyncio
    async def test_reports_progress_monotonically(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Progress seen by the update callback never decreases."""
        task = make_task()
        seen: list[int] = []
        engine = make_engine(
            task, provider, verifier, transport, clock,
            on_update=lambda t: seen.append(t.progress),
        )

        await engine.run()

        assert seen == sorted(seen)
        assert seen[-1] == 100
        assert 42 in seen  # 5/12 bytes

    @pytest.mark.asyncio
    async def test_existing_hash_not_recomputed(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """A task that already has a hash skips the hashing stage."""
        task = make_task()
        task.set_content_hash("a" * 64)
        stages: list[str | None] = []
        engine = make_engine(
            task, provider, verifier, transport, clock,
            on_update=lambda t: stages.append(t.stage),
        )

        await engine.run()

        assert "Computing file hash..." not in stages
        assert provider.requests[0].content_hash == "a" * 64

    @pytest.mark.asyncio
    async def test_empty_file(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """An empty file creates an upload and sends no chunk."""
        task = make_task(b"")
        await make_engine(task, provider, verifier, transport, clock).run()

        assert len(transport.calls_of("create")) == 1
        assert transport.calls_of("patch") == []
        assert task.progress == 100

    @pytest.mark.asyncio
    async def test_missing_payload(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """A task without a payload cannot be transferred."""
        task = make_task()
        task.payload = None

        with pytest.raises(SourceUnavailableError):
            await make_engine(task, provider, verifier, transport, clock).run()
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_falls_back_to_default_endpoint(
        self,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Without an issued endpoint, the configured default is used."""
        provider = FakeProvider(endpoint=None)
        settings = UploadSettings(chunk_size=5, default_resumable_endpoint="https://fallback.test/tus")
        task = make_task()

        await make_engine(task, provider, verifier, transport, clock, settings=settings).run()

        assert task.endpoint_url == "https://fallback.test/tus"
        assert str(transport.calls_of("create")[0][1]).startswith("https://fallback.test/tus/")

    @pytest.mark.asyncio
    async def test_no_endpoint_at_all(
        self,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Without any endpoint the transfer fails."""
        provider = FakeProvider(endpoint=None)

        with pytest.raises(TransferError, match="No resumable endpoint"):
            await make_engine(make_task(), provider, verifier, transport, clock).run()


class TestVerification:
    """Tests for the integrity verification step."""

    @pytest.mark.asyncio
    async def test_mismatch_raises(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """verified false should raise IntegrityMismatchError."""
        verifier.results.append(VerificationResult(verified=False, error="hash mismatch"))

        with pytest.raises(IntegrityMismatchError, match="Upload corrupted: hash mismatch"):
            await make_engine(make_task(), provider, verifier, transport, clock).run()

    @pytest.mark.asyncio
    async def test_session_dropped_before_verify(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
        store: UploadStore,
    ) -> None:
        """A failed verification leaves no session to resume from."""
        verifier.results.append(VerificationResult(verified=False))
        task = make_task()

        with pytest.raises(IntegrityMismatchError):
            await make_engine(task, provider, verifier, transport, clock, store=store).run()

        assert store.get_session(task.id) is None
        assert task.resumable_url is None

    @pytest.mark.asyncio
    async def test_verify_needs_storage_path(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Verification without a storage path fails instead of sending None."""
        task = make_task()
        task.set_content_hash(compute_bytes_hash(DATA))
        engine = make_engine(task, provider, verifier, transport, clock)

        with pytest.raises(TransferError, match="Nothing to verify"):
            await engine._verify()

        assert verifier.requests == []


class TestResume:
    """Tests for resuming earlier transfers."""

    @pytest.mark.asyncio
    async def test_saves_session_per_chunk(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
        store: UploadStore,
    ) -> None:
        """The session follows acknowledged bytes, then is removed."""
        task = make_task()
        offsets: list[int] = []

        def on_update(t: UploadTask) -> None:
            session = store.get_session(t.id)
            if session is not None:
                offsets.append(session.uploaded_bytes)

        await make_engine(
            task, provider, verifier, transport, clock, store=store, on_update=on_update
        ).run()

        assert 5 in offsets and 10 in offsets
        assert store.get_session(task.id) is None

    @pytest.mark.asyncio
    async def test_resumes_from_own_session(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
        store: UploadStore,
    ) -> None:
        """Should continue from the server offset of the task's session."""
        task = make_task()
        url = f"{ENDPOINT}/previous"
        transport.seed(url, DATA[:5], len(DATA))
        store.save_session(task.id, url, 5, "lessons/old/path", None)

        await make_engine(task, provider, verifier, transport, clock, store=store).run()

        assert transport.calls_of("create") == []
        assert [call[2] for call in transport.calls_of("patch")] == [5, 10]
        assert bytes(transport.uploads[url]) == DATA
        assert verifier.requests[0].storage_path == "lessons/old/path"

    @pytest.mark.asyncio
    async def test_resumes_by_fingerprint(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
        store: UploadStore,
    ) -> None:
        """A new task for the same file finds the earlier upload."""
        earlier = make_task()
        earlier.set_content_hash(compute_bytes_hash(DATA))
        url = f"{ENDPOINT}/earlier"
        transport.seed(url, DATA[:10], len(DATA))
        store.save_session(earlier.id, url, 10, "lessons/lesson-1/slides/notes.txt", earlier.fingerprint)

        task = make_task()
        await make_engine(task, provider, verifier, transport, clock, store=store).run()

        assert transport.calls_of("create") == []
        assert [call[2] for call in transport.calls_of("patch")] == [10]
        assert store.get_session(earlier.id) is None

    @pytest.mark.asyncio
    async def test_session_of_queued_task_not_adopted(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
        store: UploadStore,
    ) -> None:
        """An upload still owned by another queued task is left to it."""
        earlier = make_task()
        earlier.set_content_hash(compute_bytes_hash(DATA))
        url = f"{ENDPOINT}/earlier"
        transport.seed(url, DATA[:10], len(DATA))
        store.save_session(earlier.id, url, 10, "lessons/lesson-1/slides/notes.txt", earlier.fingerprint)

        task = make_task()
        engine = TransferEngine(
            task,
            provider,
            verifier,
            transport,
            UploadSettings(chunk_size=5),
            clock,
            store=store,
            known_task_ids=lambda: [earlier.id, task.id],
        )
        await engine.run()

        assert len(transport.calls_of("create")) == 1
        assert url not in {call[1] for call in transport.calls_of("patch")}
        assert bytes(transport.uploads[url]) == DATA[:10]
        assert store.get_session(earlier.id) is not None

    @pytest.mark.asyncio
    async def test_gone_session_starts_fresh(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
        store: UploadStore,
    ) -> None:
        """An upload the server no longer knows is recreated from zero."""
        task = make_task()
        store.save_session(task.id, f"{ENDPOINT}/expired", 5, None, None)

        await make_engine(task, provider, verifier, transport, clock, store=store).run()

        assert len(transport.calls_of("create")) == 1
        assert [call[2] for call in transport.calls_of("patch")] == [0, 5, 10]


class TestChunkRetries:
    """Tests for in-place chunk retries."""

    @pytest.mark.asyncio
    async def test_network_error_retried_after_resync(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """A chunk failing on the network is retried with the 0s delay first."""
        transport.chunk_failures = [TransferError("connection reset"), TransferError("timeout")]
        task = make_task()

        await make_engine(task, provider, verifier, transport, clock).run()

        assert clock.sleeps == [0, 1]
        assert len(transport.calls_of("head")) == 2
        assert task.progress == 100

    @pytest.mark.asyncio
    async def test_gives_up_after_delays(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """After the four delays the failure propagates."""
        transport.chunk_failures = [TransferError("down", 503) for _ in range(5)]

        with pytest.raises(TransferError, match="down"):
            await make_engine(make_task(), provider, verifier, transport, clock).run()

        assert clock.sleeps == [0, 1, 3, 5]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """A 4xx failure is not retried in place."""
        transport.chunk_failures = [TransferError("bad request", 400)]

        with pytest.raises(TransferError, match="bad request"):
            await make_engine(make_task(), provider, verifier, transport, clock).run()

        assert clock.sleeps == []


class TestAuthorizationRefresh:
    """Tests for signed URL refresh."""

    @pytest.mark.asyncio
    async def test_rejected_token_refreshed(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """A 401 triggers a silent re-authorization."""
        transport.rejected_tokens = {"token-1"}
        task = make_task()

        await make_engine(task, provider, verifier, transport, clock).run()

        assert len(provider.requests) == 2
        assert task.upload_token == "token-2"
        assert task.progress == 100

    @pytest.mark.asyncio
    async def test_refresh_limit(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """After two refreshes in a row the failure becomes a TransferError."""
        transport.rejected_tokens = {"token-1", "token-2", "token-3"}

        with pytest.raises(TransferError, match="after 2 refreshes"):
            await make_engine(make_task(), provider, verifier, transport, clock).run()

        assert len(provider.requests) == 3

    @pytest.mark.asyncio
    async def test_proactive_refresh_near_expiry(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """The URL is refreshed before a chunk when it expires within the margin."""
        settings = UploadSettings(chunk_size=5, signed_url_validity=100, url_refresh_margin=60)

        def on_update(t: UploadTask) -> None:
            if t.uploaded_bytes:
                clock.advance(50)

        await make_engine(
            make_task(), provider, verifier, transport, clock,
            settings=settings, on_update=on_update,
        ).run()

        assert len(provider.requests) >= 2


class TestAbort:
    """Tests for abort()."""

    @pytest.mark.asyncio
    async def test_abort_cancels_transfer(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """abort() cancels the running transfer and is idempotent."""
        transport.gate = asyncio.Event()
        engine = make_engine(make_task(), provider, verifier, transport, clock)

        runner = engine.start()
        await wait_until(lambda: transport.waiting == 1)
        assert engine.running

        engine.abort()
        engine.abort()

        with pytest.raises(asyncio.CancelledError):
            await runner
        assert engine.aborted
        assert not engine.running
        assert verifier.requests == []

    @pytest.mark.asyncio
    async def test_abort_after_finish_is_noop(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """Aborting a finished engine changes nothing."""
        engine = make_engine(make_task(), provider, verifier, transport, clock)
        await engine.start()

        engine.abort()

        assert engine.aborted
        assert not engine.running

    @pytest.mark.asyncio
    async def test_start_returns_same_runner(
        self,
        provider: FakeProvider,
        verifier: FakeVerifier,
        transport: FakeTransport,
        clock: FakeClock,
    ) -> None:
        """start() is idempotent."""
        engine = make_engine(make_task(), provider, verifier, transport, clock)
        assert engine.start() is engine.start()
        await engine.start()
