"""Queue scheduler for resumable uploads.

This module provides:
- QueueScheduler: Owns the task list, admits tasks under the concurrency
  policy, applies retry/backoff and publishes every change

The scheduler is the "brain" of the upload queue:
1. Accepts files (dedup, re-supply of restored tasks, preflight warnings)
2. Admits queued tasks in strict FIFO order under the concurrency limit
3. Runs one TransferEngine per admitted task and supervises its outcome
4. Re-queues retryable failures with capped exponential backoff
5. Persists the queue snapshot and publishes events after every mutation

Admission rules:
    | Uploading (incl. candidate)  | Limit                     |
    |------------------------------|---------------------------|
    | any file > large threshold   | 1                         |
    | otherwise                    | settings.max_concurrent   |

    Eligible = queued, payload attached, backoff gate passed.
    A head candidate that does not fit stops the pass.
    Nothing is admitted while the network is unavailable.

Everything runs on one asyncio event loop; mutators must be called from it.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from lessonup.client.upload.engine import TransferEngine
from lessonup.client.upload.events import EventBus, UploadCallbacks
from lessonup.client.upload.preflight import preflight_file
from lessonup.client.upload.retry import Clock, RetryPolicy, SystemClock
from lessonup.client.upload.task import SourceFile, UploadTask
from lessonup.client.upload.types import (
    EventListener,
    IntegrityVerifier,
    ResumableTransport,
    SignedUrlProvider,
    TaskEvent,
    TaskEventType,
)
from lessonup.core.config import UploadSettings
from lessonup.core.types import UploadStatus

if TYPE_CHECKING:
    from lessonup.client.state import UploadStore

logger = logging.getLogger(__name__)

STAGE_QUEUED = "Queued"
STAGE_STARTING = "Starting upload..."
STAGE_PAUSED = "Paused"
STAGE_COMPLETE = "Upload complete!"
STAGE_FAILED = "Upload failed"
STAGE_REHYDRATION = "Waiting for file to be re-selected"


class QueueScheduler:
    """Central orchestrator of the upload queue.

    Usage:
        scheduler = QueueScheduler(api, api, transport, store=store)
        scheduler.enqueue([SourceFile.from_path(path)], "lesson-1", "slides")
        await scheduler.join()
        await scheduler.close()
    """

    def __init__(
        self,
        provider: SignedUrlProvider,
        verifier: IntegrityVerifier,
        transport: ResumableTransport,
        *,
        store: UploadStore | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: UploadSettings | None = None,
        callbacks: UploadCallbacks | None = None,
    ) -> None:
        """Initialize the scheduler and restore the persisted queue.

        Args:
            provider: Issues signed upload authorizations.
            verifier: Confirms uploaded files.
            transport: Resumable-transfer protocol client.
            store: Optional durable state (queue snapshot and sessions).
            clock: Time source (defaults to the system clock).
            retry_policy: Backoff policy for failed tasks.
            settings: Concurrency, chunk and URL settings.
            callbacks: Initial caller callbacks.
        """
        self._provider = provider
        self._verifier = verifier
        self._transport = transport
        self._store = store
        self._clock = clock or SystemClock()
        self._policy = retry_policy or RetryPolicy()
        self._settings = settings or UploadSettings()

        # Task list in FIFO order, and live engines indexed by task id
        self._tasks: list[UploadTask] = []
        self._live: dict[str, TransferEngine] = {}
        self._supervisors: dict[str, asyncio.Task[None]] = {}
        self._timers: set[asyncio.Task[None]] = set()
        self._closed = False

        self.network_available = True

        self.events = EventBus()
        self._callbacks = UploadCallbacks()
        if callbacks is not None:
            self._callbacks.merge(callbacks)
        self.events.subscribe(self._callbacks)

        self._restore()

    # === Queries ===

    def get_queue(self) -> list[UploadTask]:
        """Get a copy of the task list."""
        return list(self._tasks)

    def get_task(self, task_id: str) -> UploadTask | None:
        """Get a task by id."""
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def active_task_ids(self) -> list[str]:
        """Ids of tasks with a live transfer."""
        return list(self._live)

    @property
    def concurrency_limit(self) -> int:
        """Current limit given the tasks uploading now."""
        return self._limit_for(self._uploading())

    def pending_rehydration(self) -> list[UploadTask]:
        """Restored tasks waiting for their file to be re-supplied."""
        return [task for task in self._tasks if task.rehydration_pending]

    # === Subscriptions ===

    def subscribe(self, listener: EventListener) -> EventListener:
        """Register a listener and tell it which restored tasks need their file."""
        self.events.subscribe(listener)
        for task in self.pending_rehydration():
            listener(TaskEvent(
                TaskEventType.REHYDRATION_REQUIRED,
                task=copy.copy(task),
                message=f"Re-select {task.file_name} to resume its upload",
            ))
        return listener

    def unsubscribe(self, listener: EventListener) -> None:
        """Remove a listener."""
        self.events.unsubscribe(listener)

    # === Enqueue ===

    def enqueue(
        self,
        files: Iterable[SourceFile],
        lesson_id: str,
        category: str,
        callbacks: UploadCallbacks | None = None,
    ) -> list[UploadTask]:
        """Add files to the queue.

        A file already queued or uploading for the same lesson is skipped.
        A file matching a restored task is attached to it instead of
        creating a new task.

        Args:
            files: Files to upload.
            lesson_id: Destination lesson.
            category: Destination category.
            callbacks: Callbacks merged into the scheduler's callbacks.

        Returns:
            Newly created tasks.
        """
        if callbacks is not None:
            self._callbacks.merge(callbacks)

        created: list[UploadTask] = []
        for source in files:
            duplicate = self._find(
                source, lesson_id,
                lambda t: t.status in (UploadStatus.QUEUED, UploadStatus.UPLOADING),
            )
            if duplicate is not None:
                logger.info(f"Skipping {source.name}: already in the upload queue")
                self.events.publish(TaskEvent(
                    TaskEventType.DUPLICATE_SKIPPED,
                    task=copy.copy(duplicate),
                    message=f"{source.name} is already in the upload queue",
                ))
                continue

            restored = self._find(source, lesson_id, lambda t: t.rehydration_pending)
            if restored is not None:
                self._attach(restored, source)
                continue

            task = UploadTask.create(source, lesson_id, category, now=self._clock.now())
            for warning in preflight_file(source).warnings:
                logger.warning(f"{source.name}: {warning}")
                self.events.publish(TaskEvent(
                    TaskEventType.PREFLIGHT_WARNING, task=copy.copy(task), message=warning
                ))
            self._tasks.append(task)
            created.append(task)
            logger.info(f"Queued {task.file_name} ({task.total_bytes} bytes) as {task.id}")

        self._persist()
        self._publish_queue()
        self.process_queue()
        return created

    def _find(
        self,
        source: SourceFile,
        lesson_id: str,
        predicate: Callable[[UploadTask], bool],
    ) -> UploadTask | None:
        for task in self._tasks:
            if predicate(task) and task.matches(source.name, source.size, lesson_id):
                return task
        return None

    # === Caller controls ===

    def pause_upload(self, task_id: str) -> bool:
        """Pause an uploading task, keeping its uploaded bytes and session."""
        task = self.get_task(task_id)
        if task is None or task.status != UploadStatus.UPLOADING:
            return False
        self._stop_engine(task_id)
        task.transition(UploadStatus.PAUSED)
        task.set_stage(STAGE_PAUSED, self._clock.now())
        logger.info(f"Paused {task.file_name} at {task.uploaded_bytes}/{task.total_bytes} bytes")
        self._persist()
        self._notify(task)
        self.process_queue()
        return True

    def resume_upload(self, task_id: str) -> bool:
        """Re-queue a paused task."""
        task = self.get_task(task_id)
        if task is None or task.status != UploadStatus.PAUSED:
            return False
        if task.payload is None:
            logger.info(f"Cannot resume {task.file_name}: file must be re-selected")
            return False
        task.transition(UploadStatus.QUEUED)
        task.next_attempt_at = None
        task.set_stage(STAGE_QUEUED, self._clock.now())
        self._persist()
        self._notify(task)
        self.process_queue()
        return True

    def retry_upload(self, task_id: str) -> bool:
        """Re-queue a failed task with a fresh retry budget."""
        task = self.get_task(task_id)
        if task is None or task.status != UploadStatus.FAILED:
            return False
        task.transition(UploadStatus.QUEUED)
        task.retry_count = 0
        task.error = None
        task.next_attempt_at = None
        task.set_stage(STAGE_QUEUED, self._clock.now())
        logger.info(f"Manual retry of {task.file_name}")
        self._persist()
        self._notify(task)
        self.process_queue()
        return True

    def cancel_upload(self, task_id: str) -> bool:
        """Cancel a task and forget it, along with its session."""
        task = self.get_task(task_id)
        if task is None:
            return False
        if task.status == UploadStatus.COMPLETE:
            return self.evict(task_id)

        self._stop_engine(task_id)
        task.transition(UploadStatus.CANCELLED)
        self._tasks.remove(task)
        if self._store is not None:
            self._store.remove_session(task_id)
        logger.info(f"Cancelled {task.file_name}")
        self._persist()
        self._notify(task)
        self._publish_queue()
        self.process_queue()
        return True

    def evict(self, task_id: str) -> bool:
        """Remove a task from the queue whatever its status."""
        task = self.get_task(task_id)
        if task is None:
            return False
        self._stop_engine(task_id)
        self._tasks.remove(task)
        if self._store is not None:
            self._store.remove_session(task_id)
        logger.info(f"Evicted {task.file_name} ({task.status.value})")
        self._persist()
        self._publish_queue()
        self.process_queue()
        return True

    def clear_finished(self) -> int:
        """Drop completed tasks.

        Returns:
            Number of tasks removed.
        """
        finished = [t for t in self._tasks if t.status == UploadStatus.COMPLETE]
        if not finished:
            return 0
        self._tasks = [t for t in self._tasks if t.status != UploadStatus.COMPLETE]
        self._persist()
        self._publish_queue()
        return len(finished)

    def rehydrate(self, task_id: str, source: SourceFile) -> bool:
        """Re-supply the file of a task restored from disk.

        The file name and size must match the task.
        """
        task = self.get_task(task_id)
        if task is None or not task.rehydration_pending:
            return False
        if task.file_name != source.name or task.total_bytes != source.size:
            logger.warning(
                f"Cannot rehydrate {task.file_name} ({task.total_bytes} bytes) "
                f"with {source.name} ({source.size} bytes)"
            )
            return False
        self._attach(task, source)
        self._persist()
        self.process_queue()
        return True

    def _attach(self, task: UploadTask, source: SourceFile) -> None:
        task.payload = source
        task.rehydration_pending = False
        task.transition(UploadStatus.QUEUED)
        task.next_attempt_at = None
        task.set_stage(STAGE_QUEUED, self._clock.now())
        logger.info(f"File re-supplied for {task.file_name}, re-queued")
        self._notify(task)

    # === Admission ===

    def _uploading(self) -> list[UploadTask]:
        return [t for t in self._tasks if t.id in self._live]

    def _limit_for(self, tasks: Iterable[UploadTask]) -> int:
        threshold = self._settings.large_file_threshold
        if any(t.total_bytes > threshold for t in tasks):
            return 1
        return self._settings.max_concurrent

    def _is_eligible(self, task: UploadTask, now: float) -> bool:
        return (
            task.status == UploadStatus.QUEUED
            and task.payload is not None
            and (task.next_attempt_at is None or task.next_attempt_at <= now)
        )

    def process_queue(self) -> None:
        """Run an admission pass."""
        if self._closed or not self.network_available:
            return
        now = self._clock.now()
        for task in list(self._tasks):
            if not self._is_eligible(task, now):
                continue
            uploading = self._uploading()
            if len(uploading) >= self._limit_for([*uploading, task]):
                break
            self._admit(task, now)

    def _admit(self, task: UploadTask, now: float) -> None:
        task.transition(UploadStatus.UPLOADING)
        task.next_attempt_at = None
        if task.started_at is None:
            task.started_at = now
        task.set_stage(STAGE_STARTING, now)

        engine = TransferEngine(
            task,
            self._provider,
            self._verifier,
            self._transport,
            self._settings,
            self._clock,
            store=self._store,
            on_update=self._on_engine_update,
            known_task_ids=lambda: [t.id for t in self._tasks],
        )
        self._live[task.id] = engine
        engine.start()
        self._supervisors[task.id] = asyncio.get_running_loop().create_task(
            self._supervise(task, engine), name=f"supervise-{task.id}"
        )
        logger.info(f"Started upload of {task.file_name} (attempt {task.retry_count + 1})")
        self._persist()
        self._notify(task)

    async def _supervise(self, task: UploadTask, engine: TransferEngine) -> None:
        """Await one engine and apply its outcome to the task."""
        try:
            await engine.start()
        except asyncio.CancelledError:
            if engine.aborted:
                return
            raise
        except Exception as e:
            if not engine.aborted:
                self._handle_failure(task, e)
        else:
            if not engine.aborted:
                self._handle_success(task)
        finally:
            if self._live.get(task.id) is engine:
                del self._live[task.id]
            if self._supervisors.get(task.id) is asyncio.current_task():
                del self._supervisors[task.id]
            self._persist()
            self.process_queue()

    def _on_engine_update(self, task: UploadTask) -> None:
        self._persist()
        self._notify(task)

    def _stop_engine(self, task_id: str) -> None:
        engine = self._live.pop(task_id, None)
        if engine is not None:
            engine.abort()

    # === Outcomes ===

    def _handle_success(self, task: UploadTask) -> None:
        now = self._clock.now()
        task.transition(UploadStatus.COMPLETE)
        task.record_progress(task.total_bytes, now)
        task.error = None
        task.estimated_seconds_remaining = 0
        task.set_stage(STAGE_COMPLETE, now)
        if self._store is not None:
            self._store.remove_session(task.id)
        logger.info(f"Upload of {task.file_name} complete")
        self._notify(task)
        self.events.publish(TaskEvent(TaskEventType.COMPLETED, task=copy.copy(task)))

    def _handle_failure(self, task: UploadTask, error: Exception) -> None:
        now = self._clock.now()
        message = str(error) or type(error).__name__
        task.error = message

        if self._policy.should_retry(task.retry_count, error):
            task.retry_count += 1
            delay = self._policy.delay_for(task.retry_count)
            task.transition(UploadStatus.QUEUED)
            task.next_attempt_at = now + delay
            task.set_stage(
                f"Retrying in {delay:g}s... ({task.retry_count}/{self._policy.max_attempts})",
                now,
            )
            logger.warning(
                f"Upload of {task.file_name} failed: {message}; "
                f"retry {task.retry_count}/{self._policy.max_attempts} in {delay:g}s"
            )
            self._schedule_wakeup(delay)
            self._notify(task)
            return

        task.transition(UploadStatus.FAILED)
        task.next_attempt_at = None
        task.set_stage(STAGE_FAILED, now)
        logger.error(f"Upload of {task.file_name} failed after {task.retry_count} retries: {message}")
        self._notify(task)
        self.events.publish(TaskEvent(TaskEventType.FAILED, task=copy.copy(task), message=message))

    def _schedule_wakeup(self, delay: float) -> None:
        async def wake() -> None:
            await self._clock.sleep(delay)
            self.process_queue()

        timer = asyncio.get_running_loop().create_task(wake())
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    # === Lifecycle ===

    async def join(self) -> None:
        """Wait until no transfer is running and no retry is pending.

        Tasks that cannot progress without the caller (paused, waiting for
        their file, or queued while offline) do not keep join() waiting.
        """
        while True:
            pending = set(self._supervisors.values()) | self._timers
            if not pending:
                return
            await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

    async def close(self) -> None:
        """Abort live transfers, cancel retry timers and end event streams."""
        self._closed = True
        for task_id in list(self._live):
            self._stop_engine(task_id)
        for timer in list(self._timers):
            timer.cancel()
        pending = [*self._supervisors.values(), *self._timers]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._persist()
        self.events.close()
        logger.debug("Upload scheduler closed")

    # === Persistence and notification ===

    def _restore(self) -> None:
        """Load the persisted snapshot as tasks waiting for their file."""
        if self._store is None:
            return
        now = self._clock.now()
        restored = 0
        for data in self._store.load_queue():
            try:
                task = UploadTask.from_dict(data)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable queue entry: {e}")
                if isinstance(data.get("id"), str):
                    self._store.remove_session(data["id"])
                continue
            if not task.status.is_resumable:
                # Dropped from the queue: its resume pointer goes too
                self._store.remove_session(task.id)
                continue
            # Restored tasks have no payload and no engine: park them
            task.status = UploadStatus.PAUSED
            task.rehydration_pending = True
            task.next_attempt_at = None
            task.set_stage(STAGE_REHYDRATION, now)
            self._tasks.append(task)
            restored += 1

        if restored:
            logger.info(f"Restored {restored} upload(s) waiting for their files")
            self._persist()

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save_queue(self._tasks)

    def _notify(self, task: UploadTask) -> None:
        task.refresh_timing(self._clock.now())
        self.events.publish(TaskEvent(TaskEventType.TASK_UPDATED, task=copy.copy(task)))

    def _publish_queue(self) -> None:
        now = self._clock.now()
        for task in self._tasks:
            task.refresh_timing(now)
        self.events.publish(TaskEvent(
            TaskEventType.QUEUE_UPDATED,
            tasks=tuple(copy.copy(task) for task in self._tasks),
        ))
