"""Event stream decoupling the scheduler from its consumers.

This module provides:
- EventBus: Observer registry plus async iteration over TaskEvent records
- UploadCallbacks: Adapter turning the classic four callbacks into a listener

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe(lambda event: print(event))

    async for event in bus.stream():
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, fields

from lessonup.client.upload.types import (
    ErrorCallback,
    EventListener,
    QueueCallback,
    TaskCallback,
    TaskEvent,
    TaskEventType,
)

logger = logging.getLogger(__name__)


class EventBus:
    """Publishes TaskEvent records to listeners and async streams.

    Listeners are called synchronously, in subscription order, from the
    event loop thread. A failing listener is logged and does not prevent
    delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._streams: list[asyncio.Queue[TaskEvent | None]] = []

    def subscribe(self, listener: EventListener) -> EventListener:
        """Register a listener.

        Returns:
            The listener, for later unsubscribe().
        """
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: EventListener) -> None:
        """Remove a listener (no-op if not registered)."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        """Get number of registered listeners."""
        return len(self._listeners)

    def publish(self, event: TaskEvent) -> None:
        """Deliver an event to every listener and open stream."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event!r}")
        for queue in self._streams:
            queue.put_nowait(event)

    async def stream(self) -> AsyncIterator[TaskEvent]:
        """Iterate over events published from now on, until close()."""
        queue: asyncio.Queue[TaskEvent | None] = asyncio.Queue()
        self._streams.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._streams.remove(queue)

    def close(self) -> None:
        """End every open stream."""
        for queue in self._streams:
            queue.put_nowait(None)


@dataclass
class UploadCallbacks:
    """The four caller callbacks, dispatched from TaskEvent records.

    Attributes:
        on_task_update: Called with the task on every task change.
        on_queue_update: Called with the full queue when tasks are added or removed.
        on_complete: Called when a task reaches complete.
        on_error: Called with the task and message when a task fails for good.
    """

    on_task_update: TaskCallback | None = None
    on_queue_update: QueueCallback | None = None
    on_complete: TaskCallback | None = None
    on_error: ErrorCallback | None = None

    def merge(self, other: UploadCallbacks) -> None:
        """Overwrite callbacks with the ones set on other."""
        for f in fields(self):
            value = getattr(other, f.name)
            if value is not None:
                setattr(self, f.name, value)

    def __call__(self, event: TaskEvent) -> None:
        """Dispatch an event to the matching callback."""
        if event.type == TaskEventType.TASK_UPDATED and event.task is not None:
            if self.on_task_update:
                self.on_task_update(event.task)
        elif event.type == TaskEventType.QUEUE_UPDATED:
            if self.on_queue_update:
                self.on_queue_update(list(event.tasks))
        elif event.type == TaskEventType.COMPLETED and event.task is not None:
            if self.on_complete:
                self.on_complete(event.task)
        elif event.type == TaskEventType.FAILED and event.task is not None:
            if self.on_error:
                self.on_error(event.task, event.message or "Unknown error")
