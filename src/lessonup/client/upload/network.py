"""Connectivity handling for the upload queue.

This module provides:
- NetworkMonitor: Pauses live transfers when offline, resumes them when back

Connectivity changes arrive either as direct calls (handle_offline /
handle_online) or from watch(), which polls an async health probe.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from lessonup.client.upload.retry import (
    NETWORK_CHECK_INTERVAL,
    NETWORK_EXCEPTIONS,
    Clock,
    SystemClock,
)
from lessonup.core.types import UploadStatus

if TYPE_CHECKING:
    from lessonup.client.upload.scheduler import QueueScheduler

logger = logging.getLogger(__name__)

HealthProbe = Callable[[], Awaitable[bool]]


class NetworkMonitor:
    """Bridges connectivity changes into scheduler pause/resume calls."""

    def __init__(
        self,
        scheduler: QueueScheduler,
        probe: HealthProbe | None = None,
        check_interval: float = NETWORK_CHECK_INTERVAL,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            scheduler: Scheduler whose transfers follow connectivity.
            probe: Async health check used by watch() (e.g. UploadAPIClient.health_check).
            check_interval: Seconds between probes.
            clock: Time source for the polling sleep.
        """
        self._scheduler = scheduler
        self._probe = probe
        self._check_interval = check_interval
        self._clock = clock or SystemClock()

    @property
    def online(self) -> bool:
        return self._scheduler.network_available

    def handle_offline(self) -> list[str]:
        """Mark the network unavailable and pause every live transfer.

        Returns:
            Ids of the tasks paused.
        """
        scheduler = self._scheduler
        was_online = scheduler.network_available
        scheduler.network_available = False

        paused = [
            task_id
            for task_id in scheduler.active_task_ids
            if scheduler.pause_upload(task_id)
        ]
        if was_online:
            logger.warning(f"Network lost, paused {len(paused)} upload(s)")
        return paused

    def handle_online(self) -> list[str]:
        """Mark the network available and resume paused tasks that have their file.

        Returns:
            Ids of the tasks resumed.
        """
        scheduler = self._scheduler
        was_online = scheduler.network_available
        scheduler.network_available = True

        resumed = [
            task.id
            for task in scheduler.get_queue()
            if task.status == UploadStatus.PAUSED
            and task.payload is not None
            and scheduler.resume_upload(task.id)
        ]
        if not was_online:
            logger.info(f"Network restored, resumed {len(resumed)} upload(s)")
        scheduler.process_queue()
        return resumed

    async def check(self) -> bool:
        """Probe once and apply the result.

        Returns:
            True if the probe reported the backend reachable.
        """
        if self._probe is None:
            raise RuntimeError("NetworkMonitor has no health probe")
        try:
            healthy = await self._probe()
        except NETWORK_EXCEPTIONS as e:
            logger.debug(f"Health probe failed: {e}")
            healthy = False
        if healthy and not self.online:
            self.handle_online()
        elif not healthy and self.online:
            self.handle_offline()
        return healthy

    async def watch(self, stop_event: asyncio.Event) -> None:
        """Poll the probe every check_interval seconds until stop_event is set."""
        attempts = 0
        while not stop_event.is_set():
            healthy = await self.check()
            if not healthy:
                attempts += 1
                if attempts % 12 == 0:  # Log every minute (12 * 5s)
                    logger.info(
                        f"Still waiting for network... "
                        f"({attempts * self._check_interval:.0f}s elapsed)"
                    )
            else:
                attempts = 0
            await self._clock.sleep(self._check_interval)
