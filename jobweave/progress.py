"""Progress tracking for long-running jobs."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from .constants import PROGRESS_TOPIC
from .contracts import Notification, Result
from .coordinator import Coordinator
from .models import Progress
from .transports import BaseTransport, Subscription

logger = logging.getLogger(__name__)


def clamp_percentage(percentage: float) -> int:
    return int(max(0, min(100, round(percentage))))


class ProgressSubscription:
    """Async iterator of :class:`Progress` snapshots for one job."""

    def __init__(self, subscription: Subscription) -> None:
        self._subscription = subscription

    async def get(self, timeout: Optional[float] = None) -> Optional[Progress]:
        notification = await self._subscription.get(timeout=timeout)
        if notification is None:
            return None
        return Progress.model_validate(notification.payload)

    async def close(self) -> None:
        await self._subscription.close()

    async def __aiter__(self) -> AsyncIterator[Progress]:
        async for notification in self._subscription:
            yield Progress.model_validate(notification.payload)


class ProgressTracker:
    """Keeps the latest progress snapshot per job and optionally broadcasts it."""

    def __init__(self, coordinator: Coordinator, transport: BaseTransport) -> None:
        self._coordinator = coordinator
        self._transport = transport

    @staticmethod
    def topic(job_id: int) -> str:
        return PROGRESS_TOPIC.format(job_id=job_id)

    async def update_progress(self, job_id: int, percentage: float, message: str = "") -> Progress:
        """Store a clamped snapshot, replacing the previous one, and publish it."""
        progress = Progress(
            job_id=job_id, percentage=clamp_percentage(percentage), message=message
        )
        async with self._coordinator.lock:
            await self._coordinator.save(progress, record_id=job_id)
            if self._coordinator.config.broadcast_progress:
                await self._transport.publish(
                    self.topic(job_id),
                    Notification(
                        topic=self.topic(job_id),
                        payload=progress.model_dump(mode="json"),
                    ),
                )
        logger.debug(f"Progress for job {job_id}: {progress.percentage}% {message}")
        return progress

    async def get_progress(self, job_id: int) -> Result:
        progress = await self._coordinator.load(Progress, job_id)
        if progress is None:
            return Result.failure("not_found", {"job_id": job_id})
        return Result.success(progress)

    async def subscribe_to_progress(
        self, job_id: int, lifespan: Optional[float] = None
    ) -> ProgressSubscription:
        """Register for future snapshots of ``job_id``, in update order."""
        subscription = await self._transport.subscribe(self.topic(job_id), lifespan=lifespan)
        return ProgressSubscription(subscription)

    async def ensure_started(self, job_id: int) -> None:
        """Initialize progress to 0% when a job starts, unless already reported."""
        if await self._coordinator.load(Progress, job_id) is None:
            await self.update_progress(job_id, 0, "Started")
