"""
Periodic fan-out of channel sync jobs.
"""
import asyncio
import logging
import time
from typing import Optional, Union
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from server.monitor.models import Channel, ChannelStatus
from server.monitor.schemas import ChannelSyncJob, ClaimSyncJob
from server.monitor.services.job_queue import JobKind, JobOrchestrator

logger = logging.getLogger(__name__)


def _millis() -> int:
    return int(time.time() * 1000)


class SyncScheduler:
    """Enqueues a sync for every active channel at startup and then on a fixed interval."""

    def __init__(self, orchestrator: JobOrchestrator, session_factory: async_sessionmaker,
                 interval_hours: float = 4.0, stagger_seconds: float = 5.0):
        self.orchestrator = orchestrator
        self.session_factory = session_factory
        self.interval_seconds = interval_hours * 3600
        self.stagger_seconds = stagger_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Sync scheduler started, interval {self.interval_seconds / 3600:g}h")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.trigger_full_sync()
            except Exception as e:
                # A failed round must not stop the timer
                logger.error(f"Scheduled sync round failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    async def trigger_full_sync(self) -> int:
        """
        Enqueue a channel sync for every ACTIVE channel.

        Consecutive channels are staggered so the platform sees a gradual
        ramp rather than a burst. Returns the number of jobs enqueued.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Channel.id)
                .where(Channel.status == ChannelStatus.ACTIVE)
                .order_by(Channel.created_at)
            )
            channel_ids = list(result.scalars().all())

        logger.info(f"Scheduling sync for {len(channel_ids)} active channels")

        enqueued = 0
        for index, channel_id in enumerate(channel_ids):
            job_id = await self.orchestrator.enqueue(
                JobKind.CHANNEL_SYNC,
                ChannelSyncJob(channel_id=str(channel_id)),
                job_id=f"scheduled-sync-{channel_id}-{_millis()}",
                delay=index * self.stagger_seconds,
            )
            if job_id:
                enqueued += 1
        return enqueued

    async def schedule_single_channel_sync(self, channel_id: Union[str, uuid.UUID]) -> Optional[str]:
        """Enqueue an immediate, user-requested sync for one channel."""
        job_id = await self.orchestrator.enqueue(
            JobKind.CHANNEL_SYNC,
            ChannelSyncJob(channel_id=str(channel_id)),
            job_id=f"manual-sync-{channel_id}-{_millis()}",
        )
        logger.info(f"Scheduled manual sync for channel {channel_id}")
        return job_id

    async def schedule_claim_sync(self, channel_id: Union[str, uuid.UUID], full_sync: bool = False) -> Optional[str]:
        return await self.orchestrator.enqueue(
            JobKind.CLAIM_SYNC,
            ClaimSyncJob(channel_id=str(channel_id), full_sync=full_sync),
            job_id=f"claim-sync-{channel_id}-{_millis()}",
        )
