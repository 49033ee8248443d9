"""
Channel sync job: refreshes channel metadata and the video catalogue, then
fans out change detection and claim sync.
"""
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from server.monitor.db import dialect_insert
from server.monitor.errors import AuthExpired, PersistenceError, TokenRefreshError
from server.monitor.models import Channel, ChannelStatus, NotificationType, Video
from server.monitor.schemas import (
    ChannelSyncJob, ClaimDetectJob, ClaimSyncJob, NotificationJob, VideoInfo, VideoPage, VideoSnapshot
)
from server.monitor.services.job_queue import JobKind, JobOrchestrator
from server.monitor.services.logging_service import get_logger
from server.monitor.services.notification_service import publish_notification
from server.monitor.services.pagination import RateLimitedPager
from server.monitor.services.token_service import TokenService
from server.monitor.services.youtube_client import YouTubeClient

logger = logging.getLogger(__name__)

REAUTHORIZATION_MESSAGE = "Failed to refresh token - reauthorization required"


@dataclass
class ChannelSyncSummary:
    pages: int = 0
    videos_synced: int = 0
    new_videos: int = 0
    failed: int = 0


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _video_fields(info: VideoInfo) -> dict:
    return {
        "title": info.title,
        "description": info.description,
        "thumbnail_url": info.thumbnail_url,
        "published_at": _naive_utc(info.published_at),
        "duration": info.duration,
        "view_count": info.view_count,
        "like_count": info.like_count,
        "privacy_status": info.privacy_status,
        "upload_status": info.upload_status,
        "license": info.license,
        "made_for_kids": info.made_for_kids,
        "blocked_regions": list(info.blocked_regions),
        "allowed_regions": list(info.allowed_regions),
    }


class ChannelSyncService:
    """Processes channel-sync jobs."""

    def __init__(self, session_factory: async_sessionmaker, youtube_client: YouTubeClient,
                 token_service: TokenService, orchestrator: JobOrchestrator,
                 video_page_delay: float = 0.5, sleep=asyncio.sleep):
        self.session_factory = session_factory
        self.youtube_client = youtube_client
        self.token_service = token_service
        self.orchestrator = orchestrator
        self.video_page_delay = video_page_delay
        self.sleep = sleep
        self.sync_logger = get_logger("sync")

    async def process_channel_sync(self, job: ChannelSyncJob) -> Optional[ChannelSyncSummary]:
        channel_id = uuid.UUID(job.channel_id)

        async with self.session_factory() as session:
            channel = await session.get(Channel, channel_id)
            if channel is None:
                logger.warning(f"Channel {channel_id} not found, skipping sync")
                return None
            if channel.status != ChannelStatus.ACTIVE:
                logger.info(f"Channel {channel_id} is {channel.status.value}, skipping sync")
                return None

            user_id = channel.user_id
            title = channel.title

            try:
                summary = await self._sync(session, channel)
            except (TokenRefreshError, AuthExpired) as e:
                # Not retried: only the user can restore access
                await session.rollback()
                await self._require_reauthorization(session, channel_id, user_id, title, e)
                return None
            except Exception as e:
                await session.rollback()
                await self._record_error(session, channel_id, str(e))
                raise

        self.sync_logger.log_sync_event(
            logging.INFO, str(channel_id), "channel", "completed",
            f"Synced {summary.videos_synced} videos for channel {channel_id}",
            pages=summary.pages, new_videos=summary.new_videos, failed=summary.failed,
        )
        return summary

    async def on_terminal_failure(self, job: ChannelSyncJob, error: Exception) -> None:
        """Tell the channel owner that syncing gave up after all retries."""
        async with self.session_factory() as session:
            channel = await session.get(Channel, uuid.UUID(job.channel_id))
            if channel is None:
                return
            await publish_notification(self.orchestrator, NotificationJob(
                user_id=str(channel.user_id),
                type=NotificationType.SYNC_ERROR,
                title="Channel Sync Failed",
                message=f'Failed to sync channel "{channel.title}": {error}',
                channel_id=str(channel.id),
                send_email=True,
            ))

    async def _sync(self, session: AsyncSession, channel: Channel) -> ChannelSyncSummary:
        summary = ChannelSyncSummary()
        caller = await self.token_service.authorize(session, channel)

        info = await caller(self.youtube_client.get_channel_info)
        channel.title = info.title
        channel.description = info.description
        channel.thumbnail_url = info.thumbnail_url
        channel.subscriber_count = info.subscriber_count
        channel.video_count = info.video_count
        await self._commit(session)

        youtube_channel_id = channel.youtube_channel_id

        async def fetch_page(page_token: Optional[str]) -> VideoPage:
            return await caller(
                lambda access_token: self.youtube_client.list_videos(access_token, youtube_channel_id, page_token)
            )

        pager = RateLimitedPager(fetch_page, min_interval=self.video_page_delay, sleep=self.sleep)
        async for page in pager:
            summary.pages += 1
            for video_info in page.videos:
                video_id, created = await self._upsert_video(session, channel.id, video_info)
                await self._commit(session)
                if created:
                    summary.new_videos += 1

                try:
                    await self.orchestrator.enqueue(
                        JobKind.CLAIM_DETECT,
                        ClaimDetectJob(video_id=str(video_id), channel_id=str(channel.id)),
                        job_id=f"detect-{video_id}-{int(time.time() * 1000)}",
                    )
                    summary.videos_synced += 1
                except RedisError as e:
                    summary.failed += 1
                    logger.error(f"Failed to queue change detection for video {video_info.id}: {e}")

        channel.last_sync_at = datetime.utcnow()
        channel.last_sync_error = None
        await self._commit(session)

        if channel.partner_access_denied_at is None:
            await self.orchestrator.enqueue(
                JobKind.CLAIM_SYNC,
                ClaimSyncJob(channel_id=str(channel.id)),
                job_id=f"claim-sync-{channel.id}-{int(time.time() * 1000)}",
            )

        return summary

    async def _upsert_video(self, session: AsyncSession, channel_id: uuid.UUID,
                            info: VideoInfo) -> Tuple[uuid.UUID, bool]:
        """Insert or update a video; returns its id and whether it was created."""
        fields = _video_fields(info)
        try:
            video = await self._get_video(session, info.id)
            if video is None:
                now = datetime.utcnow()
                stmt = dialect_insert(session, Video).values(
                    id=uuid.uuid4(),
                    channel_id=channel_id,
                    youtube_video_id=info.id,
                    created_at=now,
                    updated_at=now,
                    **fields,
                ).on_conflict_do_nothing(index_elements=["youtube_video_id"]).returning(Video.id)
                new_id = (await session.execute(stmt)).scalar_one_or_none()
                if new_id is not None:
                    return new_id, True
                video = await self._get_video(session, info.id)

            if video.previous_state is None:
                # Capture the baseline before the stored state is overwritten
                video.previous_state = VideoSnapshot(
                    privacy_status=video.privacy_status,
                    upload_status=video.upload_status,
                    blocked_regions=list(video.blocked_regions or []),
                    monetization_status=video.monetization_status,
                ).to_state()

            video.channel_id = channel_id
            for key, value in fields.items():
                setattr(video, key, value)
            return video.id, False

        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store video {info.id}: {e}") from e

    @staticmethod
    async def _get_video(session: AsyncSession, youtube_video_id: str) -> Optional[Video]:
        result = await session.execute(select(Video).where(Video.youtube_video_id == youtube_video_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        try:
            await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to commit channel sync: {e}") from e

    async def _record_error(self, session: AsyncSession, channel_id: uuid.UUID, message: str) -> None:
        try:
            await session.execute(
                update(Channel).where(Channel.id == channel_id).values(last_sync_error=message[:2000])
            )
            await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record sync error for channel {channel_id}: {e}")

    async def _require_reauthorization(self, session: AsyncSession, channel_id: uuid.UUID,
                                       user_id: uuid.UUID, title: str, error: Exception) -> None:
        logger.warning(f"Channel {channel_id} needs reauthorization: {error}")
        await session.execute(
            update(Channel)
            .where(Channel.id == channel_id)
            .values(status=ChannelStatus.ERROR, last_sync_error=REAUTHORIZATION_MESSAGE)
        )
        await session.commit()

        await publish_notification(self.orchestrator, NotificationJob(
            user_id=str(user_id),
            type=NotificationType.SYNC_ERROR,
            title="Channel Reauthorization Required",
            message=f'YouTube access for "{title}" has expired. Reconnect the channel to resume monitoring.',
            channel_id=str(channel_id),
            send_email=True,
        ))
