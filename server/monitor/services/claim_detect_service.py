"""
Claim detection job: compares a video's live state with the last observed
snapshot and records region restrictions and status changes.
"""
import logging
import uuid
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from server.monitor.errors import PersistenceError
from server.monitor.models import Channel, ChannelStatus, CopyrightEvent, EventType, NotificationType, Video
from server.monitor.schemas import ClaimDetectJob, NotificationJob, VideoInfo, VideoSnapshot
from server.monitor.services.job_queue import JobOrchestrator
from server.monitor.services.notification_service import publish_notification
from server.monitor.services.reconciliation_service import ReconciliationService
from server.monitor.services.state_diff import detect_changes
from server.monitor.services.token_service import TokenService
from server.monitor.services.youtube_client import YouTubeClient

logger = logging.getLogger(__name__)

VIDEO_UNAVAILABLE_MESSAGE = (
    "Video is no longer accessible on YouTube. It may have been deleted or made private."
)


class ClaimDetectService:
    """Processes claim-detect jobs."""

    def __init__(self, session_factory: async_sessionmaker, youtube_client: YouTubeClient,
                 token_service: TokenService, orchestrator: JobOrchestrator):
        self.session_factory = session_factory
        self.youtube_client = youtube_client
        self.token_service = token_service
        self.orchestrator = orchestrator

    async def process_claim_detect(self, job: ClaimDetectJob) -> List[CopyrightEvent]:
        """Run one detection pass for a video; returns the events created."""
        video_id = uuid.UUID(job.video_id)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Video).options(selectinload(Video.channel)).where(Video.id == video_id)
            )
            video = result.scalar_one_or_none()
            if video is None:
                logger.warning(f"Video {video_id} not found, skipping detection")
                return []

            channel = video.channel
            if channel.status != ChannelStatus.ACTIVE:
                logger.info(f"Channel {channel.id} is {channel.status.value}, skipping detection for video {video_id}")
                return []

            caller = await self.token_service.authorize(session, channel)
            youtube_video_id = video.youtube_video_id
            current = await caller(
                lambda access_token: self.youtube_client.get_video_details(access_token, youtube_video_id)
            )

            reconciler = ReconciliationService(session)

            if current is None:
                return await self._handle_missing_video(reconciler, video, channel)

            previous = VideoSnapshot.from_state(video.previous_state)
            detection = detect_changes(current.snapshot(), previous)

            created = []
            for change in detection.details:
                event = await reconciler.record_detected_change(video.id, change.category, change.describe())
                if event is not None:
                    created.append(event)

            # Covers events stored by an earlier attempt whose notification never went out
            await self._notify_pending(reconciler, channel, video)

            # Only now is the baseline advanced; a failure above leaves it for the retry
            await self._store_current_state(session, video, current)

            if detection.has_issues:
                logger.info(
                    f"Video {youtube_video_id}: {len(detection.changes)} changes, {len(created)} new events"
                )
            return created

    async def on_terminal_failure(self, job: ClaimDetectJob, error: Exception) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Video).options(selectinload(Video.channel)).where(Video.id == uuid.UUID(job.video_id))
            )
            video = result.scalar_one_or_none()
            if video is None:
                return
            await publish_notification(self.orchestrator, NotificationJob(
                user_id=str(video.channel.user_id),
                type=NotificationType.SYNC_ERROR,
                title="Video Check Failed",
                message=f'Could not check "{video.title}" for status changes: {error}',
                channel_id=str(video.channel_id),
                video_id=str(video.id),
                send_email=False,
            ))

    async def _handle_missing_video(self, reconciler: ReconciliationService, video: Video,
                                    channel: Channel) -> List[CopyrightEvent]:
        if video.privacy_status != "public":
            return []

        event = await reconciler.record_detected_change(
            video.id, EventType.MONETIZATION_CHANGE, VIDEO_UNAVAILABLE_MESSAGE
        )
        await self._notify_pending(reconciler, channel, video)
        return [event] if event is not None else []

    async def _notify_pending(self, reconciler: ReconciliationService, channel: Channel, video: Video) -> None:
        """Queue one notification per unannounced event, then mark the events notified."""
        pending = await reconciler.pending_change_notifications(video.id)
        for event in pending:
            await self._notify(channel, video, event)
        await reconciler.mark_notified([event.id for event in pending])

    async def _notify(self, channel: Channel, video: Video, event: CopyrightEvent) -> None:
        if event.type == EventType.REGION_RESTRICTION:
            notification_type = NotificationType.NEW_CLAIM
            title = "New Region Restriction Detected"
        else:
            notification_type = NotificationType.MONETIZATION_CHANGE
            title = "Video Status Changed"

        await publish_notification(self.orchestrator, NotificationJob(
            user_id=str(channel.user_id),
            type=notification_type,
            title=title,
            message=f"{video.title}: {event.change_description}",
            channel_id=str(channel.id),
            video_id=str(video.id),
            event_id=str(event.id),
            send_email=True,
        ), job_id=f"notify-event-{event.id}")

    @staticmethod
    async def _store_current_state(session: AsyncSession, video: Video, current: VideoInfo) -> None:
        video.title = current.title
        video.privacy_status = current.privacy_status
        video.upload_status = current.upload_status
        video.blocked_regions = list(current.blocked_regions)
        video.allowed_regions = list(current.allowed_regions)
        video.view_count = current.view_count
        video.like_count = current.like_count
        video.previous_state = current.snapshot().to_state()
        try:
            await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to store state for video {video.id}: {e}") from e
