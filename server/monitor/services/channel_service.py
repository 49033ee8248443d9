"""
User-initiated channel actions: pause, resume, reconnect, manual sync,
deletion and event status changes.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from server.monitor.errors import ChannelNotFoundError, ChannelStateError, TokenRefreshError
from server.monitor.models import Channel, ChannelStatus, CopyrightEvent, EventStatus, Video
from server.monitor.services.channel_sync_service import REAUTHORIZATION_MESSAGE
from server.monitor.services.scheduler import SyncScheduler
from server.monitor.services.token_service import TokenService

logger = logging.getLogger(__name__)

CLOSING_STATUSES = {EventStatus.RESOLVED, EventStatus.EXPIRED, EventStatus.WITHDRAWN}


class ChannelService:
    """Channel management on behalf of the owning user."""

    def __init__(self, session_factory: async_sessionmaker, scheduler: SyncScheduler,
                 token_service: TokenService):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.token_service = token_service

    async def set_monitoring_status(self, channel_id: uuid.UUID, user_id: uuid.UUID,
                                    status: ChannelStatus) -> Channel:
        """Pause or resume monitoring."""
        if status not in (ChannelStatus.ACTIVE, ChannelStatus.PAUSED):
            raise ChannelStateError(f"Cannot set channel status to {status.value}")

        async with self.session_factory() as session:
            channel = await self._get_owned_channel(session, channel_id, user_id)
            if status == ChannelStatus.ACTIVE and channel.status == ChannelStatus.REVOKED:
                raise ChannelStateError("Cannot activate a revoked channel. Please reconnect.")

            channel.status = status
            await session.commit()
            logger.info(f"Channel {channel_id} set to {status.value} by user {user_id}")
            return channel

    async def reconnect(self, channel_id: uuid.UUID, user_id: uuid.UUID) -> Channel:
        """Refresh the channel's credentials and resume monitoring."""
        async with self.session_factory() as session:
            channel = await self._get_owned_channel(session, channel_id, user_id)
            try:
                await self.token_service.refresh(session, channel)
            except TokenRefreshError:
                channel.status = ChannelStatus.ERROR
                channel.last_sync_error = REAUTHORIZATION_MESSAGE
                await session.commit()
                raise

            channel.status = ChannelStatus.ACTIVE
            channel.last_sync_error = None
            channel.partner_access_denied_at = None
            await session.commit()
            logger.info(f"Channel {channel_id} reconnected")
            return channel

    async def request_sync(self, channel_id: uuid.UUID, user_id: uuid.UUID) -> Optional[str]:
        async with self.session_factory() as session:
            channel = await self._get_owned_channel(session, channel_id, user_id)
            self._require_active(channel)
        return await self.scheduler.schedule_single_channel_sync(channel_id)

    async def request_claim_sync(self, channel_id: uuid.UUID, user_id: uuid.UUID,
                                 full_sync: bool = False) -> Optional[str]:
        async with self.session_factory() as session:
            channel = await self._get_owned_channel(session, channel_id, user_id)
            self._require_active(channel)
        return await self.scheduler.schedule_claim_sync(channel_id, full_sync=full_sync)

    async def delete_channel(self, channel_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """Delete a channel together with its videos and their events."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Channel)
                .options(selectinload(Channel.videos).selectinload(Video.events))
                .where(Channel.id == channel_id, Channel.user_id == user_id)
            )
            channel = result.scalar_one_or_none()
            if channel is None:
                raise ChannelNotFoundError(f"Channel {channel_id} not found")

            await session.delete(channel)
            await session.commit()
            logger.info(f"Deleted channel {channel_id} for user {user_id}")

    async def update_event_status(self, event_id: uuid.UUID, user_id: uuid.UUID,
                                  status: EventStatus) -> CopyrightEvent:
        """Change an event's status; closing statuses stamp the resolution time."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CopyrightEvent)
                .join(Video, CopyrightEvent.video_id == Video.id)
                .join(Channel, Video.channel_id == Channel.id)
                .where(CopyrightEvent.id == event_id, Channel.user_id == user_id)
            )
            event = result.scalar_one_or_none()
            if event is None:
                raise ChannelNotFoundError(f"Event {event_id} not found")

            event.status = status
            event.resolved_at = datetime.utcnow() if status in CLOSING_STATUSES else None
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ChannelStateError(
                    f"Event {event_id} cannot be reopened: an open event already records this change"
                ) from e
            return event

    @staticmethod
    async def _get_owned_channel(session: AsyncSession, channel_id: uuid.UUID, user_id: uuid.UUID) -> Channel:
        result = await session.execute(
            select(Channel).where(Channel.id == channel_id, Channel.user_id == user_id)
        )
        channel = result.scalar_one_or_none()
        if channel is None:
            raise ChannelNotFoundError(f"Channel {channel_id} not found")
        return channel

    @staticmethod
    def _require_active(channel: Channel) -> None:
        if channel.status != ChannelStatus.ACTIVE:
            raise ChannelStateError(f"Channel must be active to sync (currently {channel.status.value})")
