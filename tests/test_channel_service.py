"""
Tests for channel service.
"""
import pytest
import uuid
from datetime import datetime
from unittest.mock import AsyncMock

from sqlalchemy import func, select

from server.monitor.errors import ChannelNotFoundError, ChannelStateError, TokenRefreshError
from server.monitor.models import Channel, ChannelStatus, CopyrightEvent, EventStatus, EventType, Video
from server.monitor.services.channel_service import ChannelService
from server.monitor.services.channel_sync_service import REAUTHORIZATION_MESSAGE
from server.monitor.services.token_service import TokenService
from tests.mocks import MockOAuthClient


class TestChannelService:
    """Test cases for ChannelService."""

    @pytest.fixture
    def scheduler(self):
        scheduler = AsyncMock()
        scheduler.schedule_single_channel_sync.return_value = "manual-sync-job"
        scheduler.schedule_claim_sync.return_value = "claim-sync-job"
        return scheduler

    @pytest.fixture
    def oauth_client(self):
        return MockOAuthClient()

    @pytest.fixture
    def channel_service(self, session_factory, scheduler, vault, oauth_client):
        """Create a ChannelService backed by the test database."""
        return ChannelService(session_factory, scheduler, TokenService(vault, oauth_client))

    @pytest.fixture
    async def event(self, db_session, video):
        event = CopyrightEvent(
            video_id=video.id,
            youtube_claim_id="C1",
            type=EventType.CLAIM,
            status=EventStatus.ACTIVE,
            detected_at=datetime.utcnow(),
        )
        db_session.add(event)
        await db_session.commit()
        return event

    async def _load_channel(self, session_factory, channel_id):
        async with session_factory() as session:
            return await session.get(Channel, channel_id)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, channel_service, channel, user, session_factory):
        """Test pausing and resuming monitoring."""
        paused = await channel_service.set_monitoring_status(channel.id, user.id, ChannelStatus.PAUSED)
        assert paused.status == ChannelStatus.PAUSED

        resumed = await channel_service.set_monitoring_status(channel.id, user.id, ChannelStatus.ACTIVE)
        assert resumed.status == ChannelStatus.ACTIVE
        assert (await self._load_channel(session_factory, channel.id)).status == ChannelStatus.ACTIVE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ChannelStatus.ERROR, ChannelStatus.REVOKED])
    async def test_only_pause_or_resume_allowed(self, channel_service, channel, user, status):
        with pytest.raises(ChannelStateError):
            await channel_service.set_monitoring_status(channel.id, user.id, status)

    @pytest.mark.asyncio
    async def test_revoked_channel_cannot_be_resumed(self, channel_service, channel, user, db_session):
        """A revoked channel must be reconnected instead."""
        channel.status = ChannelStatus.REVOKED
        await db_session.commit()

        with pytest.raises(ChannelStateError, match="reconnect"):
            await channel_service.set_monitoring_status(channel.id, user.id, ChannelStatus.ACTIVE)

    @pytest.mark.asyncio
    async def test_other_users_channel(self, channel_service, channel):
        with pytest.raises(ChannelNotFoundError):
            await channel_service.set_monitoring_status(channel.id, uuid.uuid4(), ChannelStatus.PAUSED)

    @pytest.mark.asyncio
    async def test_reconnect(self, channel_service, channel, user, db_session, session_factory, vault,
                             oauth_client):
        """Test reconnecting a channel in error state."""
        channel.status = ChannelStatus.ERROR
        channel.last_sync_error = REAUTHORIZATION_MESSAGE
        channel.partner_access_denied_at = datetime.utcnow()
        await db_session.commit()

        await channel_service.reconnect(channel.id, user.id)

        stored = await self._load_channel(session_factory, channel.id)
        assert stored.status == ChannelStatus.ACTIVE
        assert stored.last_sync_error is None
        assert stored.partner_access_denied_at is None
        assert vault.decrypt(stored.access_token) == "fresh-access-token"
        assert oauth_client.calls == ["refresh-token"]

    @pytest.mark.asyncio
    async def test_reconnect_with_rejected_grant(self, session_factory, scheduler, vault, channel, user):
        service = ChannelService(
            session_factory, scheduler, TokenService(vault, MockOAuthClient(error=TokenRefreshError("invalid_grant")))
        )

        with pytest.raises(TokenRefreshError):
            await service.reconnect(channel.id, user.id)

        stored = await self._load_channel(session_factory, channel.id)
        assert stored.status == ChannelStatus.ERROR
        assert stored.last_sync_error == REAUTHORIZATION_MESSAGE

    @pytest.mark.asyncio
    async def test_request_sync(self, channel_service, scheduler, channel, user):
        job_id = await channel_service.request_sync(channel.id, user.id)

        assert job_id == "manual-sync-job"
        scheduler.schedule_single_channel_sync.assert_awaited_once_with(channel.id)

    @pytest.mark.asyncio
    async def test_request_claim_sync(self, channel_service, scheduler, channel, user):
        job_id = await channel_service.request_claim_sync(channel.id, user.id, full_sync=True)

        assert job_id == "claim-sync-job"
        scheduler.schedule_claim_sync.assert_awaited_once_with(channel.id, full_sync=True)

    @pytest.mark.asyncio
    async def test_sync_requires_active_channel(self, channel_service, scheduler, channel, user, db_session):
        channel.status = ChannelStatus.PAUSED
        await db_session.commit()

        with pytest.raises(ChannelStateError):
            await channel_service.request_sync(channel.id, user.id)
        scheduler.schedule_single_channel_sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_channel_cascades(self, channel_service, channel, user, video, event, session_factory):
        """Deleting a channel removes its videos and their events."""
        await channel_service.delete_channel(channel.id, user.id)

        async with session_factory() as session:
            channels = (await session.execute(select(func.count(Channel.id)))).scalar_one()
            videos = (await session.execute(select(func.count(Video.id)))).scalar_one()
            events = (await session.execute(select(func.count(CopyrightEvent.id)))).scalar_one()
        assert (channels, videos, events) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_delete_other_users_channel(self, channel_service, channel):
        with pytest.raises(ChannelNotFoundError):
            await channel_service.delete_channel(channel.id, uuid.uuid4())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [EventStatus.RESOLVED, EventStatus.EXPIRED, EventStatus.WITHDRAWN])
    async def test_closing_event_sets_resolved_at(self, channel_service, event, user, status):
        updated = await channel_service.update_event_status(event.id, user.id, status)

        assert updated.status == status
        assert updated.resolved_at is not None

    @pytest.mark.asyncio
    async def test_disputed_event_stays_open(self, channel_service, event, user):
        updated = await channel_service.update_event_status(event.id, user.id, EventStatus.DISPUTED)

        assert updated.status == EventStatus.DISPUTED
        assert updated.resolved_at is None

    @pytest.mark.asyncio
    async def test_event_of_other_user(self, channel_service, event):
        with pytest.raises(ChannelNotFoundError):
            await channel_service.update_event_status(event.id, uuid.uuid4(), EventStatus.RESOLVED)

    @pytest.mark.asyncio
    async def test_reopen_conflicting_with_open_change(self, channel_service, video, user, db_session):
        """Only one open event may record the same observed change."""
        closed = CopyrightEvent(
            video_id=video.id,
            type=EventType.REGION_RESTRICTION,
            status=EventStatus.RESOLVED,
            change_description="New region blocks: DE",
            detected_at=datetime.utcnow(),
        )
        db_session.add_all([
            closed,
            CopyrightEvent(
                video_id=video.id,
                type=EventType.REGION_RESTRICTION,
                status=EventStatus.ACTIVE,
                change_description="New region blocks: DE",
                detected_at=datetime.utcnow(),
            ),
        ])
        await db_session.commit()

        with pytest.raises(ChannelStateError):
            await channel_service.update_event_status(closed.id, user.id, EventStatus.ACTIVE)
