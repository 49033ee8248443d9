"""
Tests for claim reconciliation and change recording.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from server.monitor.models import (
    Base, Channel, Claimant, ClaimantStatistics, CopyrightEvent, EventStatus, EventType, User, Video
)
from server.monitor.services.reconciliation_service import ReconcileOutcome, ReconciliationService
from tests.mocks import make_claim


@pytest.fixture
def service(db_session):
    return ReconciliationService(db_session)


async def count_events(session_factory, **filters):
    async with session_factory() as session:
        stmt = select(func.count(CopyrightEvent.id))
        for column, value in filters.items():
            stmt = stmt.where(getattr(CopyrightEvent, column) == value)
        return (await session.execute(stmt)).scalar_one()


class TestReconcileClaim:

    async def test_new_claim(self, service, video, session_factory):
        outcome = await service.reconcile_claim(make_claim("C1", "vid_001"), video.id)

        assert outcome == ReconcileOutcome.NEW
        async with session_factory() as session:
            event = (await session.execute(select(CopyrightEvent))).scalar_one()
        assert event.youtube_claim_id == "C1"
        assert event.video_id == video.id
        assert event.type == EventType.CLAIM
        assert event.status == EventStatus.ACTIVE
        assert event.policy_action == "monetize"
        assert event.content_type == "audio"
        assert event.asset_id == "AC1"
        assert event.match_start_ms == 10000
        assert event.match_end_ms == 40000
        assert event.detected_at == datetime(2024, 5, 1, 12, 0)
        assert event.raw_data["id"] == "C1"

    async def test_repeat_is_unchanged(self, service, video, session_factory):
        claim = make_claim("C1", "vid_001")

        await service.reconcile_claim(claim, video.id)
        outcome = await service.reconcile_claim(claim, video.id)

        assert outcome == ReconcileOutcome.UNCHANGED
        assert await count_events(session_factory) == 1

    async def test_status_change_updates(self, service, video, session_factory):
        await service.reconcile_claim(make_claim("C1", "vid_001"), video.id)

        outcome = await service.reconcile_claim(make_claim("C1", "vid_001", status="inactive"), video.id)

        assert outcome == ReconcileOutcome.UPDATED
        async with session_factory() as session:
            event = (await session.execute(select(CopyrightEvent))).scalar_one()
        assert event.status == EventStatus.RESOLVED
        assert event.raw_data["status"] == "inactive"

    async def test_policy_change_updates(self, service, video, session_factory):
        await service.reconcile_claim(make_claim("C1", "vid_001", action="track"), video.id)

        outcome = await service.reconcile_claim(make_claim("C1", "vid_001", action="monetize"), video.id)

        assert outcome == ReconcileOutcome.UPDATED
        async with session_factory() as session:
            event = (await session.execute(select(CopyrightEvent))).scalar_one()
        assert event.policy_action == "monetize"

    async def test_other_fields_do_not_count_as_changes(self, service, video):
        await service.reconcile_claim(make_claim("C1", "vid_001"), video.id)

        outcome = await service.reconcile_claim(
            make_claim("C1", "vid_001", contentType="VIDEO", assetId="A-other"), video.id
        )

        assert outcome == ReconcileOutcome.UNCHANGED

    async def test_blocking_claim_is_strike(self, service, video, session_factory):
        await service.reconcile_claim(make_claim("C2", "vid_001", action="block"), video.id)

        assert await count_events(session_factory, type=EventType.STRIKE) == 1

    async def test_applied_policy_wins(self, service, video, session_factory):
        claim = make_claim("C3", "vid_001", action="monetize", appliedPolicy={"rules": [{"action": "block"}]})

        await service.reconcile_claim(claim, video.id)

        async with session_factory() as session:
            event = (await session.execute(select(CopyrightEvent))).scalar_one()
        assert event.policy_action == "block"
        assert event.type == EventType.STRIKE

    async def test_claim_without_match_info(self, service, video, session_factory):
        claim = make_claim("C4", "vid_001", matchInfo=None)

        assert await service.reconcile_claim(claim, video.id) == ReconcileOutcome.NEW

        async with session_factory() as session:
            event = (await session.execute(select(CopyrightEvent))).scalar_one()
        assert event.match_start_ms is None
        assert event.match_end_ms is None

    async def test_distinct_claims(self, service, video, session_factory):
        for claim_id in ("C1", "C2", "C3"):
            await service.reconcile_claim(make_claim(claim_id, "vid_001"), video.id)

        assert await count_events(session_factory) == 3


class TestRecordDetectedChange:

    async def test_records_event(self, service, video):
        event = await service.record_detected_change(
            video.id, EventType.REGION_RESTRICTION, "New region blocks: DE, FR"
        )

        assert event is not None
        assert event.type == EventType.REGION_RESTRICTION
        assert event.status == EventStatus.ACTIVE
        assert event.youtube_claim_id is None
        assert event.change_description == "New region blocks: DE, FR"
        assert event.raw_data["changeDescription"] == "New region blocks: DE, FR"
        assert event.raw_data["detectedAt"].endswith("Z")

    async def test_open_duplicate_is_suppressed(self, service, video, session_factory):
        description = "Privacy status changed from public to private"

        first = await service.record_detected_change(video.id, EventType.MONETIZATION_CHANGE, description)
        second = await service.record_detected_change(video.id, EventType.MONETIZATION_CHANGE, description)

        assert first is not None
        assert second is None
        assert await count_events(session_factory) == 1

    async def test_resolved_event_does_not_suppress(self, service, video, db_session, session_factory):
        description = "Privacy status changed from public to private"
        first = await service.record_detected_change(video.id, EventType.MONETIZATION_CHANGE, description)

        first.status = EventStatus.RESOLVED
        await db_session.commit()

        again = await service.record_detected_change(video.id, EventType.MONETIZATION_CHANGE, description)

        assert again is not None
        assert again.id != first.id
        assert await count_events(session_factory) == 2

    async def test_different_description_is_new(self, service, video, session_factory):
        await service.record_detected_change(video.id, EventType.REGION_RESTRICTION, "New region blocks: DE")
        await service.record_detected_change(video.id, EventType.REGION_RESTRICTION, "New region blocks: FR")

        assert await count_events(session_factory) == 2

    async def test_claimant_attached_and_counted(self, service, video, session_factory):
        event = await service.record_detected_change(
            video.id, EventType.CLAIM, "Claim by label", claimant_name="Universal Music Group, Inc."
        )

        assert event.claimant_id is not None
        async with session_factory() as session:
            claimant = (await session.execute(select(Claimant))).scalar_one()
            stats = (await session.execute(select(ClaimantStatistics))).scalar_one()
        assert claimant.name == "Universal Music Group, Inc."
        assert claimant.name_normalized == "universal music group"
        assert stats.total_claims == 1


    async def test_open_duplicates_rejected_by_database(self, video, db_session):
        description = "New region blocks: DE"
        for _ in range(2):
            db_session.add(CopyrightEvent(
                video_id=video.id,
                type=EventType.REGION_RESTRICTION,
                status=EventStatus.ACTIVE,
                change_description=description,
                detected_at=datetime.utcnow(),
            ))

        with pytest.raises(IntegrityError):
            await db_session.commit()
        await db_session.rollback()

    async def test_closed_duplicate_allowed_by_database(self, video, db_session, session_factory):
        description = "New region blocks: DE"
        for status in (EventStatus.RESOLVED, EventStatus.ACTIVE):
            db_session.add(CopyrightEvent(
                video_id=video.id,
                type=EventType.REGION_RESTRICTION,
                status=status,
                change_description=description,
                detected_at=datetime.utcnow(),
            ))
        await db_session.commit()

        assert await count_events(session_factory) == 2


class TestNotificationTracking:

    async def test_new_change_is_pending_until_marked(self, service, video):
        event = await service.record_detected_change(
            video.id, EventType.REGION_RESTRICTION, "New region blocks: DE"
        )

        pending = await service.pending_change_notifications(video.id)
        assert [item.id for item in pending] == [event.id]

        await service.mark_notified([event.id])

        assert await service.pending_change_notifications(video.id) == []

    async def test_claims_are_tracked_separately(self, service, video, channel):
        await service.reconcile_claim(make_claim("C1", "vid_001"), video.id)
        await service.record_detected_change(video.id, EventType.REGION_RESTRICTION, "New region blocks: DE")

        claims = await service.pending_claim_notifications(channel.id)
        changes = await service.pending_change_notifications(video.id)

        assert [event.youtube_claim_id for event in claims] == ["C1"]
        assert [event.change_description for event in changes] == ["New region blocks: DE"]


@pytest.fixture
async def file_session_factory(tmp_path):
    """File-backed database so concurrent sessions use separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'monitor.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def create_video(session_factory):
    async with session_factory() as session:
        user = User(email="owner@example.com", display_label="Owner")
        session.add(user)
        await session.flush()
        channel = Channel(
            user_id=user.id,
            youtube_channel_id="UC_concurrent",
            title="Concurrent Channel",
            access_token="encrypted-access",
            refresh_token="encrypted-refresh",
            token_expires_at=datetime.utcnow() + timedelta(hours=1),
        )
        session.add(channel)
        await session.flush()
        video = Video(channel_id=channel.id, youtube_video_id="vid_concurrent", title="Shared Video")
        session.add(video)
        await session.commit()
        return video.id


class TestConcurrentRecording:

    async def test_parallel_passes_record_one_event(self, file_session_factory):
        video_id = await create_video(file_session_factory)

        async def record():
            async with file_session_factory() as session:
                return await ReconciliationService(session).record_detected_change(
                    video_id, EventType.REGION_RESTRICTION, "New region blocks: DE, FR",
                    claimant_name="Acme Records",
                )

        results = await asyncio.gather(record(), record())

        assert sum(result is not None for result in results) == 1
        async with file_session_factory() as session:
            active = (await session.execute(
                select(func.count(CopyrightEvent.id)).where(CopyrightEvent.status == EventStatus.ACTIVE)
            )).scalar_one()
            stats = (await session.execute(select(ClaimantStatistics))).scalar_one()
        assert active == 1
        # The losing pass does not count the claimant
        assert stats.total_claims == 1


class TestClaimants:

    async def test_upsert_deduplicates_by_normalized_name(self, service, db_session, session_factory):
        first = await service.upsert_claimant("Universal Music Group, Inc.")
        second = await service.upsert_claimant("universal music group")
        await db_session.commit()

        assert first == second
        async with session_factory() as session:
            claimants = (await session.execute(select(Claimant))).scalars().all()
        assert len(claimants) == 1
        # First display name is kept
        assert claimants[0].name == "Universal Music Group, Inc."

    async def test_increment_counts_each_call(self, service, db_session, session_factory):
        claimant_id = await service.upsert_claimant("Acme Records")

        for _ in range(3):
            await service.increment_claimant_claims(claimant_id)
        await db_session.commit()

        async with session_factory() as session:
            stats = (await session.execute(select(ClaimantStatistics))).scalar_one()
        assert stats.total_claims == 3
