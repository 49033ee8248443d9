"""
Reconciliation of observed claims and changes against the event store.

Decides whether a claim is new, updated or unchanged, collapses repeated
change descriptions into a single open event, and keeps claimant statistics
current. Uniqueness is enforced by the database (unique indexes plus
``ON CONFLICT``), so concurrent syncs of the same channel stay idempotent.
"""
import enum
import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from server.monitor.db import dialect_insert
from server.monitor.errors import PersistenceError
from server.monitor.models import (
    OPEN_EVENT_PREDICATE, CopyrightEvent, Claimant, ClaimantStatistics, ClaimantType, EventStatus, EventType, Video
)
from server.monitor.schemas import ContentIdClaim
from server.monitor.services.base_service import BaseService
from server.monitor.services.claim_normalizer import (
    categorize_claim, map_claim_status, normalize_claimant_name, parse_match_info, parse_policy_action
)

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
    NEW = "NEW"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ReconciliationService(BaseService):
    """Store accessor for copyright events and claimants."""

    async def reconcile_claim(self, claim: ContentIdClaim, video_id: uuid.UUID) -> ReconcileOutcome:
        """
        Insert or update the event for a Content ID claim.

        Only status and policy action are compared against the stored event;
        when either differs both are updated along with the raw payload.
        """
        status = map_claim_status(claim.status)
        policy_action = parse_policy_action(claim.policy, claim.applied_policy)

        try:
            existing = await self._get_event_by_claim_id(claim.id)
            if existing is None:
                event_id = await self._insert_claim_event(claim, video_id, status, policy_action)
                if event_id is not None:
                    await self.db.commit()
                    logger.info(f"Recorded new claim {claim.id} for video {video_id}")
                    return ReconcileOutcome.NEW
                # Lost an insert race with a concurrent sync; compare against the winner
                existing = await self._get_event_by_claim_id(claim.id)

            if existing.status == status and existing.policy_action == policy_action:
                return ReconcileOutcome.UNCHANGED

            existing.status = status
            existing.policy_action = policy_action
            existing.raw_data = claim.raw()
            await self.db.commit()
            logger.info(f"Updated claim {claim.id}: status={status.value} policy={policy_action}")
            return ReconcileOutcome.UPDATED

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to reconcile claim {claim.id}: {e}") from e

    async def record_detected_change(
        self,
        video_id: uuid.UUID,
        category: EventType,
        description: str,
        claimant_name: Optional[str] = None,
    ) -> Optional[CopyrightEvent]:
        """
        Record a platform-observed change unless an open event already describes it.

        Returns the created event, or None when the change was already on
        record. A resolved event with the same description does not
        suppress a new one.
        """
        try:
            duplicate = await self.db.execute(
                select(CopyrightEvent.id)
                .where(
                    CopyrightEvent.video_id == video_id,
                    CopyrightEvent.type == category,
                    CopyrightEvent.status == EventStatus.ACTIVE,
                    CopyrightEvent.change_description == description,
                )
                .limit(1)
            )
            if duplicate.scalar_one_or_none() is not None:
                logger.debug(f"Change already recorded for video {video_id}: {description}")
                return None

            detected_at = datetime.utcnow()
            stmt = dialect_insert(self.db, CopyrightEvent).values(
                id=uuid.uuid4(),
                video_id=video_id,
                type=category,
                status=EventStatus.ACTIVE,
                explanation=description,
                change_description=description,
                detected_at=detected_at,
                raw_data={
                    "changeDescription": description,
                    "detectedAt": detected_at.isoformat() + "Z",
                },
                created_at=detected_at,
                updated_at=detected_at,
            ).on_conflict_do_nothing(
                index_elements=["video_id", "type", "change_description"],
                index_where=OPEN_EVENT_PREDICATE,
            ).returning(CopyrightEvent.id)

            event_id = (await self.db.execute(stmt)).scalar_one_or_none()
            if event_id is None:
                logger.debug(f"Change recorded concurrently for video {video_id}: {description}")
                return None

            # Attributed only once the event insert has won
            if claimant_name:
                claimant_id = await self.upsert_claimant(claimant_name)
                await self.increment_claimant_claims(claimant_id)
                await self.db.execute(
                    update(CopyrightEvent).where(CopyrightEvent.id == event_id).values(claimant_id=claimant_id)
                )

            await self.db.commit()
            event = await self.db.get(CopyrightEvent, event_id)

            logger.info(f"Recorded {category.value} event {event.id} for video {video_id}: {description}")
            return event

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to record change for video {video_id}: {e}") from e

    async def pending_change_notifications(self, video_id: uuid.UUID) -> List[CopyrightEvent]:
        """Open change events on a video whose owner notification was never queued."""
        result = await self.db.execute(
            select(CopyrightEvent)
            .where(
                CopyrightEvent.video_id == video_id,
                CopyrightEvent.youtube_claim_id.is_(None),
                CopyrightEvent.status == EventStatus.ACTIVE,
                CopyrightEvent.notified_at.is_(None),
            )
            .order_by(CopyrightEvent.created_at)
        )
        return list(result.scalars().all())

    async def pending_claim_notifications(self, channel_id: uuid.UUID) -> List[CopyrightEvent]:
        """Claim events on a channel's videos whose owner notification was never queued."""
        result = await self.db.execute(
            select(CopyrightEvent)
            .join(Video, CopyrightEvent.video_id == Video.id)
            .where(
                Video.channel_id == channel_id,
                CopyrightEvent.youtube_claim_id.is_not(None),
                CopyrightEvent.notified_at.is_(None),
            )
            .order_by(CopyrightEvent.created_at)
        )
        return list(result.scalars().all())

    async def mark_notified(self, event_ids: List[uuid.UUID]) -> None:
        if not event_ids:
            return
        try:
            await self.db.execute(
                update(CopyrightEvent)
                .where(CopyrightEvent.id.in_(event_ids))
                .values(notified_at=datetime.utcnow())
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to mark {len(event_ids)} events as notified: {e}") from e

    async def upsert_claimant(self, name: str) -> uuid.UUID:
        """
        Return the claimant id for a name, creating the claimant if needed.

        The first display name written for a normalized key is kept.
        Does not commit.
        """
        name_normalized = normalize_claimant_name(name)
        stmt = dialect_insert(self.db, Claimant).values(
            id=uuid.uuid4(),
            name=name.strip(),
            name_normalized=name_normalized,
            type=ClaimantType.UNKNOWN,
            created_at=datetime.utcnow(),
        ).on_conflict_do_nothing(index_elements=["name_normalized"])
        await self.db.execute(stmt)

        result = await self.db.execute(
            select(Claimant.id).where(Claimant.name_normalized == name_normalized)
        )
        return result.scalar_one()

    async def increment_claimant_claims(self, claimant_id: uuid.UUID) -> None:
        """Atomically add one to the claimant's claim counter. Does not commit."""
        insert_stmt = dialect_insert(self.db, ClaimantStatistics).values(
            id=uuid.uuid4(),
            claimant_id=claimant_id,
            total_claims=1,
            updated_at=datetime.utcnow(),
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=["claimant_id"],
            set_={
                "total_claims": ClaimantStatistics.__table__.c.total_claims + 1,
                "updated_at": datetime.utcnow(),
            },
        )
        await self.db.execute(stmt)

    async def _get_event_by_claim_id(self, claim_id: str) -> Optional[CopyrightEvent]:
        result = await self.db.execute(
            select(CopyrightEvent).where(CopyrightEvent.youtube_claim_id == claim_id)
        )
        return result.scalar_one_or_none()

    async def _insert_claim_event(self, claim: ContentIdClaim, video_id: uuid.UUID,
                                  status: EventStatus, policy_action: str) -> Optional[uuid.UUID]:
        match = parse_match_info(claim.match_info)
        now = datetime.utcnow()
        stmt = dialect_insert(self.db, CopyrightEvent).values(
            id=uuid.uuid4(),
            video_id=video_id,
            youtube_claim_id=claim.id,
            asset_id=claim.asset_id,
            type=categorize_claim(policy_action),
            status=status,
            content_type=claim.content_type.lower() if claim.content_type else None,
            claim_type=claim.claim_type,
            policy_action=policy_action,
            match_start_ms=match.start_ms if match else None,
            match_end_ms=match.end_ms if match else None,
            detected_at=_naive_utc(claim.time_created) or now,
            raw_data=claim.raw(),
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["youtube_claim_id"]).returning(CopyrightEvent.id)

        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()
