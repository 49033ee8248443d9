"""
Claim sync job: pulls Content ID claims for a channel's videos and
reconciles them against stored events.
"""
import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from server.monitor.errors import AccessForbidden, PersistenceError
from server.monitor.models import Channel, ChannelStatus, EventType, NotificationType, Video
from server.monitor.schemas import ClaimSearchResult, ClaimSyncJob, NotificationJob
from server.monitor.services.claim_normalizer import categorize_claim, parse_policy_action
from server.monitor.services.content_id_client import ContentIdClient
from server.monitor.services.job_queue import JobOrchestrator
from server.monitor.services.logging_service import get_logger
from server.monitor.services.notification_service import publish_notification
from server.monitor.services.pagination import RateLimitedPager
from server.monitor.services.reconciliation_service import ReconcileOutcome, ReconciliationService
from server.monitor.services.token_service import TokenService
from server.monitor.services.youtube_client import MAX_IDS_PER_REQUEST

logger = logging.getLogger(__name__)

NO_PARTNER_ACCESS_MESSAGE = "No Content ID access - partner API not available for this account"
PARTNER_ACCESS_DENIED_MESSAGE = "Content ID API access denied - partner access required"


@dataclass
class ClaimSyncSummary:
    new_claims: int = 0
    updated_claims: int = 0
    unchanged_claims: int = 0
    new_strikes: int = 0
    skipped: int = 0
    failed: int = 0


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class ClaimSyncService:
    """Processes claim-sync jobs."""

    def __init__(self, session_factory: async_sessionmaker, content_id_client: ContentIdClient,
                 token_service: TokenService, orchestrator: JobOrchestrator,
                 claim_page_delay: float = 0.3, lookback_days: int = 30, sleep=asyncio.sleep):
        self.session_factory = session_factory
        self.content_id_client = content_id_client
        self.token_service = token_service
        self.orchestrator = orchestrator
        self.claim_page_delay = claim_page_delay
        self.lookback_days = lookback_days
        self.sleep = sleep
        self.sync_logger = get_logger("sync")

    async def process_claim_sync(self, job: ClaimSyncJob) -> Optional[ClaimSyncSummary]:
        channel_id = uuid.UUID(job.channel_id)

        async with self.session_factory() as session:
            channel = await session.get(Channel, channel_id)
            if channel is None:
                logger.warning(f"Channel {channel_id} not found, skipping claim sync")
                return None
            if channel.status != ChannelStatus.ACTIVE:
                logger.info(f"Channel {channel_id} is {channel.status.value}, skipping claim sync")
                return None

            user_id = channel.user_id
            title = channel.title

            try:
                summary = await self._sync(session, channel, job.full_sync)
            except AccessForbidden as e:
                await session.rollback()
                logger.warning(f"Content ID access denied for channel {channel_id}: {e}")
                await self._record_missing_partner_access(
                    session, channel_id, user_id, title, PARTNER_ACCESS_DENIED_MESSAGE
                )
                return None
            except Exception as e:
                await session.rollback()
                await self._record_error(session, channel_id, str(e))
                raise

        if summary is not None:
            self.sync_logger.log_sync_event(
                logging.INFO, str(channel_id), "claims", "completed",
                f"Claim sync for channel {channel_id}: {summary.new_claims} new, "
                f"{summary.updated_claims} updated",
                full_sync=job.full_sync, skipped=summary.skipped, failed=summary.failed,
            )
        return summary

    async def on_terminal_failure(self, job: ClaimSyncJob, error: Exception) -> None:
        async with self.session_factory() as session:
            channel = await session.get(Channel, uuid.UUID(job.channel_id))
            if channel is None:
                return
            await publish_notification(self.orchestrator, NotificationJob(
                user_id=str(channel.user_id),
                type=NotificationType.SYNC_ERROR,
                title="Claim Sync Failed",
                message=f'Failed to sync copyright claims for "{channel.title}": {error}',
                channel_id=str(channel.id),
                send_email=True,
            ))

    async def _sync(self, session: AsyncSession, channel: Channel, full_sync: bool) -> Optional[ClaimSyncSummary]:
        caller = await self.token_service.authorize(session, channel)

        content_owner_id = channel.content_owner_id
        if not content_owner_id:
            owner = await caller(self.content_id_client.get_content_owner)
            if owner is None:
                logger.info(f"Channel {channel.id} has no Content ID access")
                await self._record_missing_partner_access(
                    session, channel.id, channel.user_id, channel.title, NO_PARTNER_ACCESS_MESSAGE
                )
                return None
            content_owner_id = owner.id
            channel.content_owner_id = content_owner_id
            await self._commit(session)

        video_map = await self._video_id_map(session, channel.id)
        if not video_map:
            logger.info(f"Channel {channel.id} has no videos to check for claims")

        if full_sync:
            created_after = None
        else:
            created_after = channel.last_claim_sync_at or datetime.utcnow() - timedelta(days=self.lookback_days)

        summary = ClaimSyncSummary()
        reconciler = ReconciliationService(session)
        external_ids = list(video_map)

        for start in range(0, len(external_ids), MAX_IDS_PER_REQUEST):
            batch = external_ids[start:start + MAX_IDS_PER_REQUEST]

            async def fetch_page(page_token: Optional[str], batch: List[str] = batch) -> ClaimSearchResult:
                return await caller(lambda access_token: self.content_id_client.search_claims(
                    access_token,
                    content_owner_id,
                    video_ids=batch,
                    created_after=created_after,
                    page_token=page_token,
                    include_third_party_claims=True,
                ))

            if start:
                await self.sleep(self.claim_page_delay)
            pager = RateLimitedPager(fetch_page, min_interval=self.claim_page_delay, sleep=self.sleep)
            async for page in pager:
                for claim in page.claims:
                    video_id = video_map.get(claim.video_id)
                    if video_id is None:
                        summary.skipped += 1
                        continue

                    try:
                        outcome = await reconciler.reconcile_claim(claim, video_id)
                    except PersistenceError:
                        raise
                    except (ValueError, TypeError, KeyError) as e:
                        summary.failed += 1
                        logger.error(f"Failed to process claim {claim.id}: {e}")
                        continue

                    if outcome == ReconcileOutcome.NEW:
                        summary.new_claims += 1
                        policy_action = parse_policy_action(claim.policy, claim.applied_policy)
                        if categorize_claim(policy_action) == EventType.STRIKE:
                            summary.new_strikes += 1
                    elif outcome == ReconcileOutcome.UPDATED:
                        summary.updated_claims += 1
                    else:
                        summary.unchanged_claims += 1

        channel.last_claim_sync_at = datetime.utcnow()
        channel.last_sync_error = None
        await self._commit(session)

        await self._notify_new_claims(reconciler, channel)
        return summary

    async def _notify_new_claims(self, reconciler: ReconciliationService, channel: Channel) -> None:
        """
        Announce claim events not yet notified, including ones stored by an
        earlier attempt whose notification never went out.
        """
        pending = await reconciler.pending_claim_notifications(channel.id)
        if not pending:
            return

        event_ids = sorted(str(event.id) for event in pending)
        batch_key = hashlib.sha1(",".join(event_ids).encode()).hexdigest()[:16]
        new_claims = len(pending)
        new_strikes = sum(1 for event in pending if event.type == EventType.STRIKE)

        await publish_notification(self.orchestrator, NotificationJob(
            user_id=str(channel.user_id),
            type=NotificationType.NEW_CLAIM,
            title=f"{_plural(new_claims, 'New Claim')} Detected",
            message=(
                f"Found {_plural(new_claims, 'new Content ID claim')} "
                f'on "{channel.title}"'
            ),
            channel_id=str(channel.id),
            send_email=True,
        ), job_id=f"notify-claims-{channel.id}-{batch_key}")
        if new_strikes > 0:
            await publish_notification(self.orchestrator, NotificationJob(
                user_id=str(channel.user_id),
                type=NotificationType.NEW_STRIKE,
                title=f"{_plural(new_strikes, 'Blocking Claim')} Detected",
                message=(
                    f"{_plural(new_strikes, 'claim')} on \"{channel.title}\" "
                    "block the affected videos"
                ),
                channel_id=str(channel.id),
                send_email=True,
            ), job_id=f"notify-strikes-{channel.id}-{batch_key}")

        await reconciler.mark_notified([event.id for event in pending])

    @staticmethod
    async def _video_id_map(session: AsyncSession, channel_id: uuid.UUID) -> Dict[str, uuid.UUID]:
        result = await session.execute(
            select(Video.youtube_video_id, Video.id).where(Video.channel_id == channel_id)
        )
        return {youtube_id: video_id for youtube_id, video_id in result.all()}

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        try:
            await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to commit claim sync: {e}") from e

    async def _record_error(self, session: AsyncSession, channel_id: uuid.UUID, message: str) -> None:
        try:
            await session.execute(
                update(Channel).where(Channel.id == channel_id).values(last_sync_error=message[:2000])
            )
            await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record claim sync error for channel {channel_id}: {e}")

    async def _record_missing_partner_access(self, session: AsyncSession, channel_id: uuid.UUID,
                                             user_id: uuid.UUID, title: str, message: str) -> None:
        """Record missing partner access and tell the user, once."""
        result = await session.execute(
            select(Channel.partner_access_denied_at).where(Channel.id == channel_id)
        )
        already_reported = result.scalar_one_or_none() is not None

        values = {"last_sync_error": message}
        if not already_reported:
            values["partner_access_denied_at"] = datetime.utcnow()
        await session.execute(update(Channel).where(Channel.id == channel_id).values(**values))
        await session.commit()

        if already_reported:
            return

        await publish_notification(self.orchestrator, NotificationJob(
            user_id=str(user_id),
            type=NotificationType.SYNC_ERROR,
            title="Content ID Monitoring Unavailable",
            message=(
                f'Copyright claim tracking for "{title}" needs YouTube partner (Content ID) access. '
                "Video status changes and region restrictions are still monitored."
            ),
            channel_id=str(channel_id),
            send_email=False,
        ))
