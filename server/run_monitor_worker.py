#!/usr/bin/env python3
"""
Claim Monitor Worker

Runs the job orchestrator (channel sync, claim sync, claim detection and
notification workers) together with the periodic sync scheduler.

    python -m server.run_monitor_worker
"""
import asyncio
import logging
import signal
import sys
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from shared_lib.config import ConfigurationError, SystemConfig, get_config
from shared_lib.encryption import TokenVault
from server.monitor.db import create_engine, create_session_factory
from server.monitor.models import Base
from server.monitor.services.channel_sync_service import ChannelSyncService
from server.monitor.services.claim_detect_service import ClaimDetectService
from server.monitor.services.claim_sync_service import ClaimSyncService
from server.monitor.services.content_id_client import ContentIdClient
from server.monitor.services.job_queue import JobKind, JobOptions, JobOrchestrator
from server.monitor.services.logging_service import configure_logging
from server.monitor.services.notification_service import EmailSender, NotificationService
from server.monitor.services.oauth_service import OAuthClient
from server.monitor.services.scheduler import SyncScheduler
from server.monitor.services.token_service import TokenService
from server.monitor.services.youtube_client import YouTubeClient

logger = logging.getLogger(__name__)


def build_job_options(config: SystemConfig) -> dict:
    worker = config.worker
    base = worker.backoff_base_seconds
    return {
        JobKind.CHANNEL_SYNC: JobOptions(attempts=worker.channel_sync_attempts, backoff_base=base),
        JobKind.CLAIM_SYNC: JobOptions(attempts=worker.claim_sync_attempts, backoff_base=base),
        JobKind.CLAIM_DETECT: JobOptions(attempts=worker.claim_detect_attempts, backoff_base=base),
        JobKind.NOTIFICATION: JobOptions(attempts=worker.notification_attempts, backoff_base=base),
    }


class MonitorWorkerRunner:
    """Runner for the claim monitor workers"""

    def __init__(self, config: SystemConfig):
        self.config = config
        self.db_engine: Optional[AsyncEngine] = None
        self.db_session_factory = None
        self.http_client: Optional[httpx.AsyncClient] = None
        self.orchestrator: Optional[JobOrchestrator] = None
        self.scheduler: Optional[SyncScheduler] = None
        self.running = False

    def install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self._signal_handler, signum)

    def _signal_handler(self, signum):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.running = False

    async def setup_database(self):
        """Setup database connection and session factory"""
        self.db_engine = create_engine(self.config.database)

        # Create tables if they don't exist
        async with self.db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.db_session_factory = create_session_factory(self.db_engine)
        logger.info("Database connection established")

    def setup_orchestrator(self):
        """Wire job processors into the orchestrator"""
        youtube_config = self.config.youtube
        worker_config = self.config.worker

        self.http_client = httpx.AsyncClient(timeout=youtube_config.request_timeout)
        youtube_client = YouTubeClient(self.http_client, youtube_config.data_api_url, youtube_config.page_size)
        content_id_client = ContentIdClient(self.http_client, youtube_config.partner_api_url)
        oauth_client = OAuthClient(
            self.http_client, youtube_config.client_id, youtube_config.client_secret, youtube_config.token_url
        )
        token_service = TokenService(TokenVault(self.config.security.encryption_key), oauth_client)

        self.orchestrator = JobOrchestrator.from_url(
            self.config.redis.url,
            options=build_job_options(self.config),
            concurrency=worker_config.concurrency,
            retention_seconds=worker_config.job_retention_seconds,
            poll_timeout=worker_config.poll_timeout,
        )

        channel_sync = ChannelSyncService(
            self.db_session_factory, youtube_client, token_service, self.orchestrator,
            video_page_delay=worker_config.video_page_delay,
        )
        claim_sync = ClaimSyncService(
            self.db_session_factory, content_id_client, token_service, self.orchestrator,
            claim_page_delay=worker_config.claim_page_delay,
            lookback_days=worker_config.claim_lookback_days,
        )
        claim_detect = ClaimDetectService(self.db_session_factory, youtube_client, token_service, self.orchestrator)
        notifications = NotificationService(
            self.db_session_factory, EmailSender(self.config.email), self.config.email.dashboard_url
        )

        self.orchestrator.register(
            JobKind.CHANNEL_SYNC, channel_sync.process_channel_sync, channel_sync.on_terminal_failure
        )
        self.orchestrator.register(
            JobKind.CLAIM_SYNC, claim_sync.process_claim_sync, claim_sync.on_terminal_failure
        )
        self.orchestrator.register(
            JobKind.CLAIM_DETECT, claim_detect.process_claim_detect, claim_detect.on_terminal_failure
        )
        self.orchestrator.register(JobKind.NOTIFICATION, notifications.process_notification)

        self.scheduler = SyncScheduler(
            self.orchestrator,
            self.db_session_factory,
            interval_hours=self.config.scheduler.sync_interval_hours,
            stagger_seconds=self.config.scheduler.stagger_seconds,
        )
        logger.info("Job orchestrator configured")

    async def start(self):
        """Start the worker"""
        try:
            await self.setup_database()
            self.setup_orchestrator()
            self.install_signal_handlers()

            logger.info("Starting claim monitor workers...")
            self.running = True
            await self.orchestrator.start()
            if self.config.scheduler.enabled:
                await self.scheduler.start()

            # Keep running until shutdown signal
            while self.running:
                await asyncio.sleep(1)

        except Exception as e:
            logger.error(f"Error running worker: {str(e)}")
            raise
        finally:
            await self.cleanup()

    async def cleanup(self):
        """Cleanup resources"""
        logger.info("Starting cleanup...")

        if self.scheduler:
            await self.scheduler.stop()

        if self.orchestrator:
            await self.orchestrator.stop()
            logger.info("Job orchestrator stopped")

        if self.http_client:
            await self.http_client.aclose()

        if self.db_engine:
            await self.db_engine.dispose()
            logger.info("Database connection closed")

        logger.info("Cleanup completed")


async def main():
    """Main entry point"""
    try:
        config = get_config()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(str(e))
        sys.exit(1)

    configure_logging(config.log_level.value, json_output=config.log_json, log_dir=config.log_dir)
    logger.info(f"Claim monitor worker starting ({config.environment})...")

    runner = MonitorWorkerRunner(config)
    await runner.start()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {str(e)}")
        sys.exit(1)
