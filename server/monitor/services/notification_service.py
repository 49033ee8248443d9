"""
Notification sink: in-app notifications plus optional email delivery.
"""
import asyncio
import html
import logging
import smtplib
import ssl
import uuid
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared_lib.config import EmailConfig
from server.monitor.errors import PersistenceError
from server.monitor.models import Notification, NotificationType, User
from server.monitor.schemas import NotificationJob
from server.monitor.services.job_queue import JobKind, JobOrchestrator

logger = logging.getLogger(__name__)

EMAIL_SUBJECT_PREFIX = {
    NotificationType.NEW_CLAIM: "New copyright claim",
    NotificationType.NEW_STRIKE: "Copyright strike",
    NotificationType.MONETIZATION_CHANGE: "Video status change",
    NotificationType.SYNC_ERROR: "Channel sync problem",
    NotificationType.WEEKLY_SUMMARY: "Weekly summary",
}


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    return uuid.UUID(value) if value else None


async def publish_notification(orchestrator: JobOrchestrator, job: NotificationJob,
                               job_id: Optional[str] = None) -> Optional[str]:
    """
    Hand a notification to the notification workers.

    A fixed ``job_id`` makes a repeated publish of the same notification a no-op.
    """
    return await orchestrator.enqueue(JobKind.NOTIFICATION, job, job_id=job_id)


class EmailSender:
    """Sends notification emails over SMTP."""

    def __init__(self, config: EmailConfig):
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def send(self, to: str, subject: str, body: str, html_body: Optional[str] = None) -> str:
        """Send an email using SMTP without blocking the event loop."""
        message_id = str(uuid.uuid4())

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.config.from_email
        msg['To'] = to
        msg['Message-ID'] = f"<{message_id}@claim-monitor>"
        msg.attach(MIMEText(body, 'plain'))
        if html_body:
            msg.attach(MIMEText(html_body, 'html'))

        await asyncio.to_thread(self._deliver, msg, to)
        return message_id

    def _deliver(self, msg: MIMEMultipart, to: str) -> None:
        with smtplib.SMTP(self.config.smtp_server, self.config.smtp_port) as server:
            if self.config.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.config.smtp_username:
                server.login(self.config.smtp_username, self.config.smtp_password or "")
            server.send_message(msg, to_addrs=[to])


def render_email(job: NotificationJob, dashboard_url: str) -> tuple:
    """Build subject, plain text and HTML bodies for a notification."""
    prefix = EMAIL_SUBJECT_PREFIX.get(job.type, "Notification")
    subject = f"{prefix}: {job.title}"
    body = f"{job.title}\n\n{job.message}\n\nView details: {dashboard_url}\n"
    html_body = (
        "<html><body style=\"font-family: sans-serif\">"
        f"<h2>{html.escape(job.title)}</h2>"
        f"<p>{html.escape(job.message)}</p>"
        f"<p><a href=\"{html.escape(dashboard_url)}\">View in dashboard</a></p>"
        "</body></html>"
    )
    return subject, body, html_body


class NotificationService:
    """Processes notification jobs."""

    def __init__(self, session_factory: async_sessionmaker, email_sender: Optional[EmailSender] = None,
                 dashboard_url: str = "http://localhost:3000"):
        self.session_factory = session_factory
        self.email_sender = email_sender
        self.dashboard_url = dashboard_url

    async def process_notification(self, job: NotificationJob) -> Notification:
        """
        Record the notification and email it when requested.

        Delivery failures leave ``email_sent`` false instead of failing the
        job, so a retry never duplicates the in-app notification.
        """
        async with self.session_factory() as session:
            try:
                notification = Notification(
                    user_id=uuid.UUID(job.user_id),
                    type=job.type,
                    title=job.title,
                    message=job.message,
                    channel_id=_as_uuid(job.channel_id),
                    video_id=_as_uuid(job.video_id),
                    event_id=_as_uuid(job.event_id),
                )
                session.add(notification)
                await session.commit()
                await session.refresh(notification)

                logger.info(f"Created {job.type.value} notification {notification.id} for user {job.user_id}")

                if job.send_email:
                    user = await session.get(User, notification.user_id)
                    if user is None or not user.email:
                        logger.warning(f"No email address for user {job.user_id}, skipping email")
                        return notification

                    if await self._send_email(user.email, job):
                        notification.email_sent = True
                        notification.email_sent_at = datetime.utcnow()
                        await session.commit()

                return notification

            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError(f"Failed to store notification for user {job.user_id}: {e}") from e

    async def _send_email(self, address: str, job: NotificationJob) -> bool:
        subject, body, html_body = render_email(job, self.dashboard_url)
        if self.email_sender is None or not self.email_sender.enabled:
            logger.info(f"Email delivery not configured; would send '{subject}' to {address}")
            return False

        try:
            await self.email_sender.send(address, subject, body, html_body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send notification email to {address}: {e}")
            return False

        logger.info(f"Sent notification email '{subject}' to {address}")
        return True
