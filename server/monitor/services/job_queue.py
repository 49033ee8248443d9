"""
Redis-backed job orchestrator for the monitoring pipeline.

Each job kind has its own ready list, delayed sorted set (scored by the time
the job becomes due) and failed list. Workers pop jobs with bounded
concurrency per kind, retry failures with exponential backoff and hand
terminal failures to a per-kind hook.
"""
import asyncio
import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import redis.asyncio as redis
from pydantic import BaseModel

from server.monitor.schemas import ChannelSyncJob, ClaimDetectJob, ClaimSyncJob, NotificationJob
from server.monitor.services.logging_service import get_logger, job_context

logger = logging.getLogger(__name__)


class JobKind(str, enum.Enum):
    CHANNEL_SYNC = "channel-sync"
    CLAIM_SYNC = "claim-sync"
    CLAIM_DETECT = "claim-detect"
    NOTIFICATION = "notification"


class JobState(str, enum.Enum):
    QUEUED = "queued"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PAYLOAD_TYPES = {
    JobKind.CHANNEL_SYNC: ChannelSyncJob,
    JobKind.CLAIM_SYNC: ClaimSyncJob,
    JobKind.CLAIM_DETECT: ClaimDetectJob,
    JobKind.NOTIFICATION: NotificationJob,
}


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff_base: float = 1.0


DEFAULT_JOB_OPTIONS = {
    JobKind.CHANNEL_SYNC: JobOptions(attempts=3),
    JobKind.CLAIM_SYNC: JobOptions(attempts=2),
    JobKind.CLAIM_DETECT: JobOptions(attempts=3),
    JobKind.NOTIFICATION: JobOptions(attempts=5),
}

JobHandler = Callable[[BaseModel], Awaitable[None]]
FailureHook = Callable[[BaseModel, Exception], Awaitable[None]]


def backoff_delay(attempts_made: int, base: float, retry_after: Optional[float] = None) -> float:
    """Exponential backoff: base, 2*base, 4*base... stretched to honour Retry-After."""
    delay = base * (2 ** max(attempts_made - 1, 0))
    if retry_after:
        delay = max(delay, retry_after)
    return delay


class JobOrchestrator:
    """Durable job queue with per-kind workers, retries and graceful shutdown."""

    def __init__(self, redis_client: redis.Redis,
                 options: Optional[Dict[JobKind, JobOptions]] = None,
                 concurrency: int = 5,
                 retention_seconds: int = 86400,
                 poll_timeout: int = 1,
                 key_prefix: str = "monitor"):
        self.redis_client = redis_client
        self.options = {**DEFAULT_JOB_OPTIONS, **(options or {})}
        self.concurrency = concurrency
        self.retention_seconds = retention_seconds
        self.poll_timeout = poll_timeout
        self.key_prefix = key_prefix

        self.handlers: Dict[JobKind, JobHandler] = {}
        self.failure_hooks: Dict[JobKind, FailureHook] = {}
        self.running = False
        self.accepting = True
        self._semaphores: Dict[JobKind, asyncio.Semaphore] = {}
        self._worker_tasks: List[asyncio.Task] = []
        self._in_flight: Set[asyncio.Task] = set()
        self.job_logger = get_logger("jobs")

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> 'JobOrchestrator':
        return cls(redis.from_url(redis_url, decode_responses=True), **kwargs)

    # Redis keys

    def queue_key(self, kind: JobKind) -> str:
        return f"{self.key_prefix}:{kind.value}:queue"

    def delayed_key(self, kind: JobKind) -> str:
        return f"{self.key_prefix}:{kind.value}:delayed"

    def failed_key(self, kind: JobKind) -> str:
        return f"{self.key_prefix}:{kind.value}:failed"

    def job_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:job:{job_id}"

    # Submission

    def register(self, kind: JobKind, handler: JobHandler, on_failure: Optional[FailureHook] = None) -> None:
        """Register the processor for a job kind and its optional terminal-failure hook."""
        self.handlers[kind] = handler
        if on_failure is not None:
            self.failure_hooks[kind] = on_failure

    async def enqueue(self, kind: JobKind, payload: Union[BaseModel, Dict[str, Any]],
                      job_id: Optional[str] = None, delay: float = 0) -> Optional[str]:
        """
        Submit a job.

        Returns the job id, or None when a job with the same id was already
        submitted within the retention window or the orchestrator has shut down.
        """
        if not self.accepting:
            logger.warning(f"Orchestrator stopped, dropping {kind.value} job {job_id}")
            return None

        payload_model = self._validate_payload(kind, payload)
        job_id = job_id or f"{kind.value}-{uuid.uuid4().hex}"
        options = self.options[kind]

        state = JobState.DELAYED if delay > 0 else JobState.QUEUED
        reserved = await self.redis_client.set(
            self.job_key(job_id), state.value, nx=True, ex=self.retention_seconds
        )
        if not reserved:
            logger.info(f"Skipping duplicate {kind.value} job {job_id}")
            return None

        job = {
            "id": job_id,
            "kind": kind.value,
            "payload": payload_model.model_dump(mode="json"),
            "attempts_made": 0,
            "max_attempts": options.attempts,
            "backoff_base": options.backoff_base,
            "created_at": datetime.utcnow().isoformat(),
            "last_error": None,
        }
        await self._push(kind, job, delay)

        logger.debug(f"Queued {kind.value} job {job_id} (delay={delay}s)")
        return job_id

    def _validate_payload(self, kind: JobKind, payload: Union[BaseModel, Dict[str, Any]]) -> BaseModel:
        model = PAYLOAD_TYPES[kind]
        if isinstance(payload, model):
            return payload
        if isinstance(payload, BaseModel):
            raise TypeError(f"{kind.value} jobs take {model.__name__}, got {type(payload).__name__}")
        return model.model_validate(payload)

    async def _push(self, kind: JobKind, job: Dict[str, Any], delay: float) -> None:
        raw = json.dumps(job)
        if delay > 0:
            await self.redis_client.zadd(self.delayed_key(kind), {raw: time.time() + delay})
        else:
            await self.redis_client.lpush(self.queue_key(kind), raw)

    # Lifecycle

    async def start(self) -> None:
        """Start one worker loop per registered job kind."""
        if self.running:
            return

        self.running = True
        self.accepting = True
        for kind in self.handlers:
            self._semaphores[kind] = asyncio.Semaphore(self.concurrency)
            self._worker_tasks.append(asyncio.create_task(self._worker_loop(kind)))

        logger.info(
            f"Job orchestrator started for {', '.join(k.value for k in self.handlers)} "
            f"(concurrency {self.concurrency} per kind)"
        )

    async def stop(self) -> None:
        """
        Stop pulling jobs, wait for in-flight jobs and close the connection.

        Jobs submitted by in-flight jobs while draining are still persisted.
        """
        if not self.running and not self._worker_tasks:
            self.accepting = False
            return

        logger.info("Stopping job orchestrator...")
        self.running = False

        # Loops exit after their current blocking pop times out
        if self._worker_tasks:
            done, pending = await asyncio.wait(self._worker_tasks, timeout=self.poll_timeout + 5)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks = []

        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight jobs to finish")
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        self.accepting = False
        await self.redis_client.aclose()
        logger.info("Job orchestrator stopped")

    # Workers

    async def _worker_loop(self, kind: JobKind) -> None:
        semaphore = self._semaphores[kind]

        while self.running:
            await semaphore.acquire()
            try:
                await self._promote_due_jobs(kind)
                popped = await self.redis_client.brpop(self.queue_key(kind), timeout=self.poll_timeout)
            except asyncio.CancelledError:
                semaphore.release()
                raise
            except Exception as e:
                semaphore.release()
                logger.error(f"Error polling {kind.value} queue: {e}")
                await asyncio.sleep(self.poll_timeout)
                continue

            if not popped:
                semaphore.release()
                continue

            _, raw = popped
            task = asyncio.create_task(self._process(kind, raw, semaphore))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _promote_due_jobs(self, kind: JobKind) -> int:
        """Move delayed jobs whose time has come onto the ready list."""
        due = await self.redis_client.zrangebyscore(self.delayed_key(kind), 0, time.time())
        promoted = 0
        for raw in due:
            # Only the worker that removes the entry promotes it
            if await self.redis_client.zrem(self.delayed_key(kind), raw):
                await self.redis_client.lpush(self.queue_key(kind), raw)
                promoted += 1
        return promoted

    async def _process(self, kind: JobKind, raw: str, semaphore: asyncio.Semaphore) -> None:
        try:
            try:
                job = json.loads(raw)
                payload = PAYLOAD_TYPES[kind].model_validate(job["payload"])
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Discarding malformed {kind.value} job: {e}")
                await self.redis_client.rpush(self.failed_key(kind), raw)
                return

            await self._execute(kind, job, payload)
        finally:
            semaphore.release()

    async def _execute(self, kind: JobKind, job: Dict[str, Any], payload: BaseModel) -> None:
        job_id = job["id"]
        handler = self.handlers[kind]

        with job_context(job_id, kind.value, getattr(payload, "channel_id", None)):
            await self.redis_client.set(self.job_key(job_id), JobState.ACTIVE.value, ex=self.retention_seconds)
            started = time.monotonic()

            try:
                await handler(payload)
            except Exception as e:
                await self._handle_failure(kind, job, payload, e)
                return

            await self.redis_client.set(self.job_key(job_id), JobState.COMPLETED.value, ex=self.retention_seconds)
            self.job_logger.log_job_event(
                logging.INFO, job_id, kind.value, JobState.COMPLETED.value,
                f"Job {job_id} completed",
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                attempt=job["attempts_made"] + 1,
            )

    async def _handle_failure(self, kind: JobKind, job: Dict[str, Any],
                              payload: BaseModel, error: Exception) -> None:
        job_id = job["id"]
        job["attempts_made"] += 1
        job["last_error"] = f"{type(error).__name__}: {error}"
        retryable = getattr(error, "retryable", True)

        if retryable and job["attempts_made"] < job["max_attempts"]:
            delay = backoff_delay(job["attempts_made"], job["backoff_base"], getattr(error, "retry_after", None))
            await self.redis_client.set(self.job_key(job_id), JobState.DELAYED.value, ex=self.retention_seconds)
            await self._push(kind, job, delay)
            self.job_logger.log_job_event(
                logging.WARNING, job_id, kind.value, "retrying",
                f"Job {job_id} failed (attempt {job['attempts_made']}/{job['max_attempts']}), "
                f"retrying in {delay}s: {error}",
                attempt=job["attempts_made"],
            )
            return

        await self.redis_client.set(self.job_key(job_id), JobState.FAILED.value, ex=self.retention_seconds)
        await self.redis_client.rpush(self.failed_key(kind), json.dumps(job))
        self.job_logger.log_job_event(
            logging.ERROR, job_id, kind.value, JobState.FAILED.value,
            f"Job {job_id} failed permanently after {job['attempts_made']} attempts: {error}",
            attempt=job["attempts_made"],
            error_type=type(error).__name__,
        )

        hook = self.failure_hooks.get(kind)
        if hook is not None:
            try:
                await hook(payload, error)
            except Exception as hook_error:
                logger.error(f"Failure hook for {kind.value} job {job_id} raised: {hook_error}")

    # Introspection

    async def get_job_state(self, job_id: str) -> Optional[JobState]:
        value = await self.redis_client.get(self.job_key(job_id))
        return JobState(value) if value else None

    async def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        """Get queue statistics per job kind."""
        stats = {}
        for kind in JobKind:
            stats[kind.value] = {
                "queued": await self.redis_client.llen(self.queue_key(kind)),
                "delayed": await self.redis_client.zcard(self.delayed_key(kind)),
                "failed": await self.redis_client.llen(self.failed_key(kind)),
            }
        return stats

    async def get_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.running else "stopped",
            "in_flight": len(self._in_flight),
            "kinds": [kind.value for kind in self.handlers],
        }
