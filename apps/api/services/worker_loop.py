"""Claim/process loop driving scheduled posts and AI image jobs."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import settings
from database import async_session_maker
from models.worker_heartbeat import WorkerHeartbeat
from services.ai_images import ImageProvider, process_ai_job
from services.blob_store import LocalBlobStore
from services.event_log import normalize_error, record_event
from services.job_claim import AI_IMAGE, SCHEDULED_POST, claim_next, recover_exhausted_jobs
from services.network.client import AtprotoClient
from services.publishing import process_scheduled_post

logger = logging.getLogger(__name__)

# Owner recorded on events that belong to the worker rather than to a job.
SYSTEM_USER_ID = "system"


async def write_heartbeat(worker_id: str, detail: Dict[str, Any]) -> None:
    """Upsert the liveness row for ``worker_id``."""
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        heartbeat = await db.get(WorkerHeartbeat, worker_id)
        if heartbeat is None:
            heartbeat = WorkerHeartbeat(worker_id=worker_id, last_seen_at=now)
            db.add(heartbeat)
        heartbeat.last_seen_at = now
        heartbeat.detail = detail
        await db.commit()


class WorkerLoop:
    """Sequential, non-reentrant job loop; scale out by running more processes."""

    def __init__(
        self,
        *,
        worker_id: str,
        client: AtprotoClient,
        provider: ImageProvider,
        blob_store: LocalBlobStore,
        poll_seconds: Optional[float] = None,
        backoff_seconds: Optional[float] = None,
        lock_seconds: Optional[int] = None,
        ai_lock_seconds: Optional[int] = None,
        post_batch_size: Optional[int] = None,
        ai_batch_size: Optional[int] = None,
    ) -> None:
        self.worker_id = worker_id
        self.client = client
        self.provider = provider
        self.blob_store = blob_store
        self.poll_seconds = settings.WORKER_POLL_MS / 1000.0 if poll_seconds is None else poll_seconds
        self.backoff_seconds = settings.WORKER_ERROR_BACKOFF_MS / 1000.0 if backoff_seconds is None else backoff_seconds
        self.lock_seconds = settings.WORKER_LOCK_SECONDS if lock_seconds is None else lock_seconds
        self.ai_lock_seconds = settings.AI_JOB_LOCK_SECONDS if ai_lock_seconds is None else ai_lock_seconds
        self.post_batch_size = settings.WORKER_POST_BATCH_SIZE if post_batch_size is None else post_batch_size
        self.ai_batch_size = settings.AI_JOB_BATCH_SIZE if ai_batch_size is None else ai_batch_size
        self.iterations = 0

    def _base_detail(self) -> Dict[str, Any]:
        return {
            "pid": os.getpid(),
            "poll_ms": int(self.poll_seconds * 1000),
            "lock_seconds": self.lock_seconds,
        }

    async def recover_stalled(self) -> int:
        recovered = await recover_exhausted_jobs(SCHEDULED_POST, self.lock_seconds)
        recovered += await recover_exhausted_jobs(AI_IMAGE, self.ai_lock_seconds)
        if recovered:
            logger.warning("stalled_jobs_failed worker_id=%s count=%s", self.worker_id, recovered)
        return recovered

    async def run_scheduled_posts(self) -> int:
        processed = 0
        while processed < self.post_batch_size:
            job = await claim_next(SCHEDULED_POST, self.lock_seconds, self.worker_id)
            if job is None:
                break
            processed += 1
            await process_scheduled_post(
                job,
                client=self.client,
                worker_id=self.worker_id,
                lock_seconds=self.lock_seconds,
            )
        return processed

    async def run_ai_jobs(self) -> int:
        processed = 0
        while processed < self.ai_batch_size:
            job = await claim_next(AI_IMAGE, self.ai_lock_seconds, self.worker_id)
            if job is None:
                break
            processed += 1
            await process_ai_job(
                job,
                provider=self.provider,
                blob_store=self.blob_store,
                worker_id=self.worker_id,
            )
        return processed

    async def run_once(self) -> Dict[str, int]:
        """One iteration: drain both kinds up to their batch limits, then heartbeat."""
        await self.recover_stalled()
        claimed_posts = await self.run_scheduled_posts()
        claimed_ai_jobs = await self.run_ai_jobs()
        counts = {"claimed_count": claimed_posts, "ai_claimed_count": claimed_ai_jobs}
        await write_heartbeat(self.worker_id, {**self._base_detail(), **counts})
        self.iterations += 1
        return counts

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Loop until ``stop_event`` is set; a failing iteration never ends the loop."""
        stop_event = stop_event or asyncio.Event()
        logger.info(
            "worker_start worker_id=%s poll_ms=%s lock_seconds=%s",
            self.worker_id,
            int(self.poll_seconds * 1000),
            self.lock_seconds,
        )
        while not stop_event.is_set():
            delay = self.poll_seconds
            try:
                await self.run_once()
            except Exception as exc:
                norm = normalize_error(exc)
                logger.exception("worker_loop_error worker_id=%s error=%s", self.worker_id, norm["error_message"])
                await record_event(
                    user_id=SYSTEM_USER_ID,
                    event_type="worker_error",
                    detail={"worker_id": self.worker_id, "phase": "loop", **norm},
                )
                try:
                    await write_heartbeat(
                        self.worker_id,
                        {**self._base_detail(), "last_error": norm["error_message"], "error_code": norm["error_code"]},
                    )
                except Exception as heartbeat_exc:
                    logger.error("heartbeat_failed worker_id=%s error=%s", self.worker_id, heartbeat_exc)
                delay = self.backoff_seconds
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("worker_stop worker_id=%s iterations=%s", self.worker_id, self.iterations)
