"""Claim protocol shared by every durable job kind.

A claim atomically moves one eligible row to its in-progress status and stamps
``locked_at``/``locked_by``. Ownership is decided by a compare-and-swap UPDATE
that re-checks eligibility, so two concurrent callers can never both win the
same row. On PostgreSQL the candidate select also uses ``FOR UPDATE SKIP
LOCKED`` so racing workers spread over different rows instead of colliding.

A lock older than ``lock_seconds`` is treated as abandoned and the row becomes
claimable again; every claim counts as one attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.future import select

from database import async_session_maker
from models.ai_job import AiJob
from models.scheduled_post import ScheduledPost

logger = logging.getLogger(__name__)

SCHEDULED_POST = "scheduled_post"
AI_IMAGE = "ai_image"

STALLED_MESSAGE = "Job execution was interrupted after the final attempt."


@dataclass(frozen=True)
class JobKind:
    name: str
    model: Any
    queued_status: str
    active_status: str
    error_field: str
    order_field: str
    due_field: Optional[str] = None


JOB_KINDS: Dict[str, JobKind] = {
    SCHEDULED_POST: JobKind(
        name=SCHEDULED_POST,
        model=ScheduledPost,
        queued_status="queued",
        active_status="posting",
        error_field="last_error",
        order_field="run_at",
        due_field="run_at",
    ),
    AI_IMAGE: JobKind(
        name=AI_IMAGE,
        model=AiJob,
        queued_status="queued",
        active_status="running",
        error_field="error",
        order_field="created_at",
    ),
}


def get_job_kind(kind: str) -> JobKind:
    try:
        return JOB_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown job kind: {kind}") from None


def next_status_after_failure(attempt_count: int, max_attempts: int) -> str:
    """Retry while attempts remain, otherwise freeze as failed."""
    if int(attempt_count or 0) < int(max_attempts or 0):
        return "queued"
    return "failed"


def _eligible(spec: JobKind, now: datetime, lock_seconds: int):
    model = spec.model
    cutoff = now - timedelta(seconds=max(int(lock_seconds), 0))
    lock_free = or_(model.locked_at.is_(None), model.locked_at < cutoff)
    clauses = [
        model.attempt_count < model.max_attempts,
        or_(
            and_(model.status == spec.queued_status, lock_free),
            and_(model.status == spec.active_status, model.locked_at < cutoff),
        ),
    ]
    if spec.due_field:
        clauses.append(getattr(model, spec.due_field) <= now)
    return and_(*clauses)


async def claim_next(
    kind: str,
    lock_seconds: int,
    worker_id: str,
    *,
    now: Optional[datetime] = None,
    max_candidates: int = 5,
):
    """Claim one eligible job of ``kind`` for ``worker_id``; None when nothing is due."""
    spec = get_job_kind(kind)
    model = spec.model
    now = now or datetime.now(timezone.utc)

    async with async_session_maker() as db:
        candidates = await db.execute(
            select(model.id)
            .where(_eligible(spec, now, lock_seconds))
            .order_by(getattr(model, spec.order_field).asc(), model.id.asc())
            .limit(max(int(max_candidates), 1))
            .with_for_update(skip_locked=True)
        )
        candidate_ids = [row[0] for row in candidates.all()]

        for job_id in candidate_ids:
            result = await db.execute(
                update(model)
                .where(model.id == job_id, _eligible(spec, now, lock_seconds))
                .values(
                    status=spec.active_status,
                    locked_at=now,
                    locked_by=worker_id,
                    attempt_count=model.attempt_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug("claim_lost kind=%s job_id=%s worker_id=%s", kind, job_id, worker_id)
                continue
            claimed = await db.execute(select(model).where(model.id == job_id))
            job = claimed.scalar_one()
            await db.commit()
            return job

        await db.commit()
        return None


async def finalize_job(kind: str, job_id: str, **values: Any) -> None:
    """Single-row terminal update that always releases the claim."""
    spec = get_job_kind(kind)
    model = spec.model
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        await db.execute(
            update(model)
            .where(model.id == job_id)
            .values(locked_at=None, locked_by=None, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()


async def release_after_failure(kind: str, job, message: Optional[str]) -> str:
    """Requeue or fail a claimed job; returns the status written."""
    spec = get_job_kind(kind)
    status = next_status_after_failure(job.attempt_count, job.max_attempts)
    await finalize_job(kind, job.id, status=status, **{spec.error_field: message})
    return status


async def recover_exhausted_jobs(kind: str, lock_seconds: int, *, now: Optional[datetime] = None) -> int:
    """Fail in-progress jobs whose lock expired after their last allowed attempt."""
    spec = get_job_kind(kind)
    model = spec.model
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=max(int(lock_seconds), 0))
    async with async_session_maker() as db:
        result = await db.execute(
            update(model)
            .where(
                model.status == spec.active_status,
                model.locked_at < cutoff,
                model.attempt_count >= model.max_attempts,
            )
            .values(
                status="failed",
                locked_at=None,
                locked_by=None,
                updated_at=now,
                **{spec.error_field: STALLED_MESSAGE},
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return int(result.rowcount or 0)
