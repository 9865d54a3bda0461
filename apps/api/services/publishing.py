"""Scheduled-post publishing pipeline executed by the worker loop."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.draft import Draft
from models.scheduled_post import ScheduledPost
from services.event_log import normalize_error, record_event
from services.indexed_posts import upsert_indexed_posts
from services.job_claim import SCHEDULED_POST, finalize_job, release_after_failure
from services.network.client import AtprotoClient
from services.network.sessions import load_account_session

logger = logging.getLogger(__name__)

MISSING_ACCOUNT_MESSAGE = "Scheduled post has no connected account."


async def fetch_draft(db: AsyncSession, user_id: str, draft_id: str) -> Draft:
    result = await db.execute(select(Draft).where(Draft.id == draft_id, Draft.user_id == user_id))
    draft = result.scalar_one_or_none()
    if draft is None:
        raise LookupError(f"Draft {draft_id} not found for user {user_id}")
    return draft


async def _event(job: ScheduledPost, event_type: str, worker_id: str, detail: Optional[Dict[str, Any]] = None) -> None:
    await record_event(
        user_id=job.user_id,
        job_kind=SCHEDULED_POST,
        subject_id=job.id,
        event_type=event_type,
        detail={"worker_id": worker_id, **(detail or {})},
    )


async def process_scheduled_post(
    job: ScheduledPost,
    *,
    client: AtprotoClient,
    worker_id: str,
    lock_seconds: int,
) -> str:
    """Publish one claimed scheduled post; returns the status it was left in."""
    attempt = int(job.attempt_count or 0)
    start = perf_counter()
    await _event(
        job,
        "claimed",
        worker_id,
        {"run_at": job.run_at.isoformat() if job.run_at else None, "attempt": attempt, "lock_seconds": lock_seconds},
    )

    if not job.account_did:
        await _event(job, "missing_account", worker_id, {"attempt": attempt})
        await finalize_job(
            SCHEDULED_POST,
            job.id,
            status="failed",
            attempt_count=job.max_attempts,
            last_error=MISSING_ACCOUNT_MESSAGE,
        )
        logger.warning("missing_account scheduled_post_id=%s", job.id)
        return "failed"

    phase = "pre_post"
    try:
        async with async_session_maker() as db:
            draft = await fetch_draft(db, job.user_id, job.draft_id)
            session = await load_account_session(db, client, job.user_id, job.account_did)
            text = draft.text or ""
        await _event(job, "post_attempt", worker_id, {"attempt": attempt})

        phase = "posting"
        posted = await client.create_post(session, text)
        phase = "post_done"
        duration_ms = int((perf_counter() - start) * 1000)

        try:
            async with async_session_maker() as db:
                await upsert_indexed_posts(
                    db,
                    [
                        {
                            "uri": posted.uri,
                            "cid": posted.cid,
                            "author_did": job.account_did,
                            "text": text,
                            "created_at": datetime.now(timezone.utc),
                            "lang": None,
                            "raw": {"cid": posted.cid, "source": "scheduler"},
                        }
                    ],
                )
                await db.commit()
        except Exception as exc:
            # The post is live; a missing index row must not send it back to the queue.
            norm = normalize_error(exc)
            await _event(job, "index_failed", worker_id, {"uri": posted.uri, "attempt": attempt, **norm})
            logger.exception("index_failed scheduled_post_id=%s uri=%s", job.id, posted.uri)

        await finalize_job(
            SCHEDULED_POST,
            job.id,
            status="posted",
            posted_uri=posted.uri,
            posted_cid=posted.cid,
            last_error=None,
        )
        await _event(
            job,
            "post_success",
            worker_id,
            {"uri": posted.uri, "cid": posted.cid, "duration_ms": duration_ms, "attempt": attempt},
        )
        logger.info(
            "post_success scheduled_post_id=%s duration_ms=%s attempt=%s uri=%s",
            job.id,
            duration_ms,
            attempt,
            posted.uri,
        )
        return "posted"
    except Exception as exc:
        duration_ms = int((perf_counter() - start) * 1000)
        norm = normalize_error(exc)
        status = await release_after_failure(SCHEDULED_POST, job, norm["error_message"])
        event_type = "post_failed" if phase == "posting" else "worker_error"
        await _event(
            job,
            event_type,
            worker_id,
            {"duration_ms": duration_ms, "attempt": attempt, "phase": phase, "next_status": status, **norm},
        )
        logger.error(
            "%s scheduled_post_id=%s duration_ms=%s attempt=%s next_status=%s error=%s",
            event_type,
            job.id,
            duration_ms,
            attempt,
            status,
            norm["error_message"],
        )
        return status
