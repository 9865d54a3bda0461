import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.future import select

from conftest import utcnow
from models.ai_job import AiJob
from models.draft import Draft
from models.scheduled_post import ScheduledPost
from services.job_claim import (
    AI_IMAGE,
    SCHEDULED_POST,
    STALLED_MESSAGE,
    claim_next,
    get_job_kind,
    next_status_after_failure,
    recover_exhausted_jobs,
    release_after_failure,
)


async def _seed_post(seed, *, post_id="post-1", run_at=None, **overrides):
    draft = Draft(id=f"draft-{post_id}", user_id="user-1", text="hello world")
    post = ScheduledPost(
        id=post_id,
        user_id="user-1",
        account_did="did:plc:alice",
        draft_id=draft.id,
        run_at=run_at or utcnow() - timedelta(minutes=1),
        status="queued",
        **overrides,
    )
    await seed(draft, post)
    return post


async def _load(session_maker, model, job_id):
    async with session_maker() as db:
        result = await db.execute(select(model).where(model.id == job_id))
        return result.scalar_one()


def test_next_status_after_failure():
    assert next_status_after_failure(1, 3) == "queued"
    assert next_status_after_failure(2, 3) == "queued"
    assert next_status_after_failure(3, 3) == "failed"
    assert next_status_after_failure(4, 3) == "failed"


def test_unknown_job_kind_is_rejected():
    with pytest.raises(ValueError):
        get_job_kind("video_render")


@pytest.mark.asyncio
async def test_claim_marks_job_posting_and_counts_attempt(session_maker, seed):
    await _seed_post(seed)

    job = await claim_next(SCHEDULED_POST, 30, "w1")

    assert job is not None
    assert job.id == "post-1"
    assert job.status == "posting"
    assert job.locked_by == "w1"
    assert job.locked_at is not None
    assert job.attempt_count == 1

    stored = await _load(session_maker, ScheduledPost, "post-1")
    assert stored.status == "posting"
    assert stored.locked_by == "w1"


@pytest.mark.asyncio
async def test_future_posts_are_not_claimed(session_maker, seed):
    await _seed_post(seed, run_at=utcnow() + timedelta(hours=1))

    assert await claim_next(SCHEDULED_POST, 30, "w1") is None


@pytest.mark.asyncio
async def test_concurrent_claims_have_single_winner(session_maker, seed):
    await _seed_post(seed)

    first, second = await asyncio.gather(
        claim_next(SCHEDULED_POST, 30, "w1"),
        claim_next(SCHEDULED_POST, 30, "w2"),
    )

    winners = [job for job in (first, second) if job is not None]
    assert len(winners) == 1
    stored = await _load(session_maker, ScheduledPost, "post-1")
    assert stored.attempt_count == 1
    assert stored.locked_by == winners[0].locked_by


@pytest.mark.asyncio
async def test_live_lock_blocks_second_worker(session_maker, seed):
    await _seed_post(seed)
    now = utcnow()

    assert await claim_next(SCHEDULED_POST, 30, "w1", now=now) is not None
    assert await claim_next(SCHEDULED_POST, 30, "w2", now=now + timedelta(seconds=10)) is None


@pytest.mark.asyncio
async def test_expired_lock_is_reclaimed(session_maker, seed):
    await _seed_post(seed)
    now = utcnow()

    assert await claim_next(SCHEDULED_POST, 30, "w1", now=now) is not None
    job = await claim_next(SCHEDULED_POST, 30, "w2", now=now + timedelta(seconds=31))

    assert job is not None
    assert job.locked_by == "w2"
    assert job.attempt_count == 2


@pytest.mark.asyncio
async def test_three_failures_exhaust_the_job(session_maker, seed):
    await _seed_post(seed, max_attempts=3)

    statuses = []
    for _ in range(3):
        job = await claim_next(SCHEDULED_POST, 30, "w1")
        assert job is not None
        statuses.append(await release_after_failure(SCHEDULED_POST, job, "boom"))

    assert statuses == ["queued", "queued", "failed"]
    stored = await _load(session_maker, ScheduledPost, "post-1")
    assert stored.status == "failed"
    assert stored.last_error == "boom"
    assert stored.locked_at is None
    assert stored.locked_by is None
    assert await claim_next(SCHEDULED_POST, 30, "w1") is None


@pytest.mark.asyncio
async def test_recover_exhausted_jobs_fails_stalled_final_attempt(session_maker, seed):
    await _seed_post(seed, max_attempts=1)
    now = utcnow()
    assert await claim_next(SCHEDULED_POST, 30, "w1", now=now) is not None

    assert await recover_exhausted_jobs(SCHEDULED_POST, 30, now=now + timedelta(seconds=5)) == 0
    assert await recover_exhausted_jobs(SCHEDULED_POST, 30, now=now + timedelta(seconds=60)) == 1

    stored = await _load(session_maker, ScheduledPost, "post-1")
    assert stored.status == "failed"
    assert stored.last_error == STALLED_MESSAGE
    assert stored.locked_by is None


@pytest.mark.asyncio
async def test_ai_jobs_claimed_oldest_first(session_maker, seed):
    now = utcnow()
    await seed(
        AiJob(id="ai-new", user_id="user-1", model="flux", prompt="new", status="queued", created_at=now),
        AiJob(id="ai-old", user_id="user-1", model="flux", prompt="old", status="queued", created_at=now - timedelta(minutes=5)),
        AiJob(id="ai-done", user_id="user-1", model="flux", prompt="done", status="succeeded", created_at=now - timedelta(hours=1)),
    )

    first = await claim_next(AI_IMAGE, 120, "w1")
    second = await claim_next(AI_IMAGE, 120, "w1")
    third = await claim_next(AI_IMAGE, 120, "w1")

    assert first.id == "ai-old"
    assert first.status == "running"
    assert second.id == "ai-new"
    assert third is None
