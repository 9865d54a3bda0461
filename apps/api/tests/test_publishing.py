from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from conftest import make_account, utcnow
from models.account import Account
from models.draft import Draft
from models.indexed_post import IndexedPost
from models.job_event import JobEvent
from models.scheduled_post import ScheduledPost
from services.crypto import decrypt_token
from services.job_claim import SCHEDULED_POST, claim_next
from services.network.types import NetworkError
from services.publishing import MISSING_ACCOUNT_MESSAGE, process_scheduled_post


async def _seed_post(seed, *, account_did="did:plc:alice", max_attempts=3, with_account=True, expires_in=timedelta(hours=2)):
    rows = [
        Draft(id="draft-1", user_id="user-1", text="Launch day for the new feed!"),
        ScheduledPost(
            id="post-1",
            user_id="user-1",
            account_did=account_did,
            draft_id="draft-1",
            run_at=utcnow() - timedelta(minutes=1),
            status="queued",
            max_attempts=max_attempts,
        ),
    ]
    if with_account and account_did:
        rows.append(make_account("user-1", account_did, expires_in=expires_in))
    await seed(*rows)


async def _post(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(ScheduledPost).where(ScheduledPost.id == "post-1"))).scalar_one()


async def _event_types(session_maker):
    async with session_maker() as db:
        result = await db.execute(select(JobEvent).where(JobEvent.subject_id == "post-1"))
        return [event.event_type for event in result.scalars().all()]


@pytest.mark.asyncio
async def test_successful_publish_indexes_post_and_records_events(session_maker, seed, network_client):
    await _seed_post(seed)
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "posted"
    assert network_client.published == [
        {"did": "did:plc:alice", "text": "Launch day for the new feed!", "access_jwt": "access-token"}
    ]
    stored = await _post(session_maker)
    assert stored.status == "posted"
    assert stored.posted_uri == "at://did:plc:alice/app.bsky.feed.post/p1"
    assert stored.posted_cid == "cid-p1"
    assert stored.last_error is None
    assert stored.locked_at is None

    async with session_maker() as db:
        indexed = (await db.execute(select(IndexedPost))).scalars().all()
    assert [row.uri for row in indexed] == ["at://did:plc:alice/app.bsky.feed.post/p1"]
    assert indexed[0].author_did == "did:plc:alice"
    assert indexed[0].raw["source"] == "scheduler"

    events = await _event_types(session_maker)
    assert "claimed" in events
    assert "post_attempt" in events
    assert "post_success" in events


@pytest.mark.asyncio
async def test_index_failure_after_publish_still_marks_posted(session_maker, seed, network_client):
    await _seed_post(seed)
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    with patch("services.publishing.upsert_indexed_posts", side_effect=RuntimeError("index down")):
        status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "posted"
    assert len(network_client.published) == 1
    stored = await _post(session_maker)
    assert stored.status == "posted"
    assert stored.posted_uri == "at://did:plc:alice/app.bsky.feed.post/p1"
    assert stored.locked_at is None
    assert await claim_next(SCHEDULED_POST, 45, "w2") is None

    events = await _event_types(session_maker)
    assert "index_failed" in events
    assert "post_success" in events
    assert "worker_error" not in events


@pytest.mark.asyncio
async def test_missing_account_is_terminal_without_retry(session_maker, seed, network_client):
    await _seed_post(seed, account_did=None)
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "failed"
    stored = await _post(session_maker)
    assert stored.status == "failed"
    assert stored.attempt_count == stored.max_attempts
    assert stored.last_error == MISSING_ACCOUNT_MESSAGE
    assert network_client.published == []
    assert "missing_account" in await _event_types(session_maker)
    assert await claim_next(SCHEDULED_POST, 45, "w1") is None


@pytest.mark.asyncio
async def test_network_failure_requeues_with_error(session_maker, seed, network_client):
    await _seed_post(seed)
    network_client.post_error = NetworkError("com.atproto.repo.createRecord failed: 502 upstream", status_code=502)
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "queued"
    stored = await _post(session_maker)
    assert stored.status == "queued"
    assert "502 upstream" in stored.last_error
    assert stored.locked_by is None

    async with session_maker() as db:
        result = await db.execute(select(JobEvent).where(JobEvent.event_type == "post_failed"))
        event = result.scalar_one()
    assert event.detail["phase"] == "posting"
    assert event.detail["next_status"] == "queued"
    assert event.detail["error_code"] == 502
    assert "Traceback" in event.detail["stack"]


@pytest.mark.asyncio
async def test_final_failed_attempt_marks_job_failed(session_maker, seed, network_client):
    await _seed_post(seed, max_attempts=1)
    network_client.post_error = NetworkError("rate limited", status_code=429)
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "failed"
    assert (await _post(session_maker)).status == "failed"


@pytest.mark.asyncio
async def test_missing_credentials_is_a_worker_error(session_maker, seed, network_client):
    await _seed_post(seed, with_account=False)
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "queued"
    assert network_client.published == []
    events = await _event_types(session_maker)
    assert "worker_error" in events
    assert "post_attempt" not in events


@pytest.mark.asyncio
async def test_expiring_session_is_refreshed_before_posting(session_maker, seed, network_client):
    await _seed_post(seed, expires_in=timedelta(seconds=5))
    job = await claim_next(SCHEDULED_POST, 45, "w1")

    status = await process_scheduled_post(job, client=network_client, worker_id="w1", lock_seconds=45)

    assert status == "posted"
    assert network_client.refreshed == ["did:plc:alice"]
    assert network_client.published[0]["access_jwt"] == "refreshed-access"
    async with session_maker() as db:
        account = (await db.execute(select(Account))).scalar_one()
    assert decrypt_token(account.access_jwt_encrypted) == "refreshed-access"
