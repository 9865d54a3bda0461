import random

import pytest
from sqlalchemy.future import select

from conftest import post_view
from models.feed import Feed
from models.feed_join_request import FeedJoinRequest
from models.feed_rule import FeedRule
from models.feed_source import FeedSource
from services.enrollment import (
    EnrollmentRateLimiter,
    OptInRule,
    enroll_author,
    extract_hashtags,
    load_opt_in_rules,
    normalize_tag,
)
from services.indexer import ContentIndexer

JOIN_DID = "did:plc:joinbot"


class _Clock:
    def __init__(self, value=0.0):
        self.value = value

    def __call__(self):
        return self.value


async def _noop_sleep(delay):
    return None


def _indexer(network_client, *, rate_limit=20, handle="join.skysuite.test"):
    network_client.handles = {"join.skysuite.test": JOIN_DID}
    return ContentIndexer(
        client=network_client,
        jitter_seconds=0,
        enrollment_enabled=True,
        join_account_handle=handle,
        search_limit=50,
        rate_limiter=EnrollmentRateLimiter(rate_limit, 3600, clock=_Clock()),
        rng=random.Random(1),
        sleep=_noop_sleep,
    )


async def _seed_opt_in_feed(seed, *, feed_id="feed-1", tag="#JoinCats", mode="public", enabled=True):
    await seed(
        Feed(id=feed_id, user_id="owner", slug=feed_id, display_name="Cats", is_enabled=enabled, source_strategy="opt_in"),
        FeedRule(feed_id=feed_id, include_keywords=[], exclude_keywords=[], enrollment_tag=tag, enrollment_mode=mode),
    )


def _mention(index, did, text):
    return post_view(f"at://{did}/app.bsky.feed.post/m{index}", did, text, "2026-10-01T10:00:00Z")


def test_tags_are_normalized():
    assert normalize_tag("#JoinCats ") == "joincats"
    assert normalize_tag("  ") is None
    assert normalize_tag(None) is None
    assert extract_hashtags("Hi @join #JoinCats and #cats-daily!") == {"joincats", "cats-daily"}
    assert extract_hashtags("") == set()


def test_rate_limiter_uses_fixed_window_per_key():
    clock = _Clock(100.0)
    limiter = EnrollmentRateLimiter(2, 60, clock=clock)

    assert limiter.consume("feed-1")
    assert limiter.consume("feed-1")
    assert not limiter.consume("feed-1")
    assert limiter.consume("feed-2")

    clock.value = 161.0
    assert limiter.consume("feed-1")


@pytest.mark.asyncio
async def test_load_opt_in_rules_skips_disabled_and_curated_feeds(session_maker, seed):
    await _seed_opt_in_feed(seed, feed_id="feed-1", tag="#JoinCats", mode="moderated")
    await _seed_opt_in_feed(seed, feed_id="feed-off", enabled=False)
    await seed(
        Feed(id="feed-curated", user_id="owner", slug="curated", display_name="Curated", source_strategy="curated"),
        FeedRule(feed_id="feed-curated", include_keywords=[], exclude_keywords=[], enrollment_tag="#nope"),
    )

    async with session_maker() as db:
        rules = await load_opt_in_rules(db)

    assert rules == [OptInRule(feed_id="feed-1", tag="joincats", mode="moderated")]


@pytest.mark.asyncio
async def test_public_enrollment_adds_source_once(session_maker, seed, network_client):
    await _seed_opt_in_feed(seed)
    network_client.search_results = [
        _mention(1, "did:plc:alice", "@join.skysuite.test #joincats please"),
        _mention(2, "did:plc:alice", "again #JoinCats"),
        _mention(3, JOIN_DID, "welcome! #joincats"),
        _mention(4, "did:plc:bob", "just saying hi"),
    ]
    indexer = _indexer(network_client)

    first = await indexer.run_enrollment()
    second = await indexer.run_enrollment()

    assert first["added"] == 1
    assert second["added"] == 0
    assert second["existing"] == 1
    assert network_client.searches[0] == {"q": "join.skysuite.test", "mentions": JOIN_DID, "limit": 50}
    async with session_maker() as db:
        sources = (await db.execute(select(FeedSource))).scalars().all()
    assert [(source.account_did, source.added_via) for source in sources] == [("did:plc:alice", "opt_in")]


@pytest.mark.asyncio
async def test_moderated_enrollment_files_pending_request(session_maker, seed, network_client):
    await _seed_opt_in_feed(seed, mode="moderated")
    network_client.search_results = [_mention(1, "did:plc:alice", "#joincats")]
    indexer = _indexer(network_client)

    summary = await indexer.run_enrollment()

    assert summary["requested"] == 1
    async with session_maker() as db:
        requests = (await db.execute(select(FeedJoinRequest))).scalars().all()
        sources = (await db.execute(select(FeedSource))).scalars().all()
    assert [(req.requester_did, req.status, req.source_uri) for req in requests] == [
        ("did:plc:alice", "pending", "at://did:plc:alice/app.bsky.feed.post/m1")
    ]
    assert sources == []


@pytest.mark.asyncio
async def test_enrollment_rate_limit_defers_extra_authors(session_maker, seed, network_client):
    await _seed_opt_in_feed(seed)
    network_client.search_results = [
        _mention(1, "did:plc:alice", "#joincats"),
        _mention(2, "did:plc:bob", "#joincats"),
        _mention(3, "did:plc:carol", "#joincats"),
    ]
    indexer = _indexer(network_client, rate_limit=2)

    summary = await indexer.run_enrollment()

    assert summary["added"] == 2
    assert summary["rate_limited"] == 1
    async with session_maker() as db:
        sources = (await db.execute(select(FeedSource))).scalars().all()
    assert len(sources) == 2


@pytest.mark.asyncio
async def test_enrollment_without_join_account_does_not_search(session_maker, seed, network_client):
    await _seed_opt_in_feed(seed)
    indexer = _indexer(network_client, handle="")

    summary = await indexer.run_enrollment()

    assert summary["rules"] == 1
    assert summary["mentions"] == 0
    assert network_client.searches == []


@pytest.mark.asyncio
async def test_duplicate_enrollment_counts_as_existing(session_maker, seed):
    await _seed_opt_in_feed(seed)
    await seed(FeedSource(feed_id="feed-1", account_did="did:plc:alice", added_via="curated"))

    outcome = await enroll_author(OptInRule(feed_id="feed-1", tag="joincats", mode="public"), "did:plc:alice")

    assert outcome == "exists"


@pytest.mark.asyncio
async def test_tick_runs_enrollment_after_polling(session_maker, seed, network_client):
    await _seed_opt_in_feed(seed)
    network_client.search_results = [_mention(1, "did:plc:alice", "#joincats")]
    indexer = _indexer(network_client)

    summary = await indexer.tick()

    assert summary["enrollment"]["added"] == 1
    assert network_client.fetched == []
