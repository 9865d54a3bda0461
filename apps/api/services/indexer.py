"""Timer-driven content indexer: source polling plus hashtag opt-in enrollment.

Cooldown, rate-limit and join-account state live on one ``ContentIndexer``
instance. Replicas each keep their own copy, so two worker processes may poll
the same account within a cooldown window; upserts by ``uri`` keep that
harmless.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import indexer_cooldown_seconds, settings
from database import async_session_maker
from models.feed import Feed
from models.feed_source import FeedSource
from services.enrollment import (
    EnrollmentRateLimiter,
    OptInRule,
    enroll_author,
    extract_hashtags,
    is_already_enrolled,
    load_opt_in_rules,
)
from services.indexed_posts import rows_from_author_feed, upsert_indexed_posts
from services.network.client import AtprotoClient

logger = logging.getLogger(__name__)

DID_PATTERN = re.compile(r"^did:[a-z]+:[A-Za-z0-9._:%-]+$")
PLACEHOLDER_MARKER = "REPLACE_ME"


def is_valid_source_did(value: Optional[str]) -> bool:
    did = str(value or "").strip()
    if not did or PLACEHOLDER_MARKER in did.upper():
        return False
    return bool(DID_PATTERN.match(did))


async def load_source_dids(db: AsyncSession) -> List[str]:
    """Distinct account DIDs listed as sources of enabled feeds."""
    result = await db.execute(
        select(FeedSource.account_did)
        .join(Feed, Feed.id == FeedSource.feed_id)
        .where(
            Feed.is_enabled.is_(True),
            FeedSource.source_type == "account_list",
            FeedSource.account_did.is_not(None),
        )
        .distinct()
    )
    dids = [str(row[0]).strip() for row in result.all()]
    return sorted({did for did in dids if is_valid_source_did(did)})


class ContentIndexer:
    def __init__(
        self,
        *,
        client: AtprotoClient,
        interval_seconds: Optional[float] = None,
        limit: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        max_dids_per_tick: Optional[int] = None,
        jitter_seconds: Optional[float] = None,
        pacing_min_seconds: Optional[float] = None,
        pacing_spread_seconds: Optional[float] = None,
        enrollment_enabled: Optional[bool] = None,
        join_account_handle: Optional[str] = None,
        search_limit: Optional[int] = None,
        rate_limiter: Optional[EnrollmentRateLimiter] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.interval_seconds = settings.INDEXER_INTERVAL_MS / 1000.0 if interval_seconds is None else interval_seconds
        self.limit = settings.INDEXER_LIMIT if limit is None else limit
        self.cooldown_seconds = indexer_cooldown_seconds() if cooldown_seconds is None else cooldown_seconds
        self.max_dids_per_tick = settings.INDEXER_MAX_DIDS_PER_TICK if max_dids_per_tick is None else max_dids_per_tick
        self.jitter_seconds = settings.INDEXER_JITTER_MS / 1000.0 if jitter_seconds is None else jitter_seconds
        self.pacing_min_seconds = (
            settings.INDEXER_PACING_MIN_MS / 1000.0 if pacing_min_seconds is None else pacing_min_seconds
        )
        self.pacing_spread_seconds = (
            settings.INDEXER_PACING_SPREAD_MS / 1000.0 if pacing_spread_seconds is None else pacing_spread_seconds
        )
        self.enrollment_enabled = settings.ENROLL_ENABLED if enrollment_enabled is None else enrollment_enabled
        handle = settings.JOIN_ACCOUNT_HANDLE if join_account_handle is None else join_account_handle
        self.join_account_handle = (handle or "").strip().lstrip("@")
        self.search_limit = settings.ENROLL_SEARCH_LIMIT if search_limit is None else search_limit
        self.rate_limiter = rate_limiter or EnrollmentRateLimiter(
            settings.ENROLL_RATE_LIMIT,
            settings.ENROLL_RATE_WINDOW_SECONDS,
        )
        self.rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock

        self._last_polled: Dict[str, float] = {}
        self._join_account_did: Optional[str] = None
        self._running = False
        self._first_tick = True
        self._timer_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def tick(self) -> Optional[Dict[str, Any]]:
        """Run one polling pass followed by enrollment; None if a tick is already in flight."""
        if self._running:
            logger.debug("indexer_tick_skipped reason=running")
            return None
        self._running = True
        summary: Dict[str, Any] = {}
        try:
            if self._first_tick and self.jitter_seconds > 0:
                await self._sleep(self.rng.random() * self.jitter_seconds)
            self._first_tick = False

            try:
                summary.update(await self.poll_sources())
            except Exception as exc:
                logger.exception("indexer_failed error=%s", exc)
                summary["error"] = str(exc)

            if self.enrollment_enabled:
                try:
                    summary["enrollment"] = await self.run_enrollment()
                except Exception as exc:
                    logger.exception("enrollment_failed error=%s", exc)
                    summary["enrollment_error"] = str(exc)
            return summary
        finally:
            self._running = False

    async def poll_sources(self) -> Dict[str, int]:
        async with async_session_maker() as db:
            dids = await load_source_dids(db)

        now = self._clock()
        candidates = list(dids)
        self.rng.shuffle(candidates)
        candidates = candidates[: max(int(self.max_dids_per_tick), 0)]

        summary = {"sources": len(dids), "selected": len(candidates), "indexed": 0, "posts": 0, "cooldown": 0, "failed": 0}
        for did in candidates:
            last = self._last_polled.get(did)
            if last is not None and now - last < self.cooldown_seconds:
                summary["cooldown"] += 1
                continue
            try:
                count = await self.index_account(did)
                self._last_polled[did] = self._clock()
                summary["indexed"] += 1
                summary["posts"] += count
                logger.info("indexer_did did=%s count=%s", did, count)
            except Exception as exc:
                summary["failed"] += 1
                logger.error("indexer_did_failed did=%s error=%s", did, exc)
            await self._sleep(self.pacing_min_seconds + self.rng.random() * self.pacing_spread_seconds)
        return summary

    async def index_account(self, did: str) -> int:
        items = await self.client.get_author_feed(did, limit=self.limit)
        rows = rows_from_author_feed(items, fallback_did=did, source="indexer")
        if not rows:
            return 0
        async with async_session_maker() as db:
            count = await upsert_indexed_posts(db, rows)
            await db.commit()
        return count

    async def resolve_join_account(self) -> Optional[str]:
        if self._join_account_did:
            return self._join_account_did
        if not self.join_account_handle:
            return None
        self._join_account_did = await self.client.resolve_handle(self.join_account_handle)
        logger.info("join_account_resolved handle=%s did=%s", self.join_account_handle, self._join_account_did)
        return self._join_account_did

    async def run_enrollment(self) -> Dict[str, int]:
        summary = {"rules": 0, "mentions": 0, "added": 0, "requested": 0, "existing": 0, "rate_limited": 0}
        async with async_session_maker() as db:
            rules = await load_opt_in_rules(db)
        summary["rules"] = len(rules)
        if not rules:
            return summary

        join_did = await self.resolve_join_account()
        if not join_did:
            logger.debug("enrollment_skipped reason=no_join_account")
            return summary

        posts = await self.client.search_posts(self.join_account_handle, mentions=join_did, limit=self.search_limit)
        summary["mentions"] = len(posts)

        rules_by_tag: Dict[str, List[OptInRule]] = defaultdict(list)
        for rule in rules:
            rules_by_tag[rule.tag].append(rule)

        processed: Set[Tuple[str, str]] = set()
        for post in posts:
            author = post.get("author") if isinstance(post.get("author"), dict) else {}
            author_did = author.get("did")
            if not author_did or author_did == join_did:
                continue
            record = post.get("record") if isinstance(post.get("record"), dict) else {}
            for tag in extract_hashtags(record.get("text")):
                for rule in rules_by_tag.get(tag, []):
                    key = (rule.feed_id, author_did)
                    if key in processed:
                        continue
                    processed.add(key)

                    async with async_session_maker() as db:
                        if await is_already_enrolled(db, rule, author_did):
                            summary["existing"] += 1
                            continue
                    if not self.rate_limiter.consume(rule.feed_id):
                        summary["rate_limited"] += 1
                        logger.warning("enrollment_rate_limited feed_id=%s did=%s", rule.feed_id, author_did)
                        continue
                    outcome = await enroll_author(rule, author_did, post.get("uri"))
                    if outcome == "exists":
                        summary["existing"] += 1
                    else:
                        summary[outcome] += 1
        return summary

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def _run_timer(self) -> None:
        while True:
            self._spawn_tick()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        """Start the interval timer; the first tick fires immediately."""
        logger.info(
            "indexer_start interval_s=%s limit=%s cooldown_s=%s max_dids_per_tick=%s jitter_s=%s",
            self.interval_seconds,
            self.limit,
            self.cooldown_seconds,
            self.max_dids_per_tick,
            self.jitter_seconds,
        )
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._run_timer())
        return self._timer_task

    async def stop(self) -> None:
        tasks = [task for task in [self._timer_task, *self._tick_tasks] if task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer_task = None
