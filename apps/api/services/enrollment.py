"""Hashtag opt-in enrollment helpers for opt-in feeds."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.feed import Feed
from models.feed_join_request import FeedJoinRequest
from models.feed_rule import FeedRule
from models.feed_source import FeedSource

logger = logging.getLogger(__name__)

HASHTAG_PATTERN = re.compile(r"#(\w[\w-]*)")
ENROLLMENT_MODES = {"public", "moderated"}


@dataclass(frozen=True)
class OptInRule:
    feed_id: str
    tag: str
    mode: str


def normalize_tag(tag: Optional[str]) -> Optional[str]:
    """Lowercase a tag and drop the leading ``#``; empty tags become None."""
    cleaned = str(tag or "").strip().lstrip("#").strip().lower()
    return cleaned or None


def extract_hashtags(text: Optional[str]) -> Set[str]:
    return {match.lower() for match in HASHTAG_PATTERN.findall(text or "")}


class EnrollmentRateLimiter:
    """Fixed-window counter per feed, local to one indexer instance."""

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = int(limit)
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}

    def consume(self, key: str) -> bool:
        """Count one enrollment for ``key``; False once the window budget is spent."""
        now = self._clock()
        count, reset_at = self._counters.get(key, (0, now + self.window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + self.window_seconds
        if count >= self.limit:
            self._counters[key] = (count, reset_at)
            return False
        self._counters[key] = (count + 1, reset_at)
        return True

    def reset(self) -> None:
        self._counters.clear()


async def load_opt_in_rules(db: AsyncSession) -> List[OptInRule]:
    """Enabled opt-in feeds that declare an enrollment tag."""
    result = await db.execute(
        select(FeedRule.feed_id, FeedRule.enrollment_tag, FeedRule.enrollment_mode)
        .join(Feed, Feed.id == FeedRule.feed_id)
        .where(
            Feed.is_enabled.is_(True),
            Feed.source_strategy == "opt_in",
            FeedRule.enrollment_tag.is_not(None),
        )
    )
    rules: List[OptInRule] = []
    for feed_id, tag, mode in result.all():
        normalized = normalize_tag(tag)
        if not normalized:
            continue
        rules.append(OptInRule(feed_id=feed_id, tag=normalized, mode=mode if mode in ENROLLMENT_MODES else "public"))
    return rules


async def is_already_enrolled(db: AsyncSession, rule: OptInRule, did: str) -> bool:
    if rule.mode == "moderated":
        result = await db.execute(
            select(FeedJoinRequest.id).where(FeedJoinRequest.feed_id == rule.feed_id, FeedJoinRequest.requester_did == did)
        )
        if result.first() is not None:
            return True
    result = await db.execute(
        select(FeedSource.id).where(FeedSource.feed_id == rule.feed_id, FeedSource.account_did == did)
    )
    return result.first() is not None


async def enroll_author(rule: OptInRule, did: str, source_uri: Optional[str] = None) -> str:
    """Add ``did`` to the feed (public) or file a pending request (moderated).

    Returns ``"added"``, ``"requested"`` or ``"exists"``; a duplicate insert is
    not an error.
    """
    async with async_session_maker() as db:
        if rule.mode == "moderated":
            db.add(FeedJoinRequest(feed_id=rule.feed_id, requester_did=did, status="pending", source_uri=source_uri))
            outcome = "requested"
        else:
            db.add(FeedSource(feed_id=rule.feed_id, source_type="account_list", account_did=did, added_via="opt_in"))
            outcome = "added"
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return "exists"
    logger.info("enrollment_%s feed_id=%s did=%s tag=%s", outcome, rule.feed_id, did, rule.tag)
    return outcome
