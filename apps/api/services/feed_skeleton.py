"""Feed skeleton query engine.

Pages are ordered by ``(created_at desc, uri desc)`` and the cursor carries the
last returned pair, compared strictly, so pagination neither repeats nor skips
rows. Keyword rules run in-process because they need whole-token matching.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import feedgen_service_did, settings
from models.feed import Feed
from models.feed_rule import FeedRule
from models.feed_source import FeedSource
from models.indexed_post import IndexedPost
from services.enrollment import normalize_tag

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
GENERATOR_COLLECTION = "app.bsky.feed.generator"
LIKE_ESCAPE = "\\"

Cursor = Tuple[datetime, str]


class InvalidCursorError(ValueError):
    """Cursor could not be decoded into ``(created_at, uri)``."""


class InvalidFeedError(ValueError):
    """Feed parameter is not a valid slug or generator record reference."""


class FeedNotFoundError(LookupError):
    """Feed does not exist or is disabled."""


@dataclass
class FeedDefinition:
    id: str
    slug: str
    source_strategy: str = "curated"
    include_keywords: List[str] = field(default_factory=list)
    exclude_keywords: List[str] = field(default_factory=list)
    include_mode: str = "any"
    case_insensitive: bool = True
    lang: Optional[str] = None
    submission_tag: Optional[str] = None
    author_dids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SkeletonRow:
    uri: str
    created_at: datetime
    text: str


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_feed_slug(value: Optional[str]) -> str:
    """Accept a bare slug or an ``at://<did>/app.bsky.feed.generator/<slug>`` reference."""
    raw = (value or "").strip()
    if raw.startswith("at://"):
        parts = raw[len("at://"):].split("/")
        if len(parts) != 3 or parts[1] != GENERATOR_COLLECTION or not parts[0]:
            raise InvalidFeedError(f"Unsupported feed reference: {raw}")
        raw = parts[2]
    if not SLUG_PATTERN.match(raw):
        raise InvalidFeedError(f"Invalid feed slug: {raw!r}")
    return raw


def encode_cursor(created_at: datetime, uri: str) -> str:
    payload = json.dumps({"created_at": _as_utc(created_at).isoformat(), "uri": uri}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: Optional[str]) -> Optional[Cursor]:
    if not cursor:
        return None
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        created_at = datetime.fromisoformat(str(data["created_at"]).replace("Z", "+00:00"))
        uri = data["uri"]
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidCursorError("Invalid cursor") from exc
    if not isinstance(uri, str) or not uri:
        raise InvalidCursorError("Invalid cursor")
    return _as_utc(created_at), uri


def matches_keyword(text: Optional[str], keyword: Optional[str], case_insensitive: bool = True) -> bool:
    """True when ``keyword`` occurs in ``text`` bounded by non-word characters or string edges."""
    trimmed = (keyword or "").strip()
    if not trimmed:
        return False
    pattern = re.compile(rf"(^|\W){re.escape(trimmed)}($|\W)", re.IGNORECASE if case_insensitive else 0)
    return pattern.search(text or "") is not None


def _clean_keywords(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    return [str(value).strip() for value in values if str(value or "").strip()]


def passes_include(text: str, definition: FeedDefinition) -> bool:
    include = definition.include_keywords
    if not include:
        return True
    hits = (matches_keyword(text, keyword, definition.case_insensitive) for keyword in include)
    if definition.include_mode == "all":
        return all(hits)
    return any(hits)


def is_excluded(text: str, definition: FeedDefinition) -> bool:
    return any(matches_keyword(text, keyword, definition.case_insensitive) for keyword in definition.exclude_keywords)


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return settings.FEED_DEFAULT_LIMIT
    return max(1, min(int(limit), settings.FEED_MAX_LIMIT))


async def load_feed_definition(db: AsyncSession, slug: str) -> Optional[FeedDefinition]:
    """Load an enabled feed with its rules and sources; None when missing or disabled."""
    result = await db.execute(select(Feed).where(Feed.slug == slug))
    feed = result.scalar_one_or_none()
    if feed is None or not feed.is_enabled:
        return None

    definition = FeedDefinition(id=feed.id, slug=feed.slug, source_strategy=feed.source_strategy or "curated")

    rule_result = await db.execute(select(FeedRule).where(FeedRule.feed_id == feed.id))
    rule = rule_result.scalar_one_or_none()
    if rule is not None:
        definition.include_keywords = _clean_keywords(rule.include_keywords)
        definition.exclude_keywords = _clean_keywords(rule.exclude_keywords)
        definition.include_mode = "all" if rule.include_mode == "all" else "any"
        definition.case_insensitive = bool(rule.case_insensitive)
        definition.lang = (rule.lang or "").strip() or None
        if rule.submission_enabled:
            definition.submission_tag = normalize_tag(rule.submission_tag)

    source_result = await db.execute(
        select(FeedSource.account_did).where(
            FeedSource.feed_id == feed.id,
            FeedSource.source_type == "account_list",
            FeedSource.account_did.is_not(None),
        )
    )
    definition.author_dids = sorted({row[0] for row in source_result.all() if row[0]})
    return definition


def _page_statement(limit: int, cursor: Optional[Cursor]):
    stmt = (
        select(IndexedPost.uri, IndexedPost.created_at, IndexedPost.text)
        .order_by(IndexedPost.created_at.desc(), IndexedPost.uri.desc())
        .limit(limit)
    )
    if cursor is not None:
        created_at, uri = cursor
        stmt = stmt.where(
            or_(
                IndexedPost.created_at < created_at,
                and_(IndexedPost.created_at == created_at, IndexedPost.uri < uri),
            )
        )
    return stmt


def _rows(result) -> List[SkeletonRow]:
    return [SkeletonRow(uri=uri, created_at=_as_utc(created_at), text=text or "") for uri, created_at, text in result.all()]


def _scan_floor(rows: List[SkeletonRow], limit: int) -> Optional[Cursor]:
    """Oldest key of a full raw page; rows past it were not fetched by that path."""
    if len(rows) < limit:
        return None
    return rows[-1].created_at, rows[-1].uri


async def query_source_posts(
    db: AsyncSession,
    definition: FeedDefinition,
    limit: int,
    cursor: Optional[Cursor],
) -> Tuple[List[SkeletonRow], Optional[Cursor]]:
    """Main path: source authors, language and full keyword rules.

    Returns the matching rows and the scan floor of the raw page.
    """
    if definition.source_strategy == "opt_in" and not definition.author_dids:
        return [], None
    stmt = _page_statement(limit, cursor)
    if definition.author_dids:
        stmt = stmt.where(IndexedPost.author_did.in_(definition.author_dids))
    if definition.lang:
        stmt = stmt.where(IndexedPost.lang == definition.lang)
    rows = _rows(await db.execute(stmt))
    matched = [row for row in rows if passes_include(row.text, definition) and not is_excluded(row.text, definition)]
    return matched, _scan_floor(rows, limit)


async def query_submission_posts(
    db: AsyncSession,
    definition: FeedDefinition,
    limit: int,
    cursor: Optional[Cursor],
) -> Tuple[List[SkeletonRow], Optional[Cursor]]:
    """Submission path: any post carrying the submission hashtag, minus excluded ones."""
    if not definition.submission_tag:
        return [], None
    escaped = (
        definition.submission_tag.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    stmt = _page_statement(limit, cursor).where(IndexedPost.text.ilike(f"%#{escaped}%", escape=LIKE_ESCAPE))
    rows = _rows(await db.execute(stmt))
    return [row for row in rows if not is_excluded(row.text, definition)], _scan_floor(rows, limit)


def merge_rows(*groups: List[SkeletonRow]) -> List[SkeletonRow]:
    """Union by ``uri`` (first occurrence wins) in ``(created_at, uri)`` descending order."""
    merged: Dict[str, SkeletonRow] = {}
    for group in groups:
        for row in group:
            merged.setdefault(row.uri, row)
    return sorted(merged.values(), key=lambda row: (row.created_at, row.uri), reverse=True)


async def get_feed_skeleton(
    db: AsyncSession,
    feed: str,
    limit: Optional[int] = None,
    cursor: Optional[str] = None,
) -> Tuple[List[str], Optional[str]]:
    """Resolve ``feed`` and return one page of post uris plus the next cursor.

    Each path scans at most one raw page. When a path fills its page, rows
    older than its last scanned key may be missing, so the merged page stops
    at the newest such floor and the next cursor resumes from there.
    """
    slug = parse_feed_slug(feed)
    definition = await load_feed_definition(db, slug)
    if definition is None:
        raise FeedNotFoundError(f"Feed not found: {slug}")

    decoded = decode_cursor(cursor)
    page_size = clamp_limit(limit)

    rows, floor = await query_source_posts(db, definition, page_size, decoded)
    floors = [floor]
    if definition.submission_tag:
        submitted, submission_floor = await query_submission_posts(db, definition, page_size, decoded)
        rows = merge_rows(rows, submitted)
        floors.append(submission_floor)

    boundary = max((value for value in floors if value is not None), default=None)
    if boundary is not None:
        rows = [row for row in rows if (row.created_at, row.uri) >= boundary]
    rows = rows[:page_size]

    if len(rows) == page_size:
        next_cursor = encode_cursor(rows[-1].created_at, rows[-1].uri)
    elif boundary is not None:
        next_cursor = encode_cursor(*boundary)
    elif rows:
        next_cursor = encode_cursor(rows[-1].created_at, rows[-1].uri)
    else:
        next_cursor = None
    logger.debug("feed_skeleton slug=%s count=%s has_cursor=%s", slug, len(rows), bool(cursor))
    return [row.uri for row in rows], next_cursor


def feed_generator_uri(slug: str, publisher_did: Optional[str] = None) -> str:
    did = (publisher_did or settings.FEEDGEN_PUBLISHER_DID or "").strip() or feedgen_service_did()
    return f"at://{did}/{GENERATOR_COLLECTION}/{slug}"


async def describe_feed_generator(db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(Feed.slug).where(Feed.is_enabled.is_(True)).order_by(Feed.slug))
    return {
        "did": feedgen_service_did(),
        "feeds": [{"uri": feed_generator_uri(slug)} for (slug,) in result.all()],
    }
