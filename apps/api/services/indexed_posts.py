"""Idempotent writes into the read-side post index."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from models.indexed_post import IndexedPost

UPSERT_COLUMNS = ("cid", "author_did", "text", "created_at", "lang", "raw")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def row_from_post_view(post: Dict[str, Any], *, fallback_did: str, source: str) -> Optional[Dict[str, Any]]:
    """Map one network post view to an ``indexed_posts`` row."""
    uri = post.get("uri") if isinstance(post, dict) else None
    if not uri:
        return None
    record = post.get("record") if isinstance(post.get("record"), dict) else {}
    author = post.get("author") if isinstance(post.get("author"), dict) else {}
    text = record.get("text") if isinstance(record.get("text"), str) else ""
    langs = record.get("langs")
    lang = langs[0] if isinstance(langs, list) and langs else None
    return {
        "uri": uri,
        "cid": post.get("cid"),
        "author_did": author.get("did") or fallback_did,
        "text": text,
        "created_at": _parse_timestamp(record.get("createdAt")) or datetime.now(timezone.utc),
        "lang": lang,
        "raw": {"cid": post.get("cid"), "source": source},
    }


def rows_from_author_feed(items: Iterable[Dict[str, Any]], *, fallback_did: str, source: str = "indexer") -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for item in items:
        post = item.get("post") if isinstance(item, dict) else None
        if not post:
            continue
        row = row_from_post_view(post, fallback_did=fallback_did, source=source)
        if row:
            rows.append(row)
    return rows


async def upsert_indexed_posts(db: AsyncSession, rows: List[Dict[str, Any]]) -> int:
    """Insert or refresh rows keyed by ``uri``; caller commits."""
    if not rows:
        return 0
    deduped = list({row["uri"]: row for row in rows}.values())
    dialect = db.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = insert_fn(IndexedPost).values(deduped)
    stmt = stmt.on_conflict_do_update(
        index_elements=[IndexedPost.uri],
        set_={column: stmt.excluded[column] for column in UPSERT_COLUMNS},
    )
    await db.execute(stmt)
    return len(deduped)
