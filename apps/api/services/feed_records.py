"""Publishing feed-generator records into the owner's repository."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import feedgen_service_did
from models.feed import Feed
from services.feed_skeleton import GENERATOR_COLLECTION
from services.network.client import AtprotoClient
from services.network.sessions import load_account_session

logger = logging.getLogger(__name__)

COMPARED_FIELDS = ("did", "displayName", "description")


def build_generator_record(feed: Feed, existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Generator record for ``feed``; ``createdAt`` is kept from an existing record."""
    record: Dict[str, Any] = {
        "$type": GENERATOR_COLLECTION,
        "did": feedgen_service_did(),
        "displayName": (feed.display_name or feed.slug)[:24],
        "createdAt": (existing or {}).get("createdAt")
        or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    if feed.description:
        record["description"] = feed.description[:300]
    return record


def record_changed(existing: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
    if not existing:
        return True
    return any(existing.get(key) != desired.get(key) for key in COMPARED_FIELDS)


async def publish_feed_record(db: AsyncSession, client: AtprotoClient, slug: str, did: str) -> Dict[str, Any]:
    """Create or update the generator record for ``slug`` under the owner's account ``did``."""
    result = await db.execute(select(Feed).where(Feed.slug == slug))
    feed = result.scalar_one_or_none()
    if feed is None:
        raise LookupError(f"Feed {slug} not found")

    session = await load_account_session(db, client, feed.user_id, did)
    existing = await client.get_record(session, collection=GENERATOR_COLLECTION, rkey=slug)
    desired = build_generator_record(feed, existing)
    uri = f"at://{session.did}/{GENERATOR_COLLECTION}/{slug}"
    if not record_changed(existing, desired):
        logger.info("feed_record_unchanged slug=%s uri=%s", slug, uri)
        return {"uri": uri, "changed": False}

    response = await client.put_record(session, collection=GENERATOR_COLLECTION, rkey=slug, record=desired)
    logger.info("feed_record_published slug=%s uri=%s", slug, response.get("uri") or uri)
    return {"uri": response.get("uri") or uri, "cid": response.get("cid"), "changed": True}
