"""Feed generator XRPC surface and service discovery document."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import feedgen_service_did, settings
from database import get_db
from services.feed_skeleton import (
    FeedNotFoundError,
    InvalidCursorError,
    InvalidFeedError,
    describe_feed_generator,
    get_feed_skeleton,
)

router = APIRouter()


class SkeletonItem(BaseModel):
    post: str


class FeedSkeletonResponse(BaseModel):
    feed: List[SkeletonItem]
    cursor: Optional[str] = None


class FeedGeneratorFeed(BaseModel):
    uri: str


class DescribeFeedGeneratorResponse(BaseModel):
    did: str
    feeds: List[FeedGeneratorFeed]


@router.get(
    "/xrpc/app.bsky.feed.getFeedSkeleton",
    response_model=FeedSkeletonResponse,
    response_model_exclude_none=True,
)
async def get_feed_skeleton_endpoint(
    feed: str = Query(..., min_length=1),
    limit: Optional[int] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
):
    try:
        uris, next_cursor = await get_feed_skeleton(db, feed, limit=limit, cursor=cursor)
    except (InvalidFeedError, InvalidCursorError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except FeedNotFoundError:
        raise HTTPException(status_code=404, detail="Feed not found")
    return FeedSkeletonResponse(feed=[SkeletonItem(post=uri) for uri in uris], cursor=next_cursor)


@router.get("/xrpc/app.bsky.feed.describeFeedGenerator", response_model=DescribeFeedGeneratorResponse)
async def describe_feed_generator_endpoint(db: AsyncSession = Depends(get_db)):
    return await describe_feed_generator(db)


@router.get("/.well-known/did.json")
async def did_document():
    """did:web document advertising the feed generator service endpoint."""
    return {
        "@context": ["https://www.w3.org/ns/did/v1"],
        "id": feedgen_service_did(),
        "service": [
            {
                "id": "#bsky_fg",
                "type": "BskyFeedGenerator",
                "serviceEndpoint": f"https://{settings.FEEDGEN_HOSTNAME}",
            }
        ],
    }
