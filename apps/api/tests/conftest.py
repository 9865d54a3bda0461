from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
import models  # noqa: F401
from models.account import Account
from services.crypto import encrypt_token
from services.network.types import AccountSession, NetworkError, PublishedPost

SESSION_MAKER_TARGETS = (
    "services.event_log.async_session_maker",
    "services.job_claim.async_session_maker",
    "services.publishing.async_session_maker",
    "services.ai_images.async_session_maker",
    "services.worker_loop.async_session_maker",
    "services.indexer.async_session_maker",
    "services.enrollment.async_session_maker",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "skysuite.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with ExitStack() as stack:
        for target in SESSION_MAKER_TARGETS:
            stack.enter_context(patch(target, maker))
        yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def seed(session_maker):
    """Insert ORM rows in one committed transaction."""

    async def _seed(*rows):
        async with session_maker() as db:
            db.add_all(rows)
            await db.commit()
        return rows

    return _seed


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


def make_account(user_id: str, did: str, *, expires_in: timedelta = timedelta(hours=2)) -> Account:
    return Account(
        user_id=user_id,
        did=did,
        handle=f"{user_id}.bsky.social",
        service="https://pds.test",
        access_jwt_encrypted=encrypt_token("access-token"),
        refresh_jwt_encrypted=encrypt_token("refresh-token"),
        expires_at=utcnow() + expires_in,
    )


def post_view(uri: str, did: str, text: str, created_at: str, lang: Optional[str] = "en") -> Dict[str, Any]:
    record: Dict[str, Any] = {"$type": "app.bsky.feed.post", "text": text, "createdAt": created_at}
    if lang:
        record["langs"] = [lang]
    return {"uri": uri, "cid": f"cid-{uri.rsplit('/', 1)[-1]}", "author": {"did": did}, "record": record}


class FakeNetworkClient:
    """In-memory stand-in for ``AtprotoClient``."""

    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self.post_error: Optional[Exception] = None
        self.refreshed: List[str] = []
        self.author_feeds: Dict[str, List[Dict[str, Any]]] = {}
        self.failing_actors = set()
        self.fetched: List[str] = []
        self.search_results: List[Dict[str, Any]] = []
        self.searches: List[Dict[str, Any]] = []
        self.handles: Dict[str, str] = {}
        self.records: Dict[str, Dict[str, Any]] = {}
        self.put_calls: List[Dict[str, Any]] = []

    async def create_post(self, session, text, *, langs=None):
        if self.post_error is not None:
            raise self.post_error
        self.published.append({"did": session.did, "text": text, "access_jwt": session.access_jwt})
        index = len(self.published)
        return PublishedPost(uri=f"at://{session.did}/app.bsky.feed.post/p{index}", cid=f"cid-p{index}")

    async def refresh_session(self, session):
        self.refreshed.append(session.did)
        return AccountSession(
            did=session.did,
            handle=session.handle,
            access_jwt="refreshed-access",
            refresh_jwt="refreshed-refresh",
            service=session.service,
        )

    async def get_author_feed(self, actor, *, limit=50):
        self.fetched.append(actor)
        if actor in self.failing_actors:
            raise NetworkError(f"app.bsky.feed.getAuthorFeed failed: 502 upstream for {actor}", status_code=502)
        return [{"post": post} for post in self.author_feeds.get(actor, [])][:limit]

    async def search_posts(self, query, *, mentions=None, limit=25, sort="latest"):
        self.searches.append({"q": query, "mentions": mentions, "limit": limit})
        return list(self.search_results)

    async def resolve_handle(self, handle):
        return self.handles[handle.lstrip("@")]

    async def get_record(self, session, *, collection, rkey):
        return self.records.get(f"{collection}/{rkey}")

    async def put_record(self, session, *, collection, rkey, record):
        self.put_calls.append({"collection": collection, "rkey": rkey, "record": record})
        self.records[f"{collection}/{rkey}"] = record
        return {"uri": f"at://{session.did}/{collection}/{rkey}", "cid": "cid-record"}


@pytest.fixture
def network_client():
    return FakeNetworkClient()
