from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from main import app


@pytest.mark.asyncio
async def test_healthz_returns_plain_ok():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.text == "ok"
    assert response.headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_version_probe():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/xrpc/_health")

    assert response.status_code == 200
    assert response.json() == {"version": "0.1.0"}


@pytest.mark.asyncio
async def test_did_document_advertises_feed_generator():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/.well-known/did.json")

    body = response.json()
    assert response.status_code == 200
    assert body["id"] == "did:web:feeds.localhost"
    assert body["service"] == [
        {"id": "#bsky_fg", "type": "BskyFeedGenerator", "serviceEndpoint": "https://feeds.localhost"}
    ]


@pytest.mark.asyncio
async def test_health_reports_database_status(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'health.db'}")
    try:
        with patch("database.engine", engine):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/health")
    finally:
        await engine.dispose()

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "up"


@pytest.mark.asyncio
async def test_health_is_degraded_when_database_is_down():
    broken = create_async_engine("sqlite+aiosqlite:////nonexistent-dir/health.db")
    try:
        with patch("database.engine", broken):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
                response = await client.get("/health")
    finally:
        await broken.dispose()

    body = response.json()
    assert body["status"] == "degraded"
    assert body["database"].startswith("down:")
