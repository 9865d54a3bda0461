"""Minimal async XRPC client for the AT Protocol endpoints the worker needs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from services.network.types import AccountSession, NetworkError, PublishedPost

logger = logging.getLogger(__name__)

POST_COLLECTION = "app.bsky.feed.post"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AtprotoClient:
    """Thin wrapper over ``httpx.AsyncClient`` speaking XRPC.

    Writes go to the account's PDS (``session.service``); public reads go to
    the configured AppView.
    """

    def __init__(
        self,
        *,
        service: Optional[str] = None,
        appview: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.service = (service or settings.BLUESKY_SERVICE).rstrip("/")
        self.appview = (appview or settings.BLUESKY_APPVIEW).rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.NETWORK_TIMEOUT_SECONDS
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "AtprotoClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _xrpc(
        self,
        http_method: str,
        nsid: str,
        *,
        base_url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{base_url.rstrip('/')}/xrpc/{nsid}"
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._http.request(http_method, url, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{nsid} request failed: {exc}") from exc

        if not response.is_success:
            error_code = None
            message = response.text[:500]
            try:
                body = response.json()
                error_code = body.get("error")
                message = body.get("message") or error_code or message
            except ValueError:
                pass
            raise NetworkError(
                f"{nsid} failed: {response.status_code} {message}",
                status_code=response.status_code,
                error_code=error_code,
            )
        if not response.content:
            return {}
        return response.json()

    async def create_session(self, identifier: str, password: str, *, service: Optional[str] = None) -> AccountSession:
        base = (service or self.service).rstrip("/")
        data = await self._xrpc(
            "POST",
            "com.atproto.server.createSession",
            base_url=base,
            json={"identifier": identifier, "password": password},
        )
        return AccountSession(
            did=data["did"],
            handle=data.get("handle") or identifier,
            access_jwt=data["accessJwt"],
            refresh_jwt=data["refreshJwt"],
            service=base,
        )

    async def refresh_session(self, session: AccountSession) -> AccountSession:
        data = await self._xrpc(
            "POST",
            "com.atproto.server.refreshSession",
            base_url=session.service,
            token=session.refresh_jwt,
        )
        return AccountSession(
            did=data.get("did") or session.did,
            handle=data.get("handle") or session.handle,
            access_jwt=data["accessJwt"],
            refresh_jwt=data["refreshJwt"],
            service=session.service,
        )

    async def create_post(self, session: AccountSession, text: str, *, langs: Optional[List[str]] = None) -> PublishedPost:
        record: Dict[str, Any] = {"$type": POST_COLLECTION, "text": text, "createdAt": _now_iso()}
        if langs:
            record["langs"] = langs
        data = await self._xrpc(
            "POST",
            "com.atproto.repo.createRecord",
            base_url=session.service,
            token=session.access_jwt,
            json={"repo": session.did, "collection": POST_COLLECTION, "record": record},
        )
        return PublishedPost(uri=data["uri"], cid=data["cid"])

    async def get_author_feed(self, actor: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        data = await self._xrpc(
            "GET",
            "app.bsky.feed.getAuthorFeed",
            base_url=self.appview,
            params={"actor": actor, "limit": max(1, min(int(limit), 100))},
        )
        return list(data.get("feed") or [])

    async def search_posts(
        self,
        query: str,
        *,
        mentions: Optional[str] = None,
        limit: int = 25,
        sort: str = "latest",
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"q": query, "limit": max(1, min(int(limit), 100)), "sort": sort}
        if mentions:
            params["mentions"] = mentions
        data = await self._xrpc("GET", "app.bsky.feed.searchPosts", base_url=self.appview, params=params)
        return list(data.get("posts") or [])

    async def resolve_handle(self, handle: str) -> str:
        data = await self._xrpc(
            "GET",
            "com.atproto.identity.resolveHandle",
            base_url=self.appview,
            params={"handle": handle.lstrip("@")},
        )
        return data["did"]

    async def get_record(self, session: AccountSession, *, collection: str, rkey: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._xrpc(
                "GET",
                "com.atproto.repo.getRecord",
                base_url=session.service,
                token=session.access_jwt,
                params={"repo": session.did, "collection": collection, "rkey": rkey},
            )
        except NetworkError as exc:
            if exc.error_code == "RecordNotFound" or exc.status_code == 404:
                return None
            raise
        return data.get("value")

    async def put_record(
        self,
        session: AccountSession,
        *,
        collection: str,
        rkey: str,
        record: Dict[str, Any],
    ) -> Dict[str, Any]:
        return await self._xrpc(
            "POST",
            "com.atproto.repo.putRecord",
            base_url=session.service,
            token=session.access_jwt,
            json={"repo": session.did, "collection": collection, "rkey": rkey, "record": record},
        )
