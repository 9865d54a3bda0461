"""Stored account session lookup, refresh and persistence."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from services.crypto import decrypt_token, encrypt_token
from services.network.client import AtprotoClient
from services.network.types import AccountSession, MissingCredentialsError

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=1)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def token_expiry(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim of a session JWT without verifying its signature."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


async def get_account(db: AsyncSession, user_id: str, did: str) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.user_id == user_id, Account.did == did))
    return result.scalar_one_or_none()


async def save_account_session(db: AsyncSession, user_id: str, session: AccountSession) -> Account:
    """Upsert the account row for ``user_id`` with freshly issued tokens."""
    account = await get_account(db, user_id, session.did)
    if account is None:
        account = Account(user_id=user_id, did=session.did, handle=session.handle, service=session.service)
        db.add(account)
    account.handle = session.handle
    account.service = session.service
    account.access_jwt_encrypted = encrypt_token(session.access_jwt)
    account.refresh_jwt_encrypted = encrypt_token(session.refresh_jwt)
    account.expires_at = token_expiry(session.access_jwt) or datetime.now(timezone.utc) + DEFAULT_SESSION_TTL
    await db.commit()
    return account


async def load_account_session(
    db: AsyncSession,
    client: AtprotoClient,
    user_id: str,
    did: str,
    *,
    now: Optional[datetime] = None,
) -> AccountSession:
    """Return a usable session for the account, refreshing it when close to expiry."""
    account = await get_account(db, user_id, did)
    if account is None:
        raise MissingCredentialsError(f"No connected account {did} for user {user_id}")

    access_jwt = decrypt_token(account.access_jwt_encrypted)
    refresh_jwt = decrypt_token(account.refresh_jwt_encrypted)
    if not access_jwt or not refresh_jwt:
        raise MissingCredentialsError(f"Account {did} has no stored session; reconnect it")

    session = AccountSession(
        did=account.did,
        handle=account.handle,
        access_jwt=access_jwt,
        refresh_jwt=refresh_jwt,
        service=account.service or settings.BLUESKY_SERVICE,
    )

    now = now or datetime.now(timezone.utc)
    expires_at = _as_utc(account.expires_at) or token_expiry(access_jwt)
    margin = timedelta(seconds=max(int(settings.SESSION_REFRESH_MARGIN_SECONDS), 0))
    if expires_at is None or expires_at - now >= margin:
        return session

    logger.info("session_refresh user_id=%s did=%s", user_id, did)
    refreshed = await client.refresh_session(session)
    await save_account_session(db, user_id, refreshed)
    return refreshed
