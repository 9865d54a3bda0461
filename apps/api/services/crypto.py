"""Sealing of account session JWTs stored on ``bsky_accounts`` rows."""

import base64
import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings

logger = logging.getLogger(__name__)

SESSION_KEY_SALT = b"skysuite_account_session_salt"


@lru_cache(maxsize=4)
def _session_fernet(secret: str) -> Fernet:
    # 32-char secrets are used as raw key material, anything else goes through PBKDF2.
    if len(secret) == 32:
        return Fernet(base64.urlsafe_b64encode(secret.encode()))
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=SESSION_KEY_SALT, iterations=100000)
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))


def encrypt_token(token: str) -> str:
    return _session_fernet(settings.ENCRYPTION_KEY).encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: Optional[str]) -> Optional[str]:
    """Open a stored session token.

    Returns None for an empty column or a token sealed under another key, so
    callers treat the account as needing a reconnect.
    """
    if not encrypted_token:
        return None
    try:
        return _session_fernet(settings.ENCRYPTION_KEY).decrypt(encrypted_token.encode()).decode()
    except InvalidToken:
        logger.warning("session_token_unreadable reason=key_mismatch")
        return None
