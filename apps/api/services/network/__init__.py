"""AT Protocol network client and account session helpers."""

from services.network.client import AtprotoClient
from services.network.types import (
    AccountSession,
    MissingCredentialsError,
    NetworkError,
    PublishedPost,
)

__all__ = [
    "AtprotoClient",
    "AccountSession",
    "MissingCredentialsError",
    "NetworkError",
    "PublishedPost",
]
