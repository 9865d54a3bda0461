"""Network collaborator contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class NetworkError(RuntimeError):
    """Raised when an XRPC call fails or returns a non-success status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class MissingCredentialsError(NetworkError):
    """Raised when an account has no usable stored session."""


@dataclass(frozen=True)
class AccountSession:
    did: str
    handle: str
    access_jwt: str
    refresh_jwt: str
    service: str


@dataclass(frozen=True)
class PublishedPost:
    uri: str
    cid: str
