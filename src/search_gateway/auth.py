"""Caller identity resolution.

Search requests identify the caller with ``X-User-Id`` and ``X-Org-Id``
headers. When an API key is configured, the headers are only trusted
behind a matching ``Authorization: Bearer <key>``.
"""

import hmac
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping

from search_gateway.errors import AuthError

logger = logging.getLogger(__name__)

# Ids are embedded in cache keys and glob patterns, so separators and glob
# metacharacters are not allowed
_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: str
    org_id: str

    @property
    def user_key(self) -> str:
        return f"user:{self.user_id}"

    @property
    def org_key(self) -> str:
        return f"org:{self.org_id}"


def _challenge() -> dict[str, str]:
    return {"WWW-Authenticate": "Bearer"}


class IdentityResolver(ABC):
    """Turns request headers into an Identity or raises AuthError."""

    @abstractmethod
    async def resolve(self, headers: Mapping[str, str]) -> Identity:
        ...


class HeaderIdentityResolver(IdentityResolver):
    """Resolves identity from gateway headers, optionally behind an API key."""

    def __init__(self, api_key: str | None = None) -> None:
        """
        Initialize resolver.

        Args:
            api_key: Shared bearer token; None disables the check
        """
        self._api_key = api_key

    def _check_api_key(self, headers: Mapping[str, str]) -> None:
        auth_header = headers.get("authorization", "")

        if not auth_header:
            raise AuthError("Missing Authorization header", headers=_challenge())

        if not auth_header.startswith("Bearer "):
            raise AuthError("Invalid Authorization header format. Use: Bearer <token>", headers=_challenge())

        token = auth_header[7:]
        if not hmac.compare_digest(token.encode("utf-8"), self._api_key.encode("utf-8")):
            logger.warning("Invalid API key attempt")
            raise AuthError("Invalid API key", headers=_challenge())

    async def resolve(self, headers: Mapping[str, str]) -> Identity:
        """
        Resolve the caller.

        Args:
            headers: Request headers (case-insensitive mapping or lower-cased keys)

        Returns:
            Identity of the caller

        Raises:
            AuthError: If the API key or identity headers are missing or invalid
        """
        if self._api_key:
            self._check_api_key(headers)

        user_id = (headers.get("x-user-id") or "").strip()
        org_id = (headers.get("x-org-id") or "").strip()

        if not user_id or not org_id:
            raise AuthError("Missing X-User-Id or X-Org-Id header")

        for label, value in (("user id", user_id), ("org id", org_id)):
            if not _ID_RE.match(value):
                raise AuthError(f"Invalid {label}", details={"allowed": "A-Z a-z 0-9 _ . - (max 128)"})

        return Identity(user_id=user_id, org_id=org_id)
