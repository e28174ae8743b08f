"""
Session check for protected routes.

The dashboard's identity provider is outside this service. The gateway only
needs a yes/no answer plus a caller identity, so verification is a callable
that takes request headers and returns a ``Session`` or ``None``. The default
verifier accepts a shared API key sent as ``X-API-Key`` or as a bearer token.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

API_KEY_HEADER = "x-api-key"


@dataclass(frozen=True)
class Session:
    user_id: str
    method: str = "api-key"


SessionVerifier = Callable[[Mapping[str, str]], Optional[Session]]


def _hash_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


class ApiKeyVerifier:
    """
    Accepts requests carrying the configured API key.

    With no key configured every request is rejected, so a deployment that
    forgot to set ``GATEWAY_API_KEY`` fails closed.
    """

    def __init__(self, api_key: Optional[str], user_id: str = "dashboard"):
        self._key_hash = _hash_key(api_key) if api_key else None
        self.user_id = user_id

    def __call__(self, headers: Mapping[str, str]) -> Optional[Session]:
        if self._key_hash is None:
            return None
        supplied = _extract_key(headers)
        if not supplied:
            return None
        if not secrets.compare_digest(_hash_key(supplied), self._key_hash):
            return None
        return Session(user_id=self.user_id)


def _extract_key(headers: Mapping[str, str]) -> Optional[str]:
    key = headers.get(API_KEY_HEADER) or headers.get("X-API-Key")
    if key:
        return key.strip()
    authorization = headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None
