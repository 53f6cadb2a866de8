"""
Bearer API-key authentication for collector endpoints.
"""
from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class Principal:
    subject: str
    auth_type: str


class AuthError(HTTPException):
    def __init__(self, detail: str, status_code: int = status.HTTP_401_UNAUTHORIZED):
        super().__init__(
            status_code=status_code,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


def _normalize(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = value.strip()
    if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in {'"', "'"}:
        normalized = normalized[1:-1].strip()
    return normalized or None


def _parse_bearer(authorization: Optional[str]) -> str:
    value = _normalize(authorization)
    if not value:
        raise AuthError("Missing Authorization header")
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Invalid Authorization header")
    return token.strip()


def _key_fingerprint(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]


def verify_api_key(token: str, settings: Settings) -> Principal:
    for candidate in settings.api_keys:
        if hmac.compare_digest(token.encode("utf-8"), candidate.encode("utf-8")):
            return Principal(subject=f"key:{_key_fingerprint(candidate)}", auth_type="api_key")
    raise AuthError("Invalid API key")


def require_api_key():
    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(default=None),
        settings: Settings = Depends(get_settings),
    ) -> Principal:
        token = _parse_bearer(authorization)
        principal = verify_api_key(token, settings)
        request.state.principal = principal
        return principal

    return dependency


def auth_health(settings: Settings) -> dict:
    return {
        "keys_configured": len(settings.api_keys),
        "using_dev_key": settings.api_keys_use_default and not settings.is_production,
    }
