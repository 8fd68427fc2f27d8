from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import jwt

from oracly.config import settings


def _decode_options() -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"algorithms": [settings.AUTH_JWT_ALGORITHM]}
    if settings.AUTH_JWT_AUDIENCE:
        kwargs["audience"] = settings.AUTH_JWT_AUDIENCE
    else:
        kwargs["options"] = {"verify_aud": False}
    if settings.AUTH_JWT_ISSUER:
        kwargs["issuer"] = settings.AUTH_JWT_ISSUER
    return kwargs


def create_access_token(claims: Dict[str, Any], expires: Optional[timedelta] = None) -> str:
    """Mint a token the way the identity provider does; used by tests and local tooling."""
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + (expires or timedelta(minutes=30))
    if settings.AUTH_JWT_AUDIENCE and "aud" not in payload:
        payload["aud"] = settings.AUTH_JWT_AUDIENCE
    if settings.AUTH_JWT_ISSUER and "iss" not in payload:
        payload["iss"] = settings.AUTH_JWT_ISSUER
    return jwt.encode(payload, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.AUTH_JWT_SECRET, **_decode_options())
