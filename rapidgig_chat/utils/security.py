from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from rapidgig_chat.core.config import get_settings
from rapidgig_chat.core.errors import AuthenticationError


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None, **claims: Any) -> str:
    """Issue a token for ``subject``. Real issuance lives in the auth service; this is for tooling and tests."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {"sub": subject, "exp": expire, **claims}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("Invalid authentication token") from exc
    if not payload.get("sub"):
        raise AuthenticationError("Token has no subject")
    return payload


def identity_from_token(token: Optional[str]) -> str:
    if not token:
        raise AuthenticationError("Authentication token required")
    return str(decode_access_token(token)["sub"])
