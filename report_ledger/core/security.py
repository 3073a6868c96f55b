"""Security utilities: bearer tokens and content hashing."""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt
from pydantic import BaseModel

from .config import get_settings

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


# =============================================================================
# BEARER TOKENS
# =============================================================================


class TokenPayload(BaseModel):
    """Claims carried by an access token."""

    sub: str
    org: str | None = None
    exp: datetime
    iat: datetime
    type: str = "access"


def create_access_token(
    user_id: UUID,
    organization_id: UUID | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Issue an access token for a user, optionally scoped to an organization.

    Production tokens come from the identity provider; this is used by
    local tooling and tests, which share the same secret.
    """
    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)

    claims = TokenPayload(
        sub=str(user_id),
        org=str(organization_id) if organization_id else None,
        iat=issued_at,
        exp=issued_at + lifetime,
    )
    return jwt.encode(claims.model_dump(), settings.secret_key, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> TokenPayload | None:
    """Validated claims, or None when the token does not verify."""
    try:
        claims = jwt.decode(
            token,
            get_settings().secret_key,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected access token: {e}")
        return None
    return TokenPayload.model_validate(claims)


# =============================================================================
# DIGESTS
# =============================================================================


def sha256_hex(data: bytes) -> str:
    """Lowercase hex SHA-256 of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def hashes_match(expected: str | None, actual: str | None) -> bool:
    """Constant-time comparison of two hex digests."""
    if not expected or not actual:
        return False
    return hmac.compare_digest(expected.lower(), actual.lower())


def sign_value(value: str) -> str:
    """HMAC-SHA256 of a value with the application secret."""
    key = get_settings().secret_key.encode("utf-8")
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()
