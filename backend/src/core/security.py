"""
Bearer token handling for the identity boundary.

Authentication itself lives outside this service: tokens are issued by the
identity provider and only verified here. A verified token yields a
``Principal`` carrying the caller's id and role; every authorization decision
in the order core is an id equality check against that principal.

``create_access_token`` exists for service-to-service callers and tests that
need to mint tokens with the shared secret.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt

from src.core.config import get_settings
from src.core.logging import get_logger

settings = get_settings()
logger = get_logger(__name__)


class PrincipalRole(str, Enum):
    """Roles understood by the marketplace."""

    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """An already-authenticated caller."""

    id: UUID
    role: PrincipalRole

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN


class TokenError(Exception):
    """Raised when a bearer token cannot be verified."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


def create_access_token(
    principal_id: UUID,
    role: PrincipalRole,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed access token for a principal.

    Args:
        principal_id: Identifier placed in the ``sub`` claim
        role: Principal role placed in the ``role`` claim
        expires_delta: Optional custom lifetime

    Returns:
        Encoded JWT string
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta
        or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )
    claims: Dict[str, Any] = {
        "sub": str(principal_id),
        "role": role.value,
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT token.

    Raises:
        TokenError: If token is empty, expired, or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except ExpiredSignatureError as e:
        logger.warning("Token has expired", error=str(e))
        raise TokenError("Token has expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        logger.warning(
            "Invalid token",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError("Invalid token", code="TOKEN_INVALID") from e


def principal_from_token(token: str) -> Principal:
    """
    Resolve the principal carried by a bearer token.

    Raises:
        TokenError: If the token is invalid or lacks usable claims
    """
    payload = decode_token(token)

    if payload.get("type", "access") != "access":
        raise TokenError("Not an access token", code="TOKEN_TYPE")

    try:
        principal_id = UUID(str(payload["sub"]))
        role = PrincipalRole(payload["role"])
    except (KeyError, ValueError) as e:
        raise TokenError("Token claims are incomplete", code="TOKEN_CLAIMS") from e

    return Principal(id=principal_id, role=role)
