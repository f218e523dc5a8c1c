"""
Identity for the Library Circulation API.

Credentials are checked here and nowhere else:
- passwords are stored as bcrypt hashes
- access and refresh tokens are HS-signed JWTs issued with PyJWT
- a verified request is represented by an ``Actor``, a detached value the
  ledger and the policies work with
"""

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import bcrypt
import jwt

from .config import ServerConfig, get_config
from .errors import Unauthorized
from .models.user import Role

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


class TokenType(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class Actor:
    """The authenticated user behind a request."""

    id: int
    role: Role
    email: str | None = None

    @property
    def is_librarian(self) -> bool:
        return self.role == Role.LIBRARIAN

    @property
    def is_member(self) -> bool:
        return self.role == Role.MEMBER

    @classmethod
    def from_user(cls, user) -> "Actor":
        """Build from a ``User`` model or row."""
        return cls(id=user.id, role=Role(user.role), email=user.email_address)


# =============================================================================
# PASSWORDS
# =============================================================================


def hash_password(password: str, rounds: int | None = None) -> str:
    rounds = rounds or get_config().bcrypt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_digest: str) -> bool:
    """Constant-time check of a password against its stored hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_digest.encode("utf-8"))
    except ValueError:
        # Malformed digest or over-long password
        return False


# =============================================================================
# TOKENS
# =============================================================================


def _encode(payload: dict, config: ServerConfig) -> str:
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def issue_access_token(user, config: ServerConfig | None = None) -> str:
    """Short-lived token carrying the user's id, email and role."""
    config = config or get_config()
    role = Role(user.role)
    payload = {
        "user_id": user.id,
        "email": user.email_address,
        "role": role.value,
        "type": TokenType.ACCESS.value,
        "exp": datetime.now(UTC) + timedelta(hours=config.access_token_ttl_hours),
    }
    return _encode(payload, config)


def issue_refresh_token(user, config: ServerConfig | None = None) -> str:
    """Long-lived token that can only be exchanged for a new pair."""
    config = config or get_config()
    payload = {
        "user_id": user.id,
        "type": TokenType.REFRESH.value,
        "exp": datetime.now(UTC) + timedelta(days=config.refresh_token_ttl_days),
    }
    return _encode(payload, config)


def issue_token_pair(user, config: ServerConfig | None = None) -> dict[str, str]:
    return {
        "token": issue_access_token(user, config),
        "refresh_token": issue_refresh_token(user, config),
    }


def decode_token(
    token: str, expected_type: TokenType = TokenType.ACCESS, config: ServerConfig | None = None
) -> dict:
    """
    Verify a token's signature, expiry and type.

    Returns:
        The token payload

    Raises:
        Unauthorized: If the token is invalid, expired or of the wrong type
    """
    config = config or get_config()
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm],
            options={"require": ["exp", "user_id"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise Unauthorized("Invalid or expired token") from e
    except jwt.InvalidTokenError as e:
        logger.debug("Rejected token: %s", e)
        raise Unauthorized("Invalid or expired token") from e

    if payload.get("type", TokenType.ACCESS.value) != expected_type.value:
        raise Unauthorized("Invalid or expired token")

    return payload


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Pull the token out of an ``Authorization`` header.

    Returns:
        The token, or None when no header was sent

    Raises:
        Unauthorized: If a header was sent but is not ``Bearer <token>``
    """
    if authorization is None:
        return None

    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        raise Unauthorized("Invalid authorization header")
    return token
