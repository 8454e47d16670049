"""Signed token issuing and verification.

Four token kinds, each with its own secret and lifetime. Verification never
touches the database except for refresh rotation, which compare-and-swaps the
user's single refresh slot.
"""
import secrets
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from beanie import PydanticObjectId as OID
from jose import JWTError, jwt

from telecare.config import get_settings
from telecare.errors import TokenError
from telecare.models.user import User
from telecare.services import credential_store
from telecare.utils import clock
from telecare.utils.logger import audit, get_logger

settings = get_settings()
logger = get_logger("tokens")


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    EMAIL_VERIFY = "email_verify"
    PASSWORD_RESET = "password_reset"


@dataclass
class AccessClaims:
    user_id: str
    role: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


def _secret_for(kind: TokenKind) -> str:
    if kind == TokenKind.ACCESS:
        return settings.ACCESS_TOKEN_SECRET
    if kind == TokenKind.REFRESH:
        return settings.REFRESH_TOKEN_SECRET
    return settings.action_token_secret


def _lifetime_for(kind: TokenKind) -> timedelta:
    if kind == TokenKind.ACCESS:
        return timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    if kind == TokenKind.REFRESH:
        return timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    if kind == TokenKind.EMAIL_VERIFY:
        return timedelta(hours=settings.EMAIL_VERIFY_TOKEN_EXPIRE_HOURS)
    return timedelta(minutes=settings.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES)


def create_token(
    subject: str,
    kind: TokenKind,
    extra: Optional[Dict[str, Any]] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Sign a token of the given kind for ``subject`` (a user id)."""
    now = clock.utcnow()
    expire = now + (expires_delta if expires_delta is not None else _lifetime_for(kind))
    to_encode = dict(extra or {})
    to_encode.update(
        {
            "sub": str(subject),
            "type": kind.value,
            "iat": int(now.timestamp()),
            "exp": int(expire.timestamp()),
            # Keeps two tokens minted in the same second distinct
            "jti": secrets.token_hex(8),
        }
    )
    return jwt.encode(to_encode, _secret_for(kind), algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, kind: TokenKind) -> dict:
    """Verify ``token`` as ``kind`` and return its claims.

    Expiry is judged first so that an expired token is reported as expired
    even when it is also damaged. Raises TokenError.
    """
    if not token or not isinstance(token, str):
        raise TokenError(TokenError.MALFORMED)
    try:
        unverified = jwt.get_unverified_claims(token)
    except JWTError:
        raise TokenError(TokenError.MALFORMED)

    now_ts = clock.utcnow().timestamp()
    exp = unverified.get("exp")
    if not isinstance(exp, (int, float)):
        raise TokenError(TokenError.MALFORMED)
    if now_ts >= exp:
        raise TokenError(TokenError.EXPIRED)
    if unverified.get("type") != kind.value:
        raise TokenError(TokenError.WRONG_KIND)

    try:
        payload = jwt.decode(
            token,
            _secret_for(kind),
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        raise TokenError(TokenError.MALFORMED)

    iat = payload.get("iat")
    if isinstance(iat, (int, float)) and iat > now_ts + settings.TOKEN_CLOCK_SKEW_SECONDS:
        raise TokenError(TokenError.MALFORMED, "Token issued in the future")
    if not payload.get("sub"):
        raise TokenError(TokenError.MALFORMED)
    return payload


# ------------------------ Access / refresh ------------------------


def issue_pair(user: User) -> TokenPair:
    """Mint an access + refresh pair. Callers store the refresh token."""
    claims = {"role": user.role.value if hasattr(user.role, "value") else user.role}
    return TokenPair(
        access_token=create_token(str(user.id), TokenKind.ACCESS, extra=claims),
        refresh_token=create_token(str(user.id), TokenKind.REFRESH),
    )


def verify_access(token: str) -> AccessClaims:
    payload = decode_token(token, TokenKind.ACCESS)
    return AccessClaims(user_id=payload["sub"], role=payload.get("role", ""))


async def rotate_refresh(presented: str) -> tuple[User, TokenPair]:
    """Exchange a refresh token for a new pair.

    The stored slot is swapped only if it still holds ``presented``; any
    mismatch means the token was already used or revoked, and the slot is
    cleared so the whole session family dies.
    """
    payload = decode_token(presented, TokenKind.REFRESH)
    try:
        user = await User.get(OID(payload["sub"]))
    except Exception:
        user = None
    if not user or not user.is_active:
        raise TokenError(TokenError.REVOKED)

    pair = issue_pair(user)
    swapped = await credential_store.swap_refresh_token(user.id, presented, pair.refresh_token)
    if not swapped:
        reason = TokenError.REUSED if user.refresh_token else TokenError.REVOKED
        await credential_store.set_refresh_token(user.id, None)
        audit("refresh_token_rejected", user_id=user.id, reason=reason)
        raise TokenError(reason)
    user.refresh_token = pair.refresh_token
    return user, pair


# ------------------------ Action tokens ------------------------


def create_email_verification_token(user: User) -> str:
    return create_token(str(user.id), TokenKind.EMAIL_VERIFY, extra={"email": user.email})


def verify_email_verification_token(token: str) -> dict:
    return decode_token(token, TokenKind.EMAIL_VERIFY)


def create_password_reset_token(user: User) -> str:
    return create_token(
        str(user.id),
        TokenKind.PASSWORD_RESET,
        extra={"email": user.email, "pwd": credential_store.password_fingerprint(user)},
    )


def verify_password_reset_token(token: str) -> dict:
    return decode_token(token, TokenKind.PASSWORD_RESET)
