import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from beanie import PydanticObjectId as OID
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from telecare.config import get_settings
from telecare.constants import ACCESS_COOKIE_NAME, Role
from telecare.errors import (
    AccountInactive,
    ExpiredToken,
    Forbidden,
    TokenError,
    Unauthorized,
    WeakPassword,
)
from telecare.models.user import User
from telecare.services import token_service

settings = get_settings()

# Bearer header is optional: the access token may also arrive as a cookie
bearer_scheme = HTTPBearer(auto_error=False)

# ------------------------ Password hashing helpers ------------------------

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)

PASSWORD_SPECIALS = "@$!%*?&"
_PASSWORD_RULES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"\d"),
    re.compile(f"[{re.escape(PASSWORD_SPECIALS)}]"),
)


def is_strong_password(password: str | None) -> bool:
    """>= 8 chars with upper, lower, digit and one of @$!%*?&."""
    if not password or len(password) < 8:
        return False
    return all(rule.search(password) for rule in _PASSWORD_RULES)


def ensure_strong_password(password: str | None) -> None:
    if not is_strong_password(password):
        raise WeakPassword()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str | None, hashed_password: str | None) -> bool:
    """Returns False when either side is missing."""
    if not plain_password or not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unrecognised or corrupt hash
        return False


# ------------------------ Authentication ------------------------


@dataclass
class Principal:
    user_id: str
    role: str


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE_NAME)
    if token:
        return token
    if credentials and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    return None


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """Resolve the caller from the access cookie or ``Authorization: Bearer``.

    Raises 401 for missing/invalid/expired tokens or unknown users and 403 for
    deactivated accounts. Attaches a Principal to ``request.state``.
    """
    token = _extract_token(request, credentials)
    if not token:
        raise Unauthorized("Authentication required")
    try:
        claims = token_service.verify_access(token)
    except TokenError as exc:
        if exc.reason == TokenError.EXPIRED:
            raise ExpiredToken("Access token has expired")
        raise Unauthorized("Invalid access token")

    try:
        user = await User.get(OID(claims.user_id))
    except Exception:
        user = None
    if not user:
        raise Unauthorized("User no longer exists")
    if not user.is_active:
        raise AccountInactive()

    request.state.principal = Principal(user_id=str(user.id), role=user.role.value)
    return user


# ------------------------ RBAC helpers ------------------------


def require_roles(allowed: Iterable[Role]) -> Callable:
    """FastAPI dependency factory to enforce role-based access.
    Usage: Depends(require_roles([Role.ADMIN, Role.DOCTOR]))
    """
    allowed = set(allowed)

    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise Forbidden()
        return current_user

    return checker
