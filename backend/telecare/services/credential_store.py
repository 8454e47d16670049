"""Persistent user credentials and login bookkeeping.

All counter and refresh-slot changes go straight to the collection so that
concurrent requests cannot lose updates.
"""
import hashlib
import math
from datetime import timedelta

from beanie import PydanticObjectId as OID
from beanie.operators import Set, Unset
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from telecare import security
from telecare.config import get_settings
from telecare.constants import Role
from telecare.errors import Duplicate
from telecare.models.user import User
from telecare.utils import clock
from telecare.utils.logger import audit, get_logger, redact_email

settings = get_settings()
logger = get_logger("credentials")


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def find_by_email(email: str) -> User | None:
    return await User.find_one(User.email == normalize_email(email))


async def find_by_phone(phone: str) -> User | None:
    return await User.find_one(User.phone == phone.strip())


async def find_by_login(identifier: str) -> User | None:
    """Look a user up by email or phone number."""
    identifier = identifier.strip()
    return await User.find_one(
        {"$or": [{"email": identifier.lower()}, {"phone": identifier}]}
    )


async def create_user(
    *,
    first_name: str,
    last_name: str,
    email: str,
    password: str,
    role: Role = Role.PATIENT,
    phone: str | None = None,
    email_verified: bool = False,
    **profile,
) -> User:
    """Validate the password, hash it and insert the user.

    Raises WeakPassword, or Duplicate when email/phone is taken.
    """
    security.ensure_strong_password(password)
    email = normalize_email(email)
    phone = phone.strip() if phone else None

    if await find_by_email(email):
        raise Duplicate("User with this email already exists")
    if phone and await find_by_phone(phone):
        raise Duplicate("User with this phone number already exists")

    now = clock.utcnow()
    user = User(
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        email=email,
        phone=phone,
        password_hash=security.hash_password(password),
        role=role,
        email_verified=email_verified,
        email_verified_at=now if email_verified else None,
        last_password_change=now,
        **profile,
    )
    try:
        await user.insert()
    except DuplicateKeyError:
        # Lost a race with a concurrent registration
        raise Duplicate("User with this email or phone number already exists")
    audit("user_created", user_id=user.id, email=redact_email(email), role=user.role.value)
    return user


def check_password(user: User, candidate: str | None) -> bool:
    return security.verify_password(candidate, user.password_hash)


# ------------------------ Lockout ------------------------


def is_locked(user: User) -> bool:
    lock_until = clock.as_utc(user.lock_until)
    return lock_until is not None and lock_until > clock.utcnow()


def lock_minutes_remaining(user: User) -> int:
    lock_until = clock.as_utc(user.lock_until)
    if lock_until is None:
        return 0
    seconds = (lock_until - clock.utcnow()).total_seconds()
    return max(0, math.ceil(seconds / 60))


async def clear_expired_lock(user: User) -> None:
    """A lock that has run out starts the failure count over."""
    if user.lock_until is None or is_locked(user):
        return
    await User.get_motor_collection().update_one(
        {"_id": user.id},
        {"$set": {"lock_until": None, "failed_login_attempts": 0}},
    )
    user.lock_until = None
    user.failed_login_attempts = 0


async def record_failed_login(user: User) -> User:
    """Atomically bump the failure counter; lock the account at the threshold."""
    collection = User.get_motor_collection()
    doc = await collection.find_one_and_update(
        {"_id": user.id},
        {"$inc": {"failed_login_attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    attempts = doc["failed_login_attempts"] if doc else user.failed_login_attempts + 1
    user.failed_login_attempts = attempts
    audit("login_failed", user_id=user.id, attempts=attempts)

    if attempts >= settings.MAX_FAILED_LOGINS and not is_locked(user):
        lock_until = clock.utcnow() + timedelta(minutes=settings.ACCOUNT_LOCK_MINUTES)
        await collection.update_one({"_id": user.id}, {"$set": {"lock_until": lock_until}})
        user.lock_until = lock_until
        audit("account_locked", user_id=user.id, minutes=settings.ACCOUNT_LOCK_MINUTES)
    return user


async def record_successful_login(user: User) -> None:
    now = clock.utcnow()
    await User.get_motor_collection().update_one(
        {"_id": user.id},
        {
            "$set": {"failed_login_attempts": 0, "lock_until": None, "last_login": now},
            "$inc": {"login_count": 1},
        },
    )
    user.failed_login_attempts = 0
    user.lock_until = None
    user.last_login = now
    user.login_count += 1


# ------------------------ Refresh slot ------------------------


async def set_refresh_token(user_id: OID, token: str | None) -> None:
    await User.get_motor_collection().update_one(
        {"_id": user_id}, {"$set": {"refresh_token": token}}
    )


async def swap_refresh_token(user_id: OID, expected: str, new: str) -> bool:
    """Replace the slot only if it still holds ``expected``."""
    result = await User.get_motor_collection().update_one(
        {"_id": user_id, "refresh_token": expected},
        {"$set": {"refresh_token": new}},
    )
    return result.modified_count == 1


# ------------------------ Account state ------------------------


async def update_fields(user: User, **fields) -> None:
    """Write only ``fields`` and reload ``user`` from the stored document.

    Other attributes of ``user`` are never written back, so a copy loaded
    earlier in the request cannot restore an old refresh slot or lock state.
    ``None`` removes the key.
    """
    fields.setdefault("updated_at", clock.utcnow())
    values = {name: value for name, value in fields.items() if value is not None}
    removed = {name: "" for name, value in fields.items() if value is None}
    operations = [Set(values)]
    if removed:
        operations.append(Unset(removed))
    await user.update(*operations)


async def set_password(user: User, new_password: str, *, clear_sessions: bool = True) -> None:
    """Validate and store a new password. Raises WeakPassword."""
    security.ensure_strong_password(new_password)
    fields = {
        "password_hash": security.hash_password(new_password),
        "last_password_change": clock.utcnow(),
        "failed_login_attempts": 0,
        "lock_until": None,
    }
    if clear_sessions:
        fields["refresh_token"] = None
    await update_fields(user, **fields)
    audit("password_changed", user_id=user.id, sessions_cleared=clear_sessions)


async def mark_email_verified(user: User) -> bool:
    """Returns False if the address was already verified."""
    if user.email_verified:
        return False
    await update_fields(user, email_verified=True, email_verified_at=clock.utcnow())
    audit("email_verified", user_id=user.id)
    return True


async def deactivate(user: User, reason: str, by: OID | None = None) -> None:
    """Soft delete: the record stays, sign-in and sessions stop."""
    await update_fields(
        user,
        is_active=False,
        deletion_reason=reason,
        deleted_at=clock.utcnow(),
        deleted_by=by,
        refresh_token=None,
    )
    audit("account_deactivated", user_id=user.id, by=by)


def password_fingerprint(user: User) -> str:
    """Short digest of the current hash; changes whenever the password does."""
    return hashlib.sha256((user.password_hash or "").encode()).hexdigest()[:16]
