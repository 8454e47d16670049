"""Account lifecycle: register, login, sessions, passwords and email verification."""
import math
import re
import secrets
from datetime import datetime, time, timedelta

from fastapi import BackgroundTasks
from pydantic.alias_generators import to_camel
from pymongo.errors import DuplicateKeyError

from telecare.config import get_settings
from telecare.constants import PUBLIC_ROLES, Role
from telecare.errors import (
    AccountInactive,
    AccountLocked,
    AlreadyVerified,
    BadCredentials,
    BadRole,
    BadToken,
    Cooldown,
    Duplicate,
    EmailNotVerified,
    ExpiredToken,
    InvalidField,
    MismatchedConfirm,
    MissingField,
    NotFound,
    TokenError,
)
from telecare.models import Doctor, Patient, User
from telecare.schemas import ChangePasswordIn, LoginIn, RegisterIn, ResetPasswordIn
from telecare.security import ensure_strong_password
from telecare.services import account_emails, credential_store, token_service
from telecare.services.token_service import TokenPair
from telecare.utils import clock
from telecare.utils.logger import audit, get_logger, redact_email

settings = get_settings()
logger = get_logger("auth_service")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"


def require_fields(payload, fields) -> None:
    """Raise MissingField listing every blank field (camelCase names)."""
    missing = []
    for name in fields:
        value = getattr(payload, name, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(to_camel(name))
    if missing:
        raise MissingField(
            f"Missing required fields: {', '.join(missing)}",
            errors=[{"field": f, "message": f"{f} is required"} for f in missing],
        )


def to_datetime(value) -> datetime | None:
    """Store calendar dates as midnight UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=clock.utcnow().tzinfo)


def _cooldown_remaining(last_sent: datetime | None) -> int:
    last_sent = clock.as_utc(last_sent)
    if last_sent is None:
        return 0
    elapsed = (clock.utcnow() - last_sent).total_seconds()
    return max(0, math.ceil(settings.EMAIL_COOLDOWN_SECONDS - elapsed))


def _generate_mrn() -> str:
    return f"MRN-{clock.utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


async def create_patient_record(user: User) -> Patient:
    """Patient stub with a fresh medical record number."""
    for _ in range(5):
        patient = Patient(user_id=user.id, medical_record_number=_generate_mrn())
        try:
            await patient.insert()
        except DuplicateKeyError:
            continue
        await credential_store.update_fields(user, patient_id=patient.id)
        return patient
    raise RuntimeError("Could not allocate a unique medical record number")


async def ensure_license_available(license_number: str | None, exclude_user=None) -> None:
    if not license_number:
        return
    existing = await Doctor.find_one(Doctor.medical_license_number == license_number)
    if existing and existing.user_id != exclude_user:
        raise Duplicate("Doctor with this medical license already exists")


async def create_doctor_record(user: User, payload: RegisterIn | None = None) -> Doctor:
    doctor = Doctor(user_id=user.id)
    if payload is not None:
        doctor.medical_license_number = payload.medical_license or None
        doctor.specializations = [payload.specialization] if payload.specialization else []
        doctor.qualifications = [payload.qualification] if payload.qualification else []
        doctor.department = payload.department
        doctor.experience_years = payload.experience
        doctor.consultation_fee = payload.consultation_fee
    try:
        await doctor.insert()
    except DuplicateKeyError:
        raise Duplicate("Doctor with this medical license already exists")
    await credential_store.update_fields(user, doctor_id=doctor.id)
    return doctor


# ------------------------ register / login ------------------------


async def register(payload: RegisterIn, background_tasks: BackgroundTasks) -> User:
    """Create an unverified account plus its role record and queue the emails.

    No session is issued here; the client logs in afterwards.
    """
    require_fields(payload, ("first_name", "last_name", "email", "password"))

    try:
        role = Role((payload.role or Role.PATIENT.value).strip().lower())
    except ValueError:
        role = None
    if role not in PUBLIC_ROLES:
        allowed = ", ".join(sorted(r.value for r in PUBLIC_ROLES))
        raise BadRole(f"Invalid role. Allowed roles: {allowed}")

    if not EMAIL_RE.match(payload.email.strip()):
        raise InvalidField("Please enter a valid email", errors=[{"field": "email", "message": "invalid"}])
    ensure_strong_password(payload.password)
    if role == Role.DOCTOR:
        await ensure_license_available(payload.medical_license)

    user = await credential_store.create_user(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        password=payload.password,
        role=role,
        phone=payload.phone_number,
        date_of_birth=to_datetime(payload.date_of_birth),
        gender=payload.gender,
    )
    try:
        if role == Role.PATIENT:
            await create_patient_record(user)
        elif role == Role.DOCTOR:
            await create_doctor_record(user, payload)
    except Exception:
        # Do not leave an account without its role record
        await user.delete()
        raise

    token = token_service.create_email_verification_token(user)
    await credential_store.update_fields(user, last_verification_email_sent=clock.utcnow())
    background_tasks.add_task(account_emails.send_verification_email, user, token)
    background_tasks.add_task(account_emails.send_welcome_email, user)
    audit("user_registered", user_id=user.id, email=redact_email(user.email), role=role.value)
    return user


async def login(payload: LoginIn) -> tuple[User, TokenPair]:
    identifier = (payload.email or payload.phone_number or "").strip()
    if not identifier or not payload.password:
        raise MissingField("Email or phone number and password are required")

    user = await credential_store.find_by_login(identifier)
    if not user:
        audit("login_unknown_identifier", identifier=redact_email(identifier) if "@" in identifier else "phone")
        if settings.STRICT_LOGIN_ERRORS:
            raise BadCredentials()
        raise NotFound("User not found")

    if not user.is_active:
        raise AccountInactive("Account is deactivated. Please contact support.")

    await credential_store.clear_expired_lock(user)
    if credential_store.is_locked(user):
        minutes = credential_store.lock_minutes_remaining(user)
        audit("login_blocked_locked", user_id=user.id, minutes=minutes)
        raise AccountLocked(
            "Account is temporarily locked due to too many failed login attempts. "
            f"Try again in {minutes} minutes."
        )

    if settings.REQUIRE_EMAIL_VERIFICATION and not user.email_verified:
        raise EmailNotVerified()

    if not credential_store.check_password(user, payload.password):
        await credential_store.record_failed_login(user)
        raise BadCredentials()

    await credential_store.record_successful_login(user)
    pair = token_service.issue_pair(user)
    await credential_store.set_refresh_token(user.id, pair.refresh_token)
    user.refresh_token = pair.refresh_token
    audit("login_succeeded", user_id=user.id, role=user.role.value)
    return user, pair


async def logout(user: User) -> None:
    await credential_store.set_refresh_token(user.id, None)
    audit("logout", user_id=user.id)


async def refresh(presented: str | None) -> tuple[User, TokenPair]:
    if not presented:
        raise MissingField("Refresh token is required")
    try:
        return await token_service.rotate_refresh(presented)
    except TokenError as exc:
        if exc.reason == TokenError.EXPIRED:
            raise ExpiredToken("Refresh token has expired")
        if exc.reason == TokenError.REUSED:
            raise BadToken("Refresh token reuse detected. Please log in again.")
        raise BadToken("Invalid refresh token")


# ------------------------ passwords ------------------------


async def change_password(user: User, payload: ChangePasswordIn) -> None:
    require_fields(payload, ("current_password", "new_password", "confirm_password"))
    if payload.new_password != payload.confirm_password:
        raise MismatchedConfirm("New password and confirmation do not match")
    ensure_strong_password(payload.new_password)
    if not credential_store.check_password(user, payload.current_password):
        audit("password_change_rejected", user_id=user.id)
        raise BadCredentials("Current password is incorrect")
    await credential_store.set_password(
        user,
        payload.new_password,
        clear_sessions=settings.INVALIDATE_SESSIONS_ON_PASSWORD_CHANGE,
    )


async def forgot_password(email: str | None, background_tasks: BackgroundTasks) -> str:
    """Always answers with the same message whether or not the email exists."""
    if not email or not email.strip():
        raise MissingField("Email is required")
    user = await credential_store.find_by_email(email)
    if not user or not user.is_active:
        audit("password_reset_unknown_email", email=redact_email(email.strip().lower()))
        return FORGOT_PASSWORD_MESSAGE

    remaining = _cooldown_remaining(user.last_password_reset_request)
    if remaining > 0:
        raise Cooldown(f"Please wait {remaining} seconds before requesting another reset email")

    await credential_store.update_fields(user, last_password_reset_request=clock.utcnow())
    token = token_service.create_password_reset_token(user)
    background_tasks.add_task(account_emails.send_password_reset_email, user, token)
    audit("password_reset_requested", user_id=user.id, email=redact_email(user.email))
    return FORGOT_PASSWORD_MESSAGE


async def _user_from_action_token(payload: dict) -> User:
    user = await credential_store.find_by_email(payload.get("email", "")) if payload.get("email") else None
    if not user or str(user.id) != payload.get("sub"):
        raise BadToken()
    return user


async def reset_password(payload: ResetPasswordIn) -> None:
    require_fields(payload, ("token", "password", "confirm_password"))
    if payload.password != payload.confirm_password:
        raise MismatchedConfirm()
    ensure_strong_password(payload.password)
    try:
        claims = token_service.verify_password_reset_token(payload.token)
    except TokenError as exc:
        if exc.reason == TokenError.EXPIRED:
            raise ExpiredToken("Password reset link has expired")
        raise BadToken("Invalid password reset link")

    user = await _user_from_action_token(claims)
    # A reset link stops working once the password has changed
    if claims.get("pwd") != credential_store.password_fingerprint(user):
        raise BadToken("Password reset link has already been used")
    await credential_store.set_password(user, payload.password, clear_sessions=True)
    audit("password_reset_completed", user_id=user.id)


# ------------------------ email verification ------------------------


async def verify_email(token: str | None) -> User:
    if not token:
        raise MissingField("Verification token is required")
    try:
        claims = token_service.verify_email_verification_token(token)
    except TokenError as exc:
        if exc.reason == TokenError.EXPIRED:
            raise ExpiredToken("Verification link has expired")
        raise BadToken("Invalid verification link")
    user = await _user_from_action_token(claims)
    await credential_store.mark_email_verified(user)
    return user


async def resend_verification(user: User, background_tasks: BackgroundTasks) -> None:
    if user.email_verified:
        raise AlreadyVerified()
    remaining = _cooldown_remaining(user.last_verification_email_sent)
    if remaining > 0:
        raise Cooldown(f"Please wait {remaining} seconds before requesting another verification email")
    await credential_store.update_fields(user, last_verification_email_sent=clock.utcnow())
    token = token_service.create_email_verification_token(user)
    background_tasks.add_task(account_emails.send_verification_email, user, token)
    audit("verification_resent", user_id=user.id, email=redact_email(user.email))


def session_max_age() -> int:
    """Cookie lifetime in seconds (both cookies)."""
    return int(timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS).total_seconds())
