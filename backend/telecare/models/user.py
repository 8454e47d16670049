from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime
from telecare.constants import Role
from telecare.utils import clock


def _default_channels() -> dict[str, bool]:
    return {"email": True, "sms": True, "push": True, "inApp": True}


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = "22:00"
    end: str = "07:00"
    timezone: str = "UTC"


class NotificationPreferences(BaseModel):
    """Per-user delivery preferences.

    ``channels`` are global switches; ``categories`` maps a channel name to
    ``{category: enabled}`` overrides. Missing keys mean enabled.
    """
    channels: dict[str, bool] = Field(default_factory=_default_channels)
    categories: dict[str, dict[str, bool]] = Field(default_factory=dict)
    frequency: str = "immediate"  # immediate | daily | weekly
    quiet_hours: QuietHours = Field(default_factory=QuietHours)


class User(Document):
    """Account holder for every role.

    Role-specific details live in ``patients`` / ``doctors`` and are linked
    through ``patient_id`` / ``doctor_id``.
    """

    first_name: str
    last_name: str
    email: Indexed(str, unique=True)  # stored lower-cased
    phone: str | None = None  # unique when present
    password_hash: str
    role: Role = Role.PATIENT

    is_active: bool = True
    email_verified: bool = False
    email_verified_at: datetime | None = None

    # Login bookkeeping
    failed_login_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    login_count: int = 0
    last_password_change: datetime | None = None

    # Single refresh token slot; rotated on every refresh
    refresh_token: str | None = None

    last_verification_email_sent: datetime | None = None
    last_password_reset_request: datetime | None = None

    # Profile
    avatar_url: str | None = None
    date_of_birth: datetime | None = None
    gender: str | None = None
    address: Address | None = None
    profile_completed: bool = False

    patient_id: OID | None = None
    doctor_id: OID | None = None

    notification_preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)

    deletion_reason: str | None = None
    deleted_at: datetime | None = None
    deleted_by: OID | None = None

    created_at: datetime = Field(default_factory=lambda: clock.utcnow())
    updated_at: datetime = Field(default_factory=lambda: clock.utcnow())

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    class Settings:
        name = "users"
        # Unset optional fields are left out so the sparse phone index skips them
        keep_nulls = False
        indexes = [
            IndexModel([("phone", ASCENDING)], name="phone_unique", unique=True, sparse=True),
            IndexModel([("role", ASCENDING), ("is_active", ASCENDING)], name="role_active"),
        ]
