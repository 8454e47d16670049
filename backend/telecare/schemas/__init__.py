from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from telecare.constants import Priority, Sensitivity
from telecare.utils.clock import as_utc


class CamelModel(BaseModel):
    """API bodies use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------------------- Auth Schemas --------------------


class RegisterIn(CamelModel):
    # Required fields are optional here so that blanks produce MissingField
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    # Honoured only when role=doctor
    specialization: Optional[str] = None
    medical_license: Optional[str] = None
    qualification: Optional[str] = None
    department: Optional[str] = None
    experience: Optional[int] = None
    consultation_fee: Optional[float] = None


class LoginIn(CamelModel):
    email: Optional[str] = None
    phone_number: Optional[str] = None
    password: Optional[str] = None


class RefreshIn(CamelModel):
    refresh_token: Optional[str] = None


class ChangePasswordIn(CamelModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


class ForgotPasswordIn(CamelModel):
    email: Optional[str] = None


class ResetPasswordIn(CamelModel):
    token: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None


class VerifyEmailIn(CamelModel):
    token: Optional[str] = None


class TokenOut(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


# -------------------- Profile Schemas --------------------


class AddressIn(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class UpdateProfileIn(CamelModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    address: Optional[AddressIn] = None


class AvatarIn(CamelModel):
    avatar_url: Optional[str] = None


class EmergencyContactIn(CamelModel):
    name: str
    relationship: Optional[str] = None
    phone_number: Optional[str] = None


class CompleteProfileIn(UpdateProfileIn):
    # patient
    allergies: Optional[List[str] | str] = None
    emergency_contact: Optional[EmergencyContactIn] = None
    medical_history: Optional[List[str]] = None
    current_medications: Optional[List[str]] = None
    # doctor
    medical_license: Optional[str] = None
    specialization: Optional[List[str] | str] = None
    qualification: Optional[List[str] | str] = None
    department: Optional[str] = None
    experience: Optional[int] = None
    consultation_fee: Optional[float] = None
    bio: Optional[str] = None


class DeleteAccountIn(CamelModel):
    password: Optional[str] = None
    reason: Optional[str] = None


class RoleUpdateIn(CamelModel):
    role: Optional[str] = None


class DeactivateIn(CamelModel):
    reason: Optional[str] = None


class AddressOut(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class UserOut(CamelModel):
    id: str
    first_name: str
    last_name: str
    full_name: str
    email: str
    phone_number: Optional[str] = None
    role: str
    is_active: bool
    email_verified: bool
    avatar_url: Optional[str] = None
    date_of_birth: Optional[datetime] = None
    gender: Optional[str] = None
    address: Optional[AddressOut] = None
    profile_completed: bool = False
    last_login: Optional[datetime] = None
    login_count: int = 0
    created_at: Optional[datetime] = None


class PatientProfileOut(CamelModel):
    id: str
    medical_record_number: str
    allergies: List[Dict[str, Any]] = []
    emergency_contacts: List[Dict[str, Any]] = []
    medical_history: List[str] = []
    current_medications: List[str] = []


class DoctorProfileOut(CamelModel):
    id: str
    medical_license_number: Optional[str] = None
    specializations: List[str] = []
    qualifications: List[str] = []
    department: Optional[str] = None
    experience_years: Optional[int] = None
    consultation_fee: Optional[float] = None
    bio: Optional[str] = None
    is_verified: bool = False


class ProfileOut(UserOut):
    patient_profile: Optional[PatientProfileOut] = None
    doctor_profile: Optional[DoctorProfileOut] = None


class PublicProfileOut(CamelModel):
    id: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    avatar_url: Optional[str] = None
    doctor_profile: Optional[DoctorProfileOut] = None


# -------------------- Notification Schemas --------------------


class ChannelDeliveryOut(CamelModel):
    state: str
    sent: bool
    delivered: bool
    opened: bool = False
    error: Optional[str] = None


class RelatedEntityIn(CamelModel):
    entity_type: str
    entity_id: str


class NotificationOut(CamelModel):
    id: str
    title: str
    message: str
    short_message: Optional[str] = None
    category: str
    priority: str
    sensitivity: str
    channels: List[str]
    delivery_status: Dict[str, ChannelDeliveryOut]
    status: str
    is_read: bool
    read_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    failure_reason: Optional[str] = None
    related_entity: Optional[RelatedEntityIn] = None
    action_url: Optional[str] = None
    is_archived: bool = False
    created_at: Optional[datetime] = None


class QuietHoursIn(CamelModel):
    enabled: Optional[bool] = None
    start: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    timezone: Optional[str] = None


class NotificationPreferencesIn(CamelModel):
    channels: Optional[Dict[str, bool]] = None
    categories: Optional[Dict[str, Dict[str, bool]]] = None
    frequency: Optional[Literal["immediate", "daily", "weekly"]] = None
    quiet_hours: Optional[QuietHoursIn] = None


class ManualNotificationIn(CamelModel):
    recipient_ids: Optional[List[str]] = None
    recipient_type: Optional[str] = None  # a role name or "all"
    # Either title+message or a catalogue template (with variables)
    title: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=2000)
    template_id: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    category: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    sensitivity: Sensitivity = Sensitivity.NORMAL
    channels: List[str] = Field(default_factory=lambda: ["in-app"])
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    related_entity: Optional[RelatedEntityIn] = None
    action_url: Optional[str] = None


class NotificationTestIn(CamelModel):
    channel: str = "in-app"
    title: Optional[str] = None
    message: Optional[str] = None
    category: str = "test"


class DeviceTokenIn(CamelModel):
    token: str = Field(..., min_length=1)
    platform: Optional[Literal["ios", "android", "web"]] = None


# -------------------- Builders --------------------


def _iso(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value)


def dump(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def user_out(user, model=UserOut, **extra) -> BaseModel:
    return model(
        id=str(user.id),
        first_name=user.first_name,
        last_name=user.last_name,
        full_name=user.full_name,
        email=user.email,
        phone_number=user.phone,
        role=user.role.value,
        is_active=user.is_active,
        email_verified=user.email_verified,
        avatar_url=user.avatar_url,
        date_of_birth=_iso(user.date_of_birth),
        gender=user.gender,
        address=AddressOut(**user.address.model_dump()) if user.address else None,
        profile_completed=user.profile_completed,
        last_login=_iso(user.last_login),
        login_count=user.login_count,
        created_at=_iso(user.created_at),
        **extra,
    )


def patient_profile_out(patient) -> PatientProfileOut:
    return PatientProfileOut(
        id=str(patient.id),
        medical_record_number=patient.medical_record_number,
        allergies=[a.model_dump() for a in patient.allergies],
        emergency_contacts=[c.model_dump() for c in patient.emergency_contacts],
        medical_history=patient.medical_history,
        current_medications=patient.current_medications,
    )


def doctor_profile_out(doctor) -> DoctorProfileOut:
    return DoctorProfileOut(
        id=str(doctor.id),
        medical_license_number=doctor.medical_license_number,
        specializations=doctor.specializations,
        qualifications=doctor.qualifications,
        department=doctor.department,
        experience_years=doctor.experience_years,
        consultation_fee=doctor.consultation_fee,
        bio=doctor.bio,
        is_verified=doctor.is_verified,
    )


def public_profile_out(user, doctor=None) -> PublicProfileOut:
    return PublicProfileOut(
        id=str(user.id),
        first_name=user.first_name,
        last_name=user.last_name,
        full_name=user.full_name,
        role=user.role.value,
        avatar_url=user.avatar_url,
        doctor_profile=doctor_profile_out(doctor) if doctor else None,
    )


def notification_out(n) -> NotificationOut:
    delivery = {}
    for channel in ("email", "sms", "push", "in-app"):
        state = n.delivery_status.for_channel(channel)
        delivery[channel] = ChannelDeliveryOut(
            state=state.state.value,
            sent=state.sent,
            delivered=state.delivered,
            opened=state.opened,
            error=state.error,
        )
    return NotificationOut(
        id=str(n.id),
        title=n.title,
        message=n.message,
        short_message=n.short_message,
        category=n.category,
        priority=n.priority.value,
        sensitivity=n.sensitivity.value,
        channels=list(n.channels),
        delivery_status=delivery,
        status=n.status.value,
        is_read=n.is_read,
        read_at=_iso(n.read_at),
        scheduled_for=_iso(n.scheduled_for),
        sent_at=_iso(n.sent_at),
        expires_at=_iso(n.expires_at),
        retry_count=n.retry_count,
        max_retries=n.max_retries,
        failure_reason=n.failure_reason,
        related_entity=(
            RelatedEntityIn(entity_type=n.related.entity_type, entity_id=n.related.entity_id)
            if n.related
            else None
        ),
        action_url=n.action_url,
        is_archived=n.is_archived,
        created_at=_iso(n.created_at),
    )
