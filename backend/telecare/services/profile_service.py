from typing import Optional

from beanie import PydanticObjectId as OID

from telecare.constants import Gender, Role
from telecare.errors import BadCredentials, Duplicate, InvalidField, MissingField, NotFound
from telecare.models import Address, Allergy, Doctor, EmergencyContact, Patient, User
from telecare.schemas import (
    CompleteProfileIn,
    ProfileOut,
    UpdateProfileIn,
    doctor_profile_out,
    patient_profile_out,
    public_profile_out,
    user_out,
)
from telecare.services import credential_store
from telecare.services.auth_service import (
    create_doctor_record,
    create_patient_record,
    ensure_license_available,
    to_datetime,
)
from telecare.utils import clock
from telecare.utils.logger import audit, get_logger

logger = get_logger("profile_service")


def _as_list(value) -> list[str]:
    """Accept either a list or a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [v.strip() for v in value if v and v.strip()]


async def load_user(user_id: str) -> User:
    try:
        user = await User.get(OID(user_id))
    except Exception:
        user = None
    if not user:
        raise NotFound("User not found")
    return user


async def get_profile(user: User) -> ProfileOut:
    """Own profile with the role record populated."""
    patient = await Patient.get(user.patient_id) if user.patient_id else None
    doctor = await Doctor.get(user.doctor_id) if user.doctor_id else None
    return user_out(
        user,
        model=ProfileOut,
        patient_profile=patient_profile_out(patient) if patient else None,
        doctor_profile=doctor_profile_out(doctor) if doctor else None,
    )


def _common_changes(user: User, payload: UpdateProfileIn) -> dict:
    """Fields of ``payload`` that change the user record, validated."""
    changes: dict = {}
    if payload.first_name is not None:
        if not payload.first_name.strip():
            raise MissingField("First name cannot be empty")
        changes["first_name"] = payload.first_name.strip()
    if payload.last_name is not None:
        if not payload.last_name.strip():
            raise MissingField("Last name cannot be empty")
        changes["last_name"] = payload.last_name.strip()
    if payload.phone_number is not None:
        changes["phone"] = payload.phone_number.strip() or None
    if payload.date_of_birth is not None:
        changes["date_of_birth"] = to_datetime(payload.date_of_birth)
    if payload.gender is not None:
        if payload.gender not in {g.value for g in Gender}:
            raise InvalidField("Invalid gender")
        changes["gender"] = payload.gender
    if payload.address is not None:
        current = user.address.model_dump() if user.address else {}
        current.update(payload.address.model_dump(exclude_none=True))
        changes["address"] = Address(**current)
    return changes


async def _ensure_phone_available(user: User, changes: dict) -> None:
    phone = changes.get("phone")
    if phone and phone != user.phone:
        existing = await credential_store.find_by_phone(phone)
        if existing and existing.id != user.id:
            raise Duplicate("Phone number is already in use")


async def update_profile(user: User, payload: UpdateProfileIn) -> ProfileOut:
    changes = _common_changes(user, payload)
    await _ensure_phone_available(user, changes)
    if changes:
        await credential_store.update_fields(user, **changes)
    audit("profile_updated", user_id=user.id)
    return await get_profile(user)


async def update_avatar(user: User, avatar_url: Optional[str]) -> ProfileOut:
    if not avatar_url or not avatar_url.strip():
        raise MissingField("avatarUrl is required")
    if not avatar_url.startswith(("http://", "https://")):
        raise InvalidField("avatarUrl must be an http(s) URL")
    await credential_store.update_fields(user, avatar_url=avatar_url.strip())
    return await get_profile(user)


async def _complete_patient(user: User, payload: CompleteProfileIn) -> None:
    patient = await Patient.get(user.patient_id) if user.patient_id else None
    if patient is None:
        patient = await create_patient_record(user)
    if payload.allergies is not None:
        patient.allergies = [Allergy(name=name) for name in _as_list(payload.allergies)]
    if payload.emergency_contact is not None:
        contact = EmergencyContact(
            name=payload.emergency_contact.name,
            relationship=payload.emergency_contact.relationship,
            phone=payload.emergency_contact.phone_number,
        )
        others = [c.model_copy(update={"is_primary": False}) for c in patient.emergency_contacts if c.name != contact.name]
        patient.emergency_contacts = [contact] + others
    if payload.medical_history is not None:
        patient.medical_history = _as_list(payload.medical_history)
    if payload.current_medications is not None:
        patient.current_medications = _as_list(payload.current_medications)
    patient.updated_at = clock.utcnow()
    await patient.save()


async def _complete_doctor(user: User, payload: CompleteProfileIn) -> None:
    doctor = await Doctor.get(user.doctor_id) if user.doctor_id else None
    if doctor is None:
        doctor = await create_doctor_record(user)
    if payload.medical_license is not None:
        await ensure_license_available(payload.medical_license, exclude_user=user.id)
        doctor.medical_license_number = payload.medical_license.strip() or None
    if payload.specialization is not None:
        doctor.specializations = _as_list(payload.specialization)
    if payload.qualification is not None:
        doctor.qualifications = _as_list(payload.qualification)
    if payload.department is not None:
        doctor.department = payload.department
    if payload.experience is not None:
        doctor.experience_years = payload.experience
    if payload.consultation_fee is not None:
        doctor.consultation_fee = payload.consultation_fee
    if payload.bio is not None:
        doctor.bio = payload.bio
    doctor.updated_at = clock.utcnow()
    await doctor.save()


async def complete_profile(user: User, payload: CompleteProfileIn) -> ProfileOut:
    """Fill in the role record, creating it on first use."""
    changes = _common_changes(user, payload)
    await _ensure_phone_available(user, changes)
    if user.role == Role.PATIENT:
        await _complete_patient(user, payload)
    elif user.role == Role.DOCTOR:
        await _complete_doctor(user, payload)
    await credential_store.update_fields(user, profile_completed=True, **changes)
    audit("profile_completed", user_id=user.id, role=user.role.value)
    return await get_profile(user)


async def delete_account(user: User, password: Optional[str], reason: Optional[str]) -> None:
    if not password or not reason or not reason.strip():
        raise MissingField("Password and reason are required to delete the account")
    if not credential_store.check_password(user, password):
        raise BadCredentials("Password is incorrect")
    await credential_store.deactivate(user, reason.strip(), by=user.id)


async def public_profile(user_id: str):
    user = await load_user(user_id)
    if not user.is_active:
        raise NotFound("User not found")
    doctor = await Doctor.get(user.doctor_id) if user.doctor_id else None
    return public_profile_out(user, doctor)


async def list_doctors(
    *,
    specialization: Optional[str] = None,
    department: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
):
    """Active doctors, optionally filtered on their practitioner record."""
    query: dict = {}
    if specialization:
        query["specializations"] = specialization
    if department:
        query["department"] = department
    doctors = await Doctor.find(query).to_list()
    by_user = {d.user_id: d for d in doctors}
    users = await User.find(
        {"_id": {"$in": list(by_user.keys())}, "role": Role.DOCTOR.value, "is_active": True}
    ).sort("+last_name").to_list()

    total = len(users)
    start = (page - 1) * limit
    items = [public_profile_out(u, by_user.get(u.id)) for u in users[start:start + limit]]
    return items, total
