from datetime import timedelta
from typing import Optional

from telecare.constants import Role
from telecare.errors import BadRole, InvalidField, MissingField
from telecare.models import Doctor, Patient, User
from telecare.services import credential_store
from telecare.services.auth_service import create_doctor_record, create_patient_record
from telecare.services.profile_service import load_user
from telecare.utils import clock
from telecare.utils.logger import audit


async def _group_count(field: str, match: Optional[dict] = None) -> dict:
    pipeline = []
    if match:
        pipeline.append({"$match": match})
    pipeline.append({"$group": {"_id": f"${field}", "count": {"$sum": 1}}})
    rows = await User.aggregate(pipeline).to_list()
    return {str(getattr(r["_id"], "value", r["_id"])): r["count"] for r in rows if r["_id"] is not None}


async def user_statistics() -> dict:
    """Counts for the admin dashboard."""
    now = clock.utcnow()
    total = await User.find({}).count()
    active = await User.find({"is_active": True}).count()
    verified = await User.find({"email_verified": True}).count()
    recent = await User.find({"created_at": {"$gte": now - timedelta(days=30)}}).count()
    logged_in_recently = await User.find({"last_login": {"$gte": now - timedelta(days=7)}}).count()
    return {
        "totalUsers": total,
        "activeUsers": active,
        "inactiveUsers": total - active,
        "verifiedUsers": verified,
        "unverifiedUsers": total - verified,
        "byRole": await _group_count("role"),
        "activeByRole": await _group_count("role", {"is_active": True}),
        "registeredLast30Days": recent,
        "activeLast7Days": logged_in_recently,
    }


async def update_role(user_id: str, role_value: Optional[str], admin: User) -> User:
    if not role_value:
        raise MissingField("Role is required")
    try:
        role = Role(role_value.strip().lower())
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise BadRole(f"Invalid role. Allowed roles: {allowed}")

    user = await load_user(user_id)
    previous = user.role
    await credential_store.update_fields(user, role=role)
    if role == Role.PATIENT and not user.patient_id:
        if not await Patient.find_one(Patient.user_id == user.id):
            await create_patient_record(user)
    elif role == Role.DOCTOR and not user.doctor_id:
        if not await Doctor.find_one(Doctor.user_id == user.id):
            await create_doctor_record(user)
    audit("role_changed", user_id=user.id, by=admin.id, previous=previous.value, role=role.value)
    return user


async def deactivate_user(user_id: str, reason: Optional[str], admin: User) -> User:
    user = await load_user(user_id)
    if user.id == admin.id:
        raise InvalidField("You cannot deactivate your own account")
    await credential_store.deactivate(user, (reason or "Deactivated by administrator").strip(), by=admin.id)
    return user
