from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from datetime import datetime
from pydantic import Field
from pymongo import ASCENDING, IndexModel
from telecare.utils import clock


class Doctor(Document):
    """Practitioner details for users with role=doctor."""
    user_id: Indexed(OID, unique=True)
    medical_license_number: str | None = None  # unique when present
    specializations: list[str] = Field(default_factory=list)
    qualifications: list[str] = Field(default_factory=list)
    department: str | None = None
    experience_years: int | None = None
    consultation_fee: float | None = None
    bio: str | None = None
    is_verified: bool = False

    created_at: datetime = Field(default_factory=lambda: clock.utcnow())
    updated_at: datetime = Field(default_factory=lambda: clock.utcnow())

    class Settings:
        name = "doctors"
        keep_nulls = False
        indexes = [
            IndexModel([("medical_license_number", ASCENDING)], name="license_unique", unique=True, sparse=True),
        ]
