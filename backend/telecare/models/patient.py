from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from datetime import datetime
from pydantic import BaseModel, Field
from telecare.utils import clock


class Allergy(BaseModel):
    name: str
    severity: str = "mild"  # mild | moderate | severe
    is_active: bool = True


class EmergencyContact(BaseModel):
    name: str
    relationship: str | None = None
    phone: str | None = None
    is_primary: bool = True


class Patient(Document):
    """Patient record created at registration (role=patient)."""
    user_id: Indexed(OID, unique=True)
    medical_record_number: Indexed(str, unique=True)
    allergies: list[Allergy] = Field(default_factory=list)
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)
    medical_history: list[str] = Field(default_factory=list)
    current_medications: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=lambda: clock.utcnow())
    updated_at: datetime = Field(default_factory=lambda: clock.utcnow())

    class Settings:
        name = "patients"
