from datetime import date, datetime

from pydantic import BaseModel, Field

from turnos.models.patient import BloodType
from turnos.schemas.user import UserEmbed, UserIdentity


class PatientCreate(UserIdentity):
    phone: str | None = Field(None, max_length=20)
    birth_date: date | None = None
    blood_type: BloodType | None = None
    allergies: str | None = None
    chronic_conditions: str | None = None
    medications: str | None = None
    emergency_contact: str | None = Field(None, max_length=200)
    emergency_phone: str | None = Field(None, max_length=20)
    federated_uid: str | None = Field(None, min_length=1, max_length=128)


class FederatedUidLink(BaseModel):
    federated_uid: str = Field(..., min_length=1, max_length=128)


class PatientResponse(BaseModel):
    id: int
    user_id: int
    phone: str | None = None
    birth_date: date | None = None
    blood_type: BloodType | None = None
    allergies: str | None = None
    chronic_conditions: str | None = None
    medications: str | None = None
    emergency_contact: str | None = None
    emergency_phone: str | None = None
    federated_uid: str | None = None
    appointment_count: int
    last_consultation: datetime | None = None
    version: int

    user: UserEmbed | None = None

    model_config = {"from_attributes": True}
