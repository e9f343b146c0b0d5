from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from turnos.models.user import RecordState
from turnos.schemas.user import UserEmbed, UserIdentity


class DoctorCreate(UserIdentity):
    specialty_id: int = Field(..., gt=0)
    license_number: str = Field(..., min_length=3, max_length=50)
    consult_fee: Decimal = Field(Decimal("0.00"), ge=0, max_digits=10, decimal_places=2)
    phone: str = Field(..., min_length=6, max_length=20)
    availability: dict | None = None


class DoctorStateChange(BaseModel):
    state: RecordState


class DoctorResponse(BaseModel):
    id: int
    user_id: int
    specialty_id: int
    license_number: str
    consult_fee: Decimal
    phone: str
    state: RecordState
    availability: dict | None = None
    next_available_slot: datetime | None = None
    last_consultation: datetime | None = None
    version: int

    user: UserEmbed | None = None

    model_config = {"from_attributes": True}
