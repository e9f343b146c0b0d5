"""
Schemas para Appointment: turnos médicos.
"""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from turnos.models.appointment import AppointmentState


class AppointmentCreate(BaseModel):
    patient_id: int = Field(..., gt=0)
    doctor_id: int = Field(..., gt=0)
    scheduled_at: datetime
    reason: str | None = Field(None, max_length=500)

    @field_validator("scheduled_at")
    @classmethod
    def must_be_timezone_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("scheduled_at debe incluir zona horaria")
        return v


class ReassignDoctorRequest(BaseModel):
    new_doctor_id: int = Field(..., gt=0)
    expected_version: int | None = None


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    scheduled_at: datetime
    reason: str = ""
    state: AppointmentState
    notes: str | None = None
    cancelled_at: datetime | None = None
    expires_at: datetime | None = None
    version: int

    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Respuesta paginada de listado de turnos."""
    items: list[AppointmentResponse]
    total: int
    page: int
    size: int
    pages: int
