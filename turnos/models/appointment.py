"""
Modelo Appointment: Turnos médicos con state machine de estados.

Estados válidos y transiciones:
    pending → confirmed → completed
    pending → cancelled
    confirmed → cancelled

Un doctor no puede tener dos turnos no cancelados en el mismo horario:
lo garantiza el índice único parcial uq_appointments_doctor_slot_active.
"""

import enum
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from turnos.database import Base, enum_values


class AppointmentState(str, enum.Enum):
    """Estados de un turno."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ── Transiciones válidas de la state machine ─────────
VALID_TRANSITIONS: dict[AppointmentState, list[AppointmentState]] = {
    AppointmentState.PENDING: [
        AppointmentState.CONFIRMED,
        AppointmentState.CANCELLED,
    ],
    AppointmentState.CONFIRMED: [
        AppointmentState.COMPLETED,
        AppointmentState.CANCELLED,
    ],
    # Estados terminales: no tienen transiciones
    AppointmentState.COMPLETED: [],
    AppointmentState.CANCELLED: [],
}

# Estados que ocupan el horario del doctor
SLOT_HOLDING_STATES = (
    AppointmentState.PENDING,
    AppointmentState.CONFIRMED,
    AppointmentState.COMPLETED,
)

# Estados que cuentan para next_available_slot
UPCOMING_STATES = (AppointmentState.PENDING, AppointmentState.CONFIRMED)

SLOT_INDEX_NAME = "uq_appointments_doctor_slot_active"


def is_valid_transition(current: AppointmentState, new: AppointmentState) -> bool:
    """Verifica si una transición de estado es válida."""
    return new in VALID_TRANSITIONS.get(current, [])


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id"), nullable=False
    )
    doctor_id: Mapped[int] = mapped_column(
        ForeignKey("doctors.id"), nullable=False
    )

    # ── Datos del turno ──────────────────────────────
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(500), nullable=False, default="", server_default="")
    state: Mapped[AppointmentState] = mapped_column(
        Enum(AppointmentState, name="appointment_state", values_callable=enum_values),
        nullable=False,
        default=AppointmentState.PENDING,
    )
    notes: Mapped[str | None] = mapped_column(Text)

    # ── Cancelación / expiración ─────────────────────
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        comment="Vencimiento de un turno pendiente sin confirmar"
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Timestamps ───────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # ── Índices para consultas frecuentes ────────────
    __table_args__ = (
        Index(
            SLOT_INDEX_NAME,
            "doctor_id",
            "scheduled_at",
            unique=True,
            postgresql_where=text("state <> 'cancelled'"),
            sqlite_where=text("state <> 'cancelled'"),
        ),
        Index("idx_appointment_doctor_date", "doctor_id", "scheduled_at"),
        Index("idx_appointment_patient", "patient_id", "scheduled_at"),
        Index("idx_appointment_state", "state"),
        Index("idx_appointment_expires", "expires_at"),
    )
    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    def __repr__(self) -> str:
        return f"<Appointment {self.id} [{self.state.value}] {self.scheduled_at}>"
