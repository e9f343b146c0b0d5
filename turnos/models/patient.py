"""
Modelo Patient: Datos clínicos básicos asociados a un User.
"""

import enum
from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from turnos.database import Base, enum_values


class BloodType(str, enum.Enum):
    O_POS = "O+"
    O_NEG = "O-"
    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), unique=True, nullable=False
    )

    # ── Contacto ─────────────────────────────────────
    phone: Mapped[str | None] = mapped_column(String(20))
    birth_date: Mapped[date | None] = mapped_column(Date)
    emergency_contact: Mapped[str | None] = mapped_column(String(200))
    emergency_phone: Mapped[str | None] = mapped_column(String(20))

    # ── Datos clínicos ───────────────────────────────
    blood_type: Mapped[BloodType | None] = mapped_column(
        Enum(BloodType, name="blood_type", values_callable=enum_values)
    )
    allergies: Mapped[str | None] = mapped_column(Text)
    chronic_conditions: Mapped[str | None] = mapped_column(Text)
    medications: Mapped[str | None] = mapped_column(Text)

    # ── Login federado ───────────────────────────────
    federated_uid: Mapped[str | None] = mapped_column(
        String(128), unique=True,
        comment="UID del proveedor de identidad externo (único si existe)"
    )

    # ── Derivados (motor de turnos) ──────────────────
    appointment_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0,
        comment="Turnos no cancelados del paciente"
    )
    last_consultation: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship("User", lazy="selectin")  # noqa: F821

    __table_args__ = (
        CheckConstraint(
            "appointment_count >= 0", name="ck_patients_appointment_count_non_negative"
        ),
    )
    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    def __repr__(self) -> str:
        return f"<Patient {self.id} (user {self.user_id})>"
