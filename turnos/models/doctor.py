"""
Modelo Doctor: Perfil profesional asociado a un User.
Los campos next_available_slot y last_consultation son derivados:
solo los actualiza el motor de turnos.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from turnos.database import Base, enum_values
from turnos.models.user import RecordState


class Doctor(Base):
    __tablename__ = "doctors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), unique=True, nullable=False
    )
    specialty_id: Mapped[int] = mapped_column(
        ForeignKey("specialties.id"), nullable=False, index=True
    )

    # ── Datos profesionales ──────────────────────────
    license_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False,
        comment="Matrícula profesional"
    )
    consult_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    availability: Mapped[dict | None] = mapped_column(
        JSON, comment="Descriptor opaco de agenda semanal"
    )

    # ── Estado ───────────────────────────────────────
    state: Mapped[RecordState] = mapped_column(
        Enum(RecordState, name="record_state", values_callable=enum_values),
        nullable=False,
        default=RecordState.ACTIVE,
    )

    # ── Derivados (motor de turnos) ──────────────────
    next_available_slot: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        comment="Turno pendiente/confirmado más temprano del doctor"
    )
    last_consultation: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # ── Relaciones ───────────────────────────────────
    user: Mapped["User"] = relationship("User", lazy="selectin")  # noqa: F821
    specialty: Mapped["Specialty"] = relationship("Specialty", lazy="selectin")  # noqa: F821

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def is_active(self) -> bool:
        return self.state == RecordState.ACTIVE

    def __repr__(self) -> str:
        return f"<Doctor {self.id} [{self.license_number}]>"
