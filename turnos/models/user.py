"""
Modelo User: Identidad base referenciada por Doctor y Patient.
"""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from turnos.database import Base, enum_values


class UserRole(str, enum.Enum):
    """Roles del sistema."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class RecordState(str, enum.Enum):
    """Activación/desactivación lógica (soft-delete)."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ── Identidad ────────────────────────────────────
    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    national_id: Mapped[str | None] = mapped_column(
        String(32), comment="DNI u otro documento de identidad"
    )
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=enum_values),
        nullable=False,
    )

    # ── Estado ───────────────────────────────────────
    state: Mapped[RecordState] = mapped_column(
        Enum(RecordState, name="record_state", values_callable=enum_values),
        nullable=False,
        default=RecordState.ACTIVE,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_active(self) -> bool:
        return self.state == RecordState.ACTIVE

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role.value})>"
