"""
Modelo AuditLog: Registro de auditoría INMUTABLE.
INSERT-only: la aplicación nunca actualiza ni borra filas.
event_id deduplica las re-entregas del worker de auditoría.
"""

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from turnos.database import Base, enum_values

# JSONB en PostgreSQL, JSON plano en SQLite (tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class AuditAction(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False,
        comment="UUID del evento capturado"
    )

    # ── Datos del evento ─────────────────────────────
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action", values_callable=enum_values),
        nullable=False,
    )
    record_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # ── Datos del cambio ─────────────────────────────
    before_state: Mapped[dict | None] = mapped_column(
        JSONType, comment="Snapshot del registro antes del cambio"
    )
    after_state: Mapped[dict | None] = mapped_column(
        JSONType, comment="Snapshot del registro después del cambio"
    )

    actor_user_id: Mapped[int | None] = mapped_column(Integer)

    # ── Timestamp inmutable ──────────────────────────
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_audit_table_record", "table_name", "record_id", "occurred_at"),
        Index("idx_audit_occurred_at", "occurred_at"),
        Index("idx_audit_actor", "actor_user_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action.value} on {self.table_name} {self.record_id}>"
