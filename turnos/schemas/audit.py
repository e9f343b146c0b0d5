"""
Schemas de lectura del audit log.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from turnos.models.audit_log import AuditAction


class AuditLogResponse(BaseModel):
    id: int
    event_id: str
    table_name: str
    action: AuditAction
    record_id: int
    before_state: dict | None = None
    after_state: dict | None = None
    actor_user_id: int | None = None
    occurred_at: datetime

    model_config = {"from_attributes": True}


class AuditTrailResponse(BaseModel):
    table_name: str
    record_id: int
    total_changes: int
    trail: list[AuditLogResponse]


class AuditListResponse(BaseModel):
    total: int
    items: list[AuditLogResponse]


class FieldChange(BaseModel):
    before: Any = None
    after: Any = None


class AuditChange(AuditLogResponse):
    """Registro update/delete con el diff campo a campo."""
    diff: dict[str, FieldChange] = {}


class AuditChangesResponse(BaseModel):
    table_name: str
    record_id: int
    changes: list[AuditChange]


# ── Anomalías ────────────────────────────────────────
class Anomaly(BaseModel):
    actor_user_id: int | None
    table_name: str
    minute: str = Field(..., description="Bucket YYYY-MM-DD HH:MM (UTC)")
    changes: int


class AnomalyReport(BaseModel):
    threshold: int
    window_hours: int
    total: int
    alert: bool
    anomalies: list[Anomaly]


# ── Estadísticas ─────────────────────────────────────
class AuditStat(BaseModel):
    table_name: str
    action: AuditAction
    count: int
    first_at: datetime | None = None
    last_at: datetime | None = None


class AuditStatsResponse(BaseModel):
    days: int
    by_table: dict[str, dict[str, int]]
    total_changes: int
    details: list[AuditStat]


class PreviousStateResponse(BaseModel):
    table_name: str
    record_id: int
    state: dict | None
    action: AuditAction
    occurred_at: datetime


# ── Resumen de un turno ──────────────────────────────
class CreationEvent(BaseModel):
    occurred_at: datetime
    actor_user_id: int | None = None
    state: str | None = None


class StateTransition(BaseModel):
    from_state: str | None
    to_state: str | None
    occurred_at: datetime
    actor_user_id: int | None = None


class AppointmentAuditSummary(BaseModel):
    appointment_id: int
    created: CreationEvent | None = None
    state_changes: list[StateTransition] = Field(default_factory=list, alias="estadoCambios")
    total_changes: int
    last_update: datetime | None = None
    was_cancelled: bool = Field(False, alias="fue_cancelado")
    full_trail: list[AuditLogResponse] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


# ── Dashboard y validación ───────────────────────────
class AuditDashboard(BaseModel):
    stats: AuditStatsResponse
    anomalies: AnomalyReport
    audited_tables: list[str]
    alert: bool


class AuditValidationReport(BaseModel):
    ok: bool
    table_present: bool
    indexes: list[str]
    total_records: int
    by_table_action: dict[str, dict[str, int]]
    records_with_actor: int
    records_without_actor: int
    # Filas auditadas sin su registro insert: re-entregas pendientes o perdidas
    missing_insert_records: dict[str, int]
    warnings: list[str] = Field(default_factory=list)
