"""
Endpoints de auditoría (solo lectura, rol admin).
Las rutas específicas van antes que /{table_name}/{record_id}.
"""

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from turnos.auth.dependencies import require_permission
from turnos.config import get_settings
from turnos.core.exceptions import NotFoundException
from turnos.core.security import Actor
from turnos.database import get_db
from turnos.schemas.audit import (
    AnomalyReport,
    AppointmentAuditSummary,
    AuditChangesResponse,
    AuditDashboard,
    AuditListResponse,
    AuditStatsResponse,
    AuditTrailResponse,
    AuditValidationReport,
    PreviousStateResponse,
)
from turnos.services import audit_query_service

router = APIRouter()

can_read_audit = require_permission("audit_log", "read")


@router.get("/recent/{table_name}", response_model=AuditListResponse)
async def recent_changes(
    table_name: str,
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    return await audit_query_service.get_recent(db, table_name, limit)


@router.get("/changes/{table_name}/{record_id}", response_model=AuditChangesResponse)
async def record_changes(
    table_name: str,
    record_id: int,
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    """Updates y deletes del registro con el diff de cada cambio."""
    return await audit_query_service.get_changes(db, table_name, record_id)


@router.get("/user/{user_id}", response_model=AuditListResponse)
async def actions_by_user(
    user_id: int,
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    return await audit_query_service.get_by_actor(db, user_id, limit)


@router.get("/anomalies", response_model=AnomalyReport)
async def anomalies(
    threshold: int | None = Query(None, ge=1),
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    """Ráfagas de cambios de un mismo usuario en las últimas 24 horas."""
    threshold = threshold or get_settings().AUDIT_ANOMALY_THRESHOLD
    return await audit_query_service.detect_anomalies(db, threshold)


@router.get("/stats", response_model=AuditStatsResponse)
async def stats(
    days: int = Query(7, ge=1, le=365),
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    return await audit_query_service.get_stats(db, days)


@router.get("/previous/{table_name}/{record_id}", response_model=PreviousStateResponse)
async def previous_state(
    table_name: str,
    record_id: int,
    before: datetime | None = Query(None, description="Estado previo a esta fecha/hora"),
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    """Último estado anterior del registro, para recuperación puntual."""
    result = await audit_query_service.get_previous_state(db, table_name, record_id, before)
    if result is None:
        raise NotFoundException(detail="No hay historial anterior disponible")
    return result


@router.get("/range/{table_name}", response_model=AuditListResponse)
async def by_date_range(
    table_name: str,
    date_from: date = Query(..., alias="from", description="Desde (YYYY-MM-DD)"),
    date_to: date = Query(..., alias="to", description="Hasta (YYYY-MM-DD)"),
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    return await audit_query_service.get_by_date_range(db, table_name, date_from, date_to)


@router.get("/appointment/{appointment_id}", response_model=AppointmentAuditSummary)
async def appointment_summary(
    appointment_id: int,
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    """Creación, transiciones de estado y cancelación de un turno."""
    return await audit_query_service.get_appointment_summary(db, appointment_id)


@router.get("/dashboard", response_model=AuditDashboard)
async def dashboard(
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    return await audit_query_service.get_dashboard(db, get_settings().AUDIT_ANOMALY_THRESHOLD)


@router.get("/validate", response_model=AuditValidationReport)
async def validate(
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    return await audit_query_service.validate_audit_system(db)


@router.get("/{table_name}/{record_id}", response_model=AuditTrailResponse)
async def trail(
    table_name: str,
    record_id: int,
    actor: Actor = Depends(can_read_audit),
    db: AsyncSession = Depends(get_db),
):
    """Historial completo de un registro, en orden cronológico."""
    return await audit_query_service.get_trail(db, table_name, record_id)
