"""
Audit Query Service: lecturas sobre el audit log (append-only).
Reconstrucción de historial, diffs, anomalías y resumen clínico de turnos.
"""

import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import and_, exists, func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from turnos.core.exceptions import NotFoundException, ValidationException
from turnos.database import Base
from turnos.models.appointment import AppointmentState
from turnos.models.audit_log import AuditAction, AuditLog
from turnos.schemas.audit import (
    Anomaly,
    AnomalyReport,
    AppointmentAuditSummary,
    AuditChange,
    AuditChangesResponse,
    AuditDashboard,
    AuditListResponse,
    AuditLogResponse,
    AuditStat,
    AuditStatsResponse,
    AuditTrailResponse,
    AuditValidationReport,
    CreationEvent,
    FieldChange,
    PreviousStateResponse,
    StateTransition,
)
from turnos.services.audit_service import AUDITED_TABLES

logger = logging.getLogger(__name__)

VALID_TABLES = sorted(AUDITED_TABLES)


def validate_table(table_name: str) -> str:
    """Solo se consultan tablas auditadas."""
    if table_name not in AUDITED_TABLES:
        raise ValidationException(
            f"Tabla no válida: '{table_name}'. Opciones: {', '.join(VALID_TABLES)}"
        )
    return table_name


def compute_diff(before: dict | None, after: dict | None) -> dict[str, FieldChange]:
    before = before or {}
    after = after or {}
    diff = {}
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            diff[key] = FieldChange(before=before.get(key), after=after.get(key))
    return diff


async def get_trail(db: AsyncSession, table_name: str, record_id: int) -> AuditTrailResponse:
    """Historial completo de un registro, del más antiguo al más reciente."""
    validate_table(table_name)
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.table_name == table_name, AuditLog.record_id == record_id)
        .order_by(AuditLog.occurred_at.asc(), AuditLog.id.asc())
    )
    trail = [AuditLogResponse.model_validate(r) for r in result.scalars().all()]
    return AuditTrailResponse(
        table_name=table_name,
        record_id=record_id,
        total_changes=len(trail),
        trail=trail,
    )


async def get_recent(db: AsyncSession, table_name: str, limit: int = 50) -> AuditListResponse:
    validate_table(table_name)
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.table_name == table_name)
        .order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    items = [AuditLogResponse.model_validate(r) for r in result.scalars().all()]
    return AuditListResponse(total=len(items), items=items)


async def get_changes(db: AsyncSession, table_name: str, record_id: int) -> AuditChangesResponse:
    """Solo updates y deletes, con el diff calculado campo a campo."""
    validate_table(table_name)
    result = await db.execute(
        select(AuditLog)
        .where(
            AuditLog.table_name == table_name,
            AuditLog.record_id == record_id,
            AuditLog.action.in_([AuditAction.UPDATE, AuditAction.DELETE]),
        )
        .order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc())
    )
    changes = []
    for record in result.scalars().all():
        change = AuditChange.model_validate(record)
        change.diff = compute_diff(record.before_state, record.after_state)
        changes.append(change)
    return AuditChangesResponse(table_name=table_name, record_id=record_id, changes=changes)


async def get_by_actor(db: AsyncSession, user_id: int, limit: int = 100) -> AuditListResponse:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.actor_user_id == user_id)
        .order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    items = [AuditLogResponse.model_validate(r) for r in result.scalars().all()]
    return AuditListResponse(total=len(items), items=items)


async def detect_anomalies(
    db: AsyncSession,
    threshold: int = 20,
    *,
    window: timedelta = timedelta(hours=24),
    now: datetime | None = None,
) -> AnomalyReport:
    """
    Agrupa por (actor, tabla, minuto) dentro de la ventana y marca los
    buckets con más de `threshold` cambios.
    El bucket se arma en Python para no depender de funciones de fecha
    específicas del motor.
    """
    now = now or datetime.now(timezone.utc)
    since = now - window
    result = await db.execute(
        select(AuditLog.actor_user_id, AuditLog.table_name, AuditLog.occurred_at)
        .where(AuditLog.occurred_at > since)
    )
    buckets: Counter = Counter()
    for actor_id, table_name, occurred_at in result.all():
        buckets[(actor_id, table_name, occurred_at.strftime("%Y-%m-%d %H:%M"))] += 1

    anomalies = [
        Anomaly(actor_user_id=actor_id, table_name=table_name, minute=minute, changes=count)
        for (actor_id, table_name, minute), count in buckets.items()
        if count > threshold
    ]
    anomalies.sort(key=lambda a: (-a.changes, a.minute))

    if anomalies:
        logger.warning(
            f"{len(anomalies)} ráfagas de cambios sobre el umbral {threshold}"
        )
    return AnomalyReport(
        threshold=threshold,
        window_hours=int(window.total_seconds() // 3600),
        total=len(anomalies),
        alert=bool(anomalies),
        anomalies=anomalies,
    )


async def get_stats(db: AsyncSession, days: int = 7) -> AuditStatsResponse:
    """Conteos por (tabla, acción) de los últimos `days` días."""
    since = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(
        select(
            AuditLog.table_name,
            AuditLog.action,
            func.count(AuditLog.id),
            func.min(AuditLog.occurred_at),
            func.max(AuditLog.occurred_at),
        )
        .where(AuditLog.occurred_at > since)
        .group_by(AuditLog.table_name, AuditLog.action)
        .order_by(AuditLog.table_name, AuditLog.action)
    )
    details = [
        AuditStat(table_name=t, action=a, count=c, first_at=first, last_at=last)
        for t, a, c, first, last in result.all()
    ]
    by_table: dict[str, dict[str, int]] = {}
    for stat in details:
        by_table.setdefault(stat.table_name, {})[stat.action.value] = stat.count

    return AuditStatsResponse(
        days=days,
        by_table=by_table,
        total_changes=sum(s.count for s in details),
        details=details,
    )


async def get_previous_state(
    db: AsyncSession,
    table_name: str,
    record_id: int,
    before: datetime | None = None,
) -> PreviousStateResponse | None:
    """Último snapshot "antes" de un update/delete previo a `before`."""
    validate_table(table_name)
    query = select(AuditLog).where(
        AuditLog.table_name == table_name,
        AuditLog.record_id == record_id,
        AuditLog.action.in_([AuditAction.UPDATE, AuditAction.DELETE]),
    )
    if before is not None:
        query = query.where(AuditLog.occurred_at < before)
    result = await db.execute(
        query.order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc()).limit(1)
    )
    record = result.scalar_one_or_none()
    if record is None:
        return None
    return PreviousStateResponse(
        table_name=table_name,
        record_id=record_id,
        state=record.before_state,
        action=record.action,
        occurred_at=record.occurred_at,
    )


async def get_by_date_range(
    db: AsyncSession,
    table_name: str,
    date_from: date,
    date_to: date,
) -> AuditListResponse:
    validate_table(table_name)
    if date_to < date_from:
        raise ValidationException("La fecha 'hasta' es anterior a 'desde'")
    start_dt = datetime.combine(date_from, time.min).replace(tzinfo=timezone.utc)
    end_dt = datetime.combine(date_to, time.max).replace(tzinfo=timezone.utc)
    result = await db.execute(
        select(AuditLog)
        .where(
            AuditLog.table_name == table_name,
            AuditLog.occurred_at >= start_dt,
            AuditLog.occurred_at <= end_dt,
        )
        .order_by(AuditLog.occurred_at.desc(), AuditLog.id.desc())
    )
    items = [AuditLogResponse.model_validate(r) for r in result.scalars().all()]
    return AuditListResponse(total=len(items), items=items)


async def get_appointment_summary(db: AsyncSession, appointment_id: int) -> AppointmentAuditSummary:
    """
    Resume el trail de un turno: creación, transiciones de estado en
    orden y si terminó cancelado.
    """
    trail = (await get_trail(db, "appointments", appointment_id)).trail
    if not trail:
        raise NotFoundException("Turno", "Turno no encontrado en auditoría")

    summary = AppointmentAuditSummary(
        appointment_id=appointment_id,
        total_changes=len(trail),
        full_trail=trail,
    )
    for record in trail:
        if record.action == AuditAction.INSERT:
            summary.created = CreationEvent(
                occurred_at=record.occurred_at,
                actor_user_id=record.actor_user_id,
                state=(record.after_state or {}).get("state"),
            )
        elif record.action == AuditAction.UPDATE:
            summary.last_update = record.occurred_at
            old_state = (record.before_state or {}).get("state")
            new_state = (record.after_state or {}).get("state")
            if old_state == new_state:
                continue
            summary.state_changes.append(
                StateTransition(
                    from_state=old_state,
                    to_state=new_state,
                    occurred_at=record.occurred_at,
                    actor_user_id=record.actor_user_id,
                )
            )
            if new_state == AppointmentState.CANCELLED.value:
                summary.was_cancelled = True
    return summary


async def get_dashboard(db: AsyncSession, threshold: int = 20) -> AuditDashboard:
    stats = await get_stats(db)
    anomalies = await detect_anomalies(db, threshold)
    return AuditDashboard(
        stats=stats,
        anomalies=anomalies,
        audited_tables=VALID_TABLES,
        alert=anomalies.alert,
    )


def _inspect_audit_table(sync_session) -> tuple[bool, list[str]]:
    inspector = inspect(sync_session.connection())
    if not inspector.has_table(AuditLog.__tablename__):
        return False, []
    indexes = [ix["name"] for ix in inspector.get_indexes(AuditLog.__tablename__)]
    return True, sorted(name for name in indexes if name)


async def validate_audit_system(db: AsyncSession) -> AuditValidationReport:
    """
    Verifica la instalación de la auditoría: tabla, índices, volumen,
    captura del actor y filas auditadas sin su registro de alta.
    """
    table_present, indexes = await db.run_sync(_inspect_audit_table)
    if not table_present:
        return AuditValidationReport(
            ok=False,
            table_present=False,
            indexes=[],
            total_records=0,
            by_table_action={},
            records_with_actor=0,
            records_without_actor=0,
            missing_insert_records={},
            warnings=["La tabla audit_log no existe"],
        )

    warnings = []
    result = await db.execute(
        select(AuditLog.table_name, AuditLog.action, func.count(AuditLog.id))
        .group_by(AuditLog.table_name, AuditLog.action)
    )
    by_table_action: dict[str, dict[str, int]] = {}
    total = 0
    for table_name, action, count in result.all():
        by_table_action.setdefault(table_name, {})[action.value] = count
        total += count
    if total == 0:
        warnings.append("No hay datos auditados aún")

    with_actor = (
        await db.execute(
            select(func.count(AuditLog.id)).where(AuditLog.actor_user_id.is_not(None))
        )
    ).scalar() or 0

    missing: dict[str, int] = {}
    for table_name in VALID_TABLES:
        table = Base.metadata.tables[table_name]
        has_insert = exists().where(
            and_(
                AuditLog.table_name == table_name,
                AuditLog.record_id == table.c.id,
                AuditLog.action == AuditAction.INSERT,
            )
        )
        count = (
            await db.execute(select(func.count()).select_from(table).where(~has_insert))
        ).scalar() or 0
        missing[table_name] = count
        if count:
            warnings.append(f"{count} filas de {table_name} sin registro de alta")

    return AuditValidationReport(
        ok=not any(missing.values()),
        table_present=True,
        indexes=indexes,
        total_records=total,
        by_table_action=by_table_action,
        records_with_actor=with_actor,
        records_without_actor=total - with_actor,
        missing_insert_records=missing,
        warnings=warnings,
    )
