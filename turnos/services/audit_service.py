"""
Audit Recorder: captura cada INSERT/UPDATE/DELETE de las entidades
auditadas y lo persiste en audit_log (INSERT-only, nunca se modifica).

Flujo:
    1. before_flush: snapshot "antes" de las filas modificadas o borradas.
    2. after_flush: arma las entradas (antes/después, actor, event_id)
       y las acumula en session.info["audit_pending"].
    3. before_commit: las escribe en un SAVEPOINT de la misma transacción.
    4. Si el SAVEPOINT falla, el negocio igual confirma y el EntityStore
       re-entrega las entradas después del commit (AuditDispatcher):
       reintentos en línea y luego la tarea Celery audit.write_entries.
"""

import asyncio
import enum
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session, object_mapper
from sqlalchemy.orm.attributes import instance_state

from turnos.core.exceptions import AuditWriteFailure
from turnos.database import AuditedSession
from turnos.models.audit_log import AuditAction, AuditLog

logger = logging.getLogger(__name__)

AUDITED_TABLES = frozenset(
    {"users", "specialties", "doctors", "patients", "appointments"}
)

PENDING_KEY = "audit_pending"
BEFORE_KEY = "audit_before"
DEFERRED_KEY = "audit_deferred"
ACTOR_KEY = "actor_id"


def _sanitize_for_json(data: dict | None) -> dict | None:
    """Convierte tipos no serializables (date, datetime, Enum, Decimal) a JSON."""
    if data is None:
        return None
    sanitized = {}
    for key, value in data.items():
        if isinstance(value, (date, datetime)):
            sanitized[key] = value.isoformat()
        elif isinstance(value, enum.Enum):
            sanitized[key] = value.value
        elif isinstance(value, uuid.UUID):
            sanitized[key] = str(value)
        elif isinstance(value, Decimal):
            sanitized[key] = float(value)
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_for_json(value)
        else:
            sanitized[key] = value
    return sanitized


def new_event_id() -> str:
    return str(uuid.uuid4())


def _is_audited(obj) -> bool:
    return getattr(obj, "__tablename__", None) in AUDITED_TABLES


# ── Snapshots ────────────────────────────────────────
def _committed_value(state, key: str):
    # Solo lee el historial en memoria: nunca dispara un lazy load
    history = state.attrs[key].history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    if history.added:
        return None
    return state.dict.get(key)


def snapshot_before(obj) -> dict:
    state = instance_state(obj)
    mapper = object_mapper(obj)
    return _sanitize_for_json(
        {attr.key: _committed_value(state, attr.key) for attr in mapper.column_attrs}
    )


def snapshot_current(obj) -> dict:
    state = instance_state(obj)
    mapper = object_mapper(obj)
    return _sanitize_for_json(
        {
            attr.key: state.dict[attr.key]
            for attr in mapper.column_attrs
            if attr.key in state.dict
        }
    )


def _record_id(obj) -> int:
    identity = instance_state(obj).identity
    return identity[0] if identity else obj.id


def _entry(session: Session, obj, action: AuditAction, before, after) -> dict:
    return {
        "event_id": new_event_id(),
        "table_name": obj.__tablename__,
        "action": action.value,
        "record_id": _record_id(obj),
        "before_state": before,
        "after_state": after,
        "actor_user_id": session.info.get(ACTOR_KEY),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }


# ── Listeners de la sesión auditada ──────────────────
@event.listens_for(AuditedSession, "before_flush")
def _capture_before(session: Session, flush_context, instances) -> None:
    before = session.info.setdefault(BEFORE_KEY, {})
    for obj in session.dirty:
        if _is_audited(obj) and session.is_modified(obj, include_collections=False):
            before[id(obj)] = snapshot_before(obj)
    for obj in session.deleted:
        if _is_audited(obj):
            before[id(obj)] = snapshot_before(obj)


@event.listens_for(AuditedSession, "after_flush")
def _capture_after(session: Session, flush_context) -> None:
    before = session.info.pop(BEFORE_KEY, {})
    pending = session.info.setdefault(PENDING_KEY, [])

    for obj in session.new:
        if _is_audited(obj):
            pending.append(
                _entry(session, obj, AuditAction.INSERT, None, snapshot_current(obj))
            )

    for obj in session.dirty:
        if not _is_audited(obj) or id(obj) not in before:
            continue
        after = snapshot_current(obj)
        if after == before[id(obj)]:
            continue
        pending.append(
            _entry(session, obj, AuditAction.UPDATE, before[id(obj)], after)
        )

    for obj in session.deleted:
        if _is_audited(obj):
            pending.append(
                _entry(session, obj, AuditAction.DELETE, before.get(id(obj)), None)
            )


@event.listens_for(AuditedSession, "after_rollback")
def _discard_on_rollback(session: Session) -> None:
    # Solo descarta si la transacción externa terminó
    if not session.in_transaction():
        session.info.pop(PENDING_KEY, None)
        session.info.pop(BEFORE_KEY, None)


# ── Escritura ────────────────────────────────────────
def build_audit_rows(entries: list[dict]) -> list[AuditLog]:
    return [
        AuditLog(
            event_id=entry["event_id"],
            table_name=entry["table_name"],
            action=AuditAction(entry["action"]),
            record_id=entry["record_id"],
            before_state=entry["before_state"],
            after_state=entry["after_state"],
            actor_user_id=entry["actor_user_id"],
            occurred_at=datetime.fromisoformat(entry["occurred_at"]),
        )
        for entry in entries
    ]


@event.listens_for(AuditedSession, "before_commit")
def _persist_before_commit(session: Session) -> None:
    """
    Escribe las entradas capturadas en un SAVEPOINT de la transacción
    que está por confirmarse. Si falla, quedan en session.info
    ["audit_deferred"] para la re-entrega post-commit.
    """
    session.flush()
    entries = session.info.pop(PENDING_KEY, [])
    if not entries:
        return
    try:
        with session.begin_nested():
            session.add_all(build_audit_rows(entries))
    except SQLAlchemyError as exc:
        failure = AuditWriteFailure(f"Fallo al escribir auditoría: {exc}", entries)
        logger.error(
            f"{failure}. {len(failure.entries)} entradas diferidas, "
            "el negocio confirma igual"
        )
        session.info.setdefault(DEFERRED_KEY, []).extend(failure.entries)


def pop_deferred(session: AsyncSession) -> list[dict]:
    return session.info.pop(DEFERRED_KEY, [])


async def write_entries(
    session_factory: async_sessionmaker[AsyncSession], entries: list[dict]
) -> int:
    """
    Escritura idempotente fuera de la transacción de negocio.
    Omite los event_id ya persistidos; devuelve cuántos insertó.
    """
    event_ids = [entry["event_id"] for entry in entries]
    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                select(AuditLog.event_id).where(AuditLog.event_id.in_(event_ids))
            )
            existing = set(result.scalars().all())
            missing = [e for e in entries if e["event_id"] not in existing]
            if missing:
                session.add_all(build_audit_rows(missing))
    return len(missing)


class AuditDispatcher:
    """Re-entrega post-commit de entradas que no entraron en el SAVEPOINT."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        inline_retries: int = 2,
    ):
        self.session_factory = session_factory
        self.inline_retries = inline_retries

    async def deliver(self, entries: list[dict]) -> None:
        """Nunca lanza: el negocio ya confirmó cuando se llama."""
        for attempt in range(1, self.inline_retries + 1):
            try:
                written = await write_entries(self.session_factory, entries)
                logger.info(
                    f"Auditoría re-entregada en el intento {attempt}: "
                    f"{written} registros"
                )
                return
            except SQLAlchemyError as exc:
                logger.warning(
                    f"Reintento {attempt}/{self.inline_retries} de auditoría falló: {exc}"
                )
        await self.enqueue(entries)

    async def enqueue(self, entries: list[dict]) -> None:
        # apply_async bloquea mientras habla con el broker: fuera del event loop
        try:
            await asyncio.to_thread(_publish, entries)
        except Exception as exc:
            # Alerta al operador: la auditoría queda solo en el log
            logger.critical(
                f"No se pudo encolar auditoría ({exc.__class__.__name__}: {exc}). "
                f"Entradas: {entries}"
            )


def _publish(entries: list[dict]) -> None:
    from turnos.tasks.audit_tasks import write_audit_entries_task

    # Sin reintentos de conexión: si el broker no responde, falla enseguida
    write_audit_entries_task.apply_async(args=[entries], retry=False)
