"""
Entity Store: acceso transaccional a la base de datos.

El store es un objeto inyectado con ciclo de vida explícito: lo crea el
lifespan de FastAPI (o la tarea Celery) y se libera con dispose().
Cada operación de negocio corre dentro de exactamente una transacción
abierta con store.transaction(actor).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import func, select, text
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from turnos.config import Settings, get_settings
from turnos.core.exceptions import (
    AppException,
    ConstraintViolationException,
    SlotUnavailableException,
    TransientStoreException,
    ValidationException,
)
from turnos.database import build_engine, build_session_factory
from turnos.models import Appointment
from turnos.models.appointment import (
    SLOT_HOLDING_STATES,
    SLOT_INDEX_NAME,
    UPCOMING_STATES,
)
from turnos.services import audit_service

logger = logging.getLogger(__name__)

T = TypeVar("T")

# statement timeout, serialization failure, deadlock
TRANSIENT_SQLSTATES = {"57014", "40001", "40P01"}

# Mensaje de SQLite al violar el índice único parcial
SQLITE_SLOT_MESSAGE = "appointments.doctor_id, appointments.scheduled_at"


# ── Traducción de errores de la base ─────────────────
def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_slot_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return SLOT_INDEX_NAME in message or SQLITE_SLOT_MESSAGE in message


def is_transient(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError):
        return exc.connection_invalidated or _sqlstate(exc) in TRANSIENT_SQLSTATES
    return False


def translate_error(exc: SQLAlchemyError) -> AppException | None:
    """Mapea errores de SQLAlchemy a la taxonomía de la API (None = inesperado)."""
    if isinstance(exc, StaleDataError):
        return ConstraintViolationException()
    if isinstance(exc, IntegrityError):
        if is_slot_violation(exc):
            return SlotUnavailableException()
        logger.warning(f"Violación de integridad: {exc.orig}")
        return ValidationException("Los datos violan una restricción de integridad")
    if is_transient(exc):
        return TransientStoreException()
    return None


# ── Operaciones dentro de una transacción ────────────
class StoreTransaction:
    """Vista tipada de la sesión, limitada a una transacción."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_id(self, model: type[T], record_id: int, *, for_update: bool = False) -> T | None:
        query = select(model).where(model.id == record_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_conflicting(
        self,
        doctor_id: int,
        scheduled_at: datetime,
        exclude_id: int | None = None,
    ) -> Appointment | None:
        """Turno del doctor que ya ocupa ese horario (pendiente, confirmado o completado)."""
        query = select(Appointment).where(
            Appointment.doctor_id == doctor_id,
            Appointment.scheduled_at == scheduled_at,
            Appointment.state.in_(SLOT_HOLDING_STATES),
        )
        if exclude_id is not None:
            query = query.where(Appointment.id != exclude_id)
        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def earliest_active_slot(self, doctor_id: int) -> datetime | None:
        result = await self.session.execute(
            select(func.min(Appointment.scheduled_at)).where(
                Appointment.doctor_id == doctor_id,
                Appointment.state.in_(UPCOMING_STATES),
            )
        )
        return result.scalar_one_or_none()

    async def create(self, obj: T) -> T:
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def update(self, obj: T, **fields: Any) -> T:
        """Actualización parcial; el UPDATE lleva WHERE version = esperada."""
        for key, value in fields.items():
            setattr(obj, key, value)
        await self.session.flush()
        return obj

    async def delete(self, obj: Any) -> None:
        await self.session.delete(obj)
        await self.session.flush()


class EntityStore:
    def __init__(
        self,
        url: str | None = None,
        *,
        settings: Settings | None = None,
        audit_dispatcher: audit_service.AuditDispatcher | None = None,
    ):
        settings = settings or get_settings()
        self.url = url or settings.DATABASE_URL
        self.engine = build_engine(
            self.url,
            echo=settings.DEBUG,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
        self.session_factory = build_session_factory(self.engine)
        self.statement_timeout_ms = settings.DB_STATEMENT_TIMEOUT_MS
        self.max_retries = settings.TX_MAX_RETRIES
        self.retry_base_delay = settings.TX_RETRY_BASE_DELAY
        self.audit_dispatcher = audit_dispatcher or audit_service.AuditDispatcher(
            self.session_factory, settings.AUDIT_INLINE_RETRIES
        )

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    @asynccontextmanager
    async def transaction(self, actor=None) -> AsyncIterator[StoreTransaction]:
        """
        Abre una transacción; confirma al salir sin error y revierte si no.
        La auditoría se escribe en un SAVEPOINT justo antes del commit;
        lo que no entró se re-entrega acá, ya confirmado el negocio.
        """
        async with self.session_factory() as session:
            session.info[audit_service.ACTOR_KEY] = actor.user_id if actor else None
            try:
                async with session.begin():
                    if self.is_postgres:
                        await session.execute(
                            text(f"SET LOCAL statement_timeout = {int(self.statement_timeout_ms)}")
                        )
                    yield StoreTransaction(session)
                deferred = audit_service.pop_deferred(session)
            except SQLAlchemyError as exc:
                translated = translate_error(exc)
                if translated is None:
                    raise
                logger.warning(f"Transacción revertida: {translated.kind} ({exc.__class__.__name__})")
                raise translated from exc

        if deferred:
            try:
                await self.audit_dispatcher.deliver(deferred)
            except Exception:
                # El negocio ya confirmó: el error no llega al llamador
                logger.critical(
                    f"Re-entrega de auditoría abortada. Entradas: {deferred}",
                    exc_info=True,
                )

    async def retrying(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Reintenta errores transitorios con backoff exponencial."""
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except TransientStoreException:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Error transitorio en {getattr(fn, '__name__', fn)}, "
                    f"reintento {attempt}/{self.max_retries} en {delay:.2f}s"
                )
                await asyncio.sleep(delay)

    async def create_all(self) -> None:
        """Crea el esquema (tests y entornos locales; producción usa Alembic)."""
        from turnos.database import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        from turnos.database import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
