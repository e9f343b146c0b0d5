"""
Tareas Celery de auditoría.
Re-entrega de registros que no pudieron escribirse junto con la
transacción de negocio. La escritura es idempotente por event_id, así
que una re-entrega duplicada no genera filas repetidas.
"""

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

from turnos.config import get_settings
from turnos.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

settings = get_settings()


@celery_app.task(
    bind=True,
    max_retries=settings.AUDIT_TASK_MAX_RETRIES,
    default_retry_delay=settings.AUDIT_TASK_RETRY_DELAY,
    name="audit.write_entries",
    ignore_result=True,
)
def write_audit_entries_task(self, entries: list[dict]):
    async def _write() -> int:
        from turnos.services.audit_service import write_entries
        from turnos.store import EntityStore

        store = EntityStore()
        try:
            return await write_entries(store.session_factory, entries)
        finally:
            await store.dispose()

    try:
        written = asyncio.run(_write())
    except SQLAlchemyError as exc:
        if self.request.retries >= self.max_retries:
            # Alerta al operador: reintentos agotados
            logger.critical(
                f"Auditoría sin persistir tras {self.max_retries} reintentos: {entries}"
            )
            raise
        logger.error(
            f"Error escribiendo {len(entries)} registros de auditoría "
            f"(intento {self.request.retries + 1}): {exc}"
        )
        raise self.retry(exc=exc)

    logger.info(f"Auditoría re-entregada: {written} de {len(entries)} registros nuevos")
    return written
