"""
Tareas Celery del motor de turnos.
"""

import asyncio
import logging

from turnos.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="appointments.expire_pending")
def expire_pending_appointments_task():
    """
    Task periódico: cancela los turnos pendientes cuyo plazo de
    confirmación venció. Lo programa celery beat.
    """
    async def _expire() -> list[int]:
        from turnos.services.appointment_service import AppointmentService
        from turnos.store import EntityStore

        store = EntityStore()
        try:
            return await AppointmentService(store).expire_pending_appointments()
        finally:
            await store.dispose()

    cancelled = asyncio.run(_expire())
    if cancelled:
        logger.info(f"{len(cancelled)} turnos pendientes vencidos cancelados")
    return cancelled
