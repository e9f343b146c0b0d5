"""
Configuración de Celery para tareas asíncronas.
"""

from celery import Celery

from turnos.config import get_settings

settings = get_settings()

celery_app = Celery(
    "turnos",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "expire-pending-appointments": {
            "task": "appointments.expire_pending",
            "schedule": settings.APPOINTMENT_EXPIRY_SWEEP_SECONDS,
        },
    },
)

# Auto-descubrir tareas en turnos/tasks/
celery_app.autodiscover_tasks(["turnos.tasks"], related_name="audit_tasks")
celery_app.autodiscover_tasks(["turnos.tasks"], related_name="appointment_tasks")
