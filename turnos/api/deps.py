"""
Dependencies compartidas por los routers.
"""

from fastapi import Depends, Request

from turnos.services.appointment_service import AppointmentService
from turnos.store import EntityStore


def get_store(request: Request) -> EntityStore:
    """EntityStore creado en el lifespan de la aplicación."""
    return request.app.state.store


def get_appointment_service(store: EntityStore = Depends(get_store)) -> AppointmentService:
    return AppointmentService(store)
