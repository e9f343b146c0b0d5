"""
Router principal de la API v1.
Agrupa todos los sub-routers de la versión 1.
"""

from fastapi import APIRouter

from turnos.api.v1.appointments import router as appointments_router
from turnos.api.v1.audit import router as audit_router
from turnos.api.v1.payments import router as payments_router
from turnos.api.v1.registry import (
    doctors_router,
    patients_router,
    specialties_router,
)

api_v1_router = APIRouter()

api_v1_router.include_router(
    appointments_router,
    prefix="/appointments",
    tags=["Turnos"],
)

api_v1_router.include_router(
    audit_router,
    prefix="/audit",
    tags=["Auditoría"],
)

api_v1_router.include_router(
    doctors_router,
    prefix="/doctors",
    tags=["Doctores"],
)

api_v1_router.include_router(
    patients_router,
    prefix="/patients",
    tags=["Pacientes"],
)

api_v1_router.include_router(
    specialties_router,
    prefix="/specialties",
    tags=["Especialidades"],
)

api_v1_router.include_router(
    payments_router,
    prefix="/payments",
    tags=["Pagos"],
)
