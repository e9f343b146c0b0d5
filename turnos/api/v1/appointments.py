"""
Endpoints de turnos: reserva, cancelación, reasignación, confirmación,
finalización, consultas y adjuntos.
Las escrituras se reintentan ante errores transitorios de la base.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from turnos.api.deps import get_appointment_service, get_store
from turnos.auth.dependencies import require_permission
from turnos.core.security import Actor
from turnos.database import get_db
from turnos.models.appointment import AppointmentState
from turnos.schemas.appointment import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    ReassignDoctorRequest,
)
from turnos.schemas.payment import AttachmentCreate, AttachmentResponse
from turnos.services import payment_service
from turnos.services.appointment_service import AppointmentService
from turnos.store import EntityStore

router = APIRouter()


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    data: AppointmentCreate,
    actor: Actor = Depends(require_permission("appointment", "create")),
    service: AppointmentService = Depends(get_appointment_service),
):
    """
    Reserva un turno (estado pending).
    409 si el doctor ya tiene un turno activo en ese horario.
    """
    return await service.store.retrying(
        service.book,
        actor,
        patient_id=data.patient_id,
        doctor_id=data.doctor_id,
        scheduled_at=data.scheduled_at,
        reason=data.reason,
    )


@router.get("", response_model=AppointmentListResponse)
async def list_appointments(
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    doctor_id: int | None = Query(None, description="Filtrar por doctor"),
    patient_id: int | None = Query(None, description="Filtrar por paciente"),
    state: AppointmentState | None = Query(None, description="Filtrar por estado"),
    date_from: date | None = Query(None, description="Desde fecha (YYYY-MM-DD)"),
    date_to: date | None = Query(None, description="Hasta fecha (YYYY-MM-DD)"),
    actor: Actor = Depends(require_permission("appointment", "read")),
    service: AppointmentService = Depends(get_appointment_service),
):
    return await service.list_appointments(
        actor,
        page=page,
        size=size,
        doctor_id=doctor_id,
        patient_id=patient_id,
        state=state,
        date_from=date_from,
        date_to=date_to,
    )


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(require_permission("appointment", "read")),
    service: AppointmentService = Depends(get_appointment_service),
):
    return await service.get_appointment(actor, appointment_id)


@router.delete("/{appointment_id}", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    reason: str | None = Query(None, max_length=500, description="Motivo de cancelación"),
    expected_version: int | None = Query(None),
    actor: Actor = Depends(require_permission("appointment", "cancel")),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Cancela el turno (no se borra físicamente)."""
    return await service.store.retrying(
        service.cancel,
        actor,
        appointment_id,
        reason,
        expected_version=expected_version,
    )


@router.patch("/{appointment_id}/doctor", response_model=AppointmentResponse)
async def reassign_doctor(
    appointment_id: int,
    data: ReassignDoctorRequest,
    actor: Actor = Depends(require_permission("appointment", "reassign")),
    service: AppointmentService = Depends(get_appointment_service),
):
    return await service.store.retrying(
        service.reassign_doctor,
        actor,
        appointment_id,
        data.new_doctor_id,
        expected_version=data.expected_version,
    )


@router.patch("/{appointment_id}/confirm", response_model=AppointmentResponse)
async def confirm_appointment(
    appointment_id: int,
    expected_version: int | None = Query(None),
    actor: Actor = Depends(require_permission("appointment", "confirm")),
    service: AppointmentService = Depends(get_appointment_service),
):
    return await service.store.retrying(
        service.confirm, actor, appointment_id, expected_version=expected_version
    )


@router.patch("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: int,
    expected_version: int | None = Query(None),
    actor: Actor = Depends(require_permission("appointment", "complete")),
    service: AppointmentService = Depends(get_appointment_service),
):
    return await service.store.retrying(
        service.complete, actor, appointment_id, expected_version=expected_version
    )


# ── Adjuntos ─────────────────────────────────────────

@router.post(
    "/{appointment_id}/attachments",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_attachment(
    appointment_id: int,
    data: AttachmentCreate,
    actor: Actor = Depends(require_permission("attachment", "create")),
    store: EntityStore = Depends(get_store),
):
    """Registra los metadatos de un archivo ya subido al almacenamiento externo."""
    return await payment_service.add_attachment(store, actor, appointment_id, data)


@router.get("/{appointment_id}/attachments", response_model=list[AttachmentResponse])
async def list_attachments(
    appointment_id: int,
    actor: Actor = Depends(require_permission("attachment", "read")),
    db: AsyncSession = Depends(get_db),
):
    return await payment_service.list_attachments(db, actor, appointment_id)
