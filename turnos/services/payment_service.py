"""
Pagos (1:1 con el turno) y adjuntos de un turno.
El estado del pago lo informa la pasarela; acá solo se valida la transición.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from turnos.core.exceptions import (
    ConflictException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    ValidationException,
)
from turnos.core.security import Actor
from turnos.models.appointment import Appointment, AppointmentState
from turnos.models.attachment import Attachment
from turnos.models.doctor import Doctor
from turnos.models.patient import Patient
from turnos.models.payment import TERMINAL_PAYMENT_STATES, Payment, PaymentState
from turnos.models.user import UserRole
from turnos.schemas.payment import (
    AttachmentCreate,
    AttachmentResponse,
    GatewayStatusReport,
    PaymentCreate,
    PaymentResponse,
)
from turnos.services.appointment_service import ensure_doctor_scope, ensure_patient_scope
from turnos.store import EntityStore, StoreTransaction

logger = logging.getLogger(__name__)


async def _get_appointment(tx: StoreTransaction, appointment_id: int) -> Appointment:
    appointment = await tx.find_by_id(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundException("Turno")
    return appointment


async def create_payment(store: EntityStore, actor: Actor, data: PaymentCreate) -> PaymentResponse:
    async with store.transaction(actor) as tx:
        appointment = await _get_appointment(tx, data.appointment_id)
        if actor.role == UserRole.PATIENT:
            patient = await tx.find_by_id(Patient, appointment.patient_id)
            if patient.user_id != actor.user_id:
                raise ForbiddenException("Un paciente solo puede pagar sus propios turnos")
        if appointment.state == AppointmentState.CANCELLED:
            raise ValidationException("No se puede registrar el pago de un turno cancelado")

        result = await tx.session.execute(
            select(Payment.id).where(Payment.appointment_id == appointment.id)
        )
        if result.scalar_one_or_none() is not None:
            raise ConflictException(f"El turno {appointment.id} ya tiene un pago registrado")

        payment = await tx.create(
            Payment(
                appointment_id=appointment.id,
                amount=data.amount,
                method=data.method,
                state=PaymentState.PENDING,
            )
        )

    logger.info(f"Pago {payment.id} creado para el turno {data.appointment_id}")
    return PaymentResponse.model_validate(payment)


async def record_gateway_status(
    store: EntityStore,
    actor: Actor,
    data: GatewayStatusReport,
) -> PaymentResponse:
    """
    Aplica el estado informado por la pasarela.
    Mismo estado → sin cambios (las pasarelas reenvían notificaciones).
    Un pago completado o cancelado ya no cambia.
    """
    async with store.transaction(actor) as tx:
        result = await tx.session.execute(
            select(Payment)
            .where(Payment.appointment_id == data.appointment_id)
            .with_for_update()
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundException("Pago")

        if payment.state == data.state:
            return PaymentResponse.model_validate(payment)
        if payment.state in TERMINAL_PAYMENT_STATES:
            raise InvalidTransitionException(
                f"El pago ya está '{payment.state.value}', no puede pasar a '{data.state.value}'"
            )

        fields = {"state": data.state}
        if data.gateway_reference:
            fields["gateway_reference"] = data.gateway_reference
        await tx.update(payment, **fields)

    logger.info(
        f"Pago del turno {data.appointment_id}: {data.state.value} "
        f"(ref {data.gateway_reference})"
    )
    return PaymentResponse.model_validate(payment)


# ── Adjuntos ─────────────────────────────────────────
async def _ensure_attachment_scope(session: AsyncSession, actor: Actor, appointment: Appointment) -> None:
    """Pacientes y doctores solo ven o adjuntan archivos de sus propios turnos."""
    if actor.role == UserRole.PATIENT:
        ensure_patient_scope(actor, await session.get(Patient, appointment.patient_id))
    elif actor.role == UserRole.DOCTOR:
        ensure_doctor_scope(actor, await session.get(Doctor, appointment.doctor_id))


async def add_attachment(
    store: EntityStore,
    actor: Actor,
    appointment_id: int,
    data: AttachmentCreate,
) -> AttachmentResponse:
    async with store.transaction(actor) as tx:
        appointment = await _get_appointment(tx, appointment_id)
        await _ensure_attachment_scope(tx.session, actor, appointment)
        attachment = await tx.create(
            Attachment(
                appointment_id=appointment_id,
                type=data.type,
                url=data.url,
                name=data.name,
            )
        )
    return AttachmentResponse.model_validate(attachment)


async def list_attachments(
    db: AsyncSession, actor: Actor, appointment_id: int
) -> list[AttachmentResponse]:
    appointment = await db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundException("Turno")
    await _ensure_attachment_scope(db, actor, appointment)
    result = await db.execute(
        select(Attachment)
        .where(Attachment.appointment_id == appointment_id)
        .order_by(Attachment.uploaded_at.asc(), Attachment.id.asc())
    )
    return [AttachmentResponse.model_validate(a) for a in result.scalars().all()]
