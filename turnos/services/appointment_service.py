"""
Motor de turnos: reserva, cancelación, reasignación de doctor,
confirmación y finalización. Cada operación es UNA transacción que
toca el turno y los contadores derivados de doctor y paciente.

Orden de bloqueo (evita deadlocks): turno → paciente → doctores por id.
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select

from turnos.config import get_settings
from turnos.core.exceptions import (
    AlreadyCancelledException,
    ConstraintViolationException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    SlotUnavailableException,
    ValidationException,
)
from turnos.core.security import SYSTEM_ACTOR, Actor
from turnos.models.appointment import (
    VALID_TRANSITIONS,
    Appointment,
    AppointmentState,
    is_valid_transition,
)
from turnos.models.doctor import Doctor
from turnos.models.patient import Patient
from turnos.models.user import UserRole
from turnos.schemas.appointment import AppointmentListResponse, AppointmentResponse
from turnos.store import EntityStore, StoreTransaction

logger = logging.getLogger(__name__)


def to_utc(value: datetime) -> datetime:
    """Normaliza a UTC; un datetime sin zona se interpreta como UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_transition(appointment: Appointment, new_state: AppointmentState) -> None:
    if appointment.state == AppointmentState.CANCELLED and new_state == AppointmentState.CANCELLED:
        raise AlreadyCancelledException(f"El turno {appointment.id} ya está cancelado")
    if not is_valid_transition(appointment.state, new_state):
        valid = VALID_TRANSITIONS.get(appointment.state, [])
        raise InvalidTransitionException(
            f"No se puede cambiar de '{appointment.state.value}' a '{new_state.value}'. "
            f"Transiciones válidas: {', '.join(s.value for s in valid) or 'ninguna'}"
        )


# ── Alcance por rol ──────────────────────────────────
def ensure_patient_scope(actor: Actor, patient: Patient) -> None:
    if actor.role == UserRole.PATIENT and patient.user_id != actor.user_id:
        raise ForbiddenException("Un paciente solo puede operar sus propios turnos")


def ensure_doctor_scope(actor: Actor, doctor: Doctor) -> None:
    if actor.role == UserRole.DOCTOR and doctor.user_id != actor.user_id:
        raise ForbiddenException("Un doctor solo puede operar sus propios turnos")


def _check_version(appointment: Appointment, expected_version: int | None) -> None:
    if expected_version is not None and appointment.version != expected_version:
        raise ConstraintViolationException(
            f"El turno {appointment.id} está en la versión {appointment.version}, "
            f"se esperaba {expected_version}"
        )


class AppointmentService:
    def __init__(self, store: EntityStore, *, pending_ttl_minutes: int | None = None):
        self.store = store
        if pending_ttl_minutes is None:
            pending_ttl_minutes = get_settings().APPOINTMENT_PENDING_TTL_MINUTES
        self.pending_ttl_minutes = pending_ttl_minutes

    # ── Helpers de carga con bloqueo ─────────────────
    async def _lock_appointment(self, tx: StoreTransaction, appointment_id: int) -> Appointment:
        appointment = await tx.find_by_id(Appointment, appointment_id, for_update=True)
        if appointment is None:
            raise NotFoundException("Turno")
        return appointment

    async def _lock_patient(self, tx: StoreTransaction, patient_id: int) -> Patient:
        patient = await tx.find_by_id(Patient, patient_id, for_update=True)
        if patient is None:
            raise NotFoundException("Paciente")
        return patient

    async def _lock_doctors(self, tx: StoreTransaction, *doctor_ids: int) -> dict[int, Doctor]:
        doctors = {}
        for doctor_id in sorted(set(doctor_ids)):
            doctor = await tx.find_by_id(Doctor, doctor_id, for_update=True)
            if doctor is None:
                raise NotFoundException("Doctor")
            doctors[doctor_id] = doctor
        return doctors

    async def _refresh_next_slot(self, tx: StoreTransaction, doctor: Doctor, **extra) -> None:
        next_slot = await tx.earliest_active_slot(doctor.id)
        await tx.update(doctor, next_available_slot=next_slot, **extra)

    # ── Operaciones ──────────────────────────────────
    async def book(
        self,
        actor: Actor,
        *,
        patient_id: int,
        doctor_id: int,
        scheduled_at: datetime,
        reason: str | None = None,
    ) -> AppointmentResponse:
        """
        Reserva un turno en estado pending.
        Si otro turno activo ocupa el horario del doctor → SlotUnavailable.
        """
        scheduled_at = to_utc(scheduled_at)
        now = _now()

        async with self.store.transaction(actor) as tx:
            patient = await self._lock_patient(tx, patient_id)
            ensure_patient_scope(actor, patient)
            doctor = (await self._lock_doctors(tx, doctor_id))[doctor_id]
            if not doctor.is_active:
                raise ValidationException(f"El doctor {doctor_id} no está activo")

            if await tx.find_conflicting(doctor_id, scheduled_at) is not None:
                raise SlotUnavailableException(
                    f"El doctor {doctor_id} ya tiene un turno el {scheduled_at.isoformat()}"
                )

            expires_at = None
            if self.pending_ttl_minutes:
                expires_at = now + timedelta(minutes=self.pending_ttl_minutes)

            appointment = await tx.create(
                Appointment(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    scheduled_at=scheduled_at,
                    reason=reason or "",
                    state=AppointmentState.PENDING,
                    expires_at=expires_at,
                )
            )
            await self._refresh_next_slot(tx, doctor, last_consultation=now)
            await tx.update(
                patient,
                appointment_count=patient.appointment_count + 1,
                last_consultation=now,
            )

        logger.info(
            f"Turno {appointment.id} reservado: paciente {patient_id}, "
            f"doctor {doctor_id}, {scheduled_at.isoformat()}"
        )
        return AppointmentResponse.model_validate(appointment)

    async def cancel(
        self,
        actor: Actor,
        appointment_id: int,
        reason: str | None = None,
        *,
        expected_version: int | None = None,
    ) -> AppointmentResponse:
        async with self.store.transaction(actor) as tx:
            appointment = await self._cancel_locked(tx, actor, appointment_id, reason, expected_version)

        logger.info(f"Turno {appointment_id} cancelado por usuario {actor.user_id}")
        return AppointmentResponse.model_validate(appointment)

    async def _cancel_locked(
        self,
        tx: StoreTransaction,
        actor: Actor,
        appointment_id: int,
        reason: str | None,
        expected_version: int | None,
    ) -> Appointment:
        appointment = await self._lock_appointment(tx, appointment_id)
        _check_version(appointment, expected_version)
        _check_transition(appointment, AppointmentState.CANCELLED)

        patient = await self._lock_patient(tx, appointment.patient_id)
        ensure_patient_scope(actor, patient)
        doctor = (await self._lock_doctors(tx, appointment.doctor_id))[appointment.doctor_id]

        await tx.update(
            appointment,
            state=AppointmentState.CANCELLED,
            notes=reason,
            cancelled_at=_now(),
            expires_at=None,
        )
        await tx.update(patient, appointment_count=max(patient.appointment_count - 1, 0))
        await self._refresh_next_slot(tx, doctor)
        return appointment

    async def reassign_doctor(
        self,
        actor: Actor,
        appointment_id: int,
        new_doctor_id: int,
        *,
        expected_version: int | None = None,
    ) -> AppointmentResponse:
        now = _now()
        async with self.store.transaction(actor) as tx:
            appointment = await self._lock_appointment(tx, appointment_id)
            _check_version(appointment, expected_version)
            if appointment.state not in (AppointmentState.PENDING, AppointmentState.CONFIRMED):
                raise InvalidTransitionException(
                    f"No se puede reasignar un turno en estado '{appointment.state.value}'"
                )
            old_doctor_id = appointment.doctor_id
            if new_doctor_id == old_doctor_id:
                raise ValidationException("El turno ya está asignado a ese doctor")

            doctors = await self._lock_doctors(tx, old_doctor_id, new_doctor_id)
            new_doctor = doctors[new_doctor_id]
            if not new_doctor.is_active:
                raise ValidationException(f"El doctor {new_doctor_id} no está activo")

            conflict = await tx.find_conflicting(
                new_doctor_id, appointment.scheduled_at, exclude_id=appointment.id
            )
            if conflict is not None:
                raise SlotUnavailableException(
                    f"El doctor {new_doctor_id} ya tiene un turno en ese horario"
                )

            await tx.update(appointment, doctor_id=new_doctor_id)
            await self._refresh_next_slot(tx, doctors[old_doctor_id])
            await self._refresh_next_slot(tx, new_doctor, last_consultation=now)

        logger.info(
            f"Turno {appointment_id} reasignado: doctor {old_doctor_id} → {new_doctor_id}"
        )
        return AppointmentResponse.model_validate(appointment)

    async def confirm(
        self,
        actor: Actor,
        appointment_id: int,
        *,
        expected_version: int | None = None,
    ) -> AppointmentResponse:
        return await self._advance(
            actor, appointment_id, AppointmentState.CONFIRMED, expected_version
        )

    async def complete(
        self,
        actor: Actor,
        appointment_id: int,
        *,
        expected_version: int | None = None,
    ) -> AppointmentResponse:
        return await self._advance(
            actor, appointment_id, AppointmentState.COMPLETED, expected_version
        )

    async def _advance(
        self,
        actor: Actor,
        appointment_id: int,
        new_state: AppointmentState,
        expected_version: int | None,
    ) -> AppointmentResponse:
        async with self.store.transaction(actor) as tx:
            appointment = await self._lock_appointment(tx, appointment_id)
            _check_version(appointment, expected_version)
            _check_transition(appointment, new_state)
            if actor.role == UserRole.DOCTOR:
                doctor = await tx.find_by_id(Doctor, appointment.doctor_id)
                ensure_doctor_scope(actor, doctor)

            old_state = appointment.state
            await tx.update(appointment, state=new_state, expires_at=None)

        logger.info(
            f"Turno {appointment_id}: {old_state.value} → {new_state.value}"
        )
        return AppointmentResponse.model_validate(appointment)

    async def expire_pending_appointments(self, now: datetime | None = None) -> list[int]:
        """
        Cancela los turnos pendientes cuyo expires_at ya pasó.
        Cada turno se cancela en su propia transacción.
        """
        now = to_utc(now) if now else _now()
        async with self.store.session_factory() as session:
            result = await session.execute(
                select(Appointment.id)
                .where(
                    Appointment.state == AppointmentState.PENDING,
                    Appointment.expires_at.is_not(None),
                    Appointment.expires_at <= now,
                )
                .order_by(Appointment.id)
            )
            expired_ids = list(result.scalars().all())

        cancelled = []
        for appointment_id in expired_ids:
            try:
                async with self.store.transaction(SYSTEM_ACTOR) as tx:
                    appointment = await self._lock_appointment(tx, appointment_id)
                    # Pudo confirmarse entre la consulta y el bloqueo
                    if appointment.state != AppointmentState.PENDING:
                        continue
                    await self._cancel_locked(
                        tx, SYSTEM_ACTOR, appointment_id, "Turno pendiente vencido", None
                    )
            except (InvalidTransitionException, ConstraintViolationException) as exc:
                logger.warning(f"No se pudo expirar el turno {appointment_id}: {exc.detail}")
                continue
            cancelled.append(appointment_id)

        if cancelled:
            logger.info(f"Turnos pendientes vencidos cancelados: {cancelled}")
        return cancelled

    # ── Lecturas ─────────────────────────────────────
    async def get_appointment(self, actor: Actor, appointment_id: int) -> AppointmentResponse:
        async with self.store.session_factory() as session:
            appointment = await session.get(Appointment, appointment_id)
            if appointment is None:
                raise NotFoundException("Turno")
            if actor.role == UserRole.PATIENT:
                patient = await session.get(Patient, appointment.patient_id)
                ensure_patient_scope(actor, patient)
            return AppointmentResponse.model_validate(appointment)

    async def list_appointments(
        self,
        actor: Actor,
        *,
        page: int = 1,
        size: int = 20,
        patient_id: int | None = None,
        doctor_id: int | None = None,
        state: AppointmentState | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> AppointmentListResponse:
        """Lista turnos con paginación y filtros."""
        query = select(Appointment)

        # Un paciente solo ve sus propios turnos
        if actor.role == UserRole.PATIENT:
            query = query.join(Patient, Patient.id == Appointment.patient_id).where(
                Patient.user_id == actor.user_id
            )

        if patient_id:
            query = query.where(Appointment.patient_id == patient_id)
        if doctor_id:
            query = query.where(Appointment.doctor_id == doctor_id)
        if state:
            query = query.where(Appointment.state == state)
        if date_from:
            start_dt = datetime.combine(date_from, time.min).replace(tzinfo=timezone.utc)
            query = query.where(Appointment.scheduled_at >= start_dt)
        if date_to:
            end_dt = datetime.combine(date_to, time.max).replace(tzinfo=timezone.utc)
            query = query.where(Appointment.scheduled_at <= end_dt)

        async with self.store.session_factory() as session:
            count_query = select(func.count()).select_from(
                query.with_only_columns(Appointment.id).subquery()
            )
            total = (await session.execute(count_query)).scalar() or 0

            offset = (page - 1) * size
            query = query.order_by(Appointment.scheduled_at.desc(), Appointment.id.desc())
            result = await session.execute(query.offset(offset).limit(size))
            appointments = result.scalars().all()

        return AppointmentListResponse(
            items=[AppointmentResponse.model_validate(a) for a in appointments],
            total=total,
            page=page,
            size=size,
            pages=math.ceil(total / size) if total > 0 else 0,
        )
