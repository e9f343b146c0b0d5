"""Tests del motor de turnos: reservas, cancelaciones, reasignaciones y transiciones."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from turnos.core.exceptions import (
    AlreadyCancelledException,
    ConstraintViolationException,
    ForbiddenException,
    InvalidTransitionException,
    SlotUnavailableException,
    ValidationException,
)
from turnos.core.security import Actor
from turnos.models import Appointment, AppointmentState, Doctor, Patient, RecordState, UserRole
from turnos.schemas.appointment import AppointmentResponse
from turnos.services import registry_service
from turnos.store import StoreTransaction


async def _get(store, model, record_id):
    async with store.session_factory() as session:
        return await session.get(model, record_id)


def _naive(value: datetime | None) -> datetime | None:
    # SQLite devuelve datetimes sin zona
    return value.replace(tzinfo=None) if value else None


async def _book(service, actor, patient, doctor, when, reason="Control anual"):
    return await service.book(
        actor,
        patient_id=patient.id,
        doctor_id=doctor.id,
        scheduled_at=when,
        reason=reason,
    )


# ── Reserva ──────────────────────────────────────────

async def test_book_then_same_slot_is_unavailable(service, admin, doctor, patient, patient2, slot):
    first = await _book(service, admin, patient, doctor, slot)
    assert first.state == AppointmentState.PENDING
    assert first.version == 1

    with pytest.raises(SlotUnavailableException):
        await _book(service, admin, patient2, doctor, slot)


async def test_cancel_frees_slot(service, admin, doctor, patient, patient2, slot):
    first = await _book(service, admin, patient, doctor, slot)
    cancelled = await service.cancel(admin, first.id, "x")
    assert cancelled.state == AppointmentState.CANCELLED
    assert cancelled.notes == "x"
    assert cancelled.cancelled_at is not None

    second = await _book(service, admin, patient2, doctor, slot)
    assert second.state == AppointmentState.PENDING
    assert second.id != first.id


async def test_concurrent_bookings_only_one_wins(store, service, admin, doctor, patient, patient2, slot):
    results = await asyncio.gather(
        store.retrying(_book, service, admin, patient, doctor, slot),
        store.retrying(_book, service, admin, patient2, doctor, slot),
        return_exceptions=True,
    )

    booked = [r for r in results if isinstance(r, AppointmentResponse)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(booked) == 1
    assert len(failed) == 1
    assert isinstance(failed[0], (SlotUnavailableException, ConstraintViolationException))

    async with store.session_factory() as session:
        active = await session.execute(
            select(func.count(Appointment.id)).where(
                Appointment.doctor_id == doctor.id,
                Appointment.state != AppointmentState.CANCELLED,
            )
        )
        assert active.scalar() == 1


async def test_unique_index_backstops_conflict_check(monkeypatch, service, admin, doctor, patient, patient2, slot):
    """Sin la verificación previa, el índice único parcial rechaza el segundo turno."""
    await _book(service, admin, patient, doctor, slot)

    async def _no_conflict(self, *args, **kwargs):
        return None

    monkeypatch.setattr(StoreTransaction, "find_conflicting", _no_conflict)

    with pytest.raises(SlotUnavailableException):
        await _book(service, admin, patient2, doctor, slot)

    reloaded = await _get(service.store, Patient, patient2.id)
    assert reloaded.appointment_count == 0


async def test_book_updates_derived_fields(store, service, admin, doctor, patient, slot):
    await _book(service, admin, patient, doctor, slot + timedelta(days=1))
    await _book(service, admin, patient, doctor, slot)

    reloaded_doctor = await _get(store, Doctor, doctor.id)
    assert _naive(reloaded_doctor.next_available_slot) == _naive(slot)
    assert reloaded_doctor.last_consultation is not None

    reloaded_patient = await _get(store, Patient, patient.id)
    assert reloaded_patient.appointment_count == 2
    assert reloaded_patient.last_consultation is not None


async def test_book_with_inactive_doctor_fails(store, service, admin, doctor, patient, slot):
    await registry_service.set_doctor_state(store, admin, doctor.id, RecordState.INACTIVE)

    with pytest.raises(ValidationException):
        await _book(service, admin, patient, doctor, slot)


async def test_patient_cannot_book_for_another_patient(service, doctor, patient, patient2, slot):
    actor = Actor(user_id=patient.user_id, role=UserRole.PATIENT)

    with pytest.raises(ForbiddenException):
        await _book(service, actor, patient2, doctor, slot)

    own = await _book(service, actor, patient, doctor, slot)
    assert own.patient_id == patient.id


# ── Cancelación ──────────────────────────────────────

async def test_appointment_count_tracks_active_appointments(store, service, admin, doctor, patient, slot):
    first = await _book(service, admin, patient, doctor, slot)
    await _book(service, admin, patient, doctor, slot + timedelta(hours=1))
    await service.cancel(admin, first.id)

    with pytest.raises(AlreadyCancelledException):
        await service.cancel(admin, first.id)

    reloaded = await _get(store, Patient, patient.id)
    async with store.session_factory() as session:
        active = await session.execute(
            select(func.count(Appointment.id)).where(
                Appointment.patient_id == patient.id,
                Appointment.state != AppointmentState.CANCELLED,
            )
        )
    assert reloaded.appointment_count == active.scalar() == 1

    reloaded_doctor = await _get(store, Doctor, doctor.id)
    assert _naive(reloaded_doctor.next_available_slot) == _naive(slot + timedelta(hours=1))


async def test_cancel_completed_is_invalid(service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.confirm(admin, appointment.id)
    await service.complete(admin, appointment.id)

    with pytest.raises(InvalidTransitionException) as exc_info:
        await service.cancel(admin, appointment.id)
    assert not isinstance(exc_info.value, AlreadyCancelledException)


async def test_cancel_with_stale_version(service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.confirm(admin, appointment.id, expected_version=appointment.version)

    with pytest.raises(ConstraintViolationException):
        await service.cancel(admin, appointment.id, expected_version=appointment.version)


# ── Transiciones ─────────────────────────────────────

async def test_complete_twice_changes_once(store, service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.confirm(admin, appointment.id)
    completed = await service.complete(admin, appointment.id)
    assert completed.state == AppointmentState.COMPLETED

    with pytest.raises(InvalidTransitionException):
        await service.complete(admin, appointment.id)

    reloaded = await _get(store, Appointment, appointment.id)
    assert reloaded.state == AppointmentState.COMPLETED
    assert reloaded.version == completed.version


async def test_complete_pending_is_invalid(service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)

    with pytest.raises(InvalidTransitionException):
        await service.complete(admin, appointment.id)


async def test_confirm_clears_expiry(service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    assert appointment.expires_at is not None

    confirmed = await service.confirm(admin, appointment.id)
    assert confirmed.state == AppointmentState.CONFIRMED
    assert confirmed.expires_at is None


async def test_doctor_only_confirms_own_appointments(service, admin, doctor, doctor2, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)

    with pytest.raises(ForbiddenException):
        await service.confirm(Actor(user_id=doctor2.user_id, role=UserRole.DOCTOR), appointment.id)

    confirmed = await service.confirm(
        Actor(user_id=doctor.user_id, role=UserRole.DOCTOR), appointment.id
    )
    assert confirmed.state == AppointmentState.CONFIRMED


# ── Reasignación ─────────────────────────────────────

async def test_reassign_to_busy_doctor_leaves_original(store, service, admin, doctor, doctor2, patient, patient2, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await _book(service, admin, patient2, doctor2, slot)

    with pytest.raises(SlotUnavailableException):
        await service.reassign_doctor(admin, appointment.id, doctor2.id)

    reloaded = await _get(store, Appointment, appointment.id)
    assert reloaded.doctor_id == doctor.id
    assert reloaded.version == appointment.version


async def test_reassign_recomputes_both_doctors(store, service, admin, doctor, doctor2, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)

    moved = await service.reassign_doctor(admin, appointment.id, doctor2.id)
    assert moved.doctor_id == doctor2.id

    old = await _get(store, Doctor, doctor.id)
    new = await _get(store, Doctor, doctor2.id)
    assert old.next_available_slot is None
    assert _naive(new.next_available_slot) == _naive(slot)
    assert new.last_consultation is not None


async def test_reassign_to_same_doctor_is_rejected(service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)

    with pytest.raises(ValidationException):
        await service.reassign_doctor(admin, appointment.id, doctor.id)


async def test_reassign_cancelled_is_invalid(service, admin, doctor, doctor2, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.cancel(admin, appointment.id)

    with pytest.raises(InvalidTransitionException):
        await service.reassign_doctor(admin, appointment.id, doctor2.id)


# ── Expiración de pendientes ─────────────────────────

async def test_expire_pending_appointments(store, service, admin, doctor, patient, slot):
    stale = await _book(service, admin, patient, doctor, slot)
    kept = await _book(service, admin, patient, doctor, slot + timedelta(hours=1))
    await service.confirm(admin, kept.id)

    later = datetime.now(timezone.utc) + timedelta(hours=2)
    cancelled = await service.expire_pending_appointments(now=later)
    assert cancelled == [stale.id]

    reloaded = await _get(store, Appointment, stale.id)
    assert reloaded.state == AppointmentState.CANCELLED
    reloaded_patient = await _get(store, Patient, patient.id)
    assert reloaded_patient.appointment_count == 1

    assert await service.expire_pending_appointments(now=later) == []


# ── Lecturas ─────────────────────────────────────────

async def test_list_appointments_scoped_to_patient(service, admin, doctor, patient, patient2, slot):
    await _book(service, admin, patient, doctor, slot)
    await _book(service, admin, patient2, doctor, slot + timedelta(hours=1))

    everything = await service.list_appointments(admin)
    assert everything.total == 2

    own = await service.list_appointments(Actor(user_id=patient.user_id, role=UserRole.PATIENT))
    assert own.total == 1
    assert own.items[0].patient_id == patient.id
