"""Tests del Audit Recorder y del Audit Query Service."""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import func, select, text
from sqlalchemy.exc import OperationalError

from turnos.core.exceptions import NotFoundException, SlotUnavailableException, ValidationException
from turnos.models import AuditAction, AuditLog, RecordState
from turnos.services import audit_query_service, audit_service, registry_service
from turnos.tasks import audit_tasks


async def _audit_rows(store, table_name: str, record_id: int | None = None) -> list[AuditLog]:
    query = select(AuditLog).where(AuditLog.table_name == table_name)
    if record_id is not None:
        query = query.where(AuditLog.record_id == record_id)
    async with store.session_factory() as session:
        result = await session.execute(query.order_by(AuditLog.id))
        return list(result.scalars().all())


async def _count_audit(store) -> int:
    async with store.session_factory() as session:
        return (await session.execute(select(func.count(AuditLog.id)))).scalar()


async def _book(service, actor, patient, doctor, when):
    return await service.book(
        actor, patient_id=patient.id, doctor_id=doctor.id, scheduled_at=when, reason="Control"
    )


def _entry(table_name: str, record_id: int, actor_id: int | None, occurred_at: datetime) -> dict:
    return {
        "event_id": audit_service.new_event_id(),
        "table_name": table_name,
        "action": AuditAction.UPDATE.value,
        "record_id": record_id,
        "before_state": {"state": "pending"},
        "after_state": {"state": "confirmed"},
        "actor_user_id": actor_id,
        "occurred_at": occurred_at.isoformat(),
    }


class RecordingDispatcher:
    def __init__(self):
        self.delivered: list[dict] = []

    async def deliver(self, entries: list[dict]) -> None:
        self.delivered.extend(entries)


# ── Recorder ─────────────────────────────────────────

async def test_book_records_insert_with_pending_state(store, service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)

    rows = await _audit_rows(store, "appointments", appointment.id)
    assert len(rows) == 1
    assert rows[0].action == AuditAction.INSERT
    assert rows[0].before_state is None
    assert rows[0].after_state["state"] == "pending"
    assert rows[0].actor_user_id == admin.user_id


async def test_book_records_counter_updates(store, service, admin, doctor, patient, slot):
    await _book(service, admin, patient, doctor, slot)

    patient_updates = [
        r for r in await _audit_rows(store, "patients", patient.id) if r.action == AuditAction.UPDATE
    ]
    assert len(patient_updates) == 1
    assert patient_updates[0].before_state["appointment_count"] == 0
    assert patient_updates[0].after_state["appointment_count"] == 1

    doctor_updates = [
        r for r in await _audit_rows(store, "doctors", doctor.id) if r.action == AuditAction.UPDATE
    ]
    assert len(doctor_updates) == 1
    assert doctor_updates[0].before_state["next_available_slot"] is None
    assert doctor_updates[0].after_state["next_available_slot"] is not None


async def test_update_snapshots_before_and_after(store, admin, doctor):
    await registry_service.set_doctor_state(store, admin, doctor.id, RecordState.INACTIVE)

    update = (await _audit_rows(store, "doctors", doctor.id))[-1]
    assert update.action == AuditAction.UPDATE
    assert update.before_state["state"] == "active"
    assert update.after_state["state"] == "inactive"
    assert update.after_state["version"] == update.before_state["version"] + 1


async def test_delete_records_before_state(store, admin, specialty):
    from turnos.schemas.specialty import SpecialtyCreate

    spare = await registry_service.create_specialty(store, admin, SpecialtyCreate(name="Dermatología"))
    await registry_service.delete_specialty(store, admin, spare.id)

    rows = await _audit_rows(store, "specialties", spare.id)
    assert [r.action for r in rows] == [AuditAction.INSERT, AuditAction.DELETE]
    assert rows[-1].before_state["name"] == "Dermatología"
    assert rows[-1].after_state is None


async def test_rolled_back_operation_writes_no_audit(store, service, admin, doctor, patient, patient2, slot):
    await _book(service, admin, patient, doctor, slot)
    before = await _count_audit(store)

    with pytest.raises(SlotUnavailableException):
        await _book(service, admin, patient2, doctor, slot)

    assert await _count_audit(store) == before


async def test_audit_failure_does_not_block_business_write(monkeypatch, store, service, admin, doctor, patient, slot):
    dispatcher = RecordingDispatcher()
    store.audit_dispatcher = dispatcher

    original = audit_service.build_audit_rows
    calls = {"n": 0}

    def flaky_build(entries):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("INSERT INTO audit_log", {}, Exception("disk full"))
        return original(entries)

    monkeypatch.setattr(audit_service, "build_audit_rows", flaky_build)

    appointment = await _book(service, admin, patient, doctor, slot)

    # El turno quedó confirmado, la auditoría quedó diferida
    assert appointment.id is not None
    assert await _audit_rows(store, "appointments", appointment.id) == []
    assert {e["table_name"] for e in dispatcher.delivered} == {"appointments", "doctors", "patients"}

    written = await audit_service.write_entries(store.session_factory, dispatcher.delivered)
    assert written == len(dispatcher.delivered)
    # Re-entrega duplicada: idempotente por event_id
    assert await audit_service.write_entries(store.session_factory, dispatcher.delivered) == 0

    rows = await _audit_rows(store, "appointments", appointment.id)
    assert len(rows) == 1
    assert rows[0].after_state["state"] == "pending"


async def test_dispatcher_enqueues_after_inline_retries(monkeypatch, store):
    attempts = {"n": 0}
    enqueued = []

    async def failing_write(session_factory, entries):
        attempts["n"] += 1
        raise OperationalError("INSERT INTO audit_log", {}, Exception("connection lost"))

    async def fake_enqueue(entries):
        enqueued.extend(entries)

    monkeypatch.setattr(audit_service, "write_entries", failing_write)
    dispatcher = audit_service.AuditDispatcher(store.session_factory, inline_retries=2)
    monkeypatch.setattr(dispatcher, "enqueue", fake_enqueue)

    entries = [_entry("appointments", 1, None, datetime.now(timezone.utc))]
    await dispatcher.deliver(entries)

    assert attempts["n"] == 2
    assert enqueued == entries


@pytest.mark.parametrize(
    "error",
    [BrokerError("redis unreachable"), RuntimeError("Retry limit exceeded while trying to reconnect")],
)
async def test_unreachable_broker_logs_critical(monkeypatch, store, caplog, error):
    def broken_apply_async(*args, **kwargs):
        raise error

    monkeypatch.setattr(audit_tasks.write_audit_entries_task, "apply_async", broken_apply_async)
    dispatcher = audit_service.AuditDispatcher(store.session_factory)
    entry = _entry("appointments", 1, None, datetime.now(timezone.utc))

    with caplog.at_level(logging.CRITICAL, logger="turnos.services.audit_service"):
        await dispatcher.enqueue([entry])

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert entry["event_id"] in critical[0].getMessage()


async def _block_audit_inserts(store) -> None:
    """Toda escritura en audit_log falla en la base, dentro o fuera del SAVEPOINT."""
    async with store.engine.begin() as conn:
        await conn.execute(
            text(
                "CREATE TRIGGER audit_log_blocked BEFORE INSERT ON audit_log "
                "BEGIN SELECT RAISE(ABORT, 'audit_log bloqueado'); END"
            )
        )


async def test_audit_store_down_and_broker_down_booking_still_commits(
    monkeypatch, store, service, admin, doctor, patient, slot, caplog
):
    await _block_audit_inserts(store)
    published = {"n": 0}

    def broken_apply_async(*args, **kwargs):
        published["n"] += 1
        raise RuntimeError("Retry limit exceeded while trying to reconnect to the Celery redis result store backend")

    monkeypatch.setattr(audit_tasks.write_audit_entries_task, "apply_async", broken_apply_async)
    audit_before = await _count_audit(store)

    with caplog.at_level(logging.WARNING):
        appointment = await _book(service, admin, patient, doctor, slot)

    # El turno quedó confirmado en la base
    stored = await service.get_appointment(admin, appointment.id)
    assert stored.state.value == "pending"
    assert await _count_audit(store) == audit_before

    messages = [r.getMessage() for r in caplog.records]
    assert any("entradas diferidas" in m for m in messages)
    assert sum("Reintento" in m for m in messages) == store.audit_dispatcher.inline_retries
    assert published["n"] == 1

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert "RuntimeError" in critical[0].getMessage()
    assert "appointments" in critical[0].getMessage()


async def test_dispatcher_error_after_commit_is_contained(store, service, admin, doctor, patient, slot, caplog):
    class ExplodingDispatcher:
        async def deliver(self, entries):
            raise RuntimeError("dispatcher caído")

    await _block_audit_inserts(store)
    store.audit_dispatcher = ExplodingDispatcher()

    with caplog.at_level(logging.CRITICAL, logger="turnos.store"):
        appointment = await _book(service, admin, patient, doctor, slot)

    assert (await service.get_appointment(admin, appointment.id)).id == appointment.id
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


# ── Consultas ────────────────────────────────────────

async def test_summary_after_book_and_cancel(store, service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.cancel(admin, appointment.id, "x")

    async with store.session_factory() as db:
        summary = await audit_query_service.get_appointment_summary(db, appointment.id)

    assert summary.was_cancelled is True
    assert summary.created.state == "pending"
    assert [(t.from_state, t.to_state) for t in summary.state_changes] == [("pending", "cancelled")]
    assert summary.total_changes == 2

    payload = summary.model_dump(by_alias=True)
    assert payload["fue_cancelado"] is True
    assert payload["estadoCambios"][0]["to_state"] == "cancelled"


async def test_summary_unknown_appointment(store):
    async with store.session_factory() as db:
        with pytest.raises(NotFoundException):
            await audit_query_service.get_appointment_summary(db, 999)


async def test_trail_is_chronological(store, service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.confirm(admin, appointment.id)
    await service.complete(admin, appointment.id)

    async with store.session_factory() as db:
        trail = await audit_query_service.get_trail(db, "appointments", appointment.id)

    assert trail.total_changes == 3
    assert [r.action for r in trail.trail] == [
        AuditAction.INSERT,
        AuditAction.UPDATE,
        AuditAction.UPDATE,
    ]
    assert [r.after_state["state"] for r in trail.trail] == ["pending", "confirmed", "completed"]


async def test_changes_include_field_diff(store, service, admin, doctor, patient, slot):
    appointment = await _book(service, admin, patient, doctor, slot)
    await service.confirm(admin, appointment.id)

    async with store.session_factory() as db:
        changes = await audit_query_service.get_changes(db, "appointments", appointment.id)

    assert len(changes.changes) == 1
    diff = changes.changes[0].diff
    assert diff["state"].before == "pending"
    assert diff["state"].after == "confirmed"
    assert "reason" not in diff


async def test_invalid_table_is_rejected(store):
    async with store.session_factory() as db:
        with pytest.raises(ValidationException):
            await audit_query_service.get_trail(db, "payments", 1)


async def test_previous_state(store, admin, doctor):
    async with store.session_factory() as db:
        assert await audit_query_service.get_previous_state(db, "doctors", doctor.id) is None

    await registry_service.set_doctor_state(store, admin, doctor.id, RecordState.INACTIVE)

    async with store.session_factory() as db:
        previous = await audit_query_service.get_previous_state(db, "doctors", doctor.id)

    assert previous.action == AuditAction.UPDATE
    assert previous.state["state"] == "active"


async def test_detect_anomalies(store, admin):
    now = datetime.now(timezone.utc).replace(second=30, microsecond=0)
    burst = [_entry("appointments", n, admin.user_id, now) for n in range(5)]
    calm = [_entry("doctors", 1, admin.user_id, now)]
    await audit_service.write_entries(store.session_factory, burst + calm)

    async with store.session_factory() as db:
        report = await audit_query_service.detect_anomalies(
            db, threshold=3, now=now + timedelta(minutes=1)
        )

    assert report.alert is True
    assert report.total == 1
    assert report.anomalies[0].table_name == "appointments"
    assert report.anomalies[0].changes == 5
    assert report.anomalies[0].actor_user_id == admin.user_id


async def test_stats_and_validation(store, service, admin, doctor, patient, slot):
    await _book(service, admin, patient, doctor, slot)

    async with store.session_factory() as db:
        stats = await audit_query_service.get_stats(db)
        report = await audit_query_service.validate_audit_system(db)

    assert stats.by_table["appointments"]["insert"] == 1
    assert stats.by_table["patients"]["update"] == 1
    assert report.table_present is True
    assert "idx_audit_table_record" in report.indexes
    # El admin del fixture se creó sin actor
    assert report.records_without_actor >= 1
    assert report.missing_insert_records["appointments"] == 0
    assert report.ok is True
