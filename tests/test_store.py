"""Tests de la traducción de errores del Entity Store y de la configuración."""

import logging

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from turnos.config import DEV_JWT_SECRET, Settings
from turnos.core.exceptions import (
    ConstraintViolationException,
    SlotUnavailableException,
    TransientStoreException,
    ValidationException,
)
from turnos.models import User, UserRole
from turnos.store import translate_error


def _integrity(message: str) -> IntegrityError:
    return IntegrityError("INSERT INTO ...", {}, Exception(message))


def test_translate_slot_violation():
    exc = _integrity(
        "UNIQUE constraint failed: appointments.doctor_id, appointments.scheduled_at"
    )
    assert isinstance(translate_error(exc), SlotUnavailableException)


def test_translate_stale_and_transient():
    assert isinstance(translate_error(StaleDataError("0 rows matched")), ConstraintViolationException)
    lost = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
    assert isinstance(translate_error(lost), TransientStoreException)


def test_integrity_detail_stays_in_the_log(caplog):
    exc = _integrity("NOT NULL constraint failed: users.email")

    with caplog.at_level(logging.WARNING, logger="turnos.store"):
        translated = translate_error(exc)

    assert isinstance(translated, ValidationException)
    assert "users.email" not in translated.detail
    assert any("users.email" in r.getMessage() for r in caplog.records)


async def test_integrity_error_through_transaction(store, admin):
    with pytest.raises(ValidationException) as info:
        async with store.transaction(admin) as tx:
            await tx.create(User(email=None, first_name="Sin", last_name="Email", role=UserRole.PATIENT))

    assert "users" not in info.value.detail
    assert info.value.kind == "validation_error"


# ── Configuración ────────────────────────────────────

def test_production_rejects_development_secret():
    with pytest.raises(ValidationError):
        Settings(APP_ENV="production", JWT_ALGORITHM="HS256", JWT_SECRET_KEY=DEV_JWT_SECRET)


def test_production_accepts_own_secret_or_rs256():
    own = Settings(APP_ENV="production", JWT_SECRET_KEY="x" * 48)
    assert own.jwt_private_key == "x" * 48

    rs256 = Settings(APP_ENV="production", JWT_ALGORITHM="RS256", JWT_SECRET_KEY=DEV_JWT_SECRET)
    assert rs256.is_production
