"""
Fixtures compartidas para Pytest.
Configura base de datos de test, datos base y clientes HTTP.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from turnos.auth.jwt import create_access_token
from turnos.config import Settings
from turnos.core.security import Actor
from turnos.main import app
from turnos.models.user import User, UserRole
from turnos.schemas.doctor import DoctorCreate
from turnos.schemas.patient import PatientCreate
from turnos.schemas.specialty import SpecialtyCreate
from turnos.services import registry_service
from turnos.services.appointment_service import AppointmentService
from turnos.store import EntityStore


@pytest.fixture
def slot() -> datetime:
    """Horario de turno de test (siempre en el futuro, UTC)."""
    return (datetime.now(timezone.utc) + timedelta(days=7)).replace(
        hour=10, minute=0, second=0, microsecond=0
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DEBUG=False,
        TX_RETRY_BASE_DELAY=0.01,
        APPOINTMENT_PENDING_TTL_MINUTES=60,
    )


@pytest_asyncio.fixture
async def store(tmp_path, test_settings) -> AsyncGenerator[EntityStore, None]:
    """EntityStore sobre SQLite (archivo por test: varias conexiones ven los mismos datos)."""
    store = EntityStore(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", settings=test_settings)
    await store.create_all()
    yield store
    await store.drop_all()
    await store.dispose()


@pytest.fixture
def service(store: EntityStore) -> AppointmentService:
    return AppointmentService(store, pending_ttl_minutes=60)


# ── Datos base ───────────────────────────────────────
@pytest_asyncio.fixture
async def admin_user(store: EntityStore) -> User:
    """Crea un usuario admin de test."""
    async with store.transaction() as tx:
        user = await tx.create(
            User(
                email="admin@test.com",
                first_name="Admin",
                last_name="Test",
                role=UserRole.ADMIN,
            )
        )
    return user


@pytest.fixture
def admin(admin_user: User) -> Actor:
    return Actor(user_id=admin_user.id, role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def specialty(store: EntityStore, admin: Actor):
    return await registry_service.create_specialty(
        store, admin, SpecialtyCreate(name="Cardiología")
    )


async def _register_doctor(store, admin, specialty, n: int):
    return await registry_service.register_doctor(
        store,
        admin,
        DoctorCreate(
            email=f"doctor{n}@test.com",
            first_name="Doctor",
            last_name=f"Número {n}",
            specialty_id=specialty.id,
            license_number=f"MP-{1000 + n}",
            phone="3415550000",
        ),
    )


async def _register_patient(store, admin, n: int):
    return await registry_service.register_patient(
        store,
        admin,
        PatientCreate(
            email=f"paciente{n}@test.com",
            first_name="Paciente",
            last_name=f"Número {n}",
        ),
    )


@pytest_asyncio.fixture
async def doctor(store, admin, specialty):
    return await _register_doctor(store, admin, specialty, 1)


@pytest_asyncio.fixture
async def doctor2(store, admin, specialty):
    return await _register_doctor(store, admin, specialty, 2)


@pytest_asyncio.fixture
async def patient(store, admin):
    return await _register_patient(store, admin, 1)


@pytest_asyncio.fixture
async def patient2(store, admin):
    return await _register_patient(store, admin, 2)


# ── Cliente HTTP ─────────────────────────────────────
@pytest_asyncio.fixture
async def client(store: EntityStore) -> AsyncGenerator[AsyncClient, None]:
    """Cliente HTTP de test que usa el store de test."""
    app.state.store = store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app.state.store


def _auth_headers(user_id: int, role: UserRole) -> dict:
    token = create_access_token(user_id, role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_headers():
    return _auth_headers


@pytest.fixture
def admin_headers(admin_user: User) -> dict:
    return _auth_headers(admin_user.id, UserRole.ADMIN)
