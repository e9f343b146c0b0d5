"""
Configuración de base de datos con SQLAlchemy 2.0 async.
El engine y la session factory no son globales: los crea y los
libera el EntityStore durante el ciclo de vida de la aplicación.
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Session


# ── Base declarativa ─────────────────────────────────
class Base(DeclarativeBase):
    pass


def enum_values(enum_cls) -> list[str]:
    """Persiste los enums por valor ("pending") y no por nombre ("PENDING")."""
    return [member.value for member in enum_cls]


# ── Sesión auditada ──────────────────────────────────
class AuditedSession(Session):
    """
    Sesión síncrona subyacente de cada AsyncSession.
    El Audit Recorder escucha sus eventos de flush.
    """


def build_engine(
    url: str,
    *,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Crea el engine async; SQLite no admite parámetros de pool."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        sync_session_class=AuditedSession,
        expire_on_commit=False,
    )


# ── Dependency: sesión de DB ─────────────────────────
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency de FastAPI que provee una sesión de lectura.
    Las escrituras del motor de turnos abren su propia transacción
    a través del EntityStore.
    """
    store = request.app.state.store
    async with store.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
