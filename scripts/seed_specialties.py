"""
Seed de especialidades médicas y de un usuario admin inicial.

Uso:
    python scripts/seed_specialties.py [email_admin]

Crea las especialidades que falten (por nombre, sin distinguir
mayúsculas). Si se indica un email, crea el admin si no existe e
imprime un access token para operar la API.
"""

import asyncio
import sys
from pathlib import Path

from sqlalchemy import func, select

# Agregar el directorio raíz al path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from turnos.auth.jwt import create_access_token  # noqa: E402
from turnos.core.security import SYSTEM_ACTOR  # noqa: E402
from turnos.models import Specialty, User, UserRole  # noqa: E402
from turnos.store import EntityStore  # noqa: E402

DEFAULT_SPECIALTIES = [
    ("Clínica Médica", "Atención primaria de adultos"),
    ("Pediatría", "Niños y adolescentes"),
    ("Cardiología", "Corazón y sistema circulatorio"),
    ("Dermatología", "Piel, pelo y uñas"),
    ("Ginecología", "Salud reproductiva femenina"),
    ("Traumatología", "Sistema músculo-esquelético"),
    ("Oftalmología", "Ojos y visión"),
    ("Otorrinolaringología", "Oído, nariz y garganta"),
]


async def seed(admin_email: str | None) -> None:
    store = EntityStore()
    try:
        created = 0
        async with store.transaction(SYSTEM_ACTOR) as tx:
            for name, description in DEFAULT_SPECIALTIES:
                result = await tx.session.execute(
                    select(Specialty.id).where(func.lower(Specialty.name) == name.lower())
                )
                if result.scalar_one_or_none() is None:
                    await tx.create(Specialty(name=name, description=description))
                    created += 1
        print(f"Especialidades: {created} creadas, {len(DEFAULT_SPECIALTIES) - created} ya existían.")

        if admin_email:
            async with store.transaction(SYSTEM_ACTOR) as tx:
                result = await tx.session.execute(select(User).where(User.email == admin_email))
                admin = result.scalar_one_or_none()
                if admin is None:
                    admin = await tx.create(
                        User(
                            email=admin_email,
                            first_name="Admin",
                            last_name="Clínica",
                            role=UserRole.ADMIN,
                        )
                    )
                    print(f"Admin {admin_email} creado (id {admin.id}).")
                elif admin.role != UserRole.ADMIN:
                    print(f"ERROR: {admin_email} existe con rol {admin.role.value}")
                    sys.exit(1)
            print(f"Access token:\n{create_access_token(admin.id, admin.role.value)}")
    finally:
        await store.dispose()


def main():
    admin_email = sys.argv[1] if len(sys.argv) > 1 else None
    asyncio.run(seed(admin_email))


if __name__ == "__main__":
    main()
