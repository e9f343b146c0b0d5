"""
Identidad del llamador que recibe el motor de turnos.
El motor nunca re-autentica: confía en el Actor que arma la capa de acceso.
"""

from dataclasses import dataclass

from turnos.models.user import UserRole


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: UserRole


# Tareas de mantenimiento (ej: expiración de turnos pendientes)
SYSTEM_ACTOR = Actor(user_id=None, role=UserRole.ADMIN)
