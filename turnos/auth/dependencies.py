"""
Dependencies de FastAPI para autenticación y autorización.
"""

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from turnos.auth.jwt import TokenType, decode_token
from turnos.auth.rbac import has_permission
from turnos.core.exceptions import CredentialsException, ForbiddenException
from turnos.core.security import Actor
from turnos.database import get_db
from turnos.models.user import RecordState, User

# ── Security scheme ──────────────────────────────────
security = HTTPBearer(auto_error=False)


# ── Token payload tipado ─────────────────────────────
class TokenPayload:
    """Datos extraídos del token JWT decodificado."""

    def __init__(self, payload: dict):
        try:
            self.user_id: int = int(payload["sub"])
        except (KeyError, ValueError):
            raise CredentialsException("Token sin sujeto válido")
        self.role: str = payload.get("role", "")
        self.token_type: str = payload.get("type", TokenType.ACCESS)


# ── Obtener usuario actual ───────────────────────────
async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency que:
    1. Decodifica el JWT del header Authorization
    2. Carga el usuario activo de la DB
    """
    if credentials is None:
        raise CredentialsException("Falta el token de acceso")
    try:
        payload = decode_token(credentials.credentials)
    except jwt.InvalidTokenError:
        raise CredentialsException("Token inválido o expirado")

    token_data = TokenPayload(payload)

    # Verificar que es un access token
    if token_data.token_type != TokenType.ACCESS:
        raise CredentialsException("Tipo de token inválido")

    result = await db.execute(
        select(User).where(
            User.id == token_data.user_id,
            User.state == RecordState.ACTIVE,
        )
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise CredentialsException("Usuario no encontrado o inactivo")

    return user


async def get_actor(user: User = Depends(get_current_user)) -> Actor:
    return Actor(user_id=user.id, role=user.role)


# ── Factory de dependency con permisos ───────────
def require_permission(resource: str, action: str):
    """
    Factory que crea un dependency que verifica el permiso del rol
    sobre (recurso, acción) en la tabla RBAC.

    Uso:
        @router.post("/specialties")
        async def create(actor: Actor = Depends(require_permission("specialty", "create"))):
            ...
    """

    async def _check_permission(actor: Actor = Depends(get_actor)) -> Actor:
        if not has_permission(actor.role, resource, action):
            raise ForbiddenException(
                f"El rol {actor.role.value} no puede '{action}' sobre {resource}"
            )
        return actor

    return _check_permission
