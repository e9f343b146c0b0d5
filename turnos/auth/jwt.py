"""
Gestión de JWT (PyJWT).
La emisión de tokens vive en el servicio de login externo; aquí se
verifica el access token y se expone create_access_token para scripts
y tests.
"""

from datetime import datetime, timedelta, timezone

import jwt

from turnos.config import get_settings


class TokenType:
    ACCESS = "access"


def create_access_token(
    user_id: int,
    role: str,
    extra_claims: dict | None = None,
) -> str:
    """Crea un access token JWT de corta duración."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": TokenType.ACCESS,
        "iat": now,
        "exp": now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    }
    if extra_claims:
        payload.update(extra_claims)

    return jwt.encode(
        payload,
        settings.jwt_private_key,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> dict:
    """
    Decodifica y verifica un token JWT.
    Lanza jwt.InvalidTokenError si el token es inválido o expirado.
    """
    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_public_key,
        algorithms=[settings.JWT_ALGORITHM],
    )
