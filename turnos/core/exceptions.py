"""
Excepciones de la API con un `kind` estable por tipo de error.
Los servicios las lanzan directamente; el handler global las serializa
como {"detail": ..., "kind": ...}.
"""

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base de errores visibles al cliente."""

    kind: str = "error"

    def __init__(
        self,
        status_code: int,
        detail: str,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class CredentialsException(AppException):
    """Error de credenciales inválidas (401)."""

    kind = "unauthorized"

    def __init__(self, detail: str = "Credenciales inválidas"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenException(AppException):
    """Error de permisos insuficientes (403)."""

    kind = "forbidden"

    def __init__(self, detail: str = "No tiene permisos para realizar esta acción"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFoundException(AppException):
    """Recurso no encontrado (404)."""

    kind = "not_found"

    def __init__(self, resource: str = "Recurso", detail: str | None = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail or f"{resource} no encontrado",
        )


class ConflictException(AppException):
    """Conflicto de datos (409), ej: email o matrícula duplicada."""

    kind = "conflict"

    def __init__(self, detail: str = "El recurso ya existe"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class SlotUnavailableException(ConflictException):
    """El doctor ya tiene un turno activo en ese horario (409)."""

    kind = "slot_unavailable"

    def __init__(self, detail: str = "El doctor no está disponible en ese horario"):
        super().__init__(detail=detail)


class InvalidTransitionException(ConflictException):
    """Transición no permitida por la state machine del turno (409)."""

    kind = "invalid_transition"

    def __init__(self, detail: str = "Transición de estado inválida"):
        super().__init__(detail=detail)


class AlreadyCancelledException(InvalidTransitionException):
    """El turno ya estaba cancelado (409)."""

    kind = "already_cancelled"

    def __init__(self, detail: str = "El turno ya está cancelado"):
        super().__init__(detail=detail)


class ConstraintViolationException(ConflictException):
    """Actualización perdida: la versión del registro cambió (409)."""

    kind = "constraint_violation"

    def __init__(
        self,
        detail: str = "El registro fue modificado por otra operación, reintente",
    ):
        super().__init__(detail=detail)


class ValidationException(AppException):
    """Error de validación de negocio (422)."""

    kind = "validation_error"

    def __init__(self, detail: str = "Error de validación"):
        super().__init__(status_code=422, detail=detail)


class TransientStoreException(AppException):
    """Timeout o pérdida de conexión con la base de datos (503, reintentable)."""

    kind = "transient_store_error"

    def __init__(self, detail: str = "Base de datos no disponible temporalmente"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "1"},
        )


class AuditWriteFailure(Exception):
    """
    Fallo al persistir registros de auditoría.
    Nunca se propaga al cliente: se registra en el log y se reintenta.
    """

    def __init__(self, message: str, entries: list[dict] | None = None):
        super().__init__(message)
        self.entries = entries or []
