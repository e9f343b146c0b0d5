"""
Definición de permisos RBAC por rol.
Mapea qué acciones puede realizar cada rol.
"""

from turnos.models.user import UserRole

_ALL = [UserRole.ADMIN, UserRole.DOCTOR, UserRole.PATIENT]

# ── Permisos por recurso ─────────────────────────────
# Formato: {recurso: {acción: [roles permitidos]}}
PERMISSIONS: dict[str, dict[str, list[UserRole]]] = {
    "appointment": {
        "create": [UserRole.ADMIN, UserRole.PATIENT],
        "read": _ALL,
        "cancel": _ALL,
        "reassign": [UserRole.ADMIN],
        "confirm": [UserRole.ADMIN, UserRole.DOCTOR],
        "complete": [UserRole.ADMIN, UserRole.DOCTOR],
    },
    "attachment": {
        "create": [UserRole.ADMIN, UserRole.DOCTOR],
        "read": _ALL,
    },
    "doctor": {
        "create": [UserRole.ADMIN],
        "update": [UserRole.ADMIN],
    },
    "patient": {
        "create": [UserRole.ADMIN],
        "link_federated": [UserRole.ADMIN, UserRole.PATIENT],
    },
    "specialty": {
        "create": [UserRole.ADMIN],
        "delete": [UserRole.ADMIN],
    },
    "payment": {
        "create": [UserRole.ADMIN, UserRole.PATIENT],
        # Notificaciones de la pasarela llegan con una cuenta de servicio admin
        "gateway": [UserRole.ADMIN],
    },
    "audit_log": {
        "read": [UserRole.ADMIN],
    },
}


def has_permission(role: UserRole, resource: str, action: str) -> bool:
    """Verifica si un rol tiene permiso para una acción en un recurso."""
    resource_perms = PERMISSIONS.get(resource, {})
    allowed_roles = resource_perms.get(action, [])
    return role in allowed_roles
