"""
Schemas de identidad compartidos por Doctor y Patient.
"""

from pydantic import BaseModel, EmailStr, Field

from turnos.models.user import RecordState, UserRole


class UserIdentity(BaseModel):
    """Datos de la identidad base al registrar un doctor o paciente."""
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    national_id: str | None = Field(None, max_length=32)


class UserEmbed(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    role: UserRole
    state: RecordState

    model_config = {"from_attributes": True}
