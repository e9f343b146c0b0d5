"""
Schemas de pagos y adjuntos de un turno.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from turnos.models.payment import PaymentMethod, PaymentState


class PaymentCreate(BaseModel):
    appointment_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    method: PaymentMethod


class GatewayStatusReport(BaseModel):
    """Notificación de la pasarela de pagos."""
    appointment_id: int = Field(..., gt=0)
    state: PaymentState
    gateway_reference: str | None = Field(None, max_length=100)


class PaymentResponse(BaseModel):
    id: int
    appointment_id: int
    amount: Decimal
    method: PaymentMethod
    state: PaymentState
    gateway_reference: str | None = None
    version: int

    model_config = {"from_attributes": True}


class AttachmentCreate(BaseModel):
    type: str = Field(..., min_length=2, max_length=50)
    url: str = Field(..., min_length=1, max_length=1000)
    name: str = Field(..., min_length=1, max_length=255)


class AttachmentResponse(BaseModel):
    id: int
    appointment_id: int
    type: str
    url: str
    name: str
    uploaded_at: datetime

    model_config = {"from_attributes": True}
