"""
Endpoints de pagos. La pasarela informa el estado vía /gateway-status.
"""

from fastapi import APIRouter, Depends, status

from turnos.api.deps import get_store
from turnos.auth.dependencies import require_permission
from turnos.core.security import Actor
from turnos.schemas.payment import GatewayStatusReport, PaymentCreate, PaymentResponse
from turnos.services import payment_service
from turnos.store import EntityStore

router = APIRouter()


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    data: PaymentCreate,
    actor: Actor = Depends(require_permission("payment", "create")),
    store: EntityStore = Depends(get_store),
):
    """Un único pago por turno; 409 si ya existe."""
    return await payment_service.create_payment(store, actor, data)


@router.post("/gateway-status", response_model=PaymentResponse)
async def gateway_status(
    data: GatewayStatusReport,
    actor: Actor = Depends(require_permission("payment", "gateway")),
    store: EntityStore = Depends(get_store),
):
    return await store.retrying(payment_service.record_gateway_status, store, actor, data)
