"""
Modelo Payment: Pago 1:1 con un turno.
El estado lo informa la pasarela de pagos (colaborador externo).
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from turnos.database import Base, enum_values


class PaymentState(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    GATEWAY = "gateway"


TERMINAL_PAYMENT_STATES = (PaymentState.COMPLETED, PaymentState.CANCELLED)


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id"), unique=True, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method", values_callable=enum_values),
        nullable=False,
    )
    state: Mapped[PaymentState] = mapped_column(
        Enum(PaymentState, name="payment_state", values_callable=enum_values),
        nullable=False,
        default=PaymentState.PENDING,
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(100))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    def __repr__(self) -> str:
        return f"<Payment {self.id} [{self.state.value}] {self.amount}>"
