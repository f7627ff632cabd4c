"""Payment transaction model.

One PaymentTransaction per collection attempt against an invoice. Its
gateway_transaction_id is the order reference sent to the gateway and the
key under which notifications are reconciled.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.core.database import Base


class GatewayProvider(str, Enum):
    """Supported payment gateway providers."""
    MIDTRANS = "midtrans"
    TRIPAY = "tripay"


class PaymentStatus(str, Enum):
    """Normalized payment status shared by every gateway."""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.SUCCESS,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
})


class PaymentTransaction(Base):
    """A single attempt to collect an invoice through a gateway."""

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("invoices.id"), nullable=False, index=True
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Gateway information
    payment_gateway: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    gateway_transaction_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True
    )
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    checkout_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    pay_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Charge response plus every notification received, in arrival order
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_payment_tx_invoice_status", "invoice_id", "status"),
        Index("ix_payment_tx_gateway_created", "payment_gateway", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(ref={self.gateway_transaction_id}, "
            f"gateway={self.payment_gateway}, status={self.status})>"
        )

    def is_successful(self) -> bool:
        return self.status == PaymentStatus.SUCCESS.value

    def is_terminal(self) -> bool:
        return PaymentStatus(self.status) in TERMINAL_PAYMENT_STATUSES

    def append_notification(self, entry: dict) -> None:
        """Append to the notification audit trail.

        Assigns a new dict so the JSON column is detected as changed.
        """
        response = dict(self.gateway_response or {})
        response["notifications"] = [*response.get("notifications", []), entry]
        self.gateway_response = response
