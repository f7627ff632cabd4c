"""Pydantic schemas for the payment gateway module.

Inbound notification models are strict: a payload that does not match is
rejected before any business logic runs.
"""

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from tenant_billing.modules.payment_gateway.models import GatewayProvider, PaymentStatus


# ==================== Gateway notifications ====================

MidtransTransactionStatus = Literal[
    "capture",
    "settlement",
    "pending",
    "authorize",
    "deny",
    "cancel",
    "expire",
    "failure",
    "refund",
    "partial_refund",
    "chargeback",
    "partial_chargeback",
]


class MidtransNotification(BaseModel):
    """HTTP notification body sent by Midtrans."""
    order_id: str = Field(..., min_length=1)
    status_code: str
    gross_amount: str
    transaction_status: MidtransTransactionStatus
    signature_key: str
    fraud_status: Optional[Literal["accept", "challenge", "deny"]] = None
    payment_type: Optional[str] = None
    transaction_id: Optional[str] = None
    transaction_time: Optional[str] = None
    settlement_time: Optional[str] = None
    currency: Optional[str] = None

    class Config:
        extra = "allow"


TripayCallbackStatus = Literal["PAID", "UNPAID", "FAILED", "EXPIRED", "REFUND"]


class TripayCallback(BaseModel):
    """Callback body sent by Tripay for closed payments."""
    merchant_ref: str = Field(..., min_length=1)
    reference: str
    status: TripayCallbackStatus
    payment_method: Optional[str] = None
    payment_method_code: Optional[str] = None
    total_amount: Optional[int] = None
    amount_received: Optional[int] = None
    fee_merchant: Optional[int] = None
    fee_customer: Optional[int] = None
    total_fee: Optional[int] = None
    is_closed_payment: Optional[int] = None
    paid_at: Optional[int] = None
    note: Optional[str] = None

    class Config:
        extra = "allow"


# ==================== API schemas ====================

class CustomerDetails(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)


class ChargeCreateRequest(BaseModel):
    """Start collecting an invoice through a gateway."""
    invoice_id: uuid.UUID
    provider: GatewayProvider
    customer: CustomerDetails
    payment_method: Optional[str] = Field(
        None, description="Gateway channel code; required by Tripay (e.g. BRIVA, QRIS)"
    )


class PaymentTransactionResponse(BaseModel):
    id: uuid.UUID
    invoice_id: uuid.UUID
    subscription_id: uuid.UUID
    organization_id: uuid.UUID
    amount: int
    currency: str
    status: PaymentStatus
    payment_gateway: str
    gateway_transaction_id: str
    payment_method: Optional[str] = None
    external_ref: Optional[str] = None
    checkout_url: Optional[str] = None
    pay_code: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway."""
    received: bool = True
    outcome: Optional[str] = None
    transaction_id: Optional[str] = None
