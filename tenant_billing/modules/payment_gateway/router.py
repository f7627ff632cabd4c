"""Payment gateway router.

Provides API endpoints for:
- Starting a gateway charge for an invoice
- Listing payment transactions
- Receiving Midtrans and Tripay payment notifications
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.config import settings
from tenant_billing.core.database import SessionFactory, get_session, get_session_factory
from tenant_billing.core.errors import BillingError, ConcurrencyConflict, InvalidSignature
from tenant_billing.core.logging import log_error, log_warning
from tenant_billing.modules.billing.notifications import BillingNotificationService
from tenant_billing.modules.billing.router import get_notifier
from tenant_billing.modules.payment_gateway.interface import Customer
from tenant_billing.modules.payment_gateway.models import GatewayProvider
from tenant_billing.modules.payment_gateway.reconciler import WebhookReconciler
from tenant_billing.modules.payment_gateway.repository import PaymentTransactionRepository
from tenant_billing.modules.payment_gateway.schemas import (
    ChargeCreateRequest,
    PaymentTransactionResponse,
    WebhookAck,
)
from tenant_billing.modules.payment_gateway.service import CheckoutService, GatewayRegistry

logger = logging.getLogger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])

webhook_router = APIRouter(prefix="/billing/webhooks", tags=["webhooks"])


def get_gateway_registry(request: Request) -> GatewayRegistry:
    """Gateway adapters built at startup."""
    registry = getattr(request.app.state, "gateway_registry", None)
    if registry is None:
        registry = GatewayRegistry.from_settings()
        request.app.state.gateway_registry = registry
    return registry


# ==================== Payment Endpoints ====================

@payment_router.get("/providers", response_model=list[str])
async def list_providers(registry: GatewayRegistry = Depends(get_gateway_registry)):
    """Gateways configured for this deployment."""
    return registry.providers()


@payment_router.post(
    "/charges",
    response_model=PaymentTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_charge(
    data: ChargeCreateRequest,
    registry: GatewayRegistry = Depends(get_gateway_registry),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Create a gateway charge for an unpaid invoice.

    Returns the PENDING transaction with the checkout URL (Midtrans Snap)
    or pay code (Tripay) the payer completes the payment with.
    """
    service = CheckoutService(registry, session_factory=session_factory)
    return await service.create_charge(
        invoice_id=data.invoice_id,
        provider=data.provider,
        customer=Customer(
            name=data.customer.name,
            email=data.customer.email,
            phone=data.customer.phone,
        ),
        payment_method=data.payment_method,
    )


@payment_router.get(
    "/transactions/{organization_id}",
    response_model=list[PaymentTransactionResponse],
)
async def list_transactions(
    organization_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    return await PaymentTransactionRepository(session).list_for_organization(
        organization_id, limit=limit, offset=offset
    )


# ==================== Webhook Endpoints ====================

@webhook_router.post("/{provider}", response_model=WebhookAck)
async def handle_webhook(
    provider: GatewayProvider,
    request: Request,
    x_callback_signature: Optional[str] = Header(None),
    registry: GatewayRegistry = Depends(get_gateway_registry),
    session_factory: SessionFactory = Depends(get_session_factory),
    notifier: BillingNotificationService = Depends(get_notifier),
):
    """Receive a payment notification from Midtrans or Tripay.

    Midtrans signs inside the JSON body; Tripay sends X-Callback-Signature.
    A bad signature is answered with 401. Every other outcome is
    acknowledged with 200 so the gateway stops redelivering; failures are
    logged for follow-up.
    """
    raw_body = await request.body()
    reconciler = WebhookReconciler(registry, session_factory=session_factory, notifier=notifier)

    attempts = max(1, settings.RECONCILE_MAX_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            result = await reconciler.reconcile(provider, raw_body, x_callback_signature)
            return WebhookAck(
                outcome=result.outcome.value,
                transaction_id=result.transaction_id,
            )
        except InvalidSignature:
            raise
        except ConcurrencyConflict as e:
            if attempt < attempts:
                log_warning(
                    logger,
                    f"Concurrent update while reconciling {provider.value} notification; "
                    f"retrying ({attempt}/{attempts})",
                    gateway=provider.value,
                )
                continue
            log_error(
                logger,
                f"Gave up reconciling {provider.value} notification after {attempts} attempts",
                exception=e,
                gateway=provider.value,
            )
            return WebhookAck(outcome=e.code)
        except BillingError as e:
            log_error(
                logger,
                f"Could not reconcile {provider.value} notification: {e.message}",
                exception=e,
                gateway=provider.value,
                error_code=e.code,
            )
            return WebhookAck(outcome=e.code)
