"""Payment gateway module.

Midtrans and Tripay adapters, checkout and webhook reconciliation.
"""

from tenant_billing.modules.payment_gateway.router import payment_router, webhook_router
from tenant_billing.modules.payment_gateway.service import (
    CheckoutService,
    GatewayRegistry,
    PaymentGatewayFactory,
)
from tenant_billing.modules.payment_gateway.reconciler import WebhookReconciler
from tenant_billing.modules.payment_gateway.models import (
    GatewayProvider,
    PaymentStatus,
    PaymentTransaction,
)

__all__ = [
    "payment_router",
    "webhook_router",
    "CheckoutService",
    "GatewayRegistry",
    "PaymentGatewayFactory",
    "WebhookReconciler",
    "GatewayProvider",
    "PaymentStatus",
    "PaymentTransaction",
]
