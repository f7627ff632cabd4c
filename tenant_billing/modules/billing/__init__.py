"""Billing module.

Implements the tier catalog, usage metering, the subscription lifecycle,
invoices and the daily billing sweep.
"""

from tenant_billing.modules.billing.router import router
from tenant_billing.modules.billing.service import SubscriptionService
from tenant_billing.modules.billing.usage import UsageLedger
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.scheduler import DailyScheduler
from tenant_billing.modules.billing.models import (
    Subscription,
    Invoice,
    UsageRecord,
    BillingEvent,
    SubscriptionTier,
    SubscriptionStatus,
    BillingCycle,
    InvoiceStatus,
    UsageMetric,
)

__all__ = [
    "router",
    "SubscriptionService",
    "UsageLedger",
    "InvoiceService",
    "DailyScheduler",
    "Subscription",
    "Invoice",
    "UsageRecord",
    "BillingEvent",
    "SubscriptionTier",
    "SubscriptionStatus",
    "BillingCycle",
    "InvoiceStatus",
    "UsageMetric",
]
