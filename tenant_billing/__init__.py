"""Tenant Billing Engine.

Subscription lifecycle, tier entitlements, proration and payment-gateway
reconciliation for a multi-tenant platform.

Modules:
    - core: Configuration, database, errors, logging, tracing, metrics
    - modules.billing: Tier catalog, usage ledger, subscriptions, invoices, scheduler
    - modules.payment_gateway: Midtrans and Tripay adapters, checkout, webhook reconciler
"""

__version__ = "0.1.0"
