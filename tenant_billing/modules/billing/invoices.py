"""Invoice lifecycle manager.

Creates invoices whenever a charge is due and moves them to PAID or FAILED.
PAID is final. A FAILED invoice can still become PAID when a later payment
attempt succeeds.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.config import settings
from tenant_billing.core.errors import (
    InvalidStateTransition,
    InvoiceNotFound,
    SubscriptionNotFound,
    ValidationError,
)
from tenant_billing.modules.billing.catalog import add_billing_cycle, round_half_up
from tenant_billing.modules.billing.models import (
    BillingEventType,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    Subscription,
)
from tenant_billing.modules.billing.repository import (
    BillingEventRepository,
    InvoiceRepository,
    SubscriptionRepository,
)

logger = logging.getLogger(__name__)


def generate_invoice_number(moment: datetime) -> str:
    """INV-YYYYMM-XXXXXXXX with a random hex suffix."""
    return f"INV-{moment:%Y%m}-{secrets.token_hex(4).upper()}"


def build_line_item(sku: str, name: str, unit_price: int, quantity: int = 1) -> dict:
    return {"sku": sku, "name": name, "unit_price": unit_price, "quantity": quantity}


class InvoiceService:
    """Creates and settles invoices inside the caller's transaction."""

    def __init__(
        self,
        session: AsyncSession,
        tax_percent: float = settings.INVOICE_TAX_PERCENT,
        due_days: int = settings.INVOICE_DUE_DAYS,
        currency: str = settings.CURRENCY,
    ):
        self.session = session
        self.tax_percent = tax_percent
        self.due_days = due_days
        self.currency = currency
        self.invoice_repo = InvoiceRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.event_repo = BillingEventRepository(session)

    def _discount_for(self, subscription: Subscription, subtotal: int, now: datetime) -> int:
        if not subscription.discount_percent or subtotal <= 0:
            return 0
        if subscription.discount_end_date and subscription.discount_end_date < now:
            return 0
        return round_half_up(
            Decimal(subtotal) * Decimal(str(subscription.discount_percent)) / 100
        )

    def _tax_for(self, taxable: int) -> int:
        if not self.tax_percent or taxable <= 0:
            return 0
        return round_half_up(Decimal(taxable) * Decimal(str(self.tax_percent)) / 100)

    async def _unique_number(self, now: datetime) -> str:
        invoice_number = generate_invoice_number(now)
        while await self.invoice_repo.number_exists(invoice_number):
            invoice_number = generate_invoice_number(now)
        return invoice_number

    async def create_invoice(
        self,
        subscription: Subscription,
        kind: InvoiceKind,
        subtotal: int,
        description: str,
        line_items: Optional[list[dict]] = None,
        due_date: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        target_tier: Optional[str] = None,
        target_billing_cycle: Optional[str] = None,
        apply_discount: bool = True,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Issue a PENDING invoice.

        total = subtotal - discount + tax, never below zero.

        Args:
            subscription: Subscription being billed
            kind: Reason for the invoice
            subtotal: Amount before discount and tax
            description: Human-readable description
            line_items: Optional line items; defaults to one item for the subtotal
            due_date: Defaults to now + due_days
            period_start: Start of the service period paid for
            period_end: End of the service period paid for
            target_tier: Tier to switch to once paid
            target_billing_cycle: Billing cycle to switch to once paid
            apply_discount: Apply the subscription's discount if active
            now: Clock override

        Returns:
            The new invoice

        Raises:
            ValidationError: Negative subtotal
        """
        if subtotal < 0:
            raise ValidationError("Invoice subtotal cannot be negative")
        now = now or datetime.utcnow()

        discount = self._discount_for(subscription, subtotal, now) if apply_discount else 0
        tax = self._tax_for(subtotal - discount)
        total = max(0, subtotal - discount + tax)

        invoice = Invoice(
            invoice_number=await self._unique_number(now),
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            kind=kind.value,
            description=description,
            amount=total,
            subtotal=subtotal,
            discount=discount,
            tax=tax,
            total=total,
            currency=self.currency,
            line_items=line_items or [
                build_line_item(
                    sku=f"{subscription.tier}-{subscription.billing_cycle}",
                    name=description,
                    unit_price=subtotal,
                )
            ],
            status=InvoiceStatus.PENDING.value,
            due_date=due_date or now + timedelta(days=self.due_days),
            period_start=period_start,
            period_end=period_end,
            target_tier=target_tier,
            target_billing_cycle=target_billing_cycle,
        )
        await self.invoice_repo.add(invoice)
        await self.event_repo.record(
            subscription,
            BillingEventType.INVOICE_CREATED,
            description=f"Invoice {invoice.invoice_number} issued",
            payload={"invoice_id": str(invoice.id), "kind": kind.value, "total": total},
        )
        logger.info(
            f"Created {kind.value} invoice {invoice.invoice_number} for "
            f"organization {subscription.organization_id}: {total} {self.currency}"
        )
        return invoice

    async def create_renewal_invoice(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Invoice the next period, settling any pending adjustment.

        Only one renewal invoice exists per period; asking again returns the
        existing one. A credit larger than the renewal price is carried
        forward on the subscription.
        """
        period_start = subscription.current_period_end
        existing = await self.invoice_repo.get_for_period(
            subscription.id, InvoiceKind.RENEWAL, period_start
        )
        if existing:
            return existing

        period_end = add_billing_cycle(period_start, subscription.billing_cycle)
        line_items = [
            build_line_item(
                sku=f"{subscription.tier}-{subscription.billing_cycle}",
                name=f"{subscription.tier} plan renewal ({subscription.billing_cycle.lower()})",
                unit_price=subscription.price,
            )
        ]

        adjustment = subscription.pending_adjustment
        applied = max(adjustment, -subscription.price)
        if applied:
            line_items.append(build_line_item(
                sku="ADJUSTMENT",
                name="Plan change credit" if applied < 0 else "Plan change charge",
                unit_price=applied,
            ))
            subscription.pending_adjustment = adjustment - applied

        invoice = await self.create_invoice(
            subscription,
            InvoiceKind.RENEWAL,
            subtotal=subscription.price + applied,
            description=f"{subscription.tier} plan renewal",
            line_items=line_items,
            due_date=period_start,
            period_start=period_start,
            period_end=period_end,
            now=now,
        )
        if applied:
            await self.event_repo.record(
                subscription,
                BillingEventType.CREDIT_APPLIED,
                description=f"Adjustment of {applied} applied to {invoice.invoice_number}",
                payload={"applied": applied, "carried_forward": subscription.pending_adjustment},
            )
        return invoice

    async def create_manual_invoice(
        self,
        subscription_id: uuid.UUID,
        amount: int,
        description: str,
        due_date: Optional[datetime] = None,
    ) -> Invoice:
        """Bill an arbitrary amount against a subscription.

        Raises:
            SubscriptionNotFound: Unknown subscription
            ValidationError: Non-positive amount
        """
        if amount <= 0:
            raise ValidationError("Manual invoice amount must be positive")
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if not subscription:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        return await self.create_invoice(
            subscription,
            InvoiceKind.MANUAL,
            subtotal=amount,
            description=description,
            line_items=[build_line_item(sku="MANUAL", name=description, unit_price=amount)],
            due_date=due_date,
            apply_discount=False,
        )

    async def get_invoice(self, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.invoice_repo.get_by_id(invoice_id)
        if not invoice:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        return invoice

    async def list_invoices(
        self,
        organization_id: uuid.UUID,
        status: Optional[InvoiceStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        return await self.invoice_repo.list_for_organization(
            organization_id, status=status, limit=limit, offset=offset
        )

    async def get_overdue_invoices(self, now: Optional[datetime] = None) -> list[Invoice]:
        return await self.invoice_repo.list_overdue(now or datetime.utcnow())

    async def mark_paid(
        self,
        invoice: Invoice,
        paid_at: datetime,
        payment_method: Optional[str] = None,
    ) -> Invoice:
        """Settle an invoice.

        Raises:
            InvalidStateTransition: Invoice is already PAID
        """
        if invoice.is_paid():
            raise InvalidStateTransition(
                f"Invoice {invoice.invoice_number} is already paid"
            )
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_date = paid_at
        invoice.payment_method = payment_method
        await self.session.flush()
        return invoice

    async def mark_failed(self, invoice: Invoice) -> Invoice:
        """Record a failed collection. Only PENDING invoices change."""
        if invoice.status == InvoiceStatus.PENDING.value:
            invoice.status = InvoiceStatus.FAILED.value
            await self.session.flush()
        return invoice
