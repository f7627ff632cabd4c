"""Subscription state machine.

TRIAL -> ACTIVE -> GRACE_PERIOD -> EXPIRED, with CANCELLED reachable from
TRIAL, ACTIVE and GRACE_PERIOD and terminal. Every transition in the engine
goes through this service, whoever triggers it (API, reconciler, scheduler),
and is recorded as a BillingEvent in the caller's transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.config import settings
from tenant_billing.core.errors import (
    DuplicateSubscription,
    InvalidStateTransition,
    InvalidTierTransition,
    PlanUnavailable,
    SubscriptionNotFound,
    ValidationError,
)
from tenant_billing.core.logging import log_info, log_warning
from tenant_billing.core.metrics import SUBSCRIPTION_TRANSITIONS_TOTAL
from tenant_billing.modules.billing.catalog import (
    Plan,
    TierCatalog,
    add_billing_cycle,
    calculate_proration,
    days_in_cycle,
    days_remaining_in_period,
    default_catalog,
    prorated_amount,
    round_half_up,
    with_price,
)
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.models import (
    BillingCycle,
    BillingEventType,
    Invoice,
    InvoiceKind,
    ProrationOption,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from tenant_billing.modules.billing.repository import (
    BillingEventRepository,
    SubscriptionRepository,
)
from tenant_billing.modules.billing.usage import UsageCheckResult, UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class ChangeResult:
    """Outcome of a plan change.

    invoice is set when the change waits for a payment; otherwise the new
    plan is already in effect.
    """
    subscription: Subscription
    proration_amount: int
    invoice: Optional[Invoice] = None

    @property
    def applied(self) -> bool:
        return self.invoice is None


@dataclass
class PaymentOutcome:
    """Settled result of a collection attempt for one invoice."""
    invoice: Invoice
    succeeded: bool
    paid_at: Optional[datetime] = None
    gateway: Optional[str] = None


@dataclass
class SubscriptionWithUsage:
    subscription: Subscription
    plan: Optional[Plan]
    usage: UsageCheckResult


def parse_tier(tier: Union[SubscriptionTier, str]) -> SubscriptionTier:
    try:
        return SubscriptionTier(tier)
    except ValueError as e:
        raise ValidationError(f"Unknown tier: {tier}") from e


def parse_billing_cycle(billing_cycle: Union[BillingCycle, str]) -> BillingCycle:
    try:
        return BillingCycle(billing_cycle)
    except ValueError as e:
        raise ValidationError(f"Unknown billing cycle: {billing_cycle}") from e


class SubscriptionService:
    """Owns every subscription status change.

    Works inside the caller's transaction: flushes, never commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog = default_catalog,
        grace_period_days: int = settings.GRACE_PERIOD_DAYS,
        trial_days: int = settings.TRIAL_DAYS,
        invoice_service: Optional[InvoiceService] = None,
    ):
        self.session = session
        self.catalog = catalog
        self.grace_period_days = grace_period_days
        self.trial_days = trial_days
        self.subscription_repo = SubscriptionRepository(session)
        self.event_repo = BillingEventRepository(session)
        self.invoice_service = invoice_service or InvoiceService(session)

    # ==================== Helpers ====================

    async def _transition(
        self,
        subscription: Subscription,
        new_status: SubscriptionStatus,
        event_type: BillingEventType,
        description: str,
        payload: Optional[dict] = None,
    ) -> None:
        old_status = subscription.status
        subscription.status = new_status.value
        await self.event_repo.record(subscription, event_type, description, payload)
        SUBSCRIPTION_TRANSITIONS_TOTAL.labels(
            from_status=old_status, to_status=new_status.value
        ).inc()
        logger.info(
            f"Subscription {subscription.id} ({subscription.organization_id}) "
            f"{old_status} -> {new_status.value}"
        )

    def _price_for(
        self,
        subscription: Subscription,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
    ) -> int:
        """Catalog price, or the negotiated one for an ENTERPRISE subscription."""
        if tier == SubscriptionTier.ENTERPRISE and subscription.tier == tier.value:
            return subscription.price
        return self.catalog.get_plan_price(tier, billing_cycle)

    def current_plan(self, subscription: Subscription) -> Optional[Plan]:
        """Catalog plan for the subscription carrying the price it actually pays."""
        plan = self.catalog.get_plan(subscription.tier, subscription.billing_cycle)
        if plan is None:
            return None
        return with_price(plan, subscription.price)

    @staticmethod
    def _switch_plan(
        subscription: Subscription,
        tier: SubscriptionTier,
        billing_cycle: BillingCycle,
        price: int,
    ) -> None:
        subscription.tier = tier.value
        subscription.billing_cycle = billing_cycle.value
        subscription.price = price

    @staticmethod
    def _start_period(
        subscription: Subscription,
        start: datetime,
        billing_cycle: Union[BillingCycle, str],
    ) -> None:
        subscription.current_period_start = start
        subscription.current_period_end = add_billing_cycle(start, billing_cycle)
        subscription.next_billing_date = subscription.current_period_end

    async def _require(self, subscription_id: uuid.UUID) -> Subscription:
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if not subscription:
            raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
        return subscription

    # ==================== Reads ====================

    async def get_subscription(self, subscription_id: uuid.UUID) -> Subscription:
        return await self._require(subscription_id)

    async def get_subscription_by_organization(self, organization_id: uuid.UUID) -> Subscription:
        subscription = await self.subscription_repo.get_by_organization(organization_id)
        if not subscription:
            raise SubscriptionNotFound(f"No subscription for organization {organization_id}")
        return subscription

    async def get_subscription_with_usage(
        self,
        organization_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> SubscriptionWithUsage:
        """Subscription, its plan and current usage against the plan's limits."""
        subscription = await self.get_subscription_by_organization(organization_id)
        ledger = UsageLedger(self.session, self.catalog)
        usage = await ledger.check_subscription_limits(subscription, now)
        return SubscriptionWithUsage(
            subscription=subscription,
            plan=self.current_plan(subscription),
            usage=usage,
        )

    # ==================== Creation ====================

    async def create_subscription(
        self,
        organization_id: uuid.UUID,
        tier: Union[SubscriptionTier, str],
        billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
        start_date: Optional[datetime] = None,
        payment_confirmed: bool = False,
        discount_percent: Optional[float] = None,
        discount_end_date: Optional[datetime] = None,
        negotiated_price: Optional[int] = None,
    ) -> Subscription:
        """Create the tenant's subscription.

        Starts in TRIAL unless payment was confirmed synchronously, in which
        case the first period starts right away.

        Args:
            organization_id: Tenant ID
            tier: Tier to subscribe to
            billing_cycle: MONTHLY or YEARLY
            start_date: Defaults to now
            payment_confirmed: First payment already collected
            discount_percent: Optional discount on future invoices
            discount_end_date: When the discount stops applying
            negotiated_price: Required for ENTERPRISE

        Returns:
            The new subscription

        Raises:
            DuplicateSubscription: Tenant already has a subscription
            PlanUnavailable: ENTERPRISE without a negotiated price
            ValidationError: Unknown tier/cycle or bad discount
        """
        tier = parse_tier(tier)
        billing_cycle = parse_billing_cycle(billing_cycle)

        if await self.subscription_repo.exists_for_organization(organization_id):
            raise DuplicateSubscription(
                f"Organization {organization_id} already has a subscription"
            )

        if tier == SubscriptionTier.ENTERPRISE:
            if negotiated_price is None:
                raise PlanUnavailable("ENTERPRISE pricing is negotiated; supply negotiated_price")
            if negotiated_price < 0:
                raise ValidationError("negotiated_price cannot be negative")
            price = negotiated_price
        else:
            price = self.catalog.get_plan_price(tier, billing_cycle)

        if discount_percent is not None and not 0 <= discount_percent <= 100:
            raise ValidationError("discount_percent must be between 0 and 100")

        start = start_date or datetime.utcnow()
        in_trial = not payment_confirmed or tier == SubscriptionTier.TRIAL

        subscription = Subscription(
            organization_id=organization_id,
            tier=tier.value,
            billing_cycle=billing_cycle.value,
            price=price,
            discount_percent=discount_percent,
            discount_end_date=discount_end_date,
            pending_adjustment=0,
            auto_renew=True,
            start_date=start,
            current_period_start=start,
        )
        if in_trial:
            subscription.status = SubscriptionStatus.TRIAL.value
            subscription.trial_end_date = start + timedelta(days=self.trial_days)
            subscription.current_period_end = subscription.trial_end_date
            subscription.next_billing_date = subscription.trial_end_date
        else:
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.last_payment_date = start
            self._start_period(subscription, start, billing_cycle)

        try:
            await self.subscription_repo.add(subscription)
        except IntegrityError as e:
            raise DuplicateSubscription(
                f"Organization {organization_id} already has a subscription"
            ) from e

        await self.event_repo.record(
            subscription,
            BillingEventType.SUBSCRIPTION_CREATED,
            description=f"Subscribed to {tier.value} ({billing_cycle.value})",
            payload={"tier": tier.value, "billing_cycle": billing_cycle.value, "price": price},
        )
        if in_trial:
            await self.event_repo.record(
                subscription,
                BillingEventType.TRIAL_STARTED,
                description=f"Trial ends {subscription.trial_end_date.isoformat()}",
            )
        else:
            await self.event_repo.record(
                subscription,
                BillingEventType.SUBSCRIPTION_ACTIVATED,
                description="Activated with confirmed payment",
            )
        SUBSCRIPTION_TRANSITIONS_TOTAL.labels(
            from_status="NONE", to_status=subscription.status
        ).inc()
        logger.info(
            f"Created {subscription.status} subscription for organization "
            f"{organization_id} on {tier.value}"
        )
        return subscription

    # ==================== Plan changes ====================

    async def change_subscription(
        self,
        subscription_id: uuid.UUID,
        new_tier: Union[SubscriptionTier, str],
        new_billing_cycle: Optional[Union[BillingCycle, str]] = None,
        effective_date: Optional[datetime] = None,
        proration_option: Union[ProrationOption, str] = ProrationOption.IMMEDIATE,
    ) -> ChangeResult:
        """Move a subscription to another self-service plan.

        Without a paid period (TRIAL, EXPIRED) the new plan is invoiced in
        full and takes effect on payment. From ACTIVE the price difference
        over the remaining days is either invoiced now (IMMEDIATE) or booked
        against the next renewal (NEXT_CYCLE).

        Raises:
            SubscriptionNotFound: Unknown subscription
            InvalidStateTransition: Subscription is in GRACE_PERIOD or CANCELLED
            InvalidTierTransition: ENTERPRISE involved, TRIAL requested, or no change
        """
        subscription = await self._require(subscription_id)
        new_tier = parse_tier(new_tier)
        new_cycle = parse_billing_cycle(new_billing_cycle or subscription.billing_cycle)
        try:
            proration_option = ProrationOption(proration_option)
        except ValueError as e:
            raise ValidationError(f"Unknown proration option: {proration_option}") from e

        status = SubscriptionStatus(subscription.status)
        if status == SubscriptionStatus.CANCELLED:
            raise InvalidStateTransition("A cancelled subscription cannot change plan")
        if status == SubscriptionStatus.GRACE_PERIOD:
            raise InvalidStateTransition(
                "Settle the outstanding renewal before changing plan"
            )
        if SubscriptionTier.ENTERPRISE.value in (new_tier.value, subscription.tier):
            raise InvalidTierTransition("ENTERPRISE plan changes are handled by sales")
        if new_tier == SubscriptionTier.TRIAL:
            raise InvalidTierTransition("Cannot change back to the trial tier")

        cycle_change = new_cycle.value != subscription.billing_cycle
        same_plan = new_tier.value == subscription.tier and not cycle_change
        if same_plan and status == SubscriptionStatus.ACTIVE:
            raise InvalidTierTransition(f"Subscription is already on {new_tier.value}")

        new_price = self.catalog.get_plan_price(new_tier, new_cycle)
        new_plan = self.catalog.get_plan(new_tier, new_cycle)
        effective = effective_date or datetime.utcnow()
        change_payload = {
            "from_tier": subscription.tier,
            "to_tier": new_tier.value,
            "from_billing_cycle": subscription.billing_cycle,
            "to_billing_cycle": new_cycle.value,
            "proration_option": proration_option.value,
        }

        if status in (SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED):
            invoice = await self.invoice_service.create_invoice(
                subscription,
                InvoiceKind.SUBSCRIPTION,
                subtotal=new_price,
                description=f"{new_tier.value} plan ({new_cycle.value.lower()})",
                target_tier=new_tier.value,
                target_billing_cycle=new_cycle.value,
                now=effective,
            )
            await self.event_repo.record(
                subscription,
                BillingEventType.SUBSCRIPTION_CHANGED,
                description=f"{new_tier.value} awaiting first payment",
                payload={**change_payload, "invoice_id": str(invoice.id)},
            )
            return ChangeResult(subscription, proration_amount=new_price, invoice=invoice)

        total_days = days_in_cycle(subscription.billing_cycle)
        days_remaining = days_remaining_in_period(
            subscription.current_period_end, effective, total_days
        )

        if cycle_change and proration_option == ProrationOption.NEXT_CYCLE:
            # Period end stays; the next renewal bills the new cycle and price
            self._switch_plan(subscription, new_tier, new_cycle, new_price)
            await self.event_repo.record(
                subscription,
                BillingEventType.SUBSCRIPTION_CHANGED,
                description=f"Changed to {new_tier.value} ({new_cycle.value}) from next cycle",
                payload={**change_payload, "proration_amount": 0},
            )
            return ChangeResult(subscription, proration_amount=0)

        if cycle_change:
            unused_credit = round_half_up(
                prorated_amount(subscription.price, days_remaining, total_days)
            )
            amount = new_price - unused_credit
        else:
            amount = calculate_proration(
                self.current_plan(subscription), new_plan, days_remaining, total_days
            )
        change_payload.update(proration_amount=amount, days_remaining=days_remaining)

        if proration_option == ProrationOption.IMMEDIATE and amount > 0:
            invoice = await self.invoice_service.create_invoice(
                subscription,
                InvoiceKind.PRORATION,
                subtotal=amount,
                description=(
                    f"Change {subscription.tier} -> {new_tier.value} "
                    f"({days_remaining} of {total_days} days)"
                ),
                period_start=effective,
                period_end=subscription.current_period_end,
                target_tier=new_tier.value,
                target_billing_cycle=new_cycle.value,
                now=effective,
            )
            await self.event_repo.record(
                subscription,
                BillingEventType.SUBSCRIPTION_CHANGED,
                description=f"{new_tier.value} awaiting proration payment",
                payload={**change_payload, "invoice_id": str(invoice.id)},
            )
            return ChangeResult(subscription, proration_amount=amount, invoice=invoice)

        self._switch_plan(subscription, new_tier, new_cycle, new_price)
        if cycle_change:
            self._start_period(subscription, effective, new_cycle)
        subscription.pending_adjustment = (subscription.pending_adjustment or 0) + amount
        await self.session.flush()
        await self.event_repo.record(
            subscription,
            BillingEventType.SUBSCRIPTION_CHANGED,
            description=f"Changed to {new_tier.value} ({new_cycle.value})",
            payload=change_payload,
        )
        logger.info(
            f"Subscription {subscription.id} changed to {new_tier.value}; "
            f"adjustment {amount} booked for next renewal"
        )
        return ChangeResult(subscription, proration_amount=amount)

    # ==================== Cancellation ====================

    async def cancel_subscription(
        self,
        subscription_id: uuid.UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Cancel a subscription. Cancelling twice is a no-op.

        Raises:
            SubscriptionNotFound: Unknown subscription
            InvalidStateTransition: Subscription already EXPIRED
        """
        subscription = await self._require(subscription_id)
        if subscription.is_terminal():
            return subscription
        if subscription.status == SubscriptionStatus.EXPIRED.value:
            raise InvalidStateTransition("An expired subscription cannot be cancelled")

        now = now or datetime.utcnow()
        subscription.end_date = now
        subscription.cancelled_at = now
        subscription.cancel_reason = reason
        subscription.auto_renew = False
        await self._transition(
            subscription,
            SubscriptionStatus.CANCELLED,
            BillingEventType.SUBSCRIPTION_CANCELLED,
            description=reason or "Cancelled",
            payload={"reason": reason},
        )
        await self.session.flush()
        return subscription

    # ==================== Payments ====================

    async def apply_payment_outcome(
        self,
        subscription: Subscription,
        outcome: PaymentOutcome,
    ) -> Subscription:
        """Move the subscription forward after an invoice settles.

        The only way a payment changes subscription state. Callers run it in
        the same transaction that updates the invoice and payment transaction.
        """
        invoice = outcome.invoice
        if not outcome.succeeded:
            await self.event_repo.record(
                subscription,
                BillingEventType.PAYMENT_FAILED,
                description=f"Payment for {invoice.invoice_number} failed",
                payload={"invoice_id": str(invoice.id), "gateway": outcome.gateway},
            )
            return subscription

        if subscription.is_terminal():
            log_warning(
                logger,
                f"Payment for {invoice.invoice_number} received on cancelled subscription",
                subscription_id=str(subscription.id),
                invoice_id=str(invoice.id),
            )
            return subscription

        paid_at = outcome.paid_at or datetime.utcnow()
        await self.event_repo.record(
            subscription,
            BillingEventType.PAYMENT_SUCCEEDED,
            description=f"Payment for {invoice.invoice_number} received",
            payload={
                "invoice_id": str(invoice.id),
                "amount": invoice.total,
                "gateway": outcome.gateway,
            },
        )

        target_tier = parse_tier(invoice.target_tier or subscription.tier)
        target_cycle = parse_billing_cycle(
            invoice.target_billing_cycle or subscription.billing_cycle
        )
        status = SubscriptionStatus(subscription.status)

        if invoice.kind == InvoiceKind.PRORATION.value:
            cycle_change = target_cycle.value != subscription.billing_cycle
            self._switch_plan(
                subscription,
                target_tier,
                target_cycle,
                self._price_for(subscription, target_tier, target_cycle),
            )
            if cycle_change:
                self._start_period(subscription, paid_at, target_cycle)
            await self.event_repo.record(
                subscription,
                BillingEventType.SUBSCRIPTION_CHANGED,
                description=f"Changed to {target_tier.value} ({target_cycle.value})",
                payload={"invoice_id": str(invoice.id)},
            )

        elif invoice.kind == InvoiceKind.MANUAL.value:
            pass

        elif status in (SubscriptionStatus.TRIAL, SubscriptionStatus.EXPIRED):
            self._switch_plan(
                subscription,
                target_tier,
                target_cycle,
                self._price_for(subscription, target_tier, target_cycle),
            )
            self._start_period(subscription, paid_at, target_cycle)
            subscription.trial_end_date = None
            subscription.end_date = None
            await self._transition(
                subscription,
                SubscriptionStatus.ACTIVE,
                BillingEventType.SUBSCRIPTION_ACTIVATED,
                description=f"Activated on {target_tier.value}",
                payload={"invoice_id": str(invoice.id)},
            )

        else:
            old_end = subscription.current_period_end
            if invoice.period_start and invoice.period_end:
                if invoice.period_end > old_end:
                    subscription.current_period_start = invoice.period_start
                    subscription.current_period_end = invoice.period_end
            else:
                subscription.current_period_start = old_end
                subscription.current_period_end = add_billing_cycle(
                    old_end, subscription.billing_cycle
                )
            if status != SubscriptionStatus.GRACE_PERIOD:
                await self.event_repo.record(
                    subscription,
                    BillingEventType.SUBSCRIPTION_RENEWED,
                    description=f"Renewed until {subscription.current_period_end.isoformat()}",
                    payload={"invoice_id": str(invoice.id)},
                )

        subscription.last_payment_date = paid_at
        subscription.next_billing_date = subscription.current_period_end
        await self._resolve_lapsed_status(subscription, status, invoice, paid_at)
        await self.session.flush()
        return subscription

    async def _resolve_lapsed_status(
        self,
        subscription: Subscription,
        status: SubscriptionStatus,
        invoice: Invoice,
        paid_at: datetime,
    ) -> None:
        """Reactivate a lapsed subscription only when the payment bought time.

        A payment that leaves the period end in the past (an add-on or a
        tier-only proration) keeps GRACE_PERIOD or EXPIRED and its dates,
        so the scheduler still expires it on schedule.
        """
        if subscription.status == SubscriptionStatus.ACTIVE.value:
            subscription.grace_period_end_date = None
            return
        if status not in (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.EXPIRED):
            return

        if subscription.current_period_end <= paid_at:
            log_info(
                logger,
                f"Payment for {invoice.invoice_number} does not cover a current period; "
                f"subscription stays {status.value}",
                subscription_id=str(subscription.id),
                invoice_id=str(invoice.id),
            )
            return

        subscription.grace_period_end_date = None
        subscription.end_date = None
        if status == SubscriptionStatus.GRACE_PERIOD:
            await self._transition(
                subscription,
                SubscriptionStatus.ACTIVE,
                BillingEventType.SUBSCRIPTION_RENEWED,
                description="Renewed after grace period",
                payload={"invoice_id": str(invoice.id)},
            )
        else:
            await self._transition(
                subscription,
                SubscriptionStatus.ACTIVE,
                BillingEventType.SUBSCRIPTION_ACTIVATED,
                description=f"Reactivated on {subscription.tier}",
                payload={"invoice_id": str(invoice.id)},
            )

    # ==================== Time-based transitions ====================

    async def expire_trial(self, subscription: Subscription, now: datetime) -> bool:
        """TRIAL -> EXPIRED once the trial end has passed. No grace window."""
        if subscription.status != SubscriptionStatus.TRIAL.value:
            return False
        if not subscription.trial_end_date or subscription.trial_end_date >= now:
            return False
        subscription.end_date = subscription.trial_end_date
        await self._transition(
            subscription,
            SubscriptionStatus.EXPIRED,
            BillingEventType.TRIAL_EXPIRED,
            description="Trial ended without payment",
        )
        return True

    async def enter_grace_period(self, subscription: Subscription, now: datetime) -> bool:
        """ACTIVE -> GRACE_PERIOD once the period end passed without renewal."""
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            return False
        if subscription.current_period_end >= now:
            return False
        subscription.grace_period_end_date = subscription.current_period_end + timedelta(
            days=self.grace_period_days
        )
        await self._transition(
            subscription,
            SubscriptionStatus.GRACE_PERIOD,
            BillingEventType.GRACE_PERIOD_STARTED,
            description=f"Grace period until {subscription.grace_period_end_date.isoformat()}",
        )
        return True

    async def expire_grace_period(self, subscription: Subscription, now: datetime) -> bool:
        """GRACE_PERIOD -> EXPIRED once the grace window has passed unpaid."""
        if subscription.status != SubscriptionStatus.GRACE_PERIOD.value:
            return False
        if not subscription.grace_period_end_date or subscription.grace_period_end_date >= now:
            return False
        subscription.end_date = subscription.grace_period_end_date
        await self._transition(
            subscription,
            SubscriptionStatus.EXPIRED,
            BillingEventType.SUBSCRIPTION_EXPIRED,
            description="Grace period ended without payment",
        )
        return True

    async def apply_time_transitions(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> list[SubscriptionStatus]:
        """Apply every transition due at now.

        Returns the statuses entered, in order. A subscription whose grace
        window also passed while nobody looked goes ACTIVE -> GRACE_PERIOD ->
        EXPIRED in one call.
        """
        now = now or datetime.utcnow()
        entered = []
        if await self.expire_trial(subscription, now):
            entered.append(SubscriptionStatus.EXPIRED)
        if await self.enter_grace_period(subscription, now):
            entered.append(SubscriptionStatus.GRACE_PERIOD)
        if await self.expire_grace_period(subscription, now):
            entered.append(SubscriptionStatus.EXPIRED)
        if entered:
            await self.session.flush()
        return entered
