"""Tests for the subscription state machine."""

import uuid
from datetime import datetime, timedelta

import pytest

from tenant_billing.core.database import unit_of_work
from tenant_billing.core.errors import (
    ConcurrencyConflict,
    DuplicateSubscription,
    InvalidStateTransition,
    InvalidTierTransition,
    PlanUnavailable,
    SubscriptionNotFound,
    ValidationError,
)
from tenant_billing.modules.billing.catalog import add_months
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.models import (
    BillingEventType,
    InvoiceKind,
    ProrationOption,
    SubscriptionStatus,
)
from tenant_billing.modules.billing.repository import BillingEventRepository
from tenant_billing.modules.billing.service import PaymentOutcome, SubscriptionService


JAN_1 = datetime(2026, 1, 1, 9, 0, 0)
JAN_16 = datetime(2026, 1, 16, 9, 0, 0)


async def event_types(session_factory, subscription_id) -> list[str]:
    async with session_factory() as session:
        events = await BillingEventRepository(session).list_for_subscription(subscription_id)
    return [e.event_type for e in events]


async def pay(session_factory, subscription_id, invoice_id, paid_at=None):
    """Settle an invoice the way the reconciler does."""
    async with unit_of_work(session_factory) as session:
        service = SubscriptionService(session)
        subscription = await service.get_subscription(subscription_id)
        invoice = await service.invoice_service.get_invoice(invoice_id)
        paid_at = paid_at or datetime.utcnow()
        await service.invoice_service.mark_paid(invoice, paid_at=paid_at)
        return await service.apply_payment_outcome(
            subscription, PaymentOutcome(invoice=invoice, succeeded=True, paid_at=paid_at)
        )


class TestCreateSubscription:

    @pytest.mark.asyncio
    async def test_unpaid_starts_in_trial(self, make_subscription) -> None:
        subscription = await make_subscription(
            tier="STANDARD", payment_confirmed=False, start_date=JAN_1
        )

        assert subscription.status == SubscriptionStatus.TRIAL.value
        assert subscription.trial_end_date == JAN_1 + timedelta(days=14)
        assert subscription.current_period_end == subscription.trial_end_date
        assert subscription.price == 799000

    @pytest.mark.asyncio
    async def test_confirmed_payment_starts_active(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=JAN_1)

        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.trial_end_date is None
        assert subscription.current_period_start == JAN_1
        assert subscription.current_period_end == datetime(2026, 2, 1, 9, 0, 0)
        assert subscription.next_billing_date == subscription.current_period_end
        assert await event_types(session_factory, subscription.id) == [
            BillingEventType.SUBSCRIPTION_CREATED.value,
            BillingEventType.SUBSCRIPTION_ACTIVATED.value,
        ]

    @pytest.mark.asyncio
    async def test_trial_tier_is_always_a_trial(self, make_subscription) -> None:
        subscription = await make_subscription(tier="TRIAL", payment_confirmed=True)

        assert subscription.status == SubscriptionStatus.TRIAL.value
        assert subscription.price == 0

    @pytest.mark.asyncio
    async def test_yearly_period(self, make_subscription) -> None:
        subscription = await make_subscription(
            tier="PREMIUM", billing_cycle="YEARLY", start_date=JAN_1
        )

        assert subscription.price == 19990000
        assert subscription.current_period_end == datetime(2027, 1, 1, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_one_subscription_per_tenant(self, session_factory) -> None:
        organization_id = uuid.uuid4()
        async with unit_of_work(session_factory) as session:
            await SubscriptionService(session).create_subscription(organization_id, "BASIC")

        with pytest.raises(DuplicateSubscription):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).create_subscription(organization_id, "PREMIUM")

    @pytest.mark.asyncio
    async def test_enterprise_needs_negotiated_price(self, session_factory) -> None:
        with pytest.raises(PlanUnavailable):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).create_subscription(
                    uuid.uuid4(), "ENTERPRISE", payment_confirmed=True
                )

        async with unit_of_work(session_factory) as session:
            subscription = await SubscriptionService(session).create_subscription(
                uuid.uuid4(), "ENTERPRISE", payment_confirmed=True, negotiated_price=50_000_000
            )
        assert subscription.price == 50_000_000
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_unknown_tier(self, session_factory) -> None:
        with pytest.raises(ValidationError):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).create_subscription(uuid.uuid4(), "GOLD")

    @pytest.mark.asyncio
    async def test_discount_out_of_range(self, session_factory) -> None:
        with pytest.raises(ValidationError):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).create_subscription(
                    uuid.uuid4(), "BASIC", discount_percent=120
                )


class TestChangeSubscription:

    @pytest.mark.asyncio
    async def test_immediate_upgrade_waits_for_payment(
        self, session_factory, make_subscription
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=JAN_1)

        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id, "STANDARD", effective_date=JAN_16
            )

        # 16 of 30 days left: (799000 - 299000) * 16 / 30 = 266666.67
        assert result.proration_amount == 266667
        assert result.applied is False
        assert result.invoice.kind == InvoiceKind.PRORATION.value
        assert result.invoice.total == 266667
        assert result.invoice.target_tier == "STANDARD"
        assert result.subscription.tier == "BASIC"

        paid = await pay(session_factory, subscription.id, result.invoice.id)

        assert paid.tier == "STANDARD"
        assert paid.price == 799000
        assert paid.status == SubscriptionStatus.ACTIVE.value
        assert paid.current_period_end == datetime(2026, 2, 1, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_downgrade_books_credit(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="STANDARD", start_date=JAN_1)

        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id,
                "BASIC",
                effective_date=JAN_16,
                proration_option=ProrationOption.NEXT_CYCLE,
            )

        assert result.applied is True
        assert result.invoice is None
        assert result.proration_amount == -266667
        assert result.subscription.tier == "BASIC"
        assert result.subscription.price == 299000
        assert result.subscription.pending_adjustment == -266667

    @pytest.mark.asyncio
    async def test_next_cycle_upgrade_is_charged_at_renewal(
        self, session_factory, make_subscription
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=JAN_1)

        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id,
                "PREMIUM",
                effective_date=JAN_16,
                proration_option="NEXT_CYCLE",
            )

        # (1999000 - 299000) * 16 / 30 = 906666.67
        assert result.applied is True
        assert result.subscription.tier == "PREMIUM"
        assert result.subscription.pending_adjustment == 906667

    @pytest.mark.asyncio
    async def test_cycle_switch_next_cycle_keeps_period_end(
        self, session_factory, make_subscription
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=JAN_1)

        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id,
                "BASIC",
                new_billing_cycle="YEARLY",
                effective_date=JAN_16,
                proration_option="NEXT_CYCLE",
            )

        assert result.proration_amount == 0
        assert result.subscription.billing_cycle == "YEARLY"
        assert result.subscription.price == 2990000
        assert result.subscription.current_period_end == datetime(2026, 2, 1, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_cycle_switch_immediate_starts_new_period_on_payment(
        self, session_factory, make_subscription
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=JAN_1)

        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id, "BASIC", new_billing_cycle="YEARLY", effective_date=JAN_16
            )

        # 2990000 - round(299000 * 16 / 30)
        assert result.proration_amount == 2990000 - 159467
        assert result.invoice.target_billing_cycle == "YEARLY"

        paid = await pay(session_factory, subscription.id, result.invoice.id, paid_at=JAN_16)

        assert paid.billing_cycle == "YEARLY"
        assert paid.current_period_start == JAN_16
        assert paid.current_period_end == datetime(2027, 1, 16, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_trial_change_invoices_full_price(
        self, session_factory, make_subscription
    ) -> None:
        subscription = await make_subscription(tier="BASIC", payment_confirmed=False)

        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id, "STANDARD"
            )

        assert result.invoice.kind == InvoiceKind.SUBSCRIPTION.value
        assert result.invoice.total == 799000
        assert result.subscription.status == SubscriptionStatus.TRIAL.value

        paid = await pay(session_factory, subscription.id, result.invoice.id)

        assert paid.status == SubscriptionStatus.ACTIVE.value
        assert paid.tier == "STANDARD"
        assert paid.trial_end_date is None

    @pytest.mark.asyncio
    async def test_same_plan_rejected(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="BASIC")

        with pytest.raises(InvalidTierTransition):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).change_subscription(subscription.id, "BASIC")

    @pytest.mark.asyncio
    async def test_enterprise_changes_rejected(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="BASIC")

        with pytest.raises(InvalidTierTransition):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).change_subscription(
                    subscription.id, "ENTERPRISE"
                )

    @pytest.mark.asyncio
    async def test_grace_period_rejects_changes(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(
            tier="BASIC", start_date=now - timedelta(days=33)
        )

        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            assert await service.apply_time_transitions(loaded, now) == [
                SubscriptionStatus.GRACE_PERIOD
            ]

        with pytest.raises(InvalidStateTransition):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).change_subscription(
                    subscription.id, "STANDARD"
                )

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, session_factory) -> None:
        with pytest.raises(SubscriptionNotFound):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).change_subscription(uuid.uuid4(), "BASIC")


class TestCancelSubscription:

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription()

        async with unit_of_work(session_factory) as session:
            first = await SubscriptionService(session).cancel_subscription(
                subscription.id, reason="Closing school"
            )
        async with unit_of_work(session_factory) as session:
            second = await SubscriptionService(session).cancel_subscription(subscription.id)

        assert first.status == SubscriptionStatus.CANCELLED.value
        assert second.status == SubscriptionStatus.CANCELLED.value
        assert second.cancel_reason == "Closing school"
        assert second.auto_renew is False
        types = await event_types(session_factory, subscription.id)
        assert types.count(BillingEventType.SUBSCRIPTION_CANCELLED.value) == 1

    @pytest.mark.asyncio
    async def test_cancelled_cannot_change(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription()
        async with unit_of_work(session_factory) as session:
            await SubscriptionService(session).cancel_subscription(subscription.id)

        with pytest.raises(InvalidStateTransition):
            async with unit_of_work(session_factory) as session:
                await SubscriptionService(session).change_subscription(
                    subscription.id, "PREMIUM"
                )

    @pytest.mark.asyncio
    async def test_cancelled_ignores_payments(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="BASIC", payment_confirmed=False)
        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id, "BASIC"
            )
        async with unit_of_work(session_factory) as session:
            await SubscriptionService(session).cancel_subscription(subscription.id)

        paid = await pay(session_factory, subscription.id, result.invoice.id)

        assert paid.status == SubscriptionStatus.CANCELLED.value


class TestPaymentOutcome:

    @pytest.mark.asyncio
    async def test_renewal_extends_period(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=JAN_1)
        async with unit_of_work(session_factory) as session:
            loaded = await SubscriptionService(session).get_subscription(subscription.id)
            invoice = await InvoiceService(session).create_renewal_invoice(loaded, now=JAN_16)

        paid = await pay(session_factory, subscription.id, invoice.id)

        assert paid.current_period_start == datetime(2026, 2, 1, 9, 0, 0)
        assert paid.current_period_end == datetime(2026, 3, 1, 9, 0, 0)
        assert paid.next_billing_date == paid.current_period_end

    @pytest.mark.asyncio
    async def test_grace_period_payment_reactivates(
        self, session_factory, make_subscription, now
    ) -> None:
        start = now - timedelta(days=33)
        subscription = await make_subscription(tier="BASIC", start_date=start)
        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            invoice = await service.invoice_service.create_renewal_invoice(loaded, now=now)
            await service.apply_time_transitions(loaded, now)

        paid = await pay(session_factory, subscription.id, invoice.id, paid_at=now)

        assert paid.status == SubscriptionStatus.ACTIVE.value
        assert paid.grace_period_end_date is None
        assert paid.current_period_end == invoice.period_end
        assert paid.current_period_start == add_months(start, 1)

    @pytest.mark.asyncio
    async def test_expired_payment_reactivates(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(
            tier="BASIC", payment_confirmed=False, start_date=now - timedelta(days=20)
        )
        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            await service.apply_time_transitions(loaded, now)
            result = await service.change_subscription(subscription.id, "BASIC")
        assert result.subscription.status == SubscriptionStatus.EXPIRED.value

        paid = await pay(session_factory, subscription.id, result.invoice.id, paid_at=now)

        assert paid.status == SubscriptionStatus.ACTIVE.value
        assert paid.end_date is None
        assert paid.current_period_start == now

    @pytest.mark.asyncio
    async def test_failed_payment_keeps_status(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription(tier="BASIC", payment_confirmed=False)
        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            result = await service.change_subscription(subscription.id, "STANDARD")
            await service.invoice_service.mark_failed(result.invoice)
            after = await service.apply_payment_outcome(
                result.subscription, PaymentOutcome(invoice=result.invoice, succeeded=False)
            )

        assert after.status == SubscriptionStatus.TRIAL.value
        assert result.invoice.status == "FAILED"
        assert BillingEventType.PAYMENT_FAILED.value in await event_types(
            session_factory, subscription.id
        )


async def run_transitions(session_factory, subscription_id, at):
    async with unit_of_work(session_factory) as session:
        service = SubscriptionService(session)
        loaded = await service.get_subscription(subscription_id)
        await service.apply_time_transitions(loaded, at)
        return loaded


class TestPaymentWhileLapsed:
    """Payments that buy no time leave a lapsed subscription on its way out."""

    @pytest.mark.asyncio
    async def test_manual_payment_in_grace_keeps_grace_window(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=now - timedelta(days=33))
        async with unit_of_work(session_factory) as session:
            invoice = await InvoiceService(session).create_manual_invoice(
                subscription.id, amount=150000, description="Onboarding"
            )
        in_grace = await run_transitions(session_factory, subscription.id, now)
        assert in_grace.status == SubscriptionStatus.GRACE_PERIOD.value

        paid = await pay(session_factory, subscription.id, invoice.id, paid_at=now)

        assert paid.status == SubscriptionStatus.GRACE_PERIOD.value
        assert paid.grace_period_end_date == in_grace.grace_period_end_date
        later = await run_transitions(session_factory, subscription.id, now + timedelta(days=30))
        assert later.status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_tier_proration_paid_in_grace_switches_plan_only(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=now - timedelta(days=33))
        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id, "STANDARD", effective_date=now - timedelta(days=10)
            )
        assert result.invoice.kind == InvoiceKind.PRORATION.value
        in_grace = await run_transitions(session_factory, subscription.id, now)

        paid = await pay(session_factory, subscription.id, result.invoice.id, paid_at=now)

        assert paid.tier == "STANDARD"
        assert paid.status == SubscriptionStatus.GRACE_PERIOD.value
        assert paid.grace_period_end_date == in_grace.grace_period_end_date
        later = await run_transitions(session_factory, subscription.id, now + timedelta(days=30))
        assert later.status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_manual_payment_when_expired_stays_expired(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=now - timedelta(days=60))
        async with unit_of_work(session_factory) as session:
            invoice = await InvoiceService(session).create_manual_invoice(
                subscription.id, amount=150000, description="Onboarding"
            )
        expired = await run_transitions(session_factory, subscription.id, now)
        assert expired.status == SubscriptionStatus.EXPIRED.value

        paid = await pay(session_factory, subscription.id, invoice.id, paid_at=now)

        assert paid.status == SubscriptionStatus.EXPIRED.value
        assert paid.end_date == expired.end_date
        assert paid.grace_period_end_date == expired.grace_period_end_date

    @pytest.mark.asyncio
    async def test_tier_proration_paid_when_expired_stays_expired(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=now - timedelta(days=60))
        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id, "STANDARD", effective_date=now - timedelta(days=45)
            )
        assert result.invoice.kind == InvoiceKind.PRORATION.value
        await run_transitions(session_factory, subscription.id, now)

        paid = await pay(session_factory, subscription.id, result.invoice.id, paid_at=now)

        assert paid.tier == "STANDARD"
        assert paid.status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_cycle_proration_paid_when_expired_reactivates(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(tier="BASIC", start_date=now - timedelta(days=60))
        async with unit_of_work(session_factory) as session:
            result = await SubscriptionService(session).change_subscription(
                subscription.id,
                "BASIC",
                new_billing_cycle="YEARLY",
                effective_date=now - timedelta(days=45),
            )
        await run_transitions(session_factory, subscription.id, now)

        paid = await pay(session_factory, subscription.id, result.invoice.id, paid_at=now)

        assert paid.status == SubscriptionStatus.ACTIVE.value
        assert paid.billing_cycle == "YEARLY"
        assert paid.current_period_start == now
        assert paid.end_date is None
        assert paid.grace_period_end_date is None
        types = await event_types(session_factory, subscription.id)
        assert types.count(BillingEventType.SUBSCRIPTION_ACTIVATED.value) == 2


class TestTimeTransitions:

    @pytest.mark.asyncio
    async def test_trial_expires_without_grace(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(
            payment_confirmed=False, start_date=now - timedelta(days=15)
        )

        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            entered = await service.apply_time_transitions(loaded, now)

        assert entered == [SubscriptionStatus.EXPIRED]
        assert loaded.status == SubscriptionStatus.EXPIRED.value
        assert loaded.grace_period_end_date is None

    @pytest.mark.asyncio
    async def test_trial_not_yet_over(self, session_factory, make_subscription, now) -> None:
        subscription = await make_subscription(payment_confirmed=False, start_date=now)

        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            assert await service.apply_time_transitions(loaded, now) == []

    @pytest.mark.asyncio
    async def test_lapsed_period_enters_grace(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(start_date=now - timedelta(days=33))

        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            entered = await service.apply_time_transitions(loaded, now)

        assert entered == [SubscriptionStatus.GRACE_PERIOD]
        assert loaded.grace_period_end_date == loaded.current_period_end + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_long_lapse_passes_through_grace_to_expired(
        self, session_factory, make_subscription, now
    ) -> None:
        subscription = await make_subscription(start_date=now - timedelta(days=60))

        async with unit_of_work(session_factory) as session:
            service = SubscriptionService(session)
            loaded = await service.get_subscription(subscription.id)
            entered = await service.apply_time_transitions(loaded, now)

        assert entered == [SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.EXPIRED]
        types = await event_types(session_factory, subscription.id)
        assert types[-2:] == [
            BillingEventType.GRACE_PERIOD_STARTED.value,
            BillingEventType.SUBSCRIPTION_EXPIRED.value,
        ]


class TestOptimisticLocking:

    @pytest.mark.asyncio
    async def test_stale_write_is_rejected(self, session_factory, make_subscription) -> None:
        subscription = await make_subscription()

        with pytest.raises(ConcurrencyConflict):
            async with unit_of_work(session_factory) as stale_session:
                stale = await SubscriptionService(stale_session).get_subscription(subscription.id)

                async with unit_of_work(session_factory) as session:
                    await SubscriptionService(session).cancel_subscription(subscription.id)

                stale.auto_renew = False
                stale.cancel_reason = "late write"
