"""Tests for applying gateway notifications to billing state."""

import pytest

from tenant_billing.core.database import unit_of_work
from tenant_billing.core.errors import (
    ConcurrencyConflict,
    InvalidSignature,
    TransactionNotFound,
    ValidationError,
)
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.models import InvoiceStatus, SubscriptionStatus
from tenant_billing.modules.billing.notifications import NotificationType
from tenant_billing.modules.billing.service import SubscriptionService
from tenant_billing.modules.payment_gateway.models import PaymentStatus
from tenant_billing.modules.payment_gateway.reconciler import ReconcileOutcome, WebhookReconciler
from tenant_billing.modules.payment_gateway.repository import PaymentTransactionRepository

from signed_payloads import midtrans_body, tripay_body


@pytest.fixture
def reconciler(registry, session_factory, notifier):
    return WebhookReconciler(registry, session_factory=session_factory, notifier=notifier)


async def load_state(session_factory, transaction):
    """Transaction, invoice and subscription as committed."""
    async with session_factory() as session:
        tx = await PaymentTransactionRepository(session).get_by_id(transaction.id)
        invoice = await InvoiceService(session).get_invoice(transaction.invoice_id)
        subscription = await SubscriptionService(session).get_subscription(
            transaction.subscription_id
        )
    return tx, invoice, subscription


class TestSuccess:

    @pytest.mark.asyncio
    async def test_settlement_activates_subscription(
        self, reconciler, session_factory, pending_charge, dispatcher
    ) -> None:
        result = await reconciler.reconcile(
            "midtrans", midtrans_body(pending_charge.gateway_transaction_id, "settlement")
        )

        assert result.outcome == ReconcileOutcome.APPLIED_SUCCESS
        assert result.transaction_id == str(pending_charge.id)
        tx, invoice, subscription = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.SUCCESS.value
        assert tx.payment_method == "bank_transfer"
        assert tx.external_ref == f"mt-{pending_charge.gateway_transaction_id}"
        assert len(tx.gateway_response["notifications"]) == 1
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.paid_date == tx.paid_at
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert subscription.tier == "STANDARD"
        assert len(dispatcher.of_type(NotificationType.PAYMENT_SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(
        self, reconciler, session_factory, pending_charge, dispatcher
    ) -> None:
        body = midtrans_body(pending_charge.gateway_transaction_id, "settlement")

        first = await reconciler.reconcile("midtrans", body)
        _, _, after_first = await load_state(session_factory, pending_charge)
        second = await reconciler.reconcile("midtrans", body)

        assert first.outcome == ReconcileOutcome.APPLIED_SUCCESS
        assert second.outcome == ReconcileOutcome.DUPLICATE
        tx, _, after_second = await load_state(session_factory, pending_charge)
        assert after_second.current_period_end == after_first.current_period_end
        assert after_second.version == after_first.version
        assert len(tx.gateway_response["notifications"]) == 2
        assert len(dispatcher.of_type(NotificationType.PAYMENT_SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_pending_after_success_ignored(
        self, reconciler, session_factory, pending_charge
    ) -> None:
        order_ref = pending_charge.gateway_transaction_id
        await reconciler.reconcile("midtrans", midtrans_body(order_ref, "settlement"))

        result = await reconciler.reconcile("midtrans", midtrans_body(order_ref, "pending"))

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert result.status == PaymentStatus.SUCCESS
        tx, _, _ = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.SUCCESS.value

    @pytest.mark.asyncio
    async def test_failure_after_success_ignored(
        self, reconciler, session_factory, pending_charge
    ) -> None:
        order_ref = pending_charge.gateway_transaction_id
        await reconciler.reconcile("midtrans", midtrans_body(order_ref, "settlement"))

        result = await reconciler.reconcile("midtrans", midtrans_body(order_ref, "expire"))

        assert result.outcome == ReconcileOutcome.DUPLICATE
        tx, invoice, _ = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.SUCCESS.value
        assert invoice.status == InvoiceStatus.PAID.value

    @pytest.mark.asyncio
    async def test_tripay_paid(
        self, reconciler, session_factory, make_pending_charge
    ) -> None:
        transaction = await make_pending_charge(order_ref="SUB-2-TRIPAY01", gateway="tripay")
        body, signature = tripay_body(transaction.gateway_transaction_id, "PAID")

        result = await reconciler.reconcile("tripay", body, signature)

        assert result.outcome == ReconcileOutcome.APPLIED_SUCCESS
        tx, _, subscription = await load_state(session_factory, transaction)
        assert tx.payment_method == "BRIVA"
        assert subscription.status == SubscriptionStatus.ACTIVE.value


class TestFailure:

    @pytest.mark.asyncio
    async def test_expire_fails_invoice(
        self, reconciler, session_factory, pending_charge, dispatcher
    ) -> None:
        result = await reconciler.reconcile(
            "midtrans", midtrans_body(pending_charge.gateway_transaction_id, "expire")
        )

        assert result.outcome == ReconcileOutcome.APPLIED_FAILURE
        tx, invoice, subscription = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.FAILED.value
        assert tx.failure_reason == "midtrans reported expire"
        assert invoice.status == InvoiceStatus.FAILED.value
        assert subscription.status == SubscriptionStatus.TRIAL.value
        assert len(dispatcher.of_type(NotificationType.PAYMENT_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_late_success_after_failure_wins(
        self, reconciler, session_factory, pending_charge
    ) -> None:
        order_ref = pending_charge.gateway_transaction_id
        await reconciler.reconcile("midtrans", midtrans_body(order_ref, "deny"))

        result = await reconciler.reconcile("midtrans", midtrans_body(order_ref, "settlement"))

        assert result.outcome == ReconcileOutcome.APPLIED_SUCCESS
        tx, invoice, subscription = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.SUCCESS.value
        assert tx.failure_reason is None
        assert invoice.status == InvoiceStatus.PAID.value
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_repeated_failure_is_duplicate(
        self, reconciler, pending_charge, dispatcher
    ) -> None:
        body = midtrans_body(pending_charge.gateway_transaction_id, "expire")
        await reconciler.reconcile("midtrans", body)

        result = await reconciler.reconcile("midtrans", body)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert len(dispatcher.of_type(NotificationType.PAYMENT_FAILED)) == 1

    @pytest.mark.asyncio
    async def test_pending_is_recorded(
        self, reconciler, session_factory, pending_charge
    ) -> None:
        result = await reconciler.reconcile(
            "midtrans", midtrans_body(pending_charge.gateway_transaction_id, "pending")
        )

        assert result.outcome == ReconcileOutcome.RECORDED
        tx, invoice, _ = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.PENDING.value
        assert tx.payment_method == "bank_transfer"
        assert invoice.status == InvoiceStatus.PENDING.value


class TestDoublePayment:

    @pytest.mark.asyncio
    async def test_second_success_for_paid_invoice(
        self, reconciler, session_factory, pending_charge, make_pending_charge, dispatcher
    ) -> None:
        second = await make_pending_charge(
            order_ref="SUB-3-SECOND01", invoice_id=pending_charge.invoice_id
        )
        await reconciler.reconcile(
            "midtrans", midtrans_body(pending_charge.gateway_transaction_id, "settlement")
        )

        result = await reconciler.reconcile(
            "midtrans", midtrans_body(second.gateway_transaction_id, "settlement")
        )

        assert result.outcome == ReconcileOutcome.DUPLICATE_PAYMENT
        tx, invoice, _ = await load_state(session_factory, second)
        assert tx.status == PaymentStatus.PENDING.value
        assert tx.failure_reason == "Invoice already paid by another transaction"
        assert invoice.status == InvoiceStatus.PAID.value
        assert len(dispatcher.of_type(NotificationType.PAYMENT_SUCCESS)) == 1


class TestRejection:

    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(
        self, reconciler, session_factory, pending_charge
    ) -> None:
        body = midtrans_body(
            pending_charge.gateway_transaction_id, "settlement", server_key="forged"
        )

        with pytest.raises(InvalidSignature):
            await reconciler.reconcile("midtrans", body)

        tx, invoice, _ = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.PENDING.value
        assert tx.gateway_response == {}
        assert invoice.status == InvoiceStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_signature_checked_before_parsing(self, reconciler) -> None:
        body, _ = tripay_body("SUB-9", "PAID")

        with pytest.raises(InvalidSignature):
            await reconciler.reconcile("tripay", b"{not json", "0" * 64)
        with pytest.raises(InvalidSignature):
            await reconciler.reconcile("tripay", body, None)

    @pytest.mark.asyncio
    async def test_unknown_order(self, reconciler) -> None:
        with pytest.raises(TransactionNotFound):
            await reconciler.reconcile("midtrans", midtrans_body("SUB-0-UNKNOWN", "settlement"))

    @pytest.mark.asyncio
    async def test_signed_but_malformed(self, reconciler) -> None:
        body, signature = tripay_body("SUB-9", "PAID", reference=None)

        with pytest.raises(ValidationError):
            await reconciler.reconcile("tripay", body, signature)


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_stale_transaction_write_conflicts(
        self, reconciler, session_factory, pending_charge
    ) -> None:
        with pytest.raises(ConcurrencyConflict):
            async with unit_of_work(session_factory) as stale_session:
                stale = await PaymentTransactionRepository(stale_session).get_by_id(
                    pending_charge.id
                )

                await reconciler.reconcile(
                    "midtrans",
                    midtrans_body(pending_charge.gateway_transaction_id, "settlement"),
                )

                stale.status = PaymentStatus.FAILED.value

        tx, _, _ = await load_state(session_factory, pending_charge)
        assert tx.status == PaymentStatus.SUCCESS.value
