"""Webhook reconciler.

Turns a gateway notification into invoice, payment transaction and
subscription updates, committed together or not at all.

Status rules, applied to the transaction named by the notification:

- SUCCESS is final. Anything arriving after it is a duplicate.
- FAILED and CANCELLED are final too, except that a later SUCCESS wins:
  the money arrived, so the payment is honoured.
- PENDING never moves a transaction backwards; it is only recorded.

The `version` columns on the transaction and subscription make two
concurrent deliveries for the same rows serialize: the second commit fails
with ConcurrencyConflict and the whole reconciliation can be retried.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from opentelemetry.trace import SpanKind

from tenant_billing.core.database import SessionFactory, async_session_maker, unit_of_work
from tenant_billing.core.errors import (
    ConcurrencyConflict,
    InvalidSignature,
    TransactionNotFound,
)
from tenant_billing.core.logging import log_error, log_info, log_security_event
from tenant_billing.core.metrics import (
    RECONCILIATION_CONFLICTS_TOTAL,
    WEBHOOK_INVALID_SIGNATURES_TOTAL,
    WEBHOOK_NOTIFICATIONS_TOTAL,
)
from tenant_billing.core.tracing import add_span_attributes, create_span
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.notifications import BillingNotificationService
from tenant_billing.modules.billing.repository import InvoiceRepository, SubscriptionRepository
from tenant_billing.modules.billing.service import PaymentOutcome, SubscriptionService
from tenant_billing.modules.payment_gateway.interface import GatewayNotification
from tenant_billing.modules.payment_gateway.models import (
    GatewayProvider,
    PaymentStatus,
)
from tenant_billing.modules.payment_gateway.repository import PaymentTransactionRepository
from tenant_billing.modules.payment_gateway.service import GatewayRegistry

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED_SUCCESS = "APPLIED_SUCCESS"
    APPLIED_FAILURE = "APPLIED_FAILURE"
    RECORDED = "RECORDED"
    DUPLICATE = "DUPLICATE"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    transaction_id: str
    status: PaymentStatus


@dataclass
class _PaymentNotice:
    """What to tell the tenant once the reconciliation committed."""
    succeeded: bool
    organization_id: uuid.UUID
    amount: int
    currency: str
    invoice_number: str
    gateway: str
    raw_status: str


class WebhookReconciler:
    """Applies verified gateway notifications to billing state."""

    def __init__(
        self,
        gateways: GatewayRegistry,
        session_factory: SessionFactory = async_session_maker,
        notifier: Optional[BillingNotificationService] = None,
    ):
        self.gateways = gateways
        self.session_factory = session_factory
        self.notifier = notifier or BillingNotificationService()

    async def reconcile(
        self,
        provider: Union[GatewayProvider, str],
        raw_payload: bytes,
        signature: Optional[str] = None,
    ) -> ReconcileResult:
        """Verify, decode and apply one notification.

        Args:
            provider: Gateway that sent the notification
            raw_payload: Request body exactly as received
            signature: Signature header, for gateways that send one

        Returns:
            ReconcileResult

        Raises:
            InvalidSignature: Authenticity check failed; nothing was read
            ValidationError: Payload does not match the gateway's schema
            TransactionNotFound: No transaction for the order reference
            ConcurrencyConflict: Another writer committed first; retry
        """
        gateway = self.gateways.get(provider)
        gateway_name = gateway.provider.value

        with create_span(
            "billing.webhook.reconcile",
            {"billing.gateway": gateway_name},
            kind=SpanKind.SERVER,
        ):
            if not gateway.verify_notification(raw_payload, signature):
                WEBHOOK_INVALID_SIGNATURES_TOTAL.labels(gateway=gateway_name).inc()
                log_security_event(
                    "webhook_invalid_signature",
                    gateway=gateway_name,
                    payload_size=len(raw_payload),
                )
                raise InvalidSignature(f"Invalid {gateway_name} notification signature")

            notification = gateway.parse_notification(raw_payload)
            add_span_attributes({
                "billing.order_ref": notification.order_ref,
                "billing.notification_status": notification.status.value,
            })

            try:
                result, notice = await self._apply(gateway_name, notification)
            except ConcurrencyConflict:
                RECONCILIATION_CONFLICTS_TOTAL.labels(gateway=gateway_name).inc()
                raise

            add_span_attributes({"billing.reconcile_outcome": result.outcome.value})

        WEBHOOK_NOTIFICATIONS_TOTAL.labels(
            gateway=gateway_name, outcome=result.outcome.value
        ).inc()
        log_info(
            logger,
            f"Reconciled {gateway_name} notification for {notification.order_ref}: "
            f"{result.outcome.value}",
            gateway=gateway_name,
            order_ref=notification.order_ref,
            outcome=result.outcome.value,
        )

        if notice:
            await self._notify(notice)
        return result

    async def _apply(
        self,
        gateway_name: str,
        notification: GatewayNotification,
    ) -> tuple[ReconcileResult, Optional[_PaymentNotice]]:
        async with unit_of_work(self.session_factory) as session:
            transaction_repo = PaymentTransactionRepository(session)
            transaction = await transaction_repo.get_by_gateway_transaction_id(
                notification.order_ref
            )
            if transaction is None:
                raise TransactionNotFound(
                    f"No payment transaction for order {notification.order_ref}"
                )

            transaction.append_notification({
                "received_at": datetime.utcnow().isoformat(),
                "status": notification.status.value,
                "raw_status": notification.raw_status,
                "amount": notification.amount,
                "external_ref": notification.external_ref,
                "payload": notification.payload,
            })
            if notification.external_ref and not transaction.external_ref:
                transaction.external_ref = notification.external_ref

            current = PaymentStatus(transaction.status)
            new = notification.status

            def result(outcome: ReconcileOutcome) -> ReconcileResult:
                return ReconcileResult(
                    outcome=outcome,
                    transaction_id=str(transaction.id),
                    status=PaymentStatus(transaction.status),
                )

            if current == PaymentStatus.SUCCESS:
                return result(ReconcileOutcome.DUPLICATE), None

            if new == PaymentStatus.SUCCESS:
                return await self._apply_success(
                    session, transaction, notification, gateway_name, result
                )

            if current in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                return result(ReconcileOutcome.DUPLICATE), None

            if new == PaymentStatus.PENDING:
                if notification.payment_method:
                    transaction.payment_method = notification.payment_method
                return result(ReconcileOutcome.RECORDED), None

            return await self._apply_failure(
                session, transaction, notification, gateway_name, result
            )

    async def _apply_success(self, session, transaction, notification, gateway_name, result):
        invoice_repo = InvoiceRepository(session)
        invoice = await invoice_repo.get_by_id(transaction.invoice_id)

        other = await PaymentTransactionRepository(session).get_successful_for_invoice(
            transaction.invoice_id, exclude_id=transaction.id
        )
        if invoice.is_paid() or other is not None:
            log_error(
                logger,
                f"Second payment received for invoice {invoice.invoice_number} via "
                f"{notification.order_ref}; refund manually",
                gateway=gateway_name,
                order_ref=notification.order_ref,
                invoice_id=str(invoice.id),
                amount=notification.amount,
            )
            transaction.failure_reason = "Invoice already paid by another transaction"
            return result(ReconcileOutcome.DUPLICATE_PAYMENT), None

        paid_at = notification.paid_at or datetime.utcnow()
        transaction.status = PaymentStatus.SUCCESS.value
        transaction.paid_at = paid_at
        transaction.failure_reason = None
        if notification.payment_method:
            transaction.payment_method = notification.payment_method

        await InvoiceService(session).mark_paid(
            invoice, paid_at=paid_at, payment_method=transaction.payment_method
        )

        subscription = await SubscriptionRepository(session).get_by_id(transaction.subscription_id)
        await SubscriptionService(session).apply_payment_outcome(
            subscription,
            PaymentOutcome(invoice=invoice, succeeded=True, paid_at=paid_at, gateway=gateway_name),
        )

        notice = _PaymentNotice(
            succeeded=True,
            organization_id=transaction.organization_id,
            amount=transaction.amount,
            currency=transaction.currency,
            invoice_number=invoice.invoice_number,
            gateway=gateway_name,
            raw_status=notification.raw_status,
        )
        return result(ReconcileOutcome.APPLIED_SUCCESS), notice

    async def _apply_failure(self, session, transaction, notification, gateway_name, result):
        transaction.status = notification.status.value
        transaction.failure_reason = f"{gateway_name} reported {notification.raw_status}"

        invoice = await InvoiceRepository(session).get_by_id(transaction.invoice_id)
        await InvoiceService(session).mark_failed(invoice)

        subscription = await SubscriptionRepository(session).get_by_id(transaction.subscription_id)
        await SubscriptionService(session).apply_payment_outcome(
            subscription,
            PaymentOutcome(invoice=invoice, succeeded=False, gateway=gateway_name),
        )

        notice = _PaymentNotice(
            succeeded=False,
            organization_id=transaction.organization_id,
            amount=transaction.amount,
            currency=transaction.currency,
            invoice_number=invoice.invoice_number,
            gateway=gateway_name,
            raw_status=notification.raw_status,
        )
        return result(ReconcileOutcome.APPLIED_FAILURE), notice

    async def _notify(self, notice: _PaymentNotice) -> None:
        if notice.succeeded:
            await self.notifier.notify_payment_success(
                notice.organization_id,
                notice.amount,
                notice.currency,
                notice.invoice_number,
                notice.gateway,
            )
        else:
            await self.notifier.notify_payment_failed(
                notice.organization_id,
                notice.amount,
                notice.currency,
                notice.invoice_number,
                notice.gateway,
                notice.raw_status,
            )

