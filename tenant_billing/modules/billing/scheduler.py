"""Daily billing sweep.

Triggered once a day from outside (cron endpoint, Celery beat or the
run_billing_tasks script). Every subscription is processed in its own unit of
work so one conflict or failure never blocks the rest of the sweep. All
status changes go through SubscriptionService; the scheduler only compares
dates and decides which reminders are due.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence

from tenant_billing.core.config import settings
from tenant_billing.core.database import SessionFactory, async_session_maker, unit_of_work
from tenant_billing.core.errors import ConcurrencyConflict
from tenant_billing.core.logging import log_error, log_warning
from tenant_billing.core.metrics import SCHEDULER_LAST_RUN_TIMESTAMP, SCHEDULER_RUNS_TOTAL
from tenant_billing.core.tracing import add_span_attributes, create_span
from tenant_billing.modules.billing.catalog import TierCatalog, default_catalog
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.models import (
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
)
from tenant_billing.modules.billing.notifications import BillingNotificationService
from tenant_billing.modules.billing.repository import (
    BillingEventRepository,
    InvoiceRepository,
    SubscriptionRepository,
)
from tenant_billing.modules.billing.service import PaymentOutcome, SubscriptionService
from tenant_billing.modules.billing.usage import UsageLedger

logger = logging.getLogger(__name__)

# Days past due on which an overdue reminder goes out
OVERDUE_REMINDER_DAYS = (1, 3, 7)

Notification = Callable[[], Awaitable[None]]


@dataclass
class SchedulerSummary:
    """Counters for one sweep."""
    run_at: datetime
    subscriptions_processed: int = 0
    trials_expired: int = 0
    grace_periods_started: int = 0
    subscriptions_expired: int = 0
    renewal_invoices_created: int = 0
    renewals_settled: int = 0
    reminders_sent: int = 0
    usage_warnings_sent: int = 0
    overdue_reminders_sent: int = 0
    events_purged: int = 0
    conflicts: int = 0
    errors: int = 0
    failed_subscriptions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["run_at"] = self.run_at.isoformat()
        return data


def days_until(deadline: Optional[datetime], now: datetime) -> Optional[int]:
    """Calendar days between now and deadline."""
    if deadline is None:
        return None
    return (deadline.date() - now.date()).days


class DailyScheduler:
    """Runs the daily subscription sweep."""

    def __init__(
        self,
        session_factory: SessionFactory = async_session_maker,
        notifier: Optional[BillingNotificationService] = None,
        catalog: TierCatalog = default_catalog,
        trial_reminder_days: Sequence[int] = tuple(settings.TRIAL_REMINDER_DAYS),
        renewal_reminder_days: Sequence[int] = tuple(settings.RENEWAL_REMINDER_DAYS),
        grace_warning_days: Sequence[int] = tuple(settings.GRACE_WARNING_DAYS),
        renewal_lead_days: int = settings.RENEWAL_INVOICE_LEAD_DAYS,
        grace_period_days: int = settings.GRACE_PERIOD_DAYS,
        retention_days: int = settings.BILLING_EVENT_RETENTION_DAYS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or BillingNotificationService()
        self.catalog = catalog
        self.trial_reminder_days = set(trial_reminder_days)
        self.renewal_reminder_days = set(renewal_reminder_days)
        self.grace_warning_days = set(grace_warning_days)
        self.renewal_lead_days = renewal_lead_days
        self.grace_period_days = grace_period_days
        self.retention_days = retention_days

    async def run(self, now: Optional[datetime] = None) -> SchedulerSummary:
        """Sweep every subscription, then overdue invoices and old events.

        Args:
            now: Clock override

        Returns:
            SchedulerSummary with per-step counters
        """
        now = now or datetime.utcnow()
        summary = SchedulerSummary(run_at=now)
        logger.info(f"Running daily billing sweep for {now.isoformat()}")

        with create_span("billing.scheduler.run", {"billing.run_at": now.isoformat()}):
            async with unit_of_work(self.session_factory) as session:
                subscription_ids = await SubscriptionRepository(session).list_ids()

            for subscription_id in subscription_ids:
                await self._process_safely(subscription_id, now, summary)

            await self._remind_overdue_invoices(now, summary)
            await self._purge_events(now, summary)

            add_span_attributes({
                "billing.subscriptions_processed": summary.subscriptions_processed,
                "billing.errors": summary.errors,
                "billing.conflicts": summary.conflicts,
            })

        result = "success" if not (summary.errors or summary.conflicts) else "partial"
        SCHEDULER_RUNS_TOTAL.labels(result=result).inc()
        SCHEDULER_LAST_RUN_TIMESTAMP.set(time.time())
        logger.info(f"Daily billing sweep completed: {summary.to_dict()}")
        return summary

    async def _process_safely(
        self,
        subscription_id: uuid.UUID,
        now: datetime,
        summary: SchedulerSummary,
    ) -> None:
        try:
            notifications = await self._process_subscription(subscription_id, now, summary)
        except ConcurrencyConflict:
            summary.conflicts += 1
            summary.failed_subscriptions.append(str(subscription_id))
            log_warning(
                logger,
                f"Subscription {subscription_id} changed during the sweep; retrying tomorrow",
                subscription_id=str(subscription_id),
            )
            return
        except Exception as e:
            summary.errors += 1
            summary.failed_subscriptions.append(str(subscription_id))
            log_error(
                logger,
                f"Failed to process subscription {subscription_id}",
                exception=e,
                subscription_id=str(subscription_id),
            )
            return

        summary.subscriptions_processed += 1
        for notify in notifications:
            await notify()

    async def _process_subscription(
        self,
        subscription_id: uuid.UUID,
        now: datetime,
        summary: SchedulerSummary,
    ) -> list[Notification]:
        """One subscription's tick. Returns notifications to send after commit."""
        notifications: list[Notification] = []
        counts = {
            "trials_expired": 0,
            "grace_periods_started": 0,
            "subscriptions_expired": 0,
            "renewal_invoices_created": 0,
            "renewals_settled": 0,
            "reminders_sent": 0,
            "usage_warnings_sent": 0,
        }

        async with unit_of_work(self.session_factory) as session:
            service = SubscriptionService(
                session, self.catalog, grace_period_days=self.grace_period_days
            )
            subscription = await service.subscription_repo.get_by_id(subscription_id)
            if subscription is None or subscription.is_terminal():
                return notifications

            previous_status = subscription.status
            for entered in await service.apply_time_transitions(subscription, now):
                if entered == SubscriptionStatus.GRACE_PERIOD:
                    counts["grace_periods_started"] += 1
                    notifications.append(self._bind(
                        self.notifier.notify_grace_period_started,
                        subscription.organization_id,
                        subscription.grace_period_end_date,
                    ))
                elif previous_status == SubscriptionStatus.TRIAL.value:
                    counts["trials_expired"] += 1
                    notifications.append(self._bind(
                        self.notifier.notify_trial_expired, subscription.organization_id
                    ))
                else:
                    counts["subscriptions_expired"] += 1
                    notifications.append(self._bind(
                        self.notifier.notify_subscription_expired,
                        subscription.organization_id,
                        subscription.tier,
                    ))

            renewal = await self._issue_renewal(service, subscription, now, counts)

            notifications.extend(self._reminders(subscription, renewal, now, counts))

            if subscription.status != SubscriptionStatus.EXPIRED.value:
                notifications.extend(
                    await self._usage_warnings(session, subscription, now, counts)
                )

        for key, value in counts.items():
            setattr(summary, key, getattr(summary, key) + value)
        return notifications

    async def _issue_renewal(
        self,
        service: SubscriptionService,
        subscription: Subscription,
        now: datetime,
        counts: dict,
    ) -> Optional[Invoice]:
        """Renewal invoice for an auto-renewing subscription near or past period end."""
        if not subscription.has_paid_period() or not subscription.auto_renew:
            return None
        if subscription.current_period_end - now > timedelta(days=self.renewal_lead_days):
            return None

        invoice_repo = InvoiceRepository(service.session)
        existing = await invoice_repo.get_for_period(
            subscription.id, InvoiceKind.RENEWAL, subscription.current_period_end
        )
        if existing:
            return existing

        invoice = await service.invoice_service.create_renewal_invoice(subscription, now)
        counts["renewal_invoices_created"] += 1

        if invoice.total == 0:
            # Fully covered by credit
            await service.invoice_service.mark_paid(invoice, paid_at=now, payment_method="credit")
            await service.apply_payment_outcome(
                subscription, PaymentOutcome(invoice=invoice, succeeded=True, paid_at=now)
            )
            counts["renewals_settled"] += 1
        return invoice

    def _reminders(
        self,
        subscription: Subscription,
        renewal: Optional[Invoice],
        now: datetime,
        counts: dict,
    ) -> list[Notification]:
        reminders = []
        status = subscription.status

        if status == SubscriptionStatus.TRIAL.value:
            days = days_until(subscription.trial_end_date, now)
            if days in self.trial_reminder_days:
                reminders.append(self._bind(
                    self.notifier.notify_trial_expiring,
                    subscription.organization_id,
                    subscription.trial_end_date,
                    days,
                ))

        elif status == SubscriptionStatus.ACTIVE.value and subscription.auto_renew:
            days = days_until(subscription.current_period_end, now)
            if days in self.renewal_reminder_days:
                unpaid = renewal if renewal and renewal.status != InvoiceStatus.PAID.value else None
                reminders.append(self._bind(
                    self.notifier.notify_renewal_reminder,
                    subscription.organization_id,
                    subscription.tier,
                    subscription.current_period_end,
                    days,
                    unpaid.total if unpaid else None,
                    unpaid.currency if unpaid else None,
                    unpaid.invoice_number if unpaid else None,
                ))

        elif status == SubscriptionStatus.GRACE_PERIOD.value:
            days = days_until(subscription.grace_period_end_date, now)
            if days in self.grace_warning_days:
                reminders.append(self._bind(
                    self.notifier.notify_suspension_warning,
                    subscription.organization_id,
                    subscription.grace_period_end_date,
                    days,
                ))

        counts["reminders_sent"] += len(reminders)
        return reminders

    async def _usage_warnings(
        self,
        session,
        subscription: Subscription,
        now: datetime,
        counts: dict,
    ) -> list[Notification]:
        ledger = UsageLedger(session, self.catalog)
        result = await ledger.check_subscription_limits(subscription, now)
        warnings = [
            self._bind(
                self.notifier.notify_usage_warning,
                subscription.organization_id,
                warning.metric,
                warning.current,
                warning.limit,
                warning.percentage,
                warning.severity,
                warning.metric in result.exceeded,
            )
            for warning in result.warnings
        ]
        counts["usage_warnings_sent"] += len(warnings)
        return warnings

    async def _remind_overdue_invoices(self, now: datetime, summary: SchedulerSummary) -> None:
        try:
            async with unit_of_work(self.session_factory) as session:
                overdue = await InvoiceService(session).get_overdue_invoices(now)
        except Exception as e:
            summary.errors += 1
            log_error(logger, "Failed to load overdue invoices", exception=e)
            return

        for invoice in overdue:
            if -days_until(invoice.due_date, now) not in OVERDUE_REMINDER_DAYS:
                continue
            await self.notifier.notify_invoice_overdue(
                invoice.organization_id,
                invoice.invoice_number,
                invoice.total,
                invoice.currency,
                invoice.due_date,
            )
            summary.overdue_reminders_sent += 1

    async def _purge_events(self, now: datetime, summary: SchedulerSummary) -> None:
        cutoff = now - timedelta(days=self.retention_days)
        try:
            async with unit_of_work(self.session_factory) as session:
                summary.events_purged = await BillingEventRepository(session).delete_older_than(
                    cutoff
                )
        except Exception as e:
            summary.errors += 1
            log_error(logger, "Failed to purge old billing events", exception=e)

    @staticmethod
    def _bind(func: Callable[..., Awaitable[None]], *args) -> Notification:
        async def notify() -> None:
            await func(*args)
        return notify
