"""Billing notification decisions.

The engine decides that a tenant should be told something and what to say.
Delivery (email, WhatsApp, ...) belongs to a dispatcher supplied by the host
application. Dispatch failures are logged and never affect billing state.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from tenant_billing.core.logging import log_error, log_info

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    TRIAL_EXPIRING = "subscription.trial_expiring"
    TRIAL_EXPIRED = "subscription.trial_expired"
    RENEWAL_REMINDER = "subscription.renewal_reminder"
    GRACE_PERIOD_STARTED = "subscription.grace_period_started"
    SUSPENSION_WARNING = "subscription.suspension_warning"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    INVOICE_OVERDUE = "invoice.overdue"
    USAGE_WARNING = "usage.warning"
    USAGE_LIMIT_EXCEEDED = "usage.limit_exceeded"


class NotificationPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class NotificationEvent:
    """A decision to notify a tenant."""
    type: NotificationType
    organization_id: uuid.UUID
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationDispatcher(ABC):
    """Delivers notification events to tenants."""

    @abstractmethod
    async def dispatch(self, event: NotificationEvent) -> None:
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Default dispatcher: records the decision in the logs."""

    async def dispatch(self, event: NotificationEvent) -> None:
        log_info(
            logger,
            f"Notification {event.type.value} for organization {event.organization_id}: {event.title}",
            notification_type=event.type.value,
            organization_id=str(event.organization_id),
            priority=event.priority.value,
            payload=event.payload,
        )


def format_amount(amount: int, currency: str) -> str:
    return f"{currency} {amount:,}".replace(",", ".")


class BillingNotificationService:
    """Builds billing notifications and hands them to a dispatcher."""

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()

    async def _send(self, event: NotificationEvent) -> None:
        try:
            await self.dispatcher.dispatch(event)
        except Exception as e:
            log_error(
                logger,
                f"Failed to dispatch {event.type.value} notification",
                exception=e,
                organization_id=str(event.organization_id),
            )

    async def notify_payment_success(
        self,
        organization_id: uuid.UUID,
        amount: int,
        currency: str,
        invoice_number: str,
        gateway: str,
    ) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.PAYMENT_SUCCESS,
            organization_id=organization_id,
            title="Pembayaran Berhasil",
            message=(
                f"Pembayaran {format_amount(amount, currency)} untuk invoice "
                f"{invoice_number} telah diterima melalui {gateway}."
            ),
            payload={
                "amount": amount,
                "currency": currency,
                "invoice_number": invoice_number,
                "gateway": gateway,
            },
        ))

    async def notify_payment_failed(
        self,
        organization_id: uuid.UUID,
        amount: int,
        currency: str,
        invoice_number: str,
        gateway: str,
        status: str,
    ) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.PAYMENT_FAILED,
            organization_id=organization_id,
            title="Pembayaran Gagal",
            message=(
                f"Pembayaran {format_amount(amount, currency)} untuk invoice "
                f"{invoice_number} tidak berhasil ({status.lower()}). Silakan coba lagi."
            ),
            priority=NotificationPriority.HIGH,
            payload={
                "amount": amount,
                "currency": currency,
                "invoice_number": invoice_number,
                "gateway": gateway,
                "status": status,
            },
        ))

    async def notify_trial_expiring(
        self,
        organization_id: uuid.UUID,
        trial_end_date: datetime,
        days_remaining: int,
    ) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.TRIAL_EXPIRING,
            organization_id=organization_id,
            title="Masa Trial Akan Berakhir",
            message=f"Masa trial Anda berakhir dalam {days_remaining} hari. Pilih paket untuk melanjutkan.",
            priority=NotificationPriority.HIGH if days_remaining <= 1 else NotificationPriority.NORMAL,
            payload={
                "trial_end_date": trial_end_date.isoformat(),
                "days_remaining": days_remaining,
            },
        ))

    async def notify_trial_expired(self, organization_id: uuid.UUID) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.TRIAL_EXPIRED,
            organization_id=organization_id,
            title="Masa Trial Berakhir",
            message="Masa trial Anda telah berakhir. Berlangganan untuk mengaktifkan kembali akses.",
            priority=NotificationPriority.HIGH,
        ))

    async def notify_renewal_reminder(
        self,
        organization_id: uuid.UUID,
        tier: str,
        period_end: datetime,
        days_remaining: int,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        invoice_number: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {
            "tier": tier,
            "period_end": period_end.isoformat(),
            "days_remaining": days_remaining,
        }
        message = f"Langganan paket {tier} Anda diperpanjang dalam {days_remaining} hari."
        if amount is not None and currency:
            message += f" Tagihan: {format_amount(amount, currency)}."
            payload.update(amount=amount, currency=currency, invoice_number=invoice_number)
        await self._send(NotificationEvent(
            type=NotificationType.RENEWAL_REMINDER,
            organization_id=organization_id,
            title="Pengingat Perpanjangan",
            message=message,
            payload=payload,
        ))

    async def notify_grace_period_started(
        self,
        organization_id: uuid.UUID,
        grace_period_end_date: datetime,
    ) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.GRACE_PERIOD_STARTED,
            organization_id=organization_id,
            title="Masa Tenggang Dimulai",
            message=(
                "Periode langganan Anda telah berakhir tanpa pembayaran. Akses tetap aktif "
                f"hingga {grace_period_end_date:%d-%m-%Y}."
            ),
            priority=NotificationPriority.HIGH,
            payload={"grace_period_end_date": grace_period_end_date.isoformat()},
        ))

    async def notify_suspension_warning(
        self,
        organization_id: uuid.UUID,
        grace_period_end_date: datetime,
        days_remaining: int,
    ) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.SUSPENSION_WARNING,
            organization_id=organization_id,
            title="Akses Akan Dinonaktifkan",
            message=f"Akses Anda akan dinonaktifkan dalam {days_remaining} hari jika pembayaran belum diterima.",
            priority=NotificationPriority.CRITICAL,
            payload={
                "grace_period_end_date": grace_period_end_date.isoformat(),
                "days_remaining": days_remaining,
            },
        ))

    async def notify_subscription_expired(self, organization_id: uuid.UUID, tier: str) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.SUBSCRIPTION_EXPIRED,
            organization_id=organization_id,
            title="Langganan Berakhir",
            message=f"Langganan paket {tier} Anda telah berakhir.",
            priority=NotificationPriority.CRITICAL,
            payload={"tier": tier},
        ))

    async def notify_invoice_overdue(
        self,
        organization_id: uuid.UUID,
        invoice_number: str,
        amount: int,
        currency: str,
        due_date: datetime,
    ) -> None:
        await self._send(NotificationEvent(
            type=NotificationType.INVOICE_OVERDUE,
            organization_id=organization_id,
            title="Tagihan Jatuh Tempo",
            message=(
                f"Invoice {invoice_number} sebesar {format_amount(amount, currency)} "
                f"telah melewati jatuh tempo {due_date:%d-%m-%Y}."
            ),
            priority=NotificationPriority.HIGH,
            payload={
                "invoice_number": invoice_number,
                "amount": amount,
                "currency": currency,
                "due_date": due_date.isoformat(),
            },
        ))

    async def notify_usage_warning(
        self,
        organization_id: uuid.UUID,
        metric: str,
        current: float,
        limit: int,
        percentage: int,
        severity: str,
        exceeded: bool = False,
    ) -> None:
        if exceeded:
            notification_type = NotificationType.USAGE_LIMIT_EXCEEDED
            title = "Batas Penggunaan Terlampaui"
            priority = NotificationPriority.CRITICAL
        else:
            notification_type = NotificationType.USAGE_WARNING
            title = "Peringatan Penggunaan"
            priority = (
                NotificationPriority.HIGH if severity == "critical" else NotificationPriority.NORMAL
            )
        await self._send(NotificationEvent(
            type=notification_type,
            organization_id=organization_id,
            title=title,
            message=f"Penggunaan {metric} telah mencapai {percentage}% dari batas paket ({current:g}/{limit}).",
            priority=priority,
            payload={
                "metric": metric,
                "current": current,
                "limit": limit,
                "percentage": percentage,
                "severity": severity,
            },
        ))


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps dispatched events in memory. Useful for previews and tests."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def dispatch(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, notification_type: NotificationType) -> list[NotificationEvent]:
        return [e for e in self.events if e.type == notification_type]
