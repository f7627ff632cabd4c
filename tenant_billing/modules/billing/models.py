"""Billing models for subscriptions, invoices, usage and lifecycle events.

Money columns hold integer minor units of the deployment currency. Timestamps
are naive UTC.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.core.database import Base


class SubscriptionTier(str, Enum):
    """Subscription tiers in upgrade order."""
    TRIAL = "TRIAL"
    BASIC = "BASIC"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class BillingCycle(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class ProrationOption(str, Enum):
    """When the price difference of a plan change is billed."""
    IMMEDIATE = "IMMEDIATE"
    NEXT_CYCLE = "NEXT_CYCLE"


class InvoiceStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class InvoiceKind(str, Enum):
    """Why an invoice was issued."""
    SUBSCRIPTION = "SUBSCRIPTION"
    RENEWAL = "RENEWAL"
    PRORATION = "PRORATION"
    MANUAL = "MANUAL"


class UsageMetric(str, Enum):
    """Metered resources. Values are the public metric names."""
    STUDENTS = "students"
    TEACHERS = "teachers"
    STORAGE_USED_GB = "storageUsedGB"
    CUSTOM_FIELDS_USED = "customFieldsUsed"
    API_CALLS_THIS_MONTH = "apiCallsThisMonth"
    SMS_USED_THIS_MONTH = "smsUsedThisMonth"
    EMAILS_USED_THIS_MONTH = "emailsUsedThisMonth"
    REPORTS_GENERATED_THIS_MONTH = "reportsGeneratedThisMonth"


class BillingEventType(str, Enum):
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    TRIAL_STARTED = "TRIAL_STARTED"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    SUBSCRIPTION_CHANGED = "SUBSCRIPTION_CHANGED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    GRACE_PERIOD_STARTED = "GRACE_PERIOD_STARTED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    INVOICE_CREATED = "INVOICE_CREATED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CREDIT_APPLIED = "CREDIT_APPLIED"


class Subscription(Base):
    """One subscription per tenant. Never deleted; CANCELLED is terminal."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, unique=True, index=True
    )

    tier: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    billing_cycle: Mapped[str] = mapped_column(
        String(10), nullable=False, default=BillingCycle.MONTHLY.value
    )

    # Price of one billing cycle at the current tier
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    discount_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    # Signed amount settled by the next renewal invoice (negative = credit)
    pending_adjustment: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime, nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, index=True
    )
    grace_period_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Subscription(org={self.organization_id}, tier={self.tier}, status={self.status})>"

    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED.value

    def has_paid_period(self) -> bool:
        """True while the tenant is inside a period it has paid for (or its grace)."""
        return self.status in (
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.GRACE_PERIOD.value,
        )


class Invoice(Base):
    """A charge due from a tenant. Immutable once PAID."""

    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # amount is what the gateway collects; it always equals total
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value, index=True
    )
    due_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Service period this invoice pays for (renewals and first payments)
    period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    # Plan the subscription moves to once this invoice is paid
    target_tier: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    target_billing_cycle: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        Index("ix_invoices_subscription_kind_period", "subscription_id", "kind", "period_start"),
        Index("ix_invoices_status_due", "status", "due_date"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(number={self.invoice_number}, total={self.total}, status={self.status})>"

    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID.value


class UsageRecord(Base):
    """Running counter for one (tenant, metric, period)."""

    __tablename__ = "usage_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    metric: Mapped[str] = mapped_column(String(50), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    count: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "metric", "period_start",
            name="uq_usage_records_org_metric_period",
        ),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(org={self.organization_id}, metric={self.metric}, count={self.count})>"


class BillingEvent(Base):
    """History of subscription lifecycle events."""

    __tablename__ = "billing_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(type={self.event_type}, org={self.organization_id})>"
