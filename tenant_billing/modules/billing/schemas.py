"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from tenant_billing.modules.billing.models import (
    BillingCycle,
    InvoiceStatus,
    ProrationOption,
    SubscriptionTier,
)


# ==================== Plan Schemas ====================

class TierLimitsResponse(BaseModel):
    """Usage limits for a tier; -1 means unlimited."""
    max_students: int
    max_teachers: int
    max_storage_gb: int
    max_api_calls: int
    max_sms_per_month: int
    max_emails_per_month: int
    max_reports_per_month: int
    custom_fields_limit: int

    class Config:
        from_attributes = True


class PlanResponse(BaseModel):
    tier: SubscriptionTier
    billing_cycle: BillingCycle
    name: str
    description: str
    price: Optional[int] = Field(None, description="Price per cycle; null for negotiated pricing")
    trial_days: int
    features: list[str]
    limits: TierLimitsResponse

    class Config:
        from_attributes = True


class ProrationPreviewRequest(BaseModel):
    """Preview the amount owed for switching plans mid-cycle."""
    current_tier: SubscriptionTier
    new_tier: SubscriptionTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    days_remaining: int = Field(..., ge=0)
    total_days_in_cycle: Optional[int] = Field(
        None, gt=0, description="Defaults to 30 for MONTHLY and 365 for YEARLY"
    )


class ProrationPreviewResponse(BaseModel):
    current_price: int
    new_price: int
    days_remaining: int
    total_days_in_cycle: int
    amount: int = Field(..., description="Positive is charged now; negative is credited")
    is_upgrade: bool


# ==================== Subscription Schemas ====================

class SubscriptionCreate(BaseModel):
    organization_id: uuid.UUID
    tier: SubscriptionTier = SubscriptionTier.TRIAL
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    payment_confirmed: bool = False
    discount_percent: Optional[float] = Field(None, ge=0, le=100)
    discount_end_date: Optional[datetime] = None
    negotiated_price: Optional[int] = Field(
        None, ge=0, description="Required for ENTERPRISE"
    )


class SubscriptionChange(BaseModel):
    new_tier: SubscriptionTier
    new_billing_cycle: Optional[BillingCycle] = None
    proration_option: ProrationOption = ProrationOption.IMMEDIATE


class SubscriptionCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    tier: str
    status: str
    billing_cycle: str
    price: int
    discount_percent: Optional[float] = None
    discount_end_date: Optional[datetime] = None
    pending_adjustment: int
    auto_renew: bool
    start_date: datetime
    end_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    current_period_start: datetime
    current_period_end: datetime
    grace_period_end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    last_payment_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ==================== Invoice Schemas ====================

class InvoiceResponse(BaseModel):
    id: uuid.UUID
    invoice_number: str
    subscription_id: uuid.UUID
    organization_id: uuid.UUID
    kind: str
    description: Optional[str] = None
    amount: int
    subtotal: int
    discount: int
    tax: int
    total: int
    currency: str
    line_items: list[dict]
    status: InvoiceStatus
    due_date: datetime
    paid_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    target_tier: Optional[str] = None
    target_billing_cycle: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ManualInvoiceCreate(BaseModel):
    subscription_id: uuid.UUID
    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    due_date: Optional[datetime] = None


class SubscriptionChangeResponse(BaseModel):
    subscription: SubscriptionResponse
    proration_amount: int
    applied: bool = Field(..., description="False while waiting for the invoice to be paid")
    invoice: Optional[InvoiceResponse] = None


# ==================== Usage Schemas ====================

class UsageTrack(BaseModel):
    metric: str = Field(..., description="Usage metric name, e.g. students")
    increment: float = 1


class UsageTrackResponse(BaseModel):
    organization_id: uuid.UUID
    metric: str
    value: float


class UsageWarningResponse(BaseModel):
    metric: str
    current: float
    limit: int
    percentage: int
    severity: str

    class Config:
        from_attributes = True


class UsageCheckResponse(BaseModel):
    usage: dict[str, float]
    limits: dict[str, int]
    usage_percentages: dict[str, int]
    warnings: list[UsageWarningResponse]
    unlimited: list[str]
    exceeded: list[str]
    is_within_limits: bool

    class Config:
        from_attributes = True


class SubscriptionWithUsageResponse(BaseModel):
    subscription: SubscriptionResponse
    plan: Optional[PlanResponse] = None
    usage: UsageCheckResponse

    class Config:
        from_attributes = True


# ==================== Scheduler Schemas ====================

class SchedulerRunResponse(BaseModel):
    run_at: datetime
    subscriptions_processed: int
    trials_expired: int
    grace_periods_started: int
    subscriptions_expired: int
    renewal_invoices_created: int
    renewals_settled: int
    reminders_sent: int
    usage_warnings_sent: int
    overdue_reminders_sent: int
    events_purged: int
    conflicts: int
    errors: int
    failed_subscriptions: list[str]
