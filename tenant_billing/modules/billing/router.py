"""API Router for the billing engine.

Implements endpoints for plans, proration previews, the subscription
lifecycle, usage metering, invoices and the daily scheduler trigger.
"""

import hmac
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.config import settings
from tenant_billing.core.database import (
    SessionFactory,
    get_session,
    get_session_factory,
    unit_of_work,
)
from tenant_billing.core.errors import InvalidSignature, PlanUnavailable
from tenant_billing.core.logging import log_security_event
from tenant_billing.modules.billing.catalog import (
    calculate_proration,
    days_in_cycle,
    default_catalog,
    is_upgrade,
)
from tenant_billing.modules.billing.invoices import InvoiceService
from tenant_billing.modules.billing.models import BillingCycle, InvoiceStatus, SubscriptionTier
from tenant_billing.modules.billing.notifications import BillingNotificationService
from tenant_billing.modules.billing.scheduler import DailyScheduler
from tenant_billing.modules.billing.schemas import (
    InvoiceResponse,
    ManualInvoiceCreate,
    PlanResponse,
    ProrationPreviewRequest,
    ProrationPreviewResponse,
    SchedulerRunResponse,
    SubscriptionCancel,
    SubscriptionChange,
    SubscriptionChangeResponse,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionWithUsageResponse,
    UsageCheckResponse,
    UsageTrack,
    UsageTrackResponse,
)
from tenant_billing.modules.billing.service import SubscriptionService
from tenant_billing.modules.billing.usage import UsageLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def get_notifier(request: Request) -> BillingNotificationService:
    """Notification service configured at startup, or a logging one."""
    notifier = getattr(request.app.state, "notifier", None)
    return notifier or BillingNotificationService()


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Only the scheduler's cron caller may trigger a sweep.

    Raises:
        InvalidSignature: CRON_SECRET unset, header missing or wrong
    """
    expected = f"Bearer {settings.CRON_SECRET}"
    if not settings.CRON_SECRET or not authorization or not hmac.compare_digest(
        authorization.encode(), expected.encode()
    ):
        log_security_event("cron_unauthorized", has_header=authorization is not None)
        raise InvalidSignature("Invalid cron credentials")


# ==================== Plans ====================

@router.get("/plans", response_model=list[PlanResponse])
async def get_all_plans(billing_cycle: BillingCycle = BillingCycle.MONTHLY):
    """All tiers priced for a billing cycle. ENTERPRISE is listed with a null price."""
    return default_catalog.get_all_plans(billing_cycle)


@router.get("/plans/{tier}", response_model=PlanResponse)
async def get_plan(tier: SubscriptionTier, billing_cycle: BillingCycle = BillingCycle.MONTHLY):
    plan = default_catalog.get_plan(tier, billing_cycle)
    if plan is None:
        raise PlanUnavailable(f"Unknown tier {tier.value}")
    return plan


@router.post("/proration/preview", response_model=ProrationPreviewResponse)
async def preview_proration(data: ProrationPreviewRequest):
    """Amount owed for switching plans with the given days left in the cycle.

    Raises PlanUnavailable (404) for ENTERPRISE on either side.
    """
    current_plan = default_catalog.get_plan(data.current_tier, data.billing_cycle)
    new_plan = default_catalog.get_plan(data.new_tier, data.billing_cycle)
    if current_plan is None or current_plan.price is None:
        raise PlanUnavailable(f"No self-service price for tier {data.current_tier.value}")
    if new_plan is None or new_plan.price is None:
        raise PlanUnavailable(f"No self-service price for tier {data.new_tier.value}")

    total_days = data.total_days_in_cycle or days_in_cycle(data.billing_cycle)
    amount = calculate_proration(current_plan, new_plan, data.days_remaining, total_days)
    return ProrationPreviewResponse(
        current_price=current_plan.price,
        new_price=new_plan.price,
        days_remaining=data.days_remaining,
        total_days_in_cycle=total_days,
        amount=amount,
        is_upgrade=is_upgrade(data.current_tier, data.new_tier),
    )


# ==================== Subscriptions ====================

@router.post(
    "/subscriptions",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    data: SubscriptionCreate,
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Create a tenant's subscription. Starts in TRIAL unless payment was confirmed."""
    async with unit_of_work(session_factory) as session:
        return await SubscriptionService(session).create_subscription(
            organization_id=data.organization_id,
            tier=data.tier,
            billing_cycle=data.billing_cycle,
            payment_confirmed=data.payment_confirmed,
            discount_percent=data.discount_percent,
            discount_end_date=data.discount_end_date,
            negotiated_price=data.negotiated_price,
        )


@router.get("/subscriptions/{organization_id}", response_model=SubscriptionWithUsageResponse)
async def get_subscription_with_usage(
    organization_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Subscription, plan and current usage for a tenant."""
    result = await SubscriptionService(session).get_subscription_with_usage(organization_id)
    return SubscriptionWithUsageResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        plan=PlanResponse.model_validate(result.plan) if result.plan else None,
        usage=UsageCheckResponse.model_validate(result.usage),
    )


@router.post(
    "/subscriptions/{subscription_id}/change",
    response_model=SubscriptionChangeResponse,
)
async def change_subscription(
    subscription_id: uuid.UUID,
    data: SubscriptionChange,
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Upgrade, downgrade or switch the billing cycle.

    When an invoice is returned the change takes effect once it is paid.
    """
    async with unit_of_work(session_factory) as session:
        result = await SubscriptionService(session).change_subscription(
            subscription_id,
            new_tier=data.new_tier,
            new_billing_cycle=data.new_billing_cycle,
            proration_option=data.proration_option,
        )
    return SubscriptionChangeResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        proration_amount=result.proration_amount,
        applied=result.applied,
        invoice=InvoiceResponse.model_validate(result.invoice) if result.invoice else None,
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    data: Optional[SubscriptionCancel] = None,
    session_factory: SessionFactory = Depends(get_session_factory),
):
    async with unit_of_work(session_factory) as session:
        return await SubscriptionService(session).cancel_subscription(
            subscription_id, reason=data.reason if data else None
        )


# ==================== Usage ====================

@router.post("/usage/{organization_id}", response_model=UsageTrackResponse)
async def track_usage(
    organization_id: uuid.UUID,
    data: UsageTrack,
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Add to a usage counter for the tenant's current period."""
    async with unit_of_work(session_factory) as session:
        value = await UsageLedger(session).track_usage(
            organization_id, data.metric, data.increment
        )
    return UsageTrackResponse(organization_id=organization_id, metric=data.metric, value=value)


@router.get("/usage/{organization_id}", response_model=UsageCheckResponse)
async def check_usage_limits(
    organization_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Usage against tier limits with warnings at 70% and 90%."""
    return await UsageLedger(session).check_usage_limits(organization_id)


# ==================== Invoices ====================

@router.get("/invoices/{organization_id}", response_model=list[InvoiceResponse])
async def list_invoices(
    organization_id: uuid.UUID,
    invoice_status: Optional[InvoiceStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    return await InvoiceService(session).list_invoices(
        organization_id, status=invoice_status, limit=limit, offset=offset
    )


@router.post(
    "/invoices",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_manual_invoice(
    data: ManualInvoiceCreate,
    session_factory: SessionFactory = Depends(get_session_factory),
):
    """Bill an arbitrary amount (setup fees, add-ons) against a subscription."""
    async with unit_of_work(session_factory) as session:
        return await InvoiceService(session).create_manual_invoice(
            data.subscription_id,
            amount=data.amount,
            description=data.description,
            due_date=data.due_date,
        )


# ==================== Scheduler ====================

@router.post(
    "/scheduler/run",
    response_model=SchedulerRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_daily_scheduler(
    session_factory: SessionFactory = Depends(get_session_factory),
    notifier: BillingNotificationService = Depends(get_notifier),
):
    """Run the daily subscription sweep. Called by an external cron."""
    summary = await DailyScheduler(session_factory=session_factory, notifier=notifier).run()
    return summary.to_dict()
