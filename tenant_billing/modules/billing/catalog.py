"""Tier catalog and proration calculator.

Static pricing and limits per tier and billing cycle, plus the pure numeric
helpers used when a subscription changes plan mid-cycle.

Proration uses a fixed day count per cycle (30 for MONTHLY, 365 for YEARLY)
instead of the calendar length of the month. Period boundaries themselves
move by calendar months (see add_billing_cycle).
"""

import calendar
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional, Union

from tenant_billing.core.config import settings
from tenant_billing.core.errors import PlanUnavailable, ValidationError
from tenant_billing.modules.billing.models import BillingCycle, SubscriptionTier, UsageMetric

UNLIMITED = -1

TIER_ORDER = [
    SubscriptionTier.TRIAL,
    SubscriptionTier.BASIC,
    SubscriptionTier.STANDARD,
    SubscriptionTier.PREMIUM,
    SubscriptionTier.ENTERPRISE,
]

CYCLE_DAYS = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}

CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.YEARLY: 12,
}


@dataclass(frozen=True)
class TierLimits:
    """Usage limits for a tier. UNLIMITED (-1) means no cap."""
    max_students: int
    max_teachers: int
    max_storage_gb: int
    max_api_calls: int
    max_sms_per_month: int
    max_emails_per_month: int
    max_reports_per_month: int
    custom_fields_limit: int

    def for_metric(self, metric: UsageMetric) -> int:
        return getattr(self, METRIC_LIMIT_FIELDS[metric])

    def as_metric_dict(self) -> dict[str, int]:
        return {metric.value: self.for_metric(metric) for metric in UsageMetric}


METRIC_LIMIT_FIELDS = {
    UsageMetric.STUDENTS: "max_students",
    UsageMetric.TEACHERS: "max_teachers",
    UsageMetric.STORAGE_USED_GB: "max_storage_gb",
    UsageMetric.API_CALLS_THIS_MONTH: "max_api_calls",
    UsageMetric.SMS_USED_THIS_MONTH: "max_sms_per_month",
    UsageMetric.EMAILS_USED_THIS_MONTH: "max_emails_per_month",
    UsageMetric.REPORTS_GENERATED_THIS_MONTH: "max_reports_per_month",
    UsageMetric.CUSTOM_FIELDS_USED: "custom_fields_limit",
}


@dataclass(frozen=True)
class TierDefinition:
    """Catalog entry for one tier.

    monthly_price None means negotiated pricing. yearly_price None means the
    yearly price is derived from the monthly one.
    """
    tier: SubscriptionTier
    name: str
    description: str
    monthly_price: Optional[int]
    limits: TierLimits
    yearly_price: Optional[int] = None
    trial_days: int = 0
    features: tuple[str, ...] = ()


@dataclass(frozen=True)
class Plan:
    """A tier priced for one billing cycle."""
    tier: SubscriptionTier
    billing_cycle: BillingCycle
    name: str
    description: str
    price: Optional[int]
    limits: TierLimits
    trial_days: int = 0
    features: list[str] = field(default_factory=list)

    @property
    def is_available(self) -> bool:
        return self.price is not None


TIER_DEFINITIONS: dict[SubscriptionTier, TierDefinition] = {
    SubscriptionTier.TRIAL: TierDefinition(
        tier=SubscriptionTier.TRIAL,
        name="Trial Gratis",
        description="Coba semua fitur selama 14 hari",
        monthly_price=0,
        yearly_price=0,
        trial_days=14,
        limits=TierLimits(50, 10, 1, 0, 50, 100, 10, 5),
        features=(
            "student_management", "teacher_management", "academic_records",
            "financial_management", "hafalan_tracking", "report_generation",
        ),
    ),
    SubscriptionTier.BASIC: TierDefinition(
        tier=SubscriptionTier.BASIC,
        name="Paket Dasar",
        description="Cocok untuk pondok pesantren kecil hingga menengah",
        monthly_price=299_000,
        yearly_price=2_990_000,
        limits=TierLimits(500, 50, 10, 0, 500, 1_000, 50, 20),
        features=(
            "student_management", "teacher_management", "academic_records",
            "financial_management", "hafalan_tracking", "report_generation",
            "donation_campaigns", "bulk_operations", "data_export",
            "integration_whatsapp",
        ),
    ),
    SubscriptionTier.STANDARD: TierDefinition(
        tier=SubscriptionTier.STANDARD,
        name="Paket Standar",
        description="Fitur lengkap untuk pondok pesantren menengah hingga besar",
        monthly_price=799_000,
        yearly_price=7_990_000,
        limits=TierLimits(1_000, 100, 50, 10_000, 2_000, 5_000, 200, 50),
        features=(
            "student_management", "teacher_management", "academic_records",
            "financial_management", "hafalan_tracking", "report_generation",
            "donation_campaigns", "bulk_operations", "data_export", "api_access",
            "custom_reports", "integration_whatsapp", "integration_email",
            "integration_sms",
        ),
    ),
    SubscriptionTier.PREMIUM: TierDefinition(
        tier=SubscriptionTier.PREMIUM,
        name="Paket Premium",
        description="Solusi terbaik untuk pondok pesantren besar",
        monthly_price=1_999_000,
        yearly_price=19_990_000,
        limits=TierLimits(2_500, 250, 200, 50_000, 10_000, 25_000, 1_000, 100),
        features=(
            "student_management", "teacher_management", "academic_records",
            "financial_management", "hafalan_tracking", "report_generation",
            "donation_campaigns", "bulk_operations", "data_export", "api_access",
            "custom_reports", "custom_branding", "priority_support",
            "integration_whatsapp", "integration_email", "integration_sms",
            "integration_bank_api", "integration_government_api",
        ),
    ),
    SubscriptionTier.ENTERPRISE: TierDefinition(
        tier=SubscriptionTier.ENTERPRISE,
        name="Paket Enterprise",
        description="Solusi khusus untuk jaringan pondok pesantren dan organisasi besar",
        monthly_price=None,
        limits=TierLimits(*([UNLIMITED] * 8)),
        features=(
            "student_management", "teacher_management", "academic_records",
            "financial_management", "hafalan_tracking", "report_generation",
            "donation_campaigns", "bulk_operations", "data_export", "api_access",
            "custom_reports", "custom_branding", "priority_support",
            "multi_tenant", "dedicated_support",
        ),
    ),
}


class TierCatalog:
    """Read-only pricing and limits table."""

    def __init__(
        self,
        definitions: Optional[Mapping[SubscriptionTier, TierDefinition]] = None,
        yearly_discount_percent: int = settings.YEARLY_DISCOUNT_PERCENT,
    ):
        self._definitions = dict(definitions or TIER_DEFINITIONS)
        self.yearly_discount_percent = yearly_discount_percent

    def _yearly_price(self, definition: TierDefinition) -> Optional[int]:
        if definition.monthly_price is None:
            return None
        if definition.yearly_price is not None:
            return definition.yearly_price
        if definition.tier == SubscriptionTier.TRIAL:
            return definition.monthly_price
        # floor(monthly * 12 * (1 - discount)) in integer arithmetic
        return definition.monthly_price * 12 * (100 - self.yearly_discount_percent) // 100

    def get_plan(
        self,
        tier: Union[SubscriptionTier, str],
        billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    ) -> Optional[Plan]:
        """Look up a tier priced for a cycle.

        Returns None for unknown tiers. ENTERPRISE is returned with
        price None since its pricing is negotiated.
        """
        try:
            tier = SubscriptionTier(tier)
            billing_cycle = BillingCycle(billing_cycle)
        except ValueError:
            return None

        definition = self._definitions.get(tier)
        if definition is None:
            return None

        if billing_cycle == BillingCycle.YEARLY:
            price = self._yearly_price(definition)
        else:
            price = definition.monthly_price

        return Plan(
            tier=tier,
            billing_cycle=billing_cycle,
            name=definition.name,
            description=definition.description,
            price=price,
            limits=definition.limits,
            trial_days=definition.trial_days,
            features=list(definition.features),
        )

    def get_plan_price(
        self,
        tier: Union[SubscriptionTier, str],
        billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    ) -> int:
        """Numeric price of a plan.

        Raises:
            PlanUnavailable: Unknown tier or negotiated (ENTERPRISE) pricing
        """
        plan = self.get_plan(tier, billing_cycle)
        if plan is None or plan.price is None:
            raise PlanUnavailable(
                f"No self-service price for tier {tier} ({billing_cycle})",
                details={"tier": str(getattr(tier, "value", tier))},
            )
        return plan.price

    def get_all_plans(
        self, billing_cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY
    ) -> list[Plan]:
        plans = [self.get_plan(tier, billing_cycle) for tier in TIER_ORDER]
        return [plan for plan in plans if plan is not None]

    def get_tier_limits(self, tier: Union[SubscriptionTier, str]) -> TierLimits:
        try:
            return self._definitions[SubscriptionTier(tier)].limits
        except (KeyError, ValueError) as e:
            raise PlanUnavailable(f"Unknown tier {tier}") from e

    def get_recommended_tier(self, usage: Mapping[str, float]) -> SubscriptionTier:
        """Smallest self-service tier whose limits fit the given usage.

        Falls back to ENTERPRISE when nothing smaller fits.
        """
        for tier in TIER_ORDER[1:]:
            limits = self._definitions[tier].limits
            fits = all(
                limits.for_metric(metric) == UNLIMITED
                or usage.get(metric.value, 0) <= limits.for_metric(metric)
                for metric in UsageMetric
            )
            if fits:
                return tier
        return SubscriptionTier.ENTERPRISE


def get_upgrade_paths(tier: Union[SubscriptionTier, str]) -> list[SubscriptionTier]:
    """Tiers above the given one."""
    index = TIER_ORDER.index(SubscriptionTier(tier))
    return TIER_ORDER[index + 1:]


def is_upgrade(
    current: Union[SubscriptionTier, str], new: Union[SubscriptionTier, str]
) -> bool:
    return TIER_ORDER.index(SubscriptionTier(new)) > TIER_ORDER.index(SubscriptionTier(current))


def days_in_cycle(billing_cycle: Union[BillingCycle, str]) -> int:
    return CYCLE_DAYS[BillingCycle(billing_cycle)]


def round_half_up(value: Decimal) -> int:
    """Round to a whole minor unit, ties away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def prorated_amount(price: int, days_remaining: int, total_days_in_cycle: int) -> Decimal:
    """Exact (unrounded) share of a cycle price for the remaining days."""
    return Decimal(price) * Decimal(days_remaining) / Decimal(total_days_in_cycle)


def calculate_proration(
    current_plan: Plan,
    new_plan: Plan,
    days_remaining: int,
    total_days_in_cycle: int,
) -> int:
    """Signed amount owed when switching plans mid-cycle.

    new_period_cost - unused_credit over the remaining days, rounded half-up
    once at the end. Positive is charged now; negative is a credit against
    the next invoice.

    Args:
        current_plan: Plan being left
        new_plan: Plan being adopted
        days_remaining: Whole days left in the current cycle
        total_days_in_cycle: 30 for MONTHLY, 365 for YEARLY

    Returns:
        Signed amount in minor units

    Raises:
        ValidationError: Day counts out of range
        PlanUnavailable: Either plan has no numeric price
    """
    if total_days_in_cycle <= 0:
        raise ValidationError("total_days_in_cycle must be positive")
    if not 0 <= days_remaining <= total_days_in_cycle:
        raise ValidationError(
            "days_remaining must be between 0 and total_days_in_cycle",
            details={"days_remaining": days_remaining, "total_days_in_cycle": total_days_in_cycle},
        )
    if current_plan.price is None or new_plan.price is None:
        raise PlanUnavailable("Cannot prorate a plan without a numeric price")

    unused_credit = prorated_amount(current_plan.price, days_remaining, total_days_in_cycle)
    new_period_cost = prorated_amount(new_plan.price, days_remaining, total_days_in_cycle)
    return round_half_up(new_period_cost - unused_credit)


def days_remaining_in_period(period_end: datetime, moment: datetime, total_days: int) -> int:
    """Whole days from moment to period_end, clamped to [0, total_days].

    A partial day counts as a full day.
    """
    seconds = (period_end - moment).total_seconds()
    if seconds <= 0:
        return 0
    return min(total_days, math.ceil(seconds / 86400))


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's end."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_billing_cycle(moment: datetime, billing_cycle: Union[BillingCycle, str]) -> datetime:
    return add_months(moment, CYCLE_MONTHS[BillingCycle(billing_cycle)])


def with_price(plan: Plan, price: int) -> Plan:
    """Copy of a plan carrying a negotiated price."""
    return replace(plan, price=price)


default_catalog = TierCatalog()
