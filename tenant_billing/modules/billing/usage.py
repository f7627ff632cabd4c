"""Usage ledger: per-tenant counters and limit checks.

Cumulative metrics (students, teachers, storage, custom fields) keep one
counter for the tenant's lifetime. Monthly metrics are keyed by the current
usage window, which starts at the latest monthly anniversary of the
subscription's current period start. A new window is a fresh counter, so
nothing is ever reset in place.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.config import settings
from tenant_billing.core.errors import InvalidMetric, SubscriptionNotFound, ValidationError
from tenant_billing.core.metrics import USAGE_INCREMENTS_TOTAL
from tenant_billing.modules.billing.catalog import UNLIMITED, TierCatalog, add_months, default_catalog
from tenant_billing.modules.billing.models import Subscription, UsageMetric
from tenant_billing.modules.billing.repository import SubscriptionRepository, UsageRepository

logger = logging.getLogger(__name__)

CUMULATIVE_METRICS = frozenset({
    UsageMetric.STUDENTS,
    UsageMetric.TEACHERS,
    UsageMetric.STORAGE_USED_GB,
    UsageMetric.CUSTOM_FIELDS_USED,
})

MONTHLY_METRICS = frozenset(set(UsageMetric) - CUMULATIVE_METRICS)

# Period key shared by every cumulative counter
CUMULATIVE_PERIOD_START = date(1970, 1, 1)

SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"


@dataclass
class UsageWarning:
    metric: str
    current: float
    limit: int
    percentage: int
    severity: str


@dataclass
class UsageCheckResult:
    """Snapshot of a tenant's usage against its tier limits."""
    usage: dict[str, float]
    limits: dict[str, int]
    usage_percentages: dict[str, int]
    warnings: list[UsageWarning] = field(default_factory=list)
    unlimited: list[str] = field(default_factory=list)
    exceeded: list[str] = field(default_factory=list)
    is_within_limits: bool = True

    @property
    def critical_warnings(self) -> list[UsageWarning]:
        return [w for w in self.warnings if w.severity == SEVERITY_CRITICAL]


def parse_metric(metric: Union[UsageMetric, str]) -> UsageMetric:
    """Resolve a metric name.

    Raises:
        InvalidMetric: Name is not a recognized metric
    """
    try:
        return UsageMetric(metric)
    except ValueError as e:
        raise InvalidMetric(
            f"Unknown usage metric: {metric}",
            details={"allowed": [m.value for m in UsageMetric]},
        ) from e


def usage_percentage(current: float, limit: int) -> int:
    """floor(100 * current / limit) for a finite limit.

    A zero limit reports 0 when unused and 100 once anything is used.
    """
    if limit == 0:
        return 0 if current <= 0 else 100
    return math.floor(100 * current / limit)


def evaluate_usage(
    usage: Mapping[str, float],
    limits: Mapping[str, int],
    warning_percent: int = settings.USAGE_WARNING_PERCENT,
    critical_percent: int = settings.USAGE_CRITICAL_PERCENT,
) -> UsageCheckResult:
    """Compare usage against limits. Pure function.

    Args:
        usage: Metric name -> current value
        limits: Metric name -> limit (UNLIMITED for no cap)
        warning_percent: Percentage that triggers a warning
        critical_percent: Percentage that escalates to critical

    Returns:
        UsageCheckResult
    """
    result = UsageCheckResult(usage=dict(usage), limits=dict(limits), usage_percentages={})

    for metric, limit in limits.items():
        current = usage.get(metric, 0)
        if limit == UNLIMITED:
            result.unlimited.append(metric)
            continue

        percentage = usage_percentage(current, limit)
        result.usage_percentages[metric] = percentage

        if current > limit:
            result.exceeded.append(metric)

        if percentage >= critical_percent:
            severity = SEVERITY_CRITICAL
        elif percentage >= warning_percent:
            severity = SEVERITY_WARNING
        else:
            continue
        result.warnings.append(UsageWarning(
            metric=metric,
            current=current,
            limit=limit,
            percentage=percentage,
            severity=severity,
        ))

    result.is_within_limits = not result.exceeded
    return result


def usage_window_start(anchor: datetime, now: datetime) -> date:
    """Start of the monthly usage window containing now.

    The latest monthly anniversary of anchor that is not after now.
    """
    if now <= anchor:
        return anchor.date()
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    window = add_months(anchor, months)
    if window > now:
        window = add_months(anchor, months - 1)
    return window.date()


def period_key(metric: UsageMetric, subscription: Subscription, now: datetime) -> date:
    if metric in CUMULATIVE_METRICS:
        return CUMULATIVE_PERIOD_START
    return usage_window_start(subscription.current_period_start, now)


class UsageLedger:
    """Tracks usage counters and checks them against tier limits.

    Works inside the caller's transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: TierCatalog = default_catalog,
        warning_percent: int = settings.USAGE_WARNING_PERCENT,
        critical_percent: int = settings.USAGE_CRITICAL_PERCENT,
    ):
        self.session = session
        self.catalog = catalog
        self.warning_percent = warning_percent
        self.critical_percent = critical_percent
        self.subscription_repo = SubscriptionRepository(session)
        self.usage_repo = UsageRepository(session)

    async def _require_subscription(self, organization_id: uuid.UUID) -> Subscription:
        subscription = await self.subscription_repo.get_by_organization(organization_id)
        if not subscription:
            raise SubscriptionNotFound(
                f"No subscription for organization {organization_id}"
            )
        return subscription

    async def track_usage(
        self,
        organization_id: uuid.UUID,
        metric: Union[UsageMetric, str],
        increment: float = 1,
        now: Optional[datetime] = None,
    ) -> float:
        """Atomically add to a tenant's counter for the current period.

        Args:
            organization_id: Tenant ID
            metric: Metric name
            increment: Amount to add. Cumulative metrics accept negative
                values when a resource is removed; the counter floors at zero.
            now: Clock override

        Returns:
            New counter value

        Raises:
            InvalidMetric: Unknown metric name
            ValidationError: Non-positive increment on a monthly metric
            SubscriptionNotFound: Tenant has no subscription
        """
        usage_metric = parse_metric(metric)
        if increment == 0:
            raise ValidationError("increment must be non-zero")
        if usage_metric in MONTHLY_METRICS and increment < 0:
            raise ValidationError(
                f"Monthly metric {usage_metric.value} cannot be decremented"
            )

        subscription = await self._require_subscription(organization_id)
        now = now or datetime.utcnow()

        value = await self.usage_repo.increment(
            organization_id=organization_id,
            metric=usage_metric.value,
            period_start=period_key(usage_metric, subscription, now),
            increment=increment,
        )
        USAGE_INCREMENTS_TOTAL.labels(metric=usage_metric.value).inc()
        return value

    async def get_current_usage(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> dict[str, float]:
        """Current value of every metric for the subscription's tenant."""
        now = now or datetime.utcnow()
        keys = [(metric.value, period_key(metric, subscription, now)) for metric in UsageMetric]
        return await self.usage_repo.get_counts(subscription.organization_id, keys)

    async def check_subscription_limits(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> UsageCheckResult:
        usage = await self.get_current_usage(subscription, now)
        limits = self.catalog.get_tier_limits(subscription.tier).as_metric_dict()
        return evaluate_usage(usage, limits, self.warning_percent, self.critical_percent)

    async def check_usage_limits(
        self,
        organization_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> UsageCheckResult:
        """Read-only comparison of a tenant's usage against its tier limits.

        Raises:
            SubscriptionNotFound: Tenant has no subscription
        """
        subscription = await self._require_subscription(organization_id)
        return await self.check_subscription_limits(subscription, now)
