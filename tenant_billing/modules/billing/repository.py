"""Repositories for billing data access.

Repositories flush but never commit; the caller owns the transaction.
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, delete, literal, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from tenant_billing.modules.billing.models import (
    BillingEvent,
    BillingEventType,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    Subscription,
    UsageRecord,
)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SubscriptionRepository:
    """Repository for subscription records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_by_organization(self, organization_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.organization_id == organization_id)
        )
        return result.scalar_one_or_none()

    async def exists_for_organization(self, organization_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            select(Subscription.id).where(Subscription.organization_id == organization_id)
        )
        return result.first() is not None

    async def list_ids(self) -> list[uuid.UUID]:
        """IDs of every subscription, oldest first."""
        result = await self.session.execute(
            select(Subscription.id).order_by(Subscription.created_at, Subscription.id)
        )
        return list(result.scalars().all())


class InvoiceRepository:
    """Repository for invoices."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, invoice: Invoice) -> Invoice:
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def get_by_id(self, invoice_id: uuid.UUID) -> Optional[Invoice]:
        result = await self.session.execute(select(Invoice).where(Invoice.id == invoice_id))
        return result.scalar_one_or_none()

    async def number_exists(self, invoice_number: str) -> bool:
        result = await self.session.execute(
            select(Invoice.id).where(Invoice.invoice_number == invoice_number)
        )
        return result.first() is not None

    async def get_for_period(
        self,
        subscription_id: uuid.UUID,
        kind: InvoiceKind,
        period_start: datetime,
    ) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(
                Invoice.subscription_id == subscription_id,
                Invoice.kind == kind.value,
                Invoice.period_start == period_start,
            )
        )
        return result.scalars().first()

    async def list_for_organization(
        self,
        organization_id: uuid.UUID,
        status: Optional[InvoiceStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        query = select(Invoice).where(Invoice.organization_id == organization_id)
        if status:
            query = query.where(Invoice.status == status.value)
        query = query.order_by(Invoice.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_pending_for_subscription(self, subscription_id: uuid.UUID) -> list[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(
                Invoice.subscription_id == subscription_id,
                Invoice.status == InvoiceStatus.PENDING.value,
            )
        )
        return list(result.scalars().all())

    async def list_overdue(self, now: datetime) -> list[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(
                Invoice.status == InvoiceStatus.PENDING.value,
                Invoice.due_date < now,
            )
            .order_by(Invoice.due_date)
        )
        return list(result.scalars().all())


class UsageRepository:
    """Repository for usage counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def increment(
        self,
        organization_id: uuid.UUID,
        metric: str,
        period_start: date,
        increment: float,
    ) -> float:
        """Atomically add to a counter, creating it on first use.

        Runs as one INSERT .. ON CONFLICT DO UPDATE statement so concurrent
        increments never lose updates. The counter never drops below zero.

        Returns:
            Counter value after the increment
        """
        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_DIALECTS[dialect]

        stmt = insert(UsageRecord).values(
            id=uuid.uuid4(),
            organization_id=organization_id,
            metric=metric,
            period_start=period_start,
            count=max(increment, 0),
        )
        added = UsageRecord.count + literal(increment)
        stmt = stmt.on_conflict_do_update(
            index_elements=["organization_id", "metric", "period_start"],
            set_={
                "count": case((added < 0, 0), else_=added),
                "updated_at": func.now(),
            },
        )
        await self.session.execute(stmt)

        result = await self.session.execute(
            select(UsageRecord.count).where(
                UsageRecord.organization_id == organization_id,
                UsageRecord.metric == metric,
                UsageRecord.period_start == period_start,
            )
        )
        return result.scalar_one()

    async def get_counts(
        self,
        organization_id: uuid.UUID,
        keys: list[tuple[str, date]],
    ) -> dict[str, float]:
        """Current values for the given (metric, period_start) pairs.

        Missing counters are reported as 0.
        """
        counts = {metric: 0.0 for metric, _ in keys}
        if not keys:
            return counts

        periods = {period for _, period in keys}
        result = await self.session.execute(
            select(UsageRecord.metric, UsageRecord.period_start, UsageRecord.count).where(
                UsageRecord.organization_id == organization_id,
                UsageRecord.period_start.in_(periods),
            )
        )
        wanted = set(keys)
        for metric, period_start, count in result.all():
            if (metric, period_start) in wanted:
                counts[metric] = count
        return counts


class BillingEventRepository:
    """Repository for billing lifecycle events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        subscription: Subscription,
        event_type: BillingEventType,
        description: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> BillingEvent:
        event = BillingEvent(
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
            event_type=event_type.value,
            description=description,
            payload=payload,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def list_for_subscription(self, subscription_id: uuid.UUID) -> list[BillingEvent]:
        result = await self.session.execute(
            select(BillingEvent)
            .where(BillingEvent.subscription_id == subscription_id)
            .order_by(BillingEvent.created_at)
        )
        return list(result.scalars().all())

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(BillingEvent).where(BillingEvent.created_at < cutoff)
        )
        return result.rowcount or 0
