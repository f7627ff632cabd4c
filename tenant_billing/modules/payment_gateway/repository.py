"""Repository for payment transactions."""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.modules.payment_gateway.models import PaymentStatus, PaymentTransaction


class PaymentTransactionRepository:
    """Repository for PaymentTransaction CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, transaction: PaymentTransaction) -> PaymentTransaction:
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get_by_id(self, transaction_id: uuid.UUID) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_gateway_transaction_id(
        self, gateway_transaction_id: str
    ) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.gateway_transaction_id == gateway_transaction_id
            )
        )
        return result.scalar_one_or_none()

    async def get_successful_for_invoice(
        self,
        invoice_id: uuid.UUID,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> Optional[PaymentTransaction]:
        """Any SUCCESS transaction for the invoice other than exclude_id."""
        query = select(PaymentTransaction).where(
            PaymentTransaction.invoice_id == invoice_id,
            PaymentTransaction.status == PaymentStatus.SUCCESS.value,
        )
        if exclude_id:
            query = query.where(PaymentTransaction.id != exclude_id)
        result = await self.session.execute(query)
        return result.scalars().first()

    async def list_for_invoice(self, invoice_id: uuid.UUID) -> list[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.invoice_id == invoice_id)
            .order_by(PaymentTransaction.created_at)
        )
        return list(result.scalars().all())

    async def list_for_organization(
        self,
        organization_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.organization_id == organization_id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
