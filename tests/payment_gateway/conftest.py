"""Fixtures for gateway adapters and pending charges."""

import pytest
import pytest_asyncio

from tenant_billing.core.database import unit_of_work
from tenant_billing.modules.billing.service import SubscriptionService
from tenant_billing.modules.payment_gateway.gateways import MidtransGateway, TripayGateway
from tenant_billing.modules.payment_gateway.models import PaymentStatus, PaymentTransaction
from tenant_billing.modules.payment_gateway.repository import PaymentTransactionRepository
from tenant_billing.modules.payment_gateway.service import GatewayRegistry

from signed_payloads import (
    MIDTRANS_SERVER_KEY,
    NO_DELAY,
    TRIPAY_API_KEY,
    TRIPAY_MERCHANT_CODE,
    TRIPAY_PRIVATE_KEY,
)


@pytest.fixture
def midtrans_gateway():
    return MidtransGateway(server_key=MIDTRANS_SERVER_KEY, retry_config=NO_DELAY)


@pytest.fixture
def tripay_gateway():
    return TripayGateway(
        api_key=TRIPAY_API_KEY,
        private_key=TRIPAY_PRIVATE_KEY,
        merchant_code=TRIPAY_MERCHANT_CODE,
        retry_config=NO_DELAY,
    )


@pytest.fixture
def registry(midtrans_gateway, tripay_gateway):
    return GatewayRegistry([midtrans_gateway, tripay_gateway])


@pytest.fixture
def make_pending_charge(session_factory, make_subscription):
    """A trial tenant upgrading to STANDARD, with a PENDING gateway transaction."""

    async def _make(order_ref: str = "SUB-1-ABCDEF01", gateway: str = "midtrans", invoice_id=None):
        if invoice_id is None:
            subscription = await make_subscription(tier="BASIC", payment_confirmed=False)
            async with unit_of_work(session_factory) as session:
                result = await SubscriptionService(session).change_subscription(
                    subscription.id, "STANDARD"
                )
            invoice = result.invoice
        else:
            async with session_factory() as session:
                invoice = await SubscriptionService(session).invoice_service.get_invoice(
                    invoice_id
                )

        async with unit_of_work(session_factory) as session:
            transaction = PaymentTransaction(
                invoice_id=invoice.id,
                subscription_id=invoice.subscription_id,
                organization_id=invoice.organization_id,
                amount=invoice.total,
                currency=invoice.currency,
                status=PaymentStatus.PENDING.value,
                payment_gateway=gateway,
                gateway_transaction_id=order_ref,
                gateway_response={},
            )
            await PaymentTransactionRepository(session).add(transaction)
        return transaction

    return _make


@pytest_asyncio.fixture
async def pending_charge(make_pending_charge):
    return await make_pending_charge()


@pytest.fixture
def gateway_registry(registry):
    return registry
