"""Payment gateway service.

- PaymentGatewayFactory maps a provider to its adapter class
- GatewayRegistry holds the adapters configured for this deployment
- CheckoutService starts collecting an invoice through a gateway
"""

import logging
import secrets
import time
import uuid
from datetime import datetime
from typing import Optional, Type, Union

import httpx
from opentelemetry.trace import SpanKind

from tenant_billing.core.config import Settings, settings
from tenant_billing.core.database import SessionFactory, async_session_maker, unit_of_work
from tenant_billing.core.errors import (
    GatewayError,
    InvalidStateTransition,
    InvoiceNotFound,
    TransactionNotFound,
    ValidationError,
)
from tenant_billing.core.logging import log_error
from tenant_billing.core.metrics import (
    GATEWAY_CHARGE_DURATION_SECONDS,
    GATEWAY_CHARGE_REQUESTS_TOTAL,
)
from tenant_billing.core.tracing import create_span
from tenant_billing.modules.billing.models import Invoice
from tenant_billing.modules.billing.repository import InvoiceRepository
from tenant_billing.modules.payment_gateway.gateways import MidtransGateway, TripayGateway
from tenant_billing.modules.payment_gateway.interface import (
    ChargeRequest,
    ChargeResult,
    Customer,
    LineItem,
    PaymentGatewayInterface,
    RetryConfig,
)
from tenant_billing.modules.payment_gateway.models import (
    GatewayProvider,
    PaymentStatus,
    PaymentTransaction,
)
from tenant_billing.modules.payment_gateway.repository import PaymentTransactionRepository

logger = logging.getLogger(__name__)


def generate_order_ref() -> str:
    """SUB-<epoch millis>-<random hex>; globally unique order reference."""
    return f"SUB-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


def parse_provider(provider: Union[GatewayProvider, str]) -> GatewayProvider:
    try:
        return GatewayProvider(provider)
    except ValueError as e:
        raise ValidationError(
            f"Unsupported gateway provider: {provider}",
            details={"supported": [p.value for p in GatewayProvider]},
        ) from e


class PaymentGatewayFactory:
    """Factory for creating payment gateway instances from settings."""

    _gateways: dict[str, Type[PaymentGatewayInterface]] = {
        GatewayProvider.MIDTRANS.value: MidtransGateway,
        GatewayProvider.TRIPAY.value: TripayGateway,
    }

    @staticmethod
    def retry_config(config: Settings) -> RetryConfig:
        return RetryConfig(
            max_attempts=config.GATEWAY_MAX_ATTEMPTS,
            initial_delay=config.GATEWAY_RETRY_INITIAL_DELAY,
            max_delay=config.GATEWAY_RETRY_MAX_DELAY,
        )

    @classmethod
    def is_configured(cls, provider: GatewayProvider, config: Settings) -> bool:
        if provider == GatewayProvider.MIDTRANS:
            return bool(config.MIDTRANS_SERVER_KEY)
        if provider == GatewayProvider.TRIPAY:
            return all([
                config.TRIPAY_API_KEY,
                config.TRIPAY_PRIVATE_KEY,
                config.TRIPAY_MERCHANT_CODE,
            ])
        return False

    @classmethod
    def create(
        cls,
        provider: Union[GatewayProvider, str],
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> PaymentGatewayInterface:
        """Create a gateway instance from configuration.

        Args:
            provider: Gateway provider
            config: Settings holding the provider's credentials
            transport: Optional httpx transport (tests, proxies)

        Returns:
            Configured gateway instance

        Raises:
            ValidationError: If provider is not supported
        """
        provider = parse_provider(provider)
        gateway_class = cls._gateways.get(provider.value)
        if not gateway_class:
            raise ValidationError(f"Unsupported gateway provider: {provider.value}")

        common = {
            "timeout": config.GATEWAY_TIMEOUT_SECONDS,
            "retry_config": cls.retry_config(config),
            "transport": transport,
        }
        if gateway_class is MidtransGateway:
            return MidtransGateway(
                server_key=config.MIDTRANS_SERVER_KEY,
                client_key=config.MIDTRANS_CLIENT_KEY,
                is_production=config.MIDTRANS_IS_PRODUCTION,
                **common,
            )
        return TripayGateway(
            api_key=config.TRIPAY_API_KEY,
            private_key=config.TRIPAY_PRIVATE_KEY,
            merchant_code=config.TRIPAY_MERCHANT_CODE,
            is_production=config.TRIPAY_IS_PRODUCTION,
            **common,
        )

    @classmethod
    def get_supported_providers(cls) -> list[str]:
        """Get list of supported provider identifiers."""
        return list(cls._gateways.keys())


class GatewayRegistry:
    """The gateway adapters available to this deployment."""

    def __init__(self, gateways: Optional[list[PaymentGatewayInterface]] = None):
        self._gateways: dict[GatewayProvider, PaymentGatewayInterface] = {}
        for gateway in gateways or []:
            self.register(gateway)

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GatewayRegistry":
        """One adapter per provider whose credentials are configured."""
        registry = cls()
        for provider in GatewayProvider:
            if PaymentGatewayFactory.is_configured(provider, config):
                registry.register(PaymentGatewayFactory.create(provider, config, transport))
            else:
                logger.info(f"Payment gateway {provider.value} not configured; skipping")
        return registry

    def register(self, gateway: PaymentGatewayInterface) -> None:
        self._gateways[gateway.provider] = gateway

    def get(self, provider: Union[GatewayProvider, str]) -> PaymentGatewayInterface:
        """Adapter for a provider.

        Raises:
            ValidationError: Provider unknown or not configured
        """
        provider = parse_provider(provider)
        gateway = self._gateways.get(provider)
        if gateway is None:
            raise ValidationError(f"Payment gateway {provider.value} is not configured")
        return gateway

    def providers(self) -> list[str]:
        return [provider.value for provider in self._gateways]


def charge_line_items(invoice: Invoice) -> list[LineItem]:
    """Invoice line items as sent to the gateway.

    Gateways require the items to add up to the charged amount; when the
    invoice carries a discount or tax they do not, so a single item for the
    invoice total is sent instead.
    """
    items = [
        LineItem(
            sku=str(item.get("sku", "ITEM")),
            name=str(item.get("name", invoice.invoice_number)),
            unit_price=int(item.get("unit_price", 0)),
            quantity=int(item.get("quantity", 1)),
        )
        for item in invoice.line_items or []
    ]
    if items and sum(i.unit_price * i.quantity for i in items) == invoice.total:
        return items
    return [
        LineItem(
            sku=invoice.invoice_number,
            name=invoice.description or f"Invoice {invoice.invoice_number}",
            unit_price=invoice.total,
        )
    ]


class CheckoutService:
    """Starts collecting an invoice through a gateway.

    The PENDING transaction is committed before the gateway is called, so
    a notification can never arrive for a transaction that does not exist.
    """

    def __init__(
        self,
        registry: GatewayRegistry,
        session_factory: SessionFactory = async_session_maker,
        return_url: Optional[str] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.return_url = return_url or settings.PAYMENT_FINISH_URL or None

    async def create_charge(
        self,
        invoice_id: uuid.UUID,
        provider: Union[GatewayProvider, str],
        customer: Customer,
        payment_method: Optional[str] = None,
    ) -> PaymentTransaction:
        """Create a PaymentTransaction and the matching gateway charge.

        Args:
            invoice_id: Invoice to collect
            provider: Gateway to use
            customer: Payer details
            payment_method: Gateway channel code (required by Tripay)

        Returns:
            The PENDING transaction with checkout URL / pay code

        Raises:
            InvoiceNotFound: Unknown invoice
            InvalidStateTransition: Invoice already paid
            ValidationError: Gateway not configured or zero amount
            GatewayError: The gateway failed; the transaction is CANCELLED
        """
        gateway = self.registry.get(provider)

        async with unit_of_work(self.session_factory) as session:
            invoice = await InvoiceRepository(session).get_by_id(invoice_id)
            if not invoice:
                raise InvoiceNotFound(f"Invoice {invoice_id} not found")
            if invoice.is_paid():
                raise InvalidStateTransition(f"Invoice {invoice.invoice_number} is already paid")
            if invoice.total <= 0:
                raise ValidationError("Nothing to collect on a zero-total invoice")

            transaction = PaymentTransaction(
                invoice_id=invoice.id,
                subscription_id=invoice.subscription_id,
                organization_id=invoice.organization_id,
                amount=invoice.total,
                currency=invoice.currency,
                status=PaymentStatus.PENDING.value,
                payment_method=payment_method,
                payment_gateway=gateway.provider.value,
                gateway_transaction_id=generate_order_ref(),
                gateway_response={},
            )
            await PaymentTransactionRepository(session).add(transaction)
            request = ChargeRequest(
                order_ref=transaction.gateway_transaction_id,
                amount=invoice.total,
                currency=invoice.currency,
                customer=customer,
                line_items=charge_line_items(invoice),
                payment_method=payment_method,
                return_url=self.return_url,
            )

        start = time.perf_counter()
        with create_span(
            "gateway.create_charge",
            {"billing.gateway": gateway.provider.value, "billing.order_ref": request.order_ref},
            kind=SpanKind.CLIENT,
        ):
            try:
                result = await gateway.create_charge(request)
            except (GatewayError, ValidationError) as e:
                GATEWAY_CHARGE_REQUESTS_TOTAL.labels(
                    gateway=gateway.provider.value, result="error"
                ).inc()
                log_error(
                    logger,
                    f"Charge creation failed for {request.order_ref}",
                    exception=e,
                    gateway=gateway.provider.value,
                    invoice_id=str(invoice_id),
                )
                await self._cancel(transaction.id, e.message)
                raise
            except Exception as e:
                GATEWAY_CHARGE_REQUESTS_TOTAL.labels(
                    gateway=gateway.provider.value, result="error"
                ).inc()
                log_error(
                    logger,
                    f"Unexpected error creating charge {request.order_ref}",
                    exception=e,
                    gateway=gateway.provider.value,
                    invoice_id=str(invoice_id),
                )
                await self._cancel(transaction.id, f"{e.__class__.__name__}: {e}")
                raise
            finally:
                GATEWAY_CHARGE_DURATION_SECONDS.labels(gateway=gateway.provider.value).observe(
                    time.perf_counter() - start
                )

        GATEWAY_CHARGE_REQUESTS_TOTAL.labels(gateway=gateway.provider.value, result="success").inc()
        transaction = await self._record_charge(transaction.id, result)
        logger.info(
            f"Created {gateway.provider.value} charge {request.order_ref} "
            f"for invoice {invoice_id}: {request.amount} {request.currency}"
        )
        return transaction

    async def _record_charge(
        self, transaction_id: uuid.UUID, result: ChargeResult
    ) -> PaymentTransaction:
        async with unit_of_work(self.session_factory) as session:
            transaction = await PaymentTransactionRepository(session).get_by_id(transaction_id)
            if transaction is None:
                raise TransactionNotFound(f"Transaction {transaction_id} not found")
            transaction.checkout_url = result.checkout_url
            transaction.pay_code = result.pay_code
            transaction.external_ref = result.external_ref
            transaction.gateway_response = {
                **(transaction.gateway_response or {}),
                "charge": {
                    "checkout_url": result.checkout_url,
                    "pay_code": result.pay_code,
                    "external_ref": result.external_ref,
                    "token": result.token,
                    "created_at": datetime.utcnow().isoformat(),
                },
            }
        return transaction

    async def _cancel(self, transaction_id: uuid.UUID, reason: str) -> None:
        async with unit_of_work(self.session_factory) as session:
            transaction = await PaymentTransactionRepository(session).get_by_id(transaction_id)
            if transaction and transaction.status == PaymentStatus.PENDING.value:
                transaction.status = PaymentStatus.CANCELLED.value
                transaction.failure_reason = reason
