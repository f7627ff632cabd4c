"""Tripay payment gateway implementation (closed payment)."""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from tenant_billing.core.errors import GatewayError, ValidationError
from tenant_billing.modules.payment_gateway.interface import (
    ChargeRequest,
    ChargeResult,
    GatewayNotification,
    PaymentGatewayInterface,
    RetryConfig,
)
from tenant_billing.modules.payment_gateway.models import GatewayProvider, PaymentStatus
from tenant_billing.modules.payment_gateway.schemas import TripayCallback

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(hours=24)

_STATUS_MAP = {
    "PAID": PaymentStatus.SUCCESS,
    "UNPAID": PaymentStatus.PENDING,
    "FAILED": PaymentStatus.FAILED,
    "EXPIRED": PaymentStatus.FAILED,
    "REFUND": PaymentStatus.FAILED,
}


def _hmac_sha256(key: str, message: bytes) -> str:
    return hmac.new(key.encode(), message, hashlib.sha256).hexdigest()


class TripayGateway(PaymentGatewayInterface):
    """Tripay payment gateway implementation for Indonesia.

    Closed payments: the payer's channel (virtual account, QRIS, retail
    outlet, ...) is chosen up front and sent as `method`.
    """

    provider = GatewayProvider.TRIPAY

    SANDBOX_URL = "https://tripay.co.id/api-sandbox"
    PRODUCTION_URL = "https://tripay.co.id/api"

    def __init__(
        self,
        api_key: str,
        private_key: str,
        merchant_code: str,
        is_production: bool = False,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(is_production, timeout, retry_config, transport)
        self.api_key = api_key
        self.private_key = private_key
        self.merchant_code = merchant_code

    @property
    def base_url(self) -> str:
        """Get Tripay API base URL based on mode."""
        return self.PRODUCTION_URL if self.is_production else self.SANDBOX_URL

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def request_signature(self, merchant_ref: str, amount: int) -> str:
        """HMAC-SHA256(private_key, merchant_code + merchant_ref + amount)."""
        return _hmac_sha256(
            self.private_key, f"{self.merchant_code}{merchant_ref}{amount}".encode()
        )

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a Tripay closed-payment transaction.

        Raises:
            ValidationError: No payment channel given
            GatewayError: Tripay failed or answered success=false
        """
        if not request.payment_method:
            raise ValidationError("Tripay requires a payment method channel code")

        expires_at = request.expires_at or datetime.utcnow() + DEFAULT_EXPIRY
        transaction_data = {
            "method": request.payment_method,
            "merchant_ref": request.order_ref,
            "amount": request.amount,
            "customer_name": request.customer.name,
            "customer_email": request.customer.email,
            "customer_phone": request.customer.phone or "",
            "order_items": [
                {
                    "sku": item.sku,
                    "name": item.name,
                    "price": item.unit_price,
                    "quantity": item.quantity,
                }
                for item in request.line_items
            ],
            "expired_time": int((expires_at - datetime(1970, 1, 1)).total_seconds()),
            "signature": self.request_signature(request.order_ref, request.amount),
        }
        if request.return_url:
            transaction_data["return_url"] = request.return_url

        response = await self._request(
            "POST", f"{self.base_url}/transaction/create", transaction_data
        )

        data = response.get("data") or {}
        if not response.get("success") or not data:
            raise GatewayError(
                response.get("message") or "Tripay rejected the transaction",
                provider=self.provider.value,
                details={"response": response},
            )

        return ChargeResult(
            order_ref=request.order_ref,
            status=self.normalize_status(data.get("status", "UNPAID")),
            checkout_url=data.get("checkout_url") or data.get("pay_url"),
            pay_code=data.get("pay_code"),
            external_ref=data.get("reference"),
            raw=data,
        )

    def verify_notification(self, raw_body: bytes, signature: Optional[str] = None) -> bool:
        """HMAC-SHA256 of the raw body against X-Callback-Signature."""
        if not signature or not self.private_key:
            return False
        expected = _hmac_sha256(self.private_key, raw_body)
        return hmac.compare_digest(signature.encode(), expected.encode())

    def parse_notification(self, raw_body: bytes) -> GatewayNotification:
        try:
            callback = TripayCallback.model_validate_json(raw_body)
        except PydanticValidationError as e:
            raise ValidationError(
                "Malformed Tripay callback",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

        paid_at = None
        if callback.paid_at:
            paid_at = datetime(1970, 1, 1) + timedelta(seconds=callback.paid_at)

        return GatewayNotification(
            order_ref=callback.merchant_ref,
            status=self.normalize_status(callback.status),
            raw_status=callback.status,
            amount=callback.total_amount,
            payment_method=callback.payment_method_code or callback.payment_method,
            paid_at=paid_at,
            external_ref=callback.reference,
            payload=callback.model_dump(),
        )

    def normalize_status(self, raw_status: str, fraud_status: Optional[str] = None) -> PaymentStatus:
        """Map Tripay status to PaymentStatus."""
        status = _STATUS_MAP.get(raw_status)
        if status is None:
            logger.warning(f"Unknown Tripay status: {raw_status}")
            return PaymentStatus.PENDING
        return status
