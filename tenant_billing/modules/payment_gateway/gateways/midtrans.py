"""Midtrans payment gateway implementation (Snap)."""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
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
from tenant_billing.modules.payment_gateway.schemas import MidtransNotification

logger = logging.getLogger(__name__)

# Midtrans reports local times in Western Indonesia Time
MIDTRANS_UTC_OFFSET = timedelta(hours=7)

_SUCCESS_STATUSES = {"capture", "settlement"}
_PENDING_STATUSES = {"authorize", "pending"}
_FAILED_STATUSES = {"deny", "expire", "failure"}
_CANCELLED_STATUSES = {"cancel", "refund", "partial_refund", "chargeback", "partial_chargeback"}


def split_name(name: str) -> tuple[str, str]:
    """First word as first name, the rest as last name."""
    parts = name.strip().split(maxsplit=1)
    if not parts:
        return "", ""
    return parts[0], parts[1] if len(parts) > 1 else ""


def parse_midtrans_time(value: Optional[str]) -> Optional[datetime]:
    """'YYYY-MM-DD HH:MM:SS' in WIB to naive UTC."""
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S") - MIDTRANS_UTC_OFFSET
    except ValueError:
        return None


def parse_gross_amount(value: str) -> int:
    try:
        return int(Decimal(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid gross_amount: {value}") from e


class MidtransGateway(PaymentGatewayInterface):
    """Midtrans payment gateway implementation for Indonesia.

    Charges go through Snap, which returns a hosted payment page. Snap lets
    the payer choose the channel, so payment_method is optional.
    """

    provider = GatewayProvider.MIDTRANS

    SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1"
    SNAP_PRODUCTION_URL = "https://app.midtrans.com/snap/v1"

    def __init__(
        self,
        server_key: str,
        client_key: str = "",
        is_production: bool = False,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(is_production, timeout, retry_config, transport)
        self.server_key = server_key
        self.client_key = client_key

    @property
    def snap_url(self) -> str:
        """Get Midtrans Snap URL based on mode."""
        return self.SNAP_PRODUCTION_URL if self.is_production else self.SNAP_SANDBOX_URL

    def _auth_headers(self) -> dict[str, str]:
        auth = base64.b64encode(f"{self.server_key}:".encode()).decode()
        return {"Authorization": f"Basic {auth}"}

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a Midtrans Snap transaction.

        Args:
            request: Charge data

        Returns:
            ChargeResult with snap token and redirect URL
        """
        first_name, last_name = split_name(request.customer.name)
        transaction_data = {
            "transaction_details": {
                "order_id": request.order_ref,
                "gross_amount": request.amount,
            },
            "customer_details": {
                "first_name": first_name,
                "last_name": last_name,
                "email": request.customer.email,
            },
            "item_details": [
                {
                    "id": item.sku,
                    "name": item.name[:50],
                    "price": item.unit_price,
                    "quantity": item.quantity,
                }
                for item in request.line_items
            ],
        }
        if request.customer.phone:
            transaction_data["customer_details"]["phone"] = request.customer.phone
        if request.payment_method:
            transaction_data["enabled_payments"] = [request.payment_method]
        if request.return_url:
            transaction_data["callbacks"] = {"finish": request.return_url}

        response = await self._request(
            "POST", f"{self.snap_url}/transactions", transaction_data
        )

        token = response.get("token")
        redirect_url = response.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError(
                "Midtrans response missing token or redirect_url",
                provider=self.provider.value,
                details={"response": response},
            )

        return ChargeResult(
            order_ref=request.order_ref,
            status=PaymentStatus.PENDING,
            checkout_url=redirect_url,
            token=token,
            raw=response,
        )

    def expected_signature(self, order_id: str, status_code: str, gross_amount: str) -> str:
        """SHA512(order_id + status_code + gross_amount + server_key)."""
        return hashlib.sha512(
            f"{order_id}{status_code}{gross_amount}{self.server_key}".encode()
        ).hexdigest()

    def verify_notification(self, raw_body: bytes, signature: Optional[str] = None) -> bool:
        """Verify the signature_key carried in the notification body."""
        if not self.server_key:
            return False
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False

        signature_key = payload.get("signature_key")
        fields = [payload.get(k) for k in ("order_id", "status_code", "gross_amount")]
        if not isinstance(signature_key, str) or not all(isinstance(f, str) for f in fields):
            return False

        expected = self.expected_signature(*fields)
        return hmac.compare_digest(signature_key.encode(), expected.encode())

    def parse_notification(self, raw_body: bytes) -> GatewayNotification:
        try:
            notification = MidtransNotification.model_validate_json(raw_body)
        except PydanticValidationError as e:
            raise ValidationError(
                "Malformed Midtrans notification",
                details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            ) from e

        status = self.normalize_status(
            notification.transaction_status, notification.fraud_status
        )
        paid_at = None
        if status == PaymentStatus.SUCCESS:
            paid_at = parse_midtrans_time(
                notification.settlement_time or notification.transaction_time
            )

        return GatewayNotification(
            order_ref=notification.order_id,
            status=status,
            raw_status=notification.transaction_status,
            amount=parse_gross_amount(notification.gross_amount),
            payment_method=notification.payment_type,
            paid_at=paid_at,
            external_ref=notification.transaction_id,
            payload=notification.model_dump(exclude={"signature_key"}),
        )

    def normalize_status(self, raw_status: str, fraud_status: Optional[str] = None) -> PaymentStatus:
        """Map Midtrans transaction_status and fraud_status to PaymentStatus."""
        if fraud_status == "deny":
            return PaymentStatus.FAILED
        if raw_status in _SUCCESS_STATUSES:
            if fraud_status == "challenge":
                return PaymentStatus.PENDING
            return PaymentStatus.SUCCESS
        if raw_status in _PENDING_STATUSES:
            return PaymentStatus.PENDING
        if raw_status in _FAILED_STATUSES:
            return PaymentStatus.FAILED
        if raw_status in _CANCELLED_STATUSES:
            return PaymentStatus.CANCELLED
        logger.warning(f"Unknown Midtrans transaction status: {raw_status}")
        return PaymentStatus.PENDING
