"""Tests for the Midtrans and Tripay adapters."""

import hashlib
import hmac
import json
from datetime import datetime
from typing import Optional

import httpx
import pytest
from hypothesis import given, settings, strategies as st

from tenant_billing.core.config import Settings
from tenant_billing.core.errors import GatewayError, ValidationError
from tenant_billing.modules.payment_gateway.gateways import MidtransGateway, TripayGateway
from tenant_billing.modules.payment_gateway.gateways.midtrans import (
    parse_midtrans_time,
    split_name,
)
from tenant_billing.modules.payment_gateway.interface import (
    ChargeRequest,
    Customer,
    LineItem,
    RetryConfig,
)
from tenant_billing.modules.payment_gateway.models import GatewayProvider, PaymentStatus
from tenant_billing.modules.payment_gateway.service import (
    GatewayRegistry,
    PaymentGatewayFactory,
)

from signed_payloads import (
    MIDTRANS_SERVER_KEY,
    NO_DELAY,
    TRIPAY_API_KEY,
    TRIPAY_MERCHANT_CODE,
    TRIPAY_PRIVATE_KEY,
    midtrans_body,
    tripay_body,
)


def charge_request(**overrides) -> ChargeRequest:
    fields = {
        "order_ref": "SUB-1700000000000-0A1B2C3D",
        "amount": 799000,
        "currency": "IDR",
        "customer": Customer(name="Siti Nurhaliza Putri", email="siti@example.sch.id"),
        "line_items": [LineItem(sku="STANDARD-MONTHLY", name="Standard plan", unit_price=799000)],
    }
    fields.update(overrides)
    return ChargeRequest(**fields)


class Recorder:
    """httpx handler that records requests and replays canned responses.

    Each response is a (status_code, json_body) pair; the last one repeats.
    """

    def __init__(self, *responses: tuple[int, Optional[dict]]):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, body = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(status_code, json=body)


class TestRetryConfig:

    def test_exponential_backoff(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)

        assert [config.calculate_delay(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    @given(attempt=st.integers(min_value=1, max_value=50))
    @settings(max_examples=100)
    def test_delay_never_exceeds_cap(self, attempt: int) -> None:
        config = RetryConfig(initial_delay=0.5, max_delay=7.0)

        assert 0 < config.calculate_delay(attempt) <= 7.0


class TestMidtransSignature:

    def test_valid_signature(self, midtrans_gateway) -> None:
        body = midtrans_body("SUB-1-AAAA", "settlement")

        assert midtrans_gateway.verify_notification(body) is True

    def test_expected_signature_formula(self, midtrans_gateway) -> None:
        expected = hashlib.sha512(
            f"ORDER-1200799000.00{MIDTRANS_SERVER_KEY}".encode()
        ).hexdigest()

        assert midtrans_gateway.expected_signature("ORDER-1", "200", "799000.00") == expected

    def test_wrong_key(self, midtrans_gateway) -> None:
        body = midtrans_body("SUB-1-AAAA", "settlement", server_key="someone-else")

        assert midtrans_gateway.verify_notification(body) is False

    def test_tampered_amount(self, midtrans_gateway) -> None:
        payload = json.loads(midtrans_body("SUB-1-AAAA", "settlement"))
        payload["gross_amount"] = "1.00"

        assert midtrans_gateway.verify_notification(json.dumps(payload).encode()) is False

    @pytest.mark.parametrize("body", [b"", b"not json", b"[]", b'{"order_id": "x"}'])
    def test_garbage_rejected(self, midtrans_gateway, body: bytes) -> None:
        assert midtrans_gateway.verify_notification(body) is False

    def test_unconfigured_key_rejects_everything(self) -> None:
        gateway = MidtransGateway(server_key="")

        assert gateway.verify_notification(midtrans_body("X", "settlement", server_key="")) is False


class TestMidtransNotifications:

    @pytest.mark.parametrize(
        "raw_status,fraud_status,expected",
        [
            ("settlement", None, PaymentStatus.SUCCESS),
            ("capture", "accept", PaymentStatus.SUCCESS),
            ("capture", "challenge", PaymentStatus.PENDING),
            ("capture", "deny", PaymentStatus.FAILED),
            ("pending", None, PaymentStatus.PENDING),
            ("authorize", None, PaymentStatus.PENDING),
            ("deny", None, PaymentStatus.FAILED),
            ("expire", None, PaymentStatus.FAILED),
            ("failure", None, PaymentStatus.FAILED),
            ("cancel", None, PaymentStatus.CANCELLED),
            ("refund", None, PaymentStatus.CANCELLED),
            ("mystery", None, PaymentStatus.PENDING),
        ],
    )
    def test_status_mapping(self, midtrans_gateway, raw_status, fraud_status, expected) -> None:
        assert midtrans_gateway.normalize_status(raw_status, fraud_status) == expected

    def test_parse_settlement(self, midtrans_gateway) -> None:
        notification = midtrans_gateway.parse_notification(
            midtrans_body("SUB-1-AAAA", "settlement")
        )

        assert notification.order_ref == "SUB-1-AAAA"
        assert notification.status == PaymentStatus.SUCCESS
        assert notification.amount == 799000
        assert notification.payment_method == "bank_transfer"
        assert notification.external_ref == "mt-SUB-1-AAAA"
        # 10:05 WIB is 03:05 UTC
        assert notification.paid_at == datetime(2026, 10, 19, 3, 5, 0)
        assert "signature_key" not in notification.payload

    def test_pending_has_no_paid_at(self, midtrans_gateway) -> None:
        notification = midtrans_gateway.parse_notification(midtrans_body("SUB-1", "pending"))

        assert notification.status == PaymentStatus.PENDING
        assert notification.paid_at is None

    def test_unknown_status_is_malformed(self, midtrans_gateway) -> None:
        payload = json.loads(midtrans_body("SUB-1", "settlement"))
        payload["transaction_status"] = "teleported"

        with pytest.raises(ValidationError):
            midtrans_gateway.parse_notification(json.dumps(payload).encode())

    def test_helpers(self) -> None:
        assert split_name("Siti Nurhaliza Putri") == ("Siti", "Nurhaliza Putri")
        assert split_name("Budi") == ("Budi", "")
        assert split_name("  ") == ("", "")
        assert parse_midtrans_time("2026-01-01 06:00:00") == datetime(2025, 12, 31, 23, 0, 0)
        assert parse_midtrans_time("yesterday") is None
        assert parse_midtrans_time(None) is None


class TestMidtransCharge:

    @pytest.mark.asyncio
    async def test_snap_transaction(self) -> None:
        recorder = Recorder((201, {
            "token": "snap-token-123",
            "redirect_url": "https://app.sandbox.midtrans.com/snap/v3/redirection/snap-token-123",
        }))
        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            retry_config=NO_DELAY,
            transport=httpx.MockTransport(recorder),
        )

        result = await gateway.create_charge(charge_request(
            customer=Customer(name="Siti Nurhaliza", email="siti@example.sch.id", phone="0812"),
            payment_method="gopay",
            return_url="https://school.example/billing/done",
        ))

        assert result.status == PaymentStatus.PENDING
        assert result.token == "snap-token-123"
        assert result.checkout_url.endswith("snap-token-123")

        [request] = recorder.requests
        assert str(request.url) == "https://app.sandbox.midtrans.com/snap/v1/transactions"
        assert request.headers["Authorization"].startswith("Basic ")
        sent = json.loads(request.content)
        assert sent["transaction_details"] == {
            "order_id": "SUB-1700000000000-0A1B2C3D",
            "gross_amount": 799000,
        }
        assert sent["customer_details"]["first_name"] == "Siti"
        assert sent["customer_details"]["phone"] == "0812"
        assert sent["enabled_payments"] == ["gopay"]
        assert sent["callbacks"] == {"finish": "https://school.example/billing/done"}
        assert sent["item_details"][0]["price"] == 799000

    @pytest.mark.asyncio
    async def test_production_url(self) -> None:
        recorder = Recorder((201, {"token": "t", "redirect_url": "u"}))
        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            is_production=True,
            transport=httpx.MockTransport(recorder),
        )

        await gateway.create_charge(charge_request())

        assert recorder.requests[0].url.host == "app.midtrans.com"

    @pytest.mark.asyncio
    async def test_retries_server_errors(self) -> None:
        recorder = Recorder(
            (503, None),
            (502, None),
            (201, {"token": "t", "redirect_url": "u"}),
        )
        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            retry_config=NO_DELAY,
            transport=httpx.MockTransport(recorder),
        )

        result = await gateway.create_charge(charge_request())

        assert result.token == "t"
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self) -> None:
        recorder = Recorder((500, None))
        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            retry_config=NO_DELAY,
            transport=httpx.MockTransport(recorder),
        )

        with pytest.raises(GatewayError) as exc_info:
            await gateway.create_charge(charge_request())

        assert exc_info.value.retryable is True
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self) -> None:
        recorder = Recorder((401, {"error_messages": ["Access denied"]}))
        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            retry_config=NO_DELAY,
            transport=httpx.MockTransport(recorder),
        )

        with pytest.raises(GatewayError) as exc_info:
            await gateway.create_charge(charge_request())

        assert exc_info.value.retryable is False
        assert exc_info.value.details["status_code"] == 401
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            retry_config=NO_DELAY,
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(GatewayError):
            await gateway.create_charge(charge_request())

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_missing_token(self) -> None:
        gateway = MidtransGateway(
            server_key=MIDTRANS_SERVER_KEY,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )

        with pytest.raises(GatewayError):
            await gateway.create_charge(charge_request())


class TestTripay:

    def test_request_signature(self, tripay_gateway) -> None:
        expected = hmac.new(
            TRIPAY_PRIVATE_KEY.encode(),
            f"{TRIPAY_MERCHANT_CODE}SUB-1799000".encode(),
            hashlib.sha256,
        ).hexdigest()

        assert tripay_gateway.request_signature("SUB-1", 799000) == expected

    def test_callback_signature(self, tripay_gateway) -> None:
        body, signature = tripay_body("SUB-1", "PAID")

        assert tripay_gateway.verify_notification(body, signature) is True
        assert tripay_gateway.verify_notification(body, None) is False
        assert tripay_gateway.verify_notification(body + b" ", signature) is False
        assert tripay_gateway.verify_notification(body, "0" * 64) is False

    @pytest.mark.parametrize(
        "raw_status,expected",
        [
            ("PAID", PaymentStatus.SUCCESS),
            ("UNPAID", PaymentStatus.PENDING),
            ("FAILED", PaymentStatus.FAILED),
            ("EXPIRED", PaymentStatus.FAILED),
            ("REFUND", PaymentStatus.FAILED),
            ("SOMETHING", PaymentStatus.PENDING),
        ],
    )
    def test_status_mapping(self, tripay_gateway, raw_status, expected) -> None:
        assert tripay_gateway.normalize_status(raw_status) == expected

    def test_parse_callback(self, tripay_gateway) -> None:
        body, _ = tripay_body("SUB-1", "PAID")

        notification = tripay_gateway.parse_notification(body)

        assert notification.order_ref == "SUB-1"
        assert notification.status == PaymentStatus.SUCCESS
        assert notification.amount == 799000
        assert notification.payment_method == "BRIVA"
        assert notification.external_ref == "T-SUB-1"
        assert notification.paid_at == datetime(2026, 10, 19, 0, 0, 0)

    def test_malformed_callback(self, tripay_gateway) -> None:
        with pytest.raises(ValidationError):
            tripay_gateway.parse_notification(b'{"merchant_ref": "SUB-1"}')

    @pytest.mark.asyncio
    async def test_closed_payment_charge(self) -> None:
        recorder = Recorder((200, {
            "success": True,
            "message": "",
            "data": {
                "reference": "T0001000000001",
                "merchant_ref": "SUB-1700000000000-0A1B2C3D",
                "status": "UNPAID",
                "pay_code": "8277012345678901",
                "checkout_url": "https://tripay.co.id/checkout/T0001000000001",
            },
        }))
        gateway = TripayGateway(
            api_key=TRIPAY_API_KEY,
            private_key=TRIPAY_PRIVATE_KEY,
            merchant_code=TRIPAY_MERCHANT_CODE,
            transport=httpx.MockTransport(recorder),
        )

        result = await gateway.create_charge(charge_request(
            payment_method="BRIVA", expires_at=datetime(2026, 10, 20)
        ))

        assert result.status == PaymentStatus.PENDING
        assert result.pay_code == "8277012345678901"
        assert result.external_ref == "T0001000000001"
        [request] = recorder.requests
        assert str(request.url) == "https://tripay.co.id/api-sandbox/transaction/create"
        assert request.headers["Authorization"] == f"Bearer {TRIPAY_API_KEY}"
        sent = json.loads(request.content)
        assert sent["method"] == "BRIVA"
        assert sent["expired_time"] == 1792454400
        assert sent["signature"] == gateway.request_signature(
            "SUB-1700000000000-0A1B2C3D", 799000
        )

    @pytest.mark.asyncio
    async def test_channel_required(self, tripay_gateway) -> None:
        with pytest.raises(ValidationError):
            await tripay_gateway.create_charge(charge_request())

    @pytest.mark.asyncio
    async def test_rejected_by_tripay(self) -> None:
        gateway = TripayGateway(
            api_key=TRIPAY_API_KEY,
            private_key=TRIPAY_PRIVATE_KEY,
            merchant_code=TRIPAY_MERCHANT_CODE,
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"success": False, "message": "Invalid method"})
            ),
        )

        with pytest.raises(GatewayError, match="Invalid method"):
            await gateway.create_charge(charge_request(payment_method="NOPE"))


class TestRegistry:

    def test_only_configured_gateways_registered(self) -> None:
        config = Settings(
            DATABASE_URL="sqlite+aiosqlite:///:memory:",
            MIDTRANS_SERVER_KEY=MIDTRANS_SERVER_KEY,
            TRIPAY_API_KEY="",
        )

        registry = GatewayRegistry.from_settings(config)

        assert registry.providers() == ["midtrans"]
        with pytest.raises(ValidationError):
            registry.get("tripay")

    def test_factory(self) -> None:
        config = Settings(
            DATABASE_URL="sqlite+aiosqlite:///:memory:",
            TRIPAY_API_KEY=TRIPAY_API_KEY,
            TRIPAY_PRIVATE_KEY=TRIPAY_PRIVATE_KEY,
            TRIPAY_MERCHANT_CODE=TRIPAY_MERCHANT_CODE,
            GATEWAY_MAX_ATTEMPTS=5,
        )

        gateway = PaymentGatewayFactory.create(GatewayProvider.TRIPAY, config)

        assert isinstance(gateway, TripayGateway)
        assert gateway.retry_config.max_attempts == 5
        assert PaymentGatewayFactory.get_supported_providers() == ["midtrans", "tripay"]

    def test_unknown_provider(self, registry) -> None:
        with pytest.raises(ValidationError):
            registry.get("paypal")
