"""Payment gateway interface.

Defines the contract every gateway adapter follows, the DTOs exchanged with
the rest of the engine, and the shared HTTP helper with retry and
exponential backoff for outbound calls.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from tenant_billing.core.errors import GatewayError
from tenant_billing.core.logging import log_warning
from tenant_billing.modules.payment_gateway.models import GatewayProvider, PaymentStatus

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 10.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The current attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return self.initial_delay

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


@dataclass
class Customer:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass
class LineItem:
    sku: str
    name: str
    unit_price: int
    quantity: int = 1


@dataclass
class ChargeRequest:
    """Data for creating a charge. Amounts are integer minor units."""
    order_ref: str
    amount: int
    currency: str
    customer: Customer
    line_items: list[LineItem] = field(default_factory=list)
    payment_method: Optional[str] = None
    return_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class ChargeResult:
    """Result from charge creation."""
    order_ref: str
    status: PaymentStatus
    checkout_url: Optional[str] = None
    pay_code: Optional[str] = None
    external_ref: Optional[str] = None
    token: Optional[str] = None
    raw: Optional[dict] = None


@dataclass
class GatewayNotification:
    """Gateway-neutral view of a payment notification."""
    order_ref: str
    status: PaymentStatus
    raw_status: str
    amount: Optional[int] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    external_ref: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentGatewayInterface(ABC):
    """Abstract interface for all payment gateway implementations.

    Adapters are constructed with their configuration and injected; they
    hold no module-level state.
    """

    provider: GatewayProvider

    def __init__(
        self,
        is_production: bool = False,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.is_production = is_production
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.transport = transport

    @property
    def is_sandbox(self) -> bool:
        return not self.is_production

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        pass

    async def _request(
        self,
        method: str,
        url: str,
        data: Optional[dict] = None,
    ) -> dict:
        """Authenticated JSON request with retry on transient failures.

        Transport errors and 5xx responses are retried with exponential
        backoff. Any 4xx is a rejection and raised at once.

        Raises:
            GatewayError: Rejected, or still failing after the last attempt
        """
        last_error: Optional[GatewayError] = None
        attempts = max(1, self.retry_config.max_attempts)

        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self.transport
                ) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers={
                            **self._auth_headers(),
                            "Content-Type": "application/json",
                            "Accept": "application/json",
                        },
                        json=data,
                    )
            except httpx.TransportError as e:
                last_error = GatewayError(
                    f"{self.provider.value} unreachable: {e.__class__.__name__}",
                    provider=self.provider.value,
                    retryable=True,
                )
            else:
                if response.status_code >= 500:
                    last_error = GatewayError(
                        f"{self.provider.value} returned {response.status_code}",
                        provider=self.provider.value,
                        retryable=True,
                        details={"status_code": response.status_code},
                    )
                elif response.status_code >= 400:
                    raise GatewayError(
                        f"{self.provider.value} rejected the request ({response.status_code})",
                        provider=self.provider.value,
                        details={
                            "status_code": response.status_code,
                            "body": _response_body(response),
                        },
                    )
                else:
                    return _response_body(response)

            if attempt < attempts:
                delay = self.retry_config.calculate_delay(attempt)
                log_warning(
                    logger,
                    f"{self.provider.value} request failed (attempt {attempt}/{attempts}); "
                    f"retrying in {delay:.1f}s",
                    gateway=self.provider.value,
                    attempt=attempt,
                )
                await asyncio.sleep(delay)

        raise last_error

    @abstractmethod
    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a charge at the gateway.

        Args:
            request: Charge data

        Returns:
            ChargeResult with the redirect URL or pay code

        Raises:
            GatewayError: The gateway failed or rejected the charge
        """
        pass

    @abstractmethod
    def verify_notification(self, raw_body: bytes, signature: Optional[str] = None) -> bool:
        """Check a notification's authenticity before anything else reads it.

        Args:
            raw_body: Request body exactly as received
            signature: Signature header, for gateways that send one

        Returns:
            True if the signature matches
        """
        pass

    @abstractmethod
    def parse_notification(self, raw_body: bytes) -> GatewayNotification:
        """Decode a verified notification.

        Raises:
            ValidationError: Payload does not match the gateway's schema
        """
        pass

    @abstractmethod
    def normalize_status(self, raw_status: str, fraud_status: Optional[str] = None) -> PaymentStatus:
        pass


def _response_body(response: httpx.Response) -> dict:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    return body if isinstance(body, dict) else {"data": body}
