"""
Payment processor client
Charges patients and issues refunds through the configured processor's REST API
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from ..config import get_settings
from ..errors import DependencyFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    reference: str
    status: str = "succeeded"


class PaymentGateway(ABC):
    """Narrow interface to the payment processor. Every failure is a DependencyFailure."""

    @abstractmethod
    def capture_payment(self, amount: Decimal, payer_ref: str, idempotency_key: Optional[str] = None) -> GatewayResult:
        ...

    @abstractmethod
    def refund(self, payment_ref: Optional[str], amount: Decimal, idempotency_key: Optional[str] = None) -> GatewayResult:
        ...


class HttpPaymentGateway(PaymentGateway):
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        # The processor dedupes repeated requests carrying the same key
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key or str(uuid.uuid4())}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, payload: dict, idempotency_key: Optional[str] = None) -> dict:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as http_client:
                response = http_client.post(f"{self.base_url}{path}", json=payload, headers=self._headers(idempotency_key))
        except httpx.TimeoutException as e:
            logger.error(f"Payment processor timed out on {path}: {e}")
            raise DependencyFailure(f"Payment processor timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.error(f"Payment processor unreachable on {path}: {e}")
            raise DependencyFailure(f"Payment processor unreachable: {e}")

        if response.status_code >= 400:
            logger.error(f"Payment processor rejected {path}: {response.status_code} {response.text}")
            raise DependencyFailure(f"Payment processor returned {response.status_code}")

        try:
            return response.json()
        except ValueError:
            raise DependencyFailure("Payment processor returned an invalid response")

    def capture_payment(self, amount: Decimal, payer_ref: str, idempotency_key: Optional[str] = None) -> GatewayResult:
        data = self._post("/payments", {"amount": str(amount), "payer_ref": payer_ref}, idempotency_key)
        reference = data.get("id") or data.get("reference")
        if not reference:
            raise DependencyFailure("Payment processor response had no payment reference")
        return GatewayResult(reference=reference, status=data.get("status", "succeeded"))

    def refund(self, payment_ref: Optional[str], amount: Decimal, idempotency_key: Optional[str] = None) -> GatewayResult:
        data = self._post("/refunds", {"payment_ref": payment_ref, "amount": str(amount)}, idempotency_key)
        reference = data.get("id") or data.get("reference")
        if not reference:
            raise DependencyFailure("Payment processor response had no refund reference")
        return GatewayResult(reference=reference, status=data.get("status", "succeeded"))


class DisabledPaymentGateway(PaymentGateway):
    """Used when no processor is configured."""

    def capture_payment(self, amount: Decimal, payer_ref: str, idempotency_key: Optional[str] = None) -> GatewayResult:
        raise DependencyFailure("Payment processor is not configured")

    def refund(self, payment_ref: Optional[str], amount: Decimal, idempotency_key: Optional[str] = None) -> GatewayResult:
        raise DependencyFailure("Payment processor is not configured")


def get_payment_gateway() -> PaymentGateway:
    settings = get_settings()
    if not settings.payment_gateway_enabled:
        return DisabledPaymentGateway()
    return HttpPaymentGateway(
        settings.payment_gateway_url,
        api_key=settings.payment_gateway_api_key,
        timeout=settings.payment_timeout_seconds,
    )
