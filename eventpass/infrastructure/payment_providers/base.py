"""
Payment provider interface.

Each provider adapter turns its own wire format into ProviderOutcome
before anything reaches the payment coordinator, so the coordinator
never looks at a provider-specific payload.

Outbound calls are bounded by PAYMENT_PROVIDER_TIMEOUT_SECONDS. Timeouts
and transport failures raise UpstreamPaymentError: the outcome is
unknown, not failed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from eventpass.core.config import get_settings
from eventpass.core.errors import SignatureError, UpstreamPaymentError
from eventpass.core.logging import get_logger

logger = get_logger(__name__)


class OutcomeStatus:
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class InitializeRequest:
    amount: Decimal
    currency: str
    reference: str
    callback_url: str
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitializeResult:
    reference: str
    authorization_url: Optional[str]
    provider_reference: Optional[str] = None


@dataclass(frozen=True)
class ProviderOutcome:
    provider: str
    reference: str
    status: str  # OutcomeStatus
    amount: Optional[Decimal] = None
    provider_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    event_type: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.FAILED)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PaymentProvider(ABC):
    name: str = ""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_settings().PAYMENT_PROVIDER_TIMEOUT_SECONDS
        self._transport = transport

    @abstractmethod
    async def initialize(self, request: InitializeRequest) -> InitializeResult:
        pass

    @abstractmethod
    async def verify(self, reference: str) -> ProviderOutcome:
        pass

    @abstractmethod
    async def refund(self, reference: str, amount: Decimal, reason: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def signature_from_headers(self, headers: Mapping[str, str]) -> Optional[str]:
        pass

    @abstractmethod
    def verify_signature(self, raw_payload: bytes, signature: str) -> bool:
        pass

    @abstractmethod
    def parse_webhook(self, raw_payload: bytes) -> Optional[ProviderOutcome]:
        """Normalize an authenticated webhook body; None when it carries no payment reference."""

    def authenticate_webhook(self, raw_payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise SignatureError("Missing webhook signature")
        if not self.verify_signature(raw_payload, signature):
            raise SignatureError("Invalid webhook signature")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, json=json, headers=headers)
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException as e:
            logger.warning("payment_provider_timeout", provider=self.name, path=path, timeout=self.timeout)
            raise UpstreamPaymentError(f"{self.name} timed out") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "payment_provider_http_error",
                provider=self.name,
                path=path,
                status_code=e.response.status_code,
            )
            raise UpstreamPaymentError(f"{self.name} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning("payment_provider_unreachable", provider=self.name, path=path, error=str(e))
            raise UpstreamPaymentError(f"{self.name} is unreachable") from e
        except ValueError as e:
            raise UpstreamPaymentError(f"{self.name} returned a non-JSON body") from e
