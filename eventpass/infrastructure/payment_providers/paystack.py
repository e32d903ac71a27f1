"""
Paystack adapter.

Auth: Bearer secret key. Webhooks are signed with HMAC-SHA512 of the raw
body under the same secret, hex-encoded in `x-paystack-signature`.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from eventpass.core.errors import UpstreamPaymentError
from eventpass.infrastructure.payment_providers.base import (
    InitializeRequest,
    InitializeResult,
    OutcomeStatus,
    PaymentProvider,
    ProviderOutcome,
    from_minor_units,
    parse_timestamp,
    to_minor_units,
)

SIGNATURE_HEADER = "x-paystack-signature"

_STATUS_MAP = {
    "success": OutcomeStatus.SUCCESS,
    "failed": OutcomeStatus.FAILED,
    "reversed": OutcomeStatus.FAILED,
}

_WEBHOOK_EVENTS = {
    "charge.success": OutcomeStatus.SUCCESS,
    "charge.failed": OutcomeStatus.FAILED,
}


class PaystackProvider(PaymentProvider):
    name = "paystack"

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.secret_key = secret_key

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise UpstreamPaymentError("Paystack is not configured")
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    async def initialize(self, request: InitializeRequest) -> InitializeResult:
        payload = {
            "amount": to_minor_units(request.amount),
            "currency": request.currency,
            "reference": request.reference,
            "callback_url": request.callback_url,
            "metadata": request.metadata,
        }
        if request.customer_email:
            payload["email"] = request.customer_email

        body = await self._request("POST", "/transaction/initialize", json=payload, headers=self._headers())
        if not body.get("status"):
            raise UpstreamPaymentError(body.get("message") or "Paystack rejected the transaction")
        data = body.get("data") or {}
        return InitializeResult(
            reference=data.get("reference", request.reference),
            authorization_url=data.get("authorization_url"),
            provider_reference=data.get("access_code"),
        )

    async def verify(self, reference: str) -> ProviderOutcome:
        body = await self._request("GET", f"/transaction/verify/{reference}", headers=self._headers())
        data = body.get("data") or {}
        return self._outcome(data, reference, _STATUS_MAP.get(data.get("status")))

    async def refund(self, reference: str, amount: Decimal, reason: str) -> Dict[str, Any]:
        payload = {"transaction": reference, "amount": to_minor_units(amount), "merchant_note": reason}
        body = await self._request("POST", "/refund", json=payload, headers=self._headers())
        if not body.get("status"):
            raise UpstreamPaymentError(body.get("message") or "Paystack rejected the refund")
        return body.get("data") or {}

    def signature_from_headers(self, headers: Mapping[str, str]) -> Optional[str]:
        return headers.get(SIGNATURE_HEADER)

    def verify_signature(self, raw_payload: bytes, signature: str) -> bool:
        if not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), raw_payload, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def parse_webhook(self, raw_payload: bytes) -> Optional[ProviderOutcome]:
        body = json.loads(raw_payload)
        data = body.get("data") or {}
        if not data.get("reference"):
            return None
        event_type = body.get("event")
        return self._outcome(data, data["reference"], _WEBHOOK_EVENTS.get(event_type), event_type=event_type)

    def _outcome(
        self,
        data: Dict[str, Any],
        reference: str,
        status: Optional[str],
        event_type: Optional[str] = None,
    ) -> ProviderOutcome:
        provider_reference = data.get("id")
        return ProviderOutcome(
            provider=self.name,
            reference=data.get("reference") or reference,
            status=status or OutcomeStatus.PENDING,
            amount=from_minor_units(data.get("amount")),
            provider_reference=str(provider_reference) if provider_reference is not None else None,
            paid_at=parse_timestamp(data.get("paid_at") or data.get("paidAt")),
            event_type=event_type,
        )
