"""
OPay adapter.

Auth: Bearer public key + MerchantId header, plus an HMAC-SHA256 signature
over the canonical form of the JSON body: nested objects flattened with
dotted keys, keys sorted, joined as "k=v&k=v". Webhooks carry the same
signature in `Authorization: Bearer <hex>`.
"""

import hashlib
import hmac
import json
from dataclasses import replace
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

SUCCESS_CODE = "00000"

_STATUS_MAP = {
    "SUCCESS": OutcomeStatus.SUCCESS,
    "SUCCESSFUL": OutcomeStatus.SUCCESS,
    "FAIL": OutcomeStatus.FAILED,
    "FAILED": OutcomeStatus.FAILED,
    "CLOSE": OutcomeStatus.FAILED,
}


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{prefix}{key}."))
        else:
            flat[f"{prefix}{key}"] = value
    return flat


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join(_format_value(v) for v in value)
    return str(value)


def canonical_form(data: Dict[str, Any]) -> str:
    flat = _flatten(data)
    return "&".join(f"{key}={_format_value(flat[key])}" for key in sorted(flat))


class OpayProvider(PaymentProvider):
    name = "opay"

    def __init__(
        self,
        secret_key: Optional[str],
        public_key: Optional[str],
        merchant_id: Optional[str],
        base_url: str,
        country: str = "NG",
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.secret_key = secret_key
        self.public_key = public_key
        self.merchant_id = merchant_id
        self.country = country

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.public_key and self.merchant_id)

    def sign(self, data: Dict[str, Any]) -> str:
        return hmac.new(
            (self.secret_key or "").encode("utf-8"),
            canonical_form(data).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _headers(self, payload: Dict[str, Any]) -> Dict[str, str]:
        if not self.configured:
            raise UpstreamPaymentError("OPay is not configured")
        return {
            "Authorization": f"Bearer {self.public_key}",
            "MerchantId": self.merchant_id,
            "Signature": self.sign(payload),
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("POST", path, json=payload, headers=self._headers(payload))
        if body.get("code") != SUCCESS_CODE:
            raise UpstreamPaymentError(body.get("message") or f"OPay rejected {path}")
        return body.get("data") or {}

    async def initialize(self, request: InitializeRequest) -> InitializeResult:
        payload = {
            "reference": request.reference,
            "country": self.country,
            "amount": {"currency": request.currency, "total": to_minor_units(request.amount)},
            "payMethod": "AccountWallet",
            "callbackUrl": request.callback_url,
            "product": {
                "name": request.metadata.get("event_title", "Event tickets"),
                "description": f"Booking {request.metadata.get('booking_reference', request.reference)}",
            },
        }
        data = await self._post("/api/v1/international/payment/create", payload)
        return InitializeResult(
            reference=data.get("reference", request.reference),
            authorization_url=data.get("cashierUrl") or data.get("qrCode") or data.get("paymentUrl"),
            provider_reference=data.get("orderNo"),
        )

    async def verify(self, reference: str) -> ProviderOutcome:
        data = await self._post("/api/v1/international/payment/status", {"reference": reference, "country": self.country})
        return self._outcome(data, reference)

    async def refund(self, reference: str, amount: Decimal, reason: str) -> Dict[str, Any]:
        payload = {"reference": reference, "refundAmount": to_minor_units(amount), "refundReason": reason}
        return await self._post("/api/v1/international/payment/refund", payload)

    def signature_from_headers(self, headers: Mapping[str, str]) -> Optional[str]:
        auth = headers.get("authorization") or ""
        if auth.lower().startswith("bearer "):
            return auth[7:].strip() or None
        return None

    def verify_signature(self, raw_payload: bytes, signature: str) -> bool:
        if not self.secret_key:
            return False
        try:
            data = json.loads(raw_payload)
        except ValueError:
            return False
        if not isinstance(data, dict):
            return False
        return hmac.compare_digest(self.sign(data), signature.strip().lower())

    def parse_webhook(self, raw_payload: bytes) -> Optional[ProviderOutcome]:
        body = json.loads(raw_payload)
        data = body.get("payload") if isinstance(body.get("payload"), dict) else body
        if not data.get("reference"):
            return None
        return replace(self._outcome(data, data["reference"]), event_type=body.get("type") or data.get("status"))

    def _outcome(self, data: Dict[str, Any], reference: str) -> ProviderOutcome:
        amount = data.get("amount")
        if isinstance(amount, dict):
            amount = amount.get("total")
        return ProviderOutcome(
            provider=self.name,
            reference=data.get("reference") or reference,
            status=_STATUS_MAP.get(str(data.get("status", "")).upper(), OutcomeStatus.PENDING),
            amount=from_minor_units(amount),
            provider_reference=data.get("orderNo"),
            paid_at=parse_timestamp(data.get("updatedAt") or data.get("transactionTime")),
        )
