"""
Ticket rendering collaborator.

A ticket artifact is derived data: an opaque, tamper-evident encoding of
the booking reference that scanners can turn back into the reference.
It can be re-rendered at any time from the reference alone.

Artifact format: "EPT1.<base64url(reference)>.<base64url(hmac_sha256(secret, reference)[:16])>"
"""

import base64
import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Optional

from eventpass.core.config import get_settings
from eventpass.core.errors import ValidationError

ARTIFACT_VERSION = "EPT1"


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class TicketRenderer(ABC):
    @abstractmethod
    async def render(self, booking_reference: str) -> str:
        """Produce the artifact for a booking reference."""

    @abstractmethod
    def parse(self, artifact: str) -> str:
        """Recover the booking reference; raises ValidationError on a forged or malformed artifact."""


class SignedTicketRenderer(TicketRenderer):
    def __init__(self, secret: str):
        self._secret = secret.encode("utf-8")

    def _mac(self, booking_reference: str) -> bytes:
        return hmac.new(self._secret, booking_reference.encode("utf-8"), hashlib.sha256).digest()[:16]

    async def render(self, booking_reference: str) -> str:
        if not booking_reference:
            raise ValueError("booking_reference is required")
        return ".".join(
            (ARTIFACT_VERSION, _b64encode(booking_reference.encode("utf-8")), _b64encode(self._mac(booking_reference)))
        )

    def parse(self, artifact: str) -> str:
        try:
            version, encoded_ref, encoded_mac = artifact.split(".")
            booking_reference = _b64decode(encoded_ref).decode("utf-8")
            mac = _b64decode(encoded_mac)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Malformed ticket artifact") from e

        if version != ARTIFACT_VERSION or not hmac.compare_digest(mac, self._mac(booking_reference)):
            raise ValidationError("Ticket artifact signature mismatch")
        return booking_reference


_renderer: Optional[TicketRenderer] = None


def get_ticket_renderer() -> TicketRenderer:
    global _renderer
    if _renderer is None:
        _renderer = SignedTicketRenderer(get_settings().TICKET_SIGNING_SECRET)
    return _renderer
