"""
Pydantic schemas for gate-side ticket verification.
"""

from typing import Optional

from pydantic import BaseModel, Field


class TicketScanRequest(BaseModel):
    artifact: str = Field(..., min_length=1, max_length=2000)


class TicketVerificationResponse(BaseModel):
    valid: bool
    status: str
    message: str
    booking_reference: Optional[str] = None
    booking_id: Optional[int] = None
    event_id: Optional[int] = None
    quantity: Optional[int] = None
