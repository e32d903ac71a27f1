"""
Explicit result type for best-effort side effects.

Ticket rendering, notifications and hold-accelerator writes must never
fail a committed state transition. Instead of a silent catch-all, each
such call returns a SideEffectResult the caller can inspect and log.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

from eventpass.core.logging import get_logger
from eventpass.core.metrics import record_side_effect_failure

logger = get_logger(__name__)


@dataclass(frozen=True)
class SideEffectResult:
    effect: str
    ok: bool
    value: Any = None
    error: Optional[str] = None


async def best_effort(effect: str, awaitable: Awaitable[Any], timeout: Optional[float] = None, **log_fields) -> SideEffectResult:
    """Await a side effect, converting any failure into a logged SideEffectResult."""
    try:
        if timeout is not None:
            value = await asyncio.wait_for(awaitable, timeout=timeout)
        else:
            value = await awaitable
    except Exception as e:
        logger.warning(f"{effect}_failed", error=str(e), error_type=type(e).__name__, **log_fields)
        record_side_effect_failure(effect)
        return SideEffectResult(effect=effect, ok=False, error=str(e) or type(e).__name__)
    return SideEffectResult(effect=effect, ok=True, value=value)
