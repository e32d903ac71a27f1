"""
One-shot expiry sweep for cron-style deployments.

    */5 * * * *  eventpass-sweep

Run this instead of (or in addition to) the in-process sweeper when the
API runs with SWEEPER_ENABLED=false.
"""

import asyncio
import sys

from eventpass.core.logging import get_logger, setup_logging
from eventpass.db.session import AsyncSessionLocal, engine
from eventpass.infrastructure.redis_client import close_redis, get_redis
from eventpass.services.expiry_sweeper import sweep_expired_bookings
from eventpass.services.hold_service import HoldManager


async def run_once() -> int:
    logger = get_logger(__name__)
    holds = HoldManager(await get_redis())
    try:
        report = await sweep_expired_bookings(AsyncSessionLocal, holds)
    finally:
        await close_redis()
        await engine.dispose()

    logger.info("sweep_command_finished", cancelled=report.cancelled, failed=report.failed)
    return 1 if report.failed else 0


def main() -> None:
    setup_logging()
    sys.exit(asyncio.run(run_once()))


if __name__ == "__main__":
    main()
