"""
Daily subscription maintenance.

Resets lapsed monthly quotas, downgrades monthly plans that stopped
renewing and expires yearly plans. Meant for cron; exits 1 when any row
failed so the scheduler can alert. Safe to re-run.

    python scripts/run_subscription_maintenance.py
"""

import asyncio
import json
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config.settings import settings
from app.infrastructure.db.database import close_db, get_session_context
from app.infrastructure.services.container import build_services


logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("subscription_maintenance")


async def main() -> int:
    try:
        async with get_session_context() as session:
            services = build_services(session, settings)
            report = await services.maintenance.run()
    finally:
        await close_db()

    logger.info(json.dumps(report.to_dict(), indent=2))
    for failure in report.failures:
        logger.error(
            f"[{failure.sweep}] subscription {failure.subscription_id} "
            f"(user {failure.user_id}): {failure.error}"
        )
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
