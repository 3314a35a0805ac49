"""Re-attempt external creation of discount codes left pending.

Run periodically (e.g. from cron). Codes that keep failing are given up after
ISSUANCE_MAX_ATTEMPTS attempts and their quota unit is released.
"""

import asyncio
import sys

from arcadereward.config import config, validate_config_for_service
from arcadereward.database import db
from arcadereward.engine.commerce import CommerceClient
from arcadereward.engine.rewards import RewardIssuer
from arcadereward.engine.sessions import SessionManager
from arcadereward.engine.usage import UsageMeter
from arcadereward.logging_utils import RequestContext, get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main() -> int:
    validate_config_for_service("worker")
    await db.initialize()

    usage_meter = UsageMeter(db)
    issuer = RewardIssuer(db, usage_meter, SessionManager(db, usage_meter), CommerceClient())

    with RequestContext():
        summary = await issuer.retry_pending_issuances(config.issuance_max_attempts)

    print(f"✅ Issued:  {summary['issued']}")
    print(f"⏳ Pending: {summary['pending']}")
    print(f"❌ Failed:  {summary['failed']}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
