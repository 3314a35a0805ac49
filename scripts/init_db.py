"""Database initialization script.

Run this to create the reward engine schema and seed a demo shop with the
default discount tiers.
"""

import argparse
import asyncio
import sys

from arcadereward.config import config
from arcadereward.database import db
from arcadereward.logging_utils import get_logger, setup_logging
from arcadereward.models import GameConfig, Shop

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main(shop_domain: str, access_token: str, plan: str):
    """Initialize the database."""
    logger.info("Initializing reward engine database...")
    logger.info(f"Database path: {db.db_path}")

    # Initialize schema
    await db.initialize()

    # Seed the demo shop and its game configuration
    await db.upsert_shop(Shop(shop_domain=shop_domain, access_token=access_token or None, plan=plan))
    await db.save_game_config(GameConfig(shop_domain=shop_domain))

    game_config = await db.get_game_config(shop_domain)
    if game_config is None:
        logger.error(f"Failed to seed game config for {shop_domain}")
        sys.exit(1)

    logger.info(f"Seeded {shop_domain} on the {plan} plan with {len(game_config.discount_tiers)} tiers:")
    for tier in game_config.discount_tiers:
        logger.info(f"- {tier.min_score}+ points: {tier.discount}% off")

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--shop", default="demo-store.myshopify.com")
    parser.add_argument("--access-token", default="")
    parser.add_argument("--plan", default="free", choices=["free", "starter", "pro", "enterprise"])
    args = parser.parse_args()
    asyncio.run(main(args.shop, args.access_token, args.plan))
