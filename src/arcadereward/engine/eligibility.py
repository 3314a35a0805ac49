"""Admission control for new play sessions."""

from datetime import datetime
from typing import Optional

from ..config import config
from ..database import Database
from ..logging_utils import get_logger
from ..models import Eligibility, GameConfig, GameSession
from .usage import STORAGE_ERRORS

logger = get_logger(__name__)


def local_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the current day in the server's local timezone (timezone-aware)."""
    now = (now or datetime.now()).astimezone()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def evaluate_eligibility(
    game_config: Optional[GameConfig],
    recent_sessions: list[GameSession],
    ip_address: str,
    since: Optional[datetime] = None,
) -> Eligibility:
    """Decide whether ``ip_address`` may start another game.

    Args:
        game_config: The shop's configuration, or None if it has none.
        recent_sessions: The shop's most recent sessions, newest first.
        ip_address: Requester address.
        since: Start of the day for the daily allowance. Defaults to local midnight.

    Returns:
        Eligibility with the first failing reason, if any.
    """
    if game_config is None or not game_config.is_enabled:
        return Eligibility(can_play=False, reason="shop_inactive", plays_remaining=0)

    since = since or local_midnight()
    ip_plays = sum(1 for s in recent_sessions if s.ip_address == ip_address and s.completed)
    daily_plays = sum(1 for s in recent_sessions if s.started_at >= since)

    ip_remaining = game_config.max_plays_per_customer - ip_plays
    daily_remaining = game_config.max_plays_per_day - daily_plays

    if ip_remaining <= 0:
        return Eligibility(can_play=False, reason="ip_limit", plays_remaining=0)
    if daily_remaining <= 0:
        return Eligibility(can_play=False, reason="daily_limit", plays_remaining=0)

    return Eligibility(can_play=True, plays_remaining=min(ip_remaining, daily_remaining))


class EligibilityGate:
    """Read-then-decide admission check.

    Two concurrent starts from one address can both observe the last free
    play and both be admitted. Counts are re-evaluated on every call.
    """

    def __init__(self, database: Database, window: Optional[int] = None):
        self.db = database
        self.window = window or config.eligibility_window

    async def can_start_session(self, shop_domain: str, ip_address: str) -> Eligibility:
        try:
            game_config = await self.db.get_game_config(shop_domain)
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to load game config for {shop_domain}, using defaults: {e}", exc_info=True)
            game_config = GameConfig(shop_domain=shop_domain)

        if game_config is None or not game_config.is_enabled:
            logger.info(f"Game not enabled for {shop_domain}")
            return evaluate_eligibility(game_config, [], ip_address)

        try:
            recent = await self.db.get_recent_sessions(shop_domain, self.window)
        except STORAGE_ERRORS as e:
            logger.warning(f"Session history unavailable for {shop_domain}, admitting: {e}")
            return Eligibility(
                can_play=True,
                plays_remaining=min(game_config.max_plays_per_customer, game_config.max_plays_per_day),
            )

        eligibility = evaluate_eligibility(game_config, recent, ip_address)
        if eligibility.can_play:
            logger.info(f"{ip_address} may play on {shop_domain} ({eligibility.plays_remaining} left)")
        else:
            logger.info(f"{ip_address} denied on {shop_domain}: {eligibility.reason}")
        return eligibility
