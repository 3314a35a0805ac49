"""Play session lifecycle.

Sessions move from created to completed exactly once. When storage is down at
start the caller still gets an ephemeral id (``temp-`` prefix) so the game can
be played; such sessions are written retroactively, already completed, when
they finish.
"""

import sqlite3
import uuid
from typing import Optional

from ..config import config
from ..database import Database
from ..logging_utils import get_logger
from ..models import GameSession, Requester, StartedSession, utcnow
from .usage import STORAGE_ERRORS, UsageMeter

logger = get_logger(__name__)


def is_ephemeral(session_id: str) -> bool:
    """Whether an id was issued without a durable record."""
    return session_id.startswith(config.ephemeral_session_prefix)


def new_session_id() -> str:
    return f"sess-{uuid.uuid4().hex[:16]}"


def new_ephemeral_session_id() -> str:
    return f"{config.ephemeral_session_prefix}{uuid.uuid4()}"


class SessionManager:
    """Creates, reads and completes play sessions."""

    def __init__(self, database: Database, usage_meter: Optional[UsageMeter] = None):
        self.db = database
        self.usage_meter = usage_meter

    async def start_session(self, shop_domain: str, requester: Requester) -> StartedSession:
        """Create a session record. Never fails: falls back to an ephemeral id."""
        session = GameSession(
            session_id=new_session_id(),
            shop_domain=shop_domain,
            customer_id=requester.customer_id,
            customer_email=requester.customer_email,
            ip_address=requester.ip_address,
            user_agent=requester.user_agent,
            source=requester.source,
            referrer=requester.referrer,
        )

        try:
            await self.db.create_session(session)
        except STORAGE_ERRORS as e:
            session_id = new_ephemeral_session_id()
            logger.error(
                f"Could not persist session for {shop_domain}, issuing ephemeral {session_id}: {e}",
                exc_info=True,
            )
            return StartedSession(session_id=session_id, ephemeral=True)

        if self.usage_meter:
            await self.usage_meter.increment_usage(shop_domain, "game_sessions")

        return StartedSession(session_id=session.session_id)

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        return await self.db.get_session(session_id)

    async def complete_session(
        self,
        session_id: str,
        final_score: int,
        discount_earned: int,
        discount_code: Optional[str] = None,
    ) -> bool:
        """Transition a pending session to completed.

        Returns:
            False without changing anything if the session is unknown or already completed.
        """
        return await self.db.complete_session(session_id, final_score, discount_earned, discount_code)

    async def record_ephemeral_completion(
        self,
        session_id: str,
        shop_domain: str,
        final_score: int,
        discount_earned: int,
        discount_code: Optional[str] = None,
        requester: Optional[Requester] = None,
        game_data: Optional[dict] = None,
    ) -> bool:
        """Write an already-completed record for a session that had none.

        The record counts against the eligibility limits like any other play.

        Returns:
            False if a record with this id already exists.
        """
        requester = requester or Requester()
        now = utcnow()
        session = GameSession(
            session_id=session_id,
            shop_domain=shop_domain,
            customer_id=requester.customer_id,
            customer_email=requester.customer_email,
            ip_address=requester.ip_address,
            user_agent=requester.user_agent,
            source=requester.source,
            referrer=requester.referrer,
            started_at=now,
            ended_at=now,
            final_score=final_score,
            discount_earned=discount_earned,
            discount_code=discount_code,
            completed=True,
            game_data=game_data or {},
            ephemeral=True,
        )
        try:
            await self.db.create_session(session)
        except sqlite3.IntegrityError:
            logger.warning(f"Session {session_id} already recorded, skipping retroactive write")
            return False
        return True
