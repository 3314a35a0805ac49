"""Unit tests for the eligibility gate."""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from arcadereward.database import Database
from arcadereward.engine.eligibility import EligibilityGate, evaluate_eligibility, local_midnight
from arcadereward.models import GameConfig, GameSession, utcnow

SHOP = "gate-store.myshopify.com"
PLAYER_IP = "203.0.113.7"


def make_session(session_id, ip_address=PLAYER_IP, completed=True, started_at=None):
    return GameSession(
        session_id=session_id,
        shop_domain=SHOP,
        ip_address=ip_address,
        started_at=started_at or utcnow(),
        completed=completed,
        final_score=200 if completed else None,
    )


@pytest.mark.unit
class TestEligibilityGate:
    """Test admission decisions against stored session history."""

    @pytest.fixture
    async def test_db(self, tmp_path):
        """Create a temporary test database with an enabled game."""
        db_path = tmp_path / "test.db"
        db = Database(str(db_path))
        await db.initialize()
        await db.save_game_config(GameConfig(shop_domain=SHOP, max_plays_per_customer=3))
        return db

    @pytest.fixture
    def gate(self, test_db):
        return EligibilityGate(test_db)

    @pytest.mark.asyncio
    async def test_ip_limit_reached(self, gate, test_db):
        """Three completed plays from one address exhaust a limit of three."""
        for i in range(3):
            await test_db.create_session(make_session(f"sess-ip-{i}"))

        eligibility = await gate.can_start_session(SHOP, PLAYER_IP)

        assert eligibility.can_play is False
        assert eligibility.reason == "ip_limit"
        assert eligibility.plays_remaining == 0

    @pytest.mark.asyncio
    async def test_incomplete_sessions_do_not_count_against_ip(self, gate, test_db):
        await test_db.create_session(make_session("sess-a"))
        await test_db.create_session(make_session("sess-b"))
        await test_db.create_session(make_session("sess-c", completed=False))

        eligibility = await gate.can_start_session(SHOP, PLAYER_IP)

        assert eligibility.can_play is True
        assert eligibility.plays_remaining == 1

    @pytest.mark.asyncio
    async def test_other_addresses_unaffected(self, gate, test_db):
        for i in range(3):
            await test_db.create_session(make_session(f"sess-{i}"))

        eligibility = await gate.can_start_session(SHOP, "198.51.100.1")

        assert eligibility.can_play is True
        assert eligibility.plays_remaining == 3

    @pytest.mark.asyncio
    async def test_daily_limit(self, test_db):
        await test_db.save_game_config(GameConfig(shop_domain=SHOP, max_plays_per_day=2))
        await test_db.create_session(make_session("sess-x", ip_address="198.51.100.1", completed=False))
        await test_db.create_session(make_session("sess-y", ip_address="198.51.100.2", completed=False))

        eligibility = await EligibilityGate(test_db).can_start_session(SHOP, PLAYER_IP)

        assert eligibility.can_play is False
        assert eligibility.reason == "daily_limit"

    @pytest.mark.asyncio
    async def test_missing_config_is_inactive(self, gate):
        eligibility = await gate.can_start_session("unknown.myshopify.com", PLAYER_IP)

        assert eligibility.can_play is False
        assert eligibility.reason == "shop_inactive"

    @pytest.mark.asyncio
    async def test_disabled_game_is_inactive(self, gate, test_db):
        await test_db.save_game_config(GameConfig(shop_domain=SHOP, is_enabled=False))

        eligibility = await gate.can_start_session(SHOP, PLAYER_IP)

        assert eligibility.reason == "shop_inactive"

    @pytest.mark.asyncio
    async def test_window_limits_history(self, test_db):
        """Only the most recent sessions are inspected."""
        old = utcnow() - timedelta(minutes=30)
        for i in range(3):
            await test_db.create_session(make_session(f"sess-old-{i}", started_at=old + timedelta(seconds=i)))
        await test_db.create_session(make_session("sess-new-1", ip_address="198.51.100.1"))
        await test_db.create_session(make_session("sess-new-2", ip_address="198.51.100.2"))

        eligibility = await EligibilityGate(test_db, window=2).can_start_session(SHOP, PLAYER_IP)

        assert eligibility.can_play is True

    @pytest.mark.asyncio
    async def test_concurrent_checks_both_admitted(self, gate, test_db):
        """Read-then-decide: two simultaneous checks can both take the last play."""
        await test_db.create_session(make_session("sess-1"))
        await test_db.create_session(make_session("sess-2"))

        first, second = await asyncio.gather(
            gate.can_start_session(SHOP, PLAYER_IP),
            gate.can_start_session(SHOP, PLAYER_IP),
        )

        assert first.can_play is True
        assert second.can_play is True
        assert first.plays_remaining == second.plays_remaining == 1

    @pytest.mark.asyncio
    async def test_history_unreadable_admits(self, gate, test_db, monkeypatch):
        for i in range(3):
            await test_db.create_session(make_session(f"sess-h-{i}"))

        async def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(test_db, "get_recent_sessions", locked)

        eligibility = await gate.can_start_session(SHOP, PLAYER_IP)

        assert eligibility.can_play is True
        assert eligibility.plays_remaining == 3

    @pytest.mark.asyncio
    async def test_config_unreadable_uses_defaults(self, gate, test_db, monkeypatch):
        async def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(test_db, "get_game_config", locked)

        eligibility = await gate.can_start_session(SHOP, PLAYER_IP)

        assert eligibility.can_play is True
        assert eligibility.plays_remaining == 3


@pytest.mark.unit
class TestEvaluateEligibility:
    """Test the pure admission rule."""

    def test_sessions_before_midnight_ignored_for_daily_limit(self):
        game_config = GameConfig(shop_domain=SHOP, max_plays_per_day=1)
        midnight = local_midnight()
        yesterday = make_session("sess-y", ip_address="198.51.100.1", started_at=midnight - timedelta(hours=1))

        eligibility = evaluate_eligibility(game_config, [yesterday], PLAYER_IP, since=midnight)

        assert eligibility.can_play is True
        assert eligibility.plays_remaining == 1

    def test_plays_remaining_is_minimum(self):
        game_config = GameConfig(shop_domain=SHOP, max_plays_per_customer=5, max_plays_per_day=2)

        eligibility = evaluate_eligibility(game_config, [], PLAYER_IP)

        assert eligibility.plays_remaining == 2

    def test_ip_limit_checked_before_daily_limit(self):
        game_config = GameConfig(shop_domain=SHOP, max_plays_per_customer=1, max_plays_per_day=1)

        eligibility = evaluate_eligibility(game_config, [make_session("sess-1")], PLAYER_IP)

        assert eligibility.reason == "ip_limit"
