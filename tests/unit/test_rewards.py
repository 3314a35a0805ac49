"""Unit tests for reward issuance."""

import asyncio
import logging
import sqlite3
from datetime import timedelta

import pytest

from arcadereward.database import Database
from arcadereward.engine.commerce import CommerceAPIError
from arcadereward.engine.rewards import (
    ALREADY_SCORED_MESSAGE,
    NOT_CONFIGURED_MESSAGE,
    QUOTA_EXCEEDED_MESSAGE,
    InvalidFinishRequest,
    RewardIssuer,
    ScoreValidationError,
    SessionNotFoundError,
    generate_discount_code,
    shop_from_referrer,
)
from arcadereward.engine.sessions import SessionManager
from arcadereward.engine.usage import UsageMeter, current_period
from arcadereward.models import DiscountCode, GameConfig, IssuedDiscount, Requester, Shop, utcnow

SHOP = "reward-store.myshopify.com"
TIERS = [
    {"minScore": 0, "discount": 0},
    {"minScore": 150, "discount": 5},
    {"minScore": 500, "discount": 15},
]
REQUESTER = Requester(ip_address="203.0.113.20", user_agent="pytest", customer_email="player@example.com")


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database with a configured free-plan shop."""
    db_path = tmp_path / "test.db"
    db = Database(str(db_path))
    await db.initialize()
    await db.upsert_shop(Shop(shop_domain=SHOP, access_token="shpat_test", plan="free"))
    await db.save_game_config(GameConfig(shop_domain=SHOP, discount_tiers=TIERS, discount_expiry_hours=48))
    return db


@pytest.fixture
def meter(test_db):
    return UsageMeter(test_db)


@pytest.fixture
def sessions(test_db, meter):
    return SessionManager(test_db, meter)


@pytest.fixture
def issuer(test_db, meter, sessions, fake_commerce):
    return RewardIssuer(test_db, meter, sessions, fake_commerce)


async def issued_codes(test_db):
    record = await test_db.get_usage_record(SHOP, current_period())
    return record.value("discount_codes_generated") if record else 0


@pytest.mark.unit
class TestFinishSession:
    """Test the finish saga on the happy path and its guards."""

    @pytest.mark.asyncio
    async def test_earns_tier_and_issues_code(self, issuer, sessions, test_db, fake_commerce):
        started = await sessions.start_session(SHOP, REQUESTER)

        result = await issuer.finish_session(started.session_id, 320, {"clicks": 12})

        assert result.discount_earned == 5
        assert result.next_tier_score == 500
        assert result.discount_code.startswith("BARGAIN")
        assert len(result.discount_code) == len("BARGAIN") + 8
        assert result.expires_at - utcnow() > timedelta(hours=47)

        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.code == result.discount_code
        assert entry.issuance_status == "issued"
        assert entry.price_rule_id == "pr-1"
        assert entry.value == 5

        session = await sessions.get_session(started.session_id)
        assert session.completed is True
        assert session.final_score == 320
        assert session.discount_code == result.discount_code

        shop_domain, token, request = fake_commerce.requests[0]
        assert (shop_domain, token) == (SHOP, "shpat_test")
        assert request.usage_limit == 1
        assert request.expires_at == entry.expires_at
        assert await issued_codes(test_db) == 1

    @pytest.mark.asyncio
    async def test_no_discount_below_first_tier(self, issuer, sessions, test_db, fake_commerce):
        started = await sessions.start_session(SHOP, REQUESTER)

        result = await issuer.finish_session(started.session_id, 100)

        assert result.discount_earned == 0
        assert result.discount_code is None
        assert result.message == "Score 150 points to earn your first discount!"
        assert fake_commerce.requests == []
        assert await issued_codes(test_db) == 0
        assert (await sessions.get_session(started.session_id)).completed is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score", [-1, 10001, 12.5, None, "600", True])
    async def test_invalid_score_mutates_nothing(self, issuer, sessions, test_db, score):
        started = await sessions.start_session(SHOP, REQUESTER)

        with pytest.raises(ScoreValidationError):
            await issuer.finish_session(started.session_id, score)

        session = await sessions.get_session(started.session_id)
        assert session.completed is False
        assert await issued_codes(test_db) == 0
        assert await test_db.get_discount_code_by_session(started.session_id) is None
        assert await test_db.get_scores_by_session(started.session_id) == []

    @pytest.mark.asyncio
    async def test_boundary_scores_accepted(self, issuer, sessions):
        low = await sessions.start_session(SHOP, REQUESTER)
        high = await sessions.start_session(SHOP, REQUESTER)

        assert (await issuer.finish_session(low.session_id, 0)).discount_earned == 0
        assert (await issuer.finish_session(high.session_id, 10000)).discount_earned == 15

    @pytest.mark.asyncio
    async def test_whole_float_score_accepted(self, issuer, sessions, test_db):
        started = await sessions.start_session(SHOP, REQUESTER)

        result = await issuer.finish_session(started.session_id, 500.0)

        assert result.discount_earned == 15
        assert (await sessions.get_session(started.session_id)).final_score == 500

    @pytest.mark.asyncio
    async def test_missing_session_id(self, issuer):
        with pytest.raises(InvalidFinishRequest):
            await issuer.finish_session("", 100)

    @pytest.mark.asyncio
    async def test_quota_exhausted_downgrades_reward(self, issuer, sessions, meter, test_db, fake_commerce):
        """At the monthly limit a tier-15 score earns nothing and the counter stays put."""
        await meter.increment_usage(SHOP, "discount_codes_generated", delta=100)
        started = await sessions.start_session(SHOP, REQUESTER)

        result = await issuer.finish_session(started.session_id, 600)

        assert result.discount_earned == 0
        assert result.discount_code is None
        assert result.message == QUOTA_EXCEEDED_MESSAGE
        assert await issued_codes(test_db) == 100
        assert fake_commerce.requests == []
        session = await sessions.get_session(started.session_id)
        assert session.completed is True
        assert session.discount_earned == 0

    @pytest.mark.asyncio
    async def test_empty_tiers_still_complete_session(self, issuer, sessions, test_db):
        await test_db.save_game_config(GameConfig(shop_domain=SHOP, discount_tiers=[]))
        started = await sessions.start_session(SHOP, REQUESTER)

        result = await issuer.finish_session(started.session_id, 900)

        assert result.discount_earned == 0
        assert result.message == NOT_CONFIGURED_MESSAGE
        assert (await sessions.get_session(started.session_id)).completed is True

    @pytest.mark.asyncio
    async def test_missing_config_uses_default_tiers(self, test_db, meter, sessions, fake_commerce):
        await test_db.upsert_shop(Shop(shop_domain="fresh.myshopify.com", access_token="shpat_fresh"))
        issuer = RewardIssuer(test_db, meter, sessions, fake_commerce)
        started = await sessions.start_session("fresh.myshopify.com", REQUESTER)

        result = await issuer.finish_session(started.session_id, 1200)

        assert result.discount_earned == 25
        assert result.next_tier_score is None

    @pytest.mark.asyncio
    async def test_records_score_and_customer_stats(self, issuer, sessions, test_db):
        started = await sessions.start_session(SHOP, REQUESTER)

        await issuer.finish_session(started.session_id, 520, {"level": 3})

        scores = await test_db.get_scores_by_session(started.session_id)
        assert len(scores) == 1
        assert scores[0].score == 520
        assert scores[0].game_data == {"level": 3}
        stats = await test_db.get_customer_stats(SHOP, "player@example.com")
        assert stats.total_sessions == 1
        assert stats.best_score == 520
        assert stats.total_discounts_earned == 15


@pytest.mark.unit
class TestAtMostOneReward:
    """Test that a session never yields a second code."""

    @pytest.mark.asyncio
    async def test_repeated_finish_returns_recorded_outcome(self, issuer, sessions, test_db, fake_commerce):
        started = await sessions.start_session(SHOP, REQUESTER)
        first = await issuer.finish_session(started.session_id, 600)

        second = await issuer.finish_session(started.session_id, 9000)

        assert second.discount_code == first.discount_code
        assert second.discount_earned == 15
        assert second.message == ALREADY_SCORED_MESSAGE
        assert second.expires_at == first.expires_at
        assert len(fake_commerce.requests) == 1
        assert await issued_codes(test_db) == 1
        assert (await sessions.get_session(started.session_id)).final_score == 600

    @pytest.mark.asyncio
    async def test_existing_ledger_entry_wins(self, issuer, sessions, meter, test_db, fake_commerce):
        """A finish racing one that already wrote the ledger gets that code back."""
        started = await sessions.start_session(SHOP, REQUESTER)
        await meter.increment_usage(SHOP, "discount_codes_generated")
        await test_db.create_discount_code(
            DiscountCode(
                shop_domain=SHOP,
                code="BARGAIN0000FFFF",
                session_id=started.session_id,
                value=15,
                expires_at=utcnow() + timedelta(hours=24),
            )
        )

        result = await issuer.finish_session(started.session_id, 600)

        assert result.discount_code == "BARGAIN0000FFFF"
        assert fake_commerce.requests == []
        assert await issued_codes(test_db) == 1


@pytest.mark.unit
class TestUnknownSessions:
    """Test finishing sessions that have no durable record."""

    @pytest.mark.asyncio
    async def test_ephemeral_session_recorded_retroactively(self, issuer, sessions):
        result = await issuer.finish_session(
            "temp-0f0f", 320, shop_domain=SHOP, requester=REQUESTER
        )

        assert result.discount_earned == 5
        session = await sessions.get_session("temp-0f0f")
        assert session.completed is True
        assert session.ephemeral is True
        assert session.ip_address == REQUESTER.ip_address

    @pytest.mark.asyncio
    async def test_shop_resolved_from_referrer(self, issuer, sessions):
        requester = REQUESTER.model_copy(update={"referrer": f"https://{SHOP}/products/lamp"})

        result = await issuer.finish_session("temp-abcd", 160, requester=requester)

        assert result.discount_earned == 5
        assert (await sessions.get_session("temp-abcd")).shop_domain == SHOP

    @pytest.mark.asyncio
    async def test_unknown_session_without_shop(self, issuer):
        with pytest.raises(SessionNotFoundError):
            await issuer.finish_session("sess-nope", 320)

    def test_shop_from_referrer(self):
        assert shop_from_referrer("https://Cool-Shop.myshopify.com/cart") == "cool-shop.myshopify.com"
        assert shop_from_referrer("https://example.com/") is None
        assert shop_from_referrer(None) is None

    def test_generated_code_shape(self):
        code = generate_discount_code()
        assert code.startswith("BARGAIN")
        suffix = code[len("BARGAIN"):]
        assert len(suffix) == 8
        assert suffix == suffix.upper()
        int(suffix, 16)


@pytest.mark.unit
class TestIssuanceFailure:
    """Test the pending ledger and the out-of-band retry job."""

    @pytest.fixture
    def failing_issuer(self, test_db, meter, sessions, failing_commerce):
        return RewardIssuer(test_db, meter, sessions, failing_commerce)

    @pytest.mark.asyncio
    async def test_failure_leaves_entry_pending(self, failing_issuer, sessions, test_db):
        started = await sessions.start_session(SHOP, REQUESTER)

        result = await failing_issuer.finish_session(started.session_id, 600)

        assert result.discount_code is not None
        assert result.discount_earned == 15
        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "pending"
        assert entry.issuance_attempts == 1
        assert "platform unavailable" in entry.last_error
        assert await issued_codes(test_db) == 1
        assert (await sessions.get_session(started.session_id)).completed is True

    @pytest.mark.asyncio
    async def test_retry_issues_pending_code(self, failing_issuer, sessions, test_db, fake_commerce):
        started = await sessions.start_session(SHOP, REQUESTER)
        result = await failing_issuer.finish_session(started.session_id, 600)

        failing_issuer.commerce = fake_commerce
        summary = await failing_issuer.retry_pending_issuances(max_attempts=5, min_age_seconds=0)

        assert summary == {"issued": 1, "pending": 0, "failed": 0}
        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "issued"
        assert entry.code == result.discount_code
        assert fake_commerce.requests[0][2].code == result.discount_code

    @pytest.mark.asyncio
    async def test_retry_gives_up_and_releases_quota(self, failing_issuer, sessions, test_db):
        started = await sessions.start_session(SHOP, REQUESTER)
        await failing_issuer.finish_session(started.session_id, 600)

        first = await failing_issuer.retry_pending_issuances(max_attempts=3, min_age_seconds=0)
        second = await failing_issuer.retry_pending_issuances(max_attempts=3, min_age_seconds=0)

        assert first == {"issued": 0, "pending": 1, "failed": 0}
        assert second == {"issued": 0, "pending": 0, "failed": 1}
        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "failed"
        assert entry.issuance_attempts == 3
        assert await issued_codes(test_db) == 0
        assert await test_db.get_pending_discount_codes() == []

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_price_rule_for_retry(self, test_db, meter, sessions, fake_commerce):
        """A rule created before the failure is reused instead of a second rule."""
        issuer = RewardIssuer(test_db, meter, sessions, RuleThenFailCommerce())
        started = await sessions.start_session(SHOP, REQUESTER)
        await issuer.finish_session(started.session_id, 600)

        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "pending"
        assert entry.price_rule_id == "pr-orphan"

        issuer.commerce = fake_commerce
        summary = await issuer.retry_pending_issuances(min_age_seconds=0)

        assert summary["issued"] == 1
        assert fake_commerce.requests[0][2].price_rule_id == "pr-orphan"


class SlowCommerce:
    """Accepts every code after a delay."""

    def __init__(self, delay):
        self.delay = delay
        self.requests = []

    async def create_discount_code(self, shop_domain, access_token, request):
        self.requests.append(request)
        await asyncio.sleep(self.delay)
        return IssuedDiscount(price_rule_id="pr-slow", discount_code_id="dc-slow")


class SettledThenRejectedCommerce:
    """The finish settles the entry while this retry's call is still out, then the platform rejects it."""

    def __init__(self, database):
        self.db = database

    async def create_discount_code(self, shop_domain, access_token, request):
        await self.db.mark_discount_issued(shop_domain, request.code, "pr-finish", "dc-finish")
        raise CommerceAPIError("code has already been taken", status_code=422)


class RuleThenFailCommerce:
    """Creates the price rule, then fails to attach the code."""

    async def create_discount_code(self, shop_domain, access_token, request):
        raise CommerceAPIError("discount_codes.json returned 500", status_code=500, price_rule_id="pr-orphan")


@pytest.mark.unit
class TestRetryConcurrency:
    """Test the retry job against finishes that are still running."""

    @pytest.mark.asyncio
    async def test_retry_skips_finish_in_flight(self, test_db, meter, sessions, failing_commerce):
        finisher = RewardIssuer(test_db, meter, sessions, SlowCommerce(0.3))
        retrier = RewardIssuer(test_db, meter, sessions, failing_commerce)
        started = await sessions.start_session(SHOP, REQUESTER)

        async def retry_soon():
            await asyncio.sleep(0.1)
            return await retrier.retry_pending_issuances(max_attempts=1)

        result, summary = await asyncio.gather(
            finisher.finish_session(started.session_id, 600), retry_soon()
        )

        assert summary == {"issued": 0, "pending": 0, "failed": 0}
        assert failing_commerce.requests == []
        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.code == result.discount_code
        assert entry.issuance_status == "issued"
        assert await issued_codes(test_db) == 1

    @pytest.mark.asyncio
    async def test_give_up_after_concurrent_issue_keeps_quota(self, test_db, meter, sessions, failing_commerce):
        started = await sessions.start_session(SHOP, REQUESTER)
        await RewardIssuer(test_db, meter, sessions, failing_commerce).finish_session(started.session_id, 600)
        retrier = RewardIssuer(test_db, meter, sessions, SettledThenRejectedCommerce(test_db))

        summary = await retrier.retry_pending_issuances(max_attempts=1, min_age_seconds=0)

        assert summary == {"issued": 0, "pending": 0, "failed": 0}
        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "issued"
        assert entry.price_rule_id == "pr-finish"
        assert await issued_codes(test_db) == 1

    @pytest.mark.asyncio
    async def test_settled_entry_ignores_late_updates(self, test_db, meter, sessions, failing_commerce):
        started = await sessions.start_session(SHOP, REQUESTER)
        result = await RewardIssuer(test_db, meter, sessions, failing_commerce).finish_session(
            started.session_id, 600
        )
        assert await test_db.mark_discount_issued(SHOP, result.discount_code, "pr-1", "dc-1") is True

        assert await test_db.record_issuance_failure(SHOP, result.discount_code, "late", give_up=True) is False
        assert await test_db.mark_discount_issued(SHOP, result.discount_code, "pr-2", "dc-2") is False

        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "issued"
        assert entry.price_rule_id == "pr-1"


async def raise_locked(*args, **kwargs):
    raise sqlite3.OperationalError("database is locked")


@pytest.mark.unit
class TestPersistenceUnavailable:
    """Test that storage failures after validation still give the player a result."""

    @pytest.mark.asyncio
    async def test_recording_failures_do_not_fail_finish(self, issuer, sessions, test_db, monkeypatch):
        started = await sessions.start_session(SHOP, REQUESTER)
        monkeypatch.setattr(test_db, "complete_session", raise_locked)
        monkeypatch.setattr(test_db, "record_score", raise_locked)
        monkeypatch.setattr(test_db, "update_customer_stats", raise_locked)

        result = await issuer.finish_session(started.session_id, 600)

        assert result.discount_earned == 15
        assert result.discount_code is not None
        entry = await test_db.get_discount_code_by_session(started.session_id)
        assert entry.issuance_status == "issued"
        assert (await sessions.get_session(started.session_id)).completed is False

    @pytest.mark.asyncio
    async def test_unreachable_ledger_logs_code(
        self, issuer, sessions, test_db, fake_commerce, monkeypatch, caplog
    ):
        started = await sessions.start_session(SHOP, REQUESTER)
        monkeypatch.setattr(test_db, "create_discount_code", raise_locked)

        with caplog.at_level(logging.ERROR, logger="arcadereward.engine.rewards"):
            result = await issuer.finish_session(started.session_id, 600)

        assert result.discount_earned == 15
        assert result.discount_code is not None
        assert len(fake_commerce.requests) == 1
        unledgered = [r for r in caplog.records if "manual reconciliation" in r.getMessage()]
        assert len(unledgered) == 1
        assert result.discount_code in unledgered[0].getMessage()
        assert "pr-1" in unledgered[0].getMessage()
