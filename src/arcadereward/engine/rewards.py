"""Reward issuance for finished games.

Finishing a game runs a short saga:

1. validate the score (nothing is written when it is out of range)
2. resolve the earned tier from the shop's configuration
3. take one unit of the monthly discount-code quota
4. write a ``pending`` ledger entry, unique per session
5. create the code on the commerce platform and mark the entry ``issued``
6. complete the session, record the score, update the customer aggregate

Steps 5 and 6 are best effort. A failed external creation leaves the entry
``pending`` with the error, the player still receives the code, and
``retry_pending_issuances`` re-attempts it later. After the final attempt the
entry is marked ``failed`` and its quota unit is released.
"""

import re
import secrets
from datetime import timedelta
from typing import Any, Awaitable, Optional

from ..config import config
from ..database import Database
from ..logging_utils import get_logger
from ..models import (
    CustomerData,
    DiscountCode,
    DiscountRequest,
    FinishResult,
    GameConfig,
    GameScore,
    GameSession,
    Requester,
    utcnow,
)
from .commerce import CommerceAPIError, CommerceClient
from .sessions import SessionManager, is_ephemeral
from .tiers import next_tier_threshold, resolve_tier, score_message
from .usage import STORAGE_ERRORS, UsageMeter, current_period

logger = get_logger(__name__)

ISSUANCE_METRIC = "discount_codes_generated"

# Attempts at drawing a code that is not already taken by the shop.
CODE_DRAW_ATTEMPTS = 5

NOT_CONFIGURED_MESSAGE = "Thanks for playing! Rewards are not configured for this store yet."
QUOTA_EXCEEDED_MESSAGE = (
    "Great score! This store has reached its discount code limit for the month, "
    "so no code could be issued."
)
ALREADY_SCORED_MESSAGE = "This game has already been scored."

_REFERRER_SHOP = re.compile(r"https?://([a-z0-9][a-z0-9-]*\.myshopify\.com)", re.IGNORECASE)


class InvalidFinishRequest(ValueError):
    """A finish request was rejected before any state changed."""


class ScoreValidationError(InvalidFinishRequest):
    """Score outside the accepted range."""


class SessionNotFoundError(LookupError):
    """Unknown session whose shop could not be determined."""


def shop_from_referrer(referrer: Optional[str]) -> Optional[str]:
    """Storefront domain embedded in a referrer URL, if any."""
    if not referrer:
        return None
    match = _REFERRER_SHOP.search(referrer)
    return match.group(1).lower() if match else None


def generate_discount_code(prefix: Optional[str] = None) -> str:
    """Prefix followed by 8 uppercase hex characters, e.g. BARGAIN1A2B3C4D."""
    return f"{prefix or config.discount_code_prefix}{secrets.token_hex(4).upper()}"


class RewardIssuer:
    """Turns a finished game into at most one discount code."""

    def __init__(
        self,
        database: Database,
        usage_meter: UsageMeter,
        sessions: SessionManager,
        commerce_client: CommerceClient,
        max_score: Optional[int] = None,
    ):
        self.db = database
        self.usage_meter = usage_meter
        self.sessions = sessions
        self.commerce = commerce_client
        self.max_score = config.max_score if max_score is None else max_score

    async def _best_effort(self, description: str, step: Awaitable[Any]) -> Any:
        """Run a side effect whose failure must not fail the finish."""
        try:
            return await step
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to {description}: {e}", exc_info=True)
            return None

    def validate_score(self, score: Any) -> int:
        """Whole-number score within 0..max_score, as an int."""
        if score is None or isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ScoreValidationError(f"Score {score!r} is not a number")
        if isinstance(score, float) and not score.is_integer():
            raise ScoreValidationError(f"Score {score} is not a whole number")
        if not 0 <= score <= self.max_score:
            raise ScoreValidationError(f"Score {score} outside 0..{self.max_score}")
        return int(score)

    async def _load_config(self, shop_domain: str) -> GameConfig:
        try:
            game_config = await self.db.get_game_config(shop_domain)
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to load game config for {shop_domain}, using defaults: {e}", exc_info=True)
            game_config = None
        return game_config or GameConfig(shop_domain=shop_domain)

    async def finish_session(
        self,
        session_id: str,
        score: Any,
        telemetry: Optional[dict] = None,
        player_email: Optional[str] = None,
        shop_domain: Optional[str] = None,
        requester: Optional[Requester] = None,
    ) -> FinishResult:
        """Score a finished game and issue its reward.

        Args:
            session_id: Id returned at start (durable or ephemeral).
            score: Final score reported by the game.
            telemetry: Game telemetry blob, stored with the score.
            player_email: Email entered by the player, if any.
            shop_domain: Shop to use when the session has no record.
            requester: Caller details, used for retroactive records.

        Returns:
            FinishResult with the earned discount and code.

        Raises:
            InvalidFinishRequest: Missing session id.
            ScoreValidationError: Score missing, fractional or out of range.
            SessionNotFoundError: Unknown session and no shop to attribute it to.
        """
        if not session_id:
            raise InvalidFinishRequest("Session ID is required")
        score = self.validate_score(score)

        requester = requester or Requester()
        session = None
        if not is_ephemeral(session_id):
            try:
                session = await self.sessions.get_session(session_id)
            except STORAGE_ERRORS as e:
                logger.error(f"Failed to load session {session_id}, treating as ephemeral: {e}", exc_info=True)

        if session and session.completed:
            logger.info(f"Session {session_id} already completed, returning recorded outcome")
            return await self._recorded_outcome(session)

        if session is None:
            shop = shop_domain or shop_from_referrer(requester.referrer)
            if not shop:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            logger.info(f"Finishing session {session_id} without a record for {shop}")
        else:
            shop = session.shop_domain

        customer = CustomerData(
            id=session.customer_id if session else requester.customer_id,
            email=(session.customer_email if session else requester.customer_email) or player_email,
        )

        game_config = await self._load_config(shop)
        tiers = game_config.discount_tiers

        if not tiers:
            logger.warning(f"No discount tiers configured for {shop}")
            result = FinishResult(discount_earned=0, message=NOT_CONFIGURED_MESSAGE)
        else:
            earned = resolve_tier(score, tiers)
            next_score = next_tier_threshold(score, tiers)
            result = FinishResult(
                discount_earned=earned,
                message=score_message(score, earned, tiers),
                next_tier_score=next_score,
            )
            if earned > 0:
                increment = await self.usage_meter.increment_usage(shop, ISSUANCE_METRIC)
                if increment.limit_reached:
                    logger.warning(f"Discount quota reached for {shop}, session {session_id} earns nothing")
                    result = FinishResult(
                        discount_earned=0,
                        message=QUOTA_EXCEEDED_MESSAGE,
                        next_tier_score=next_score,
                    )
                else:
                    result = await self._issue(shop, session_id, result, game_config, customer)

        await self._record(session_id, shop, session, score, result, customer, telemetry, requester)
        logger.info(
            f"Session {session_id} finished: score={score} discount={result.discount_earned}% "
            f"code={result.discount_code}"
        )
        return result

    async def _recorded_outcome(self, session: GameSession) -> FinishResult:
        expires_at = None
        if session.discount_code:
            entry = await self._best_effort(
                "load ledger entry",
                self.db.get_discount_code(session.shop_domain, session.discount_code),
            )
            expires_at = entry.expires_at if entry else None
        return FinishResult(
            discount_earned=session.discount_earned or 0,
            discount_code=session.discount_code,
            expires_at=expires_at,
            message=ALREADY_SCORED_MESSAGE,
        )

    async def _reserve_code(self, entry: DiscountCode) -> tuple[DiscountCode, str]:
        """Write a pending ledger entry under a freshly drawn code.

        Returns:
            (entry, outcome) where outcome is ``created``, ``existing`` (the
            session already owns an entry, which is returned) or ``unsaved``
            (the ledger is unreachable).
        """
        for _ in range(CODE_DRAW_ATTEMPTS):
            try:
                if await self.db.create_discount_code(entry):
                    return entry, "created"
                existing = await self.db.get_discount_code_by_session(entry.session_id)
            except STORAGE_ERRORS as e:
                logger.error(f"Discount ledger unavailable for {entry.code}: {e}", exc_info=True)
                return entry, "unsaved"

            if existing:
                return existing, "existing"
            logger.warning(f"Discount code {entry.code} already taken on {entry.shop_domain}, drawing again")
            entry = entry.model_copy(update={"code": generate_discount_code()})

        raise RuntimeError(f"Could not draw an unused discount code for {entry.shop_domain}")

    async def _issue(
        self,
        shop_domain: str,
        session_id: str,
        result: FinishResult,
        game_config: GameConfig,
        customer: CustomerData,
    ) -> FinishResult:
        now = utcnow()
        entry = DiscountCode(
            shop_domain=shop_domain,
            code=generate_discount_code(),
            session_id=session_id,
            value=result.discount_earned,
            type=config.discount_type,
            customer_id=customer.id,
            customer_email=customer.email,
            created_at=now,
            expires_at=now + timedelta(hours=game_config.discount_expiry_hours),
            issuance_status="pending",
        )

        reserved, outcome = await self._reserve_code(entry)
        if outcome == "existing":
            # A concurrent finish for this session already holds the code.
            logger.warning(f"Session {session_id} already has code {reserved.code}, releasing duplicate quota")
            await self._best_effort(
                "release duplicate quota unit",
                self.usage_meter.release_usage(shop_domain, ISSUANCE_METRIC),
            )
            return result.model_copy(
                update={
                    "discount_earned": reserved.value,
                    "discount_code": reserved.code,
                    "expires_at": reserved.expires_at,
                }
            )

        await self._create_external(reserved, persisted=outcome == "created")
        return result.model_copy(
            update={"discount_code": reserved.code, "expires_at": reserved.expires_at}
        )

    async def _create_external(self, entry: DiscountCode, persisted: bool) -> bool:
        shop = await self._best_effort("load shop", self.db.get_shop(entry.shop_domain))
        request = DiscountRequest(
            code=entry.code,
            value=entry.value,
            type=entry.type,
            expires_at=entry.expires_at,
        )

        try:
            issued = await self.commerce.create_discount_code(
                entry.shop_domain, shop.access_token if shop else None, request
            )
        except CommerceAPIError as e:
            if persisted:
                logger.error(f"External creation of {entry.code} failed, left pending: {e}")
                await self._best_effort(
                    "record issuance failure",
                    self.db.record_issuance_failure(
                        entry.shop_domain, entry.code, str(e), price_rule_id=e.price_rule_id
                    ),
                )
            else:
                self._log_unledgered(entry, f"external creation failed: {e}")
            return False

        if persisted:
            await self._best_effort(
                "mark discount issued",
                self.db.mark_discount_issued(
                    entry.shop_domain, entry.code, issued.price_rule_id, issued.discount_code_id
                ),
            )
        else:
            self._log_unledgered(
                entry, f"created as price rule {issued.price_rule_id} / code {issued.discount_code_id}"
            )
        return True

    def _log_unledgered(self, entry: DiscountCode, outcome: str) -> None:
        # No ledger row exists, so neither the retry job nor redemption will see this code.
        logger.error(
            f"Unledgered discount needs manual reconciliation: shop={entry.shop_domain} "
            f"code={entry.code} session={entry.session_id} value={entry.value} "
            f"expires_at={entry.expires_at.isoformat()} {outcome}"
        )

    async def _record(
        self,
        session_id: str,
        shop_domain: str,
        session: Optional[GameSession],
        score: int,
        result: FinishResult,
        customer: CustomerData,
        telemetry: Optional[dict],
        requester: Requester,
    ) -> None:
        if session is None:
            await self._best_effort(
                "record ephemeral session",
                self.sessions.record_ephemeral_completion(
                    session_id,
                    shop_domain,
                    score,
                    result.discount_earned,
                    result.discount_code,
                    requester=requester.model_copy(
                        update={"customer_id": customer.id, "customer_email": customer.email}
                    ),
                    game_data=telemetry,
                ),
            )
        else:
            await self._best_effort(
                "complete session",
                self.sessions.complete_session(
                    session_id, score, result.discount_earned, result.discount_code
                ),
            )

        await self._best_effort(
            "record score",
            self.db.record_score(
                GameScore(
                    shop_domain=shop_domain,
                    session_id=session_id,
                    score=score,
                    discount_earned=result.discount_earned,
                    discount_code=result.discount_code,
                    customer_id=customer.id,
                    customer_email=customer.email,
                    game_data=telemetry or {},
                )
            ),
        )

        identifier = customer.id or customer.email
        if identifier:
            await self._best_effort(
                "update customer stats",
                self.db.update_customer_stats(shop_domain, identifier, score, result.discount_earned),
            )

    async def retry_pending_issuances(
        self,
        max_attempts: Optional[int] = None,
        limit: int = 100,
        min_age_seconds: Optional[float] = None,
    ) -> dict[str, int]:
        """Re-attempt external creation for ledger entries still pending.

        Entries younger than ``min_age_seconds`` are skipped: their finish may
        still be waiting on the platform. The default covers both requests of a
        creation at the configured timeout. Entries that reach ``max_attempts``
        failed attempts, or expire first, are marked failed and their quota
        unit is released.

        Returns:
            Counts of entries issued, still pending and failed in this run.
        """
        max_attempts = max_attempts or config.issuance_max_attempts
        if min_age_seconds is None:
            min_age_seconds = 2 * config.commerce_timeout_seconds
        summary = {"issued": 0, "pending": 0, "failed": 0}

        created_before = utcnow() - timedelta(seconds=min_age_seconds)
        for entry in await self.db.get_pending_discount_codes(limit, created_before=created_before):
            if entry.expires_at <= utcnow():
                if await self._give_up(entry, "Expired before it could be issued"):
                    summary["failed"] += 1
                continue

            shop = await self.db.get_shop(entry.shop_domain)
            request = DiscountRequest(
                code=entry.code,
                value=entry.value,
                type=entry.type,
                expires_at=entry.expires_at,
                price_rule_id=entry.price_rule_id,
            )
            try:
                issued = await self.commerce.create_discount_code(
                    entry.shop_domain, shop.access_token if shop else None, request
                )
            except CommerceAPIError as e:
                if entry.issuance_attempts + 1 >= max_attempts:
                    if await self._give_up(entry, str(e), price_rule_id=e.price_rule_id):
                        summary["failed"] += 1
                elif await self.db.record_issuance_failure(
                    entry.shop_domain, entry.code, str(e), price_rule_id=e.price_rule_id
                ):
                    summary["pending"] += 1
                continue

            if await self.db.mark_discount_issued(
                entry.shop_domain, entry.code, issued.price_rule_id, issued.discount_code_id
            ):
                summary["issued"] += 1

        logger.info(
            f"Issuance retry: {summary['issued']} issued, {summary['pending']} pending, "
            f"{summary['failed']} failed"
        )
        return summary

    async def _give_up(
        self, entry: DiscountCode, error_message: str, price_rule_id: Optional[str] = None
    ) -> bool:
        """Mark a pending entry failed and release its quota unit.

        Returns:
            False if the entry had already left ``pending``; nothing is released then.
        """
        marked = await self.db.record_issuance_failure(
            entry.shop_domain, entry.code, error_message, give_up=True, price_rule_id=price_rule_id
        )
        if not marked:
            logger.info(f"Discount {entry.code} settled elsewhere, keeping its quota unit")
            return False

        await self.usage_meter.release_usage(
            entry.shop_domain,
            ISSUANCE_METRIC,
            period=current_period(entry.created_at),
        )
        logger.warning(f"Gave up issuing {entry.code} for {entry.shop_domain}: {error_message}")
        return True
