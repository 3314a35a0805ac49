"""Shared data models for the arcade reward engine.

All Pydantic models used across the engine and the HTTP surface. API payloads
are camelCase on the wire and snake_case in Python.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MAX_SCORE = 10_000

UNLIMITED = -1

SessionSource = Literal["popup", "tab", "inline", "floating_button"]
PlanId = Literal["free", "starter", "pro", "enterprise"]
UsageMetric = Literal[
    "game_sessions",
    "discount_codes_generated",
    "analytics_requests",
    "webhook_calls",
    "ab_test_variants",
]
IssuanceStatus = Literal["pending", "issued", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Discount tiers
# ---------------------------------------------------------------------------


class OpenTier(CamelModel):
    """Historical tier shape: reached at ``min_score``, open-ended above."""

    kind: Literal["open"] = "open"
    min_score: int = Field(ge=0)
    discount: int = Field(ge=0, le=100, description="Percentage off")
    message: Optional[str] = None


class BoundedTier(CamelModel):
    """Tier shape with an explicit inclusive ``max_score``."""

    kind: Literal["bounded"] = "bounded"
    min_score: int = Field(ge=0)
    max_score: int = Field(ge=0)
    discount: int = Field(ge=0, le=100, description="Percentage off")
    message: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "BoundedTier":
        if self.max_score < self.min_score:
            raise ValueError(f"maxScore {self.max_score} is below minScore {self.min_score}")
        return self


DiscountTier = Union[OpenTier, BoundedTier]


def parse_tier(raw: Union[DiscountTier, dict]) -> DiscountTier:
    """Build the right tier variant from a stored or submitted tier.

    The variant is taken from ``kind`` when present, otherwise from whether a
    ``maxScore`` (or ``max_score``) is given.
    """
    if isinstance(raw, (OpenTier, BoundedTier)):
        return raw
    kind = raw.get("kind")
    if kind is None:
        bounded = raw.get("maxScore", raw.get("max_score")) is not None
        kind = "bounded" if bounded else "open"
    model = BoundedTier if kind == "bounded" else OpenTier
    return model.model_validate(raw)


class NormalizedTier(BaseModel):
    """Internal bounded form of a tier. ``max_score=None`` means no upper bound."""

    min_score: int
    max_score: Optional[int]
    discount: int
    message: Optional[str] = None

    def contains(self, score: int) -> bool:
        if score < self.min_score:
            return False
        return self.max_score is None or score <= self.max_score


DEFAULT_DISCOUNT_TIERS: list[dict] = [
    {"minScore": 0, "discount": 0, "message": "Keep hunting! 🔍"},
    {"minScore": 150, "discount": 5, "message": "Nice start! 🎯"},
    {"minScore": 300, "discount": 10, "message": "Getting warmer! 🔥"},
    {"minScore": 500, "discount": 15, "message": "Bargain expert! 💡"},
    {"minScore": 750, "discount": 20, "message": "Sale master! 👑"},
    {"minScore": 1000, "discount": 25, "message": "LEGENDARY HUNTER! 🏆"},
]


# ---------------------------------------------------------------------------
# Shop configuration and plans
# ---------------------------------------------------------------------------


class GameConfig(CamelModel):
    """Per-shop game configuration (read-only input to the engine)."""

    shop_domain: str
    is_enabled: bool = True
    max_plays_per_customer: int = Field(default=3, ge=0)
    max_plays_per_day: int = Field(default=100, ge=0)
    discount_tiers: list[DiscountTier] = Field(
        default_factory=lambda: [parse_tier(t) for t in DEFAULT_DISCOUNT_TIERS]
    )
    discount_expiry_hours: int = Field(default=24, gt=0)
    game_speed: float = Field(default=1.0)
    difficulty: Literal["easy", "medium", "hard"] = Field(default="medium")

    @field_validator("discount_tiers", mode="before")
    @classmethod
    def _parse_tiers(cls, value: Any) -> Any:
        if value is None:
            return []
        return [parse_tier(t) for t in value]

    def snapshot(self) -> dict:
        """Configuration handed to the game client at session start."""
        return {
            "discountTiers": [t.model_dump(by_alias=True, exclude={"kind"}, exclude_none=True)
                              for t in self.discount_tiers],
            "maxPlaysPerCustomer": self.max_plays_per_customer,
            "maxPlaysPerDay": self.max_plays_per_day,
            "discountExpiryHours": self.discount_expiry_hours,
            "gameSpeed": self.game_speed,
            "difficulty": self.difficulty,
        }


class Shop(BaseModel):
    """Installed merchant storefront."""

    shop_domain: str
    access_token: Optional[str] = Field(default=None, description="Commerce Admin API token")
    plan: PlanId = Field(default="free")
    is_active: bool = Field(default=True)
    installed_at: datetime = Field(default_factory=utcnow)


class PlanLimits(BaseModel):
    """Monthly limits per metered action. -1 means unlimited."""

    game_sessions: int = UNLIMITED
    discount_codes_generated: int = 100
    analytics_requests: int = UNLIMITED
    webhook_calls: int = UNLIMITED
    ab_test_variants: int = UNLIMITED


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(discount_codes_generated=100),
    "starter": PlanLimits(discount_codes_generated=1_000),
    "pro": PlanLimits(discount_codes_generated=10_000),
    "enterprise": PlanLimits(discount_codes_generated=100_000),
}

PLAN_PRICES: dict[str, int] = {"free": 0, "starter": 19, "pro": 39, "enterprise": 99}


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class GameSession(BaseModel):
    """One attempt at the embedded game."""

    session_id: str
    shop_domain: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    source: SessionSource = "popup"
    referrer: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    final_score: Optional[int] = None
    discount_earned: Optional[int] = None
    discount_code: Optional[str] = None
    completed: bool = False
    game_data: dict = Field(default_factory=dict)
    ephemeral: bool = Field(default=False, description="Recorded retroactively for a temp id")

    @model_validator(mode="after")
    def _check_completion(self) -> "GameSession":
        if self.completed:
            if self.final_score is None:
                raise ValueError("completed session must carry a final score")
            if not 0 <= self.final_score <= MAX_SCORE:
                raise ValueError(f"final score {self.final_score} outside 0..{MAX_SCORE}")
        return self


class UsageCounter(BaseModel):
    """One metered action of a shop's usage record for a period."""

    shop_domain: str
    period: str = Field(description="Calendar month, YYYY-MM (UTC)")
    metric: UsageMetric
    value: int = 0
    limit: int = UNLIMITED
    warning_80: bool = False
    warning_95: bool = False


class UsageRecord(BaseModel):
    """All counters of a shop for one period."""

    shop_domain: str
    period: str
    counters: dict[str, UsageCounter] = Field(default_factory=dict)

    def value(self, metric: str) -> int:
        counter = self.counters.get(metric)
        return counter.value if counter else 0

    def limit(self, metric: str) -> int:
        counter = self.counters.get(metric)
        return counter.limit if counter else UNLIMITED


class DiscountCode(BaseModel):
    """Ledger entry for an issued discount code."""

    shop_domain: str
    code: str
    session_id: str
    value: int
    type: Literal["percentage", "fixed_amount"] = "percentage"
    price_rule_id: Optional[str] = None
    discount_code_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    is_used: bool = False
    used_at: Optional[datetime] = None
    order_id: Optional[str] = None
    order_value: Optional[float] = None
    discount_amount: Optional[float] = None
    currency: Optional[str] = None
    issuance_status: IssuanceStatus = "pending"
    issuance_attempts: int = 0
    last_error: Optional[str] = None

    @model_validator(mode="after")
    def _check_redemption(self) -> "DiscountCode":
        if self.is_used and not self.order_id:
            raise ValueError("a used discount code must reference its order")
        return self


class GameScore(BaseModel):
    """Scoring ledger entry."""

    shop_domain: str
    session_id: str
    score: int
    discount_earned: int = 0
    discount_code: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    game_data: dict = Field(default_factory=dict)
    achieved_at: datetime = Field(default_factory=utcnow)


class CustomerStats(BaseModel):
    """Per-customer aggregate of play activity."""

    shop_domain: str
    identifier: str
    total_sessions: int = 0
    total_score: int = 0
    best_score: int = 0
    total_discounts_earned: int = 0
    first_played_at: datetime = Field(default_factory=utcnow)
    last_played_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    """Merchant-facing notification."""

    notification_id: str
    shop_domain: str
    type: Literal["usage_warning", "upgrade_suggestion"] = "usage_warning"
    title: str
    message: str
    priority: Literal["low", "medium", "high"] = "medium"
    is_read: bool = False
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class WebhookDelivery(BaseModel):
    """Delivery log entry for commerce platform webhooks."""

    webhook_id: str
    shop_domain: str
    topic: str
    status: Literal["processing", "completed", "failed"] = Field(default="processing")
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = Field(default=None)
    error_message: Optional[str] = Field(default=None)


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


class Requester(BaseModel):
    """Who is asking: network and client details of the caller."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"
    source: SessionSource = "popup"
    referrer: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None


class Eligibility(BaseModel):
    can_play: bool
    reason: Optional[Literal["shop_inactive", "ip_limit", "daily_limit"]] = None
    plays_remaining: int = 0


class StartedSession(BaseModel):
    session_id: str
    ephemeral: bool = False


class UsageIncrement(BaseModel):
    success: bool
    current_value: int
    limit_reached: bool = False
    warning_triggered: bool = False


class FinishResult(BaseModel):
    discount_earned: int
    discount_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    message: str
    next_tier_score: Optional[int] = None


class DiscountRequest(BaseModel):
    """Single-use code to create on the commerce platform."""

    code: str
    value: int
    type: Literal["percentage", "fixed_amount"] = "percentage"
    usage_limit: int = 1
    starts_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    price_rule_id: Optional[str] = Field(
        default=None, description="Rule left by an earlier partial attempt, reused instead of a new one"
    )


class IssuedDiscount(BaseModel):
    price_rule_id: str
    discount_code_id: str


class ReconcileResult(BaseModel):
    redeemed: list[str] = Field(default_factory=list)
    already_used: list[str] = Field(default_factory=list)
    ignored: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# HTTP payloads
# ---------------------------------------------------------------------------


class CustomerData(CamelModel):
    id: Optional[str] = None
    email: Optional[str] = None


class StartSessionRequest(CamelModel):
    shop_domain: Optional[str] = None
    customer_data: Optional[CustomerData] = None
    source: SessionSource = "popup"
    referrer: Optional[str] = None


class StartSessionResponse(CamelModel):
    success: bool
    session_id: str = ""
    game_config: Optional[dict] = None
    can_play: bool
    plays_remaining: int = 0
    error: Optional[str] = None
    reason: Optional[str] = None


class FinishSessionRequest(CamelModel):
    session_id: str = ""
    final_score: Any = Field(default=None, description="Validated by the reward issuer")
    game_data: dict = Field(default_factory=dict)
    player_email: Optional[str] = None
    shop_domain: Optional[str] = None


class FinishSessionResponse(CamelModel):
    success: bool
    discount_earned: int = 0
    discount_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    message: str
    next_tier_score: Optional[int] = None
    error: Optional[str] = None


class UsageSnapshot(CamelModel):
    current: int
    limit: Union[int, Literal["unlimited"]]
    percentage: int


class UsageWarnings(CamelModel):
    approaching80: bool = False
    approaching95: bool = False
    limit_reached: bool = False


class SuggestedPlan(CamelModel):
    plan: PlanId
    limit: int
    price: int


class DiscountLimitStatus(CamelModel):
    allowed: bool
    usage: UsageSnapshot
    plan: PlanId
    warnings: UsageWarnings = Field(default_factory=UsageWarnings)
    message: Optional[str] = None
    upgrade_url: Optional[str] = None
    suggested_plans: list[SuggestedPlan] = Field(default_factory=list)


class AppliedDiscountCode(BaseModel):
    code: str
    amount: Optional[float] = None
    type: Optional[str] = None


class OrderWebhook(BaseModel):
    """Order-creation payload sent by the commerce platform (snake_case on the wire)."""

    model_config = ConfigDict(extra="allow")

    id: Union[int, str]
    email: Optional[str] = None
    total_price: Optional[float] = None
    currency: Optional[str] = "USD"
    created_at: Optional[datetime] = None
    discount_codes: list[AppliedDiscountCode] = Field(default_factory=list)
