"""Monthly usage metering against plan limits.

Counters live in one row per shop, month and metric. Increments are a single
conditional UPDATE so concurrent finishes can never push a counter past its
limit. The 80% and 95% warnings each fire once per period.
"""

import sqlite3
import uuid
from datetime import datetime
from typing import Optional

from ..database import Database
from ..logging_utils import get_logger
from ..models import (
    PLAN_LIMITS,
    PLAN_PRICES,
    UNLIMITED,
    DiscountLimitStatus,
    Notification,
    SuggestedPlan,
    UsageCounter,
    UsageIncrement,
    UsageSnapshot,
    UsageWarnings,
    utcnow,
)

logger = get_logger(__name__)

WARNING_THRESHOLDS = (80, 95)

# Metrics that gate a paid external action. A storage outage denies these.
ISSUANCE_METRICS = frozenset({"discount_codes_generated"})

ACTION_METRICS = {
    "gameSession": "game_sessions",
    "discountCode": "discount_codes_generated",
    "analytics": "analytics_requests",
    "webhook": "webhook_calls",
    "abTest": "ab_test_variants",
}

STORAGE_ERRORS = (sqlite3.Error, OSError)


def current_period(now: Optional[datetime] = None) -> str:
    """Calendar month (UTC) a usage counter belongs to, as YYYY-MM."""
    return (now or utcnow()).strftime("%Y-%m")


def usage_percentage(current: int, limit: int) -> float:
    """Share of the limit used, capped at 100 and not rounded."""
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return min(current * 100 / limit, 100.0)


class UsageMeter:
    """Per-shop, per-month counters with threshold detection."""

    def __init__(self, database: Database):
        self.db = database

    async def _plan_for(self, shop_domain: str) -> str:
        shop = await self.db.get_shop(shop_domain)
        return shop.plan if shop else "free"

    async def _counter(self, shop_domain: str, period: str, metric: str) -> UsageCounter:
        """Load a counter, creating the period from the shop's plan on first use."""
        counter = await self.db.get_usage_counter(shop_domain, period, metric)
        if counter is None:
            plan = await self._plan_for(shop_domain)
            logger.info(f"Initializing usage period {period} for {shop_domain} ({plan} plan)")
            await self.db.ensure_usage_period(shop_domain, period, PLAN_LIMITS[plan])
            counter = await self.db.get_usage_counter(shop_domain, period, metric)
        if counter is None:
            raise LookupError(f"Unknown usage metric: {metric}")
        return counter

    async def increment_usage(self, shop_domain: str, metric: str, delta: int = 1) -> UsageIncrement:
        """Count ``delta`` uses of a metered action.

        Args:
            shop_domain: Shop the action belongs to.
            metric: Usage metric name.
            delta: Units to add.

        Returns:
            UsageIncrement. When ``limit_reached`` is set the counter was not
            changed and the caller must deny the action.
        """
        period = current_period()
        try:
            await self._counter(shop_domain, period, metric)
            updated = await self.db.increment_usage_counter(shop_domain, period, metric, delta)
            if updated is None:
                current = await self.db.get_usage_counter(shop_domain, period, metric)
                return UsageIncrement(
                    success=False,
                    current_value=current.value if current else 0,
                    limit_reached=True,
                )

            warning = await self._check_warnings(updated)
            return UsageIncrement(
                success=True,
                current_value=updated.value,
                warning_triggered=warning,
            )

        except (*STORAGE_ERRORS, LookupError) as e:
            if metric in ISSUANCE_METRICS:
                logger.error(
                    f"Usage store unavailable for {shop_domain}/{metric}, denying: {e}",
                    exc_info=True,
                )
                return UsageIncrement(success=False, current_value=0, limit_reached=True)

            logger.warning(f"Usage store unavailable for {shop_domain}/{metric}, allowing: {e}")
            return UsageIncrement(success=False, current_value=0)

    async def _check_warnings(self, counter: UsageCounter) -> bool:
        if counter.limit == UNLIMITED:
            return False

        triggered = False
        for threshold in WARNING_THRESHOLDS:
            flipped = await self.db.flag_usage_warning(
                counter.shop_domain, counter.period, counter.metric, threshold
            )
            if flipped:
                triggered = True
                logger.warning(
                    f"{counter.shop_domain} crossed {threshold}% of {counter.metric}: "
                    f"{counter.value}/{counter.limit}"
                )
                await self._notify_usage_warning(counter, threshold)
        return triggered

    async def _notify_usage_warning(self, counter: UsageCounter, threshold: int) -> None:
        notification = Notification(
            notification_id=f"ntf-{uuid.uuid4().hex[:12]}",
            shop_domain=counter.shop_domain,
            type="usage_warning",
            title=f"{threshold}% Usage Warning",
            message=(
                f"You've used {counter.value} of {counter.limit} {counter.metric} ({threshold}%). "
                "Consider upgrading to avoid service interruption."
            ),
            priority="high" if threshold >= 95 else "medium",
            metadata={
                "usageType": counter.metric,
                "currentUsage": counter.value,
                "limit": counter.limit,
                "period": counter.period,
            },
        )
        try:
            await self.db.create_notification(notification)
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to record usage warning for {counter.shop_domain}: {e}", exc_info=True)

    async def release_usage(
        self,
        shop_domain: str,
        metric: str,
        delta: int = 1,
        period: Optional[str] = None,
    ) -> None:
        """Give back units consumed by an action that was later abandoned."""
        await self.db.release_usage_counter(shop_domain, period or current_period(), metric, delta)

    async def _status(self, shop_domain: str, metric: str, label: str) -> DiscountLimitStatus:
        period = current_period()
        counter = await self._counter(shop_domain, period, metric)
        plan = await self._plan_for(shop_domain)

        current, limit = counter.value, counter.limit
        allowed = limit == UNLIMITED or current < limit
        exact = usage_percentage(current, limit)
        percentage = round(exact)

        status = DiscountLimitStatus(
            allowed=allowed,
            usage=UsageSnapshot(
                current=current,
                limit="unlimited" if limit == UNLIMITED else limit,
                percentage=percentage,
            ),
            plan=plan,
            warnings=UsageWarnings(
                approaching80=80 <= exact < 95,
                approaching95=exact >= 95,
                limit_reached=not allowed,
            ),
        )

        if not allowed:
            status.message = (
                f"You have reached your {label} limit for this month ({current}/{limit}). "
                "Upgrade your plan for more."
            )
            status.upgrade_url = f"/dashboard/billing?shop={shop_domain}"
            status.suggested_plans = suggested_plans(metric, limit)
        elif exact >= 95:
            status.message = (
                f"You are approaching your {label} limit ({percentage}%). "
                "Consider upgrading to avoid interruption."
            )
            status.upgrade_url = f"/dashboard/billing?shop={shop_domain}"
            status.suggested_plans = suggested_plans(metric, limit)
        elif exact >= 80:
            status.message = f"You have used {percentage}% of your {label} limit this month."
        return status

    async def get_discount_limit(self, shop_domain: str) -> DiscountLimitStatus:
        """Read model of the shop's discount-code quota for the current month."""
        return await self._status(shop_domain, "discount_codes_generated", "discount code")

    async def check_limit(self, shop_domain: str, action: str) -> DiscountLimitStatus:
        """Read model of any metered action's quota.

        Raises:
            ValueError: If ``action`` is not a metered action.
        """
        metric = ACTION_METRICS.get(action)
        if metric is None:
            raise ValueError(f"Invalid action {action!r}, expected one of {sorted(ACTION_METRICS)}")
        return await self._status(shop_domain, metric, action)


def suggested_plans(metric: str, current_limit: int) -> list[SuggestedPlan]:
    """Plans offering a higher finite limit for ``metric`` than the current one."""
    if current_limit == UNLIMITED:
        return []
    suggestions = []
    for plan, limits in PLAN_LIMITS.items():
        limit = getattr(limits, metric)
        if limit != UNLIMITED and limit > current_limit:
            suggestions.append(SuggestedPlan(plan=plan, limit=limit, price=PLAN_PRICES[plan]))
    return suggestions[:2]
