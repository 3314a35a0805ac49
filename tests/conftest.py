import os

import pytest

# Set test environment variables.
# This must run before arcadereward.config is imported by any test
os.environ.setdefault("WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("DATABASE_PATH", "./test_arcade_rewards.db")
os.environ.setdefault("LOG_FORMAT", "text")

from arcadereward.engine.commerce import CommerceAPIError  # noqa: E402
from arcadereward.models import IssuedDiscount  # noqa: E402


class FakeCommerceClient:
    """Stands in for the commerce platform; records every creation request."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requests = []

    async def create_discount_code(self, shop_domain, access_token, request):
        self.requests.append((shop_domain, access_token, request))
        if self.fail:
            raise CommerceAPIError("platform unavailable", status_code=503)
        n = len(self.requests)
        return IssuedDiscount(price_rule_id=f"pr-{n}", discount_code_id=f"dc-{n}")


@pytest.fixture
def fake_commerce():
    return FakeCommerceClient()


@pytest.fixture
def failing_commerce():
    return FakeCommerceClient(fail=True)
