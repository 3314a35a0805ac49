"""Discount code creation on the commerce platform (Admin REST API).

A code is a price rule plus one discount code attached to it. Every failure
surfaces as CommerceAPIError; retrying is left to the caller. A failure after
the rule was created carries its id so the retry attaches the code to it.
"""

from typing import Any, Optional

import httpx

from ..config import config
from ..logging_utils import get_logger
from ..models import DiscountRequest, IssuedDiscount

logger = get_logger(__name__)


class CommerceAPIError(RuntimeError):
    """Discount creation was rejected or never reached the platform."""

    def __init__(
        self, message: str, status_code: Optional[int] = None, price_rule_id: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        # Set when the price rule exists but its discount code could not be attached.
        self.price_rule_id = price_rule_id


class CommerceClient:
    """Creates single-use discount codes for a shop."""

    def __init__(
        self,
        api_version: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_version: Admin API version. Defaults to config.commerce_api_version.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used to stub the platform in tests).
        """
        self.api_version = api_version or config.commerce_api_version
        self.timeout = timeout or config.commerce_timeout_seconds
        self.transport = transport

    def _base_url(self, shop_domain: str) -> str:
        return f"https://{shop_domain}/admin/api/{self.api_version}"

    async def create_discount_code(
        self,
        shop_domain: str,
        access_token: Optional[str],
        request: DiscountRequest,
    ) -> IssuedDiscount:
        """Create a price rule and its discount code.

        Args:
            shop_domain: Shop to create the code in.
            access_token: Shop's Admin API token.
            request: Code, value and expiry.

        Returns:
            External identifiers of the price rule and discount code.

        Raises:
            CommerceAPIError: On a missing token, transport error, timeout or non-2xx response.
        """
        if not access_token:
            raise CommerceAPIError(f"No access token for {shop_domain}")

        logger.info(f"Creating discount {request.code} ({request.value}% off) on {shop_domain}")

        async with httpx.AsyncClient(
            base_url=self._base_url(shop_domain),
            timeout=self.timeout,
            transport=self.transport,
            headers={"X-Shopify-Access-Token": access_token},
        ) as client:
            price_rule_id = request.price_rule_id
            if price_rule_id:
                logger.info(f"Reusing price rule {price_rule_id} for {request.code}")
            else:
                price_rule = await self._post(
                    client,
                    "/price_rules.json",
                    {
                        "price_rule": {
                            "title": f"Bargain Hunter - {request.code}",
                            "target_type": "line_item",
                            "target_selection": "all",
                            "allocation_method": "across",
                            "value_type": request.type,
                            "value": f"-{request.value}",
                            "customer_selection": "all",
                            "usage_limit": request.usage_limit,
                            "starts_at": request.starts_at.isoformat(),
                            "ends_at": request.expires_at.isoformat(),
                        }
                    },
                    "price_rule",
                )
                price_rule_id = str(price_rule["id"])

            try:
                discount_code = await self._post(
                    client,
                    f"/price_rules/{price_rule_id}/discount_codes.json",
                    {"discount_code": {"code": request.code}},
                    "discount_code",
                )
            except CommerceAPIError as e:
                e.price_rule_id = price_rule_id
                raise

        issued = IssuedDiscount(
            price_rule_id=price_rule_id,
            discount_code_id=str(discount_code["id"]),
        )
        logger.info(f"Discount {request.code} created: price rule {issued.price_rule_id}")
        return issued

    async def _post(
        self, client: httpx.AsyncClient, path: str, payload: dict, key: str
    ) -> dict[str, Any]:
        try:
            response = await client.post(path, json=payload)
            response.raise_for_status()
            body = response.json()[key]
            if "id" not in body:
                raise KeyError("id")
            return body
        except httpx.HTTPStatusError as e:
            raise CommerceAPIError(
                f"{path} returned {e.response.status_code}: {e.response.text[:200]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise CommerceAPIError(f"{path} failed: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise CommerceAPIError(f"{path} returned an unexpected body: {e}") from e
