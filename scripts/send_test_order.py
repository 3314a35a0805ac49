"""Send a signed order webhook to a running reward engine.

Simulates the commerce platform reporting an order that used a discount code.
"""

import argparse
import asyncio
import json
import uuid

import httpx

from arcadereward.config import config
from arcadereward.engine.webhooks import create_webhook_signature


async def send_order(base_url: str, shop_domain: str, code: str, total: float, amount: float):
    """Post one order-creation webhook and print the engine's response."""
    order = {
        "id": int(uuid.uuid4().int % 10**12),
        "email": "shopper@example.com",
        "total_price": f"{total:.2f}",
        "currency": "USD",
        "discount_codes": [{"code": code, "amount": f"{amount:.2f}", "type": "percentage"}],
    }
    payload = json.dumps(order).encode()

    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": create_webhook_signature(payload, config.webhook_secret),
        "X-Shopify-Shop-Domain": shop_domain,
        "X-Shopify-Webhook-Id": f"wh-{uuid.uuid4().hex[:12]}",
    }

    print(f"📡 Sending order {order['id']} with code {code} to {base_url}...\n")
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        response = await client.post("/webhooks/orders/create", content=payload, headers=headers)

    print(f"Status: {response.status_code}")
    print(f"Response: {response.text}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("code", help="Discount code applied to the order")
    parser.add_argument("--url", default=f"http://localhost:{config.port}")
    parser.add_argument("--shop", default="demo-store.myshopify.com")
    parser.add_argument("--total", type=float, default=50.0)
    parser.add_argument("--amount", type=float, default=5.0)
    args = parser.parse_args()
    asyncio.run(send_order(args.url, args.shop, args.code, args.total, args.amount))
