"""Order webhook handling and discount redemption reconciliation.

Implements signature verification, delivery deduplication, and marking
issued codes as redeemed when an order uses them.
"""

import base64
import hashlib
import hmac
from datetime import timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..config import config
from ..database import Database
from ..logging_utils import get_logger
from ..models import OrderWebhook, ReconcileResult, WebhookDelivery, utcnow

logger = get_logger(__name__)

ORDER_TOPIC = "orders/create"


def create_webhook_signature(payload: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of a raw payload, as the commerce platform sends it."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify HMAC-SHA256 signature for webhook authenticity.

    Args:
        payload: Raw webhook payload bytes.
        signature: Base64-encoded HMAC signature from header.
        secret: Shared secret for HMAC.

    Returns:
        True if signature is valid, False otherwise.
    """
    if not signature:
        return False
    expected_signature = create_webhook_signature(payload, secret)

    # Use constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected_signature.encode(), signature.encode())


class RedemptionReconciler:
    """Marks ledger entries redeemed by completed orders."""

    def __init__(self, database: Database, code_prefix: Optional[str] = None):
        self.db = database
        self.code_prefix = (code_prefix or config.discount_code_prefix).upper()

    def is_engine_code(self, code: str) -> bool:
        return code.upper().startswith(self.code_prefix)

    async def on_order_completed(self, shop_domain: str, order: OrderWebhook) -> ReconcileResult:
        """Redeem every engine code applied to ``order``.

        Unknown and foreign codes are ignored. Re-delivery of the same order
        changes nothing: a used code is never updated again.
        """
        result = ReconcileResult()
        order_id = str(order.id)

        for applied in order.discount_codes:
            code = applied.code.strip().upper()
            if not self.is_engine_code(code):
                result.ignored.append(code)
                continue

            entry = await self.db.get_discount_code(shop_domain, code)
            if entry is None:
                logger.info(f"Order {order_id} used unknown code {code}, ignoring")
                result.ignored.append(code)
                continue

            redeemed = await self.db.mark_discount_used(
                shop_domain,
                code,
                order_id,
                order_value=order.total_price,
                discount_amount=applied.amount,
                currency=order.currency,
            )
            if redeemed:
                logger.info(f"Code {code} redeemed by order {order_id}")
                result.redeemed.append(code)
            else:
                logger.info(f"Code {code} already redeemed (order {entry.order_id}), no change")
                result.already_used.append(code)

        return result


class OrderWebhookHandler:
    """Handles order-creation webhooks with reliability guarantees."""

    def __init__(
        self,
        database: Database,
        reconciler: RedemptionReconciler,
        secret: Optional[str] = None,
        processing_timeout: Optional[float] = None,
    ):
        self.db = database
        self.reconciler = reconciler
        self.secret = secret or config.webhook_secret
        self.processing_timeout = (
            config.webhook_processing_timeout_seconds if processing_timeout is None else processing_timeout
        )

    async def process_webhook(
        self,
        shop_domain: str,
        raw_payload: bytes,
        signature: Optional[str],
        webhook_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Process an order webhook.

        Implements:
        1. Signature verification (authenticity)
        2. Payload validation
        3. Delivery deduplication by webhook id
        4. Redemption reconciliation

        Returns:
            Dict with ``status`` (success, processing or error) and details.
            Errors carry a ``reason``: invalid_signature, invalid_payload or
            processing_failed.
        """
        # 1. Verify signature
        if not verify_webhook_signature(raw_payload, signature, self.secret):
            logger.error(f"Invalid order webhook signature from {shop_domain}")
            return {"status": "error", "reason": "invalid_signature", "error": "Invalid signature"}

        # 2. Parse payload
        try:
            order = OrderWebhook.model_validate_json(raw_payload)
        except ValidationError as e:
            logger.error(f"Invalid order webhook payload from {shop_domain}: {e}")
            return {"status": "error", "reason": "invalid_payload", "error": "Invalid webhook payload"}

        webhook_id = webhook_id or f"{ORDER_TOPIC}-{order.id}"
        logger.info(f"Processing order webhook {webhook_id} for order {order.id}")

        # 3. Idempotency check - have we seen this delivery before?
        existing = await self.db.get_webhook_delivery(webhook_id)
        if existing and existing.status == "completed":
            logger.info(f"Webhook {webhook_id} already processed (idempotency)")
            return {
                "status": "success",
                "message": "Webhook already processed (idempotent)",
                "webhook_id": webhook_id,
            }
        if existing and existing.status == "processing" and not self._is_stalled(existing):
            return {
                "status": "processing",
                "message": "Webhook is currently being processed",
                "webhook_id": webhook_id,
            }

        if existing:
            # Failed or stalled attempt; reconciliation is idempotent so run it again.
            logger.info(f"Reprocessing webhook {webhook_id} (was {existing.status})")
            await self.db.update_webhook_status(webhook_id, "processing")
        else:
            created = await self.db.create_webhook_delivery(
                WebhookDelivery(webhook_id=webhook_id, shop_domain=shop_domain, topic=ORDER_TOPIC)
            )
            if not created:
                logger.warning(f"Race condition detected for webhook {webhook_id}")
                return {
                    "status": "processing",
                    "message": "Webhook is being processed by another request",
                    "webhook_id": webhook_id,
                }

        # 4. Reconcile redemptions
        try:
            result = await self.reconciler.on_order_completed(shop_domain, order)
        except Exception as e:
            error_msg = f"Reconciliation error: {e}"
            logger.error(error_msg, exc_info=True)
            await self.db.update_webhook_status(webhook_id, "failed", error_msg)
            return {
                "status": "error",
                "reason": "processing_failed",
                "error": error_msg,
                "webhook_id": webhook_id,
            }

        await self.db.update_webhook_status(webhook_id, "completed")
        return {
            "status": "success",
            "message": "Order reconciled",
            "webhook_id": webhook_id,
            **result.model_dump(),
        }

    def _is_stalled(self, delivery: WebhookDelivery) -> bool:
        """A delivery left in processing past the timeout (its worker died)."""
        started = delivery.processed_at or delivery.received_at
        return utcnow() - started > timedelta(seconds=self.processing_timeout)
