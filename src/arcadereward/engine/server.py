"""Arcade reward engine HTTP service.

Main FastAPI application integrating:
- Play session admission and start
- Score submission and discount issuance
- Monthly usage read models
- Order webhook redemption reconciliation
"""

from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import config, validate_config_for_service
from ..database import Database, db
from ..logging_utils import RequestContext, bind_shop_domain, get_logger, setup_logging
from ..models import (
    DiscountLimitStatus,
    FinishSessionRequest,
    FinishSessionResponse,
    GameConfig,
    Requester,
    StartSessionRequest,
    StartSessionResponse,
)
from .commerce import CommerceClient
from .eligibility import EligibilityGate
from .rewards import InvalidFinishRequest, RewardIssuer, ScoreValidationError, SessionNotFoundError
from .sessions import SessionManager
from .usage import STORAGE_ERRORS, UsageMeter
from .webhooks import OrderWebhookHandler, RedemptionReconciler

# Validate configuration
validate_config_for_service("api")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

WEBHOOK_ERROR_STATUS = {
    "invalid_signature": 401,
    "invalid_payload": 400,
    "processing_failed": 500,
}


def client_ip(request: Request) -> str:
    """Requester address: first X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _json(model: BaseModel, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=model.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def create_app(
    database: Optional[Database] = None,
    commerce_client: Optional[CommerceClient] = None,
) -> FastAPI:
    """Build the service around a database and commerce client.

    Args:
        database: Repository to use. Defaults to the global database.
        commerce_client: Discount creation client. Defaults to the live Admin API client.
    """
    database = database or db
    usage_meter = UsageMeter(database)
    sessions = SessionManager(database, usage_meter)
    gate = EligibilityGate(database)
    issuer = RewardIssuer(database, usage_meter, sessions, commerce_client or CommerceClient())
    webhook_handler = OrderWebhookHandler(database, RedemptionReconciler(database))

    app = FastAPI(
        title="Arcade Reward Engine",
        description="Play sessions, score-based discount issuance and redemption tracking",
    )
    app.state.database = database
    app.state.issuer = issuer

    @app.on_event("startup")
    async def startup():
        """Initialize database on startup."""
        logger.info("Initializing arcade reward engine...")
        await database.initialize()
        logger.info("Arcade reward engine initialized")

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "arcade-reward-engine"}

    @app.post("/sessions/start", response_model=StartSessionResponse, response_model_exclude_none=True)
    async def start_session(
        body: StartSessionRequest,
        request: Request,
        x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
    ):
        """Admit a player and open a play session.

        Returns 403 with the denial reason when the player may not play.
        """
        with RequestContext(x_correlation_id, body.shop_domain):
            if not body.shop_domain:
                return _json(
                    StartSessionResponse(success=False, can_play=False, error="Shop domain is required"),
                    400,
                )

            customer = body.customer_data
            requester = Requester(
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent", "unknown"),
                source=body.source,
                referrer=body.referrer,
                customer_id=customer.id if customer else None,
                customer_email=customer.email if customer else None,
            )

            try:
                eligibility = await gate.can_start_session(body.shop_domain, requester.ip_address)
                if not eligibility.can_play:
                    return _json(
                        StartSessionResponse(
                            success=False,
                            can_play=False,
                            plays_remaining=0,
                            error="You cannot play right now",
                            reason=eligibility.reason,
                        ),
                        403,
                    )

                started = await sessions.start_session(body.shop_domain, requester)

                try:
                    game_config = await database.get_game_config(body.shop_domain)
                except STORAGE_ERRORS as e:
                    logger.error(f"Failed to load game config snapshot: {e}", exc_info=True)
                    game_config = None
                game_config = game_config or GameConfig(shop_domain=body.shop_domain)

                logger.info(f"Started session {started.session_id} (ephemeral={started.ephemeral})")
                return StartSessionResponse(
                    success=True,
                    session_id=started.session_id,
                    game_config=game_config.snapshot(),
                    can_play=True,
                    plays_remaining=max(0, eligibility.plays_remaining - 1),
                )

            except Exception as e:
                logger.error(f"Start session error: {e}", exc_info=True)
                raise HTTPException(status_code=500, detail="Failed to start session")

    @app.post("/sessions/finish", response_model=FinishSessionResponse, response_model_exclude_none=True)
    async def finish_session(
        body: FinishSessionRequest,
        request: Request,
        x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
    ):
        """Score a finished game and return the earned discount code."""
        with RequestContext(x_correlation_id, body.shop_domain):
            requester = Requester(
                ip_address=client_ip(request),
                user_agent=request.headers.get("user-agent", "unknown"),
                referrer=request.headers.get("referer"),
            )

            try:
                result = await issuer.finish_session(
                    body.session_id,
                    body.final_score,
                    telemetry=body.game_data,
                    player_email=body.player_email,
                    shop_domain=body.shop_domain,
                    requester=requester,
                )
            except ScoreValidationError as e:
                logger.warning(f"Rejected score for {body.session_id}: {e}")
                return _json(
                    FinishSessionResponse(
                        success=False, message="Invalid score detected", error="Score validation failed"
                    ),
                    400,
                )
            except InvalidFinishRequest as e:
                return _json(FinishSessionResponse(success=False, message=str(e), error="Invalid request"), 400)
            except SessionNotFoundError as e:
                logger.warning(str(e))
                return _json(
                    FinishSessionResponse(success=False, message="Session not found", error=str(e)),
                    404,
                )
            except Exception as e:
                logger.error(f"Finish session error: {e}", exc_info=True)
                raise HTTPException(status_code=500, detail="Failed to finish session")

            return FinishSessionResponse(success=True, **result.model_dump())

    @app.get("/usage/discount-limit", response_model=DiscountLimitStatus, response_model_exclude_none=True)
    async def discount_limit(shop: Optional[str] = Query(None)):
        """Current month's discount-code quota for a shop."""
        if not shop:
            raise HTTPException(status_code=400, detail="Missing shop parameter")
        bind_shop_domain(shop)

        try:
            return await usage_meter.get_discount_limit(shop)
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to check discount code limit: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to check discount code limit")

    @app.get("/usage/check-limits", response_model=DiscountLimitStatus, response_model_exclude_none=True)
    async def check_limits(shop: Optional[str] = Query(None), action: Optional[str] = Query(None)):
        """Current month's quota for any metered action."""
        if not shop:
            raise HTTPException(status_code=400, detail="Missing shop parameter")
        bind_shop_domain(shop)

        try:
            return await usage_meter.check_limit(shop, action or "")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to check usage limits: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Failed to check usage limits")

    @app.post("/webhooks/orders/create")
    async def order_created_webhook(
        request: Request,
        x_shopify_hmac_sha256: str = Header(None, alias="X-Shopify-Hmac-Sha256"),
        x_shopify_shop_domain: str = Header(None, alias="X-Shopify-Shop-Domain"),
        x_shopify_webhook_id: str = Header(None, alias="X-Shopify-Webhook-Id"),
        x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
    ):
        """Receive an order-creation webhook and reconcile redeemed codes."""
        with RequestContext(x_correlation_id, x_shopify_shop_domain):
            logger.info("Received order webhook")

            if not x_shopify_hmac_sha256:
                logger.error("Missing X-Shopify-Hmac-Sha256 header")
                raise HTTPException(status_code=401, detail="Missing X-Shopify-Hmac-Sha256 header")
            if not x_shopify_shop_domain:
                raise HTTPException(status_code=400, detail="Missing X-Shopify-Shop-Domain header")

            raw_payload = await request.body()

            try:
                result = await webhook_handler.process_webhook(
                    shop_domain=x_shopify_shop_domain,
                    raw_payload=raw_payload,
                    signature=x_shopify_hmac_sha256,
                    webhook_id=x_shopify_webhook_id,
                )
            except Exception as e:
                logger.error(f"Webhook processing error: {e}", exc_info=True)
                raise HTTPException(status_code=500, detail="Webhook processing failed")

            if result["status"] == "error":
                raise HTTPException(
                    status_code=WEBHOOK_ERROR_STATUS.get(result.get("reason"), 400),
                    detail=result.get("error"),
                )
            if result["status"] == "processing":
                # Non-2xx keeps the platform redelivering until the first attempt settles.
                return JSONResponse(status_code=409, content=result)
            return result

    return app


# Create FastAPI app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting arcade reward engine on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
