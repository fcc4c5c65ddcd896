"""
HTTP API: price checks, history, Telegram broadcasts, webhooks and billing.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from firestocks.billing.paypal import WebhookVerificationError, create_paypal_client
from firestocks.config import AppConfig, load_config_or_default
from firestocks.database.connection import Database
from firestocks.database.models import Prediction
from firestocks.main import FireStocksApp
from firestocks.notifiers.base import NotifierFactory
from firestocks.services.broadcast import BroadcastError, BroadcastService
from firestocks.services.followers import FollowerNotifier
from firestocks.services.history import RunHistory
from firestocks.services.quota import QuotaExceededError
from firestocks.services.subscription import SubscriptionService
from firestocks.webhooks.paypal import PayPalWebhookHandler
from firestocks.webhooks.telegram import SECRET_HEADER, TelegramWebhookHandler

logger = logging.getLogger(__name__)


# Pydantic models
class CheckPricesRequest(BaseModel):
    userId: Optional[str] = None


class CreatePostRequest(BaseModel):
    symbol: str = Field(..., min_length=1)
    companyName: str = ""
    exchange: Optional[str] = None
    country: Optional[str] = None
    initialPrice: Optional[float] = None
    targetPrice: Optional[float] = None
    stopLossPrice: Optional[float] = None
    strategy: str = ""
    content: str = ""


class SendBroadcastRequest(BaseModel):
    title: str = ""
    message: str = ""
    selectedPosts: list[str] = Field(default_factory=list)
    selectedRecipients: list[int] = Field(default_factory=list)
    recipientType: str = "followers"


class SendHistoricalRequest(BaseModel):
    entryIds: list[str] = Field(..., min_length=1)
    title: Optional[str] = None
    message: str = ""


class CancelSubscriptionRequest(BaseModel):
    reason: str = "User cancelled"


@dataclass
class Services:
    """Everything the routes need, built once per app."""

    pipeline: FireStocksApp
    history: RunHistory
    broadcasts: BroadcastService
    followers: FollowerNotifier
    telegram_webhook: TelegramWebhookHandler
    paypal_webhook: PayPalWebhookHandler
    subscriptions: SubscriptionService


def build_services(config: AppConfig, db: Database) -> Services:
    pipeline = FireStocksApp(db=db, config=config)
    paypal = create_paypal_client(config.paypal)
    subscriptions = SubscriptionService(db, paypal)

    return Services(
        pipeline=pipeline,
        history=pipeline.history,
        broadcasts=BroadcastService(
            db,
            send_delay_ms=config.telegram.send_delay_ms,
            api_base_url=config.telegram.api_base_url,
        ),
        followers=FollowerNotifier(
            db,
            NotifierFactory.create({"type": "whatsapp", **vars(config.whatsapp)}),
            language_code=config.whatsapp.language_code,
            max_workers=config.whatsapp.max_workers,
        ),
        telegram_webhook=TelegramWebhookHandler(
            db,
            NotifierFactory.create({"type": "telegram", **vars(config.telegram)}),
            webhook_secret=config.telegram.webhook_secret,
        ),
        paypal_webhook=PayPalWebhookHandler(db, paypal, subscriptions),
        subscriptions=subscriptions,
    )


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """The caller's user id; the upstream auth layer sets X-User-Id."""
    return x_user_id or ""


def unauthorized() -> JSONResponse:
    return JSONResponse({"success": False, "error": "Unauthorized"}, status_code=401)


def create_app(config: Optional[AppConfig] = None, db: Optional[Database] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Application configuration; read from FIRESTOCKS_CONFIG when omitted
        db: Database instance; opened from config when omitted
    """
    config = config or load_config_or_default(os.getenv("FIRESTOCKS_CONFIG", "config.yaml"))
    if db is None:
        db = Database(config.database.path)
        db.initialize()

    app = FastAPI(
        title="FireStocks API",
        description="Price checks and notifications for stock predictions",
        version="1.0.0",
    )
    app.state.config = config
    app.state.db = db
    app.state.services = build_services(config, db)

    def services() -> Services:
        return app.state.services

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Price checks

    @app.post("/api/posts/check-prices")
    def check_prices(
        body: Optional[CheckPricesRequest] = None,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        requested = body.userId if body else None
        if requested and user_id and requested != user_id:
            return JSONResponse(
                {"success": False, "message": "Cannot check another user's posts"},
                status_code=403,
            )
        user_id = requested or user_id
        if not user_id:
            return unauthorized()

        try:
            run = svc.pipeline.run_price_check(user_id)
        except QuotaExceededError as e:
            return JSONResponse(
                {
                    "success": False,
                    "message": str(e),
                    "remainingChecks": 0,
                    "usageCount": e.usage_count,
                },
                status_code=429,
            )
        except Exception as e:
            logger.exception(f"Price check endpoint failed: {e}")
            return JSONResponse(
                {"success": False, "message": "Failed to check post prices"},
                status_code=500,
            )

        if run.status_code == 500:
            return JSONResponse({"success": False, "message": run.message}, status_code=500)
        return JSONResponse(run.to_response(), status_code=run.status_code)

    @app.post("/api/posts", status_code=201)
    def create_post(
        body: CreatePostRequest,
        background_tasks: BackgroundTasks,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        if not user_id:
            return unauthorized()

        prediction = svc.pipeline.create_prediction(
            Prediction(
                user_id=user_id,
                symbol=body.symbol,
                company_name=body.companyName,
                exchange=body.exchange,
                country=body.country,
                initial_price=body.initialPrice,
                target_price=body.targetPrice,
                stop_loss_price=body.stopLossPrice,
                strategy=body.strategy,
                content=body.content,
            )
        )
        background_tasks.add_task(svc.followers.notify_safely, prediction)
        return {
            "success": True,
            "post": {
                "id": prediction.id,
                "symbol": prediction.symbol,
                "companyName": prediction.company_name,
                "initialPrice": prediction.initial_price,
                "currentPrice": prediction.current_price,
                "targetPrice": prediction.target_price,
                "stopLossPrice": prediction.stop_loss_price,
                "createdAt": prediction.created_at.isoformat(),
            },
        }

    # History

    @app.get("/api/price-check-history")
    def get_history(user_id: str = Depends(current_user_id), svc: Services = Depends(services)):
        if not user_id:
            return unauthorized()
        return {
            "success": True,
            "history": svc.history.list(user_id),
            "statistics": svc.history.statistics(user_id),
        }

    @app.get("/api/price-check-history/export")
    def export_history(user_id: str = Depends(current_user_id), svc: Services = Depends(services)):
        if not user_id:
            return unauthorized()
        return Response(
            content=svc.history.export_json(user_id),
            media_type="application/json",
            headers={
                "Content-Disposition": f'attachment; filename="{RunHistory.export_filename()}"'
            },
        )

    @app.delete("/api/price-check-history/{entry_id}")
    def delete_history_entry(
        entry_id: str,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        if not user_id:
            return unauthorized()
        if not svc.history.delete(user_id, entry_id):
            return JSONResponse({"success": False, "error": "Entry not found"}, status_code=404)
        return {"success": True}

    @app.delete("/api/price-check-history")
    def clear_history(user_id: str = Depends(current_user_id), svc: Services = Depends(services)):
        if not user_id:
            return unauthorized()
        return {"success": True, "deleted": svc.history.clear(user_id)}

    # Telegram

    @app.post("/api/telegram/send-broadcast")
    def send_broadcast(
        body: SendBroadcastRequest,
        background_tasks: BackgroundTasks,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        if not user_id:
            return unauthorized()
        try:
            broadcast = svc.broadcasts.create(
                sender_id=user_id,
                title=body.title,
                message=body.message,
                selected_posts=body.selectedPosts,
                selected_recipients=body.selectedRecipients,
                recipient_type=body.recipientType,
            )
        except BroadcastError as e:
            return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)

        background_tasks.add_task(svc.broadcasts.process, broadcast.id)
        return {
            "success": True,
            "message": "Broadcast started successfully",
            "broadcastId": broadcast.id,
        }

    @app.post("/api/telegram/send-historical")
    def send_historical(
        body: SendHistoricalRequest,
        background_tasks: BackgroundTasks,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        if not user_id:
            return unauthorized()

        entries = [svc.history.get(user_id, entry_id) for entry_id in body.entryIds]
        missing = [eid for eid, entry in zip(body.entryIds, entries) if entry is None]
        if missing:
            return JSONResponse(
                {"success": False, "error": f"History entries not found: {', '.join(missing)}"},
                status_code=404,
            )

        try:
            broadcast = svc.broadcasts.create_from_history(
                user_id, entries, title=body.title, message=body.message
            )
        except BroadcastError as e:
            return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)

        background_tasks.add_task(svc.broadcasts.process, broadcast.id)
        return {"success": True, "broadcastId": broadcast.id}

    @app.get("/api/telegram/broadcasts/{broadcast_id}")
    def get_broadcast(
        broadcast_id: int,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        if not user_id:
            return unauthorized()
        status = svc.broadcasts.get_status(broadcast_id, user_id)
        if status is None:
            return JSONResponse({"success": False, "error": "Broadcast not found"}, status_code=404)
        return {"success": True, "broadcast": status}

    @app.post("/api/telegram/webhook")
    async def telegram_webhook(request: Request, svc: Services = Depends(services)):
        if not svc.telegram_webhook.verify_secret(request.headers.get(SECRET_HEADER)):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        try:
            update = await request.json()
            # Replies go out over HTTP; keep them off the event loop
            await run_in_threadpool(svc.telegram_webhook.handle_update, update)
        except Exception as e:
            logger.error(f"Webhook error: {e}")
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return {"ok": True}

    # Billing

    @app.post("/api/webhooks/paypal")
    async def paypal_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        svc: Services = Depends(services),
    ):
        headers = dict(request.headers)
        missing = svc.paypal_webhook.missing_headers(headers)
        if missing:
            return JSONResponse(
                {"error": "Missing PayPal headers", "missing": missing}, status_code=400
            )

        try:
            event = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            await run_in_threadpool(svc.paypal_webhook.verify, headers, event)
        except WebhookVerificationError as e:
            logger.warning(f"Rejected PayPal webhook: {e}")
            return JSONResponse({"error": str(e)}, status_code=400)

        background_tasks.add_task(svc.paypal_webhook.dispatch, event)
        return PlainTextResponse("OK")

    @app.post("/api/subscription/cancel")
    def cancel_subscription(
        body: Optional[CancelSubscriptionRequest] = None,
        user_id: str = Depends(current_user_id),
        svc: Services = Depends(services),
    ):
        if not user_id:
            return unauthorized()
        result = svc.subscriptions.cancel(
            user_id=user_id,
            reason=body.reason if body else "User cancelled",
            source="user",
        )
        return JSONResponse(result, status_code=200 if result["success"] else 500)

    return app


def main():
    """Serve the API with uvicorn."""
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="FireStocks API server")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Port")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    args = parser.parse_args()

    config = load_config_or_default(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(
        logging, config.advanced.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(create_app(config), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
