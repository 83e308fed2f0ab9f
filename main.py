import hmac
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import psutil
from fastapi import Depends, FastAPI, Header, HTTPException, Request

from bot import LicenseBot
from config import settings as default_settings
from errors import BotError
from license_client import verify_webhook_signature
from models import (
    HealthCheckResponse,
    InteractionRequest,
    LicenseStatus,
    RenderableResponse,
    StatsResponse,
    WebhookAck,
)

logger = logging.getLogger(__name__)

# Licensing events that change a cached license's status
LICENSE_EVENT_STATUSES = {
    "license.activated": LicenseStatus.ACTIVE,
    "license.renewed": LicenseStatus.ACTIVE,
    "license.expired": LicenseStatus.EXPIRED,
    "license.revoked": LicenseStatus.REVOKED,
}

def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

def get_bot(request: Request) -> LicenseBot:
    return request.app.state.bot

def create_app(bot: Optional[LicenseBot] = None) -> FastAPI:
    bot = bot or LicenseBot()
    settings = bot.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bot.start()
        try:
            yield
        finally:
            await bot.shutdown()

    app = FastAPI(
        title="LicenseChain Discord Bot",
        description="Slash-command license management backed by the LicenseChain API",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.bot = bot

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(bot: LicenseBot = Depends(get_bot)):
        """
        Health check endpoint for container orchestration.
        """
        return {
            "status": "healthy",
            "bot": "online" if bot.connected else "offline",
            "uptime": bot.uptime,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": settings.APP_VERSION,
        }

    @app.get("/stats", response_model=StatsResponse)
    async def get_stats(bot: LicenseBot = Depends(get_bot)):
        try:
            database = await bot.store.get_bot_stats()
        except BotError as e:
            logger.warning("Local statistics unavailable: %s", e.message)
            database = None

        return {
            "commands": len(bot.commands),
            "database": database,
            "uptime": bot.uptime,
            "memoryRssMb": round(psutil.Process().memory_info().rss / (1024 ** 2), 2),
            "version": settings.APP_VERSION,
        }

    @app.post("/interactions", response_model=RenderableResponse)
    async def handle_interaction(
        request: InteractionRequest,
        authorization: str = Header(default=""),
        bot: LicenseBot = Depends(get_bot),
    ):
        """
        Dispatch one slash command forwarded by the gateway connection.

        The relay authenticates with the bot token (`Authorization: Bot <token>`).
        """
        expected = f"Bot {settings.DISCORD_TOKEN}"
        if not settings.DISCORD_TOKEN or not hmac.compare_digest(authorization.encode(), expected.encode()):
            raise HTTPException(status_code=401, detail="Invalid bot credential")

        return await bot.handle(request.to_invocation())

    @app.post("/webhooks/licensing", response_model=WebhookAck)
    async def licensing_webhook(
        request: Request,
        x_signature: str = Header(default=""),
        bot: LicenseBot = Depends(get_bot),
    ):
        """
        Receive licensing events signed with `X-Signature: sha256=<hex>`.
        """
        if not settings.WEBHOOK_SECRET:
            raise HTTPException(status_code=503, detail="Webhook secret not configured")

        payload = await request.body()
        if not verify_webhook_signature(payload, x_signature, settings.WEBHOOK_SECRET):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Webhook payload must be an object")

        event_type = event.get("type")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        license_key = data.get("key") or data.get("licenseKey")
        status = LICENSE_EVENT_STATUSES.get(event_type)
        logger.info("Received webhook %s", event_type)

        if status and license_key:
            try:
                await bot.store.update_license_status(str(license_key), status)
            except BotError as e:
                logger.warning("Could not apply webhook %s to cache: %s", event_type, e.message)

        return {"received": True, "event": event_type}

    return app

def run():
    configure_logging(default_settings.LOG_LEVEL)

    if not default_settings.DISCORD_TOKEN:
        logger.error("DISCORD_TOKEN is not set! The bot cannot start without a valid Discord token.")
        sys.exit(1)

    if not default_settings.LICENSE_API_KEY:
        logger.warning("LICENSE_API_KEY is not set. Some features may not work properly.")

    import uvicorn
    uvicorn.run(create_app(), host=default_settings.HOST, port=default_settings.PORT)

if __name__ == "__main__":
    run()
