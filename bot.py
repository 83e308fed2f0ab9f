import logging
import time
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from commands import build_command_table
from config import settings as default_settings
from dispatcher import Dispatcher
from errors import UpstreamError
from license_client import LicenseClient, retry_with_backoff
from models import CommandInvocation, RenderableResponse
from permissions import PermissionResolver
from store import LocalStore

logger = logging.getLogger(__name__)

class LicenseBot:
    """
    Wires the API client, local store and dispatcher together and owns their
    lifecycle, along with the scheduled upstream health check.
    """

    def __init__(self, settings=None, api: Optional[LicenseClient] = None, store: Optional[LocalStore] = None):
        self.settings = settings or default_settings
        self.api = api or LicenseClient(settings=self.settings)
        self.store = store or LocalStore.from_url(self.settings.DATABASE_URL)
        self.commands = build_command_table(self.settings)
        self.dispatcher = Dispatcher(
            self.commands,
            self.api,
            self.store,
            PermissionResolver.from_settings(self.settings),
            self.settings,
        )
        self.scheduler = AsyncIOScheduler()
        self.connected = False
        self.started_at = time.monotonic()
        self.last_upstream_health: Optional[Dict[str, Any]] = None

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    async def handle(self, invocation: CommandInvocation) -> RenderableResponse:
        return await self.dispatcher.dispatch(invocation)

    async def check_upstream_health(self):
        """
        Poll the licensing API health endpoint.
        """
        try:
            health = await retry_with_backoff(self.api.health_check, max_attempts=3, initial_delay=2.0)
        except UpstreamError as e:
            logger.error("Licensing API health check failed: %s", e.message)
            self.last_upstream_health = {"status": "unreachable"}
            return

        self.last_upstream_health = health
        logger.info("Licensing API health: %s", health.get("status"))

    def start(self):
        """
        Start scheduled jobs and mark the bot as connected.
        """
        if not self.scheduler.running:
            self.scheduler.add_job(
                self.check_upstream_health,
                "interval",
                minutes=self.settings.HEALTH_CHECK_INTERVAL_MINUTES,
                id="upstream_health",
                replace_existing=True,
            )
            self.scheduler.start()

        self.connected = True
        logger.info("License bot is ready with %d commands", len(self.commands))

    async def shutdown(self):
        logger.info("Shutting down bot...")

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        await self.store.close()
        await self.api.close()
        self.connected = False
