"""
Amora — alerts.py
─────────────────────────────────────────────────────────────────
Admin alert webhook (CallMeBot WhatsApp).

Best-effort only: a failing alert is logged and dropped, it never
reaches the caller whose message was already stored.

.env:
  CALLMEBOT_PHONE=+4912345678
  CALLMEBOT_API_KEY=123456
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from typing import Optional, Set

import httpx

from amora.core.config import cfg
from amora.core.errors import ExternalServiceError

logger = logging.getLogger("amora.alerts")

ALERT_PREFIX = "NEW MESSAGE FOR ADMIN --"


class AdminAlerts:

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout    = timeout
        self.transport  = transport
        self._pending: Set[asyncio.Task] = set()

    async def notify(self, text: str):
        """
        Send one alert. Raises ExternalServiceError on failure.
        Silently skipped when CallMeBot is not configured.
        """
        if not cfg.alerts_ready:
            logger.debug("CallMeBot not configured, alert skipped")
            return

        params = {
            "phone":  cfg.CALLMEBOT_PHONE,
            "text":   f"{ALERT_PREFIX}{text}",
            "apikey": cfg.CALLMEBOT_API_KEY,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(cfg.CALLMEBOT_URL, params=params)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"CallMeBot request failed: {e}")

        if resp.status_code != 200:
            raise ExternalServiceError(f"CallMeBot returned {resp.status_code}")
        logger.info("Admin alert sent")

    async def _notify_quietly(self, text: str):
        try:
            await self.notify(text)
        except Exception as e:
            logger.warning(f"Admin alert failed: {e}")

    def fire(self, text: str) -> asyncio.Task:
        """Fire-and-forget. The task reference is kept until it finishes."""
        task = asyncio.create_task(self._notify_quietly(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self):
        """Wait for in-flight alerts (shutdown / tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
