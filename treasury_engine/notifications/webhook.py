"""Operator webhook notifier (Slack/Discord-compatible JSON POST)."""
import asyncio
import logging
import ssl

import aiohttp
import certifi

from ..config import WebhookConfig

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """Send operator alerts and logs to a single webhook."""

    def __init__(self, config: WebhookConfig) -> None:
        self.url = config.url
        self.timeout = config.timeout

    async def _post(self, text: str, level: str) -> bool:
        if not self.url:
            logger.warning("Webhook URL not configured")
            return False

        payload = {"text": text, "content": text, "level": level}
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                async with session.post(self.url, json=payload) as response:
                    if 200 <= response.status < 300:
                        return True
                    logger.error("Failed to send webhook message: %s", response.status)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Webhook delivery failed: %s", e)
            return False

    async def send_alert(self, message: str, subject: str = "") -> bool:
        """Send an operator alert; the subject becomes the first line."""
        text = f"{subject}\n\n{message}" if subject else message
        if await self._post(text, "alert"):
            logger.info("Webhook alert sent")
            return True
        return False

    async def send_log(self, message: str, silent: bool = True) -> bool:
        if await self._post(message, "info" if silent else "notice"):
            logger.debug("Webhook log sent")
            return True
        return False
