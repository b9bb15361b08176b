from __future__ import annotations

from typing import Optional

import httpx

from greenagent.logging import get_logger
from greenagent.service.errors import CollaboratorError
from greenagent.service.ports import Notifier
from greenagent.storage.models import Platform

logger = get_logger(__name__)


class WebhookNotifier:
    """Delivers outbound chat messages by POSTing them to the transport gateway."""

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0)
            )
        return self._client

    async def send(
        self,
        platform: Platform,
        platform_id: str,
        text: str,
        *,
        parse_mode: Optional[str] = None,
    ) -> None:
        client = await self._get_client()
        try:
            response = await client.post(
                self.webhook_url,
                json={
                    "platform": Platform(platform).value,
                    "platform_id": platform_id,
                    "text": text,
                    "parse_mode": parse_mode,
                },
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise CollaboratorError("Notification timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise CollaboratorError(
                f"Notification failed: {exc.response.status_code}", retryable=False
            ) from exc
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"Notification gateway unreachable: {exc}") from exc

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class LoggingNotifier:
    """Fallback when no gateway is configured: messages only reach the logs."""

    async def send(
        self,
        platform: Platform,
        platform_id: str,
        text: str,
        *,
        parse_mode: Optional[str] = None,
    ) -> None:
        logger.info(
            "notification_logged",
            platform=Platform(platform).value,
            platform_id=platform_id,
            text_length=len(text),
        )


async def notify_quietly(
    notifier: Optional[Notifier],
    platform: Platform,
    platform_id: str,
    text: str,
    *,
    parse_mode: Optional[str] = "markdown",
) -> bool:
    """Best-effort delivery; failures are logged and never propagate."""
    if notifier is None:
        return False
    try:
        await notifier.send(platform, platform_id, text, parse_mode=parse_mode)
    except Exception as exc:
        logger.warning(
            "notification_failed",
            platform=Platform(platform).value,
            platform_id=platform_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    return True
