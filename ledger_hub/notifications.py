from typing import Optional

import httpx

from ledger_hub.config import settings
from ledger_hub.logging_config import get_logger

logger = get_logger(__name__)


class NotificationDispatcher:
    """Fire-and-forget balance update delivery. Failures never reach the caller."""

    def __init__(self, url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url or (str(settings.notification_url) if settings.notification_url else None)
        self.client = client or httpx.AsyncClient(timeout=settings.notification_timeout_seconds)

    async def send(self, payload: dict) -> bool:
        if not self.url:
            logger.info(
                "No notification url configured; skipping balance update user=%s reference=%s",
                payload.get("userId"),
                payload.get("reference"),
            )
            return False
        try:
            resp = await self.client.post(self.url, json=payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Balance notification failed reference=%s error=%s", payload.get("reference"), exc)
            return False
        if resp.status_code >= 400:
            logger.warning(
                "Balance notification rejected reference=%s status=%s",
                payload.get("reference"),
                resp.status_code,
            )
            return False
        logger.info("Balance notification sent user=%s reference=%s", payload.get("userId"), payload.get("reference"))
        return True


notification_dispatcher = NotificationDispatcher()
