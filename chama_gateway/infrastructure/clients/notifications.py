"""Notification webhook client with exponential backoff retry logic"""

import httpx
import asyncio
import logging
from typing import Dict, Any
from chama_gateway.config import settings
from chama_gateway.infrastructure.observability.metrics import notification_failure_counter


class NotificationClient:
    """Client that hands loan events to the notification service (email/SMS delivery lives there)"""

    def __init__(self, webhook_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.max_retries = settings.notification_max_retries
        self.backoff_base = settings.notification_backoff_base
        self.transport = transport

    async def send_event(self, payload: Dict[str, Any]) -> bool:
        """
        Deliver a notification event, fire-and-forget.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^attempt)
        - Retries on HTTP errors and network failures
        - After the last attempt the event is dropped and logged; nothing is raised

        Args:
            payload: Event data, e.g. {"event": "LOAN_APPROVED", "loan_id": ..., "user_id": ...}

        Returns:
            True if delivered
        """
        attempt = 0
        async with httpx.AsyncClient(transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    response = await client.post(
                        self.webhook_url,
                        json=payload,
                        timeout=10.0,
                    )
                    response.raise_for_status()
                    return True

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1

                    if attempt >= self.max_retries:
                        notification_failure_counter.inc()
                        logging.error(
                            f"Notification dropped after {attempt} attempts: {e}",
                            extra={"event": payload.get("event")},
                        )
                        return False

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)

        return False
