"""Completion webhooks for batch runs"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..config.logging_config import get_logger
from ..config.settings import settings

logger = get_logger(__name__)

RETRYABLE_STATUS = 500


async def send_webhook(
    url: str,
    payload: Dict[str, Any],
    max_retries: Optional[int] = None,
    timeout: Optional[float] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """
    POST a JSON event with exponential backoff.

    Server errors and transport failures are retried; client errors (4xx)
    are not. Returns True on a 2xx response.
    """
    max_retries = settings.webhook_max_retries if max_retries is None else max_retries
    timeout = settings.webhook_timeout if timeout is None else timeout
    body = {**payload, "timestamp": datetime.now(timezone.utc).isoformat()}

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=timeout)

    try:
        for attempt in range(max_retries):
            last_attempt = attempt == max_retries - 1
            try:
                response = await client.post(url, json=body)
            except httpx.RequestError as e:
                logger.warning(f"Webhook {url} attempt {attempt + 1} failed: {e}")
                if last_attempt:
                    return False
                await asyncio.sleep(2 ** attempt)
                continue

            if response.is_success:
                return True
            if response.status_code >= RETRYABLE_STATUS and not last_attempt:
                logger.warning(f"Webhook {url} returned {response.status_code}, retrying")
                await asyncio.sleep(2 ** attempt)
                continue
            logger.warning(f"Webhook {url} rejected with {response.status_code}")
            return False
        return False
    finally:
        if owns_client:
            await client.aclose()


def batch_event(snapshot) -> Dict[str, Any]:
    """Webhook payload for a terminal batch snapshot."""
    event = "batch.failed" if snapshot.state.value == "failed" else "batch.completed"
    return {"event": event, "batch": snapshot.to_dict()}
