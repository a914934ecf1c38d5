"""
Fire-and-forget notification webhook sent when the doorbell rings.
"""

import asyncio
import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


def send_notification(url: Optional[str], timeout: float = 5.0) -> Optional[str]:
    """GET `url` and return the response body; None if the URL is unset or the request failed."""
    if not url or not url.startswith("http"):
        logger.info("NOTIFY_URL is not set or invalid.")
        return None
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Error sending notification: {e}")
        return None
    logger.info(f"📣 Notification sent successfully: {response.text[:200]}")
    return response.text


async def notify(url: Optional[str], timeout: float = 5.0) -> Optional[str]:
    """Run `send_notification` in the default executor so the event loop never blocks."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, send_notification, url, timeout)
