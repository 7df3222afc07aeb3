"""
Webhook system for sending order event notifications.

Allows external systems (fulfilment, WhatsApp notifications, analytics) to
subscribe to order events. Delivery is best-effort: failures are logged and
never affect the request that produced the event.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict

import httpx

from . import config

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_PAYMENT_UPDATED = "order.payment_updated"
ORDER_CANCELLED = "order.cancelled"
ORDER_STATUS_CHANGED = "order.status_changed"


async def send_webhook(event_type: str, data: Dict[str, Any]) -> None:
    """
    Send webhook notifications to all registered URLs.

    Args:
        event_type: Type of event (e.g., "order.created", "order.cancelled")
        data: Event data payload
    """
    if not config.WEBHOOK_URLS:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=config.WEBHOOK_TIMEOUT) as client:
        tasks = [send_single_webhook(client, url, payload) for url in config.WEBHOOK_URLS]
        # Send all webhooks concurrently
        await asyncio.gather(*tasks, return_exceptions=True)


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    """
    Send a webhook to a single URL.

    Args:
        client: HTTP client
        url: Webhook URL
        payload: Event payload
    """
    try:
        response = await client.post(url, json=payload)
        if response.status_code >= 400:
            logger.warning(f"Webhook {payload['event']} failed for {url}: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {payload['event']} error for {url}: {e}")


def order_created_payload(order) -> Dict[str, Any]:
    return {
        "orderNumber": order.order_number,
        "customerId": order.customer_id,
        "customerEmail": order.customer_email,
        "orderTotal": str(order.order_total),
        "currency": order.currency,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
    }
