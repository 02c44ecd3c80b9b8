"""
Webhook system for sending workflow event notifications.

Allows external systems to subscribe to order and job events
(order.created, order.status_changed, job.created, job.status_changed).
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
import httpx
from fastapi import BackgroundTasks

from .config import WEBHOOK_URLS

logger = logging.getLogger(__name__)

TIMEOUT = 5.0  # seconds


async def send_webhook(event_type: str, data: Dict[str, Any], urls: Optional[List[str]] = None) -> None:
    """
    Deliver one event to every subscriber concurrently.

    Args:
        event_type: Event name, e.g. "job.status_changed"
        data: Event body
        urls: Subscriber URLs; defaults to WEBHOOK_URLS
    """
    urls = WEBHOOK_URLS if urls is None else urls
    if not urls:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=TIMEOUT) as client:
        await asyncio.gather(
            *(send_single_webhook(client, url, payload) for url in urls),
            return_exceptions=True,
        )


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> bool:
    """
    POST ``payload`` to one subscriber.

    Transport errors and 4xx/5xx answers are logged, never raised.

    Returns:
        True if the subscriber accepted the event
    """
    try:
        response = await client.post(url, json=payload)
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error for {url}: {e}")
        return False

    if response.status_code >= 400:
        logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
        return False
    return True


def _schedule(background_tasks: BackgroundTasks, event_type: str, data: Dict[str, Any]) -> None:
    """Queue delivery to run after the response has been sent."""
    if not WEBHOOK_URLS:
        return
    background_tasks.add_task(send_webhook, event_type, data)


def notify_order_created(background_tasks: BackgroundTasks, order_id: str, order_number: str) -> None:
    _schedule(background_tasks, "order.created", {"order_id": order_id, "order_number": order_number})


def notify_order_status_changed(
    background_tasks: BackgroundTasks, order_id: str, old_status: str, new_status: str, derived: bool = False
) -> None:
    """
    Notify that an order status changed.
    
    Args:
        background_tasks: The request's background task queue
        order_id: Order ID
        old_status: Previous status
        new_status: New status
        derived: True when the change followed a job completion
    """
    data = {
        "order_id": order_id,
        "old_status": old_status,
        "new_status": new_status,
        "derived": derived,
    }
    _schedule(background_tasks, "order.status_changed", data)


def notify_job_created(background_tasks: BackgroundTasks, job_id: str, order_id: str, job_type: str) -> None:
    _schedule(background_tasks, "job.created", {"job_id": job_id, "order_id": order_id, "job_type": job_type})


def notify_job_status_changed(
    background_tasks: BackgroundTasks, job_id: str, order_id: str, old_status: str, new_status: str
) -> None:
    data = {
        "job_id": job_id,
        "order_id": order_id,
        "old_status": old_status,
        "new_status": new_status,
    }
    _schedule(background_tasks, "job.status_changed", data)
