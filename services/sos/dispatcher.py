"""
Outbound side of an SOS trigger: live sharing via the location service and
emergency SMS via the notification queue (Twilio directly as a fallback),
plus a live push of the stored guardian notifications.

Every function here reports failure in its return value; one unreachable
collaborator never stops the rest of the alert going out.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx
from starlette.concurrency import run_in_threadpool

from common.constants import MAPS_URL_TEMPLATE
from libs.config import config
from libs.db import utcnow
from libs.rabbitmq_client import get_rabbitmq_client
from libs.service_urls import LOCATION_SERVICE_URL, NOTIFICATION_SERVICE_URL
from libs.twilio_client import get_twilio_client

logger = logging.getLogger(__name__)

NO_ADDRESS = "Location not available"


def maps_url(lat: float, lon: float) -> str:
    return MAPS_URL_TEMPLATE.format(lat=lat, lon=lon)


def compose_emergency_message(lat: float, lon: float, address: Optional[str]) -> str:
    return (
        "EMERGENCY! I need help!\n"
        f"Location: {address or NO_ADDRESS}\n"
        f"Google Maps: {maps_url(lat, lon)}\n"
        "Please check on me ASAP."
    )


async def start_remote_sharing(
    user_id: str, lat: float, lon: float, address: Optional[str], timeout: float = 5.0
) -> bool:
    """Ask the location service to start live sharing for the user."""
    url = f"{LOCATION_SERVICE_URL}/internal/v1/live-locations/{user_id}/start"
    payload = {"lat": lat, "lon": lon, "address": address}
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.warning("Location service unavailable for %s: %s", user_id, e)
        return False


async def push_guardian_notifications(
    guardian_ids: List[str], sender_id: str, timeout: float = 5.0
) -> int:
    """Ask the notification service to push stored alerts to open guardian sockets."""
    pushed = 0
    async with httpx.AsyncClient(timeout=timeout) as client:
        for guardian_id in guardian_ids:
            url = f"{NOTIFICATION_SERVICE_URL}/internal/v1/notifications/{guardian_id}/push"
            try:
                resp = await client.post(url, json={"sender_id": sender_id})
                resp.raise_for_status()
                pushed += 1
            except httpx.HTTPError as e:
                logger.warning("Live push to guardian %s failed: %s", guardian_id, e)
    return pushed


def publish_sms_to_queue(
    to_phone: str, message: str, emergency_id: str, user_id: str
) -> bool:
    """Publish an `sms` job for the notification worker."""
    try:
        rabbitmq = get_rabbitmq_client()
        return rabbitmq.publish(
            queue_name=config.RABBITMQ_NOTIFICATION_QUEUE,
            message={
                "type": "sms",
                "to": to_phone,
                "message": message,
                "emergency_id": emergency_id,
                "user_id": user_id,
                "timestamp": utcnow().isoformat(),
            },
        )
    except Exception as e:
        logger.error("Error publishing SMS job to RabbitMQ: %s", e)
        return False


def send_sms_directly(to_phone: str, message: str) -> Dict[str, Any]:
    """Send via Twilio (fallback when RabbitMQ is unavailable)."""
    try:
        twilio = get_twilio_client()
    except ValueError as e:
        logger.error("Twilio configuration error: %s", e)
        return {"status": "failed", "sid": None, "error": f"Twilio configuration error: {e}"}

    result = twilio.send_sms(to_phone=to_phone, message=message)
    return {"status": result["status"], "sid": result.get("sid"), "error": result.get("error")}


def _send_one(to_phone: str, message: str, emergency_id: str, user_id: str) -> Dict[str, Any]:
    if publish_sms_to_queue(to_phone, message, emergency_id, user_id):
        return {
            "phone": to_phone,
            "status": "queued",
            "channel": "queue",
            "sid": f"SMS-QUEUED-{uuid.uuid4().hex[:6]}",
            "error": None,
        }

    logger.warning("RabbitMQ unavailable, sending SMS to %s via Twilio", to_phone)
    result = send_sms_directly(to_phone, message)
    return {"phone": to_phone, "channel": "twilio", **result}


async def dispatch_sms(
    numbers: List[str], message: str, emergency_id: str, user_id: str
) -> List[Dict[str, Any]]:
    """One result per number; pika and Twilio block, so each send runs in a thread."""
    results = []
    for number in numbers:
        try:
            result = await run_in_threadpool(_send_one, number, message, emergency_id, user_id)
        except Exception as e:
            logger.exception("SMS to %s failed", number)
            result = {
                "phone": number,
                "status": "failed",
                "channel": "none",
                "sid": None,
                "error": str(e),
            }
        results.append(result)
    return results
