"""
RabbitMQ Consumer Worker for processing notification messages
Consumes `sms` jobs published by the SOS service and sends them via Twilio.

Failed jobs are re-published with an incremented x-retry-count header after an
exponential backoff delay, and dropped once RABBITMQ_MAX_MESSAGE_RETRIES is
exceeded.
"""

import json
import logging
import os
import sys
import time
from typing import Any, Callable, Dict

import pika
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from libs.config import config
from libs.rabbitmq_client import RETRY_HEADER, get_rabbitmq_client, retry_count_of
from libs.twilio_client import get_twilio_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60


def retry_delay(retry_count: int) -> int:
    return min(MAX_BACKOFF_SECONDS, 2**retry_count)


def process_sms_notification(message: Dict[str, Any]) -> bool:
    """
    Send one queued SMS via Twilio.

    Returns:
        True if Twilio accepted the message, False otherwise
    """
    to_phone = message.get("to")
    body = message.get("message")
    if not to_phone or not body:
        logger.error("SMS job for emergency %s is missing 'to' or 'message'", message.get("emergency_id"))
        return False

    try:
        twilio = get_twilio_client()
    except ValueError as e:
        logger.error("Twilio configuration error: %s", e)
        return False

    result = twilio.send_sms(to_phone=to_phone, message=body)
    if result["status"] == "sent":
        logger.info(
            "SMS sent for emergency %s to %s (sid=%s)",
            message.get("emergency_id"),
            to_phone,
            result.get("sid"),
        )
        return True

    logger.error(
        "SMS send failed for emergency %s to %s: %s",
        message.get("emergency_id"),
        to_phone,
        result.get("error"),
    )
    return False


def _requeue(channel, method, message: Dict[str, Any], retry_count: int):
    """Re-publish with the next retry count, then ack the original delivery."""
    channel.basic_publish(
        exchange="",
        routing_key=method.routing_key,
        body=json.dumps(message, default=str),
        properties=pika.BasicProperties(
            delivery_mode=2,
            content_type="application/json",
            headers={RETRY_HEADER: retry_count + 1},
        ),
    )
    channel.basic_ack(delivery_tag=method.delivery_tag)


def message_handler(
    message_dict: Dict[str, Any],
    channel,
    method,
    properties,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Handle incoming messages from RabbitMQ queue.

    Args:
        message_dict: Decoded message dictionary
        channel: RabbitMQ channel
        method: Delivery method
        properties: Message properties
        sleep: Backoff sleep, replaced in tests
    """
    message_type = message_dict.get("type", "unknown")
    retry_count = retry_count_of(properties)
    max_retries = config.RABBITMQ_MAX_MESSAGE_RETRIES

    if message_type != "sms":
        logger.warning("Unknown message type: %s", message_type)
        # Acknowledge unknown message types to avoid infinite requeue
        channel.basic_ack(delivery_tag=method.delivery_tag)
        return

    try:
        success = process_sms_notification(message_dict)
    except Exception:
        logger.exception("Error processing SMS job")
        success = False

    if success:
        channel.basic_ack(delivery_tag=method.delivery_tag)
        return

    if retry_count >= max_retries:
        logger.error(
            "SMS job exceeded max retries (%d), dropping. Emergency: %s",
            max_retries,
            message_dict.get("emergency_id"),
        )
        # Reject without requeue - message will be lost or go to dead letter queue
        channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return

    delay_seconds = retry_delay(retry_count)
    logger.warning(
        "SMS job failed (retry %d/%d), retrying in %ss. Emergency: %s",
        retry_count + 1,
        max_retries,
        delay_seconds,
        message_dict.get("emergency_id"),
    )
    sleep(delay_seconds)
    _requeue(channel, method, message_dict, retry_count)


def main():
    """Main function to start the RabbitMQ consumer"""
    logger.info("Starting RabbitMQ notification worker...")

    queue_name = config.RABBITMQ_NOTIFICATION_QUEUE
    max_attempts = int(os.getenv("RABBITMQ_MAX_RETRIES", "10"))
    retry_base = int(os.getenv("RABBITMQ_RETRY_DELAY", "5"))  # seconds

    rabbitmq = get_rabbitmq_client()

    # Retry connection with exponential backoff
    for attempt in range(max_attempts):
        if rabbitmq.connect():
            logger.info("Connected to RabbitMQ. Consuming from queue: '%s'", queue_name)
            break
        if attempt == max_attempts - 1:
            logger.error(
                "Failed to connect to RabbitMQ after %d attempts "
                "(RABBITMQ_HOST=%s, RABBITMQ_PORT=%s, RABBITMQ_USE_SSL=%s)",
                max_attempts,
                config.RABBITMQ_HOST,
                config.RABBITMQ_PORT,
                config.RABBITMQ_USE_SSL,
            )
            sys.exit(1)
        wait_time = retry_base * (2**attempt)
        logger.warning(
            "Connection attempt %d/%d failed. Retrying in %d seconds...",
            attempt + 1,
            max_attempts,
            wait_time,
        )
        time.sleep(wait_time)

    try:
        rabbitmq.consume(
            queue_name=queue_name,
            callback=message_handler,
            durable=True,
            prefetch_count=1,  # Process one message at a time
        )
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    finally:
        rabbitmq.close()


if __name__ == "__main__":
    main()
