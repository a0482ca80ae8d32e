"""
RabbitMQ Client for publishing and consuming messages
Handles connection management and message queuing
"""

import json
import logging
import re
import ssl
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import pika
from pika.exceptions import AMQPConnectionError

from libs.config import config

logger = logging.getLogger(__name__)

RETRY_HEADER = "x-retry-count"


def extract_hostname(host_or_url: str) -> str:
    """
    Extract hostname from a URL or return the hostname as-is.

    Args:
        host_or_url: Hostname or URL (e.g., 'localhost' or 'amqps://rabbitmq.example.com')
    """
    if "://" in host_or_url:
        parsed = urlparse(host_or_url)
        return parsed.hostname or host_or_url
    # Remove any trailing path or query strings
    return re.sub(r"[/?#].*$", "", host_or_url)


def retry_count_of(properties: Optional[pika.BasicProperties]) -> int:
    """Delivery attempt counter carried in the message headers."""
    if properties is None or not properties.headers:
        return 0
    return int(properties.headers.get(RETRY_HEADER, 0))


class RabbitMQClient:
    """RabbitMQ client for publishing and consuming messages"""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        virtual_host: str = "/",
        use_ssl: Optional[bool] = None,
        connection_timeout: Optional[int] = None,
    ):
        """
        Initialize RabbitMQ client; unspecified arguments come from libs.config.
        """
        self.host = extract_hostname(host or config.RABBITMQ_HOST or "localhost")

        if use_ssl is None:
            self.use_ssl = (config.RABBITMQ_USE_SSL or "").lower() in ("true", "1", "yes")
        else:
            self.use_ssl = use_ssl

        if port is not None:
            self.port = port
        elif config.RABBITMQ_PORT:
            self.port = int(config.RABBITMQ_PORT)
        else:
            self.port = 5671 if self.use_ssl else 5672

        self.username = username or config.RABBITMQ_USERNAME
        self.password = password or config.RABBITMQ_PASSWORD
        self.virtual_host = virtual_host
        self.connection_timeout = connection_timeout or config.RABBITMQ_CONNECTION_TIMEOUT

        self.connection: Optional[pika.BlockingConnection] = None
        self.channel = None

    def connect(self) -> bool:
        """
        Establish connection to RabbitMQ

        Returns:
            True if connection successful, False otherwise
        """
        try:
            credentials = pika.PlainCredentials(self.username, self.password)

            ssl_options = None
            if self.use_ssl:
                ssl_context = ssl.create_default_context()
                ssl_options = pika.SSLOptions(ssl_context, self.host)

            parameters = pika.ConnectionParameters(
                host=self.host,
                port=self.port,
                virtual_host=self.virtual_host,
                credentials=credentials,
                heartbeat=600,
                blocked_connection_timeout=300,
                connection_attempts=3,
                retry_delay=2,
                socket_timeout=self.connection_timeout,
                ssl_options=ssl_options,
            )

            logger.info(
                "Connecting to RabbitMQ at %s:%s (SSL: %s, timeout: %ss)",
                self.host,
                self.port,
                self.use_ssl,
                self.connection_timeout,
            )
            self.connection = pika.BlockingConnection(parameters)
            self.channel = self.connection.channel()
            logger.info("Connected to RabbitMQ at %s:%s%s", self.host, self.port, self.virtual_host)
            return True
        except AMQPConnectionError as e:
            logger.error("Failed to connect to RabbitMQ at %s:%s: %s", self.host, self.port, e)
            return False
        except Exception as e:
            logger.error("Unexpected error connecting to RabbitMQ: %s", e)
            return False

    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    def ensure_connection(self):
        """Ensure connection is established, reconnect if needed"""
        if not self.is_connected():
            if not self.connect():
                raise ConnectionError("Failed to establish RabbitMQ connection")

    def publish(
        self,
        queue_name: str,
        message: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
        durable: bool = True,
    ) -> bool:
        """
        Publish a persistent JSON message to a queue via the default exchange.

        Returns:
            True if message published successfully, False otherwise
        """
        try:
            self.ensure_connection()
            self.channel.queue_declare(queue=queue_name, durable=durable)
            self.channel.basic_publish(
                exchange="",
                routing_key=queue_name,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # persistent
                    content_type="application/json",
                    headers=headers or {},
                ),
            )
            logger.debug("Published message to queue '%s': %s", queue_name, message)
            return True
        except Exception as e:
            logger.error("Failed to publish message to queue '%s': %s", queue_name, e)
            return False

    def consume(
        self,
        queue_name: str,
        callback: Callable[[Dict[str, Any], Any, Any, pika.BasicProperties], None],
        durable: bool = True,
        prefetch_count: int = 1,
    ):
        """
        Start consuming messages from a queue (blocking).

        Args:
            queue_name: Name of the queue to consume from
            callback: callback(body_dict, channel, method, properties); it owns ack/nack
            durable: Whether the queue should survive broker restarts
            prefetch_count: Number of unacknowledged messages per consumer
        """
        try:
            self.ensure_connection()
            self.channel.queue_declare(queue=queue_name, durable=durable)
            self.channel.basic_qos(prefetch_count=prefetch_count)

            def on_message(channel, method, properties, body: bytes):
                try:
                    message_dict = json.loads(body.decode("utf-8"))
                except json.JSONDecodeError as e:
                    logger.error("Dropping undecodable message: %s", e)
                    channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                    return
                callback(message_dict, channel, method, properties)

            self.channel.basic_consume(
                queue=queue_name, on_message_callback=on_message, auto_ack=False
            )
            logger.info("Starting to consume messages from queue '%s'", queue_name)
            self.channel.start_consuming()

        except KeyboardInterrupt:
            logger.info("Stopping consumer...")
            self.channel.stop_consuming()

    def close(self):
        """Close connection to RabbitMQ"""
        try:
            if self.channel and not self.channel.is_closed:
                self.channel.close()
            if self.connection and not self.connection.is_closed:
                self.connection.close()
            logger.info("RabbitMQ connection closed")
        except Exception as e:
            logger.error("Error closing RabbitMQ connection: %s", e)


# Singleton instance
_rabbitmq_client: Optional[RabbitMQClient] = None


def get_rabbitmq_client() -> RabbitMQClient:
    """Get or create the RabbitMQ client singleton"""
    global _rabbitmq_client
    if _rabbitmq_client is None:
        _rabbitmq_client = RabbitMQClient()
    return _rabbitmq_client
