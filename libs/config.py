"""
Configuration module for loading environment variables
"""

import os
from typing import Optional


class Config:
    """Application configuration"""

    # Firebase Auth Configuration
    FIREBASE_PROJECT_ID: str = os.getenv("FIREBASE_PROJECT_ID", "safecircle-dev")

    # Twilio Configuration
    TWILIO_ACCOUNT_SID: Optional[str] = os.getenv("TWILIO_ACCOUNT_SID")
    TWILIO_AUTH_TOKEN: Optional[str] = os.getenv("TWILIO_AUTH_TOKEN")
    TWILIO_PHONE_NUMBER: Optional[str] = os.getenv("TWILIO_PHONE_NUMBER")

    # RabbitMQ Configuration
    RABBITMQ_HOST: Optional[str] = os.getenv("RABBITMQ_HOST", "localhost")
    RABBITMQ_PORT: Optional[str] = os.getenv(
        "RABBITMQ_PORT"
    )  # None = auto-detect based on SSL
    RABBITMQ_USERNAME: Optional[str] = os.getenv("RABBITMQ_USERNAME", "guest")
    RABBITMQ_PASSWORD: Optional[str] = os.getenv("RABBITMQ_PASSWORD", "guest")
    RABBITMQ_USE_SSL: Optional[str] = os.getenv("RABBITMQ_USE_SSL", "false")
    RABBITMQ_CONNECTION_TIMEOUT: int = int(
        os.getenv("RABBITMQ_CONNECTION_TIMEOUT", "30")
    )
    RABBITMQ_NOTIFICATION_QUEUE: str = os.getenv(
        "RABBITMQ_NOTIFICATION_QUEUE", "notifications"
    )
    RABBITMQ_MAX_MESSAGE_RETRIES: int = int(
        os.getenv("RABBITMQ_MAX_MESSAGE_RETRIES", "5")
    )

    # Invitations
    INVITATION_TTL_DAYS: int = int(os.getenv("INVITATION_TTL_DAYS", "7"))

    # SOS
    SOS_COUNTDOWN_SECONDS: int = int(os.getenv("SOS_COUNTDOWN_SECONDS", "10"))
    SOS_TICK_SECONDS: float = float(os.getenv("SOS_TICK_SECONDS", "1"))

    # Live location
    LOCATION_REFRESH_SECONDS: int = int(os.getenv("LOCATION_REFRESH_SECONDS", "30"))

    # Reverse geocoding (Nominatim compatible)
    GEOCODER_URL: str = os.getenv(
        "GEOCODER_URL", "https://nominatim.openstreetmap.org"
    )
    GEOCODER_USER_AGENT: str = os.getenv("GEOCODER_USER_AGENT", "safecircle-backend")


config = Config()
