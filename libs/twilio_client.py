"""
Twilio SMS Client
Sends emergency SMS messages using the Twilio API.
"""

import logging
from typing import Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from libs.config import config

logger = logging.getLogger(__name__)


class TwilioClient:
    """Wrapper for the Twilio SMS service"""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_phone: Optional[str] = None,
    ):
        self.account_sid = account_sid or config.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or config.TWILIO_AUTH_TOKEN
        self.from_phone = from_phone or config.TWILIO_PHONE_NUMBER

        if not all([self.account_sid, self.auth_token, self.from_phone]):
            raise ValueError(
                "Missing Twilio configuration. Please set TWILIO_ACCOUNT_SID, "
                "TWILIO_AUTH_TOKEN, and TWILIO_PHONE_NUMBER in your .env file"
            )

        self.client = Client(self.account_sid, self.auth_token)

    def send_sms(self, to_phone: str, message: str) -> dict:
        """
        Send an SMS message

        Args:
            to_phone: Recipient phone number (E.164 format, e.g., +1234567890)
            message: Message content

        Returns:
            dict with status, sid and error information; never raises
        """
        try:
            msg = self.client.messages.create(
                body=message, from_=self.from_phone, to=to_phone
            )
            return {
                "status": "sent",
                "sid": msg.sid,
                "to": to_phone,
                "message_status": msg.status,
                "error": None,
            }
        except TwilioRestException as e:
            logger.warning("Twilio rejected SMS to %s: %s", to_phone, e)
            return {
                "status": "failed",
                "sid": None,
                "to": to_phone,
                "message_status": "failed",
                "error": str(e),
            }
        except Exception as e:
            logger.error("Unexpected Twilio error for %s: %s", to_phone, e)
            return {
                "status": "failed",
                "sid": None,
                "to": to_phone,
                "message_status": "failed",
                "error": f"Unexpected error: {str(e)}",
            }


# Singleton instance
_twilio_client: Optional[TwilioClient] = None


def get_twilio_client() -> TwilioClient:
    """Get or create the Twilio client singleton; raises ValueError if unconfigured"""
    global _twilio_client
    if _twilio_client is None:
        _twilio_client = TwilioClient()
    return _twilio_client
