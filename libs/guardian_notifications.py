"""
Guardian notification storage shared by the SOS and notification services.

A guardian keeps at most one notification per sender; a newer one from the
same sender overwrites the older (and marks it unread again).
"""

import uuid
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from libs.db import utcnow
from models.notification import GuardianNotification
from models.user_models import User

NOTIFICATION_TYPES = ("emergency", "location_share", "general")
DEFAULT_SENDER_NAME = "Safety App User"


def sender_display_name(user: Optional[User]) -> str:
    if user is None:
        return DEFAULT_SENDER_NAME
    return user.display_name or user.email or DEFAULT_SENDER_NAME


async def upsert_guardian_notification(
    db: AsyncSession,
    *,
    guardian_id: str,
    sender_id: str,
    sender_name: str,
    message: str,
    type: str = "general",
    meta: Optional[Dict[str, Any]] = None,
) -> GuardianNotification:
    """Add or overwrite the (guardian, sender) notification; caller commits."""
    result = await db.execute(
        select(GuardianNotification).where(
            GuardianNotification.guardian_id == guardian_id,
            GuardianNotification.sender_id == sender_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        notification = GuardianNotification(
            notification_id=f"ntf_{uuid.uuid4().hex[:12]}",
            guardian_id=guardian_id,
            sender_id=sender_id,
        )
        db.add(notification)

    notification.sender_name = sender_name
    notification.message = message
    notification.type = type
    notification.meta = meta
    notification.is_read = False
    notification.read_at = None
    notification.created_at = utcnow()
    return notification
