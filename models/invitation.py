"""
Emergency-contact invitation model.

Status values: pending, accepted, declined, ignored, expired, cancelled.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class Invitation(Base):
    __tablename__ = "invitations"

    invitation_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    sender_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_name: Mapped[str] = mapped_column(Text, nullable=False)
    sender_email: Mapped[str] = mapped_column(Text, nullable=False)
    sender_username: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Null until the invitee has an account
    recipient_user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    recipient_email: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_name: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_username: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    relationship: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    invite_code: Mapped[str] = mapped_column(String(8), nullable=False, unique=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'ignored', 'expired', 'cancelled')",
            name="chk_invitation_status",
        ),
        Index("idx_invitations_sender", "sender_user_id", "status"),
        Index("idx_invitations_recipient_email", "recipient_email", "status"),
    )
