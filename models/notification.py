from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class GuardianNotification(Base):
    """Latest notification a sender pushed to one of their guardians."""

    __tablename__ = "guardian_notifications"

    notification_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    guardian_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_name: Mapped[str] = mapped_column(Text, nullable=False)

    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="emergency")
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("guardian_id", "sender_id", name="uq_guardian_sender"),
    )
