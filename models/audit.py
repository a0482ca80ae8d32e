# models/audit.py
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from libs.db import utcnow
from models.base import Base


class AuditEventType(str, enum.Enum):
    authentication = "authentication"
    user_management = "user_management"
    invitation = "invitation"
    location = "location"
    emergency = "emergency"
    notification = "notification"
    unsafe_zone = "unsafe_zone"


class Audit(Base):
    __tablename__ = "audit"

    log_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    event_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    message: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
    )
