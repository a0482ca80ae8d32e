from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base


class User(Base):
    __tablename__ = "users"

    # Firebase Auth UID
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(
        String(30), unique=True, nullable=True, index=True
    )
    display_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    photo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    emergency_contacts: Mapped[List["EmergencyContact"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        foreign_keys="EmergencyContact.user_id",
    )


class EmergencyContact(Base):
    __tablename__ = "emergency_contacts"

    contact_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(Text, nullable=False)
    # Canonical phone number; empty for guardians reachable only in-app
    phone: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Python attribute is "relation", the column keeps the name "relationship"
    relation: Mapped[str] = mapped_column(
        "relationship", Text, nullable=False, default="Contact"
    )

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # The contact's own account, when the contact is an app user
    linked_user_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )
    added_by: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    invitation_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    user: Mapped["User"] = relationship(
        back_populates="emergency_contacts", foreign_keys=[user_id]
    )

    # A linked account appears at most once in a user's contacts
    __table_args__ = (
        UniqueConstraint("user_id", "linked_user_id", name="uq_emergency_contacts_linked_user"),
    )


class FakeCallConfig(Base):
    __tablename__ = "fake_call_configs"

    config_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    caller_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(Text, nullable=False)
    ringtone: Mapped[str] = mapped_column(Text, nullable=False, default="default")
    delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
