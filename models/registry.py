"""Imports every ORM model so Base.metadata holds the full schema."""

from models.audit import Audit
from models.base import Base
from models.emergency import EmergencyEvent
from models.invitation import Invitation
from models.location import LiveLocation
from models.notification import GuardianNotification
from models.unsafe_zone import UnsafeZone
from models.user_models import EmergencyContact, FakeCallConfig, User

__all__ = [
    "Audit",
    "Base",
    "EmergencyContact",
    "EmergencyEvent",
    "FakeCallConfig",
    "GuardianNotification",
    "Invitation",
    "LiveLocation",
    "UnsafeZone",
    "User",
]
