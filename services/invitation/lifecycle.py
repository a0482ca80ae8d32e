"""
Emergency-contact invitation lifecycle.

Pure functions over invitation status; no database access. The service layer
loads a row, asks this module what the next status is, and persists it.

    pending --accept/decline/ignore (recipient)--> accepted/declined/ignored
    pending --cancel (sender)--> cancelled
    pending --(now > expires_at)--> expired
    pending/expired/declined/ignored --resend (sender)--> pending

accepted and cancelled are terminal.
"""

import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from common.constants import INVITE_CODE_ALPHABET, INVITE_CODE_LENGTH
from common.errors import (
    BadRequestError,
    ConflictError,
    DomainError,
    ForbiddenError,
    GoneError,
    NotFoundError,
)


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IGNORED = "ignored"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Action(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    IGNORE = "ignore"
    CANCEL = "cancel"
    RESEND = "resend"
    EXPIRE = "expire"


TERMINAL = frozenset({InvitationStatus.ACCEPTED, InvitationStatus.CANCELLED})
RESENDABLE = frozenset(
    {
        InvitationStatus.PENDING,
        InvitationStatus.EXPIRED,
        InvitationStatus.DECLINED,
        InvitationStatus.IGNORED,
    }
)

_FROM_PENDING = {
    Action.ACCEPT: InvitationStatus.ACCEPTED,
    Action.DECLINE: InvitationStatus.DECLINED,
    Action.IGNORE: InvitationStatus.IGNORED,
    Action.CANCEL: InvitationStatus.CANCELLED,
    Action.EXPIRE: InvitationStatus.EXPIRED,
}

RECIPROCAL_RELATIONSHIPS = {
    "Parent": "Child",
    "Child": "Parent",
    "Spouse": "Spouse",
    "Partner": "Partner",
    "Sibling": "Sibling",
    "Friend": "Friend",
    "Colleague": "Colleague",
    "Neighbor": "Neighbor",
    "Family": "Family",
    "Contact": "Contact",
    "Other": "Other",
}


# ========= Errors =========


class InvitationError(DomainError):
    """Base class for invitation failures."""


class InvalidTransition(InvitationError, ConflictError):
    def __init__(self, status: str, action: str):
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} an invitation that is {status}")


class InvitationNotFound(InvitationError, NotFoundError):
    pass


class InvitationExpired(InvitationError, GoneError):
    pass


class NotInvitationParty(InvitationError, ForbiddenError):
    pass


class InvalidInvitationRequest(InvitationError, BadRequestError):
    pass


class DuplicateInvitation(InvitationError, ConflictError):
    pass


# ========= Transitions =========


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return now > expires_at


def effective_status(status: str, expires_at: datetime, now: datetime) -> InvitationStatus:
    """A pending invitation past its expiry reads as expired."""
    current = InvitationStatus(status)
    if current is InvitationStatus.PENDING and is_expired(expires_at, now):
        return InvitationStatus.EXPIRED
    return current


def next_status(
    status: str, expires_at: datetime, action: Action, now: datetime
) -> InvitationStatus:
    """
    Return the status an invitation moves to under `action`.

    Raises InvalidTransition when the action is not allowed from the
    invitation's effective status.
    """
    current = effective_status(status, expires_at, now)

    if action is Action.RESEND:
        if current in RESENDABLE:
            return InvitationStatus.PENDING
        raise InvalidTransition(current.value, action.value)

    if current is InvitationStatus.PENDING:
        return _FROM_PENDING[action]

    if action is Action.ACCEPT and current is InvitationStatus.EXPIRED:
        raise InvitationExpired("This invitation has expired")
    raise InvalidTransition(current.value, action.value)


# ========= Helpers =========


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(length))


def normalize_invite_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def expiry_from(sent_at: datetime, ttl_days: int) -> datetime:
    return sent_at + timedelta(days=ttl_days)


def reciprocal_relationship(relationship: Optional[str]) -> str:
    return RECIPROCAL_RELATIONSHIPS.get(relationship or "", "Contact")
