# Run:
# uvicorn services.invitation.main:app --host 0.0.0.0 --port 20002 --reload
# Docs: http://127.0.0.1:20002/docs

import logging
import os
import sys
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Depends, status
from pydantic import BaseModel
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

# Load environment variables from .env file
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from common.errors import ERROR_STATUSES, ConflictError
from libs.audit_logger import write_audit
from libs.auth.firebase_verify import CurrentUser, get_current_user
from libs.config import config
from libs.db import get_db, utcnow
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from libs.phone import normalize_or_none
from models.invitation import Invitation
from models.user_models import EmergencyContact, User
from services.invitation import lifecycle
from services.invitation.lifecycle import (
    Action,
    DuplicateInvitation,
    InvalidInvitationRequest,
    InvitationExpired,
    InvitationNotFound,
    InvitationStatus,
    NotInvitationParty,
)

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5

factory = FastAPIServiceFactory(
    ServiceAppConfig(
        title="Invitation Service",
        description="Invite people to become mutual emergency contacts.",
        service_name="invitation",
        error_statuses=ERROR_STATUSES,
    )
)
app = factory.create_app()

INVITATIONS_SENT_TOTAL = factory.add_business_metric(
    "invitations_sent_total",
    "Invitations sent or re-sent",
    ["kind"],
)
INVITATIONS_ACCEPTED_TOTAL = factory.add_business_metric(
    "invitations_accepted_total",
    "Invitations accepted",
)


# ========= Models =========


class SendInvitationRequest(BaseModel):
    recipient_username: Optional[str] = None
    recipient_email: Optional[str] = None
    relationship: str = "Contact"
    message: Optional[str] = None


class AcceptInvitationRequest(BaseModel):
    invite_code: str


class InvitationResponse(BaseModel):
    invitation_id: str
    sender_user_id: str
    sender_name: str
    sender_email: str
    sender_username: Optional[str] = None
    recipient_user_id: Optional[str] = None
    recipient_email: str
    recipient_name: str
    recipient_username: Optional[str] = None
    relationship: str
    status: InvitationStatus
    invite_code: str
    message: Optional[str] = None
    sent_at: datetime
    responded_at: Optional[datetime] = None
    expires_at: datetime


class AcceptInvitationResponse(BaseModel):
    invitation: InvitationResponse
    contact_ids: List[str]


class ExpireSweepResponse(BaseModel):
    expired: int


# ========= Helpers =========


def _out(inv: Invitation, now: datetime) -> InvitationResponse:
    return InvitationResponse(
        invitation_id=inv.invitation_id,
        sender_user_id=inv.sender_user_id,
        sender_name=inv.sender_name,
        sender_email=inv.sender_email,
        sender_username=inv.sender_username,
        recipient_user_id=inv.recipient_user_id,
        recipient_email=inv.recipient_email,
        recipient_name=inv.recipient_name,
        recipient_username=inv.recipient_username,
        relationship=inv.relationship,
        status=lifecycle.effective_status(inv.status, inv.expires_at, now),
        invite_code=inv.invite_code,
        message=inv.message,
        sent_at=inv.sent_at,
        responded_at=inv.responded_at,
        expires_at=inv.expires_at,
    )


def _display_name(user: User) -> str:
    return user.display_name or user.username or user.email.split("@")[0]


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def _require_profile(db: AsyncSession, user: CurrentUser) -> User:
    profile = await _get_user(db, user.user_id)
    if profile is None:
        raise InvalidInvitationRequest("Create your profile before using invitations")
    return profile


async def _caller_email(db: AsyncSession, user: CurrentUser) -> Optional[str]:
    if user.email:
        return user.email.lower()
    profile = await _get_user(db, user.user_id)
    return profile.email.lower() if profile else None


def _is_recipient(inv: Invitation, user_id: str, email: Optional[str]) -> bool:
    if inv.recipient_user_id and inv.recipient_user_id == user_id:
        return True
    return bool(email) and inv.recipient_email.lower() == email


async def _get_invitation(
    db: AsyncSession, invitation_id: str, refresh: bool = False
) -> Invitation:
    stmt = select(Invitation).where(Invitation.invitation_id == invitation_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    inv = result.scalar_one_or_none()
    if inv is None:
        raise InvitationNotFound(f"Invitation {invitation_id} not found")
    return inv


async def expire_overdue(
    db: AsyncSession, now: datetime, invitation_ids: Optional[List[str]] = None
) -> int:
    """Persist `expired` for pending invitations past their expiry."""
    stmt = update(Invitation).where(
        Invitation.status == InvitationStatus.PENDING.value,
        Invitation.expires_at < now,
    )
    if invitation_ids is not None:
        if not invitation_ids:
            return 0
        stmt = stmt.where(Invitation.invitation_id.in_(invitation_ids))
    result = await db.execute(
        stmt.values(status=InvitationStatus.EXPIRED.value).execution_options(
            synchronize_session=False
        )
    )
    await db.commit()
    return result.rowcount or 0


async def _compare_and_set(
    db: AsyncSession, invitation_id: str, expected: str, **values
) -> None:
    """UPDATE ... WHERE status = expected; a concurrent writer wins, we get 409."""
    result = await db.execute(
        update(Invitation)
        .where(
            Invitation.invitation_id == invitation_id,
            Invitation.status == expected,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise ConflictError("Invitation was changed by someone else, reload and retry")


async def _transition(
    db: AsyncSession, inv: Invitation, action: Action, now: datetime
) -> Tuple[str, InvitationStatus]:
    """
    Resolve (stored status, next status) for `action`.

    An overdue pending invitation is persisted as expired first, so a refused
    transition still leaves the row in its effective state.
    """
    stored = inv.status
    if lifecycle.effective_status(stored, inv.expires_at, now).value != stored:
        await expire_overdue(db, now, [inv.invitation_id])
        stored = InvitationStatus.EXPIRED.value
    return stored, lifecycle.next_status(stored, inv.expires_at, action, now)


async def _ensure_not_linked(db: AsyncSession, user_id: str, other_id: str) -> None:
    """Either side already listing the other as a linked contact is a conflict."""
    result = await db.execute(
        select(EmergencyContact.contact_id).where(
            or_(
                (EmergencyContact.user_id == user_id)
                & (EmergencyContact.linked_user_id == other_id),
                (EmergencyContact.user_id == other_id)
                & (EmergencyContact.linked_user_id == user_id),
            )
        )
    )
    if result.first() is not None:
        raise ConflictError("This person is already one of your emergency contacts")


async def _ensure_can_invite(
    db: AsyncSession,
    sender_id: str,
    recipient_user_id: Optional[str],
    recipient_email: str,
    now: datetime,
    exclude_id: Optional[str] = None,
) -> None:
    """One live pending invitation per sender/recipient, and none to a linked contact."""
    match_recipient = [func.lower(Invitation.recipient_email) == recipient_email.lower()]
    if recipient_user_id:
        match_recipient.append(Invitation.recipient_user_id == recipient_user_id)
    stmt = select(Invitation.invitation_id).where(
        Invitation.sender_user_id == sender_id,
        Invitation.status == InvitationStatus.PENDING.value,
        Invitation.expires_at >= now,
        or_(*match_recipient),
    )
    if exclude_id is not None:
        stmt = stmt.where(Invitation.invitation_id != exclude_id)
    result = await db.execute(stmt)
    if result.first() is not None:
        raise DuplicateInvitation("A pending invitation to this person already exists")

    if recipient_user_id:
        await _ensure_not_linked(db, sender_id, recipient_user_id)


async def _cancel_crossed(
    db: AsyncSession, sender: User, recipient: User, now: datetime
) -> int:
    """Cancel pending invitations going the other way between two newly linked users."""
    result = await db.execute(
        update(Invitation)
        .where(
            Invitation.sender_user_id == recipient.user_id,
            Invitation.status == InvitationStatus.PENDING.value,
            or_(
                Invitation.recipient_user_id == sender.user_id,
                func.lower(Invitation.recipient_email) == sender.email.lower(),
            ),
        )
        .values(status=InvitationStatus.CANCELLED.value, responded_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _audit(db: AsyncSession, user_id: str, inv_id: str, message: str):
    await write_audit(
        db=db,
        event_type="invitation",
        message=message,
        user_id=user_id,
        event_id=inv_id,
        commit=True,
    )


# ========= Routes =========


@app.get("/")
async def root():
    return {"service": "invitation", "status": "running"}


@app.post(
    "/v1/invitations",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Invitations"],
)
async def send_invitation(
    payload: SendInvitationRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    username = (payload.recipient_username or "").strip().lower()
    email = (payload.recipient_email or "").strip().lower()
    if bool(username) == bool(email):
        raise InvalidInvitationRequest(
            "Provide exactly one of recipient_username or recipient_email"
        )

    sender = await _require_profile(db, user)

    recipient: Optional[User] = None
    if username:
        result = await db.execute(select(User).where(User.username == username))
        recipient = result.scalar_one_or_none()
        if recipient is None:
            raise InvitationNotFound(f"No user with username '{username}'")
    else:
        result = await db.execute(select(User).where(func.lower(User.email) == email))
        recipient = result.scalar_one_or_none()

    recipient_user_id = recipient.user_id if recipient else None
    recipient_email = recipient.email.lower() if recipient else email
    if recipient_user_id == sender.user_id or recipient_email == sender.email.lower():
        raise InvalidInvitationRequest("You cannot invite yourself")

    now = utcnow()
    await _ensure_can_invite(db, sender.user_id, recipient_user_id, recipient_email, now)

    fields = {
        "sender_user_id": sender.user_id,
        "sender_name": _display_name(sender),
        "sender_email": sender.email,
        "sender_username": sender.username,
        "recipient_user_id": recipient_user_id,
        "recipient_email": recipient_email,
        "recipient_name": _display_name(recipient) if recipient else email.split("@")[0],
        "recipient_username": recipient.username if recipient else None,
        "relationship": (payload.relationship or "Contact").strip() or "Contact",
        "status": InvitationStatus.PENDING.value,
        "message": payload.message,
        "sent_at": now,
        "expires_at": lifecycle.expiry_from(now, config.INVITATION_TTL_DAYS),
    }

    invitation = None
    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        invitation = Invitation(
            invitation_id=f"inv_{uuid.uuid4().hex[:12]}",
            invite_code=lifecycle.generate_invite_code(),
            **fields,
        )
        db.add(invitation)
        try:
            await db.commit()
            break
        except IntegrityError:
            await db.rollback()
            logger.warning("Invite code collision (attempt %d/%d)", attempt, MAX_CODE_ATTEMPTS)
    else:
        raise ConflictError("Could not allocate a unique invite code, try again")

    INVITATIONS_SENT_TOTAL.labels(kind="new").inc()
    logger.info("Invitation %s sent by %s", invitation.invitation_id, fields["sender_user_id"])
    await _audit(
        db,
        fields["sender_user_id"],
        invitation.invitation_id,
        f"Invitation sent to {recipient_email}",
    )
    return _out(invitation, now)


@app.get("/v1/invitations/sent", response_model=List[InvitationResponse], tags=["Invitations"])
async def list_sent(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    result = await db.execute(
        select(Invitation)
        .where(Invitation.sender_user_id == user.user_id)
        .order_by(Invitation.sent_at.desc())
    )
    invitations = result.scalars().all()

    overdue = [
        i.invitation_id
        for i in invitations
        if lifecycle.effective_status(i.status, i.expires_at, now).value != i.status
    ]
    if overdue:
        await expire_overdue(db, now, overdue)
    return [_out(i, now) for i in invitations]


@app.get(
    "/v1/invitations/received",
    response_model=List[InvitationResponse],
    tags=["Invitations"],
)
async def list_received(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    email = await _caller_email(db, user)

    addressed = [Invitation.recipient_user_id == user.user_id]
    if email:
        addressed.append(func.lower(Invitation.recipient_email) == email)

    result = await db.execute(
        select(Invitation)
        .where(
            Invitation.status == InvitationStatus.PENDING.value,
            Invitation.expires_at >= now,
            or_(*addressed),
        )
        .order_by(Invitation.sent_at.desc())
    )
    return [_out(i, now) for i in result.scalars().all()]


@app.post(
    "/v1/invitations/accept",
    response_model=AcceptInvitationResponse,
    tags=["Invitations"],
)
async def accept_invitation(
    payload: AcceptInvitationRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    code = lifecycle.normalize_invite_code(payload.invite_code)
    now = utcnow()

    result = await db.execute(
        select(Invitation).where(
            Invitation.invite_code == code,
            Invitation.status == InvitationStatus.PENDING.value,
        )
    )
    inv = result.scalar_one_or_none()
    if inv is None:
        raise InvitationNotFound("Invalid or expired invitation code")

    if lifecycle.is_expired(inv.expires_at, now):
        await expire_overdue(db, now, [inv.invitation_id])
        raise InvitationExpired("This invitation has expired")

    recipient = await _require_profile(db, user)
    if not _is_recipient(inv, user.user_id, (user.email or recipient.email).lower()):
        raise NotInvitationParty("This invitation is not for your account")

    sender = await _get_user(db, inv.sender_user_id)
    if sender is None:
        raise InvitationExpired("The user who sent this invitation no longer exists")

    invitation_id = inv.invitation_id
    relationship = inv.relationship
    lifecycle.next_status(inv.status, inv.expires_at, Action.ACCEPT, now)
    await _ensure_not_linked(db, sender.user_id, recipient.user_id)
    await _compare_and_set(
        db,
        invitation_id,
        InvitationStatus.PENDING.value,
        status=InvitationStatus.ACCEPTED.value,
        responded_at=now,
        recipient_user_id=recipient.user_id,
    )

    # Sender becomes the recipient's contact, and the recipient the sender's
    contact_for_recipient = EmergencyContact(
        contact_id=f"ctc_{uuid.uuid4().hex[:12]}",
        user_id=recipient.user_id,
        name=_display_name(sender),
        phone=normalize_or_none(sender.phone) or "",
        relation=relationship,
        email=sender.email,
        linked_user_id=sender.user_id,
        added_by="invitation",
        invitation_id=invitation_id,
        created_at=now,
        updated_at=now,
    )
    contact_for_sender = EmergencyContact(
        contact_id=f"ctc_{uuid.uuid4().hex[:12]}",
        user_id=sender.user_id,
        name=_display_name(recipient),
        phone=normalize_or_none(recipient.phone) or "",
        relation=lifecycle.reciprocal_relationship(relationship),
        email=recipient.email,
        linked_user_id=recipient.user_id,
        added_by="invitation",
        invitation_id=invitation_id,
        created_at=now,
        updated_at=now,
    )
    contact_ids = [contact_for_recipient.contact_id, contact_for_sender.contact_id]
    recipient_id = recipient.user_id
    db.add_all([contact_for_recipient, contact_for_sender])
    try:
        crossed = await _cancel_crossed(db, sender, recipient, now)
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError("Could not link contacts for this invitation") from e

    INVITATIONS_ACCEPTED_TOTAL.inc()
    logger.info("Invitation %s accepted by %s", invitation_id, recipient_id)
    if crossed:
        logger.info("Cancelled %d crossed invitation(s) from %s", crossed, recipient_id)
    await _audit(db, recipient_id, invitation_id, "Invitation accepted")
    inv = await _get_invitation(db, invitation_id, refresh=True)
    return AcceptInvitationResponse(invitation=_out(inv, now), contact_ids=contact_ids)


async def _respond(
    invitation_id: str,
    action: Action,
    user: CurrentUser,
    db: AsyncSession,
) -> InvitationResponse:
    """Recipient-side decline/ignore and sender-side cancel."""
    now = utcnow()
    inv = await _get_invitation(db, invitation_id)

    if action is Action.CANCEL:
        if inv.sender_user_id != user.user_id:
            raise NotInvitationParty("Only the sender can cancel this invitation")
    elif not _is_recipient(inv, user.user_id, await _caller_email(db, user)):
        raise NotInvitationParty("Only the recipient can respond to this invitation")

    stored, new_status = await _transition(db, inv, action, now)
    await _compare_and_set(
        db, invitation_id, stored, status=new_status.value, responded_at=now
    )
    await db.commit()

    logger.info("Invitation %s -> %s by %s", invitation_id, new_status.value, user.user_id)
    await _audit(db, user.user_id, invitation_id, f"Invitation {new_status.value}")
    inv = await _get_invitation(db, invitation_id, refresh=True)
    return _out(inv, now)


@app.post(
    "/v1/invitations/{invitation_id}/decline",
    response_model=InvitationResponse,
    tags=["Invitations"],
)
async def decline_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _respond(invitation_id, Action.DECLINE, user, db)


@app.post(
    "/v1/invitations/{invitation_id}/ignore",
    response_model=InvitationResponse,
    tags=["Invitations"],
)
async def ignore_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _respond(invitation_id, Action.IGNORE, user, db)


@app.post(
    "/v1/invitations/{invitation_id}/cancel",
    response_model=InvitationResponse,
    tags=["Invitations"],
)
async def cancel_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _respond(invitation_id, Action.CANCEL, user, db)


@app.post(
    "/v1/invitations/{invitation_id}/resend",
    response_model=InvitationResponse,
    tags=["Invitations"],
)
async def resend_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    inv = await _get_invitation(db, invitation_id)
    if inv.sender_user_id != user.user_id:
        raise NotInvitationParty("Only the sender can resend this invitation")

    stored, new_status = await _transition(db, inv, Action.RESEND, now)
    recipient_user_id = inv.recipient_user_id
    if recipient_user_id is None:
        result = await db.execute(
            select(User.user_id).where(func.lower(User.email) == inv.recipient_email.lower())
        )
        recipient_user_id = result.scalar_one_or_none()
    await _ensure_can_invite(
        db,
        user.user_id,
        recipient_user_id,
        inv.recipient_email,
        now,
        exclude_id=invitation_id,
    )
    expires_at = lifecycle.expiry_from(now, config.INVITATION_TTL_DAYS)

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        try:
            await _compare_and_set(
                db,
                invitation_id,
                stored,
                status=new_status.value,
                invite_code=lifecycle.generate_invite_code(),
                sent_at=now,
                responded_at=None,
                expires_at=expires_at,
            )
            await db.commit()
            break
        except IntegrityError:
            await db.rollback()
            logger.warning("Invite code collision on resend (attempt %d/%d)", attempt, MAX_CODE_ATTEMPTS)
    else:
        raise ConflictError("Could not allocate a unique invite code, try again")

    INVITATIONS_SENT_TOTAL.labels(kind="resend").inc()
    await _audit(db, user.user_id, invitation_id, "Invitation re-sent")
    inv = await _get_invitation(db, invitation_id, refresh=True)
    return _out(inv, now)


@app.post("/v1/invitations/expire", response_model=ExpireSweepResponse, tags=["Invitations"])
async def expire_invitations(db: AsyncSession = Depends(get_db)):
    """Sweep: mark every overdue pending invitation as expired."""
    count = await expire_overdue(db, utcnow())
    if count:
        logger.info("Expired %d overdue invitations", count)
    return ExpireSweepResponse(expired=count)


@app.get(
    "/v1/invitations/{invitation_id}",
    response_model=InvitationResponse,
    tags=["Invitations"],
)
async def get_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    inv = await _get_invitation(db, invitation_id)
    if inv.sender_user_id != user.user_id and not _is_recipient(
        inv, user.user_id, await _caller_email(db, user)
    ):
        raise NotInvitationParty("You are not part of this invitation")

    if lifecycle.effective_status(inv.status, inv.expires_at, now).value != inv.status:
        await expire_overdue(db, now, [inv.invitation_id])
    return _out(inv, now)
