# Run:
# uvicorn services.user_management.main:app --host 0.0.0.0 --port 20000 --reload
# Docs: http://127.0.0.1:20000/docs

import logging
import os
import re
import sys
import uuid
from datetime import datetime
from typing import List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

# Load environment variables from .env file
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from common.errors import ERROR_STATUSES, BadRequestError, ConflictError, NotFoundError
from libs.audit_logger import write_audit
from libs.auth.firebase_verify import CurrentUser, get_current_user
from libs.auth.firebase_verify import router as auth_router
from libs.db import get_db, utcnow
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from libs.phone import clean_phone_number, has_minimum_digits
from models.user_models import EmergencyContact, FakeCallConfig, User
from services.user_management.fake_calls import (
    MAX_DELAY_SECONDS,
    TEMPLATES,
    emergency_fake_call,
)

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-z0-9_.]{3,30}$")
SEARCH_LIMIT = 10
IMPORTED_RELATION = "Imported Contact"

factory = FastAPIServiceFactory(
    ServiceAppConfig(
        title="User Management Service",
        description="Profiles, username search, emergency contacts and fake-call presets.",
        service_name="user_management",
        error_statuses=ERROR_STATUSES,
    )
)
app = factory.create_app()
app.include_router(auth_router)

CONTACTS_CREATED_TOTAL = factory.add_business_metric(
    "contacts_created_total",
    "Emergency contacts created",
    ["added_by"],
)


# ========= Models =========


class ProfileUpsertRequest(BaseModel):
    email: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None
    photo_url: Optional[str] = None


class UserResponse(BaseModel):
    user_id: str
    email: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    phone: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PublicUserResponse(BaseModel):
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class ContactCreateRequest(BaseModel):
    name: str
    phone: str
    relationship: str = "Contact"
    is_primary: bool = False
    email: Optional[str] = None


class ContactUpdateRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None
    is_primary: Optional[bool] = None
    email: Optional[str] = None


class ImportedContact(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class ContactImportRequest(BaseModel):
    contacts: List[ImportedContact]


class ContactResponse(BaseModel):
    contact_id: str
    name: str
    phone: str
    relationship: str
    is_primary: bool
    email: Optional[str] = None
    linked_user_id: Optional[str] = None
    added_by: Literal["manual", "import", "invitation"]
    created_at: datetime
    updated_at: datetime


class ContactImportResponse(BaseModel):
    success_count: int
    error_count: int
    contacts: List[ContactResponse]


class FakeCallTemplate(BaseModel):
    template_id: str
    caller_name: str
    phone: str
    delay_seconds: int


class FakeCallCreateRequest(BaseModel):
    caller_name: str
    phone: str
    ringtone: str = "default"
    delay_seconds: int = Field(10, ge=0, le=MAX_DELAY_SECONDS)
    is_enabled: bool = True
    avatar_url: Optional[str] = None


class FakeCallUpdateRequest(BaseModel):
    caller_name: Optional[str] = None
    phone: Optional[str] = None
    ringtone: Optional[str] = None
    delay_seconds: Optional[int] = Field(None, ge=0, le=MAX_DELAY_SECONDS)
    is_enabled: Optional[bool] = None
    avatar_url: Optional[str] = None


class FakeCallResponse(BaseModel):
    config_id: str
    caller_name: str
    phone: str
    ringtone: str
    delay_seconds: int
    is_enabled: bool
    avatar_url: Optional[str] = None


# ========= Helpers =========


def normalize_username(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


def _user_out(user: User) -> UserResponse:
    return UserResponse(
        user_id=user.user_id,
        email=user.email,
        username=user.username,
        display_name=user.display_name,
        phone=user.phone,
        photo_url=user.photo_url,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _public_user_out(user: User) -> PublicUserResponse:
    return PublicUserResponse(
        user_id=user.user_id,
        username=user.username,
        display_name=user.display_name,
        photo_url=user.photo_url,
    )


def _contact_out(contact: EmergencyContact) -> ContactResponse:
    return ContactResponse(
        contact_id=contact.contact_id,
        name=contact.name,
        phone=contact.phone,
        relationship=contact.relation,
        is_primary=contact.is_primary,
        email=contact.email,
        linked_user_id=contact.linked_user_id,
        added_by=contact.added_by,
        created_at=contact.created_at,
        updated_at=contact.updated_at,
    )


def _fake_call_out(cfg: FakeCallConfig) -> FakeCallResponse:
    return FakeCallResponse(
        config_id=cfg.config_id,
        caller_name=cfg.caller_name,
        phone=cfg.phone,
        ringtone=cfg.ringtone,
        delay_seconds=cfg.delay_seconds,
        is_enabled=cfg.is_enabled,
        avatar_url=cfg.avatar_url,
    )


def _require_phone(raw: Optional[str]) -> str:
    if not has_minimum_digits(raw):
        raise BadRequestError("Phone number must have at least 10 digits")
    return clean_phone_number(raw)


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


async def _get_own_contact(
    db: AsyncSession, user_id: str, contact_id: str
) -> EmergencyContact:
    result = await db.execute(
        select(EmergencyContact).where(
            EmergencyContact.contact_id == contact_id,
            EmergencyContact.user_id == user_id,
        )
    )
    contact = result.scalar_one_or_none()
    if contact is None:
        raise NotFoundError(f"Contact {contact_id} not found")
    return contact


async def _clear_primary(db: AsyncSession, user_id: str, keep_contact_id: Optional[str] = None):
    stmt = update(EmergencyContact).where(
        EmergencyContact.user_id == user_id,
        EmergencyContact.is_primary.is_(True),
    )
    if keep_contact_id:
        stmt = stmt.where(EmergencyContact.contact_id != keep_contact_id)
    await db.execute(stmt.values(is_primary=False))


async def _commit_or_conflict(db: AsyncSession, detail: str):
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.info("Integrity error: %s", e)
        raise ConflictError(detail) from e


async def _get_own_fake_call(db: AsyncSession, user_id: str, config_id: str) -> FakeCallConfig:
    result = await db.execute(
        select(FakeCallConfig).where(
            FakeCallConfig.config_id == config_id,
            FakeCallConfig.user_id == user_id,
        )
    )
    cfg = result.scalar_one_or_none()
    if cfg is None:
        raise NotFoundError(f"Fake call config {config_id} not found")
    return cfg


# ========= Users =========


@app.get("/")
async def root():
    return {"service": "user_management", "status": "running"}


@app.put("/v1/users/me", response_model=UserResponse, tags=["Users"])
async def upsert_profile(
    payload: ProfileUpsertRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    existing = await _get_user(db, user.user_id)

    email = (payload.email or user.email or (existing.email if existing else "")).strip().lower()
    if not email:
        raise BadRequestError("Email is required")

    username = None
    if payload.username is not None:
        username = normalize_username(payload.username)
        if not USERNAME_PATTERN.match(username):
            raise BadRequestError(
                "Username must be 3-30 characters of a-z, 0-9, '_' or '.'"
            )
        result = await db.execute(
            select(User.user_id).where(
                User.username == username, User.user_id != user.user_id
            )
        )
        if result.first() is not None:
            raise ConflictError("Username already taken")

    phone = None
    if payload.phone:
        phone = _require_phone(payload.phone)

    if existing is None:
        existing = User(
            user_id=user.user_id,
            email=email,
            username=username,
            display_name=payload.display_name or user.name,
            phone=phone,
            photo_url=payload.photo_url,
            created_at=now,
            updated_at=now,
        )
        db.add(existing)
        logger.info("Creating profile for %s", user.user_id)
    else:
        existing.email = email
        if username is not None:
            existing.username = username
        if payload.display_name is not None:
            existing.display_name = payload.display_name
        if phone is not None:
            existing.phone = phone
        if payload.photo_url is not None:
            existing.photo_url = payload.photo_url
        existing.updated_at = now

    await _commit_or_conflict(db, "Email or username already in use")
    await write_audit(
        db=db,
        event_type="user_management",
        message="Profile saved",
        user_id=user.user_id,
        event_id=user.user_id,
        commit=True,
    )
    return _user_out(existing)


@app.get("/v1/users/me", response_model=UserResponse, tags=["Users"])
async def get_profile(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    db_user = await _get_user(db, user.user_id)
    if db_user is None:
        raise NotFoundError("Profile not found")
    return _user_out(db_user)


@app.get("/v1/users/search", response_model=List[PublicUserResponse], tags=["Users"])
async def search_users(
    q: str = Query("", description="Username prefix"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    prefix = normalize_username(q)
    if not prefix:
        return []

    result = await db.execute(
        select(User)
        .where(
            User.username.startswith(prefix, autoescape=True),
            User.user_id != user.user_id,
        )
        .order_by(User.username)
        .limit(SEARCH_LIMIT)
    )
    return [_public_user_out(u) for u in result.scalars().all()]


@app.get("/v1/users/{user_id}", response_model=PublicUserResponse, tags=["Users"])
async def get_user(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    db_user = await _get_user(db, user_id)
    if db_user is None:
        raise NotFoundError(f"User {user_id} not found")
    return _public_user_out(db_user)


# ========= Emergency contacts =========


@app.post(
    "/v1/users/me/contacts",
    response_model=ContactResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Emergency Contacts"],
)
async def add_contact(
    payload: ContactCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    name = payload.name.strip()
    if not name:
        raise BadRequestError("Name is required")
    phone = _require_phone(payload.phone)

    if payload.is_primary:
        await _clear_primary(db, user.user_id)

    now = utcnow()
    contact = EmergencyContact(
        contact_id=f"ctc_{uuid.uuid4().hex[:12]}",
        user_id=user.user_id,
        name=name,
        phone=phone,
        relation=(payload.relationship or "Contact").strip() or "Contact",
        is_primary=payload.is_primary,
        email=payload.email,
        added_by="manual",
        created_at=now,
        updated_at=now,
    )
    db.add(contact)
    await _commit_or_conflict(db, "Could not add contact")

    CONTACTS_CREATED_TOTAL.labels(added_by="manual").inc()
    await write_audit(
        db=db,
        event_type="user_management",
        message=f"Emergency contact added: {name}",
        user_id=user.user_id,
        event_id=contact.contact_id,
        commit=True,
    )
    return _contact_out(contact)


@app.post(
    "/v1/users/me/contacts/import",
    response_model=ContactImportResponse,
    tags=["Emergency Contacts"],
)
async def import_contacts(
    payload: ContactImportRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    created: List[EmergencyContact] = []
    errors = 0

    for entry in payload.contacts:
        phone = clean_phone_number(entry.phone)
        if not phone:
            errors += 1
            continue
        contact = EmergencyContact(
            contact_id=f"ctc_{uuid.uuid4().hex[:12]}",
            user_id=user.user_id,
            name=(entry.name or "").strip() or phone,
            phone=phone,
            relation=IMPORTED_RELATION,
            is_primary=False,
            added_by="import",
            created_at=now,
            updated_at=now,
        )
        db.add(contact)
        created.append(contact)

    if created:
        await _commit_or_conflict(db, "Could not import contacts")
        CONTACTS_CREATED_TOTAL.labels(added_by="import").inc(len(created))

    logger.info(
        "Imported %d contacts for %s (%d skipped)", len(created), user.user_id, errors
    )
    return ContactImportResponse(
        success_count=len(created),
        error_count=errors,
        contacts=[_contact_out(c) for c in created],
    )


@app.get(
    "/v1/users/me/contacts",
    response_model=List[ContactResponse],
    tags=["Emergency Contacts"],
)
async def list_contacts(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EmergencyContact)
        .where(EmergencyContact.user_id == user.user_id)
        .order_by(EmergencyContact.is_primary.desc(), EmergencyContact.name)
    )
    return [_contact_out(c) for c in result.scalars().all()]


@app.patch(
    "/v1/users/me/contacts/{contact_id}",
    response_model=ContactResponse,
    tags=["Emergency Contacts"],
)
async def update_contact(
    contact_id: str,
    payload: ContactUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    contact = await _get_own_contact(db, user.user_id, contact_id)

    if payload.name is not None:
        name = payload.name.strip()
        if not name:
            raise BadRequestError("Name is required")
        contact.name = name
    if payload.phone is not None:
        contact.phone = _require_phone(payload.phone)
    if payload.relationship is not None:
        contact.relation = payload.relationship.strip() or "Contact"
    if payload.email is not None:
        contact.email = payload.email
    if payload.is_primary is not None:
        if payload.is_primary:
            await _clear_primary(db, user.user_id, keep_contact_id=contact_id)
        contact.is_primary = payload.is_primary

    contact.updated_at = utcnow()
    await _commit_or_conflict(db, "Could not update contact")
    return _contact_out(contact)


@app.delete("/v1/users/me/contacts/{contact_id}", tags=["Emergency Contacts"])
async def delete_contact(
    contact_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    contact = await _get_own_contact(db, user.user_id, contact_id)
    await db.delete(contact)
    await db.commit()

    await write_audit(
        db=db,
        event_type="user_management",
        message=f"Emergency contact removed: {contact.name}",
        user_id=user.user_id,
        event_id=contact_id,
        commit=True,
    )
    return {"status": "deleted", "contact_id": contact_id}


@app.post(
    "/v1/users/me/contacts/{contact_id}/primary",
    response_model=ContactResponse,
    tags=["Emergency Contacts"],
)
async def set_primary_contact(
    contact_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    contact = await _get_own_contact(db, user.user_id, contact_id)
    await _clear_primary(db, user.user_id, keep_contact_id=contact_id)
    contact.is_primary = True
    contact.updated_at = utcnow()
    await db.commit()
    return _contact_out(contact)


# ========= Fake calls =========


@app.get(
    "/v1/fake-calls/templates",
    response_model=List[FakeCallTemplate],
    tags=["Fake Calls"],
)
async def list_fake_call_templates():
    return [FakeCallTemplate(**t) for t in TEMPLATES]


@app.post("/v1/fake-calls/emergency", response_model=FakeCallResponse, tags=["Fake Calls"])
async def emergency_fake_call_preset(user: CurrentUser = Depends(get_current_user)):
    return FakeCallResponse(**emergency_fake_call())


@app.post(
    "/v1/fake-calls",
    response_model=FakeCallResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Fake Calls"],
)
async def create_fake_call(
    payload: FakeCallCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    cfg = FakeCallConfig(
        config_id=f"fcc_{uuid.uuid4().hex[:12]}",
        user_id=user.user_id,
        caller_name=payload.caller_name,
        phone=payload.phone,
        ringtone=payload.ringtone,
        delay_seconds=payload.delay_seconds,
        is_enabled=payload.is_enabled,
        avatar_url=payload.avatar_url,
        created_at=now,
        updated_at=now,
    )
    db.add(cfg)
    await _commit_or_conflict(db, "Could not save fake call")
    return _fake_call_out(cfg)


@app.get("/v1/fake-calls", response_model=List[FakeCallResponse], tags=["Fake Calls"])
async def list_fake_calls(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(FakeCallConfig)
        .where(FakeCallConfig.user_id == user.user_id)
        .order_by(FakeCallConfig.created_at)
    )
    return [_fake_call_out(c) for c in result.scalars().all()]


@app.patch(
    "/v1/fake-calls/{config_id}",
    response_model=FakeCallResponse,
    tags=["Fake Calls"],
)
async def update_fake_call(
    config_id: str,
    payload: FakeCallUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cfg = await _get_own_fake_call(db, user.user_id, config_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(cfg, field, value)
    cfg.updated_at = utcnow()
    await db.commit()
    return _fake_call_out(cfg)


@app.delete("/v1/fake-calls/{config_id}", tags=["Fake Calls"])
async def delete_fake_call(
    config_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    cfg = await _get_own_fake_call(db, user.user_id, config_id)
    await db.delete(cfg)
    await db.commit()
    return {"status": "deleted", "config_id": config_id}
