# Run:
# uvicorn services.sos.main:app --host 0.0.0.0 --port 20006 --reload
# Docs: http://127.0.0.1:20006/docs

import asyncio
import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

# Load environment variables from .env file
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from common.constants import NO_PHONE_MARKERS
from common.errors import ERROR_STATUSES, BadRequestError, ForbiddenError, NotFoundError
from libs import db as db_module
from libs.audit_logger import write_audit
from libs.auth.firebase_verify import CurrentUser, get_current_user
from libs.config import config
from libs.db import get_db, utcnow
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from libs.guardian_notifications import sender_display_name, upsert_guardian_notification
from libs.phone import dedupe_numbers
from models.emergency import EmergencyEvent
from models.location import LiveLocation
from models.user_models import EmergencyContact, User
from services.location.cache import LiveLocationCache, snapshot_of
from services.sos import dispatcher
from services.sos.countdown import Countdown, CountdownRegistry

logger = logging.getLogger(__name__)

countdowns = CountdownRegistry(default_seconds=config.SOS_COUNTDOWN_SECONDS)
location_cache = LiveLocationCache()


async def countdown_ticker(interval: float):
    """Fire due countdowns as automatic SOS triggers."""
    while True:
        await asyncio.sleep(interval)
        try:
            await fire_due_countdowns(utcnow())
        except Exception:
            logger.exception("SOS countdown tick failed")


@asynccontextmanager
async def lifespan(app):
    task = asyncio.create_task(countdown_ticker(config.SOS_TICK_SECONDS))
    logger.info("SOS countdown ticker started (every %ss)", config.SOS_TICK_SECONDS)
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


factory = FastAPIServiceFactory(
    ServiceAppConfig(
        title="SOS Service",
        description="SOS countdown, emergency triggers and alert fan-out.",
        service_name="sos",
        lifespan=lifespan,
        error_statuses=ERROR_STATUSES,
    )
)
app = factory.create_app()

SOS_TRIGGERS_TOTAL = factory.add_business_metric(
    "sos_triggers_total",
    "SOS emergencies triggered",
    ["trigger_type"],
)
SOS_SMS_TOTAL = factory.add_business_metric(
    "sos_sms_total",
    "SOS emergency SMS by outcome",
    ["status"],
)


# ========= Models =========


class TriggerRequest(BaseModel):
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lon: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = None


class CountdownRequest(TriggerRequest):
    seconds: Optional[int] = Field(None, ge=1, le=300)


class CountdownResponse(BaseModel):
    user_id: str
    seconds: int
    remaining_seconds: int
    enabled: bool
    triggered: bool


class CancelCountdownResponse(BaseModel):
    cancelled: bool


class SMSResult(BaseModel):
    phone: str
    status: Literal["queued", "sent", "failed"]
    channel: str
    sid: Optional[str] = None
    error: Optional[str] = None


class TriggerResponse(BaseModel):
    emergency_id: str
    trigger_type: Literal["manual", "automatic"]
    live_sharing: Literal["service", "direct"]
    message: str
    sms_results: List[SMSResult]
    sms_sent: int
    guardians_notified: int
    created_at: datetime


class EmergencyEventResponse(BaseModel):
    emergency_id: str
    lat: float
    lon: float
    address: str
    trigger_type: str
    resolved: bool
    created_at: datetime


class ResolveRequest(BaseModel):
    resolved: bool = True


# ========= Trigger pipeline =========


def _require_location(payload: TriggerRequest):
    if payload.lat is None or payload.lon is None:
        raise BadRequestError("Location is required to trigger SOS")
    return payload.lat, payload.lon


async def _write_live_location(
    db: AsyncSession, user_id: str, lat: float, lon: float, address: Optional[str]
) -> None:
    result = await db.execute(select(LiveLocation).where(LiveLocation.user_id == user_id))
    row = result.scalar_one_or_none()
    if row is None:
        row = LiveLocation(user_id=user_id)
        db.add(row)
    row.lat, row.lon, row.address = lat, lon, address
    row.status = "active"
    row.updated_at = utcnow()
    await db.commit()
    # Watchers read the cache before the row
    location_cache.put(snapshot_of(row))


async def run_trigger(
    db: AsyncSession,
    user_id: str,
    lat: float,
    lon: float,
    address: Optional[str],
    trigger_type: str,
) -> TriggerResponse:
    """
    Raise the alarm for `user_id`.

    Starts live sharing, records the EmergencyEvent, texts every contact with
    a valid number and notifies app-only guardians in-app.
    """
    user = (await db.execute(select(User).where(User.user_id == user_id))).scalar_one_or_none()
    if user is None:
        raise BadRequestError("Create your profile before using SOS")
    sender_name = sender_display_name(user)

    if await dispatcher.start_remote_sharing(user_id, lat, lon, address):
        live_sharing = "service"
    else:
        await _write_live_location(db, user_id, lat, lon, address)
        live_sharing = "direct"

    now = utcnow()
    event = EmergencyEvent(
        emergency_id=f"sos_{uuid.uuid4().hex[:12]}",
        user_id=user_id,
        lat=lat,
        lon=lon,
        address=address or dispatcher.NO_ADDRESS,
        trigger_type=trigger_type,
        resolved=False,
        created_at=now,
    )
    db.add(event)
    await db.commit()
    emergency_id = event.emergency_id
    SOS_TRIGGERS_TOTAL.labels(trigger_type=trigger_type).inc()
    logger.warning("SOS %s (%s) triggered by %s", emergency_id, trigger_type, user_id)

    message = dispatcher.compose_emergency_message(lat, lon, address)

    result = await db.execute(select(EmergencyContact).where(EmergencyContact.user_id == user_id))
    contacts = result.scalars().all()

    numbers = dedupe_numbers(c.phone for c in contacts)
    sms_results = await dispatcher.dispatch_sms(numbers, message, emergency_id, user_id)
    for r in sms_results:
        SOS_SMS_TOTAL.labels(status=r["status"]).inc()
    sms_sent = sum(1 for r in sms_results if r["status"] != "failed")

    meta: Dict[str, Any] = {
        "emergency_id": emergency_id,
        "latitude": lat,
        "longitude": lon,
        "address": address or dispatcher.NO_ADDRESS,
        "map_url": dispatcher.maps_url(lat, lon),
    }
    guardian_ids = sorted(
        {
            c.linked_user_id
            for c in contacts
            if c.linked_user_id and (c.phone or "").strip() in NO_PHONE_MARKERS
        }
    )
    for guardian_id in guardian_ids:
        await upsert_guardian_notification(
            db,
            guardian_id=guardian_id,
            sender_id=user_id,
            sender_name=sender_name,
            message=message,
            type="emergency",
            meta=meta,
        )
    await db.commit()
    if guardian_ids:
        await dispatcher.push_guardian_notifications(guardian_ids, user_id)

    await write_audit(
        db=db,
        event_type="emergency",
        message=f"SOS {trigger_type}: {sms_sent}/{len(numbers)} SMS, "
        f"{len(guardian_ids)} guardians notified",
        user_id=user_id,
        event_id=emergency_id,
        commit=True,
    )

    return TriggerResponse(
        emergency_id=emergency_id,
        trigger_type=trigger_type,
        live_sharing=live_sharing,
        message=message,
        sms_results=[SMSResult(**r) for r in sms_results],
        sms_sent=sms_sent,
        guardians_notified=len(guardian_ids),
        created_at=now,
    )


async def fire_due_countdowns(now: datetime, session_factory=None) -> List[str]:
    """Trigger every due countdown; returns the emergency ids raised."""
    session_factory = session_factory or db_module.AsyncSessionLocal
    raised = []
    for countdown in countdowns.take_due(now):
        try:
            async with session_factory() as db:
                summary = await run_trigger(
                    db,
                    countdown.user_id,
                    countdown.lat,
                    countdown.lon,
                    countdown.address,
                    "automatic",
                )
            raised.append(summary.emergency_id)
        except Exception:
            logger.exception("Automatic SOS for %s failed", countdown.user_id)
    return raised


def _countdown_out(countdown: Countdown, now: datetime) -> CountdownResponse:
    return CountdownResponse(
        user_id=countdown.user_id,
        seconds=countdown.seconds,
        remaining_seconds=countdown.remaining(now),
        enabled=countdown.enabled,
        triggered=countdown.triggered,
    )


# ========= Routes =========


@app.get("/")
async def root():
    return {"service": "sos", "status": "running"}


@app.post("/v1/sos/countdown", response_model=CountdownResponse, tags=["Countdown"])
async def arm_countdown(
    payload: CountdownRequest,
    user: CurrentUser = Depends(get_current_user),
):
    lat, lon = _require_location(payload)
    now = utcnow()
    countdown = countdowns.arm(user.user_id, now, lat, lon, payload.address, payload.seconds)
    logger.info("SOS countdown armed for %s (%ss)", user.user_id, countdown.seconds)
    return _countdown_out(countdown, now)


@app.get("/v1/sos/countdown", response_model=CountdownResponse, tags=["Countdown"])
async def get_countdown(user: CurrentUser = Depends(get_current_user)):
    return _countdown_out(countdowns.require(user.user_id), utcnow())


@app.post("/v1/sos/countdown/toggle", response_model=CountdownResponse, tags=["Countdown"])
async def toggle_countdown(user: CurrentUser = Depends(get_current_user)):
    now = utcnow()
    return _countdown_out(countdowns.toggle(user.user_id, now), now)


@app.delete("/v1/sos/countdown", response_model=CancelCountdownResponse, tags=["Countdown"])
async def cancel_countdown(user: CurrentUser = Depends(get_current_user)):
    return CancelCountdownResponse(cancelled=countdowns.cancel(user.user_id))


@app.post("/v1/sos/trigger", response_model=TriggerResponse, tags=["SOS"])
async def trigger_sos(
    payload: TriggerRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    lat, lon = _require_location(payload)
    countdowns.cancel(user.user_id)
    return await run_trigger(db, user.user_id, lat, lon, payload.address, "manual")


@app.get("/v1/sos/events", response_model=List[EmergencyEventResponse], tags=["SOS"])
async def list_events(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EmergencyEvent)
        .where(EmergencyEvent.user_id == user.user_id)
        .order_by(EmergencyEvent.created_at.desc())
    )
    return [
        EmergencyEventResponse(
            emergency_id=e.emergency_id,
            lat=e.lat,
            lon=e.lon,
            address=e.address,
            trigger_type=e.trigger_type,
            resolved=e.resolved,
            created_at=e.created_at,
        )
        for e in result.scalars().all()
    ]


@app.post(
    "/v1/sos/events/{emergency_id}/resolve",
    response_model=EmergencyEventResponse,
    tags=["SOS"],
)
async def resolve_event(
    emergency_id: str,
    payload: ResolveRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(EmergencyEvent).where(EmergencyEvent.emergency_id == emergency_id)
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFoundError(f"Emergency {emergency_id} not found")
    if event.user_id != user.user_id:
        raise ForbiddenError("Only the owner can resolve this emergency")

    event.resolved = payload.resolved
    await db.commit()
    response = EmergencyEventResponse(
        emergency_id=event.emergency_id,
        lat=event.lat,
        lon=event.lon,
        address=event.address,
        trigger_type=event.trigger_type,
        resolved=event.resolved,
        created_at=event.created_at,
    )
    await write_audit(
        db=db,
        event_type="emergency",
        message="SOS resolved" if payload.resolved else "SOS reopened",
        user_id=user.user_id,
        event_id=emergency_id,
        commit=True,
    )
    return response
