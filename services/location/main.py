# Run:
# uvicorn services.location.main:app --host 0.0.0.0 --port 20003 --reload
# Docs: http://127.0.0.1:20003/docs

import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

# Load environment variables from .env file
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from common.errors import ERROR_STATUSES, ForbiddenError, NotFoundError
from libs.audit_logger import write_audit
from libs.auth.firebase_verify import CurrentUser, decode_token, get_current_user
from libs.config import config
from libs.db import get_db, utcnow
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from libs.geocoding import reverse_geocode
from libs.socket_hub import SocketHub
from models.location import LiveLocation
from models.user_models import EmergencyContact
from services.location.cache import LiveLocationCache, snapshot_of
from services.location.presence import NOT_SHARING, last_seen_text

logger = logging.getLogger(__name__)

ACTIVE, PAUSED, FINISHED = "active", "paused", "finished"

factory = FastAPIServiceFactory(
    ServiceAppConfig(
        title="Live Location Service",
        description="Live location sharing and guardian fan-out.",
        service_name="location",
        error_statuses=ERROR_STATUSES,
        health_checks={"redis": lambda: cache.is_available()},
    )
)
app = factory.create_app()

LIVE_LOCATION_UPDATES_TOTAL = factory.add_business_metric(
    "live_location_updates_total",
    "Live location writes",
    ["action"],
)

cache = LiveLocationCache()
hub = SocketHub()


# ========= Models =========


class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class LiveLocationResponse(BaseModel):
    user_id: str
    lat: float
    lon: float
    address: Optional[str] = None
    status: str
    updated_at: datetime


class SharingResponse(BaseModel):
    user_id: str
    is_sharing: bool


class LiveGuardianResponse(BaseModel):
    contact_id: str
    name: str
    phone: str
    relationship: str
    linked_user_id: str
    is_sharing: bool
    last_seen_text: str
    location: Optional[LiveLocationResponse] = None


class LocationConfigResponse(BaseModel):
    refresh_seconds: int
    cache_ttl_seconds: int


# ========= Helpers =========


async def _get_row(db: AsyncSession, user_id: str) -> Optional[LiveLocation]:
    result = await db.execute(select(LiveLocation).where(LiveLocation.user_id == user_id))
    return result.scalar_one_or_none()


async def load_location(db: AsyncSession, user_id: str) -> Optional[Dict[str, Any]]:
    """Cached snapshot, falling back to the row (and re-filling the cache)."""
    cached = cache.get(user_id)
    if cached is not None:
        return cached

    row = await _get_row(db, user_id)
    if row is None:
        return None
    snapshot = snapshot_of(row)
    cache.put(snapshot)
    return snapshot


async def _is_guardian_of(db: AsyncSession, guardian_id: str, user_id: str) -> bool:
    result = await db.execute(
        select(EmergencyContact.contact_id).where(
            EmergencyContact.user_id == user_id,
            EmergencyContact.linked_user_id == guardian_id,
        )
    )
    return result.first() is not None


async def watchable_user_ids(db: AsyncSession, guardian_id: str) -> Set[str]:
    """Users who list `guardian_id` as one of their emergency contacts."""
    result = await db.execute(
        select(EmergencyContact.user_id).where(EmergencyContact.linked_user_id == guardian_id)
    )
    return {uid for uid in result.scalars().all() if uid != guardian_id}


async def _require_viewer(db: AsyncSession, viewer_id: str, user_id: str) -> None:
    if viewer_id != user_id and not await _is_guardian_of(db, viewer_id, user_id):
        raise ForbiddenError("You are not a guardian of this user")


async def _publish(snapshot: Dict[str, Any], action: str) -> None:
    LIVE_LOCATION_UPDATES_TOTAL.labels(action=action).inc()
    cache.put(snapshot)
    delivered = await hub.publish(snapshot["user_id"], "location", snapshot)
    if delivered:
        logger.debug("Location of %s pushed to %d watchers", snapshot["user_id"], delivered)


async def start_sharing(
    db: AsyncSession, user_id: str, payload: LocationIn
) -> Dict[str, Any]:
    """Upsert the user's row as active; geocode when no address is given."""
    address = payload.address
    if not address:
        address = await reverse_geocode(payload.lat, payload.lon)

    now = utcnow()
    row = await _get_row(db, user_id)
    if row is None:
        row = LiveLocation(user_id=user_id)
        db.add(row)
    row.lat = payload.lat
    row.lon = payload.lon
    row.address = address
    row.status = ACTIVE
    row.updated_at = now
    await db.commit()

    snapshot = snapshot_of(row)
    await _publish(snapshot, "start")
    await write_audit(
        db=db,
        event_type="location",
        message="Live location sharing started",
        user_id=user_id,
        event_id=user_id,
        commit=True,
    )
    logger.info("Live location sharing started for %s", user_id)
    return snapshot


async def _set_status(db: AsyncSession, user_id: str, status: str) -> Dict[str, Any]:
    row = await _get_row(db, user_id)
    if row is None:
        raise NotFoundError("No live location session; start sharing first")
    row.status = status
    row.updated_at = utcnow()
    await db.commit()

    snapshot = snapshot_of(row)
    await _publish(snapshot, "pause" if status == PAUSED else "stop")
    return snapshot


# ========= Routes =========


@app.get("/")
async def root():
    return {"service": "location", "status": "running"}


@app.get(
    "/v1/live-locations/config",
    response_model=LocationConfigResponse,
    tags=["Live location"],
)
async def location_config():
    return LocationConfigResponse(
        refresh_seconds=config.LOCATION_REFRESH_SECONDS,
        cache_ttl_seconds=cache.ttl,
    )


@app.post(
    "/v1/live-locations/me/start",
    response_model=LiveLocationResponse,
    tags=["Live location"],
)
async def start_my_location(
    payload: LocationIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return LiveLocationResponse(**await start_sharing(db, user.user_id, payload))


@app.post(
    "/v1/live-locations/me/update",
    response_model=LiveLocationResponse,
    tags=["Live location"],
)
async def update_my_location(
    payload: LocationIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    row = await _get_row(db, user.user_id)
    if row is None:
        raise NotFoundError("No live location session; start sharing first")

    row.lat = payload.lat
    row.lon = payload.lon
    if payload.address:
        row.address = payload.address
    row.status = ACTIVE
    row.updated_at = utcnow()
    await db.commit()

    snapshot = snapshot_of(row)
    await _publish(snapshot, "update")
    return LiveLocationResponse(**snapshot)


@app.post(
    "/v1/live-locations/me/pause",
    response_model=LiveLocationResponse,
    tags=["Live location"],
)
async def pause_my_location(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return LiveLocationResponse(**await _set_status(db, user.user_id, PAUSED))


@app.post(
    "/v1/live-locations/me/stop",
    response_model=LiveLocationResponse,
    tags=["Live location"],
)
async def stop_my_location(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await _set_status(db, user.user_id, FINISHED)
    await write_audit(
        db=db,
        event_type="location",
        message="Live location sharing stopped",
        user_id=user.user_id,
        event_id=user.user_id,
        commit=True,
    )
    return LiveLocationResponse(**snapshot)


@app.get(
    "/v1/live-locations/me",
    response_model=LiveLocationResponse,
    tags=["Live location"],
)
async def get_my_location(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await load_location(db, user.user_id)
    if snapshot is None:
        raise NotFoundError("No live location session")
    return LiveLocationResponse(**snapshot)


@app.get(
    "/v1/guardians/live",
    response_model=List[LiveGuardianResponse],
    tags=["Guardians"],
)
async def live_guardians(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's app-user contacts with their sharing state, sharing first."""
    now = utcnow()
    result = await db.execute(
        select(EmergencyContact)
        .where(
            EmergencyContact.user_id == user.user_id,
            EmergencyContact.linked_user_id.is_not(None),
        )
        .order_by(EmergencyContact.name)
    )

    guardians = []
    for contact in result.scalars().all():
        snapshot = await load_location(db, contact.linked_user_id)
        location = LiveLocationResponse(**snapshot) if snapshot else None
        sharing = location is not None and location.status == ACTIVE
        guardians.append(
            LiveGuardianResponse(
                contact_id=contact.contact_id,
                name=contact.name,
                phone=contact.phone,
                relationship=contact.relation,
                linked_user_id=contact.linked_user_id,
                is_sharing=sharing,
                last_seen_text=last_seen_text(location.updated_at, now)
                if sharing
                else NOT_SHARING,
                location=location if sharing else None,
            )
        )

    guardians.sort(key=lambda g: not g.is_sharing)
    return guardians


@app.websocket("/v1/live-locations/ws")
async def live_location_socket(websocket: WebSocket, db: AsyncSession = Depends(get_db)):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return
    try:
        claims = await run_in_threadpool(decode_token, token)
    except HTTPException:
        await websocket.close(code=4003, reason="Invalid token")
        return

    guardian_id = claims["sub"]
    watched = await watchable_user_ids(db, guardian_id)
    snapshots = [s for s in [await load_location(db, uid) for uid in sorted(watched)] if s]
    # Release the connection; the socket may stay open for hours
    await db.close()

    await websocket.accept()
    hub.subscribe(websocket, watched)
    logger.info("Guardian %s watching %d users", guardian_id, len(watched))
    try:
        await websocket.send_json({"event": "snapshot", "data": snapshots})
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(websocket)


@app.get(
    "/v1/live-locations/{user_id}",
    response_model=LiveLocationResponse,
    tags=["Live location"],
)
async def get_user_location(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _require_viewer(db, user.user_id, user_id)
    snapshot = await load_location(db, user_id)
    if snapshot is None:
        raise NotFoundError(f"User {user_id} has no live location")
    return LiveLocationResponse(**snapshot)


@app.get(
    "/v1/live-locations/{user_id}/sharing",
    response_model=SharingResponse,
    tags=["Live location"],
)
async def get_sharing(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _require_viewer(db, user.user_id, user_id)
    snapshot = await load_location(db, user_id)
    return SharingResponse(
        user_id=user_id,
        is_sharing=bool(snapshot) and snapshot["status"] == ACTIVE,
    )


# ========= Internal =========


@app.post(
    "/internal/v1/live-locations/{user_id}/start",
    response_model=LiveLocationResponse,
    tags=["Internal"],
)
async def internal_start(
    user_id: str,
    payload: LocationIn,
    db: AsyncSession = Depends(get_db),
):
    """Start sharing on a user's behalf (SOS trigger); cluster-internal only."""
    return LiveLocationResponse(**await start_sharing(db, user_id, payload))
