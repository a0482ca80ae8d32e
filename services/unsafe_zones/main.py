# Run:
# uvicorn services.unsafe_zones.main:app --host 0.0.0.0 --port 20004 --reload
# Docs: http://127.0.0.1:20004/docs

import logging
import os
import sys
import uuid
from datetime import datetime
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

# Load environment variables from .env file
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from common.constants import DEGREES_PER_KM, UNSAFE_ZONE_VERIFY_THRESHOLD
from common.errors import ERROR_STATUSES, NotFoundError
from libs.audit_logger import write_audit
from libs.auth.firebase_verify import CurrentUser, get_current_user
from libs.db import get_db, utcnow
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from models.unsafe_zone import UnsafeZone

logger = logging.getLogger(__name__)

factory = FastAPIServiceFactory(
    ServiceAppConfig(
        title="Unsafe Zones Service",
        description="User-reported unsafe places and community verification.",
        service_name="unsafe_zones",
        error_statuses=ERROR_STATUSES,
    )
)
app = factory.create_app()

UNSAFE_ZONE_REPORTS_TOTAL = factory.add_business_metric(
    "unsafe_zone_reports_total",
    "Unsafe zone reports and verifications",
    ["action"],
)


# ========= Models =========


class ReportZoneRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    reason: str = Field(..., max_length=500)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Please provide a reason for reporting this zone")
        return v


class UnsafeZoneResponse(BaseModel):
    zone_id: str
    user_id: str
    lat: float
    lon: float
    reason: str
    verified: bool
    verification_count: int
    created_at: datetime


def _out(zone: UnsafeZone) -> UnsafeZoneResponse:
    return UnsafeZoneResponse(
        zone_id=zone.zone_id,
        user_id=zone.user_id,
        lat=zone.lat,
        lon=zone.lon,
        reason=zone.reason,
        verified=zone.verified,
        verification_count=zone.verification_count,
        created_at=zone.created_at,
    )


def bounding_box(lat: float, lon: float, radius_km: float):
    """(min_lat, max_lat, min_lon, max_lon) around a point; same scale on both axes."""
    delta = radius_km * DEGREES_PER_KM
    return lat - delta, lat + delta, lon - delta, lon + delta


# ========= Routes =========


@app.get("/")
async def root():
    return {"service": "unsafe_zones", "status": "running"}


@app.post(
    "/v1/unsafe-zones",
    response_model=UnsafeZoneResponse,
    status_code=201,
    tags=["Unsafe Zones"],
)
async def report_zone(
    body: ReportZoneRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    zone = UnsafeZone(
        zone_id=f"zone_{uuid.uuid4().hex[:12]}",
        user_id=user.user_id,
        lat=body.lat,
        lon=body.lon,
        reason=body.reason,
        verified=False,
        verification_count=0,
        created_at=utcnow(),
    )
    db.add(zone)
    await db.commit()
    response = _out(zone)

    UNSAFE_ZONE_REPORTS_TOTAL.labels(action="report").inc()
    await write_audit(
        db=db,
        event_type="unsafe_zone",
        message=f"Unsafe zone reported: {body.reason}",
        user_id=user.user_id,
        event_id=response.zone_id,
        commit=True,
    )
    logger.info("Unsafe zone %s reported by %s", response.zone_id, user.user_id)
    return response


@app.get(
    "/v1/unsafe-zones/nearby",
    response_model=List[UnsafeZoneResponse],
    tags=["Unsafe Zones"],
)
async def nearby_zones(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(5.0, gt=0, le=100),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius_km)
    result = await db.execute(
        select(UnsafeZone)
        .where(
            UnsafeZone.lat.between(min_lat, max_lat),
            UnsafeZone.lon.between(min_lon, max_lon),
        )
        .order_by(UnsafeZone.created_at.desc())
    )
    return [_out(z) for z in result.scalars().all()]


@app.post(
    "/v1/unsafe-zones/{zone_id}/verify",
    response_model=UnsafeZoneResponse,
    tags=["Unsafe Zones"],
)
async def verify_zone(
    zone_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Add one confirmation; the zone becomes verified at the threshold."""
    new_count = UnsafeZone.verification_count + 1
    result = await db.execute(
        update(UnsafeZone)
        .where(UnsafeZone.zone_id == zone_id)
        .values(
            verification_count=new_count,
            verified=new_count >= UNSAFE_ZONE_VERIFY_THRESHOLD,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        await db.rollback()
        raise NotFoundError("Unsafe zone not found")
    await db.commit()

    zone = (
        await db.execute(
            select(UnsafeZone)
            .where(UnsafeZone.zone_id == zone_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    response = _out(zone)

    UNSAFE_ZONE_REPORTS_TOTAL.labels(action="verify").inc()
    await write_audit(
        db=db,
        event_type="unsafe_zone",
        message=f"Unsafe zone verified ({response.verification_count})",
        user_id=user.user_id,
        event_id=zone_id,
        commit=True,
    )
    return response
