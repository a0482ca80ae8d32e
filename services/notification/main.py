# Run:
# uvicorn services.notification.main:app --host 0.0.0.0 --port 20001 --reload
# Docs: http://127.0.0.1:20001/docs

import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

# Load environment variables from .env file
load_dotenv()

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from common.errors import ERROR_STATUSES, BadRequestError, NotFoundError
from libs.auth.firebase_verify import CurrentUser, decode_token, get_current_user
from libs.db import get_db, utcnow
from libs.fastapi_service import FastAPIServiceFactory, ServiceAppConfig
from libs.guardian_notifications import sender_display_name, upsert_guardian_notification
from libs.socket_hub import SocketHub
from models.notification import GuardianNotification
from models.user_models import User

logger = logging.getLogger(__name__)

factory = FastAPIServiceFactory(
    ServiceAppConfig(
        title="Notification Service",
        description="In-app notifications from users to their guardians.",
        service_name="notification",
        error_statuses=ERROR_STATUSES,
    )
)
app = factory.create_app()

GUARDIAN_NOTIFICATIONS_TOTAL = factory.add_business_metric(
    "guardian_notifications_total",
    "Guardian notifications written",
    ["type"],
)

# Guardians' open sockets, keyed by the guardian's own user id
inbox = SocketHub()


class SendNotificationRequest(BaseModel):
    guardian_id: str
    message: str = Field(..., min_length=1)
    type: Literal["emergency", "location_share", "general"] = "general"
    metadata: Optional[Dict[str, Any]] = None


class NotificationResponse(BaseModel):
    notification_id: str
    guardian_id: str
    sender_id: str
    sender_name: str
    message: str
    type: str
    metadata: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class UnreadCountResponse(BaseModel):
    unread: int


class BulkResult(BaseModel):
    count: int


def _out(n: GuardianNotification) -> NotificationResponse:
    return NotificationResponse(
        notification_id=n.notification_id,
        guardian_id=n.guardian_id,
        sender_id=n.sender_id,
        sender_name=n.sender_name,
        message=n.message,
        type=n.type,
        metadata=n.meta,
        is_read=n.is_read,
        read_at=n.read_at,
        created_at=n.created_at,
    )


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.user_id == user_id))
    return result.scalar_one_or_none()


@app.get("/")
async def root():
    return {"service": "notification", "status": "running"}


@app.post(
    "/v1/notifications/send",
    response_model=NotificationResponse,
    tags=["Notifications"],
)
async def send_notification(
    body: SendNotificationRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Notify a guardian; replaces any earlier notification from the caller."""
    if body.guardian_id == user.user_id:
        raise BadRequestError("You cannot notify yourself")
    if await _get_user(db, body.guardian_id) is None:
        raise NotFoundError(f"Guardian {body.guardian_id} not found")

    sender = await _get_user(db, user.user_id)
    if sender is not None:
        sender_name = sender_display_name(sender)
    else:
        sender_name = user.name or user.email or sender_display_name(None)
    notification = await upsert_guardian_notification(
        db,
        guardian_id=body.guardian_id,
        sender_id=user.user_id,
        sender_name=sender_name,
        message=body.message,
        type=body.type,
        meta=body.metadata,
    )
    await db.commit()

    out = _out(notification)
    delivered = await inbox.publish(body.guardian_id, "notification", out.model_dump(mode="json"))
    GUARDIAN_NOTIFICATIONS_TOTAL.labels(type=body.type).inc()
    logger.info(
        "Notification %s -> %s (%s), pushed to %d socket(s)",
        user.user_id,
        body.guardian_id,
        body.type,
        delivered,
    )
    return out


@app.get(
    "/v1/notifications",
    response_model=List[NotificationResponse],
    tags=["Notifications"],
)
async def list_notifications(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(GuardianNotification)
        .where(GuardianNotification.guardian_id == user.user_id)
        .order_by(GuardianNotification.created_at.desc())
    )
    return [_out(n) for n in result.scalars().all()]


@app.get(
    "/v1/notifications/unread-count",
    response_model=UnreadCountResponse,
    tags=["Notifications"],
)
async def unread_count(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(func.count())
        .select_from(GuardianNotification)
        .where(
            GuardianNotification.guardian_id == user.user_id,
            GuardianNotification.is_read.is_(False),
        )
    )
    return UnreadCountResponse(unread=result.scalar_one())


@app.post(
    "/v1/notifications/read-all",
    response_model=BulkResult,
    tags=["Notifications"],
)
async def mark_all_read(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(GuardianNotification)
        .where(
            GuardianNotification.guardian_id == user.user_id,
            GuardianNotification.is_read.is_(False),
        )
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return BulkResult(count=result.rowcount or 0)


@app.post(
    "/v1/notifications/{sender_id}/read",
    response_model=NotificationResponse,
    tags=["Notifications"],
)
async def mark_read(
    sender_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(GuardianNotification).where(
            GuardianNotification.guardian_id == user.user_id,
            GuardianNotification.sender_id == sender_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFoundError(f"No notification from {sender_id}")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()
    return _out(notification)


@app.delete(
    "/v1/notifications",
    response_model=BulkResult,
    tags=["Notifications"],
)
async def clear_notifications(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(GuardianNotification)
        .where(GuardianNotification.guardian_id == user.user_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return BulkResult(count=result.rowcount or 0)


# ========= Internal =========


class PushRequest(BaseModel):
    sender_id: str


class PushResult(BaseModel):
    delivered: int


@app.post(
    "/internal/v1/notifications/{guardian_id}/push",
    response_model=PushResult,
    tags=["Internal"],
)
async def internal_push(
    guardian_id: str,
    body: PushRequest,
    db: AsyncSession = Depends(get_db),
):
    """Push a stored notification to the guardian's open sockets (SOS); cluster-internal only."""
    result = await db.execute(
        select(GuardianNotification).where(
            GuardianNotification.guardian_id == guardian_id,
            GuardianNotification.sender_id == body.sender_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFoundError(f"No notification from {body.sender_id}")

    delivered = await inbox.publish(
        guardian_id, "notification", _out(notification).model_dump(mode="json")
    )
    return PushResult(delivered=delivered)


@app.websocket("/v1/notifications/ws")
async def notification_socket(websocket: WebSocket, db: AsyncSession = Depends(get_db)):
    """Unread notifications on connect, then each new one as it is written."""
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
    result = await db.execute(
        select(GuardianNotification)
        .where(
            GuardianNotification.guardian_id == guardian_id,
            GuardianNotification.is_read.is_(False),
        )
        .order_by(GuardianNotification.created_at.desc())
    )
    unread = [_out(n).model_dump(mode="json") for n in result.scalars().all()]
    await db.close()

    await websocket.accept()
    inbox.subscribe(websocket, [guardian_id])
    logger.info("Guardian %s listening for notifications", guardian_id)
    try:
        await websocket.send_json({"event": "snapshot", "data": unread})
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_json({"event": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        inbox.unsubscribe(websocket)
