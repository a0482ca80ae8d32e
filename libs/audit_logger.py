# libs/audit_logger.py
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

import common.storage as _storage
from models.audit import Audit, AuditEventType

logger = logging.getLogger(__name__)

ALLOWED_EVENT_TYPES = {e.value for e in AuditEventType}


def _normalize_event_type(event_type: str) -> str:
    et = (event_type or "").strip()
    if len(et) > 50:
        et = et[:50]
    return et


async def write_audit(
    *,
    db: AsyncSession,
    event_type: str,
    message: str,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    commit: bool = False,
) -> Optional[str]:
    """
    Write an audit record.

    Args:
        db: AsyncSession (usually the one from Depends(get_db))
        event_type: invitation / location / emergency / ...
        message: human-readable message (NOT NULL)
        user_id: who triggered the event (nullable)
        event_id: affected entity id (invitation_id / emergency_id / ...)
        commit: commit here instead of leaving it to the caller

    Returns:
        log_id on success, None on failure
    """
    if db is None:
        raise ValueError("write_audit requires an AsyncSession")

    et = _normalize_event_type(event_type)
    if et not in ALLOWED_EVENT_TYPES:
        logger.warning("Unknown audit event_type '%s', still logging.", et)

    msg = (message or "").strip() or "(no message)"

    audit_row = Audit(
        user_id=user_id,
        event_type=et,
        event_id=str(event_id) if event_id else None,
        message=msg,
    )

    try:
        db.add(audit_row)
        # flush assigns log_id without ending the transaction
        await db.flush()

        if commit:
            await db.commit()

        return audit_row.log_id

    except Exception as exc:
        logger.exception(
            "Audit write failed: event_type=%s user_id=%s event_id=%s error=%s",
            et,
            user_id,
            event_id,
            repr(exc),
        )
        _storage.audit_logs.append(
            {
                "event_type": et,
                "user_id": user_id,
                "event_id": str(event_id) if event_id else None,
                "message": msg,
                "error": repr(exc),
            }
        )
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback after failed audit write also failed")
        return None
