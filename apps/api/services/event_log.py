"""Append-only job event log and error normalization helpers."""

from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker
from models.job_event import JobEvent

logger = logging.getLogger(__name__)


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[: max(int(limit), 0)]


def normalize_error(exc: BaseException) -> Dict[str, Any]:
    """Flatten an exception into message/code/stack with bounded lengths."""
    message = str(exc) or exc.__class__.__name__
    code = getattr(exc, "error_code", None) or getattr(exc, "status_code", None)
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "error_message": truncate(message, settings.ERROR_MESSAGE_MAX_CHARS),
        "error_code": code,
        "stack": truncate(stack, settings.ERROR_STACK_MAX_CHARS),
    }


async def write_event(
    db: AsyncSession,
    *,
    user_id: str,
    event_type: str,
    job_kind: Optional[str] = None,
    subject_id: Optional[str] = None,
    detail: Optional[Dict[str, Any]] = None,
) -> JobEvent:
    event = JobEvent(
        id=str(uuid.uuid4()),
        user_id=user_id,
        job_kind=job_kind,
        subject_id=subject_id,
        event_type=str(event_type)[:80],
        detail=detail if isinstance(detail, dict) else None,
    )
    db.add(event)
    await db.flush()
    return event


async def record_event(
    *,
    user_id: str,
    event_type: str,
    job_kind: Optional[str] = None,
    subject_id: Optional[str] = None,
    detail: Optional[Dict[str, Any]] = None,
) -> None:
    """Best-effort event write in its own session; never breaks the job pipeline."""
    try:
        async with async_session_maker() as db:
            await write_event(
                db,
                user_id=user_id,
                event_type=event_type,
                job_kind=job_kind,
                subject_id=subject_id,
                detail=detail,
            )
            await db.commit()
    except Exception as exc:
        logger.warning(
            "job_event_insert_failed kind=%s subject_id=%s event=%s: %s",
            job_kind,
            subject_id,
            event_type,
            exc,
        )
