"""Interfaces used by the compose-time injector and the dashboard badges."""
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import OpenEvent, TrackedEmail, from_db_time, upsert_tracked_email, utcnow
from .token import TrackingPayload, encode_token, new_email_id


def get_pixel_url(base_url: str, token: str) -> str:
    """Generate absolute pixel URL for a token."""
    return f"{base_url}/t/{token}.gif"


def get_heartbeat_url(base_url: str, token: str) -> str:
    return f"{base_url}/h/{token}.gif"


def issue_tracking_pixel_url(
    base_url: str,
    user_id: str,
    recipient: str,
    sender_email: Optional[str] = None,
    sent_at: Optional[datetime] = None,
) -> dict:
    """Mint a new email_id and the pixel URLs that carry it."""
    payload = TrackingPayload(
        user_id=user_id,
        email_id=new_email_id(),
        recipient=recipient,
        sender_email=sender_email,
        sent_at=sent_at or utcnow(),
    )
    token = encode_token(payload)
    return {
        "token": token,
        "pixel_url": get_pixel_url(base_url, token),
        "heartbeat_url": get_heartbeat_url(base_url, token),
        "email_id": payload.email_id,
        "sent_at": payload.sent_at,
        "payload": payload,
    }


async def register_tracked_email(db: AsyncSession, payload: TrackingPayload):
    """Create the TrackedEmail row at compose time, before any pixel hit."""
    await upsert_tracked_email(
        db,
        email_id=payload.email_id,
        user_id=payload.user_id,
        recipient=payload.recipient,
        sender_email=payload.sender_email,
        sent_at=payload.sent_at,
        created_at=utcnow(),
    )
    await db.commit()


async def get_aggregated_counts(db: AsyncSession, email_ids: list[str]) -> dict:
    """Open counts and genuine-open timestamps per email_id. Unknown ids are omitted."""
    if not email_ids:
        return {}

    genuine = and_(
        OpenEvent.email_id == TrackedEmail.email_id,
        OpenEvent.is_duplicate.is_(False),
        OpenEvent.is_sender_suppressed.is_(False),
    )
    result = await db.execute(
        select(
            TrackedEmail.email_id,
            TrackedEmail.open_count,
            TrackedEmail.sent_at,
            func.min(OpenEvent.opened_at),
            func.max(OpenEvent.opened_at),
        )
        .outerjoin(OpenEvent, genuine)
        .where(TrackedEmail.email_id.in_(set(email_ids)))
        .group_by(TrackedEmail.email_id, TrackedEmail.open_count, TrackedEmail.sent_at)
    )

    counts = {}
    for email_id, open_count, sent_at, first_opened_at, last_opened_at in result.all():
        counts[email_id] = {
            "open_count": open_count,
            "opened": open_count > 0,
            "sent_at": from_db_time(sent_at),
            "first_opened_at": from_db_time(first_opened_at),
            "last_opened_at": from_db_time(last_opened_at),
        }
    return counts
