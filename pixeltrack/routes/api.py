from fastapi import APIRouter, Depends, HTTPException, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
import hmac

from ..database import get_db, TrackedEmail, OpenEvent
from ..tracking import issue_tracking_pixel_url, register_tracked_email, get_aggregated_counts

router = APIRouter(prefix="/api")

MAX_COUNT_IDS = 500
MAX_EVENTS = 1000


# Auth dependency
async def verify_api_key(request: Request, x_api_key: str = Header(None)):
    expected = request.app.state.settings.api_key
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True


# Pydantic models
class TrackCreate(BaseModel):
    user_id: str = Field(min_length=1)
    recipient: str = Field(min_length=1)
    sender_email: Optional[str] = None


class TrackIssued(BaseModel):
    token: str
    pixel_url: str
    heartbeat_url: str
    email_id: str
    sent_at: datetime


class CountsRequest(BaseModel):
    email_ids: List[str] = Field(max_length=MAX_COUNT_IDS)


class EmailCounts(BaseModel):
    open_count: int
    opened: bool
    sent_at: Optional[datetime] = None
    first_opened_at: Optional[datetime] = None
    last_opened_at: Optional[datetime] = None


class OpenEventResponse(BaseModel):
    id: int
    email_id: str
    user_id: str
    recipient: str
    opened_at: datetime
    ip_address: Optional[str]
    user_agent: Optional[str]
    geo_country: Optional[str]
    geo_region: Optional[str]
    geo_city: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    device_type: str
    is_duplicate: bool
    is_sender_suppressed: bool
    suppression_reason: Optional[str]

    class Config:
        from_attributes = True


class TrackResponse(BaseModel):
    email_id: str
    user_id: str
    recipient: str
    sender_email: Optional[str] = None
    sent_at: datetime
    open_count: int = 0
    opened: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TrackDetailResponse(TrackResponse):
    opens: List[OpenEventResponse] = []


class StatsResponse(BaseModel):
    total_tracks: int
    total_opens: int
    total_events: int
    tracks_with_opens: int


def _track_response(track: TrackedEmail) -> dict:
    return dict(
        email_id=track.email_id,
        user_id=track.user_id,
        recipient=track.recipient,
        sender_email=track.sender_email,
        sent_at=track.sent_at,
        open_count=track.open_count,
        opened=track.open_count > 0,
        created_at=track.created_at,
    )


@router.post("/tracks", response_model=TrackIssued)
async def create_track(
    track: TrackCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    auth: bool = Depends(verify_api_key)
):
    issued = issue_tracking_pixel_url(
        request.app.state.settings.base_url,
        user_id=track.user_id,
        recipient=track.recipient,
        sender_email=track.sender_email,
    )
    await register_tracked_email(db, issued["payload"])

    return TrackIssued(**{key: issued[key] for key in TrackIssued.model_fields})


@router.post("/counts", response_model=Dict[str, EmailCounts])
async def aggregated_counts(
    body: CountsRequest,
    db: AsyncSession = Depends(get_db),
    auth: bool = Depends(verify_api_key)
):
    return await get_aggregated_counts(db, body.email_ids)


@router.get("/tracks", response_model=List[TrackResponse])
async def list_tracks(
    user_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    auth: bool = Depends(verify_api_key)
):
    query = select(TrackedEmail).order_by(TrackedEmail.created_at.desc())
    if user_id:
        query = query.where(TrackedEmail.user_id == user_id)
    result = await db.execute(query)
    return [TrackResponse(**_track_response(track)) for track in result.scalars().all()]


@router.get("/tracks/{email_id}", response_model=TrackDetailResponse)
async def get_track(
    email_id: str,
    db: AsyncSession = Depends(get_db),
    auth: bool = Depends(verify_api_key)
):
    result = await db.execute(
        select(TrackedEmail).where(TrackedEmail.email_id == email_id)
    )
    track = result.scalar_one_or_none()

    if not track:
        raise HTTPException(status_code=404, detail="Track not found")

    opens_result = await db.execute(
        select(OpenEvent).where(OpenEvent.email_id == email_id).order_by(OpenEvent.opened_at.desc())
    )
    opens = opens_result.scalars().all()

    return TrackDetailResponse(
        **_track_response(track),
        opens=[OpenEventResponse.model_validate(o) for o in opens]
    )


@router.get("/open-events", response_model=List[OpenEventResponse])
async def list_open_events(
    email_id: Optional[str] = None,
    limit: int = Query(200, ge=1, le=MAX_EVENTS),
    db: AsyncSession = Depends(get_db),
    auth: bool = Depends(verify_api_key)
):
    query = select(OpenEvent).order_by(OpenEvent.opened_at.desc(), OpenEvent.id.desc()).limit(limit)
    if email_id:
        query = query.where(OpenEvent.email_id == email_id)
    result = await db.execute(query)
    return [OpenEventResponse.model_validate(o) for o in result.scalars().all()]


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    db: AsyncSession = Depends(get_db),
    auth: bool = Depends(verify_api_key)
):
    tracks_result = await db.execute(select(func.count(TrackedEmail.email_id)))
    total_tracks = tracks_result.scalar() or 0

    # Genuine opens are what the counters hold
    opens_result = await db.execute(select(func.sum(TrackedEmail.open_count)))
    total_opens = opens_result.scalar() or 0

    events_result = await db.execute(select(func.count(OpenEvent.id)))
    total_events = events_result.scalar() or 0

    with_opens_result = await db.execute(
        select(func.count(TrackedEmail.email_id)).where(TrackedEmail.open_count > 0)
    )
    tracks_with_opens = with_opens_result.scalar() or 0

    return StatsResponse(
        total_tracks=total_tracks,
        total_opens=total_opens,
        total_events=total_events,
        tracks_with_opens=tracks_with_opens
    )
