from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from json import JSONDecodeError
import asyncio
import base64
import logging

from ..database import get_db, utcnow, to_db_time, SenderHeartbeat
from ..errors import InvalidToken, MissingIdentifier, PersistenceFailure
from ..proxy_detection import normalize_ip
from ..recorder import PixelHit
from ..signals import to_ms
from ..token import decode_token

logger = logging.getLogger(__name__)

router = APIRouter()

# 1x1 transparent GIF (43 bytes)
PIXEL_GIF = base64.b64decode(
    "R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7"
)

PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def pixel_response() -> Response:
    """The only response a pixel fetch ever gets, whatever happened while recording it."""
    return Response(content=PIXEL_GIF, media_type="image/gif", headers=PIXEL_HEADERS)


def get_client_ip(request: Request) -> str | None:
    ip_address = request.headers.get("X-Forwarded-For") or request.headers.get("X-Real-IP")
    # Handle comma-separated list of IPs (from proxies)
    if ip_address and "," in ip_address:
        ip_address = ip_address.split(",")[0].strip()
    if not ip_address and request.client:
        ip_address = request.client.host
    return ip_address or None


def decode_pixel_token(token: str, kind: str):
    """Payload for a pixel token, or None when it cannot be used."""
    try:
        return decode_token(token)
    except InvalidToken as e:
        logger.info(f"Dropping {kind} with invalid token: {e}")
    except Exception as e:
        logger.exception(f"Failed to decode {kind} token: {e}")
    return None


async def record_pixel_hit(request: Request, db: AsyncSession, token: str):
    """Decode and classify one tracking pixel fetch. Never raises."""
    opened_at = utcnow()
    payload = decode_pixel_token(token, "pixel hit")
    if payload is None:
        return None

    ip_address = get_client_ip(request)
    hit = PixelHit(
        payload=payload,
        ip_address=ip_address,
        user_agent=request.headers.get("User-Agent") or None,
        opened_at=opened_at,
    )
    state = request.app.state

    try:
        result = await asyncio.wait_for(
            state.recorder.record_open(db, hit),
            timeout=state.settings.record_timeout_seconds,
        )
    except PersistenceFailure as e:
        logger.error(str(e))
        return None
    except asyncio.TimeoutError:
        logger.error(f"Timed out recording open for email_id={payload.email_id}")
        return None
    except Exception as e:
        # Log the error but don't break pixel delivery
        logger.exception(f"Failed to record open for email_id={payload.email_id}: {e}")
        return None

    logger.info(
        f"[pixel-hit] email_id={result.email_id} duplicate={int(result.is_duplicate)} "
        f"sender_suppressed={int(result.is_sender_suppressed)} reason={result.suppression_reason or '-'} "
        f"counted={int(result.counted)} unique_open_count={result.open_count} ip={ip_address or '-'}"
    )
    return result


async def record_heartbeat(request: Request, db: AsyncSession, token: str):
    """Store a sender heartbeat in memory and in the database. Never raises."""
    seen_at = utcnow()
    payload = decode_pixel_token(token, "heartbeat")
    if payload is None:
        return

    ip_address = get_client_ip(request)
    user_agent = request.headers.get("User-Agent") or None
    request.app.state.signal_stores["heartbeat"].record(payload.email_id, seen_at, ip_address, user_agent)

    try:
        db.add(SenderHeartbeat(
            email_id=payload.email_id,
            user_id=payload.user_id,
            sender_email=payload.sender_email,
            seen_at=to_db_time(seen_at),
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        await db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to store heartbeat for email_id={payload.email_id}: {e}")
        await db.rollback()
        return

    logger.info(f"[sender-heartbeat] email_id={payload.email_id} ip={normalize_ip(ip_address) or '-'}")


@router.get("/t/{token}.gif")
async def track_pixel(token: str, request: Request, db: AsyncSession = Depends(get_db)):
    # Always return pixel regardless of the outcome
    # This prevents information leakage
    await record_pixel_hit(request, db, token)
    return pixel_response()


@router.get("/h/{token}.gif")
async def heartbeat_pixel(token: str, request: Request, db: AsyncSession = Depends(get_db)):
    await record_heartbeat(request, db, token)
    return pixel_response()


@router.post("/mark-suppress-next")
async def mark_suppress_next(request: Request):
    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        body = None
    email_id = body.get("email_id") if isinstance(body, dict) else None

    now = utcnow()
    store = request.app.state.signal_stores["mark_suppress_next"]
    # Raises MissingIdentifier, rendered as a 400 by the app's exception handler
    recorded_at = store.mark(
        email_id,
        now,
        ip=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )

    return JSONResponse({
        "ok": True,
        "email_id": str(email_id).strip(),
        "recorded_at": recorded_at.isoformat(),
        "recorded_at_ms": to_ms(recorded_at),
    })


async def missing_identifier_handler(request: Request, exc: MissingIdentifier):
    return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})
