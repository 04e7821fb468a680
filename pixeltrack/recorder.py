"""
Open event recorder: the suppression and deduplication core.

Every pixel hit goes through record_open(), which, under a per-email_id lock
and inside one database transaction:

1. upserts the TrackedEmail identity row (open_count untouched),
2. checks the trailing dedup window against DUPLICATE_RULES,
3. checks sender suppression (send guard, sender fingerprint, signal store),
4. resolves geo fields (best effort),
5. inserts the OpenEvent row, always,
6. bumps open_count only for genuine opens,
7. returns the classification and the resulting counter.

Classification is only used for logging. The pixel response never depends on it.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import OpenEvent, TrackedEmail, to_db_time, upsert_tracked_email
from .errors import GeoLookupFailure, PersistenceFailure
from .geoip import EMPTY_GEO, GeoDetails, lookup_ip
from .proxy_detection import detect_device_type, detect_proxy_type, is_proxy_user_agent, normalize_ip
from .signals import NO_MATCH, SignalMatch
from .token import TrackingPayload

logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"
SEND_GUARD = "send_guard"
SENDER_FINGERPRINT = "sender_fingerprint"


@dataclass(frozen=True)
class PixelHit:
    payload: TrackingPayload
    ip_address: Optional[str]
    user_agent: Optional[str]
    opened_at: datetime

    @property
    def fingerprint(self) -> tuple:
        return (normalize_ip(self.ip_address), self.user_agent or "")

    @property
    def proxy_type(self) -> Optional[str]:
        return detect_proxy_type(self.ip_address, self.user_agent or "")


@dataclass(frozen=True)
class RecordOpenResult:
    email_id: str
    is_duplicate: bool
    is_sender_suppressed: bool
    suppression_reason: Optional[str]
    open_count: int

    @property
    def counted(self) -> bool:
        return not self.is_duplicate and not self.is_sender_suppressed


def _fingerprint(event: OpenEvent) -> tuple:
    return (normalize_ip(event.ip_address), event.user_agent or "")


def exact_fingerprint(hit: PixelHit, prior: OpenEvent) -> bool:
    """Same IP and same user agent."""
    return hit.fingerprint == _fingerprint(prior)


def proxy_user_agent(hit: PixelHit, prior: OpenEvent) -> bool:
    """Proxy infrastructure rotates IPs; match on the proxy user agent alone."""
    return is_proxy_user_agent(hit.user_agent) and (hit.user_agent or "") == (prior.user_agent or "")


def proxy_window(hit: PixelHit, prior: OpenEvent) -> bool:
    """Any proxy-tagged hit inside the window, regardless of agent string."""
    if hit.proxy_type is None:
        return False
    return detect_proxy_type(prior.ip_address, prior.user_agent or "") is not None


# Evaluated independently; any match makes the hit a duplicate
DUPLICATE_RULES: tuple[tuple[str, Callable[[PixelHit, OpenEvent], bool]], ...] = (
    ("exact_fingerprint", exact_fingerprint),
    ("proxy_user_agent", proxy_user_agent),
    ("proxy_window", proxy_window),
)


def find_duplicate_rule(hit: PixelHit, window_events) -> Optional[str]:
    """Name of the first rule that matches any event in the window, else None."""
    for name, rule in DUPLICATE_RULES:
        if any(rule(hit, prior) for prior in window_events):
            return name
    return None


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, list] = {}

    def __len__(self):
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]


class OpenRecorder:
    def __init__(
        self,
        signals=None,
        geo_lookup: Callable[[Optional[str]], GeoDetails] = lookup_ip,
        dedup_window: timedelta = timedelta(seconds=30),
        sender_guard: timedelta = timedelta(seconds=5),
        locks: Optional[KeyedLock] = None,
    ):
        self.signals = signals
        self.geo_lookup = geo_lookup
        self.dedup_window = dedup_window
        self.sender_guard = sender_guard
        self.locks = locks or KeyedLock()

    async def record_open(self, db: AsyncSession, hit: PixelHit) -> RecordOpenResult:
        email_id = hit.payload.email_id
        async with self.locks.hold(email_id):
            try:
                result = await self._record(db, hit)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceFailure(f"Failed to record open for email_id={email_id}: {e}") from e
        return result

    async def _record(self, db: AsyncSession, hit: PixelHit) -> RecordOpenResult:
        payload = hit.payload

        await upsert_tracked_email(
            db,
            email_id=payload.email_id,
            user_id=payload.user_id,
            recipient=payload.recipient,
            sender_email=payload.sender_email,
            sent_at=payload.sent_at,
            created_at=hit.opened_at,
        )

        window_events = await self._window_events(db, hit)
        duplicate_rule = find_duplicate_rule(hit, window_events)
        is_duplicate = duplicate_rule is not None

        sender_reason = await self._sender_suppression(db, hit)
        is_sender_suppressed = sender_reason is not None
        suppression_reason = sender_reason or (DUPLICATE if is_duplicate else None)

        geo = self._resolve_geo(hit.ip_address)

        db.add(OpenEvent(
            email_id=payload.email_id,
            user_id=payload.user_id,
            recipient=payload.recipient,
            opened_at=to_db_time(hit.opened_at),
            ip_address=hit.ip_address,
            user_agent=hit.user_agent,
            device_type=detect_device_type(hit.user_agent),
            is_duplicate=is_duplicate,
            is_sender_suppressed=is_sender_suppressed,
            suppression_reason=suppression_reason,
            **geo.as_columns(),
        ))
        await db.flush()

        if not is_duplicate and not is_sender_suppressed:
            await db.execute(
                update(TrackedEmail)
                .where(TrackedEmail.email_id == payload.email_id)
                .values(open_count=TrackedEmail.open_count + 1)
            )

        count_result = await db.execute(
            select(TrackedEmail.open_count).where(TrackedEmail.email_id == payload.email_id)
        )
        open_count = count_result.scalar() or 0

        if duplicate_rule:
            logger.debug(f"Duplicate hit for email_id={payload.email_id} matched rule={duplicate_rule}")

        return RecordOpenResult(
            email_id=payload.email_id,
            is_duplicate=is_duplicate,
            is_sender_suppressed=is_sender_suppressed,
            suppression_reason=suppression_reason,
            open_count=open_count,
        )

    async def _window_events(self, db: AsyncSession, hit: PixelHit) -> list[OpenEvent]:
        window_start = to_db_time(hit.opened_at - self.dedup_window)
        result = await db.execute(
            select(OpenEvent)
            .where(OpenEvent.email_id == hit.payload.email_id)
            .where(OpenEvent.opened_at >= window_start)
            .where(OpenEvent.opened_at <= to_db_time(hit.opened_at))
            .order_by(OpenEvent.opened_at.desc())
        )
        return list(result.scalars().all())

    async def _sender_suppression(self, db: AsyncSession, hit: PixelHit) -> Optional[str]:
        """Return the sender-suppression reason for the hit, or None."""
        guard_end = hit.payload.sent_at + self.sender_guard

        # Consulted on every hit so a pending suppress-next signal is consumed exactly once
        match = self._check_signals(hit)

        if hit.opened_at <= guard_end:
            return SEND_GUARD

        if await self._matches_guard_window_fingerprint(db, hit, guard_end):
            return SENDER_FINGERPRINT

        if match.suppressed:
            return match.reason
        return None

    def _check_signals(self, hit: PixelHit) -> SignalMatch:
        if self.signals is None:
            return NO_MATCH
        return self.signals.check(hit.payload.email_id, hit.ip_address, hit.user_agent, hit.opened_at)

    async def _matches_guard_window_fingerprint(self, db: AsyncSession, hit: PixelHit, guard_end: datetime) -> bool:
        """An earlier hit with this exact fingerprint landed inside the send guard window."""
        result = await db.execute(
            select(OpenEvent.ip_address, OpenEvent.user_agent)
            .where(OpenEvent.email_id == hit.payload.email_id)
            .where(OpenEvent.opened_at <= to_db_time(guard_end))
            .order_by(OpenEvent.opened_at.asc())
        )
        for ip_address, user_agent in result.all():
            if (normalize_ip(ip_address), user_agent or "") == hit.fingerprint:
                return True
        return False

    def _resolve_geo(self, ip_address: Optional[str]) -> GeoDetails:
        try:
            return self.geo_lookup(ip_address)
        except GeoLookupFailure as e:
            logger.warning(str(e))
        except Exception as e:
            logger.warning(f"GeoIP lookup failed for {ip_address}: {e}")
        return EMPTY_GEO
