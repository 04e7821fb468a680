"""
Sender-signal stores.

A signal is evidence that a pixel hit is the sender looking at their own
message rather than the recipient opening it. Two interchangeable stores exist:

- SuppressNextStore: the sender's client calls /mark-suppress-next at send
  time and the next pixel hit for that email_id is suppressed (consume-once).
  Entries older than the TTL are dropped by cleanup.
- HeartbeatStore: the sender's client fetches a heartbeat pixel carrying the
  same token. A hit whose IP+UA matches a heartbeat seen within the look-back
  window is suppressed.

Both are bounded in memory and process-local. They share a SignalLog holding
the debug event ring buffer and latency samples read by the metrics endpoints.
"""
import logging
from collections import OrderedDict, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Deque, Optional

from .errors import MissingIdentifier
from .proxy_detection import is_google_image_proxy_hit, normalize_ip

logger = logging.getLogger(__name__)

MARK_SUPPRESS_NEXT = "mark_suppress_next"
SENDER_HEARTBEAT = "sender_heartbeat"

HEARTBEATS_PER_EMAIL = 20


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


@dataclass
class DebugEvent:
    event: str
    email_id: str
    at_ms: int
    ip: str = ""
    user_agent: str = ""
    delta_ms: Optional[int] = None
    pending_suppression: Optional[bool] = None

    def as_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class SignalMatch:
    suppressed: bool
    reason: Optional[str] = None
    delta_ms: Optional[int] = None


NO_MATCH = SignalMatch(suppressed=False)


class SignalLog:
    """Capped ring buffers of recent debug events and signal-to-hit latencies."""

    def __init__(self, event_limit: int = 5_000, latency_limit: int = 1_000):
        self.events: Deque[DebugEvent] = deque(maxlen=event_limit)
        self.latency_samples: Deque[int] = deque(maxlen=latency_limit)
        self.signal_count = 0

    def push(self, event: DebugEvent):
        self.events.append(event)

    def add_latency_sample(self, delta_ms: int):
        self.latency_samples.append(delta_ms)


class _SignalStore:
    mode = ""

    def __init__(self, window: timedelta, max_entries: int, log: SignalLog):
        self.window = window
        self.max_entries = max_entries
        self.log = log

    @property
    def ttl_ms(self) -> int:
        return int(self.window.total_seconds() * 1000)

    def _note_google_proxy_hit(self, email_id, now, ip, user_agent, match: SignalMatch):
        if not is_google_image_proxy_hit(user_agent, ip):
            return
        self.log.push(DebugEvent(
            event="google_proxy_hit",
            email_id=email_id,
            at_ms=to_ms(now),
            ip=normalize_ip(ip),
            user_agent=user_agent or "",
            delta_ms=match.delta_ms,
            pending_suppression=match.suppressed,
        ))


class SuppressNextStore(_SignalStore):
    """Explicit, consume-once suppression of the next hit per email_id."""

    mode = MARK_SUPPRESS_NEXT

    def __init__(self, ttl: timedelta = timedelta(seconds=10), max_entries: int = 10_000,
                 log: Optional[SignalLog] = None):
        super().__init__(ttl, max_entries, log or SignalLog())
        self._pending: "OrderedDict[str, datetime]" = OrderedDict()

    def __len__(self):
        return len(self._pending)

    def __contains__(self, email_id):
        return email_id in self._pending

    def mark(self, email_id, now: datetime, ip: str | None = None, user_agent: str | None = None) -> datetime:
        email_id = str(email_id or "").strip()
        if not email_id:
            raise MissingIdentifier("email_id is required")

        self.cleanup_expired(now)

        # A re-mark refreshes the timestamp but keeps the insertion position
        self._pending[email_id] = now
        while len(self._pending) > self.max_entries:
            self._pending.popitem(last=False)

        self.log.signal_count += 1
        self.log.push(DebugEvent(
            event="mark_suppress_next",
            email_id=email_id,
            at_ms=to_ms(now),
            ip=normalize_ip(ip),
            user_agent=user_agent or "",
        ))
        logger.info(
            f"[suppress-signal] email_id={email_id} at_ms={to_ms(now)} map_size={len(self._pending)}"
        )
        return now

    def cleanup_expired(self, now: datetime) -> int:
        expired = [email_id for email_id, created_at in self._pending.items()
                   if now - created_at > self.window]
        for email_id in expired:
            del self._pending[email_id]
            self.log.push(DebugEvent(event="suppression_expired", email_id=email_id, at_ms=to_ms(now)))
        return len(expired)

    def check(self, email_id: str, ip: str | None, user_agent: str | None, now: datetime) -> SignalMatch:
        """Consume a pending suppression for email_id, if any."""
        self.cleanup_expired(now)

        created_at = self._pending.pop(email_id, None)
        if created_at is None:
            match = NO_MATCH
        else:
            delta_ms = max(0, to_ms(now) - to_ms(created_at))
            match = SignalMatch(suppressed=True, reason=MARK_SUPPRESS_NEXT, delta_ms=delta_ms)
            self.log.push(DebugEvent(
                event="suppression_consumed",
                email_id=email_id,
                at_ms=to_ms(now),
                ip=normalize_ip(ip),
                user_agent=user_agent or "",
                delta_ms=delta_ms,
            ))

        self._note_google_proxy_hit(email_id, now, ip, user_agent, match)
        if match.suppressed and is_google_image_proxy_hit(user_agent, ip):
            self.log.add_latency_sample(match.delta_ms)
            logger.info(
                f"[gmail-proxy-latency] email_id={email_id} delta_ms={match.delta_ms} "
                f"ip={normalize_ip(ip)}"
            )
        return match


class HeartbeatStore(_SignalStore):
    """Suppress hits whose fingerprint matches a recent sender heartbeat."""

    mode = "heartbeat"

    def __init__(self, lookback: timedelta = timedelta(seconds=120), max_entries: int = 10_000,
                 log: Optional[SignalLog] = None, per_email_limit: int = HEARTBEATS_PER_EMAIL):
        super().__init__(lookback, max_entries, log or SignalLog())
        self.per_email_limit = per_email_limit
        self._beats: "OrderedDict[str, Deque[tuple[datetime, str, str]]]" = OrderedDict()

    def __len__(self):
        return len(self._beats)

    def record(self, email_id, now: datetime, ip: str | None = None, user_agent: str | None = None):
        email_id = str(email_id or "").strip()
        if not email_id:
            raise MissingIdentifier("email_id is required")

        self.cleanup_expired(now)

        beats = self._beats.get(email_id)
        if beats is None:
            beats = self._beats[email_id] = deque(maxlen=self.per_email_limit)
        self._beats.move_to_end(email_id)
        beats.append((now, normalize_ip(ip), user_agent or ""))
        while len(self._beats) > self.max_entries:
            self._beats.popitem(last=False)

        self.log.signal_count += 1
        self.log.push(DebugEvent(
            event="sender_heartbeat",
            email_id=email_id,
            at_ms=to_ms(now),
            ip=normalize_ip(ip),
            user_agent=user_agent or "",
        ))

    def cleanup_expired(self, now: datetime) -> int:
        cutoff = now - self.window
        removed = 0
        for email_id in list(self._beats):
            beats = self._beats[email_id]
            while beats and beats[0][0] < cutoff:
                beats.popleft()
                removed += 1
            if not beats:
                del self._beats[email_id]
        return removed

    def check(self, email_id: str, ip: str | None, user_agent: str | None, now: datetime) -> SignalMatch:
        """Match the hit's fingerprint against heartbeats in the look-back window."""
        self.cleanup_expired(now)

        fingerprint = (normalize_ip(ip), user_agent or "")
        match = NO_MATCH
        for seen_at, beat_ip, beat_ua in reversed(self._beats.get(email_id, ())):
            if seen_at <= now and (beat_ip, beat_ua) == fingerprint:
                delta_ms = to_ms(now) - to_ms(seen_at)
                match = SignalMatch(suppressed=True, reason=SENDER_HEARTBEAT, delta_ms=delta_ms)
                if is_google_image_proxy_hit(user_agent, ip):
                    self.log.add_latency_sample(delta_ms)
                self.log.push(DebugEvent(
                    event="heartbeat_match",
                    email_id=email_id,
                    at_ms=to_ms(now),
                    ip=fingerprint[0],
                    user_agent=fingerprint[1],
                    delta_ms=delta_ms,
                ))
                break

        self._note_google_proxy_hit(email_id, now, ip, user_agent, match)
        return match


def build_signal_stores(settings) -> dict:
    """Create both stores over one shared SignalLog, keyed by mode."""
    log = SignalLog(
        event_limit=settings.suppression_event_limit,
        latency_limit=settings.latency_sample_limit,
    )
    return {
        SuppressNextStore.mode: SuppressNextStore(
            ttl=timedelta(seconds=settings.suppression_ttl_seconds),
            max_entries=settings.suppression_map_limit,
            log=log,
        ),
        HeartbeatStore.mode: HeartbeatStore(
            lookback=timedelta(seconds=settings.heartbeat_lookback_seconds),
            max_entries=settings.heartbeat_map_limit,
            log=log,
        ),
    }
