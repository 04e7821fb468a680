"""Read-only views over the signal store's debug buffers, for tuning windows and TTLs."""
import math
from collections import defaultdict
from typing import Iterable, Optional

# Debug event name -> timeline bucket
TIMELINE_BUCKETS = {
    "mark_suppress_next": "marks",
    "google_proxy_hit": "google_proxy_hits",
    "suppression_consumed": "consumed",
    "suppression_expired": "expired",
    "sender_heartbeat": "heartbeats",
    "heartbeat_match": "heartbeat_matches",
}


def percentile(sorted_samples: list, p: float) -> Optional[int]:
    """Nearest-rank percentile over an already sorted list."""
    if not sorted_samples:
        return None
    rank = math.ceil((p / 100) * len(sorted_samples)) - 1
    index = min(len(sorted_samples) - 1, max(0, rank))
    return sorted_samples[index]


def build_latency_stats(samples: Iterable[int]) -> dict:
    ordered = sorted(samples)
    count = len(ordered)
    if count == 0:
        return {
            "count": 0,
            "min": None,
            "max": None,
            "avg": None,
            "p50": None,
            "p90": None,
            "p95": None,
            "p99": None,
        }

    return {
        "count": count,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": round(sum(ordered) / count, 2),
        "p50": percentile(ordered, 50),
        "p90": percentile(ordered, 90),
        "p95": percentile(ordered, 95),
        "p99": percentile(ordered, 99),
    }


def group_events_by_email(events) -> dict:
    """Per-email_id timelines of debug event timestamps."""
    by_email = defaultdict(lambda: {bucket: [] for bucket in TIMELINE_BUCKETS.values()})
    for event in events:
        bucket = TIMELINE_BUCKETS.get(event.event)
        if bucket is None:
            continue
        by_email[event.email_id][bucket].append(event.at_ms)
    return dict(by_email)


def suppress_signal_summary(store) -> dict:
    log = store.log
    return {
        "count": log.signal_count,
        "mode": store.mode,
        "active_email_ids": len(store),
        "ttl_ms": store.ttl_ms,
        "recent": [event.as_dict() for event in log.events],
    }


def suppression_debug(store) -> dict:
    events = list(store.log.events)
    return {
        "mode": store.mode,
        "active_email_ids": len(store),
        "ttl_ms": store.ttl_ms,
        "recent_events": [event.as_dict() for event in events],
        "by_email": group_events_by_email(events),
    }
