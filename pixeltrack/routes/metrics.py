from fastapi import APIRouter, Request

from ..database import utcnow
from ..metrics import build_latency_stats, suppress_signal_summary, suppression_debug

router = APIRouter(prefix="/metrics")


def _active_store(request: Request):
    """The signal store in use, after the opportunistic expiry pass every request path runs."""
    store = request.app.state.signals
    store.cleanup_expired(utcnow())
    return store


@router.get("/gmail-proxy-latency")
async def gmail_proxy_latency(request: Request):
    store = _active_store(request)
    return build_latency_stats(store.log.latency_samples)


@router.get("/suppress-signals")
async def suppress_signals(request: Request):
    return suppress_signal_summary(_active_store(request))


@router.get("/suppression-debug")
async def suppression_debug_view(request: Request):
    return suppression_debug(_active_store(request))
