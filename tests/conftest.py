from datetime import datetime, timedelta, timezone

import pytest

from pixeltrack.config import Settings
from pixeltrack.database import init_db, make_engine, make_sessionmaker
from pixeltrack.geoip import EMPTY_GEO
from pixeltrack.recorder import OpenRecorder, PixelHit
from pixeltrack.token import TrackingPayload

T0 = datetime(2026, 3, 2, 15, 0, 0, tzinfo=timezone.utc)

SENDER_IP = "203.0.113.5"
SENDER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
RECIPIENT_IP = "198.51.100.23"
RECIPIENT_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
GMAIL_PROXY_UA = "Mozilla/5.0 (Windows NT 5.1; rv:11.0) Gecko Firefox/11.0 (via ggpht.com GoogleImageProxy)"


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return make_sessionmaker(engine)


@pytest.fixture
def payload():
    return TrackingPayload(
        user_id="user-1",
        email_id="6f1c2f4e-8f0b-4b43-9d7a-2f1f0c9e7a11",
        recipient="bob@example.com",
        sender_email="alice@example.com",
        sent_at=T0,
    )


@pytest.fixture
def recorder():
    return OpenRecorder(geo_lookup=lambda ip: EMPTY_GEO)


@pytest.fixture
def record(sessionmaker, payload):
    """Record one hit in its own session, like one request."""

    async def _record(recorder, seconds, ip, user_agent, hit_payload=None):
        hit = PixelHit(
            payload=hit_payload or payload,
            ip_address=ip,
            user_agent=user_agent,
            opened_at=at(seconds),
        )
        async with sessionmaker() as db:
            return await recorder.record_open(db, hit)

    return _record


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        base_url="https://track.example.com",
        api_key="test-api-key",
        geoip_db_path=str(tmp_path / "geoip" / "missing.mmdb"),
        maxmind_license_key="",
    )
