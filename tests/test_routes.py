import asyncio
import base64
import dataclasses
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from pixeltrack.database import Base, utcnow
from pixeltrack.errors import PersistenceFailure
from pixeltrack.main import create_app
from pixeltrack.routes.pixel import PIXEL_GIF, PIXEL_HEADERS
from pixeltrack.token import TrackingPayload, encode_token, new_email_id

from .conftest import RECIPIENT_IP, RECIPIENT_UA, SENDER_IP, SENDER_UA

API_HEADERS = {"X-API-Key": "test-api-key"}


def _token(**overrides):
    fields = dict(
        user_id="user-1",
        email_id=new_email_id(),
        recipient="bob@example.com",
        sender_email="alice@example.com",
        sent_at=utcnow() - timedelta(hours=1),
    )
    fields.update(overrides)
    payload = TrackingPayload(**fields)
    return payload.email_id, encode_token(payload)


def _raw_token(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def _assert_pixel(response):
    assert response.status_code == 200
    assert response.content == PIXEL_GIF
    assert response.headers["content-type"] == "image/gif"
    for name, value in PIXEL_HEADERS.items():
        assert response.headers[name] == value


def _fetch(client, path, ip, user_agent):
    return client.get(path, headers={"X-Forwarded-For": ip, "User-Agent": user_agent})


def _counts(client, email_id):
    response = client.post("/api/counts", json={"email_ids": [email_id]}, headers=API_HEADERS)
    assert response.status_code == 200
    return response.json()[email_id]


def _events(client, email_id=None):
    params = {"email_id": email_id} if email_id else {}
    response = client.get("/api/open-events", params=params, headers=API_HEADERS)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


class TestPixel:
    def test_garbage_token_still_gets_pixel(self, client):
        response = client.get("/t/not-a-token.gif")

        assert response.status_code == 200
        assert response.content == PIXEL_GIF
        assert len(response.content) == 43
        assert response.headers["content-type"] == "image/gif"
        assert "no-store" in response.headers["cache-control"]
        assert _events(client) == []

    def test_genuine_open_is_counted(self, client):
        email_id, token = _token()
        response = _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)

        assert response.content == PIXEL_GIF
        counts = _counts(client, email_id)
        assert counts["open_count"] == 1
        assert counts["opened"] is True
        assert counts["first_opened_at"] is not None

        [event] = _events(client, email_id)
        assert event["device_type"] == "phone"
        assert event["is_duplicate"] is False
        assert event["is_sender_suppressed"] is False

    def test_suppressed_hit_response_is_identical(self, client):
        email_id, token = _token()
        garbage = client.get("/t/not-a-token.gif")

        assert client.post("/mark-suppress-next", json={"email_id": email_id}).status_code == 200
        suppressed = _fetch(client, f"/t/{token}.gif", SENDER_IP, SENDER_UA)

        assert suppressed.content == garbage.content
        for header in ("content-type", "cache-control", "pragma", "expires"):
            assert suppressed.headers[header] == garbage.headers[header]

        [event] = _events(client, email_id)
        assert event["is_sender_suppressed"] is True
        assert event["suppression_reason"] == "mark_suppress_next"
        assert _counts(client, email_id)["open_count"] == 0

    def test_mark_is_consumed_once(self, client):
        email_id, token = _token()
        client.post("/mark-suppress-next", json={"email_id": email_id})

        _fetch(client, f"/t/{token}.gif", SENDER_IP, SENDER_UA)
        _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)

        assert _counts(client, email_id)["open_count"] == 1

    def test_duplicate_refetch_is_not_counted(self, client):
        email_id, token = _token()
        _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)
        _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)

        assert _counts(client, email_id)["open_count"] == 1
        events = _events(client, email_id)
        assert len(events) == 2
        assert sorted(e["is_duplicate"] for e in events) == [False, True]

    def test_open_inside_send_guard_is_suppressed(self, client):
        email_id, token = _token(sent_at=utcnow())
        _fetch(client, f"/t/{token}.gif", SENDER_IP, SENDER_UA)

        [event] = _events(client, email_id)
        assert event["suppression_reason"] == "send_guard"
        assert _counts(client, email_id)["open_count"] == 0

    @pytest.mark.parametrize("path", ["/t", "/h"])
    def test_deeply_nested_token_still_gets_pixel(self, client, path):
        token = _raw_token("[" * 3000 + "]" * 3000)
        _assert_pixel(client.get(f"{path}/{token}.gif"))
        assert _events(client) == []

    @pytest.mark.parametrize("path", ["/t", "/h"])
    def test_out_of_range_sent_at_still_gets_pixel(self, client, path):
        token = _raw_token('["user-1","e-1","bob@example.com","9999-12-31T23:59:59Z"]')
        _assert_pixel(client.get(f"{path}/{token}.gif"))
        assert _events(client) == []


class FailingRecorder:
    def __init__(self, error):
        self.error = error

    async def record_open(self, db, hit):
        raise self.error


class SlowRecorder:
    async def record_open(self, db, hit):
        await asyncio.sleep(5)


class TestPixelRecordingFailures:
    @pytest.mark.parametrize("error", [PersistenceFailure("database is gone"), RuntimeError("boom")])
    def test_recorder_error_still_gets_pixel(self, client, error):
        client.app.state.recorder = FailingRecorder(error)
        _, token = _token()
        _assert_pixel(_fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA))

    def test_recorder_timeout_still_gets_pixel(self, settings):
        settings = dataclasses.replace(settings, record_timeout_seconds=0.05)
        with TestClient(create_app(settings)) as client:
            client.app.state.recorder = SlowRecorder()
            _, token = _token()
            _assert_pixel(_fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA))

    def test_missing_tables_still_get_pixel(self, client):
        async def drop_tables():
            async with client.app.state.engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)

        client.portal.call(drop_tables)
        _, token = _token()
        _assert_pixel(_fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA))
        _assert_pixel(_fetch(client, f"/h/{token}.gif", SENDER_IP, SENDER_UA))


class TestMarkSuppressNext:
    @pytest.mark.parametrize("body", [b"", b"not json", b"{}", b'{"email_id": "   "}', b'["e-1"]'])
    def test_missing_email_id_is_rejected(self, client, body):
        response = client.post(
            "/mark-suppress-next", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert client.get("/metrics/suppress-signals").json()["count"] == 0

    def test_mark_is_acknowledged(self, client):
        response = client.post("/mark-suppress-next", json={"email_id": " e-1 "})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["email_id"] == "e-1"
        assert isinstance(body["recorded_at_ms"], int)

        summary = client.get("/metrics/suppress-signals").json()
        assert summary["count"] == 1
        assert summary["active_email_ids"] == 1
        assert summary["mode"] == "mark_suppress_next"


class TestHeartbeatMode:
    @pytest.fixture
    def client(self, settings):
        settings = dataclasses.replace(settings, sender_signal_mode="heartbeat")
        with TestClient(create_app(settings)) as client:
            yield client

    def test_heartbeat_suppresses_matching_hit(self, client):
        email_id, token = _token()
        beat = _fetch(client, f"/h/{token}.gif", SENDER_IP, SENDER_UA)
        assert beat.content == PIXEL_GIF

        _fetch(client, f"/t/{token}.gif", SENDER_IP, SENDER_UA)
        _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)

        events = sorted(_events(client, email_id), key=lambda e: e["id"])
        assert [e["suppression_reason"] for e in events] == ["sender_heartbeat", None]
        assert _counts(client, email_id)["open_count"] == 1

    def test_desktop_heartbeat_match_is_not_a_gmail_latency_sample(self, client):
        _, token = _token()
        _fetch(client, f"/h/{token}.gif", SENDER_IP, SENDER_UA)
        _fetch(client, f"/t/{token}.gif", SENDER_IP, SENDER_UA)

        assert client.get("/metrics/gmail-proxy-latency").json()["count"] == 0

    def test_marks_do_not_suppress_in_heartbeat_mode(self, client):
        email_id, token = _token()
        client.post("/mark-suppress-next", json={"email_id": email_id})
        _fetch(client, f"/t/{token}.gif", SENDER_IP, SENDER_UA)

        assert _counts(client, email_id)["open_count"] == 1


class TestMetrics:
    def test_latency_without_samples(self, client):
        stats = client.get("/metrics/gmail-proxy-latency").json()
        assert stats["count"] == 0
        assert stats["p50"] is None and stats["avg"] is None

    def test_suppression_debug_groups_marks(self, client):
        client.post("/mark-suppress-next", json={"email_id": "e-1"})
        debug = client.get("/metrics/suppression-debug").json()
        assert len(debug["by_email"]["e-1"]["marks"]) == 1


class TestApi:
    def test_requires_api_key(self, client):
        assert client.get("/api/stats").status_code == 401
        assert client.get("/api/stats", headers={"X-API-Key": "wrong"}).status_code == 401

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_issue_track(self, client, settings):
        response = client.post(
            "/api/tracks",
            json={"user_id": "user-1", "recipient": "bob@example.com", "sender_email": "alice@example.com"},
            headers=API_HEADERS,
        )
        assert response.status_code == 200
        issued = response.json()
        assert issued["pixel_url"] == f"{settings.base_url}/t/{issued['token']}.gif"
        assert issued["heartbeat_url"] == f"{settings.base_url}/h/{issued['token']}.gif"

        detail = client.get(f"/api/tracks/{issued['email_id']}", headers=API_HEADERS).json()
        assert detail["open_count"] == 0
        assert detail["sender_email"] == "alice@example.com"
        assert detail["opens"] == []

    def test_unknown_track_is_404(self, client):
        assert client.get("/api/tracks/nope", headers=API_HEADERS).status_code == 404

    def test_counts_omit_unknown_ids(self, client):
        response = client.post("/api/counts", json={"email_ids": ["nope"]}, headers=API_HEADERS)
        assert response.json() == {}

    def test_stats_count_genuine_opens(self, client):
        _, token = _token()
        _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)
        _fetch(client, f"/t/{token}.gif", RECIPIENT_IP, RECIPIENT_UA)

        stats = client.get("/api/stats", headers=API_HEADERS).json()
        assert stats == {"total_tracks": 1, "total_opens": 1, "total_events": 2, "tracks_with_opens": 1}
