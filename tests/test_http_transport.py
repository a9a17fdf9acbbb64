"""
Tests for the HTTP sync transport

httpx.MockTransport stands in for the backend; retry waits are patched
out so failing calls return immediately.
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from tenacity import wait_none

from bucketpilot.config import SyncSettings
from bucketpilot.ledger import LedgerService
from bucketpilot.models import DomainEventType, SyncCursor
from bucketpilot.services.storage import InMemoryLedgerStorage
from bucketpilot.sync import (
    HttpSyncTransport,
    ServerEventLog,
    SyncCoordinator,
    SyncTransportError,
    build_domain_event,
)


UTC = timezone.utc


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(HttpSyncTransport._request.retry, "wait", wait_none())


@pytest.fixture
def settings():
    return SyncSettings(backend_url="http://sync.test/", api_key="secret-token")


def _transport(settings, handler):
    client = httpx.AsyncClient(
        base_url=settings.backend_url,
        transport=httpx.MockTransport(handler),
    )
    return HttpSyncTransport(settings, client=client)


def _event():
    return build_domain_event(
        DomainEventType.BUCKET_DELETE,
        {"bucketId": "9b2f2c1e-4f6a-4d7e-9a55-0c1f3f0d6a11"},
        timestamp=datetime(2024, 3, 1, tzinfo=UTC),
        sequence=1,
        device_id="phone",
    )


class TestPush:
    """POST /sync/pushEvents."""

    def test_push_sends_wire_form(self, settings):
        """Test the request body and auth header."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "events": []})

        event = _event()
        response = run(_transport(settings, handler).push_events([event]))

        assert response.success is True
        assert seen["path"] == "/sync/pushEvents"
        assert seen["auth"] == "Bearer secret-token"
        wire = seen["body"]["events"][0]
        assert wire["eventType"] == "bucket_delete"
        assert wire["deviceId"] == "phone"
        assert wire["payload"]["id"] == str(event.id)

    def test_rejected_push(self, settings):
        """Test that success=false is a transport error."""
        def handler(request):
            return httpx.Response(200, json={"success": False})

        with pytest.raises(SyncTransportError):
            run(_transport(settings, handler).push_events([_event()]))


class TestPull:
    """GET /sync/pullEvents."""

    def test_pull_params_and_response(self, settings):
        """Test cursor params and camelCase response fields."""
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={
                "events": [{
                    "id": "srv-1",
                    "event_type": "allocation",
                    "timestamp": "2024-03-02T00:00:00Z",
                    "sequence": 8,
                    "payload": {"id": "abc"},
                    "device_id": "laptop",
                }],
                "hasMore": True,
                "nextCursor": {"timestamp": "2024-03-02T00:00:00Z", "sequence": 8},
            })

        cursor = SyncCursor(timestamp=datetime(2024, 3, 1, tzinfo=UTC), sequence=7)
        page = run(_transport(settings, handler).pull_events(cursor, 50))

        assert seen["params"] == {
            "sinceTimestamp": "2024-03-01T00:00:00+00:00",
            "sinceSequence": "7",
            "limit": "50",
        }
        assert page.has_more is True
        assert page.next_cursor.sequence == 8
        assert page.events[0].event_type == "allocation"
        assert page.events[0].device_id == "laptop"

    def test_first_pull_has_no_cursor_params(self, settings):
        """Test that a fresh device only sends the limit."""
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"events": [], "hasMore": False})

        run(_transport(settings, handler).pull_events(None, 10))
        assert seen["params"] == {"limit": "10"}

    def test_invalid_json(self, settings):
        """Test that a non-JSON body is a transport error."""
        def handler(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        with pytest.raises(SyncTransportError):
            run(_transport(settings, handler).pull_events(None, 10))


class TestRetries:
    """Retry policy: 5xx and network errors retried, 4xx not."""

    def test_server_error_is_retried(self, settings):
        """Test recovery after one 503."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"events": [], "hasMore": False})

        run(_transport(settings, handler).pull_events(None, 10))
        assert len(calls) == 2

    def test_client_error_is_not_retried(self, settings):
        """Test that a 401 fails at once with its status code."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="bad token")

        with pytest.raises(SyncTransportError) as exc_info:
            run(_transport(settings, handler).pull_events(None, 10))
        assert exc_info.value.status_code == 401
        assert len(calls) == 1

    def test_network_error_gives_up_after_three_attempts(self, settings):
        """Test the attempt limit."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SyncTransportError):
            run(_transport(settings, handler).push_events([_event()]))
        assert len(calls) == 3


class TestCoordinatorOverHttp:
    """A full cycle through HTTP to a ServerEventLog."""

    def test_round_trip(self, settings, clock_factory):
        """Test that two stores converge over the HTTP transport."""
        server = ServerEventLog(clock=clock_factory(start=datetime(2024, 3, 2, tzinfo=UTC)))

        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=server.push("user-1", json.loads(request.content)))
            params = request.url.params
            return httpx.Response(200, json=server.pull(
                "user-1",
                since_timestamp=params.get("sinceTimestamp"),
                since_sequence=params.get("sinceSequence"),
                limit=int(params["limit"]),
            ))

        def device(name):
            storage = InMemoryLedgerStorage()
            ledger = LedgerService(storage, device_id=name, clock=clock_factory())
            coordinator = SyncCoordinator(storage, _transport(settings, handler), settings=settings)
            return ledger, coordinator

        phone_ledger, phone_sync = device("phone")
        laptop_ledger, laptop_sync = device("laptop")

        bucket = run(phone_ledger.create_bucket("Rent"))
        assert run(phone_sync.sync()).pushed == 1

        summary = run(laptop_sync.sync())
        assert summary.applied == 1
        assert run(laptop_ledger.require_bucket(bucket.id)).name == "Rent"
