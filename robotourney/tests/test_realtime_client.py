"""
Tests for the reconnecting realtime client.
The WebSocket connection is faked; the live-state pull goes through an
httpx MockTransport.
"""

import json

import httpx
import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError

from robotourney.models.schemas import (
    AnnouncementPayload,
    EventType,
    ScoreUpdatePayload,
)
from robotourney.services.display_client import DisplayState
from robotourney.services.realtime_client import RealtimeClient, backoff_delay
from robotourney.utils.exceptions import TransientDeliveryError


class FakeConnection:
    """Replays frames, then runs on_exhausted (which may raise to simulate a drop)."""

    def __init__(self, frames=(), on_exhausted=None):
        self.frames = list(frames)
        self.on_exhausted = on_exhausted
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.on_exhausted is not None:
            self.on_exhausted()


class FakeConnector:
    """Stands in for websockets.connect: fails a number of times, then hands out connections."""

    def __init__(self, connections, failures=0):
        self.connections = list(connections)
        self.failures = failures
        self.attempts = 0

    async def __call__(self, url):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        return self.connections.pop(0)


def live_state_handler(pulls):
    def handler(request: httpx.Request) -> httpx.Response:
        pulls.append(request)
        return httpx.Response(
            200,
            json={
                "tournament_id": "T",
                "field_id": "F1",
                "display_settings": {"tournamentId": "T", "displayMode": "match", "updatedAt": 5},
                "timer": {"tournamentId": "T", "duration": 9000, "remaining": 9000, "isRunning": False},
                "match": None,
            },
        )
    return handler


def live_state_transport(pulls):
    return httpx.MockTransport(live_state_handler(pulls))


@pytest.fixture
def pulls():
    return []


@pytest_asyncio.fixture
async def http_client(pulls):
    async with httpx.AsyncClient(transport=live_state_transport(pulls)) as client:
        yield client


def make_client(connector, http_client, **kwargs):
    state = DisplayState("T", "F1")
    return RealtimeClient(
        "ws://test/api/ws/live",
        "http://test",
        state,
        http_client=http_client,
        connect=connector,
        initial_delay=0,
        max_delay=0,
        admin_retry_delay=0,
        **kwargs,
    )


def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.4, 0.8]
    assert backoff_delay(20) == 10.0


@pytest.mark.asyncio
async def test_connect_joins_rooms_and_pulls_state(http_client, pulls):
    connection = FakeConnection()
    client = make_client(FakeConnector([connection]), http_client)

    await client.connect()

    joins = [json.loads(data) for data in connection.sent]
    assert joins == [
        {"event": "join_tournament", "data": {"tournamentId": "T"}},
        {"event": "join_field", "data": {"fieldId": "F1"}},
    ]
    assert len(pulls) == 1
    assert pulls[0].url.path == "/api/tournaments/T/live-state"
    assert pulls[0].url.params["field_id"] == "F1"
    assert client.state.display_settings.display_mode == "match"
    assert client.state.timer["remaining"] == 9000


@pytest.mark.asyncio
async def test_connect_retries_with_backoff(http_client):
    connector = FakeConnector([FakeConnection()], failures=2)
    client = make_client(connector, http_client)

    await client.connect()

    assert connector.attempts == 3
    assert client.is_connected


@pytest.mark.asyncio
async def test_connect_gives_up_after_max_attempts(http_client):
    connector = FakeConnector([], failures=10)
    client = make_client(connector, http_client, max_attempts=5)

    with pytest.raises(ConnectionError):
        await client.connect()
    assert connector.attempts == 5


@pytest.mark.asyncio
async def test_run_reconnects_rejoins_and_repulls(http_client, pulls):
    def drop():
        raise ConnectionClosedError(None, None)

    score = json.dumps({
        "event": "score_update",
        "data": {"tournamentId": "T", "matchId": "M1", "redAutoScore": 4},
    })
    first = FakeConnection([score, "ping"], on_exhausted=drop)
    second = FakeConnection()
    client = make_client(FakeConnector([first, second]), http_client)
    second.on_exhausted = lambda: setattr(client, "_closed", True)

    await client.run()

    assert client.state.scores.get("red_auto_score") is None  # replaced by the re-pull
    assert "pong" in first.sent
    assert len(pulls) == 2
    rejoin = [json.loads(data)["event"] for data in second.sent]
    assert rejoin == ["join_tournament", "join_field"]


@pytest.mark.asyncio
async def test_send_drops_patches_while_disconnected(http_client):
    client = make_client(FakeConnector([]), http_client)
    payload = ScoreUpdatePayload(tournament_id="T", match_id="M1", red_auto_score=1)

    assert await client.send(EventType.SCORE_UPDATE, payload) is False


@pytest.mark.asyncio
async def test_send_admin_event_while_disconnected_raises(http_client):
    client = make_client(FakeConnector([]), http_client)
    payload = AnnouncementPayload(tournament_id="T", message="Queue for finals")

    with pytest.raises(TransientDeliveryError):
        await client.send(EventType.ANNOUNCEMENT, payload)


@pytest.mark.asyncio
async def test_send_when_connected(http_client):
    connection = FakeConnection()
    client = make_client(FakeConnector([connection]), http_client)
    await client.connect()

    payload = AnnouncementPayload(tournament_id="T", message="Queue for finals", duration=3000)
    assert await client.send(EventType.ANNOUNCEMENT, payload) is True
    assert json.loads(connection.sent[-1]) == {
        "event": "announcement",
        "data": {"tournamentId": "T", "message": "Queue for finals", "duration": 3000},
    }

    await client.close()
    assert connection.closed
    assert not client.is_connected


@pytest.mark.asyncio
async def test_failed_repull_counts_as_failed_attempt(pulls):
    statuses = [200, 503, 200]
    healthy = live_state_handler(pulls)

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status != 200:
            pulls.append(request)
            return httpx.Response(status)
        return healthy(request)

    def drop():
        raise ConnectionClosedError(None, None)

    first = FakeConnection(on_exhausted=drop)
    rejected = FakeConnection()
    third = FakeConnection()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = make_client(FakeConnector([first, rejected, third]), http_client)
        third.on_exhausted = lambda: setattr(client, "_closed", True)

        await client.run()

    assert len(pulls) == 3
    assert rejected.closed
    rejoin = [json.loads(data)["event"] for data in third.sent]
    assert rejoin == ["join_tournament", "join_field"]
    assert client.state.timer["remaining"] == 9000


@pytest.mark.asyncio
async def test_connect_gives_up_when_repull_keeps_failing(pulls):
    def handler(request: httpx.Request) -> httpx.Response:
        pulls.append(request)
        return httpx.Response(503)

    connections = [FakeConnection() for _ in range(3)]
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = make_client(FakeConnector(connections), http_client, max_attempts=3)

        with pytest.raises(ConnectionError):
            await client.connect()

    assert len(pulls) == 3
    assert all(connection.closed for connection in connections)
    assert not client.is_connected
