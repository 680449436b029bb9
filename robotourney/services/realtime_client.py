"""
Reconnecting client for the live broadcast channel.

On every (re)connect the client joins its rooms again and pulls the
authoritative live state over HTTP, since the channel keeps no history.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from robotourney.models.schemas import (
    EventType,
    JoinFieldPayload,
    JoinTournamentPayload,
    LiveStateResponse,
    WirePayload,
    make_message,
)
from robotourney.services.broadcast_service import ADMIN_EVENTS
from robotourney.services.display_client import DisplayState
from robotourney.utils.constants import (
    ADMIN_RETRY_DELAY_SECONDS,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_INITIAL_DELAY_SECONDS,
    RECONNECT_MAX_DELAY_SECONDS,
)
from robotourney.utils.exceptions import TransientDeliveryError

logger = logging.getLogger(__name__)

# Failures of one connect attempt: opening the socket, re-joining rooms, or the re-pull
CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, httpx.HTTPError)


def backoff_delay(attempt: int, initial: float = RECONNECT_INITIAL_DELAY_SECONDS,
                  maximum: float = RECONNECT_MAX_DELAY_SECONDS) -> float:
    """Delay before reconnect attempt N (1-based): doubles each time, capped."""
    return min(initial * (2 ** (attempt - 1)), maximum)


class RealtimeClient:
    """Keeps a DisplayState in sync with one tournament (and optional field) room."""

    def __init__(
        self,
        ws_url: str,
        api_url: str,
        state: DisplayState,
        http_client: Optional[httpx.AsyncClient] = None,
        connect: Callable[[str], Awaitable] = websockets.connect,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        initial_delay: float = RECONNECT_INITIAL_DELAY_SECONDS,
        max_delay: float = RECONNECT_MAX_DELAY_SECONDS,
        admin_retry_delay: float = ADMIN_RETRY_DELAY_SECONDS,
    ):
        self.ws_url = ws_url
        self.api_url = api_url.rstrip("/")
        self.state = state
        self.http_client = http_client
        self._connect = connect
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.admin_retry_delay = admin_retry_delay
        self.websocket = None
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self.websocket is not None

    async def connect(self) -> None:
        """
        Connect, re-join rooms, and re-pull live state.

        Raises:
            ConnectionError: All reconnect attempts failed
        """
        attempt = 0
        while True:
            try:
                self.websocket = await self._connect(self.ws_url)
                logger.info(f"Connected to {self.ws_url}")
                await self._join_rooms()
                await self.pull_state()
                return
            except CONNECT_ERRORS as e:
                await self._discard_connection()
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(f"Giving up on {self.ws_url} after {attempt} attempts: {e}")
                    raise ConnectionError(f"Could not connect to {self.ws_url}") from e
                delay = backoff_delay(attempt, self.initial_delay, self.max_delay)
                logger.warning(f"Connection attempt {attempt} failed ({e}), retrying in {delay}s")
                await asyncio.sleep(delay)

    async def _discard_connection(self) -> None:
        websocket, self.websocket = self.websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except CONNECT_ERRORS as e:
            logger.debug(f"Error closing failed connection: {e}")

    async def _join_rooms(self) -> None:
        await self._send_raw(make_message(
            EventType.JOIN_TOURNAMENT, JoinTournamentPayload(tournament_id=self.state.tournament_id)
        ))
        if self.state.field_id is not None:
            await self._send_raw(make_message(
                EventType.JOIN_FIELD, JoinFieldPayload(field_id=self.state.field_id)
            ))

    async def pull_state(self) -> LiveStateResponse:
        """Fetch the authoritative live state and replace the held state with it."""
        params = {}
        if self.state.field_id is not None:
            params["field_id"] = self.state.field_id
        url = f"{self.api_url}/api/tournaments/{self.state.tournament_id}/live-state"

        if self.http_client is not None:
            response = await self.http_client.get(url, params=params)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, params=params)
        response.raise_for_status()

        snapshot = LiveStateResponse.model_validate(response.json())
        await self.state.apply_snapshot(snapshot)
        return snapshot

    async def run(self) -> None:
        """Receive frames until closed, reconnecting whenever the connection drops."""
        if self.websocket is None:
            await self.connect()
        while not self._closed:
            try:
                async for raw in self.websocket:
                    if raw == "ping":
                        await self.websocket.send("pong")
                        continue
                    if raw == "pong":
                        continue
                    await self.state.handle_message(raw)
            except ConnectionClosed as e:
                logger.warning(f"Live connection closed: {e}")
            self.websocket = None
            if self._closed:
                break
            await self.connect()

    async def _send_raw(self, message: dict) -> None:
        await self.websocket.send(json.dumps(message))

    async def send(self, event: EventType, payload: WirePayload) -> bool:
        """
        Publish an event on the channel.

        Patches are dropped while disconnected since a re-pull follows the
        reconnect. Administrative events wait once for the connection.

        Raises:
            TransientDeliveryError: An administrative event still had no connection
        """
        if self.websocket is None:
            if event not in ADMIN_EVENTS:
                logger.debug(f"Dropped {event.value}: not connected")
                return False
            await asyncio.sleep(self.admin_retry_delay)
            if self.websocket is None:
                raise TransientDeliveryError(f"Not connected, could not send {event.value}")
        await self._send_raw(make_message(event, payload))
        return True

    async def close(self) -> None:
        self._closed = True
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
        await self.state.close()
