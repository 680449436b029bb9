"""
Room-scoped broadcast channel for live tournament events.

A connection joins one tournament room and optionally one field room. Every
event is fanned out to the members of its tournament room that accept it:
an event with no field is tournament-wide, an event with a field is only
delivered to connections that joined that exact field.
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional, Set

from fastapi import WebSocket

from robotourney.models.schemas import (
    DisplaySettingsPayload,
    EventType,
    ScopedPayload,
    make_message,
)
from robotourney.utils.constants import ADMIN_RETRY_DELAY_SECONDS
from robotourney.utils.datetime_utils import utcnow
from robotourney.utils.exceptions import TransientDeliveryError

logger = logging.getLogger(__name__)

# Events retried once when nobody is listening; everything else is dropped
ADMIN_EVENTS = frozenset({EventType.DISPLAY_MODE_CHANGE, EventType.ANNOUNCEMENT})

# Events delivered back to the publishing connection as well
SELF_DELIVERED_EVENTS = frozenset({EventType.DISPLAY_MODE_CHANGE})


def accepts_event(event_field_id: Optional[str], joined_field_id: Optional[str]) -> bool:
    """
    Delivery rule shared by the server fan-out and every client.

    Tournament-wide events are always accepted. Field-scoped events are
    accepted only by a connection that joined that field; a connection with
    no field never accepts them.
    """
    if event_field_id is None:
        return True
    return joined_field_id is not None and str(event_field_id) == str(joined_field_id)


class Subscription:
    """Rooms joined by one connection."""

    def __init__(self):
        self.tournament_id: Optional[str] = None
        self.field_id: Optional[str] = None
        self.last_activity = utcnow()


class BroadcastService:
    """Tracks room membership and fans events out to subscribed WebSockets."""

    def __init__(self, admin_retry_delay: float = ADMIN_RETRY_DELAY_SECONDS):
        self.admin_retry_delay = admin_retry_delay
        # WebSocket -> rooms it joined
        self.subscriptions: Dict[WebSocket, Subscription] = {}
        # tournament id -> member connections
        self.tournament_rooms: Dict[str, Set[WebSocket]] = {}
        # field id -> member connections
        self.field_rooms: Dict[str, Set[WebSocket]] = {}
        # tournament id -> {field id or None -> last display settings}
        self.display_settings: Dict[str, Dict[Optional[str], DisplaySettingsPayload]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.subscriptions.setdefault(websocket, Subscription())
        logger.info(f"Live connection opened (total connections: {len(self.subscriptions)})")

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a connection from every room it joined."""
        async with self._lock:
            self._remove_locked(websocket)
        logger.info(f"Live connection closed (total connections: {len(self.subscriptions)})")

    def _remove_locked(self, websocket: WebSocket) -> None:
        subscription = self.subscriptions.pop(websocket, None)
        if subscription is None:
            return
        if subscription.tournament_id is not None:
            self._leave_tournament_locked(websocket, subscription.tournament_id)
        if subscription.field_id is not None:
            self._leave_field_locked(websocket, subscription.field_id)

    def _leave_tournament_locked(self, websocket: WebSocket, tournament_id: str) -> None:
        members = self.tournament_rooms.get(tournament_id)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.tournament_rooms[tournament_id]
            # Nobody left to replay to
            self.display_settings.pop(tournament_id, None)

    def _leave_field_locked(self, websocket: WebSocket, field_id: str) -> None:
        members = self.field_rooms.get(field_id)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.field_rooms[field_id]

    async def join_tournament(self, websocket: WebSocket, tournament_id) -> None:
        """
        Join a tournament room, leaving any previously joined one.

        The room's stored display settings that this connection accepts are
        replayed to it right away.
        """
        tournament_id = str(tournament_id)
        async with self._lock:
            subscription = self.subscriptions.setdefault(websocket, Subscription())
            if subscription.tournament_id is not None and subscription.tournament_id != tournament_id:
                self._leave_tournament_locked(websocket, subscription.tournament_id)
            subscription.tournament_id = tournament_id
            self.tournament_rooms.setdefault(tournament_id, set()).add(websocket)
            replay = [
                settings
                for field_id, settings in self.display_settings.get(tournament_id, {}).items()
                if accepts_event(field_id, subscription.field_id)
            ]
        logger.info(f"Connection joined tournament {tournament_id}")
        for settings in replay:
            await self._send(websocket, make_message(EventType.DISPLAY_MODE_CHANGE, settings))

    async def leave_tournament(self, websocket: WebSocket, tournament_id) -> None:
        tournament_id = str(tournament_id)
        async with self._lock:
            subscription = self.subscriptions.get(websocket)
            if subscription is not None and subscription.tournament_id == tournament_id:
                subscription.tournament_id = None
            self._leave_tournament_locked(websocket, tournament_id)
        logger.info(f"Connection left tournament {tournament_id}")

    async def join_field(self, websocket: WebSocket, field_id) -> None:
        """Join a field room, leaving any previously joined one."""
        field_id = str(field_id)
        async with self._lock:
            subscription = self.subscriptions.setdefault(websocket, Subscription())
            if subscription.field_id is not None and subscription.field_id != field_id:
                self._leave_field_locked(websocket, subscription.field_id)
            subscription.field_id = field_id
            self.field_rooms.setdefault(field_id, set()).add(websocket)
            settings = None
            if subscription.tournament_id is not None:
                settings = self.display_settings.get(subscription.tournament_id, {}).get(field_id)
        logger.info(f"Connection joined field {field_id}")
        if settings is not None:
            await self._send(websocket, make_message(EventType.DISPLAY_MODE_CHANGE, settings))

    async def leave_field(self, websocket: WebSocket, field_id) -> None:
        field_id = str(field_id)
        async with self._lock:
            subscription = self.subscriptions.get(websocket)
            if subscription is not None and subscription.field_id == field_id:
                subscription.field_id = None
            self._leave_field_locked(websocket, field_id)
        logger.info(f"Connection left field {field_id}")

    async def update_activity(self, websocket: WebSocket) -> None:
        async with self._lock:
            subscription = self.subscriptions.get(websocket)
            if subscription is not None:
                subscription.last_activity = utcnow()

    def get_subscription(self, websocket: WebSocket) -> Optional[Subscription]:
        return self.subscriptions.get(websocket)

    async def get_room_size(self, tournament_id) -> int:
        async with self._lock:
            return len(self.tournament_rooms.get(str(tournament_id), ()))

    # ------------------------------------------------------------------
    # Display settings
    # ------------------------------------------------------------------

    def get_display_settings(self, tournament_id, field_id=None) -> Optional[DisplaySettingsPayload]:
        """Field-specific settings when present, else the tournament-wide ones."""
        stored = self.display_settings.get(str(tournament_id), {})
        if field_id is not None and str(field_id) in stored:
            return stored[str(field_id)]
        return stored.get(None)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(
        self,
        event: EventType,
        payload: ScopedPayload,
        sender: Optional[WebSocket] = None,
    ) -> int:
        """
        Fan an event out to its tournament room.

        Args:
            event: Event name
            payload: Validated payload carrying tournamentId and optional fieldId
            sender: Publishing connection; excluded unless the event echoes back

        Returns:
            Number of connections the event was delivered to

        Raises:
            TransientDeliveryError: An administrative event found no recipient
                even after one retry
        """
        if event == EventType.DISPLAY_MODE_CHANGE:
            # Full replace, arrival order wins
            async with self._lock:
                room_settings = self.display_settings.setdefault(payload.tournament_id, {})
                room_settings[payload.field_id] = payload

        message = make_message(event, payload)
        delivered = await self._fan_out(event, payload, message, sender)
        if delivered:
            return delivered

        if event not in ADMIN_EVENTS:
            logger.debug(
                f"Dropped {event.value} for tournament {payload.tournament_id}: no connection ready"
            )
            return 0

        logger.info(
            f"No connection ready for {event.value} in tournament {payload.tournament_id}, "
            f"retrying in {self.admin_retry_delay}s"
        )
        await asyncio.sleep(self.admin_retry_delay)
        delivered = await self._fan_out(event, payload, message, sender)
        if not delivered:
            raise TransientDeliveryError(
                f"No connection ready for {event.value} in tournament {payload.tournament_id}"
            )
        return delivered

    async def _fan_out(
        self, event: EventType, payload: ScopedPayload, message: dict, sender: Optional[WebSocket]
    ) -> int:
        async with self._lock:
            recipients = self._recipients_locked(event, payload, sender)

        # Send outside the lock
        delivered = 0
        failed: List[WebSocket] = []
        for websocket in recipients:
            if await self._send(websocket, message, drop_on_failure=False):
                delivered += 1
            else:
                failed.append(websocket)

        if failed:
            async with self._lock:
                for websocket in failed:
                    self._remove_locked(websocket)
        return delivered

    def _recipients_locked(
        self, event: EventType, payload: ScopedPayload, sender: Optional[WebSocket]
    ) -> List[WebSocket]:
        recipients = []
        for websocket in self.tournament_rooms.get(payload.tournament_id, ()):
            if websocket is sender and event not in SELF_DELIVERED_EVENTS:
                continue
            subscription = self.subscriptions.get(websocket)
            joined_field = subscription.field_id if subscription is not None else None
            if accepts_event(payload.field_id, joined_field):
                recipients.append(websocket)
        return recipients

    async def _send(self, websocket: WebSocket, message: dict, drop_on_failure: bool = True) -> bool:
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"Error sending {message.get('event')} to live connection: {e}")
            if drop_on_failure:
                async with self._lock:
                    self._remove_locked(websocket)
            return False

    async def send_error(self, websocket: WebSocket, message: str) -> None:
        """Report a rejected command back to the connection that sent it."""
        await self._send(websocket, {"event": EventType.ERROR.value, "data": {"message": message}})
