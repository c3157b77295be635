"""
Change Channel Client - Socket.IO Push Subscription

One persistent connection per session carrying committed mutation events and
presence events for the rooms this client has joined.

Key Features:
- Idempotent connect; concurrent callers share the same attempt
- Reference-counted room membership keyed by holder (a view, a store, ...)
- Reconnect with exponential backoff (tenacity) and replay of every joined room
- Envelopes validated at the boundary; malformed payloads are logged and dropped
- Envelopes handed to subscribers synchronously, in arrival order
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List, Set, Callable

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential, retry_if_exception_type

from models.channel_envelope import (
    EntityEnvelope, PresenceEnvelope, EnvelopeError, PRESENCE_EVENTS,
    parse_entity_envelope, parse_presence_envelope, notification_envelope
)
from services.sync_errors import ChannelError

logger = logging.getLogger(__name__)

ENTITY_EVENT = 'entity_change'
NOTIFICATION_EVENT = 'new_notification'

DEFAULT_HOLDER = 'default'


def project_room(project_id: Any) -> str:
    return f"project:{project_id}"


def task_room(task_id: Any) -> str:
    return f"task:{task_id}"


def team_room(team_id: Any) -> str:
    return f"team:{team_id}"


def _wire_events(room: str):
    """(join event, leave event, argument) for a room name."""
    scope, _, scope_id = room.partition(':')
    if scope == 'project' and scope_id:
        return 'join_project', 'leave_project', scope_id
    if scope == 'task' and scope_id:
        return 'join_task', 'leave_task', scope_id
    return 'join_room', 'leave_room', {'room': room}


class ChangeChannelClient:
    """
    Push channel client over python-socketio's AsyncClient.

    Args:
        url: Socket.IO server URL
        sio: Optional pre-built AsyncClient (tests pass a fake)
        max_reconnect_attempts: Attempts before a ChannelError is surfaced
        reconnect_backoff: Base delay in seconds for exponential backoff
        max_backoff: Ceiling for a single backoff delay
    """

    def __init__(
        self,
        url: str,
        sio: Optional[socketio.AsyncClient] = None,
        max_reconnect_attempts: int = 5,
        reconnect_backoff: float = 1.0,
        max_backoff: float = 30.0
    ):
        self.url = url
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_backoff = reconnect_backoff
        self.max_backoff = max_backoff

        # Reconnection is driven here so joins can be replayed afterwards
        self._sio = sio or socketio.AsyncClient(reconnection=False, logger=False)
        self._credential: Optional[str] = None
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False

        # {room: {holder, ...}}
        self._holders: Dict[str, Set[str]] = {}
        # Rooms joined on the current connection
        self._joined: Set[str] = set()

        self._entity_handlers: List[Callable[[EntityEnvelope], None]] = []
        self._presence_handlers: List[Callable[[PresenceEnvelope], None]] = []
        self._error_handlers: List[Callable[[ChannelError], None]] = []

        self._register_handlers()

    # ----------------------------------------------------------- connection

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    async def connect(self, credential: Optional[str] = None) -> None:
        """
        Open the channel. Safe to call repeatedly.

        Raises:
            ChannelError: every attempt failed
        """
        if credential is not None:
            self._credential = credential
        self._closing = False
        async with self._connect_lock:
            if self.connected:
                return
            await self._connect_with_retry()

    async def disconnect(self) -> None:
        """Close the channel and forget every room holder (logout)."""
        self._closing = True
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._holders.clear()
        self._joined.clear()
        if self.connected:
            await self._sio.disconnect()
        logger.info("Change channel disconnected")

    async def _connect_with_retry(self) -> None:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(SocketConnectionError),
                stop=stop_after_attempt(self.max_reconnect_attempts),
                wait=wait_exponential(multiplier=self.reconnect_backoff, max=self.max_backoff),
                reraise=False,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number > 1:
                        logger.warning(f"⚠️ Change channel connect attempt {attempt_number}/{self.max_reconnect_attempts}")
                    await self._sio.connect(
                        self.url,
                        auth={'token': self._credential} if self._credential else None,
                        transports=['websocket', 'polling'],
                    )
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ChannelError(
                f"Could not connect to change channel after {self.max_reconnect_attempts} attempts: {cause}",
                recoverable=False,
                context={'url': self.url},
            ) from cause

        logger.info(f"✅ Change channel connected to {self.url}")
        await self._replay_joins()

    async def _replay_joins(self) -> None:
        for room in list(self._holders):
            if room not in self._joined:
                await self._emit_join(room)

    def _on_connect(self):
        logger.debug("Change channel transport connected")

    def _on_disconnect(self, *args):
        # Server-side membership is gone with the connection
        self._joined.clear()
        if self._closing or self._credential is None:
            return
        logger.warning("⚠️ Change channel lost, reconnecting")
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.ensure_future(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except ChannelError as e:
            logger.error(f"❌ {e.message}")
            self._notify_error(e)

    # ---------------------------------------------------------------- rooms

    async def join(self, room: str, holder: str = DEFAULT_HOLDER) -> bool:
        """
        Add a holder to a room. The server join is sent for the first holder only.

        Returns:
            True if the holder was added, False if it already held the room
        """
        holders = self._holders.setdefault(room, set())
        if holder in holders:
            return False
        holders.add(holder)
        if len(holders) == 1 and self.connected:
            await self._emit_join(room)
        return True

    async def leave(self, room: str, holder: str = DEFAULT_HOLDER) -> bool:
        """
        Remove a holder from a room. The server leave is sent when the last holder goes.

        Returns:
            True if the holder was removed, False if it did not hold the room
        """
        holders = self._holders.get(room)
        if not holders or holder not in holders:
            return False
        holders.discard(holder)
        if holders:
            return True
        del self._holders[room]
        if room in self._joined:
            self._joined.discard(room)
            if self.connected:
                _, leave_event, argument = _wire_events(room)
                await self._sio.emit(leave_event, argument)
                logger.debug(f"Left room {room}")
        return True

    def holders(self, room: str) -> Set[str]:
        return set(self._holders.get(room, set()))

    def rooms(self) -> List[str]:
        return list(self._holders)

    def joined_rooms(self) -> Set[str]:
        return set(self._joined)

    async def _emit_join(self, room: str) -> None:
        join_event, leave_event, argument = _wire_events(room)
        await self._sio.emit(join_event, argument)
        if not self._holders.get(room):
            # Last holder left while the join was on the wire
            if self.connected:
                await self._sio.emit(leave_event, argument)
            logger.debug(f"Room {room} released during join, left again")
            return
        self._joined.add(room)
        logger.debug(f"Joined room {room}")

    async def emit_typing(self, task_id: str, is_typing: bool) -> None:
        if not self.connected:
            return
        await self._sio.emit('task_typing', {'task_id': task_id, 'is_typing': is_typing})

    # ---------------------------------------------------------- subscribers

    def subscribe(self, handler: Callable[[EntityEnvelope], None]) -> Callable[[], None]:
        self._entity_handlers.append(handler)
        return lambda: self._entity_handlers.remove(handler) if handler in self._entity_handlers else None

    def on_presence(self, handler: Callable[[PresenceEnvelope], None]) -> Callable[[], None]:
        self._presence_handlers.append(handler)
        return lambda: self._presence_handlers.remove(handler) if handler in self._presence_handlers else None

    def on_error(self, handler: Callable[[ChannelError], None]) -> Callable[[], None]:
        self._error_handlers.append(handler)
        return lambda: self._error_handlers.remove(handler) if handler in self._error_handlers else None

    # ------------------------------------------------------------- delivery

    def _register_handlers(self) -> None:
        self._sio.on('connect', self._on_connect)
        self._sio.on('disconnect', self._on_disconnect)
        self._sio.on(ENTITY_EVENT, lambda data: self.deliver(ENTITY_EVENT, data))
        self._sio.on(NOTIFICATION_EVENT, lambda data: self.deliver(NOTIFICATION_EVENT, data))
        for event_name in PRESENCE_EVENTS:
            self._sio.on(event_name, lambda data, name=event_name: self.deliver(name, data))

    def deliver(self, event_name: str, raw: Any) -> Optional[Any]:
        """
        Validate one inbound payload and hand it to subscribers.

        Returns:
            The parsed envelope, or None when the payload was dropped
        """
        try:
            if event_name == ENTITY_EVENT:
                envelope = parse_entity_envelope(raw)
            elif event_name == NOTIFICATION_EVENT:
                envelope = notification_envelope(raw)
            elif event_name in PRESENCE_EVENTS:
                envelope = parse_presence_envelope(event_name, raw)
            else:
                logger.debug(f"Ignoring unhandled channel event {event_name}")
                return None
        except EnvelopeError as e:
            logger.warning(f"⚠️ Dropping malformed {event_name} envelope: {e}")
            return None

        handlers = self._presence_handlers if isinstance(envelope, PresenceEnvelope) else self._entity_handlers
        for handler in list(handlers):
            try:
                handler(envelope)
            except Exception as e:
                logger.error(f"❌ Channel subscriber failed on {event_name}: {e}", exc_info=True)
        return envelope

    def _notify_error(self, error: ChannelError) -> None:
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"❌ Channel error listener failed: {e}", exc_info=True)
