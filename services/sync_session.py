"""
Sync Session - Component Wiring for One Logged-in User

Builds every sync component with explicit dependencies at login and tears
them down at logout:

    HttpRequestClient ─┐
                       ├─ TaskStore / ProjectStore / TeamStore / CommentStore
    ChangeChannelClient┘        │ change events
           │ envelopes          ▼
           └────────────► Reconciler per kind ──► NotificationAggregator
           └─ presence ──► PresenceTracker

Cached confirmed state is restored through the reconcilers on start and
written back on close.
"""

import logging
from typing import Optional, Dict, List, Callable

from models.channel_envelope import EntityEnvelope
from models.entities import EntityKind, EntityRecord
from services.change_channel import ChangeChannelClient, project_room, task_room, team_room
from services.mutation_store import (
    MutationStore, TaskStore, ProjectStore, TeamStore, CommentStore, STORE_CLASSES
)
from services.notification_aggregator import NotificationAggregator
from services.presence_tracker import PresenceTracker
from services.request_client import RequestClient, HttpRequestClient
from services.state_persistence import ClientStateRepository, ClientStateSnapshot
from services.sync_errors import ChannelError
from utils.config import SyncClientConfig

logger = logging.getLogger(__name__)


class SyncSession:
    """
    Owns the stores, channel, aggregator and presence tracker of one session.

    Args:
        config: Session settings; read from the environment when omitted
        request_client: Request boundary (HttpRequestClient by default)
        channel: Push channel (ChangeChannelClient by default)
        repository: Persisted state store; None disables persistence
    """

    def __init__(
        self,
        config: Optional[SyncClientConfig] = None,
        request_client: Optional[RequestClient] = None,
        channel: Optional[ChangeChannelClient] = None,
        repository: Optional[ClientStateRepository] = None
    ):
        self.config = config or SyncClientConfig.from_env()
        self.request_client = request_client or HttpRequestClient(
            self.config.api_url, timeout=self.config.request_timeout
        )
        self.channel = channel or ChangeChannelClient(
            self.config.socket_url,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            reconnect_backoff=self.config.reconnect_backoff,
        )
        self.repository = repository

        self.credential: Optional[str] = None
        self.user_id: Optional[str] = None
        self.stores: Dict[EntityKind, MutationStore] = {}
        self.notifications: Optional[NotificationAggregator] = None
        self.presence: Optional[PresenceTracker] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._started = False

    # ------------------------------------------------------------ accessors

    @property
    def started(self) -> bool:
        return self._started

    @property
    def tasks(self) -> TaskStore:
        return self.stores[EntityKind.TASK]

    @property
    def projects(self) -> ProjectStore:
        return self.stores[EntityKind.PROJECT]

    @property
    def teams(self) -> TeamStore:
        return self.stores[EntityKind.TEAM]

    @property
    def comments(self) -> CommentStore:
        return self.stores[EntityKind.COMMENT]

    # ------------------------------------------------------------ lifecycle

    async def start(self, credential: str, user_id: Optional[str] = None, restore: bool = True) -> None:
        """
        Build the session components and open the push channel.

        Raises:
            ChannelError: the channel could not be opened; stores remain
                usable through the request boundary
        """
        if self._started:
            logger.warning("Sync session already started, ignoring start()")
            return

        self.credential = credential
        self.user_id = str(user_id) if user_id is not None else None
        self.request_client.set_credential(credential)

        self.stores = {
            kind: store_class(self.request_client, user_id=self.user_id)
            for kind, store_class in STORE_CLASSES.items()
        }
        self.notifications = NotificationAggregator(
            self.request_client,
            user_id=self.user_id,
            limit=self.config.notification_limit,
            task_lookup=lambda task_id: self.tasks.get(task_id),
        )
        self.presence = PresenceTracker(current_user_id=self.user_id)

        for store in self.stores.values():
            self._unsubscribers.append(store.subscribe(self.notifications.handle_change))
        self._unsubscribers.append(self.channel.subscribe(self._route_envelope))
        self._unsubscribers.append(self.channel.on_presence(self.presence.handle))
        self._unsubscribers.append(self.channel.on_error(self._on_channel_error))

        if restore:
            self._restore()

        self._started = True
        logger.info(f"✅ Sync session started for user {self.user_id}")
        await self.channel.connect(credential)

    async def close(self, persist: bool = True) -> None:
        """Persist confirmed state, disconnect and drop every component."""
        if not self._started:
            return
        if persist:
            self.save_state()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        await self.channel.disconnect()
        await self.request_client.close()

        for store in self.stores.values():
            store.reconciler.reset()
        self.notifications.reset()
        self.presence.reset()
        self._started = False
        logger.info("Sync session closed")

    async def logout(self) -> None:
        """Close without persisting and wipe the local cache."""
        await self.close(persist=False)
        if self.repository is not None:
            self.repository.clear()
        self.credential = None
        self.user_id = None

    # ----------------------------------------------------------------- rooms

    async def open_task(self, task_id: str, holder: str = 'task_view') -> None:
        await self.channel.join(task_room(task_id), holder)

    async def close_task(self, task_id: str, holder: str = 'task_view') -> None:
        await self.channel.leave(task_room(task_id), holder)
        if not self.channel.holders(task_room(task_id)):
            self.presence.clear_task(task_id)

    async def watch_project(self, project_id: str, holder: str = 'project_view') -> None:
        await self.channel.join(project_room(project_id), holder)

    async def unwatch_project(self, project_id: str, holder: str = 'project_view') -> None:
        await self.channel.leave(project_room(project_id), holder)
        if not self.channel.holders(project_room(project_id)):
            self.presence.clear_project(project_id)

    async def watch_team(self, team_id: str, holder: str = 'team_view') -> None:
        await self.channel.join(team_room(team_id), holder)

    async def unwatch_team(self, team_id: str, holder: str = 'team_view') -> None:
        await self.channel.leave(team_room(team_id), holder)

    async def set_typing(self, task_id: str, is_typing: bool) -> None:
        await self.channel.emit_typing(task_id, is_typing)

    # ----------------------------------------------------------- persistence

    def snapshot(self) -> ClientStateSnapshot:
        """Confirmed state of every store plus the notification list."""
        entities: Dict[EntityKind, List[EntityRecord]] = {}
        for kind, store in self.stores.items():
            records = []
            for record in store.items():
                confirmed = store.reconciler.confirmed(record.id)
                if confirmed is not None:
                    records.append(confirmed)
                elif not record.optimistic:
                    records.append(record)
            entities[kind] = records
        return ClientStateSnapshot(
            credential=self.credential,
            user_id=self.user_id,
            entities=entities,
            notifications=list(self.notifications.notifications) if self.notifications else [],
        )

    def save_state(self) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save(self.snapshot())
        except Exception as e:
            logger.error(f"❌ Failed to persist client state: {e}", exc_info=True)

    def _restore(self) -> None:
        if self.repository is None:
            return
        try:
            snapshot = self.repository.load()
        except Exception as e:
            logger.error(f"❌ Failed to load persisted client state: {e}", exc_info=True)
            return
        if snapshot is None:
            return
        if snapshot.user_id and self.user_id and snapshot.user_id != self.user_id:
            logger.info("Persisted state belongs to another user, discarding")
            self.repository.clear()
            return

        for kind, records in snapshot.entities.items():
            store = self.stores.get(kind)
            if store is None:
                continue
            # Insert oldest first so the cached head stays at the head
            for record in reversed(records):
                store.reconciler.apply_fetched(record)
        self.notifications.load(snapshot.notifications)
        logger.info(
            f"Restored {sum(len(r) for r in snapshot.entities.values())} cached records and "
            f"{len(snapshot.notifications)} notifications"
        )

    # ---------------------------------------------------------------- routing

    def _route_envelope(self, envelope: EntityEnvelope) -> None:
        if envelope.entity_kind == EntityKind.NOTIFICATION:
            self.notifications.handle_envelope(envelope)
            return
        store = self.stores.get(envelope.entity_kind)
        if store is None:
            logger.warning(f"No store for {envelope.entity_kind.value} envelope, dropping")
            return
        store.reconciler.apply_remote(envelope)

    def _on_channel_error(self, error: ChannelError) -> None:
        logger.error(f"❌ Change channel unavailable: {error.message}")
