"""
Notification Aggregator

Keeps the user's notification list and unread count. Notifications come from
two places: server pushes (`new_notification`) and committed change events
from other users that concern the current user.

Invariant after every operation:
    unread_count == number of notifications with read == False
"""

import logging
from typing import Optional, Dict, Any, List, Callable

from models.channel_envelope import EntityEnvelope, ChangeType
from models.entities import EntityKind, EntityRecord
from models.notification import Notification, NotificationType
from services.reconciler import ChangeEvent
from services.request_client import RequestClient
from services.sync_errors import SyncError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50

STATUS_MESSAGES = {
    'todo': 'moved to To Do',
    'in_progress': 'started working on',
    'in_review': 'submitted for review',
    'done': 'completed',
    'cancelled': 'cancelled',
}


class NotificationAggregator:
    """
    Notification list with optimistic read-state changes.

    Args:
        request_client: Request boundary for read-state calls and fetches
        user_id: Current user; only other users' changes notify
        limit: Number of most recent notifications kept
        task_lookup: Callable returning the current task record for an id,
            used to decide whether a comment concerns the current user
    """

    def __init__(
        self,
        request_client: RequestClient,
        user_id: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
        task_lookup: Optional[Callable[[str], Optional[EntityRecord]]] = None
    ):
        self.request_client = request_client
        self.user_id = str(user_id) if user_id is not None else None
        self.limit = limit
        self.task_lookup = task_lookup
        self.notifications: List[Notification] = []
        self.unread_count = 0
        # Total reported by the server, which can exceed what is held locally
        self.server_unread_count: Optional[int] = None
        self._listeners: List[Callable[[Notification], None]] = []

    # ----------------------------------------------------------------- adds

    def add(self, notification: Notification) -> bool:
        """
        Prepend a notification. Adding an id that is already present is a no-op.

        Returns:
            True if added
        """
        if self._find(notification.id) is not None:
            logger.debug(f"Notification {notification.id} already present, skipping")
            return False
        self.notifications.insert(0, notification)
        del self.notifications[self.limit:]
        self._recount()
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"❌ Notification listener failed: {e}", exc_info=True)
        return True

    def handle_envelope(self, envelope: EntityEnvelope) -> bool:
        """Add a server-pushed notification."""
        if envelope.entity_kind != EntityKind.NOTIFICATION or envelope.event_type != ChangeType.CREATED:
            return False
        try:
            notification = Notification.from_dict(envelope.record_payload())
        except ValueError as e:
            logger.warning(f"⚠️ Dropping malformed notification push: {e}")
            return False
        return self.add(notification)

    def handle_change(self, event: ChangeEvent) -> Optional[Notification]:
        """Synthesize a notification from a committed change made by someone else."""
        if not event.committed or event.rolled_back or event.record is None:
            return None
        if event.actor is None or str(event.actor) == self.user_id:
            return None
        try:
            notification = self._synthesize(event)
        except Exception as e:
            logger.error(f"❌ Failed to build notification for {event.kind.value} {event.entity_id}: {e}", exc_info=True)
            return None
        if notification is None:
            return None
        return notification if self.add(notification) else None

    # --------------------------------------------------------- read state

    async def mark_as_read(self, notification_id: str) -> None:
        """
        Optimistically mark one notification read.

        Raises:
            SyncError: the request failed; flag and count are restored
        """
        notification = self._find(notification_id)
        if notification is None or notification.read:
            return
        notification.read = True
        self._recount()
        try:
            await self._call(self.request_client.mark_notification_read, notification_id)
        except SyncError as e:
            logger.warning(f"❌ Failed to mark notification {notification_id} as read: {e.message}")
            current = self._find(notification_id)
            if current is not None:
                current.read = False
            self._recount()
            raise

    async def mark_all_as_read(self) -> None:
        """
        Optimistically mark every notification read.

        Raises:
            SyncError: the request failed; prior read flags are restored,
                notifications added meanwhile are kept
        """
        previous = {n.id: n.read for n in self.notifications}
        for notification in self.notifications:
            notification.read = True
        self._recount()
        try:
            await self._call(self.request_client.mark_all_notifications_read)
        except SyncError as e:
            logger.warning(f"❌ Failed to mark all notifications as read: {e.message}")
            for notification in self.notifications:
                if notification.id in previous:
                    notification.read = previous[notification.id]
            self._recount()
            raise
        logger.info("✅ All notifications marked as read")

    def remove(self, notification_id: str) -> bool:
        notification = self._find(notification_id)
        if notification is None:
            return False
        self.notifications.remove(notification)
        self._recount()
        return True

    # ----------------------------------------------------------- server sync

    async def fetch(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> List[Notification]:
        """
        Load a page of notifications. Page 1 replaces the list, later pages append.
        """
        response = await self._call(self.request_client.list_notifications, page, limit, unread_only)
        fetched = []
        for raw in response.get('notifications') or []:
            try:
                fetched.append(Notification.from_dict(raw))
            except ValueError as e:
                logger.warning(f"⚠️ Skipping malformed notification: {e}")

        if page == 1:
            merged = fetched
        else:
            known = {n.id for n in self.notifications}
            merged = self.notifications + [n for n in fetched if n.id not in known]
        self.notifications = merged[:self.limit]
        if response.get('unreadCount') is not None:
            self.server_unread_count = int(response['unreadCount'])
        self._recount()
        return list(self.notifications)

    async def refresh_unread_count(self) -> Optional[int]:
        try:
            self.server_unread_count = await self._call(self.request_client.unread_count)
        except SyncError as e:
            logger.warning(f"Failed to refresh unread count: {e.message}")
        return self.server_unread_count

    # ------------------------------------------------------------- helpers

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def load(self, notifications: List[Notification]) -> None:
        """Replace the list wholesale, e.g. from persisted state."""
        self.notifications = list(notifications)[:self.limit]
        self._recount()

    def reset(self) -> None:
        self.notifications = []
        self.server_unread_count = None
        self._recount()

    def _find(self, notification_id: str) -> Optional[Notification]:
        return next((n for n in self.notifications if n.id == notification_id), None)

    def _recount(self) -> None:
        self.unread_count = sum(1 for n in self.notifications if not n.read)

    async def _call(self, method, *args):
        try:
            return await method(*args)
        except SyncError:
            raise
        except Exception as e:
            logger.error(f"❌ Notification request failed unexpectedly: {e}", exc_info=True)
            raise NetworkError(str(e)) from e

    # ----------------------------------------------------------- synthesis

    def _synthesize(self, event: ChangeEvent) -> Optional[Notification]:
        record = event.record
        previous = event.previous
        actor = str(event.actor)

        if event.kind == EntityKind.TASK and event.change_type in (ChangeType.CREATED, ChangeType.UPDATED):
            title = record.get('title') or ''
            assignee = record.get('assignee_id')
            was_assignee = previous.get('assignee_id') if previous is not None else None
            if assignee is not None and str(assignee) == self.user_id and str(was_assignee) != self.user_id:
                return self._build(
                    event, NotificationType.TASK_ASSIGNED, 'New Task Assignment',
                    f'{actor} assigned you to "{title}"',
                    {'task_id': record.id, 'project_id': record.get('project_id')},
                )

            status = record.get('status')
            if previous is not None and status != previous.get('status') and self._concerns_me(record):
                notification_type = (
                    NotificationType.TASK_COMPLETED if status == 'done' else NotificationType.TASK_UPDATED
                )
                return self._build(
                    event, notification_type, 'Task Status Updated',
                    f'{actor} {STATUS_MESSAGES.get(status, "updated")} "{title}"',
                    {'task_id': record.id, 'project_id': record.get('project_id'), 'new_status': status},
                )
            return None

        if event.kind == EntityKind.COMMENT and event.change_type == ChangeType.CREATED:
            task_id = record.get('task_id')
            task = self.task_lookup(task_id) if (self.task_lookup and task_id) else None
            if task is None or not self._concerns_me(task):
                return None
            return self._build(
                event, NotificationType.TASK_COMMENTED, 'New Comment',
                f'{actor} commented on "{task.get("title") or ""}"',
                {'task_id': task_id, 'comment_id': record.id, 'project_id': task.get('project_id')},
            )

        if event.kind == EntityKind.PROJECT and event.change_type == ChangeType.UPDATED:
            name = record.get('name') or ''
            return self._build(
                event, NotificationType.PROJECT_UPDATED, 'Project Updated',
                f'{actor} updated project "{name}"',
                {'project_id': record.id},
            )

        if event.kind == EntityKind.TEAM and event.change_type == ChangeType.CREATED:
            member_ids = [str(m) for m in record.get('member_ids') or []]
            if self.user_id in member_ids:
                return self._build(
                    event, NotificationType.TEAM_INVITATION, 'Team Invitation',
                    f'{actor} added you to team "{record.get("name") or ""}"',
                    {'team_id': record.id},
                )
        return None

    def _concerns_me(self, task: EntityRecord) -> bool:
        return self.user_id is not None and self.user_id in (
            str(task.get('assignee_id')), str(task.get('reporter_id'))
        )

    def _build(
        self,
        event: ChangeEvent,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: Dict[str, Any]
    ) -> Notification:
        # Deterministic id so a redelivered change cannot notify twice
        notification_id = f"local:{event.kind.value}:{event.entity_id}:{notification_type.value}:{event.record.revision}"
        return Notification(
            id=notification_id,
            type=notification_type,
            title=title,
            message=message,
            read=False,
            user_id=self.user_id,
            data=data,
            related_task_id=data.get('task_id'),
            related_project_id=data.get('project_id'),
            triggered_by=str(event.actor),
        )
