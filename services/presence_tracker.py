"""
Presence Tracker
Who else is viewing or typing on a task, and who is in a project room.
"""

import logging
from typing import Optional, Dict, Any, List, Callable

from models.channel_envelope import PresenceEnvelope, PresenceType

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Folds presence envelopes into per-task and per-project user maps."""

    def __init__(self, current_user_id: Optional[str] = None):
        self.current_user_id = str(current_user_id) if current_user_id is not None else None
        # {task_id: {user_id: user}}
        self._viewers: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._typing: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # {project_id: {user_id: user}}
        self._members: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._listeners: List[Callable[[PresenceEnvelope], None]] = []

    def handle(self, envelope: PresenceEnvelope) -> None:
        user_id = envelope.user_id
        if user_id is None or user_id == self.current_user_id:
            return

        if envelope.presence_type == PresenceType.VIEWING and envelope.task_id:
            self._viewers.setdefault(envelope.task_id, {})[user_id] = envelope.user
        elif envelope.presence_type == PresenceType.STOPPED_VIEWING and envelope.task_id:
            self._viewers.get(envelope.task_id, {}).pop(user_id, None)
            self._typing.get(envelope.task_id, {}).pop(user_id, None)
        elif envelope.presence_type == PresenceType.TYPING and envelope.task_id:
            typing = self._typing.setdefault(envelope.task_id, {})
            if envelope.is_typing:
                typing[user_id] = envelope.user
            else:
                typing.pop(user_id, None)
        elif envelope.presence_type == PresenceType.JOINED and envelope.project_id:
            self._members.setdefault(envelope.project_id, {})[user_id] = envelope.user
        elif envelope.presence_type == PresenceType.LEFT and envelope.project_id:
            self._members.get(envelope.project_id, {}).pop(user_id, None)
        else:
            logger.debug(f"Ignoring presence {envelope.presence_type.value} without a matching scope")
            return

        for listener in list(self._listeners):
            try:
                listener(envelope)
            except Exception as e:
                logger.error(f"❌ Presence listener failed: {e}", exc_info=True)

    def subscribe(self, listener: Callable[[PresenceEnvelope], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def viewers(self, task_id: str) -> List[Dict[str, Any]]:
        return list(self._viewers.get(str(task_id), {}).values())

    def typing_users(self, task_id: str) -> List[Dict[str, Any]]:
        return list(self._typing.get(str(task_id), {}).values())

    def project_members(self, project_id: str) -> List[Dict[str, Any]]:
        return list(self._members.get(str(project_id), {}).values())

    def clear_task(self, task_id: str) -> None:
        """Forget presence for a task room this client left."""
        self._viewers.pop(str(task_id), None)
        self._typing.pop(str(task_id), None)

    def clear_project(self, project_id: str) -> None:
        self._members.pop(str(project_id), None)

    def reset(self) -> None:
        self._viewers.clear()
        self._typing.clear()
        self._members.clear()
