"""
Notification Record
User-facing notification held by the NotificationAggregator.
"""

import enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any


class NotificationType(str, enum.Enum):
    TASK_ASSIGNED = "task_assigned"
    TASK_UPDATED = "task_updated"
    TASK_COMMENTED = "task_commented"
    TASK_COMPLETED = "task_completed"
    PROJECT_UPDATED = "project_updated"
    TEAM_INVITATION = "team_invitation"
    DEADLINE_REMINDER = "deadline_reminder"


@dataclass
class Notification:
    id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    user_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    related_task_id: Optional[str] = None
    related_project_id: Optional[str] = None
    triggered_by: Optional[str] = None
    created_at: Optional[str] = None

    def __repr__(self):
        return f'<Notification {self.id}: {self.type.value} read={self.read}>'

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Notification":
        """
        Build from a server or persisted payload.

        Accepts the server's `is_read` as well as `read`. Raises ValueError
        when the id or type is unusable.
        """
        if not raw.get('id'):
            raise ValueError("notification has no id")
        try:
            notification_type = NotificationType(raw.get('type'))
        except ValueError:
            raise ValueError(f"unknown notification type {raw.get('type')!r}")
        read = raw.get('read', raw.get('is_read', False))
        return cls(
            id=str(raw['id']),
            type=notification_type,
            title=raw.get('title') or '',
            message=raw.get('message') or '',
            read=bool(read),
            user_id=raw.get('user_id'),
            data=dict(raw.get('data') or {}),
            related_task_id=raw.get('related_task_id'),
            related_project_id=raw.get('related_project_id'),
            triggered_by=raw.get('triggered_by'),
            created_at=raw.get('created_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type.value
        return data
