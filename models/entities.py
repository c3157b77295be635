"""
Entity Records for the Sync Client
In-memory representation of tasks, projects, teams and comments held by the mutation stores.

A record is an opaque id, a revision marker and a bag of domain fields. The
`optimistic` flag is store-local and never sent to the server.
"""

import copy
import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class EntityKind(str, enum.Enum):
    """Kinds of entity that have a mutation store."""
    TASK = "task"
    PROJECT = "project"
    TEAM = "team"
    COMMENT = "comment"
    NOTIFICATION = "notification"

    @classmethod
    def parse(cls, value: Any) -> Optional["EntityKind"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


# Keys the server sends that are not domain fields
RESERVED_KEYS = frozenset({'id', 'revision', '_optimistic'})

TASK_STATUSES = ('todo', 'in_progress', 'in_review', 'done', 'cancelled')
TASK_TYPES = ('task', 'bug', 'feature', 'epic')
PRIORITIES = ('low', 'medium', 'high', 'critical')
PROJECT_STATUSES = ('planning', 'active', 'on_hold', 'completed', 'cancelled')

# Field values a locally created record starts with until the server answers
ENTITY_DEFAULTS: Dict[EntityKind, Dict[str, Any]] = {
    EntityKind.TASK: {
        'title': '',
        'description': '',
        'project_id': None,
        'assignee_id': None,
        'reporter_id': '',
        'status': 'todo',
        'priority': 'medium',
        'type': 'task',
        'story_points': None,
        'time_estimate': None,
        'time_spent': 0,
        'due_date': None,
        'position': 0,
        'parent_task_id': None,
        'is_archived': False,
    },
    EntityKind.PROJECT: {
        'name': '',
        'description': '',
        'team_id': None,
        'owner_id': '',
        'status': 'planning',
        'priority': 'medium',
        'start_date': None,
        'due_date': None,
        'progress': 0,
        'color': '#3B82F6',
        'is_archived': False,
    },
    EntityKind.TEAM: {
        'name': '',
        'description': '',
        'owner_id': '',
        'avatar_url': None,
        'is_active': True,
    },
    EntityKind.COMMENT: {
        'task_id': None,
        'user_id': '',
        'content': '',
        'parent_comment_id': None,
        'is_edited': False,
    },
}

# Allowed values for enumerated fields, per kind
ENUM_FIELDS: Dict[EntityKind, Dict[str, tuple]] = {
    EntityKind.TASK: {'status': TASK_STATUSES, 'priority': PRIORITIES, 'type': TASK_TYPES},
    EntityKind.PROJECT: {'status': PROJECT_STATUSES, 'priority': PRIORITIES},
}

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000


def normalize_revision(value: Any) -> Optional[float]:
    """
    Turn a revision marker into a comparable number.

    Numbers are used as-is. Strings are parsed as ISO-8601 timestamps (the
    server's updated_at); a trailing Z and naive timestamps are read as UTC.

    Returns:
        float revision, or None when the marker is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            pass
        try:
            moment = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


@dataclass
class EntityRecord:
    """One canonical entity as seen by a store."""
    kind: EntityKind
    id: str
    revision: Optional[float]
    fields: Dict[str, Any] = field(default_factory=dict)
    optimistic: bool = False

    @classmethod
    def from_server(cls, kind: EntityKind, raw: Dict[str, Any]) -> "EntityRecord":
        """
        Build a record from a server payload.

        The revision comes from an explicit `revision` key when present,
        otherwise from `updated_at`. Raises ValueError when id or revision is
        missing so callers at the boundary can drop the payload.
        """
        if not isinstance(raw, dict):
            raise ValueError(f"{kind.value} payload must be an object, got {type(raw).__name__}")
        raw_id = raw.get('id')
        if raw_id is None or raw_id == '':
            raise ValueError(f"{kind.value} payload has no id")
        revision_source = raw.get('revision', raw.get('updated_at'))
        revision = normalize_revision(revision_source)
        if revision is None:
            raise ValueError(f"{kind.value} {raw_id} has no usable revision ({revision_source!r})")
        fields = {k: copy.deepcopy(v) for k, v in raw.items() if k not in RESERVED_KEYS}
        return cls(kind=kind, id=str(raw_id), revision=revision, fields=fields, optimistic=False)

    def copy(self, **changes) -> "EntityRecord":
        """Deep copy so snapshots never share mutable field values with the live record."""
        clone = replace(self, fields=copy.deepcopy(self.fields))
        return replace(clone, **changes) if changes else clone

    def with_fields(self, patch: Dict[str, Any], optimistic: bool) -> "EntityRecord":
        merged = copy.deepcopy(self.fields)
        merged.update(copy.deepcopy(patch))
        return EntityRecord(kind=self.kind, id=self.id, revision=self.revision, fields=merged, optimistic=optimistic)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.fields)
        data['id'] = self.id
        data['revision'] = self.revision
        data['_optimistic'] = self.optimistic
        return data


def validate_fields(kind: EntityKind, data: Dict[str, Any], partial: bool = False) -> Dict[str, list]:
    """
    Client-side validation applied before any optimistic change.

    Args:
        kind: Entity kind being mutated
        data: Full create payload or update patch
        partial: True for updates, where absent fields are not checked

    Returns:
        {field: [messages]} - empty when the data is valid
    """
    errors: Dict[str, list] = {}

    def check_title(name: str):
        if partial and name not in data:
            return
        value = data.get(name)
        if not isinstance(value, str) or not (TITLE_MIN_LENGTH <= len(value.strip()) <= TITLE_MAX_LENGTH):
            errors.setdefault(name, []).append(
                f"{name.capitalize()} must be between {TITLE_MIN_LENGTH} and {TITLE_MAX_LENGTH} characters"
            )

    if kind == EntityKind.TASK:
        check_title('title')
    elif kind in (EntityKind.PROJECT, EntityKind.TEAM):
        check_title('name')
    elif kind == EntityKind.COMMENT:
        if not partial or 'content' in data:
            content = data.get('content')
            if not isinstance(content, str) or not content.strip():
                errors.setdefault('content', []).append("Comment cannot be empty")
        if not partial and not data.get('task_id'):
            errors.setdefault('task_id', []).append("Comment must belong to a task")

    description = data.get('description')
    if isinstance(description, str) and len(description) > DESCRIPTION_MAX_LENGTH:
        errors.setdefault('description', []).append(
            f"Description must be less than {DESCRIPTION_MAX_LENGTH} characters"
        )

    for name, allowed in ENUM_FIELDS.get(kind, {}).items():
        if name in data and data[name] is not None and data[name] not in allowed:
            errors.setdefault(name, []).append(f"{name} must be one of: {', '.join(allowed)}")

    return errors
