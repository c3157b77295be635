"""
Channel Envelopes
Tagged union of everything the push channel can deliver, validated at the channel boundary.

Raw Socket.IO payloads never reach the reconciler: they are parsed here into
either an EntityEnvelope (created/updated/deleted) or a PresenceEnvelope, and
anything that does not fit raises EnvelopeError.
"""

import enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Union

from models.entities import EntityKind, normalize_revision


class EnvelopeError(ValueError):
    """Raised when a raw channel payload is not a valid envelope."""


class ChangeType(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class PresenceType(str, enum.Enum):
    VIEWING = "viewing"
    STOPPED_VIEWING = "stopped_viewing"
    JOINED = "joined"
    LEFT = "left"
    TYPING = "typing"


@dataclass(frozen=True)
class EntityEnvelope:
    """A committed remote mutation of one entity."""
    event_type: ChangeType
    entity_kind: EntityKind
    entity_id: str
    revision: float
    payload: Dict[str, Any] = field(default_factory=dict)
    actor: Optional[str] = None
    room_scope: Optional[str] = None

    @property
    def dedupe_key(self) -> tuple:
        return (self.entity_kind.value, self.entity_id, self.event_type.value, self.revision)

    def record_payload(self) -> Dict[str, Any]:
        """Payload shaped like a server record (id and revision included)."""
        data = dict(self.payload)
        data['id'] = self.entity_id
        data['revision'] = self.revision
        return data


@dataclass(frozen=True)
class PresenceEnvelope:
    """Someone else's presence in a room: viewing, leaving, typing."""
    presence_type: PresenceType
    user: Dict[str, Any]
    room_scope: Optional[str] = None
    task_id: Optional[str] = None
    project_id: Optional[str] = None
    is_typing: bool = False

    @property
    def user_id(self) -> Optional[str]:
        user_id = self.user.get('id')
        return str(user_id) if user_id is not None else None


Envelope = Union[EntityEnvelope, PresenceEnvelope]


def parse_entity_envelope(raw: Any) -> EntityEnvelope:
    """
    Validate a raw `entity_change` payload.

    Expected shape:
        {event_type, entity_kind, entity_id, payload, actor, room_scope, revision}

    Raises:
        EnvelopeError: on any missing or ill-typed member
    """
    if not isinstance(raw, dict):
        raise EnvelopeError(f"envelope must be an object, got {type(raw).__name__}")

    try:
        event_type = ChangeType(str(raw.get('event_type', '')).lower())
    except ValueError:
        raise EnvelopeError(f"unknown event_type {raw.get('event_type')!r}")

    kind = EntityKind.parse(raw.get('entity_kind'))
    if kind is None:
        raise EnvelopeError(f"unknown entity_kind {raw.get('entity_kind')!r}")

    entity_id = raw.get('entity_id')
    if entity_id is None or entity_id == '':
        raise EnvelopeError("envelope has no entity_id")

    payload = raw.get('payload')
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise EnvelopeError(f"payload must be an object, got {type(payload).__name__}")

    revision = normalize_revision(raw.get('revision'))
    if revision is None:
        revision = normalize_revision(payload.get('revision', payload.get('updated_at')))
    if revision is None:
        raise EnvelopeError(f"envelope for {kind.value} {entity_id} has no usable revision")

    if payload.get('id') is not None and str(payload['id']) != str(entity_id):
        raise EnvelopeError(f"payload id {payload.get('id')!r} does not match entity_id {entity_id!r}")

    actor = raw.get('actor')
    if isinstance(actor, dict):
        actor = actor.get('id')

    return EntityEnvelope(
        event_type=event_type,
        entity_kind=kind,
        entity_id=str(entity_id),
        revision=revision,
        payload={k: v for k, v in payload.items() if k not in ('id', 'revision')},
        actor=str(actor) if actor is not None else None,
        room_scope=raw.get('room_scope'),
    )


# Socket.IO event name -> presence type
PRESENCE_EVENTS = {
    'user_viewing_task': PresenceType.VIEWING,
    'user_stopped_viewing_task': PresenceType.STOPPED_VIEWING,
    'user_joined_project': PresenceType.JOINED,
    'user_left_project': PresenceType.LEFT,
    'user_typing': PresenceType.TYPING,
}


def parse_presence_envelope(event_name: str, raw: Any) -> PresenceEnvelope:
    presence_type = PRESENCE_EVENTS.get(event_name)
    if presence_type is None:
        raise EnvelopeError(f"unknown presence event {event_name!r}")
    if not isinstance(raw, dict):
        raise EnvelopeError(f"presence payload must be an object, got {type(raw).__name__}")
    user = raw.get('user')
    if not isinstance(user, dict) or user.get('id') is None:
        raise EnvelopeError(f"{event_name} payload has no user id")

    task_id = raw.get('task_id')
    project_id = raw.get('project_id')
    if task_id is not None:
        room_scope = f"task:{task_id}"
    elif project_id is not None:
        room_scope = f"project:{project_id}"
    else:
        raise EnvelopeError(f"{event_name} payload has neither task_id nor project_id")

    return PresenceEnvelope(
        presence_type=presence_type,
        user=dict(user),
        room_scope=room_scope,
        task_id=str(task_id) if task_id is not None else None,
        project_id=str(project_id) if project_id is not None else None,
        is_typing=bool(raw.get('is_typing', False)),
    )


def notification_envelope(raw: Any) -> EntityEnvelope:
    """Wrap a server-pushed `new_notification` record as a notification created envelope."""
    if not isinstance(raw, dict):
        raise EnvelopeError(f"notification must be an object, got {type(raw).__name__}")
    return parse_entity_envelope({
        'event_type': ChangeType.CREATED.value,
        'entity_kind': EntityKind.NOTIFICATION.value,
        'entity_id': raw.get('id'),
        'payload': raw,
        'actor': raw.get('triggered_by'),
        'room_scope': f"user:{raw.get('user_id')}" if raw.get('user_id') else None,
        'revision': raw.get('revision', raw.get('created_at')),
    })
