"""
State Persistence - Versioned Client Cache

Everything that survives a restart goes through serialize_state() and
deserialize_state(). The document carries an explicit schema_version; older
shapes are migrated on read.

Versions:
    1 - legacy, un-versioned: {"notifications": [...], "unreadCount": n}
    2 - {"schema_version": 2, "credential", "user_id", "entities": {kind: [...]}, "notifications": [...]}

ClientStateRepository stores the document in SQLite (or any SQLAlchemy URL).
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from sqlalchemy import create_engine, select, delete
from sqlalchemy.orm import Session, sessionmaker

from models.base import Base
from models.client_state import ClientSessionState, CachedEntity, CachedNotification
from models.entities import EntityKind, EntityRecord
from models.notification import Notification

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1
NOTIFICATION_CACHE_LIMIT = 50


class StateVersionError(ValueError):
    """Persisted state has a schema version this client cannot read."""


@dataclass
class ClientStateSnapshot:
    """In-memory form of the persisted client state."""
    credential: Optional[str] = None
    user_id: Optional[str] = None
    entities: Dict[EntityKind, List[EntityRecord]] = field(default_factory=dict)
    notifications: List[Notification] = field(default_factory=list)
    schema_version: int = CURRENT_SCHEMA_VERSION

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.notifications if not n.read)


def serialize_state(snapshot: ClientStateSnapshot) -> Dict[str, Any]:
    """Snapshot -> current-version document. Optimistic records are skipped."""
    entities: Dict[str, List[Dict[str, Any]]] = {}
    for kind, records in snapshot.entities.items():
        rows = []
        for record in records:
            if record.optimistic or record.revision is None:
                continue
            data = record.to_dict()
            data.pop('_optimistic', None)
            rows.append(data)
        entities[kind.value] = rows

    return {
        'schema_version': CURRENT_SCHEMA_VERSION,
        'credential': snapshot.credential,
        'user_id': snapshot.user_id,
        'entities': entities,
        'notifications': [n.to_dict() for n in snapshot.notifications[:NOTIFICATION_CACHE_LIMIT]],
    }


def deserialize_state(document: Dict[str, Any]) -> ClientStateSnapshot:
    """
    Document of any known version -> snapshot.

    Malformed entries are dropped with a warning. The unread count is always
    recomputed from the read flags.

    Raises:
        StateVersionError: document is not an object or its version is unknown
    """
    if not isinstance(document, dict):
        raise StateVersionError(f"persisted state must be an object, got {type(document).__name__}")

    version = document.get('schema_version')
    if version is None:
        document = migrate_legacy_state(document)
        version = document['schema_version']
    if version != CURRENT_SCHEMA_VERSION:
        raise StateVersionError(f"unsupported persisted state version {version!r}")

    entities: Dict[EntityKind, List[EntityRecord]] = {}
    for kind_name, rows in (document.get('entities') or {}).items():
        kind = EntityKind.parse(kind_name)
        if kind is None or kind == EntityKind.NOTIFICATION:
            logger.warning(f"⚠️ Skipping cached records of unknown kind {kind_name!r}")
            continue
        records = []
        for raw in rows or []:
            try:
                records.append(EntityRecord.from_server(kind, raw))
            except ValueError as e:
                logger.warning(f"⚠️ Skipping malformed cached {kind.value}: {e}")
        entities[kind] = records

    notifications = []
    for raw in (document.get('notifications') or [])[:NOTIFICATION_CACHE_LIMIT]:
        try:
            notifications.append(Notification.from_dict(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"⚠️ Skipping malformed cached notification: {e}")

    return ClientStateSnapshot(
        credential=document.get('credential'),
        user_id=document.get('user_id'),
        entities=entities,
        notifications=notifications,
        schema_version=CURRENT_SCHEMA_VERSION,
    )


def migrate_legacy_state(document: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade the un-versioned notification-only cache to the current shape."""
    legacy_count = document.get('unreadCount')
    notifications = list(document.get('notifications') or [])
    actual = sum(1 for n in notifications if isinstance(n, dict) and not n.get('read', n.get('is_read', False)))
    if legacy_count is not None and legacy_count != actual:
        logger.info(f"Legacy unreadCount {legacy_count} disagrees with {actual} unread notifications, recomputing")
    logger.info(f"Migrating persisted state from v{LEGACY_SCHEMA_VERSION} to v{CURRENT_SCHEMA_VERSION}")
    return {
        'schema_version': CURRENT_SCHEMA_VERSION,
        'credential': document.get('credential'),
        'user_id': document.get('user_id'),
        'entities': {},
        'notifications': notifications,
    }


class ClientStateRepository:
    """
    SQL-backed store for the persisted client state.

    Args:
        db_url: SQLAlchemy URL, e.g. sqlite:///taskflow_state.db
    """

    SESSION_ROW_ID = 1

    def __init__(self, db_url: str = "sqlite:///:memory:"):
        self.db_url = db_url
        self.engine = create_engine(db_url)
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def save(self, snapshot: ClientStateSnapshot) -> None:
        document = serialize_state(snapshot)
        with self._session_factory() as session:
            with session.begin():
                self._clear(session)
                session.add(ClientSessionState(
                    id=self.SESSION_ROW_ID,
                    schema_version=document['schema_version'],
                    credential=document['credential'],
                    user_id=document['user_id'],
                ))
                for kind_name, rows in document['entities'].items():
                    for position, row in enumerate(rows):
                        fields = {k: v for k, v in row.items() if k not in ('id', 'revision')}
                        session.add(CachedEntity(
                            kind=kind_name,
                            entity_id=str(row['id']),
                            revision=row['revision'],
                            position=position,
                            fields=fields,
                        ))
                for position, payload in enumerate(document['notifications']):
                    session.add(CachedNotification(
                        id=payload['id'], position=position, read=bool(payload.get('read')), payload=payload,
                    ))
        logger.debug(
            f"Saved client state: {sum(len(r) for r in document['entities'].values())} entities, "
            f"{len(document['notifications'])} notifications"
        )

    def load(self) -> Optional[ClientStateSnapshot]:
        """Persisted snapshot, or None when nothing has been saved."""
        with self._session_factory() as session:
            state = session.get(ClientSessionState, self.SESSION_ROW_ID)
            if state is None:
                return None

            entities: Dict[str, List[Dict[str, Any]]] = {}
            stmt = select(CachedEntity).order_by(CachedEntity.kind, CachedEntity.position)
            for row in session.scalars(stmt):
                data = dict(row.fields or {})
                data['id'] = row.entity_id
                data['revision'] = row.revision
                entities.setdefault(row.kind, []).append(data)

            notifications = []
            for row in session.scalars(select(CachedNotification).order_by(CachedNotification.position)):
                payload = dict(row.payload or {})
                payload['read'] = row.read
                notifications.append(payload)

            document = {
                'schema_version': state.schema_version,
                'credential': state.credential,
                'user_id': state.user_id,
                'entities': entities,
                'notifications': notifications,
            }
        return deserialize_state(document)

    def import_document(self, document: Dict[str, Any]) -> ClientStateSnapshot:
        """Adopt a document of any known version (e.g. an exported legacy cache) and persist it."""
        snapshot = deserialize_state(document)
        self.save(snapshot)
        return snapshot

    def clear(self) -> None:
        with self._session_factory() as session:
            with session.begin():
                self._clear(session)

    @staticmethod
    def _clear(session: Session) -> None:
        session.execute(delete(CachedNotification))
        session.execute(delete(CachedEntity))
        session.execute(delete(ClientSessionState))

    def dispose(self) -> None:
        self.engine.dispose()
