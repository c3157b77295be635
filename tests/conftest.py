"""
Root pytest configuration and fixtures for the sync client tests.

FakeRequestClient is an in-memory server behind the RequestClient contract.
In manual mode every call parks on a future so a test can complete requests
in any order. FakeSocketClient stands in for socketio.AsyncClient.
"""
import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
from socketio.exceptions import ConnectionError as SocketConnectionError

from models.channel_envelope import parse_entity_envelope
from models.entities import EntityKind
from services.request_client import RequestClient
from services.sync_errors import NotFoundError


@dataclass
class PendingCall:
    """A request parked until the test resolves or fails it."""
    op: str
    args: tuple
    future: asyncio.Future

    def resolve(self, value: Any = None):
        self.future.set_result(value)

    def fail(self, error: Exception):
        self.future.set_exception(error)


class FakeRequestClient(RequestClient):
    """In-memory server. Revisions are a single global counter."""

    def __init__(self):
        self.manual = False
        self.calls: List[tuple] = []
        self.pending: List[PendingCall] = []
        self.errors: Dict[str, List[Exception]] = {}
        self.records: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.credential: Optional[str] = None
        self.closed = False
        self._ids = itertools.count(1)
        self._revisions = itertools.count(100)

    # ---- test helpers

    def seed(self, kind: EntityKind, entity_id: str, **fields) -> Dict[str, Any]:
        record = {'id': entity_id, 'revision': next(self._revisions), **fields}
        self.records.setdefault(kind, {})[entity_id] = record
        return dict(record)

    def fail_next(self, op: str, error: Exception):
        self.errors.setdefault(op, []).append(error)

    def next_revision(self) -> int:
        return next(self._revisions)

    # ---- contract

    def set_credential(self, credential):
        self.credential = credential

    async def close(self):
        self.closed = True

    async def create(self, kind, data):
        return await self._handle('create', kind, data)

    async def update(self, kind, entity_id, patch, revision=None):
        return await self._handle('update', kind, entity_id, patch, revision)

    async def delete(self, kind, entity_id):
        return await self._handle('delete', kind, entity_id)

    async def fetch(self, kind, entity_id):
        return await self._handle('fetch', kind, entity_id)

    async def list(self, kind, params=None):
        return await self._handle('list', kind, params)

    async def list_notifications(self, page=1, limit=20, unread_only=False):
        return await self._handle('list_notifications', page, limit, unread_only)

    async def unread_count(self):
        return await self._handle('unread_count')

    async def mark_notification_read(self, notification_id):
        return await self._handle('mark_notification_read', notification_id)

    async def mark_all_notifications_read(self):
        return await self._handle('mark_all_notifications_read')

    # ---- internals

    async def _handle(self, op, *args):
        self.calls.append((op,) + args)
        if self.manual:
            call = PendingCall(op, args, asyncio.get_running_loop().create_future())
            self.pending.append(call)
            return await call.future
        queued = self.errors.get(op)
        if queued:
            raise queued.pop(0)
        return getattr(self, f'_auto_{op}')(*args)

    def _auto_create(self, kind, data):
        entity_id = f"{kind.value}-{next(self._ids)}"
        return self.seed(kind, entity_id, **data)

    def _auto_update(self, kind, entity_id, patch, revision=None):
        record = self.records.get(kind, {}).get(entity_id)
        if record is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found")
        record.update(patch)
        record['revision'] = next(self._revisions)
        return dict(record)

    def _auto_delete(self, kind, entity_id):
        if self.records.get(kind, {}).pop(entity_id, None) is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found")
        return None

    def _auto_fetch(self, kind, entity_id):
        record = self.records.get(kind, {}).get(entity_id)
        if record is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found")
        return dict(record)

    def _auto_list(self, kind, params=None):
        rows = [dict(r) for r in self.records.get(kind, {}).values()]
        for name, value in (params or {}).items():
            rows = [r for r in rows if r.get(name) == value]
        return rows

    def _auto_list_notifications(self, page, limit, unread_only):
        rows = [n for n in self.notifications if not (unread_only and n.get('is_read'))]
        start = (page - 1) * limit
        return {
            'notifications': rows[start:start + limit],
            'unreadCount': sum(1 for n in self.notifications if not n.get('is_read')),
        }

    def _auto_unread_count(self):
        return sum(1 for n in self.notifications if not n.get('is_read'))

    def _auto_mark_notification_read(self, notification_id):
        for n in self.notifications:
            if n['id'] == notification_id:
                n['is_read'] = True

    def _auto_mark_all_notifications_read(self):
        for n in self.notifications:
            n['is_read'] = True


class FakeSocketClient:
    """Records emits and registered handlers; can refuse a number of connects."""

    def __init__(self):
        self.connected = False
        self.handlers: Dict[str, Any] = {}
        self.emitted: List[tuple] = []
        self.connect_calls: List[dict] = []
        self.refuse_connects = 0

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, auth=None, transports=None, **kwargs):
        self.connect_calls.append({'url': url, 'auth': auth})
        await asyncio.sleep(0)
        if self.refuse_connects > 0:
            self.refuse_connects -= 1
            raise SocketConnectionError("connection refused")
        self.connected = True
        if 'connect' in self.handlers:
            self.handlers['connect']()

    async def emit(self, event, data=None, **kwargs):
        self.emitted.append((event, data))

    async def disconnect(self):
        self.connected = False

    def drop(self):
        """Simulate the server side closing the connection."""
        self.connected = False
        self.handlers['disconnect']()

    def push(self, event, data):
        """Simulate an inbound server event."""
        return self.handlers[event](data)


@dataclass
class RecordingListener:
    events: List[Any] = field(default_factory=list)

    def __call__(self, event):
        self.events.append(event)


async def settle(rounds: int = 5):
    """Let scheduled coroutines run up to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_envelope(event_type, entity_id, revision, kind='task', actor='user-2', **payload):
    return parse_entity_envelope({
        'event_type': event_type,
        'entity_kind': kind,
        'entity_id': entity_id,
        'revision': revision,
        'payload': payload,
        'actor': actor,
        'room_scope': None,
    })


@pytest.fixture
def request_client():
    return FakeRequestClient()


@pytest.fixture
def fake_sio():
    return FakeSocketClient()


@pytest.fixture
def listener():
    return RecordingListener()
