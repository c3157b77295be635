"""
Integration tests for a sync session: stores, channel, aggregator, presence
and persisted state wired together over in-memory fakes.
"""

import pytest
import pytest_asyncio

from conftest import FakeRequestClient, FakeSocketClient
from models.entities import EntityKind
from models.notification import Notification, NotificationType
from services.change_channel import ChangeChannelClient
from services.state_persistence import ClientStateRepository
from services.sync_errors import ChannelError
from services.sync_session import SyncSession
from utils.config import SyncClientConfig


def build_session(repository, request_client=None, sio=None):
    channel = ChangeChannelClient(
        'http://sync.test', sio=sio or FakeSocketClient(), max_reconnect_attempts=2, reconnect_backoff=0
    )
    return SyncSession(
        config=SyncClientConfig(notification_limit=10),
        request_client=request_client or FakeRequestClient(),
        channel=channel,
        repository=repository,
    )


def task_change(entity_id, revision, actor='user-2', event_type='created', **payload):
    return {
        'event_type': event_type, 'entity_kind': 'task', 'entity_id': entity_id,
        'payload': payload, 'actor': actor, 'room_scope': 'project:p1', 'revision': revision,
    }


@pytest.fixture
def repository():
    repository = ClientStateRepository("sqlite:///:memory:")
    yield repository
    repository.dispose()


@pytest.fixture
def session(repository, request_client, fake_sio):
    return build_session(repository, request_client, fake_sio)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_builds_components_and_connects(self, session, request_client, fake_sio):
        await session.start('token-1', user_id='user-1')

        assert session.started
        assert fake_sio.connected
        assert request_client.credential == 'token-1'
        assert set(session.stores) == {EntityKind.TASK, EntityKind.PROJECT, EntityKind.TEAM, EntityKind.COMMENT}

    @pytest.mark.asyncio
    async def test_second_start_ignored(self, session, fake_sio):
        await session.start('token-1', user_id='user-1')
        await session.start('token-1', user_id='user-1')

        assert len(fake_sio.connect_calls) == 1

    @pytest.mark.asyncio
    async def test_stores_usable_when_channel_unavailable(self, session, fake_sio):
        fake_sio.refuse_connects = 10

        with pytest.raises(ChannelError):
            await session.start('token-1', user_id='user-1')

        created = await session.tasks.create({'title': 'Offline task'})
        assert created.id == 'task-1'
        assert session.tasks.items() == [created]

    @pytest.mark.asyncio
    async def test_close_persists_and_next_session_restores(self, session, request_client, repository):
        await session.start('token-1', user_id='user-1')
        request_client.seed(EntityKind.TASK, 't1', title='Cached task', status='todo')
        await session.tasks.fetch_all()
        session.notifications.add(Notification('n1', NotificationType.TASK_ASSIGNED, 'New Task Assignment', 'hi'))

        await session.close()

        assert request_client.closed
        assert not session.started

        restored = build_session(repository)
        await restored.start('token-1', user_id='user-1')

        assert restored.tasks.get('t1').get('title') == 'Cached task'
        assert restored.notifications.unread_count == 1

    @pytest.mark.asyncio
    async def test_restored_record_ignores_older_push(self, session, request_client, repository):
        await session.start('token-1', user_id='user-1')
        request_client.seed(EntityKind.TASK, 't1', title='Cached task')
        await session.tasks.fetch_all()
        cached_revision = session.tasks.get('t1').revision
        await session.close()

        sio = FakeSocketClient()
        restored = build_session(repository, sio=sio)
        await restored.start('token-1', user_id='user-1')
        sio.push('entity_change', task_change('t1', cached_revision - 1, event_type='updated', title='Stale'))

        assert restored.tasks.get('t1').get('title') == 'Cached task'

    @pytest.mark.asyncio
    async def test_other_users_cache_discarded(self, session, request_client, repository):
        await session.start('token-1', user_id='user-1')
        request_client.seed(EntityKind.TASK, 't1', title='Private task')
        await session.tasks.fetch_all()
        await session.close()

        other = build_session(repository)
        await other.start('token-2', user_id='user-2')

        assert other.tasks.items() == []
        assert repository.load() is None

    @pytest.mark.asyncio
    async def test_logout_wipes_cache(self, session, request_client, repository):
        await session.start('token-1', user_id='user-1')
        request_client.seed(EntityKind.TASK, 't1', title='Cached task')
        await session.tasks.fetch_all()

        await session.logout()

        assert repository.load() is None
        assert session.credential is None


class TestRouting:

    @pytest_asyncio.fixture(autouse=True)
    async def setup(self, session):
        await session.start('token-1', user_id='user-1')

    @pytest.mark.asyncio
    async def test_entity_change_reaches_store_and_notifies(self, session, fake_sio):
        fake_sio.push('entity_change', task_change('t1', 5, title='Remote task', assignee_id='user-1'))

        assert session.tasks.get('t1').get('title') == 'Remote task'
        assert session.notifications.unread_count == 1
        assert session.notifications.notifications[0].type == NotificationType.TASK_ASSIGNED

    @pytest.mark.asyncio
    async def test_own_change_does_not_notify(self, session, fake_sio):
        fake_sio.push('entity_change', task_change('t1', 5, actor='user-1', title='Mine', assignee_id='user-1'))

        assert session.tasks.get('t1') is not None
        assert session.notifications.unread_count == 0

    @pytest.mark.asyncio
    async def test_comment_on_my_task_notifies(self, session, fake_sio):
        fake_sio.push('entity_change', task_change('t1', 5, title='Fix login', assignee_id='user-1'))
        fake_sio.push('entity_change', {
            'event_type': 'created', 'entity_kind': 'comment', 'entity_id': 'c1',
            'payload': {'task_id': 't1', 'content': 'Looks good'}, 'actor': 'user-3', 'revision': 6,
        })

        assert session.comments.get('c1').get('content') == 'Looks good'
        assert session.notifications.notifications[0].type == NotificationType.TASK_COMMENTED
        assert session.notifications.unread_count == 2

    @pytest.mark.asyncio
    async def test_notification_push_reaches_aggregator(self, session, fake_sio):
        fake_sio.push('new_notification', {
            'id': 'n1', 'type': 'deadline_reminder', 'title': 'Deadline', 'message': 'Due tomorrow',
            'user_id': 'user-1', 'created_at': '2024-05-01T10:00:00Z', 'is_read': False,
        })

        assert session.notifications.notifications[0].id == 'n1'
        assert session.notifications.unread_count == 1

    @pytest.mark.asyncio
    async def test_presence_reaches_tracker(self, session, fake_sio):
        fake_sio.push('user_viewing_task', {'task_id': 't1', 'user': {'id': 'user-2', 'name': 'Ana'}})

        assert [u['id'] for u in session.presence.viewers('t1')] == ['user-2']


class TestRooms:

    @pytest_asyncio.fixture(autouse=True)
    async def setup(self, session):
        await session.start('token-1', user_id='user-1')

    @pytest.mark.asyncio
    async def test_open_and_close_task(self, session, fake_sio):
        await session.open_task('t1')
        fake_sio.push('user_viewing_task', {'task_id': 't1', 'user': {'id': 'user-2'}})

        await session.close_task('t1')

        assert ('join_task', 't1') in fake_sio.emitted
        assert ('leave_task', 't1') in fake_sio.emitted
        assert session.presence.viewers('t1') == []

    @pytest.mark.asyncio
    async def test_task_room_shared_between_holders(self, session, fake_sio):
        await session.open_task('t1', holder='detail')
        await session.open_task('t1', holder='sidebar')
        await session.close_task('t1', holder='detail')

        assert ('leave_task', 't1') not in fake_sio.emitted

    @pytest.mark.asyncio
    async def test_watch_project_and_team(self, session, fake_sio):
        await session.watch_project('p1')
        await session.watch_team('x')
        await session.unwatch_team('x')

        assert ('join_project', 'p1') in fake_sio.emitted
        assert ('join_room', {'room': 'team:x'}) in fake_sio.emitted
        assert ('leave_room', {'room': 'team:x'}) in fake_sio.emitted

    @pytest.mark.asyncio
    async def test_typing(self, session, fake_sio):
        await session.set_typing('t1', True)

        assert fake_sio.emitted[-1] == ('task_typing', {'task_id': 't1', 'is_typing': True})


class TestPersistenceFailures:

    @pytest.mark.asyncio
    async def test_save_failure_logged_not_raised(self, session, repository, mocker, caplog):
        await session.start('token-1', user_id='user-1')
        mocker.patch.object(repository, 'save', side_effect=RuntimeError("disk full"))

        await session.close()

        assert "Failed to persist client state" in caplog.text
        assert not session.started

    @pytest.mark.asyncio
    async def test_unreadable_cache_ignored_on_start(self, session, repository, mocker):
        mocker.patch.object(repository, 'load', side_effect=RuntimeError("corrupt"))

        await session.start('token-1', user_id='user-1')

        assert session.started
        assert session.tasks.items() == []
