"""
Test Suite for the Notification Aggregator

Tests the notification list and unread counter:
- unread_count equals the number of unread notifications after every operation
- Synthesis from other users' committed changes
- Optimistic mark-as-read / mark-all-as-read with rollback
- Fetch paging, removal and the bounded list
"""

import asyncio

import pytest

from conftest import settle, make_envelope
from models.channel_envelope import ChangeType
from models.entities import EntityKind, EntityRecord
from models.notification import Notification, NotificationType
from services.notification_aggregator import NotificationAggregator
from services.reconciler import ChangeEvent, ChangeSource
from services.sync_errors import NetworkError


def notification(notification_id, read=False, notification_type='task_updated'):
    return Notification(
        id=notification_id,
        type=NotificationType(notification_type),
        title='Task Status Updated',
        message='something happened',
        read=read,
    )


def task_event(previous_fields, fields, actor='user-2', revision=2, **flags):
    previous = EntityRecord(EntityKind.TASK, 't1', revision - 1, previous_fields) if previous_fields else None
    return ChangeEvent(
        kind=EntityKind.TASK,
        entity_id='t1',
        change_type=ChangeType.UPDATED,
        source=ChangeSource.REMOTE,
        record=EntityRecord(EntityKind.TASK, 't1', revision, fields),
        previous=previous,
        actor=actor,
        **flags,
    )


@pytest.fixture
def aggregator(request_client):
    return NotificationAggregator(request_client, user_id='user-1', limit=5)


def assert_invariant(aggregator):
    assert aggregator.unread_count == sum(1 for n in aggregator.notifications if not n.read)


class TestAdd:

    def test_add_prepends_and_counts(self, aggregator):
        aggregator.add(notification('n1'))
        aggregator.add(notification('n2', read=True))

        assert [n.id for n in aggregator.notifications] == ['n2', 'n1']
        assert aggregator.unread_count == 1
        assert_invariant(aggregator)

    def test_add_is_idempotent_by_id(self, aggregator):
        assert aggregator.add(notification('n1')) is True
        assert aggregator.add(notification('n1')) is False

        assert len(aggregator.notifications) == 1
        assert aggregator.unread_count == 1

    def test_list_is_bounded(self, aggregator):
        for n in range(8):
            aggregator.add(notification(f'n{n}'))

        assert len(aggregator.notifications) == 5
        assert aggregator.notifications[0].id == 'n7'
        assert_invariant(aggregator)

    def test_server_push_added(self, aggregator):
        envelope = make_envelope(
            'created', 'n9', '2024-05-01T10:00:00Z', kind='notification',
            type='task_commented', title='New Comment', message='hi', is_read=False,
        )

        assert aggregator.handle_envelope(envelope) is True
        assert aggregator.notifications[0].type == NotificationType.TASK_COMMENTED
        assert aggregator.unread_count == 1

    def test_malformed_push_dropped(self, aggregator):
        envelope = make_envelope('created', 'n9', 1, kind='notification', type='mystery')

        assert aggregator.handle_envelope(envelope) is False
        assert aggregator.notifications == []

    def test_remove_adjusts_count(self, aggregator):
        aggregator.add(notification('n1'))
        aggregator.add(notification('n2', read=True))

        assert aggregator.remove('n1') is True
        assert aggregator.remove('n1') is False
        assert aggregator.unread_count == 0
        assert_invariant(aggregator)


class TestSynthesis:

    def test_assignment_to_me(self, aggregator):
        created = aggregator.handle_change(task_event(
            {'title': 'Fix login', 'assignee_id': None}, {'title': 'Fix login', 'assignee_id': 'user-1'}
        ))

        assert created.type == NotificationType.TASK_ASSIGNED
        assert created.triggered_by == 'user-2'
        assert created.related_task_id == 't1'
        assert aggregator.unread_count == 1

    def test_redelivered_change_notifies_once(self, aggregator):
        event = task_event({'title': 'Fix login'}, {'title': 'Fix login', 'assignee_id': 'user-1'})

        aggregator.handle_change(event)
        assert aggregator.handle_change(event) is None

        assert aggregator.unread_count == 1

    def test_status_done_on_my_task(self, aggregator):
        created = aggregator.handle_change(task_event(
            {'title': 'Fix login', 'status': 'in_review', 'reporter_id': 'user-1'},
            {'title': 'Fix login', 'status': 'done', 'reporter_id': 'user-1'},
        ))

        assert created.type == NotificationType.TASK_COMPLETED
        assert created.data['new_status'] == 'done'
        assert 'completed' in created.message

    def test_status_change_on_someone_elses_task_ignored(self, aggregator):
        assert aggregator.handle_change(task_event(
            {'status': 'todo', 'assignee_id': 'user-3'}, {'status': 'in_progress', 'assignee_id': 'user-3'},
        )) is None

    def test_own_change_ignored(self, aggregator):
        assert aggregator.handle_change(task_event(
            {'assignee_id': None}, {'assignee_id': 'user-1'}, actor='user-1'
        )) is None

    def test_rolled_back_change_ignored(self, aggregator):
        assert aggregator.handle_change(task_event(
            {'assignee_id': None}, {'assignee_id': 'user-1'}, committed=False, rolled_back=True
        )) is None

    def test_comment_on_my_task(self, request_client):
        my_task = EntityRecord(EntityKind.TASK, 't1', 1, {'title': 'Fix login', 'assignee_id': 'user-1'})
        aggregator = NotificationAggregator(request_client, user_id='user-1', task_lookup={'t1': my_task}.get)
        event = ChangeEvent(
            kind=EntityKind.COMMENT, entity_id='c1', change_type=ChangeType.CREATED, source=ChangeSource.REMOTE,
            record=EntityRecord(EntityKind.COMMENT, 'c1', 5, {'task_id': 't1', 'content': 'hi'}), actor='user-2',
        )

        created = aggregator.handle_change(event)

        assert created.type == NotificationType.TASK_COMMENTED
        assert created.data == {'task_id': 't1', 'comment_id': 'c1', 'project_id': None}

    def test_project_update(self, aggregator):
        event = ChangeEvent(
            kind=EntityKind.PROJECT, entity_id='p1', change_type=ChangeType.UPDATED, source=ChangeSource.REMOTE,
            record=EntityRecord(EntityKind.PROJECT, 'p1', 5, {'name': 'Launch'}), actor='user-2',
        )

        assert aggregator.handle_change(event).type == NotificationType.PROJECT_UPDATED


class TestReadState:

    @pytest.fixture(autouse=True)
    def setup(self, aggregator):
        for n in ('n1', 'n2', 'n3'):
            aggregator.add(notification(n))

    @pytest.mark.asyncio
    async def test_mark_as_read(self, aggregator, request_client):
        await aggregator.mark_as_read('n2')

        assert aggregator.unread_count == 2
        assert request_client.calls[-1] == ('mark_notification_read', 'n2')
        assert_invariant(aggregator)

    @pytest.mark.asyncio
    async def test_mark_as_read_twice_sends_once(self, aggregator, request_client):
        await aggregator.mark_as_read('n2')
        await aggregator.mark_as_read('n2')

        assert request_client.calls.count(('mark_notification_read', 'n2')) == 1
        assert aggregator.unread_count == 2

    @pytest.mark.asyncio
    async def test_mark_as_read_failure_restores(self, aggregator, request_client):
        request_client.fail_next('mark_notification_read', NetworkError("offline"))

        with pytest.raises(NetworkError):
            await aggregator.mark_as_read('n2')

        assert aggregator.unread_count == 3
        assert not next(n for n in aggregator.notifications if n.id == 'n2').read
        assert_invariant(aggregator)

    @pytest.mark.asyncio
    async def test_mark_all_as_read(self, aggregator):
        await aggregator.mark_all_as_read()

        assert aggregator.unread_count == 0
        assert all(n.read for n in aggregator.notifications)

    @pytest.mark.asyncio
    async def test_mark_all_failure_restores_and_keeps_new_arrivals(self, aggregator, request_client):
        await aggregator.mark_as_read('n1')
        request_client.manual = True

        pending = asyncio.create_task(aggregator.mark_all_as_read())
        await settle()
        assert aggregator.unread_count == 0

        aggregator.add(notification('n4'))
        assert aggregator.unread_count == 1
        request_client.pending[0].fail(NetworkError("offline"))

        with pytest.raises(NetworkError):
            await pending

        read_flags = {n.id: n.read for n in aggregator.notifications}
        assert read_flags == {'n4': False, 'n3': False, 'n2': False, 'n1': True}
        assert aggregator.unread_count == 3
        assert_invariant(aggregator)

    @pytest.mark.asyncio
    async def test_invariant_across_mixed_sequence(self, aggregator, request_client):
        request_client.fail_next('mark_all_notifications_read', NetworkError("offline"))

        aggregator.add(notification('n4'))
        assert_invariant(aggregator)
        await aggregator.mark_as_read('n3')
        assert_invariant(aggregator)
        with pytest.raises(NetworkError):
            await aggregator.mark_all_as_read()
        assert_invariant(aggregator)
        aggregator.remove('n4')
        assert_invariant(aggregator)
        await aggregator.mark_all_as_read()
        assert_invariant(aggregator)
        aggregator.add(notification('n5'))
        assert_invariant(aggregator)
        assert aggregator.unread_count == 1


class TestFetch:

    @pytest.mark.asyncio
    async def test_fetch_first_page_replaces(self, aggregator, request_client):
        aggregator.add(notification('local'))
        request_client.notifications = [
            {'id': 's1', 'type': 'task_assigned', 'title': 'a', 'message': 'a', 'is_read': False},
            {'id': 's2', 'type': 'task_updated', 'title': 'b', 'message': 'b', 'is_read': True},
        ]

        fetched = await aggregator.fetch(page=1, limit=20)

        assert [n.id for n in fetched] == ['s1', 's2']
        assert aggregator.unread_count == 1
        assert aggregator.server_unread_count == 1

    @pytest.mark.asyncio
    async def test_fetch_later_page_appends(self, aggregator, request_client):
        request_client.notifications = [
            {'id': f's{n}', 'type': 'task_updated', 'title': 't', 'message': 'm', 'is_read': False}
            for n in range(4)
        ]

        await aggregator.fetch(page=1, limit=2)
        await aggregator.fetch(page=2, limit=2)

        assert [n.id for n in aggregator.notifications] == ['s0', 's1', 's2', 's3']
        assert_invariant(aggregator)

    @pytest.mark.asyncio
    async def test_refresh_unread_count(self, aggregator, request_client):
        request_client.notifications = [
            {'id': 's1', 'type': 'task_updated', 'title': 't', 'message': 'm', 'is_read': False},
        ]

        assert await aggregator.refresh_unread_count() == 1
        assert aggregator.unread_count == 0


class TestUnexpectedFailures:

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, mocker):
        client = mocker.Mock()
        client.mark_all_notifications_read = mocker.AsyncMock(side_effect=RuntimeError("socket closed"))
        aggregator = NotificationAggregator(client, user_id='user-1')
        aggregator.add(notification('n1'))

        with pytest.raises(NetworkError):
            await aggregator.mark_all_as_read()

        assert aggregator.unread_count == 1
