"""
Tests for the aiohttp request client against a local aiohttp test server.
"""

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from models.entities import EntityKind
from services.request_client import HttpRequestClient
from services.sync_errors import ConflictError, NotFoundError, NetworkError, ValidationError

STALE_REVISION = 1.0


def build_app(seen):
    async def create_task(request):
        body = await request.json()
        seen.append(('POST', request.path, dict(request.headers), body))
        if len(body.get('title', '')) < 3:
            return web.json_response(
                {'error': 'Validation failed', 'details': {'title': 'too short'}}, status=400
            )
        return web.json_response({'task': {'id': 't1', 'updated_at': '2024-05-01T10:00:00Z', **body}}, status=201)

    async def update_task(request):
        body = await request.json()
        seen.append(('PUT', request.path, dict(request.headers), body))
        if request.headers.get('If-Match') == f'"{STALE_REVISION}"':
            return web.json_response({'error': 'Task was modified', 'kind': 'conflict'}, status=412)
        record = {'id': request.match_info['task_id'], 'revision': 9, **body}
        return web.json_response({'data': {'task': record}})

    async def get_task(request):
        if request.match_info['task_id'] == 'missing':
            return web.json_response({'error': 'Task not found'}, status=404)
        return web.json_response({'id': request.match_info['task_id'], 'revision': 3, 'title': 'Fetched'})

    async def list_tasks(request):
        seen.append(('GET', request.path, dict(request.headers), dict(request.query)))
        return web.json_response({'tasks': [{'id': 't1', 'revision': 1}, {'id': 't2', 'revision': 2}]})

    async def delete_task(request):
        seen.append(('DELETE', request.path, dict(request.headers), None))
        return web.Response(status=204)

    async def create_comment(request):
        body = await request.json()
        seen.append(('POST', request.path, dict(request.headers), body))
        comment = {'id': 'c1', 'task_id': request.match_info['task_id'], 'revision': 4, **body}
        return web.json_response({'comment': comment}, status=201)

    async def list_notifications(request):
        seen.append(('GET', request.path, dict(request.headers), dict(request.query)))
        return web.json_response({
            'notifications': [{'id': 'n1', 'type': 'task_assigned', 'is_read': False}],
            'unreadCount': 1,
        })

    async def unread_count(request):
        return web.json_response({'unreadCount': 3})

    async def mark_all_read(request):
        seen.append(('PUT', request.path, dict(request.headers), None))
        return web.json_response({'message': 'All notifications marked as read'})

    async def broken(request):
        return web.Response(status=502, text='Bad gateway')

    app = web.Application()
    app.router.add_post('/api/tasks', create_task)
    app.router.add_get('/api/tasks', list_tasks)
    app.router.add_get('/api/tasks/{task_id}', get_task)
    app.router.add_put('/api/tasks/{task_id}', update_task)
    app.router.add_delete('/api/tasks/{task_id}', delete_task)
    app.router.add_post('/api/comments/tasks/{task_id}', create_comment)
    app.router.add_get('/api/notifications', list_notifications)
    app.router.add_get('/api/notifications/unread-count', unread_count)
    app.router.add_put('/api/notifications/mark-all-read', mark_all_read)
    app.router.add_get('/api/projects/{project_id}', broken)
    return app


@pytest_asyncio.fixture
async def api():
    seen = []
    server = test_utils.TestServer(build_app(seen))
    await server.start_server()
    client = HttpRequestClient(str(server.make_url('/api')), credential='token-1', timeout=5)
    yield client, seen
    await client.close()
    await server.close()


class TestEntities:

    @pytest.mark.asyncio
    async def test_create_unwraps_record_and_sends_bearer(self, api):
        client, seen = api

        record = await client.create(EntityKind.TASK, {'title': 'Fix login'})

        assert record['id'] == 't1'
        assert record['title'] == 'Fix login'
        assert seen[0][2]['Authorization'] == 'Bearer token-1'

    @pytest.mark.asyncio
    async def test_validation_error_carries_field_errors(self, api):
        client, _ = api

        with pytest.raises(ValidationError) as exc_info:
            await client.create(EntityKind.TASK, {'title': 'no'})

        assert exc_info.value.field_errors == {'title': ['too short']}

    @pytest.mark.asyncio
    async def test_update_sends_if_match(self, api):
        client, seen = api

        record = await client.update(EntityKind.TASK, 't1', {'status': 'done'}, revision=5.0)

        assert record == {'id': 't1', 'revision': 9, 'status': 'done'}
        assert seen[0][2]['If-Match'] == '"5.0"'

    @pytest.mark.asyncio
    async def test_stale_update_raises_conflict(self, api):
        client, _ = api

        with pytest.raises(ConflictError):
            await client.update(EntityKind.TASK, 't1', {'status': 'done'}, revision=STALE_REVISION)

    @pytest.mark.asyncio
    async def test_fetch_bare_record(self, api):
        client, _ = api

        assert (await client.fetch(EntityKind.TASK, 't7'))['title'] == 'Fetched'

    @pytest.mark.asyncio
    async def test_fetch_missing_raises_not_found(self, api):
        client, _ = api

        with pytest.raises(NotFoundError):
            await client.fetch(EntityKind.TASK, 'missing')

    @pytest.mark.asyncio
    async def test_list_passes_params(self, api):
        client, seen = api

        rows = await client.list(EntityKind.TASK, {'project_id': 'p1'})

        assert [r['id'] for r in rows] == ['t1', 't2']
        assert seen[0][3] == {'project_id': 'p1'}

    @pytest.mark.asyncio
    async def test_delete_no_content(self, api):
        client, seen = api

        assert await client.delete(EntityKind.TASK, 't1') is None
        assert seen[0][:2] == ('DELETE', '/api/tasks/t1')

    @pytest.mark.asyncio
    async def test_comment_created_under_task(self, api):
        client, seen = api

        record = await client.create(EntityKind.COMMENT, {'task_id': 't1', 'content': 'Looks good'})

        assert seen[0][1] == '/api/comments/tasks/t1'
        assert seen[0][3] == {'content': 'Looks good'}
        assert record['task_id'] == 't1'

    @pytest.mark.asyncio
    async def test_non_json_server_error(self, api):
        client, _ = api

        with pytest.raises(NetworkError) as exc_info:
            await client.fetch(EntityKind.PROJECT, 'p1')

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == 'Bad gateway'


class TestNotifications:

    @pytest.mark.asyncio
    async def test_list_notifications(self, api):
        client, seen = api

        response = await client.list_notifications(page=2, limit=10, unread_only=True)

        assert response['unreadCount'] == 1
        assert seen[0][3] == {'page': '2', 'limit': '10', 'unread_only': 'true'}

    @pytest.mark.asyncio
    async def test_unread_count(self, api):
        client, _ = api

        assert await client.unread_count() == 3

    @pytest.mark.asyncio
    async def test_mark_all_read(self, api):
        client, seen = api

        await client.mark_all_notifications_read()

        assert seen[0][:2] == ('PUT', '/api/notifications/mark-all-read')


class TestTransportFailures:

    @pytest.mark.asyncio
    async def test_unreachable_server_raises_network_error(self):
        client = HttpRequestClient('http://127.0.0.1:1/api', timeout=2)
        try:
            with pytest.raises(NetworkError):
                await client.fetch(EntityKind.TASK, 't1')
        finally:
            await client.close()
