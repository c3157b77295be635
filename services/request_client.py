"""
Request Client - REST Boundary for the Sync Client

Abstract request/response contract consumed by the mutation stores and the
notification aggregator, plus an aiohttp implementation against the task
management REST API.

Every successful call returns canonical server records (dicts including a
revision marker or updated_at). Every failure raises a SyncError subclass.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List

import aiohttp

from models.entities import EntityKind
from services.sync_errors import SyncError, NetworkError, error_from_response

logger = logging.getLogger(__name__)


class RequestClient(ABC):
    """Request/response boundary, one method per remote operation."""

    def set_credential(self, credential: Optional[str]) -> None:
        """Credential for subsequent requests. No-op for clients without auth."""

    async def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def create(self, kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(
        self,
        kind: EntityKind,
        entity_id: str,
        patch: Dict[str, Any],
        revision: Optional[float] = None
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def fetch(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def list(self, kind: EntityKind, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_notifications(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def unread_count(self) -> int:
        ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: str) -> None:
        ...

    @abstractmethod
    async def mark_all_notifications_read(self) -> None:
        ...


# Collection path and response key per kind
RESOURCES = {
    EntityKind.TASK: ('/tasks', 'task', 'tasks'),
    EntityKind.PROJECT: ('/projects', 'project', 'projects'),
    EntityKind.TEAM: ('/teams', 'team', 'teams'),
    EntityKind.COMMENT: ('/comments', 'comment', 'comments'),
}


class HttpRequestClient(RequestClient):
    """
    aiohttp implementation of the request boundary.

    Args:
        base_url: API root, e.g. http://localhost:8000/api
        credential: Bearer token for the session
        timeout: Total request timeout in seconds
        session: Optional externally managed aiohttp.ClientSession
    """

    def __init__(
        self,
        base_url: str,
        credential: Optional[str] = None,
        timeout: float = 20.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.credential = credential
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def set_credential(self, credential: Optional[str]) -> None:
        self.credential = credential

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # -------------------------------------------------------------- entities

    async def create(self, kind: EntityKind, data: Dict[str, Any]) -> Dict[str, Any]:
        path, key, _ = self._resource(kind)
        body = dict(data)
        if kind == EntityKind.COMMENT:
            # Comments are created under their task
            task_id = body.pop('task_id', None)
            path = f"/comments/tasks/{task_id}"
        response = await self._request('POST', path, json=body)
        return self._unwrap(response, key)

    async def update(
        self,
        kind: EntityKind,
        entity_id: str,
        patch: Dict[str, Any],
        revision: Optional[float] = None
    ) -> Dict[str, Any]:
        path, key, _ = self._resource(kind)
        headers = {}
        if revision is not None:
            headers['If-Match'] = f'"{revision}"'
        response = await self._request('PUT', f"{path}/{entity_id}", json=patch, headers=headers)
        return self._unwrap(response, key)

    async def delete(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        path, _, _ = self._resource(kind)
        return await self._request('DELETE', f"{path}/{entity_id}")

    async def fetch(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        path, key, _ = self._resource(kind)
        response = await self._request('GET', f"{path}/{entity_id}")
        return self._unwrap(response, key)

    async def list(self, kind: EntityKind, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        path, _, plural = self._resource(kind)
        params = dict(params or {})
        if kind == EntityKind.COMMENT and params.get('task_id'):
            path = f"/comments/tasks/{params.pop('task_id')}"
        response = await self._request('GET', path, params=params)
        if isinstance(response, list):
            return response
        data = response.get('data', response) if isinstance(response, dict) else {}
        return list(data.get(plural) or [])

    # --------------------------------------------------------- notifications

    async def list_notifications(self, page: int = 1, limit: int = 20, unread_only: bool = False) -> Dict[str, Any]:
        params = {'page': page, 'limit': limit}
        if unread_only:
            params['unread_only'] = 'true'
        response = await self._request('GET', '/notifications', params=params)
        return response if isinstance(response, dict) else {'notifications': [], 'unreadCount': 0}

    async def unread_count(self) -> int:
        response = await self._request('GET', '/notifications/unread-count')
        return int((response or {}).get('unreadCount', 0))

    async def mark_notification_read(self, notification_id: str) -> None:
        await self._request('PUT', f"/notifications/{notification_id}/mark-as-read")

    async def mark_all_notifications_read(self) -> None:
        await self._request('PUT', '/notifications/mark-all-read')

    # ------------------------------------------------------------- internals

    def _resource(self, kind: EntityKind):
        try:
            return RESOURCES[kind]
        except KeyError:
            raise ValueError(f"No REST resource for {kind.value}")

    @staticmethod
    def _unwrap(response: Any, key: str) -> Dict[str, Any]:
        """Accept {key: {...}}, {data: {key: {...}}} or the bare record."""
        if not isinstance(response, dict):
            raise NetworkError(f"Unexpected response shape for {key}: {type(response).__name__}")
        if isinstance(response.get(key), dict):
            return response[key]
        data = response.get('data')
        if isinstance(data, dict):
            if isinstance(data.get(key), dict):
                return data[key]
            if 'id' in data:
                return data
        if 'id' in response:
            return response
        raise NetworkError(f"Response has no {key} record")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        request_headers = {'Accept': 'application/json', 'Content-Type': 'application/json'}
        if self.credential:
            request_headers['Authorization'] = f"Bearer {self.credential}"
        request_headers.update(headers or {})

        session = self._get_session()
        try:
            async with session.request(method, url, json=json, params=params, headers=request_headers) as response:
                payload = await self._read_json(response)
                if response.status >= 400:
                    error = error_from_response(response.status, payload)
                    logger.warning(f"{method} {path} failed: {response.status} {error.message}")
                    raise error
                return payload
        except SyncError:
            raise
        except asyncio.TimeoutError:
            raise NetworkError(f"{method} {path} timed out", context={'path': path})
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {path} failed: {e}", context={'path': path})

    @staticmethod
    async def _read_json(response: aiohttp.ClientResponse) -> Any:
        if response.status == 204:
            return None
        try:
            return await response.json(content_type=None)
        except (ValueError, aiohttp.ContentTypeError):
            text = await response.text()
            logger.debug(f"Non-JSON response body ({response.status}): {text[:200]}")
            return {'error': text} if response.status >= 400 else None
