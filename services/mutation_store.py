"""
Mutation Stores - Optimistic Create/Update/Delete per Entity Kind

A store applies a change locally before the server confirms it, dispatches
the request, and hands the response (or the failure) to its Reconciler.

Protocol:
- create: validate -> temp id -> insert at head -> dispatch -> swap temp for final id
- update: validate -> issuance number -> overlay patch -> dispatch with If-Match
          -> response applied in issuance order, or rollback to confirmed state
- delete: tombstone -> remove -> dispatch -> confirm, or reinsert at prior position

Failures roll back first and then raise a SyncError to the caller. A
cancelled request rolls back the same way before the cancellation propagates.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List, Callable

from models.entities import (
    EntityKind, EntityRecord, ENTITY_DEFAULTS, validate_fields, normalize_revision
)
from services.reconciler import Reconciler, ReconcileOutcome, ChangeEvent
from services.request_client import RequestClient
from services.sync_errors import (
    SyncError, ValidationError, NetworkError, ConflictError, NotFoundError
)
from services.temp_id_reconciler import TempIDReconciler

logger = logging.getLogger(__name__)


class MutationStore:
    """
    Optimistic mutation store for one entity kind.

    Args:
        kind: Entity kind held by this store
        request_client: Request/response boundary
        reconciler: Merge engine owning the canonical collection
        user_id: Current user, recorded as actor on own changes
    """

    kind: EntityKind = EntityKind.TASK
    orphan_threshold_minutes: int = 10

    def __init__(
        self,
        request_client: RequestClient,
        reconciler: Optional[Reconciler] = None,
        user_id: Optional[str] = None,
        kind: Optional[EntityKind] = None
    ):
        if kind is not None:
            self.kind = kind
        self.request_client = request_client
        self.reconciler = reconciler or Reconciler(self.kind)
        self.user_id = user_id

    # ------------------------------------------------------------------ reads

    def get(self, entity_id: str) -> Optional[EntityRecord]:
        record = self.reconciler.get(entity_id)
        if record is None and TempIDReconciler.is_temp_id(entity_id):
            record = self.reconciler.get(self.reconciler.temp_ids.resolve(entity_id))
        return record

    def items(self) -> List[EntityRecord]:
        return self.reconciler.collection.items()

    def is_optimistic(self, entity_id: str) -> bool:
        record = self.get(entity_id)
        return bool(record and record.optimistic)

    def is_tombstoned(self, entity_id: str) -> bool:
        return self.reconciler.is_tombstoned(entity_id)

    def subscribe(self, listener: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self.reconciler.subscribe(listener)

    def where(self, **criteria) -> List[EntityRecord]:
        """Records whose fields equal every given criterion, in collection order."""
        return [
            record for record in self.items()
            if all(record.get(name) == value for name, value in criteria.items())
        ]

    # -------------------------------------------------------------- hydration

    async def fetch_all(self, params: Optional[Dict[str, Any]] = None) -> List[EntityRecord]:
        """Load records from the server; each one goes through the reconciler."""
        rows = await self._call(self.request_client.list, self.kind, params)
        dropped = 0
        for raw in rows:
            if self.reconciler.apply_fetched(raw) == ReconcileOutcome.DROPPED_MALFORMED:
                dropped += 1
        logger.info(f"✅ Fetched {len(rows)} {self.kind.value} records ({dropped} malformed)")
        return self.items()

    async def fetch(self, entity_id: str) -> Optional[EntityRecord]:
        raw = await self._call(self.request_client.fetch, self.kind, entity_id)
        self.reconciler.apply_fetched(raw)
        return self.get(entity_id)

    # -------------------------------------------------------------- mutations

    async def create(self, data: Dict[str, Any]) -> Optional[EntityRecord]:
        """
        Create a record optimistically.

        The record is visible at the head of the collection under a temporary
        id immediately. On success it is replaced by the server record.

        Returns:
            The canonical record, or None when a remote delete already
            removed it

        Raises:
            ValidationError: client-side validation failed (nothing inserted)
            SyncError: the create request failed (temporary record removed)
        """
        self._validate(data, partial=False)
        self.reconciler.discard_orphaned_creates(self.orphan_threshold_minutes)

        temp_id = TempIDReconciler.generate_temp_id(self.user_id)
        fields = dict(ENTITY_DEFAULTS.get(self.kind, {}))
        fields.update(self._optimistic_defaults())
        fields.update(data)
        self.reconciler.temp_ids.log_pending(temp_id, data)
        self.reconciler.optimistic_insert(
            EntityRecord(kind=self.kind, id=temp_id, revision=None, fields=fields, optimistic=True)
        )
        logger.debug(f"Optimistic {self.kind.value} create {temp_id}")

        try:
            raw = await self._call(self.request_client.create, self.kind, data)
        except SyncError as e:
            logger.warning(f"❌ Create {self.kind.value} failed, removing {temp_id}: {e.message}")
            self.reconciler.discard_create(temp_id, e)
            raise
        except asyncio.CancelledError:
            logger.info(f"Create {self.kind.value} cancelled, removing {temp_id}")
            self.reconciler.discard_create(temp_id)
            raise

        outcome = self.reconciler.apply_create_response(temp_id, raw, actor=self.user_id)
        if outcome in (ReconcileOutcome.DROPPED_MALFORMED, ReconcileOutcome.FAILED):
            error = NetworkError(f"Create {self.kind.value} returned an unusable record")
            self.reconciler.discard_create(temp_id, error)
            raise error

        final_id = self.reconciler.temp_ids.resolve(temp_id)
        logger.info(f"✅ Created {self.kind.value} {final_id} (was {temp_id})")
        return self.reconciler.get(final_id)

    async def update(self, entity_id: str, patch: Dict[str, Any]) -> Optional[EntityRecord]:
        """
        Update a record optimistically.

        Raises:
            ValidationError: invalid patch, or the record is still being created
            NotFoundError: no such record locally
            ConflictError: stale revision; the canonical record was re-fetched
                and is available as error.current
            SyncError: any other request failure (rolled back)
        """
        entity_id = self._require_confirmed_id(entity_id)
        if not patch:
            return self.get(entity_id)
        self._validate(patch, partial=True)

        confirmed = self.reconciler.confirmed(entity_id) or self.reconciler.get(entity_id)
        mutation = self.reconciler.optimistic_patch(entity_id, patch)

        try:
            raw = await self._call(
                self.request_client.update, self.kind, entity_id, patch, confirmed.revision
            )
        except ConflictError as e:
            self.reconciler.rollback_update(entity_id, mutation.seq, e)
            e.current = await self._refetch_after_conflict(entity_id)
            raise
        except SyncError as e:
            logger.warning(
                f"❌ Update {self.kind.value} {entity_id} (seq={mutation.seq}) failed: {e.message}"
            )
            self.reconciler.rollback_update(entity_id, mutation.seq, e)
            raise
        except asyncio.CancelledError:
            logger.info(f"Update {self.kind.value} {entity_id} (seq={mutation.seq}) cancelled, rolling back")
            self.reconciler.rollback_update(entity_id, mutation.seq)
            raise

        self.reconciler.apply_update_response(entity_id, raw, mutation.seq, actor=self.user_id)
        return self.get(entity_id)

    async def delete(self, entity_id: str) -> None:
        """
        Delete a record optimistically.

        Raises:
            ValidationError: the record is still being created
            NotFoundError: no such record locally
            SyncError: the request failed; the record is back at its position
        """
        entity_id = self._require_confirmed_id(entity_id)
        self.reconciler.optimistic_remove(entity_id)

        try:
            raw = await self._call(self.request_client.delete, self.kind, entity_id)
        except NotFoundError:
            logger.info(f"{self.kind.value} {entity_id} already gone on the server")
            raw = None
        except SyncError as e:
            logger.warning(f"❌ Delete {self.kind.value} {entity_id} failed, restoring: {e.message}")
            self.reconciler.rollback_delete(entity_id, e)
            raise
        except asyncio.CancelledError:
            logger.info(f"Delete {self.kind.value} {entity_id} cancelled, restoring")
            self.reconciler.rollback_delete(entity_id)
            raise

        revision = None
        if isinstance(raw, dict):
            revision = normalize_revision(raw.get('revision', raw.get('updated_at')))
        self.reconciler.confirm_delete(entity_id, actor=self.user_id, revision=revision)
        logger.info(f"✅ Deleted {self.kind.value} {entity_id}")

    # ------------------------------------------------------------ internals

    def _optimistic_defaults(self) -> Dict[str, Any]:
        """Kind-specific fields the client knows before the server answers."""
        return {}

    def _validate(self, data: Dict[str, Any], partial: bool) -> None:
        errors = validate_fields(self.kind, data, partial=partial)
        if errors:
            raise ValidationError(f"Invalid {self.kind.value}", field_errors=errors)

    def _require_confirmed_id(self, entity_id: str) -> str:
        """Final id for entity_id; temp ids resolve once their create has landed."""
        if TempIDReconciler.is_temp_id(entity_id):
            resolved = self.reconciler.temp_ids.resolve(entity_id)
            if resolved == entity_id:
                raise ValidationError(
                    f"{self.kind.value} {entity_id} is still being created",
                    field_errors={'id': ["Record is still being created"]},
                )
            entity_id = resolved
        if self.reconciler.is_tombstoned(entity_id) or self.reconciler.get(entity_id) is None:
            raise NotFoundError(f"{self.kind.value} {entity_id} not found", context={'id': entity_id})
        return entity_id

    async def _refetch_after_conflict(self, entity_id: str) -> Optional[EntityRecord]:
        try:
            raw = await self._call(self.request_client.fetch, self.kind, entity_id)
            record = EntityRecord.from_server(self.kind, raw)
        except (SyncError, ValueError) as e:
            logger.error(f"❌ Re-fetch after conflict failed for {self.kind.value} {entity_id}: {e}")
            return None
        self.reconciler.force_confirmed(record)
        logger.info(f"⚠️ Conflict on {self.kind.value} {entity_id}, adopted server revision {record.revision}")
        return self.reconciler.confirmed(entity_id)

    async def _call(self, method, *args):
        try:
            return await method(*args)
        except SyncError:
            raise
        except Exception as e:
            logger.error(f"❌ {self.kind.value} request failed unexpectedly: {e}", exc_info=True)
            raise NetworkError(str(e)) from e


class TaskStore(MutationStore):
    kind = EntityKind.TASK

    def _optimistic_defaults(self) -> Dict[str, Any]:
        return {'reporter_id': self.user_id or ''}

    async def move(self, task_id: str, status: str, position: Optional[int] = None) -> Optional[EntityRecord]:
        """Drag-and-drop: status and position change together."""
        patch: Dict[str, Any] = {'status': status}
        if position is not None:
            patch['position'] = position
        return await self.update(task_id, patch)

    async def assign(self, task_id: str, assignee_id: Optional[str]) -> Optional[EntityRecord]:
        return await self.update(task_id, {'assignee_id': assignee_id})

    def for_project(self, project_id: str) -> List[EntityRecord]:
        return self.where(project_id=project_id)


class ProjectStore(MutationStore):
    kind = EntityKind.PROJECT

    def _optimistic_defaults(self) -> Dict[str, Any]:
        return {'owner_id': self.user_id or ''}


class TeamStore(MutationStore):
    kind = EntityKind.TEAM

    def _optimistic_defaults(self) -> Dict[str, Any]:
        return {'owner_id': self.user_id or ''}


class CommentStore(MutationStore):
    kind = EntityKind.COMMENT

    def _optimistic_defaults(self) -> Dict[str, Any]:
        return {'user_id': self.user_id or ''}

    async def add(
        self,
        task_id: str,
        content: str,
        parent_comment_id: Optional[str] = None
    ) -> Optional[EntityRecord]:
        data: Dict[str, Any] = {'task_id': task_id, 'content': content}
        if parent_comment_id:
            data['parent_comment_id'] = parent_comment_id
        return await self.create(data)

    async def edit(self, comment_id: str, content: str) -> Optional[EntityRecord]:
        return await self.update(comment_id, {'content': content, 'is_edited': True})

    async def fetch_for_task(self, task_id: str) -> List[EntityRecord]:
        await self.fetch_all({'task_id': task_id})
        return self.for_task(task_id)

    def for_task(self, task_id: str) -> List[EntityRecord]:
        """Top-level comments on a task."""
        return [c for c in self.where(task_id=task_id) if not c.get('parent_comment_id')]

    def replies(self, comment_id: str) -> List[EntityRecord]:
        return self.where(parent_comment_id=comment_id)


STORE_CLASSES = {
    EntityKind.TASK: TaskStore,
    EntityKind.PROJECT: ProjectStore,
    EntityKind.TEAM: TeamStore,
    EntityKind.COMMENT: CommentStore,
}
