"""
Reconciler Service - Canonical Collection Merge

Every record that becomes canonical passes through here, whether it comes
from this client's own request responses, a fetch, or a push event from
another client.

Merge rules, for an incoming record R with id X:
1. X tombstoned and R is not a delete confirmation -> discard
2. No local record, or R strictly newer than a non-optimistic local record -> replace wholesale
3. R not newer and local not optimistic -> discard as duplicate
4. Local optimistic and R from a push -> field-level merge: R becomes the
   confirmed state, fields under a pending local edit keep their local value

Own responses are applied in issuance order: an older issuance's response
never overwrites fields written by a newer issuance.

Nothing in this module raises into the caller for a bad incoming record;
malformed input is logged and dropped.
"""

import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Callable, Union

from models.entities import EntityKind, EntityRecord
from models.channel_envelope import EntityEnvelope, ChangeType
from services.issuance_sequencer import IssuanceSequencer, PendingMutation
from services.temp_id_reconciler import TempIDReconciler

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
    APPLIED = "applied"
    MERGED = "merged"
    REMOVED = "removed"
    HELD = "held"
    DISCARDED_DUPLICATE = "discarded_duplicate"
    DISCARDED_TOMBSTONED = "discarded_tombstoned"
    DROPPED_MALFORMED = "dropped_malformed"
    FAILED = "failed"


class ChangeSource(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class ChangeEvent:
    """Emitted after a reconciled change or a rollback."""
    kind: EntityKind
    entity_id: str
    change_type: ChangeType
    source: ChangeSource
    record: Optional[EntityRecord] = None
    previous: Optional[EntityRecord] = None
    actor: Optional[str] = None
    committed: bool = True
    rolled_back: bool = False
    temp_id: Optional[str] = None
    error: Optional[Exception] = None


@dataclass
class Tombstone:
    entity_id: str
    snapshot: Optional[EntityRecord]
    confirmed_snapshot: Optional[EntityRecord]
    index: int
    next_id: Optional[str]
    confirmed: bool = False
    revision: Optional[float] = None


class EntityCollection:
    """Ordered id -> record map. Head of the list is the most recent insert."""

    def __init__(self):
        self._order: List[str] = []
        self._records: Dict[str, EntityRecord] = {}

    def __len__(self):
        return len(self._order)

    def __contains__(self, entity_id):
        return entity_id in self._records

    def get(self, entity_id: str) -> Optional[EntityRecord]:
        return self._records.get(entity_id)

    def ids(self) -> List[str]:
        return list(self._order)

    def items(self) -> List[EntityRecord]:
        return [self._records[i] for i in self._order]

    def index_of(self, entity_id: str) -> int:
        try:
            return self._order.index(entity_id)
        except ValueError:
            return -1

    def insert(self, record: EntityRecord, index: int = 0) -> None:
        if record.id in self._records:
            self._records[record.id] = record
            return
        index = max(0, min(index, len(self._order)))
        self._order.insert(index, record.id)
        self._records[record.id] = record

    def put(self, record: EntityRecord) -> None:
        """Replace in place, or insert at the head when the id is new."""
        self.insert(record, 0)

    def swap(self, old_id: str, record: EntityRecord) -> None:
        """Replace old_id by record.id at the same position."""
        index = self.index_of(old_id)
        if index < 0:
            self.insert(record, 0)
            return
        self._records.pop(old_id, None)
        self._order[index] = record.id
        self._records[record.id] = record

    def remove(self, entity_id: str) -> Optional[EntityRecord]:
        record = self._records.pop(entity_id, None)
        if record is not None:
            self._order.remove(entity_id)
        return record

    def clear(self) -> None:
        self._order.clear()
        self._records.clear()


class Reconciler:
    """
    Merge engine for one entity kind.

    Owns the canonical collection, the last confirmed server state per id and
    the tombstone set. The mutation store drives optimistic changes through
    the optimistic_* / rollback_* methods so that every visible record is
    derived the same way: confirmed state plus the overlay of pending patches.
    """

    def __init__(
        self,
        kind: EntityKind,
        sequencer: Optional[IssuanceSequencer] = None,
        temp_ids: Optional[TempIDReconciler] = None,
        max_tombstones: int = 1000
    ):
        self.kind = kind
        self.sequencer = sequencer or IssuanceSequencer(kind.value)
        self.temp_ids = temp_ids or TempIDReconciler(kind.value)
        self.collection = EntityCollection()
        self.max_tombstones = max_tombstones
        self._confirmed: Dict[str, EntityRecord] = {}
        self._tombstones: "OrderedDict[str, Tombstone]" = OrderedDict()
        self._listeners: List[Callable[[ChangeEvent], None]] = []

    # ------------------------------------------------------------------ reads

    def get(self, entity_id: str) -> Optional[EntityRecord]:
        return self.collection.get(entity_id)

    def confirmed(self, entity_id: str) -> Optional[EntityRecord]:
        record = self._confirmed.get(entity_id)
        return record.copy() if record else None

    def is_tombstoned(self, entity_id: str) -> bool:
        return entity_id in self._tombstones

    def subscribe(self, listener: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ------------------------------------------------------- inbound records

    def apply_remote(self, envelope: EntityEnvelope) -> ReconcileOutcome:
        """Reconcile a push event from the change channel."""
        try:
            if envelope.entity_kind != self.kind:
                logger.warning(
                    f"Dropping {envelope.entity_kind.value} event routed to {self.kind.value} reconciler"
                )
                return ReconcileOutcome.DROPPED_MALFORMED
            if envelope.event_type == ChangeType.DELETED:
                return self._apply_remote_delete(envelope)
            record = EntityRecord.from_server(self.kind, envelope.record_payload())
            return self._apply_incoming(
                record,
                source=ChangeSource.REMOTE,
                actor=envelope.actor,
                change_type=envelope.event_type,
                envelope=envelope,
            )
        except ValueError as e:
            logger.warning(f"⚠️ Dropping malformed {self.kind.value} event: {e}")
            return ReconcileOutcome.DROPPED_MALFORMED
        except Exception as e:
            logger.error(f"❌ Failed to reconcile {self.kind.value} event {envelope!r}: {e}", exc_info=True)
            return ReconcileOutcome.FAILED

    def apply_fetched(self, raw: Union[Dict[str, Any], EntityRecord]) -> ReconcileOutcome:
        """Reconcile a record obtained by a fetch/list request."""
        try:
            record = raw if isinstance(raw, EntityRecord) else EntityRecord.from_server(self.kind, raw)
            return self._apply_incoming(record, source=ChangeSource.LOCAL, actor=None, change_type=ChangeType.UPDATED)
        except ValueError as e:
            logger.warning(f"⚠️ Dropping malformed fetched {self.kind.value}: {e}")
            return ReconcileOutcome.DROPPED_MALFORMED
        except Exception as e:
            logger.error(f"❌ Failed to reconcile fetched {self.kind.value}: {e}", exc_info=True)
            return ReconcileOutcome.FAILED

    def apply_update_response(
        self,
        entity_id: str,
        raw: Union[Dict[str, Any], EntityRecord],
        seq: int,
        actor: Optional[str] = None
    ) -> ReconcileOutcome:
        """
        Reconcile the response to this client's own update.

        Args:
            entity_id: Entity the update targeted
            raw: Server record returned by the update request
            seq: Issuance number of the update
            actor: Current user id, attached to the emitted change event

        Returns:
            ReconcileOutcome
        """
        try:
            record = raw if isinstance(raw, EntityRecord) else EntityRecord.from_server(self.kind, raw)
            return self._apply_own_response(entity_id, record, seq, actor)
        except ValueError as e:
            logger.warning(f"⚠️ Dropping malformed update response for {self.kind.value} {entity_id}: {e}")
            return ReconcileOutcome.DROPPED_MALFORMED
        except Exception as e:
            logger.error(f"❌ Failed to reconcile update response for {entity_id}: {e}", exc_info=True)
            return ReconcileOutcome.FAILED
        finally:
            self.sequencer.complete(entity_id, seq)
            self._refresh_quietly(entity_id)

    def apply_create_response(
        self,
        temp_id: str,
        raw: Union[Dict[str, Any], EntityRecord],
        actor: Optional[str] = None
    ) -> ReconcileOutcome:
        """
        Swap a temporary record for the server record and replay any events held for its id.

        The temporary record is replaced, not merged: none of its optimistic
        field values survive.
        """
        try:
            record = raw if isinstance(raw, EntityRecord) else EntityRecord.from_server(self.kind, raw)
        except ValueError as e:
            logger.warning(f"⚠️ Malformed create response for {temp_id}: {e}")
            return ReconcileOutcome.DROPPED_MALFORMED

        try:
            held = self.temp_ids.reconcile(temp_id, record.id)
            outcome = self._swap_created(temp_id, record, actor)
        except Exception as e:
            logger.error(f"❌ Failed to reconcile create {temp_id}: {e}", exc_info=True)
            return ReconcileOutcome.FAILED

        for envelope in held:
            self.apply_remote(envelope)
        self._release_held_if_idle()
        return outcome

    # --------------------------------------------------- optimistic changes

    def optimistic_insert(self, record: EntityRecord) -> None:
        self.collection.insert(record.copy(optimistic=True), 0)

    def discard_create(self, temp_id: str, error: Optional[Exception] = None) -> None:
        """Remove a temp record whose create failed. No partial record remains."""
        self.temp_ids.mark_failed(temp_id, str(error) if error else None)
        self._remove_temp(temp_id, error)
        self._release_held_if_idle()

    def discard_orphaned_creates(self, threshold_minutes: int = 10) -> int:
        """
        Remove temp records whose create never resolved and release the
        events held on their behalf.

        Returns:
            Number of temp records removed
        """
        orphaned = self.temp_ids.cleanup_orphaned(threshold_minutes)
        for temp_id in orphaned:
            self._remove_temp(temp_id, None)
        if orphaned:
            logger.warning(f"⚠️ Dropped {len(orphaned)} unresolved {self.kind.value} creates")
            self._release_held_if_idle()
        return len(orphaned)

    def optimistic_patch(self, entity_id: str, patch: Dict[str, Any]) -> PendingMutation:
        """Issue a sequence number for patch and show it on top of the confirmed record."""
        local = self.collection.get(entity_id)
        if local is None:
            raise KeyError(entity_id)
        if entity_id not in self._confirmed and not local.optimistic:
            self._confirmed[entity_id] = local.copy(optimistic=False)
        mutation = self.sequencer.issue(entity_id, patch)
        self._refresh(entity_id)
        return mutation

    def rollback_update(self, entity_id: str, seq: int, error: Optional[Exception] = None) -> None:
        """
        Revert a failed update to the last confirmed server state.

        Other mutations for the same id that are still in flight stay visible
        on top of it; only the failed issuance's claim is released.
        """
        self.sequencer.abandon(entity_id, seq)
        if entity_id in self._tombstones or entity_id not in self._confirmed:
            return
        before = self.collection.get(entity_id)
        self._refresh(entity_id)
        logger.info(f"↩️ Rolled back {self.kind.value} {entity_id} (seq={seq}) to confirmed state")
        self._emit(ChangeEvent(
            kind=self.kind, entity_id=entity_id, change_type=ChangeType.UPDATED, source=ChangeSource.LOCAL,
            record=self.collection.get(entity_id), previous=before, committed=False, rolled_back=True, error=error,
        ))

    def force_confirmed(self, record: EntityRecord) -> None:
        """Adopt a re-fetched canonical record as confirmed state regardless of revision (conflict path)."""
        if record.id in self._tombstones:
            return
        self._confirmed[record.id] = record.copy(optimistic=False)
        self._refresh(record.id)

    def optimistic_remove(self, entity_id: str) -> Tombstone:
        local = self.collection.get(entity_id)
        if local is None:
            raise KeyError(entity_id)
        index = self.collection.index_of(entity_id)
        ids = self.collection.ids()
        next_id = ids[index + 1] if index + 1 < len(ids) else None
        confirmed = self._confirmed.get(entity_id)
        tombstone = Tombstone(
            entity_id=entity_id,
            snapshot=local.copy(),
            confirmed_snapshot=confirmed.copy() if confirmed else None,
            index=index,
            next_id=next_id,
            confirmed=False,
            revision=confirmed.revision if confirmed else local.revision,
        )
        self._add_tombstone(tombstone)
        self.collection.remove(entity_id)
        return tombstone

    def confirm_delete(self, entity_id: str, actor: Optional[str] = None, revision: Optional[float] = None) -> None:
        tombstone = self._tombstones.get(entity_id)
        if tombstone is None:
            tombstone = Tombstone(entity_id, None, None, -1, None)
            self._add_tombstone(tombstone)
        tombstone.confirmed = True
        if revision is not None and (tombstone.revision is None or revision > tombstone.revision):
            tombstone.revision = revision
        previous = self._confirmed.pop(entity_id, None)
        self.sequencer.forget(entity_id)
        self._emit(ChangeEvent(
            kind=self.kind, entity_id=entity_id, change_type=ChangeType.DELETED, source=ChangeSource.LOCAL,
            record=None, previous=previous or tombstone.snapshot, actor=actor,
        ))

    def rollback_delete(self, entity_id: str, error: Optional[Exception] = None) -> bool:
        """
        Undo an optimistic delete after the request failed.

        Returns:
            True if the record was reinserted, False if a remote delete
            already confirmed the removal
        """
        tombstone = self._tombstones.get(entity_id)
        if tombstone is None or tombstone.snapshot is None:
            return False
        if tombstone.confirmed:
            logger.info(f"Delete of {self.kind.value} {entity_id} already confirmed remotely, not restoring")
            return False
        del self._tombstones[entity_id]

        index = tombstone.index
        if tombstone.next_id is not None and tombstone.next_id in self.collection:
            index = self.collection.index_of(tombstone.next_id)
        if tombstone.confirmed_snapshot is not None:
            self._confirmed[entity_id] = tombstone.confirmed_snapshot.copy()
        self.collection.insert(tombstone.snapshot.copy(optimistic=False), index)
        self._refresh(entity_id)
        self._emit(ChangeEvent(
            kind=self.kind, entity_id=entity_id, change_type=ChangeType.DELETED, source=ChangeSource.LOCAL,
            record=self.collection.get(entity_id), committed=False, rolled_back=True, error=error,
        ))
        return True

    def reset(self) -> None:
        """Drop all state (logout)."""
        self.collection.clear()
        self._confirmed.clear()
        self._tombstones.clear()

    # ------------------------------------------------------------ internals

    def _apply_incoming(
        self,
        record: EntityRecord,
        source: ChangeSource,
        actor: Optional[str],
        change_type: ChangeType,
        envelope: Optional[EntityEnvelope] = None
    ) -> ReconcileOutcome:
        entity_id = record.id

        tombstone = self._tombstones.get(entity_id)
        if tombstone is not None:
            if (
                change_type == ChangeType.CREATED
                and tombstone.confirmed
                and tombstone.revision is not None
                and record.revision > tombstone.revision
            ):
                logger.info(f"{self.kind.value} {entity_id} re-created, clearing tombstone")
                del self._tombstones[entity_id]
            else:
                logger.debug(f"Discarding {change_type.value} for tombstoned {self.kind.value} {entity_id}")
                return ReconcileOutcome.DISCARDED_TOMBSTONED

        local = self.collection.get(entity_id)
        if local is None:
            if envelope is not None and self.temp_ids.has_pending() and self.temp_ids.hold(entity_id, envelope):
                return ReconcileOutcome.HELD
            self._confirmed[entity_id] = record.copy(optimistic=False)
            self.collection.insert(record.copy(optimistic=False), 0)
            self._emit(ChangeEvent(
                kind=self.kind, entity_id=entity_id, change_type=change_type, source=source,
                record=self.collection.get(entity_id), actor=actor,
            ))
            return ReconcileOutcome.APPLIED

        confirmed = self._confirmed.get(entity_id)
        base_revision = confirmed.revision if confirmed is not None else local.revision
        if base_revision is not None and record.revision <= base_revision:
            logger.debug(
                f"Discarding stale/duplicate {self.kind.value} {entity_id} "
                f"(incoming={record.revision}, local={base_revision})"
            )
            return ReconcileOutcome.DISCARDED_DUPLICATE

        previous = confirmed.copy() if confirmed is not None else None
        self._confirmed[entity_id] = record.copy(optimistic=False)
        if self.sequencer.has_pending(entity_id):
            self._refresh(entity_id)
            outcome = ReconcileOutcome.MERGED
            logger.debug(
                f"Field-merged {self.kind.value} {entity_id}, kept local edits to "
                f"{sorted(self.sequencer.claimed_fields(entity_id))}"
            )
        else:
            self.collection.put(record.copy(optimistic=False))
            outcome = ReconcileOutcome.APPLIED

        self._emit(ChangeEvent(
            kind=self.kind, entity_id=entity_id, change_type=ChangeType.UPDATED, source=source,
            record=self._confirmed[entity_id].copy(), previous=previous, actor=actor,
        ))
        return outcome

    def _apply_remote_delete(self, envelope: EntityEnvelope) -> ReconcileOutcome:
        entity_id = envelope.entity_id
        tombstone = self._tombstones.get(entity_id)
        if tombstone is not None:
            if tombstone.confirmed:
                return ReconcileOutcome.DISCARDED_DUPLICATE
            # Our own delete is still in flight; the server has already committed it
            tombstone.confirmed = True
            if tombstone.revision is None or envelope.revision > tombstone.revision:
                tombstone.revision = envelope.revision
            return ReconcileOutcome.REMOVED

        if entity_id not in self.collection and entity_id not in self._confirmed:
            if self.temp_ids.has_pending() and self.temp_ids.hold(entity_id, envelope):
                return ReconcileOutcome.HELD

        previous = self._confirmed.pop(entity_id, None) or self.collection.get(entity_id)
        self.collection.remove(entity_id)
        self.sequencer.forget(entity_id)
        self._add_tombstone(Tombstone(
            entity_id=entity_id, snapshot=None, confirmed_snapshot=None, index=-1, next_id=None,
            confirmed=True, revision=envelope.revision,
        ))
        self._emit(ChangeEvent(
            kind=self.kind, entity_id=entity_id, change_type=ChangeType.DELETED, source=ChangeSource.REMOTE,
            record=None, previous=previous, actor=envelope.actor,
        ))
        return ReconcileOutcome.REMOVED

    def _apply_own_response(
        self,
        entity_id: str,
        record: EntityRecord,
        seq: int,
        actor: Optional[str]
    ) -> ReconcileOutcome:
        if record.id != entity_id:
            logger.warning(f"Update response id {record.id} does not match {entity_id}, using {entity_id}")
            record = record.copy(id=entity_id)
        tombstone = self._tombstones.get(entity_id)
        if tombstone is not None and tombstone.confirmed:
            return ReconcileOutcome.DISCARDED_TOMBSTONED

        if tombstone is not None:
            confirmed = tombstone.confirmed_snapshot
        else:
            confirmed = self._confirmed.get(entity_id)
        if confirmed is not None and confirmed.revision is not None and record.revision <= confirmed.revision:
            logger.debug(f"Response seq={seq} for {entity_id} is not newer than confirmed state, ignoring")
            return ReconcileOutcome.DISCARDED_DUPLICATE

        fields = dict(record.fields)
        if confirmed is not None:
            for name in self.sequencer.newer_confirmed_fields(entity_id, seq):
                if name in confirmed.fields:
                    fields[name] = confirmed.fields[name]
                else:
                    fields.pop(name, None)
        merged = EntityRecord(kind=self.kind, id=entity_id, revision=record.revision, fields=fields, optimistic=False)

        if tombstone is not None:
            # Delete still in flight: a failed delete restores this state
            tombstone.confirmed_snapshot = merged
            if tombstone.revision is None or merged.revision > tombstone.revision:
                tombstone.revision = merged.revision
            logger.debug(f"Response seq={seq} for {entity_id} kept for a pending delete")
            return ReconcileOutcome.APPLIED

        previous = confirmed.copy() if confirmed is not None else None
        self._confirmed[entity_id] = merged
        self._emit(ChangeEvent(
            kind=self.kind, entity_id=entity_id, change_type=ChangeType.UPDATED, source=ChangeSource.LOCAL,
            record=self._confirmed[entity_id].copy(), previous=previous, actor=actor,
        ))
        return ReconcileOutcome.APPLIED

    def _swap_created(self, temp_id: str, record: EntityRecord, actor: Optional[str]) -> ReconcileOutcome:
        tombstone = self._tombstones.get(record.id)
        if tombstone is not None:
            if tombstone.confirmed:
                del self._tombstones[record.id]
            else:
                self.collection.remove(temp_id)
                return ReconcileOutcome.DISCARDED_TOMBSTONED

        existing = self.collection.get(record.id)
        if existing is not None:
            # A push for the new id got in first; keep a single record for it
            self.collection.remove(temp_id)
            confirmed = self._confirmed.get(record.id)
            if confirmed is not None and confirmed.revision is not None and record.revision <= confirmed.revision:
                return ReconcileOutcome.DISCARDED_DUPLICATE
            self._confirmed[record.id] = record.copy(optimistic=False)
            self._refresh(record.id)
        else:
            self._confirmed[record.id] = record.copy(optimistic=False)
            self.collection.swap(temp_id, record.copy(optimistic=False))

        self._emit(ChangeEvent(
            kind=self.kind, entity_id=record.id, change_type=ChangeType.CREATED, source=ChangeSource.LOCAL,
            record=self._confirmed[record.id].copy(), actor=actor, temp_id=temp_id,
        ))
        return ReconcileOutcome.APPLIED

    def _remove_temp(self, temp_id: str, error: Optional[Exception]) -> None:
        removed = self.collection.remove(temp_id)
        if removed is not None:
            self._emit(ChangeEvent(
                kind=self.kind, entity_id=temp_id, change_type=ChangeType.CREATED, source=ChangeSource.LOCAL,
                record=None, previous=removed, committed=False, rolled_back=True, temp_id=temp_id, error=error,
            ))

    def _release_held_if_idle(self) -> None:
        if self.temp_ids.has_pending():
            return
        for envelope in self.temp_ids.release_all():
            self.apply_remote(envelope)

    def _refresh(self, entity_id: str) -> None:
        """Rebuild the visible record: confirmed state plus pending patches."""
        confirmed = self._confirmed.get(entity_id)
        if confirmed is None:
            return
        overlay = self.sequencer.overlay(entity_id)
        if overlay:
            visible = confirmed.with_fields(overlay, optimistic=True)
        else:
            visible = confirmed.copy(optimistic=False)
        self.collection.put(visible)

    def _refresh_quietly(self, entity_id: str) -> None:
        try:
            if entity_id not in self._tombstones:
                self._refresh(entity_id)
        except Exception as e:
            logger.error(f"❌ Failed to refresh {self.kind.value} {entity_id}: {e}", exc_info=True)

    def _add_tombstone(self, tombstone: Tombstone) -> None:
        self._tombstones[tombstone.entity_id] = tombstone
        self._tombstones.move_to_end(tombstone.entity_id)
        while len(self._tombstones) > self.max_tombstones:
            oldest_id = next(
                (tid for tid, t in self._tombstones.items() if t.confirmed), None
            )
            if oldest_id is None:
                break
            del self._tombstones[oldest_id]

    def _emit(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"❌ Change listener failed for {event.kind.value} {event.entity_id}: {e}", exc_info=True)
