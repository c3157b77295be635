"""
IssuanceSequencer Service - Per-Store Mutation Ordering

Assigns issuance sequence numbers to optimistic mutations and tracks which
fields each in-flight mutation claims, so that server responses are applied in
issuance order rather than completion order.

Key Features:
- Monotonic issuance numbers per store
- Per-entity pending mutation ledger
- Field claims: a late confirmation for an older issuance cannot clobber
  fields touched by a newer pending or already-confirmed issuance
- Overlay of still-pending patches on top of confirmed state
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Set

logger = logging.getLogger(__name__)


@dataclass
class PendingMutation:
    """One optimistic update waiting for its server response."""
    seq: int
    entity_id: str
    patch: Dict[str, Any] = field(default_factory=dict)

    @property
    def fields(self) -> Set[str]:
        return set(self.patch.keys())


class IssuanceSequencer:
    """
    Issuance ledger for one mutation store.

    Lifecycle of a mutation:
    1. issue() when the optimistic patch is applied
    2. newer_confirmed_fields() while its response is reconciled
    3. complete() on success, abandon() on failure
    """

    def __init__(self, name: str = "store"):
        self.name = name
        self._last_seq = 0

        # {entity_id: {seq: PendingMutation}}
        self._pending: Dict[str, Dict[int, PendingMutation]] = {}

        # {entity_id: {field: seq of newest confirmed issuance that wrote it}}
        self._confirmed_writes: Dict[str, Dict[str, int]] = {}

    @property
    def last_seq(self) -> int:
        return self._last_seq

    def issue(self, entity_id: str, patch: Dict[str, Any]) -> PendingMutation:
        """
        Register a new optimistic mutation.

        Args:
            entity_id: Entity the patch applies to
            patch: Field values the mutation sets

        Returns:
            PendingMutation carrying the assigned issuance number
        """
        self._last_seq += 1
        mutation = PendingMutation(seq=self._last_seq, entity_id=entity_id, patch=copy.deepcopy(patch))
        self._pending.setdefault(entity_id, {})[mutation.seq] = mutation
        logger.debug(f"[{self.name}] issued seq={mutation.seq} for {entity_id}: {sorted(mutation.fields)}")
        return mutation

    def complete(self, entity_id: str, seq: int) -> None:
        """Mark an issuance confirmed; its fields become protected against older responses."""
        mutation = self._pop(entity_id, seq)
        if mutation is None:
            return
        writes = self._confirmed_writes.setdefault(entity_id, {})
        for name in mutation.fields:
            if writes.get(name, 0) < seq:
                writes[name] = seq
        self._collect(entity_id)

    def abandon(self, entity_id: str, seq: int) -> None:
        """Drop a failed issuance. Its claims are released without being recorded as writes."""
        self._pop(entity_id, seq)
        self._collect(entity_id)

    def forget(self, entity_id: str) -> None:
        """Discard every pending claim for an entity (it was deleted)."""
        self._pending.pop(entity_id, None)
        self._confirmed_writes.pop(entity_id, None)

    def has_pending(self, entity_id: str) -> bool:
        return bool(self._pending.get(entity_id))

    def pending_for(self, entity_id: str) -> List[PendingMutation]:
        """Pending mutations for an entity in issuance order."""
        return [self._pending[entity_id][seq] for seq in sorted(self._pending.get(entity_id, {}))]

    def claimed_fields(self, entity_id: str) -> Set[str]:
        claimed: Set[str] = set()
        for mutation in self._pending.get(entity_id, {}).values():
            claimed |= mutation.fields
        return claimed

    def newer_confirmed_fields(self, entity_id: str, seq: int) -> Set[str]:
        """Fields last written by a confirmed issuance newer than seq. A response for seq must not overwrite them."""
        return {
            name
            for name, writer_seq in self._confirmed_writes.get(entity_id, {}).items()
            if writer_seq > seq
        }

    def overlay(self, entity_id: str) -> Dict[str, Any]:
        """
        Merged patch of every pending mutation, newer issuances winning.

        A pending field is left out when a newer issuance has already been
        confirmed for it; the confirmed value is the one to show.
        """
        writes = self._confirmed_writes.get(entity_id, {})
        merged: Dict[str, Any] = {}
        for mutation in self.pending_for(entity_id):
            for name, value in mutation.patch.items():
                if writes.get(name, 0) > mutation.seq:
                    continue
                merged[name] = copy.deepcopy(value)
        return merged

    def _pop(self, entity_id: str, seq: int) -> Optional[PendingMutation]:
        mutations = self._pending.get(entity_id)
        if not mutations or seq not in mutations:
            logger.debug(f"[{self.name}] no pending issuance seq={seq} for {entity_id}")
            return None
        return mutations.pop(seq)

    def _collect(self, entity_id: str) -> None:
        # Once nothing is in flight no older response can still arrive
        if not self._pending.get(entity_id):
            self._pending.pop(entity_id, None)
            self._confirmed_writes.pop(entity_id, None)
