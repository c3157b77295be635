"""
TempIDReconciler Service - Temporary ID Ledger
Manages temporary ID → server ID mappings for optimistic creates.

Features:
- Collision-resistant temp ID generation (temp_{timestamp}_{user_hash}_{uuid})
- Ledger-based tracking with status lifecycle
- Holding of push events that name an id the client cannot know yet
  (a create response still in flight)
- Resolution so callers holding a temp ID can find the final one
- Orphan sweep for creates that never resolved
"""

import enum
import hashlib
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class ReconciliationStatus(enum.Enum):
    """Status of ID reconciliation"""
    PENDING = "pending"           # Temp ID created, waiting for server confirmation
    RECONCILED = "reconciled"     # Successfully mapped temp→real ID
    FAILED = "failed"             # Create rejected, temp record removed
    ORPHANED = "orphaned"         # Never resolved, flagged for cleanup


@dataclass
class IDReconciliation:
    """One ledger entry for a locally created record."""
    temp_id: str
    entity_type: str
    status: ReconciliationStatus = ReconciliationStatus.PENDING
    real_id: Optional[str] = None
    data_payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    reconciled_at: Optional[datetime] = None

    def __repr__(self):
        return f'<IDReconciliation {self.temp_id} → {self.real_id} ({self.status.value})>'


class TempIDReconciler:
    """
    Temporary ID ledger for one mutation store.

    Lifecycle:
    1. Store asks for a temp ID (generate_temp_id) and logs it (log_pending)
    2. Push events for ids not known locally are held while any create is pending
    3. Create response arrives: reconcile() maps temp → real and hands back the
       events held for the real ID
    4. When no create is pending any more, remaining held events are released
    """

    def __init__(self, entity_type: str = 'task', max_held_events: int = 500, max_ledger_size: int = 1000):
        self.entity_type = entity_type
        self.max_held_events = max_held_events
        self.max_ledger_size = max_ledger_size
        self._ledger: "OrderedDict[str, IDReconciliation]" = OrderedDict()
        # {entity_id: [held events in arrival order]}
        self._held: "OrderedDict[str, List[Any]]" = OrderedDict()

    @staticmethod
    def generate_temp_id(user_id: Any = None, prefix: str = "temp") -> str:
        """
        Generate unique temporary ID with collision resistance.

        Format: temp_{timestamp_ms}_{user_hash}_{uuid_short}

        Example:
            temp_1730304000000_a1b2c3_f8e94c1d07ab
        """
        timestamp_ms = int(time.time() * 1000)
        user_hash = hashlib.sha256(str(user_id).encode()).hexdigest()[:6]
        uuid_short = uuid.uuid4().hex[:12]
        return f"{prefix}_{timestamp_ms}_{user_hash}_{uuid_short}"

    @staticmethod
    def is_temp_id(entity_id: Any) -> bool:
        if not isinstance(entity_id, str):
            return False
        return entity_id.startswith("temp_")

    def log_pending(self, temp_id: str, data_payload: Optional[Dict[str, Any]] = None) -> IDReconciliation:
        existing = self._ledger.get(temp_id)
        if existing:
            logger.warning(f"Temp ID {temp_id} already exists in ledger")
            return existing
        entry = IDReconciliation(temp_id=temp_id, entity_type=self.entity_type, data_payload=dict(data_payload or {}))
        self._ledger[temp_id] = entry
        self._trim_ledger()
        logger.debug(f"Logged pending reconciliation: {temp_id}")
        return entry

    def reconcile(self, temp_id: str, real_id: str) -> List[Any]:
        """
        Map a temp ID to the server-assigned ID.

        Args:
            temp_id: Temporary ID the record was inserted under
            real_id: Server-assigned ID

        Returns:
            Events held for real_id, in arrival order, for the caller to replay
        """
        entry = self._ledger.get(temp_id)
        if entry is None:
            logger.warning(f"No reconciliation found for temp ID: {temp_id}")
            entry = self.log_pending(temp_id)
        entry.real_id = real_id
        entry.status = ReconciliationStatus.RECONCILED
        entry.reconciled_at = datetime.utcnow()
        logger.info(f"✅ Reconciliation complete: {temp_id} → {real_id}")
        return self._held.pop(real_id, [])

    def mark_failed(self, temp_id: str, error_message: Optional[str] = None) -> None:
        entry = self._ledger.get(temp_id)
        if entry is None:
            return
        entry.status = ReconciliationStatus.FAILED
        if error_message:
            entry.data_payload['error'] = error_message
        logger.info(f"Reconciliation failed for {temp_id}: {error_message}")

    def has_pending(self) -> bool:
        return any(e.status == ReconciliationStatus.PENDING for e in self._ledger.values())

    def hold(self, entity_id: str, event: Any) -> bool:
        """
        Hold an event for an id that may belong to a create still in flight.

        Returns:
            True if held, False if the hold buffer is full and the event was not kept
        """
        held_count = self.held_count()
        if held_count >= self.max_held_events:
            logger.warning(f"Held event buffer full ({held_count}), not holding event for {entity_id}")
            return False
        self._held.setdefault(entity_id, []).append(event)
        logger.debug(f"Holding event for unknown {self.entity_type} {entity_id} until pending creates resolve")
        return True

    def release_all(self) -> List[Any]:
        """Hand back every held event in arrival order and empty the buffer."""
        released = [event for events in self._held.values() for event in events]
        self._held.clear()
        return released

    def held_count(self) -> int:
        return sum(len(events) for events in self._held.values())

    def resolve(self, entity_id: str) -> str:
        """Final id for a temp id that has been reconciled, otherwise the id unchanged."""
        entry = self._ledger.get(entity_id)
        if entry and entry.status == ReconciliationStatus.RECONCILED and entry.real_id:
            return entry.real_id
        return entity_id

    def cleanup_orphaned(self, threshold_minutes: int = 10) -> List[str]:
        """
        Flag pending entries older than the threshold as orphaned.

        Returns:
            Temp IDs of the entries marked, for the caller to remove
        """
        threshold = datetime.utcnow() - timedelta(minutes=threshold_minutes)
        orphaned = []
        for entry in self._ledger.values():
            if entry.status == ReconciliationStatus.PENDING and entry.created_at < threshold:
                entry.status = ReconciliationStatus.ORPHANED
                orphaned.append(entry.temp_id)
        if orphaned:
            logger.info(f"Marked {len(orphaned)} orphaned reconciliations for cleanup")
        return orphaned

    def _trim_ledger(self) -> None:
        while len(self._ledger) > self.max_ledger_size:
            oldest = next(iter(self._ledger.values()))
            if oldest.status == ReconciliationStatus.PENDING:
                break
            self._ledger.popitem(last=False)
