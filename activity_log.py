"""
Activity Log
============
Most-recent-first record of committed status transitions with a
bounded undo window.

- record(): prepend an entry
- revert(): inverse transition while now - timestamp < revert window
- prune(): expire entries past the window (kept for display, never revertible)
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter

from mutation import MutationErrorKind, MutationResult
from order_status import OrderStatus, Partition


logger = logging.getLogger(__name__)


# Configuration
REVERT_WINDOW = timedelta(seconds=25)
DISPLAY_LIMIT = 20
RETENTION_LIMIT = 100


reverts_total = Counter(
    'activity_reverts_total',
    'Revert requests',
    ['result']
)


@dataclass
class ActivityEntry:
    """One committed status transition."""
    order_id: str
    item_label: str
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp: datetime
    from_partition: Partition
    to_partition: Partition
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    expired: bool = False

    @property
    def moves_partition(self) -> bool:
        return self.from_partition != self.to_partition

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "order_id": self.order_id,
            "item_label": self.item_label,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
            "from_partition": self.from_partition.value,
            "to_partition": self.to_partition.value,
            "expired": self.expired,
        }


class ActivityLog:
    """
    Revertible transition history.

    The coordinator is any object with
    ``async apply(order_id, status, revert=True) -> MutationResult``.
    """

    def __init__(
        self,
        coordinator=None,
        revert_window: timedelta = REVERT_WINDOW,
        display_limit: int = DISPLAY_LIMIT,
        retention_limit: int = RETENTION_LIMIT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.coordinator = coordinator
        self.revert_window = revert_window
        self.display_limit = display_limit
        self.retention_limit = retention_limit
        self.clock = clock

        self._entries: List[ActivityEntry] = []
        self._prune_task: Optional[asyncio.Task] = None

    # ========================================================================
    # RECORD / READ
    # ========================================================================

    def record(self, entry: ActivityEntry) -> ActivityEntry:
        """Prepend an entry (most recent first)."""
        self._entries.insert(0, entry)
        if len(self._entries) > self.retention_limit:
            del self._entries[self.retention_limit:]

        logger.info(
            f"Activity: {entry.item_label} {entry.from_status.value} -> {entry.to_status.value}",
            extra={"order_id": entry.order_id, "entry_id": entry.entry_id}
        )
        return entry

    def recent(self, limit: Optional[int] = None) -> List[ActivityEntry]:
        """Display view: newest first, expired entries included."""
        return self._entries[: (limit or self.display_limit)]

    def get(self, entry_id: str) -> Optional[ActivityEntry]:
        for entry in self._entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    def is_revertible(self, entry: ActivityEntry, now: Optional[datetime] = None) -> bool:
        """Strictly inside the window and not yet expired."""
        now = now or self.clock()
        return not entry.expired and entry.age(now) < self.revert_window

    def revertible(self) -> List[ActivityEntry]:
        now = self.clock()
        return [entry for entry in self._entries if self.is_revertible(entry, now)]

    # ========================================================================
    # REVERT
    # ========================================================================

    async def revert(self, entry_id: str) -> MutationResult:
        """
        Undo a transition through the coordinator.

        Returns:
            MutationResult; the entry is removed only on success
        """
        entry = self.get(entry_id)
        if entry is None:
            reverts_total.labels(result="not_found").inc()
            return MutationResult.failure(
                MutationErrorKind.NOT_FOUND,
                f"Activity entry {entry_id} not found"
            )

        if not self.is_revertible(entry):
            entry.expired = True
            reverts_total.labels(result="expired").inc()
            logger.info(
                "Revert rejected: window elapsed",
                extra={"entry_id": entry_id, "order_id": entry.order_id}
            )
            return MutationResult.failure(
                MutationErrorKind.REVERT_EXPIRED,
                f"Revert window of {self.revert_window.total_seconds():g}s has elapsed"
            )

        if self.coordinator is None:
            raise RuntimeError("ActivityLog has no coordinator attached")

        result = await self.coordinator.apply(
            entry.order_id,
            entry.from_status,
            revert=True,
            expected_status=entry.to_status
        )

        if result.ok:
            self._remove(entry_id)
            reverts_total.labels(result="ok").inc()
            logger.info(
                f"Reverted {entry.item_label}: {entry.to_status.value} -> {entry.from_status.value}",
                extra={"entry_id": entry_id, "order_id": entry.order_id}
            )
        else:
            reverts_total.labels(result="failed").inc()

        return result

    # ========================================================================
    # PRUNE
    # ========================================================================

    def prune(self) -> int:
        """
        Expire entries older than the revert window.

        Returns:
            Number of entries newly expired
        """
        now = self.clock()
        expired = 0
        for entry in self._entries:
            if not entry.expired and entry.age(now) >= self.revert_window:
                entry.expired = True
                expired += 1

        if expired:
            logger.debug(f"Expired {expired} activity entries")
        return expired

    async def start_pruning(self, interval: float = 1.0):
        """Start the prune tick."""
        if self._prune_task and not self._prune_task.done():
            return
        self._prune_task = asyncio.create_task(self._prune_loop(interval))

    async def stop_pruning(self):
        """Stop the prune tick."""
        if self._prune_task and not self._prune_task.done():
            self._prune_task.cancel()
            try:
                await self._prune_task
            except asyncio.CancelledError:
                pass
        self._prune_task = None

    async def _prune_loop(self, interval: float):
        try:
            while True:
                await asyncio.sleep(interval)
                self.prune()
        except asyncio.CancelledError:
            pass

    def _remove(self, entry_id: str):
        self._entries = [entry for entry in self._entries if entry.entry_id != entry_id]

    def __len__(self) -> int:
        return len(self._entries)
