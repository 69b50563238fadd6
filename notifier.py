"""
Notification Dispatcher
=======================
Fire-and-forget staff notifications for placed, incoming and cancelled
orders.

- Background delivery, never blocks a mutation
- Deduplication per (kind, order) within a TTL
- Bounded queue; overflow is dropped and counted
- Sink failures are logged only; they never unwind an order change
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from prometheus_client import Counter

from order import Order


logger = logging.getLogger(__name__)


# Configuration
MAX_NOTIFICATION_QUEUE_SIZE = 500
PROCESSING_INTERVAL = 0.2  # seconds
DEDUPLICATION_TTL = timedelta(minutes=1)


notifications_total = Counter(
    'notifications_total',
    'Staff notifications',
    ['kind', 'result']
)


class NotificationKind(Enum):
    """What happened to the order."""
    PLACED = "placed"
    INCOMING = "incoming"
    CANCELLED = "cancelled"


@dataclass
class Notification:
    """Notification with metadata."""
    kind: NotificationKind
    order: Order
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @property
    def dedupe_key(self) -> str:
        return f"{self.kind.value}:{self.order.order_id}"

    @property
    def message(self) -> str:
        verb = {
            NotificationKind.PLACED: "placed",
            NotificationKind.INCOMING: "received",
            NotificationKind.CANCELLED: "cancelled",
        }[self.kind]
        return f"Order #{self.order.token} ({self.order.item_label}) {verb}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "order_id": self.order.order_id,
            "token": self.order.token,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "error": self.error
        }


NotificationSink = Callable[[Notification], Awaitable[None]]


async def log_sink(notification: Notification):
    """Default sink: write the notification to the log."""
    logger.info(
        f"Notification: {notification.message}",
        extra={"order_id": notification.order.order_id, "kind": notification.kind.value}
    )


class NotificationDispatcher:
    """Queue + background sender for staff notifications."""

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        max_size: int = MAX_NOTIFICATION_QUEUE_SIZE,
        interval: float = PROCESSING_INTERVAL,
        dedupe_ttl: timedelta = DEDUPLICATION_TTL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.sink = sink or log_sink
        self.max_size = max_size
        self.interval = interval
        self.dedupe_ttl = dedupe_ttl
        self.clock = clock

        self.queue: deque = deque()
        self._recent: Dict[str, datetime] = {}

        self.processor_task: Optional[asyncio.Task] = None
        self.is_running = False

        # Stats
        self.sent_count = 0
        self.failed_count = 0
        self.dropped_count = 0
        self.duplicate_count = 0

    # ========================================================================
    # PUBLIC API (Non-blocking)
    # ========================================================================

    def notify(self, kind: NotificationKind, order: Order) -> bool:
        """
        Enqueue a notification.

        Returns:
            True if enqueued, False if duplicate or queue full
        """
        notification = Notification(kind=kind, order=order)
        now = self.clock()
        self._expire_recent(now)

        if notification.dedupe_key in self._recent:
            self.duplicate_count += 1
            logger.debug(f"Duplicate notification ignored: {notification.dedupe_key}")
            return False

        if len(self.queue) >= self.max_size:
            self.dropped_count += 1
            notifications_total.labels(kind=kind.value, result="dropped").inc()
            logger.warning(
                f"Notification queue full, dropping "
                f"(dropped: {self.dropped_count})"
            )
            return False

        self._recent[notification.dedupe_key] = now
        self.queue.append(notification)
        return True

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self):
        """Start background processor."""
        if self.is_running:
            return

        self.is_running = True
        self.processor_task = asyncio.create_task(self._processor_loop())
        logger.info("Notification processor started")

    async def stop(self):
        """Stop background processor and flush what is queued."""
        if not self.is_running:
            return

        self.is_running = False

        if self.processor_task and not self.processor_task.done():
            self.processor_task.cancel()
            try:
                await self.processor_task
            except asyncio.CancelledError:
                pass

        await self.flush()
        logger.info("Notification processor stopped")

    async def flush(self):
        """Deliver everything queued."""
        while self.queue:
            await self._process_next()

    async def _processor_loop(self):
        try:
            while self.is_running:
                await asyncio.sleep(self.interval)
                while self.queue:
                    await self._process_next()
        except asyncio.CancelledError:
            pass

    async def _process_next(self):
        if not self.queue:
            return
        notification = self.queue.popleft()

        try:
            await self.sink(notification)
        except Exception as e:
            notification.error = str(e)
            self.failed_count += 1
            notifications_total.labels(kind=notification.kind.value, result="failed").inc()
            logger.error(
                f"Notification delivery failed: {str(e)}",
                extra={"order_id": notification.order.order_id}
            )
            return

        self.sent_count += 1
        notifications_total.labels(kind=notification.kind.value, result="sent").inc()

    def _expire_recent(self, now: datetime):
        stale = [key for key, at in self._recent.items() if now - at >= self.dedupe_ttl]
        for key in stale:
            del self._recent[key]

    def get_stats(self) -> Dict[str, Any]:
        """Get notification statistics."""
        return {
            "queue_size": len(self.queue),
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "dropped_count": self.dropped_count,
            "duplicate_count": self.duplicate_count,
            "is_running": self.is_running
        }
