"""
Mutation Coordinator
====================
Optimistic status changes and order placement against the board.

Protocol per request:
1. validate (known order, not in flight, allowed transition)
2. snapshot board, apply locally, mark order in flight
3. persist remotely (bounded by a timeout)
4. success: commit, run side effects, record activity
5. failure: restore the whole snapshot, report the error

Stock failures never unwind a committed order change.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set

from prometheus_client import Counter, Gauge, Histogram

from activity_log import ActivityEntry, ActivityLog
from board import OrderBoard
from db import OrderStore
from mutation import Mutation, MutationErrorKind, MutationResult
from notifier import NotificationDispatcher, NotificationKind
from order import OrderKind, OrderLine, OrderOrigin, new_order
from order_status import OrderStatus, SideEffect, StatusTransitionError, resolve_transition
from stock_ledger import StockAdjustment, StockLedger


logger = logging.getLogger(__name__)


# Configuration
REMOTE_CALL_TIMEOUT = 10.0  # seconds


mutations_total = Counter(
    'order_mutations_total',
    'Order mutation requests',
    ['operation', 'result']
)
mutation_rollbacks_total = Counter(
    'order_mutation_rollbacks_total',
    'Optimistic mutations rolled back',
    ['operation']
)
orders_in_flight = Gauge(
    'orders_in_flight',
    'Orders with a mutation in flight'
)
remote_persist_seconds = Histogram(
    'order_remote_persist_seconds',
    'Remote persistence latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)


class MutationCoordinator:
    """Single entry point for every order write."""

    def __init__(
        self,
        board: OrderBoard,
        order_store: OrderStore,
        ledger: StockLedger,
        activity_log: Optional[ActivityLog] = None,
        notifier: Optional[NotificationDispatcher] = None,
        remote_timeout: float = REMOTE_CALL_TIMEOUT,
        takeaway_surcharge: float = 0.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.board = board
        self.order_store = order_store
        self.ledger = ledger
        self.activity_log = activity_log
        self.notifier = notifier
        self.remote_timeout = remote_timeout
        self.takeaway_surcharge = takeaway_surcharge
        self.clock = clock

        self._in_flight: Set[str] = set()

        if activity_log is not None and activity_log.coordinator is None:
            activity_log.coordinator = self

    # ========================================================================
    # IN-FLIGHT TRACKING
    # ========================================================================

    def is_in_flight(self, order_id: str) -> bool:
        return order_id in self._in_flight

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    def _begin(self, order_id: str):
        self._in_flight.add(order_id)
        orders_in_flight.set(len(self._in_flight))

    def _end(self, order_id: str):
        self._in_flight.discard(order_id)
        orders_in_flight.set(len(self._in_flight))

    # ========================================================================
    # STATUS CHANGES
    # ========================================================================

    async def apply(
        self,
        order_id: str,
        requested_status,
        revert: bool = False,
        expected_status: Optional[OrderStatus] = None
    ) -> MutationResult:
        """
        Apply a status change optimistically.

        Args:
            order_id: Order identifier
            requested_status: Target status (enum or string)
            revert: Use the undo table (activity log path only)
            expected_status: Reject unless the order is currently at this status

        Returns:
            MutationResult
        """
        operation = "revert" if revert else "status_change"

        order = self.board.get(order_id)
        if order is None:
            mutations_total.labels(operation=operation, result="not_found").inc()
            return MutationResult.failure(
                MutationErrorKind.NOT_FOUND,
                f"Order {order_id} is not on the board"
            )

        # Checked and marked with no await in between
        if self.is_in_flight(order_id):
            mutations_total.labels(operation=operation, result="in_flight").inc()
            logger.warning(
                "Mutation rejected: order already in flight",
                extra={"order_id": order_id, "requested": str(requested_status)}
            )
            return MutationResult.failure(
                MutationErrorKind.IN_FLIGHT,
                f"Order {order_id} already has a change in progress",
                order=order
            )

        if expected_status is not None and order.status is not expected_status:
            mutations_total.labels(operation=operation, result="invalid").inc()
            logger.warning(
                "Mutation rejected: order moved on since the change being undone",
                extra={
                    "order_id": order_id,
                    "expected": expected_status.value,
                    "current": order.status.value
                }
            )
            return MutationResult.failure(
                MutationErrorKind.INVALID_TRANSITION,
                f"Order {order_id} is {order.status.value}, expected {expected_status.value}",
                order=order
            )

        try:
            transition = resolve_transition(
                order.status, requested_status, revert=revert, order_id=order_id
            )
        except StatusTransitionError as e:
            mutations_total.labels(operation=operation, result="invalid").inc()
            return MutationResult.failure(
                MutationErrorKind.INVALID_TRANSITION, str(e), order=order
            )

        now = self.clock()
        after = order.with_status(
            transition.to_status,
            at=now,
            delivered_at=now if transition.has(SideEffect.STAMP_DELIVERED) else None,
            clear_delivered=transition.has(SideEffect.CLEAR_DELIVERED)
        )

        mutation = Mutation(self.board, after, transition)
        mutation.apply()
        self._begin(order_id)

        try:
            try:
                await self._persist(
                    operation,
                    self.order_store.update_order_status(
                        order_id, after.status, after.delivered_at
                    )
                )
            except Exception as e:
                mutation.rollback()
                mutation_rollbacks_total.labels(operation=operation).inc()
                mutations_total.labels(operation=operation, result="remote_failure").inc()
                logger.error(
                    f"Status persist failed, board rolled back: {str(e)}",
                    extra={
                        "order_id": order_id,
                        "from_status": transition.from_status.value,
                        "to_status": transition.to_status.value
                    }
                )
                return MutationResult.failure(
                    MutationErrorKind.REMOTE_FAILURE,
                    f"Could not save status change: {str(e)}",
                    order=order
                )

            mutation.commit()
            committed_at = self.clock()
            result = MutationResult(ok=True, order=after)

            if transition.has(SideEffect.RESTORE_STOCK):
                adjustments = await self.ledger.apply_lines(after.lines, +1)
                result.stock_warnings = _warnings(adjustments)

            if not revert and self.activity_log is not None:
                result.activity_entry = self.activity_log.record(ActivityEntry(
                    order_id=order_id,
                    item_label=after.item_label,
                    from_status=transition.from_status,
                    to_status=transition.to_status,
                    timestamp=committed_at,
                    from_partition=transition.from_partition,
                    to_partition=transition.to_partition
                ))

            if transition.has(SideEffect.NOTIFY_CANCELLED):
                self._notify(NotificationKind.CANCELLED, after)

        finally:
            self._end(order_id)

        mutations_total.labels(operation=operation, result="ok").inc()
        logger.info(
            f"Order {order_id}: {transition.from_status.value} -> {transition.to_status.value}",
            extra={"order_id": order_id, "revert": revert}
        )
        return result

    # ========================================================================
    # PLACEMENT
    # ========================================================================

    async def place_order(
        self,
        lines: Iterable[OrderLine],
        kind: OrderKind,
        origin: OrderOrigin = OrderOrigin.COUNTER,
        user_id: Optional[str] = None
    ) -> MutationResult:
        """
        Place a new order: insert locally, persist, then consume stock.

        Returns:
            MutationResult with the placed order
        """
        operation = "place"

        try:
            order = new_order(
                lines,
                kind,
                origin=origin,
                takeaway_surcharge=self.takeaway_surcharge,
                user_id=user_id,
                now=self.clock()
            )
        except ValueError as e:
            mutations_total.labels(operation=operation, result="invalid").inc()
            return MutationResult.failure(MutationErrorKind.INVALID_REQUEST, str(e))

        mutation = Mutation(self.board, order)
        mutation.apply()
        self._begin(order.order_id)

        try:
            try:
                await self._persist(operation, self.order_store.insert_order(order))
            except Exception as e:
                mutation.rollback()
                mutation_rollbacks_total.labels(operation=operation).inc()
                mutations_total.labels(operation=operation, result="remote_failure").inc()
                logger.error(
                    f"Order placement failed, board rolled back: {str(e)}",
                    extra={"order_id": order.order_id, "item_label": order.item_label}
                )
                return MutationResult.failure(
                    MutationErrorKind.REMOTE_FAILURE,
                    f"Could not place order: {str(e)}"
                )

            mutation.commit()
            adjustments = await self.ledger.apply_lines(order.lines, -1)
            self._notify(NotificationKind.PLACED, order)

        finally:
            self._end(order.order_id)

        mutations_total.labels(operation=operation, result="ok").inc()
        logger.info(
            f"Order placed: #{order.token} {order.item_label}",
            extra={"order_id": order.order_id, "total_amount": order.total_amount}
        )
        return MutationResult(ok=True, order=order, stock_warnings=_warnings(adjustments))

    # ========================================================================
    # HELPERS
    # ========================================================================

    async def _persist(self, operation: str, call):
        started = time.monotonic()
        try:
            return await asyncio.wait_for(call, timeout=self.remote_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"remote call exceeded {self.remote_timeout}s")
        finally:
            remote_persist_seconds.labels(operation=operation).observe(
                time.monotonic() - started
            )

    def _notify(self, kind: NotificationKind, order):
        if self.notifier is None:
            return
        try:
            self.notifier.notify(kind, order)
        except Exception as e:
            logger.error(
                f"Notification enqueue failed: {str(e)}",
                extra={"order_id": order.order_id}
            )


def _warnings(adjustments: List[StockAdjustment]) -> List[str]:
    return [adjustment.warning for adjustment in adjustments if not adjustment.ok]
