"""
Change Feed Reconciler
======================
Merges the push channel and the poll fallback into one canonical board.

Every update is an event on a single queue, consumed by one task:

    Bootstrap   - initial full fetch, board replaced wholesale
    PollResult  - periodic full fetch (only until push is confirmed live)
    PushInsert  - realtime insert
    PushUpdate  - realtime update

The first push event permanently stops the poll loop. Events are never
dropped; the queue is unbounded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from prometheus_client import Counter, Gauge

from board import BoardState, OrderBoard
from db import OrderStore, Subscription
from notifier import NotificationDispatcher, NotificationKind
from order import Order, OrderOrigin
from order_status import OrderStatus


logger = logging.getLogger(__name__)


# Configuration
POLL_INTERVAL = 1.0  # seconds
MAX_FETCH_PAGES = 1000


reconciler_events_total = Counter(
    'reconciler_events_total',
    'Change feed events handled',
    ['event', 'result']
)
reconciler_queue_depth = Gauge(
    'reconciler_queue_depth',
    'Change feed events waiting to be applied'
)


class BoardUnavailableError(Exception):
    """Raised when the board cannot be loaded from the remote store."""
    pass


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class Bootstrap:
    orders: Tuple[Order, ...]


@dataclass(frozen=True)
class PollResult:
    orders: Tuple[Order, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PushInsert:
    order: Order


@dataclass(frozen=True)
class PushUpdate:
    order: Order


FeedEvent = Union[Bootstrap, PollResult, PushInsert, PushUpdate]


@dataclass
class ReconcilerStats:
    applied: Dict[str, int] = field(default_factory=dict)
    rejected_in_flight: int = 0
    ignored_polls: int = 0
    poll_failures: int = 0
    handler_errors: int = 0

    def count(self, event: str):
        self.applied[event] = self.applied.get(event, 0) + 1


# ============================================================================
# RECONCILER
# ============================================================================

class ChangeFeedReconciler:
    """
    Single consumer of all board updates.

    ``is_in_flight`` reports ids with an optimistic mutation pending;
    push events for those ids are rejected and wholesale replaces keep
    their local version.
    """

    def __init__(
        self,
        board: OrderBoard,
        order_store: OrderStore,
        is_in_flight: Optional[Callable[[str], bool]] = None,
        notifier: Optional[NotificationDispatcher] = None,
        poll_interval: float = POLL_INTERVAL
    ):
        self.board = board
        self.order_store = order_store
        self.is_in_flight = is_in_flight or (lambda order_id: False)
        self.notifier = notifier
        self.poll_interval = poll_interval

        self.queue: asyncio.Queue = asyncio.Queue()
        self.push_live = False
        self.subscription: Optional[Subscription] = None

        self._consumer_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

        self.stats = ReconcilerStats()

    # ========================================================================
    # FETCH / BOOTSTRAP
    # ========================================================================

    async def fetch_all(self) -> List[Order]:
        """Fetch every page of orders."""
        orders: List[Order] = []
        page_token: Optional[int] = None

        for _ in range(MAX_FETCH_PAGES):
            page, page_token = await self.order_store.fetch_orders(page_token)
            orders.extend(page)
            if page_token is None:
                return orders

        raise BoardUnavailableError(f"Order fetch exceeded {MAX_FETCH_PAGES} pages")

    async def bootstrap(self) -> int:
        """
        Load the board with a full fetch. Safe to call again after a failure.

        Returns:
            Number of orders loaded

        Raises:
            BoardUnavailableError: If the fetch fails
        """
        try:
            orders = await self.fetch_all()
        except Exception as e:
            self.board.state = BoardState.UNAVAILABLE
            reconciler_events_total.labels(event="bootstrap", result="failed").inc()
            logger.error(f"Bootstrap fetch failed: {str(e)}")
            raise BoardUnavailableError(f"Order board unavailable: {str(e)}") from e

        self.handle(Bootstrap(tuple(orders)))
        logger.info(
            f"Board bootstrapped with {len(orders)} orders",
            extra={"live": len(self.board.live_orders()), "terminal": len(self.board.terminal_orders())}
        )
        return len(orders)

    # ========================================================================
    # EVENT HANDLING (synchronous: no await between read and write)
    # ========================================================================

    def handle(self, event: FeedEvent):
        """Apply one event to the board."""
        if isinstance(event, Bootstrap):
            self._replace(event.orders)
            self.board.state = BoardState.READY
            self._applied("bootstrap")

        elif isinstance(event, PollResult):
            self._handle_poll(event)

        elif isinstance(event, PushInsert):
            self._handle_push("insert", event.order)

        elif isinstance(event, PushUpdate):
            self._handle_push("update", event.order)

        else:
            raise TypeError(f"Unknown feed event: {event!r}")

    def _handle_poll(self, event: PollResult):
        if self.push_live:
            # Fetch started before push went live; push is authoritative now
            self.stats.ignored_polls += 1
            reconciler_events_total.labels(event="poll", result="ignored").inc()
            return

        if not event.ok:
            self.stats.poll_failures += 1
            self.board.state = BoardState.UNAVAILABLE
            reconciler_events_total.labels(event="poll", result="failed").inc()
            logger.warning(f"Poll fetch failed, board unavailable: {event.error}")
            return

        self._replace(event.orders)
        self.board.state = BoardState.READY
        self._applied("poll")

    def _handle_push(self, kind: str, order: Order):
        self._mark_push_live()

        if self.is_in_flight(order.order_id):
            self.stats.rejected_in_flight += 1
            reconciler_events_total.labels(event=kind, result="rejected_in_flight").inc()
            logger.info(
                f"Push {kind} rejected: order has a mutation in flight",
                extra={"order_id": order.order_id, "status": order.status.value}
            )
            return

        is_new = order.order_id not in self.board
        self.board.upsert(order)
        self._applied(kind)

        # Staff are alerted only to new pending orders not placed from the app
        if (
            is_new
            and self.notifier is not None
            and order.origin is OrderOrigin.COUNTER
            and order.status is OrderStatus.PENDING
        ):
            self.notifier.notify(NotificationKind.INCOMING, order)

    def _replace(self, orders):
        """Wholesale replace, keeping local versions of in-flight orders."""
        merged = [order for order in orders if not self.is_in_flight(order.order_id)]

        for order in self.board.live_orders() + self.board.terminal_orders():
            if self.is_in_flight(order.order_id):
                merged.append(order)

        self.board.replace_all(merged)

    def _mark_push_live(self):
        if self.push_live:
            return

        self.push_live = True
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
        logger.info("Push channel confirmed live, poll fallback stopped")

    def _applied(self, event: str):
        self.stats.count(event)
        reconciler_events_total.labels(event=event, result="applied").inc()

    # ========================================================================
    # QUEUE
    # ========================================================================

    def submit(self, event: FeedEvent):
        """Queue an event for the consumer (never blocks, never drops)."""
        self.queue.put_nowait(event)
        reconciler_queue_depth.set(self.queue.qsize())

    def on_insert(self, order: Order):
        self.submit(PushInsert(order))

    def on_update(self, order: Order):
        self.submit(PushUpdate(order))

    async def drain(self):
        """Wait until every queued event has been applied."""
        await self.queue.join()

    async def _consume(self):
        while True:
            event = await self.queue.get()
            try:
                self.handle(event)
            except Exception as e:
                self.stats.handler_errors += 1
                logger.error(
                    f"Feed event handling failed: {str(e)}",
                    extra={"event": type(event).__name__},
                    exc_info=True
                )
            finally:
                self.queue.task_done()
                reconciler_queue_depth.set(self.queue.qsize())

    async def _poll_loop(self):
        try:
            while not self.push_live:
                await asyncio.sleep(self.poll_interval)
                if self.push_live:
                    break

                try:
                    orders = await self.fetch_all()
                except Exception as e:
                    self.submit(PollResult(error=str(e)))
                    continue

                self.submit(PollResult(orders=tuple(orders)))
        except asyncio.CancelledError:
            pass

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def subscribe(self) -> Subscription:
        """Open the push channel; its events feed the queue."""
        self.subscription = await self.order_store.subscribe(self.on_insert, self.on_update)
        return self.subscription

    async def start(self):
        """Start the consumer and, until push is live, the poll loop."""
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consume())

        if not self.push_live and (self._poll_task is None or self._poll_task.done()):
            self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info("Change feed reconciler started")

    async def stop(self):
        """Stop tasks and close the push channel."""
        for task in (self._poll_task, self._consumer_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._poll_task = None
        self._consumer_task = None

        if self.subscription is not None:
            try:
                await self.subscription.unsubscribe()
            except Exception as e:
                logger.warning(f"Unsubscribe failed: {str(e)}")
            self.subscription = None

        logger.info("Change feed reconciler stopped")

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "push_live": self.push_live,
            "polling": self.is_polling,
            "queue_depth": self.queue.qsize(),
            "applied": dict(self.stats.applied),
            "rejected_in_flight": self.stats.rejected_in_flight,
            "ignored_polls": self.stats.ignored_polls,
            "poll_failures": self.stats.poll_failures,
            "handler_errors": self.stats.handler_errors,
        }
