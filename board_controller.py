"""
Board Controller
================
Owns the order board and every component that touches it.

Responsibilities:
- Wire board, reconciler, coordinator, stock ledger, activity log, notifier
- Lifecycle: bootstrap, push subscription, poll, prune and notifier tasks
- Read-only views and request entry points for the presentation layer
- NO rendering, NO direct database access
"""

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from activity_log import ActivityEntry, ActivityLog
from board import BoardState, OrderBoard
from config import Config, SyncConfig
from coordinator import MutationCoordinator
from db import OrderStore, StockStore, SupabaseOrderStore, SupabaseStockStore
from mutation import MutationErrorKind, MutationResult
from notifier import NotificationDispatcher, NotificationSink
from order import Order, OrderKind, OrderLine, OrderOrigin
from reconciler import BoardUnavailableError, ChangeFeedReconciler
from retry import RetryPolicy
from stock_ledger import StockLedger

# Structured logging
logger = structlog.get_logger(__name__)


class BoardController:
    """
    Board controller - single owner of the canteen order board.

    This class:
    - Builds and wires the engine components
    - Starts and stops their background tasks
    - Exposes the presentation-facing API

    This class does NOT:
    - Mutate the board itself (coordinator and reconciler do)
    - Talk to Supabase directly (stores do)
    """

    def __init__(
        self,
        order_store: OrderStore,
        stock_store: StockStore,
        sync_config: Optional[SyncConfig] = None,
        notification_sink: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.config = sync_config or SyncConfig()
        self.clock = clock

        self.board = OrderBoard()
        self.notifier = NotificationDispatcher(sink=notification_sink, clock=clock)

        self.ledger = StockLedger(
            stock_store,
            RetryPolicy(
                max_retries=self.config.stock_max_retries,
                backoff_base=self.config.stock_backoff_base_seconds,
                attempt_timeout=self.config.stock_attempt_timeout_seconds
            )
        )

        self.activity_log = ActivityLog(
            revert_window=timedelta(seconds=self.config.revert_window_seconds),
            display_limit=self.config.activity_display_limit,
            retention_limit=self.config.activity_retention,
            clock=clock
        )

        self.coordinator = MutationCoordinator(
            self.board,
            order_store,
            self.ledger,
            activity_log=self.activity_log,
            notifier=self.notifier,
            remote_timeout=self.config.remote_call_timeout_seconds,
            takeaway_surcharge=self.config.takeaway_surcharge,
            clock=clock
        )

        self.reconciler = ChangeFeedReconciler(
            self.board,
            order_store,
            is_in_flight=self.coordinator.is_in_flight,
            notifier=self.notifier,
            poll_interval=self.config.poll_interval_seconds
        )

        self._started = False

        logger.info(
            "board_controller_created",
            revert_window_seconds=self.config.revert_window_seconds,
            poll_interval_seconds=self.config.poll_interval_seconds
        )

    @classmethod
    def from_config(
        cls,
        config: Config,
        notification_sink: Optional[NotificationSink] = None
    ) -> "BoardController":
        """Build a controller backed by the Supabase stores."""
        order_store = SupabaseOrderStore(
            config.supabase.url,
            config.supabase.key,
            table=config.supabase.orders_table,
            channel_name=config.supabase.realtime_channel,
            page_size=config.sync.fetch_page_size,
            app_user_id=config.sync.app_user_id
        )
        stock_store = SupabaseStockStore(
            config.supabase.url,
            config.supabase.key,
            table=config.supabase.stock_table
        )
        return cls(
            order_store,
            stock_store,
            sync_config=config.sync,
            notification_sink=notification_sink
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def start(self) -> Dict[str, Any]:
        """
        Bootstrap the board and start background tasks.

        A failed bootstrap leaves the board UNAVAILABLE; the poll loop keeps
        retrying the fetch, and bootstrap() may also be re-invoked.

        Returns:
            Startup summary
        """
        if self._started:
            logger.warning("board_already_started")
            return {"status": "already_started"}

        self._started = True
        logger.info("board_starting")

        bootstrap_error = None
        try:
            await self.reconciler.bootstrap()
        except BoardUnavailableError as e:
            bootstrap_error = str(e)
            logger.error("board_bootstrap_failed", error=bootstrap_error)

        await self.notifier.start()
        await self.reconciler.start()
        await self.activity_log.start_pruning(self.config.prune_interval_seconds)

        push = True
        try:
            await self.reconciler.subscribe()
        except Exception as e:
            push = False
            logger.warning("push_subscribe_failed", error=str(e), fallback="poll")

        logger.info(
            "board_started",
            state=self.board.state.value,
            orders=len(self.board),
            push=push
        )

        return {
            "status": "started",
            "state": self.board.state.value,
            "orders": len(self.board),
            "push": push,
            "error": bootstrap_error
        }

    async def bootstrap(self) -> int:
        """Retry the initial load (raises BoardUnavailableError on failure)."""
        count = await self.reconciler.bootstrap()
        logger.info("board_bootstrapped", orders=count)
        return count

    async def stop(self):
        """Stop every background task."""
        if not self._started:
            return

        logger.info("board_stopping")

        for name, stopper in (
            ("reconciler", self.reconciler.stop),
            ("activity_log", self.activity_log.stop_pruning),
            ("notifier", self.notifier.stop),
        ):
            try:
                await stopper()
            except Exception as e:
                logger.error("component_stop_failed", component=name, error=str(e))

        self._started = False
        logger.info("board_stopped")

    # ========================================================================
    # READ-ONLY VIEWS
    # ========================================================================

    @property
    def board_state(self) -> BoardState:
        return self.board.state

    def live_orders(self) -> List[Order]:
        return self.board.live_orders()

    def terminal_orders(self) -> List[Order]:
        return self.board.terminal_orders()

    def recent_activity(self, limit: Optional[int] = None) -> List[ActivityEntry]:
        return self.activity_log.recent(limit)

    def is_revertible(self, entry: ActivityEntry) -> bool:
        return self.activity_log.is_revertible(entry)

    # ========================================================================
    # REQUESTS
    # ========================================================================

    async def request_status_change(self, order_id: str, status) -> MutationResult:
        """Move an order to a new status."""
        if self.board.state == BoardState.LOADING:
            return self._unavailable()

        result = await self.coordinator.apply(order_id, status)
        self._log_result("status_change_requested", result, order_id=order_id, status=str(status))
        return result

    async def request_revert(self, entry_id: str) -> MutationResult:
        """Undo a recent transition from the activity log."""
        if self.board.state == BoardState.LOADING:
            return self._unavailable()

        result = await self.activity_log.revert(entry_id)
        self._log_result("revert_requested", result, entry_id=entry_id)
        return result

    async def place_order(
        self,
        lines: Iterable[OrderLine],
        kind: OrderKind,
        origin: OrderOrigin = OrderOrigin.COUNTER,
        user_id: Optional[str] = None
    ) -> MutationResult:
        """Place a new counter order."""
        if self.board.state == BoardState.LOADING:
            return self._unavailable()

        result = await self.coordinator.place_order(
            list(lines), kind, origin=origin, user_id=user_id
        )
        self._log_result("order_placement_requested", result, kind=kind.value)
        return result

    def _unavailable(self) -> MutationResult:
        logger.warning("request_while_loading")
        return MutationResult.failure(
            MutationErrorKind.BOARD_UNAVAILABLE,
            "Order board has not loaded yet"
        )

    def _log_result(self, event: str, result: MutationResult, **context):
        if result.ok:
            logger.info(event, ok=True, stock_warnings=len(result.stock_warnings), **context)
        else:
            logger.warning(
                event,
                ok=False,
                error_kind=result.error_kind.value if result.error_kind else None,
                error=result.error,
                **context
            )

    # ========================================================================
    # STATS
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get board statistics."""
        return {
            "state": self.board.state.value,
            "version": self.board.version,
            "live_orders": len(self.board.live_orders()),
            "terminal_orders": len(self.board.terminal_orders()),
            "in_flight": sorted(self.coordinator.in_flight),
            "activity_entries": len(self.activity_log),
            "revertible_entries": len(self.activity_log.revertible()),
            "reconciler": self.reconciler.get_stats(),
            "notifier": self.notifier.get_stats(),
            "started": self._started
        }

    def __repr__(self):
        return (
            f"<BoardController state={self.board.state.value} "
            f"live={len(self.board.live_orders())} "
            f"terminal={len(self.board.terminal_orders())}>"
        )
