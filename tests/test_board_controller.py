"""End-to-end tests for the board controller over in-memory stores."""

import asyncio

import pytest

from board import BoardState
from board_controller import BoardController
from config import SyncConfig
from db import RemoteStoreError
from mutation import MutationErrorKind
from order import OrderKind, OrderLine
from order_status import OrderStatus
from tests.fakes import make_order


FAST_SYNC = SyncConfig(
    poll_interval_seconds=0.02,
    prune_interval_seconds=0.02,
    stock_attempt_timeout_seconds=0.05,
    stock_backoff_base_seconds=0.0,
    remote_call_timeout_seconds=0.5,
)


@pytest.fixture
def controller(order_store, stock_store, clock, sent_notifications):
    async def sink(notification):
        sent_notifications.append(notification)

    return BoardController(
        order_store,
        stock_store,
        sync_config=FAST_SYNC,
        notification_sink=sink,
        clock=clock
    )


class TestLifecycle:

    async def test_start_loads_board_and_subscribes(self, controller, order_store):
        summary = await controller.start()
        try:
            assert summary["state"] == "ready"
            assert summary["push"] is True
            assert controller.board_state is BoardState.READY
            assert [o.order_id for o in controller.live_orders()] == ["o-1", "o-2"]
            assert [o.order_id for o in controller.terminal_orders()] == ["o-3"]
            assert order_store.on_insert is not None
        finally:
            await controller.stop()

        assert controller.get_stats()["started"] is False

    async def test_failed_bootstrap_reports_unavailable(self, controller, order_store):
        order_store.fetch_error = RemoteStoreError("offline")

        summary = await controller.start()
        try:
            assert summary["state"] == "unavailable"
            assert "offline" in summary["error"]

            order_store.fetch_error = None
            await controller.bootstrap()
            assert controller.board_state is BoardState.READY
        finally:
            await controller.stop()

    async def test_subscribe_failure_falls_back_to_poll(self, controller, order_store):
        order_store.subscribe_error = RemoteStoreError("realtime down")

        summary = await controller.start()
        try:
            assert summary["push"] is False
            assert controller.reconciler.is_polling
        finally:
            await controller.stop()

    async def test_requests_rejected_before_load(self, controller):
        result = await controller.request_status_change("o-1", "ready")
        assert result.error_kind is MutationErrorKind.BOARD_UNAVAILABLE


class TestRequests:

    @pytest.fixture(autouse=True)
    async def running(self, controller):
        await controller.start()
        yield
        await controller.stop()

    async def test_status_change_and_revert(self, controller, clock):
        result = await controller.request_status_change("o-2", "delivered")
        assert result.ok

        entry = controller.recent_activity()[0]
        assert controller.is_revertible(entry)

        clock.advance(seconds=10)
        reverted = await controller.request_revert(entry.entry_id)

        assert reverted.ok
        assert controller.board.get("o-2").status is OrderStatus.READY
        assert controller.recent_activity() == []

    async def test_place_then_cancel_keeps_stock_consistent(self, controller, stock_store, sent_notifications):
        placed = await controller.place_order(
            [OrderLine(name="Veg Biryani", quantity=2, unit_price=80.0)],
            OrderKind.DINE_IN
        )
        assert placed.ok
        assert stock_store.quantities["item-1"] == 8

        cancelled = await controller.request_status_change(placed.order.order_id, "cancelled")
        assert cancelled.ok
        assert stock_store.quantities["item-1"] == 10

        await controller.notifier.flush()
        assert [n.kind.value for n in sent_notifications] == ["placed", "cancelled"]

    async def test_push_update_for_in_flight_order_not_merged(self, controller, order_store):
        """A push update arriving mid-mutation is rejected; the user's change stands."""
        order_store.update_gate = asyncio.Event()

        task = asyncio.create_task(controller.request_status_change("o-1", "cancelled"))
        await asyncio.sleep(0)

        order_store.on_update(make_order("o-1", "ready"))
        await controller.reconciler.drain()

        order_store.update_gate.set()
        result = await task

        assert result.ok
        assert controller.board.get("o-1").status is OrderStatus.CANCELLED
        assert controller.reconciler.stats.rejected_in_flight == 1

    async def test_expired_activity_pruned_by_tick(self, controller, clock):
        await controller.request_status_change("o-1", "ready")
        clock.advance(seconds=26)
        await asyncio.sleep(0.06)

        entry = controller.recent_activity()[0]
        assert entry.expired
        result = await controller.request_revert(entry.entry_id)
        assert result.error_kind is MutationErrorKind.REVERT_EXPIRED

    async def test_stats(self, controller):
        stats = controller.get_stats()
        assert stats["state"] == "ready"
        assert stats["live_orders"] == 2
        assert stats["reconciler"]["push_live"] is False
