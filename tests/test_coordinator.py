"""Tests for optimistic status changes and order placement."""

import asyncio

from db import RemoteStoreError
from mutation import MutationErrorKind
from order import OrderKind, OrderLine
from order_status import OrderStatus, Partition
from tests.fakes import make_order


class TestApply:

    async def test_ready_to_delivered(self, coordinator, board, order_store, clock):
        result = await coordinator.apply("o-2", "delivered")

        assert result.ok
        assert result.order.status is OrderStatus.DELIVERED
        assert result.order.delivered_at == clock.now
        assert board.partition_of("o-2") is Partition.TERMINAL
        assert [o.order_id for o in board.terminal_orders()] == ["o-2", "o-3"]
        assert order_store.update_calls == [("o-2", OrderStatus.DELIVERED, clock.now)]
        assert not coordinator.is_in_flight("o-2")

    async def test_cancel_restores_stock_and_records_activity(
        self, coordinator, board, stock_store, activity_log, notifier
    ):
        """preparing -> cancelled: terminal, stock back up, activity entry recorded."""
        stock_store.quantities["item-1"] = 9

        result = await coordinator.apply("o-1", "cancelled")

        assert result.ok
        assert result.stock_warnings == []
        assert board.partition_of("o-1") is Partition.TERMINAL
        assert stock_store.quantities["item-1"] == 10
        assert stock_store.available["item-1"] is True

        entry = activity_log.recent()[0]
        assert result.activity_entry is entry
        assert entry.from_status is OrderStatus.PREPARING
        assert entry.to_status is OrderStatus.CANCELLED
        assert entry.from_partition is Partition.LIVE
        assert entry.to_partition is Partition.TERMINAL
        assert [n.kind.value for n in notifier.queue] == ["cancelled"]

    async def test_delivery_does_not_touch_stock(self, coordinator, stock_store):
        await coordinator.apply("o-2", "delivered")
        assert stock_store.reads == 0
        assert stock_store.quantities["item-1"] == 10

    async def test_unknown_order(self, coordinator, order_store):
        result = await coordinator.apply("nope", "ready")

        assert result.error_kind is MutationErrorKind.NOT_FOUND
        assert order_store.update_calls == []

    async def test_invalid_transition_changes_nothing(self, coordinator, board, order_store):
        before = board.snapshot()

        result = await coordinator.apply("o-3", "ready")

        assert result.error_kind is MutationErrorKind.INVALID_TRANSITION
        assert board.snapshot() == before
        assert order_store.update_calls == []

    async def test_unknown_status_is_invalid_transition(self, coordinator):
        result = await coordinator.apply("o-1", "burnt")
        assert result.error_kind is MutationErrorKind.INVALID_TRANSITION

    async def test_second_request_while_in_flight_rejected(self, coordinator, board, order_store):
        order_store.update_gate = asyncio.Event()

        first = asyncio.create_task(coordinator.apply("o-1", "ready"))
        await asyncio.sleep(0)

        assert coordinator.is_in_flight("o-1")
        assert board.get("o-1").status is OrderStatus.READY

        second = await coordinator.apply("o-1", "cancelled")
        assert second.error_kind is MutationErrorKind.IN_FLIGHT

        order_store.update_gate.set()
        result = await first

        assert result.ok
        assert board.get("o-1").status is OrderStatus.READY
        assert len(order_store.update_calls) == 1

    async def test_remote_failure_restores_exact_board(self, coordinator, board, order_store, activity_log):
        order_store.update_error = RemoteStoreError("network down")
        before = board.snapshot()

        result = await coordinator.apply("o-1", "cancelled")

        assert result.error_kind is MutationErrorKind.REMOTE_FAILURE
        assert "network down" in result.error
        assert board.snapshot() == before
        assert board.get("o-1").status is OrderStatus.PREPARING
        assert len(activity_log) == 0
        assert not coordinator.is_in_flight("o-1")

    async def test_rollback_discards_events_applied_during_call(self, coordinator, board, order_store):
        """Rollback is to the whole pre-call snapshot, not a partial merge."""
        order_store.update_gate = asyncio.Event()
        order_store.update_error = RemoteStoreError("rejected")
        before = board.snapshot()

        task = asyncio.create_task(coordinator.apply("o-2", "delivered"))
        await asyncio.sleep(0)
        board.upsert(make_order("arrived", created_offset=5))
        order_store.update_gate.set()
        result = await task

        assert not result.ok
        assert board.snapshot() == before

    async def test_remote_timeout_rolls_back(self, coordinator, board, order_store):
        order_store.hang_updates = True
        before = board.snapshot()

        result = await coordinator.apply("o-2", "delivered")

        assert result.error_kind is MutationErrorKind.REMOTE_FAILURE
        assert "exceeded" in result.error
        assert board.snapshot() == before
        assert not coordinator.is_in_flight("o-2")

    async def test_stock_failure_does_not_unwind_cancel(self, coordinator, board, stock_store):
        """Every stock attempt times out; the cancellation still commits with a warning."""
        stock_store.hanging.add("item-1")

        result = await coordinator.apply("o-1", "cancelled")

        assert result.ok
        assert board.get("o-1").status is OrderStatus.CANCELLED
        assert len(result.stock_warnings) == 1
        assert "Stock not adjusted" in result.stock_warnings[0]
        assert stock_store.reads == 4

    async def test_activity_timestamp_taken_at_commit(self, coordinator, order_store, clock):
        """A slow remote call does not eat into the revert window."""
        order_store.update_gate = asyncio.Event()

        task = asyncio.create_task(coordinator.apply("o-2", "delivered"))
        await asyncio.sleep(0)
        clock.advance(seconds=5)
        order_store.update_gate.set()
        result = await task

        assert result.activity_entry.timestamp == clock()

    async def test_expected_status_mismatch_rejected(self, coordinator, board, order_store):
        result = await coordinator.apply(
            "o-2", "ready", revert=True, expected_status=OrderStatus.DELIVERED
        )

        assert result.error_kind is MutationErrorKind.INVALID_TRANSITION
        assert board.get("o-2").status is OrderStatus.READY
        assert order_store.update_calls == []

    async def test_revert_skips_activity(self, coordinator, board, activity_log):
        result = await coordinator.apply("o-3", "ready", revert=True)

        assert result.ok
        assert result.activity_entry is None
        assert len(activity_log) == 0
        assert board.get("o-3").delivered_at is None
        assert board.partition_of("o-3") is Partition.LIVE


class TestPlaceOrder:

    async def test_placement_consumes_stock(self, coordinator, board, order_store, stock_store, notifier):
        """Quantity 1 against stock 10: stock 9, order live at PREPARING."""
        lines = [OrderLine(name="Veg Biryani", quantity=1, unit_price=80.0, item_id="item-1")]

        result = await coordinator.place_order(lines, OrderKind.DINE_IN)

        assert result.ok
        order = result.order
        assert order.status is OrderStatus.PREPARING
        assert board.partition_of(order.order_id) is Partition.LIVE
        assert order_store.inserted == [order]
        assert stock_store.quantities["item-1"] == 9
        assert len(order.token) == 4
        assert len(order.qr_code) == 16
        assert [n.kind.value for n in notifier.queue] == ["placed"]

    async def test_takeaway_surcharge(self, coordinator):
        lines = [OrderLine(name="Veg Biryani", quantity=2, unit_price=80.0, item_id="item-1")]

        result = await coordinator.place_order(lines, OrderKind.TAKEAWAY)

        assert result.order.total_amount == 180.0

    async def test_placement_rollback(self, coordinator, board, order_store, stock_store):
        order_store.insert_error = RemoteStoreError("insert rejected")
        before = board.snapshot()

        result = await coordinator.place_order(
            [OrderLine(name="Veg Biryani", item_id="item-1")], OrderKind.DINE_IN
        )

        assert result.error_kind is MutationErrorKind.REMOTE_FAILURE
        assert board.snapshot() == before
        assert stock_store.quantities["item-1"] == 10

    async def test_empty_order_rejected(self, coordinator, board):
        result = await coordinator.place_order([], OrderKind.DINE_IN)

        assert result.error_kind is MutationErrorKind.INVALID_REQUEST
        assert len(board) == 3

    async def test_unresolvable_item_warns(self, coordinator):
        result = await coordinator.place_order([OrderLine(name="Mystery Meal")], OrderKind.DINE_IN)

        assert result.ok
        assert len(result.stock_warnings) == 1
