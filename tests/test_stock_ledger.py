"""Tests for the stock ledger."""

import asyncio

from order import OrderLine
from retry import RetryPolicy
from stock_ledger import StockLedger


class TestAdjust:

    async def test_consume_and_restore(self, ledger, stock_store):
        consumed = await ledger.adjust("item-1", -1)
        assert consumed.ok
        assert consumed.previous_quantity == 10
        assert consumed.quantity == 9
        assert stock_store.quantities["item-1"] == 9

        restored = await ledger.adjust("item-1", +1)
        assert restored.ok
        assert stock_store.quantities["item-1"] == 10

    async def test_never_below_zero(self, ledger, stock_store):
        result = await ledger.adjust("item-1", -25)

        assert result.ok
        assert result.quantity == 0
        assert stock_store.quantities["item-1"] == 0
        assert stock_store.available["item-1"] is False

    async def test_restore_makes_item_available(self, ledger, stock_store):
        result = await ledger.adjust("item-2", +2)

        assert result.available is True
        assert stock_store.available["item-2"] is True

    async def test_zero_delta_touches_nothing(self, ledger, stock_store):
        result = await ledger.adjust("item-1", 0)
        assert result.ok
        assert stock_store.reads == 0

    async def test_transient_failures_retried(self, ledger, stock_store):
        stock_store.failures["item-1"] = 2

        result = await ledger.adjust("item-1", -1)

        assert result.ok
        assert result.attempts == 3
        assert stock_store.quantities["item-1"] == 9

    async def test_exhausted_timeouts_reported_not_raised(self, ledger, stock_store):
        """Every attempt times out: four attempts, failed adjustment, stock untouched."""
        stock_store.hanging.add("item-1")

        result = await ledger.adjust("item-1", -1)

        assert not result.ok
        assert result.attempts == 4
        assert stock_store.reads == 4
        assert "timed out" in result.error
        assert result.warning.startswith("Stock not adjusted for item item-1")
        assert stock_store.quantities["item-1"] == 10

    async def test_concurrent_adjustments_do_not_lose_updates(self, ledger, stock_store):
        deltas = [-1, -2, +1, -3, +4, -1, -1, +2]

        results = await asyncio.gather(*(ledger.adjust("item-1", d) for d in deltas))

        assert all(result.ok for result in results)
        assert stock_store.quantities["item-1"] == 10 + sum(deltas)
        assert stock_store.available["item-1"] is (stock_store.quantities["item-1"] > 0)

    async def test_final_quantity_counts_only_applied_deltas(self, stock_store):
        ledger = StockLedger(
            stock_store, RetryPolicy(max_retries=0, backoff_base=0.0, attempt_timeout=0.05)
        )
        stock_store.failures["item-1"] = 1

        first = await ledger.adjust("item-1", -3)
        second = await ledger.adjust("item-1", -2)

        assert not first.ok
        assert second.ok
        assert stock_store.quantities["item-1"] == 8


class TestApplyLines:

    async def test_resolves_item_by_normalized_name(self, ledger, stock_store):
        lines = [OrderLine(name="veg-biryani", quantity=2)]

        results = await ledger.apply_lines(lines, -1)

        assert results[0].ok
        assert results[0].item_id == "item-1"
        assert stock_store.quantities["item-1"] == 8

    async def test_unknown_item_is_a_failed_adjustment(self, ledger):
        results = await ledger.apply_lines([OrderLine(name="Mystery Meal")], -1)

        assert not results[0].ok
        assert results[0].item_id is None
        assert "Mystery Meal" in results[0].warning

    async def test_multiple_lines(self, ledger, stock_store):
        lines = [
            OrderLine(name="Veg Biryani", quantity=1, item_id="item-1"),
            OrderLine(name="Masala Dosa", quantity=3, item_id="item-2"),
        ]

        results = await ledger.apply_lines(lines, +1)

        assert [r.delta for r in results] == [1, 3]
        assert stock_store.quantities == {"item-1": 11, "item-2": 3}
