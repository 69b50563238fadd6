"""
Stock Ledger
============
Retrying read-modify-write adjustments against catalog stock.

Guarantees:
- quantity never goes below zero; availability is always quantity > 0
- both fields are written together in one update
- adjustments for the same item id never interleave (per-item lock)
- exhausted retries come back as a failed StockAdjustment, never raised
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from prometheus_client import Counter

from db import StockStore
from order import OrderLine
from retry import RetryExhaustedError, RetryPolicy, retry_async


logger = logging.getLogger(__name__)


stock_adjustments_total = Counter(
    'stock_adjustments_total',
    'Stock adjustments',
    ['direction', 'result']
)
stock_retries_total = Counter(
    'stock_adjustment_retries_total',
    'Stock adjustment retry attempts'
)


@dataclass(frozen=True)
class StockAdjustment:
    """Result of one adjust() call."""
    item_id: Optional[str]
    delta: int
    ok: bool
    quantity: Optional[int] = None
    available: Optional[bool] = None
    previous_quantity: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def warning(self) -> Optional[str]:
        """User-facing 'stock not adjusted' message, if any."""
        if self.ok:
            return None
        return f"Stock not adjusted for item {self.item_id} by {self.delta:+d}: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "delta": self.delta,
            "ok": self.ok,
            "quantity": self.quantity,
            "available": self.available,
            "attempts": self.attempts,
            "error": self.error,
        }


class StockLedger:
    """Serialized, retrying stock adjustments."""

    def __init__(self, store: StockStore, policy: Optional[RetryPolicy] = None):
        self.store = store
        self.policy = policy or RetryPolicy()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, item_id: str) -> asyncio.Lock:
        lock = self._locks.get(item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[item_id] = lock
        return lock

    async def _read_modify_write(self, item_id: str, delta: int):
        current = await self.store.get_quantity(item_id)
        new_quantity = max(0, current + delta)
        available = new_quantity > 0
        await self.store.set_quantity_and_availability(item_id, new_quantity, available)
        return current, new_quantity, available

    async def adjust(self, item_id: str, delta: int) -> StockAdjustment:
        """
        Adjust an item's quantity by delta (negative consumes, positive restores).

        Args:
            item_id: Catalog item id
            delta: Signed quantity change

        Returns:
            StockAdjustment (ok=False once retries are exhausted)
        """
        direction = "consume" if delta < 0 else "restore"

        if delta == 0:
            return StockAdjustment(item_id=item_id, delta=0, ok=True)

        def _on_retry(retry_number: int, error: BaseException):
            stock_retries_total.inc()
            logger.info(
                f"Retrying stock adjustment in {self.policy.delay_for(retry_number)}s",
                extra={"item_id": item_id, "delta": delta, "retry": retry_number}
            )

        async with self._lock_for(item_id):
            try:
                outcome = await retry_async(
                    lambda: self._read_modify_write(item_id, delta),
                    self.policy,
                    description=f"stock adjust {item_id} ({delta:+d})",
                    on_retry=_on_retry
                )
            except RetryExhaustedError as e:
                stock_adjustments_total.labels(direction=direction, result="failed").inc()
                logger.error(
                    f"Stock not adjusted after {e.attempts} attempts: {str(e.last_error)}",
                    extra={"item_id": item_id, "delta": delta}
                )
                return StockAdjustment(
                    item_id=item_id,
                    delta=delta,
                    ok=False,
                    attempts=e.attempts,
                    error=str(e.last_error)
                )

        previous, quantity, available = outcome.value
        stock_adjustments_total.labels(direction=direction, result="ok").inc()
        logger.info(
            f"Stock adjusted: {previous} -> {quantity}",
            extra={"item_id": item_id, "delta": delta, "available": available}
        )
        return StockAdjustment(
            item_id=item_id,
            delta=delta,
            ok=True,
            quantity=quantity,
            available=available,
            previous_quantity=previous,
            attempts=outcome.attempts
        )

    async def resolve_item_id(self, line: OrderLine) -> Optional[str]:
        """Item id for a line, looked up by name when the line has none."""
        if line.item_id:
            return line.item_id

        try:
            return await self.store.find_item_id(line.name)
        except Exception as e:
            logger.warning(
                f"Item lookup failed for {line.name!r}: {str(e)}",
                extra={"item_name": line.name}
            )
            return None

    async def apply_lines(self, lines, sign: int) -> List[StockAdjustment]:
        """
        Adjust stock for every order line (sign -1 consumes, +1 restores).

        Lines with no resolvable item id yield a failed adjustment.
        """
        results = []
        for line in lines:
            item_id = await self.resolve_item_id(line)
            delta = sign * line.quantity

            if item_id is None:
                stock_adjustments_total.labels(
                    direction="consume" if sign < 0 else "restore",
                    result="unresolved"
                ).inc()
                results.append(StockAdjustment(
                    item_id=None,
                    delta=delta,
                    ok=False,
                    error=f"no catalog item matches {line.name!r}"
                ))
                continue

            results.append(await self.adjust(item_id, delta))
        return results
