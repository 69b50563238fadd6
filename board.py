"""
Order Board
===========
In-memory, partitioned view of all orders.

Invariants:
- every order id lives in exactly one partition, chosen by its status
- live orders are presented oldest first (created_at, then id)
- terminal orders are presented most recent first
- snapshot/restore swap the whole board, never a partial merge
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from prometheus_client import Gauge

from order import Order
from order_status import Partition, is_terminal


logger = logging.getLogger(__name__)


board_live_orders = Gauge(
    'board_live_orders',
    'Orders in the live partition'
)
board_terminal_orders = Gauge(
    'board_terminal_orders',
    'Orders in the terminal partition'
)


class BoardState(Enum):
    """Availability of the board as a whole."""
    LOADING = "loading"
    READY = "ready"
    UNAVAILABLE = "unavailable"


def _live_key(order: Order):
    return (order.created_at, order.order_id)


@dataclass(frozen=True)
class BoardSnapshot:
    """Immutable copy of both partitions for rollback."""
    live: Tuple[Order, ...]
    terminal: Tuple[Order, ...]

    def find(self, order_id: str) -> Optional[Order]:
        for order in self.live + self.terminal:
            if order.order_id == order_id:
                return order
        return None


class OrderBoard:
    """
    Canonical order board.

    Owned by the reconciler; written through the reconciler's event
    handlers and the mutation coordinator only.
    """

    def __init__(self):
        self._live: Dict[str, Order] = {}
        self._terminal: List[Order] = []
        self.state = BoardState.LOADING
        self.version = 0

    # ========================================================================
    # READS
    # ========================================================================

    def live_orders(self) -> List[Order]:
        """Live partition sorted by creation time ascending."""
        return sorted(self._live.values(), key=_live_key)

    def terminal_orders(self) -> List[Order]:
        """Terminal partition, most recent first."""
        return list(self._terminal)

    def get(self, order_id: str) -> Optional[Order]:
        order = self._live.get(order_id)
        if order is not None:
            return order
        return self._find_terminal(order_id)

    def partition_of(self, order_id: str) -> Optional[Partition]:
        if order_id in self._live:
            return Partition.LIVE
        if self._find_terminal(order_id) is not None:
            return Partition.TERMINAL
        return None

    def __contains__(self, order_id: str) -> bool:
        return self.partition_of(order_id) is not None

    def __len__(self) -> int:
        return len(self._live) + len(self._terminal)

    # ========================================================================
    # WRITES
    # ========================================================================

    def replace_all(self, orders: Iterable[Order]):
        """
        Replace the board wholesale (bootstrap / poll result).

        Duplicate ids keep the last occurrence.
        """
        by_id: Dict[str, Order] = {}
        for order in orders:
            by_id[order.order_id] = order

        self._live = {
            oid: order for oid, order in by_id.items() if not is_terminal(order.status)
        }
        self._terminal = sorted(
            (order for order in by_id.values() if is_terminal(order.status)),
            key=_live_key,
            reverse=True
        )
        self._touch()

    def upsert(self, order: Order, prepend_terminal: bool = True):
        """
        Insert or replace an order, placing it by status.

        An order entering the terminal partition is prepended; one already
        terminal is replaced in place.
        """
        was_terminal = self._find_terminal(order.order_id) is not None

        if is_terminal(order.status):
            self._live.pop(order.order_id, None)
            if was_terminal:
                self._terminal = [
                    order if existing.order_id == order.order_id else existing
                    for existing in self._terminal
                ]
            elif prepend_terminal:
                self._terminal.insert(0, order)
            else:
                self._terminal.append(order)
        else:
            if was_terminal:
                self._remove_terminal(order.order_id)
            self._live[order.order_id] = order

        self._touch()

    def remove(self, order_id: str) -> Optional[Order]:
        """Drop an order from either partition (rollback of a placement)."""
        order = self._live.pop(order_id, None)
        if order is None:
            order = self._remove_terminal(order_id)
        if order is not None:
            self._touch()
        return order

    # ========================================================================
    # SNAPSHOT / RESTORE
    # ========================================================================

    def snapshot(self) -> BoardSnapshot:
        """Capture the full board."""
        return BoardSnapshot(
            live=tuple(self.live_orders()),
            terminal=tuple(self._terminal)
        )

    def restore(self, snapshot: BoardSnapshot):
        """Replace the entire board with a snapshot."""
        self._live = {order.order_id: order for order in snapshot.live}
        self._terminal = list(snapshot.terminal)
        self._touch()

        logger.info(
            "Board restored from snapshot",
            extra={"live": len(self._live), "terminal": len(self._terminal)}
        )

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _find_terminal(self, order_id: str) -> Optional[Order]:
        for order in self._terminal:
            if order.order_id == order_id:
                return order
        return None

    def _remove_terminal(self, order_id: str) -> Optional[Order]:
        for index, order in enumerate(self._terminal):
            if order.order_id == order_id:
                return self._terminal.pop(index)
        return None

    def _touch(self):
        self.version += 1
        board_live_orders.set(len(self._live))
        board_terminal_orders.set(len(self._terminal))

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "version": self.version,
            "live": [order.to_dict() for order in self.live_orders()],
            "terminal": [order.to_dict() for order in self._terminal],
        }
