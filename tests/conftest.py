"""Pytest configuration and fixtures."""

from datetime import timedelta

import pytest

from activity_log import ActivityLog
from board import BoardState, OrderBoard
from coordinator import MutationCoordinator
from notifier import NotificationDispatcher
from retry import RetryPolicy
from stock_ledger import StockLedger
from tests.fakes import FakeClock, InMemoryOrderStore, InMemoryStockStore, make_order

# Keep retries fast: same attempt count as production, no real backoff
FAST_POLICY = RetryPolicy(max_retries=3, backoff_base=0.0, attempt_timeout=0.05)


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def seed_orders():
    """One order per status, created one second apart."""
    return [
        make_order("o-1", "preparing", created_offset=0),
        make_order("o-2", "ready", created_offset=1),
        make_order("o-3", "delivered", created_offset=2),
    ]


@pytest.fixture
def order_store(seed_orders):
    return InMemoryOrderStore(seed_orders)


@pytest.fixture
def stock_store():
    return InMemoryStockStore(
        quantities={"item-1": 10, "item-2": 0},
        names={"Veg Biryani": "item-1", "Masala Dosa": "item-2"}
    )


@pytest.fixture
def board(seed_orders):
    """Board already loaded with the seed orders."""
    board = OrderBoard()
    board.replace_all(seed_orders)
    board.state = BoardState.READY
    return board


@pytest.fixture
def ledger(stock_store):
    return StockLedger(stock_store, FAST_POLICY)


@pytest.fixture
def sent_notifications():
    return []


@pytest.fixture
def notifier(clock, sent_notifications):
    async def sink(notification):
        sent_notifications.append(notification)

    return NotificationDispatcher(sink=sink, interval=0.01, clock=clock)


@pytest.fixture
def activity_log(clock):
    return ActivityLog(revert_window=timedelta(seconds=25), clock=clock)


@pytest.fixture
def coordinator(board, order_store, ledger, activity_log, notifier, clock):
    return MutationCoordinator(
        board,
        order_store,
        ledger,
        activity_log=activity_log,
        notifier=notifier,
        remote_timeout=0.2,
        takeaway_surcharge=10.0,
        clock=clock
    )
