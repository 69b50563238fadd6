"""
Database Module
===============
Remote order and stock stores backed by Supabase.

- Abstract OrderStore / StockStore interfaces consumed by the engine
- Supabase implementations (sync client off the event loop)
- Realtime push channel for order inserts/updates
- Circuit breaker so a dead backend fails fast
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from supabase import create_client, acreate_client, Client
from postgrest.exceptions import APIError
from prometheus_client import Counter

from order import Order, normalize_item_name, order_to_row, orders_from_rows
from order_status import OrderStatus


logger = logging.getLogger(__name__)


# Configuration
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
DEFAULT_PAGE_SIZE = 1000


remote_calls_total = Counter(
    'remote_store_calls_total',
    'Remote store calls',
    ['store', 'operation', 'result']
)


class RemoteStoreError(Exception):
    """Raised when the remote store cannot complete a call."""
    pass


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for remote store operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: float = CIRCUIT_BREAKER_TIMEOUT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.threshold:
            if self.state != CircuitState.OPEN:
                logger.error(
                    f"Circuit breaker opened "
                    f"(failures: {self.failure_count})"
                )
            self.state = CircuitState.OPEN

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (self.clock() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


# ============================================================================
# STORE INTERFACES
# ============================================================================

OrderCallback = Callable[[Order], Any]


class Subscription(ABC):
    """Handle for an active push channel."""

    @abstractmethod
    async def unsubscribe(self):
        """Stop receiving events."""


class OrderStore(ABC):
    """Remote order store."""

    @abstractmethod
    async def fetch_orders(
        self,
        page_token: Optional[int] = None
    ) -> Tuple[List[Order], Optional[int]]:
        """Fetch one page of orders; next token is None on the last page."""

    @abstractmethod
    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        delivered_at: Optional[datetime] = None
    ) -> None:
        """Persist a status change. Idempotent: same call twice, same row."""

    @abstractmethod
    async def insert_order(self, order: Order) -> None:
        """Persist a newly placed order."""

    @abstractmethod
    async def subscribe(
        self,
        on_insert: OrderCallback,
        on_update: OrderCallback
    ) -> Subscription:
        """Open the push channel."""


class StockStore(ABC):
    """Remote stock store."""

    @abstractmethod
    async def get_quantity(self, item_id: str) -> int:
        """Current available quantity."""

    @abstractmethod
    async def set_quantity_and_availability(
        self,
        item_id: str,
        quantity: int,
        available: bool
    ) -> None:
        """Write both stock fields in one update."""

    @abstractmethod
    async def find_item_id(self, name: str) -> Optional[str]:
        """Resolve a catalog item id by (normalized) name."""


# ============================================================================
# SUPABASE BASE
# ============================================================================

class _SupabaseStore:
    """Shared plumbing: client, breaker, executor calls, stats."""

    store_name = "supabase"

    def __init__(
        self,
        url: str,
        key: str,
        client: Optional[Client] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self.url = url
        self.key = key
        self.client: Client = client or create_client(url, key)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

        logger.info(f"{self.__class__.__name__} initialized")

    async def _execute(self, operation: str, query: Callable[[], Any], write: bool = False):
        """
        Run a blocking Supabase query in the default executor.

        Raises:
            RemoteStoreError: On breaker open or any backend error
        """
        if not self.circuit_breaker.can_execute():
            remote_calls_total.labels(
                store=self.store_name, operation=operation, result="rejected"
            ).inc()
            raise RemoteStoreError(f"Circuit breaker open, skipping {operation}")

        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, query)

        except APIError as e:
            self._record_error(operation)
            raise RemoteStoreError(f"{operation} rejected: {e.message}") from e

        except Exception as e:
            self._record_error(operation)
            raise RemoteStoreError(f"{operation} failed: {str(e)}") from e

        if write:
            self.write_count += 1
        else:
            self.read_count += 1
        self.circuit_breaker.record_success()
        remote_calls_total.labels(
            store=self.store_name, operation=operation, result="ok"
        ).inc()
        return result

    def _record_error(self, operation: str):
        self.error_count += 1
        self.circuit_breaker.record_failure()
        remote_calls_total.labels(
            store=self.store_name, operation=operation, result="error"
        ).inc()

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }


def _record_from_payload(payload: Any) -> Optional[Dict[str, Any]]:
    """Pull the new row out of a realtime postgres_changes payload."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data", payload)
    record = data.get("record") or data.get("new")
    return record if isinstance(record, dict) else None


# ============================================================================
# SUPABASE ORDER STORE
# ============================================================================

class _RealtimeSubscription(Subscription):
    """Realtime channel handle."""

    def __init__(self, client, channel):
        self._client = client
        self._channel = channel

    async def unsubscribe(self):
        await self._client.remove_channel(self._channel)
        logger.info("Realtime order channel closed")


class SupabaseOrderStore(_SupabaseStore, OrderStore):
    """Orders table access plus realtime change feed."""

    store_name = "orders"

    def __init__(
        self,
        url: str,
        key: str,
        table: str = "orders",
        channel_name: str = "orders-board",
        page_size: int = DEFAULT_PAGE_SIZE,
        app_user_id: Optional[str] = None,
        client: Optional[Client] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        super().__init__(url, key, client=client, circuit_breaker=circuit_breaker)
        self.table = table
        self.channel_name = channel_name
        self.page_size = page_size
        self.app_user_id = app_user_id

    async def fetch_orders(
        self,
        page_token: Optional[int] = None
    ) -> Tuple[List[Order], Optional[int]]:
        start = page_token or 0
        end = start + self.page_size - 1

        result = await self._execute(
            "fetch_orders",
            lambda: self.client
                .table(self.table)
                .select("*")
                .order("created_at")
                .range(start, end)
                .execute()
        )

        rows = result.data or []
        next_token = start + len(rows) if len(rows) >= self.page_size else None
        return orders_from_rows(rows, self.app_user_id), next_token

    async def update_order_status(
        self,
        order_id: str,
        status: OrderStatus,
        delivered_at: Optional[datetime] = None
    ) -> None:
        payload = {
            "status": status.value,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "delivered_at": delivered_at.isoformat() if delivered_at else None,
        }

        result = await self._execute(
            "update_order_status",
            lambda: self.client
                .table(self.table)
                .update(payload)
                .eq("id", order_id)
                .execute(),
            write=True
        )

        if not result.data:
            raise RemoteStoreError(f"Order {order_id} not found remotely")

    async def insert_order(self, order: Order) -> None:
        row = order_to_row(order)
        await self._execute(
            "insert_order",
            lambda: self.client.table(self.table).insert(row).execute(),
            write=True
        )

    async def subscribe(
        self,
        on_insert: OrderCallback,
        on_update: OrderCallback
    ) -> Subscription:
        # Realtime is only available on the async client
        realtime_client = await acreate_client(self.url, self.key)

        def _dispatch(callback: OrderCallback, event: str):
            def handler(payload):
                record = _record_from_payload(payload)
                if record is None:
                    logger.warning(f"Realtime {event} payload without record")
                    return
                orders = orders_from_rows([record], self.app_user_id)
                if orders:
                    callback(orders[0])
            return handler

        channel = realtime_client.channel(self.channel_name)
        channel.on_postgres_changes(
            "INSERT",
            schema="public",
            table=self.table,
            callback=_dispatch(on_insert, "INSERT")
        )
        channel.on_postgres_changes(
            "UPDATE",
            schema="public",
            table=self.table,
            callback=_dispatch(on_update, "UPDATE")
        )
        await channel.subscribe()

        logger.info(
            "Realtime order channel subscribed",
            extra={"channel": self.channel_name, "table": self.table}
        )
        return _RealtimeSubscription(realtime_client, channel)


# ============================================================================
# SUPABASE STOCK STORE
# ============================================================================

class SupabaseStockStore(_SupabaseStore, StockStore):
    """Catalog stock (food_items) access."""

    store_name = "stock"

    def __init__(
        self,
        url: str,
        key: str,
        table: str = "food_items",
        client: Optional[Client] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        super().__init__(url, key, client=client, circuit_breaker=circuit_breaker)
        self.table = table
        self._name_index: Dict[str, str] = {}

    async def get_quantity(self, item_id: str) -> int:
        result = await self._execute(
            "get_quantity",
            lambda: self.client
                .table(self.table)
                .select("available_quantity, is_available")
                .eq("id", item_id)
                .limit(1)
                .execute()
        )

        if not result.data:
            raise RemoteStoreError(f"Stock item {item_id} not found")
        return int(result.data[0].get("available_quantity") or 0)

    async def set_quantity_and_availability(
        self,
        item_id: str,
        quantity: int,
        available: bool
    ) -> None:
        payload = {
            "available_quantity": quantity,
            "is_available": available,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        await self._execute(
            "set_quantity",
            lambda: self.client
                .table(self.table)
                .update(payload)
                .eq("id", item_id)
                .execute(),
            write=True
        )

    async def find_item_id(self, name: str) -> Optional[str]:
        wanted = normalize_item_name(name)
        if not wanted:
            return None

        if wanted not in self._name_index:
            result = await self._execute(
                "find_item_id",
                lambda: self.client.table(self.table).select("id, name").execute()
            )
            self._name_index = {
                normalize_item_name(row.get("name")): str(row["id"])
                for row in (result.data or [])
                if row.get("id") is not None
            }

        return self._name_index.get(wanted)

