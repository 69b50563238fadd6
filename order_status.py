"""
Order Status Machine
====================
Pure transition table for the canteen order lifecycle.

State invariants:
- delivered and cancelled are terminal; only an explicit revert leaves them
- every status maps to exactly one board partition (live or terminal)
- the table decides side effects; callers never infer them
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

logger = logging.getLogger(__name__)


class OrderStatus(Enum):
    """
    Order lifecycle states.

    State flow:
        PREPARING -> READY -> DELIVERED
        PREPARING/READY -> CANCELLED

    PENDING is a legacy entry state; new orders start at PREPARING.
    """
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Partition(Enum):
    """Board partition an order lives in."""
    LIVE = "live"
    TERMINAL = "terminal"


class SideEffect(Enum):
    """Side effects a committed transition triggers."""
    RESTORE_STOCK = "restore_stock"
    STAMP_DELIVERED = "stamp_delivered"
    CLEAR_DELIVERED = "clear_delivered"
    NOTIFY_CANCELLED = "notify_cancelled"


class StatusTransitionError(Exception):
    """Raised when an invalid status transition is requested."""
    pass


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
LIVE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY})


@dataclass(frozen=True)
class Transition:
    """Resolved transition with its partition move and side effects."""
    from_status: OrderStatus
    to_status: OrderStatus
    from_partition: Partition
    to_partition: Partition
    side_effects: FrozenSet[SideEffect]
    is_revert: bool = False

    @property
    def moves_partition(self) -> bool:
        return self.from_partition != self.to_partition

    def has(self, effect: SideEffect) -> bool:
        return effect in self.side_effects


_NONE: FrozenSet[SideEffect] = frozenset()
_ENTRY = (OrderStatus.PENDING, OrderStatus.PREPARING)

# Forward transitions a staff action may request
FORWARD_TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[SideEffect]] = {
    (OrderStatus.PREPARING, OrderStatus.READY): _NONE,
    (OrderStatus.PENDING, OrderStatus.READY): _NONE,
    (OrderStatus.READY, OrderStatus.DELIVERED): frozenset({SideEffect.STAMP_DELIVERED}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset(
        {SideEffect.RESTORE_STOCK, SideEffect.NOTIFY_CANCELLED}
    ),
    (OrderStatus.PREPARING, OrderStatus.CANCELLED): frozenset(
        {SideEffect.RESTORE_STOCK, SideEffect.NOTIFY_CANCELLED}
    ),
    (OrderStatus.READY, OrderStatus.CANCELLED): frozenset(
        {SideEffect.RESTORE_STOCK, SideEffect.NOTIFY_CANCELLED}
    ),
}

# Inverse transitions, only reachable through the activity log revert path.
# Reverting a cancellation does not re-consume stock (see DESIGN.md).
REVERT_TRANSITIONS: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[SideEffect]] = {
    **{
        (OrderStatus.DELIVERED, target): frozenset({SideEffect.CLEAR_DELIVERED})
        for target in (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY)
    },
    **{
        (OrderStatus.CANCELLED, target): _NONE
        for target in (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY)
    },
    **{
        (OrderStatus.READY, target): _NONE
        for target in _ENTRY
    },
}


def normalize_status(value) -> OrderStatus:
    """
    Coerce a raw status (enum or any-case string) to OrderStatus.

    Raises:
        StatusTransitionError: If the value is not a known status
    """
    if isinstance(value, OrderStatus):
        return value

    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise StatusTransitionError(f"Unknown order status: {value!r}")


def is_terminal(status: OrderStatus) -> bool:
    """Check if status is terminal."""
    return status in TERMINAL_STATUSES


def partition_for(status: OrderStatus) -> Partition:
    """Get the board partition for a status."""
    return Partition.TERMINAL if is_terminal(status) else Partition.LIVE


def can_transition(
    current: OrderStatus,
    requested: OrderStatus,
    revert: bool = False
) -> bool:
    """Check if a transition is in the table."""
    table = REVERT_TRANSITIONS if revert else FORWARD_TRANSITIONS
    return (current, requested) in table


def resolve_transition(
    current,
    requested,
    revert: bool = False,
    order_id: Optional[str] = None
) -> Transition:
    """
    Resolve a requested status change against the transition table.

    Args:
        current: Current order status
        requested: Requested status
        revert: Use the inverse (undo) table instead of the forward table
        order_id: Only used for log context

    Returns:
        Transition with partition move and side effects

    Raises:
        StatusTransitionError: If the transition is not allowed
    """
    current = normalize_status(current)
    requested = normalize_status(requested)
    table = REVERT_TRANSITIONS if revert else FORWARD_TRANSITIONS

    side_effects = table.get((current, requested))
    if side_effects is None:
        error_msg = (
            f"Invalid transition: {current.value} -> {requested.value}"
            + (" (revert)" if revert else "")
        )
        logger.warning(
            error_msg,
            extra={
                "order_id": order_id,
                "from_status": current.value,
                "to_status": requested.value,
                "revert": revert
            }
        )
        raise StatusTransitionError(error_msg)

    return Transition(
        from_status=current,
        to_status=requested,
        from_partition=partition_for(current),
        to_partition=partition_for(requested),
        side_effects=side_effects,
        is_revert=revert
    )
