"""
Mutation Commands
=================
Optimistic board changes as explicit commands, plus the result type
returned to callers.

A Mutation captures the full board before the change, applies the
change locally, and is then either committed or rolled back. Rollback
always restores the whole snapshot.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from board import BoardSnapshot, OrderBoard
from order import Order
from order_status import Transition


logger = logging.getLogger(__name__)


class MutationErrorKind(Enum):
    """Why a mutation request did not commit."""
    NOT_FOUND = "not_found"
    IN_FLIGHT = "in_flight"
    INVALID_TRANSITION = "invalid_transition"
    REMOTE_FAILURE = "remote_failure"
    REVERT_EXPIRED = "revert_expired"
    BOARD_UNAVAILABLE = "board_unavailable"
    INVALID_REQUEST = "invalid_request"


@dataclass
class MutationResult:
    """Outcome of a coordinator request. Never raised, always returned."""
    ok: bool
    order: Optional[Order] = None
    error_kind: Optional[MutationErrorKind] = None
    error: Optional[str] = None
    stock_warnings: List[str] = field(default_factory=list)
    activity_entry: Optional[Any] = None

    @classmethod
    def failure(
        cls,
        kind: MutationErrorKind,
        error: str,
        order: Optional[Order] = None
    ) -> "MutationResult":
        return cls(ok=False, order=order, error_kind=kind, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "order": self.order.to_dict() if self.order else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error": self.error,
            "stock_warnings": list(self.stock_warnings),
            "activity_entry": (
                self.activity_entry.to_dict() if self.activity_entry is not None else None
            ),
        }


class MutationState(Enum):
    PENDING = "pending"
    APPLIED = "applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Mutation:
    """
    One optimistic board change.

    before: full board snapshot taken at construction
    after:  the order as it should look once the change lands
    """

    def __init__(
        self,
        board: OrderBoard,
        after: Order,
        transition: Optional[Transition] = None
    ):
        self.board = board
        self.before: BoardSnapshot = board.snapshot()
        self.previous: Optional[Order] = self.before.find(after.order_id)
        self.after = after
        self.transition = transition
        self.state = MutationState.PENDING

    @property
    def order_id(self) -> str:
        return self.after.order_id

    @property
    def is_placement(self) -> bool:
        return self.previous is None

    def apply(self):
        """Write the change to the local board."""
        if self.state != MutationState.PENDING:
            raise RuntimeError(f"Mutation already {self.state.value}")
        self.board.upsert(self.after)
        self.state = MutationState.APPLIED

    def commit(self):
        """Mark the change as durable."""
        if self.state != MutationState.APPLIED:
            raise RuntimeError(f"Cannot commit mutation in state {self.state.value}")
        self.state = MutationState.COMMITTED

    def rollback(self):
        """Restore the full pre-mutation board."""
        if self.state != MutationState.APPLIED:
            raise RuntimeError(f"Cannot roll back mutation in state {self.state.value}")
        self.board.restore(self.before)
        self.state = MutationState.ROLLED_BACK

        logger.info(
            f"Mutation rolled back for order {self.order_id}",
            extra={"order_id": self.order_id}
        )
