"""
HTTP Gateway
============
Thin FastAPI surface over the BoardController.

NO BUSINESS LOGIC - request parsing and status code mapping only.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from board import BoardState
from board_controller import BoardController
from config import get_config
from mutation import MutationErrorKind, MutationResult
from order import OrderKind, OrderLine
from reconciler import BoardUnavailableError


logger = logging.getLogger(__name__)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

def configure_logging(level: str = "INFO"):
    """Stdlib format for module loggers; structlog routed through stdlib."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ============================================================================
# REQUEST MODELS
# ============================================================================

class OrderLineIn(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(0.0, ge=0)
    item_id: Optional[str] = None


class PlaceOrderIn(BaseModel):
    lines: List[OrderLineIn] = Field(..., min_length=1)
    kind: OrderKind = OrderKind.DINE_IN
    user_id: Optional[str] = None


class StatusChangeIn(BaseModel):
    status: str


# Error kind -> HTTP status
ERROR_STATUS_CODES = {
    MutationErrorKind.NOT_FOUND: 404,
    MutationErrorKind.IN_FLIGHT: 409,
    MutationErrorKind.INVALID_TRANSITION: 409,
    MutationErrorKind.REVERT_EXPIRED: 409,
    MutationErrorKind.INVALID_REQUEST: 422,
    MutationErrorKind.REMOTE_FAILURE: 502,
    MutationErrorKind.BOARD_UNAVAILABLE: 503,
}


def _result_response(result: MutationResult) -> JSONResponse:
    status_code = 200 if result.ok else ERROR_STATUS_CODES.get(result.error_kind, 500)
    return JSONResponse(status_code=status_code, content=result.to_dict())


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(controller: Optional[BoardController] = None) -> FastAPI:
    """
    Build the HTTP app.

    Without a controller, one backed by Supabase is built from the
    environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.controller is None:
            app.state.controller = BoardController.from_config(get_config())
        await app.state.controller.start()
        try:
            yield
        finally:
            await app.state.controller.stop()

    app = FastAPI(title="Canteen Order Board", version="1.0.0", lifespan=lifespan)
    app.state.controller = controller

    def board() -> BoardController:
        return app.state.controller

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        state = board().board_state
        return JSONResponse(
            status_code=200 if state == BoardState.READY else 503,
            content={
                "status": "healthy" if state == BoardState.READY else "degraded",
                "board_state": state.value,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    @app.get("/board")
    async def get_board():
        """Live and terminal partitions; 503 while the board is not READY."""
        controller = board()
        content = controller.board.to_dict()
        if controller.board_state != BoardState.READY:
            content["detail"] = f"Order board is {controller.board_state.value}"
            return JSONResponse(status_code=503, content=content)
        return content

    @app.post("/board/reload")
    async def reload_board():
        """Re-run the full fetch (recovery from an unavailable board)."""
        try:
            count = await board().bootstrap()
        except BoardUnavailableError as e:
            return JSONResponse(status_code=503, content={"detail": str(e)})
        return {"orders": count, "board_state": board().board_state.value}

    @app.post("/orders")
    async def place_order(body: PlaceOrderIn):
        lines = [
            OrderLine(
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                item_id=line.item_id
            )
            for line in body.lines
        ]
        result = await board().place_order(lines, body.kind, user_id=body.user_id)
        return _result_response(result)

    @app.post("/orders/{order_id}/status")
    async def change_status(order_id: str, body: StatusChangeIn):
        result = await board().request_status_change(order_id, body.status)
        return _result_response(result)

    @app.get("/activity")
    async def get_activity(limit: Optional[int] = None):
        controller = board()
        return {
            "entries": [
                {**entry.to_dict(), "revertible": controller.is_revertible(entry)}
                for entry in controller.recent_activity(limit)
            ]
        }

    @app.post("/activity/{entry_id}/revert")
    async def revert_activity(entry_id: str):
        result = await board().request_revert(entry_id)
        return _result_response(result)

    @app.get("/stats")
    async def get_stats():
        return board().get_stats()

    @app.get("/metrics")
    async def metrics():
        """Prometheus exposition."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run server."""
    config = get_config()
    configure_logging(config.server.log_level)

    logger.info(f"Starting order board server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        create_app(),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower()
    )


if __name__ == "__main__":
    main()
