"""Tests for the HTTP surface."""

from typing import Generator

import pytest
from fastapi.testclient import TestClient

from board_controller import BoardController
from config import SyncConfig
from db import RemoteStoreError
from server import create_app


SERVER_SYNC = SyncConfig(
    poll_interval_seconds=0.05,
    prune_interval_seconds=0.05,
    stock_attempt_timeout_seconds=0.05,
    stock_backoff_base_seconds=0.0,
    remote_call_timeout_seconds=0.5,
)


@pytest.fixture
def controller(order_store, stock_store, clock):
    return BoardController(order_store, stock_store, sync_config=SERVER_SYNC, clock=clock)


@pytest.fixture
def client(controller) -> Generator[TestClient, None, None]:
    """Test client with the controller started by the app lifespan."""
    with TestClient(create_app(controller)) as test_client:
        yield test_client


class TestReads:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["board_state"] == "ready"

    def test_board(self, client):
        response = client.get("/board")

        assert response.status_code == 200
        data = response.json()
        assert [o["order_id"] for o in data["live"]] == ["o-1", "o-2"]
        assert [o["order_id"] for o in data["terminal"]] == ["o-3"]

    def test_metrics(self, client):
        client.post("/orders/o-2/status", json={"status": "delivered"})
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "order_mutations_total" in response.text


class TestStatusChanges:

    def test_change_then_revert(self, client):
        response = client.post("/orders/o-2/status", json={"status": "delivered"})
        assert response.status_code == 200
        assert response.json()["order"]["partition"] == "terminal"

        entries = client.get("/activity").json()["entries"]
        assert entries[0]["order_id"] == "o-2"
        assert entries[0]["revertible"] is True

        response = client.post(f"/activity/{entries[0]['entry_id']}/revert")
        assert response.status_code == 200
        assert response.json()["order"]["status"] == "ready"

    def test_unknown_order(self, client):
        response = client.post("/orders/ghost/status", json={"status": "ready"})
        assert response.status_code == 404
        assert response.json()["error_kind"] == "not_found"

    def test_invalid_transition(self, client):
        response = client.post("/orders/o-3/status", json={"status": "ready"})
        assert response.status_code == 409
        assert response.json()["error_kind"] == "invalid_transition"

    def test_remote_failure(self, client, order_store):
        order_store.update_error = RemoteStoreError("offline")

        response = client.post("/orders/o-1/status", json={"status": "ready"})

        assert response.status_code == 502
        assert client.get("/board").json()["live"][0]["status"] == "preparing"

    def test_expired_revert(self, client, clock):
        client.post("/orders/o-1/status", json={"status": "ready"})
        entry_id = client.get("/activity").json()["entries"][0]["entry_id"]

        clock.advance(seconds=30)
        response = client.post(f"/activity/{entry_id}/revert")

        assert response.status_code == 409
        assert response.json()["error_kind"] == "revert_expired"


class TestPlacement:

    def test_place_order(self, client, stock_store):
        response = client.post("/orders", json={
            "lines": [{"name": "Veg Biryani", "quantity": 3, "unit_price": 80}],
            "kind": "takeaway",
        })

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "preparing"
        assert order["total_amount"] == 270.0
        assert stock_store.quantities["item-1"] == 7

    def test_stock_warning_surfaced(self, client):
        response = client.post("/orders", json={"lines": [{"name": "Mystery Meal"}]})

        assert response.status_code == 200
        assert len(response.json()["stock_warnings"]) == 1

    def test_invalid_body(self, client):
        response = client.post("/orders", json={"lines": [{"name": "Tea", "quantity": 0}]})
        assert response.status_code == 422


class TestUnavailableBoard:

    def test_board_unavailable_then_reload(self, order_store, controller):
        order_store.fetch_error = RemoteStoreError("offline")

        with TestClient(create_app(controller)) as client:
            assert client.get("/health").status_code == 503
            response = client.get("/board")
            assert response.status_code == 503
            assert response.json()["state"] == "unavailable"

            assert client.post("/board/reload").status_code == 503

            order_store.fetch_error = None
            response = client.post("/board/reload")
            assert response.status_code == 200
            assert response.json()["orders"] == 3
            assert client.get("/board").status_code == 200
