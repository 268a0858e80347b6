"""Tests for the JSON control surface: routing, status mapping and a live HTTP round trip."""

import json
import urllib.error
import urllib.request
from datetime import datetime, timezone

import pytest

from core.exceptions import (
    GatewayRejected,
    NotFound,
    PersistenceError,
    PolicyViolation,
    TransientGatewayError,
    ValidationError,
)
from core.models import PositionStatus
from infra.control_server import ControlApi, ControlServer, error_status


@pytest.fixture
def api(manager, activity_log):
    return ControlApi(manager, activity_log)


def _post_position(api, **overrides):
    body = {"symbol": "AAPL", "quantity": 10, "entry_price": 10.0, "sector": "tech"}
    body.update(overrides)
    return api.dispatch("POST", "/api/v1/positions/managed", body)


@pytest.mark.parametrize(
    "exc, status",
    [
        (ValidationError("quantity", "must be > 0"), 400),
        (PolicyViolation("cooldown"), 409),
        (NotFound("abc"), 404),
        (TransientGatewayError("timeout"), 502),
        (GatewayRejected("POST /v2/orders", 422), 502),
        (PersistenceError("disk full"), 500),
    ],
)
def test_error_status_mapping(exc, status):
    assert error_status(exc) == status


class TestPositions:
    def test_create_places_and_submits_entry(self, api, gateway):
        status, body = _post_position(api)

        assert status == 201
        assert body["position"]["status"] == "open"
        assert body["order"]["side"] == "buy"
        assert len(gateway.entry_orders) == 1

    def test_create_validation_error(self, api):
        status, body = _post_position(api, quantity=0)
        assert status == 400
        assert body["field"] == "quantity"

    def test_create_blocked(self, api, gateway):
        status, body = _post_position(api, quantity=160, entry_price=100.0)
        assert status == 409
        assert body["reason"] == "position_size"
        assert gateway.entry_orders == []

    def test_failed_entry_order_retires_position(self, api, gateway, manager):
        gateway.fail_entries = TransientGatewayError("timeout")

        status, _ = _post_position(api)

        assert status == 502
        [position] = manager.list()
        assert position.status is PositionStatus.CLOSED
        assert position.exit_reason == "entry_order_failed"
        assert gateway.exit_orders == []

    def test_retry_after_failed_entry_order_is_admitted(self, api, gateway):
        gateway.fail_entries = TransientGatewayError("timeout")
        status, _ = _post_position(api)
        assert status == 502

        gateway.fail_entries = None
        status, body = _post_position(api)

        assert status == 201
        assert body["position"]["status"] == "open"
        assert len(gateway.entry_orders) == 1

    def test_list_get_delete(self, api, gateway):
        _, created = _post_position(api)
        position_id = created["position"]["id"]
        gateway.set_price("AAPL", 11.0)

        status, listed = api.dispatch("GET", "/api/v1/positions/managed", None)
        assert status == 200
        assert [p["id"] for p in listed["positions"]] == [position_id]

        status, fetched = api.dispatch("GET", f"/api/v1/positions/managed/{position_id}", None)
        assert status == 200
        assert fetched["symbol"] == "AAPL"

        status, closed = api.dispatch("DELETE", f"/api/v1/positions/managed/{position_id}", None)
        assert status == 200
        assert closed["status"] == "closed"

        # Idempotent
        status, again = api.dispatch("DELETE", f"/api/v1/positions/managed/{position_id}", None)
        assert status == 200
        assert again == closed

    def test_get_unknown(self, api):
        status, body = api.dispatch("GET", "/api/v1/positions/managed/missing", None)
        assert status == 404
        assert body["position_id"] == "missing"

    def test_delete_gateway_failure(self, api, gateway):
        _, created = _post_position(api)
        gateway.set_price("AAPL", 11.0)
        gateway.fail_exits = TransientGatewayError("timeout")

        status, _ = api.dispatch("DELETE", f"/api/v1/positions/managed/{created['position']['id']}", None)
        assert status == 502


class TestActivity:
    def test_session_lifecycle(self, api, activity_log):
        status, started = api.dispatch(
            "POST", "/api/v1/activity/session/start", {"starting_portfolio_value": 50_000}
        )
        assert status == 201
        session_id = started["session"]["session_id"]
        assert activity_log.session.session_id == session_id

        status, ended = api.dispatch("POST", "/api/v1/activity/session/end", {})
        assert status == 200
        assert ended["session"]["ended_at"] is not None

    def test_session_start_defaults_to_account_value(self, api, gateway):
        gateway.portfolio_value = 75_000.0
        _, started = api.dispatch("POST", "/api/v1/activity/session/start", {})
        assert started["session"]["starting_portfolio_value"] == 75_000.0

    def test_session_start_rejects_bad_value(self, api):
        status, body = api.dispatch(
            "POST", "/api/v1/activity/session/start", {"starting_portfolio_value": "lots"}
        )
        assert status == 400

    def test_log_event_and_read_back(self, api):
        status, record = api.dispatch(
            "POST", "/api/v1/activity/log", {"event": "intelligence_queried", "payload": {"source": "news"}}
        )
        assert status == 201
        assert record["kind"] == "activity"

        status, current = api.dispatch("GET", "/api/v1/activity/current", None)
        assert status == 200
        assert current["records"][-1]["event"] == "intelligence_queried"
        assert current["records"][-1]["payload"] == {"source": "news"}

        today = datetime.now(timezone.utc).date().isoformat()
        status, listing = api.dispatch("GET", "/api/v1/activity", None)
        assert today in listing["dates"]

        status, by_date = api.dispatch("GET", f"/api/v1/activity/{today}", None)
        assert status == 200
        assert any(r["event"] == "intelligence_queried" for r in by_date["records"])

    def test_log_event_requires_name(self, api):
        status, body = api.dispatch("POST", "/api/v1/activity/log", {"payload": {}})
        assert status == 400
        assert body["field"] == "event"

    def test_invalid_date(self, api):
        status, _ = api.dispatch("GET", "/api/v1/activity/2025-13-45", None)
        assert status == 400


def test_health_and_unknown_route(api):
    status, health = api.dispatch("GET", "/health", None)
    assert status == 200
    assert health["ok"] is True
    assert health["session"]["session_id"]

    status, _ = api.dispatch("GET", "/api/v1/nope", None)
    assert status == 404


def test_http_round_trip(api):
    server = ControlServer(api, host="127.0.0.1", port=0)
    server.start()
    try:
        base = f"http://127.0.0.1:{server.port}"
        request = urllib.request.Request(
            f"{base}/api/v1/positions/managed",
            data=json.dumps({"symbol": "AAPL", "quantity": 1, "entry_price": 10}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib.request.urlopen(request, timeout=5) as response:
            assert response.status == 201
            created = json.loads(response.read())

        with urllib.request.urlopen(f"{base}/api/v1/positions/managed", timeout=5) as response:
            listed = json.loads(response.read())
        assert listed["positions"][0]["id"] == created["position"]["id"]

        bad = urllib.request.Request(
            f"{base}/api/v1/positions/managed",
            data=b"{not json",
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(bad, timeout=5)
        assert exc_info.value.code == 400
    finally:
        server.stop()
