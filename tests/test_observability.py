"""Tests for Prometheus metrics and webhook alert delivery."""

from unittest.mock import patch

import pytest

from core.exceptions import PolicyViolation, TransientGatewayError
from core.models import AssetClass, Category, EntryRequest, PositionSide
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder


def _request(symbol="AAPL", **overrides):
    fields = dict(
        symbol=symbol,
        asset_class=AssetClass.EQUITY,
        side=PositionSide.LONG,
        quantity=10.0,
        entry_price=10.0,
        category=Category.SWING,
        sector="tech",
    )
    fields.update(overrides)
    return EntryRequest(**fields)


class TestMetrics:
    def test_recorders_have_independent_registries(self):
        first, second = MetricsRecorder(enabled=False), MetricsRecorder(enabled=False)
        first.record_exit("stop_loss")
        assert first.sample("engine_exits_total", {"reason": "stop_loss"}) == 1.0
        assert second.sample("engine_exits_total", {"reason": "stop_loss"}) is None

    def test_disabled_recorder_does_not_bind_port(self):
        recorder = MetricsRecorder(enabled=False)
        with patch("infra.metrics.start_http_server") as start:
            recorder.start()
        start.assert_not_called()

    def test_enabled_recorder_exports_own_registry(self):
        recorder = MetricsRecorder(enabled=True, port=9999)
        with patch("infra.metrics.start_http_server") as start:
            recorder.start()
            recorder.start()
        start.assert_called_once_with(9999, registry=recorder.registry)

    def test_manager_updates_metrics(self, manager, gateway, metrics):
        manager.place(_request())
        manager.place(_request("MSFT"))
        gateway.set_price("AAPL", 8.0)
        gateway.set_price("MSFT", 10.0)

        manager.run_tick()

        assert metrics.sample("engine_monitor_ticks_total") == 1.0
        assert metrics.sample("engine_exits_total", {"reason": "stop_loss"}) == 1.0
        assert metrics.sample("engine_position_evaluations_total", {"action": "hold"}) == 1.0
        assert metrics.sample("engine_open_positions") == 1.0
        assert metrics.last_tick.full_exits == 1

    def test_blocks_and_gateway_errors_counted(self, manager, gateway, metrics):
        with pytest.raises(PolicyViolation):
            manager.place(_request(quantity=1000, entry_price=100.0))
        assert metrics.sample("engine_entries_blocked_total", {"reason": "position_size"}) == 1.0

        manager.place(_request())
        gateway.script_prices("AAPL", [TransientGatewayError("timeout")])
        gateway.set_price("AAPL", 10.0)
        manager.run_tick()
        assert metrics.sample("engine_gateway_errors_total", {"operation": "get_latest_price"}) == 1.0


class TestAlerts:
    def test_disabled_without_webhook(self, monkeypatch):
        monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
        service = AlertService.from_config({"enabled": True})
        assert not service.is_enabled()
        assert service.notify(AlertSeverity.CRITICAL, "t", "m") is False

    def test_dedupe_window(self):
        service = AlertService.from_config({"enabled": True, "dry_run": True, "dedupe_seconds": 60})
        assert service.notify(AlertSeverity.CRITICAL, "Circuit breaker", "tripped") is True
        assert service.notify(AlertSeverity.CRITICAL, "Circuit breaker", "tripped") is False
        assert service.notify(AlertSeverity.CRITICAL, "Circuit breaker", "different") is True

    def test_min_severity_filter(self):
        service = AlertService.from_config({"enabled": True, "dry_run": True, "min_severity": "critical"})
        assert service.notify(AlertSeverity.WARNING, "Exit failed", "x") is False

    def test_webhook_post(self):
        service = AlertService.from_config({"enabled": True, "webhook_url": "https://hooks.example/abc"})
        with patch("infra.alerting.urllib.request.urlopen") as urlopen:
            service.notify(AlertSeverity.CRITICAL, "Daily circuit breaker tripped", "flattening", {"session_id": "s1"})

        request = urlopen.call_args.args[0]
        assert request.full_url == "https://hooks.example/abc"
        assert b"Daily circuit breaker tripped" in request.data
        assert b"session_id" in request.data

    def test_circuit_breaker_trip_alerts_once(self, manager, gateway):
        service = AlertService.from_config({"enabled": True, "dry_run": True})
        manager.alerts = service
        manager.place(_request())
        gateway.set_price("AAPL", 10.0)
        gateway.portfolio_value = 90_000.0

        with patch.object(service, "_send_alert") as send:
            manager.run_tick()
            manager.run_tick()

        titles = [c.args[1] for c in send.call_args_list]
        assert titles.count("Daily circuit breaker tripped") == 1
