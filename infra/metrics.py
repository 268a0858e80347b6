"""Prometheus-backed metrics for the position monitor and control surface."""

from __future__ import annotations

import logging
from typing import Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several instances (tests,
    embedded use) never collide on metric names.
    """

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        self._enabled = bool(enabled)
        self._port = int(port)
        self._started = False
        self.registry = CollectorRegistry()
        self.last_tick: Optional[Any] = None

        self._tick_summary = Summary(
            "engine_monitor_tick_duration_seconds",
            "Duration of one position monitor tick",
            registry=self.registry,
        )
        self._tick_counter = Counter(
            "engine_monitor_ticks_total",
            "Monitor ticks completed",
            registry=self.registry,
        )
        self._evaluations_counter = Counter(
            "engine_position_evaluations_total",
            "Position evaluations by resulting action",
            labelnames=("action",),
            registry=self.registry,
        )
        self._exits_counter = Counter(
            "engine_exits_total",
            "Exits executed, by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._blocked_counter = Counter(
            "engine_entries_blocked_total",
            "Entries blocked by the risk policy, by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._gateway_errors_counter = Counter(
            "engine_gateway_errors_total",
            "Gateway failures by operation",
            labelnames=("operation",),
            registry=self.registry,
        )
        self._positions_gauge = Gauge(
            "engine_open_positions",
            "Managed positions not yet closed",
            registry=self.registry,
        )
        self._circuit_breaker_gauge = Gauge(
            "engine_circuit_breaker_state",
            "Daily circuit breaker state (0=armed, 1=tripped)",
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info("Prometheus metrics exporter listening on port %s", self._port)

    def record_tick(self, summary: Any) -> None:
        """Record one completed monitor tick (anything with ``duration_seconds``)."""
        self.last_tick = summary
        self._tick_summary.observe(summary.duration_seconds)
        self._tick_counter.inc()

    def record_evaluation(self, action: str) -> None:
        self._evaluations_counter.labels(action=action).inc()

    def record_exit(self, reason: str) -> None:
        self._exits_counter.labels(reason=reason).inc()

    def record_blocked(self, reason: str) -> None:
        self._blocked_counter.labels(reason=reason).inc()

    def record_gateway_error(self, operation: str) -> None:
        self._gateway_errors_counter.labels(operation=operation).inc()

    def set_open_positions(self, count: int) -> None:
        self._positions_gauge.set(count)

    def set_circuit_breaker(self, tripped: bool) -> None:
        self._circuit_breaker_gauge.set(1 if tripped else 0)

    def sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Current value of one sample; used by health reporting and tests."""
        return self.registry.get_sample_value(name, labels or {})


__all__ = ["MetricsRecorder"]
