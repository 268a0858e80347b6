"""
Prophet Trader Runner: Engine Bootstrap

Wires the position engine together and runs it until stopped.

Flow:
1. Validate and load config (app.yaml, policy.yaml)
2. Configure logging
3. Read broker credentials from the environment
4. Rehydrate managed positions, start a trading session
5. Start the control server (and metrics exporter when enabled)
6. Monitor positions on a fixed interval; purge old snapshots daily
7. On SIGINT/SIGTERM: stop the monitor, end the session, stop servers
"""

import os
import signal
import threading
from pathlib import Path
from typing import Optional
import logging

from core.activity_log import ActivityLogger
from core.exceptions import EngineError
from core.gateway import AlpacaGateway, DryRunGateway, Gateway
from core.position_manager import PositionManager, TickSummary
from core.risk import RiskPolicy, RiskPolicyConfig
from core.session import TradingSession
from infra.alerting import AlertService
from infra.control_server import ControlApi, ControlServer
from infra.metrics import MetricsRecorder
from infra.position_store import SQLitePositionStore
from tools.config_validator import load_app_config, load_policy_config, validate_all_configs

logger = logging.getLogger(__name__)

RETENTION_INTERVAL_SECONDS = 24 * 60 * 60


class EngineRunner:
    """
    Process-level owner of the engine components.

    Responsibilities:
    - Load and validate config, fail fast on errors
    - Build store, gateway, logger, session, manager, servers
    - Run the monitor and retention threads
    - Shut down cleanly on signal
    """

    def __init__(self, config_dir: str = "config", gateway: Optional[Gateway] = None):
        self.config_dir = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = load_app_config(config_dir)
        self.policy_config = RiskPolicyConfig.from_dict(load_policy_config(config_dir).risk.model_dump())
        self.mode = self.app_config.app.mode.upper()

        self._configure_logging()
        logger.info(f"Starting {self.app_config.app.name} in mode={self.mode}")

        self.gateway = gateway or self._build_gateway()
        if self.mode == "DRY_RUN" and not isinstance(self.gateway, DryRunGateway):
            self.gateway = DryRunGateway(self.gateway)

        storage = self.app_config.storage
        self.store = SQLitePositionStore(storage.positions_db)
        self.session = TradingSession()
        self.activity_log = ActivityLogger(storage.activity_dir, session=self.session)
        self.metrics = MetricsRecorder(enabled=self.app_config.metrics.enabled, port=self.app_config.metrics.port)
        self.alerts = AlertService.from_config(self.app_config.alerts.model_dump())

        monitor = self.app_config.monitor
        self.manager = PositionManager(
            RiskPolicy(self.policy_config),
            store=self.store,
            gateway=self.gateway,
            activity_log=self.activity_log,
            session=self.session,
            metrics=self.metrics,
            alerts=self.alerts,
            interval_seconds=monitor.interval_seconds,
            max_workers=monitor.max_workers,
            price_retries=monitor.price_retries,
            retry_backoff_seconds=monitor.retry_backoff_seconds,
        )

        self.control_server: Optional[ControlServer] = None
        self._stop_event = threading.Event()
        self._threads: list = []
        self._shutdown_done = False

    def _configure_logging(self) -> None:
        log_cfg = self.app_config.logging
        log_path = Path(log_cfg.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, log_cfg.level.upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
        )

    def _build_gateway(self) -> Gateway:
        api_key = os.getenv("ALPACA_API_KEY", "")
        secret_key = os.getenv("ALPACA_SECRET_KEY", "")
        if not api_key or not secret_key:
            logger.error("ALPACA_API_KEY and ALPACA_SECRET_KEY must be set")
            raise ValueError("Missing broker credentials")

        cfg = self.app_config.gateway
        return AlpacaGateway(
            api_key=api_key,
            secret_key=secret_key,
            base_url=os.getenv("ALPACA_BASE_URL") or cfg.base_url,
            data_url=os.getenv("ALPACA_DATA_URL") or cfg.data_url,
            data_feed=os.getenv("ALPACA_DATA_FEED") or cfg.data_feed,
            timeout_seconds=cfg.timeout_seconds,
            max_retries=cfg.max_retries,
        )

    # ── Lifecycle ────────────────────────────────────────────────────
    def start(self) -> None:
        """Rehydrate, start the session and the servers."""
        self.manager.load()

        account = self.gateway.get_account()
        self.activity_log.start_session(account.portfolio_value)

        self.metrics.start()

        server_cfg = self.app_config.control_server
        if server_cfg.enabled:
            api = ControlApi(self.manager, self.activity_log)
            self.control_server = ControlServer(api, host=server_cfg.host, port=server_cfg.port)
            try:
                self.control_server.start()
            except OSError as exc:
                logger.error("Failed to start control server on %s:%s: %s", server_cfg.host, server_cfg.port, exc)
                self.control_server = None

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def _handle_stop(self, *_) -> None:
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - Initiating graceful shutdown")
        logger.warning("=" * 80)
        self._stop_event.set()

    def _retention_loop(self) -> None:
        retention_days = self.app_config.storage.snapshot_retention_days
        while not self._stop_event.is_set():
            try:
                self.manager.purge_history(retention_days)
            except EngineError as exc:
                logger.warning("Snapshot retention purge failed: %s", exc)
            if self._stop_event.wait(RETENTION_INTERVAL_SECONDS):
                break

    def run_once(self) -> TickSummary:
        self.start()
        try:
            return self.manager.run_tick(self._stop_event)
        finally:
            self.shutdown(reason="run_once")

    def run_forever(self) -> None:
        self.start()
        monitor = threading.Thread(
            target=self.manager.monitor_positions,
            args=(self._stop_event,),
            name="PositionMonitor",
            daemon=True,
        )
        retention = threading.Thread(target=self._retention_loop, name="SnapshotRetention", daemon=True)
        self._threads = [monitor, retention]
        for thread in self._threads:
            thread.start()

        # Wake periodically so signal handlers run promptly on every platform
        while not self._stop_event.wait(1.0):
            pass
        self.shutdown(reason="signal")

    def shutdown(self, reason: str = "shutdown") -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stop_event.set()

        for thread in self._threads:
            thread.join(timeout=30)
            if thread.is_alive():
                logger.warning(f"{thread.name} did not stop within 30s")

        try:
            self.activity_log.end_session(reason=reason)
        except EngineError as exc:
            logger.error("Failed to record session end: %s", exc)

        if self.control_server:
            self.control_server.stop()
            self.control_server = None
        logger.info("Engine stopped cleanly.")


def main(argv: Optional[list] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Prophet Trader position & risk engine")
    parser.add_argument("--once", action="store_true", help="Run a single monitor tick and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    try:
        runner = EngineRunner(config_dir=args.config_dir)
    except ValueError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Startup failed: {exc}")
        return 1

    try:
        if args.once:
            runner.run_once()
        else:
            runner.install_signal_handlers()
            runner.run_forever()
    except EngineError as exc:
        logger.error(f"Engine failed: {exc}")
        runner.shutdown(reason="error")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
