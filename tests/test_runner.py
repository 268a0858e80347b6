"""Tests for engine bootstrap: config loading, wiring and clean shutdown."""

import shutil
from pathlib import Path

import pytest
import yaml

from core.gateway import DryRunGateway
from core.models import PositionStatus
from core.position_manager import build_entry_request
from runner.main import EngineRunner, main
from tests.helpers.fakes import FakeGateway

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)
    app = yaml.safe_load((target / "app.yaml").read_text())
    app["logging"]["file"] = str(tmp_path / "logs" / "engine.log")
    app["storage"]["positions_db"] = str(tmp_path / "data" / "positions.db")
    app["storage"]["activity_dir"] = str(tmp_path / "activity")
    app["control_server"]["port"] = 0
    (target / "app.yaml").write_text(yaml.safe_dump(app))
    return target


def _set_mode(config_dir: Path, mode: str) -> None:
    app = yaml.safe_load((config_dir / "app.yaml").read_text())
    app["app"]["mode"] = mode
    (config_dir / "app.yaml").write_text(yaml.safe_dump(app))


def test_run_once_ticks_and_ends_session(config_dir):
    gateway = FakeGateway(portfolio_value=100_000.0)
    runner = EngineRunner(config_dir=str(config_dir), gateway=gateway)

    summary = runner.run_once()

    assert summary.evaluated == 0
    state = runner.session.state
    assert state is not None and state.ended_at is not None
    events = [r["event"] for r in runner.activity_log.activity_for_date(state.started_at.date())]
    assert events[0] == "session_started"
    assert "tick_completed" in events
    assert events[-1] == "session_ended"
    assert runner.control_server is None


def test_restart_rehydrates_positions(config_dir):
    gateway = FakeGateway()
    first = EngineRunner(config_dir=str(config_dir), gateway=gateway)
    first.start()
    placed = first.manager.place(build_entry_request({"symbol": "AAPL", "quantity": 5, "entry_price": 10}))
    first.shutdown()

    gateway.set_price("AAPL", 8.0)
    second = EngineRunner(config_dir=str(config_dir), gateway=gateway)
    summary = second.run_once()

    assert summary.full_exits == 1
    assert second.store.load(placed.id).status is PositionStatus.CLOSED


def test_dry_run_wraps_gateway(config_dir):
    _set_mode(config_dir, "DRY_RUN")
    app = yaml.safe_load((config_dir / "app.yaml").read_text())
    app["gateway"]["base_url"] = "https://paper-api.alpaca.markets"
    (config_dir / "app.yaml").write_text(yaml.safe_dump(app))

    runner = EngineRunner(config_dir=str(config_dir), gateway=FakeGateway())
    assert isinstance(runner.gateway, DryRunGateway)


def test_missing_credentials_exit_non_zero(config_dir, monkeypatch):
    monkeypatch.delenv("ALPACA_API_KEY", raising=False)
    monkeypatch.delenv("ALPACA_SECRET_KEY", raising=False)
    assert main(["--once", "--config-dir", str(config_dir)]) == 1


def test_invalid_config_exit_non_zero(config_dir):
    (config_dir / "policy.yaml").write_text("risk: {}\n")
    assert main(["--once", "--config-dir", str(config_dir)]) == 1
