"""Tests for config schema validation and sanity checks."""

import shutil
from pathlib import Path

import pytest
import yaml

from core.risk import RiskPolicyConfig
from tools.config_validator import (
    load_app_config,
    load_policy_config,
    validate_all_configs,
)

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)
    return target


def _edit(config_dir: Path, filename: str, mutate):
    path = config_dir / filename
    data = yaml.safe_load(path.read_text())
    mutate(data)
    path.write_text(yaml.safe_dump(data))


def test_shipped_configs_are_valid():
    assert validate_all_configs(str(REPO_CONFIG)) == []


def test_shipped_policy_matches_defaults():
    policy = load_policy_config(str(REPO_CONFIG))
    assert RiskPolicyConfig.from_dict(policy.risk.model_dump()) == RiskPolicyConfig()


def test_missing_file(config_dir):
    (config_dir / "policy.yaml").unlink()
    errors = validate_all_configs(str(config_dir))
    assert any("policy.yaml" in e and "not found" in e for e in errors)


def test_malformed_yaml(config_dir):
    (config_dir / "app.yaml").write_text("app: [unclosed\n")
    errors = validate_all_configs(str(config_dir))
    assert any(e.startswith("app.yaml: Invalid YAML") for e in errors)


def test_percentages_are_decimals(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["risk"].update(max_position_pct_of_portfolio=15))
    errors = validate_all_configs(str(config_dir))
    assert any("max_position_pct_of_portfolio" in e for e in errors)


def test_missing_required_risk_field(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["risk"].pop("max_daily_loss_pct"))
    errors = validate_all_configs(str(config_dir))
    assert any("max_daily_loss_pct" in e for e in errors)


def test_dte_window_order(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["risk"].update(swing_min_dte=90))
    errors = validate_all_configs(str(config_dir))
    assert any("swing_min_dte" in e for e in errors)


def test_partial_below_full_take_profit(config_dir):
    _edit(config_dir, "policy.yaml", lambda d: d["risk"].update(partial_take_profit_pct=0.6))
    errors = validate_all_configs(str(config_dir))
    assert any("partial_take_profit_pct" in e for e in errors)


def test_invalid_mode(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="YOLO"))
    errors = validate_all_configs(str(config_dir))
    assert any("app -> mode" in e for e in errors)


def test_live_mode_on_paper_endpoint(config_dir):
    _edit(config_dir, "app.yaml", lambda d: d["app"].update(mode="LIVE"))
    errors = validate_all_configs(str(config_dir))
    assert any(e.startswith("CONTRADICTION") for e in errors)


def test_unsafe_stop_loss_vs_daily_limit(config_dir):
    def mutate(d):
        d["risk"].update(stop_loss_default_pct=0.9, max_position_pct_of_portfolio=0.5, max_daily_loss_pct=0.05)

    _edit(config_dir, "policy.yaml", mutate)
    errors = validate_all_configs(str(config_dir))
    assert any(e.startswith("UNSAFE") for e in errors)


def test_app_defaults_fill_missing_sections(config_dir):
    (config_dir / "app.yaml").write_text("app:\n  mode: PAPER\n")
    assert validate_all_configs(str(config_dir)) == []

    app = load_app_config(str(config_dir))
    assert app.monitor.interval_seconds == 300.0
    assert app.storage.positions_db == "data/positions.db"
    assert app.control_server.port == 8080
