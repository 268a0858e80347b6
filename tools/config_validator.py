"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas, then runs
cross-field sanity checks. Ensures config files are correct before startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class RiskConfig(BaseModel):
    """Risk limits. All percentages are decimals (0.15 == 15%)."""
    max_position_pct_of_portfolio: float = Field(gt=0, le=1, description="Max single position / portfolio")
    max_sector_pct_of_portfolio: float = Field(gt=0, le=1, description="Max sector exposure / portfolio")
    max_open_positions: int = Field(gt=0, description="Max concurrently managed positions")
    max_daily_loss_pct: float = Field(gt=0, le=1, description="Daily circuit breaker threshold")
    stop_loss_default_pct: float = Field(gt=0, le=1, description="Stop loss when the entry has none")
    partial_take_profit_pct: float = Field(gt=0, description="Gain that triggers the one-time partial exit")
    full_take_profit_pct: float = Field(gt=0, description="Gain that closes the position")
    partial_exit_fraction: float = Field(default=0.5, gt=0, lt=1, description="Share of quantity sold on partial exit")
    scalp_max_dte: int = Field(ge=0, description="Max DTE for scalp option entries")
    swing_min_dte: int = Field(ge=0, description="Min DTE for swing option entries")
    swing_max_dte: int = Field(gt=0, description="Max DTE for swing option entries")
    revenge_cooldown_minutes: int = Field(ge=0, description="Same-symbol re-entry cooldown after a full exit")
    scalp_max_hold_minutes: int = Field(default=390, gt=0, description="Time stop for scalp options")
    swing_max_hold_days: int = Field(default=30, gt=0, description="Time stop for swing options")
    expiry_exit_buffer_days: int = Field(default=1, ge=0, description="Exit options this many days before expiry")

    @model_validator(mode="after")
    def check_windows(self) -> "RiskConfig":
        if self.swing_min_dte > self.swing_max_dte:
            raise ValueError(
                f"swing_min_dte ({self.swing_min_dte}) must be <= swing_max_dte ({self.swing_max_dte})"
            )
        if self.partial_take_profit_pct >= self.full_take_profit_pct:
            raise ValueError(
                f"partial_take_profit_pct ({self.partial_take_profit_pct}) must be below "
                f"full_take_profit_pct ({self.full_take_profit_pct})"
            )
        return self


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    risk: RiskConfig


# ===== App Schema =====
class AppSection(BaseModel):
    mode: str = Field(default="PAPER", pattern="^(DRY_RUN|PAPER|LIVE)$", description="Trading mode")
    name: str = Field(default="prophet-trader", min_length=1)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    file: str = Field(default="logs/prophet-trader.log", min_length=1)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {v}")
        return v.upper()


class GatewayConfig(BaseModel):
    base_url: str = Field(default="https://paper-api.alpaca.markets", min_length=1)
    data_url: str = Field(default="https://data.alpaca.markets", min_length=1)
    data_feed: str = Field(default="iex", pattern="^(iex|sip|opra|indicative)$")
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    max_retries: int = Field(default=3, ge=1, le=10)


class StorageConfig(BaseModel):
    positions_db: str = Field(default="data/positions.db", min_length=1)
    activity_dir: str = Field(default="activity_logs", min_length=1)
    snapshot_retention_days: int = Field(default=90, gt=0)


class MonitorConfig(BaseModel):
    interval_seconds: float = Field(default=300.0, ge=1)
    max_workers: int = Field(default=1, ge=1, le=32)
    price_retries: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)


class ControlServerConfig(BaseModel):
    enabled: bool = True
    host: str = Field(default="127.0.0.1", min_length=1)
    port: int = Field(default=8080, ge=0, le=65535)


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, ge=0, le=65535)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL")
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    control_server: ControlServerConfig = Field(default_factory=ControlServerConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema: type) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        if not isinstance(config, dict):
            raise TypeError("top level must be a mapping")
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"]) or "<root>"
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: {e}")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema. Returns error messages (empty if valid)."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks the schemas can't express.

    Detects:
    - Stop loss wider than the daily loss limit allows a single position to lose
    - LIVE mode pointed at the paper trading endpoint (and vice versa)
    """
    errors = []
    policy = load_yaml_file(config_dir / "policy.yaml")
    app = load_yaml_file(config_dir / "app.yaml")

    risk = policy.get("risk", {}) or {}
    stop_loss = float(risk.get("stop_loss_default_pct", 0) or 0)
    position_cap = float(risk.get("max_position_pct_of_portfolio", 0) or 0)
    daily_loss = float(risk.get("max_daily_loss_pct", 0) or 0)
    if stop_loss and position_cap and daily_loss and stop_loss * position_cap > daily_loss:
        errors.append(
            "UNSAFE: a single max-size position stopped out "
            f"({stop_loss:.0%} of {position_cap:.0%}) loses more than max_daily_loss_pct ({daily_loss:.0%})"
        )

    mode = str((app.get("app") or {}).get("mode", "PAPER")).upper()
    base_url = str((app.get("gateway") or {}).get("base_url", ""))
    if mode == "LIVE" and "paper" in base_url:
        errors.append(f"CONTRADICTION: app.mode=LIVE but gateway.base_url={base_url} is a paper endpoint")
    if mode == "PAPER" and base_url and "paper" not in base_url:
        errors.append(f"CONTRADICTION: app.mode=PAPER but gateway.base_url={base_url} is not a paper endpoint")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency), only when the schemas pass

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_app(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_app_config(config_dir: str = "config") -> AppSchema:
    """Parsed app.yaml with defaults applied. Call after validate_all_configs."""
    return AppSchema(**load_yaml_file(Path(config_dir) / "app.yaml"))


def load_policy_config(config_dir: str = "config") -> PolicySchema:
    return PolicySchema(**load_yaml_file(Path(config_dir) / "policy.yaml"))


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
