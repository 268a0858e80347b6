"""
Pytest configuration and fixtures for prophet-trader tests.

Every fixture writes under ``tmp_path`` so tests never share a database or
activity log directory.
"""
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from core.activity_log import ActivityLogger  # noqa: E402
from core.position_manager import PositionManager  # noqa: E402
from core.risk import RiskPolicy, RiskPolicyConfig  # noqa: E402
from core.session import TradingSession  # noqa: E402
from infra.metrics import MetricsRecorder  # noqa: E402
from infra.position_store import SQLitePositionStore  # noqa: E402
from tests.helpers.fakes import FakeGateway  # noqa: E402


@pytest.fixture
def policy_config():
    return RiskPolicyConfig()


@pytest.fixture
def gateway():
    return FakeGateway(portfolio_value=100_000.0)


@pytest.fixture
def store(tmp_path):
    return SQLitePositionStore(str(tmp_path / "positions.db"))


@pytest.fixture
def session():
    return TradingSession()


@pytest.fixture
def activity_log(tmp_path, session):
    return ActivityLogger(str(tmp_path / "activity"), session=session)


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def manager(policy_config, store, gateway, activity_log, metrics):
    """PositionManager with an active session at $100k and no retry backoff."""
    mgr = PositionManager(
        RiskPolicy(policy_config),
        store=store,
        gateway=gateway,
        activity_log=activity_log,
        metrics=metrics,
        price_retries=3,
        retry_backoff_seconds=0.0,
    )
    activity_log.start_session(gateway.portfolio_value)
    return mgr
