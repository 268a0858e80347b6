"""
Fault-Injection Tests for AlpacaGateway

Verifies:
- 429 / 5xx / network errors are retried with backoff, then surface as
  TransientGatewayError
- Other 4xx fail fast as GatewayRejected
- Order submission is never retried
- Response mapping for account, prices and orders
- OCC option symbol parsing
"""

from datetime import date
from unittest.mock import Mock, patch

import pytest
import requests
from requests.exceptions import ConnectionError, HTTPError, Timeout

from core.exceptions import GatewayRejected, TransientGatewayError
from core.gateway import AlpacaGateway, DryRunGateway, parse_occ_symbol
from core.models import AssetClass


def _response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = HTTPError(response=response)
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def http():
    session = Mock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def gateway(http):
    return AlpacaGateway(
        api_key="key",
        secret_key="secret",
        base_url="https://paper-api.example",
        data_url="https://data.example",
        timeout_seconds=2.5,
        max_retries=3,
        session=http,
    )


def test_requires_credentials():
    with pytest.raises(ValueError):
        AlpacaGateway(api_key="", secret_key="")


def test_auth_headers_set(gateway, http):
    assert http.headers["APCA-API-KEY-ID"] == "key"
    assert http.headers["APCA-API-SECRET-KEY"] == "secret"


class TestRetries:
    def test_retries_429_then_succeeds(self, gateway, http):
        http.request.side_effect = [
            _response(429, text="slow down"),
            _response(200, {"portfolio_value": "1000", "cash": "10", "buying_power": "20"}),
        ]
        with patch("core.gateway.time.sleep") as sleep:
            account = gateway.get_account()

        assert account.portfolio_value == 1000.0
        assert http.request.call_count == 2
        assert sleep.call_count == 1

    def test_every_call_has_timeout(self, gateway, http):
        http.request.return_value = _response(200, {"portfolio_value": "1"})
        gateway.get_account()
        assert http.request.call_args.kwargs["timeout"] == 2.5

    def test_exhausted_5xx_is_transient(self, gateway, http):
        http.request.return_value = _response(503, text="unavailable")
        with patch("core.gateway.time.sleep") as sleep:
            with pytest.raises(TransientGatewayError):
                gateway.get_account()

        assert http.request.call_count == 3
        assert sleep.call_count == 2
        # Exponential: base delays 1s then 2s, plus up to 1s jitter
        first, second = (c.args[0] for c in sleep.call_args_list)
        assert 1.0 <= first < 2.0
        assert 2.0 <= second < 3.0

    @pytest.mark.parametrize("error", [Timeout("timed out"), ConnectionError("refused")])
    def test_network_errors_are_transient(self, gateway, http, error):
        http.request.side_effect = error
        with patch("core.gateway.time.sleep"):
            with pytest.raises(TransientGatewayError) as exc_info:
                gateway.get_account()
        assert exc_info.value.original is error

    def test_client_error_fails_fast(self, gateway, http):
        http.request.return_value = _response(403, text="forbidden")
        with patch("core.gateway.time.sleep") as sleep:
            with pytest.raises(GatewayRejected) as exc_info:
                gateway.get_account()

        assert exc_info.value.status_code == 403
        assert http.request.call_count == 1
        sleep.assert_not_called()

    def test_orders_are_not_retried(self, gateway, http):
        http.request.return_value = _response(503)
        with patch("core.gateway.time.sleep"):
            with pytest.raises(TransientGatewayError):
                gateway.exit_position("AAPL", 5, "long")
        assert http.request.call_count == 1


class TestMapping:
    def test_equity_price(self, gateway, http):
        http.request.return_value = _response(200, {"trade": {"p": 187.5}})
        assert gateway.get_latest_price("AAPL") == 187.5

        method, url = http.request.call_args.args
        assert method == "GET"
        assert url == "https://data.example/v2/stocks/AAPL/trades/latest"
        assert http.request.call_args.kwargs["params"] == {"feed": "iex"}

    def test_option_price(self, gateway, http):
        symbol = "TSLA251219C00400000"
        http.request.return_value = _response(200, {"trades": {symbol: {"p": 4.2}}})
        assert gateway.get_latest_price(symbol, AssetClass.OPTION) == 4.2

        _, url = http.request.call_args.args
        assert url.endswith("/v1beta1/options/trades/latest")
        assert http.request.call_args.kwargs["params"] == {"symbols": symbol}

    def test_missing_trade_is_transient(self, gateway, http):
        http.request.return_value = _response(200, {"trade": {}})
        with pytest.raises(TransientGatewayError):
            gateway.get_latest_price("AAPL")

    @pytest.mark.parametrize("side, order_side", [("long", "sell"), ("short", "buy")])
    def test_exit_side_is_opposite(self, gateway, http, side, order_side):
        http.request.return_value = _response(200, {"id": "o-1", "status": "accepted"})
        result = gateway.exit_position("AAPL", 5, side)

        body = http.request.call_args.kwargs["json"]
        assert body["side"] == order_side
        assert body["qty"] == "5"
        assert body["type"] == "market"
        assert result.order_id == "o-1"
        assert result.side == order_side

    @pytest.mark.parametrize("side, order_side", [("long", "buy"), ("short", "sell")])
    def test_entry_side_follows_position(self, gateway, http, side, order_side):
        http.request.return_value = _response(200, {"id": "o-2", "status": "new"})
        assert gateway.submit_entry("AAPL", 1, side).side == order_side


class TestDryRun:
    def test_reads_delegate_orders_simulated(self):
        inner = Mock()
        inner.get_latest_price.return_value = 10.0
        gateway = DryRunGateway(inner)

        assert gateway.get_latest_price("AAPL") == 10.0
        result = gateway.exit_position("AAPL", 3, "long")

        assert result.status == "simulated"
        assert result.side == "sell"
        inner.exit_position.assert_not_called()


class TestOccSymbols:
    def test_parse_call(self):
        contract = parse_occ_symbol("TSLA251219C00400000")
        assert contract.underlying == "TSLA"
        assert contract.expiration == date(2025, 12, 19)
        assert contract.right == "call"
        assert contract.strike == 400.0

    def test_parse_put_with_fractional_strike(self):
        contract = parse_occ_symbol("SPY250117P00595500")
        assert contract.right == "put"
        assert contract.strike == 595.5

    @pytest.mark.parametrize("symbol", ["AAPL", "", "TSLA251319C00400000", "TSLA251219X00400000"])
    def test_non_option_symbols(self, symbol):
        assert parse_occ_symbol(symbol) is None
