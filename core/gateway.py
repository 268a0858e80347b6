"""
Prophet Trader Core: Market/Account Gateway

The engine's only path to the broker. The Gateway contract keeps broker types out
of the risk policy and position manager; AlpacaGateway implements it against the
Alpaca trading and market-data REST APIs.

Every request carries a bounded timeout. Timeouts, connection errors, 429 and 5xx
are retried with exponential backoff and surface as TransientGatewayError once
retries are exhausted.
"""

import random
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional
from uuid import uuid4
import logging

import requests

from core.exceptions import GatewayRejected, TransientGatewayError
from core.models import Account, AssetClass, OrderResult

logger = logging.getLogger(__name__)

TRADING_BASE = "https://paper-api.alpaca.markets"
DATA_BASE = "https://data.alpaca.markets"

# Root symbol (1-6 chars), YYMMDD, C/P, strike × 1000 zero-padded to 8 digits
OCC_PATTERN = re.compile(r"^(?P<root>[A-Z.]{1,6})(?P<date>\d{6})(?P<right>[CP])(?P<strike>\d{8})$")


@dataclass(frozen=True)
class OptionContract:
    """Parsed OCC option symbol, e.g. TSLA251219C00400000."""
    underlying: str
    expiration: date
    right: str  # "call" | "put"
    strike: float


def parse_occ_symbol(symbol: str) -> Optional[OptionContract]:
    """Parse an OCC option symbol. Returns None if ``symbol`` is not one."""
    match = OCC_PATTERN.match((symbol or "").strip().upper())
    if not match:
        return None
    raw_date = match.group("date")
    try:
        expiration = date(2000 + int(raw_date[:2]), int(raw_date[2:4]), int(raw_date[4:6]))
    except ValueError:
        return None
    return OptionContract(
        underlying=match.group("root"),
        expiration=expiration,
        right="call" if match.group("right") == "C" else "put",
        strike=int(match.group("strike")) / 1000.0,
    )


class Gateway(ABC):
    """Narrow broker interface consumed by the engine."""

    @abstractmethod
    def get_account(self) -> Account:
        ...

    @abstractmethod
    def get_latest_price(self, symbol: str, asset_class: AssetClass = AssetClass.EQUITY) -> float:
        ...

    @abstractmethod
    def exit_position(
        self,
        symbol: str,
        quantity: float,
        side: str,
        asset_class: AssetClass = AssetClass.EQUITY,
    ) -> OrderResult:
        """
        Flatten ``quantity`` of a position.

        Args:
            side: Position side ("long" | "short"); the order side is its opposite
        """

    @abstractmethod
    def submit_entry(
        self,
        symbol: str,
        quantity: float,
        side: str,
        asset_class: AssetClass = AssetClass.EQUITY,
    ) -> OrderResult:
        """Open ``quantity`` in the direction of ``side`` ("long" | "short")."""


class AlpacaGateway(Gateway):
    """Alpaca REST implementation of the Gateway contract."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str = TRADING_BASE,
        data_url: str = DATA_BASE,
        data_feed: str = "iex",
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        if not api_key or not secret_key:
            raise ValueError("Alpaca API credentials are required")
        self.base_url = base_url.rstrip("/")
        self.data_url = data_url.rstrip("/")
        self.data_feed = data_feed
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = max(1, int(max_retries))
        self._session = session or requests.Session()
        self._session.headers.update({
            "APCA-API-KEY-ID": api_key,
            "APCA-API-SECRET-KEY": secret_key,
            "Accept": "application/json",
        })
        logger.info(f"AlpacaGateway initialized: base={self.base_url}, feed={self.data_feed}")

    def _req(
        self,
        method: str,
        url: str,
        body: Optional[dict] = None,
        params: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
    ) -> dict:
        """
        Make an HTTP request with exponential backoff.

        Retries on 429, 5xx and network errors (timeout, connection).
        Does NOT retry on other 4xx.
        """
        attempts = max_retries or self.max_retries
        last_exception: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = self._session.request(
                    method,
                    url,
                    json=body,
                    params=params,
                    timeout=self.timeout_seconds,
                )
                response.raise_for_status()
                return response.json()

            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else 0
                text = e.response.text if e.response is not None else ""

                if 400 <= status_code < 500 and status_code != 429:
                    logger.error(f"Alpaca API client error: {status_code} - {text}")
                    raise GatewayRejected(f"{method} {url}", status_code, text) from e

                if status_code == 429:
                    logger.warning(f"Rate limited (429) on {url}, attempt {attempt + 1}/{attempts}")
                else:
                    logger.warning(f"Server error ({status_code}) on {url}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                logger.warning(f"Network error on {url}: {e}, attempt {attempt + 1}/{attempts}")
                last_exception = e

            if attempt < attempts - 1:
                backoff = (2 ** attempt) + random.uniform(0, 1)
                logger.info(f"Retrying in {backoff:.1f}s...")
                time.sleep(backoff)

        logger.error(f"All {attempts} retries exhausted for {url}")
        raise TransientGatewayError(f"{method} {url}", last_exception)

    def get_account(self) -> Account:
        data = self._req("GET", f"{self.base_url}/v2/account")
        return Account(
            cash=float(data.get("cash", 0.0)),
            buying_power=float(data.get("buying_power", 0.0)),
            portfolio_value=float(data.get("portfolio_value", data.get("equity", 0.0))),
        )

    def get_latest_price(self, symbol: str, asset_class: AssetClass = AssetClass.EQUITY) -> float:
        if asset_class is AssetClass.OPTION:
            data = self._req(
                "GET",
                f"{self.data_url}/v1beta1/options/trades/latest",
                params={"symbols": symbol},
            )
            trade = (data.get("trades") or {}).get(symbol) or {}
        else:
            data = self._req(
                "GET",
                f"{self.data_url}/v2/stocks/{symbol}/trades/latest",
                params={"feed": self.data_feed},
            )
            trade = data.get("trade") or {}

        price = float(trade.get("p") or 0.0)
        if price <= 0:
            raise TransientGatewayError(f"no valid latest trade for {symbol}")
        return price

    def _submit_market_order(self, symbol: str, quantity: float, order_side: str) -> OrderResult:
        body = {
            "symbol": symbol,
            "qty": str(quantity),
            "side": order_side,
            "type": "market",
            "time_in_force": "day",
        }
        logger.info(f"Placing order: {order_side} {quantity} {symbol}")
        # Order submission is not idempotent; a retried POST could double-fill
        data = self._req("POST", f"{self.base_url}/v2/orders", body=body, max_retries=1)
        return OrderResult(
            order_id=str(data.get("id", "")),
            status=str(data.get("status", "unknown")),
            symbol=symbol,
            quantity=quantity,
            side=order_side,
            message=f"Order placed: {order_side} {quantity} {symbol}",
        )

    def exit_position(
        self,
        symbol: str,
        quantity: float,
        side: str,
        asset_class: AssetClass = AssetClass.EQUITY,
    ) -> OrderResult:
        order_side = "sell" if side == "long" else "buy"
        return self._submit_market_order(symbol, quantity, order_side)

    def submit_entry(
        self,
        symbol: str,
        quantity: float,
        side: str,
        asset_class: AssetClass = AssetClass.EQUITY,
    ) -> OrderResult:
        order_side = "buy" if side == "long" else "sell"
        return self._submit_market_order(symbol, quantity, order_side)


class DryRunGateway(Gateway):
    """
    Reads go to the wrapped gateway; orders are logged and simulated.

    Used in DRY_RUN mode so the full decision path runs without touching the
    broker's order book.
    """

    def __init__(self, inner: Gateway):
        self.inner = inner

    def get_account(self) -> Account:
        return self.inner.get_account()

    def get_latest_price(self, symbol: str, asset_class: AssetClass = AssetClass.EQUITY) -> float:
        return self.inner.get_latest_price(symbol, asset_class)

    def _simulate(self, symbol: str, quantity: float, order_side: str) -> OrderResult:
        logger.info(f"DRY_RUN: would place {order_side} {quantity} {symbol}")
        return OrderResult(
            order_id=f"dry-run-{uuid4().hex[:12]}",
            status="simulated",
            symbol=symbol,
            quantity=quantity,
            side=order_side,
            message="DRY_RUN mode - no order submitted",
        )

    def exit_position(
        self,
        symbol: str,
        quantity: float,
        side: str,
        asset_class: AssetClass = AssetClass.EQUITY,
    ) -> OrderResult:
        return self._simulate(symbol, quantity, "sell" if side == "long" else "buy")

    def submit_entry(
        self,
        symbol: str,
        quantity: float,
        side: str,
        asset_class: AssetClass = AssetClass.EQUITY,
    ) -> OrderResult:
        return self._simulate(symbol, quantity, "buy" if side == "long" else "sell")
