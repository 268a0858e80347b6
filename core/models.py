"""
Prophet Trader Core: Domain Model

Managed positions, per-tick snapshots, trading sessions and entry requests.

Position lifecycle: OPEN → PARTIALLY_CLOSED → CLOSED, or OPEN → CLOSED.
CLOSED is terminal.

Positions are frozen; every change produces a new instance through
``dataclasses.replace`` so readers never observe a half-updated record.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

OPTION_CONTRACT_MULTIPLIER = 100


class AssetClass(Enum):
    EQUITY = "equity"
    OPTION = "option"


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def exit_order_side(self) -> str:
        """Broker order side that flattens this position."""
        return "sell" if self is PositionSide.LONG else "buy"

    @property
    def entry_order_side(self) -> str:
        return "buy" if self is PositionSide.LONG else "sell"


class Category(Enum):
    """Holding style; governs the DTE window and time stop for options."""
    SWING = "swing"
    SCALP = "scalp"


class PositionStatus(Enum):
    OPEN = "open"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"


class SnapshotAction(Enum):
    NONE = "none"
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"


# Valid status transitions
VALID_TRANSITIONS = {
    PositionStatus.OPEN: {PositionStatus.PARTIALLY_CLOSED, PositionStatus.CLOSED},
    PositionStatus.PARTIALLY_CLOSED: {PositionStatus.CLOSED},
    PositionStatus.CLOSED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class EntryRequest:
    """Operator or agent request to place a new managed position."""
    symbol: str
    asset_class: AssetClass
    side: PositionSide
    quantity: float
    entry_price: float
    category: Category
    sector: str = "unknown"
    stop_loss_pct: Optional[float] = None
    take_profit_pct: Optional[float] = None
    expiration: Optional[date] = None

    @property
    def multiplier(self) -> int:
        return OPTION_CONTRACT_MULTIPLIER if self.asset_class is AssetClass.OPTION else 1

    @property
    def notional(self) -> float:
        return abs(self.quantity) * self.entry_price * self.multiplier


@dataclass(frozen=True)
class ManagedPosition:
    """A position under active policy supervision."""
    id: str
    symbol: str
    asset_class: AssetClass
    side: PositionSide
    quantity: float
    entry_price: float
    entry_timestamp: datetime
    category: Category
    stop_loss_pct: float
    take_profit_pct: float
    status: PositionStatus = PositionStatus.OPEN
    sector: str = "unknown"
    max_hold_until: Optional[datetime] = None
    expiration: Optional[date] = None
    original_quantity: float = 0.0
    last_evaluated_at: Optional[datetime] = None
    last_known_price: Optional[float] = None
    closed_at: Optional[datetime] = None
    exit_reason: Optional[str] = None

    def __post_init__(self):
        if not self.symbol:
            raise ValueError("Position symbol is required")
        if self.status is not PositionStatus.CLOSED and self.quantity <= 0:
            raise ValueError("Quantity must be positive while the position is not closed")

    @property
    def is_active(self) -> bool:
        return self.status is not PositionStatus.CLOSED

    @property
    def multiplier(self) -> int:
        return OPTION_CONTRACT_MULTIPLIER if self.asset_class is AssetClass.OPTION else 1

    @property
    def market_value(self) -> float:
        """Notional at the last known price (entry price if never marked)."""
        price = self.last_known_price if self.last_known_price else self.entry_price
        return self.quantity * price * self.multiplier

    def transition(self, new_status: PositionStatus, **changes: Any) -> "ManagedPosition":
        """
        Return a copy in ``new_status``.

        Raises:
            ValueError: if the transition is not allowed
        """
        if new_status is not self.status and new_status not in VALID_TRANSITIONS[self.status]:
            raise ValueError(
                f"Invalid transition for {self.id}: {self.status.value} → {new_status.value}"
            )
        return replace(self, status=new_status, **changes)

    def marked(self, price: float, at: datetime) -> "ManagedPosition":
        return replace(self, last_known_price=price, last_evaluated_at=at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "asset_class": self.asset_class.value,
            "side": self.side.value,
            "quantity": self.quantity,
            "original_quantity": self.original_quantity,
            "entry_price": self.entry_price,
            "entry_timestamp": self.entry_timestamp.isoformat(),
            "category": self.category.value,
            "sector": self.sector,
            "stop_loss_pct": self.stop_loss_pct,
            "take_profit_pct": self.take_profit_pct,
            "max_hold_until": _iso(self.max_hold_until),
            "expiration": self.expiration.isoformat() if self.expiration else None,
            "status": self.status.value,
            "last_evaluated_at": _iso(self.last_evaluated_at),
            "last_known_price": self.last_known_price,
            "closed_at": _iso(self.closed_at),
            "exit_reason": self.exit_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedPosition":
        expiration = data.get("expiration")
        return cls(
            id=data["id"],
            symbol=data["symbol"],
            asset_class=AssetClass(data["asset_class"]),
            side=PositionSide(data["side"]),
            quantity=float(data["quantity"]),
            original_quantity=float(data.get("original_quantity") or data["quantity"]),
            entry_price=float(data["entry_price"]),
            entry_timestamp=_parse_dt(data["entry_timestamp"]),
            category=Category(data["category"]),
            sector=data.get("sector") or "unknown",
            stop_loss_pct=float(data["stop_loss_pct"]),
            take_profit_pct=float(data["take_profit_pct"]),
            max_hold_until=_parse_dt(data.get("max_hold_until")),
            expiration=date.fromisoformat(expiration) if expiration else None,
            status=PositionStatus(data["status"]),
            last_evaluated_at=_parse_dt(data.get("last_evaluated_at")),
            last_known_price=data.get("last_known_price"),
            closed_at=_parse_dt(data.get("closed_at")),
            exit_reason=data.get("exit_reason"),
        )


@dataclass(frozen=True)
class PositionSnapshot:
    """Point-in-time evaluation record. Append-only."""
    position_id: str
    timestamp: datetime
    price: float
    unrealized_pl_pct: float
    action: SnapshotAction = SnapshotAction.NONE
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "unrealized_pl_pct": self.unrealized_pl_pct,
            "action": self.action.value,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class SessionState:
    """One trading session. Day PnL is measured against its starting value."""
    session_id: str
    started_at: datetime
    starting_portfolio_value: float
    ended_at: Optional[datetime] = None
    circuit_breaker_tripped_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def circuit_breaker_tripped(self) -> bool:
        return self.circuit_breaker_tripped_at is not None

    def day_pl_pct(self, portfolio_value: float) -> float:
        if self.starting_portfolio_value <= 0:
            return 0.0
        return (portfolio_value - self.starting_portfolio_value) / self.starting_portfolio_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "starting_portfolio_value": self.starting_portfolio_value,
            "ended_at": _iso(self.ended_at),
            "circuit_breaker_tripped_at": _iso(self.circuit_breaker_tripped_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        return cls(
            session_id=data["session_id"],
            started_at=_parse_dt(data["started_at"]),
            starting_portfolio_value=float(data["starting_portfolio_value"]),
            ended_at=_parse_dt(data.get("ended_at")),
            circuit_breaker_tripped_at=_parse_dt(data.get("circuit_breaker_tripped_at")),
        )


@dataclass(frozen=True)
class Account:
    cash: float
    buying_power: float
    portfolio_value: float


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    status: str
    symbol: str
    quantity: float
    side: str
    message: str = ""
    submitted_at: datetime = field(default_factory=utcnow)
