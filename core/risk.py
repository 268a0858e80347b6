"""
Prophet Trader Core: Risk Policy

Hard constraints from policy.yaml, evaluated as a pure function of the inputs.

Exit rules (first match wins, so order encodes priority):
  1. Daily circuit breaker  → FULL_EXIT("daily_loss_limit")
  2. Time stop (options)    → FULL_EXIT("time_stop")
  3. Hard stop-loss         → FULL_EXIT("stop_loss")
  4. Full take-profit       → FULL_EXIT("take_profit")
  5. Partial take-profit    → PARTIAL_EXIT(fraction), once per position
  6. Otherwise              → HOLD

Entry rules (first failing rule blocks):
  circuit breaker, max open positions, position size, sector concentration,
  same-symbol cooldown, option DTE window.
"""

from dataclasses import dataclass, fields
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence
import logging

from core.models import (
    AssetClass,
    Category,
    EntryRequest,
    ManagedPosition,
    PositionSide,
    PositionStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskPolicyConfig:
    """
    Process-wide risk limits. Loaded once at startup, never mutated.

    All percentages are decimals (0.15 == 15%).
    """
    max_position_pct_of_portfolio: float = 0.15
    max_sector_pct_of_portfolio: float = 0.35
    max_open_positions: int = 10
    max_daily_loss_pct: float = 0.05
    stop_loss_default_pct: float = 0.15
    partial_take_profit_pct: float = 0.25
    full_take_profit_pct: float = 0.50
    partial_exit_fraction: float = 0.5
    scalp_max_dte: int = 7
    swing_min_dte: int = 14
    swing_max_dte: int = 60
    revenge_cooldown_minutes: int = 30
    scalp_max_hold_minutes: int = 390
    swing_max_hold_days: int = 30
    expiry_exit_buffer_days: int = 1

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "RiskPolicyConfig":
        """Build from the ``risk`` section of policy.yaml, ignoring unknown keys."""
        raw = raw or {}
        known = {f.name: f.type for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in raw.items():
            if key not in known or value is None:
                continue
            values[key] = int(value) if known[key] in (int, "int") else float(value)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class DecisionAction(Enum):
    HOLD = "hold"
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one position or one proposed entry."""
    action: DecisionAction
    reason: Optional[str] = None
    fraction: Optional[float] = None

    @classmethod
    def hold(cls) -> "Decision":
        return cls(DecisionAction.HOLD)

    @classmethod
    def partial_exit(cls, fraction: float, reason: str = "partial_take_profit") -> "Decision":
        return cls(DecisionAction.PARTIAL_EXIT, reason=reason, fraction=fraction)

    @classmethod
    def full_exit(cls, reason: str) -> "Decision":
        return cls(DecisionAction.FULL_EXIT, reason=reason)

    @classmethod
    def blocked(cls, reason: str) -> "Decision":
        return cls(DecisionAction.BLOCKED, reason=reason)

    @property
    def is_exit(self) -> bool:
        return self.action in (DecisionAction.PARTIAL_EXIT, DecisionAction.FULL_EXIT)

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action.value, "reason": self.reason, "fraction": self.fraction}


def unrealized_pl_pct(side: PositionSide, entry_price: float, current_price: float) -> float:
    """(current - entry) / entry for longs, negated for shorts."""
    if entry_price <= 0:
        raise ValueError(f"entry_price must be positive, got {entry_price}")
    pl = (current_price - entry_price) / entry_price
    return -pl if side is PositionSide.SHORT else pl


def days_to_expiration(expiration: date, now: datetime) -> int:
    return (expiration - now.astimezone(timezone.utc).date()).days


class RiskPolicy:
    """Stateless evaluator of positions and proposed entries against RiskPolicyConfig."""

    def __init__(self, config: RiskPolicyConfig):
        self.config = config

    # ── Exit evaluation ──────────────────────────────────────────────
    def evaluate(
        self,
        position: ManagedPosition,
        current_price: float,
        portfolio_value: float,
        open_positions: Sequence[ManagedPosition],
        sector_exposure: Mapping[str, float],
        day_pl_pct: float,
        now: Optional[datetime] = None,
        circuit_breaker_tripped: bool = False,
    ) -> Decision:
        """
        Decide hold / partial exit / full exit for one position.

        ``portfolio_value``, ``open_positions`` and ``sector_exposure`` are part of
        the contract so callers pass one consistent view of the book; the current
        exit rules only depend on price, time and day PnL.
        """
        if position.status is PositionStatus.CLOSED:
            return Decision.hold()

        cfg = self.config
        now = now or datetime.now(timezone.utc)

        # 1. Daily circuit breaker dominates everything
        if circuit_breaker_tripped or self.daily_loss_breached(day_pl_pct):
            return Decision.full_exit("daily_loss_limit")

        # 2. Time stop (options only)
        if (
            position.asset_class is AssetClass.OPTION
            and position.max_hold_until is not None
            and now >= position.max_hold_until
        ):
            return Decision.full_exit("time_stop")

        pl_pct = unrealized_pl_pct(position.side, position.entry_price, current_price)

        # 3. Hard stop-loss
        if pl_pct <= -abs(position.stop_loss_pct):
            return Decision.full_exit("stop_loss")

        # 4. Full take-profit
        full_tp = position.take_profit_pct or cfg.full_take_profit_pct
        if pl_pct >= full_tp:
            return Decision.full_exit("take_profit")

        # 5. Partial take-profit, consumed once the position is partially closed
        if pl_pct >= cfg.partial_take_profit_pct and position.status is PositionStatus.OPEN:
            return Decision.partial_exit(cfg.partial_exit_fraction)

        return Decision.hold()

    def daily_loss_breached(self, day_pl_pct: float) -> bool:
        return day_pl_pct <= -abs(self.config.max_daily_loss_pct)

    # ── Entry evaluation ─────────────────────────────────────────────
    def evaluate_entry(
        self,
        proposed: EntryRequest,
        portfolio_value: float,
        open_positions: Sequence[ManagedPosition],
        sector_exposure: Mapping[str, float],
        day_pl_pct: float = 0.0,
        circuit_breaker_tripped: bool = False,
        last_exit_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Return HOLD when the entry is allowed, BLOCKED(reason) otherwise."""
        cfg = self.config
        now = now or datetime.now(timezone.utc)

        if circuit_breaker_tripped or self.daily_loss_breached(day_pl_pct):
            return self._block(proposed, "daily_loss_limit", f"day_pl={day_pl_pct:.2%}")

        active = [p for p in open_positions if p.is_active]
        if len(active) >= cfg.max_open_positions:
            return self._block(proposed, "max_positions", f"{len(active)}/{cfg.max_open_positions}")

        if portfolio_value <= 0:
            return self._block(proposed, "position_size", "portfolio value unavailable")

        proposed_value = proposed.notional
        if proposed_value / portfolio_value > cfg.max_position_pct_of_portfolio:
            return self._block(
                proposed,
                "position_size",
                f"{proposed_value / portfolio_value:.2%} > {cfg.max_position_pct_of_portfolio:.2%}",
            )

        sector_value = float(sector_exposure.get(proposed.sector, 0.0)) + proposed_value
        if sector_value / portfolio_value > cfg.max_sector_pct_of_portfolio:
            return self._block(
                proposed,
                "sector_concentration",
                f"{proposed.sector} {sector_value / portfolio_value:.2%} > {cfg.max_sector_pct_of_portfolio:.2%}",
            )

        if last_exit_at is not None and cfg.revenge_cooldown_minutes > 0:
            if last_exit_at.tzinfo is None:
                last_exit_at = last_exit_at.replace(tzinfo=timezone.utc)
            cooldown_expires = last_exit_at + timedelta(minutes=cfg.revenge_cooldown_minutes)
            if now < cooldown_expires:
                minutes_left = (cooldown_expires - now).total_seconds() / 60
                return self._block(proposed, "cooldown", f"{minutes_left:.0f}min left")

        if proposed.asset_class is AssetClass.OPTION and proposed.expiration is not None:
            dte = days_to_expiration(proposed.expiration, now)
            if proposed.category is Category.SCALP:
                in_window = 0 <= dte <= cfg.scalp_max_dte
            else:
                in_window = cfg.swing_min_dte <= dte <= cfg.swing_max_dte
            if not in_window:
                return self._block(proposed, "dte_window", f"{proposed.category.value} dte={dte}")

        return Decision.hold()

    def _block(self, proposed: EntryRequest, reason: str, detail: str) -> Decision:
        logger.warning(f"Entry blocked for {proposed.symbol}: {reason} ({detail})")
        return Decision.blocked(reason)

    # ── Derived limits ───────────────────────────────────────────────
    def max_hold_until(
        self,
        asset_class: AssetClass,
        category: Category,
        entry_timestamp: datetime,
        expiration: Optional[date] = None,
    ) -> Optional[datetime]:
        """Time-stop deadline for options; equities have none."""
        if asset_class is not AssetClass.OPTION:
            return None

        cfg = self.config
        if category is Category.SCALP:
            deadline = entry_timestamp + timedelta(minutes=cfg.scalp_max_hold_minutes)
        else:
            deadline = entry_timestamp + timedelta(days=cfg.swing_max_hold_days)

        if expiration is not None:
            expiry_cutoff = datetime(
                expiration.year, expiration.month, expiration.day, tzinfo=timezone.utc
            ) - timedelta(days=cfg.expiry_exit_buffer_days)
            deadline = min(deadline, max(expiry_cutoff, entry_timestamp))

        return deadline
