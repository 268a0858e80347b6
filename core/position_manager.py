"""
Prophet Trader Core: Position Manager

Owns the set of managed positions and drives them through the risk policy.

Responsibilities:
- Validate and admit new positions (entry rules, no broker order)
- Run the monitor loop: price → evaluate → act → persist → log
- Manual closes, idempotent per position
- Keep one consistent view of the book per tick (portfolio value, day PnL,
  sector exposure)

Every mutation of a position holds that position's lock. Positions are frozen
and swapped into the registry whole, so readers never see a partial update.
"""

import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4
import logging

from core.activity_log import ActivityLogger
from core.exceptions import (
    EngineError,
    GatewayRejected,
    NotFound,
    PersistenceError,
    PolicyViolation,
    TransientGatewayError,
    ValidationError,
)
from core.gateway import Gateway, parse_occ_symbol
from core.models import (
    AssetClass,
    Category,
    EntryRequest,
    ManagedPosition,
    PositionSide,
    PositionSnapshot,
    PositionStatus,
    SnapshotAction,
    utcnow,
)
from core.risk import Decision, DecisionAction, RiskPolicy, unrealized_pl_pct
from core.session import TradingSession
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.position_store import PositionStore

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Outcome counts for one monitor pass."""
    started_at: datetime
    evaluated: int = 0
    holds: int = 0
    partial_exits: int = 0
    full_exits: int = 0
    errors: int = 0
    aborted: int = 0
    duration_seconds: float = 0.0
    session_id: Optional[str] = None
    day_pl_pct: float = 0.0
    circuit_breaker_tripped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "evaluated": self.evaluated,
            "holds": self.holds,
            "partial_exits": self.partial_exits,
            "full_exits": self.full_exits,
            "errors": self.errors,
            "aborted": self.aborted,
            "duration_seconds": round(self.duration_seconds, 4),
            "day_pl_pct": self.day_pl_pct,
            "circuit_breaker_tripped": self.circuit_breaker_tripped,
        }


@dataclass
class _TickContext:
    portfolio_value: float
    day_pl_pct: float
    circuit_breaker_tripped: bool
    open_positions: List[ManagedPosition] = field(default_factory=list)
    sector_exposure: Dict[str, float] = field(default_factory=dict)


@dataclass
class _PendingExit:
    """An exit the broker has already executed whose records are not all durable yet."""
    position: ManagedPosition
    event: str
    decision: Dict[str, Any]
    snapshot: Optional[PositionSnapshot] = None
    decision_recorded: bool = False
    saved: bool = False


def sector_exposure(positions: Sequence[ManagedPosition]) -> Dict[str, float]:
    """Market value of active positions grouped by sector."""
    exposure: Dict[str, float] = {}
    for position in positions:
        if not position.is_active:
            continue
        exposure[position.sector] = exposure.get(position.sector, 0.0) + position.market_value
    return exposure


def _enum_value(enum_cls, raw: Any, field_name: str, default=None):
    if raw is None or raw == "":
        if default is None:
            raise ValidationError(field_name, "is required")
        return default
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(field_name, f"must be one of: {allowed}") from None


def _optional_float(raw: Any, field_name: str) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be a number") from None


def build_entry_request(payload: Mapping[str, Any]) -> EntryRequest:
    """
    Translate a JSON-ish mapping into an EntryRequest.

    Asset class defaults to option when the symbol is an OCC contract, and the
    expiration is read from the contract when not supplied.

    Raises:
        ValidationError: on a missing or malformed field
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("body", "must be a JSON object")

    symbol = str(payload.get("symbol") or "").strip().upper()
    if not symbol:
        raise ValidationError("symbol", "is required")

    contract = parse_occ_symbol(symbol)
    asset_class = _enum_value(
        AssetClass,
        payload.get("asset_class"),
        "asset_class",
        default=AssetClass.OPTION if contract else AssetClass.EQUITY,
    )

    quantity = _optional_float(payload.get("quantity"), "quantity")
    if quantity is None:
        raise ValidationError("quantity", "is required")
    entry_price = _optional_float(payload.get("entry_price"), "entry_price")
    if entry_price is None:
        raise ValidationError("entry_price", "is required")

    expiration = None
    raw_expiration = payload.get("expiration")
    if raw_expiration:
        try:
            expiration = date.fromisoformat(str(raw_expiration))
        except ValueError:
            raise ValidationError("expiration", "must be an ISO date (YYYY-MM-DD)") from None
    elif contract and asset_class is AssetClass.OPTION:
        expiration = contract.expiration

    return EntryRequest(
        symbol=symbol,
        asset_class=asset_class,
        side=_enum_value(PositionSide, payload.get("side"), "side", default=PositionSide.LONG),
        quantity=quantity,
        entry_price=entry_price,
        category=_enum_value(Category, payload.get("category"), "category", default=Category.SWING),
        sector=str(payload.get("sector") or "unknown").strip().lower(),
        stop_loss_pct=_optional_float(payload.get("stop_loss_pct"), "stop_loss_pct"),
        take_profit_pct=_optional_float(payload.get("take_profit_pct"), "take_profit_pct"),
        expiration=expiration,
    )


class PositionManager:
    """
    Registry of managed positions plus the monitor loop that supervises them.

    Args:
        policy: RiskPolicy evaluated for every entry and every tick
        store: durable PositionStore
        gateway: broker access (prices, account, exit orders)
        activity_log: durable decision/activity sink; its session is the active one
        interval_seconds: seconds between monitor ticks
        max_workers: >1 evaluates positions concurrently within a tick
        price_retries: attempts per position for a transient price failure
        retry_backoff_seconds: base of the exponential backoff between attempts
    """

    def __init__(
        self,
        policy: RiskPolicy,
        store: PositionStore,
        gateway: Gateway,
        activity_log: ActivityLogger,
        session: Optional[TradingSession] = None,
        metrics: Optional[MetricsRecorder] = None,
        alerts: Optional[AlertService] = None,
        interval_seconds: float = 300.0,
        max_workers: int = 1,
        price_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
    ):
        self.policy = policy
        self.store = store
        self.gateway = gateway
        self.activity_log = activity_log
        self.session = session or activity_log.session
        self.metrics = metrics
        self.alerts = alerts
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.max_workers = max(1, int(max_workers))
        self.price_retries = max(1, int(price_retries))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))

        self._positions: Dict[str, ManagedPosition] = {}
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()
        # Serializes admission so two concurrent places can't both pass the caps
        self._placement_lock = Lock()
        # Exits sent to the broker whose decision/store/snapshot writes failed
        self._pending_exits: Dict[str, _PendingExit] = {}
        self._last_portfolio_value: Optional[float] = None
        self.last_tick: Optional[TickSummary] = None

    # ── Registry ─────────────────────────────────────────────────────
    def _lock_for(self, position_id: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(position_id)
            if lock is None:
                lock = self._locks[position_id] = Lock()
            return lock

    def _discard_lock(self, position_id: str) -> None:
        """Drop the lock of a closed position. Caller holds that lock."""
        with self._registry_lock:
            self._locks.pop(position_id, None)

    def _is_pending(self, position_id: str) -> bool:
        with self._registry_lock:
            return position_id in self._pending_exits

    def _swap(self, position: ManagedPosition) -> None:
        with self._registry_lock:
            self._positions[position.id] = position

    def _active_positions(self) -> List[ManagedPosition]:
        with self._registry_lock:
            return [p for p in self._positions.values() if p.is_active]

    def load(self) -> int:
        """Rehydrate the registry from the store's open positions. Returns the count."""
        positions = self.store.list_open()
        with self._registry_lock:
            for position in positions:
                self._positions[position.id] = position
        logger.info(f"Loaded {len(positions)} open managed position(s) from {type(self.store).__name__}")
        self._update_position_gauge()
        return len(positions)

    def list(self) -> List[ManagedPosition]:
        with self._registry_lock:
            return list(self._positions.values())

    def get(self, position_id: str) -> ManagedPosition:
        with self._registry_lock:
            position = self._positions.get(position_id)
        if position is not None:
            return position
        # Closed positions from earlier runs are only in the store
        return self.store.load(position_id)

    # ── Entry ────────────────────────────────────────────────────────
    def _validate(self, request: EntryRequest) -> None:
        if not request.symbol or not request.symbol.strip():
            raise ValidationError("symbol", "is required")
        if not isinstance(request.asset_class, AssetClass):
            raise ValidationError("asset_class", "unknown asset class")
        if not isinstance(request.side, PositionSide):
            raise ValidationError("side", "unknown side")
        if not isinstance(request.category, Category):
            raise ValidationError("category", "unknown category")
        if not request.quantity or request.quantity <= 0 or math.isnan(request.quantity):
            raise ValidationError("quantity", "must be > 0")
        if not request.entry_price or request.entry_price <= 0 or math.isnan(request.entry_price):
            raise ValidationError("entry_price", "must be > 0")
        if request.asset_class is AssetClass.OPTION and request.quantity != int(request.quantity):
            raise ValidationError("quantity", "options trade in whole contracts")
        for name in ("stop_loss_pct", "take_profit_pct"):
            value = getattr(request, name)
            if value is not None and value <= 0:
                raise ValidationError(name, "must be > 0 (decimal, 0.15 == 15%)")

    def place(self, request: EntryRequest) -> ManagedPosition:
        """
        Admit a new managed position. Does not place the broker order.

        Raises:
            ValidationError: malformed request (no side effect)
            PolicyViolation: blocked by an entry rule (no position created)
            TransientGatewayError: account unavailable
            PersistenceError: position could not be stored
        """
        self._validate(request)
        if request.asset_class is AssetClass.OPTION and request.expiration is None:
            contract = parse_occ_symbol(request.symbol)
            if contract:
                request = replace(request, expiration=contract.expiration)

        with self._placement_lock:
            account = self.gateway.get_account()
            portfolio_value = account.portfolio_value
            self._last_portfolio_value = portfolio_value
            day_pl_pct = self.session.day_pl_pct(portfolio_value)
            breaker = self._check_circuit_breaker(day_pl_pct)

            open_positions = self._active_positions()
            now = utcnow()
            decision = self.policy.evaluate_entry(
                request,
                portfolio_value=portfolio_value,
                open_positions=open_positions,
                sector_exposure=sector_exposure(open_positions),
                day_pl_pct=day_pl_pct,
                circuit_breaker_tripped=breaker,
                last_exit_at=self.store.last_exit_at(request.symbol),
                now=now,
            )

            if decision.action is DecisionAction.BLOCKED:
                if self.metrics:
                    self.metrics.record_blocked(decision.reason)
                self.activity_log.record_decision(
                    "block",
                    symbol=request.symbol,
                    reason=decision.reason,
                    quantity=request.quantity,
                    entry_price=request.entry_price,
                    notional=request.notional,
                    portfolio_value=portfolio_value,
                    day_pl_pct=day_pl_pct,
                )
                raise PolicyViolation(decision.reason, f"{request.symbol} x{request.quantity}")

            cfg = self.policy.config
            position = ManagedPosition(
                id=uuid4().hex,
                symbol=request.symbol,
                asset_class=request.asset_class,
                side=request.side,
                quantity=float(request.quantity),
                original_quantity=float(request.quantity),
                entry_price=float(request.entry_price),
                entry_timestamp=now,
                category=request.category,
                sector=request.sector or "unknown",
                stop_loss_pct=request.stop_loss_pct or cfg.stop_loss_default_pct,
                take_profit_pct=request.take_profit_pct or cfg.full_take_profit_pct,
                max_hold_until=self.policy.max_hold_until(
                    request.asset_class, request.category, now, request.expiration
                ),
                expiration=request.expiration,
            )

            with self._lock_for(position.id):
                self.store.save(position)
                self._swap(position)

        logger.info(
            f"Placed managed position {position.id}: {position.side.value} {position.quantity} "
            f"{position.symbol} @ {position.entry_price} "
            f"(stop={position.stop_loss_pct:.0%}, tp={position.take_profit_pct:.0%})"
        )
        self._record_activity("position_placed", **position.to_dict())
        self._update_position_gauge()
        return position

    # ── Exits ────────────────────────────────────────────────────────
    def close(self, position_id: str, reason: str = "manual", submit_order: bool = True) -> ManagedPosition:
        """
        Full exit regardless of rule state. Closing a closed position is a no-op.

        ``submit_order=False`` retires the position without an exit order, for
        positions whose entry order never reached the broker.

        Raises:
            NotFound: unknown id
            TransientGatewayError / GatewayRejected: exit order failed; position unchanged
            PersistenceError: the exit went through but its records could not be
                written; they are retried on the next tick, never the order
        """
        with self._lock_for(position_id):
            if self._is_pending(position_id):
                self._persist_exit(position_id)
            try:
                position = self.get(position_id)
            except NotFound:
                self._discard_lock(position_id)
                raise
            if not position.is_active:
                logger.info(f"Position {position_id} already closed; close is a no-op")
                self._discard_lock(position_id)
                return position

            try:
                price = self._fetch_price(position)
            except TransientGatewayError as e:
                price = position.last_known_price or position.entry_price
                logger.warning(f"No fresh price for {position.symbol} on close ({e}); using {price}")

            try:
                closed = self._execute_exit(
                    position,
                    quantity=position.quantity,
                    reason=reason,
                    price=price,
                    now=utcnow(),
                    event="manual_close",
                    submit_order=submit_order,
                )
            except EngineError as e:
                if self._is_pending(position_id):
                    # The exit went through; only its records are outstanding
                    raise
                if self.metrics and isinstance(e, (TransientGatewayError, GatewayRejected)):
                    self.metrics.record_gateway_error("exit_position")
                self._report_exit_failure(position, reason, e)
                raise

        self._update_position_gauge()
        return closed

    def _partial_quantity(self, position: ManagedPosition, fraction: float) -> float:
        quantity = position.quantity * fraction
        if position.asset_class is AssetClass.OPTION:
            quantity = max(1.0, float(math.floor(quantity)))
        return min(quantity, position.quantity)

    def _execute_exit(
        self,
        position: ManagedPosition,
        quantity: float,
        reason: str,
        price: float,
        now: datetime,
        event: str,
        submit_order: bool = True,
    ) -> ManagedPosition:
        """
        Exit order → registry → decision record → store → snapshot.

        Caller holds the position lock. A failed order leaves the position
        unchanged. Once the order succeeds the registry reflects the exit, and
        records that fail to write stay pending and are retried without a
        second order. Unsubmitted retirements get a decision record but no
        exit snapshot, so they neither count as exits nor start a cooldown.
        """
        order = None
        if submit_order:
            order = self.gateway.exit_position(
                position.symbol, quantity, position.side.value, position.asset_class
            )
            if self.metrics:
                self.metrics.record_exit(reason)

        remaining = position.quantity - quantity
        if remaining <= 1e-9:
            updated = position.transition(
                PositionStatus.CLOSED,
                quantity=0.0,
                closed_at=now,
                exit_reason=reason,
                last_known_price=price,
                last_evaluated_at=now,
            )
            action = SnapshotAction.FULL_EXIT
        else:
            updated = position.transition(
                PositionStatus.PARTIALLY_CLOSED,
                quantity=remaining,
                last_known_price=price,
                last_evaluated_at=now,
            )
            action = SnapshotAction.PARTIAL_EXIT

        pl_pct = unrealized_pl_pct(position.side, position.entry_price, price)
        pending = _PendingExit(
            position=updated,
            event=event,
            decision=dict(
                position_id=position.id,
                symbol=position.symbol,
                reason=reason,
                quantity=quantity,
                remaining_quantity=updated.quantity,
                price=price,
                unrealized_pl_pct=pl_pct,
                order_id=order.order_id if order else None,
                order_status=order.status if order else "not_submitted",
            ),
        )
        if submit_order:
            pending.snapshot = PositionSnapshot(
                position_id=position.id,
                timestamp=now,
                price=price,
                unrealized_pl_pct=pl_pct,
                action=action,
                session_id=self.session.session_id,
            )

        with self._registry_lock:
            self._positions[position.id] = updated
            self._pending_exits[position.id] = pending
        try:
            self._persist_exit(position.id)
        except PersistenceError as e:
            logger.error(
                f"Exit of {position.symbol} ({position.id}) executed but not persisted; "
                f"retrying the writes next tick: {e}"
            )
            self._record_activity(
                "exit_persistence_pending",
                position_id=position.id,
                symbol=position.symbol,
                reason=reason,
                error=str(e),
            )
            raise

        logger.warning(
            f"EXIT {position.symbol} ({position.id}): {action.value} {quantity} @ {price} "
            f"reason={reason} pnl={pl_pct:+.2%} remaining={updated.quantity}"
        )
        return updated

    def _persist_exit(self, position_id: str) -> None:
        """
        Write whatever records of an executed exit are still outstanding.

        Caller holds the position lock. Each step runs at most once, so a retry
        never duplicates the decision record or the snapshot.

        Raises:
            PersistenceError: a write failed; the exit stays pending
        """
        with self._registry_lock:
            pending = self._pending_exits.get(position_id)
        if pending is None:
            return

        if not pending.decision_recorded:
            self.activity_log.record_decision(pending.event, **pending.decision)
            pending.decision_recorded = True
        if not pending.saved:
            self.store.save(pending.position)
            pending.saved = True
        if pending.snapshot is not None:
            self.store.append_snapshot(pending.snapshot)
            pending.snapshot = None

        with self._registry_lock:
            self._pending_exits.pop(position_id, None)
            if not pending.position.is_active:
                self._locks.pop(position_id, None)

    def _retry_pending_exits(self) -> None:
        with self._registry_lock:
            position_ids = list(self._pending_exits)
        for position_id in position_ids:
            with self._lock_for(position_id):
                try:
                    self._persist_exit(position_id)
                    logger.info(f"Persisted pending exit for {position_id}")
                except PersistenceError as e:
                    logger.error(f"Pending exit for {position_id} still not persisted: {e}")

    # ── Monitor ──────────────────────────────────────────────────────
    def _check_circuit_breaker(self, day_pl_pct: float) -> bool:
        if self.policy.daily_loss_breached(day_pl_pct) and self.session.trip_circuit_breaker():
            if self.metrics:
                self.metrics.set_circuit_breaker(True)
            self._record_activity("circuit_breaker_tripped", day_pl_pct=day_pl_pct)
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Daily circuit breaker tripped",
                    f"Day PnL {day_pl_pct:.2%} breached -{self.policy.config.max_daily_loss_pct:.2%}; "
                    f"flattening all managed positions",
                    {"session_id": self.session.session_id},
                )
        return self.session.circuit_breaker_tripped or self.policy.daily_loss_breached(day_pl_pct)

    def _tick_context(self) -> _TickContext:
        portfolio_value = self._last_portfolio_value
        try:
            portfolio_value = self.gateway.get_account().portfolio_value
            self._last_portfolio_value = portfolio_value
        except EngineError as e:
            if self.metrics:
                self.metrics.record_gateway_error("get_account")
            logger.warning(f"Account unavailable for tick ({e}); using last known portfolio value")

        day_pl_pct = self.session.day_pl_pct(portfolio_value) if portfolio_value else 0.0
        open_positions = self._active_positions()
        return _TickContext(
            portfolio_value=portfolio_value or 0.0,
            day_pl_pct=day_pl_pct,
            circuit_breaker_tripped=self._check_circuit_breaker(day_pl_pct),
            open_positions=open_positions,
            sector_exposure=sector_exposure(open_positions),
        )

    def _fetch_price(self, position: ManagedPosition, stop_event: Optional[Event] = None) -> float:
        """Latest price with bounded retries. Backoff waits return early on cancellation."""
        last_error: Optional[TransientGatewayError] = None
        for attempt in range(self.price_retries):
            try:
                return self.gateway.get_latest_price(position.symbol, position.asset_class)
            except TransientGatewayError as e:
                last_error = e
                if self.metrics:
                    self.metrics.record_gateway_error("get_latest_price")
                logger.warning(
                    f"Price fetch failed for {position.symbol} "
                    f"(attempt {attempt + 1}/{self.price_retries}): {e}"
                )
            if attempt < self.price_retries - 1:
                backoff = self.retry_backoff_seconds * (2 ** attempt)
                if stop_event is not None:
                    if stop_event.wait(backoff):
                        break
                elif backoff > 0:
                    time.sleep(backoff)
        raise TransientGatewayError(f"price unavailable for {position.symbol}", last_error)

    def _evaluate_one(
        self,
        position_id: str,
        context: _TickContext,
        stop_event: Optional[Event],
    ) -> str:
        if stop_event is not None and stop_event.is_set():
            self._record_activity("aborted", position_id=position_id, stage="tick")
            return "aborted"

        with self._lock_for(position_id):
            with self._registry_lock:
                position = self._positions.get(position_id)
            if self._is_pending(position_id):
                # Records of an earlier exit are still outstanding; don't trade on it
                return "error"
            if position is None or not position.is_active:
                # Closed by a concurrent manual close
                self._discard_lock(position_id)
                return "skipped"

            decision: Optional[Decision] = None
            try:
                price = self._fetch_price(position, stop_event)
                now = utcnow()
                decision = self.policy.evaluate(
                    position,
                    current_price=price,
                    portfolio_value=context.portfolio_value,
                    open_positions=context.open_positions,
                    sector_exposure=context.sector_exposure,
                    day_pl_pct=context.day_pl_pct,
                    now=now,
                    circuit_breaker_tripped=context.circuit_breaker_tripped,
                )
                if self.metrics:
                    self.metrics.record_evaluation(decision.action.value)

                if decision.action is DecisionAction.FULL_EXIT:
                    self._execute_exit(position, position.quantity, decision.reason, price, now, "full_exit")
                elif decision.action is DecisionAction.PARTIAL_EXIT:
                    quantity = self._partial_quantity(position, decision.fraction)
                    self._execute_exit(position, quantity, decision.reason, price, now, "partial_exit")
                else:
                    marked = position.marked(price, now)
                    self.store.save(marked)
                    self._swap(marked)
                    self.store.append_snapshot(
                        PositionSnapshot(
                            position_id=position.id,
                            timestamp=now,
                            price=price,
                            unrealized_pl_pct=unrealized_pl_pct(position.side, position.entry_price, price),
                            action=SnapshotAction.NONE,
                            session_id=self.session.session_id,
                        )
                    )
                return decision.action.value

            except EngineError as e:
                if self._is_pending(position_id):
                    # Exit executed; _execute_exit logged the write failure
                    return "error"
                if decision is None and stop_event is not None and stop_event.is_set():
                    self._record_activity("aborted", position_id=position_id, stage="price")
                    return "aborted"
                if decision is not None and decision.is_exit:
                    self._report_exit_failure(position, decision.reason, e)
                else:
                    logger.error(f"Evaluation failed for {position.symbol} ({position.id}): {e}")
                    self._record_activity(
                        "evaluation_failed",
                        position_id=position.id,
                        symbol=position.symbol,
                        error=str(e),
                    )
                return "error"
            except Exception as e:
                logger.exception(f"Unexpected error evaluating {position.symbol} ({position.id}): {e}")
                return "error"

    def run_tick(self, stop_event: Optional[Event] = None) -> TickSummary:
        """
        One monitor pass over every active position.

        Failures are isolated per position. When ``stop_event`` is set mid-tick,
        in-flight evaluations finish and the rest are logged as aborted.
        """
        started = time.monotonic()
        summary = TickSummary(started_at=utcnow(), session_id=self.session.session_id)
        self._retry_pending_exits()
        context = self._tick_context()
        summary.day_pl_pct = context.day_pl_pct
        summary.circuit_breaker_tripped = context.circuit_breaker_tripped

        ids = [p.id for p in context.open_positions]
        if self.max_workers > 1 and len(ids) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="position-eval") as pool:
                outcomes = list(pool.map(lambda pid: self._evaluate_one(pid, context, stop_event), ids))
        else:
            outcomes = [self._evaluate_one(pid, context, stop_event) for pid in ids]

        for outcome in outcomes:
            if outcome == "aborted":
                summary.aborted += 1
                continue
            if outcome == "skipped":
                continue
            summary.evaluated += 1
            if outcome == DecisionAction.HOLD.value:
                summary.holds += 1
            elif outcome == DecisionAction.PARTIAL_EXIT.value:
                summary.partial_exits += 1
            elif outcome == DecisionAction.FULL_EXIT.value:
                summary.full_exits += 1
            else:
                summary.errors += 1

        summary.duration_seconds = time.monotonic() - started
        self.last_tick = summary
        self._record_activity("tick_completed", **summary.to_dict())
        if self.metrics:
            self.metrics.record_tick(summary)
        self._update_position_gauge()

        logger.info(
            f"Tick: evaluated={summary.evaluated} hold={summary.holds} "
            f"partial={summary.partial_exits} full={summary.full_exits} "
            f"errors={summary.errors} aborted={summary.aborted} "
            f"day_pl={summary.day_pl_pct:+.2%} ({summary.duration_seconds:.2f}s)"
        )
        return summary

    def monitor_positions(self, stop_event: Event) -> None:
        """Run ticks every ``interval_seconds`` until ``stop_event`` is set."""
        logger.info(f"Position monitor started (interval={self.interval_seconds:.0f}s, workers={self.max_workers})")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_tick(stop_event)
            except Exception as e:
                logger.exception(f"Monitor tick failed: {e}")
            elapsed = time.monotonic() - started
            if stop_event.wait(max(0.0, self.interval_seconds - elapsed)):
                break
        logger.info("Position monitor stopped")

    def purge_history(self, retention_days: int) -> int:
        """Drop snapshots older than ``retention_days``."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        return self.store.purge_snapshots(cutoff)

    # ── Helpers ──────────────────────────────────────────────────────
    def _record_activity(self, event: str, **payload: Any) -> None:
        """Informational records; a failed write is logged, not raised."""
        try:
            self.activity_log.record_activity(event, **payload)
        except PersistenceError as e:
            logger.error(f"Could not record activity '{event}': {e}")

    def _report_exit_failure(self, position: ManagedPosition, reason: Optional[str], error: Exception) -> None:
        logger.error(f"Exit failed for {position.symbol} ({position.id}, reason={reason}): {error}")
        self._record_activity(
            "exit_failed",
            position_id=position.id,
            symbol=position.symbol,
            reason=reason,
            error=str(error),
        )
        if self.alerts:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Exit failed",
                f"{position.symbol} exit ({reason}) failed: {error}",
                {"position_id": position.id},
            )

    def _update_position_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_open_positions(len(self._active_positions()))


__all__ = ["PositionManager", "TickSummary", "build_entry_request", "sector_exposure"]
