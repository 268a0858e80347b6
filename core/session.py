"""
Prophet Trader Core: Trading Session

Explicit handle for the active trading session. Day PnL is measured against the
session's starting portfolio value, and the daily circuit breaker latches for
the rest of the session once tripped.
"""

from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Optional
from uuid import uuid4
import logging

from core.models import SessionState

logger = logging.getLogger(__name__)


class TradingSession:
    """Thread-safe holder of the current SessionState."""

    def __init__(self, state: Optional[SessionState] = None):
        self._lock = Lock()
        self._state = state

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        state = self._state
        return state.session_id if state and state.is_active else None

    @property
    def is_active(self) -> bool:
        state = self._state
        return bool(state and state.is_active)

    @property
    def circuit_breaker_tripped(self) -> bool:
        state = self._state
        return bool(state and state.is_active and state.circuit_breaker_tripped)

    def start(self, starting_portfolio_value: float, now: Optional[datetime] = None) -> SessionState:
        """Start a new session, ending any active one. Resets the circuit breaker."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if self._state and self._state.is_active:
                logger.info(f"Ending session {self._state.session_id} before starting a new one")
            self._state = SessionState(
                session_id=uuid4().hex,
                started_at=now,
                starting_portfolio_value=float(starting_portfolio_value),
            )
            logger.info(
                f"Session {self._state.session_id} started "
                f"(portfolio=${self._state.starting_portfolio_value:,.2f})"
            )
            return self._state

    def end(self, now: Optional[datetime] = None) -> Optional[SessionState]:
        """End the active session. Returns the ended state, or None if nothing was active."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if not self._state or not self._state.is_active:
                return None
            self._state = replace(self._state, ended_at=now)
            logger.info(f"Session {self._state.session_id} ended")
            return self._state

    def day_pl_pct(self, portfolio_value: float) -> float:
        state = self._state
        if not state or not state.is_active:
            return 0.0
        return state.day_pl_pct(portfolio_value)

    def trip_circuit_breaker(self, now: Optional[datetime] = None) -> bool:
        """Latch the circuit breaker. Returns True only on the first trip of the session."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if not self._state or not self._state.is_active or self._state.circuit_breaker_tripped:
                return False
            self._state = replace(self._state, circuit_breaker_tripped_at=now)
            logger.error(f"🚨 DAILY CIRCUIT BREAKER TRIPPED for session {self._state.session_id}")
            return True
