"""
Prophet Trader Core: Decision/Activity Logger

Append-only session log of policy actions and operator-visible events.

Two record kinds:
- decision: an explicit policy action (block, partial_exit, full_exit, manual_close)
- activity: informational (tick_completed, session_started, exit_failed, aborted, ...)

Output format: JSONL, one file per UTC day (activity_YYYY-MM-DD.jsonl).
Every append is flushed and fsync'd before it returns; callers treat a
returned append as durable.
"""

import json
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import PersistenceError
from core.models import SessionState
from core.session import TradingSession

logger = logging.getLogger(__name__)

LOG_PREFIX = "activity_"
LOG_SUFFIX = ".jsonl"


class RecordKind(Enum):
    DECISION = "decision"
    ACTIVITY = "activity"


@dataclass(frozen=True)
class ActivityRecord:
    kind: RecordKind
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "kind": self.kind.value,
            "event": self.event,
            "payload": self.payload,
        }


class ActivityLogger:
    """
    Durable decision/activity sink keyed by session and by day.

    Writes are serialized by a process-local lock so concurrent monitor and
    control-surface threads never interleave partial lines.
    """

    def __init__(self, log_dir: str = "activity_logs", session: Optional[TradingSession] = None):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.session = session or TradingSession()
        self._lock = Lock()
        logger.info(f"Initialized ActivityLogger at {self.log_dir}")

    def path_for(self, day: date) -> Path:
        return self.log_dir / f"{LOG_PREFIX}{day.isoformat()}{LOG_SUFFIX}"

    # ── Writes ───────────────────────────────────────────────────────
    def append(self, record: ActivityRecord) -> ActivityRecord:
        """
        Append one record durably.

        Raises:
            PersistenceError: if the record could not be written and synced
        """
        line = json.dumps(record.to_dict(), default=str) + "\n"
        path = self.path_for(record.timestamp.astimezone(timezone.utc).date())
        try:
            with self._lock:
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Failed to write activity log {path}: {e}")
            raise PersistenceError(f"activity log write failed: {path}", e) from e

        logger.debug(f"Recorded {record.kind.value}:{record.event}")
        return record

    def record_decision(self, event: str, **payload: Any) -> ActivityRecord:
        return self.append(
            ActivityRecord(
                kind=RecordKind.DECISION,
                event=event,
                payload=payload,
                session_id=self.session.session_id,
            )
        )

    def record_activity(self, event: str, **payload: Any) -> ActivityRecord:
        return self.append(
            ActivityRecord(
                kind=RecordKind.ACTIVITY,
                event=event,
                payload=payload,
                session_id=self.session.session_id,
            )
        )

    # ── Sessions ─────────────────────────────────────────────────────
    def start_session(self, starting_portfolio_value: float) -> SessionState:
        if self.session.is_active:
            self.end_session(reason="superseded")
        state = self.session.start(starting_portfolio_value)
        self.record_activity("session_started", **state.to_dict())
        return state

    def end_session(self, reason: str = "requested") -> Optional[SessionState]:
        state = self.session.state
        if not state or not state.is_active:
            return None
        summary = self.session_summary(state.session_id)
        # Record while the session is still active so the record carries its id
        self.record_activity("session_ended", reason=reason, summary=summary)
        return self.session.end()

    # ── Reads ────────────────────────────────────────────────────────
    def activity_for_date(self, day: date) -> List[Dict[str, Any]]:
        """All records written on ``day`` (UTC), oldest first."""
        path = self.path_for(day)
        if not path.exists():
            return []

        records = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    # A torn final line after a crash is skipped, not fatal
                    logger.warning(f"Skipping unreadable line in {path}")
        return records

    def current_activity(self) -> Dict[str, Any]:
        """Today's records for the active session, plus the session itself."""
        state = self.session.state
        today = datetime.now(timezone.utc).date()
        records = self.activity_for_date(today)
        if state:
            records = [r for r in records if r.get("session_id") == state.session_id]
        return {
            "date": today.isoformat(),
            "session": state.to_dict() if state else None,
            "records": records,
        }

    def list_log_dates(self) -> List[str]:
        """Dates with an activity log on disk, most recent first."""
        dates = []
        for path in self.log_dir.glob(f"{LOG_PREFIX}*{LOG_SUFFIX}"):
            stem = path.name[len(LOG_PREFIX):-len(LOG_SUFFIX)]
            try:
                dates.append(date.fromisoformat(stem))
            except ValueError:
                continue
        return [d.isoformat() for d in sorted(dates, reverse=True)]

    def session_summary(self, session_id: str) -> Dict[str, int]:
        """Event counts for one session, across the days it spans."""
        state = self.session.state
        start_day = state.started_at.date() if state and state.session_id == session_id else None
        today = datetime.now(timezone.utc).date()

        counts: Counter = Counter()
        for day_str in self.list_log_dates():
            day = date.fromisoformat(day_str)
            if start_day and day < start_day:
                continue
            if day > today:
                continue
            for record in self.activity_for_date(day):
                if record.get("session_id") == session_id:
                    counts[record.get("event", "unknown")] += 1
        return dict(counts)
