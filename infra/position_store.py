"""
Prophet Trader Infrastructure: Position Store

Durable table of managed positions plus append-only per-tick snapshots.

The store key is the position id, not the symbol: several concurrent positions
in one symbol are stored and evaluated independently. The last full exit per
symbol is derived from snapshots and drives the entry cooldown.
"""

import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional
import json
import logging

from core.exceptions import NotFound, PersistenceError
from core.models import ManagedPosition, PositionSnapshot, PositionStatus, SnapshotAction

logger = logging.getLogger(__name__)


class PositionStore(ABC):
    """Persistence contract consumed by the PositionManager."""

    @abstractmethod
    def save(self, position: ManagedPosition) -> None:
        ...

    @abstractmethod
    def load(self, position_id: str) -> ManagedPosition:
        """Raises NotFound if absent."""

    @abstractmethod
    def list_open(self) -> List[ManagedPosition]:
        """Positions whose status is open or partially_closed."""

    @abstractmethod
    def list_all(self) -> List[ManagedPosition]:
        ...

    @abstractmethod
    def append_snapshot(self, snapshot: PositionSnapshot) -> None:
        ...

    @abstractmethod
    def snapshots_for(self, position_id: str) -> List[PositionSnapshot]:
        ...

    @abstractmethod
    def last_exit_at(self, symbol: str) -> Optional[datetime]:
        """Timestamp of the most recent full exit in ``symbol``, if any."""

    @abstractmethod
    def purge_snapshots(self, before: datetime) -> int:
        """Delete snapshots older than ``before``. Returns the number removed."""


class SQLitePositionStore(PositionStore):
    """
    SQLite-backed PositionStore.

    Opens one connection per operation so it can be shared across the monitor
    thread and control-server threads.
    """

    def __init__(self, db_path: str = "data/positions.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()
        logger.info(f"SQLitePositionStore initialized at {self.db_path}")

    def describe(self) -> str:
        return f"sqlite:{self.db_path}"

    @contextmanager
    def _connect(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10)
        except sqlite3.Error as e:
            raise PersistenceError(f"{action}: cannot open {self.db_path}", e) from e
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Position store {action} failed: {e}")
            raise PersistenceError(f"{action} failed", e) from e
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect("init") as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS managed_positions (
                    id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    status TEXT NOT NULL,
                    entry_timestamp TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    body TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS position_snapshots (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    position_id TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    price REAL NOT NULL,
                    unrealized_pl_pct REAL NOT NULL,
                    action TEXT NOT NULL,
                    session_id TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_status ON managed_positions(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_symbol ON managed_positions(symbol)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_position ON position_snapshots(position_id)")

    def save(self, position: ManagedPosition) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect("save") as conn:
            conn.execute(
                """
                INSERT INTO managed_positions (id, symbol, status, entry_timestamp, updated_at, body)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    body = excluded.body
                """,
                (
                    position.id,
                    position.symbol,
                    position.status.value,
                    position.entry_timestamp.isoformat(),
                    now,
                    json.dumps(position.to_dict()),
                ),
            )
        logger.debug(f"Saved position {position.id} ({position.status.value})")

    def load(self, position_id: str) -> ManagedPosition:
        with self._connect("load") as conn:
            row = conn.execute(
                "SELECT body FROM managed_positions WHERE id = ?", (position_id,)
            ).fetchone()
        if row is None:
            raise NotFound(position_id)
        return ManagedPosition.from_dict(json.loads(row["body"]))

    def list_open(self) -> List[ManagedPosition]:
        with self._connect("list_open") as conn:
            rows = conn.execute(
                "SELECT body FROM managed_positions WHERE status != ? ORDER BY entry_timestamp",
                (PositionStatus.CLOSED.value,),
            ).fetchall()
        return [ManagedPosition.from_dict(json.loads(r["body"])) for r in rows]

    def list_all(self) -> List[ManagedPosition]:
        with self._connect("list_all") as conn:
            rows = conn.execute(
                "SELECT body FROM managed_positions ORDER BY entry_timestamp"
            ).fetchall()
        return [ManagedPosition.from_dict(json.loads(r["body"])) for r in rows]

    def append_snapshot(self, snapshot: PositionSnapshot) -> None:
        with self._connect("append_snapshot") as conn:
            conn.execute(
                """
                INSERT INTO position_snapshots
                    (position_id, timestamp, price, unrealized_pl_pct, action, session_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot.position_id,
                    snapshot.timestamp.isoformat(),
                    snapshot.price,
                    snapshot.unrealized_pl_pct,
                    snapshot.action.value,
                    snapshot.session_id,
                ),
            )

    def snapshots_for(self, position_id: str) -> List[PositionSnapshot]:
        with self._connect("snapshots_for") as conn:
            rows = conn.execute(
                "SELECT * FROM position_snapshots WHERE position_id = ? ORDER BY seq",
                (position_id,),
            ).fetchall()
        return [
            PositionSnapshot(
                position_id=r["position_id"],
                timestamp=datetime.fromisoformat(r["timestamp"]),
                price=r["price"],
                unrealized_pl_pct=r["unrealized_pl_pct"],
                action=SnapshotAction(r["action"]),
                session_id=r["session_id"],
            )
            for r in rows
        ]

    def last_exit_at(self, symbol: str) -> Optional[datetime]:
        with self._connect("last_exit_at") as conn:
            row = conn.execute(
                """
                SELECT MAX(s.timestamp) AS ts
                FROM position_snapshots s
                JOIN managed_positions p ON p.id = s.position_id
                WHERE p.symbol = ? AND s.action = ?
                """,
                (symbol, SnapshotAction.FULL_EXIT.value),
            ).fetchone()
        if row is None or row["ts"] is None:
            return None
        return datetime.fromisoformat(row["ts"])

    def purge_snapshots(self, before: datetime) -> int:
        with self._connect("purge_snapshots") as conn:
            cursor = conn.execute(
                "DELETE FROM position_snapshots WHERE timestamp < ?",
                (before.isoformat(),),
            )
            removed = cursor.rowcount
        logger.info(f"Purged {removed} snapshots older than {before.isoformat()}")
        return removed
