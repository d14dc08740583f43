"""SQLite journal for durable fills, order records and cycle reports."""

import logging
import os
import sqlite3
from typing import Optional

import orjson

from .types import CycleReport, Fill, OrderRecord, Side

logger = logging.getLogger(__name__)


class EventJournalSQLite:
    """
    Durable journaling using SQLite.

    Stores:
    - Every fill applied to the ledger (replayed on startup)
    - The latest state of every order record, keyed by idempotency key
    - One row per cycle report
    """

    def __init__(self, db_path: str = "/data/journal.db", enabled: bool = True):
        """
        Initialize the journal.

        Args:
            db_path: Path to SQLite database (":memory:" for tests)
            enabled: Whether journaling is enabled
        """
        self.db_path = db_path
        self.enabled = enabled
        self._conn: Optional[sqlite3.Connection] = None

    def init_schema(self) -> None:
        """Initialize the database schema."""
        if not self.enabled:
            return

        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self._conn = sqlite3.connect(self.db_path)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS fills (
                fill_id TEXT PRIMARY KEY,
                market_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                fill_data BLOB NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                idempotency_key TEXT PRIMARY KEY,
                market_id TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_ms INTEGER NOT NULL,
                order_data BLOB NOT NULL
            )
        """)

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS cycles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                window_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                outcome TEXT NOT NULL,
                report_data BLOB NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_fills_market ON fills(market_id, sequence)
        """)

        self._conn.commit()
        logger.info(f"Journal initialized at {self.db_path}")

    # ============== Fills ==============

    def append_fill(self, fill: Fill) -> None:
        """
        Persist an applied fill. Re-appending a known fill id is a no-op.

        Args:
            fill: Fill applied to the ledger
        """
        if not self.enabled or not self._conn:
            return

        try:
            fill_data = orjson.dumps({
                "fill_id": fill.fill_id,
                "order_id": fill.order_id,
                "market_id": fill.market_id,
                "token_id": fill.token_id,
                "side": fill.side.name,
                "quantity": fill.quantity,
                "price": fill.price,
                "sequence": fill.sequence,
                "ts_ms": fill.ts_ms,
            })
            self._conn.execute(
                "INSERT OR IGNORE INTO fills (fill_id, market_id, sequence, fill_data) VALUES (?, ?, ?, ?)",
                (fill.fill_id, fill.market_id, fill.sequence, fill_data)
            )
            self._conn.commit()

        except sqlite3.Error as e:
            logger.error(f"Failed to append fill to journal: {e}")

    def load_fills(self) -> list[Fill]:
        """
        Load all journaled fills in application order.

        Returns:
            List of Fill objects
        """
        if not self.enabled or not self._conn:
            return []

        cursor = self._conn.execute("SELECT fill_data FROM fills ORDER BY rowid")
        fills = []
        for (raw,) in cursor:
            data = orjson.loads(raw)
            fills.append(Fill(
                fill_id=data["fill_id"],
                order_id=data["order_id"],
                market_id=data["market_id"],
                token_id=data.get("token_id", ""),
                side=Side[data["side"]],
                quantity=float(data["quantity"]),
                price=float(data["price"]),
                sequence=int(data.get("sequence", 0)),
                ts_ms=int(data.get("ts_ms", 0)),
            ))
        return fills

    # ============== Orders ==============

    def upsert_order(self, record: OrderRecord) -> None:
        """
        Persist the current state of an order record.

        Args:
            record: Order record to store
        """
        if not self.enabled or not self._conn:
            return

        try:
            self._conn.execute(
                """
                INSERT INTO orders (idempotency_key, market_id, status, updated_ms, order_data)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(idempotency_key) DO UPDATE SET
                    status = excluded.status,
                    updated_ms = excluded.updated_ms,
                    order_data = excluded.order_data
                """,
                (
                    record.idempotency_key,
                    record.market_id,
                    record.status.name,
                    record.updated_ms,
                    orjson.dumps(record.to_dict()),
                )
            )
            self._conn.commit()

        except sqlite3.Error as e:
            logger.error(f"Failed to store order record: {e}")

    def load_orders(self, since_ms: Optional[int] = None) -> list[OrderRecord]:
        """
        Load stored order records.

        Args:
            since_ms: When set, terminal records last updated before this
                time are skipped; non-terminal records are always loaded

        Returns:
            List of OrderRecord objects
        """
        if not self.enabled or not self._conn:
            return []

        if since_ms is None:
            cursor = self._conn.execute("SELECT order_data FROM orders ORDER BY rowid")
        else:
            cursor = self._conn.execute(
                """
                SELECT order_data FROM orders
                WHERE status NOT IN ('FILLED', 'CANCELLED', 'REJECTED') OR updated_ms >= ?
                ORDER BY rowid
                """,
                (since_ms,)
            )
        return [OrderRecord.from_dict(orjson.loads(raw)) for (raw,) in cursor]

    # ============== Cycles ==============

    def append_cycle(self, report: CycleReport) -> None:
        """
        Append a cycle report.

        Args:
            report: Report to append
        """
        if not self.enabled or not self._conn:
            return

        try:
            self._conn.execute(
                "INSERT INTO cycles (window_id, symbol, outcome, report_data) VALUES (?, ?, ?, ?)",
                (report.window_id, report.symbol, report.outcome.value, orjson.dumps(report.to_dict()))
            )
            self._conn.commit()

        except sqlite3.Error as e:
            logger.error(f"Failed to append cycle report: {e}")

    def load_cycles(self, symbol: Optional[str] = None) -> list[dict]:
        """
        Load cycle reports, optionally for one symbol.

        Returns:
            List of report dictionaries in insertion order
        """
        if not self.enabled or not self._conn:
            return []

        if symbol is None:
            cursor = self._conn.execute("SELECT report_data FROM cycles ORDER BY id")
        else:
            cursor = self._conn.execute(
                "SELECT report_data FROM cycles WHERE symbol = ? ORDER BY id", (symbol,)
            )
        return [orjson.loads(raw) for (raw,) in cursor]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
