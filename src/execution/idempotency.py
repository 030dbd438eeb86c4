"""
Idempotency store: caller token -> recorded order result (SQLite).

A token is marked exactly once. ``reserve`` claims a token as pending before
the broker is called, and ``record`` fills the pending claim in with the
result. Both are atomic inserts, so two processes racing on the same token
cannot both send; the loser reads back the winner's row. A pending row reads
back as a ``PENDING`` result.
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from execution.models import OrderResult

PENDING = "PENDING"


class IdempotencyStore:
    """Restart-safe token ledger. One file per path."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path), timeout=10.0)

    def _init_schema(self) -> None:
        with self._conn() as c:
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency (
                    key TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    result_json TEXT NOT NULL,
                    pending INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )

    def lookup(self, key: str) -> OrderResult | None:
        with self._conn() as c:
            row = c.execute("SELECT result_json FROM idempotency WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return OrderResult.from_dict(json.loads(row[0]), replayed=True)

    def reserve(self, key: str, operation: str, *, paper: bool) -> bool:
        """Claim *key* as pending. Returns False if the key is already claimed or marked."""
        placeholder = OrderResult(order_id=PENDING, status=PENDING, paper=paper)
        ts = datetime.now(timezone.utc).isoformat()
        with self._conn() as c:
            cur = c.execute(
                """INSERT OR IGNORE INTO idempotency (key, order_id, operation, result_json, pending, created_at)
                   VALUES (?, ?, ?, ?, 1, ?)""",
                (key, PENDING, operation, json.dumps(placeholder.to_dict()), ts),
            )
            return cur.rowcount == 1

    def release(self, key: str) -> None:
        """Drop a pending claim whose placement failed. Marked keys are untouched."""
        with self._conn() as c:
            c.execute("DELETE FROM idempotency WHERE key = ? AND pending = 1", (key,))

    def record(self, key: str, operation: str, result: OrderResult) -> bool:
        """Mark *key* with *result*. Returns False if the key was already marked."""
        ts = datetime.now(timezone.utc).isoformat()
        with self._conn() as c:
            cur = c.execute(
                """INSERT INTO idempotency (key, order_id, operation, result_json, pending, created_at)
                   VALUES (?, ?, ?, ?, 0, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       order_id = excluded.order_id,
                       result_json = excluded.result_json,
                       pending = 0
                   WHERE idempotency.pending = 1""",
                (key, result.order_id, operation, json.dumps(result.to_dict(), default=str), ts),
            )
            return cur.rowcount == 1

    def seen(self, key: str) -> bool:
        with self._conn() as c:
            return c.execute("SELECT 1 FROM idempotency WHERE key = ?", (key,)).fetchone() is not None

    def count(self) -> int:
        with self._conn() as c:
            return int(c.execute("SELECT COUNT(*) FROM idempotency").fetchone()[0])
