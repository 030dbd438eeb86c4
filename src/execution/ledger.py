"""
Position ledger: one active exposure per (segment, security_id), weighted-average
entry across repeated fills, restart-safe (SQLite).

Every read-modify-write runs under a per-key in-process lock *and* a
``BEGIN IMMEDIATE`` transaction, so two fills for the same key serialize even
across processes. A partial unique index backs the one-active-row rule.
Closing happens exactly once per position, either through ``close`` or when
``apply_fill`` books a fill that exactly offsets the active quantity.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from market_data.segments import segment_key

from execution.locks import KeyedLocks
from execution.models import Position, PositionStatus

logger = logging.getLogger("tradeloop.ledger")

_COLUMNS = (
    "id, segment, security_id, symbol, side, quantity, entry_price, avg_price, order_no, status, "
    "paper, meta, created_at, updated_at, exit_price, exited_at, realized_pnl, realized_pnl_pct"
)


class LedgerError(Exception):
    """A fill or close that would break a ledger invariant."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _dec(value: Any) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value.replace("Z", "+00:00")) if value else None


def _row_to_position(row: tuple) -> Position:
    return Position(
        id=row[0],
        segment=row[1],
        security_id=row[2],
        symbol=row[3],
        side=row[4],
        quantity=int(row[5]),
        entry_price=Decimal(row[6]),
        avg_price=Decimal(row[7]),
        order_no=row[8],
        status=PositionStatus(row[9]),
        paper=bool(row[10]),
        meta=json.loads(row[11]) if row[11] else {},
        created_at=_ts(row[12]),
        updated_at=_ts(row[13]),
        exit_price=_dec(row[14]),
        exited_at=_ts(row[15]),
        realized_pnl=_dec(row[16]),
        realized_pnl_pct=_dec(row[17]),
    )


class PositionLedger:
    """Tracks positions and their fills in SQLite."""

    def __init__(self, path: str | Path, *, paper: bool = True) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._paper = paper
        self._locks = KeyedLocks()
        self._init_schema()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=10.0, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._immediate() as c:
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    segment TEXT NOT NULL,
                    security_id TEXT NOT NULL,
                    symbol TEXT,
                    side TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    entry_price TEXT NOT NULL,
                    avg_price TEXT NOT NULL,
                    order_no TEXT NOT NULL,
                    status TEXT NOT NULL,
                    paper INTEGER NOT NULL DEFAULT 1,
                    meta TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    exit_price TEXT,
                    exited_at TEXT,
                    realized_pnl TEXT,
                    realized_pnl_pct TEXT
                )
                """
            )
            c.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS ux_positions_one_active
                ON positions (segment, security_id) WHERE status = 'active'
                """
            )
            c.execute(
                """
                CREATE TABLE IF NOT EXISTS fills (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    position_id INTEGER NOT NULL REFERENCES positions(id),
                    order_no TEXT NOT NULL,
                    side TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    price TEXT NOT NULL,
                    ts_utc TEXT NOT NULL
                )
                """
            )

    @staticmethod
    def _active_row(c: sqlite3.Connection, segment: str, security_id: str) -> tuple | None:
        return c.execute(
            f"SELECT {_COLUMNS} FROM positions WHERE segment = ? AND security_id = ? AND status = 'active'",
            (segment, security_id),
        ).fetchone()

    @staticmethod
    def _by_id(c: sqlite3.Connection, position_id: int) -> Position:
        row = c.execute(f"SELECT {_COLUMNS} FROM positions WHERE id = ?", (position_id,)).fetchone()
        return _row_to_position(row)

    @staticmethod
    def _checked_fill(quantity: int, price: Decimal | float | str) -> tuple[int, Decimal]:
        fill_qty = int(quantity)
        fill_price = Decimal(str(price))
        if fill_qty == 0:
            raise LedgerError("fill quantity must be non-zero")
        if fill_price <= 0:
            raise LedgerError(f"fill price must be positive, got {fill_price}")
        return fill_qty, fill_price

    @staticmethod
    def _insert_fill(
        c: sqlite3.Connection, position_id: int, order_no: str, side: str, qty: int, price: Decimal, ts: str
    ) -> None:
        c.execute(
            "INSERT INTO fills (position_id, order_no, side, quantity, price, ts_utc) VALUES (?, ?, ?, ?, ?, ?)",
            (position_id, str(order_no), str(side).upper(), qty, str(price), ts),
        )

    def _fill(
        self,
        c: sqlite3.Connection,
        seg: str,
        sid: str,
        side: str,
        fill_qty: int,
        fill_price: Decimal,
        order_no: str,
        symbol: str | None,
        meta: dict[str, Any] | None,
        ts: str,
    ) -> int:
        row = self._active_row(c, seg, sid)
        if row is not None:
            active = _row_to_position(row)
            old_qty = active.quantity
            new_qty = old_qty + fill_qty
            if new_qty == 0:
                raise LedgerError(f"fill would flatten {seg}:{sid}; close it through the exit path")
            new_avg = (active.entry_price * old_qty + fill_price * fill_qty) / new_qty
            merged_meta = {**active.meta, **(meta or {})}
            c.execute(
                """UPDATE positions SET quantity = ?, entry_price = ?, avg_price = ?, meta = ?, updated_at = ?
                   WHERE id = ?""",
                (new_qty, str(new_avg), str(new_avg), json.dumps(merged_meta, default=str), ts, active.id),
            )
            position_id = active.id
            logger.info("Averaging %s:%s position=%s qty %d -> %d avg %s", seg, sid, active.id, old_qty, new_qty, new_avg)
        else:
            cur = c.execute(
                """INSERT INTO positions (segment, security_id, symbol, side, quantity, entry_price, avg_price,
                                          order_no, status, paper, meta, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?)""",
                (
                    seg,
                    sid,
                    symbol,
                    str(side).upper(),
                    fill_qty,
                    str(fill_price),
                    str(fill_price),
                    str(order_no),
                    1 if self._paper else 0,
                    json.dumps(meta or {}, default=str),
                    ts,
                    ts,
                ),
            )
            position_id = cur.lastrowid
            logger.info("Opened position %s for %s:%s qty %d @ %s", position_id, seg, sid, fill_qty, fill_price)
        self._insert_fill(c, position_id, order_no, side, fill_qty, fill_price, ts)
        return position_id

    def _close(self, c: sqlite3.Connection, seg: str, sid: str, price: Decimal, when: str) -> Position | None:
        row = self._active_row(c, seg, sid)
        if row is None:
            return None
        active = _row_to_position(row)
        # quantity is signed: shorts carry negative quantity.
        pnl = (price - active.entry_price) * active.quantity
        cost = active.entry_price * abs(active.quantity)
        pnl_pct = (pnl / cost * 100) if cost else Decimal(0)
        c.execute(
            """UPDATE positions SET status = 'closed', exit_price = ?, exited_at = ?, realized_pnl = ?,
                      realized_pnl_pct = ?, updated_at = ?
               WHERE id = ? AND status = 'active'""",
            (str(price), when, str(pnl), str(pnl_pct), when, active.id),
        )
        logger.info("Closed position %s %s:%s @ %s pnl %s", active.id, seg, sid, price, pnl)
        return self._by_id(c, active.id)

    def record_fill(
        self,
        segment: str,
        security_id: str | int,
        side: str,
        quantity: int,
        price: Decimal | float | str,
        order_no: str,
        symbol: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Position:
        """Average into the active position for the key, or open one. Never closes."""
        seg = segment_key(segment)
        sid = str(security_id)
        fill_qty, fill_price = self._checked_fill(quantity, price)
        with self._locks.hold((seg, sid)), self._immediate() as c:
            position_id = self._fill(c, seg, sid, side, fill_qty, fill_price, order_no, symbol, meta, _utc_now().isoformat())
            return self._by_id(c, position_id)

    def apply_fill(
        self,
        segment: str,
        security_id: str | int,
        side: str,
        quantity: int,
        price: Decimal | float | str,
        order_no: str,
        symbol: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> Position:
        """
        Book an order fill. A fill that exactly offsets the active position
        closes it at the fill price; anything else averages in or opens.

        The offset check and the write happen in one transaction under the key
        lock. The returned position's status says which way it went.
        """
        seg = segment_key(segment)
        sid = str(security_id)
        fill_qty, fill_price = self._checked_fill(quantity, price)
        with self._locks.hold((seg, sid)), self._immediate() as c:
            ts = _utc_now().isoformat()
            row = self._active_row(c, seg, sid)
            if row is not None and _row_to_position(row).quantity + fill_qty == 0:
                self._insert_fill(c, row[0], order_no, side, fill_qty, fill_price, ts)
                return self._close(c, seg, sid, fill_price, ts)
            position_id = self._fill(c, seg, sid, side, fill_qty, fill_price, order_no, symbol, meta, ts)
            return self._by_id(c, position_id)

    def close(
        self,
        segment: str,
        security_id: str | int,
        exit_price: Decimal | float | str,
        exited_at: datetime | None = None,
    ) -> Position | None:
        """Close the active position for the key. Returns None when nothing is active."""
        seg = segment_key(segment)
        sid = str(security_id)
        price = Decimal(str(exit_price))
        if price <= 0:
            raise LedgerError(f"exit price must be positive, got {price}")
        when = _utc(exited_at or _utc_now()).isoformat()
        with self._locks.hold((seg, sid)), self._immediate() as c:
            return self._close(c, seg, sid, price, when)

    def has_order(self, order_no: str) -> bool:
        """True when a fill for *order_no* is already booked."""
        conn = self._conn()
        try:
            return conn.execute("SELECT 1 FROM fills WHERE order_no = ? LIMIT 1", (str(order_no),)).fetchone() is not None
        finally:
            conn.close()

    def get_active(self, segment: str, security_id: str | int) -> Position | None:
        conn = self._conn()
        try:
            row = self._active_row(conn, segment_key(segment), str(security_id))
        finally:
            conn.close()
        return _row_to_position(row) if row else None

    def list_positions(self, *, status: PositionStatus | None = None, limit: int = 100) -> list[Position]:
        conn = self._conn()
        try:
            if status is None:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM positions ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM positions WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (status.value, limit),
                ).fetchall()
        finally:
            conn.close()
        return [_row_to_position(r) for r in rows]

    def list_active(self) -> list[Position]:
        return self.list_positions(status=PositionStatus.ACTIVE, limit=10_000)

    def count_active(self) -> int:
        conn = self._conn()
        try:
            return int(conn.execute("SELECT COUNT(*) FROM positions WHERE status = 'active'").fetchone()[0])
        finally:
            conn.close()

    def fill_count(self, segment: str, security_id: str | int) -> int:
        conn = self._conn()
        try:
            row = conn.execute(
                """SELECT COUNT(*) FROM fills f JOIN positions p ON p.id = f.position_id
                   WHERE p.segment = ? AND p.security_id = ?""",
                (segment_key(segment), str(security_id)),
            ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    def realized_pnl_for(self, day: date) -> Decimal:
        """Sum of realized PnL for positions closed on *day* (UTC)."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc).isoformat()
        end = datetime.combine(day, time.max, tzinfo=timezone.utc).isoformat()
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT realized_pnl FROM positions WHERE status = 'closed' AND exited_at >= ? AND exited_at <= ?",
                (start, end),
            ).fetchall()
        finally:
            conn.close()
        return sum((Decimal(r[0]) for r in rows if r[0] is not None), Decimal(0))
