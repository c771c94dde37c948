"""Database: SQLite persistence layer.

Manages connections, runs migrations, and provides CRUD operations for
portfolios, exchanges, bots, signals, positions and orders.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Iterable

from signalbot.config import StorageConfig
from signalbot.storage.migrations import run_migrations
from signalbot.storage.models import (
    BalanceSnapshotRecord,
    BotRecord,
    ExchangeRecord,
    OrderRecord,
    PortfolioRecord,
    PositionRecord,
    SignalRecord,
    utc_now_iso,
)
from signalbot.observability.logger import get_logger

log = get_logger(__name__)

_BOOL_COLUMNS = frozenset({
    "is_active", "use_stop_loss", "use_take_profit", "processed",
})


def _to_db(key: str, value: Any) -> Any:
    if key in _BOOL_COLUMNS and value is not None:
        return int(bool(value))
    return value


class Database:
    """SQLite database for the signal bot service."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        db_path = Path(self._config.sqlite_path)
        if self._config.sqlite_path != ":memory:":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=str(db_path))

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    # ── Helpers ──────────────────────────────────────────────────────

    def _insert(self, table: str, data: dict[str, Any]) -> None:
        cols = list(data.keys())
        placeholders = ", ".join("?" for _ in cols)
        self.conn.execute(
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})",
            tuple(_to_db(c, data[c]) for c in cols),
        )
        self.conn.commit()

    def _update(
        self,
        table: str,
        row_id: str,
        fields: dict[str, Any],
        allowed: Iterable[str],
        touch: bool = True,
    ) -> None:
        allowed = set(allowed)
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} fields: {sorted(unknown)}")
        if not fields:
            return
        data = dict(fields)
        if touch and "updated_at" in allowed:
            data.setdefault("updated_at", utc_now_iso())
        assignments = ", ".join(f"{k} = ?" for k in data)
        self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*(_to_db(k, v) for k, v in data.items()), row_id),
        )
        self.conn.commit()

    # ── Portfolios ───────────────────────────────────────────────────

    def create_portfolio(self, portfolio: PortfolioRecord) -> str:
        pid = portfolio.id or str(uuid.uuid4())
        data = portfolio.model_dump()
        data["id"] = pid
        if not data["current_balance"]:
            data["current_balance"] = data["initial_balance"]
        self._insert("portfolios", data)
        return pid

    def get_portfolio(self, portfolio_id: str) -> PortfolioRecord | None:
        row = self.conn.execute(
            "SELECT * FROM portfolios WHERE id = ?", (portfolio_id,)
        ).fetchone()
        return PortfolioRecord(**dict(row)) if row else None

    def get_portfolio_by_user(self, user_id: str) -> PortfolioRecord | None:
        row = self.conn.execute(
            "SELECT * FROM portfolios WHERE user_id = ? ORDER BY created_at LIMIT 1",
            (user_id,),
        ).fetchone()
        return PortfolioRecord(**dict(row)) if row else None

    def list_portfolios(self) -> list[PortfolioRecord]:
        rows = self.conn.execute(
            "SELECT * FROM portfolios ORDER BY created_at"
        ).fetchall()
        return [PortfolioRecord(**dict(r)) for r in rows]

    def update_portfolio(self, portfolio_id: str, **fields: Any) -> None:
        allowed = set(PortfolioRecord.model_fields) - {"id", "user_id", "created_at"}
        self._update("portfolios", portfolio_id, fields, allowed)

    def insert_balance_snapshot(self, snapshot: BalanceSnapshotRecord) -> None:
        self.conn.execute(
            """
            INSERT INTO balance_snapshots (portfolio_id, total_value, total_pnl, timestamp)
            VALUES (?, ?, ?, ?)
            """,
            (snapshot.portfolio_id, snapshot.total_value, snapshot.total_pnl, snapshot.timestamp),
        )
        self.conn.commit()

    def get_balance_snapshots(
        self, portfolio_id: str, start: str, end: str
    ) -> list[BalanceSnapshotRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM balance_snapshots
            WHERE portfolio_id = ? AND timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp ASC
            """,
            (portfolio_id, start, end),
        ).fetchall()
        return [BalanceSnapshotRecord(**dict(r)) for r in rows]

    # ── Exchanges ────────────────────────────────────────────────────

    def create_exchange(self, exchange: ExchangeRecord) -> str:
        eid = exchange.id or str(uuid.uuid4())
        data = exchange.model_dump()
        data["id"] = eid
        self._insert("exchanges", data)
        return eid

    def get_exchange(self, exchange_id: str) -> ExchangeRecord | None:
        row = self.conn.execute(
            "SELECT * FROM exchanges WHERE id = ?", (exchange_id,)
        ).fetchone()
        return ExchangeRecord(**dict(row)) if row else None

    def get_active_exchange(self, portfolio_id: str, name: str = "BINANCE") -> ExchangeRecord | None:
        row = self.conn.execute(
            """
            SELECT * FROM exchanges
            WHERE portfolio_id = ? AND name = ? AND is_active = 1
            ORDER BY created_at LIMIT 1
            """,
            (portfolio_id, name),
        ).fetchone()
        return ExchangeRecord(**dict(row)) if row else None

    def update_exchange(self, exchange_id: str, **fields: Any) -> None:
        allowed = set(ExchangeRecord.model_fields) - {"id", "portfolio_id", "created_at"}
        self._update("exchanges", exchange_id, fields, allowed)

    # ── Bots ─────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_bot(row: sqlite3.Row) -> BotRecord:
        data = dict(row)
        data["symbols"] = json.loads(data.pop("symbols_json") or "[]")
        return BotRecord(**data)

    def create_bot(self, bot: BotRecord) -> str:
        bid = bot.id or str(uuid.uuid4())
        data = bot.model_dump()
        data["id"] = bid
        data["symbols_json"] = json.dumps(data.pop("symbols"))
        self._insert("bots", data)
        return bid

    def get_bot(self, bot_id: str) -> BotRecord | None:
        row = self.conn.execute(
            "SELECT * FROM bots WHERE id = ?", (bot_id,)
        ).fetchone()
        return self._row_to_bot(row) if row else None

    def list_bots(
        self, portfolio_id: str | None = None, is_active: bool | None = None
    ) -> list[BotRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if portfolio_id:
            clauses.append("portfolio_id = ?")
            params.append(portfolio_id)
        if is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(is_active))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM bots {where} ORDER BY created_at DESC", params
        ).fetchall()
        return [self._row_to_bot(r) for r in rows]

    def update_bot(self, bot_id: str, **fields: Any) -> None:
        if "symbols" in fields:
            fields["symbols_json"] = json.dumps(fields.pop("symbols"))
        allowed = (set(BotRecord.model_fields) | {"symbols_json"}) - {
            "id", "portfolio_id", "created_at", "symbols",
        }
        self._update("bots", bot_id, fields, allowed)

    def delete_bot(self, bot_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM bots WHERE id = ?", (bot_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def record_bot_entry(self, bot_id: str, volume: float) -> None:
        now = utc_now_iso()
        self.conn.execute(
            """
            UPDATE bots
            SET total_trades = total_trades + 1,
                total_volume = total_volume + ?,
                last_trade_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (volume, now, now, bot_id),
        )
        self.conn.commit()

    def record_bot_exit(self, bot_id: str, pnl: float, pnl_percent: float) -> None:
        """Fold a closed trade's result into the bot's counters."""
        now = utc_now_iso()
        self.conn.execute(
            """
            UPDATE bots
            SET total_pnl = total_pnl + ?,
                win_trades = win_trades + ?,
                loss_trades = loss_trades + ?,
                best_trade_return = MAX(best_trade_return, ?),
                worst_trade_return = MIN(worst_trade_return, ?),
                last_trade_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                pnl,
                1 if pnl > 0 else 0,
                1 if pnl < 0 else 0,
                pnl_percent, pnl_percent, now, now, bot_id,
            ),
        )
        self.conn.commit()

    # ── Signals ──────────────────────────────────────────────────────

    def insert_signal(self, signal: SignalRecord) -> str:
        sid = signal.id or str(uuid.uuid4())
        data = signal.model_dump()
        data["id"] = sid
        self._insert("signals", data)
        return sid

    def get_signal(self, signal_id: str) -> SignalRecord | None:
        row = self.conn.execute(
            "SELECT * FROM signals WHERE id = ?", (signal_id,)
        ).fetchone()
        return SignalRecord(**dict(row)) if row else None

    def list_signals(
        self,
        bot_id: str | None = None,
        processed: bool | None = None,
        limit: int = 100,
    ) -> list[SignalRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if bot_id:
            clauses.append("bot_id = ?")
            params.append(bot_id)
        if processed is not None:
            clauses.append("processed = ?")
            params.append(int(processed))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM signals {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [SignalRecord(**dict(r)) for r in rows]

    def count_signals(self, bot_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM signals WHERE bot_id = ?", (bot_id,)
        ).fetchone()
        return int(row[0])

    def mark_signal_processed(
        self,
        signal_id: str,
        error: str | None = None,
        position_id: str | None = None,
    ) -> None:
        self.conn.execute(
            """
            UPDATE signals
            SET processed = 1, processed_at = ?, error = ?,
                position_id = COALESCE(?, position_id)
            WHERE id = ?
            """,
            (utc_now_iso(), error, position_id, signal_id),
        )
        self.conn.commit()

    def update_signal(self, signal_id: str, **fields: Any) -> None:
        self._update(
            "signals", signal_id, fields,
            {"action", "symbol", "price", "message", "processed"},
            touch=False,
        )

    def delete_signal(self, signal_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM signals WHERE id = ?", (signal_id,))
        self.conn.commit()
        return cur.rowcount > 0

    # ── Positions ────────────────────────────────────────────────────

    def insert_position(self, position: PositionRecord) -> str:
        pid = position.id or str(uuid.uuid4())
        data = position.model_dump()
        data["id"] = pid
        self._insert("positions", data)
        return pid

    def get_position(self, position_id: str) -> PositionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM positions WHERE id = ?", (position_id,)
        ).fetchone()
        return PositionRecord(**dict(row)) if row else None

    def update_position(self, position_id: str, **fields: Any) -> None:
        allowed = set(PositionRecord.model_fields) - {"id", "portfolio_id", "created_at"}
        self._update("positions", position_id, fields, allowed)

    def delete_position(self, position_id: str) -> None:
        self.conn.execute("DELETE FROM positions WHERE id = ?", (position_id,))
        self.conn.commit()

    def list_positions(
        self,
        portfolio_id: str,
        statuses: Iterable[str] | None = None,
    ) -> list[PositionRecord]:
        params: list[Any] = [portfolio_id]
        sql = "SELECT * FROM positions WHERE portfolio_id = ?"
        if statuses:
            statuses = list(statuses)
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        rows = self.conn.execute(sql + " ORDER BY opened_at DESC", params).fetchall()
        return [PositionRecord(**dict(r)) for r in rows]

    def list_bot_positions(self, bot_id: str) -> list[PositionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM positions WHERE bot_id = ? ORDER BY opened_at DESC",
            (bot_id,),
        ).fetchall()
        return [PositionRecord(**dict(r)) for r in rows]

    def find_open_position(
        self, bot_id: str, symbol: str, side: str
    ) -> PositionRecord | None:
        row = self.conn.execute(
            """
            SELECT * FROM positions
            WHERE bot_id = ? AND symbol = ? AND side = ? AND status = 'OPEN'
            ORDER BY opened_at DESC LIMIT 1
            """,
            (bot_id, symbol, side),
        ).fetchone()
        return PositionRecord(**dict(row)) if row else None

    def find_position_by_protective_order(self, order_id: str) -> PositionRecord | None:
        row = self.conn.execute(
            """
            SELECT * FROM positions
            WHERE status = 'OPEN'
              AND (stop_loss_order_id = ? OR take_profit_order_id = ?)
            LIMIT 1
            """,
            (order_id, order_id),
        ).fetchone()
        return PositionRecord(**dict(row)) if row else None

    def count_open_positions(self, bot_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM positions WHERE bot_id = ? AND status = 'OPEN'",
            (bot_id,),
        ).fetchone()
        return int(row[0])

    def count_bot_positions(self, bot_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM positions WHERE bot_id = ?", (bot_id,)
        ).fetchone()
        return int(row[0])

    def count_bot_trades_since(self, bot_id: str, since: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM positions WHERE bot_id = ? AND opened_at >= ?",
            (bot_id, since),
        ).fetchone()
        return int(row[0])

    def bot_realized_pnl_since(self, bot_id: str, since: str) -> float:
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(pnl), 0) FROM positions
            WHERE bot_id = ? AND status = 'CLOSED' AND closed_at >= ?
            """,
            (bot_id, since),
        ).fetchone()
        return float(row[0])

    def protected_positions(self) -> list[PositionRecord]:
        """OPEN positions carrying exchange-side SL or TP orders."""
        rows = self.conn.execute(
            """
            SELECT * FROM positions
            WHERE status = 'OPEN'
              AND (stop_loss_order_id IS NOT NULL OR take_profit_order_id IS NOT NULL)
            """
        ).fetchall()
        return [PositionRecord(**dict(r)) for r in rows]

    def monitorable_positions(self) -> list[PositionRecord]:
        """OPEN positions with SL or TP price levels."""
        rows = self.conn.execute(
            """
            SELECT * FROM positions
            WHERE status = 'OPEN'
              AND (stop_loss IS NOT NULL OR take_profit IS NOT NULL)
            """
        ).fetchall()
        return [PositionRecord(**dict(r)) for r in rows]

    # ── Orders ───────────────────────────────────────────────────────

    def insert_order(self, order: OrderRecord) -> str:
        oid = order.id or str(uuid.uuid4())
        data = order.model_dump()
        data["id"] = oid
        self._insert("orders", data)
        return oid

    def get_orders_for_position(self, position_id: str) -> list[OrderRecord]:
        rows = self.conn.execute(
            "SELECT * FROM orders WHERE position_id = ? ORDER BY created_at",
            (position_id,),
        ).fetchall()
        return [OrderRecord(**dict(r)) for r in rows]

    def list_orders(
        self,
        portfolio_id: str,
        symbol: str | None = None,
        limit: int = 100,
    ) -> list[OrderRecord]:
        """Newest orders of a portfolio, optionally for one symbol."""
        sql = "SELECT * FROM orders WHERE portfolio_id = ?"
        params: list[Any] = [portfolio_id]
        if symbol:
            sql += " AND symbol = ?"
            params.append(symbol.upper())
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [OrderRecord(**dict(r)) for r in self.conn.execute(sql, params).fetchall()]

    def set_order_status(self, position_id: str, order_id: str, status: str) -> None:
        """Update an order row identified by its exchange order id."""
        self.conn.execute(
            "UPDATE orders SET status = ?, updated_at = ? WHERE position_id = ? AND order_id = ?",
            (status, utc_now_iso(), position_id, order_id),
        )
        self.conn.commit()
