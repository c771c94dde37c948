"""Database migrations: create and upgrade schema."""

from __future__ import annotations

import sqlite3

from signalbot.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS portfolios (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT DEFAULT 'Main',
            initial_balance REAL DEFAULT 0,
            current_balance REAL DEFAULT 0,
            total_value REAL DEFAULT 0,
            total_pnl REAL DEFAULT 0,
            total_pnl_percent REAL DEFAULT 0,
            daily_pnl REAL DEFAULT 0,
            weekly_pnl REAL DEFAULT 0,
            monthly_pnl REAL DEFAULT 0,
            total_trades INTEGER DEFAULT 0,
            active_trades INTEGER DEFAULT 0,
            total_wins INTEGER DEFAULT 0,
            total_losses INTEGER DEFAULT 0,
            win_rate REAL DEFAULT 0,
            avg_win REAL DEFAULT 0,
            avg_loss REAL DEFAULT 0,
            largest_win REAL DEFAULT 0,
            largest_loss REAL DEFAULT 0,
            profit_factor REAL DEFAULT 0,
            last_calculated_at TEXT,
            created_at TEXT,
            updated_at TEXT
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_portfolios_user ON portfolios(user_id);
        """,
        """
        CREATE TABLE IF NOT EXISTS exchanges (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL,
            name TEXT DEFAULT 'BINANCE',
            api_key TEXT NOT NULL,
            api_secret TEXT NOT NULL,
            is_active INTEGER DEFAULT 1,
            spot_value REAL DEFAULT 0,
            margin_value REAL DEFAULT 0,
            total_value REAL DEFAULT 0,
            last_synced_at TEXT,
            created_at TEXT,
            updated_at TEXT,
            FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS bots (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL,
            exchange_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT DEFAULT '',
            is_active INTEGER DEFAULT 1,
            symbols_json TEXT DEFAULT '[]',
            position_percent REAL DEFAULT 20,
            order_type TEXT DEFAULT 'MARKET',
            account_type TEXT DEFAULT 'SPOT',
            margin_type TEXT,
            leverage REAL DEFAULT 1,
            side_effect_type TEXT DEFAULT 'NO_SIDE_EFFECT',
            use_stop_loss INTEGER DEFAULT 0,
            stop_loss REAL,
            use_take_profit INTEGER DEFAULT 0,
            take_profit REAL,
            max_daily_trades INTEGER,
            max_open_positions INTEGER,
            max_position_size REAL,
            webhook_secret TEXT NOT NULL,
            total_trades INTEGER DEFAULT 0,
            win_trades INTEGER DEFAULT 0,
            loss_trades INTEGER DEFAULT 0,
            total_pnl REAL DEFAULT 0,
            total_volume REAL DEFAULT 0,
            best_trade_return REAL DEFAULT 0,
            worst_trade_return REAL DEFAULT 0,
            last_trade_at TEXT,
            created_at TEXT,
            updated_at TEXT,
            FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE,
            FOREIGN KEY (exchange_id) REFERENCES exchanges(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS signals (
            id TEXT PRIMARY KEY,
            bot_id TEXT NOT NULL,
            action TEXT NOT NULL,
            symbol TEXT NOT NULL,
            price REAL,
            message TEXT,
            processed INTEGER DEFAULT 0,
            processed_at TEXT,
            error TEXT,
            position_id TEXT,
            created_at TEXT,
            FOREIGN KEY (bot_id) REFERENCES bots(id) ON DELETE CASCADE
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_signals_bot ON signals(bot_id, created_at);
        """,
        """
        CREATE TABLE IF NOT EXISTS positions (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL,
            bot_id TEXT,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            type TEXT DEFAULT 'MARKET',
            account_type TEXT DEFAULT 'SPOT',
            margin_type TEXT,
            side_effect_type TEXT DEFAULT 'NO_SIDE_EFFECT',
            source TEXT DEFAULT 'MANUAL',
            status TEXT DEFAULT 'PENDING',
            entry_price REAL DEFAULT 0,
            quantity REAL DEFAULT 0,
            entry_value REAL DEFAULT 0,
            exit_price REAL,
            exit_value REAL,
            pnl REAL DEFAULT 0,
            pnl_percent REAL DEFAULT 0,
            stop_loss REAL,
            take_profit REAL,
            stop_loss_order_id TEXT,
            take_profit_order_id TEXT,
            exit_reason TEXT,
            opened_at TEXT,
            closed_at TEXT,
            created_at TEXT,
            updated_at TEXT,
            FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE,
            FOREIGN KEY (bot_id) REFERENCES bots(id) ON DELETE SET NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(portfolio_id, status);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_positions_bot ON positions(bot_id, symbol, side, status);
        """,
        """
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            portfolio_id TEXT NOT NULL,
            position_id TEXT,
            order_id TEXT NOT NULL,
            client_order_id TEXT,
            symbol TEXT NOT NULL,
            type TEXT NOT NULL,
            side TEXT NOT NULL,
            order_type TEXT DEFAULT 'MARKET',
            status TEXT DEFAULT 'NEW',
            price REAL DEFAULT 0,
            stop_price REAL,
            quantity REAL DEFAULT 0,
            value REAL DEFAULT 0,
            executed_qty REAL DEFAULT 0,
            cummulative_quote_qty REAL DEFAULT 0,
            fill_percent REAL DEFAULT 0,
            account_type TEXT DEFAULT 'SPOT',
            side_effect_type TEXT DEFAULT 'NO_SIDE_EFFECT',
            transact_time TEXT,
            created_at TEXT,
            updated_at TEXT,
            FOREIGN KEY (position_id) REFERENCES positions(id) ON DELETE CASCADE
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_orders_position ON orders(position_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_orders_exchange_id ON orders(order_id);
        """,
    ],
    2: [
        # Warnings surfaced when a triggered close could not be completed
        """
        ALTER TABLE positions ADD COLUMN warning_message TEXT;
        """,
        # Portfolio value history for charts
        """
        CREATE TABLE IF NOT EXISTS balance_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            portfolio_id TEXT NOT NULL,
            total_value REAL DEFAULT 0,
            total_pnl REAL DEFAULT 0,
            timestamp TEXT NOT NULL,
            FOREIGN KEY (portfolio_id) REFERENCES portfolios(id) ON DELETE CASCADE
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_snapshots_portfolio ON balance_snapshots(portfolio_id, timestamp);
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)

    log.info("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
