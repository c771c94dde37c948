"""Portfolio and bot performance statistics.

Computes from stored positions:
  - Win rate, profit factor, average / largest win and loss
  - Daily, weekly and monthly realised P&L windows
  - Current balance (initial balance + total P&L)
  - Per-bot closed-trade metrics and cross-bot aggregates
  - Balance history for charts
"""

from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass
from typing import Any, Iterable

from signalbot.observability.logger import get_logger
from signalbot.storage.database import Database
from signalbot.storage.models import BalanceSnapshotRecord, BotRecord, PositionRecord

log = get_logger(__name__)


@dataclass
class PortfolioStats:
    total_trades: int = 0
    active_trades: int = 0
    total_wins: int = 0
    total_losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    total_value: float = 0.0
    total_pnl_percent: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    profit_factor: float = 0.0
    daily_pnl: float = 0.0
    weekly_pnl: float = 0.0
    monthly_pnl: float = 0.0
    current_balance: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class BotStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0   # negative
    profit_factor: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTrades": self.total_trades,
            "winningTrades": self.winning_trades,
            "losingTrades": self.losing_trades,
            "winRate": round(self.win_rate, 2),
            "totalPnl": round(self.total_pnl, 8),
            "averageWin": round(self.average_win, 8),
            "averageLoss": round(self.average_loss, 8),
            "profitFactor": round(self.profit_factor, 4),
        }


def _parse_ts(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _minus_one_month(day: dt.datetime) -> dt.datetime:
    year, month = (day.year, day.month - 1) if day.month > 1 else (day.year - 1, 12)
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def pnl_windows(now: dt.datetime) -> tuple[dt.datetime, dt.datetime, dt.datetime]:
    """Start of today (UTC), seven days before it, and one month before it."""
    today = now.astimezone(dt.timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0,
    )
    return today, today - dt.timedelta(days=7), _minus_one_month(today)


def compute_portfolio_stats(
    positions: Iterable[PositionRecord],
    initial_balance: float,
    now: dt.datetime,
) -> PortfolioStats:
    considered = [p for p in positions if p.status in ("OPEN", "CLOSED")]
    closed = [p for p in considered if p.status == "CLOSED"]
    open_positions = [p for p in considered if p.status == "OPEN"]

    wins = [p.pnl for p in closed if p.pnl > 0]
    losses = [p.pnl for p in closed if p.pnl < 0]
    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))

    stats = PortfolioStats()
    stats.total_trades = len(considered)
    stats.active_trades = len(open_positions)
    stats.total_wins = len(wins)
    stats.total_losses = len(losses)
    stats.win_rate = len(wins) / len(closed) * 100 if closed else 0.0
    stats.total_pnl = sum(p.pnl for p in considered)
    stats.total_value = sum(p.entry_value for p in open_positions)
    stats.total_pnl_percent = (
        stats.total_pnl / stats.total_value * 100 if stats.total_value > 0 else 0.0
    )
    stats.avg_win = gross_profit / len(wins) if wins else 0.0
    stats.avg_loss = gross_loss / len(losses) if losses else 0.0
    stats.largest_win = max(wins) if wins else 0.0
    stats.largest_loss = abs(min(losses)) if losses else 0.0
    stats.profit_factor = gross_profit / gross_loss if gross_loss > 0 else 0.0

    today, week_start, month_start = pnl_windows(now)
    for p in considered:
        updated = _parse_ts(p.updated_at)
        if updated is None:
            continue
        if updated >= today:
            stats.daily_pnl += p.pnl
        if updated >= week_start:
            stats.weekly_pnl += p.pnl
        if updated >= month_start:
            stats.monthly_pnl += p.pnl

    stats.current_balance = initial_balance + stats.total_pnl
    return stats


def recalculate_portfolio_stats(
    db: Database,
    portfolio_id: str,
    now: dt.datetime | None = None,
) -> PortfolioStats:
    """Recompute and persist a portfolio's statistics, then snapshot it."""
    portfolio = db.get_portfolio(portfolio_id)
    if portfolio is None:
        raise ValueError(f"Portfolio {portfolio_id} not found")
    now = now or dt.datetime.now(dt.timezone.utc)

    positions = db.list_positions(portfolio_id, statuses=("OPEN", "CLOSED"))
    stats = compute_portfolio_stats(positions, portfolio.initial_balance, now)

    db.update_portfolio(
        portfolio_id,
        last_calculated_at=now.isoformat(),
        **stats.to_dict(),
    )
    db.insert_balance_snapshot(BalanceSnapshotRecord(
        portfolio_id=portfolio_id,
        total_value=stats.current_balance,
        total_pnl=stats.total_pnl,
        timestamp=now.isoformat(),
    ))
    log.info(
        "portfolio_stats.recalculated",
        portfolio_id=portfolio_id,
        total_trades=stats.total_trades,
        win_rate=round(stats.win_rate, 2),
        total_pnl=round(stats.total_pnl, 2),
    )
    return stats


def safe_recalculate(db: Database, portfolio_id: str) -> None:
    """Recalculate stats; a failure is logged and swallowed."""
    try:
        recalculate_portfolio_stats(db, portfolio_id)
    except Exception as e:
        log.warning("portfolio_stats.recalculate_failed", portfolio_id=portfolio_id, error=str(e))


def calculate_bot_stats(positions: Iterable[PositionRecord]) -> BotStats:
    """Closed-trade metrics for one bot. Break-even trades count as losses."""
    closed = [p for p in positions if p.status == "CLOSED" and p.exit_price is not None]
    if not closed:
        return BotStats()

    stats = BotStats(total_trades=len(closed))
    gross_profit = 0.0
    gross_loss = 0.0
    for p in closed:
        stats.total_pnl += p.pnl
        if p.pnl > 0:
            stats.winning_trades += 1
            gross_profit += p.pnl
        else:
            stats.losing_trades += 1
            gross_loss += abs(p.pnl)

    stats.win_rate = stats.winning_trades / stats.total_trades * 100
    if stats.winning_trades:
        stats.average_win = gross_profit / stats.winning_trades
    if stats.losing_trades:
        stats.average_loss = -(gross_loss / stats.losing_trades)
    if gross_loss > 0:
        stats.profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        stats.profit_factor = 999.0
    return stats


def aggregate_bot_stats(bots: Iterable[BotRecord]) -> dict[str, Any]:
    bots = list(bots)
    total_trades = sum(b.total_trades for b in bots)
    win_trades = sum(b.win_trades for b in bots)
    return {
        "totalBots": len(bots),
        "activeBots": sum(1 for b in bots if b.is_active),
        "totalTrades": total_trades,
        "winTrades": win_trades,
        "lossTrades": sum(b.loss_trades for b in bots),
        "totalPnl": sum(b.total_pnl for b in bots),
        "totalVolume": sum(b.total_volume for b in bots),
        "winRate": win_trades / total_trades * 100 if total_trades else 0.0,
    }


def portfolio_history(
    db: Database,
    portfolio_id: str,
    start: dt.datetime,
    end: dt.datetime,
) -> list[dict[str, Any]]:
    """Chart points between two instants.

    With no snapshots, the current state is returned as a single point,
    preceded by the initial balance if the portfolio was created in range.
    """
    portfolio = db.get_portfolio(portfolio_id)
    if portfolio is None:
        raise ValueError(f"Portfolio {portfolio_id} not found")

    snapshots = db.get_balance_snapshots(portfolio_id, start.isoformat(), end.isoformat())
    if snapshots:
        points = []
        previous = portfolio.initial_balance
        for snap in snapshots:
            change = (snap.total_value - previous) / previous * 100 if previous else 0.0
            points.append({
                "date": snap.timestamp,
                "value": snap.total_value,
                "pnl": snap.total_pnl,
                "pnlPercent": change,
            })
            previous = snap.total_value
        return points

    points = []
    created = _parse_ts(portfolio.created_at)
    if created is not None and start <= created <= end:
        points.append({
            "date": portfolio.created_at,
            "value": portfolio.initial_balance,
            "pnl": 0.0,
            "pnlPercent": 0.0,
        })
    points.append({
        "date": end.isoformat(),
        "value": portfolio.current_balance,
        "pnl": portfolio.total_pnl,
        "pnlPercent": portfolio.total_pnl_percent,
    })
    return points
