"""Daily guards applied to every signal before it trades."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field

from signalbot.config import ValidatorConfig
from signalbot.observability.logger import get_logger
from signalbot.storage.database import Database
from signalbot.storage.models import BotRecord

log = get_logger(__name__)


@dataclass
class GuardResult:
    allowed: bool
    violations: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(self.violations)


def start_of_day(now: dt.datetime | None = None) -> dt.datetime:
    now = now or dt.datetime.now(dt.timezone.utc)
    return now.astimezone(dt.timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class SignalValidator:
    """Per-bot daily trade count and realised-loss limits."""

    def __init__(self, db: Database, config: ValidatorConfig | None = None):
        self._db = db
        self._config = config or ValidatorConfig()

    @property
    def min_portfolio_value(self) -> float:
        return self._config.min_portfolio_value

    def check_daily_limits(self, bot: BotRecord, now: dt.datetime | None = None) -> GuardResult:
        since = start_of_day(now).isoformat()
        violations: list[str] = []

        limit = bot.max_daily_trades or self._config.daily_trade_limit
        trades_today = self._db.count_bot_trades_since(bot.id, since)
        if trades_today >= limit:
            violations.append(f"Daily trade limit reached ({trades_today}/{limit})")

        pnl_today = self._db.bot_realized_pnl_since(bot.id, since)
        if pnl_today <= self._config.daily_loss_limit:
            violations.append(
                f"Daily loss limit reached ({pnl_today:.2f} <= {self._config.daily_loss_limit:.2f})"
            )

        if violations:
            log.info("signal_validator.blocked", bot_id=bot.id, violations=violations)
        return GuardResult(allowed=not violations, violations=violations)

    def check_portfolio_value(self, value: float) -> str | None:
        if value < self._config.min_portfolio_value:
            return (
                f"Portfolio value {value:.2f} is below minimum "
                f"{self._config.min_portfolio_value:.2f}"
            )
        return None
