"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - Hot-reload via file watcher
  - Subsystem configs: binance, webhook, trading, execution, streams,
    monitor, validator, storage, observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import BaseModel, Field, ValidationError


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class BinanceConfig(BaseModel):
    base_url: str = "https://api.binance.com"
    ws_base_url: str = "wss://stream.binance.com:9443/ws"
    recv_window: int = 5000
    timeout_secs: float = 15.0


class WebhookConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    public_base_url: str = "http://localhost:8080"
    min_secret_length: int = 8


class TradingConfig(BaseModel):
    default_position_percent: float = 20.0
    default_order_type: str = "MARKET"
    close_all_delay_ms: int = 100
    # Quote suffixes stripped from a symbol to find the fee-bearing base asset
    base_asset_suffixes: list[str] = Field(
        default_factory=lambda: ["USDT", "BUSD", "USDC", "BNB"]
    )


class ExecutionConfig(BaseModel):
    dry_run: bool = True
    max_retries: int = 3
    retry_backoff_secs: float = 2.0


class StreamsConfig(BaseModel):
    listen_key_renew_secs: int = 30 * 60
    user_stream_reconnect_secs: float = 5.0
    price_backoff_base_secs: float = 1.0
    price_backoff_max_secs: float = 30.0
    price_max_reconnect_attempts: int = 10


class MonitorConfig(BaseModel):
    max_close_retries: int = 3
    queue_poll_secs: float = 1.0


class ValidatorConfig(BaseModel):
    daily_trade_limit: int = 50
    daily_loss_limit: float = -1000.0
    min_portfolio_value: float = 100.0


class StorageConfig(BaseModel):
    sqlite_path: str = "data/signalbot.db"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = "logs/signalbot.log"


class AppConfig(BaseModel):
    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    streams: StreamsConfig = Field(default_factory=StreamsConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Let a few deployment knobs come from the environment."""
    overrides = {
        ("storage", "sqlite_path"): os.environ.get("SIGNALBOT_DB_PATH"),
        ("binance", "base_url"): os.environ.get("BINANCE_BASE_URL"),
        ("binance", "ws_base_url"): os.environ.get("BINANCE_WS_URL"),
        ("webhook", "public_base_url"): os.environ.get("SIGNALBOT_PUBLIC_URL"),
        ("observability", "log_level"): os.environ.get("LOG_LEVEL"),
    }
    for (section, key), value in overrides.items():
        if value:
            raw.setdefault(section, {})[key] = value
    return raw


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    return AppConfig(**_apply_env_overrides(raw))


def is_live_trading_enabled() -> bool:
    """Check if live trading is explicitly enabled via env var."""
    return os.environ.get("ENABLE_LIVE_TRADING", "").lower() == "true"


ReloadCallback = Callable[[AppConfig, list[str]], None]


def changed_sections(old: AppConfig, new: AppConfig) -> list[str]:
    """Names of top-level sections whose values differ."""
    return [
        name for name in AppConfig.model_fields
        if getattr(old, name) != getattr(new, name)
    ]


class ConfigWatcher:
    """Poll config.yaml by mtime and reload it when it changes.

    A file that fails to parse or validate is ignored; the last good config
    stays active and the error is kept in ``last_error``.
    """

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else _PROJECT_ROOT / "config.yaml"
        self._config = load_config(self._path)
        self._mtime = self._current_mtime()
        self._callbacks: list[ReloadCallback] = []
        self.last_error: str | None = None

    def _current_mtime(self) -> float:
        return self._path.stat().st_mtime if self._path.exists() else 0.0

    @property
    def config(self) -> AppConfig:
        return self._config

    def on_change(self, callback: ReloadCallback) -> None:
        """``callback(new_config, changed_section_names)`` after each reload."""
        self._callbacks.append(callback)

    def check_and_reload(self) -> list[str]:
        """Reload if the file changed. Returns the sections that changed."""
        mtime = self._current_mtime()
        if mtime <= self._mtime:
            return []
        self._mtime = mtime
        try:
            new_config = load_config(self._path)
        except (yaml.YAMLError, ValidationError) as e:
            self.last_error = str(e)
            return []
        self.last_error = None

        changed = changed_sections(self._config, new_config)
        self._config = new_config
        if changed:
            for cb in self._callbacks:
                cb(new_config, changed)
        return changed
