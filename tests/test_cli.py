"""Tests for the click CLI."""

from __future__ import annotations

import pytest
from click.testing import CliRunner

from signalbot.cli import cli
from signalbot.config import StorageConfig
from signalbot.storage.database import Database
from signalbot.storage.models import OrderRecord, PositionRecord


@pytest.fixture
def runner(tmp_path, monkeypatch) -> CliRunner:
    monkeypatch.setenv("SIGNALBOT_DB_PATH", str(tmp_path / "cli.db"))
    return CliRunner()


@pytest.fixture
def config_file(tmp_path) -> str:
    path = tmp_path / "config.yaml"
    path.write_text("execution:\n  dry_run: true\nobservability:\n  log_file: \"\"\n")
    return str(path)


def _invoke(runner: CliRunner, config_file: str, *args: str):
    return runner.invoke(cli, ["--config", config_file, *args])


def test_init_db(runner, config_file, tmp_path) -> None:
    result = _invoke(runner, config_file, "init-db")
    assert result.exit_code == 0, result.output
    assert (tmp_path / "cli.db").exists()


def test_create_portfolio_and_exchange(runner, config_file, tmp_path) -> None:
    result = _invoke(runner, config_file, "create-portfolio", "--user", "u1", "--balance", "2500")
    assert result.exit_code == 0, result.output
    portfolio_id = result.output.split()[-1]

    result = _invoke(
        runner, config_file, "add-exchange", "--portfolio", portfolio_id,
        "--api-key", "k", "--api-secret", "s",
    )
    assert result.exit_code == 0, result.output

    db = Database(StorageConfig(sqlite_path=str(tmp_path / "cli.db")))
    db.connect()
    try:
        portfolio = db.get_portfolio(portfolio_id)
        assert portfolio is not None
        assert portfolio.initial_balance == 2500
        assert db.get_active_exchange(portfolio_id) is not None
    finally:
        db.close()


def test_unknown_portfolio_exits_nonzero(runner, config_file) -> None:
    assert _invoke(runner, config_file, "stats", "missing").exit_code == 1
    result = _invoke(
        runner, config_file, "add-exchange", "--portfolio", "missing",
        "--api-key", "k", "--api-secret", "s",
    )
    assert result.exit_code == 1


def test_stats_and_positions(runner, config_file) -> None:
    created = _invoke(runner, config_file, "create-portfolio", "--user", "u2", "--name", "Swing")
    portfolio_id = created.output.split()[-1]

    result = _invoke(runner, config_file, "stats", portfolio_id, "--recalculate")
    assert result.exit_code == 0, result.output
    assert "Win rate" in result.output

    result = _invoke(runner, config_file, "positions", portfolio_id, "--status", "open")
    assert result.exit_code == 0, result.output
    assert "Positions (0)" in result.output


def test_orders(runner, config_file, tmp_path) -> None:
    created = _invoke(runner, config_file, "create-portfolio", "--user", "u3")
    portfolio_id = created.output.split()[-1]

    db = Database(StorageConfig(sqlite_path=str(tmp_path / "cli.db")))
    db.connect()
    try:
        position_id = db.insert_position(PositionRecord(
            portfolio_id=portfolio_id, symbol="BTCUSDT", side="LONG",
            entry_price=50000, quantity=0.01, status="OPEN",
        ))
        for order_id, symbol in (("1001", "BTCUSDT"), ("2002", "ETHUSDT")):
            db.insert_order(OrderRecord(
                portfolio_id=portfolio_id,
                position_id=position_id if symbol == "BTCUSDT" else None,
                order_id=order_id, symbol=symbol, type="ENTRY", side="BUY",
                quantity=0.01, price=50000,
            ))
    finally:
        db.close()

    result = _invoke(runner, config_file, "orders", portfolio_id)
    assert result.exit_code == 0, result.output
    assert "Orders (2)" in result.output

    result = _invoke(runner, config_file, "orders", portfolio_id, "--symbol", "ethusdt")
    assert "Orders (1)" in result.output
    assert "2002" in result.output

    result = _invoke(runner, config_file, "orders", portfolio_id, "--position", position_id)
    assert "Orders (1)" in result.output
    assert "1001" in result.output
