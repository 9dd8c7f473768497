"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner
from prometheus_client import CollectorRegistry

from helpers import FakeAssets, FakeStannp, FakeStorage, SleepRecorder, seed_campaign
from postcard_fulfillment import cli
from postcard_fulfillment.cli import main, run_async
from postcard_fulfillment.core import FulfillmentCore
from postcard_fulfillment.persistence import Persistence
from postcard_fulfillment.prometheus import FulfillmentMetrics


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """A seeded database, with the CLI wired to in-memory fakes."""
    path = str(tmp_path / "cli.db")

    async def seed():
        persistence = Persistence(path)
        await persistence.init_db()
        await seed_campaign(persistence)

    run_async(seed())

    def fake_build_core(settings):
        core = FulfillmentCore(
            db_path=settings["db_path"],
            metrics=FulfillmentMetrics(registry=CollectorRegistry()),
            storage=FakeStorage(),
            client=FakeStannp(),
            sleep=SleepRecorder(),
        )
        core.orchestrator.assets = FakeAssets()
        return core

    monkeypatch.setattr(cli, "build_core", fake_build_core)
    return path


def test_run_async():
    async def answer():
        return 42

    assert run_async(answer()) == 42


def test_readiness_and_process(db_path):
    runner = CliRunner()
    result = runner.invoke(main, ["--db", db_path, "readiness", "c1"])
    assert result.exit_code == 0
    assert "Campaign c1 is ready" in result.output

    result = runner.invoke(main, ["--db", db_path, "process", "c1"])
    assert result.exit_code == 0
    assert "Campaign c1: sent" in result.output
    assert "Processed: 3" in result.output

    result = runner.invoke(main, ["--db", db_path, "readiness", "c1"])
    assert "not ready" in result.output
    assert "Campaign status is sent, expected 'paid'" in result.output


def test_process_unknown_campaign_exits_with_error(db_path):
    result = CliRunner().invoke(main, ["--db", db_path, "process", "missing"])
    assert result.exit_code == 1


def test_stats_and_mailpieces(db_path):
    runner = CliRunner()
    result = runner.invoke(main, ["--db", db_path, "mailpieces", "c1"])
    assert result.exit_code == 0
    assert "No mailpieces found." in result.output

    runner.invoke(main, ["--db", db_path, "process", "c1"])

    result = runner.invoke(main, ["--db", db_path, "stats", "c1", "--json"])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["total"] == 3
    assert data["by_status"] == {"submitted": 3}

    result = runner.invoke(main, ["--db", db_path, "stats", "c1"])
    assert "Total:       3" in result.output

    result = runner.invoke(main, ["--db", db_path, "mailpieces", "c1", "--json", "--status", "submitted"])
    records = json.loads(result.output)
    assert sorted(r["lead_id"] for r in records) == ["L1", "L2", "L3"]

    result = runner.invoke(main, ["--db", db_path, "mailpieces", "c1", "--status", "lost"])
    assert result.exit_code == 1


def test_process_ready_and_retry(db_path):
    runner = CliRunner()
    result = runner.invoke(main, ["--db", db_path, "process-ready"])
    assert result.exit_code == 0
    assert "c1" in result.output

    result = runner.invoke(main, ["--db", db_path, "retry", "c1"])
    assert result.exit_code == 0
    assert "Skipped:   3" in result.output


def test_cancel(db_path):
    runner = CliRunner()
    runner.invoke(main, ["--db", db_path, "process", "c1"])
    result = runner.invoke(main, ["--db", db_path, "cancel", "sp-L1"])
    assert result.exit_code == 0
    assert "Mailpiece sp-L1 cancelled" in result.output

    result = runner.invoke(main, ["--db", db_path, "cancel", "sp-unknown"])
    assert result.exit_code == 1


def test_serve_passes_overrides(db_path, monkeypatch):
    captured = {}
    monkeypatch.setattr(cli, "serve_app", lambda settings: captured.update(settings))
    result = CliRunner().invoke(main, ["--db", db_path, "serve", "--host", "127.0.0.1", "--port", "9001"])
    assert result.exit_code == 0
    assert captured["http_host"] == "127.0.0.1"
    assert captured["http_port"] == 9001
    assert captured["db_path"] == db_path
