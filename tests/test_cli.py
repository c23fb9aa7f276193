"""Tests for the governance CLI."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from governance.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def db_args(tmp_path) -> list[str]:
    """Global options pointing the CLI at a scratch database."""
    return ["--database-url", f"sqlite:///{tmp_path / 'cli.db'}", "--log-level", "ERROR"]


def invoke(runner: CliRunner, db_args: list[str], *args: str):
    result = runner.invoke(cli, [*db_args, *args], obj={})
    assert result.exit_code == 0, result.output
    return result


class TestCli:
    """End-to-end command tests against SQLite."""

    def test_init_db(self, runner: CliRunner, db_args: list[str]) -> None:
        result = invoke(runner, db_args, "init-db")

        assert "Database tables ready" in result.stdout

    def test_init_and_usage_json(self, runner: CliRunner, db_args: list[str]) -> None:
        invoke(runner, db_args, "init-db")
        invoke(runner, db_args, "init", "org_123", "--tier", "pro")

        result = invoke(runner, db_args, "usage", "org_123", "--json")

        data = json.loads(result.stdout)
        assert data["api_calls"] == {"used": 0, "limit": 10_000, "percentage": 0}
        assert data["recordings"]["limit"] == 100

    def test_usage_table(self, runner: CliRunner, db_args: list[str]) -> None:
        invoke(runner, db_args, "init-db")
        invoke(runner, db_args, "init", "org_123")

        result = invoke(runner, db_args, "usage", "org_123")

        assert "API calls" in result.stdout
        assert "1,000" in result.stdout

    def test_usage_unknown_org(self, runner: CliRunner, db_args: list[str]) -> None:
        invoke(runner, db_args, "init-db")

        result = invoke(runner, db_args, "usage", "org_missing", "--json")

        assert json.loads(result.stdout)["storage"]["limit"] == 0

    def test_invalid_tier(self, runner: CliRunner, db_args: list[str]) -> None:
        result = runner.invoke(cli, [*db_args, "init", "org_123", "--tier", "gold"], obj={})

        assert result.exit_code != 0

    def test_reset_reconcile_and_sweep(self, runner: CliRunner, db_args: list[str]) -> None:
        invoke(runner, db_args, "init-db")
        invoke(runner, db_args, "init", "org_123")

        assert "Reset requested" in invoke(runner, db_args, "reset", "org_123").stdout
        assert "Storage reconciled" in invoke(
            runner, db_args, "reconcile-storage", "org_123"
        ).stdout
        # Freshly initialized orgs are not due yet
        assert "Reset 0 organization(s)" in invoke(runner, db_args, "sweep").stdout

    def test_reset_limit(self, runner: CliRunner, db_args: list[str]) -> None:
        with patch("governance.cli.RateLimiter") as limiter_cls:
            limiter = limiter_cls.return_value
            limiter.reset_limit = AsyncMock()
            limiter.close = AsyncMock()

            result = invoke(
                runner, db_args, "reset-limit", "user_123", "--redis-url", "redis://cache:6379/1"
            )

        limiter_cls.assert_called_once_with(redis_url="redis://cache:6379/1")
        limiter.reset_limit.assert_awaited_once_with("user_123")
        limiter.close.assert_awaited_once()
        assert "Rate limit cleared" in result.stdout

    def test_scheduler_uses_settings_and_shuts_down(
        self, runner: CliRunner, db_args: list[str]
    ) -> None:
        with patch("governance.cli.QuotaResetScheduler") as scheduler_cls:
            service = scheduler_cls.return_value
            service.running = False

            result = invoke(runner, db_args, "scheduler", "--interval", "5", "--run-now")

        _, kwargs = scheduler_cls.call_args
        assert kwargs["interval_minutes"] == 5
        assert kwargs["timezone"] == "UTC"
        service.start.assert_called_once_with(run_immediately=True)
        service.shutdown.assert_called_once()
        assert "every 5m" in result.stdout
