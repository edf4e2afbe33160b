"""
Tests for the management CLI.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from dotmac.subscriptions.cli import CLIDependencies, cli
from dotmac.subscriptions.models import Subscription, SubscriptionStatus, SweepReport
from dotmac.subscriptions.repository import InMemorySubscriptionRepository

from .conftest import START


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def deps():
    repository = InMemorySubscriptionRepository()
    return CLIDependencies(
        init_db=AsyncMock(),
        run_sweep=AsyncMock(
            return_value=SweepReport(now=START, examined=3, expired=2, trials_ended=1)
        ),
        check_health=AsyncMock(return_value=True),
        repository_factory=lambda: repository,
        shutdown=AsyncMock(),
    )


@pytest.fixture
def patched(deps):
    with patch("dotmac.subscriptions.cli._get_cli_dependencies", return_value=deps):
        yield deps


@pytest.mark.unit
class TestCLI:
    def test_init_db(self, runner, patched):
        result = runner.invoke(cli, ["init-db"])

        assert result.exit_code == 0
        assert "Database initialized successfully!" in result.output
        patched.init_db.assert_awaited_once()
        patched.shutdown.assert_awaited_once()

    def test_check_db(self, runner, patched):
        result = runner.invoke(cli, ["check-db"])
        assert result.exit_code == 0
        assert "✓ Connected" in result.output

    def test_check_db_unreachable(self, runner, patched):
        patched.check_health.return_value = False
        result = runner.invoke(cli, ["check-db"])
        assert result.exit_code == 1
        assert "Unreachable" in result.output

    def test_sweep_table(self, runner, patched):
        result = runner.invoke(cli, ["sweep", "--now", "2025-01-01T12:00:00"])

        assert result.exit_code == 0
        assert "expired         2" in result.output
        assert "trials ended    1" in result.output
        patched.run_sweep.assert_awaited_once_with(START)

    def test_sweep_json(self, runner, patched):
        result = runner.invoke(cli, ["sweep", "--json"])

        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["examined"] == 3
        patched.run_sweep.assert_awaited_once_with(None)

    def test_sweep_rejects_bad_timestamp(self, runner, patched):
        result = runner.invoke(cli, ["sweep", "--now", "yesterday"])
        assert result.exit_code == 2
        patched.run_sweep.assert_not_awaited()

    def test_show_empty(self, runner, patched):
        result = runner.invoke(cli, ["show", "u1"])
        assert result.exit_code == 0
        assert "No subscriptions for u1" in result.output

    def test_show_lists_subscriptions(self, runner, patched):
        repository = patched.repository_factory()
        stored = asyncio.run(
            repository.insert(
                Subscription(
                    user_id="u1",
                    plan_id="basic",
                    status=SubscriptionStatus.ACTIVE,
                    start_date=START,
                    end_date=START + timedelta(days=30),
                )
            )
        )

        result = runner.invoke(cli, ["show", "u1"])

        assert result.exit_code == 0
        assert stored.id in result.output
        assert "plan=basic" in result.output
        assert "version=1" in result.output
