"""
Tests for the CLI interface.
"""
import json
import os
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from ai_gateway.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from ai_gateway.jobs.worker import TickReport
from ai_gateway.sdk.base import ProviderResponse
from ai_gateway.storage.repository import JobRepository, JobResultRepository, UsageRepository

runner = CliRunner()


@pytest.fixture
def cli_env():
    """Point the CLI at a temporary database with no config file or API key."""
    temp_dir = tempfile.mkdtemp()
    db_path = os.path.join(temp_dir, "cli.db")
    env = {
        "AI_GATEWAY_DB_PATH": db_path,
        "AI_GATEWAY_REDIS_URL": "",
        "AI_GATEWAY_CONFIG": "",
        "AI_GATEWAY_LOG_LEVEL": "warning",
        "OPENAI_API_KEY": "",
    }
    yield env
    shutil.rmtree(temp_dir, ignore_errors=True)


def _invoke(args, env):
    return runner.invoke(app, args, env=env)


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self, cli_env):
        result = _invoke([], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init_creates_schema(self, cli_env):
        result = _invoke(["init"], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert JobRepository(cli_env["AI_GATEWAY_DB_PATH"]).count_by_status()["pending"] == 0

    def test_budget_for_new_user(self, cli_env):
        _invoke(["init"], cli_env)
        result = _invoke(["budget", "u1", "--tier", "plus"], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Budget for u1 (plus)" in result.output
        assert "$0.010000" in result.output

    def test_budget_unknown_tier_fails(self, cli_env):
        _invoke(["init"], cli_env)
        result = _invoke(["budget", "u1", "--tier", "gold"], cli_env)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown tier" in result.output

    def test_rate_limit_status(self, cli_env):
        result = _invoke(["rate-limit", "u1", "api_reads", "--tier", "plus"], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Limit: 200 per 60s" in result.output
        assert "Remaining: 200" in result.output

    def test_enqueue_and_stats(self, cli_env):
        _invoke(["init"], cli_env)
        payload = json.dumps({"users": [{"user_id": "u1"}], "craving": "sugar"})

        result = _invoke(["enqueue", "battle_tasks", "--payload", payload], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Enqueued battle_tasks job" in result.output

        stats = _invoke(["queue-stats"], cli_env)
        assert stats.exit_code == EXIT_CODE_PASS
        assert "pending" in stats.output
        assert JobRepository(cli_env["AI_GATEWAY_DB_PATH"]).count_by_status()["pending"] == 1

    def test_enqueue_invalid_json(self, cli_env):
        result = _invoke(["enqueue", "battle_tasks", "--payload", "{not json"], cli_env)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid JSON payload" in result.output

    def test_enqueue_unknown_job_type(self, cli_env):
        _invoke(["init"], cli_env)
        result = _invoke(["enqueue", "send_email", "--payload", "{}"], cli_env)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown job type" in result.output

    def test_work_requires_api_key(self, cli_env):
        _invoke(["init"], cli_env)
        result = _invoke(["work", "--once"], cli_env)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "OPENAI_API_KEY" in result.output

    def test_work_once(self, cli_env):
        worker = MagicMock()
        worker.tick.return_value = TickReport(fetched=2, claimed=2, completed=2)
        with patch('ai_gateway.cli.main.build_worker', return_value=worker) as build:
            result = _invoke(["work", "--once", "--batch-size", "5"], cli_env)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Completed: 2" in result.output
        config = build.call_args.args[1]
        assert config.queue.batch_size == 5

    def test_work_once_with_failures(self, cli_env):
        worker = MagicMock()
        worker.tick.return_value = TickReport(fetched=1, claimed=1, failed=1)
        with patch('ai_gateway.cli.main.build_worker', return_value=worker):
            result = _invoke(["work", "--once"], cli_env)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "1 job(s) failed" in result.output

    def test_work_once_stores_results(self, cli_env):
        _invoke(["init"], cli_env)
        payload = json.dumps({"users": [{"user_id": "u1"}, {"user_id": "u2"}], "craving": "sugar"})
        _invoke(["enqueue", "battle_tasks", "--payload", payload], cli_env)

        provider = MagicMock()
        provider.complete.return_value = ProviderResponse(
            text="Walk outside\nDrink water", prompt_tokens=10, completion_tokens=20, request_id="r1"
        )
        with patch('ai_gateway.factory.OpenAIProvider', return_value=provider):
            result = _invoke(["work", "--once"], cli_env)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Completed: 1" in result.output
        stored = JobResultRepository(cli_env["AI_GATEWAY_DB_PATH"]).list_for("battle_tasks")
        assert set(stored) == {"u1", "u2"}
        assert stored["u1"]["tasks"] == ["Walk outside", "Drink water"]

        shown = _invoke(["results", "battle_tasks", "--user", "u2"], cli_env)
        assert shown.exit_code == EXIT_CODE_PASS
        assert "1 result(s)" in shown.output

    def test_results_for_unknown_user(self, cli_env):
        _invoke(["init"], cli_env)
        result = _invoke(["results", "battle_tasks", "--user", "u9"], cli_env)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No battle_tasks result for u9" in result.output

    def test_sweep(self, cli_env):
        _invoke(["init"], cli_env)
        result = _invoke(["sweep", "--older-than-days", "7"], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Deleted 0 completed job(s)" in result.output

    def test_sweep_rejects_non_positive_days(self, cli_env):
        result = _invoke(["sweep", "--older-than-days", "0"], cli_env)
        assert result.exit_code == EXIT_CODE_FAIL

    def test_seed_demo(self, cli_env):
        result = _invoke(["seed-demo"], cli_env)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Inserted 6 usage records and 2 jobs" in result.output
        db_path = cli_env["AI_GATEWAY_DB_PATH"]
        assert len(UsageRepository(db_path).get_recent_records()) == 6
        assert JobRepository(db_path).count_by_status()["pending"] == 2

    def test_missing_config_file_fails(self, cli_env):
        env = dict(cli_env, AI_GATEWAY_CONFIG="/nonexistent/gateway.yaml")
        result = _invoke(["budget", "u1"], env)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.output
