"""
CLI interface for the AI inference gateway.

Operator access to the ledger, rate limits and the batch job queue.
"""

import json
import sys
from dataclasses import replace
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_gateway.config.settings import Settings
from ai_gateway.core.budget import BudgetTracker, UserContext
from ai_gateway.core.cache import create_cache_store
from ai_gateway.demo.seed_demo_data import seed_demo_data
from ai_gateway.factory import build_queue, build_rate_limit_policy, build_worker, load_config
from ai_gateway.logging import setup_logging
from ai_gateway.storage.repository import (
    JobResultRepository,
    UsageRepository,
    initialize_schema,
    utc_now,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings() -> Settings:
    return Settings.from_env()


def _fail(message: str, error: Exception) -> None:
    console.print(f"[red]{message}:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Sub-cent budgets need more than two decimals."""
    return f"${amount:,.6f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI inference gateway CLI."""
    setup_logging(_settings().log_level)
    if ctx.invoked_subcommand is None:
        console.print("AI Gateway - Use --help to see available commands")


@app.command()
def init():
    """Create the usage ledger and job queue tables."""
    try:
        initialize_schema(_settings().db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Error initializing database", e)


@app.command()
def budget(
    user_id: str = typer.Argument(..., help="User to report on"),
    tier: str = typer.Option("free", "--tier", "-t", help="Subscription tier of the user")
):
    """Show a user's spend against their monthly budget."""
    try:
        settings = _settings()
        config = load_config(settings)
        tracker = BudgetTracker(
            repository=UsageRepository(settings.db_path),
            monthly_budgets=config.budgets,
            feature_limits=config.feature_limits,
            default_feature_limit=config.default_feature_limit,
        )
        status = tracker.status(UserContext(user_id=user_id, tier=tier))
    except Exception as e:
        _fail("Error", e)

    table = Table(title=f"Budget for {user_id} ({status.tier})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Monthly budget", _format_currency(status.monthly_budget))
    table.add_row("Current spend", _format_currency(status.current_spend))
    table.add_row("Remaining", _format_currency(status.remaining_budget))
    table.add_row("Period", f"{status.period_start:%Y-%m-%d} to {status.period_end:%Y-%m-%d}")
    console.print(table)

    if status.is_over_budget:
        console.print("[bold yellow]User is over budget; AI calls fall back to templates[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("rate-limit")
def rate_limit(
    user_id: str = typer.Argument(..., help="User to report on"),
    endpoint: str = typer.Argument(..., help="Endpoint or AI feature name"),
    tier: str = typer.Option("free", "--tier", "-t", help="Subscription tier of the user")
):
    """Show remaining calls in the current window without counting one."""
    try:
        settings = _settings()
        config = load_config(settings)
        policy = build_rate_limit_policy(config, create_cache_store(settings.redis_url))
        user = UserContext(user_id=user_id, tier=tier)
        limiter = policy.limiter_for(user.tier, endpoint)
        result = limiter.status(user.user_id)
    except Exception as e:
        _fail("Error", e)

    console.print(f"\n[bold]Rate limit:[/bold] {endpoint} ({tier})")
    console.print(f"Limit: {limiter.limit} per {limiter.window_seconds}s")
    console.print(f"Remaining: {result.remaining}")
    console.print(f"Window resets at: {result.reset_time}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def enqueue(
    job_type: str = typer.Argument(..., help="onboarding_personalization, user_summary or battle_tasks"),
    payload: str = typer.Option(..., "--payload", "-p", help="Job payload as JSON"),
    delay_seconds: int = typer.Option(0, "--delay-seconds", "-d", help="Delay before the job is due"),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", help="Total attempts allowed")
):
    """Add a pending job to the batch queue."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        _fail("Invalid JSON payload", e)

    try:
        settings = _settings()
        queue = build_queue(settings)
        scheduled_at = utc_now() + timedelta(seconds=delay_seconds)
        job_id = queue.enqueue(job_type, data, scheduled_at=scheduled_at, max_attempts=max_attempts)
    except Exception as e:
        _fail("Error enqueuing job", e)

    console.print(f"[green]✓[/] Enqueued {job_type} job {job_id}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def work(
    once: bool = typer.Option(False, "--once", help="Run a single tick and exit"),
    interval: float = typer.Option(60.0, "--interval", "-i", help="Seconds between ticks"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", "-b", help="Jobs fetched per tick")
):
    """Process due jobs from the batch queue."""
    try:
        settings = _settings()
        config = load_config(settings)
        if batch_size is not None:
            config = _with_batch_size(config, batch_size)
        worker = build_worker(settings, config)
    except Exception as e:
        _fail("Error starting worker", e)

    if once:
        report = worker.tick()
        _display_tick_report(report)
        sys.exit(EXIT_CODE_FAIL if report.failed else EXIT_CODE_PASS)

    worker.run(interval_seconds=interval)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sweep(
    older_than_days: Optional[int] = typer.Option(
        None, "--older-than-days", help="Retention window, defaults to queue.retention_days"
    )
):
    """Delete completed jobs past the retention window. Failed jobs are kept."""
    try:
        settings = _settings()
        config = load_config(settings)
        days = older_than_days if older_than_days is not None else config.queue.retention_days
        if days <= 0:
            raise ValueError("--older-than-days must be > 0")
        deleted = build_queue(settings, config).sweep(days)
    except Exception as e:
        _fail("Error sweeping jobs", e)

    console.print(f"[green]✓[/] Deleted {deleted} completed job(s) older than {days} days")
    sys.exit(EXIT_CODE_PASS)


@app.command("queue-stats")
def queue_stats():
    """Count queue jobs by status."""
    try:
        stats = build_queue(_settings()).stats()
    except Exception as e:
        _fail("Error", e)

    table = Table(title="Queue jobs")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for status, count in stats.items():
        table.add_row(status, str(count))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def results(
    job_type: str = typer.Argument(..., help="Job type whose results to show"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Show one user's result")
):
    """Show content stored by completed batch jobs."""
    try:
        repository = JobResultRepository(_settings().db_path)
        if user_id is not None:
            stored = repository.get(job_type, user_id)
            if stored is None:
                raise LookupError(f"No {job_type} result for {user_id}")
            found = {user_id: stored}
        else:
            found = repository.list_for(job_type)
    except Exception as e:
        _fail("Error reading results", e)

    table = Table(title=f"{job_type} results")
    table.add_column("User")
    table.add_column("Result")
    for uid, result in found.items():
        table.add_row(uid, json.dumps(result, sort_keys=True))
    console.print(table)
    console.print(f"{len(found)} result(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command("seed-demo")
def seed_demo():
    """Insert demo ledger rows and pending jobs."""
    try:
        counts = seed_demo_data(_settings().db_path)
    except Exception as e:
        _fail("Error seeding demo data", e)

    console.print(
        f"[green]✓[/] Inserted {counts['usage_records']} usage records and {counts['jobs']} jobs"
    )
    sys.exit(EXIT_CODE_PASS)


def _with_batch_size(config, batch_size: int):
    return replace(config, queue=replace(config.queue, batch_size=batch_size))


def _display_tick_report(report):
    """Display one worker tick."""
    console.print("\n[bold]Worker tick[/bold]")
    console.print("-" * 40)
    for name, value in report.to_dict().items():
        console.print(f"{name.capitalize()}: {value}")
    if report.failed:
        console.print(f"\n[bold red]{report.failed} job(s) failed[/] - see error_message in queue_jobs")


if __name__ == "__main__":
    app()
