"""Command line entry point for the pr-pilot worker."""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

import click
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..core.config import (
    WORKER_CONFIG_PATH,
    ConfigError,
    WorkerConfig,
    load_worker_config,
    validate_worker_config,
)
from ..core.orchestrator import Orchestrator, context_summary
from ..core.task_context import extract_task_context
from ..core.workflow_state import reconstruct_state
from ..integrations.task_store.client import TaskStoreClient, TaskStoreError
from ..utils.rich_logging import setup_rich_logging


console = Console()


def _load(ctx) -> WorkerConfig:
    try:
        cfg = load_worker_config(ctx.obj["config_path"])
    except ValidationError as e:
        raise ConfigError([str(err["msg"]) for err in e.errors()]) from e
    if ctx.obj["log_level"]:
        cfg.log_level = ctx.obj["log_level"]
    return cfg


def _store(cfg: WorkerConfig) -> TaskStoreClient:
    return TaskStoreClient(cfg.task_store_url, cfg.client_id or "", cfg.client_secret or "")


def _print_problems(problems) -> None:
    console.print("[red]Configuration problems:[/]")
    for problem in problems:
        console.print(f"  [red]✗[/] {problem}")


@click.group()
@click.option("--config", "-c", "config_path", default=str(WORKER_CONFIG_PATH),
              type=click.Path(path_type=Path), help="Worker settings file")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx, config_path, log_level):
    """pr-pilot - turn assigned tasks into reviewed pull requests."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@cli.command()
@click.argument("task_id", required=False)
@click.option("--force", is_flag=True, help="Process TASK_ID even if its comments say it is done")
@click.pass_context
def run(ctx, task_id, force):
    """Poll continuously, or process a single TASK_ID and exit."""
    try:
        cfg = _load(ctx)
        problems = validate_worker_config(cfg)
        if problems:
            raise ConfigError(problems)
    except ConfigError as e:
        _print_problems(e.problems)
        sys.exit(1)

    log = setup_rich_logging(cfg.worker_id, Path(cfg.workspace), cfg.log_level)
    store = _store(cfg)
    orchestrator = Orchestrator(cfg, store, log=log)

    try:
        if task_id:
            orchestrator.resolve_agent_ids()
            task = store.get_task(task_id)
            snapshot = reconstruct_state(task, staleness=orchestrator.staleness, agent_ids=orchestrator.agent_ids)
            console.print(f"[bold]{escape(task.title)}[/] is [cyan]{snapshot.state.value}[/] ({snapshot.reason})")
            if force and not snapshot.should_process:
                asyncio.run(orchestrator.process_task(task))
            else:
                asyncio.run(orchestrator.handle_task(task, snapshot))
        else:
            asyncio.run(orchestrator.run())
    except KeyboardInterrupt:
        orchestrator.stop()
        console.print("\n[yellow]Stopped[/]")
    except TaskStoreError as e:
        console.print(f"[red]Task store error: {e}[/]")
    finally:
        store.close()


@cli.command()
@click.argument("task_id")
@click.pass_context
def state(ctx, task_id):
    """Show how the worker classifies TASK_ID from its comments."""
    try:
        cfg = _load(ctx)
    except ConfigError as e:
        _print_problems(e.problems)
        sys.exit(1)

    with _store(cfg) as store:
        try:
            task = store.get_task(task_id)
        except TaskStoreError as e:
            console.print(f"[red]Error: {e}[/]")
            sys.exit(1)

    agent_ids = {a.agent_id for a in cfg.agents if a.agent_id}
    if task.assignee_id and task.assignee_email and task.assignee_email.lower() in cfg.agent_emails:
        agent_ids.add(task.assignee_id)
    snapshot = reconstruct_state(task, staleness=timedelta(minutes=cfg.staleness_minutes), agent_ids=agent_ids)
    context = extract_task_context(task, agent_ids)

    table = Table(title=escape(task.title))
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("State", f"[cyan]{snapshot.state.value}[/]")
    table.add_row("Reason", snapshot.reason)
    table.add_row("Will process", "[green]yes[/]" if snapshot.should_process else "[dim]no[/]")
    table.add_row("Assignee", task.assignee_email or "-")
    table.add_row("Repository", task.repository or "[dim]none (assistant mode)[/]")
    table.add_row("Comments", str(len(task.comments)))
    table.add_row("Latest PR", context.latest_pr_url or "-")
    console.print(table)

    if context.previous_attempts:
        attempts = Table(title="Previous attempts")
        attempts.add_column("Attempt")
        for line in context_summary(context):
            attempts.add_row(line)
        console.print(attempts)
    if context.user_feedback:
        console.print("[bold]Feedback since last completion:[/]")
        for item in context.user_feedback:
            console.print(f"  > {escape(item[:200])}")


@cli.command("check-config")
@click.pass_context
def check_config(ctx):
    """Validate worker settings; exits 1 on problems."""
    try:
        cfg = _load(ctx)
    except ConfigError as e:
        _print_problems(e.problems)
        sys.exit(1)

    problems = validate_worker_config(cfg)
    table = Table(title="Agent identities")
    table.add_column("Email")
    table.add_column("Backend")
    table.add_column("Credentials")
    for agent in cfg.agents:
        has_key = bool(cfg.api_key_for(agent.backend)) or (agent.backend == "self_hosted" and cfg.gateway_url)
        table.add_row(agent.email, agent.backend, "[green]✓[/]" if has_key else "[red]missing[/]")
    console.print(table)

    if problems:
        _print_problems(problems)
        sys.exit(1)
    console.print("[green]✓ Configuration OK[/]")


def main():
    # .env values fill in whatever the shell did not export
    load_dotenv()
    cli(obj={})


if __name__ == "__main__":
    main()
