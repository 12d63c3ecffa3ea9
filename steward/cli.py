"""CLI entry point for Steward.

Commands:
- steward init: Initialize project configuration and state database
- steward ask: Send one prompt to the code-generation CLI
- steward exec: Run a generated script in the sandbox
- steward payment start|pending|status|approve|reject|review: Payment approval workflow
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from steward import __version__
from steward.core.approval import ApprovalDecision, prompt_for_decision
from steward.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    StewardConfig,
    load_config,
)
from steward.core.invoker import CommandInvoker, ensure_sandbox_dir
from steward.core.models import InvocationRequest, RunStatus, WorkflowRun
from steward.core.payment import PAYMENT_WORKFLOW_ID, build_payment_workflow
from steward.core.state import Database
from steward.core.workflow import WorkflowEngine, WorkflowError
from steward.sandbox.executor import SandboxCredentials, SandboxError, get_script_sandbox

console = Console()

BUSINESS_TOKEN_ENV = "STEWARD_BUSINESS_TOKEN"
AUTH_TOKEN_ENV = "STEWARD_AUTH_TOKEN"


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _load_config_or_exit() -> StewardConfig:
    try:
        return load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


def _get_engine(config: StewardConfig) -> WorkflowEngine:
    db = Database(config.db_path)
    return WorkflowEngine(db, [build_payment_workflow(config.approval)])


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Steward - delegated data scripts with sandboxed execution.

    Generates scripts with a headless code-generation CLI, runs them in a
    sandbox, and holds large payments for human approval.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@main.command()
def init() -> None:
    """Initialize project for steward."""
    repo_path = get_repo_path()
    steward_dir = repo_path / CONFIG_DIR

    if (steward_dir / CONFIG_FILE).exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    steward_dir.mkdir(parents=True, exist_ok=True)
    (steward_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG_YAML)

    config = _load_config_or_exit()
    Database(config.db_path)
    sandbox_dir = ensure_sandbox_dir(config.invoker)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {steward_dir}\n"
            "- config.yaml: Invoker, sandbox and approval configuration\n"
            "- state.db: Workflow run database\n"
            f"Sandbox directory: {sandbox_dir}",
            title="Steward Initialized",
        )
    )


@main.command()
@click.argument("prompt")
@click.option("--session-id", "-s", help="Resume a session returned by an earlier call")
@click.option("--system-prompt", help="Additional system instructions to append")
@click.option("--json", "as_json", is_flag=True, help="Print the raw result as JSON")
def ask(prompt: str, session_id: str | None, system_prompt: str | None, as_json: bool) -> None:
    """Send PROMPT to the code-generation CLI.

    Example:
        steward ask "Write clients_by_city.py listing clients per city"
    """
    config = _load_config_or_exit()
    invoker = CommandInvoker(config.invoker)
    result = invoker.execute(
        InvocationRequest(prompt=prompt, session_id=session_id, system_prompt=system_prompt)
    )

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json", by_alias=True, exclude_none=True)))
    else:
        style = "green" if result.success else "red"
        console.print(Panel(escape(result.result or ""), title="Result", border_style=style))
        if result.session_id:
            console.print(f"[dim]Session ID: {result.session_id}[/dim]")
        if result.total_cost_usd is not None:
            console.print(f"[dim]Cost: ${result.total_cost_usd:.4f}[/dim]")
        if result.error:
            console.print(f"[yellow]Warning:[/yellow] {escape(result.error)}")

    if not result.success:
        sys.exit(1)


@main.command(name="exec", context_settings={"ignore_unknown_options": True})
@click.argument("script_path")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option(
    "--strategy",
    type=click.Choice(["direct", "isolated"]),
    default=None,
    help="Sandbox strategy (default: from config.yaml)",
)
def exec_script(script_path: str, args: tuple[str, ...], strategy: str | None) -> None:
    """Run a generated script in the sandbox.

    SCRIPT_PATH is relative to the sandbox directory. Credential tokens are
    read from STEWARD_BUSINESS_TOKEN and STEWARD_AUTH_TOKEN.

    Example:
        steward exec clients_by_city.py --city Berlin
    """
    config = _load_config_or_exit()
    credentials = SandboxCredentials(
        business_token=os.environ.get(BUSINESS_TOKEN_ENV),
        auth_token=os.environ.get(AUTH_TOKEN_ENV),
    )

    try:
        sandbox = get_script_sandbox(strategy or config.strategy, config.sandbox)
    except SandboxError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    result = sandbox.execute(script_path, list(args), credentials)

    if result.stdout:
        click.echo(result.stdout)
    if result.stderr:
        click.echo(result.stderr, err=True)
    if result.container_id:
        console.print(f"[dim]Container: {result.container_id}[/dim]")
    if not result.success:
        console.print(f"[red]Error:[/red] {escape(result.error or 'execution failed')}")
        exit_code = result.exit_code if result.exit_code and result.exit_code > 0 else 1
        sys.exit(exit_code)


# --- Payment workflow ---


def _print_run(run: WorkflowRun) -> None:
    colors = {
        RunStatus.SUCCESS: "green",
        RunStatus.SUSPENDED: "yellow",
        RunStatus.FAILED: "red",
        RunStatus.RUNNING: "cyan",
    }
    table = Table(title=f"Run {run.run_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Status", f"[{colors[run.status]}]{run.status.value}[/]")
    if run.current_step:
        table.add_row("Step", run.current_step)
    pending = run.suspended_input if run.status == RunStatus.SUSPENDED else None
    for key, value in (pending or run.result or run.input).items():
        table.add_row(key, escape(str(value)))
    if run.error:
        table.add_row("Error", f"[red]{escape(run.error)}[/red]")
    console.print(table)


@main.group()
def payment() -> None:
    """Payment workflow with human approval for large amounts."""
    pass


@payment.command()
@click.option("--amount", type=float, required=True, help="Payment amount")
@click.option("--recipient", required=True, help="Payment recipient")
@click.option("--description", required=True, help="What the payment is for")
def start(amount: float, recipient: str, description: str) -> None:
    """Start a payment run."""
    engine = _get_engine(_load_config_or_exit())
    run = engine.start(
        PAYMENT_WORKFLOW_ID,
        {"amount": amount, "recipient": recipient, "description": description},
    )
    _print_run(run)
    if run.status == RunStatus.SUSPENDED:
        console.print(
            f"\n[yellow]Awaiting approval.[/yellow] Resume with:\n"
            f"  steward payment approve {run.run_id} --approver NAME\n"
            f"  steward payment reject {run.run_id} --approver NAME --notes TEXT"
        )
    elif run.status == RunStatus.FAILED:
        sys.exit(1)


@payment.command()
def pending() -> None:
    """List payment runs awaiting approval."""
    engine = _get_engine(_load_config_or_exit())
    runs = engine.db.list_runs(RunStatus.SUSPENDED)
    if not runs:
        console.print("[dim]No payments awaiting approval[/dim]")
        return

    table = Table(title="Awaiting Approval")
    table.add_column("Run ID", style="cyan")
    table.add_column("Amount", style="bold")
    table.add_column("Recipient")
    table.add_column("Description")
    table.add_column("Since", style="dim")
    for run in runs:
        context = run.suspended_input or {}
        table.add_row(
            run.run_id,
            str(context.get("amount", "?")),
            escape(str(context.get("recipient", "?"))),
            escape(str(context.get("description", ""))),
            run.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@payment.command()
@click.argument("run_id")
def status(run_id: str) -> None:
    """Show a payment run."""
    engine = _get_engine(_load_config_or_exit())
    try:
        _print_run(engine.get_run(run_id))
    except WorkflowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def _resume(run_id: str, decision: ApprovalDecision) -> None:
    engine = _get_engine(_load_config_or_exit())
    try:
        run = engine.resume(run_id, decision.model_dump(by_alias=True))
    except WorkflowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_run(run)
    if run.status == RunStatus.FAILED:
        sys.exit(1)


@payment.command()
@click.argument("run_id")
@click.option("--approver", required=True, help="Name of the approver")
@click.option("--notes", default=None, help="Optional approver notes")
def approve(run_id: str, approver: str, notes: str | None) -> None:
    """Approve a suspended payment run."""
    _resume(run_id, ApprovalDecision(approved=True, approver_name=approver, approver_notes=notes))


@payment.command()
@click.argument("run_id")
@click.option("--approver", required=True, help="Name of the approver")
@click.option("--notes", default=None, help="Reason for rejection")
def reject(run_id: str, approver: str, notes: str | None) -> None:
    """Reject a suspended payment run."""
    _resume(
        run_id, ApprovalDecision(approved=False, approver_name=approver, approver_notes=notes)
    )


@payment.command()
@click.argument("run_id")
def review(run_id: str) -> None:
    """Interactively review a suspended payment run."""
    engine = _get_engine(_load_config_or_exit())
    try:
        run = engine.get_run(run_id)
    except WorkflowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    if run.status != RunStatus.SUSPENDED:
        console.print(f"[yellow]Run '{run_id}' is not awaiting approval ({run.status.value})[/]")
        sys.exit(1)

    _resume(run_id, prompt_for_decision(run.suspended_input or {}))


if __name__ == "__main__":
    main()
