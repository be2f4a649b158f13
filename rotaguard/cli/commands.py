"""CLI commands for rotaguard."""

import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from rotaguard import __logo__, __version__

app = typer.Typer(
    name="rotaguard",
    help=f"{__logo__} rotaguard - crash-safe context rotation",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} rotaguard v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """rotaguard - crash-safe context rotation."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _load(config_path: Path | None, agent_dir: Path | None, workspace: Path | None):
    """Load config and apply CLI path overrides. Returns (config, agent_dir, workspace)."""
    from rotaguard.config.loader import load_config

    config = load_config(config_path)
    return (
        config,
        (agent_dir or config.agent_dir_path).expanduser(),
        (workspace or config.workspace_path).expanduser(),
    )


def _fmt(value) -> str:
    if value is None:
        return "[dim]-[/dim]"
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


# ============================================================================
# Inspection
# ============================================================================


@app.command()
def status(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    agent_dir: Path = typer.Option(None, "--agent-dir", "-a", help="Agent directory holding rotation state"),
):
    """Show the current rotation state."""
    from rotaguard.rotation.guards import count_recent_rotations
    from rotaguard.rotation.state import utcnow
    from rotaguard.rotation.store import StateStore

    config, agent_dir, _ = _load(config_path, agent_dir, None)
    state = StateStore(agent_dir).read()
    recent = count_recent_rotations(state, config.rotation, utcnow())
    breaker = config.rotation.circuit_breaker

    table = Table(title="Rotation Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("State", f"[bold]{state.state.value}[/bold]")
    table.add_row("Enabled", "[green]yes[/green]" if config.rotation.enabled else "[red]no[/red]")
    table.add_row(
        "Compactions",
        f"{state.cumulative_compaction_count} (threshold {config.rotation.compaction_count_threshold})",
    )
    table.add_row("Cooldown until", _fmt(state.cooldown_until))
    breaker_style = "red" if recent >= breaker.max_rotations else "green"
    table.add_row(
        "Circuit breaker",
        f"[{breaker_style}]{recent}/{breaker.max_rotations}[/{breaker_style}] "
        f"in {breaker.window_minutes}m",
    )
    table.add_row("Rotations", str(len(state.rotation_history)))
    table.add_row("Old session", _fmt(state.old_session_id))
    table.add_row("Archive", _fmt(state.archive_path))
    table.add_row("Last error", f"[red]{state.error}[/red]" if state.error else _fmt(None))
    table.add_row("Updated", _fmt(state.updated_at))

    console.print(table)


@app.command()
def history(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    agent_dir: Path = typer.Option(None, "--agent-dir", "-a", help="Agent directory holding rotation state"),
):
    """List completed rotations."""
    from rotaguard.rotation.store import StateStore

    _, agent_dir, _ = _load(config_path, agent_dir, None)
    state = StateStore(agent_dir).read()

    if not state.rotation_history:
        console.print("No rotations recorded.")
        return

    table = Table(title="Rotation History")
    table.add_column("#", style="cyan")
    table.add_column("Rotated At")
    table.add_column("Old Session")
    table.add_column("New Session")
    table.add_column("Trigger")
    table.add_column("Tokens")

    for i, entry in enumerate(state.rotation_history, start=1):
        table.add_row(
            str(i),
            _fmt(entry.rotated_at),
            entry.old_session_id,
            entry.new_session_id,
            str(entry.trigger_compaction_count),
            str(entry.injected_tokens_estimate),
        )

    console.print(table)


# ============================================================================
# Recovery / Preview
# ============================================================================


@app.command()
def recover(
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    agent_dir: Path = typer.Option(None, "--agent-dir", "-a", help="Agent directory holding rotation state"),
    workspace: Path = typer.Option(None, "--workspace", "-w", help="Workspace with MEMORY.md and memory/"),
):
    """Run startup recovery for an interrupted rotation."""
    from rotaguard.rotation.controller import RotationController

    config, agent_dir, workspace = _load(config_path, agent_dir, workspace)
    controller = RotationController.for_agent(config.rotation, agent_dir, workspace)
    before = controller.store.read().state
    after = controller.on_startup()

    if after.state == before:
        console.print(f"[green]✓[/green] Nothing to recover (state {after.state.value})")
    else:
        console.print(f"[green]✓[/green] Recovered: {before.value} → {after.state.value}")
    if after.error:
        console.print(f"[yellow]Last error: {after.error}[/yellow]")


@app.command()
def preview(
    session_id: str = typer.Option(None, "--session-id", "-s", help="Session to preview"),
    config_path: Path = typer.Option(None, "--config", "-c", help="Path to config.json"),
    agent_dir: Path = typer.Option(None, "--agent-dir", "-a", help="Agent directory holding rotation state"),
    workspace: Path = typer.Option(None, "--workspace", "-w", help="Workspace with MEMORY.md and memory/"),
):
    """Print the payload a rotation would inject right now."""
    from rotaguard.rotation.controller import RotationController, get_session_file

    config, agent_dir, workspace = _load(config_path, agent_dir, workspace)
    session_id = session_id or config.agent.session_id
    if not session_id:
        console.print("[red]Error: no session id (use --session-id)[/red]")
        raise typer.Exit(1)

    controller = RotationController.for_agent(config.rotation, agent_dir, workspace)
    message = controller.preview(session_id, get_session_file(agent_dir, session_id))
    console.print(message, markup=False, highlight=False)
