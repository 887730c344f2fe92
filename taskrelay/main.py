"""
taskrelay — dependency-ordered task orchestration from the terminal.

Command: taskrelay run tasks.yml
"""

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from . import __version__
from .config import CONFIG_FIELDS, PROJECT_CONFIG_NAME, Config
from .engine.annotations import parse_annotated_tasks
from .engine.delegation import DelegationExecutor
from .engine.facade import Orchestrator
from .engine.graph import load_graph_file
from .engine.tasks import TaskStatus
from .errors import TaskRelayError
from .llm import LLMAdapter
from .logger import setup_logger
from .rendering import TaskRenderer, set_use_unicode

console = Console()
BANNER = (
    f"[bold #7FA6D9]taskrelay[/bold #7FA6D9] "
    f"[dim]v{__version__} · task orchestration[/dim]"
)

_ANNOTATED_SUFFIXES = {".txt", ".md"}


def _load_config(project_dir: str, model, verbose: bool) -> Config:
    config = Config.load(project_dir)
    if model:
        if model not in config.models:
            raise click.BadParameter(
                f"unknown model preset '{model}' (known: {', '.join(config.models)})",
                param_hint="--model",
            )
        config.active_model = model
    if verbose:
        config.verbose = True
    if config.worker_runner == "command" and not config.worker_command:
        raise click.UsageError("worker.runner is 'command' but worker.command is empty")
    log_file = config.resolve_path(config.log_file) if config.log_file else None
    setup_logger(verbose=config.verbose, log_file=log_file)
    return config


def _load_tasks(path: str):
    if Path(path).suffix.lower() in _ANNOTATED_SUFFIXES:
        return parse_annotated_tasks(Path(path).read_text(encoding="utf-8"))
    return load_graph_file(path)


@click.group()
@click.version_option(__version__, prog_name="taskrelay")
@click.option("--ascii", "ascii_icons", is_flag=True, help="ASCII status icons")
def cli(ascii_icons):
    """taskrelay — run task graphs through delegated and local workers."""
    if ascii_icons:
        set_use_unicode(False)


@cli.command()
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--feature", "-f", default=None, help="Feature name for result files")
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--timeout", "-t", type=float, default=None, help="Overall wait limit (seconds)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(graph_file, feature, model, project_dir, timeout, verbose):
    """Submit a task graph and wait for every task to finish."""
    console.print(BANNER)
    config = _load_config(project_dir, model, verbose)
    renderer = TaskRenderer(console)

    try:
        tasks = _load_tasks(graph_file)
    except (TaskRelayError, OSError) as e:
        renderer.render_error(str(e))
        sys.exit(1)

    with Orchestrator.from_config(config) as orch:
        orch.events.subscribe(renderer.on_event)
        try:
            task_ids = orch.submit(tasks, feature=feature)
        except TaskRelayError as e:
            renderer.render_error(str(e), hint="Nothing was submitted.")
            sys.exit(1)

        renderer.render_plan([orch.get_result(tid) for tid in task_ids])
        if not orch.wait(timeout):
            renderer.render_error(f"Still running after {timeout:.0f}s; cancelling")
            for tid in task_ids:
                try:
                    orch.cancel(tid)
                except TaskRelayError:
                    pass  # already terminal

        finished = [orch.get_result(tid) for tid in task_ids]
        renderer.render_task_table(finished, title="Summary")
        renderer.render_stats(orch.stats())

    if any(t.status != TaskStatus.COMPLETED for t in finished):
        sys.exit(1)


@cli.command("list")
@click.option("--status", "-s", default=None,
              type=click.Choice([s.value for s in TaskStatus] + ["all"]),
              help="Only show tasks in this status")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def list_cmd(status, project_dir):
    """List tasks recorded in the project store."""
    config = _load_config(project_dir, None, False)
    renderer = TaskRenderer(console)
    with Orchestrator.from_config(config) as orch:
        tasks = orch.list_tasks(status)
        if not tasks:
            console.print("  [dim]No tasks.[/dim]")
            return
        renderer.render_task_table(tasks)
        renderer.render_stats(orch.stats())


@cli.command()
@click.argument("task_id")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def result(task_id, project_dir):
    """Show a task's status and result."""
    config = _load_config(project_dir, None, False)
    renderer = TaskRenderer(console)
    with Orchestrator.from_config(config) as orch:
        try:
            task = orch.get_result(task_id)
        except TaskRelayError as e:
            renderer.render_error(str(e))
            sys.exit(1)
        renderer.render_result(task)


@cli.command()
@click.argument("task_id")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def cancel(task_id, project_dir):
    """Cancel a pending or running task in the project store.

    This edits the saved task file only. A `taskrelay run` still in progress
    keeps its own records and overwrites the change on its next save, so
    stop that run first.
    """
    config = _load_config(project_dir, None, False)
    renderer = TaskRenderer(console)
    with Orchestrator.from_config(config) as orch:
        try:
            task = orch.cancel(task_id)
        except TaskRelayError as e:
            renderer.render_error(str(e))
            sys.exit(1)
        renderer.render_result(task)
        console.print("  [dim]Recorded in the task file; a `taskrelay run` already in "
                      "progress will not see this.[/dim]")


@cli.command("test-connection")
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def test_connection(model, project_dir):
    """Send a tiny connection check to the generation service."""
    config = _load_config(project_dir, model, False)
    preset = config.get_active_preset()
    executor = DelegationExecutor(LLMAdapter(**preset.get_llm_kwargs()))
    outcome = executor.test_connection()
    if outcome["success"]:
        console.print(f"  [green]✓[/green] {preset.name} ({preset.model}): "
                      f"{escape(outcome['response'].strip())}")
    else:
        console.print(f"  [red]✗[/red] {preset.name} ({preset.model}): {escape(outcome['error'])}")
        sys.exit(1)


@cli.group("config")
def config_cmd():
    """Show or change project settings."""


@config_cmd.command("show")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def config_show(project_dir):
    """Print the effective settings and the file they came from."""
    config = Config.load(project_dir)
    rows = [
        (key, getattr(config, spec.field_name), spec.description)
        for key, spec in CONFIG_FIELDS.items()
    ]
    TaskRenderer(console).render_config(rows, config.source or "built-in defaults")


@config_cmd.command("set")
@click.argument("key", type=click.Choice(list(CONFIG_FIELDS)))
@click.argument("value")
@click.option("--project-dir", "-d", default=".", help="Project directory")
def config_set(key, value, project_dir):
    """Validate one setting and write it to the project config file."""
    config = Config.load(project_dir)
    ok, message = config.set_config_value(key, value)
    if not ok:
        TaskRenderer(console).render_error(f"{key}: {message}")
        sys.exit(1)
    target = Path(project_dir).resolve() / PROJECT_CONFIG_NAME
    config.save(str(target))
    current = getattr(config, CONFIG_FIELDS[key].field_name)
    console.print(f"  [green]✓[/green] {key} = {escape(str(current))} [dim]({target})[/dim]")


@cli.command()
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(project_dir, force):
    """Write a starter project config file."""
    target = Path(project_dir).resolve() / PROJECT_CONFIG_NAME
    if target.exists() and not force:
        console.print(f"  [yellow]{target} already exists[/yellow] (use --force)")
        sys.exit(1)
    config = Config.load(project_dir)
    config.save(str(target))
    console.print(f"  [green]✓[/green] Wrote {target}")


if __name__ == "__main__":
    cli()
