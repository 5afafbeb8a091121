"""
VulnSweep command line interface.

Usage:
    vulnsweep scan packages.json
    vulnsweep scan packages.yaml --mode comprehensive --name "Release audit"
    vulnsweep tasks
    vulnsweep resume scan_20250101_120000_1a2b3c4d
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import click
import yaml
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .core.logging_config import configure_logging
from .core.manager import ScanManager
from .core.notifier import Notifier
from .core.settings import Settings, SettingsError
from .core.task import DEFAULT_SCAN_CONFIGS, PackageKind, PackageRef, ScanTask, TaskStatus


console = Console()

STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.PAUSED: "yellow",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "magenta",
}

SEVERITY_STYLES = {
    "CRITICAL": "bold red",
    "HIGH": "red",
    "MEDIUM": "yellow",
    "LOW": "cyan",
    "NONE": "dim",
}


class PackageFileError(click.ClickException):
    pass


def load_packages(path: Path) -> List[PackageRef]:
    """
    Read a package list from a JSON or YAML file.

    The document is either a list of {name, version, kind} entries or a
    mapping with such a list under "packages". kind defaults to "direct".
    """
    try:
        with path.open("r") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise PackageFileError(f"Cannot read {path}: {e}")

    if isinstance(data, dict):
        data = data.get("packages")
    if not isinstance(data, list):
        raise PackageFileError(f"{path}: expected a list of packages")

    packages = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict) or not entry.get("name"):
            raise PackageFileError(f"{path}: entry {i} needs at least a name")
        try:
            kind = PackageKind(str(entry.get("kind", "direct")).lower())
        except ValueError:
            raise PackageFileError(f"{path}: entry {i} has unknown kind {entry.get('kind')!r}")
        packages.append(PackageRef(name=str(entry["name"]), version=str(entry.get("version", "")), kind=kind))

    return packages


class ConsoleNotifier(Notifier):
    """Prints task notifications to the terminal"""

    def on_task_completed(self, task: ScanTask, summary: str) -> None:
        console.print(f"[green]✓[/green] {summary}")

    def on_task_failed(self, task: ScanTask) -> None:
        console.print(f"[red]✗ {task.name} failed:[/red] {task.error}")

    def on_high_severity_found(self, task: ScanTask, count: int) -> None:
        console.print(f"[bold red]⚠ {count} high-severity vulnerabilities in {task.name}[/bold red]")


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _manager(settings: Settings) -> ScanManager:
    return ScanManager(settings, notifier=ConsoleNotifier())


def _require_owner(manager: ScanManager) -> None:
    """Refuse to change state owned by another running vulnsweep process"""
    if manager.read_only:
        owner = manager.lock_owner or "unknown"
        raise click.ClickException(
            f"Task state is in use by another vulnsweep process (pid {owner}). "
            "Stop that process (Ctrl-C pauses its scan) and try again."
        )


def _read_only_notice(manager: ScanManager) -> None:
    if manager.read_only:
        console.print(
            f"[yellow]Read-only:[/yellow] another vulnsweep process (pid {manager.lock_owner or 'unknown'}) "
            "owns the task state; statuses are as it last saved them"
        )


def _run(coro):
    """Run a coroutine, turning Ctrl-C into a clean exit"""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted - running scan saved as paused[/yellow]")
        sys.exit(130)


@click.group()
@click.version_option(version=__version__, prog_name="VulnSweep")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML configuration file")
@click.option("--state-file", type=click.Path(dir_okay=False), help="Task state file (overrides the configuration)")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option("--json-logs", is_flag=True, default=False, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx, config_path, state_file, log_level, json_logs):
    """
    VulnSweep - Background dependency vulnerability scanner

    Scans package lists against the NVD, survives restarts, and can be
    paused, resumed, or cancelled at any time.
    """
    try:
        settings = Settings.load(config_path)
    except SettingsError as e:
        raise click.ClickException(str(e))

    if state_file:
        settings.store.state_file = state_file
    if log_level:
        settings.logging.level = log_level
    if json_logs:
        settings.logging.json_output = True

    configure_logging(settings.logging.level, settings.logging.json_output)

    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("packages_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", default=None, help="Task display name")
@click.option(
    "--mode",
    type=click.Choice(sorted(DEFAULT_SCAN_CONFIGS)),
    default="balanced",
    show_default=True,
    help="Which dependency kinds to scan",
)
@click.option("--no-wait", is_flag=True, default=False, help="Queue the task as pending and exit")
@click.pass_context
def scan(ctx, packages_file: Path, name: Optional[str], mode: str, no_wait: bool):
    """
    Scan the packages listed in PACKAGES_FILE.

    Example:
        vulnsweep scan packages.json --mode fast
    """
    config = DEFAULT_SCAN_CONFIGS[mode]
    packages = config.filter_packages(load_packages(packages_file))
    if not packages:
        raise click.ClickException(f"No packages selected by mode '{mode}'")

    console.print(f"[green]Packages:[/green] {len(packages)} ({mode})")
    _run(_scan(_settings(ctx), packages, name, config, no_wait))


async def _scan(settings: Settings, packages, name, config, no_wait: bool) -> None:
    async with _manager(settings) as manager:
        _require_owner(manager)
        task_id = await manager.orchestrator.create_task(
            name, packages, config, start_immediately=not no_wait
        )
        task = manager.orchestrator.get_task(task_id)
        console.print(f"[green]Task:[/green] {task.name} [dim]({task_id})[/dim]")
        console.print(f"[green]Estimated duration:[/green] ~{task.estimated_duration_minutes} min")

        if no_wait:
            console.print(f"Queued. Start it with [bold]vulnsweep resume {task_id}[/bold]")
            return

        await _watch(manager, task_id)


async def _watch(manager: ScanManager, task_id: str) -> None:
    """Render live progress until the task leaves RUNNING"""
    orchestrator = manager.orchestrator
    task = orchestrator.get_task(task_id)

    with manager.store.state_changes.subscribe() as updates, Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        bar = progress.add_task(task.progress.current_label, total=task.total, completed=task.progress.current)

        async for snapshot in updates:
            current = next(
                (t for t in snapshot.active + snapshot.history if t.task_id == task_id),
                None,
            )
            if current is None:
                break
            progress.update(bar, completed=current.progress.current, description=current.progress.current_label)
            if current.status is not TaskStatus.RUNNING:
                break

    await orchestrator.wait_for_idle()
    _print_outcome(orchestrator.get_task(task_id))
    _print_client_stats(orchestrator.get_status()["client"])


def _print_client_stats(client: dict) -> None:
    cache = client["cache"]
    rate_limit = client["rate_limit"]
    console.print(
        f"[dim]NVD lookups: {client['remote_lookups']} ok, {client['failed_lookups']} failed; "
        f"cache hits: {cache['hits']}; "
        f"requests in window: {rate_limit['requests_made']}/{rate_limit['config']['max_requests']}[/dim]"
    )


def _print_outcome(task: Optional[ScanTask]) -> None:
    if task is None:
        console.print("[yellow]Task no longer exists[/yellow]")
        return

    style = STATUS_STYLES[task.status]
    console.print(f"\n[{style}]Task {task.status.value}[/{style}]")
    if task.status is TaskStatus.COMPLETED:
        _print_results(task)
    elif task.status is TaskStatus.FAILED:
        console.print(f"[red]Error:[/red] {task.error}")


def _print_results(task: ScanTask) -> None:
    console.print(
        f"Found [bold]{task.vulnerability_count}[/bold] vulnerabilities "
        f"in [bold]{task.vulnerable_package_count}[/bold] of {task.total} packages"
    )
    if not task.vulnerability_count:
        return

    table = Table(title=task.name)
    table.add_column("Package", style="cyan", no_wrap=True)
    table.add_column("CVE", no_wrap=True)
    table.add_column("Severity")
    table.add_column("CVSS", justify="right")
    table.add_column("Fixed in")

    for result in task.results or []:
        for vuln in result.vulnerabilities:
            severity = vuln.severity.value
            table.add_row(
                result.package_name,
                vuln.cve_id,
                f"[{SEVERITY_STYLES.get(severity, '')}]{severity}[/]",
                f"{vuln.cvss_score:.1f}",
                vuln.fixed_version or "-",
            )

    console.print(table)


@cli.command()
@click.argument("task_id")
@click.pass_context
def resume(ctx, task_id: str):
    """Resume a paused (or pending) task and follow its progress"""
    _run(_resume(_settings(ctx), task_id))


async def _resume(settings: Settings, task_id: str) -> None:
    async with _manager(settings) as manager:
        _require_owner(manager)
        orchestrator = manager.orchestrator
        task = orchestrator.get_task(task_id)
        if task is None:
            raise click.ClickException(f"Unknown task: {task_id}")
        if not task.can_transition(TaskStatus.RUNNING):
            raise click.ClickException(f"Task is {task.status.value} and cannot be resumed")

        await orchestrator.start_task(task_id)
        console.print(f"[green]Resuming[/green] {task.name} at {task.next_index}/{task.total}")
        await _watch(manager, task_id)


@cli.command()
@click.argument("task_id")
@click.pass_context
def pause(ctx, task_id: str):
    """Pause a task"""
    _run(_change_status(_settings(ctx), task_id, "pause"))


@cli.command()
@click.argument("task_id")
@click.pass_context
def cancel(ctx, task_id: str):
    """Cancel a running or paused task"""
    _run(_change_status(_settings(ctx), task_id, "cancel"))


async def _change_status(settings: Settings, task_id: str, action: str) -> None:
    async with _manager(settings) as manager:
        _require_owner(manager)
        orchestrator = manager.orchestrator
        before = orchestrator.get_task(task_id)
        if before is None:
            raise click.ClickException(f"Unknown task: {task_id}")

        if action == "pause":
            await orchestrator.pause_task(task_id)
        else:
            await orchestrator.cancel_task(task_id)

        after = orchestrator.get_task(task_id)
        if after is None or after.status is before.status:
            console.print(f"[yellow]No change:[/yellow] task is {before.status.value}")
        else:
            console.print(f"Task {task_id}: {before.status.value} -> [bold]{after.status.value}[/bold]")


@cli.command()
@click.pass_context
def tasks(ctx):
    """List active and recent tasks"""
    _run(_tasks(_settings(ctx)))


async def _tasks(settings: Settings) -> None:
    async with _manager(settings) as manager:
        _read_only_notice(manager)
        store = manager.store
        stats = store.stats()

        table = Table(title="Scan Tasks")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Vulns", justify="right")
        table.add_column("Created")

        for task in store.active + store.history:
            style = STATUS_STYLES[task.status]
            table.add_row(
                task.task_id,
                task.name,
                f"[{style}]{task.status.value}[/{style}]",
                f"{task.progress.current}/{task.total} ({task.progress.percentage:.0f}%)",
                str(task.vulnerability_count) if task.status is TaskStatus.COMPLETED else "-",
                task.created_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)
        console.print(
            f"active={stats.active} running={stats.running} paused={stats.paused} "
            f"completed={stats.completed} failed={stats.failed}"
        )


@cli.command()
@click.argument("task_id")
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), help="Save results to JSON file")
@click.pass_context
def show(ctx, task_id: str, output: Optional[Path]):
    """Show a task and its results"""
    _run(_show(_settings(ctx), task_id, output))


async def _show(settings: Settings, task_id: str, output: Optional[Path]) -> None:
    async with _manager(settings) as manager:
        _read_only_notice(manager)
        task = manager.orchestrator.get_task(task_id)
        if task is None:
            raise click.ClickException(f"Unknown task: {task_id}")

        style = STATUS_STYLES[task.status]
        console.print(f"[bold]{task.name}[/bold] [dim]({task.task_id})[/dim]")
        console.print(f"Status: [{style}]{task.status.value}[/{style}]  mode: {task.config.mode}")
        console.print(f"Progress: {task.progress.current}/{task.total} - {task.progress.current_label}")
        if task.actual_duration_minutes is not None:
            console.print(f"Duration: {task.actual_duration_minutes} min")
        if task.error:
            console.print(f"[red]Error:[/red] {task.error}")

        if task.status is TaskStatus.COMPLETED:
            _print_results(task)

            if output:
                results = {
                    "task_id": task.task_id,
                    "name": task.name,
                    "results": [
                        {
                            "package": r.package_name,
                            "vulnerabilities": [v.to_dict() for v in r.vulnerabilities],
                        }
                        for r in task.results or []
                    ],
                }
                output.parent.mkdir(parents=True, exist_ok=True)
                with open(output, "w") as f:
                    json.dump(results, f, indent=2)
                console.print(f"\n[green]Results saved to:[/green] {output}")


@cli.command()
@click.argument("task_id")
@click.pass_context
def delete(ctx, task_id: str):
    """Delete a finished task from history"""
    _run(_delete(_settings(ctx), task_id))


async def _delete(settings: Settings, task_id: str) -> None:
    async with _manager(settings) as manager:
        _require_owner(manager)
        if await manager.orchestrator.delete_task(task_id):
            console.print(f"Deleted {task_id}")
        else:
            raise click.ClickException(f"No finished task with id {task_id}")


@cli.command("clear-history")
@click.pass_context
def clear_history(ctx):
    """Remove every finished task"""
    _run(_clear_history(_settings(ctx)))


async def _clear_history(settings: Settings) -> None:
    async with _manager(settings) as manager:
        _require_owner(manager)
        removed = await manager.orchestrator.clear_history()
        console.print(f"Removed {removed} tasks from history")


@cli.command()
@click.pass_context
def cleanup(ctx):
    """Evict expired tasks now"""
    _run(_cleanup(_settings(ctx)))


async def _cleanup(settings: Settings) -> None:
    async with _manager(settings) as manager:
        _require_owner(manager)
        # Opening the manager already ran one sweep
        await manager.manual_cleanup()
        console.print(f"Evicted {manager.sweeper.total_evicted} expired tasks")
        console.print(f"Next cleanup: {manager.next_cleanup_time().strftime('%Y-%m-%d %H:%M:%S %Z')}")


@cli.command()
def version():
    """Show version information"""
    console.print(f"\n[bold cyan]VulnSweep v{__version__}[/bold cyan]")
    console.print("[cyan]Background dependency vulnerability scanning[/cyan]\n")


if __name__ == "__main__":
    cli()
