"""CLI interface for webperf."""

import asyncio
import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from webperf import __version__
from webperf.config import (
    ConfigError,
    Service,
    Settings,
    WebperfConfig,
    create_default_settings,
    find_settings_path,
    load_config,
    load_settings,
)
from webperf.measurement import (
    AuditError,
    BatchResult,
    BatchScheduler,
    BrowserLaunchError,
    ChromeHost,
    LighthouseAuditor,
    MeasureOptions,
    MeasurementRun,
    MeasurementRunner,
    PageLoadError,
    ScenarioSelectionError,
    ScenarioSuccess,
    select_scenarios,
)
from webperf.measurement.batch import apply_note_prefix
from webperf.results import Comparison, ResultNotFoundError, ResultStore
from webperf.services import ProcessManager, ProcessRegistry

# Configure logging with Rich
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
)

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="webperf",
    help="Repeatable Lighthouse performance measurements with managed dev services",
    no_args_is_help=True,
)
settings_app = typer.Typer(help="Inspect or create the settings file")
app.add_typer(settings_app, name="settings")

console = Console()

USER_ERRORS = (
    ConfigError,
    ScenarioSelectionError,
    ResultNotFoundError,
    AuditError,
    BrowserLaunchError,
    PageLoadError,
)


@contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except USER_ERRORS as exc:
        console.print(f"[red]✗ {exc}[/red]")
        raise typer.Exit(1) from exc


def _raise_interrupt(signum, frame):  # pragma: no cover - signal handler
    raise KeyboardInterrupt


@contextmanager
def _teardown_on_interrupt(manager: ProcessManager, services: List[Service], exit_code: int = 130) -> Iterator[None]:
    """Stop tracked services when the user interrupts or the process is terminated."""
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted, stopping services...[/yellow]")
        asyncio.run(manager.stop_all(services))
        raise typer.Exit(exit_code)
    finally:
        signal.signal(signal.SIGTERM, previous)


def _load() -> Tuple[Settings, WebperfConfig]:
    settings = load_settings()
    root = logging.getLogger()
    if root.level != logging.DEBUG:
        root.setLevel(settings.log_level)
    return settings, load_config(settings)


def _build_runner(settings: Settings, config: WebperfConfig) -> MeasurementRunner:
    auditor = LighthouseAuditor(settings.lighthouse_path)
    return MeasurementRunner(
        auditor,
        lambda: ChromeHost(settings.chrome_path),
        apply_overrides=config.apply_overrides,
        pause_seconds=settings.run_pause_seconds,
    )


def _build_manager(settings: Settings) -> ProcessManager:
    return ProcessManager(ProcessRegistry(settings.registry_path))


def _require_services(config: WebperfConfig) -> None:
    if config.services:
        return
    console.print("[red]✗ No services configured.[/red]")
    console.print("  Declare services in the settings file or in the Python module named by config_path.")
    console.print("  For measure-only mode, use: [cyan]webperf measure <url>[/cyan]")
    raise typer.Exit(1)


def _score_style(score: float) -> str:
    if score >= 90:
        return "green"
    if score >= 50:
        return "yellow"
    return "red"


def _print_results(run: MeasurementRun, options: MeasureOptions) -> None:
    averages = run.averages
    table = Table(title="Performance Results", show_header=True, header_style="bold cyan")
    table.add_column("Metric", width=32)
    table.add_column("Average", justify="right", width=12)
    table.add_column("Unit", justify="right", width=8)

    score = round(averages.score)
    table.add_row("Performance Score", f"[{_score_style(score)}]{score}[/{_score_style(score)}]", "/100")
    table.add_row("First Contentful Paint (FCP)", f"{averages.fcp:.0f}", "ms")
    table.add_row("Largest Contentful Paint (LCP)", f"{averages.lcp:.0f}", "ms")
    table.add_row("Total Blocking Time (TBT)", f"{averages.tbt:.0f}", "ms")
    table.add_row("Cumulative Layout Shift (CLS)", f"{averages.cls:.3f}", "")
    table.add_row("Speed Index", f"{averages.si:.0f}", "ms")
    console.print(table)
    console.print(f"  Score range: {run.min_score} - {run.max_score} (across {options.runs} runs)\n")

    if options.note:
        console.print(f"[magenta]Note: {options.note}[/magenta]\n")

    console.print("[magenta]Quick Interpretation:[/magenta]")
    if averages.tbt > 600:
        console.print("[red]  ⚠ TBT > 600ms - Main thread is heavily blocked. Look for long tasks.[/red]")
    elif averages.tbt > 200:
        console.print("[yellow]  ⚡ TBT 200-600ms - Some blocking. Room for improvement.[/yellow]")
    else:
        console.print("[green]  ✓ TBT < 200ms - Good interactivity![/green]")

    if averages.lcp > 4000:
        console.print("[red]  ⚠ LCP > 4s - Largest paint is slow. Check images/fonts.[/red]")
    elif averages.lcp > 2500:
        console.print("[yellow]  ⚡ LCP 2.5-4s - Needs improvement.[/yellow]")
    else:
        console.print("[green]  ✓ LCP < 2.5s - Good perceived load speed![/green]")


def _print_batch_summary(batch: BatchResult) -> None:
    console.print("\n[bold]Batch Summary[/bold]")
    console.print(f"  Total scenarios:  {batch.total_scenarios}")
    console.print(f"  Completed:        [green]{batch.completed}[/green]")
    failed_style = "red" if batch.failed else "white"
    console.print(f"  Failed:           [{failed_style}]{batch.failed}[/{failed_style}]")
    console.print(f"  Duration:         {batch.duration_ms / 1000:.1f}s\n")

    if not batch.results:
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Scenario", style="cyan")
    table.add_column("Result", justify="right", width=8)
    table.add_column("Detail", overflow="fold")
    for outcome in batch.results:
        if isinstance(outcome, ScenarioSuccess):
            score = outcome.summary.averages.score
            style = _score_style(score)
            table.add_row(outcome.scenario.id, f"[{style}]{score:.0f}[/{style}]", outcome.scenario.note or "")
        else:
            table.add_row(outcome.scenario.id, "[red]FAILED[/red]", outcome.error)
    console.print(table)


def _print_comparison(comparison: Comparison) -> None:
    before, after = comparison.before, comparison.after
    console.print("\n[bold blue]Comparison Results[/bold blue]\n")
    console.print(f"  [yellow]Before:[/yellow] {before.timestamp}{f' ({before.note!r})' if before.note else ''}")
    console.print(f"  [yellow]After:[/yellow]  {after.timestamp}{f' ({after.note!r})' if after.note else ''}\n")

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Metric", width=24)
    table.add_column("Before", justify="right", width=10)
    table.add_column("After", justify="right", width=10)
    table.add_column("Change", justify="right", width=18)

    for row in comparison.rows:
        sign = "+" if row.diff > 0 else ""
        style = "green" if row.improved else ("dim" if row.diff == 0 else "red")
        if row.metric == "cls":
            before_text, after_text = f"{row.before:.3f}", f"{row.after:.3f}"
            change = f"{sign}{row.diff:.3f}"
        else:
            before_text, after_text = f"{row.before:.0f}", f"{row.after:.0f}"
            percent = "n/a" if row.percent_change is None else f"{sign}{row.percent_change:.1f}%"
            change = f"{sign}{row.diff:.0f} ({percent})"
        table.add_row(row.label, before_text, after_text, f"[{style}]{change}[/{style}]")
    console.print(table)


def _print_overrides(config: WebperfConfig) -> None:
    if config.get_override_script is None:
        console.print("[yellow]No override script configured.[/yellow]")
        console.print("[dim]  Define get_override_script() in your config module to enable this feature.[/dim]")
        return
    console.print("\n[bold blue]Browser Console Overrides[/bold blue]\n")
    console.print("[yellow]Copy-paste this into the browser console:[/yellow]\n")
    console.print(config.get_override_script(), markup=False, highlight=False)


@app.callback()
def _main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@app.command()
def measure(
    url: Optional[str] = typer.Argument(None, help="URL to measure (defaults to the configured URL)"),
    runs: Optional[int] = typer.Option(None, "--runs", "-r", min=0, help="Number of Lighthouse runs"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Annotation stored with this run"),
):
    """Run Lighthouse performance measurements against a URL."""
    with _user_errors():
        settings, config = _load()
        options = MeasureOptions(
            url=url or config.default_url,
            runs=runs if runs is not None else config.default_runs,
            note=apply_note_prefix(note, settings.note_prefix),
            apply_overrides=False,
        )
        console.print(f"\n[bold blue]Lighthouse Performance Measurement[/bold blue] → [cyan]{options.url}[/cyan]\n")
        run = asyncio.run(_build_runner(settings, config).run(options))
        _print_results(run, options)
        session = ResultStore.from_settings(settings).save_results(options, run)
        console.print(f"[green]✓ Results saved to: {session.path}[/green]")


@app.command()
def batch(
    tag: List[str] = typer.Option([], "--tag", "-t", help="Only run scenarios carrying this tag (repeatable)"),
    scenario: Optional[str] = typer.Option(None, "--scenario", "-s", help="Run only this scenario id"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", min=1, help="Max parallel scenarios"),
    runs: Optional[int] = typer.Option(None, "--runs", "-r", min=0, help="Default runs for scenarios without one"),
):
    """Run the scenarios declared in settings."""
    with _user_errors():
        settings, config = _load()
        selected = select_scenarios(settings.scenarios, tags=tag, scenario_id=scenario)
        effective_concurrency = concurrency or settings.max_concurrency
        scheduler = BatchScheduler(
            _build_runner(settings, config),
            ResultStore.from_settings(settings),
            concurrency=effective_concurrency,
            default_runs=runs if runs is not None else config.default_runs,
            note_prefix=settings.note_prefix,
        )

        console.print(f"\n[bold blue]Batch Performance Test ({len(selected)} scenarios)[/bold blue]")
        if effective_concurrency > 1:
            console.print(f"[dim]  Concurrency: {effective_concurrency} (parallel - may affect accuracy)[/dim]")
        else:
            console.print("[dim]  Mode: Sequential (recommended for accurate results)[/dim]")
        console.print(f"[dim]  Scenarios: {', '.join(item.id for item in selected)}[/dim]\n")

        result = asyncio.run(scheduler.run(selected, tags=tag))
        _print_batch_summary(result)
    if result.failed:
        raise typer.Exit(1)


@app.command()
def start():
    """Start all configured services and keep them running until Ctrl+C."""
    with _user_errors():
        settings, config = _load()
    _require_services(config)
    manager = _build_manager(settings)

    async def _serve() -> None:
        await manager.ensure_ports_free(config.services)
        await manager.start_all_services(config.services)
        _print_overrides(config)
        console.print("\n[cyan]All services are starting. Press Ctrl+C to stop all.[/cyan]\n")
        await asyncio.Event().wait()

    with _teardown_on_interrupt(manager, config.services, exit_code=0):
        asyncio.run(_serve())


@app.command("start-measure")
def start_measure(
    url: Optional[str] = typer.Argument(None, help="URL to measure (defaults to the configured URL)"),
    runs: Optional[int] = typer.Option(None, "--runs", "-r", min=0, help="Number of Lighthouse runs"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Annotation stored with this run"),
):
    """Start services if needed, then measure with custom overrides applied."""
    with _user_errors():
        settings, config = _load()
    _require_services(config)
    manager = _build_manager(settings)
    options = MeasureOptions(
        url=url or config.default_url,
        runs=runs if runs is not None else config.default_runs,
        note=apply_note_prefix(note, settings.note_prefix),
        apply_overrides=True,
    )

    async def _start_and_measure() -> Optional[MeasurementRun]:
        if await manager.prober.wait_for_port(config.services[0].port, 1.0):
            logger.info("Services already running")
        else:
            if not await manager.start_and_wait(config.services, settings.service_ready_timeout):
                return None
            logger.info("Waiting %.0fs for services to stabilize...", settings.service_stabilize_seconds)
            await asyncio.sleep(settings.service_stabilize_seconds)
        return await _build_runner(settings, config).run(options)

    with _teardown_on_interrupt(manager, config.services), _user_errors():
        run = asyncio.run(_start_and_measure())
        if run is None:
            console.print("[red]✗ Services failed to start[/red]")
            raise typer.Exit(1)
        _print_results(run, options)
        session = ResultStore.from_settings(settings).save_results(options, run)
        console.print(f"[green]✓ Results saved to: {session.path}[/green]")

    console.print("\n[yellow]Services are still running. Stop with:[/yellow] webperf stop")


@app.command()
def stop():
    """Stop tracked services and anything still holding a configured port."""
    with _user_errors():
        settings, config = _load()
    report = asyncio.run(_build_manager(settings).stop_all(config.services))
    for pid, error in report.errors.items():
        console.print(f"[red]✗ Could not stop PID {pid}: {error}[/red]")
    for port in report.busy_ports:
        console.print(f"[yellow]⚠ Port {port} is still in use[/yellow]")
    if not report.ok:
        raise typer.Exit(1)
    console.print("[green]✓ All processes stopped.[/green]")


@app.command()
def status():
    """Show which configured services are running."""
    with _user_errors():
        settings, config = _load()
    statuses = asyncio.run(_build_manager(settings).get_status(config.services))
    if not statuses:
        console.print("  No services configured.")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Service", style="cyan")
    table.add_column("Port", justify="right", width=6)
    table.add_column("PID", justify="right", width=8)
    table.add_column("Status")
    for item in statuses:
        state = f"[green]✓ http://localhost:{item.port}/[/green]" if item.running else "[red]✗ not running[/red]"
        table.add_row(item.name, str(item.port), str(item.pid or "-"), state)
    console.print(table)

    running = len([item for item in statuses if item.running])
    style = "green" if running == len(statuses) else "yellow"
    console.print(f"[{style}]{running}/{len(statuses)} services running[/{style}]")


@app.command()
def overrides():
    """Print the browser console override script, if configured."""
    with _user_errors():
        _, config = _load()
    _print_overrides(config)


@app.command()
def results():
    """List saved measurement sessions, newest first."""
    with _user_errors():
        settings, _ = _load()
    store = ResultStore.from_settings(settings)
    sessions = store.list_sessions()
    if not sessions:
        console.print("[yellow]⚠ No results found yet.[/yellow]")
        console.print(f"[dim]  Results directory: {store.results_root}[/dim]")
        return

    table = Table(show_header=True, header_style="bold cyan", title=str(store.results_root))
    table.add_column("Session", style="green", no_wrap=True)
    table.add_column("Score", justify="right", width=6)
    table.add_column("Runs", justify="right", width=5)
    table.add_column("Note / URL", overflow="fold")
    for session in sessions:
        summary = session.summary
        score = round(summary.averages.score)
        style = _score_style(score)
        detail = f'[magenta]"{summary.note}"[/magenta]' if summary.note else summary.url
        table.add_row(session.name, f"[{style}]{score}[/{style}]", str(summary.runs), detail)
    console.print(table)


@app.command()
def logs():
    """List JSONL log files with their entry counts."""
    with _user_errors():
        settings, _ = _load()
    inventory = ResultStore.from_settings(settings).list_log_files()
    sections = (("Log Files", inventory.main), ("Tag Logs", inventory.tags), ("Scenario Logs", inventory.scenarios))
    for title, files in sections:
        console.print(f"\n[cyan]{title}:[/cyan]")
        if not files:
            console.print("[dim]  No log files yet.[/dim]")
            continue
        for info in files:
            label = info.name.replace(".batch", " (batch)")
            console.print(f"  [green]{label}[/green] - {info.entries} entries")


@app.command()
def last():
    """Show the most recent measurement session."""
    with _user_errors():
        settings, _ = _load()
    session = ResultStore.from_settings(settings).last_session()
    if session is None:
        console.print("[yellow]⚠ No results found yet.[/yellow]")
        return
    console.print(f"[cyan]Last Result: {session.name}[/cyan]\n")
    console.print_json(json.dumps(session.summary.to_dict()))


@app.command()
def compare(
    before: str = typer.Argument(..., help="Session name or path of the baseline"),
    after: str = typer.Argument(..., help="Session name or path to compare against the baseline"),
):
    """Compare two measurement sessions metric by metric."""
    with _user_errors():
        settings, _ = _load()
        comparison = ResultStore.from_settings(settings).compare_results(before, after)
    _print_comparison(comparison)


@settings_app.command("show")
def settings_show():
    """Print the effective settings."""
    with _user_errors():
        settings, config = _load()
    source = find_settings_path()
    console.print(f"[dim]Settings file:[/dim] {source or '(using defaults)'}\n")

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="dim")
    table.add_column("Value", overflow="fold")
    table.add_row("config_path", str(settings.config_path or "(not set)"))
    table.add_row("default_runs", str(config.default_runs))
    table.add_row("default_url", config.default_url)
    table.add_row("results_path", str(settings.results_path))
    table.add_row("jsonl_log_path", str(settings.measurements_log_path))
    table.add_row("registry_path", str(settings.registry_path))
    table.add_row("note_prefix", settings.note_prefix or "(none)")
    table.add_row("max_concurrency", str(settings.max_concurrency))
    table.add_row("scenarios", ", ".join(item.id for item in settings.scenarios) or "(none)")
    table.add_row("services", ", ".join(item.id for item in config.services) or "(none)")
    console.print(table)


@settings_app.command("init")
def settings_init(
    path: Optional[Path] = typer.Argument(None, help="Where to write the settings file"),
):
    """Create a settings file with default values."""
    created = create_default_settings(path)
    console.print(f"[green]✓ Created settings file: {created}[/green]")
    console.print("[yellow]Next steps:[/yellow]")
    console.print("  1. Put project-specific config (services, override hooks) in a Python module outside this repo")
    console.print("  2. Point config_path at it, or export WEBPERF_CONFIG_PATH")


@app.command()
def version():
    """Show version information."""
    console.print(f"[cyan]webperf[/cyan] v{__version__}")


def main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        logger.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main()
