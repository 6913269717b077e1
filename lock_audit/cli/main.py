"""Main CLI interface for lockaudit."""

from contextlib import nullcontext
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .. import __version__
from ..config import AuditConfig, load_config
from ..core.lockfile import Lockfile, supported_versions
from ..core.matcher import VulnerabilityMatcher
from ..core.report import build_report
from ..database.fetch import ensure_fresh, fetch_snapshot, read_snapshot_info
from ..database.sources import load_directory, registry
from ..errors import LockAuditError, NotFoundError
from ..output.formatters import ConsoleFormatter, JSONFormatter
from ..utils.logging import get_logger, setup_logging
from ..utils.paths import find_lockfile
from ..utils.performance import PerformanceMonitor

EXIT_VULNERABLE = 1
EXIT_ERROR = 2

app = typer.Typer(
    name="lockaudit",
    help="Audit Cargo.lock files for crates with security vulnerabilities",
    add_completion=False
)

console = Console()
error_console = Console(stderr=True)
logger = get_logger("CLI")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lockaudit {__version__}")
        raise typer.Exit()


@app.callback()
def cli(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit"
    )
) -> None:
    """Audit Cargo.lock files for crates with security vulnerabilities."""


def _fail(error: Exception, json_output: bool = False) -> NoReturn:
    """Log an error once, render it and exit with the error status."""
    logger.error(str(error))
    if json_output:
        typer.echo(JSONFormatter.render(JSONFormatter().format_error(str(error), type(error).__name__)))
    else:
        ConsoleFormatter(error_console).format_error(str(error))
    raise typer.Exit(EXIT_ERROR)


def _prepare_database(config: AuditConfig) -> None:
    """Fetch the snapshot when enabled, otherwise check the local copy."""
    if config.fetch:
        info = fetch_snapshot(
            config.database_path,
            url=config.database_url,
            expected_sha256=config.database_sha256,
            lock_timeout=config.lock_timeout,
        )
        logger.info(f"Fetched advisory database (sha256 {info.sha256})")
        return

    if not config.database_path.is_dir():
        raise NotFoundError(
            f"advisory database not found at {config.database_path} (run 'lockaudit fetch')"
        )
    if config.stale_after_days is not None:
        ensure_fresh(config.database_path, config.stale_after_days)


@app.command()
def audit(
    path: Path = typer.Argument(
        Path("."),
        help="Lockfile, or directory containing Cargo.lock"
    ),
    database_path: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to the local advisory database"
    ),
    url: Optional[str] = typer.Option(
        None,
        "--url",
        help="URL of the advisory database archive"
    ),
    no_fetch: bool = typer.Option(
        False,
        "--no-fetch",
        help="Use the local advisory database without fetching"
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Write the report as JSON to stdout"
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output file for JSON results"
    ),
    ignore: Optional[List[str]] = typer.Option(
        None,
        "--ignore",
        help="Advisory id to ignore (repeatable)"
    ),
    include_withdrawn: bool = typer.Option(
        False,
        "--include-withdrawn",
        help="Also match withdrawn advisories"
    ),
    deny_warnings: bool = typer.Option(
        False,
        "--deny-warnings",
        help="Exit with status 1 on informational warnings too"
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        min=1,
        help="Number of matcher worker threads"
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Configuration file (default: lockaudit.toml or .cargo/audit.toml)"
    ),
    permissive: bool = typer.Option(
        False,
        "--permissive",
        help="Skip invalid advisories instead of failing"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging"
    ),
    performance: bool = typer.Option(
        False,
        "--performance",
        help="Show performance summary"
    ),
) -> None:
    """Audit a lockfile against the advisory database.

    Exits with 0 when nothing is found, 1 when vulnerabilities are found and
    2 on errors.
    """
    setup_logging(verbose=verbose)
    monitor = PerformanceMonitor(enable_memory_tracking=True) if performance else None

    def measure(name: str):
        return monitor.measure(name) if monitor else nullcontext()

    try:
        config = load_config(config_path).replace(
            database_path=database_path,
            database_url=url,
            include_withdrawn=include_withdrawn or None,
            permissive=permissive or None,
            max_workers=workers,
        )
        if no_fetch:
            config = config.replace(fetch=False)

        lockfile_path = find_lockfile(path)
        with measure("parse lockfile"):
            lockfile = Lockfile.load(lockfile_path)

        with measure("prepare database"):
            _prepare_database(config)

        with measure("load advisories"):
            result = load_directory(
                config.database_path,
                permissive=config.permissive,
                show_progress=not json_output,
            )
        for error in result.errors:
            logger.warning(f"Skipped: {error}")

        matcher = VulnerabilityMatcher(config.match_options(ignore or ()), monitor)
        findings = matcher.find_vulnerabilities(result.store, lockfile)

        with measure("build report"):
            report = build_report(findings)
    except (LockAuditError, OSError) as e:
        _fail(e, json_output)

    json_formatter = JSONFormatter(output)
    if json_output or output:
        results = json_formatter.format_report(report, len(lockfile))
        if json_output:
            typer.echo(json_formatter.render(results))
        if output:
            try:
                json_formatter.save_results(results)
            except OSError as e:
                _fail(e, json_output)

    if not json_output:
        ConsoleFormatter(console).format_report(report, len(lockfile), len(result.store))

    if monitor:
        monitor.print_summary()
        monitor.stop()

    summary = report.summary
    if summary.vulnerabilities or (deny_warnings and summary.warnings):
        raise typer.Exit(EXIT_VULNERABLE)


@app.command()
def fetch(
    database_path: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to the local advisory database"
    ),
    url: Optional[str] = typer.Option(
        None,
        "--url",
        help="URL of the advisory database archive"
    ),
    sha256: Optional[str] = typer.Option(
        None,
        "--sha256",
        help="Expected SHA-256 of the archive"
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Download or refresh the local advisory database."""
    setup_logging(verbose=verbose)

    try:
        config = load_config(config_path).replace(
            database_path=database_path,
            database_url=url,
            database_sha256=sha256,
        )
        with console.status(f"Fetching {config.database_url}..."):
            info = fetch_snapshot(
                config.database_path,
                url=config.database_url,
                expected_sha256=config.database_sha256,
                lock_timeout=config.lock_timeout,
            )
    except (LockAuditError, OSError) as e:
        _fail(e)

    console.print(f"[green]Advisory database installed at {config.database_path}[/green]")
    console.print(f"[dim]sha256 {info.sha256}[/dim]")


@app.command()
def show(
    advisory_id: str = typer.Argument(..., help="Advisory id or alias"),
    database_path: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to the local advisory database"
    ),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Configuration file"
    ),
    permissive: bool = typer.Option(
        False,
        "--permissive",
        help="Skip invalid advisories instead of failing"
    ),
) -> None:
    """Show one advisory by id or alias."""
    setup_logging()

    try:
        config = load_config(config_path).replace(database_path=database_path, permissive=permissive or None)
        result = load_directory(config.database_path, permissive=config.permissive)
        advisories = result.store.lookup(advisory_id)
    except (LockAuditError, OSError) as e:
        _fail(e)

    formatter = ConsoleFormatter(console)
    for advisory in advisories:
        formatter.format_advisory(advisory)


@app.command()
def info(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Configuration file"
    ),
) -> None:
    """Show lockaudit information."""
    try:
        config = load_config(config_path)
        snapshot = read_snapshot_info(config.database_path)
    except (LockAuditError, OSError) as e:
        _fail(e)

    console.print(Panel.fit(
        f"[bold blue]lockaudit {__version__}[/bold blue]\n"
        "Audits Cargo.lock files against a local advisory database",
        title="Information"
    ))

    versions = ", ".join(str(version) for version in supported_versions())
    console.print(f"\n[bold]Lockfile Versions:[/bold] {versions}")
    console.print(f"[bold]Advisory Formats:[/bold] {', '.join(registry.suffixes())}")
    console.print(f"[bold]Database:[/bold] {config.database_path}")
    if snapshot:
        console.print(f"[bold]Fetched:[/bold] {snapshot.fetched_at.isoformat()} from {snapshot.url}")
    else:
        console.print("[bold]Fetched:[/bold] never")


def main() -> None:
    """Main entry point for lockaudit CLI."""
    app()


if __name__ == "__main__":
    main()
