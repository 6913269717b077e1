"""Output formatters for lockaudit reports."""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..core.advisory import Advisory, Severity
from ..core.report import Report, ReportedFinding
from ..utils.logging import get_logger

SEVERITY_STYLES = {
    Severity.CRITICAL: "red bold",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "blue",
    Severity.NONE: "white",
    Severity.UNKNOWN: "dim",
}


class ConsoleFormatter:
    """Rich console formatter for audit results."""

    def __init__(self, console: Optional[Console] = None) -> None:
        """Initialize the console formatter.

        Args:
            console: Rich console instance
        """
        self.console = console or Console()
        self.logger = get_logger("ConsoleFormatter")

    def format_report(self, report: Report, dependency_count: int, advisory_count: int) -> None:
        """Display the summary panel followed by the findings tables.

        Args:
            report: Audit report
            dependency_count: Number of lockfile entries scanned
            advisory_count: Number of advisories loaded
        """
        self.console.print(self._create_summary_panel(report, dependency_count, advisory_count))

        vulnerabilities = report.vulnerabilities
        if vulnerabilities:
            self.console.print(self._create_findings_table("Vulnerabilities Found", vulnerabilities))

        for kind, findings in report.warnings.items():
            self.console.print(self._create_findings_table(f"Warning: {kind}", findings))

        if not report.has_findings:
            self.console.print(Panel("No vulnerabilities found!", style="green"))

    def _create_summary_panel(self, report: Report, dependency_count: int, advisory_count: int) -> Panel:
        summary = report.summary
        if summary.vulnerabilities:
            style = "red"
            title = f"Found {summary.vulnerabilities} vulnerabilities!"
        elif summary.warnings:
            style = "yellow"
            title = f"Found {summary.warnings} warnings"
        else:
            style = "green"
            title = "No vulnerabilities found"

        severities = ", ".join(
            f"{severity.label}: {count}" for severity, count in summary.by_severity if count
        ) or "none"
        content = (
            f"Advisories loaded: {advisory_count}\n"
            f"Dependencies scanned: {dependency_count}\n"
            f"Vulnerable dependencies: {summary.vulnerable_packages}\n"
            f"Vulnerabilities: {summary.vulnerabilities}\n"
            f"Warnings: {summary.warnings}\n"
            f"By severity: {severities}"
        )
        return Panel(content, title=title, style=style)

    def _create_findings_table(self, title: str, findings: Tuple[ReportedFinding, ...]) -> Table:
        table = Table(title=escape(title))

        table.add_column("Package", style="cyan", no_wrap=True)
        table.add_column("Version", style="blue")
        table.add_column("ID", style="red", no_wrap=True)
        table.add_column("Severity")
        table.add_column("Title", style="white")
        table.add_column("Solution", style="green")

        for finding in findings:
            title_text = finding.title or "-"
            table.add_row(
                Text(finding.package),
                Text(finding.version),
                Text(finding.advisory_id),
                Text(finding.severity.label, style=SEVERITY_STYLES[finding.severity]),
                Text(title_text[:60] + "..." if len(title_text) > 60 else title_text),
                Text(self._solution(finding)),
            )

        return table

    @staticmethod
    def _solution(finding: ReportedFinding) -> str:
        if finding.patched_ranges:
            return "upgrade to " + " or ".join(finding.patched_ranges)
        return "no fixed upgrade is available"

    def format_advisory(self, advisory: Advisory) -> None:
        """Display one advisory in full."""
        lines = [
            f"[bold]ID:[/bold] {escape(advisory.id)}",
            f"[bold]Package:[/bold] {escape(advisory.package)}",
            f"[bold]Severity:[/bold] {advisory.severity.label}",
        ]
        if advisory.published:
            lines.append(f"[bold]Date:[/bold] {advisory.published.isoformat()}")
        if advisory.aliases:
            lines.append(f"[bold]Aliases:[/bold] {escape(', '.join(advisory.aliases))}")
        if advisory.informational:
            lines.append(f"[bold]Informational:[/bold] {escape(advisory.informational)}")
        if advisory.is_withdrawn:
            withdrawn = advisory.withdrawn_date.isoformat() if advisory.withdrawn_date else "yes"
            lines.append(f"[bold]Withdrawn:[/bold] {withdrawn}")
        if advisory.url:
            lines.append(f"[bold]URL:[/bold] {escape(advisory.url)}")
        lines.append(f"[bold]Affected:[/bold] {escape(' | '.join(str(r) for r in advisory.affected_ranges))}")
        lines.append(
            f"[bold]Patched:[/bold] {escape(' | '.join(str(r) for r in advisory.patched_ranges) or 'none')}"
        )
        if advisory.unaffected_ranges:
            lines.append(f"[bold]Unaffected:[/bold] {escape(' | '.join(str(r) for r in advisory.unaffected_ranges))}")
        if advisory.description:
            lines.append("")
            lines.append(escape(advisory.description))

        style = "yellow" if advisory.informational or advisory.is_withdrawn else "red"
        self.console.print(Panel("\n".join(lines), title=escape(advisory.title or advisory.id), style=style))

    def format_error(self, error: str, details: Optional[str] = None) -> None:
        """Format and display error message.

        Args:
            error: Error message
            details: Optional error details
        """
        content = f"[bold red]Error:[/bold red] {escape(error)}"
        if details:
            content += f"\n\n[dim]{escape(details)}[/dim]"

        self.console.print(Panel(content, style="red"))

    def format_info(self, message: str, title: Optional[str] = None) -> None:
        self.console.print(Panel(message, title=title, style="blue"))


class JSONFormatter:
    """JSON formatter for audit results."""

    def __init__(self, output_file: Optional[Path] = None) -> None:
        """Initialize the JSON formatter.

        Args:
            output_file: Optional output file path
        """
        self.output_file = output_file
        self.logger = get_logger("JSONFormatter")

    def format_report(self, report: Report, dependency_count: int) -> Dict[str, Any]:
        """Format a report as a JSON-ready mapping.

        The key order is fixed and there are no timestamps, so identical
        inputs render to identical bytes.

        Args:
            report: Audit report
            dependency_count: Number of lockfile entries scanned

        Returns:
            Mapping with ``lockfile``, ``vulnerabilities``, ``warnings`` and ``summary``
        """
        return {"lockfile": {"dependency-count": dependency_count}, **report.to_dict()}

    def format_error(self, error: str, details: Optional[str] = None) -> Dict[str, Any]:
        return {"error": {"message": error, "details": details}}

    @staticmethod
    def render(results: Dict[str, Any]) -> str:
        return json.dumps(results, indent=2, ensure_ascii=False)

    def save_results(self, results: Dict[str, Any], output_file: Optional[Path] = None) -> None:
        """Save results to JSON file.

        Args:
            results: Results dictionary
            output_file: Output file path (uses instance default if None)
        """
        file_path = output_file or self.output_file
        if not file_path:
            raise ValueError("No output file specified")

        try:
            Path(file_path).write_text(self.render(results) + "\n", encoding="utf-8")
            self.logger.info(f"Results saved to {file_path}")
        except OSError as e:
            self.logger.error(f"Failed to save results to {file_path}: {e}")
            raise
