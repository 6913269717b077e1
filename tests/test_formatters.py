"""Tests for console and JSON output formatters."""

import io
import json

import pytest
from rich.console import Console

from lock_audit.core.advisory import AdvisoryStore
from lock_audit.core.lockfile import Lockfile, LockfileEntry
from lock_audit.core.matcher import find_vulnerabilities
from lock_audit.core.report import build_report
from lock_audit.output.formatters import ConsoleFormatter, JSONFormatter


@pytest.fixture
def store():
    return AdvisoryStore.load([
        {
            "id": "RUSTSEC-2017-0004",
            "package": "base64",
            "patched_ranges": [">=0.5.2"],
            "severity": "critical",
            "title": "Integer overflow in [encode_config_buf]",
            "aliases": ["CVE-2017-1000430"],
            "date": "2017-05-03",
            "description": "Details [here].",
        },
        {"id": "RUSTSEC-2020-0036", "package": "failure", "informational": "unmaintained", "withdrawn": "2021-01-01"},
    ])


@pytest.fixture
def report(store):
    lockfile = Lockfile.from_entries([LockfileEntry("base64", "0.5.1"), LockfileEntry("failure", "0.1.8")])
    return build_report(find_vulnerabilities(store, lockfile))


def render_console():
    output = io.StringIO()
    return ConsoleFormatter(Console(file=output, width=200)), output


class TestConsoleFormatter:
    """Test rich console rendering."""

    def test_report_with_findings(self, report):
        formatter, output = render_console()
        formatter.format_report(report, dependency_count=2, advisory_count=2)
        text = output.getvalue()

        assert "Found 1 vulnerabilities!" in text
        assert "Vulnerabilities Found" in text
        assert "RUSTSEC-2017-0004" in text
        assert "upgrade to >=0.5.2" in text
        assert "[encode_config_buf]" in text
        assert "No vulnerabilities found!" not in text

    def test_empty_report(self):
        formatter, output = render_console()
        formatter.format_report(build_report([]), dependency_count=5, advisory_count=2)
        text = output.getvalue()

        assert "No vulnerabilities found!" in text
        assert "Dependencies scanned: 5" in text

    def test_format_advisory(self, store):
        formatter, output = render_console()
        formatter.format_advisory(store.get("RUSTSEC-2017-0004"))
        text = output.getvalue()

        assert "CVE-2017-1000430" in text
        assert "Date: 2017-05-03" in text
        assert "Details [here]." in text

    def test_format_withdrawn_advisory(self, store):
        formatter, output = render_console()
        formatter.format_advisory(store.get("RUSTSEC-2020-0036"))

        assert "Withdrawn: 2021-01-01" in output.getvalue()

    def test_format_error(self):
        formatter, output = render_console()
        formatter.format_error("lockfile not found: [x]", details="MalformedError")

        assert "Error: lockfile not found: [x]" in output.getvalue()


class TestJSONFormatter:
    """Test the JSON document."""

    def test_format_report(self, report):
        results = JSONFormatter().format_report(report, dependency_count=2)

        assert list(results) == ["lockfile", "vulnerabilities", "warnings", "summary"]
        assert results["lockfile"] == {"dependency-count": 2}
        assert results["vulnerabilities"]["count"] == 1
        assert results["warnings"] == {}

    def test_save_results(self, report, tmp_path):
        output = tmp_path / "report.json"
        formatter = JSONFormatter(output)
        results = formatter.format_report(report, dependency_count=2)

        formatter.save_results(results)
        assert json.loads(output.read_text()) == results

    def test_save_without_file(self):
        with pytest.raises(ValueError):
            JSONFormatter().save_results({})

    def test_format_error(self):
        assert JSONFormatter().format_error("boom", "FetchError") == {
            "error": {"message": "boom", "details": "FetchError"}
        }
