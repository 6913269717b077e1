"""Tests for report building and serialization."""

import json

from lock_audit.core.advisory import AdvisoryStore, Severity
from lock_audit.core.lockfile import Lockfile, LockfileEntry
from lock_audit.core.matcher import FindingSet, find_vulnerabilities
from lock_audit.core.report import ReportBuilder, build_report

CRATES_IO = "registry+https://github.com/rust-lang/crates.io-index"


def sample_findings():
    store = AdvisoryStore.load([
        {
            "id": "RUSTSEC-2021-0002",
            "package": "zlib",
            "affected_ranges": "<1.2.0",
            "patched_ranges": [">=1.2.0"],
            "severity": "medium",
            "title": "zlib bug",
            "date": "2021-02-01",
        },
        {
            "id": "RUSTSEC-2021-0001",
            "package": "alpha",
            "patched_ranges": [">=2.0.0"],
            "cvss": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H",
            "aliases": ["CVE-2021-0001"],
        },
        {
            "id": "RUSTSEC-2020-0036",
            "package": "failure",
            "informational": "unmaintained",
        },
        {
            "id": "RUSTSEC-2021-0003",
            "package": "alpha",
            "affected_ranges": ">=1.0.0",
            "patched_ranges": [">=1.9.0"],
            "severity": "low",
        },
    ])
    lockfile = Lockfile.from_entries([
        LockfileEntry("zlib", "1.1.0", CRATES_IO),
        LockfileEntry("alpha", "1.0.0", CRATES_IO),
        LockfileEntry("alpha", "1.5.0", "git+https://example.org/alpha"),
        LockfileEntry("failure", "0.1.8", CRATES_IO),
    ])
    return find_vulnerabilities(store, lockfile)


class TestReportBuilder:
    """Test grouping, ordering and summary counts."""

    def test_grouped_by_package_in_name_order(self):
        report = build_report(sample_findings())

        assert [package.name for package in report.packages] == ["alpha", "failure", "zlib"]
        alpha = report.packages[0]
        assert [(f.advisory_id, f.version) for f in alpha.findings] == [
            ("RUSTSEC-2021-0001", "1.0.0"),
            ("RUSTSEC-2021-0001", "1.5.0"),
            ("RUSTSEC-2021-0003", "1.0.0"),
            ("RUSTSEC-2021-0003", "1.5.0"),
        ]
        assert alpha.versions == ("1.0.0", "1.5.0")
        assert alpha.max_severity is Severity.CRITICAL

    def test_summary(self):
        """Test counts derived from the findings."""
        summary = build_report(sample_findings()).summary

        assert summary.total == 6
        assert summary.vulnerabilities == 5
        assert summary.warnings == 1
        assert summary.vulnerable_packages == 2
        assert dict(summary.by_severity) == {
            Severity.CRITICAL: 2,
            Severity.HIGH: 0,
            Severity.MEDIUM: 1,
            Severity.LOW: 2,
            Severity.NONE: 0,
            Severity.UNKNOWN: 1,
        }
        assert list(summary.to_dict()["by_severity"]) == [
            "critical", "high", "medium", "low", "none", "unknown",
        ]

    def test_warnings_grouped_by_kind(self):
        report = build_report(sample_findings())

        assert list(report.warnings) == ["unmaintained"]
        assert [f.package for f in report.warnings["unmaintained"]] == ["failure"]
        assert all(not f.informational for f in report.vulnerabilities)

    def test_duplicates_are_dropped(self):
        """Test that repeated findings collapse into one reported finding."""
        findings = list(sample_findings())
        report = ReportBuilder().build(findings + findings)

        assert report.summary.total == len(findings)

    def test_empty_report(self):
        report = build_report(FindingSet())

        assert not report.has_findings
        assert report.to_dict()["vulnerabilities"] == {"found": False, "count": 0, "list": []}
        assert report.to_dict()["warnings"] == {}


class TestReportSerialization:
    """Test the structured output."""

    def test_finding_shape(self):
        report = build_report(sample_findings())
        data = report.to_dict()["vulnerabilities"]["list"][0]

        assert data["advisory"]["id"] == "RUSTSEC-2021-0001"
        assert data["advisory"]["aliases"] == ["CVE-2021-0001"]
        assert data["advisory"]["severity"] == "critical"
        assert data["advisory"]["withdrawn"] is False
        assert data["versions"] == {"patched": [">=2.0.0"], "unaffected": []}
        assert data["package"] == {"name": "alpha", "version": "1.0.0", "source": CRATES_IO}
        assert data["matched_range"] == "*"

    def test_json_is_deterministic(self):
        """Test that equal finding sets serialize to identical bytes in any input order."""
        findings = list(sample_findings())

        first = build_report(findings).to_json()
        second = build_report(list(reversed(findings))).to_json()

        assert first == second
        assert json.loads(first)["summary"]["total"] == 6

    def test_no_timestamps(self):
        """Test that output carries no generation time."""
        text = build_report(sample_findings()).to_json()

        assert "timestamp" not in text
        assert "generated" not in text
