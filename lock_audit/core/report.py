"""Structured, deterministic reports built from matcher findings."""

import datetime
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .advisory import Severity
from .matcher import Finding, FindingSet


def _withdrawn_value(withdrawn: Union[bool, datetime.date]) -> Union[bool, str]:
    if isinstance(withdrawn, datetime.date):
        return withdrawn.isoformat()
    return withdrawn


@dataclass(frozen=True)
class ReportedFinding:
    """Display view of one finding, detached from the core objects."""

    advisory_id: str
    package: str
    version: str
    source: Optional[str]
    matched_range: str
    title: str = ""
    description: str = ""
    aliases: Tuple[str, ...] = ()
    severity: Severity = Severity.UNKNOWN
    url: Optional[str] = None
    date: Optional[str] = None
    cvss: Optional[str] = None
    categories: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    withdrawn: Union[bool, str] = False
    informational: Optional[str] = None
    patched_ranges: Tuple[str, ...] = ()
    unaffected_ranges: Tuple[str, ...] = ()

    @classmethod
    def from_finding(cls, finding: Finding) -> "ReportedFinding":
        advisory = finding.advisory
        entry = finding.entry
        return cls(
            advisory_id=advisory.id,
            package=entry.name,
            version=str(entry.version),
            source=entry.source,
            matched_range=str(finding.matched_range),
            title=advisory.title,
            description=advisory.description,
            aliases=advisory.aliases,
            severity=advisory.severity,
            url=advisory.url,
            date=advisory.published.isoformat() if advisory.published else None,
            cvss=advisory.cvss,
            categories=advisory.categories,
            keywords=advisory.keywords,
            withdrawn=_withdrawn_value(advisory.withdrawn),
            informational=advisory.informational,
            patched_ranges=tuple(str(r) for r in advisory.patched_ranges),
            unaffected_ranges=tuple(str(r) for r in advisory.unaffected_ranges),
        )

    @property
    def kind(self) -> str:
        return self.informational or "vulnerability"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "advisory": {
                "id": self.advisory_id,
                "package": self.package,
                "title": self.title,
                "description": self.description,
                "date": self.date,
                "aliases": list(self.aliases),
                "url": self.url,
                "severity": self.severity.label,
                "cvss": self.cvss,
                "categories": list(self.categories),
                "keywords": list(self.keywords),
                "informational": self.informational,
                "withdrawn": self.withdrawn,
            },
            "versions": {
                "patched": list(self.patched_ranges),
                "unaffected": list(self.unaffected_ranges),
            },
            "package": {
                "name": self.package,
                "version": self.version,
                "source": self.source,
            },
            "matched_range": self.matched_range,
        }


@dataclass(frozen=True)
class PackageReport:
    """All findings for one package name."""

    name: str
    findings: Tuple[ReportedFinding, ...]

    @property
    def versions(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(finding.version for finding in self.findings))

    @property
    def max_severity(self) -> Severity:
        return max((finding.severity for finding in self.findings), default=Severity.UNKNOWN)


@dataclass(frozen=True)
class Summary:
    """Derived counts. Severity counts are informational only."""

    total: int
    vulnerabilities: int
    warnings: int
    vulnerable_packages: int
    by_severity: Tuple[Tuple[Severity, int], ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "vulnerabilities": self.vulnerabilities,
            "warnings": self.warnings,
            "vulnerable_packages": self.vulnerable_packages,
            "by_severity": {severity.label: count for severity, count in self.by_severity},
        }


@dataclass(frozen=True)
class Report:
    """Findings grouped by package and sorted by package name then advisory id."""

    packages: Tuple[PackageReport, ...]
    summary: Summary

    @property
    def findings(self) -> Tuple[ReportedFinding, ...]:
        return tuple(finding for package in self.packages for finding in package.findings)

    @property
    def vulnerabilities(self) -> Tuple[ReportedFinding, ...]:
        return tuple(finding for finding in self.findings if not finding.informational)

    @property
    def warnings(self) -> Dict[str, Tuple[ReportedFinding, ...]]:
        """Informational findings keyed by kind, kinds in sorted order."""
        grouped: Dict[str, List[ReportedFinding]] = {}
        for finding in self.findings:
            if finding.informational:
                grouped.setdefault(finding.informational, []).append(finding)
        return {kind: tuple(grouped[kind]) for kind in sorted(grouped)}

    @property
    def has_findings(self) -> bool:
        return self.summary.total > 0

    def to_dict(self) -> Dict[str, Any]:
        """Structured form with a fixed key order and no timestamps."""
        vulnerabilities = self.vulnerabilities
        return {
            "vulnerabilities": {
                "found": bool(vulnerabilities),
                "count": len(vulnerabilities),
                "list": [finding.to_dict() for finding in vulnerabilities],
            },
            "warnings": {
                kind: [finding.to_dict() for finding in findings]
                for kind, findings in self.warnings.items()
            },
            "summary": self.summary.to_dict(),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


class ReportBuilder:
    """Turns findings into a :class:`Report`."""

    def build(self, findings: Iterable[Finding]) -> Report:
        """Deduplicate, group and summarise findings.

        Args:
            findings: Matcher output; duplicates are dropped

        Returns:
            Report whose structure depends only on the set of findings
        """
        finding_set = findings if isinstance(findings, FindingSet) else FindingSet(findings)

        grouped: Dict[str, List[ReportedFinding]] = {}
        for finding in finding_set:
            grouped.setdefault(finding.entry.name, []).append(ReportedFinding.from_finding(finding))

        packages = tuple(
            PackageReport(name=name, findings=tuple(grouped[name]))
            for name in sorted(grouped)
        )
        return Report(packages=packages, summary=self._summarize(packages))

    @staticmethod
    def _summarize(packages: Tuple[PackageReport, ...]) -> Summary:
        reported = [finding for package in packages for finding in package.findings]
        counts = {severity: 0 for severity in Severity}
        for finding in reported:
            counts[finding.severity] += 1

        warnings = sum(1 for finding in reported if finding.informational)
        return Summary(
            total=len(reported),
            vulnerabilities=len(reported) - warnings,
            warnings=warnings,
            vulnerable_packages=sum(
                1 for package in packages
                if any(not finding.informational for finding in package.findings)
            ),
            by_severity=tuple(
                (severity, counts[severity]) for severity in sorted(Severity, reverse=True)
            ),
        )


def build_report(findings: Iterable[Finding]) -> Report:
    return ReportBuilder().build(findings)
