"""Advisory matching engine: versions, advisories, lockfiles, matching and reports."""

from .advisory import Advisory, AdvisoryStore, LoadResult, Severity
from .lockfile import DependencyRef, Lockfile, LockfileEntry, parse_lockfile
from .matcher import Finding, FindingSet, MatchOptions, VulnerabilityMatcher, find_vulnerabilities
from .report import Report, ReportBuilder, build_report
from .version import Ordering, Version, VersionRange, parse_range

__all__ = [
    "Advisory",
    "AdvisoryStore",
    "LoadResult",
    "Severity",
    "DependencyRef",
    "Lockfile",
    "LockfileEntry",
    "parse_lockfile",
    "Finding",
    "FindingSet",
    "MatchOptions",
    "VulnerabilityMatcher",
    "find_vulnerabilities",
    "Report",
    "ReportBuilder",
    "build_report",
    "Ordering",
    "Version",
    "VersionRange",
    "parse_range",
]
