"""lockaudit - audit Cargo lockfiles against a local vulnerability advisory database."""

__version__ = "0.1.0"

from .core.advisory import Advisory, AdvisoryStore, Severity
from .core.lockfile import Lockfile, LockfileEntry, parse_lockfile
from .core.matcher import Finding, FindingSet, MatchOptions, VulnerabilityMatcher, find_vulnerabilities
from .core.report import Report, build_report
from .core.version import Version, VersionRange, parse_range
from .errors import (
    ConfigError,
    FetchError,
    InvalidAdvisoryError,
    LoadError,
    LockAuditError,
    MalformedError,
    NotFoundError,
    ParseError,
    UnsupportedVersionError,
)

__all__ = [
    "Advisory",
    "AdvisoryStore",
    "Severity",
    "Lockfile",
    "LockfileEntry",
    "parse_lockfile",
    "Finding",
    "FindingSet",
    "MatchOptions",
    "VulnerabilityMatcher",
    "find_vulnerabilities",
    "Report",
    "build_report",
    "Version",
    "VersionRange",
    "parse_range",
    "ConfigError",
    "FetchError",
    "InvalidAdvisoryError",
    "LoadError",
    "LockAuditError",
    "MalformedError",
    "NotFoundError",
    "ParseError",
    "UnsupportedVersionError",
]
