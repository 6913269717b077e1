"""Core vulnerability matching logic for lockaudit."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from itertools import chain
from typing import Any, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from ..utils.logging import get_logger
from ..utils.performance import PerformanceMonitor, benchmark
from .advisory import Advisory, AdvisoryStore
from .lockfile import Lockfile, LockfileEntry
from .version import Version, VersionRange

FindingKey = Tuple[str, str, Version, Optional[str]]


@dataclass(frozen=True)
class MatchOptions:
    """Options that decide which advisories take part in matching."""

    include_withdrawn: bool = False
    ignore: FrozenSet[str] = field(default_factory=frozenset)
    include_informational: bool = True
    include_prerelease: bool = False
    max_workers: int = 1

    def __post_init__(self) -> None:
        """Normalize the ignore list and validate the worker count."""
        if isinstance(self.ignore, str):
            raise ValueError("ignore must be a collection of advisory ids, not a string")
        object.__setattr__(self, "ignore", frozenset(self.ignore))
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")


@dataclass(frozen=True, eq=False)
class Finding:
    """A lockfile entry whose version is affected by an advisory.

    Findings compare and hash on ``(advisory id, name, version, source)``.
    """

    advisory: Advisory
    entry: LockfileEntry
    matched_range: VersionRange

    @property
    def key(self) -> FindingKey:
        return (self.advisory.id, self.entry.name, self.entry.version, self.entry.source)

    @property
    def sort_key(self) -> Tuple[str, str, Version, str]:
        return (self.entry.name, self.advisory.id, self.entry.version, self.entry.source or "")

    @property
    def kind(self) -> str:
        """``vulnerability``, or the informational kind such as ``unmaintained``."""
        return self.advisory.informational or "vulnerability"

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Finding):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"Finding({self.advisory.id}, {self.entry}, matched={self.matched_range})"


class FindingSet:
    """Deduplicated findings in a deterministic order.

    Iteration order is package name, then advisory id, then version, then source.
    When two findings share a key the first one seen is kept.
    """

    def __init__(self, findings: Iterable[Finding] = ()) -> None:
        unique = {}
        for finding in findings:
            unique.setdefault(finding.key, finding)
        self._findings: Tuple[Finding, ...] = tuple(sorted(unique.values(), key=lambda f: f.sort_key))

    def union(self, other: Iterable[Finding]) -> "FindingSet":
        return FindingSet(chain(self._findings, other))

    __or__ = union

    def for_package(self, name: str) -> Tuple[Finding, ...]:
        return tuple(finding for finding in self._findings if finding.entry.name == name)

    def advisory_ids(self) -> Tuple[str, ...]:
        return tuple(sorted({finding.advisory.id for finding in self._findings}))

    def packages(self) -> Tuple[str, ...]:
        return tuple(sorted({finding.entry.name for finding in self._findings}))

    def vulnerabilities(self) -> Tuple[Finding, ...]:
        return tuple(finding for finding in self._findings if not finding.advisory.informational)

    def informational(self) -> Tuple[Finding, ...]:
        return tuple(finding for finding in self._findings if finding.advisory.informational)

    def keys(self) -> Tuple[FindingKey, ...]:
        return tuple(finding.key for finding in self._findings)

    def __iter__(self) -> Iterator[Finding]:
        return iter(self._findings)

    def __len__(self) -> int:
        return len(self._findings)

    def __bool__(self) -> bool:
        return bool(self._findings)

    def __contains__(self, item: object) -> bool:
        return item in self._findings

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, FindingSet):
            return NotImplemented
        return self.keys() == other.keys()

    def __hash__(self) -> int:
        return hash(self.keys())

    def __repr__(self) -> str:
        return f"FindingSet({len(self)} findings)"


class VulnerabilityMatcher:
    """Joins a lockfile against an advisory store.

    The matcher keeps no state between calls: the result depends only on the
    store, the lockfile and the options.
    """

    def __init__(
        self,
        options: Optional[MatchOptions] = None,
        performance_monitor: Optional[PerformanceMonitor] = None,
    ) -> None:
        """Initialize the vulnerability matcher.

        Args:
            options: Matching options, defaults to :class:`MatchOptions`
            performance_monitor: Optional monitor that records the match stage
        """
        self.options = options or MatchOptions()
        self.performance_monitor = performance_monitor
        self.logger = get_logger("VulnerabilityMatcher")

    @benchmark
    def find_vulnerabilities(self, store: AdvisoryStore, lockfile: Lockfile) -> FindingSet:
        """Find every lockfile entry affected by an advisory in the store.

        Args:
            store: Loaded advisory store
            lockfile: Parsed lockfile

        Returns:
            Deduplicated, ordered findings
        """
        measure = self.performance_monitor.measure("match") if self.performance_monitor else nullcontext()
        with measure:
            names = lockfile.package_names()
            workers = min(self.options.max_workers, len(names))

            if workers <= 1:
                results = [self._match_package(store, lockfile, name) for name in names]
            else:
                self.logger.debug(f"Matching {len(names)} packages with {workers} workers")
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    results = list(pool.map(lambda name: self._match_package(store, lockfile, name), names))

            findings = FindingSet(chain.from_iterable(results))

        self.logger.debug(f"Found {len(findings)} findings in {len(names)} packages")
        return findings

    def _is_candidate(self, advisory: Advisory) -> bool:
        options = self.options
        if advisory.id in options.ignore:
            self.logger.debug(f"Ignoring {advisory.id}")
            return False
        if advisory.is_withdrawn and not options.include_withdrawn:
            return False
        if advisory.informational and not options.include_informational:
            return False
        return True

    def _match_package(self, store: AdvisoryStore, lockfile: Lockfile, name: str) -> List[Finding]:
        """Evaluate every candidate advisory against every entry named ``name``."""
        entries = tuple(lockfile.entries_named(name))
        findings = []

        for advisory in store.for_package(name):
            if not self._is_candidate(advisory):
                continue
            for entry in entries:
                matched = advisory.affected_range(entry.version, self.options.include_prerelease)
                if matched is not None:
                    self.logger.debug(f"MATCH: {entry} matches {advisory.id} via {matched}")
                    findings.append(Finding(advisory=advisory, entry=entry, matched_range=matched))

        return findings


def find_vulnerabilities(
    store: AdvisoryStore,
    lockfile: Lockfile,
    options: Optional[MatchOptions] = None,
) -> FindingSet:
    """Convenience wrapper around :meth:`VulnerabilityMatcher.find_vulnerabilities`."""
    return VulnerabilityMatcher(options).find_vulnerabilities(store, lockfile)
