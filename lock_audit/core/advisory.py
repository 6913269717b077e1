"""Advisory records and the in-memory advisory store."""

import datetime
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from cvss import CVSS2, CVSS3, CVSS4
from cvss.exceptions import CVSS2Error, CVSS3Error, CVSS4Error

from ..errors import InvalidAdvisoryError, LockAuditError, MalformedError, NotFoundError
from ..utils.logging import get_logger
from ..utils.performance import benchmark
from .version import EVERY_VERSION, Version, VersionRange, parse_range

# A raw advisory record as handed over by a record source.
RawAdvisory = Mapping[str, Any]

_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._:-]*")
_REQUIRED_FIELDS = ("id", "package")

_CVSS_ERRORS = (CVSS2Error, CVSS3Error, CVSS4Error)

logger = get_logger("AdvisoryStore")


class Severity(IntEnum):
    """Ordinal severity rating. Informational only, never used for matching."""

    UNKNOWN = 0
    NONE = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    CRITICAL = 5

    @classmethod
    def parse(cls, value: str) -> "Severity":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown severity {value!r}") from None

    @classmethod
    def from_cvss(cls, vector: str) -> "Severity":
        """Derive the base severity from a CVSS vector string.

        ``CVSS:4.x/`` and ``CVSS:3.x/`` prefixes select the version; an
        unprefixed vector is read as CVSS v2.

        Raises:
            CVSS2Error, CVSS3Error, CVSS4Error: If the vector is malformed
        """
        if vector.startswith("CVSS:4."):
            base_severity = CVSS4(vector).severity
        elif vector.startswith("CVSS:3."):
            base_severity = CVSS3(vector).severities()[0]
        else:
            base_severity = CVSS2(vector).severities()[0]
        return cls[base_severity.upper()]

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Advisory:
    """One vulnerability record."""

    id: str
    package: str
    affected_ranges: Tuple[VersionRange, ...] = (EVERY_VERSION,)
    unaffected_ranges: Tuple[VersionRange, ...] = ()
    patched_ranges: Tuple[VersionRange, ...] = ()
    severity: Severity = Severity.UNKNOWN
    aliases: Tuple[str, ...] = ()
    withdrawn: Union[bool, datetime.date] = False
    title: str = ""
    description: str = ""
    published: Optional[datetime.date] = None
    url: Optional[str] = None
    references: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    cvss: Optional[str] = None
    informational: Optional[str] = None

    @property
    def is_withdrawn(self) -> bool:
        return self.withdrawn is not False

    @property
    def withdrawn_date(self) -> Optional[datetime.date]:
        return self.withdrawn if isinstance(self.withdrawn, datetime.date) else None

    def affected_range(self, version: Version, include_prerelease: bool = False) -> Optional[VersionRange]:
        """Return the affected range covering ``version``.

        Patched and unaffected ranges win over affected ranges: a version
        inside any of them is never affected.

        Returns:
            The first matching affected range, or None when not affected
        """
        for safe_range in self.patched_ranges + self.unaffected_ranges:
            if safe_range.matches(version, include_prerelease):
                return None
        for affected in self.affected_ranges:
            if affected.matches(version, include_prerelease):
                return affected
        return None

    def is_affected(self, version: Version, include_prerelease: bool = False) -> bool:
        return self.affected_range(version, include_prerelease) is not None


def _string(record: RawAdvisory, key: str, advisory_id: Optional[str]) -> Optional[str]:
    value = record.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidAdvisoryError(advisory_id, f"'{key}' must be a string")
    return value


def _strings(record: RawAdvisory, key: str, advisory_id: Optional[str]) -> Tuple[str, ...]:
    value = record.get(key)
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise InvalidAdvisoryError(advisory_id, f"'{key}' must be a list of strings")
    return tuple(value)


def _ranges(record: RawAdvisory, key: str, advisory_id: str) -> Optional[Tuple[VersionRange, ...]]:
    value = record.get(key)
    if value is None:
        return None
    if isinstance(value, (str, VersionRange)):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InvalidAdvisoryError(advisory_id, f"'{key}' must be a string or a list of strings")

    ranges: List[VersionRange] = []
    for item in value:
        if isinstance(item, VersionRange):
            ranges.append(item)
            continue
        try:
            ranges.append(parse_range(item))
        except MalformedError as e:
            raise InvalidAdvisoryError(advisory_id, f"'{key}': {e}") from e
    return tuple(ranges)


def _date(value: Any, key: str, advisory_id: str) -> Optional[datetime.date]:
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value)
        except ValueError:
            pass
    raise InvalidAdvisoryError(advisory_id, f"'{key}' must be an ISO date, got {value!r}")


def _withdrawn(value: Any, advisory_id: str) -> Union[bool, datetime.date]:
    if value is None or value is False:
        return False
    if value is True:
        return True
    return _date(value, "withdrawn", advisory_id)


def _severity(record: RawAdvisory, advisory_id: str) -> Severity:
    explicit = _string(record, "severity", advisory_id)
    vector = _string(record, "cvss", advisory_id)

    derived = Severity.UNKNOWN
    if vector:
        try:
            derived = Severity.from_cvss(vector)
        except _CVSS_ERRORS as e:
            raise InvalidAdvisoryError(advisory_id, f"invalid CVSS vector {vector!r}: {e}") from e

    if explicit:
        try:
            return Severity.parse(explicit)
        except ValueError as e:
            raise InvalidAdvisoryError(advisory_id, str(e)) from e
    return derived


def advisory_from_record(record: RawAdvisory, position: Optional[int] = None) -> Advisory:
    """Validate a raw record and build an :class:`Advisory` from it.

    Args:
        record: Mapping with the advisory fields
        position: Index of the record in its source, used in error messages

    Raises:
        InvalidAdvisoryError: If a required field is missing or any field is invalid
    """
    where = f"record #{position}" if position is not None else "record"
    if not isinstance(record, Mapping):
        raise InvalidAdvisoryError(None, f"{where} is not a mapping")

    raw_id = record.get("id")
    advisory_id = raw_id if isinstance(raw_id, str) and raw_id else None
    for key in _REQUIRED_FIELDS:
        value = record.get(key)
        if value is None or value == "":
            raise InvalidAdvisoryError(advisory_id, f"{where}: missing required field '{key}'")
        if not isinstance(value, str):
            raise InvalidAdvisoryError(advisory_id, f"{where}: '{key}' must be a string")

    if not _ID_RE.fullmatch(advisory_id):
        raise InvalidAdvisoryError(advisory_id, f"malformed advisory id {advisory_id!r}")
    package = record["package"]
    if package != package.strip() or any(ch.isspace() for ch in package):
        raise InvalidAdvisoryError(advisory_id, f"malformed package name {package!r}")

    affected = _ranges(record, "affected_ranges", advisory_id)
    if affected == ():
        raise InvalidAdvisoryError(advisory_id, "'affected_ranges' is empty")

    return Advisory(
        id=advisory_id,
        package=package,
        affected_ranges=affected if affected is not None else (EVERY_VERSION,),
        unaffected_ranges=_ranges(record, "unaffected_ranges", advisory_id) or (),
        patched_ranges=_ranges(record, "patched_ranges", advisory_id) or (),
        severity=_severity(record, advisory_id),
        aliases=_strings(record, "aliases", advisory_id),
        withdrawn=_withdrawn(record.get("withdrawn"), advisory_id),
        title=_string(record, "title", advisory_id) or "",
        description=_string(record, "description", advisory_id) or "",
        published=_date(record.get("date"), "date", advisory_id),
        url=_string(record, "url", advisory_id),
        references=_strings(record, "references", advisory_id),
        categories=_strings(record, "categories", advisory_id),
        keywords=_strings(record, "keywords", advisory_id),
        cvss=_string(record, "cvss", advisory_id),
        informational=_string(record, "informational", advisory_id),
    )


@dataclass(frozen=True)
class LoadResult:
    """Outcome of a permissive load: a partial store plus what was rejected."""

    store: "AdvisoryStore"
    errors: Tuple[LockAuditError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


class AdvisoryStore:
    """Immutable collection of advisories indexed by package name.

    The package and alias indexes are built once in the constructor and never
    change afterwards.
    """

    def __init__(self, advisories: Iterable[Advisory] = ()) -> None:
        self._advisories: Dict[str, Advisory] = {}
        package_index: Dict[str, List[str]] = {}
        alias_index: Dict[str, List[str]] = {}

        for advisory in advisories:
            if advisory.id in self._advisories:
                raise InvalidAdvisoryError(advisory.id, "duplicate advisory id")
            self._advisories[advisory.id] = advisory
            package_index.setdefault(advisory.package, []).append(advisory.id)
            for alias in advisory.aliases:
                alias_index.setdefault(alias, []).append(advisory.id)

        self._package_index = {name: tuple(ids) for name, ids in package_index.items()}
        self._alias_index = {alias: tuple(ids) for alias, ids in alias_index.items()}

    @classmethod
    @benchmark
    def load(cls, records: Iterable[RawAdvisory]) -> "AdvisoryStore":
        """Validate records and build a store, failing on the first bad one.

        Args:
            records: Raw advisory records

        Returns:
            The loaded store

        Raises:
            InvalidAdvisoryError: On the first invalid or duplicate record
        """
        advisories: List[Advisory] = []
        seen = set()
        for position, record in enumerate(records):
            advisory = advisory_from_record(record, position)
            if advisory.id in seen:
                raise InvalidAdvisoryError(advisory.id, f"record #{position}: duplicate advisory id")
            seen.add(advisory.id)
            advisories.append(advisory)

        store = cls(advisories)
        logger.debug(f"Loaded {len(store)} advisories for {len(store._package_index)} packages")
        return store

    @classmethod
    def load_permissive(cls, records: Iterable[RawAdvisory]) -> LoadResult:
        """Build a store from every valid record and collect the rest as errors.

        The first record with a given id wins; later duplicates are reported.
        """
        advisories: List[Advisory] = []
        errors: List[LockAuditError] = []
        seen = set()
        for position, record in enumerate(records):
            try:
                advisory = advisory_from_record(record, position)
                if advisory.id in seen:
                    raise InvalidAdvisoryError(advisory.id, f"record #{position}: duplicate advisory id")
            except InvalidAdvisoryError as e:
                logger.warning(str(e))
                errors.append(e)
                continue
            seen.add(advisory.id)
            advisories.append(advisory)

        return LoadResult(store=cls(advisories), errors=tuple(errors))

    def for_package(self, name: str) -> Iterator[Advisory]:
        """Lazily yield the advisories that name ``name`` as affected package."""
        for advisory_id in self._package_index.get(name, ()):
            yield self._advisories[advisory_id]

    def get(self, advisory_id: str) -> Advisory:
        """Get an advisory by canonical id.

        Raises:
            NotFoundError: If no advisory has this id
        """
        try:
            return self._advisories[advisory_id]
        except KeyError:
            raise NotFoundError(f"no advisory with id {advisory_id!r}") from None

    def resolve_alias(self, alias: str) -> Tuple[Advisory, ...]:
        """Get the advisories that list ``alias`` among their aliases.

        Raises:
            NotFoundError: If no advisory carries this alias
        """
        ids = self._alias_index.get(alias)
        if not ids:
            raise NotFoundError(f"no advisory with alias {alias!r}")
        return tuple(self._advisories[advisory_id] for advisory_id in ids)

    def lookup(self, identifier: str) -> Tuple[Advisory, ...]:
        """Find advisories by canonical id first, then by alias."""
        if identifier in self._advisories:
            return (self._advisories[identifier],)
        return self.resolve_alias(identifier)

    def packages(self) -> Tuple[str, ...]:
        return tuple(self._package_index)

    def statistics(self) -> Dict[str, int]:
        advisories = self._advisories.values()
        return {
            "advisories": len(self._advisories),
            "packages": len(self._package_index),
            "withdrawn": sum(1 for advisory in advisories if advisory.is_withdrawn),
            "informational": sum(1 for advisory in advisories if advisory.informational),
            "aliases": len(self._alias_index),
        }

    def __contains__(self, advisory_id: object) -> bool:
        return advisory_id in self._advisories

    def __iter__(self) -> Iterator[Advisory]:
        return iter(self._advisories.values())

    def __len__(self) -> int:
        return len(self._advisories)

    def __repr__(self) -> str:
        return f"AdvisoryStore({len(self)} advisories)"
