"""Cargo-style lockfile model and parsers."""

import re
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Type, Union

from ..errors import MalformedError, NotFoundError, UnsupportedVersionError
from ..utils.logging import get_logger
from .version import Version

_DEPENDENCY_RE = re.compile(r"(?P<name>[^\s()]+)(?: (?P<version>[^\s()]+))?(?: \((?P<source>[^\s()]+)\))?")

logger = get_logger("Lockfile")


@dataclass(frozen=True)
class DependencyRef:
    """Edge from a lockfile entry to one of its dependencies."""

    name: str
    version: Optional[Version] = None
    source: Optional[str] = None

    @classmethod
    def parse(cls, text: str, context: Optional[str] = None) -> "DependencyRef":
        """Parse ``name``, ``name version`` or ``name version (source)``.

        Raises:
            MalformedError: If the string does not follow that shape
        """
        match = _DEPENDENCY_RE.fullmatch(text) if isinstance(text, str) else None
        if match is None:
            raise MalformedError(f"invalid dependency {text!r}", context)
        version = match.group("version")
        return cls(
            name=match.group("name"),
            version=Version.parse(version) if version else None,
            source=match.group("source"),
        )

    def __str__(self) -> str:
        text = self.name
        if self.version is not None:
            text += f" {self.version}"
        if self.source is not None:
            text += f" ({self.source})"
        return text


@dataclass(frozen=True)
class LockfileEntry:
    """One resolved dependency.

    Entries are identified by ``(name, version, source)``; the checksum and the
    dependency edges do not take part in equality or hashing.
    """

    name: str
    version: Version
    source: Optional[str] = None
    checksum: Optional[str] = field(default=None, compare=False)
    dependencies: Tuple[DependencyRef, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        """Validate the entry and accept version strings."""
        if not self.name or not isinstance(self.name, str):
            raise MalformedError("package name cannot be empty")
        if isinstance(self.version, str):
            object.__setattr__(self, "version", Version.parse(self.version))
        if not isinstance(self.version, Version):
            raise MalformedError(f"invalid version for {self.name}: {self.version!r}")
        object.__setattr__(self, "dependencies", tuple(self.dependencies))

    @property
    def key(self) -> Tuple[str, Version, Optional[str]]:
        return (self.name, self.version, self.source)

    def __str__(self) -> str:
        return f"{self.name} {self.version}"


class Lockfile:
    """Flat, ordered and immutable collection of lockfile entries."""

    def __init__(self, entries: Iterable[LockfileEntry] = (), format_version: int = 3) -> None:
        self._entries: Tuple[LockfileEntry, ...] = tuple(entries)
        self.format_version = format_version

        by_name: Dict[str, List[LockfileEntry]] = {}
        for entry in self._entries:
            by_name.setdefault(entry.name, []).append(entry)
        self._by_name = {name: tuple(group) for name, group in by_name.items()}

    @classmethod
    def from_entries(cls, entries: Iterable[LockfileEntry], format_version: int = 3) -> "Lockfile":
        return cls(entries, format_version=format_version)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Lockfile":
        """Read and parse a lockfile from disk.

        Args:
            path: Path of the lockfile

        Returns:
            Parsed lockfile

        Raises:
            MalformedError: If the file is not valid UTF-8 or not a valid lockfile
            UnsupportedVersionError: If the lockfile format version is unknown
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise MalformedError(f"not valid UTF-8: {e}", str(path)) from e
        return parse_lockfile(text, context=str(path))

    def entries(self) -> Tuple[LockfileEntry, ...]:
        return self._entries

    def entries_named(self, name: str) -> Iterator[LockfileEntry]:
        return iter(self._by_name.get(name, ()))

    def package_names(self) -> Tuple[str, ...]:
        """Distinct package names in first-seen order."""
        return tuple(self._by_name)

    def get(self, name: str, version: Union[Version, str, None] = None) -> LockfileEntry:
        """Get the first entry named ``name``, optionally pinned to a version.

        Raises:
            NotFoundError: If no such entry exists
        """
        if isinstance(version, str):
            version = Version.parse(version)
        for entry in self._by_name.get(name, ()):
            if version is None or entry.version == version:
                return entry
        wanted = f"{name} {version}" if version is not None else name
        raise NotFoundError(f"package {wanted!r} is not in the lockfile")

    def __iter__(self) -> Iterator[LockfileEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Lockfile(version={self.format_version}, {len(self)} packages)"


class LockfileParser(ABC):
    """Parser for one lockfile format version."""

    format_version: int = 0

    def parse(self, document: Mapping[str, Any], context: Optional[str] = None) -> Lockfile:
        packages = document.get("package", [])
        if not isinstance(packages, list):
            raise MalformedError("'package' must be an array of tables", context)

        entries = [
            self._parse_package(index, table, document, context)
            for index, table in enumerate(packages)
        ]
        return Lockfile(entries, format_version=self.format_version)

    def _parse_package(
        self,
        index: int,
        table: Any,
        document: Mapping[str, Any],
        context: Optional[str],
    ) -> LockfileEntry:
        where = f"package #{index}"
        if context:
            where = f"{context}: {where}"
        if not isinstance(table, dict):
            raise MalformedError("expected a table", where)

        name = table.get("name")
        if not isinstance(name, str) or not name:
            raise MalformedError("missing or invalid 'name'", where)
        where = f"{where} ({name})"

        raw_version = table.get("version")
        if not isinstance(raw_version, str):
            raise MalformedError("missing or invalid 'version'", where)
        try:
            version = Version.parse(raw_version)
        except MalformedError as e:
            raise MalformedError(e.message, where) from e

        source = self._optional_string(table, "source", where)
        checksum = self._optional_string(table, "checksum", where)
        if checksum is None:
            checksum = self.lookup_checksum(document, name, raw_version, source)

        raw_dependencies = table.get("dependencies", [])
        if not isinstance(raw_dependencies, list):
            raise MalformedError("'dependencies' must be an array of strings", where)
        dependencies = []
        for item in raw_dependencies:
            try:
                dependencies.append(DependencyRef.parse(item, where))
            except MalformedError as e:
                raise MalformedError(e.message, where) from e

        return LockfileEntry(
            name=name,
            version=version,
            source=source,
            checksum=checksum,
            dependencies=tuple(dependencies),
        )

    @staticmethod
    def _optional_string(table: Mapping[str, Any], key: str, where: str) -> Optional[str]:
        value = table.get(key)
        if value is not None and not isinstance(value, str):
            raise MalformedError(f"'{key}' must be a string", where)
        return value

    @abstractmethod
    def lookup_checksum(
        self,
        document: Mapping[str, Any],
        name: str,
        version: str,
        source: Optional[str],
    ) -> Optional[str]:
        """Find a checksum stored outside the package table."""


_PARSERS: Dict[int, LockfileParser] = {}


def register_parser(format_version: int) -> Callable[[Type[LockfileParser]], Type[LockfileParser]]:
    """Class decorator registering a parser for a lockfile format version."""
    def decorator(parser_class: Type[LockfileParser]) -> Type[LockfileParser]:
        parser = parser_class()
        parser.format_version = format_version
        _PARSERS[format_version] = parser
        return parser_class
    return decorator


@register_parser(1)
class V1Parser(LockfileParser):
    """Original format: checksums live in the ``[metadata]`` table."""

    def lookup_checksum(self, document, name, version, source):
        metadata = document.get("metadata", {})
        if not isinstance(metadata, dict):
            return None
        key = f"checksum {name} {version}"
        if source:
            key += f" ({source})"
        checksum = metadata.get(key)
        if not isinstance(checksum, str) or checksum == "<none>":
            return None
        return checksum


@register_parser(2)
class V2Parser(LockfileParser):
    """Checksums inline in each package table, no ``version`` key."""

    def lookup_checksum(self, document, name, version, source):
        return None


@register_parser(3)
class V3Parser(V2Parser):
    """Same layout as version 2, declared with ``version = 3``."""


@register_parser(4)
class V4Parser(V2Parser):
    """Same layout as version 3 with different source URL encoding."""


# Versions that may appear in the ``version`` key; older ones are implicit.
DECLARED_VERSIONS = (3, 4)


def supported_versions() -> Tuple[int, ...]:
    return tuple(sorted(_PARSERS))


def detect_format_version(document: Mapping[str, Any], context: Optional[str] = None) -> int:
    """Work out the lockfile format version of a decoded document.

    Raises:
        MalformedError: If the ``version`` key is not an integer
        UnsupportedVersionError: If the declared version is not understood
    """
    if "version" in document:
        declared = document["version"]
        if isinstance(declared, bool) or not isinstance(declared, int):
            raise MalformedError(f"'version' must be an integer, got {declared!r}", context)
        if declared not in DECLARED_VERSIONS:
            raise UnsupportedVersionError(declared, supported_versions(), context)
        return declared
    return 1 if "metadata" in document else 2


def parse_lockfile(text: str, context: Optional[str] = None) -> Lockfile:
    """Parse lockfile text into a :class:`Lockfile`.

    Args:
        text: TOML lockfile contents
        context: Where the text came from, used in error messages

    Returns:
        Parsed lockfile with entries in file order

    Raises:
        MalformedError: If the text is not a structurally valid lockfile
        UnsupportedVersionError: If the lockfile format version is unknown
    """
    try:
        document = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise MalformedError(f"invalid TOML: {e}", context) from e

    format_version = detect_format_version(document, context)
    lockfile = _PARSERS[format_version].parse(document, context)
    logger.debug(f"Parsed lockfile v{format_version} with {len(lockfile)} packages")
    return lockfile
