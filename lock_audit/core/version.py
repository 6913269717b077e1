"""Semantic versions and version-range evaluation.

Everything in this module is a pure value: no I/O, no shared state. The matcher
relies on it for every affectedness decision, so the grammar is strict and
parsing never falls back to a partial match. Concrete versions are parsed and
ordered by :mod:`semver`; the range grammar below is layered on top.

Range syntax:

    >=1.2.0, <1.4.5          comparators in one group are ANDed
    <1.0.0 || >=2.0.0        groups are ORed
    >= 1.2.0                 whitespace between operator and version is allowed
    1.2.3                    a bare full version means exactly that version
    1.2, 1.x, 1.2.*, *       partial versions expand to the covered range
    1.2.3 - 2.0              hyphen range, inclusive
    ^1.2.3, ~1.2.3, ~>1.2    caret and tilde shorthands
"""

import functools
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, List, Optional, Tuple, Union

import semver

from ..errors import MalformedError

PrereleaseIdentifier = Union[int, str]

_NUMERIC = r"0|[1-9]\d*"
_WILDCARD = r"[xX*]"
_PARTIAL_RE = re.compile(
    rf"^(?P<major>{_NUMERIC}|{_WILDCARD})"
    rf"(?:\.(?P<minor>{_NUMERIC}|{_WILDCARD})"
    rf"(?:\.(?P<patch>{_NUMERIC}|{_WILDCARD}))?)?$"
)

_OPERATORS = ("~>", "<=", ">=", "<", ">", "=", "^", "~")
_TOKEN_RE = re.compile(r"^(?P<op>~>|<=|>=|<|>|=|\^|~)?(?P<version>.+)$")
_OPERATOR_SPACE_RE = re.compile(r"(~>|<=|>=|<|>|=|\^|~)\s+")
_HYPHEN_RE = re.compile(r"^(?P<low>\S+)\s+-\s+(?P<high>\S+)$")
_SEPARATOR_RE = re.compile(r"\s*,\s*|\s+")


class Ordering(IntEnum):
    """Result of a three-way version comparison."""

    LESS = -1
    EQUAL = 0
    GREATER = 1


def _split_prerelease(text: Optional[str]) -> Tuple[PrereleaseIdentifier, ...]:
    if not text:
        return ()
    return tuple(int(part) if part.isdigit() else part for part in text.split("."))


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A concrete semantic version.

    Build metadata is kept for display but ignored by comparison, equality
    and hashing.
    """

    major: int
    minor: int
    patch: int
    prerelease: Tuple[PrereleaseIdentifier, ...] = ()
    build: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse a full ``MAJOR.MINOR.PATCH[-PRE][+BUILD]`` version.

        Raises:
            MalformedError: If ``text`` is not a valid semantic version
        """
        if not isinstance(text, str):
            raise MalformedError(f"expected a version string, got {type(text).__name__}")
        try:
            parsed = semver.Version.parse(text)
        except ValueError:
            raise MalformedError(f"invalid semantic version {text!r}") from None
        # semver anchors with ``$``, which tolerates a trailing newline
        if str(parsed) != text:
            raise MalformedError(f"invalid semantic version {text!r}")
        return cls(
            major=parsed.major,
            minor=parsed.minor,
            patch=parsed.patch,
            prerelease=_split_prerelease(parsed.prerelease),
            build=tuple(parsed.build.split(".")) if parsed.build else (),
        )

    @functools.cached_property
    def _semver(self) -> semver.Version:
        return semver.Version(
            self.major,
            self.minor,
            self.patch,
            ".".join(str(part) for part in self.prerelease) or None,
            ".".join(self.build) or None,
        )

    @property
    def release(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def compare(self, other: "Version") -> Ordering:
        """Three-way comparison by semantic-version precedence."""
        return Ordering(self._semver.compare(other._semver))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) is Ordering.EQUAL

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) is Ordering.LESS

    def __hash__(self) -> int:
        return hash((self.release, tuple(str(part) for part in self.prerelease)))

    def __str__(self) -> str:
        return str(self._semver)

    def __repr__(self) -> str:
        return f"Version({str(self)!r})"


# Smallest possible version; ``< MIN_VERSION`` matches nothing.
MIN_VERSION = Version(0, 0, 0, (0,))

_ACCEPTED = {
    "=": (Ordering.EQUAL,),
    ">": (Ordering.GREATER,),
    ">=": (Ordering.GREATER, Ordering.EQUAL),
    "<": (Ordering.LESS,),
    "<=": (Ordering.LESS, Ordering.EQUAL),
}


@dataclass(frozen=True)
class Comparator:
    """A single ``<op><version>`` clause over fully expanded versions."""

    op: str
    version: Version

    def __post_init__(self) -> None:
        if self.op not in _ACCEPTED:
            raise ValueError(f"unknown comparator operator {self.op!r}")

    def test(self, version: Version) -> bool:
        return version.compare(self.version) in _ACCEPTED[self.op]

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


Group = Tuple[Comparator, ...]
_NOTHING: Group = (Comparator("<", MIN_VERSION),)


def _group_matches(group: Group, version: Version, include_prerelease: bool) -> bool:
    if not all(comparator.test(version) for comparator in group):
        return False
    if version.prerelease and not include_prerelease:
        # A pre-release only matches when the group names a pre-release of
        # the same release line.
        return any(
            comparator.version.prerelease and comparator.version.release == version.release
            for comparator in group
        )
    return True


@dataclass(frozen=True)
class VersionRange:
    """OR of AND-groups of comparators.

    An empty group matches every version (subject to the pre-release rule).
    ``raw`` keeps the source text for display and takes no part in equality.
    With ``prerelease_filter`` off the range matches pre-releases as if the
    caller had passed ``include_prerelease``.
    """

    groups: Tuple[Group, ...]
    raw: str = field(default="", compare=False)
    prerelease_filter: bool = True

    @classmethod
    def parse(cls, text: str) -> "VersionRange":
        return parse_range(text)

    def matches(self, version: Union[Version, str], include_prerelease: bool = False) -> bool:
        """Check whether ``version`` satisfies at least one group."""
        if isinstance(version, str):
            version = Version.parse(version)
        include_prerelease = include_prerelease or not self.prerelease_filter
        return any(_group_matches(group, version, include_prerelease) for group in self.groups)

    def comparators(self) -> Iterator[Comparator]:
        for group in self.groups:
            yield from group

    @property
    def canonical(self) -> str:
        """Expanded form, e.g. ``>=1.2.0, <1.3.0-0``."""
        return " || ".join(
            ", ".join(str(comparator) for comparator in group) if group else "*"
            for group in self.groups
        )

    def __str__(self) -> str:
        return self.raw or self.canonical

    def __repr__(self) -> str:
        return f"VersionRange({str(self)!r})"


ANY = VersionRange(((),), raw="*")

# Stands in for an advisory that lists no affected ranges: every version,
# pre-releases included, is affected unless patched or unaffected.
EVERY_VERSION = VersionRange(((),), raw="*", prerelease_filter=False)


@dataclass(frozen=True)
class _Partial:
    major: Optional[int]
    minor: Optional[int]
    patch: Optional[int]
    prerelease: Tuple[PrereleaseIdentifier, ...] = ()

    @property
    def is_full(self) -> bool:
        return self.patch is not None

    def floor(self) -> Version:
        return Version(self.major or 0, self.minor or 0, self.patch or 0, self.prerelease)

    def ceiling(self) -> Version:
        """First pre-release beyond every version the partial covers."""
        if self.minor is None:
            return Version(self.major + 1, 0, 0, (0,))
        return Version(self.major, self.minor + 1, 0, (0,))

    def successor(self) -> Version:
        if self.minor is None:
            return Version(self.major + 1, 0, 0)
        return Version(self.major, self.minor + 1, 0)


def _numeric_or_wildcard(text: Optional[str]) -> Optional[int]:
    if text is None or text in ("x", "X", "*"):
        return None
    return int(text)


def _parse_partial(text: str, source: str) -> _Partial:
    if "-" in text or "+" in text:
        # Pre-release and build suffixes only attach to a full version
        try:
            version = Version.parse(text)
        except MalformedError:
            raise MalformedError(f"invalid version {text!r}", source) from None
        return _Partial(version.major, version.minor, version.patch, version.prerelease)

    match = _PARTIAL_RE.fullmatch(text)
    if not match:
        raise MalformedError(f"invalid version {text!r}", source)
    major = _numeric_or_wildcard(match.group("major"))
    minor = _numeric_or_wildcard(match.group("minor"))
    patch = _numeric_or_wildcard(match.group("patch"))
    if (major is None and minor is not None) or (minor is None and patch is not None):
        raise MalformedError(f"version {text!r} has a number after a wildcard", source)
    return _Partial(major, minor, patch)


def _expand(op: str, partial: _Partial) -> Optional[Group]:
    """Expand one operator/partial pair. ``None`` means "matches everything"."""
    if partial.major is None:
        return _NOTHING if op in ("<", ">") else None

    if op == "=":
        if partial.is_full:
            return (Comparator("=", partial.floor()),)
        return (Comparator(">=", partial.floor()), Comparator("<", partial.ceiling()))
    if op == ">":
        if partial.is_full:
            return (Comparator(">", partial.floor()),)
        return (Comparator(">=", partial.successor()),)
    if op == ">=":
        return (Comparator(">=", partial.floor()),)
    if op == "<":
        if partial.is_full:
            return (Comparator("<", partial.floor()),)
        return (Comparator("<", Version(partial.major, partial.minor or 0, 0, (0,))),)
    if op == "<=":
        if partial.is_full:
            return (Comparator("<=", partial.floor()),)
        return (Comparator("<", partial.ceiling()),)
    if op in ("~", "~>"):
        if partial.minor is None:
            upper = Version(partial.major + 1, 0, 0, (0,))
        else:
            upper = Version(partial.major, partial.minor + 1, 0, (0,))
        return (Comparator(">=", partial.floor()), Comparator("<", upper))
    if op == "^":
        if partial.major > 0 or partial.minor is None:
            upper = Version(partial.major + 1, 0, 0, (0,))
        elif partial.minor > 0 or partial.patch is None:
            upper = Version(0, partial.minor + 1, 0, (0,))
        else:
            upper = Version(0, 0, partial.patch + 1, (0,))
        return (Comparator(">=", partial.floor()), Comparator("<", upper))
    raise MalformedError(f"unknown operator {op!r}")


def _expand_hyphen(low: _Partial, high: _Partial) -> Group:
    comparators: List[Comparator] = []
    if low.major is not None:
        comparators.append(Comparator(">=", low.floor()))
    if high.major is not None:
        if high.is_full:
            comparators.append(Comparator("<=", high.floor()))
        else:
            comparators.append(Comparator("<", high.ceiling()))
    return tuple(comparators)


def _parse_group(text: str, source: str) -> Group:
    text = text.strip()
    if not text:
        raise MalformedError("empty comparator group", source)

    hyphen = _HYPHEN_RE.fullmatch(text)
    if hyphen:
        return _expand_hyphen(
            _parse_partial(hyphen.group("low"), source),
            _parse_partial(hyphen.group("high"), source),
        )

    comparators: List[Comparator] = []
    for token in _SEPARATOR_RE.split(_OPERATOR_SPACE_RE.sub(r"\1", text)):
        if not token:
            raise MalformedError("empty comparator", source)
        match = _TOKEN_RE.fullmatch(token)
        if not match or match.group("version").startswith(_OPERATORS):
            raise MalformedError(f"invalid comparator {token!r}", source)
        expanded = _expand(match.group("op") or "=", _parse_partial(match.group("version"), source))
        if expanded is _NOTHING:
            return _NOTHING
        if expanded:
            comparators.extend(expanded)
    return tuple(comparators)


def parse_range(text: str) -> VersionRange:
    """Parse a range expression into a :class:`VersionRange`.

    Raises:
        MalformedError: On invalid syntax or an empty expression
    """
    if not isinstance(text, str):
        raise MalformedError(f"expected a range string, got {type(text).__name__}")
    source = f"range {text!r}"
    if not text.strip():
        raise MalformedError("empty range", source)
    groups = tuple(_parse_group(part, source) for part in text.split("||"))
    return VersionRange(groups, raw=text.strip())


parse_version = Version.parse
