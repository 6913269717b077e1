"""Advisory file readers for a local advisory snapshot."""

import json
import re
import tomllib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from ..core.advisory import AdvisoryStore, LoadResult
from ..errors import LockAuditError, MalformedError, NotFoundError
from ..utils.logging import get_logger
from ..utils.paths import PathFilter, iter_advisory_files
from ..utils.performance import benchmark

logger = get_logger("AdvisorySources")

_FRONT_MATTER_RE = re.compile(r"\A\s*```toml[ \t]*\r?\n(?P<toml>.*?)\r?\n```[ \t]*(?:\r?\n(?P<body>.*))?\Z", re.DOTALL)

# [advisory] keys copied into the flat record unchanged.
_ADVISORY_KEYS = (
    "id",
    "package",
    "aliases",
    "date",
    "url",
    "cvss",
    "severity",
    "categories",
    "keywords",
    "informational",
    "references",
    "withdrawn",
    "title",
    "description",
)
_VERSION_KEYS = {
    "patched": "patched_ranges",
    "unaffected": "unaffected_ranges",
    "affected": "affected_ranges",
}


class NotAnAdvisory(Exception):
    """The file has a recognised suffix but is not an advisory (e.g. a README)."""


class AdvisoryFileParser(ABC):
    """Turns the text of one advisory file into a raw advisory record."""

    suffix: str = ""

    @abstractmethod
    def parse(self, text: str, path: Path) -> Dict[str, Any]:
        """Parse file contents.

        Args:
            text: File contents
            path: File path, used for error context

        Returns:
            Flat advisory record

        Raises:
            MalformedError: If the file cannot be decoded
            NotAnAdvisory: If the file is not an advisory at all
        """


def _flatten(document: Mapping[str, Any], path: Path) -> Dict[str, Any]:
    """Map the ``[advisory]`` and ``[versions]`` tables onto a flat record."""
    advisory = document.get("advisory")
    if not isinstance(advisory, dict):
        raise MalformedError("missing [advisory] table", str(path))
    versions = document.get("versions", {})
    if not isinstance(versions, dict):
        raise MalformedError("[versions] must be a table", str(path))

    record = {key: advisory[key] for key in _ADVISORY_KEYS if key in advisory}
    for key, target in _VERSION_KEYS.items():
        if key in versions:
            record[target] = versions[key]
    return record


class TomlAdvisoryParser(AdvisoryFileParser):
    suffix = ".toml"

    def parse(self, text: str, path: Path) -> Dict[str, Any]:
        try:
            document = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise MalformedError(f"invalid TOML: {e}", str(path)) from e
        return _flatten(document, path)


class MarkdownAdvisoryParser(TomlAdvisoryParser):
    """TOML front matter in a fenced block, then a Markdown title and description."""

    suffix = ".md"

    def parse(self, text: str, path: Path) -> Dict[str, Any]:
        match = _FRONT_MATTER_RE.match(text)
        if match is None:
            raise NotAnAdvisory(str(path))

        record = super().parse(match.group("toml"), path)
        title, description = self._split_body(match.group("body") or "")
        if title:
            record.setdefault("title", title)
        if description:
            record.setdefault("description", description)
        return record

    @staticmethod
    def _split_body(body: str) -> Tuple[str, str]:
        lines = body.strip().splitlines()
        for index, line in enumerate(lines):
            if line.startswith("# "):
                description = "\n".join(lines[index + 1:]).strip()
                return line[2:].strip(), description
        return "", "\n".join(lines).strip()


class JsonAdvisoryParser(AdvisoryFileParser):
    suffix = ".json"

    def parse(self, text: str, path: Path) -> Dict[str, Any]:
        try:
            record = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedError(f"invalid JSON: {e}", str(path)) from e
        if not isinstance(record, dict):
            raise MalformedError("expected a JSON object", str(path))
        return record


class SourceRegistry:
    """Registry of advisory file parsers keyed by file suffix."""

    def __init__(self) -> None:
        self._parsers: Dict[str, AdvisoryFileParser] = {}

    def register(self, parser: AdvisoryFileParser) -> None:
        self._parsers[parser.suffix.lower()] = parser

    def get_parser(self, path: Path) -> Optional[AdvisoryFileParser]:
        return self._parsers.get(path.suffix.lower())

    def suffixes(self) -> Tuple[str, ...]:
        return tuple(self._parsers)

    def parse_file(self, path: Path) -> Dict[str, Any]:
        """Read and parse one advisory file.

        Raises:
            MalformedError: If the file is unreadable or undecodable
            NotAnAdvisory: If the file is not an advisory
        """
        parser = self.get_parser(path)
        if parser is None:
            raise NotAnAdvisory(str(path))
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise MalformedError(f"cannot read file: {e}", str(path)) from e
        return parser.parse(text, path)


registry = SourceRegistry()
registry.register(MarkdownAdvisoryParser())
registry.register(TomlAdvisoryParser())
registry.register(JsonAdvisoryParser())


def iter_records(
    root: Path,
    errors: Optional[List[LockAuditError]] = None,
    path_filter: Optional[PathFilter] = None,
) -> Iterator[Dict[str, Any]]:
    """Yield raw records for every advisory file under ``root``.

    Args:
        root: Snapshot directory
        errors: When given, decode errors are appended here instead of raised
        path_filter: Filter for paths relative to ``root``
    """
    for path in iter_advisory_files(root, registry.suffixes(), path_filter):
        try:
            yield registry.parse_file(path)
        except NotAnAdvisory:
            logger.debug(f"Skipping {path}: not an advisory file")
        except MalformedError as e:
            if errors is None:
                raise
            logger.warning(str(e))
            errors.append(e)


@benchmark
def load_directory(
    path: Path,
    permissive: bool = False,
    show_progress: bool = False,
    path_filter: Optional[PathFilter] = None,
) -> LoadResult:
    """Load an advisory store from a snapshot directory.

    Args:
        path: Snapshot directory
        permissive: Collect bad files and records instead of failing on the first
        show_progress: Show a spinner while loading
        path_filter: Filter for paths relative to ``path``

    Returns:
        The store plus any collected errors (always empty when not permissive)

    Raises:
        NotFoundError: If ``path`` is not a directory
        MalformedError: On an undecodable file, unless permissive
        InvalidAdvisoryError: On an invalid or duplicate record, unless permissive
    """
    path = Path(path)
    if not path.is_dir():
        raise NotFoundError(f"advisory database not found: {path}")

    file_errors: Optional[List[LockAuditError]] = [] if permissive else None

    if show_progress:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=Console(stderr=True),
            transient=True,
        ) as progress:
            task = progress.add_task("Loading advisories...", total=None)
            records = []
            for record in iter_records(path, file_errors, path_filter):
                records.append(record)
                progress.update(task, advance=1)
    else:
        records = list(iter_records(path, file_errors, path_filter))

    if permissive:
        result = AdvisoryStore.load_permissive(records)
        result = LoadResult(store=result.store, errors=tuple(file_errors) + result.errors)
    else:
        result = LoadResult(store=AdvisoryStore.load(records))

    logger.info(f"Loaded {len(result.store)} advisories from {path}")
    if result.errors:
        logger.warning(f"Skipped {len(result.errors)} invalid advisory files or records")
    return result
