"""Configuration: defaults, config files and environment overrides."""

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from platformdirs import user_cache_dir

from .core.matcher import MatchOptions
from .database.fetch import DEFAULT_LOCK_TIMEOUT, DEFAULT_STALE_AFTER_DAYS, DEFAULT_URL
from .errors import ConfigError
from .utils.logging import get_logger

APP_NAME = "lockaudit"

# Local storage
CACHE_DIR = Path(user_cache_dir(APP_NAME))
DEFAULT_DATABASE_PATH = CACHE_DIR / "advisory-db"

DATABASE_ENV = "LOCKAUDIT_DB"
CONFIG_FILES = ("lockaudit.toml", ".cargo/audit.toml")

_SHA256_RE = re.compile(r"[0-9a-fA-F]{64}")

# table -> {key in file: AuditConfig field}
_SCHEMA: Dict[str, Dict[str, str]] = {
    "advisories": {
        "ignore": "ignore",
        "include_withdrawn": "include_withdrawn",
        "informational": "include_informational",
    },
    "database": {
        "path": "database_path",
        "url": "database_url",
        "sha256": "database_sha256",
        "fetch": "fetch",
        "stale_after_days": "stale_after_days",
        "lock_timeout": "lock_timeout",
    },
    "matcher": {
        "include_prerelease": "include_prerelease",
        "workers": "max_workers",
        "permissive": "permissive",
    },
}

logger = get_logger("Config")


@dataclass
class AuditConfig:
    """Settings for an audit run."""

    database_path: Path = DEFAULT_DATABASE_PATH
    database_url: str = DEFAULT_URL
    database_sha256: Optional[str] = None
    fetch: bool = True
    stale_after_days: Optional[int] = DEFAULT_STALE_AFTER_DAYS
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    ignore: List[str] = field(default_factory=list)
    include_withdrawn: bool = False
    include_informational: bool = True
    include_prerelease: bool = False
    max_workers: int = 1
    permissive: bool = False

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not isinstance(self.database_path, (str, Path)):
            raise ConfigError(f"database path must be a string, got {self.database_path!r}")
        self.database_path = Path(self.database_path).expanduser()

        if not isinstance(self.database_url, str) or not self.database_url:
            raise ConfigError("database url must be a non-empty string")
        if self.database_sha256 is not None:
            if not isinstance(self.database_sha256, str) or not _SHA256_RE.fullmatch(self.database_sha256):
                raise ConfigError(f"database sha256 must be 64 hex digits, got {self.database_sha256!r}")
            self.database_sha256 = self.database_sha256.lower()

        for name in ("fetch", "include_withdrawn", "include_informational", "include_prerelease", "permissive"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"{name} must be true or false")

        if self.stale_after_days is not None and (
            isinstance(self.stale_after_days, bool)
            or not isinstance(self.stale_after_days, int)
            or self.stale_after_days < 0
        ):
            raise ConfigError("stale_after_days must be a non-negative integer")
        if isinstance(self.lock_timeout, bool) or not isinstance(self.lock_timeout, (int, float)) or self.lock_timeout < 0:
            raise ConfigError("lock_timeout must be a non-negative number of seconds")
        if isinstance(self.max_workers, bool) or not isinstance(self.max_workers, int) or self.max_workers < 1:
            raise ConfigError("workers must be a positive integer")

        if isinstance(self.ignore, str) or not all(isinstance(item, str) for item in self.ignore):
            raise ConfigError("ignore must be a list of advisory ids")
        self.ignore = list(self.ignore)

    def match_options(self, extra_ignore: Iterable[str] = ()) -> MatchOptions:
        """Build matcher options, adding command-line ignores to the configured ones."""
        return MatchOptions(
            include_withdrawn=self.include_withdrawn,
            ignore=frozenset(self.ignore) | frozenset(extra_ignore),
            include_informational=self.include_informational,
            include_prerelease=self.include_prerelease,
            max_workers=self.max_workers,
        )

    def replace(self, **changes: Any) -> "AuditConfig":
        """Copy with some fields changed; ``None`` values are skipped."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({key: value for key, value in changes.items() if value is not None})
        return AuditConfig(**values)


def _informational_warnings(value: Any, where: str) -> Dict[str, Any]:
    if isinstance(value, str) or not isinstance(value, list) or not all(isinstance(kind, str) for kind in value):
        raise ConfigError(f"{where} must be a list of advisory kinds")
    return {"include_informational": bool(value)}


def _stale(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, bool):
        raise ConfigError(f"{where} must be true or false")
    # stale = true lets cargo-audit run on a database of any age
    return {"stale_after_days": None} if value else {}


def _without_counterpart(value: Any, where: str) -> Dict[str, Any]:
    logger.debug(f"{where}: cargo-audit setting not used by lockaudit")
    return {}


# cargo-audit keys read from .cargo/audit.toml: (table, key) -> settings update.
# Keys shared with lockaudit.toml (ignore, path, fetch) need no entry.
_CARGO_AUDIT_KEYS: Dict[Tuple[str, str], Callable[[Any, str], Dict[str, Any]]] = {
    ("advisories", "informational_warnings"): _informational_warnings,
    ("database", "stale"): _stale,
    # A git remote, not a snapshot archive
    ("database", "url"): _without_counterpart,
}


def _is_cargo_audit_config(source: Path) -> bool:
    return source.name == "audit.toml" and source.parent.name == ".cargo"


def _settings_from_document(document: Mapping[str, Any], source: Path) -> Dict[str, Any]:
    cargo_audit = _is_cargo_audit_config(source)
    settings: Dict[str, Any] = {}
    for table_name, keys in _SCHEMA.items():
        table = document.get(table_name, {})
        if not isinstance(table, dict):
            raise ConfigError(f"{source}: [{table_name}] must be a table")
        for key, value in table.items():
            where = f"{source}: [{table_name}] {key}"
            if cargo_audit and (table_name, key) in _CARGO_AUDIT_KEYS:
                settings.update(_CARGO_AUDIT_KEYS[table_name, key](value, where))
            elif key in keys:
                settings[keys[key]] = value
            elif cargo_audit:
                _without_counterpart(value, where)
            else:
                raise ConfigError(f"{source}: unknown key '{key}' in [{table_name}]")

    if cargo_audit:
        for table_name in sorted(set(document) - set(_SCHEMA)):
            _without_counterpart(document[table_name], f"{source}: [{table_name}]")
    return settings


def find_config_file(directory: Path) -> Optional[Path]:
    for name in CONFIG_FILES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AuditConfig:
    """Load configuration.

    Args:
        path: Explicit config file; must exist
        cwd: Directory searched for a config file when ``path`` is None
        environ: Environment used for overrides, defaults to ``os.environ``

    Returns:
        Validated configuration

    Raises:
        ConfigError: If the file is missing, not valid TOML or has invalid values
    """
    environ = os.environ if environ is None else environ

    if path is None:
        path = find_config_file(Path(cwd) if cwd else Path.cwd())
    elif not Path(path).is_file():
        raise ConfigError(f"config file not found: {path}")

    settings: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        try:
            document = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from e
        settings = _settings_from_document(document, path)
        logger.debug(f"Loaded configuration from {path}")

    if environ.get(DATABASE_ENV):
        settings["database_path"] = environ[DATABASE_ENV]

    return AuditConfig(**settings)
