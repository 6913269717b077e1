"""Exception hierarchy for lockaudit.

Parse and load errors are fatal to the operation that raised them. Lookup
errors are ordinary, recoverable conditions.
"""

from typing import Optional


class LockAuditError(Exception):
    """Base class for all lockaudit errors."""


class ParseError(LockAuditError, ValueError):
    """Raised while turning external input into advisories or a lockfile.

    Attributes:
        message: Human-readable error description
        context: Where the offending input lives (record id, file, package)
    """

    def __init__(self, message: str, context: Optional[str] = None) -> None:
        self.message = message
        self.context = context
        super().__init__(f"{context}: {message}" if context else message)


class MalformedError(ParseError):
    """Input is syntactically or structurally invalid."""


class UnsupportedVersionError(ParseError):
    """Input declares a format version this engine does not understand."""

    def __init__(self, version: object, supported: tuple, context: Optional[str] = None) -> None:
        self.version = version
        self.supported = supported
        versions = ", ".join(str(v) for v in supported)
        super().__init__(f"unsupported format version {version!r} (supported: {versions})", context)


class LoadError(LockAuditError):
    """Raised while building the advisory store."""


class InvalidAdvisoryError(LoadError):
    """An advisory record failed validation.

    Attributes:
        advisory_id: Id of the offending record, or None when it has none
        cause: Why the record was rejected
    """

    def __init__(self, advisory_id: Optional[str], cause: str) -> None:
        self.advisory_id = advisory_id
        self.cause = cause
        super().__init__(f"invalid advisory {advisory_id or '<unknown>'}: {cause}")


class NotFoundError(LockAuditError, LookupError):
    """A queried advisory id, alias or package is absent."""


class ConfigError(LockAuditError, ValueError):
    """Invalid configuration value or file."""


class FetchError(LockAuditError):
    """Advisory snapshot could not be downloaded, verified or installed."""
