"""Exceptions related to chart-sync."""

__all__ = [
    "SyncException",
    "InputException",
    "RenderError",
    "MissingValueError",
    "InvalidTemplateError",
    "DiffError",
    "MalformedLiveObjectError",
    "SourceException",
    "CommandException",
    "ClusterException",
    "ConflictError",
    "NotFoundError",
    "ForbiddenError",
    "UnavailableError",
    "CycleCancelledError",
]


class SyncException(Exception):
    """Generic base exception used for this library."""


class InputException(SyncException):
    """Raised when the input files or values are not formatted as expected."""


class RenderError(SyncException):
    """Raised when a set of templates can't be rendered into documents."""


class MissingValueError(RenderError):
    """Raised when a required value reference does not resolve in any layer."""

    def __init__(self, path: str, template: str | None = None) -> None:
        where = f" in template '{template}'" if template else ""
        super().__init__(f"Missing required value {path}{where}")
        self.path = path
        self.template = template


class InvalidTemplateError(RenderError):
    """Raised when a template body or directive is malformed."""

    def __init__(self, template: str, message: str) -> None:
        super().__init__(f"Invalid template '{template}': {message}")
        self.template = template
        self.message = message


class DiffError(SyncException):
    """Raised when desired and live state can't be compared."""


class MalformedLiveObjectError(DiffError):
    """Raised when a live cluster object is missing identity or version fields."""


class SourceException(SyncException):
    """Raised when the desired state source can't be read."""


class CommandException(SyncException):
    """Raised when there is a failure running a subcommand."""


class ClusterException(SyncException):
    """Base class for errors returned by the cluster API."""

    reason = "Unavailable"


class ConflictError(ClusterException):
    """Raised when a precondition failed or the object already exists."""

    reason = "Conflict"


class NotFoundError(ClusterException):
    """Raised when an object does not exist in the cluster."""

    reason = "NotFound"


class ForbiddenError(ClusterException):
    """Raised when the cluster refuses the operation."""

    reason = "Forbidden"


class UnavailableError(ClusterException):
    """Raised when the cluster can't be reached or failed unexpectedly."""

    reason = "Unavailable"


class CycleCancelledError(SyncException):
    """Raised at an operation boundary when a reconciliation cycle is cancelled."""
