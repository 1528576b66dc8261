"""Error taxonomy for sync operations."""

from collections.abc import Iterable
from typing import Any


class CortexSyncError(Exception):
    """Base class for all cortexsync errors."""


class ConfigError(CortexSyncError):
    """Raised when an instance or module configuration is unusable."""


class MissingCredential(ConfigError):
    """Raised when a credential field is empty and has no fallback."""

    def __init__(self, module: str, field_name: str, fallback_var: str) -> None:
        super().__init__(
            f"Configuration field '{field_name}' is empty and fallback variable "
            f"{fallback_var} is not set (module: {module})"
        )
        self.module = module
        self.field_name = field_name
        self.fallback_var = fallback_var


class ModuleDisabled(ConfigError):
    """Raised when a disabled module is asked to sync."""

    def __init__(self, module: str) -> None:
        super().__init__(f"Module '{module}' is disabled for this instance")
        self.module = module


class UnknownModule(CortexSyncError):
    """Raised when a module name is not registered."""

    def __init__(self, module: str) -> None:
        super().__init__(f"Unknown module: {module}")
        self.module = module


class UnknownContentType(CortexSyncError):
    """Raised when a content type name matches nothing in its module."""

    def __init__(self, module: str, content_type: str) -> None:
        super().__init__(f"Unknown content type for {module}: {content_type}")
        self.module = module
        self.content_type = content_type


class TransportError(CortexSyncError):
    """Raised for network failures and HTTP error responses."""

    def __init__(self, message: str, status: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ContentTypeFetchFailed(CortexSyncError):
    """Raised when the first request for a content type fails."""

    def __init__(self, content_type: str, cause: Exception) -> None:
        super().__init__(f"Failed to fetch {content_type}: {cause}")
        self.content_type = content_type
        self.cause = cause


class UnsafeArchive(CortexSyncError):
    """Raised when a downloaded archive violates the extraction limits."""


class CorruptLocalFile(CortexSyncError):
    """A local object file that cannot be parsed."""

    def __init__(self, path: Any, reason: str) -> None:
        super().__init__(f"Corrupt local file {path}: {reason}")
        self.path = path
        self.reason = reason


class IdentifierCollision(CortexSyncError):
    """Two distinct ids map to the same file name."""

    def __init__(self, id_a: str, id_b: str, resolved_name: str) -> None:
        super().__init__(
            f"Identifiers '{id_a}' and '{id_b}' both resolve to file name '{resolved_name}'"
        )
        self.id_a = id_a
        self.id_b = id_b
        self.resolved_name = resolved_name


class PartialApplyError(CortexSyncError):
    """Raised when writing a content type's plan fails part way through."""

    def __init__(
        self,
        content_type: str,
        applied_paths: list[str],
        cause: Exception,
        applied_ids: Iterable[str] = (),
    ) -> None:
        super().__init__(
            f"Applying {content_type} failed after {len(applied_paths)} file(s): {cause}"
        )
        self.content_type = content_type
        self.applied_paths = applied_paths
        self.applied_ids = set(applied_ids)
        self.cause = cause


class InstanceLocked(CortexSyncError):
    """Raised when another process holds the instance lock."""

    def __init__(self, instance: str, held_since: str, pid: int | None = None) -> None:
        owner = f" by PID {pid}" if pid is not None else ""
        super().__init__(
            f"Instance '{instance}' is locked{owner} since {held_since}. "
            "Wait for the other operation to complete and retry."
        )
        self.instance = instance
        self.held_since = held_since
        self.pid = pid


class CommitFailed(CortexSyncError):
    """Raised when the git commit for a sync fails. Files remain on disk."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause
        self.report: Any = None
