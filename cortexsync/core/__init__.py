"""Core sync functionality."""

from .errors import (
    CommitFailed,
    ConfigError,
    ContentTypeFetchFailed,
    CorruptLocalFile,
    CortexSyncError,
    IdentifierCollision,
    InstanceLocked,
    MissingCredential,
    ModuleDisabled,
    PartialApplyError,
    TransportError,
    UnknownContentType,
    UnknownModule,
    UnsafeArchive,
)
from .auth import PlatformAuth
from .client import ApiClient
from .differ import SyncPhase, SyncResult, diff
from .git import CommitBoundary, GitRepository
from .lock import InstanceLock, LockFree, LockHeld
from .store import FileStore, Snapshot, sanitize_identifier
from .strategies import FetchResult, fetch

__all__ = [
    "ApiClient",
    "CommitBoundary",
    "CommitFailed",
    "ConfigError",
    "ContentTypeFetchFailed",
    "CorruptLocalFile",
    "CortexSyncError",
    "FetchResult",
    "FileStore",
    "GitRepository",
    "IdentifierCollision",
    "InstanceLock",
    "InstanceLocked",
    "LockFree",
    "LockHeld",
    "MissingCredential",
    "ModuleDisabled",
    "PartialApplyError",
    "PlatformAuth",
    "Snapshot",
    "SyncPhase",
    "SyncResult",
    "TransportError",
    "UnknownContentType",
    "UnknownModule",
    "UnsafeArchive",
    "diff",
    "fetch",
    "sanitize_identifier",
]
