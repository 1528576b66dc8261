"""Change detection between the local object tree and remote objects."""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..models.content_types import extract_identifier
from .codec import fingerprint

logger = logging.getLogger(__name__)


class SyncPhase:
    """Phases of one content type's sync."""

    FETCHING = "fetching"
    DIFFING = "diffing"
    APPLYING = "applying"
    COMMITTING = "committing"
    DONE = "done"
    ABORTED = "aborted"  # Fatal error, tree untouched for this content type
    PARTIALLY_APPLIED = "partially_applied"  # Some files written before a failure


@dataclass
class FieldChanges:
    """Top-level keys that differ between a local object and its remote version."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)

    def summary(self) -> str:
        parts = [
            f"{label}: {', '.join(keys)}"
            for label, keys in (
                ("modified", self.modified),
                ("added", self.added),
                ("removed", self.removed),
            )
            if keys
        ]
        return "; ".join(parts) if parts else "formatting only"


@dataclass
class SyncResult:
    """Outcome of syncing one content type."""

    content_type: str
    added: set[str] = field(default_factory=set)
    updated: set[str] = field(default_factory=set)
    removed: set[str] = field(default_factory=set)
    unchanged_ids: set[str] = field(default_factory=set)
    # Local ids kept because the remote listing was incomplete
    retained: set[str] = field(default_factory=set)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    phase: str = SyncPhase.FETCHING
    changed_paths: list[str] = field(default_factory=list)
    # Updated id -> changed keys, filled in by diff
    field_changes: dict[str, FieldChanges] = field(default_factory=dict)

    @property
    def unchanged(self) -> int:
        """Number of objects identical on both sides."""
        return len(self.unchanged_ids)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.updated or self.removed)

    @property
    def failed(self) -> bool:
        return self.phase in (SyncPhase.ABORTED, SyncPhase.PARTIALLY_APPLIED)

    def summary(self) -> str:
        """Human-readable change counts, e.g. "2 added, 1 removed"."""
        parts = [
            f"{len(ids)} {label}"
            for label, ids in (
                ("added", self.added),
                ("updated", self.updated),
                ("removed", self.removed),
            )
            if ids
        ]
        return ", ".join(parts) if parts else "up to date"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "content_type": self.content_type,
            "added": sorted(self.added),
            "updated": sorted(self.updated),
            "removed": sorted(self.removed),
            "unchanged": self.unchanged,
            "retained": sorted(self.retained),
            "warnings": list(self.warnings),
            "error": self.error,
            "phase": self.phase,
            "field_changes": {
                object_id: {"added": c.added, "removed": c.removed, "modified": c.modified}
                for object_id, c in sorted(self.field_changes.items())
            },
        }


def field_differences(local: Mapping[str, Any], remote: Mapping[str, Any]) -> FieldChanges:
    """Compare two versions of an object key by key.

    Values are compared by their canonical serialization, the same form the
    object file is written in.
    """
    changes = FieldChanges()
    for key in sorted(set(local) | set(remote), key=str):
        if key not in local:
            changes.added.append(str(key))
        elif key not in remote:
            changes.removed.append(str(key))
        elif fingerprint(local[key]) != fingerprint(remote[key]):
            changes.modified.append(str(key))
    return changes


def index_remote(
    objects: Iterable[dict[str, Any]],
    id_field: str,
    fallback_id_fields: tuple[str, ...] = (),
) -> tuple[dict[str, dict[str, Any]], list[str]]:
    """Map identifiers to remote objects.

    When an id occurs more than once the last occurrence wins. Objects
    without any identifier are dropped. Both anomalies are returned as
    warnings and logged.

    Returns:
        Tuple of (id -> object in iteration order, warnings)
    """
    index: dict[str, dict[str, Any]] = {}
    warnings: list[str] = []

    for position, obj in enumerate(objects):
        object_id = extract_identifier(obj, id_field, fallback_id_fields)
        if object_id is None:
            warnings.append(f"Dropped object #{position} without '{id_field}' field")
            continue
        if object_id in index:
            warnings.append(f"Duplicate id '{object_id}' in response; keeping the last occurrence")
            # Re-insert so the surviving object takes the later position
            del index[object_id]
        index[object_id] = obj

    for warning in warnings:
        logger.warning(warning)
    return index, warnings


def diff_index(
    content_type: str,
    local_snapshot: Mapping[str, str] | Iterable[tuple[str, str]],
    remote_index: Mapping[str, dict[str, Any]],
    preserve: Iterable[str] = (),
) -> SyncResult:
    """Classify ids as added, updated, removed or unchanged.

    Args:
        content_type: Content type name for the result
        local_snapshot: id -> fingerprint of local objects (or (id, fingerprint) pairs)
        remote_index: id -> remote object
        preserve: Ids whose remote object is known to be incomplete; if they
            exist locally they are left unchanged instead of overwritten

    Returns:
        SyncResult in the DIFFING phase
    """
    local = dict(local_snapshot)
    keep = set(preserve)
    result = SyncResult(content_type=content_type, phase=SyncPhase.DIFFING)

    for object_id, obj in remote_index.items():
        if object_id not in local:
            result.added.add(object_id)
        elif object_id in keep or fingerprint(obj) == local[object_id]:
            result.unchanged_ids.add(object_id)
        else:
            result.updated.add(object_id)

    result.removed = set(local) - set(remote_index)
    return result


def diff(
    content_type: str,
    local_snapshot: Mapping[str, str] | Iterable[tuple[str, str]],
    remote_objects: Iterable[dict[str, Any]],
    id_field: str,
    fallback_id_fields: tuple[str, ...] = (),
    preserve: Iterable[str] = (),
) -> SyncResult:
    """Compute the sync plan for one content type. Never touches storage."""
    remote_index, warnings = index_remote(remote_objects, id_field, fallback_id_fields)
    result = diff_index(content_type, local_snapshot, remote_index, preserve)
    result.warnings.extend(warnings)
    return result
