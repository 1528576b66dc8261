"""On-disk object tree: instance/module/content_type/<sanitized_id>.yaml."""

import logging
import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from ..models.content_types import extract_identifier
from .codec import decode, encode, fingerprint
from .differ import SyncResult
from .errors import CorruptLocalFile, IdentifierCollision, PartialApplyError
from .lock import DEFAULT_STALE_AFTER, InstanceLock

logger = logging.getLogger(__name__)

OBJECT_SUFFIX = ".yaml"
MAX_NAME_LENGTH = 120


def sanitize_identifier(object_id: str) -> str:
    """Map a remote id to a file-system-safe name (without suffix).

    Lower-cases, replaces anything outside [a-z0-9._-] with underscores,
    collapses runs and trims separators. Distinct ids can map to the same
    name; FileStore.file_names detects that.
    """
    name = object_id.lower()
    name = re.sub(r"[^a-z0-9._-]", "_", name)
    name = re.sub(r"_+", "_", name)
    name = name.strip("._-")[:MAX_NAME_LENGTH].rstrip("._-")
    return name or "unnamed"


@dataclass
class LocalEntry:
    """One parsed local object file."""

    path: Path
    fingerprint: str


@dataclass
class Snapshot:
    """Local objects of one content type."""

    entries: dict[str, LocalEntry] = field(default_factory=dict)
    corrupt: list[CorruptLocalFile] = field(default_factory=list)

    def fingerprints(self) -> dict[str, str]:
        """id -> fingerprint, the form the differ consumes."""
        return {object_id: entry.fingerprint for object_id, entry in self.entries.items()}


class FileStore:
    """Reads and writes object files for one instance."""

    def __init__(self, root: Path, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        """Initialize the store.

        Args:
            root: Instance directory
            stale_after: Age after which another process's lock is reclaimed
        """
        self.root = Path(root)
        self.stale_after = stale_after

    def content_dir(self, module: str, content_type: str) -> Path:
        return self.root / module / content_type

    def relative(self, path: Path) -> str:
        """Path relative to the instance root, in POSIX form."""
        return path.relative_to(self.root).as_posix()

    def lock(self) -> InstanceLock:
        """Scoped exclusive lock over this instance."""
        return InstanceLock(self.root, stale_after=self.stale_after)

    def file_names(self, content_type: str, ids: Iterable[str]) -> dict[str, str]:
        """Resolve the file name for each id.

        Raises:
            IdentifierCollision: If two distinct ids resolve to the same name
        """
        names: dict[str, str] = {}
        owners: dict[str, str] = {}
        for object_id in ids:
            name = sanitize_identifier(object_id) + OBJECT_SUFFIX
            other = owners.get(name)
            if other is not None and other != object_id:
                logger.error("%s: ids '%s' and '%s' both map to %s", content_type, other, object_id, name)
                raise IdentifierCollision(other, object_id, name)
            owners[name] = object_id
            names[object_id] = name
        return names

    def target_names(
        self,
        content_type: str,
        plan: SyncResult,
        remote_ids: Iterable[str],
        snapshot: Snapshot,
    ) -> dict[str, str]:
        """Resolve file names for remote ids against everything staying on disk.

        Local objects the plan keeps occupy their current file: retained ids
        after an incomplete listing, and unchanged or preserved ids that may
        live under a file name of their own. No write may land on such a file.

        Returns:
            Remote id -> file name

        Raises:
            IdentifierCollision: If two ids resolve to the same name, or a
                write would replace the file of an object being kept
        """
        remote_ids = list(remote_ids)
        names = self.file_names(content_type, [*remote_ids, *sorted(plan.retained)])

        writes = {i for i in remote_ids if i in plan.added or i in plan.updated}
        occupied = {
            entry.path.name: object_id
            for object_id, entry in snapshot.entries.items()
            if object_id not in plan.removed and object_id not in writes
        }
        for object_id in remote_ids:
            if object_id not in writes:
                continue
            owner = occupied.get(names[object_id])
            if owner is not None and owner != object_id:
                logger.error(
                    "%s: '%s' would overwrite the file of kept object '%s'",
                    content_type, object_id, owner,
                )
                raise IdentifierCollision(owner, object_id, names[object_id])
        return {object_id: names[object_id] for object_id in remote_ids}

    def snapshot(
        self,
        module: str,
        content_type: str,
        id_field: str,
        fallback_id_fields: tuple[str, ...] = (),
    ) -> Snapshot:
        """Enumerate and fingerprint the local objects of a content type.

        Unparsable files, files without an identifier and second files
        claiming an already-seen id are excluded and reported as corrupt.
        """
        snapshot = Snapshot()
        directory = self.content_dir(module, content_type)
        if not directory.is_dir():
            return snapshot

        for path in sorted(directory.glob(f"*{OBJECT_SUFFIX}")):
            if path.name.startswith("."):
                continue
            try:
                obj = decode(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
                snapshot.corrupt.append(CorruptLocalFile(path, str(e)))
                continue
            if not isinstance(obj, dict):
                snapshot.corrupt.append(CorruptLocalFile(path, "content is not a mapping"))
                continue

            object_id = extract_identifier(obj, id_field, fallback_id_fields)
            if object_id is None:
                snapshot.corrupt.append(CorruptLocalFile(path, f"missing '{id_field}' field"))
                continue
            if object_id in snapshot.entries:
                first = snapshot.entries[object_id].path.name
                snapshot.corrupt.append(
                    CorruptLocalFile(path, f"id '{object_id}' already stored in {first}")
                )
                continue

            snapshot.entries[object_id] = LocalEntry(path=path, fingerprint=fingerprint(obj))

        for error in snapshot.corrupt:
            logger.warning("%s", error)
        return snapshot

    def read(self, path: Path) -> Any:
        """Load one object file.

        Raises:
            OSError: If the file cannot be read
            yaml.YAMLError: If the file is not valid YAML
        """
        return decode(path.read_text(encoding="utf-8"))

    def _write_atomic(self, path: Path, content: str) -> None:
        """Write through a temporary file in the same directory, then rename."""
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def apply(
        self,
        module: str,
        content_type: str,
        plan: SyncResult,
        objects: Mapping[str, dict[str, Any]],
        snapshot: Snapshot,
    ) -> list[str]:
        """Write added/updated objects and delete removed ones.

        File names are resolved and checked against the objects that stay on
        disk before anything is touched, so a collision leaves the tree
        unmodified.

        Args:
            module: Module name
            content_type: Content type name
            plan: Diff result naming the ids to change
            objects: id -> remote object for every added/updated id
            snapshot: Local snapshot the plan was computed from

        Returns:
            Changed paths relative to the instance root

        Raises:
            IdentifierCollision: If two ids resolve to the same file name or
                a write would replace a kept object's file
            PartialApplyError: If a write or delete fails
        """
        names = self.target_names(content_type, plan, objects.keys(), snapshot)
        directory = self.content_dir(module, content_type)
        applied: list[str] = []
        done: set[str] = set()

        try:
            for object_id in sorted(plan.removed):
                path = snapshot.entries[object_id].path
                path.unlink(missing_ok=True)
                applied.append(self.relative(path))
                done.add(object_id)

            writes = [i for i in objects if i in plan.added or i in plan.updated]
            targets = {directory / names[i] for i in writes}
            if writes:
                directory.mkdir(parents=True, exist_ok=True)
            for object_id in writes:
                path = directory / names[object_id]
                self._write_atomic(path, encode(objects[object_id]))
                applied.append(self.relative(path))
                done.add(object_id)

                # The id was previously stored under a different file name
                previous = snapshot.entries.get(object_id)
                if previous is not None and previous.path not in targets:
                    previous.path.unlink(missing_ok=True)
                    applied.append(self.relative(previous.path))
        except OSError as e:
            raise PartialApplyError(content_type, applied, e, applied_ids=done) from e

        logger.debug("%s/%s: %d path(s) changed", module, content_type, len(applied))
        return applied
