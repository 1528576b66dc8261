"""Pull and diff operations for one module of an instance."""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from ..models.config import InstanceConfig
from ..models.content_types import ContentTypeDescriptor
from ..models.registry import ModuleDefinition, ModuleRegistry
from .auth import PlatformAuth
from .client import ApiClient
from .differ import SyncPhase, SyncResult, diff_index, field_differences, index_remote
from .errors import (
    CommitFailed,
    ContentTypeFetchFailed,
    CorruptLocalFile,
    IdentifierCollision,
    PartialApplyError,
)
from .git import CommitBoundary, GitRepository
from .lock import LockHeld
from .store import OBJECT_SUFFIX, FileStore, Snapshot
from .strategies import RequestClient, fetch

logger = logging.getLogger(__name__)


@dataclass
class ModuleReport:
    """Result of one pull or diff over a module."""

    module: str
    operation: str  # "pull" or "diff"
    results: list[SyncResult] = field(default_factory=list)
    commit_id: str | None = None
    message: str | None = None

    @property
    def has_changes(self) -> bool:
        return any(r.has_changes for r in self.results)

    @property
    def failed(self) -> bool:
        """True if any content type aborted or was partially applied."""
        return any(r.failed for r in self.results)

    def totals(self) -> Counter:
        counts: Counter = Counter()
        for r in self.results:
            counts["added"] += len(r.added)
            counts["updated"] += len(r.updated)
            counts["removed"] += len(r.removed)
            counts["unchanged"] += r.unchanged
        return counts

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "module": self.module,
            "operation": self.operation,
            "commit_id": self.commit_id,
            "results": [r.to_dict() for r in self.results],
        }


def build_commit_message(module: str, results: list[SyncResult]) -> str | None:
    """Commit message aggregating every content type's changes.

    Returns:
        The message, or None if no content type has changes
    """
    changed = [r for r in results if r.has_changes]
    if not changed:
        return None

    totals: Counter = Counter()
    for r in changed:
        totals["added"] += len(r.added)
        totals["updated"] += len(r.updated)
        totals["removed"] += len(r.removed)
    header = ", ".join(
        f"{totals[label]} {label}" for label in ("added", "updated", "removed") if totals[label]
    )

    lines = [f"Pull {module}: {header}", ""]
    for r in changed:
        line = f"- {r.content_type}: {r.summary()}"
        if r.phase == SyncPhase.PARTIALLY_APPLIED:
            line += " (partially applied)"
        lines.append(line)
    return "\n".join(lines) + "\n"


class SyncOrchestrator:
    """Drives fetch, diff, apply and commit for one module.

    Content types are processed in registry order. A failure confined to one
    content type is recorded in its SyncResult and never stops the others;
    lock and commit failures abort the whole operation.
    """

    def __init__(
        self,
        module: ModuleDefinition,
        client: RequestClient,
        store: FileStore,
        committer: CommitBoundary | None = None,
        params: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            module: Module to sync
            client: API client for the module
            store: File store of the instance
            committer: Commit boundary (opened on the store root if not provided)
            params: Extra request parameters for every content type
        """
        self.module = module
        self.client = client
        self.store = store
        self._committer = committer
        self.params = params or {}

    @property
    def committer(self) -> CommitBoundary:
        """Get or create the commit boundary."""
        if self._committer is None:
            self._committer = CommitBoundary(GitRepository.open(self.store.root))
        return self._committer

    def _sync(self, descriptor: ContentTypeDescriptor, write: bool) -> SyncResult:
        """Run one content type through its phases."""
        name = descriptor.name
        result = SyncResult(content_type=name)

        try:
            fetched = fetch(self.client, descriptor, self.params)
        except ContentTypeFetchFailed as e:
            logger.error("%s/%s: %s", self.module.name, name, e)
            result.phase = SyncPhase.ABORTED
            result.error = str(e)
            return result
        for warning in fetched.warnings:
            logger.warning("%s: %s", self.module.name, warning)

        result.phase = SyncPhase.DIFFING
        snapshot = self.store.snapshot(
            self.module.name, name, descriptor.id_field, descriptor.fallback_id_fields
        )
        remote, index_warnings = index_remote(
            fetched.objects, descriptor.id_field, descriptor.fallback_id_fields
        )
        plan = diff_index(name, snapshot.fingerprints(), remote, preserve=fetched.incomplete_ids)
        plan.warnings = fetched.warnings + index_warnings + [str(c) for c in snapshot.corrupt]

        if fetched.partial and plan.removed:
            # Objects on pages that were never fetched are not known to be gone
            plan.retained, plan.removed = plan.removed, set()
            plan.warnings.append(
                f"{name}: listing incomplete, kept {len(plan.retained)} local object(s) "
                "that were not returned"
            )

        try:
            self.store.target_names(name, plan, remote, snapshot)
        except IdentifierCollision as e:
            plan.phase = SyncPhase.ABORTED
            plan.error = str(e)
            return plan

        if not write:
            self._describe_updates(plan, remote, snapshot)
            plan.phase = SyncPhase.DONE
            return plan

        plan.phase = SyncPhase.APPLYING
        try:
            plan.changed_paths = self.store.apply(self.module.name, name, plan, remote, snapshot)
        except PartialApplyError as e:
            logger.error("%s/%s: %s", self.module.name, name, e)
            plan.phase = SyncPhase.PARTIALLY_APPLIED
            plan.error = str(e)
            plan.changed_paths = list(e.applied_paths)
            self._trim_to_applied(plan, e.applied_ids)
        return plan

    def _describe_updates(
        self, plan: SyncResult, remote: dict[str, dict[str, Any]], snapshot: Snapshot
    ) -> None:
        """Record which top-level keys changed for every updated id."""
        for object_id in sorted(plan.updated):
            path = snapshot.entries[object_id].path
            try:
                local = self.store.read(path)
            except (OSError, yaml.YAMLError) as e:
                logger.debug("Cannot compare %s: %s", path, e)
                continue
            if isinstance(local, dict):
                plan.field_changes[object_id] = field_differences(local, remote[object_id])

    def _trim_to_applied(self, plan: SyncResult, applied_ids: set[str]) -> None:
        """Keep only the changes whose files were written or deleted."""
        planned = len(plan.added) + len(plan.updated) + len(plan.removed)
        plan.added &= applied_ids
        plan.updated &= applied_ids
        plan.removed &= applied_ids

        skipped = planned - len(plan.added) - len(plan.updated) - len(plan.removed)
        if skipped:
            plan.warnings.append(f"{plan.content_type}: {skipped} planned change(s) not applied")

    def diff(self) -> ModuleReport:
        """Compute every content type's changes without touching the tree."""
        report = ModuleReport(module=self.module.name, operation="diff")
        for descriptor in self.module.content_types:
            report.results.append(self._sync(descriptor, write=False))
        return report

    def pull(self) -> ModuleReport:
        """Sync every content type to disk and commit the net change once.

        Raises:
            InstanceLocked: If another process holds the instance lock
            CommitFailed: If the commit fails; files stay on disk and the
                report is attached to the exception
        """
        report = ModuleReport(module=self.module.name, operation="pull")

        with self.store.lock():
            for descriptor in self.module.content_types:
                report.results.append(self._sync(descriptor, write=True))

            committing = [r for r in report.results if r.phase == SyncPhase.APPLYING]
            for r in committing:
                r.phase = SyncPhase.COMMITTING

            paths = [p for r in report.results for p in r.changed_paths]
            report.message = build_commit_message(self.module.name, report.results)
            if paths and report.message:
                try:
                    report.commit_id = self.committer.commit(paths, report.message)
                except CommitFailed as e:
                    for r in committing:
                        r.phase = SyncPhase.ABORTED
                        r.error = str(e)
                    e.report = report
                    raise

            for r in committing:
                r.phase = SyncPhase.DONE

        if report.commit_id is None and not report.failed:
            logger.info("%s: up to date", self.module.name)
        return report

    def test(self) -> bool:
        """Check connectivity and credentials.

        Raises:
            TransportError: On connection or authentication failure
        """
        return self.client.verify_connection()


# =============================================================================
# Factories and instance status
# =============================================================================

def build_orchestrator(
    instance_dir: Path,
    module: ModuleDefinition,
    config: InstanceConfig,
) -> SyncOrchestrator:
    """Wire an orchestrator from instance configuration.

    Raises:
        ConfigError: If the module is not configured, disabled or missing
            credentials
    """
    credentials = config.credentials(module.name)
    auth = PlatformAuth(
        fqdn=credentials.fqdn,
        api_key=credentials.api_key,
        api_key_id=credentials.api_key_id,
        base_api_path=module.base_api_path,
    )
    client = ApiClient(
        auth,
        timeout=config.settings.timeout,
        max_attempts=config.settings.max_attempts,
    )
    store = FileStore(instance_dir, stale_after=timedelta(hours=config.settings.stale_lock_hours))
    return SyncOrchestrator(module, client, store)


@dataclass
class ModuleStatus:
    """Local state of one module in an instance."""

    name: str
    enabled: bool
    object_counts: dict[str, int] = field(default_factory=dict)
    corrupt_files: int = 0


@dataclass
class InstanceStatus:
    """Local state of an instance, read without network access."""

    path: Path
    modules: list[ModuleStatus] = field(default_factory=list)
    lock: LockHeld | None = None
    head: str | None = None
    uncommitted: list[str] = field(default_factory=list)


def collect_status(instance_dir: Path, registry: ModuleRegistry, config: InstanceConfig) -> InstanceStatus:
    """Summarize an instance: object counts, lock state and git state."""
    store = FileStore(instance_dir)
    status = InstanceStatus(path=Path(instance_dir))

    lock_state = store.lock().inspect()
    status.lock = lock_state if isinstance(lock_state, LockHeld) else None

    for name in registry.names():
        module = registry.get(name)
        module_status = ModuleStatus(name=name, enabled=config.is_enabled(name))
        for descriptor in module.content_types:
            snapshot = store.snapshot(
                name, descriptor.name, descriptor.id_field, descriptor.fallback_id_fields
            )
            module_status.object_counts[descriptor.name] = len(snapshot.entries)
            module_status.corrupt_files += len(snapshot.corrupt)
        status.modules.append(module_status)

    try:
        repo = GitRepository.open(instance_dir)
        status.head = repo.head()
        status.uncommitted = repo.status()
    except CommitFailed as e:
        logger.warning("Git state unavailable: %s", e)
    return status


@dataclass
class ValidationReport:
    """Outcome of checking every object file of an instance."""

    path: Path
    checked: int = 0
    errors: list[CorruptLocalFile] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_instance(instance_dir: Path, registry: ModuleRegistry) -> ValidationReport:
    """Parse every object file and report the ones a pull could not use.

    A file is invalid when it does not parse, is not a mapping, lacks its
    content type's identifier, repeats another file's id, or sits in a
    directory that is not a known content type of its module.
    """
    store = FileStore(instance_dir)
    report = ValidationReport(path=Path(instance_dir))

    for name in registry.names():
        module = registry.get(name)
        for descriptor in module.content_types:
            snapshot = store.snapshot(
                name, descriptor.name, descriptor.id_field, descriptor.fallback_id_fields
            )
            report.checked += len(snapshot.entries) + len(snapshot.corrupt)
            report.errors.extend(snapshot.corrupt)

        module_dir = store.root / name
        if not module_dir.is_dir():
            continue
        known = {descriptor.name for descriptor in module.content_types}
        for directory in sorted(p for p in module_dir.iterdir() if p.is_dir()):
            if directory.name in known:
                continue
            for path in sorted(directory.glob(f"*{OBJECT_SUFFIX}")):
                report.checked += 1
                report.errors.append(
                    CorruptLocalFile(path, f"unknown content type '{directory.name}' for {name}")
                )

    return report
