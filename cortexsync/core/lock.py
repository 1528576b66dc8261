"""Instance-scoped exclusive lock with stale-lock recovery.

The lock is a JSON file created with O_CREAT | O_EXCL in the instance root.
It records the owner's PID, host name and acquisition time so a lock left
behind by a crashed process can be recognised and reclaimed.
"""

import json
import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .errors import InstanceLocked

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".cortexsync.lock"
DEFAULT_STALE_AFTER = timedelta(hours=6)
# An empty lock file younger than this may belong to an owner still writing it
WRITE_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class LockFree:
    """No process holds the lock."""


@dataclass(frozen=True)
class LockHeld:
    """The lock file exists and names its owner."""

    pid: int | None
    host: str
    since: str


LockState = LockFree | LockHeld


def process_alive(pid: int) -> bool:
    """Check whether a process with this PID exists on the local host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


def _parse(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _parse_time(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class InstanceLock:
    """Exclusive lock over one instance directory.

    Usage:
        with InstanceLock(instance_dir):
            ...  # mutate the tree
    """

    def __init__(
        self,
        root: Path,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        instance: str | None = None,
    ) -> None:
        self.root = Path(root)
        self.path = self.root / LOCK_FILENAME
        self.stale_after = stale_after
        self.instance = instance or self.root.name
        self._owner: dict[str, Any] | None = None

    @property
    def owned(self) -> bool:
        return self._owner is not None

    def _read_raw(self) -> str | None:
        """Raw lock file content, or None if it cannot be read."""
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError:
            return None

    def _read(self) -> dict[str, Any] | None:
        """Read the lock file. Returns None if it is unreadable."""
        return _parse(self._read_raw())

    def inspect(self) -> LockState:
        """Report the current lock state without changing it."""
        if not self.path.exists():
            return LockFree()
        data = self._read() or {}
        pid = data.get("pid")
        return LockHeld(
            pid=pid if isinstance(pid, int) else None,
            host=str(data.get("host", "")),
            since=str(data.get("since", "unknown")),
        )

    def _stale_reason(self, raw: str | None) -> str | None:
        """Explain why a lock with this content can be reclaimed, or None if it is live."""
        data = _parse(raw)
        if data is None:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return "lock file disappeared"
            if age < WRITE_GRACE_SECONDS:
                return None
            return "lock file is unreadable"

        since = _parse_time(str(data.get("since", "")))
        if since is not None and datetime.now(timezone.utc) - since > self.stale_after:
            return f"lock is older than {self.stale_after}"

        pid = data.get("pid")
        if data.get("host") == socket.gethostname() and isinstance(pid, int):
            if not process_alive(pid):
                return f"owner process {pid} is no longer running"
        return None

    def _reclaim(self, judged: str | None) -> bool:
        """Remove the lock file only if it still holds the content judged stale.

        The file is first renamed aside, which is atomic, and compared there.
        A lock that another process created in the meantime is put back.

        Returns:
            True if the lock path is free to be created
        """
        aside = self.path.with_name(f"{LOCK_FILENAME}.{os.getpid()}.{id(self):x}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True

        try:
            current: str | None = aside.read_text(encoding="utf-8")
        except OSError:
            current = None

        if current == judged:
            aside.unlink(missing_ok=True)
            return True

        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.error("Lock %s was re-created while restoring a live lock", self.path)
        aside.unlink(missing_ok=True)
        return False

    def acquire(self) -> "InstanceLock":
        """Take the lock.

        Raises:
            InstanceLocked: If a live process holds the lock
        """
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                raw = self._read_raw()
                reason = self._stale_reason(raw)
                if reason is None:
                    held = self.inspect()
                    since = held.since if isinstance(held, LockHeld) else "unknown"
                    pid = held.pid if isinstance(held, LockHeld) else None
                    raise InstanceLocked(self.instance, since, pid) from None
                if not self._reclaim(raw):
                    break
                logger.warning("Reclaimed stale lock %s: %s", self.path, reason)
                continue

            owner = {
                "pid": os.getpid(),
                "host": socket.gethostname(),
                "since": datetime.now(timezone.utc).isoformat(),
            }
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(owner, f)
                f.flush()
                os.fsync(f.fileno())
            self._owner = owner
            logger.debug("Acquired lock %s", self.path)
            return self

        # Another process reclaimed the stale lock first
        held = self.inspect()
        since = held.since if isinstance(held, LockHeld) else "unknown"
        raise InstanceLocked(self.instance, since)

    def release(self) -> None:
        """Release the lock if this object still owns it."""
        if self._owner is None:
            return
        current = self._read()
        if current == self._owner:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            logger.debug("Released lock %s", self.path)
        else:
            logger.warning("Lock %s was taken over by another process; leaving it", self.path)
        self._owner = None

    def __enter__(self) -> "InstanceLock":
        return self.acquire()

    def __exit__(self, *exc: object) -> None:
        self.release()
