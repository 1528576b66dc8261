"""Git repository access and the per-sync commit boundary.

Git is driven through its command line. Every failure surfaces as
CommitFailed carrying git's stderr.
"""

import logging
import subprocess
from collections.abc import Iterable
from pathlib import Path

from .errors import CommitFailed

logger = logging.getLogger(__name__)

FALLBACK_NAME = "cortexsync"
FALLBACK_EMAIL = "cortexsync@localhost"


class GitRepository:
    """A git working tree rooted at an instance directory."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    @classmethod
    def open(cls, path: Path) -> "GitRepository":
        """Open an existing repository.

        Raises:
            CommitFailed: If the directory is not a git repository
        """
        repo = cls(path)
        if not (repo.path / ".git").exists():
            raise CommitFailed(f"Not a git repository: {repo.path}")
        return repo

    @classmethod
    def init(cls, path: Path) -> "GitRepository":
        """Create a repository, or open it if it already exists."""
        repo = cls(path)
        if not (repo.path / ".git").exists():
            repo.path.mkdir(parents=True, exist_ok=True)
            repo.run("init", "-q")
            logger.info("Initialized git repository in %s", repo.path)
        return repo

    def run(self, *args: str) -> str:
        """Run a git command in the repository and return its stdout.

        Raises:
            CommitFailed: If git is missing or exits non-zero
        """
        command = ["git", *args]
        logger.debug("Running: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                cwd=self.path,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommitFailed("git executable not found", e) from e

        if result.returncode != 0:
            stderr = result.stderr.strip() or result.stdout.strip()
            raise CommitFailed(f"git {args[0]} failed: {stderr}")
        return result.stdout

    def _config(self, key: str) -> str:
        try:
            return self.run("config", "--get", key).strip()
        except CommitFailed:
            # Exit status 1 means the key is unset
            return ""

    def has_identity(self) -> bool:
        """Check whether git has a committer name and email configured."""
        return bool(self._config("user.name") and self._config("user.email"))

    def stage(self, paths: Iterable[str]) -> None:
        """Stage additions, modifications and deletions of the given paths."""
        present: list[str] = []
        missing: list[str] = []
        for rel in paths:
            (present if (self.path / rel).exists() else missing).append(rel)
        if present:
            self.run("add", "--", *present)
        if missing:
            self.run("rm", "--cached", "--ignore-unmatch", "-q", "--", *missing)

    def staged(self, paths: Iterable[str]) -> list[str]:
        """Paths among `paths` whose index entry differs from HEAD."""
        paths = list(paths)
        if not paths:
            return []
        output = self.run("diff", "--cached", "--name-only", "--", *paths)
        return [line for line in output.splitlines() if line]

    def head(self) -> str | None:
        """Current commit id, or None on an unborn branch."""
        try:
            return self.run("rev-parse", "--verify", "-q", "HEAD").strip() or None
        except CommitFailed:
            return None

    def commit(self, message: str, paths: list[str]) -> str:
        """Commit only `paths` and return the new commit id."""
        identity: list[str] = []
        if not self.has_identity():
            identity = ["-c", f"user.name={FALLBACK_NAME}", "-c", f"user.email={FALLBACK_EMAIL}"]
        self.run(*identity, "commit", "-q", "--only", "-m", message, "--", *paths)
        commit_id = self.head()
        if commit_id is None:
            raise CommitFailed("git commit reported success but HEAD is unset")
        return commit_id

    def status(self) -> list[str]:
        """Porcelain status lines for uncommitted changes."""
        return [line for line in self.run("status", "--porcelain").splitlines() if line]


class CommitBoundary:
    """Stages the paths a sync touched and records them as one commit."""

    def __init__(self, repo: GitRepository) -> None:
        self.repo = repo

    def commit(self, changed_paths: Iterable[str], message: str) -> str | None:
        """Commit the given paths.

        Args:
            changed_paths: Paths relative to the repository root
            message: Commit message

        Returns:
            The commit id, or None when nothing differs from HEAD

        Raises:
            CommitFailed: If staging or committing fails
        """
        # Keep first occurrence order, drop duplicates
        paths = list(dict.fromkeys(changed_paths))
        if not paths:
            return None

        self.repo.stage(paths)
        staged = self.repo.staged(paths)
        if not staged:
            logger.info("No staged changes; skipping commit")
            return None

        commit_id = self.repo.commit(message, staged)
        logger.info("Committed %d path(s) as %s", len(staged), commit_id[:12])
        return commit_id
