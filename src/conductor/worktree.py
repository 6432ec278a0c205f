"""Git worktree isolation for instance working directories.

Worktrees for a session live under ``<root>/worktrees/<session>/``, one
directory per repository (``<repo-name>-<hash>``) and isolation tag. Instances
that share a tag share the checkout; nothing serializes their writes.
"""

import hashlib
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import WorktreeCleanupError, WorktreeError
from .system import conductor_home, git, git_current_branch, git_toplevel

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"


@dataclass
class WorktreeBinding:
    """Mapping of one original directory onto its isolated checkout."""

    original_path: Path
    """Absolute directory the instance was configured with."""

    worktree_path: Path
    """Equivalent directory inside the worktree."""

    tag: str
    """Isolation tag (also the branch name)."""

    repo_hash: str = ""
    """First 8 hex chars of md5(repo root)."""

    repo_root: Path | None = None
    worktree_root: Path | None = None
    is_git: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "original_path": str(self.original_path),
            "worktree_path": str(self.worktree_path),
            "tag": self.tag,
            "repo_hash": self.repo_hash,
            "repo_root": str(self.repo_root) if self.repo_root else None,
            "is_git": self.is_git,
        }


def repo_hash(repo_root: Path) -> str:
    return hashlib.md5(str(repo_root).encode("utf-8")).hexdigest()[:8]


class WorktreeManager:
    """Creates, maps and tears down git worktrees for one session."""

    def __init__(self, session_id: str, root: str | Path | None = None):
        """Initialize the manager.

        Args:
            session_id: Session timestamp; scopes the worktree directory
            root: Program root directory (defaults to ``$CONDUCTOR_HOME``)
        """
        self.session_id = session_id
        base = Path(root) if root is not None else conductor_home()
        self.base_dir = base / "worktrees" / session_id
        self._bindings: dict[Path, WorktreeBinding] = {}
        self._worktrees: dict[Path, Path] = {}

    def setup_worktree(self, original_dir: str | Path, tag: str) -> Path:
        """Return the isolated equivalent of ``original_dir``.

        Directories outside git are returned unchanged. Otherwise the
        repository's worktree for ``tag`` is created (or reused if it already
        exists) and the original directory's offset from the repository root is
        preserved in the returned path.

        Raises:
            WorktreeError: If ``git worktree add`` fails
        """
        original = Path(original_dir).resolve()
        if original in self._bindings:
            return self._bindings[original].worktree_path

        repo_root = git_toplevel(original)
        if repo_root is None:
            logger.debug(f"{original} is not in a git repository, skipping isolation")
            self._bindings[original] = WorktreeBinding(
                original_path=original, worktree_path=original, tag=tag, is_git=False
            )
            return original

        digest = repo_hash(repo_root)
        worktree_root = self.base_dir / f"{repo_root.name}-{digest}" / tag

        if worktree_root.exists():
            logger.info(f"Reusing worktree {worktree_root}")
        else:
            self._create(repo_root, worktree_root, tag)
        self._worktrees[worktree_root] = repo_root

        worktree_path = worktree_root / original.relative_to(repo_root)
        self._bindings[original] = WorktreeBinding(
            original_path=original,
            worktree_path=worktree_path,
            tag=tag,
            repo_hash=digest,
            repo_root=repo_root,
            worktree_root=worktree_root,
        )
        return worktree_path

    def _create(self, repo_root: Path, worktree_root: Path, tag: str) -> None:
        worktree_root.parent.mkdir(parents=True, exist_ok=True)
        branch = git_current_branch(repo_root) or DEFAULT_BRANCH

        result = git(["worktree", "add", str(worktree_root), "-b", tag, branch], repo_root)
        if result.returncode != 0:
            # The branch survives from an earlier session; check it out instead.
            result = git(["worktree", "add", str(worktree_root), tag], repo_root)
        if result.returncode != 0:
            raise WorktreeError(
                f"Failed to create worktree {worktree_root}: {result.stderr.strip()}"
            )
        logger.info(
            f"Created worktree {worktree_root} on branch {tag}",
            extra={"repo": str(repo_root), "base_branch": branch},
        )

    def map_path_to_worktree(self, path: str | Path) -> Path:
        """Translate a path under any isolated directory to its worktree twin.

        The most specific tracked original wins. Paths outside every tracked
        original pass through unchanged.
        """
        target = Path(path).resolve()
        candidates = [
            binding
            for original, binding in self._bindings.items()
            if binding.is_git and target.is_relative_to(original)
        ]
        if not candidates:
            return target
        binding = max(candidates, key=lambda b: len(b.original_path.parts))
        return binding.worktree_path / target.relative_to(binding.original_path)

    def get_worktree_path(self, original_dir: str | Path) -> Path | None:
        binding = self._bindings.get(Path(original_dir).resolve())
        return binding.worktree_path if binding else None

    def get_bindings(self) -> list[WorktreeBinding]:
        return list(self._bindings.values())

    def cleanup(self) -> None:
        """Remove every worktree this manager tracks, then prune.

        Each removal falls back to deleting the directory when git refuses.
        All worktrees are attempted before failures are reported.

        Raises:
            WorktreeCleanupError: If any removal or prune failed
        """
        errors: list[str] = []
        repos: set[Path] = set()

        for worktree_root, repo_root in list(self._worktrees.items()):
            repos.add(repo_root)
            result = git(["worktree", "remove", "--force", str(worktree_root)], repo_root)
            if result.returncode == 0:
                logger.info(f"Removed worktree {worktree_root}")
                continue

            logger.warning(
                f"git worktree remove failed for {worktree_root}: {result.stderr.strip()}"
            )
            try:
                if worktree_root.exists():
                    shutil.rmtree(worktree_root)
            except OSError as e:
                errors.append(f"{worktree_root}: {e}")

        for repo_root in repos:
            result = git(["worktree", "prune"], repo_root)
            if result.returncode != 0:
                errors.append(f"prune {repo_root}: {result.stderr.strip()}")

        self._worktrees.clear()
        self._bindings.clear()

        if errors:
            raise WorktreeCleanupError(errors)
