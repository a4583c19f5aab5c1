"""Git worktree, branch, and pick (merge/squash/rebase) helpers for iterations."""

from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...config import STATE_DIR_NAME
from ..domain.models import BRANCH_PREFIX, PickStrategy, branch_for

logger = logging.getLogger(__name__)

_EXCLUDE_ENTRY = f"/{STATE_DIR_NAME}/"


class WorktreeError(RuntimeError):
    """A git command needed by an iteration failed."""


class BaseRefError(WorktreeError):
    """The base ref to branch from does not exist; retrying cannot help."""


class PickError(WorktreeError):
    """Merging the winning branch failed; the repository was rolled back."""


@dataclass(frozen=True)
class WorktreeHandle:
    worktree_path: Path
    branch: str


@dataclass(frozen=True)
class WorktreeEntry:
    path: str
    branch: str
    head: str


def _stderr(exc: subprocess.CalledProcessError) -> str:
    text = (exc.stderr or exc.stdout or "").strip()
    return text or f"git exited with status {exc.returncode}"


class WorktreeManager:
    """Create, list, remove and pick iteration worktrees of one repository."""

    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.worktrees_dir = self.project_dir / STATE_DIR_NAME / "worktrees"
        # Serializes ref and worktree mutations issued from worker threads.
        self._repo_lock = threading.RLock()

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", *args],
            cwd=self.project_dir,
            check=check,
            capture_output=True,
            text=True,
        )

    def worktree_path(self, name: str) -> Path:
        return self.worktrees_dir / name

    def current_branch(self) -> str:
        """Name of the checked-out branch, ``main`` when HEAD is detached."""
        result = self._git("symbolic-ref", "--short", "-q", "HEAD", check=False)
        branch = result.stdout.strip()
        return branch or "main"

    def ref_exists(self, ref: str) -> bool:
        result = self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        return result.returncode == 0

    def ensure_excluded(self) -> None:
        """Keep ``.iterate/`` out of ``git status`` without touching tracked files."""
        result = self._git("rev-parse", "--git-common-dir", check=False)
        common_dir = result.stdout.strip()
        if result.returncode != 0 or not common_dir:
            return
        exclude = Path(common_dir)
        if not exclude.is_absolute():
            exclude = self.project_dir / exclude
        exclude = exclude / "info" / "exclude"
        content = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
        if _EXCLUDE_ENTRY in {line.strip() for line in content.splitlines()}:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        exclude.write_text(content + _EXCLUDE_ENTRY + "\n", encoding="utf-8")

    def create(self, name: str, base_branch: Optional[str] = None) -> WorktreeHandle:
        """Create ``iterate/<name>`` from the base ref and check it out in its own worktree.

        Raises:
            BaseRefError: The repository has no commits or ``base_branch`` is invalid.
            WorktreeError: ``git worktree add`` failed (for example a stale branch).
        """
        base = base_branch or self.current_branch()
        if not self.ref_exists(base):
            raise BaseRefError(
                f"Base ref '{base}' does not exist. Make sure the repository has at least one commit."
            )
        branch = branch_for(name)
        worktree_path = self.worktree_path(name)
        with self._repo_lock:
            self.ensure_excluded()
            worktree_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self._git("worktree", "add", "-b", branch, str(worktree_path), base)
            except subprocess.CalledProcessError as exc:
                raise WorktreeError(f"Failed to create worktree for '{name}': {_stderr(exc)}") from exc
        logger.info("Created worktree %s on %s from %s", worktree_path, branch, base)
        return WorktreeHandle(worktree_path=worktree_path, branch=branch)

    def remove(self, name: str, delete_branch: bool = True) -> None:
        """Force-remove the worktree; branch deletion is best effort."""
        worktree_path = self.worktree_path(name)
        with self._repo_lock:
            try:
                self._git("worktree", "remove", "--force", str(worktree_path))
            except subprocess.CalledProcessError as exc:
                raise WorktreeError(f"Failed to remove worktree for '{name}': {_stderr(exc)}") from exc
            if delete_branch:
                result = self._git("branch", "-D", branch_for(name), check=False)
                if result.returncode != 0:
                    # branch may already be gone
                    logger.debug("Branch %s not deleted: %s", branch_for(name), result.stderr.strip())

    def list(self) -> list[WorktreeEntry]:
        """Parse ``git worktree list --porcelain`` keeping ``iterate/`` branches."""
        try:
            raw = self._git("worktree", "list", "--porcelain").stdout
        except subprocess.CalledProcessError as exc:
            raise WorktreeError(f"Failed to list worktrees: {_stderr(exc)}") from exc
        entries: list[WorktreeEntry] = []
        current: dict[str, str] = {}

        def flush() -> None:
            branch = current.get("branch", "")
            if current.get("path") and branch.startswith(BRANCH_PREFIX):
                entries.append(WorktreeEntry(path=current["path"], branch=branch, head=current.get("head", "")))

        for line in raw.splitlines():
            if line.startswith("worktree "):
                current["path"] = line[len("worktree "):]
            elif line.startswith("HEAD "):
                current["head"] = line[len("HEAD "):]
            elif line.startswith("branch "):
                current["branch"] = line[len("branch "):].replace("refs/heads/", "", 1)
            elif line == "":
                flush()
                current = {}
        flush()
        return entries

    def prune(self) -> None:
        self._git("worktree", "prune", check=False)

    def _apply_pick(self, winner: str, strategy: PickStrategy) -> None:
        branch = branch_for(winner)
        message = f"iterate: pick {winner}"
        if strategy == "squash":
            self._git("merge", "--squash", branch)
            staged = self._git("diff", "--cached", "--quiet", check=False)
            if staged.returncode != 0:
                self._git("commit", "-m", message)
        elif strategy == "rebase":
            self._git("rebase", branch)
        else:
            self._git("merge", branch, "--no-edit", "-m", message)

    def _abort_pick(self, strategy: PickStrategy) -> None:
        if strategy == "rebase":
            commands = [("rebase", "--abort")]
        elif strategy == "squash":
            # --squash leaves no MERGE_HEAD, so merge --abort has nothing to undo
            commands = [("reset", "--merge")]
        else:
            commands = [("merge", "--abort")]
        for args in commands:
            result = self._git(*args, check=False)
            if result.returncode != 0:
                logger.debug("git %s failed during pick rollback: %s", " ".join(args), result.stderr.strip())

    def pick(self, winner: str, all_names: list[str], strategy: PickStrategy = "merge") -> None:
        """Bring the winner into the checked-out branch, then remove every iteration.

        When the merge step fails the in-progress merge or rebase is aborted
        before ``PickError`` propagates, so the main working tree is left as it
        was before the call. Cleanup of ``all_names`` is best effort per name.
        """
        with self._repo_lock:
            base = self.current_branch()
            completed = False
            try:
                self._apply_pick(winner, strategy)
                completed = True
            except subprocess.CalledProcessError as exc:
                raise PickError(
                    f"Failed to {strategy} {branch_for(winner)} into {base}: {_stderr(exc)}"
                ) from exc
            finally:
                if not completed:
                    self._abort_pick(strategy)
            logger.info("Picked %s into %s using %s", branch_for(winner), base, strategy)

            for name in all_names:
                try:
                    self.remove(name, delete_branch=True)
                except WorktreeError:
                    logger.warning("Failed to remove worktree for %s after pick", name, exc_info=True)
            self.prune()
