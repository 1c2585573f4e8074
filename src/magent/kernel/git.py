"""VCS service: linked worktree lifecycle on top of the git CLI.

Every call goes through the process runner with a bounded timeout. Callers must
serialize worktree-mutating calls per repository (see kernel/locks.py).
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .errors import ExternalToolFailure
from .process import CommandResult, check_command, run_command

logger = logging.getLogger("magent.git")

PathLike = Union[str, Path]

_FALLBACK_DEFAULT_BRANCHES = ("main", "master", "develop")


class GitService:
    def __init__(self, *, timeout_s: float = 10.0):
        self.timeout_s = float(timeout_s)

    def _run(self, args: List[str], *, cwd: PathLike) -> CommandResult:
        return run_command(["git", *args], cwd=cwd, timeout_s=self.timeout_s)

    def _check(self, args: List[str], *, cwd: PathLike) -> CommandResult:
        return check_command(["git", *args], cwd=cwd, timeout_s=self.timeout_s)

    # Queries

    def is_repository(self, path: PathLike) -> bool:
        p = Path(path)
        if not p.is_dir():
            return False
        try:
            return self._run(["rev-parse", "--git-dir"], cwd=p).ok
        except ExternalToolFailure:
            return False

    def detect_default_branch(self, repo: PathLike) -> Optional[str]:
        """Branch named by refs/remotes/origin/HEAD, else the first of main/master/develop that exists."""
        res = self._run(["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=repo)
        if res.ok:
            ref = res.stdout.strip()
            prefix = "refs/remotes/origin/"
            if ref.startswith(prefix) and len(ref) > len(prefix):
                return ref[len(prefix):]
        for name in _FALLBACK_DEFAULT_BRANCHES:
            if self.branch_exists(repo, name):
                return name
        return None

    def current_branch(self, path: PathLike) -> Optional[str]:
        res = self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path)
        out = res.stdout.strip()
        if not res.ok or not out or out == "HEAD":
            return None
        return out

    def branch_exists(self, repo: PathLike, branch: str) -> bool:
        return self._run(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=repo).ok

    def has_commits(self, repo: PathLike) -> bool:
        return self._run(["rev-parse", "--verify", "--quiet", "HEAD"], cwd=repo).ok

    def is_dirty(self, path: PathLike) -> bool:
        res = self._check(["status", "--porcelain"], cwd=path)
        return bool(res.stdout.strip())

    def ahead_behind(self, path: PathLike, base: str) -> Tuple[int, int]:
        """(commits on HEAD not on base, commits on base not on HEAD)."""
        res = self._check(["rev-list", "--left-right", "--count", f"HEAD...{base}"], cwd=path)
        parts = res.stdout.split()
        if len(parts) != 2:
            raise ExternalToolFailure(f"unexpected rev-list output: {res.stdout.strip()!r}", tool="git")
        return int(parts[0]), int(parts[1])

    def is_fully_delivered(self, path: PathLike, base: str) -> bool:
        """True iff every commit unique to HEAD is reachable from or cherry-picked onto `base`."""
        res = self._check(["cherry", base, "HEAD"], cwd=path)
        return not any(line.startswith("+") for line in res.stdout.splitlines())

    def worktree_paths(self, repo: PathLike) -> List[str]:
        res = self._check(["worktree", "list", "--porcelain"], cwd=repo)
        return [line[len("worktree "):] for line in res.stdout.splitlines() if line.startswith("worktree ")]

    # Mutations

    def add_worktree(self, repo: PathLike, path: PathLike, branch: str, base: Optional[str] = None) -> None:
        """Create `path` on a new `branch` (from `base` when given), hooks disabled."""
        dest = Path(path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        args = ["-c", "core.hooksPath=/dev/null", "worktree", "add", "-b", branch, str(dest)]
        if base:
            args.append(base)
        self._check(args, cwd=repo)
        self._verify_checkout(repo, dest)
        logger.info("worktree added: %s (%s)", dest, branch)

    def add_worktree_for_branch(self, repo: PathLike, path: PathLike, branch: str) -> None:
        """Check out an existing `branch` at `path`."""
        dest = Path(path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self._check(["-c", "core.hooksPath=/dev/null", "worktree", "add", str(dest), branch], cwd=repo)
        self._verify_checkout(repo, dest)
        logger.info("worktree re-attached: %s (%s)", dest, branch)

    def _verify_checkout(self, repo: PathLike, dest: Path) -> None:
        if not dest.is_dir():
            raise ExternalToolFailure(f"worktree directory was not created: {dest}", tool="git")
        if self.has_commits(repo) and not self.has_commits(dest):
            raise ExternalToolFailure(f"worktree has no valid HEAD: {dest}", tool="git")

    def remove_worktree(self, repo: PathLike, path: PathLike) -> None:
        """Force-remove a linked worktree, then prune stale administrative entries."""
        self._check(["worktree", "remove", "--force", str(path)], cwd=repo)
        self.prune_worktrees(repo)
        logger.info("worktree removed: %s", path)

    def prune_worktrees(self, repo: PathLike) -> None:
        self._check(["worktree", "prune"], cwd=repo)

    def move_worktree(self, repo: PathLike, old: PathLike, new: PathLike) -> None:
        Path(new).parent.mkdir(parents=True, exist_ok=True)
        self._check(["worktree", "move", str(old), str(new)], cwd=repo)

    def rename_branch(self, repo: PathLike, old: str, new: str) -> None:
        self._check(["branch", "-m", old, new], cwd=repo)

    def delete_branch(self, repo: PathLike, branch: str) -> None:
        self._check(["branch", "-D", branch], cwd=repo)
        logger.info("branch deleted: %s", branch)
