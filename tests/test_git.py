import tempfile
import unittest
from pathlib import Path

from testutil import git, make_repo, requires_git


@requires_git
class TestGitService(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name).resolve()
        self.repo = make_repo(self.root)

        from magent.kernel.git import GitService

        self.git = GitService(timeout_s=30)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _commit(self, cwd: Path, name: str, text: str) -> None:
        (cwd / name).write_text(text, encoding="utf-8")
        git(cwd, "add", name)
        git(cwd, "commit", "-q", "-m", f"add {name}")

    def test_repository_queries(self) -> None:
        self.assertTrue(self.git.is_repository(self.repo))
        self.assertFalse(self.git.is_repository(self.root / "missing"))
        self.assertEqual(self.git.detect_default_branch(self.repo), "main")
        self.assertEqual(self.git.current_branch(self.repo), "main")
        self.assertTrue(self.git.branch_exists(self.repo, "main"))
        self.assertFalse(self.git.branch_exists(self.repo, "nope"))

    def test_worktree_lifecycle(self) -> None:
        wt = self.root / "wt" / "feat"
        self.git.add_worktree(self.repo, wt, "feat", "main")
        self.assertEqual(self.git.current_branch(wt), "feat")
        self.assertIn(str(wt.resolve()), [str(Path(p).resolve()) for p in self.git.worktree_paths(self.repo)])

        moved = self.root / "wt" / "renamed"
        self.git.rename_branch(self.repo, "feat", "renamed")
        self.git.move_worktree(self.repo, wt, moved)
        self.assertEqual(self.git.current_branch(moved), "renamed")

        self.git.remove_worktree(self.repo, moved)
        self.assertFalse(moved.exists())
        self.assertTrue(self.git.branch_exists(self.repo, "renamed"))

        again = self.root / "wt" / "again"
        self.git.add_worktree_for_branch(self.repo, again, "renamed")
        self.assertEqual(self.git.current_branch(again), "renamed")

    def test_add_worktree_existing_branch_fails(self) -> None:
        from magent.kernel.errors import ExternalToolFailure

        with self.assertRaises(ExternalToolFailure) as cm:
            self.git.add_worktree(self.repo, self.root / "wt" / "dup", "main")
        self.assertEqual(cm.exception.tool, "git")
        self.assertTrue(cm.exception.stderr)

    def test_dirty_ahead_behind_and_delivery(self) -> None:
        wt = self.root / "wt" / "work"
        self.git.add_worktree(self.repo, wt, "work", "main")
        self.assertFalse(self.git.is_dirty(wt))
        self.assertEqual(self.git.ahead_behind(wt, "main"), (0, 0))
        self.assertTrue(self.git.is_fully_delivered(wt, "main"))

        (wt / "scratch.txt").write_text("x", encoding="utf-8")
        self.assertTrue(self.git.is_dirty(wt))
        self._commit(wt, "scratch.txt", "x")
        self.assertFalse(self.git.is_dirty(wt))
        self.assertEqual(self.git.ahead_behind(wt, "main"), (1, 0))
        self.assertFalse(self.git.is_fully_delivered(wt, "main"))

        # Same change cherry-picked onto main counts as delivered.
        head = git(wt, "rev-parse", "HEAD").strip()
        git(self.repo, "cherry-pick", head)
        self._commit(self.repo, "other.txt", "y")
        self.assertEqual(self.git.ahead_behind(wt, "main"), (1, 2))
        self.assertTrue(self.git.is_fully_delivered(wt, "main"))


if __name__ == "__main__":
    unittest.main()
