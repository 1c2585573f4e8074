import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path


class TestPaneHeuristics(unittest.TestCase):
    def test_shell_commands(self) -> None:
        from magent.runners.tmux import is_shell_command

        for cmd in ("zsh", "-bash", " fish "):
            self.assertTrue(is_shell_command(cmd))
        for cmd in ("claude", "node", "", "python3"):
            self.assertFalse(is_shell_command(cmd))

    def test_busy_titles(self) -> None:
        from magent.runners.tmux import title_indicates_busy

        self.assertTrue(title_indicates_busy("⠙ Running tests"))
        self.assertTrue(title_indicates_busy("✳ Claude Code"))
        self.assertFalse(title_indicates_busy("~/src/demo"))
        self.assertFalse(title_indicates_busy("   "))


class TestBellLog(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.log = Path(self._td.name) / "daemon" / "bells.log"
        self.log.parent.mkdir()

        from magent.runners.tmux import TmuxService

        self.tmux = TmuxService(bell_log_path=self.log)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_consume_dedupes_and_clears(self) -> None:
        from magent.runners.bell_watcher import record_bell

        for s in ("a", "b", "a"):
            record_bell(self.log, s)
        self.assertEqual(self.tmux.consume_bells(), ["a", "b"])
        self.assertEqual(self.tmux.consume_bells(), [])

    def test_read_and_clear_single_flag(self) -> None:
        from magent.runners.bell_watcher import record_bell

        for s in ("a", "b", "a"):
            record_bell(self.log, s)
        self.assertTrue(self.tmux.read_and_clear_bell_flag("a"))
        self.assertFalse(self.tmux.read_and_clear_bell_flag("a"))
        self.assertEqual(self.log.read_text(encoding="utf-8"), "b\n")

    def test_no_log_means_no_bells(self) -> None:
        from magent.runners.tmux import TmuxService

        self.assertEqual(TmuxService().consume_bells(), [])
        self.assertIn("magent.runners.bell_watcher", self.tmux.bell_watcher_command("s 1"))
        self.assertIn("'s 1'", self.tmux.bell_watcher_command("s 1"))


@unittest.skipUnless(shutil.which("tmux"), "tmux not available")
class TestTmuxService(unittest.TestCase):
    """Runs against a private tmux server (TMUX_TMPDIR points at a temp dir)."""

    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self._saved = {k: os.environ.get(k) for k in ("TMUX_TMPDIR", "TMUX")}
        os.environ["TMUX_TMPDIR"] = self._td.name
        os.environ.pop("TMUX", None)

        from magent.runners.tmux import TmuxService

        self.tmux = TmuxService(timeout_s=10)

    def tearDown(self) -> None:
        self.tmux._run(["kill-server"])
        for k, v in self._saved.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        self._td.cleanup()

    def test_session_lifecycle(self) -> None:
        from magent.kernel.errors import ExternalToolFailure

        self.assertEqual(self.tmux.list_sessions(), [])
        self.tmux.create_session("magent-t-1", self._td.name, env={"MAGENT_THREAD_NAME": "one"})
        self.assertTrue(self.tmux.session_exists("magent-t-1"))
        # Exact-match targets: a prefix must not resolve to the session.
        self.assertFalse(self.tmux.session_exists("magent-t"))

        self.tmux.send_keys("magent-t-1", "echo $MAGENT_THREAD_NAME-marker")
        deadline = time.monotonic() + 5
        text = ""
        while time.monotonic() < deadline:
            text = self.tmux.capture_pane("magent-t-1", 50)
            if "one-marker" in text:
                break
            time.sleep(0.1)
        self.assertIn("one-marker", text)

        states = self.tmux.pane_states(["magent-t-1", "missing"])
        self.assertEqual(list(states), ["magent-t-1"])

        self.tmux.rename_session("magent-t-1", "magent-t-1-superseded-1")
        self.assertEqual(self.tmux.list_sessions(), ["magent-t-1-superseded-1"])
        self.tmux.kill_session("magent-t-1-superseded-1")
        with self.assertRaises(ExternalToolFailure):
            self.tmux.kill_session("magent-t-1-superseded-1")

    def test_bell_pipe_open_and_close(self) -> None:
        from magent.runners.tmux import TmuxService

        tmux = TmuxService(timeout_s=10, bell_log_path=Path(self._td.name) / "bells.log")
        tmux.create_session("magent-t-2", self._td.name)
        tmux.setup_bell_pipe("magent-t-2")
        self.assertIn("magent-t-2", tmux.sessions_with_active_pipe())

        tmux.rename_session("magent-t-2", "magent-t-2-superseded-1")
        self.assertIn("magent-t-2-superseded-1", tmux.sessions_with_active_pipe())
        tmux.close_bell_pipe("magent-t-2-superseded-1")
        self.assertEqual(tmux.sessions_with_active_pipe(), set())


if __name__ == "__main__":
    unittest.main()
