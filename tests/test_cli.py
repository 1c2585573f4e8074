import unittest
from pathlib import Path


class TestCliRequests(unittest.TestCase):
    def _req(self, *argv: str) -> dict:
        from magent.cli import build_parser, build_request

        return build_request(build_parser().parse_args(list(argv)))

    def test_thread_selectors_and_fields(self) -> None:
        self.assertEqual(
            self._req("close-tab", "--thread", "feat", "--index", "2"),
            {"command": "close-tab", "threadName": "feat", "tabIndex": 2},
        )
        self.assertEqual(
            self._req("create-thread", "--project", "demo", "--name", "x", "--agent", "codex"),
            {"command": "create-thread", "project": "demo", "newName": "x", "agentType": "codex"},
        )
        self.assertEqual(
            self._req("reorder-section", "Done", "0", "--project", "demo"),
            {"command": "reorder-section", "sectionName": "Done", "position": 0, "project": "demo"},
        )

    def test_add_project_resolves_path(self) -> None:
        req = self._req("add-project", "demo", ".")
        self.assertEqual(req["repoPath"], str(Path(".").resolve()))
        self.assertEqual(req["project"], "demo")

    def test_version(self) -> None:
        import contextlib
        import io

        from magent import __version__
        from magent.cli import main

        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            self.assertEqual(main(["version"]), 0)
        self.assertEqual(buf.getvalue().strip(), __version__)


if __name__ == "__main__":
    unittest.main()
