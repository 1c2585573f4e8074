import json
import socket
import threading
import unittest

from testutil import HomeTestCase, make_repo, requires_git


class TestHandleLine(HomeTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.orch = self.make_orchestrator()

    def _call(self, doc) -> dict:
        from magent.daemon.server import handle_line

        raw = doc if isinstance(doc, bytes) else json.dumps(doc).encode("utf-8")
        resp, _ = handle_line(self.orch, raw)
        return resp

    def test_ping_echoes_id(self) -> None:
        self.assertEqual(self._call({"command": "ping", "id": "r1"}), {"ok": True, "id": "r1"})

    def test_bad_input(self) -> None:
        resp = self._call(b"{oops")
        self.assertFalse(resp["ok"])
        self.assertTrue(resp["error"].startswith("Invalid JSON"))

        resp = self._call([1, 2])
        self.assertEqual(resp["error"], "Invalid request: expected a JSON object")

        resp = self._call({"id": "r2"})
        self.assertFalse(resp["ok"])
        self.assertEqual(resp["id"], "r2")
        self.assertTrue(resp["error"].startswith("Invalid request"))

    def test_unknown_command(self) -> None:
        resp = self._call({"command": "frobnicate", "id": "r3"})
        self.assertEqual(resp, {"ok": False, "id": "r3", "error": "Unknown command: frobnicate"})

    def test_shutdown_requests_exit(self) -> None:
        from magent.daemon.server import handle_line

        resp, should_exit = handle_line(self.orch, b'{"command":"shutdown"}')
        self.assertTrue(resp["ok"])
        self.assertTrue(should_exit)

    def test_domain_errors_become_failures(self) -> None:
        resp = self._call({"command": "thread-info"})
        self.assertEqual(resp["error"], "Missing required field: threadId or threadName")
        resp = self._call({"command": "thread-info", "threadId": "nope"})
        self.assertEqual(resp["error"], "Thread not found: nope")
        resp = self._call({"command": "current-thread", "sessionName": "magent-x-y"})
        self.assertEqual(resp["error"], "No thread found for session: magent-x-y")
        resp = self._call({"command": "create-thread"})
        self.assertEqual(resp["error"], "Missing required field: project")
        resp = self._call({"command": "add-section", "sectionName": " "})
        self.assertEqual(resp["error"], "Missing required field: sectionName")

    def test_global_sections_listing(self) -> None:
        resp = self._call({"command": "list-sections"})
        self.assertTrue(resp["ok"])
        names = [s["name"] for s in resp["sections"]]
        self.assertEqual(names, ["TODO", "In Progress", "Reviewing", "Done"])
        self.assertFalse(resp["sections"][0]["isProjectOverride"])
        self.assertNotIn("threads", resp["sections"][0])


@requires_git
class TestThreadCommands(HomeTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.repo = make_repo(self.root)
        self.orch = self.make_orchestrator()

    def _call(self, **doc) -> dict:
        from magent.daemon.server import handle_line

        resp, _ = handle_line(self.orch, json.dumps(doc).encode("utf-8"))
        return resp

    def test_project_thread_and_tab_flow(self) -> None:
        resp = self._call(command="add-project", project="demo", repoPath=str(self.repo))
        self.assertTrue(resp["ok"], resp)
        self.assertEqual(resp["projects"][0]["defaultBranch"], "main")

        resp = self._call(command="create-thread", project="demo", description="Fix the login page now")
        self.assertTrue(resp["ok"], resp)
        thread = resp["thread"]
        self.assertEqual(thread["name"], "fix-the-login")
        self.assertEqual(thread["projectName"], "demo")
        self.assertFalse(thread["isMain"])

        resp = self._call(command="create-thread", project="demo", agentType="gpt")
        self.assertEqual(resp["error"], "Unknown agent type: gpt. Valid: claude, codex, custom")

        resp = self._call(command="list-threads", project="demo")
        self.assertEqual(sorted(t["name"] for t in resp["threads"]), ["fix-the-login", "main"])

        resp = self._call(command="thread-info", threadName="FIX-THE-LOGIN")
        info = resp["thread"]
        self.assertEqual(info["sectionName"], "TODO")
        self.assertEqual(info["branchName"], "fix-the-login")
        self.assertFalse(info["isBusy"])
        self.assertEqual(len(info["tabs"]), 1)

        resp = self._call(command="close-tab", threadId=thread["id"], tabIndex=0)
        self.assertEqual(resp["error"], "Cannot close the last tab; archive or delete the thread instead")

        resp = self._call(command="create-tab", threadId=thread["id"], agentType="terminal")
        self.assertTrue(resp["ok"], resp)
        self.assertFalse(resp["tab"]["isAgent"])
        self.assertTrue(resp["tab"]["sessionName"].endswith("-tab-2"))

        resp = self._call(command="current-thread", sessionName=resp["tab"]["sessionName"])
        self.assertEqual(resp["thread"]["id"], thread["id"])

        resp = self._call(command="close-tab", threadId=thread["id"], tabIndex=5)
        self.assertEqual(resp["error"], "Tab index out of range: 5")
        resp = self._call(command="close-tab", threadId=thread["id"], tabIndex=1)
        self.assertTrue(resp["ok"], resp)

        resp = self._call(command="send-prompt", threadId=thread["id"], prompt="run the tests")
        self.assertTrue(resp["ok"], resp)
        self.assertIn((thread["tmuxSession"], "run the tests"), self.tmux.sent)

        resp = self._call(command="rename-thread", threadId=thread["id"], description="login page polish")
        self.assertTrue(resp["ok"], resp)
        self.assertEqual(resp["thread"]["name"], "login-page-polish")

        resp = self._call(command="archive-thread", threadId=thread["id"])
        self.assertTrue(resp["ok"], resp)
        resp = self._call(command="list-threads", project="demo")
        self.assertEqual([t["name"] for t in resp["threads"]], ["main"])

    def test_project_sections_include_threads(self) -> None:
        self._call(command="add-project", project="demo", repoPath=str(self.repo))
        self._call(command="create-thread", project="demo", newName="feat")
        resp = self._call(command="list-sections", project="demo")
        todo = resp["sections"][0]
        self.assertEqual(sorted(t["name"] for t in todo["threads"]), ["feat", "main"])

        resp = self._call(command="hide-section", sectionName="todo", project="demo")
        self.assertFalse(resp["ok"])
        self.assertIn("still in it", resp["error"])


class TestControlSocket(HomeTestCase):
    def setUp(self) -> None:
        super().setUp()
        from magent.daemon.server import ControlServer, DaemonPaths

        self.orch = self.make_orchestrator()
        self.paths = DaemonPaths(home=self.home, socket_override=self.root / "c.sock")
        self.stop = threading.Event()
        self.server = ControlServer(self.orch, self.paths, stop_event=self.stop)
        self.server.bind()
        self._t = threading.Thread(target=self.server.serve_forever, daemon=True)
        self._t.start()

    def tearDown(self) -> None:
        self.stop.set()
        self._t.join(timeout=5)
        super().tearDown()

    def _read_lines(self, s: socket.socket, n: int) -> list:
        buf = b""
        while buf.count(b"\n") < n:
            chunk = s.recv(65536)
            if not chunk:
                break
            buf += chunk
        return [json.loads(x) for x in buf.splitlines()[:n]]

    def test_socket_is_private(self) -> None:
        import stat

        mode = stat.S_IMODE(self.paths.sock_path.stat().st_mode)
        self.assertEqual(mode, 0o600)

    def test_requests_answered_in_order(self) -> None:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(5)
            s.connect(str(self.paths.sock_path))
            s.sendall(b'{"command":"ping","id":"a"}\n\n{"command":"nope","id":"b"}\n{"command":"ping","id":"c"}\n')
            replies = self._read_lines(s, 3)
        self.assertEqual([r["id"] for r in replies], ["a", "b", "c"])
        self.assertEqual([r["ok"] for r in replies], [True, False, True])

    def test_call_daemon_and_shutdown(self) -> None:
        from magent.daemon.server import call_daemon

        self.assertEqual(call_daemon({"command": "ping", "id": "x"}, sock_path=self.paths.sock_path), {"ok": True, "id": "x"})
        resp = call_daemon({"command": "shutdown"}, sock_path=self.paths.sock_path)
        self.assertTrue(resp["ok"])
        self._t.join(timeout=5)
        self.assertTrue(self.stop.is_set())
        self.assertFalse(self.paths.sock_path.exists())

        resp = call_daemon({"command": "ping"}, sock_path=self.paths.sock_path, timeout_s=0.5)
        self.assertEqual(resp, {"ok": False, "error": "daemon unavailable"})


if __name__ == "__main__":
    unittest.main()
