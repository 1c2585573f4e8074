import json
import unittest

from testutil import HomeTestCase


def _legacy_doc() -> dict:
    return {
        "agentType": "codex",
        "agentCommand": "my-agent --fast",
        "projects": [
            {"id": "p1", "name": "demo", "repoPath": "/src/demo", "worktreesBasePath": "/src/.worktrees-demo"},
        ],
        "threads": [
            {
                "id": "t1",
                "projectId": "p1",
                "name": "feat",
                "worktreePath": "/src/.worktrees-demo/feat",
                "branchName": "feat",
                "tmuxSessionNames": ["magent-demo-t1", "magent-demo-t1-tab-2"],
                "hasUnreadAgentCompletion": True,
                "selectedAgentType": "gpt",
            },
            {
                "id": "m1",
                "projectId": "p1",
                "name": "main",
                "worktreePath": "/src/demo",
                "branchName": "main",
                "isMain": True,
                "tmuxSessionNames": ["magent-demo-m1"],
            },
            "garbage",
        ],
    }


class TestStateStore(HomeTestCase):
    def _store(self):
        from magent.kernel.store import StateStore

        return StateStore(self.home / "state.json")

    def test_missing_file_loads_defaults(self) -> None:
        state, needs_save = self._store().load()
        self.assertTrue(needs_save)
        self.assertEqual(state.projects, [])
        self.assertEqual([s.name for s in state.thread_sections], ["TODO", "In Progress", "Reviewing", "Done"])
        self.assertEqual(state.active_agents, ["claude"])

    def test_round_trip_keeps_custom_tab_names(self) -> None:
        from magent.contracts.v1 import AppState, Project, Thread

        store = self._store()
        state = AppState(
            projects=[Project(id="p1", name="demo", repo_path="/r", worktrees_base_path="/w")],
            threads=[
                Thread(
                    id="t1",
                    project_id="p1",
                    name="feat",
                    worktree_path="/w/feat",
                    branch_name="feat",
                    tmux_session_names=["a", "b"],
                    agent_tmux_sessions=["a"],
                    unread_completion_sessions=["a"],
                    custom_tab_names={"b": "logs"},
                ),
                Thread(id="t2", project_id="p1", name="plain", worktree_path="/w/plain", branch_name="plain"),
            ],
        )
        store.save(state)

        raw = json.loads(store.path.read_text(encoding="utf-8"))
        by_id = {t["id"]: t for t in raw["threads"]}
        self.assertEqual(by_id["t1"]["customTabNames"], {"b": "logs"})
        self.assertNotIn("customTabNames", by_id["t2"])
        self.assertIn("worktreesBasePath", raw["projects"][0])

        loaded, needs_save = store.load()
        self.assertFalse(needs_save)
        self.assertEqual(loaded.thread("t1").custom_tab_names, {"b": "logs"})
        self.assertEqual(loaded.thread("t1").unread_completion_sessions, ["a"])
        self.assertEqual(loaded.thread("t2").custom_tab_names, {})
        self.assertEqual(loaded.thread_sections[0].id, state.thread_sections[0].id)

    def test_legacy_document_is_migrated(self) -> None:
        store = self._store()
        store.path.write_text(json.dumps(_legacy_doc()), encoding="utf-8")

        state, needs_save = store.load()
        self.assertTrue(needs_save)
        self.assertEqual(state.active_agents, ["codex"])
        self.assertEqual(state.custom_agent_command, "my-agent --fast")
        self.assertEqual(len(state.thread_sections), 4)
        self.assertEqual(len(state.threads), 2)

        feat = state.thread("t1")
        self.assertEqual(feat.agent_tmux_sessions, ["magent-demo-t1"])
        self.assertEqual(feat.unread_completion_sessions, ["magent-demo-t1"])
        self.assertTrue(feat.agent_has_run)
        self.assertIsNone(feat.selected_agent_type)

        main = state.thread("m1")
        self.assertEqual(main.agent_tmux_sessions, [])
        self.assertFalse(main.agent_has_run)

        # Section ids generated during migration survive a save/load cycle.
        store.save(state)
        again, changed = store.load()
        self.assertFalse(changed)
        self.assertEqual([s.id for s in again.thread_sections], [s.id for s in state.thread_sections])

    def test_unread_limited_to_agent_sessions(self) -> None:
        from magent.kernel.store import migrate_document

        doc, changed = migrate_document(
            {
                "threads": [
                    {
                        "id": "t",
                        "projectId": "p",
                        "name": "n",
                        "worktreePath": "/w",
                        "branchName": "n",
                        "tmuxSessionNames": ["a", "b"],
                        "agentTmuxSessions": ["a", "gone"],
                        "unreadCompletionSessions": ["b", "a"],
                    }
                ]
            }
        )
        self.assertTrue(changed)
        t = doc["threads"][0]
        self.assertEqual(t["agentTmuxSessions"], ["a"])
        self.assertEqual(t["unreadCompletionSessions"], ["a"])

    def test_corrupt_file_is_moved_aside(self) -> None:
        store = self._store()
        store.path.write_text("{not json", encoding="utf-8")

        state, needs_save = store.load()
        self.assertTrue(needs_save)
        self.assertEqual(state.threads, [])
        self.assertFalse(store.path.exists())
        aside = list(self.home.glob("state.json.corrupt-*"))
        self.assertEqual(len(aside), 1)
        self.assertEqual(aside[0].read_text(encoding="utf-8"), "{not json")


if __name__ == "__main__":
    unittest.main()
