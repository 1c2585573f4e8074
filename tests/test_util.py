import io
import json
import logging
import tempfile
import threading
import unittest
from pathlib import Path


class TestJsonLogging(unittest.TestCase):
    def test_formatter_includes_correlation_fields(self) -> None:
        from magent.util.obslog import JsonlFormatter

        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JsonlFormatter(component="magentd"))
        log = logging.getLogger("magent.test.obslog")
        log.propagate = False
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        try:
            log.info("thread created", extra={"thread_id": "t1", "op": "create-thread", "session": " "})
        finally:
            log.removeHandler(handler)

        rec = json.loads(stream.getvalue().splitlines()[-1])
        self.assertEqual(rec["component"], "magentd")
        self.assertEqual(rec["logger"], "magent.test.obslog")
        self.assertEqual(rec["msg"], "thread created")
        self.assertEqual(rec["thread_id"], "t1")
        self.assertEqual(rec["op"], "create-thread")
        self.assertNotIn("session", rec)
        self.assertTrue(rec["ts"].endswith("Z"))

    def test_parse_level(self) -> None:
        from magent.util.obslog import parse_level

        self.assertEqual(parse_level("debug"), logging.DEBUG)
        self.assertEqual(parse_level(""), logging.INFO)
        self.assertEqual(parse_level("loud", default=logging.WARNING), logging.WARNING)


class TestLocks(unittest.TestCase):
    def test_lockfile_is_exclusive(self) -> None:
        from magent.util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile, write_lock_owner

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "daemon" / "magentd.lock"
            held = acquire_lockfile(p, blocking=False)
            write_lock_owner(held)
            try:
                with self.assertRaises(LockUnavailableError):
                    acquire_lockfile(p, blocking=False)
            finally:
                release_lockfile(held)
            self.assertTrue(p.read_text(encoding="utf-8").strip().isdigit())
            again = acquire_lockfile(p, blocking=False)
            release_lockfile(again)

    def test_keyed_locks_serialize_per_key(self) -> None:
        from magent.kernel.locks import KeyedLocks

        locks = KeyedLocks()
        inside = []
        overlap = []

        def _work(key: str) -> None:
            with locks.hold(key):
                if key in inside:
                    overlap.append(key)
                inside.append(key)
                threading.Event().wait(0.02)
                inside.remove(key)

        workers = [threading.Thread(target=_work, args=(k,)) for k in ("a", "a", "a", "b", "b")]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=10)
        self.assertEqual(overlap, [])
        self.assertEqual(locks.active_keys(), 0)


class TestAtomicWrite(unittest.TestCase):
    def test_replaces_without_leftovers(self) -> None:
        from magent.util.fs import atomic_write_json, read_json_strict

        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "nested" / "state.json"
            atomic_write_json(p, {"b": 1, "a": [1, 2]})
            atomic_write_json(p, {"b": 2})
            self.assertEqual(read_json_strict(p), {"b": 2})
            self.assertEqual([x.name for x in p.parent.iterdir()], ["state.json"])

            p.write_text("[1]", encoding="utf-8")
            with self.assertRaises(ValueError):
                read_json_strict(p)
            self.assertEqual(read_json_strict(Path(td) / "missing.json"), {})


if __name__ == "__main__":
    unittest.main()
