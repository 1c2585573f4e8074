import io
import tempfile
import unittest
from pathlib import Path


class TestBellScanner(unittest.TestCase):
    def test_standalone_bells_are_counted(self) -> None:
        from magent.runners.bell_watcher import BellScanner

        s = BellScanner()
        self.assertEqual(s.feed(b"done\x07"), 1)
        self.assertEqual(s.feed(b"\x07x\x07"), 2)
        self.assertEqual(s.feed(b"plain text"), 0)

    def test_osc_terminator_is_not_a_bell(self) -> None:
        from magent.runners.bell_watcher import BellScanner

        s = BellScanner()
        # Window title set via OSC 0, terminated by BEL.
        self.assertEqual(s.feed(b"\x1b]0;claude: working\x07"), 0)
        self.assertEqual(s.feed(b"\x1b]2;title\x1b\\after\x07"), 1)
        self.assertEqual(s.feed(b"\x9dc1 string\x07"), 0)
        self.assertEqual(s.feed(b"\x1b[31mred\x07"), 1)

    def test_state_carries_across_chunks(self) -> None:
        from magent.runners.bell_watcher import BellScanner

        s = BellScanner()
        self.assertEqual(s.feed(b"\x1b"), 0)
        self.assertEqual(s.feed(b"]0;split title"), 0)
        self.assertEqual(s.feed(b"\x07"), 0)
        self.assertEqual(s.feed(b"\x07"), 1)


class TestWatch(unittest.TestCase):
    def test_watch_records_session_once_per_chunk(self) -> None:
        from magent.runners.bell_watcher import record_bell, watch

        with tempfile.TemporaryDirectory() as td:
            log = Path(td) / "bells.log"
            watch(io.BytesIO(b"a\x07b\x07\x1b]0;t\x07"), "magent-demo-t1", log)
            record_bell(log, "magent-demo-t2")
            self.assertEqual(log.read_text(encoding="utf-8").splitlines(), ["magent-demo-t1", "magent-demo-t2"])

    def test_main_rejects_bad_usage(self) -> None:
        from magent.runners.bell_watcher import main

        self.assertEqual(main(["only-one"]), 2)


if __name__ == "__main__":
    unittest.main()
