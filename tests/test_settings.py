import os
import unittest

from testutil import HomeTestCase


class TestSettings(HomeTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._saved = {k: os.environ.get(k) for k in ("MAGENT_SOCKET", "MAGENT_LOG_LEVEL")}
        for k in self._saved:
            os.environ.pop(k, None)

    def tearDown(self) -> None:
        for k, v in self._saved.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        super().tearDown()

    def test_defaults_without_config(self) -> None:
        from magent.kernel.settings import load_settings

        s = load_settings()
        self.assertEqual(s.home, self.home)
        self.assertEqual(s.session_prefix, "magent")
        self.assertEqual(s.vcs_timeout_seconds, 10.0)
        self.assertEqual(s.tmux_timeout_seconds, 5.0)
        self.assertEqual(s.capture_lines, 15)
        self.assertEqual(s.resolved_socket_path, self.home / "daemon" / "magentd.sock")

    def test_yaml_values_and_fallbacks(self) -> None:
        from magent.kernel.settings import load_settings

        (self.home / "config.yaml").write_text(
            "session_prefix: Work\n"
            "vcs_timeout_seconds: 3\n"
            "monitor_interval_seconds: -1\n"
            "capture_lines: nope\n"
            "log_level: debug\n",
            encoding="utf-8",
        )
        s = load_settings()
        self.assertEqual(s.session_prefix, "work")
        self.assertEqual(s.vcs_timeout_seconds, 3.0)
        self.assertEqual(s.monitor_interval_seconds, 2.0)
        self.assertEqual(s.capture_lines, 15)
        self.assertEqual(s.log_level, "DEBUG")

    def test_invalid_prefix_falls_back(self) -> None:
        from magent.kernel.settings import load_settings

        (self.home / "config.yaml").write_text("session_prefix: 'bad prefix!'\n", encoding="utf-8")
        self.assertEqual(load_settings().session_prefix, "magent")

    def test_unreadable_yaml_is_ignored(self) -> None:
        from magent.kernel.settings import load_settings

        (self.home / "config.yaml").write_text("session_prefix: [unclosed\n", encoding="utf-8")
        self.assertEqual(load_settings().session_prefix, "magent")

    def test_environment_overrides(self) -> None:
        from magent.kernel.settings import load_settings

        (self.home / "config.yaml").write_text("socket_path: /tmp/from-yaml.sock\n", encoding="utf-8")
        os.environ["MAGENT_SOCKET"] = str(self.root / "env.sock")
        os.environ["MAGENT_LOG_LEVEL"] = "warning"
        s = load_settings()
        self.assertEqual(s.resolved_socket_path, self.root / "env.sock")
        self.assertEqual(s.log_level, "WARNING")

    def test_write_default_config_round_trips(self) -> None:
        from magent.kernel.settings import load_settings, write_default_config

        p = write_default_config()
        self.assertTrue(p.exists())
        self.assertNotIn("socket_path", p.read_text(encoding="utf-8"))
        self.assertEqual(load_settings().to_dict()["session_prefix"], "magent")


if __name__ == "__main__":
    unittest.main()
