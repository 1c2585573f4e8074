from __future__ import annotations

import argparse
import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from . import __version__
from .daemon.monitor import SessionMonitor
from .daemon.server import ControlServer, DaemonPaths, call_daemon
from .kernel.errors import MagentError
from .kernel.orchestrator import Orchestrator
from .kernel.settings import EngineSettings, load_settings
from .util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile, write_lock_owner
from .util.fs import atomic_write_text
from .util.obslog import setup_root_json_logging

logger = logging.getLogger("magent.daemon")


def paths_for(settings: EngineSettings) -> DaemonPaths:
    return DaemonPaths(home=settings.home, socket_override=settings.socket_path)


def _spawn_daemon(paths: DaemonPaths) -> int:
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    log_f = paths.log_path.open("a", encoding="utf-8")
    env = os.environ.copy()
    env["MAGENT_HOME"] = str(paths.home)
    p = subprocess.Popen(
        [sys.executable, "-m", "magent.daemon_main", "run"],
        stdout=log_f,
        stderr=log_f,
        stdin=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        cwd=str(Path.cwd()),
    )
    return int(p.pid)


def read_pid(paths: DaemonPaths) -> int:
    try:
        txt = paths.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except OSError:
        return 0


def run(settings: EngineSettings) -> int:
    """Foreground daemon: single instance per MAGENT_HOME."""
    paths = paths_for(settings)
    setup_root_json_logging(component="magentd", level=settings.log_level)
    try:
        lock = acquire_lockfile(paths.lock_path, blocking=False)
    except LockUnavailableError:
        print("magentd: another instance holds the lock", file=sys.stderr)
        return 1
    write_lock_owner(lock)

    stop_event = threading.Event()

    def _signal_handler(signum: int, frame: Any) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    monitor: Optional[SessionMonitor] = None
    try:
        orch = Orchestrator.open(settings)
        try:
            orch.tmux.apply_global_settings()
        except MagentError as e:
            logger.warning("tmux global settings not applied: %s", e)
        try:
            orch.restore_threads()
        except MagentError as e:
            logger.error("thread restore failed: %s", e, extra={"code": e.code})

        server = ControlServer(orch, paths, stop_event=stop_event)
        server.bind()
        atomic_write_text(paths.pid_path, f"{os.getpid()}\n")
        monitor = SessionMonitor(orch)
        monitor.start()
        logger.info("magentd %s started", __version__)
        server.serve_forever()
    finally:
        stop_event.set()
        if monitor is not None:
            monitor.stop()
        try:
            paths.pid_path.unlink()
        except OSError:
            pass
        release_lockfile(lock)
        logger.info("magentd stopped")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="magentd", description="magent daemon (single writer)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run daemon in foreground")
    sub.add_parser("start", help="Start daemon in background")
    sub.add_parser("stop", help="Stop daemon")
    sub.add_parser("status", help="Daemon status")

    args = parser.parse_args(argv)
    settings = load_settings()
    paths = paths_for(settings)

    if args.cmd == "run":
        return run(settings)

    if args.cmd == "start":
        resp = call_daemon({"command": "ping"}, sock_path=paths.sock_path, timeout_s=2.0)
        if resp.get("ok"):
            print("magentd: already running")
            return 0
        pid = _spawn_daemon(paths)
        print(f"magentd: started pid={pid}")
        return 0

    if args.cmd == "stop":
        resp = call_daemon({"command": "shutdown"}, sock_path=paths.sock_path, timeout_s=5.0)
        if resp.get("ok"):
            print("magentd: shutdown requested")
            return 0
        pid = read_pid(paths)
        if pid > 0:
            try:
                os.kill(pid, signal.SIGTERM)
                print("magentd: SIGTERM sent")
                return 0
            except OSError:
                pass
        print("magentd: not running")
        return 0

    if args.cmd == "status":
        resp = call_daemon({"command": "ping"}, sock_path=paths.sock_path, timeout_s=2.0)
        if resp.get("ok"):
            print(f"magentd: running pid={read_pid(paths)} socket={paths.sock_path}")
            return 0
        print("magentd: not running")
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
