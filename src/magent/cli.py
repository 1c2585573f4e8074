from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict

from . import __version__
from .daemon.server import call_daemon
from .kernel.settings import load_settings


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _sock_path() -> Path:
    return load_settings().resolved_socket_path


def _ensure_daemon_running(sock: Path) -> bool:
    resp = call_daemon({"command": "ping"}, sock_path=sock, timeout_s=2.0)
    if resp.get("ok"):
        return True
    try:
        subprocess.run(
            [sys.executable, "-m", "magent.daemon_main", "start"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    for _ in range(60):
        time.sleep(0.05)
        resp = call_daemon({"command": "ping"}, sock_path=sock, timeout_s=2.0)
        if resp.get("ok"):
            return True
    return False


# argparse dest -> wire field
_FIELDS = {
    "project": "project",
    "agent_type": "agentType",
    "prompt": "prompt",
    "thread_id": "threadId",
    "thread_name": "threadName",
    "tab_index": "tabIndex",
    "session_name": "sessionName",
    "new_name": "newName",
    "description": "description",
    "section_name": "sectionName",
    "section_color": "sectionColor",
    "position": "position",
    "repo_path": "repoPath",
}


def build_request(args: argparse.Namespace) -> Dict[str, Any]:
    req: Dict[str, Any] = {"command": args.cmd}
    for dest, field in _FIELDS.items():
        v = getattr(args, dest, None)
        if v is None or v == "":
            continue
        if dest == "repo_path":
            v = str(Path(v).expanduser().resolve())
        req[field] = v
    return req


def cmd_socket(args: argparse.Namespace) -> int:
    sock = _sock_path()
    autostart = args.cmd not in ("ping", "shutdown")
    if autostart and not _ensure_daemon_running(sock):
        _print_json({"ok": False, "error": "daemon unavailable"})
        return 1
    resp = call_daemon(build_request(args), sock_path=sock)
    _print_json(resp)
    return 0 if resp.get("ok") else 1


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def _thread_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--thread-id", dest="thread_id", default=None, help="Target thread id")
    p.add_argument("--thread", dest="thread_name", default=None, help="Target thread name (case-insensitive)")


def _section_args(p: argparse.ArgumentParser, *, required_name: bool = True) -> None:
    if required_name:
        p.add_argument("section_name", help="Section name (case-insensitive)")
    p.add_argument("--project", default=None, help="Act on this project's section list (default: global list)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="magent", description="Agent threads on git worktrees + tmux")
    sub = p.add_subparsers(dest="cmd", required=True)

    def socket_cmd(name: str, help_text: str) -> argparse.ArgumentParser:
        sp = sub.add_parser(name, help=help_text)
        sp.set_defaults(func=cmd_socket)
        return sp

    socket_cmd("ping", help_text="Check the daemon")

    sp = socket_cmd("add-project", help_text="Register a git repository as a project")
    sp.add_argument("project", help="Project name")
    sp.add_argument("repo_path", help="Path to the repository")
    sp.add_argument("--agent", dest="agent_type", default=None, help="Project default agent (claude|codex|custom)")

    socket_cmd("list-projects", help_text="List projects")

    sp = socket_cmd("create-thread", help_text="Create a thread (worktree + branch + tmux session)")
    sp.add_argument("--project", required=True, help="Project name")
    sp.add_argument("--name", dest="new_name", default=None, help="Exact thread name")
    sp.add_argument("--description", default=None, help="Derive the name from a description")
    sp.add_argument("--agent", dest="agent_type", default=None, help="Agent type (claude|codex|custom)")
    sp.add_argument("--prompt", default=None, help="Initial prompt for the agent")

    sp = socket_cmd("list-threads", help_text="List live threads")
    sp.add_argument("--project", default=None, help="Only this project")

    sp = socket_cmd("send-prompt", help_text="Type a prompt into the thread's agent session")
    _thread_args(sp)
    sp.add_argument("prompt", help="Prompt text")

    for name, text in (
        ("archive-thread", "Remove the worktree and sessions; keep the branch"),
        ("delete-thread", "Archive and delete the branch"),
        ("thread-info", "Show thread details and tabs"),
        ("list-tabs", "List a thread's tabs"),
        ("recover-thread", "Re-create a missing worktree"),
    ):
        _thread_args(socket_cmd(name, help_text=text))

    sp = socket_cmd("rename-thread", help_text="Rename from a description (or --name verbatim)")
    _thread_args(sp)
    sp.add_argument("--description", default=None, help="Free-form description to derive the name from")
    sp.add_argument("--name", dest="new_name", default=None, help="Exact new name")

    sp = socket_cmd("rename-thread-exact", help_text="Rename a thread to an exact name")
    _thread_args(sp)
    sp.add_argument("new_name", help="New name")

    sp = socket_cmd("current-thread", help_text="Find the thread owning a tmux session")
    sp.add_argument("session_name", help="tmux session name")

    sp = socket_cmd("create-tab", help_text="Open another tab (tmux session) in a thread")
    _thread_args(sp)
    sp.add_argument("--agent", dest="agent_type", default=None, help="claude|codex|custom|terminal")
    sp.add_argument("--prompt", default=None, help="Initial prompt (agent tabs only)")

    sp = socket_cmd("close-tab", help_text="Close a tab by index or session name")
    _thread_args(sp)
    sp.add_argument("--index", dest="tab_index", type=int, default=None, help="Tab index (0-based)")
    sp.add_argument("--session", dest="session_name", default=None, help="tmux session name")

    sp = socket_cmd("list-sections", help_text="List sections")
    _section_args(sp, required_name=False)

    sp = socket_cmd("add-section", help_text="Add a section")
    _section_args(sp)
    sp.add_argument("--color", dest="section_color", default=None, help="Hex color (default: random palette color)")

    for name, text in (
        ("remove-section", "Remove an empty section"),
        ("hide-section", "Hide an empty section"),
        ("show-section", "Show a hidden section"),
    ):
        _section_args(socket_cmd(name, help_text=text))

    sp = socket_cmd("reorder-section", help_text="Move a section to a position")
    _section_args(sp)
    sp.add_argument("position", type=int, help="Target position (0-based, clamped)")

    sp = socket_cmd("rename-section", help_text="Rename a section")
    _section_args(sp)
    sp.add_argument("new_name", help="New section name")
    sp.add_argument("--color", dest="section_color", default=None, help="New hex color")

    socket_cmd("shutdown", help_text="Stop the daemon")

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
