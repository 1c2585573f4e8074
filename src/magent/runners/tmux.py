"""Multiplexer service: a thin, stateless wrapper over the tmux CLI.

No session list is cached; every call asks the tmux server. Session targets use
tmux's `=name` exact-match form so `x` never resolves to `x-tab-2`.
"""
from __future__ import annotations

import logging
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from ..kernel.errors import ExternalToolFailure
from ..kernel.process import CommandResult, check_command, run_command
from ..util.file_lock import acquire_lockfile, release_lockfile

logger = logging.getLogger("magent.tmux")

SHELL_COMMANDS = frozenset(
    {"sh", "bash", "zsh", "fish", "ksh", "tcsh", "csh", "-sh", "-bash", "-zsh", "-fish", "-ksh", "-tcsh", "-csh"}
)

_NO_SERVER_MARKERS = ("no server running", "no sessions", "error connecting to", "no such file or directory")


def is_shell_command(command: str) -> bool:
    return (command or "").strip() in SHELL_COMMANDS


def title_indicates_busy(title: str) -> bool:
    """Braille spinner or U+2733 at the start of the pane title means the agent is working."""
    t = (title or "").strip()
    if not t:
        return False
    v = ord(t[0])
    return 0x2800 <= v <= 0x28FF or v == 0x2733


def _session_target(name: str) -> str:
    return f"={name}"


def _pane_target(name: str) -> str:
    return f"={name}:"


@dataclass(frozen=True)
class PaneState:
    command: str
    title: str
    path: str


class TmuxService:
    def __init__(self, *, timeout_s: float = 5.0, bell_log_path: Optional[Path] = None):
        self.timeout_s = float(timeout_s)
        self.bell_log_path = bell_log_path

    def _run(self, args: List[str]) -> CommandResult:
        return run_command(["tmux", *args], timeout_s=self.timeout_s)

    def _check(self, args: List[str]) -> CommandResult:
        return check_command(["tmux", *args], timeout_s=self.timeout_s)

    # Session lifecycle

    def create_session(
        self,
        name: str,
        work_dir: str,
        initial_command: Optional[str] = None,
        *,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        args = ["new-session", "-d", "-s", name, "-c", work_dir]
        for k, v in (env or {}).items():
            args += ["-e", f"{k}={v}"]
        if initial_command:
            args.append(initial_command)
        self._check(args)
        logger.info("session created: %s", name, extra={"session": name})

    def kill_session(self, name: str) -> None:
        self._check(["kill-session", "-t", _session_target(name)])
        logger.info("session killed: %s", name, extra={"session": name})

    def rename_session(self, old: str, new: str) -> None:
        self._check(["rename-session", "-t", _session_target(old), new])

    def list_sessions(self) -> List[str]:
        res = self._run(["list-sessions", "-F", "#{session_name}"])
        if not res.ok:
            err = res.stderr.lower()
            if any(m in err for m in _NO_SERVER_MARKERS):
                return []
            raise ExternalToolFailure(
                f"tmux list-sessions failed: {res.stderr.strip()}",
                tool="tmux",
                args=res.args,
                returncode=res.returncode,
                stderr=res.stderr,
            )
        return [ln.strip() for ln in res.stdout.splitlines() if ln.strip()]

    def session_exists(self, name: str) -> bool:
        return self._run(["has-session", "-t", _session_target(name)]).ok

    # Input / output

    def send_keys(self, name: str, text: str, literal: bool = True, *, enter: bool = True) -> None:
        target = _pane_target(name)
        if literal:
            self._check(["send-keys", "-t", target, "-l", text])
        else:
            self._check(["send-keys", "-t", target, text])
        if enter:
            self._check(["send-keys", "-t", target, "Enter"])

    def capture_pane(self, name: str, lines: int = 15) -> str:
        res = self._check(["capture-pane", "-p", "-t", _pane_target(name), "-S", f"-{int(lines)}"])
        return res.stdout

    def pane_states(self, names: Iterable[str]) -> Dict[str, PaneState]:
        """Active-pane command/title/path for each live session in `names`."""
        wanted = set(names)
        if not wanted:
            return {}
        res = self._run(
            ["list-panes", "-a", "-F", "#{session_name}\t#{pane_active}\t#{pane_current_command}\t#{pane_current_path}\t#{pane_title}"]
        )
        if not res.ok:
            return {}
        out: Dict[str, PaneState] = {}
        for line in res.stdout.splitlines():
            parts = line.split("\t", 4)
            if len(parts) < 5 or parts[0] not in wanted:
                continue
            # Prefer the active pane; fall back to the first pane seen.
            if parts[1] == "1" or parts[0] not in out:
                out[parts[0]] = PaneState(command=parts[2].strip(), path=parts[3].strip(), title=parts[4])
        return out

    # Bell detection

    def _bell_lock_path(self) -> Path:
        assert self.bell_log_path is not None
        return self.bell_log_path.with_name(self.bell_log_path.name + ".lock")

    def _rewrite_bell_log(self, keep: Optional[str] = None) -> List[str]:
        """Return the logged session names, keeping only lines != `keep` (all if None)."""
        if self.bell_log_path is None or not self.bell_log_path.exists():
            return []
        lk = acquire_lockfile(self._bell_lock_path(), blocking=True)
        try:
            lines = [ln.strip() for ln in self.bell_log_path.read_text(encoding="utf-8", errors="replace").splitlines()]
            lines = [ln for ln in lines if ln]
            rest = [] if keep is None else [ln for ln in lines if ln != keep]
            self.bell_log_path.write_text("".join(f"{ln}\n" for ln in rest), encoding="utf-8")
        finally:
            release_lockfile(lk)
        return lines

    def read_and_clear_bell_flag(self, name: str) -> bool:
        return name in self._rewrite_bell_log(keep=name)

    def consume_bells(self) -> List[str]:
        """All sessions that rang since the last call, in order, de-duplicated."""
        return list(dict.fromkeys(self._rewrite_bell_log()))

    def bell_watcher_command(self, name: str) -> str:
        assert self.bell_log_path is not None
        return " ".join(
            shlex.quote(x) for x in (sys.executable, "-m", "magent.runners.bell_watcher", name, str(self.bell_log_path))
        )

    def setup_bell_pipe(self, name: str) -> None:
        if self.bell_log_path is None:
            return
        self._check(["pipe-pane", "-o", "-t", _pane_target(name), self.bell_watcher_command(name)])

    def close_bell_pipe(self, name: str) -> None:
        """pipe-pane with no command closes the pane's current pipe."""
        self._check(["pipe-pane", "-t", _pane_target(name)])

    def sessions_with_active_pipe(self) -> Set[str]:
        res = self._run(["list-panes", "-a", "-F", "#{session_name} #{pane_pipe}"])
        if not res.ok:
            return set()
        out: Set[str] = set()
        for line in res.stdout.splitlines():
            parts = line.rsplit(" ", 1)
            if len(parts) == 2 and parts[1] == "1":
                out.add(parts[0])
        return out

    # Global settings

    def apply_global_settings(self) -> None:
        """Server-wide options applied once at startup (best-effort per option)."""
        commands = [
            ["unbind-key", "-T", "copy-mode", "MouseDragEnd1Pane"],
            ["unbind-key", "-T", "copy-mode-vi", "MouseDragEnd1Pane"],
            ["bind-key", "-T", "copy-mode", "MouseDown1Pane", "send-keys", "-X", "clear-selection"],
            ["bind-key", "-T", "copy-mode-vi", "MouseDown1Pane", "send-keys", "-X", "clear-selection"],
            ["set-option", "-g", "status", "off"],
            ["set-option", "-sg", "escape-time", "0"],
            ["set-option", "-g", "allow-rename", "off"],
        ]
        for args in commands:
            try:
                res = self._run(args)
            except ExternalToolFailure as e:
                logger.warning("tmux %s failed: %s", args[0], e)
                continue
            if not res.ok:
                logger.debug("tmux %s: %s", " ".join(args[:3]), res.stderr.strip())
        if self.bell_log_path is not None:
            self.bell_log_path.parent.mkdir(parents=True, exist_ok=True)
            self._rewrite_bell_log()
            self.bell_log_path.touch(exist_ok=True)
