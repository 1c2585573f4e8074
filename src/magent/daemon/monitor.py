"""Session monitor: periodic agent-state classification.

Each tick consumes bell notifications (completion), samples pane output of
busy/waiting sessions (waiting-for-input prompts) and reconciles busy flags
from the foreground pane command and title. Results land in the
orchestrator's transient overlay; only completions go through the
orchestrator's persisted path.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from typing import Callable, Dict, List, Optional, Set

from ..kernel.errors import ExternalToolFailure
from ..kernel.orchestrator import Orchestrator
from ..runners.tmux import is_shell_command, title_indicates_busy

logger = logging.getLogger("magent.monitor")

# Repeat bells for one session inside this window count once.
BELL_DEDUP_SECONDS = 1.0
# A bell fires just before the agent exits; the pane may still show the agent binary.
BUSY_SUPPRESS_AFTER_BELL_SECONDS = 5.0

_SELECTOR = "❯"
_SELECTOR_OPTION_RE = re.compile(r"^❯?\s*\d+\.")


def matches_waiting_prompt(text: str) -> bool:
    """True when the tail of `text` looks like an agent asking the user something."""
    lines = [ln.strip() for ln in (text or "").splitlines()[-20:]]
    lines = [ln for ln in lines if ln]
    if not lines:
        return False
    chunk = "\n".join(lines[-15:])

    if "Would you like to proceed?" in chunk:
        return True
    if "Do you want to" in chunk and ("Yes" in chunk or "No" in chunk):
        return True
    if "approve" in chunk and "deny" in chunk:
        return True
    last_few = lines[-6:]
    if any(ln.startswith(_SELECTOR) for ln in last_few) and any(_SELECTOR_OPTION_RE.match(ln) for ln in last_few):
        return True
    if "Do you want me to go ahead" in chunk:
        return True
    return False


class SessionMonitor:
    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        interval_s: Optional[float] = None,
        capture_lines: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.orchestrator = orchestrator
        self.tmux = orchestrator.tmux
        settings = orchestrator.settings
        self.interval_s = float(interval_s if interval_s is not None else settings.monitor_interval_seconds)
        self.capture_lines = int(capture_lines if capture_lines is not None else settings.capture_lines)
        self._clock = clock
        self._recent_bells: Dict[str, float] = {}
        self._notified_waiting: Set[str] = set()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="magent-monitor", daemon=True)
        self._thread.start()
        logger.info("session monitor started (interval %.1fs)", self.interval_s)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("monitor tick failed")
            self._stop.wait(self.interval_s)

    # One pass

    def tick(self) -> None:
        completed = self._process_bells()
        pairs = self.orchestrator.agent_sessions()
        self._prune({s for _, s in pairs})
        by_thread: Dict[str, List[str]] = {}
        for tid, s in pairs:
            by_thread.setdefault(tid, []).append(s)

        busy: Dict[str, Set[str]] = {}
        waiting: Dict[str, Set[str]] = {}
        for tid in by_thread:
            st = self.orchestrator.status(tid)
            busy[tid] = set(st.busy)
            waiting[tid] = set(st.waiting)

        for tid, names in by_thread.items():
            for s in names:
                if s in completed:
                    busy[tid].discard(s)
                    waiting[tid].discard(s)
                    self._notified_waiting.discard(s)
            self._check_waiting(tid, names, busy[tid], waiting[tid])

        all_sessions = [s for _, s in pairs]
        try:
            panes = self.tmux.pane_states(all_sessions)
        except ExternalToolFailure as e:
            logger.debug("pane state read failed: %s", e)
            panes = {}
        now = self._clock()
        for tid, names in by_thread.items():
            for s in names:
                pane = panes.get(s)
                if pane is None:
                    continue
                self._sync_busy(s, pane.command, pane.title, busy[tid], waiting[tid], now)
            self.orchestrator.update_transient(tid, busy=busy[tid], waiting=waiting[tid])

    def _prune(self, live: Set[str]) -> None:
        """Forget sessions that are no longer agent sessions of a live thread."""
        self._recent_bells = {s: t for s, t in self._recent_bells.items() if s in live}
        self._notified_waiting &= live

    def _process_bells(self) -> Set[str]:
        try:
            rung = self.tmux.consume_bells()
        except (ExternalToolFailure, OSError) as e:
            logger.debug("bell log read failed: %s", e)
            return set()
        now = self._clock()
        completed: Set[str] = set()
        for s in rung:
            last = self._recent_bells.get(s)
            self._recent_bells[s] = now
            if last is not None and now - last < BELL_DEDUP_SECONDS:
                continue
            completed.add(s)
            self.orchestrator.record_completion(s)
            logger.info("agent completed", extra={"session": s})
        return completed

    def _check_waiting(self, thread_id: str, names: List[str], busy: Set[str], waiting: Set[str]) -> None:
        for s in names:
            was_waiting = s in waiting
            if s not in busy and not was_waiting:
                continue
            try:
                text = self.tmux.capture_pane(s, self.capture_lines)
            except ExternalToolFailure:
                continue
            is_waiting = matches_waiting_prompt(text)
            if is_waiting and not was_waiting:
                busy.discard(s)
                waiting.add(s)
                if s not in self._notified_waiting and not self.orchestrator.is_focused(thread_id, s):
                    self._notified_waiting.add(s)
                    self.orchestrator.notify_waiting(thread_id, s)
            elif was_waiting and not is_waiting:
                waiting.discard(s)
                self._notified_waiting.discard(s)

    def _sync_busy(self, session: str, command: str, title: str, busy: Set[str], waiting: Set[str], now: float) -> None:
        if is_shell_command(command):
            # Agents that run under the shell show their state in the pane title.
            if title_indicates_busy(title):
                if session not in waiting:
                    busy.add(session)
                return
            busy.discard(session)
            if session in waiting:
                waiting.discard(session)
                self._notified_waiting.discard(session)
            return
        last_bell = self._recent_bells.get(session)
        recently_completed = last_bell is not None and now - last_bell < BUSY_SUPPRESS_AFTER_BELL_SECONDS
        if not recently_completed and session not in waiting:
            busy.add(session)
