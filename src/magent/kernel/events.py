"""Change notifications.

Listeners registered in-process get every event synchronously. Each event is
also appended to MAGENT_HOME/daemon/magentd.events.jsonl so other local
processes can tail it.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..paths import ensure_home
from ..util.file_lock import acquire_lockfile, release_lockfile
from ..util.time import utc_now_iso

logger = logging.getLogger("magent.events")

Listener = Callable[[str, Dict[str, Any]], None]


def global_events_path(home: Optional[Path] = None) -> Path:
    h = home or ensure_home()
    return h / "daemon" / "magentd.events.jsonl"


def global_events_lock_path(home: Optional[Path] = None) -> Path:
    h = home or ensure_home()
    return h / "daemon" / "magentd.events.lock"


def publish_event(kind: str, data: Dict[str, Any] | None = None, *, home: Optional[Path] = None) -> None:
    """Append an event to the MAGENT_HOME event log (best-effort)."""
    k = str(kind or "").strip()
    if not k:
        return
    ev = {
        "v": 1,
        "id": uuid.uuid4().hex,
        "ts": utc_now_iso(),
        "kind": k,
        "data": data if isinstance(data, dict) else {},
    }
    try:
        line = json.dumps(ev, ensure_ascii=False)
        path = global_events_path(home)
        path.parent.mkdir(parents=True, exist_ok=True)
        lk = acquire_lockfile(global_events_lock_path(home), blocking=True)
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        finally:
            release_lockfile(lk)
    except (OSError, TypeError, ValueError) as e:
        logger.warning("event log append failed for %s: %s", k, e)


class EventBus:
    def __init__(self, *, home: Optional[Path] = None, persist: bool = True):
        self._home = home
        self._persist = persist
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, kind: str, data: Dict[str, Any] | None = None) -> None:
        payload = dict(data or {})
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(kind, payload)
            except Exception:
                logger.exception("event listener failed for %s", kind)
        if self._persist:
            publish_event(kind, payload, home=self._home)
