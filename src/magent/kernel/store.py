"""Persistence store: the root document as one JSON file, replaced atomically."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..contracts.v1 import AGENT_TYPES, SCHEMA_VERSION, AppState, default_sections
from ..paths import state_path
from ..util.fs import atomic_write_json, read_json_strict
from ..util.time import utc_now
from .errors import PersistenceFailure

logger = logging.getLogger("magent.store")


def _migrate_settings(doc: Dict[str, Any]) -> bool:
    changed = False
    legacy_agent = doc.pop("agentType", None)
    legacy_command = doc.pop("agentCommand", None)
    if legacy_agent is not None or legacy_command is not None:
        changed = True
    if "activeAgents" not in doc:
        agent = legacy_agent if legacy_agent in AGENT_TYPES else "claude"
        doc["activeAgents"] = [agent]
        changed = True
    else:
        agents = [a for a in (doc.get("activeAgents") or []) if a in AGENT_TYPES]
        deduped = list(dict.fromkeys(agents))
        if deduped != doc.get("activeAgents"):
            doc["activeAgents"] = deduped
            changed = True
    if "customAgentCommand" not in doc:
        doc["customAgentCommand"] = str(legacy_command) if isinstance(legacy_command, str) else "claude"
        changed = True
    if doc.get("defaultAgentType") not in (None, *AGENT_TYPES):
        doc.pop("defaultAgentType", None)
        changed = True
    if "threadSections" not in doc:
        # Generate once and persist so the ids stay stable across loads.
        doc["threadSections"] = [s.model_dump(by_alias=True) for s in default_sections()]
        changed = True
    return changed


def _migrate_thread(t: Dict[str, Any]) -> bool:
    changed = False
    sessions: List[str] = [s for s in (t.get("tmuxSessionNames") or []) if isinstance(s, str)]
    if "agentTmuxSessions" not in t:
        t["agentTmuxSessions"] = sessions[:1] if (sessions and not t.get("isMain")) else []
        changed = True
    agent_sessions = [s for s in (t.get("agentTmuxSessions") or []) if s in sessions]
    if agent_sessions != t.get("agentTmuxSessions"):
        t["agentTmuxSessions"] = agent_sessions
        changed = True
    if "agentHasRun" not in t:
        t["agentHasRun"] = bool(agent_sessions)
        changed = True

    legacy_unread = t.pop("hasUnreadAgentCompletion", None)
    if legacy_unread is not None:
        changed = True
        if "unreadCompletionSessions" not in t:
            t["unreadCompletionSessions"] = list(agent_sessions) if legacy_unread is True else []
    unread = sorted({s for s in (t.get("unreadCompletionSessions") or []) if s in agent_sessions})
    if unread != t.get("unreadCompletionSessions", []):
        t["unreadCompletionSessions"] = unread
        changed = True

    if t.get("selectedAgentType") not in (None, *AGENT_TYPES):
        t.pop("selectedAgentType", None)
        changed = True
    return changed


def migrate_document(raw: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Bring an on-disk document to the current shape. Returns (doc, changed)."""
    doc = dict(raw)
    changed = _migrate_settings(doc)
    doc.setdefault("projects", [])
    threads = []
    for t in doc.get("threads") or []:
        if not isinstance(t, dict):
            changed = True
            continue
        t = dict(t)
        if _migrate_thread(t):
            changed = True
        threads.append(t)
    doc["threads"] = threads
    if doc.get("schemaVersion") != SCHEMA_VERSION:
        doc["schemaVersion"] = SCHEMA_VERSION
        changed = True
    return doc, changed


class StateStore:
    def __init__(self, path: Optional[Path] = None):
        self.path = path or state_path()

    def load(self) -> Tuple[AppState, bool]:
        """Load and migrate. Returns (state, needs_save)."""
        try:
            raw = read_json_strict(self.path)
        except (OSError, ValueError) as e:
            self._quarantine(e)
            return AppState(), True
        if not raw:
            return AppState(), not self.path.exists()
        doc, changed = migrate_document(raw)
        try:
            state = AppState.model_validate(doc)
        except ValidationError as e:
            self._quarantine(e)
            return AppState(), True
        return state, changed

    def save(self, state: AppState) -> None:
        try:
            atomic_write_json(self.path, state.to_doc())
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"failed to write {self.path}: {e}") from e

    def _quarantine(self, err: Exception) -> None:
        stamp = utc_now().strftime("%Y%m%dT%H%M%SZ")
        aside = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        logger.error("state document unreadable, moving it to %s: %s", aside, err)
        try:
            os.replace(self.path, aside)
        except OSError as e:
            raise PersistenceFailure(f"cannot move aside corrupt {self.path}: {e}") from e
