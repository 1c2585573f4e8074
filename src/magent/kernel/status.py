from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional, Set


@dataclass
class TransientStatus:
    """Per-thread state that is recomputed, never persisted."""

    busy: Set[str] = field(default_factory=set)
    waiting: Set[str] = field(default_factory=set)
    dirty: Optional[bool] = None
    delivered: Optional[bool] = None
    worktree_missing: bool = False

    def copy(self) -> "TransientStatus":
        return replace(self, busy=set(self.busy), waiting=set(self.waiting))

    @property
    def state(self) -> str:
        if self.waiting:
            return "waiting_for_input"
        if self.busy:
            return "busy"
        return "idle"
