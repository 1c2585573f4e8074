from __future__ import annotations

import uuid
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...util.time import utc_now_iso

AgentType = Literal["claude", "codex", "custom"]
AGENT_TYPES = ("claude", "codex", "custom")

SCHEMA_VERSION = 2

SECTION_COLOR_PALETTE = (
    "#FF3B30",
    "#FF9500",
    "#FFCC00",
    "#34C759",
    "#007AFF",
    "#5856D6",
    "#AF52DE",
    "#FF2D55",
    "#A2845E",
    "#00C7BE",
)


def new_id() -> str:
    return str(uuid.uuid4())


class _Doc(BaseModel):
    # On-disk keys are camelCase; attributes stay snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ThreadSection(_Doc):
    id: str = Field(default_factory=new_id)
    name: str
    color_hex: str = "#007AFF"
    sort_order: int = 0
    is_default: bool = False
    is_visible: bool = True


def default_sections() -> List[ThreadSection]:
    return [
        ThreadSection(name="TODO", color_hex="#007AFF", sort_order=0, is_default=True),
        ThreadSection(name="In Progress", color_hex="#FF9500", sort_order=1, is_default=True),
        ThreadSection(name="Reviewing", color_hex="#AF52DE", sort_order=2, is_default=True),
        ThreadSection(name="Done", color_hex="#34C759", sort_order=3, is_default=True),
    ]


class Project(_Doc):
    id: str = Field(default_factory=new_id)
    name: str
    repo_path: str
    # May contain $MAGENT_PROJECT_NAME.
    worktrees_base_path: str
    default_branch: Optional[str] = None
    agent_type: Optional[AgentType] = None
    terminal_injection_command: Optional[str] = None
    agent_context_injection: Optional[str] = None
    # Per-project section list; None means "use the global sections".
    thread_sections: Optional[List[ThreadSection]] = None

    def resolved_worktrees_base_path(self) -> str:
        return self.worktrees_base_path.replace("$MAGENT_PROJECT_NAME", self.name)


class Thread(_Doc):
    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    worktree_path: str
    branch_name: str
    tmux_session_names: List[str] = Field(default_factory=list)
    agent_tmux_sessions: List[str] = Field(default_factory=list)
    pinned_tmux_sessions: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now_iso)
    is_archived: bool = False
    section_id: Optional[str] = None
    is_main: bool = False
    selected_agent_type: Optional[AgentType] = None
    last_selected_tmux_session_name: Optional[str] = None
    agent_has_run: bool = False
    is_pinned: bool = False
    last_agent_completion_at: Optional[str] = None
    unread_completion_sessions: List[str] = Field(default_factory=list)
    auto_rename_applied: bool = False
    custom_tab_names: Dict[str, str] = Field(default_factory=dict)
    base_branch: Optional[str] = None
    display_order: int = 0
    # Sessions left running at a pre-rename path; killed on archive/delete.
    superseded_sessions: List[str] = Field(default_factory=list)
    # Symlinks left at pre-rename worktree paths.
    compat_links: List[str] = Field(default_factory=list)

    def to_doc(self) -> Dict[str, object]:
        doc = self.model_dump(by_alias=True, exclude_none=True)
        doc["unreadCompletionSessions"] = sorted(set(self.unread_completion_sessions))
        if not self.custom_tab_names:
            doc.pop("customTabNames", None)
        if not self.superseded_sessions:
            doc.pop("supersededSessions", None)
        if not self.compat_links:
            doc.pop("compatLinks", None)
        return doc


class AppState(_Doc):
    """The persisted root document."""

    schema_version: int = SCHEMA_VERSION
    projects: List[Project] = Field(default_factory=list)
    threads: List[Thread] = Field(default_factory=list)
    thread_sections: List[ThreadSection] = Field(default_factory=default_sections)
    active_agents: List[AgentType] = Field(default_factory=lambda: ["claude"])
    default_agent_type: Optional[AgentType] = None
    custom_agent_command: str = "claude"
    play_sound_for_agent_completion: bool = True
    agent_completion_sound_name: str = "Ping"
    auto_rename_worktrees: bool = True
    is_configured: bool = False
    terminal_injection_command: str = ""
    agent_context_injection: str = ""

    def to_doc(self) -> Dict[str, object]:
        doc = self.model_dump(by_alias=True, exclude_none=True, exclude={"threads"})
        doc["schemaVersion"] = SCHEMA_VERSION
        doc["threads"] = [t.to_doc() for t in self.threads]
        return doc

    def project(self, project_id: str) -> Optional[Project]:
        for p in self.projects:
            if p.id == project_id:
                return p
        return None

    def project_by_name(self, name: str) -> Optional[Project]:
        wanted = (name or "").strip().lower()
        for p in self.projects:
            if p.name.lower() == wanted:
                return p
        return None

    def thread(self, thread_id: str) -> Optional[Thread]:
        for t in self.threads:
            if t.id == thread_id:
                return t
        return None

    def sections_for(self, project_id: Optional[str]) -> List[ThreadSection]:
        if project_id:
            p = self.project(project_id)
            if p is not None and p.thread_sections is not None:
                return p.thread_sections
        return self.thread_sections
