from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class IpcRequest(_Wire):
    command: str
    project: Optional[str] = None
    agent_type: Optional[str] = None
    prompt: Optional[str] = None
    thread_id: Optional[str] = None
    thread_name: Optional[str] = None
    tab_index: Optional[int] = None
    session_name: Optional[str] = None
    new_name: Optional[str] = None
    description: Optional[str] = None
    id: Optional[str] = None
    section_name: Optional[str] = None
    section_color: Optional[str] = None
    position: Optional[int] = None
    repo_path: Optional[str] = None


class TabInfo(_Wire):
    index: int
    session_name: str
    is_agent: bool
    agent_type: Optional[str] = None
    display_name: Optional[str] = None


class ThreadInfo(_Wire):
    id: str
    name: str
    project_name: str
    worktree_path: str
    tmux_session: str
    agent_type: Optional[str] = None
    is_main: bool
    section_name: Optional[str] = None
    section_id: Optional[str] = None
    tabs: Optional[List[TabInfo]] = None
    branch_name: Optional[str] = None
    is_archived: Optional[bool] = None
    is_busy: Optional[bool] = None
    is_waiting_for_input: Optional[bool] = None
    has_unread_completion: Optional[bool] = None


class ProjectInfo(_Wire):
    id: str
    name: str
    repo_path: str
    default_branch: Optional[str] = None


class SectionInfo(_Wire):
    id: str
    name: str
    color_hex: str
    sort_order: int
    is_default: bool
    is_visible: bool
    is_project_override: bool
    threads: Optional[List[ThreadInfo]] = None


class IpcResponse(_Wire):
    ok: bool
    id: Optional[str] = None
    error: Optional[str] = None
    thread: Optional[ThreadInfo] = None
    threads: Optional[List[ThreadInfo]] = None
    projects: Optional[List[ProjectInfo]] = None
    tabs: Optional[List[TabInfo]] = None
    tab: Optional[TabInfo] = None
    sections: Optional[List[SectionInfo]] = None
    section: Optional[SectionInfo] = None

    @classmethod
    def failure(cls, error: str, *, id: Optional[str] = None) -> "IpcResponse":
        return cls(ok=False, id=id, error=error)
