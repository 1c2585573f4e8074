from __future__ import annotations

from .ipc import IpcRequest, IpcResponse, ProjectInfo, SectionInfo, TabInfo, ThreadInfo
from .models import (
    AGENT_TYPES,
    SCHEMA_VERSION,
    SECTION_COLOR_PALETTE,
    AgentType,
    AppState,
    Project,
    Thread,
    ThreadSection,
    default_sections,
    new_id,
)

__all__ = [
    "AGENT_TYPES",
    "AgentType",
    "AppState",
    "IpcRequest",
    "IpcResponse",
    "Project",
    "ProjectInfo",
    "SCHEMA_VERSION",
    "SECTION_COLOR_PALETTE",
    "SectionInfo",
    "TabInfo",
    "Thread",
    "ThreadInfo",
    "ThreadSection",
    "default_sections",
    "new_id",
]
