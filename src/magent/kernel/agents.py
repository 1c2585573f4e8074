from __future__ import annotations

import shlex
from typing import Dict, List, Optional

from ..contracts.v1 import AppState, Project, Thread

AGENT_COMMANDS = {
    "claude": "claude --dangerously-skip-permissions",
    "codex": "codex --yolo",
}


def active_agents(state: AppState) -> List[str]:
    return list(dict.fromkeys(state.active_agents))


def agent_command(state: AppState, agent_type: str) -> str:
    if agent_type in AGENT_COMMANDS:
        return AGENT_COMMANDS[agent_type]
    custom = (state.custom_agent_command or "").strip()
    return custom or "custom-agent"


def resolve_agent_type(state: AppState, project: Optional[Project], requested: Optional[str] = None) -> Optional[str]:
    """Pick the agent for a new session.

    One active agent always wins. Otherwise: requested, project default, global
    default, first active. No active agents means a plain shell (None).
    """
    agents = active_agents(state)
    if not agents:
        return None
    if len(agents) == 1:
        return agents[0]
    for candidate in (requested, project.agent_type if project else None, state.default_agent_type):
        if candidate and candidate in agents:
            return candidate
    return agents[0]


def session_environment(project: Project, thread: Thread, *, socket_path: str) -> Dict[str, str]:
    return {
        "MAGENT_WORKTREE_PATH": thread.worktree_path,
        "MAGENT_PROJECT_PATH": project.repo_path,
        "MAGENT_WORKTREE_NAME": thread.name,
        "MAGENT_PROJECT_NAME": project.name,
        "MAGENT_SOCKET": socket_path,
    }


def agent_start_command(work_dir: str, command: str) -> str:
    """Shell line that runs the agent in `work_dir` and drops to a login shell when it exits."""
    inner = f"cd {shlex.quote(work_dir)} && {command}; exec \"$SHELL\" -l"
    return f"exec \"$SHELL\" -l -c {shlex.quote(inner)}"


def terminal_injection(state: AppState, project: Optional[Project]) -> str:
    if project is not None and project.terminal_injection_command:
        return project.terminal_injection_command.strip()
    return (state.terminal_injection_command or "").strip()


def context_injection(state: AppState, project: Optional[Project]) -> str:
    if project is not None and project.agent_context_injection:
        return project.agent_context_injection.strip()
    return (state.agent_context_injection or "").strip()
