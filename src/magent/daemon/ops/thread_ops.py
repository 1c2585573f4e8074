"""Thread, tab and project commands for the control socket."""
from __future__ import annotations

from typing import List, Optional

from ...contracts.v1 import AGENT_TYPES, IpcRequest, IpcResponse, ProjectInfo, TabInfo, Thread, ThreadInfo
from ...kernel import naming
from ...kernel.errors import Conflict, MagentError, NotFound
from ...kernel.orchestrator import Orchestrator


def _fail(req: IpcRequest, message: str) -> IpcResponse:
    return IpcResponse.failure(message, id=req.id)


def _project_name(orch: Orchestrator, project_id: str) -> str:
    try:
        return orch.get_project(project_id).name
    except NotFound:
        return "unknown"


def tab_infos(thread: Thread) -> List[TabInfo]:
    out = []
    for i, s in enumerate(thread.tmux_session_names):
        is_agent = s in thread.agent_tmux_sessions
        out.append(
            TabInfo(
                index=i,
                session_name=s,
                is_agent=is_agent,
                agent_type=(thread.selected_agent_type or "unknown") if is_agent else None,
                display_name=thread.custom_tab_names.get(s),
            )
        )
    return out


def thread_info(orch: Orchestrator, thread: Thread, *, detailed: bool = False) -> ThreadInfo:
    info = ThreadInfo(
        id=thread.id,
        name=thread.name,
        project_name=_project_name(orch, thread.project_id),
        worktree_path=thread.worktree_path,
        tmux_session=thread.tmux_session_names[0] if thread.tmux_session_names else "",
        agent_type=thread.selected_agent_type,
        is_main=thread.is_main,
        section_id=thread.section_id,
    )
    if detailed:
        section = orch.effective_section(thread)
        st = orch.status(thread.id)
        info.section_name = section.name if section else None
        info.tabs = tab_infos(thread)
        info.branch_name = thread.branch_name
        info.is_archived = thread.is_archived
        info.is_busy = bool(st.busy)
        info.is_waiting_for_input = bool(st.waiting)
        info.has_unread_completion = bool(thread.unread_completion_sessions)
    return info


def _resolve_thread(orch: Orchestrator, req: IpcRequest) -> Thread:
    return orch.find_thread(thread_id=req.thread_id, name=req.thread_name)


# Projects


def handle_add_project(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    if not req.project:
        return _fail(req, "Missing required field: project")
    if not req.repo_path:
        return _fail(req, "Missing required field: repoPath")
    try:
        p = orch.add_project(req.project, req.repo_path, agent_type=req.agent_type)
    except MagentError as e:
        return _fail(req, f"Failed to add project: {e}")
    info = ProjectInfo(id=p.id, name=p.name, repo_path=p.repo_path, default_branch=p.default_branch)
    return IpcResponse(ok=True, id=req.id, projects=[info])


def handle_list_projects(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    projects = [
        ProjectInfo(id=p.id, name=p.name, repo_path=p.repo_path, default_branch=p.default_branch)
        for p in orch.list_projects()
    ]
    return IpcResponse(ok=True, id=req.id, projects=projects)


# Threads


def handle_create_thread(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    if not req.project:
        return _fail(req, "Missing required field: project")
    try:
        project = orch.get_project(req.project)
    except NotFound as e:
        return _fail(req, str(e))
    if req.agent_type is not None and req.agent_type not in AGENT_TYPES:
        return _fail(req, f"Unknown agent type: {req.agent_type}. Valid: {', '.join(AGENT_TYPES)}")

    name: Optional[str] = None
    if req.new_name:
        name = req.new_name
    elif req.description:
        candidates = naming.rename_candidates(req.description)
        name = candidates[0] if candidates else None
    try:
        thread = orch.create_thread(project.id, name, agent_type=req.agent_type, initial_prompt=req.prompt)
    except MagentError as e:
        return _fail(req, f"Failed to create thread: {e}")
    return IpcResponse(ok=True, id=req.id, thread=thread_info(orch, thread))


def handle_list_threads(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    threads = orch.list_threads(req.project, include_archived=False)
    return IpcResponse(ok=True, id=req.id, threads=[thread_info(orch, t) for t in threads])


def handle_send_prompt(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    if not (req.prompt or "").strip():
        return _fail(req, "Missing required field: prompt")
    thread = _resolve_thread(orch, req)
    try:
        orch.send_prompt(thread.id, req.prompt or "")
    except Conflict as e:
        return _fail(req, str(e))
    except MagentError as e:
        return _fail(req, f"Failed to send prompt: {e}")
    return IpcResponse(ok=True, id=req.id)


def handle_archive_thread(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    try:
        orch.archive_thread(thread.id)
    except MagentError as e:
        return _fail(req, f"Failed to archive thread: {e}")
    return IpcResponse(ok=True, id=req.id)


def handle_delete_thread(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    try:
        orch.delete_thread(thread.id)
    except MagentError as e:
        return _fail(req, f"Failed to delete thread: {e}")
    return IpcResponse(ok=True, id=req.id)


def handle_rename_thread(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    """`description` derives candidate names; `newName` alone is used verbatim."""
    thread = _resolve_thread(orch, req)
    if not req.description:
        return handle_rename_thread_exact(orch, req)
    candidates = naming.rename_candidates(req.description)
    if not candidates:
        return _fail(req, "Could not generate a name from the given description")
    for c in candidates:
        if c == thread.name:
            continue
        try:
            renamed = orch.rename_thread(thread.id, c)
        except Conflict:
            continue
        except MagentError as e:
            return _fail(req, f"Failed to rename thread: {e}")
        return IpcResponse(ok=True, id=req.id, thread=thread_info(orch, renamed))
    return _fail(req, "All generated name candidates are taken")


def handle_rename_thread_exact(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    if not req.new_name:
        return _fail(req, "Missing required field: newName")
    try:
        renamed = orch.rename_thread(thread.id, req.new_name)
    except MagentError as e:
        return _fail(req, f"Failed to rename thread: {e}")
    return IpcResponse(ok=True, id=req.id, thread=thread_info(orch, renamed))


def handle_current_thread(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    if not req.session_name:
        return _fail(req, "Missing required field: sessionName")
    thread = orch.thread_for_session(req.session_name)
    return IpcResponse(ok=True, id=req.id, thread=thread_info(orch, thread))


def handle_thread_info(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    return IpcResponse(ok=True, id=req.id, thread=thread_info(orch, thread, detailed=True))


def handle_recover_thread(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    result = orch.recover_worktree(thread.id)
    if result.status == "failed":
        return _fail(req, f"Failed to recover thread: {result.error}")
    if not result.ok:
        return _fail(req, f"Cannot recover thread: {result.status}")
    return IpcResponse(ok=True, id=req.id, thread=thread_info(orch, result.thread or thread, detailed=True))


# Tabs


def handle_list_tabs(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    return IpcResponse(ok=True, id=req.id, tabs=tab_infos(thread))


def handle_create_tab(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    use_agent: Optional[bool] = None
    agent: Optional[str] = None
    if req.agent_type == "terminal":
        use_agent = False
    elif req.agent_type is not None:
        if req.agent_type not in AGENT_TYPES:
            return _fail(req, f"Unknown agent type: {req.agent_type}. Valid: {', '.join(AGENT_TYPES)}, terminal")
        agent, use_agent = req.agent_type, True
    try:
        updated, session = orch.add_tab(thread.id, agent, use_agent=use_agent, prompt=req.prompt)
    except MagentError as e:
        return _fail(req, f"Failed to create tab: {e}")
    tab = next((t for t in tab_infos(updated) if t.session_name == session), None)
    return IpcResponse(ok=True, id=req.id, tab=tab)


def handle_close_tab(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    thread = _resolve_thread(orch, req)
    if req.session_name is None and req.tab_index is None:
        return _fail(req, "Missing required field: tabIndex or sessionName")
    try:
        orch.close_tab(thread.id, req.session_name, tab_index=req.tab_index)
    except (NotFound, Conflict) as e:
        return _fail(req, str(e))
    except MagentError as e:
        return _fail(req, f"Failed to close tab: {e}")
    return IpcResponse(ok=True, id=req.id)
