"""Section commands. Without `project` they act on the global list."""
from __future__ import annotations

from ...contracts.v1 import IpcRequest, IpcResponse, SectionInfo, ThreadSection
from ...kernel.errors import ValidationFailure
from ...kernel.orchestrator import Orchestrator
from .thread_ops import thread_info


def section_info(section: ThreadSection, *, is_override: bool) -> SectionInfo:
    return SectionInfo(
        id=section.id,
        name=section.name,
        color_hex=section.color_hex,
        sort_order=section.sort_order,
        is_default=section.is_default,
        is_visible=section.is_visible,
        is_project_override=is_override,
    )


def _require_name(req: IpcRequest) -> str:
    name = (req.section_name or "").strip()
    if not name:
        raise ValidationFailure("Missing required field: sectionName")
    return name


def handle_list_sections(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    sections, is_override = orch.list_sections(req.project)
    infos = []
    for s in sections:
        info = section_info(s, is_override=is_override)
        # Threads are listed only for a project; the global list spans projects.
        if req.project:
            info.threads = [thread_info(orch, t) for t in orch.threads_in_section(s.id, req.project)]
        infos.append(info)
    return IpcResponse(ok=True, id=req.id, sections=infos)


def handle_add_section(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    name = _require_name(req)
    section, is_override = orch.add_section(name, color=req.section_color, project_ref=req.project)
    return IpcResponse(ok=True, id=req.id, section=section_info(section, is_override=is_override))


def handle_remove_section(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    orch.remove_section(_require_name(req), project_ref=req.project)
    return IpcResponse(ok=True, id=req.id)


def handle_reorder_section(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    name = _require_name(req)
    if req.position is None:
        return IpcResponse.failure("Missing required field: position", id=req.id)
    ordered = orch.reorder_section(name, req.position, project_ref=req.project)
    _, is_override = orch.list_sections(req.project)
    return IpcResponse(ok=True, id=req.id, sections=[section_info(s, is_override=is_override) for s in ordered])


def handle_rename_section(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    name = _require_name(req)
    if not (req.new_name or "").strip():
        return IpcResponse.failure("Missing required field: newName", id=req.id)
    section, is_override = orch.rename_section(name, req.new_name or "", color=req.section_color, project_ref=req.project)
    return IpcResponse(ok=True, id=req.id, section=section_info(section, is_override=is_override))


def handle_hide_section(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    orch.set_section_visibility(_require_name(req), False, project_ref=req.project)
    return IpcResponse(ok=True, id=req.id)


def handle_show_section(orch: Orchestrator, req: IpcRequest) -> IpcResponse:
    orch.set_section_visibility(_require_name(req), True, project_ref=req.project)
    return IpcResponse(ok=True, id=req.id)
