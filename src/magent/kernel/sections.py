"""Section lists: the global list, or a project's own override list."""
from __future__ import annotations

import random
from typing import List, Optional, Tuple

from ..contracts.v1 import SECTION_COLOR_PALETTE, AppState, Project, Thread, ThreadSection
from .errors import Conflict, NotFound, ValidationFailure


def sorted_sections(sections: List[ThreadSection]) -> List[ThreadSection]:
    return sorted(sections, key=lambda s: s.sort_order)


def visible_sections(sections: List[ThreadSection]) -> List[ThreadSection]:
    return [s for s in sorted_sections(sections) if s.is_visible]


def default_section(sections: List[ThreadSection]) -> Optional[ThreadSection]:
    vis = visible_sections(sections)
    return vis[0] if vis else None


def random_color(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(SECTION_COLOR_PALETTE)


def effective_section(state: AppState, thread: Thread) -> Optional[ThreadSection]:
    """The thread's section if its project knows it, else the first visible one."""
    sections = state.sections_for(thread.project_id)
    if thread.section_id:
        for s in sections:
            if s.id == thread.section_id:
                return s
    return default_section(sections)


def find_section(sections: List[ThreadSection], name: str) -> Optional[ThreadSection]:
    wanted = (name or "").strip().lower()
    for s in sections:
        if s.name.lower() == wanted:
            return s
    return None


def editable_sections(state: AppState, project: Optional[Project]) -> Tuple[List[ThreadSection], bool]:
    """The list a section command edits, and whether it is a project override.

    Editing a project without an override starts from a copy of the global list.
    """
    if project is None:
        return state.thread_sections, False
    if project.thread_sections is None:
        project.thread_sections = [s.model_copy() for s in state.thread_sections]
    return project.thread_sections, True


def threads_in_section(state: AppState, section_id: str, project: Optional[Project]) -> List[Thread]:
    out = []
    for t in state.threads:
        if t.is_archived:
            continue
        if project is not None:
            if t.project_id != project.id:
                continue
        else:
            # Global sections only hold threads of projects without an override.
            owner = state.project(t.project_id)
            if owner is not None and owner.thread_sections is not None:
                continue
        eff = effective_section(state, t)
        if eff is not None and eff.id == section_id:
            out.append(t)
    return out


def add_section(
    state: AppState,
    name: str,
    *,
    color: Optional[str] = None,
    project: Optional[Project] = None,
    rng: Optional[random.Random] = None,
) -> Tuple[ThreadSection, bool]:
    n = (name or "").strip()
    if not n:
        raise ValidationFailure("Missing required field: sectionName")
    sections, is_override = editable_sections(state, project)
    if find_section(sections, n) is not None:
        where = f" in project '{project.name}'" if project is not None else ""
        raise Conflict(f"Section '{n}' already exists{where}")
    max_order = max((s.sort_order for s in sections), default=-1)
    section = ThreadSection(name=n, color_hex=color or random_color(rng), sort_order=max_order + 1)
    sections.append(section)
    return section, is_override


def _require(sections: List[ThreadSection], name: str) -> ThreadSection:
    s = find_section(sections, name)
    if s is None:
        raise NotFound(f"Section not found: {name}")
    return s


def remove_section(state: AppState, name: str, *, project: Optional[Project] = None) -> ThreadSection:
    sections = state.sections_for(project.id if project else None)
    section = _require(sections, name)
    busy = threads_in_section(state, section.id, project)
    if busy:
        raise Conflict(f"Cannot remove section '{section.name}': {len(busy)} thread(s) still in it. Move them first.")
    sections, _ = editable_sections(state, project)
    sections[:] = [s for s in sections if s.id != section.id]
    if project is not None and not sections:
        project.thread_sections = None
    return section


def reorder_section(state: AppState, name: str, position: int, *, project: Optional[Project] = None) -> List[ThreadSection]:
    sections, _ = editable_sections(state, project)
    section = _require(sections, name)
    ordered = [s for s in sorted_sections(sections) if s.id != section.id]
    pos = max(0, min(int(position), len(ordered)))
    ordered.insert(pos, section)
    for i, s in enumerate(ordered):
        s.sort_order = i
    sections[:] = ordered
    return ordered


def rename_section(
    state: AppState,
    name: str,
    new_name: str,
    *,
    color: Optional[str] = None,
    project: Optional[Project] = None,
) -> Tuple[ThreadSection, bool]:
    nn = (new_name or "").strip()
    if not nn:
        raise ValidationFailure("Missing required field: newName")
    sections, is_override = editable_sections(state, project)
    section = _require(sections, name)
    clash = find_section(sections, nn)
    if clash is not None and clash.id != section.id:
        where = f" in project '{project.name}'" if project is not None else ""
        raise Conflict(f"Section '{nn}' already exists{where}")
    section.name = nn
    if color:
        section.color_hex = color
    return section, is_override


def set_section_visibility(
    state: AppState, name: str, visible: bool, *, project: Optional[Project] = None
) -> ThreadSection:
    sections = state.sections_for(project.id if project else None)
    section = _require(sections, name)
    if not visible:
        busy = threads_in_section(state, section.id, project)
        if busy:
            raise Conflict(f"Cannot hide section '{section.name}': {len(busy)} thread(s) still in it. Move them first.")
    sections, _ = editable_sections(state, project)
    target = _require(sections, name)
    target.is_visible = visible
    return target
