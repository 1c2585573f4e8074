"""Thread orchestrator: the single owner of projects, threads and sections.

Locking:
- `_lock` guards the in-memory document and the transient overlay. It is held
  for snapshots, for applying results and while persisting, never across a
  git/tmux call.
- `_thread_locks` serializes whole operations per thread id.
- `_repo_locks` serializes worktree-mutating git calls per repository path.
"""
from __future__ import annotations

import logging
import os
import random
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..contracts.v1 import AGENT_TYPES, AppState, Project, Thread, ThreadSection
from ..util.time import utc_now_iso
from . import agents, naming, sections
from .errors import Conflict, ExternalToolFailure, MagentError, NotFound, PersistenceFailure, ValidationFailure
from .events import EventBus
from .git import GitService
from .locks import KeyedLocks
from .settings import EngineSettings
from .status import TransientStatus
from .store import StateStore

logger = logging.getLogger("magent.orchestrator")

_PROJECT_FIELDS = {
    "name",
    "repo_path",
    "worktrees_base_path",
    "default_branch",
    "agent_type",
    "terminal_injection_command",
    "agent_context_injection",
}

_SETTINGS_FIELDS = {
    "active_agents",
    "default_agent_type",
    "custom_agent_command",
    "play_sound_for_agent_completion",
    "agent_completion_sound_name",
    "auto_rename_worktrees",
    "is_configured",
    "terminal_injection_command",
    "agent_context_injection",
}


@dataclass
class RecoveryResult:
    status: str  # recovered | mainThreadMissing | projectNotFound | failed
    thread: Optional[Thread] = None
    error: Optional[MagentError] = None
    noop: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "recovered"


@dataclass
class WorktreeSync:
    thread_id: str
    exists: bool
    dirty: Optional[bool]
    delivered: Optional[bool]


def suggested_worktrees_path(repo_path: str) -> str:
    parent = Path(repo_path).expanduser().resolve().parent
    return f"{parent}/.worktrees-$MAGENT_PROJECT_NAME"


class Orchestrator:
    def __init__(
        self,
        *,
        settings: EngineSettings,
        git: GitService,
        tmux: Any,
        store: StateStore,
        bus: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.git = git
        self.tmux = tmux
        self.store = store
        self.bus = bus or EventBus(home=settings.home)
        self._rng = rng or random.Random()

        self._lock = threading.RLock()
        self._thread_locks = KeyedLocks()
        self._repo_locks = KeyedLocks()
        self._reserved_names: Dict[str, Set[str]] = {}
        self._reserved_paths: Set[str] = set()
        self._recovering: Set[str] = set()
        self._transient: Dict[str, TransientStatus] = {}
        self._active_thread_id: Optional[str] = None

        self._state, needs_save = self.store.load()
        if needs_save:
            with self._lock:
                self._commit()

    @classmethod
    def open(cls, settings: EngineSettings, *, tmux: Any = None) -> "Orchestrator":
        from ..runners.tmux import TmuxService

        return cls(
            settings=settings,
            git=GitService(timeout_s=settings.vcs_timeout_seconds),
            tmux=tmux or TmuxService(timeout_s=settings.tmux_timeout_seconds, bell_log_path=settings.bell_log_path),
            store=StateStore(settings.home / "state.json"),
        )

    # ------------------------------------------------------------------
    # Internal helpers

    def _commit(self) -> None:
        """Persist the document. Caller holds `_lock`."""
        self.store.save(self._state)

    def _emit(self, kind: str, data: Dict[str, Any]) -> None:
        self.bus.emit(kind, data)

    def subscribe(self, listener: Callable[[str, Dict[str, Any]], None]) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def _thread_ref(self, thread_id: str) -> Thread:
        t = self._state.thread(thread_id)
        if t is None:
            raise NotFound(f"Thread not found: {thread_id}")
        return t

    def _snapshot(self, thread_id: str) -> Tuple[Thread, Project]:
        with self._lock:
            t = self._thread_ref(thread_id)
            p = self._state.project(t.project_id)
            if p is None:
                raise NotFound(f"Project not found: {t.project_id}")
            return t.model_copy(deep=True), p.model_copy(deep=True)

    def _resolve_project(self, ref: str) -> Project:
        """Caller holds `_lock`. `ref` is a project id or a case-insensitive name."""
        p = self._state.project(ref) or self._state.project_by_name(ref)
        if p is None:
            raise NotFound(f"Project not found: {ref}")
        return p

    def _state_copy(self) -> AppState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def _repo_key(self, project: Project) -> str:
        return os.path.realpath(project.repo_path)

    def _session_name(self, project: Project, thread: Thread, tab: int = 1) -> str:
        return naming.session_name(self.settings.session_prefix, project.name, thread.id, tab)

    def _worktree_path(self, project: Project, name: str) -> str:
        return str(Path(project.resolved_worktrees_base_path()).expanduser() / name)

    def _place_at_bottom(self, thread: Thread) -> None:
        """Caller holds `_lock`. Bottom of the thread's section and pin group."""
        orders = [t.display_order for t in self._group_of(thread) if t.id != thread.id]
        thread.display_order = max(orders, default=-1) + 1

    def _group_of(self, thread: Thread) -> List[Thread]:
        """Caller holds `_lock`. Live threads sharing `thread`'s project, section and pin state."""
        eff = sections.effective_section(self._state, thread)
        sid = eff.id if eff else ""
        out = []
        for t in self._state.threads:
            if t.is_archived or t.project_id != thread.project_id or t.is_pinned != thread.is_pinned:
                continue
            e = sections.effective_section(self._state, t)
            if (e.id if e else "") == sid:
                out.append(t)
        return sorted(out, key=lambda t: (t.display_order, t.created_at))

    # Name reservation for concurrent creates/renames.

    def _try_reserve(self, project: Project, name: str, *, exclude_thread: Optional[str] = None) -> bool:
        path = self._worktree_path(project, name)
        own_links: Set[str] = set()
        with self._lock:
            reserved = self._reserved_names.setdefault(project.id, set())
            if name in reserved or path in self._reserved_paths:
                return False
            for t in self._state.threads:
                if t.id == exclude_thread:
                    own_links.update(t.compat_links)
                    continue
                if t.project_id == project.id and t.name == name:
                    return False
                if not t.is_archived and os.path.realpath(t.worktree_path) == os.path.realpath(path):
                    return False
            reserved.add(name)
            self._reserved_paths.add(path)
        try:
            # A renaming thread may move back onto its own compat symlink.
            occupied = os.path.lexists(path) and not (path in own_links and os.path.islink(path))
            taken = occupied or self.git.branch_exists(project.repo_path, name)
        except ExternalToolFailure:
            taken = True
        if taken:
            self._release(project, name)
            return False
        return True

    def _release(self, project: Project, name: str) -> None:
        with self._lock:
            self._reserved_names.get(project.id, set()).discard(name)
            self._reserved_paths.discard(self._worktree_path(project, name))

    # Sessions

    def _start_session(
        self,
        project: Project,
        thread: Thread,
        session: str,
        agent_type: Optional[str],
        *,
        state: Optional[AppState] = None,
        work_dir: Optional[str] = None,
    ) -> None:
        st = state or self._state_copy()
        wd = work_dir or thread.worktree_path
        env = agents.session_environment(project, thread, socket_path=str(self.settings.resolved_socket_path))
        env["MAGENT_WORKTREE_PATH"] = wd
        command = None
        if agent_type:
            command = agents.agent_start_command(wd, agents.agent_command(st, agent_type))
        self.tmux.create_session(session, wd, command, env=env)
        if agent_type:
            try:
                self.tmux.setup_bell_pipe(session)
            except ExternalToolFailure as e:
                logger.warning("bell pipe setup failed for %s: %s", session, e, extra={"session": session})

    def _kill_quietly(self, session: str) -> None:
        try:
            if self.tmux.session_exists(session):
                self.tmux.kill_session(session)
        except ExternalToolFailure as e:
            logger.warning("kill-session %s failed: %s", session, e, extra={"session": session})

    def _close_bell_pipe(self, session: str) -> None:
        try:
            self.tmux.close_bell_pipe(session)
        except ExternalToolFailure as e:
            logger.warning("bell pipe close failed for %s: %s", session, e, extra={"session": session})

    def _restore_superseded(self, marked: str, original: str, piped: bool) -> None:
        """Rename rollback: give `marked` its name back and reattach its bell pipe."""
        self.tmux.rename_session(marked, original)
        if not piped:
            return
        try:
            self.tmux.setup_bell_pipe(original)
        except ExternalToolFailure as e:
            logger.warning("bell pipe setup failed for %s: %s", original, e, extra={"session": original})

    def _schedule_injection(
        self,
        project: Project,
        session: str,
        *,
        is_agent: bool,
        prompt: Optional[str] = None,
    ) -> None:
        st = self._state_copy()
        terminal = agents.terminal_injection(st, project)
        context = agents.context_injection(st, project) if is_agent else ""
        text_prompt = (prompt or "").strip() if is_agent else ""
        if not (terminal or context or text_prompt):
            return

        def _inject() -> None:
            try:
                if terminal:
                    self.tmux.send_keys(session, terminal)
                if context:
                    self.tmux.send_keys(session, context)
                if text_prompt:
                    self.tmux.send_keys(session, text_prompt)
            except ExternalToolFailure as e:
                logger.warning("injection into %s failed: %s", session, e, extra={"session": session})

        delay = self.settings.inject_delay_seconds
        if delay <= 0:
            _inject()
            return
        timer = threading.Timer(delay, _inject)
        timer.daemon = True
        timer.start()

    # ------------------------------------------------------------------
    # Queries

    def list_projects(self) -> List[Project]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._state.projects]

    def get_project(self, ref: str) -> Project:
        with self._lock:
            return self._resolve_project(ref).model_copy(deep=True)

    def list_threads(self, project_ref: Optional[str] = None, *, include_archived: bool = True) -> List[Thread]:
        with self._lock:
            pid = self._resolve_project(project_ref).id if project_ref else None
            return [
                t.model_copy(deep=True)
                for t in self._state.threads
                if (pid is None or t.project_id == pid) and (include_archived or not t.is_archived)
            ]

    def get_thread(self, thread_id: str) -> Thread:
        with self._lock:
            return self._thread_ref(thread_id).model_copy(deep=True)

    def find_thread(self, *, thread_id: Optional[str] = None, name: Optional[str] = None) -> Thread:
        with self._lock:
            if thread_id:
                return self._thread_ref(thread_id).model_copy(deep=True)
            if name:
                wanted = name.lower()
                for t in self._state.threads:
                    if t.name.lower() == wanted:
                        return t.model_copy(deep=True)
                raise NotFound(f"Thread not found: {name}")
        raise ValidationFailure("Missing required field: threadId or threadName")

    def thread_for_session(self, session: str) -> Thread:
        with self._lock:
            for t in self._state.threads:
                if session in t.tmux_session_names:
                    return t.model_copy(deep=True)
        raise NotFound(f"No thread found for session: {session}")

    def main_thread(self, project_id: str) -> Optional[Thread]:
        with self._lock:
            for t in self._state.threads:
                if t.project_id == project_id and t.is_main:
                    return t.model_copy(deep=True)
        return None

    def state(self) -> AppState:
        return self._state_copy()

    def status(self, thread_id: str) -> TransientStatus:
        with self._lock:
            return self._transient.get(thread_id, TransientStatus()).copy()

    def effective_section(self, thread: Thread) -> Optional[ThreadSection]:
        with self._lock:
            return sections.effective_section(self._state, thread)

    @property
    def active_thread_id(self) -> Optional[str]:
        return self._active_thread_id

    # ------------------------------------------------------------------
    # Settings and projects

    def update_settings(self, **fields: Any) -> AppState:
        unknown = set(fields) - _SETTINGS_FIELDS
        if unknown:
            raise ValidationFailure(f"unknown settings field(s): {', '.join(sorted(unknown))}")
        if "active_agents" in fields:
            bad = [a for a in fields["active_agents"] if a not in AGENT_TYPES]
            if bad:
                raise ValidationFailure(f"Unknown agent type: {bad[0]}. Valid: {', '.join(AGENT_TYPES)}")
        with self._lock:
            for k, v in fields.items():
                setattr(self._state, k, v)
            self._commit()
            out = self._state.model_copy(deep=True)
        self._emit("settings.updated", {"fields": sorted(fields)})
        return out

    def add_project(
        self,
        name: str,
        repo_path: str,
        *,
        worktrees_base_path: Optional[str] = None,
        default_branch: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> Project:
        n = (name or "").strip()
        if not n:
            raise ValidationFailure("project name must not be empty")
        repo = str(Path(repo_path).expanduser().resolve())
        if not self.git.is_repository(repo):
            raise ValidationFailure(f"not a git repository: {repo}")
        if agent_type is not None and agent_type not in AGENT_TYPES:
            raise ValidationFailure(f"Unknown agent type: {agent_type}. Valid: {', '.join(AGENT_TYPES)}")
        branch = default_branch or self.git.detect_default_branch(repo)
        project = Project(
            name=n,
            repo_path=repo,
            worktrees_base_path=worktrees_base_path or suggested_worktrees_path(repo),
            default_branch=branch,
            agent_type=agent_type,
        )
        with self._lock:
            if self._state.project_by_name(n) is not None:
                raise Conflict(f"Project already exists: {n}")
            self._state.projects.append(project)
            self._commit()
        try:
            self.create_main_thread(project.id)
        except MagentError:
            # A project never persists without its main thread.
            with self._lock:
                self._state.projects = [p for p in self._state.projects if p.id != project.id]
                self._state.threads = [t for t in self._state.threads if t.project_id != project.id]
                self._commit()
            raise
        logger.info("project added: %s", n, extra={"project_id": project.id})
        self._emit("project.added", {"project_id": project.id, "name": n})
        return project.model_copy(deep=True)

    def update_project(self, project_ref: str, **fields: Any) -> Project:
        unknown = set(fields) - _PROJECT_FIELDS
        if unknown:
            raise ValidationFailure(f"unknown project field(s): {', '.join(sorted(unknown))}")
        if "repo_path" in fields:
            fields["repo_path"] = str(Path(fields["repo_path"]).expanduser().resolve())
            if not self.git.is_repository(fields["repo_path"]):
                raise ValidationFailure(f"not a git repository: {fields['repo_path']}")
        if fields.get("agent_type") not in (None, *AGENT_TYPES):
            raise ValidationFailure(f"Unknown agent type: {fields['agent_type']}")
        with self._lock:
            project = self._resolve_project(project_ref)
            if "name" in fields:
                clash = self._state.project_by_name(fields["name"])
                if clash is not None and clash.id != project.id:
                    raise Conflict(f"Project already exists: {fields['name']}")
            for k, v in fields.items():
                setattr(project, k, v)
            if "repo_path" in fields:
                for t in self._state.threads:
                    if t.project_id == project.id and t.is_main:
                        t.worktree_path = project.repo_path
            self._commit()
            pid = project.id
        self._emit("project.updated", {"project_id": pid, "fields": sorted(fields)})
        self.sync_threads_with_worktrees(pid)
        return self.get_project(pid)

    # ------------------------------------------------------------------
    # Thread lifecycle

    def create_main_thread(self, project_ref: str) -> Thread:
        with self._lock:
            project = self._resolve_project(project_ref).model_copy(deep=True)
        with self._thread_locks.hold(f"main:{project.id}"):
            existing = self.main_thread(project.id)
            if existing is not None:
                return existing
            branch = self.git.current_branch(project.repo_path) or project.default_branch or "main"
            st = self._state_copy()
            agent_type = agents.resolve_agent_type(st, project)
            thread = Thread(
                project_id=project.id,
                name="main",
                worktree_path=project.repo_path,
                branch_name=branch,
                is_main=True,
                selected_agent_type=agent_type,
            )
            session = self._session_name(project, thread)
            self._start_session(project, thread, session, agent_type, state=st)
            thread.tmux_session_names = [session]
            thread.agent_tmux_sessions = [session] if agent_type else []
            thread.last_selected_tmux_session_name = session
            thread.agent_has_run = bool(agent_type)
            failure: Optional[PersistenceFailure] = None
            with self._lock:
                self._place_at_bottom(thread)
                self._state.threads.append(thread)
                try:
                    self._commit()
                except PersistenceFailure as e:
                    self._state.threads.remove(thread)
                    failure = e
                out = thread.model_copy(deep=True)
            if failure is not None:
                self._kill_quietly(session)
                raise failure
        logger.info("main thread created for %s", project.name, extra={"thread_id": thread.id, "project_id": project.id})
        self._emit("thread.created", {"thread_id": thread.id, "project_id": project.id, "is_main": True})
        self._schedule_injection(project, session, is_agent=bool(agent_type))
        return out

    def create_thread(
        self,
        project_ref: str,
        name: Optional[str] = None,
        base_branch: Optional[str] = None,
        *,
        agent_type: Optional[str] = None,
        use_agent: bool = True,
        initial_prompt: Optional[str] = None,
    ) -> Thread:
        if agent_type is not None and agent_type not in AGENT_TYPES:
            raise ValidationFailure(f"Unknown agent type: {agent_type}. Valid: {', '.join(AGENT_TYPES)}")
        with self._lock:
            project = self._resolve_project(project_ref).model_copy(deep=True)
        chosen = naming.pick_available_name(lambda c: self._try_reserve(project, c), requested=name, rng=self._rng)
        try:
            return self._create_reserved(project, chosen, base_branch, agent_type, use_agent, initial_prompt)
        finally:
            self._release(project, chosen)

    def _create_reserved(
        self,
        project: Project,
        name: str,
        base_branch: Optional[str],
        agent_type: Optional[str],
        use_agent: bool,
        initial_prompt: Optional[str],
    ) -> Thread:
        path = self._worktree_path(project, name)
        base = base_branch or project.default_branch
        with self._repo_locks.hold(self._repo_key(project)):
            self.git.add_worktree(project.repo_path, path, name, base)

        st = self._state_copy()
        resolved_agent = agents.resolve_agent_type(st, project, agent_type) if use_agent else None
        thread = Thread(
            project_id=project.id,
            name=name,
            worktree_path=path,
            branch_name=name,
            base_branch=base_branch,
            selected_agent_type=resolved_agent,
        )
        session = self._session_name(project, thread)
        try:
            self._start_session(project, thread, session, resolved_agent, state=st)
        except MagentError:
            self._undo_worktree(project, path, name)
            raise
        thread.tmux_session_names = [session]
        thread.agent_tmux_sessions = [session] if resolved_agent else []
        thread.last_selected_tmux_session_name = session
        thread.agent_has_run = bool(resolved_agent)

        failure: Optional[PersistenceFailure] = None
        with self._lock:
            default = sections.default_section(self._state.sections_for(project.id))
            thread.section_id = default.id if default else None
            self._place_at_bottom(thread)
            self._state.threads.append(thread)
            try:
                self._commit()
            except PersistenceFailure as e:
                self._state.threads.remove(thread)
                failure = e
            out = thread.model_copy(deep=True)
        if failure is not None:
            # External undo steps never run under the collection lock.
            self._kill_quietly(session)
            self._undo_worktree(project, path, name)
            raise failure

        logger.info("thread created: %s", name, extra={"thread_id": thread.id, "project_id": project.id})
        self._emit("thread.created", {"thread_id": thread.id, "project_id": project.id, "name": name})
        self._schedule_injection(project, session, is_agent=bool(resolved_agent), prompt=initial_prompt)
        return out

    def _undo_worktree(self, project: Project, path: str, branch: str) -> None:
        with self._repo_locks.hold(self._repo_key(project)):
            try:
                self.git.remove_worktree(project.repo_path, path)
            except ExternalToolFailure as e:
                logger.warning("rollback: worktree remove failed for %s: %s", path, e)
            try:
                if self.git.branch_exists(project.repo_path, branch):
                    self.git.delete_branch(project.repo_path, branch)
            except ExternalToolFailure as e:
                logger.warning("rollback: branch delete failed for %s: %s", branch, e)

    def rename_thread(self, thread_id: str, new_name: str) -> Thread:
        with self._thread_locks.hold(thread_id):
            thread, project = self._snapshot(thread_id)
            if thread.is_main:
                raise ValidationFailure("The main thread cannot be renamed")
            if thread.is_archived:
                raise Conflict(f"Thread is archived: {thread.name}")
            target = naming.validate_thread_name(new_name)
            if target == thread.name:
                return thread
            if not self._try_reserve(project, target, exclude_thread=thread.id):
                raise Conflict(f"Thread name already in use: {target}")
            try:
                return self._rename_reserved(thread, project, target)
            finally:
                self._release(project, target)

    def _rename_reserved(self, thread: Thread, project: Project, target: str) -> Thread:
        old_path = thread.worktree_path
        new_path = self._worktree_path(project, target)
        undo: List[Callable[[], None]] = []

        def _rollback() -> None:
            for fn in reversed(undo):
                try:
                    fn()
                except (MagentError, OSError) as e:
                    logger.warning("rename rollback step failed: %s", e, extra={"thread_id": thread.id})

        repo = project.repo_path
        try:
            with self._repo_locks.hold(self._repo_key(project)):
                self.git.rename_branch(repo, thread.branch_name, target)
                undo.append(lambda: self.git.rename_branch(repo, target, thread.branch_name))
                if new_path in thread.compat_links and os.path.islink(new_path):
                    link_target = os.readlink(new_path)
                    os.unlink(new_path)
                    undo.append(lambda: os.symlink(link_target, new_path))
                if os.path.isdir(old_path):
                    self.git.move_worktree(repo, old_path, new_path)
                    undo.append(lambda: self.git.move_worktree(repo, new_path, old_path))
                    # Live sessions and editors may still hold the old path.
                    try:
                        os.symlink(new_path, old_path)
                        undo.append(lambda: os.unlink(old_path))
                    except OSError as e:
                        logger.warning("compat symlink %s failed: %s", old_path, e)

            taken = set(thread.superseded_sessions)
            try:
                taken.update(self.tmux.list_sessions())
            except ExternalToolFailure:
                pass
            superseded: List[str] = []
            for s in thread.tmux_session_names:
                if not self.tmux.session_exists(s):
                    continue
                marked = naming.superseded_name(s, taken)
                taken.add(marked)
                self.tmux.rename_session(s, marked)
                piped = s in thread.agent_tmux_sessions
                undo.append(lambda s=s, marked=marked, piped=piped: self._restore_superseded(marked, s, piped))
                superseded.append(marked)
                # The watcher logs the name it was started with, which now
                # belongs to the fresh session.
                self._close_bell_pipe(marked)

            renamed = thread.model_copy(deep=True)
            renamed.name = target
            renamed.branch_name = target
            renamed.worktree_path = new_path
            fresh = self._session_name(project, renamed)
            agent_type = renamed.selected_agent_type
            self._start_session(project, renamed, fresh, agent_type)
            undo.append(lambda: self._kill_quietly(fresh))
        except (MagentError, OSError) as e:
            _rollback()
            if isinstance(e, OSError):
                raise ExternalToolFailure(f"rename failed: {e}", stderr=str(e)) from e
            raise

        failure: Optional[MagentError] = None
        with self._lock:
            before = self._state.model_copy(deep=True)
            try:
                live = self._thread_ref(thread.id)
                live.name = target
                live.branch_name = target
                live.worktree_path = new_path
                live.tmux_session_names = [fresh]
                live.agent_tmux_sessions = [fresh] if agent_type else []
                live.pinned_tmux_sessions = []
                live.unread_completion_sessions = []
                live.custom_tab_names = {}
                live.last_selected_tmux_session_name = fresh
                live.superseded_sessions = sorted(set(live.superseded_sessions) | set(superseded))
                links = set(live.compat_links) - {new_path}
                if os.path.islink(old_path):
                    links.add(old_path)
                live.compat_links = sorted(links)
                self._commit()
                self._transient.pop(thread.id, None)
                out = live.model_copy(deep=True)
            except MagentError as e:
                self._state = before
                failure = e
        if failure is not None:
            _rollback()
            raise failure

        logger.info("thread renamed: %s -> %s", thread.name, target, extra={"thread_id": thread.id})
        self._emit(
            "thread.renamed",
            {"thread_id": thread.id, "old_name": thread.name, "new_name": target, "superseded": superseded},
        )
        return out

    def _cleanup_leftovers(self, thread: Thread) -> None:
        for s in thread.superseded_sessions:
            self._kill_quietly(s)
        for link in thread.compat_links:
            try:
                if os.path.islink(link):
                    os.unlink(link)
            except OSError as e:
                logger.warning("compat symlink %s not removed: %s", link, e)

    def _archive_locked(self, thread: Thread, project: Project) -> Thread:
        """Archive steps for a thread whose lock the caller holds."""
        path = thread.worktree_path
        with self._repo_locks.hold(self._repo_key(project)):
            if os.path.isdir(path):
                self.git.remove_worktree(project.repo_path, path)
            else:
                try:
                    self.git.prune_worktrees(project.repo_path)
                except ExternalToolFailure as e:
                    logger.warning("worktree prune failed: %s", e, extra={"thread_id": thread.id})

        for s in thread.tmux_session_names:
            self._kill_quietly(s)
        self._cleanup_leftovers(thread)

        with self._lock:
            before = self._state.model_copy(deep=True)
            live = self._thread_ref(thread.id)
            live.is_archived = True
            live.tmux_session_names = []
            live.agent_tmux_sessions = []
            live.pinned_tmux_sessions = []
            live.unread_completion_sessions = []
            live.superseded_sessions = []
            live.compat_links = []
            live.custom_tab_names = {}
            live.last_selected_tmux_session_name = None
            try:
                self._commit()
            except MagentError:
                self._state = before
                raise
            self._transient.pop(thread.id, None)
            if self._active_thread_id == thread.id:
                self._active_thread_id = None
            return live.model_copy(deep=True)

    def archive_thread(self, thread_id: str) -> Thread:
        with self._thread_locks.hold(thread_id):
            thread, project = self._snapshot(thread_id)
            if thread.is_main:
                raise Conflict("The main thread cannot be archived")
            if thread.is_archived:
                return thread
            out = self._archive_locked(thread, project)
        logger.info("thread archived: %s", thread.name, extra={"thread_id": thread_id})
        self._emit("thread.archived", {"thread_id": thread_id, "project_id": project.id})
        return out

    def delete_thread(self, thread_id: str) -> None:
        with self._thread_locks.hold(thread_id):
            thread, project = self._snapshot(thread_id)
            if thread.is_main:
                raise Conflict("The main thread cannot be deleted")
            if not thread.is_archived:
                thread = self._archive_locked(thread, project)
            with self._repo_locks.hold(self._repo_key(project)):
                if self.git.branch_exists(project.repo_path, thread.branch_name):
                    self.git.delete_branch(project.repo_path, thread.branch_name)
            with self._lock:
                live = self._thread_ref(thread_id)
                idx = self._state.threads.index(live)
                del self._state.threads[idx]
                try:
                    self._commit()
                except PersistenceFailure:
                    self._state.threads.insert(idx, live)
                    raise
        logger.info("thread deleted: %s", thread.name, extra={"thread_id": thread_id})
        self._emit("thread.deleted", {"thread_id": thread_id, "project_id": project.id})

    def recover_worktree(self, thread_id: str) -> RecoveryResult:
        with self._lock:
            self._thread_ref(thread_id)
            if thread_id in self._recovering:
                raise Conflict(f"Recovery already in progress for thread {thread_id}")
            self._recovering.add(thread_id)
        try:
            with self._thread_locks.hold(thread_id):
                return self._recover_locked(thread_id)
        finally:
            with self._lock:
                self._recovering.discard(thread_id)

    def _recover_locked(self, thread_id: str) -> RecoveryResult:
        with self._lock:
            thread = self._thread_ref(thread_id).model_copy(deep=True)
            project = self._state.project(thread.project_id)
            project = project.model_copy(deep=True) if project is not None else None
        if project is None:
            return RecoveryResult("projectNotFound", thread=thread)
        if thread.is_archived:
            return RecoveryResult("failed", thread=thread, error=Conflict(f"Thread is archived: {thread.name}"))
        if os.path.isdir(thread.worktree_path):
            self._set_transient(thread_id, worktree_missing=False)
            return RecoveryResult("recovered", thread=thread, noop=True)
        main = self.main_thread(project.id)
        if thread.is_main or main is None or not os.path.isdir(main.worktree_path):
            return RecoveryResult("mainThreadMissing", thread=thread)

        try:
            with self._repo_locks.hold(self._repo_key(project)):
                self.git.prune_worktrees(project.repo_path)
                if self.git.branch_exists(project.repo_path, thread.branch_name):
                    self.git.add_worktree_for_branch(project.repo_path, thread.worktree_path, thread.branch_name)
                else:
                    base = thread.base_branch or project.default_branch
                    self.git.add_worktree(project.repo_path, thread.worktree_path, thread.branch_name, base)
        except ExternalToolFailure as e:
            logger.warning("recovery failed: %s", e, extra={"thread_id": thread_id})
            return RecoveryResult("failed", thread=thread, error=e)

        sessions = self._live_sessions(thread.tmux_session_names)
        started: Optional[str] = None
        if not sessions:
            started = self._session_name(project, thread)
            try:
                self._start_session(project, thread, started, thread.selected_agent_type)
            except ExternalToolFailure as e:
                return RecoveryResult("failed", thread=thread, error=e)

        with self._lock:
            live = self._thread_ref(thread_id)
            if started is not None:
                self._reset_sessions(live, [started], agent=bool(thread.selected_agent_type))
            self._set_transient(thread_id, worktree_missing=False)
            self._commit()
            out = live.model_copy(deep=True)
        logger.info("worktree recovered: %s", thread.worktree_path, extra={"thread_id": thread_id})
        self._emit("thread.recovered", {"thread_id": thread_id})
        return RecoveryResult("recovered", thread=out)

    def _live_sessions(self, names: Iterable[str]) -> List[str]:
        try:
            live = set(self.tmux.list_sessions())
        except ExternalToolFailure:
            return []
        return [n for n in names if n in live]

    @staticmethod
    def _reset_sessions(thread: Thread, names: List[str], *, agent: bool) -> None:
        thread.tmux_session_names = list(names)
        thread.agent_tmux_sessions = list(names) if agent else []
        thread.pinned_tmux_sessions = []
        thread.unread_completion_sessions = []
        thread.custom_tab_names = {}
        thread.last_selected_tmux_session_name = names[0] if names else None

    # ------------------------------------------------------------------
    # Tabs

    def add_tab(
        self,
        thread_id: str,
        agent_type: Optional[str] = None,
        *,
        use_agent: Optional[bool] = None,
        prompt: Optional[str] = None,
    ) -> Tuple[Thread, str]:
        if agent_type is not None and agent_type not in AGENT_TYPES:
            raise ValidationFailure(f"Unknown agent type: {agent_type}. Valid: {', '.join(AGENT_TYPES)}, terminal")
        with self._thread_locks.hold(thread_id):
            thread, project = self._snapshot(thread_id)
            if thread.is_archived:
                raise Conflict(f"Thread is archived: {thread.name}")
            wants_agent = use_agent if use_agent is not None else (agent_type is not None or thread.selected_agent_type is not None)
            st = self._state_copy()
            agent = agents.resolve_agent_type(st, project, agent_type or thread.selected_agent_type) if wants_agent else None

            prefix = self.settings.session_prefix
            n = naming.next_tab_number(prefix, thread.id, thread.tmux_session_names)
            session = self._session_name(project, thread, n)
            while self.tmux.session_exists(session):
                n += 1
                session = self._session_name(project, thread, n)
            self._start_session(project, thread, session, agent, state=st)

            failure: Optional[MagentError] = None
            with self._lock:
                before = self._state.model_copy(deep=True)
                try:
                    live = self._thread_ref(thread_id)
                    live.tmux_session_names.append(session)
                    if agent:
                        live.agent_tmux_sessions.append(session)
                        live.agent_has_run = True
                        if live.selected_agent_type is None:
                            live.selected_agent_type = agent
                    self._commit()
                    out = live.model_copy(deep=True)
                except MagentError as e:
                    self._state = before
                    failure = e
            if failure is not None:
                self._kill_quietly(session)
                raise failure
        self._emit("tab.added", {"thread_id": thread_id, "session": session, "is_agent": bool(agent)})
        self._schedule_injection(project, session, is_agent=bool(agent), prompt=prompt)
        return out, session

    def close_tab(self, thread_id: str, session_name: Optional[str] = None, *, tab_index: Optional[int] = None) -> Thread:
        with self._thread_locks.hold(thread_id):
            thread, _ = self._snapshot(thread_id)
            if session_name is None:
                if tab_index is None:
                    raise ValidationFailure("Missing required field: tabIndex or sessionName")
                if not 0 <= tab_index < len(thread.tmux_session_names):
                    raise NotFound(f"Tab index out of range: {tab_index}")
                session_name = thread.tmux_session_names[tab_index]
            if session_name not in thread.tmux_session_names:
                raise NotFound(f"Session not found: {session_name}")
            if len(thread.tmux_session_names) <= 1:
                raise Conflict("Cannot close the last tab; archive or delete the thread instead")
            if self.tmux.session_exists(session_name):
                self.tmux.kill_session(session_name)
            with self._lock:
                live = self._thread_ref(thread_id)
                for lst in (
                    live.tmux_session_names,
                    live.agent_tmux_sessions,
                    live.pinned_tmux_sessions,
                    live.unread_completion_sessions,
                ):
                    if session_name in lst:
                        lst.remove(session_name)
                live.custom_tab_names.pop(session_name, None)
                if live.last_selected_tmux_session_name == session_name:
                    live.last_selected_tmux_session_name = live.tmux_session_names[0]
                st = self._transient.get(thread_id)
                if st is not None:
                    st.busy.discard(session_name)
                    st.waiting.discard(session_name)
                self._commit()
                out = live.model_copy(deep=True)
        self._emit("tab.closed", {"thread_id": thread_id, "session": session_name})
        return out

    def rename_tab(self, thread_id: str, session_name: str, display_name: Optional[str]) -> Thread:
        def _apply(t: Thread) -> None:
            if session_name not in t.tmux_session_names:
                raise NotFound(f"Session not found: {session_name}")
            label = (display_name or "").strip()
            if label:
                t.custom_tab_names[session_name] = label
            else:
                t.custom_tab_names.pop(session_name, None)

        return self._mutate(thread_id, _apply, "thread.updated")

    def set_tab_pinned(self, thread_id: str, session_name: str, pinned: bool) -> Thread:
        def _apply(t: Thread) -> None:
            if session_name not in t.tmux_session_names:
                raise NotFound(f"Session not found: {session_name}")
            if pinned and session_name not in t.pinned_tmux_sessions:
                t.pinned_tmux_sessions.append(session_name)
            elif not pinned and session_name in t.pinned_tmux_sessions:
                t.pinned_tmux_sessions.remove(session_name)

        return self._mutate(thread_id, _apply, "thread.updated")

    def send_prompt(self, thread_id: str, prompt: str) -> str:
        text = (prompt or "").strip()
        if not text:
            raise ValidationFailure("Missing required field: prompt")
        thread = self.get_thread(thread_id)
        targets = thread.agent_tmux_sessions or thread.tmux_session_names
        if not targets:
            raise Conflict("Thread has no tmux sessions")
        session = targets[0]
        self.tmux.send_keys(session, text)
        return session

    # ------------------------------------------------------------------
    # Metadata

    def _mutate(self, thread_id: str, fn: Callable[[Thread], None], event: str) -> Thread:
        with self._thread_locks.hold(thread_id):
            with self._lock:
                before = self._state.model_copy(deep=True)
                live = self._thread_ref(thread_id)
                try:
                    fn(live)
                    self._commit()
                except MagentError:
                    self._state = before
                    raise
                out = live.model_copy(deep=True)
        self._emit(event, {"thread_id": thread_id})
        return out

    def assign_section(self, thread_id: str, section_id: Optional[str]) -> Thread:
        def _apply(t: Thread) -> None:
            if section_id is not None:
                known = {s.id for s in self._state.sections_for(t.project_id)}
                if section_id not in known:
                    raise NotFound(f"Section not found: {section_id}")
            t.section_id = section_id
            self._place_at_bottom(t)

        return self._mutate(thread_id, _apply, "thread.updated")

    def set_pinned(self, thread_id: str, pinned: bool) -> Thread:
        def _apply(t: Thread) -> None:
            if t.is_pinned == pinned:
                return
            t.is_pinned = pinned
            self._place_at_bottom(t)

        return self._mutate(thread_id, _apply, "thread.updated")

    def set_display_order(self, thread_id: str, position: int) -> Thread:
        """Move the thread to `position` within its section/pin group and renumber the group."""

        def _apply(t: Thread) -> None:
            group = [g for g in self._group_of(t) if g.id != t.id]
            pos = max(0, min(int(position), len(group)))
            group.insert(pos, t)
            for i, g in enumerate(group):
                g.display_order = i

        return self._mutate(thread_id, _apply, "thread.updated")

    def mark_read(self, thread_id: str, session_name: Optional[str] = None) -> Thread:
        def _apply(t: Thread) -> None:
            if session_name is None:
                t.unread_completion_sessions = []
            elif session_name in t.unread_completion_sessions:
                t.unread_completion_sessions.remove(session_name)

        return self._mutate(thread_id, _apply, "thread.updated")

    def set_active(self, thread_id: Optional[str], session_name: Optional[str] = None) -> None:
        """Record the focused thread/tab. The focused tab never accrues unread completions."""
        if thread_id is None:
            with self._lock:
                self._active_thread_id = None
            return

        def _apply(t: Thread) -> None:
            if session_name is not None:
                if session_name not in t.tmux_session_names:
                    raise NotFound(f"Session not found: {session_name}")
                t.last_selected_tmux_session_name = session_name
            self._active_thread_id = t.id
            focused = t.last_selected_tmux_session_name
            if focused in t.unread_completion_sessions:
                t.unread_completion_sessions.remove(focused)

        self._mutate(thread_id, _apply, "thread.focused")

    # ------------------------------------------------------------------
    # Monitor entry points (transient overlay)

    def _set_transient(self, thread_id: str, **fields: Any) -> None:
        with self._lock:
            st = self._transient.setdefault(thread_id, TransientStatus())
            for k, v in fields.items():
                setattr(st, k, v)

    def update_transient(
        self,
        thread_id: str,
        *,
        busy: Optional[Set[str]] = None,
        waiting: Optional[Set[str]] = None,
    ) -> None:
        with self._lock:
            if self._state.thread(thread_id) is None:
                return
            st = self._transient.setdefault(thread_id, TransientStatus())
            if busy is not None:
                st.busy = set(busy)
            if waiting is not None:
                st.waiting = set(waiting)

    def agent_sessions(self) -> List[Tuple[str, str]]:
        """(thread_id, session) for every agent session of every live thread."""
        with self._lock:
            return [
                (t.id, s)
                for t in self._state.threads
                if not t.is_archived
                for s in t.agent_tmux_sessions
            ]

    def record_completion(self, session: str) -> bool:
        """Apply a detected agent completion. Returns True when it became unread."""
        with self._lock:
            live = None
            for t in self._state.threads:
                if not t.is_archived and session in t.agent_tmux_sessions:
                    live = t
                    break
            if live is None:
                return False
            st = self._transient.setdefault(live.id, TransientStatus())
            st.busy.discard(session)
            st.waiting.discard(session)
            live.last_agent_completion_at = utc_now_iso()
            focused = live.id == self._active_thread_id and live.last_selected_tmux_session_name == session
            unread = False
            if not focused and session not in live.unread_completion_sessions:
                live.unread_completion_sessions = sorted(set(live.unread_completion_sessions) | {session})
                unread = True
            self._commit()
            tid, pid = live.id, live.project_id
        self._emit("agent.completed", {"thread_id": tid, "project_id": pid, "session": session, "unread": unread})
        return unread

    def is_focused(self, thread_id: str, session: str) -> bool:
        with self._lock:
            t = self._state.thread(thread_id)
            return bool(t and t.id == self._active_thread_id and t.last_selected_tmux_session_name == session)

    def notify_waiting(self, thread_id: str, session: str) -> None:
        self._emit("agent.waiting", {"thread_id": thread_id, "session": session})

    # ------------------------------------------------------------------
    # Reconciliation

    def sync_threads_with_worktrees(self, project_ref: str) -> List[WorktreeSync]:
        with self._lock:
            project = self._resolve_project(project_ref).model_copy(deep=True)
            threads = [t.model_copy(deep=True) for t in self._state.threads if t.project_id == project.id and not t.is_archived]
        out: List[WorktreeSync] = []
        for t in threads:
            exists = os.path.isdir(t.worktree_path)
            dirty = delivered = None
            if exists:
                try:
                    dirty = self.git.is_dirty(t.worktree_path)
                    base = t.base_branch or project.default_branch
                    if base and not t.is_main:
                        delivered = self.git.is_fully_delivered(t.worktree_path, base)
                except ExternalToolFailure as e:
                    logger.warning("worktree status failed for %s: %s", t.worktree_path, e, extra={"thread_id": t.id})
            self._set_transient(t.id, worktree_missing=not exists, dirty=dirty, delivered=delivered)
            out.append(WorktreeSync(thread_id=t.id, exists=exists, dirty=dirty, delivered=delivered))
        self._emit("project.synced", {"project_id": project.id, "missing": [s.thread_id for s in out if not s.exists]})
        return out

    def restore_threads(self) -> List[Thread]:
        """Startup: reload, drop vanished sessions, ensure main threads and bell pipes."""
        state, needs_save = self.store.load()
        live = set(self.tmux.list_sessions())
        with self._lock:
            self._state = state
            self._transient.clear()
            if needs_save:
                self._commit()
            work = [t.model_copy(deep=True) for t in self._state.threads if not t.is_archived]

        respawn: Dict[str, str] = {}
        for t in work:
            kept = [s for s in t.tmux_session_names if s in live]
            if kept or not os.path.isdir(t.worktree_path):
                continue
            project = self._state.project(t.project_id)
            if project is None:
                continue
            session = self._session_name(project, t)
            if session in live:
                continue
            try:
                self._start_session(project, t, session, t.selected_agent_type)
                live.add(session)
                respawn[t.id] = session
            except ExternalToolFailure as e:
                logger.warning("could not recreate session for %s: %s", t.name, e, extra={"thread_id": t.id})

        with self._lock:
            for t in self._state.threads:
                if t.is_archived:
                    continue
                if t.id in respawn:
                    self._reset_sessions(t, [respawn[t.id]], agent=bool(t.selected_agent_type))
                    continue
                dropped = [s for s in t.tmux_session_names if s not in live]
                if dropped:
                    logger.info("dropping vanished sessions: %s", ", ".join(dropped), extra={"thread_id": t.id})
                t.tmux_session_names = [s for s in t.tmux_session_names if s in live]
                t.agent_tmux_sessions = [s for s in t.agent_tmux_sessions if s in t.tmux_session_names]
                t.pinned_tmux_sessions = [s for s in t.pinned_tmux_sessions if s in t.tmux_session_names]
                t.unread_completion_sessions = [s for s in t.unread_completion_sessions if s in t.agent_tmux_sessions]
                t.custom_tab_names = {k: v for k, v in t.custom_tab_names.items() if k in t.tmux_session_names}
                t.superseded_sessions = [s for s in t.superseded_sessions if s in live]
                if t.last_selected_tmux_session_name not in t.tmux_session_names:
                    t.last_selected_tmux_session_name = t.tmux_session_names[0] if t.tmux_session_names else None
                if not os.path.isdir(t.worktree_path):
                    self._transient.setdefault(t.id, TransientStatus()).worktree_missing = True
            self._commit()
            project_ids = [p.id for p in self._state.projects if os.path.isdir(p.repo_path)]
            agent_sessions = [s for t in self._state.threads if not t.is_archived for s in t.agent_tmux_sessions]

        for pid in project_ids:
            if self.main_thread(pid) is None:
                try:
                    self.create_main_thread(pid)
                except MagentError as e:
                    logger.warning("main thread not created: %s", e, extra={"project_id": pid})

        self.ensure_bell_pipes(agent_sessions)
        self._emit("threads.restored", {"count": len(work)})
        return self.list_threads()

    def ensure_bell_pipes(self, sessions_: Optional[Iterable[str]] = None) -> None:
        names = list(sessions_) if sessions_ is not None else [s for _, s in self.agent_sessions()]
        if not names:
            return
        try:
            piped = self.tmux.sessions_with_active_pipe()
        except ExternalToolFailure:
            piped = set()
        for s in names:
            if s in piped:
                continue
            try:
                self.tmux.setup_bell_pipe(s)
            except ExternalToolFailure as e:
                logger.debug("bell pipe for %s: %s", s, e, extra={"session": s})

    # ------------------------------------------------------------------
    # Sections

    def _section_project(self, project_ref: Optional[str]) -> Optional[Project]:
        return self._resolve_project(project_ref) if project_ref else None

    def list_sections(self, project_ref: Optional[str] = None) -> Tuple[List[ThreadSection], bool]:
        with self._lock:
            project = self._section_project(project_ref)
            is_override = project is not None and project.thread_sections is not None
            found = self._state.sections_for(project.id if project else None)
            return [s.model_copy() for s in sections.sorted_sections(found)], is_override

    def threads_in_section(self, section_id: str, project_ref: Optional[str] = None) -> List[Thread]:
        with self._lock:
            project = self._section_project(project_ref)
            return [t.model_copy(deep=True) for t in sections.threads_in_section(self._state, section_id, project)]

    def _section_edit(self, fn: Callable[[Optional[Project]], Any], project_ref: Optional[str]) -> Any:
        with self._lock:
            before = self._state.model_copy(deep=True)
            project = self._section_project(project_ref)
            try:
                result = fn(project)
                self._commit()
            except MagentError:
                self._state = before
                raise
        self._emit("section.changed", {"project": project_ref or ""})
        return result

    def add_section(
        self, name: str, *, color: Optional[str] = None, project_ref: Optional[str] = None
    ) -> Tuple[ThreadSection, bool]:
        def _fn(project: Optional[Project]) -> Tuple[ThreadSection, bool]:
            s, override = sections.add_section(self._state, name, color=color, project=project, rng=self._rng)
            return s.model_copy(), override

        return self._section_edit(_fn, project_ref)

    def remove_section(self, name: str, *, project_ref: Optional[str] = None) -> ThreadSection:
        return self._section_edit(
            lambda project: sections.remove_section(self._state, name, project=project).model_copy(), project_ref
        )

    def reorder_section(self, name: str, position: int, *, project_ref: Optional[str] = None) -> List[ThreadSection]:
        return self._section_edit(
            lambda project: [s.model_copy() for s in sections.reorder_section(self._state, name, position, project=project)],
            project_ref,
        )

    def rename_section(
        self, name: str, new_name: str, *, color: Optional[str] = None, project_ref: Optional[str] = None
    ) -> Tuple[ThreadSection, bool]:
        def _fn(project: Optional[Project]) -> Tuple[ThreadSection, bool]:
            s, override = sections.rename_section(self._state, name, new_name, color=color, project=project)
            return s.model_copy(), override

        return self._section_edit(_fn, project_ref)

    def set_section_visibility(self, name: str, visible: bool, *, project_ref: Optional[str] = None) -> ThreadSection:
        return self._section_edit(
            lambda project: sections.set_section_visibility(self._state, name, visible, project=project).model_copy(),
            project_ref,
        )
