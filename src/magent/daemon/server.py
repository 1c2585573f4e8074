"""Control socket: newline-delimited JSON over a Unix domain socket.

Each connection may carry several requests; replies go back one line per
request, in order. Connections are served on their own threads.
"""
from __future__ import annotations

import json
import logging
import os
import socket
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from ..contracts.v1 import IpcRequest, IpcResponse
from ..kernel.errors import MagentError
from ..kernel.orchestrator import Orchestrator
from .ops import section_ops, thread_ops

logger = logging.getLogger("magent.server")

MAX_LINE_BYTES = 2_000_000

Handler = Callable[[Orchestrator, IpcRequest], IpcResponse]

HANDLERS: Dict[str, Handler] = {
    "list-projects": thread_ops.handle_list_projects,
    "add-project": thread_ops.handle_add_project,
    "create-thread": thread_ops.handle_create_thread,
    "list-threads": thread_ops.handle_list_threads,
    "send-prompt": thread_ops.handle_send_prompt,
    "archive-thread": thread_ops.handle_archive_thread,
    "delete-thread": thread_ops.handle_delete_thread,
    "rename-thread": thread_ops.handle_rename_thread,
    "rename-thread-exact": thread_ops.handle_rename_thread_exact,
    "current-thread": thread_ops.handle_current_thread,
    "thread-info": thread_ops.handle_thread_info,
    "recover-thread": thread_ops.handle_recover_thread,
    "list-tabs": thread_ops.handle_list_tabs,
    "create-tab": thread_ops.handle_create_tab,
    "close-tab": thread_ops.handle_close_tab,
    "list-sections": section_ops.handle_list_sections,
    "add-section": section_ops.handle_add_section,
    "remove-section": section_ops.handle_remove_section,
    "reorder-section": section_ops.handle_reorder_section,
    "rename-section": section_ops.handle_rename_section,
    "hide-section": section_ops.handle_hide_section,
    "show-section": section_ops.handle_show_section,
}


@dataclass
class DaemonPaths:
    home: Path
    socket_override: Optional[Path] = None

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.socket_override or (self.daemon_dir / "magentd.sock")

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "magentd.pid"

    @property
    def lock_path(self) -> Path:
        return self.daemon_dir / "magentd.lock"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "magentd.log"


def handle_request(orch: Orchestrator, req: IpcRequest) -> Tuple[IpcResponse, bool]:
    """Dispatch one request. Returns (response, should_exit)."""
    command = str(req.command or "").strip()
    if command == "ping":
        return IpcResponse(ok=True, id=req.id), False
    if command == "shutdown":
        return IpcResponse(ok=True, id=req.id), True

    handler = HANDLERS.get(command)
    if handler is None:
        return IpcResponse.failure(f"Unknown command: {command}", id=req.id), False
    request_id = req.id or uuid.uuid4().hex[:8]
    try:
        resp = handler(orch, req)
    except MagentError as e:
        logger.info("%s failed: %s", command, e, extra={"op": command, "request_id": request_id, "code": e.code})
        return IpcResponse.failure(str(e), id=req.id), False
    except Exception as e:
        logger.exception("%s crashed", command, extra={"op": command, "request_id": request_id})
        return IpcResponse.failure(f"Internal error: {e}", id=req.id), False
    if not resp.ok:
        logger.info("%s failed: %s", command, resp.error, extra={"op": command, "request_id": request_id})
    return resp, False


def handle_line(orch: Orchestrator, raw: bytes) -> Tuple[Dict[str, Any], bool]:
    """Decode, validate and dispatch one request line; returns the wire response."""
    try:
        doc = json.loads(raw.decode("utf-8", errors="replace"))
    except ValueError as e:
        return IpcResponse.failure(f"Invalid JSON: {e}").to_wire(), False
    if not isinstance(doc, dict):
        return IpcResponse.failure("Invalid request: expected a JSON object").to_wire(), False
    rid = doc.get("id") if isinstance(doc.get("id"), str) else None
    try:
        req = IpcRequest.model_validate(doc)
    except ValidationError as e:
        return IpcResponse.failure(f"Invalid request: {e.errors()[0].get('msg', 'invalid')}", id=rid).to_wire(), False
    resp, should_exit = handle_request(orch, req)
    return resp.to_wire(), should_exit


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    conn.sendall(data)


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"command":"ping"}\n')
            return bool(s.recv(1024))
    except OSError:
        return False


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except OSError as e:
        logger.warning("could not remove stale socket %s: %s", sock_path, e)


class ControlServer:
    def __init__(self, orch: Orchestrator, paths: DaemonPaths, *, stop_event: Optional[threading.Event] = None):
        self.orch = orch
        self.paths = paths
        self.stop_event = stop_event or threading.Event()
        self._listener: Optional[socket.socket] = None
        self._conns: Dict[int, socket.socket] = {}
        self._conns_lock = threading.Lock()

    def _serve_connection(self, conn: socket.socket) -> None:
        key = id(conn)
        with self._conns_lock:
            self._conns[key] = conn
        buf = b""
        try:
            while not self.stop_event.is_set():
                try:
                    chunk = conn.recv(65536)
                except socket.timeout:
                    continue
                except OSError:
                    break
                if not chunk:
                    break
                buf += chunk
                if b"\n" not in buf and len(buf) > MAX_LINE_BYTES:
                    try:
                        _send_json(conn, IpcResponse.failure("Request too large").to_wire())
                    except OSError:
                        pass
                    break
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    if not line.strip():
                        continue
                    obj, should_exit = handle_line(self.orch, line)
                    try:
                        _send_json(conn, obj)
                    except OSError:
                        # Client went away; drop the reply.
                        return
                    if should_exit:
                        logger.info("shutdown requested")
                        self.stop_event.set()
                        return
        finally:
            with self._conns_lock:
                self._conns.pop(key, None)
            try:
                conn.close()
            except OSError:
                pass

    def bind(self) -> socket.socket:
        sock_path = self.paths.sock_path
        sock_path.parent.mkdir(parents=True, exist_ok=True)
        _remove_stale_socket(sock_path)
        if sock_path.exists():
            sock_path.unlink()
        s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        s.bind(str(sock_path))
        os.chmod(sock_path, 0o600)
        s.listen(50)
        s.settimeout(1.0)  # Allow periodic check of stop_event
        self._listener = s
        return s

    def serve_forever(self) -> None:
        s = self._listener or self.bind()
        logger.info("listening on %s", self.paths.sock_path)
        try:
            while not self.stop_event.is_set():
                try:
                    conn, _ = s.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.stop_event.is_set():
                        break
                    logger.warning("accept failed: %s", e)
                    continue
                conn.settimeout(1.0)
                threading.Thread(target=self._serve_connection, args=(conn,), name="magent-conn", daemon=True).start()
        finally:
            self.close()

    def close(self) -> None:
        self.stop_event.set()
        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass
            self._listener = None
        with self._conns_lock:
            conns = list(self._conns.values())
        for c in conns:
            try:
                c.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        try:
            if self.paths.sock_path.exists():
                self.paths.sock_path.unlink()
        except OSError:
            pass


def call_daemon(req: Dict[str, Any], *, sock_path: Path, timeout_s: float = 60.0) -> Dict[str, Any]:
    """Send one request and return the decoded response (a failure dict when unreachable)."""
    try:
        request = IpcRequest.model_validate(req)
    except ValidationError as e:
        return IpcResponse.failure(f"Invalid request: {e.errors()[0].get('msg', 'invalid')}").to_wire()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(sock_path))
            s.sendall((json.dumps(request.to_wire(), ensure_ascii=False) + "\n").encode("utf-8"))
            buf = b""
            while b"\n" not in buf:
                chunk = s.recv(65536)
                if not chunk:
                    break
                buf += chunk
        obj = json.loads(buf.split(b"\n", 1)[0].decode("utf-8", errors="replace"))
        return IpcResponse.model_validate(obj).to_wire()
    except (OSError, ValueError, ValidationError):
        return IpcResponse.failure("daemon unavailable", id=request.id).to_wire()

