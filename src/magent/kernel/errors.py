"""Error taxonomy shared by the orchestrator, services and the control socket."""
from __future__ import annotations

from typing import Any, Dict, Optional


class MagentError(Exception):
    code = "error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        return self.message


class ExternalToolFailure(MagentError):
    """Non-zero exit or timeout from git/tmux. Carries the captured stderr."""

    code = "external_tool_failure"

    def __init__(
        self,
        message: str,
        *,
        tool: str = "",
        args: Optional[list[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
    ):
        super().__init__(
            message,
            details={"tool": tool, "args": list(args or []), "returncode": returncode, "stderr": stderr},
        )
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out


class NotFound(MagentError):
    code = "not_found"


class Conflict(MagentError):
    code = "conflict"


class PersistenceFailure(MagentError):
    code = "persistence_failure"


class ValidationFailure(MagentError):
    code = "validation_failure"
