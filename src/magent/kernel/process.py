"""Process runner: the single place external tools are executed."""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import ExternalToolFailure

logger = logging.getLogger("magent.process")


@dataclass(frozen=True)
class CommandResult:
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    args: List[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout_s: float = 10.0,
) -> CommandResult:
    """Run `args` and capture its output.

    A timeout kills the child (subprocess.run does this before re-raising) and
    surfaces as ExternalToolFailure. A missing executable is reported the same way.
    Non-zero exits are returned, not raised; see `check_command`.
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    try:
        p = subprocess.run(
            list(args),
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("command timed out after %.1fs: %s", timeout_s, " ".join(args))
        stderr = e.stderr if isinstance(e.stderr, str) else ""
        raise ExternalToolFailure(
            f"{args[0]} timed out after {timeout_s:g}s",
            tool=args[0],
            args=args,
            stderr=stderr,
            timed_out=True,
        ) from e
    except OSError as e:
        raise ExternalToolFailure(f"{args[0]} could not be started: {e}", tool=args[0], args=args, stderr=str(e)) from e
    return CommandResult(args=list(args), returncode=int(p.returncode), stdout=p.stdout or "", stderr=p.stderr or "")


def check_command(
    args: List[str],
    *,
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout_s: float = 10.0,
) -> CommandResult:
    res = run_command(args, cwd=cwd, env=env, timeout_s=timeout_s)
    if not res.ok:
        err = res.stderr.strip() or res.stdout.strip()
        raise ExternalToolFailure(
            f"{' '.join(args[:3])} failed: {err or f'exit {res.returncode}'}",
            tool=args[0],
            args=args,
            returncode=res.returncode,
            stderr=res.stderr,
        )
    return res
