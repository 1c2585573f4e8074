"""Engine configuration.

Settings live in MAGENT_HOME/config.yaml and cover process-level knobs only:
- session_prefix: first component of every tmux session name
- vcs_timeout_seconds / tmux_timeout_seconds: external tool timeouts
- monitor_interval_seconds / capture_lines: session monitor sampling
- socket_path: control socket location
- log_level, inject_delay_seconds

User-facing state (projects, sections, agents) lives in the persisted document, not here.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore

from ..paths import config_path, ensure_home
from ..util.conv import coerce_float, coerce_int
from ..util.fs import atomic_write_text

logger = logging.getLogger("magent.settings")

_PREFIX_RE = re.compile(r"^[a-z0-9][a-z0-9_]*$")

DEFAULT_SESSION_PREFIX = "magent"


@dataclass(frozen=True)
class EngineSettings:
    home: Path
    session_prefix: str = DEFAULT_SESSION_PREFIX
    vcs_timeout_seconds: float = 10.0
    tmux_timeout_seconds: float = 5.0
    monitor_interval_seconds: float = 2.0
    capture_lines: int = 15
    socket_path: Optional[Path] = None
    log_level: str = "INFO"
    inject_delay_seconds: float = 1.5

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def resolved_socket_path(self) -> Path:
        return self.socket_path or (self.daemon_dir / "magentd.sock")

    @property
    def bell_log_path(self) -> Path:
        return self.daemon_dir / "bells.log"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_prefix": self.session_prefix,
            "vcs_timeout_seconds": self.vcs_timeout_seconds,
            "tmux_timeout_seconds": self.tmux_timeout_seconds,
            "monitor_interval_seconds": self.monitor_interval_seconds,
            "capture_lines": self.capture_lines,
            "socket_path": str(self.socket_path) if self.socket_path else "",
            "log_level": self.log_level,
            "inject_delay_seconds": self.inject_delay_seconds,
        }


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("ignoring unreadable config %s: %s", path, e)
        return {}
    return doc if isinstance(doc, dict) else {}


def load_settings(home: Optional[Path] = None) -> EngineSettings:
    """Load config.yaml with defaults; MAGENT_SOCKET / MAGENT_LOG_LEVEL override."""
    h = home or ensure_home()
    doc = _load_yaml(config_path(h))

    prefix = str(doc.get("session_prefix") or DEFAULT_SESSION_PREFIX).strip().lower()
    if not _PREFIX_RE.match(prefix):
        logger.warning("invalid session_prefix %r, using %r", prefix, DEFAULT_SESSION_PREFIX)
        prefix = DEFAULT_SESSION_PREFIX

    sock = str(os.environ.get("MAGENT_SOCKET") or doc.get("socket_path") or "").strip()
    level = str(os.environ.get("MAGENT_LOG_LEVEL") or doc.get("log_level") or "INFO").strip().upper()

    return EngineSettings(
        home=h,
        session_prefix=prefix,
        vcs_timeout_seconds=coerce_float(doc.get("vcs_timeout_seconds"), default=10.0, minimum=0.1),
        tmux_timeout_seconds=coerce_float(doc.get("tmux_timeout_seconds"), default=5.0, minimum=0.1),
        monitor_interval_seconds=coerce_float(doc.get("monitor_interval_seconds"), default=2.0, minimum=0.1),
        capture_lines=coerce_int(doc.get("capture_lines"), default=15, minimum=1),
        socket_path=Path(sock).expanduser() if sock else None,
        log_level=level or "INFO",
        inject_delay_seconds=coerce_float(doc.get("inject_delay_seconds"), default=1.5),
    )


def write_default_config(home: Optional[Path] = None) -> Path:
    """Write a config.yaml with the defaults if none exists yet."""
    h = home or ensure_home()
    p = config_path(h)
    if p.exists():
        return p
    defaults = EngineSettings(home=h).to_dict()
    defaults.pop("socket_path", None)
    atomic_write_text(p, yaml.safe_dump(defaults, sort_keys=False, allow_unicode=True))
    return p
