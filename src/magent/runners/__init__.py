from __future__ import annotations

from .tmux import PaneState, TmuxService, is_shell_command, title_indicates_busy

__all__ = ["PaneState", "TmuxService", "is_shell_command", "title_indicates_busy"]
