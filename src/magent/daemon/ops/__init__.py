"""
Control-socket command handlers, grouped by area:
- thread_ops: projects, threads and tabs
- section_ops: section lists (global or per project)
"""

from __future__ import annotations
