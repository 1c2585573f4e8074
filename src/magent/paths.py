from __future__ import annotations

import os
from pathlib import Path


def magent_home() -> Path:
    env = os.environ.get("MAGENT_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".magent").resolve()


def ensure_home() -> Path:
    home = magent_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


def state_path(home: Path | None = None) -> Path:
    return (home or ensure_home()) / "state.json"


def config_path(home: Path | None = None) -> Path:
    return (home or ensure_home()) / "config.yaml"
