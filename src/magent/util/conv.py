from __future__ import annotations

import math
from typing import Any


def coerce_float(value: Any, *, default: float, minimum: float = 0.0) -> float:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return float(default)
    if math.isnan(f) or f < minimum:
        return float(default)
    return f


def coerce_int(value: Any, *, default: int, minimum: int = 0) -> int:
    if isinstance(value, bool):
        return int(default)
    try:
        i = int(value)
    except (TypeError, ValueError):
        return int(default)
    return i if i >= minimum else int(default)
