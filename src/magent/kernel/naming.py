"""Thread names, branch-safe slugs and tmux session names."""
from __future__ import annotations

import random
import re
from typing import Callable, Iterable, List, Optional

from .errors import Conflict, ValidationFailure

ADJECTIVES = (
    "swift", "bright", "calm", "dark", "eager", "fair", "glad", "hazy",
    "keen", "lush", "mild", "neat", "odd", "pale", "quick", "rare",
    "sharp", "tall", "vast", "warm", "bold", "crisp", "deep", "fine",
    "gold", "high", "iron", "jade", "kind", "lean", "moss", "nova",
)

NOUNS = (
    "falcon", "brook", "cedar", "delta", "ember", "frost", "grove", "haven",
    "inlet", "jewel", "knoll", "larch", "maple", "nexus", "orbit", "pearl",
    "quill", "ridge", "shore", "thorn", "umbra", "vault", "whale", "xenon",
    "birch", "coral", "dusk", "fern", "gale", "heron", "ivory", "junco",
)

GENERATED_NAME_RE = re.compile(r"^[a-z]+-[a-z]+(-[2-9])?$")

MAX_SLUG_LEN = 16
MAX_BASE_ATTEMPTS = 5
SUFFIXES = range(2, 10)

_SLUG_BAD = re.compile(r"[^a-z0-9_-]+")
_SESSION_RE_TMPL = r"^{prefix}-[a-z0-9_-]+-{thread_id}(-tab-(\d+))?$"


def generate_name(rng: Optional[random.Random] = None) -> str:
    r = rng or random
    return f"{r.choice(ADJECTIVES)}-{r.choice(NOUNS)}"


def candidates_for(base: str) -> List[str]:
    return [base] + [f"{base}-{n}" for n in SUFFIXES]


def validate_thread_name(name: str) -> str:
    n = (name or "").strip()
    if not n:
        raise ValidationFailure("thread name must not be empty")
    if "/" in n:
        raise ValidationFailure(f"thread name must not contain '/': {n}")
    if n.startswith("-") or n.startswith("."):
        raise ValidationFailure(f"invalid thread name: {n}")
    if any(ch.isspace() for ch in n):
        raise ValidationFailure(f"thread name must not contain whitespace: {n}")
    return n


def pick_available_name(
    is_available: Callable[[str], bool],
    *,
    requested: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """Return the first available candidate.

    An explicit name tries `name`, `name-2` .. `name-9`. Generated names try up to
    five random bases, each with the same suffixes.
    """
    if requested is not None:
        base = validate_thread_name(requested)
        for c in candidates_for(base):
            if is_available(c):
                return c
        raise Conflict(f"Thread name already in use: {base}")
    for _ in range(MAX_BASE_ATTEMPTS):
        for c in candidates_for(generate_name(rng)):
            if is_available(c):
                return c
    raise Conflict("could not generate a unique thread name")


def slugify(value: str, *, max_len: int = MAX_SLUG_LEN) -> str:
    s = _SLUG_BAD.sub("-", (value or "").strip().lower())
    s = re.sub(r"-{2,}", "-", s)
    s = s[:max_len].strip("-")
    return s or "project"


def session_name(prefix: str, project_name: str, thread_id: str, tab: int = 1) -> str:
    """`<prefix>-<project-slug>-<thread-id>` for the first tab, `...-tab-<n>` after."""
    base = f"{prefix}-{slugify(project_name)}-{thread_id}"
    if tab <= 1:
        return base
    return f"{base}-tab-{tab}"


def session_tab_number(prefix: str, thread_id: str, name: str) -> Optional[int]:
    """Tab number encoded in a well-formed session name, or None."""
    m = re.match(_SESSION_RE_TMPL.format(prefix=re.escape(prefix), thread_id=re.escape(thread_id)), name)
    if not m:
        return None
    return int(m.group(2)) if m.group(2) else 1


def next_tab_number(prefix: str, thread_id: str, existing: Iterable[str]) -> int:
    used = [session_tab_number(prefix, thread_id, n) for n in existing]
    nums = [n for n in used if n is not None]
    if not nums:
        return 1
    return max(max(nums) + 1, 2)


def superseded_name(name: str, taken: Iterable[str]) -> str:
    taken_set = set(taken)
    k = 1
    while f"{name}-superseded-{k}" in taken_set:
        k += 1
    return f"{name}-superseded-{k}"


def rename_candidates(description: str) -> List[str]:
    """Branch-safe names derived from a free-form description.

    First three words, then first two, each followed by -2 .. -9 variants.
    """
    words = re.findall(r"[a-z0-9]+", (description or "").lower())
    if not words:
        return []
    bases: List[str] = []
    for n in (3, 2):
        b = "-".join(words[:n])
        if b and b not in bases:
            bases.append(b)
    out: List[str] = list(bases)
    for b in bases:
        out.extend(f"{b}-{n}" for n in SUFFIXES)
    return out
