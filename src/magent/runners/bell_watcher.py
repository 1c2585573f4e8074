"""pipe-pane target: append the session name to the bell log on every standalone BEL.

BEL also terminates OSC/DCS/APC/PM/SOS strings (ESC ] P _ ^ X, or the C1 bytes
0x90 0x98 0x9d 0x9e 0x9f); those are not bells. State carries across reads.

Usage: python -m magent.runners.bell_watcher <session> <log>
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import BinaryIO, List, Optional

from ..util.file_lock import acquire_lockfile, release_lockfile

BEL = 0x07
ESC = 0x1B
_STRING_INTRODUCERS = frozenset({0x5D, 0x5F, 0x5E, 0x50, 0x58})
_C1_STRING_STARTERS = frozenset({0x90, 0x98, 0x9D, 0x9E, 0x9F})

NORMAL, SAW_ESC, IN_STRING = 0, 1, 2


class BellScanner:
    def __init__(self) -> None:
        self.state = NORMAL

    def feed(self, data: bytes) -> int:
        """Return the number of standalone bells in `data`."""
        bells = 0
        st = self.state
        for c in data:
            if st == NORMAL:
                if c == ESC:
                    st = SAW_ESC
                elif c in _C1_STRING_STARTERS:
                    st = IN_STRING
                elif c == BEL:
                    bells += 1
            elif st == SAW_ESC:
                st = IN_STRING if c in _STRING_INTRODUCERS else NORMAL
            else:
                if c == BEL:
                    st = NORMAL
                elif c == ESC:
                    # ESC \ (ST) or the start of another sequence.
                    st = SAW_ESC
        self.state = st
        return bells


def record_bell(log: Path, session: str) -> None:
    lk = acquire_lockfile(log.with_name(log.name + ".lock"), blocking=True)
    try:
        with log.open("a", encoding="utf-8") as f:
            f.write(session + "\n")
    finally:
        release_lockfile(lk)


def watch(stream: BinaryIO, session: str, log: Path) -> None:
    scanner = BellScanner()
    while True:
        chunk = stream.read1(8192) if hasattr(stream, "read1") else stream.read(8192)
        if not chunk:
            return
        if scanner.feed(chunk):
            record_bell(log, session)


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 2:
        print("usage: python -m magent.runners.bell_watcher <session> <log>", file=sys.stderr)
        return 2
    watch(sys.stdin.buffer, args[0], Path(args[1]))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
