# retime/progress.py
"""
Multi-step progress reporting.

Reporters are passed explicitly into the operations that use them. Having
no reporter never changes behaviour, only what the user sees.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, TextIO, Tuple
import sys
import time


class ProgressReporter(Protocol):
    def start_step(self, name: str) -> None: ...

    def update_step_progress(self, percent: float, label: str = "") -> None: ...

    def complete_step(self, name: str) -> None: ...

    def skip_step(self, name: str, reason: str) -> None: ...


class NullProgress:
    def start_step(self, name: str) -> None:
        pass

    def update_step_progress(self, percent: float, label: str = "") -> None:
        pass

    def complete_step(self, name: str) -> None:
        pass

    def skip_step(self, name: str, reason: str) -> None:
        pass


class TextProgress:
    """
    Writes one line per event to a text stream (stderr by default).

    Progress updates for the same step are throttled to whole-percent changes.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stderr
        self._current: Optional[str] = None
        self._started_at = 0.0
        self._last_percent = -1

    def start_step(self, name: str) -> None:
        self._current = name
        self._started_at = time.monotonic()
        self._last_percent = -1
        self._write(f"[{name}] started")

    def update_step_progress(self, percent: float, label: str = "") -> None:
        pct = int(max(0.0, min(100.0, percent)))
        if pct == self._last_percent:
            return
        self._last_percent = pct
        suffix = f" {label}" if label else ""
        self._write(f"[{self._current or '-'}] {pct:3d}%{suffix}")

    def complete_step(self, name: str) -> None:
        elapsed = time.monotonic() - self._started_at if self._current == name else 0.0
        self._write(f"[{name}] done ({elapsed:.1f}s)")
        self._current = None

    def skip_step(self, name: str, reason: str) -> None:
        self._write(f"[{name}] skipped: {reason}")

    def _write(self, line: str) -> None:
        print(line, file=self.stream)


class RecordingProgress:
    """
    Keeps every event in order. Useful to inspect what an operation reported.
    """

    def __init__(self) -> None:
        self.events: List[Tuple[str, ...]] = []

    def start_step(self, name: str) -> None:
        self.events.append(("start", name))

    def update_step_progress(self, percent: float, label: str = "") -> None:
        self.events.append(("update", f"{percent:.0f}", label))

    def complete_step(self, name: str) -> None:
        self.events.append(("complete", name))

    def skip_step(self, name: str, reason: str) -> None:
        self.events.append(("skip", name, reason))

    def steps(self, kind: str) -> List[str]:
        return [e[1] for e in self.events if e[0] == kind]
