"""ProgressEstimator — completed/total counts and a moving-rate ETA.

ETA is ``(total - completed) * Σduration / Σcount`` over a bounded history
of batch samples. Cheap, and recomputed on every advance.
"""

from __future__ import annotations
from collections import deque
from typing import Any

HISTORY_LIMIT = 20


class ProgressEstimator:

    __slots__ = ("total", "completed", "status", "eta_ms", "history")

    def __init__(self, *, history_limit: int = HISTORY_LIMIT) -> None:
        self.total = 0
        self.completed = 0
        self.status = "idle"
        self.eta_ms = 0.0
        self.history: deque[tuple[float, int]] = deque(maxlen=history_limit)

    def reset(self, total: int) -> None:
        self.total = max(0, int(total))
        self.completed = 0
        self.eta_ms = 0.0
        self.history.clear()
        self.status = "pending" if self.total else "idle"

    def advance(self, count: int, duration_ms: float) -> None:
        if count <= 0:
            return
        self.completed = min(self.total, self.completed + count)
        self.history.append((float(duration_ms), count))
        if self.status in ("idle", "pending"):
            self.status = "running"
        self._recompute()

    def finish(self, success: bool = True) -> None:
        self.completed = self.total
        self.status = "done" if success else "error"
        self._recompute()

    def _recompute(self) -> None:
        duration = sum(d for d, _ in self.history)
        count = sum(c for _, c in self.history)
        per_item = duration / count if count else 0.0
        self.eta_ms = max(0, self.total - self.completed) * per_item

    def snapshot(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "status": self.status,
            "eta_ms": self.eta_ms,
            "history": [{"duration_ms": d, "count": c} for d, c in self.history],
        }


def format_eta(ms: float) -> str:
    seconds = round(ms / 1000)
    if seconds < 60:
        return f"{seconds}s"
    mins, rem = divmod(seconds, 60)
    return f"{mins}m {rem}s" if rem else f"{mins}m"
