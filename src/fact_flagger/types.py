"""Core types."""

from __future__ import annotations
import time
import weakref
from dataclasses import dataclass, field
from typing import Any

NEUTRAL = "neutral"


class ContainerRef:
    """Weak back-reference from a sentence to the element it came from.

    The element may be detached or dropped between extraction and
    highlighting; ``resolve()`` returns None in that case.
    """

    __slots__ = ("_ref", "_doc", "key")

    def __init__(self, element: Any, document: Any | None = None, key: str = "") -> None:
        self._ref = weakref.ref(element)
        self._doc = weakref.ref(document) if document is not None else None
        self.key = key          # e.g. "body>div[1]>p[3]"

    def resolve(self) -> Any | None:
        element = self._ref()
        if element is None:
            return None
        if self._doc is None:
            return element
        document = self._doc()
        if document is None:
            return None
        if element is document or any(p is document for p in element.parents):
            return element
        return None

    def __repr__(self) -> str:
        return f"ContainerRef({self.key!r})"


@dataclass(slots=True)
class SentenceRecord:
    """A sentence extracted from a page."""
    id: str
    text: str
    origin: ContainerRef | None = None


@dataclass(slots=True)
class ClassificationResult:
    """Classification for one sentence; confidence/rationale are None for neutral."""
    sentence_id: str
    category: str
    confidence: float | None = None
    rationale: str | None = None
    global_index: int = -1

    @property
    def flagged(self) -> bool:
        return self.category != NEUTRAL

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"id": self.sentence_id, "category": self.category}
        if self.confidence is not None:
            out["confidence"] = self.confidence
        if self.rationale is not None:
            out["rationale"] = self.rationale
        return out


@dataclass(frozen=True, slots=True)
class CacheEntry:
    key: str
    classification: dict[str, Any]   # {"category", "confidence"?, "rationale"?}
    stored_at_ms: float


@dataclass(slots=True)
class CategoryDefinition:
    id: str
    label: str
    definition: str = ""
    color: str = "#9ca3af"
    text_color: str = "#ffffff"

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "label": self.label,
            "definition": self.definition,
            "color": self.color,
            "text_color": self.text_color,
        }


@dataclass(slots=True)
class DebugRecord:
    """Observational record of one prompt round-trip."""
    prompt: str = ""
    statements: int = 0
    endpoint: str | None = None
    model: str | None = None
    timings: dict[str, float] | None = None
    tokens: dict[str, int | None] | None = None
    payload_bytes: int | None = None
    response: str | None = None
    error: str | None = None
    remote_mode: str | None = None
    batch_index: int | None = None
    total_batches: int | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class BatchResult:
    """One incremental result set yielded by the orchestrator."""
    generation: int
    batch_index: int
    total_batches: int
    items: list[ClassificationResult] = field(default_factory=list)
    mode: str = "heuristic"
    duration_ms: float = 0.0
    cache_hits: int = 0
    debug: DebugRecord | None = None
    fallback: bool = False


class PassSession:
    """State of one analysis pass, shared by reference with the orchestrator."""

    __slots__ = ("generation", "page_url", "started_at", "mode", "error", "errors", "debug", "_cancelled")

    def __init__(self, generation: int, page_url: str) -> None:
        self.generation = generation
        self.page_url = page_url
        self.started_at = time.monotonic()
        self.mode: str | None = None
        self.error: str | None = None
        self.errors: list[str] = []             # rolling tier-failure log
        self.debug: list[DebugRecord] = []      # last few prompt records
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def meta(self) -> dict[str, str | None]:
        return {"mode": self.mode, "error": self.error}
