"""PageAnnotator — one page, many passes.

Wires extraction, orchestration, highlighting and progress together and
pushes a state snapshot to listeners after every change. A new pass bumps
the generation; batches tagged with an older generation are dropped.

Usage:
    annotator = PageAnnotator(orchestrator)
    annotator.add_listener(lambda kind, payload: print(kind, payload))
    soup = parse_html(html)
    state = asyncio.run(annotator.annotate(soup, "https://example.com/a"))
    print(str(soup))   # page with <span class="fact-flag"> markers
"""

from __future__ import annotations
import logging
from dataclasses import asdict
from typing import Any, Callable

from bs4 import Tag

from .extractor import SentenceExtractor
from .highlighter import DOMHighlighter
from .orchestrator import ClassificationOrchestrator
from .progress import ProgressEstimator
from .types import BatchResult, PassSession, SentenceRecord

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict[str, Any]], None]

ERRORS_EXPOSED = 5


class PageAnnotator:
    """Per-page control flow with rerun handling."""

    def __init__(
        self,
        orchestrator: ClassificationOrchestrator,
        *,
        extractor: SentenceExtractor | None = None,
        highlighter: DOMHighlighter | None = None,
        progress: ProgressEstimator | None = None,
    ) -> None:
        cfg = orchestrator.config
        self.orchestrator = orchestrator
        self.extractor = extractor or SentenceExtractor(
            max_sentences=cfg.max_sentences, min_chars=cfg.min_sentence_chars,
        )
        self.highlighter = highlighter or DOMHighlighter(cfg.categories)
        self.progress = progress or ProgressEstimator()
        self.generation = 0
        self.session: PassSession | None = None
        self.sentences: list[SentenceRecord] = []
        self._statements: dict[str, dict[str, Any]] = {}
        self._listeners: list[Listener] = []

    # ── Listeners ─────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception:  # noqa: BLE001
                logger.exception("listener failed on %s event", kind)

    def notify(self, message: str) -> None:
        """Send a short user-facing notice to every listener."""
        logger.info("notice: %s", message)
        self._emit("notice", {"message": message})

    def broadcast(self) -> dict[str, Any]:
        snapshot = self.state()
        self._emit("state", snapshot)
        return snapshot

    def signal_gesture(self) -> None:
        """Forward a user interaction; unblocks a pending model download."""
        self.orchestrator.gesture.signal()

    # ── State ─────────────────────────────────────────────────

    def state(self) -> dict[str, Any]:
        session = self.session
        statements = sorted(self._statements.values(), key=lambda s: s["global_index"])
        out: dict[str, Any] = {
            "statements": [
                {k: s[k] for k in ("id", "text", "category", "confidence", "rationale")}
                for s in statements
            ],
            "meta": session.meta if session else {"mode": None, "error": None},
            "progress": self.progress.snapshot(),
            "classes": [c.to_dict() for c in self.orchestrator.config.categories],
            "errors": list(session.errors[-ERRORS_EXPOSED:]) if session else [],
            "total": len(self.sentences),
        }
        if self.orchestrator.config.debug_enabled and session is not None:
            out["debug"] = [asdict(d) for d in session.debug]
        return out

    # ── Passes ────────────────────────────────────────────────

    def start_pass(self, root: Tag, page_url: str) -> PassSession:
        """Invalidate the current pass and prepare a fresh one."""
        if self.session is not None:
            self.session.cancel()
        self.generation += 1
        self.session = PassSession(self.generation, page_url)
        removed = self.highlighter.clear_all(root)
        if removed:
            logger.debug("cleared %d markers before pass %d", removed, self.generation)
        self.sentences = list(self.extractor.extract(root))
        self._statements = {}
        self.progress.reset(len(self.sentences))
        return self.session

    async def annotate(self, root: Tag, page_url: str) -> dict[str, Any]:
        """Run one full pass over ``root``; returns the final state snapshot.

        Calling this again (also while a previous call is suspended) starts
        a new pass; the older call stops applying results.
        """
        session = self.start_pass(root, page_url)
        sentences = self.sentences
        logger.info("pass %d: %d sentences on %s", session.generation, len(sentences), page_url)
        self.broadcast()
        if not sentences:
            self.progress.finish(True)
            return self.broadcast()

        by_id = {s.id: s for s in sentences}
        try:
            async for batch in self.orchestrator.run(sentences, page_url, session):
                if batch.generation != self.generation:
                    logger.debug("dropping stale batch from pass %d", batch.generation)
                    return self.state()
                self._apply(batch, by_id)
                self.broadcast()
        except Exception as e:  # noqa: BLE001
            logger.exception("pass %d failed", session.generation)
            if session.generation == self.generation:
                session.mode = "error"
                session.error = str(e)
                self.progress.finish(False)
                self.notify(f"Analysis failed: {e}")
                return self.broadcast()
            return self.state()

        if session.generation != self.generation:
            return self.state()
        self.progress.finish(True)
        return self.broadcast()

    def _apply(self, batch: BatchResult, by_id: dict[str, SentenceRecord]) -> None:
        for result in batch.items:
            sentence = by_id.get(result.sentence_id)
            if sentence is None:
                continue
            self._statements[result.sentence_id] = {
                "id": result.sentence_id,
                "text": sentence.text,
                "category": result.category,
                "confidence": result.confidence,
                "rationale": result.rationale,
                "global_index": result.global_index,
            }
            if not result.flagged:
                continue
            container = sentence.origin.resolve() if sentence.origin is not None else None
            if container is None:
                logger.debug("container for %s is gone", result.sentence_id)
                continue
            self.highlighter.highlight(container, sentence.text, result)
        if not batch.fallback:
            self.progress.advance(len(batch.items), batch.duration_ms)
