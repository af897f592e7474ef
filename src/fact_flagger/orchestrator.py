"""ClassificationOrchestrator — tiered, cached, incremental classification.

Tiers are tried in a fixed order; each is a terminal success or a
fall-through to the next:

    on-device (local model)  →  remote classifier  →  heuristic

Usage:
    orch = ClassificationOrchestrator(FlaggerConfig(), FingerprintCache(),
                                      local_model=OllamaLocalModel("llama3.2:1b"))
    session = PassSession(generation=1, page_url=url)
    async for batch in orch.run(sentences, url, session):
        apply(batch.items)
    print(session.mode, session.error)
"""

from __future__ import annotations
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from . import heuristic
from .cache import FingerprintCache
from .categories import (
    category_ids, choose_category, normalize_categories, normalize_classification,
)
from .normalize import fingerprint
from .prompting import (
    DEBUG_PROMPT_LIMIT, build_prompt, estimate_token_usage, extract_token_usage,
    parse_model_output, response_schema,
)
from .sanitize import sanitize_for_prompt
from .tiers import AVAILABILITY, LocalModel, RemoteClassifier, TierError, TierTimeout, UserGesture
from .types import (
    NEUTRAL, BatchResult, CategoryDefinition, ClassificationResult, DebugRecord,
    PassSession, SentenceRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MODEL_VERSION = "prompt-v1"
BATCH_SIZE = 20

ON_DEVICE = "on-device"
REMOTE = "remote"
HEURISTIC = "heuristic"
HEURISTIC_FALLBACK = "heuristic-fallback"

ERROR_LOG_LIMIT = 20
DEBUG_LOG_LIMIT = 5

FALLBACK_LIMIT = 3
FALLBACK_CONFIDENCE = 0.32
FALLBACK_RATIONALE = "Fallback highlight - adjust classifier settings."


@dataclass
class FlaggerConfig:
    """Configuration snapshot for one analysis pass."""
    categories: list[CategoryDefinition] = field(default_factory=lambda: normalize_categories(None))
    max_sentences: int = 60
    batch_size: int = BATCH_SIZE
    on_device_enabled: bool = True
    privacy_mode: bool = False
    prompt_template: str | None = None
    debug_enabled: bool = False
    model_version: str = MODEL_VERSION
    tier_timeout_s: float | None = 60.0   # None disables the guard
    min_sentence_chars: int = 25
    # Presidio NER masking of prompts (privacy mode only)
    use_presidio: bool = True
    language: str = "en"
    # Passed to LocalModel.create_session
    session_params: dict[str, Any] = field(default_factory=dict)


class ClassificationOrchestrator:
    """Drives the tier state machine over batches of sentences."""

    def __init__(
        self,
        config: FlaggerConfig | None = None,
        cache: FingerprintCache | None = None,
        *,
        local_model: LocalModel | None = None,
        remote: RemoteClassifier | None = None,
        gesture: UserGesture | None = None,
        notify: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config or FlaggerConfig()
        self.cache = cache if cache is not None else FingerprintCache()
        self.local_model = local_model
        self.remote = remote
        self.gesture = gesture or UserGesture()
        self.notify = notify or (lambda message: None)
        self._local_session: Any = None     # created lazily, reused across passes
        self._session_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------

    async def run(
        self,
        sentences: list[SentenceRecord],
        page_url: str,
        session: PassSession,
    ) -> AsyncIterator[BatchResult]:
        """Yield one BatchResult per batch, in order; summary goes to ``session``."""
        cfg = self.config
        allowed = category_ids(cfg.categories)
        size = cfg.batch_size if cfg.batch_size > 0 else BATCH_SIZE
        batches = [sentences[i:i + size] for i in range(0, len(sentences), size)]
        total = len(batches)
        if not batches:
            return

        tier = await self._initial_tier(session)
        flagged = 0

        for b, batch in enumerate(batches):
            if session.cancelled:
                logger.info("pass %d cancelled before batch %d/%d", session.generation, b + 1, total)
                return
            started = time.perf_counter()
            keys = [fingerprint(page_url, s.text, cfg.model_version) for s in batch]

            resolved: dict[int, dict[str, Any]] = {}
            pending: list[int] = []
            for i, key in enumerate(keys):
                hit = self.cache.get(key)
                if hit is not None:
                    resolved[i] = hit
                else:
                    pending.append(i)

            debug = None
            if pending:
                tier, raw_items, debug, complete = await self._classify(
                    tier, [batch[i].text for i in pending], session, b, total,
                )
                for item in raw_items:
                    local = item.get("index")
                    if not isinstance(local, int) or not 0 <= local < len(pending):
                        continue
                    data = normalize_classification(item, allowed)
                    target = pending[local]
                    resolved[target] = data
                    self.cache.put(keys[target], data)
                if complete:
                    # a well-formed reply lists only non-neutral statements
                    for target in pending:
                        if target not in resolved:
                            resolved[target] = {"category": NEUTRAL}
                            self.cache.put(keys[target], resolved[target])
                session.mode = tier
            elif session.mode in (None, "on-device-wait", "on-device-unavailable"):
                session.mode = "cache"

            items = []
            for i, sentence in enumerate(batch):
                data = normalize_classification(resolved.get(i, {"category": NEUTRAL}), allowed)
                result = ClassificationResult(
                    sentence_id=sentence.id,
                    category=data["category"],
                    confidence=data.get("confidence"),
                    rationale=data.get("rationale"),
                    global_index=b * size + i,
                )
                flagged += result.flagged
                items.append(result)

            duration_ms = (time.perf_counter() - started) * 1000
            if cfg.debug_enabled:
                logger.info(
                    "batch %d/%d: %d sentences, %d cache hits, mode=%s, %.1fms",
                    b + 1, total, len(batch), len(batch) - len(pending), session.mode, duration_ms,
                )
            yield BatchResult(
                generation=session.generation,
                batch_index=b,
                total_batches=total,
                items=items,
                mode=session.mode or tier,
                duration_ms=duration_ms,
                cache_hits=len(batch) - len(pending),
                debug=debug,
            )

        if flagged == 0 and not session.cancelled:
            fallback = self._fallback_flags(sentences)
            if fallback:
                yield BatchResult(
                    generation=session.generation,
                    batch_index=total,
                    total_batches=total,
                    items=fallback,
                    mode=session.mode or tier,
                    fallback=True,
                )

    # ------------------------------------------------------------------
    # Tier state machine
    # ------------------------------------------------------------------

    async def _initial_tier(self, session: PassSession) -> str:
        if self.config.on_device_enabled:
            if self.local_model is None:
                session.mode = "on-device-unavailable"
                session.error = "No local model configured."
            else:
                try:
                    availability = await self.local_model.availability()
                except Exception as e:  # noqa: BLE001
                    self._record_error(session, f"local model availability check failed: {e}")
                    availability = "unavailable"
                if availability not in AVAILABILITY:
                    logger.warning("unknown local model availability %r", availability)
                    availability = "unavailable"
                if availability == "ready":
                    return ON_DEVICE
                if availability in ("downloadable", "downloading"):
                    if not self.gesture.signalled:
                        session.mode = "on-device-wait"
                        self.notify("Interact with the page to download the on-device model")
                        await self.gesture.wait()
                    return ON_DEVICE
                session.mode = "on-device-unavailable"
                session.error = "Local model reports unavailable."
                self.notify("On-device model unavailable")
        return REMOTE if self.remote is not None else HEURISTIC

    def _next_tier(self, tier: str) -> str:
        if tier == ON_DEVICE and self.remote is not None:
            return REMOTE
        return HEURISTIC_FALLBACK

    async def _classify(
        self,
        tier: str,
        texts: list[str],
        session: PassSession,
        batch_index: int,
        total_batches: int,
    ) -> tuple[str, list[dict[str, Any]], DebugRecord | None, bool]:
        """Run texts through the active tier, falling through on failure.

        Returns the tier that produced the items (it stays active for the
        rest of the pass), the items, an optional debug record and whether
        the reply was well-formed.
        """
        while True:
            try:
                if tier == ON_DEVICE:
                    items, debug, complete = await self._run_on_device(texts, batch_index, total_batches)
                elif tier == REMOTE:
                    items, debug, complete = await self._run_remote(texts, batch_index, total_batches)
                else:
                    return tier, heuristic.classify_batch(texts), None, True
            except Exception as e:  # noqa: BLE001
                nxt = self._next_tier(tier)
                self._record_error(session, f"{tier} tier failed: {e}")
                logger.warning("%s tier failed (%s), switching to %s", tier, e, nxt)
                self.notify(f"{tier} classification failed - using fallback")
                if tier == ON_DEVICE:
                    self._local_session = None
                tier = nxt
                continue
            if debug is not None:
                session.debug.append(debug)
                del session.debug[:-DEBUG_LOG_LIMIT]
            return tier, items, debug, complete

    async def _guard(self, awaitable: Awaitable[T], tier: str) -> T:
        timeout = self.config.tier_timeout_s
        if not timeout:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise TierTimeout(f"{tier} call timed out after {timeout}s") from e

    def _prompt_texts(self, texts: list[str]) -> list[str]:
        cfg = self.config
        return [
            sanitize_for_prompt(
                t, privacy_mode=cfg.privacy_mode, use_presidio=cfg.use_presidio, language=cfg.language,
            )
            for t in texts
        ]

    async def _run_on_device(
        self, texts: list[str], batch_index: int, total_batches: int,
    ) -> tuple[list[dict[str, Any]], DebugRecord | None, bool]:
        if self.local_model is None:
            raise TierError("no local model")
        async with self._session_lock:
            if self._local_session is None:
                self._local_session = await self.local_model.create_session(self.config.session_params)
        cfg = self.config
        prompt = build_prompt(self._prompt_texts(texts), cfg.categories, cfg.prompt_template)
        schema = response_schema(category_ids(cfg.categories))

        t0 = time.perf_counter()
        raw = await self._guard(self._local_session.infer(prompt, schema), ON_DEVICE)
        t1 = time.perf_counter()
        parsed = parse_model_output(raw)
        t2 = time.perf_counter()

        debug = None
        if cfg.debug_enabled:
            response = raw if isinstance(raw, str) else json.dumps(raw, indent=2)
            tokens = (
                getattr(self._local_session, "last_usage", None)
                or extract_token_usage(parsed)
                or estimate_token_usage(prompt, response)
            )
            request_ms = (t1 - t0) * 1000
            parse_ms = (t2 - t1) * 1000
            debug = DebugRecord(
                prompt=_clip(prompt),
                statements=len(texts),
                endpoint=getattr(self.local_model, "endpoint", f"on-device:{self.local_model.name}"),
                model=self.local_model.name,
                timings={
                    "prompt_ms": round(request_ms, 1),
                    "generation_ms": round(request_ms, 1),
                    "parse_ms": round(parse_ms, 1),
                    "total_ms": round(request_ms + parse_ms, 1),
                },
                tokens=tokens,
                payload_bytes=len(prompt.encode("utf-8")),
                response=response,
                batch_index=batch_index,
                total_batches=total_batches,
            )
            logger.info(
                "on-device prompt batch %d/%d: %d statements, %s",
                batch_index + 1, total_batches, len(texts), debug.timings,
            )
        return parsed["items"], debug, not parsed.get("malformed")

    async def _run_remote(
        self, texts: list[str], batch_index: int, total_batches: int,
    ) -> tuple[list[dict[str, Any]], DebugRecord | None, bool]:
        if self.remote is None:
            raise TierError("no remote classifier")
        t0 = time.perf_counter()
        reply = await self._guard(self.remote.classify_batch(self._prompt_texts(texts)), REMOTE)
        request_ms = (time.perf_counter() - t0) * 1000
        if not isinstance(reply, dict):
            raise TierError("remote classifier returned a non-object reply")
        if reply.get("error") and not reply.get("items"):
            raise TierError(str(reply["error"]))
        remote_mode = reply.get("mode")
        if remote_mode:
            logger.debug("remote classifier answered in %s mode", remote_mode)

        debug = None
        if self.config.debug_enabled:
            response = json.dumps(reply, ensure_ascii=False)
            debug = DebugRecord(
                prompt=_clip(json.dumps({"sentences": texts}, ensure_ascii=False)),
                statements=len(texts),
                endpoint=self.remote.endpoint,
                model=reply.get("model"),
                timings={"prompt_ms": round(request_ms, 1), "total_ms": round(request_ms, 1)},
                tokens=extract_token_usage(reply) or estimate_token_usage(" ".join(texts), response),
                response=response,
                error=reply.get("error"),
                remote_mode=remote_mode,
                batch_index=batch_index,
                total_batches=total_batches,
            )
        parsed = parse_model_output(reply)
        return parsed["items"], debug, not parsed.get("malformed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fallback_flags(self, sentences: list[SentenceRecord]) -> list[ClassificationResult]:
        """Low-confidence flags on claim-shaped sentences so the UI is never empty."""
        category = choose_category(self.config.categories, "hyperbole").id
        if category == NEUTRAL:
            return []
        picks = []
        for i, s in enumerate(sentences):
            if len(picks) >= FALLBACK_LIMIT:
                break
            if heuristic.CLAIM_SHAPE.search(s.text):
                picks.append(ClassificationResult(
                    sentence_id=s.id,
                    category=category,
                    confidence=FALLBACK_CONFIDENCE,
                    rationale=FALLBACK_RATIONALE,
                    global_index=i,
                ))
        return picks

    def _record_error(self, session: PassSession, message: str) -> None:
        session.errors.append(message)
        del session.errors[:-ERROR_LOG_LIMIT]
        session.error = message


def _clip(prompt: str) -> str:
    return prompt if len(prompt) <= DEBUG_PROMPT_LIMIT else prompt[:DEBUG_PROMPT_LIMIT] + "…"
