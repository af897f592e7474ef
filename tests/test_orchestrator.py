"""Tests for the tiered orchestrator, heuristics, prompting and sanitization."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import asyncio
import json

from fact_flagger import ClassificationOrchestrator, FingerprintCache, FlaggerConfig, PassSession, SentenceRecord
from fact_flagger import heuristic
from fact_flagger.normalize import sentence_id
from fact_flagger.cache import CACHE_TTL_MS
from fact_flagger.orchestrator import FALLBACK_CONFIDENCE
from fact_flagger.prompting import build_prompt, extract_token_usage, parse_model_output
from fact_flagger.categories import normalize_categories
from fact_flagger.sanitize import sanitize_for_prompt
from fact_flagger.tiers import TierError, UserGesture

URL = "https://example.com/article"


class FakeSession:
    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    async def infer(self, prompt, schema):
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else '{"items": []}'
        if isinstance(reply, Exception):
            raise reply
        return reply


class SlowSession:
    async def infer(self, prompt, schema):
        await asyncio.sleep(5)
        return '{"items": []}'


class FakeLocalModel:
    name = "fake-model"

    def __init__(self, availability="ready", replies=(), session=None):
        self._availability = availability
        self.session = session or FakeSession(replies)
        self.sessions_created = 0

    async def availability(self):
        return self._availability

    async def create_session(self, params=None):
        self.sessions_created += 1
        return self.session


class FakeRemote:
    endpoint = "http://remote.test/classify-batch"

    def __init__(self, reply=None, error=None):
        self.reply = reply if reply is not None else {"items": []}
        self.error = error
        self.calls = []

    async def classify_batch(self, texts):
        self.calls.append(list(texts))
        if self.error:
            raise self.error
        return self.reply


def _records(*texts):
    return [SentenceRecord(id=sentence_id(t), text=t) for t in texts]


def _run(orch, sentences, generation=1):
    session = PassSession(generation, URL)

    async def go():
        return [b async for b in orch.run(sentences, URL, session)]

    return asyncio.run(go()), session


def _items(batches):
    return [it for b in batches if not b.fallback for it in b.items]


HYPE = "This new phone is literally the best ever made."
PLAIN = "Water boils at one hundred degrees at sea level."
DEBATE = "Researchers say quantum supremacy is near for everyone."


# ── Heuristic tier ───────────────────────────────────────────────────

def test_heuristic_scenario():
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False))
    batches, session = _run(orch, _records(HYPE, PLAIN, DEBATE))

    assert len(batches) == 1
    assert batches[0].mode == "heuristic"
    assert session.mode == "heuristic"
    items = batches[0].items
    assert [it.category for it in items] == ["hyperbole", "neutral", "debated"]
    assert [it.global_index for it in items] == [0, 1, 2]
    assert items[0].confidence == 0.62
    assert items[0].rationale == "Promotional / intensity phrasing."
    assert items[1].confidence is None and items[1].rationale is None
    assert items[2].confidence == 0.72


def test_heuristic_metric_softens_hyperbole():
    result = heuristic.classify_text("A revolutionary sensor with 200 megapixel resolution.")
    assert result["category"] == "hyperbole"
    assert result["confidence"] == 0.5
    assert "(some evidence present)" in result["rationale"]


def test_heuristic_false_category_coerced_when_not_configured():
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False))
    batches, _ = _run(orch, _records("Everyone knows the Earth has two moons orbiting it."))
    assert _items(batches)[0].category == "neutral"

    cats = normalize_categories(["false", "hyperbole"])
    orch = ClassificationOrchestrator(FlaggerConfig(categories=cats, on_device_enabled=False))
    batches, _ = _run(orch, _records("Everyone knows the Earth has two moons orbiting it."))
    assert _items(batches)[0].category == "false"
    assert _items(batches)[0].confidence == 0.9


# ── On-device tier ───────────────────────────────────────────────────

def test_on_device_results_and_caching():
    reply = json.dumps({"items": [
        {"index": 0, "category": "neutral"},
        {"index": 1, "category": "debated", "confidence": 0.8, "rationale": "Contested."},
    ]})
    local = FakeLocalModel(replies=[reply])
    cache = FingerprintCache()
    orch = ClassificationOrchestrator(FlaggerConfig(), cache, local_model=local)

    batches, session = _run(orch, _records(PLAIN, DEBATE))
    assert session.mode == "on-device"
    items = _items(batches)
    assert [it.category for it in items] == ["neutral", "debated"]
    assert items[1].confidence == 0.8
    assert cache.size == 2
    assert DEBATE in local.session.prompts[0]
    assert "debated|hyperbole|neutral" in local.session.prompts[0]

    # rerun: everything from cache, no new prompt, same session
    batches, session = _run(orch, _records(PLAIN, DEBATE), generation=2)
    assert len(local.session.prompts) == 1
    assert session.mode == "cache"
    assert batches[0].cache_hits == 2
    assert [it.category for it in _items(batches)] == ["neutral", "debated"]
    assert local.sessions_created == 1


def test_omitted_items_are_cached_as_neutral():
    reply = json.dumps({"items": [{"index": 1, "category": "hyperbole", "confidence": 0.7}]})
    local = FakeLocalModel(replies=[reply])
    cache = FingerprintCache()
    orch = ClassificationOrchestrator(FlaggerConfig(), cache, local_model=local)
    batches, _ = _run(orch, _records(PLAIN, HYPE))
    assert [it.category for it in _items(batches)] == ["neutral", "hyperbole"]
    assert cache.size == 2

    batches, session = _run(orch, _records(PLAIN, HYPE), generation=2)
    assert len(local.session.prompts) == 1
    assert session.mode == "cache"
    assert [it.category for it in _items(batches)] == ["neutral", "hyperbole"]


def test_malformed_reply_is_not_cached():
    reply = json.dumps({"items": [{"index": 0, "category": "hyperbole", "confidence": 0.7}]})
    local = FakeLocalModel(replies=["I cannot answer that.", reply])
    cache = FingerprintCache()
    orch = ClassificationOrchestrator(FlaggerConfig(), cache, local_model=local)
    batches, _ = _run(orch, _records(HYPE))
    assert _items(batches)[0].category == "neutral"
    assert cache.size == 0

    batches, _ = _run(orch, _records(HYPE), generation=2)
    assert len(local.session.prompts) == 2
    assert _items(batches)[0].category == "hyperbole"


def test_expired_cache_entries_are_reclassified():
    clock = {"now": 0.0}
    reply = json.dumps({"items": [{"index": 0, "category": "debated", "confidence": 0.8}]})
    local = FakeLocalModel(replies=[reply, reply])
    cache = FingerprintCache(clock=lambda: clock["now"])
    orch = ClassificationOrchestrator(FlaggerConfig(), cache, local_model=local)

    _run(orch, _records(DEBATE))
    clock["now"] = CACHE_TTL_MS - 1
    _, session = _run(orch, _records(DEBATE), generation=2)
    assert session.mode == "cache"
    assert len(local.session.prompts) == 1

    clock["now"] = CACHE_TTL_MS
    batches, session = _run(orch, _records(DEBATE), generation=3)
    assert session.mode == "on-device"
    assert batches[0].cache_hits == 0
    assert len(local.session.prompts) == 2
    assert _items(batches)[0].category == "debated"


def test_concurrent_passes_share_one_local_session():
    class SlowStartModel(FakeLocalModel):
        async def create_session(self, params=None):
            await asyncio.sleep(0.01)
            return await super().create_session(params)

    local = SlowStartModel()
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=local)

    async def go():
        async def one(generation, text):
            session = PassSession(generation, URL)
            return [b async for b in orch.run(_records(text), URL, session)]

        await asyncio.gather(one(1, PLAIN), one(2, DEBATE))

    asyncio.run(go())
    assert local.sessions_created == 1
    assert len(local.session.prompts) == 2


def test_model_output_is_normalized():
    reply = json.dumps({"items": [
        {"index": 0, "category": "made-up", "confidence": 0.9},
        {"index": 1, "category": "HYPERBOLE", "confidence": 3, "rationale": "x" * 500},
        {"index": 2, "category": "debated", "confidence": "high"},
        {"index": 9, "category": "debated"},
    ]})
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=FakeLocalModel(replies=[reply]))
    batches, _ = _run(orch, _records(PLAIN, HYPE, DEBATE))
    items = _items(batches)
    assert items[0].category == "neutral" and items[0].confidence is None
    assert items[1].confidence == 1.0
    assert len(items[1].rationale) == 240
    assert items[2].confidence == 0.5


def test_batches_carry_global_indices():
    texts = [f"Statement number {i} is a plain sentence." for i in range(5)]
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False, batch_size=2))
    batches, _ = _run(orch, _records(*texts))
    regular = [b for b in batches if not b.fallback]
    assert [b.batch_index for b in regular] == [0, 1, 2]
    assert all(b.total_batches == 3 for b in regular)
    assert [it.global_index for it in _items(batches)] == [0, 1, 2, 3, 4]


def test_debug_records_when_enabled():
    reply = json.dumps({"items": [{"index": 0, "category": "hyperbole", "confidence": 0.6}]})
    local = FakeLocalModel(replies=[reply])
    orch = ClassificationOrchestrator(FlaggerConfig(debug_enabled=True), local_model=local)
    batches, session = _run(orch, _records(HYPE))

    assert len(session.debug) == 1
    record = batches[0].debug
    assert record is session.debug[0]
    assert record.model == "fake-model"
    assert record.statements == 1
    assert record.tokens["prompt_tokens"] == -(-len(local.session.prompts[0]) // 4)
    assert set(record.timings) == {"prompt_ms", "generation_ms", "parse_ms", "total_ms"}


def test_prompt_texts_are_sanitized():
    local = FakeLocalModel()
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=local)
    _run(orch, _records("Contact jane.doe@example.com about order 12345678 today."))
    prompt = local.session.prompts[0]
    assert "jane.doe@example.com" not in prompt
    assert "[EMAIL]" in prompt and "[NUMBER]" in prompt


# ── Tier fallthrough ─────────────────────────────────────────────────

def test_on_device_failure_falls_to_remote():
    local = FakeLocalModel(replies=[TierError("model crashed")])
    remote = FakeRemote({"items": [{"index": 0, "category": "hyperbole", "confidence": 0.7}], "mode": "heuristic"})
    notices = []
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=local, remote=remote, notify=notices.append)

    batches, session = _run(orch, _records(HYPE))
    assert session.mode == "remote"
    assert _items(batches)[0].category == "hyperbole"
    assert remote.calls == [[HYPE]]
    assert len(session.errors) == 1
    assert "on-device tier failed" in session.errors[0]
    assert notices


def test_remote_mode_lands_in_debug_record():
    remote = FakeRemote({"items": [{"index": 0, "category": "hyperbole", "confidence": 0.7}], "mode": "on-device"})
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False, debug_enabled=True), remote=remote)
    batches, session = _run(orch, _records(HYPE, PLAIN))
    record = batches[0].debug
    assert record.remote_mode == "on-device"
    assert record.endpoint == FakeRemote.endpoint
    assert session.mode == "remote"


def test_remote_failure_switches_rest_of_run_to_heuristic():
    remote = FakeRemote(error=TierError("connection refused"))
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False, batch_size=1), remote=remote)
    batches, session = _run(orch, _records(HYPE, PLAIN, DEBATE))

    assert len(remote.calls) == 1
    assert all(b.mode == "heuristic-fallback" for b in batches)
    assert session.mode == "heuristic-fallback"
    assert [it.category for it in _items(batches)] == ["hyperbole", "neutral", "debated"]


def test_remote_error_reply_falls_through():
    remote = FakeRemote({"items": [], "error": "upstream unavailable"})
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False), remote=remote)
    batches, session = _run(orch, _records(HYPE))
    assert session.mode == "heuristic-fallback"
    assert "upstream unavailable" in session.errors[0]


def test_tier_timeout_falls_through():
    local = FakeLocalModel(session=SlowSession())
    orch = ClassificationOrchestrator(FlaggerConfig(tier_timeout_s=0.05), local_model=local)
    batches, session = _run(orch, _records(HYPE))
    assert session.mode == "heuristic-fallback"
    assert "timed out" in session.errors[0]
    assert _items(batches)[0].category == "hyperbole"


def test_unavailable_local_model_uses_heuristic():
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=FakeLocalModel(availability="unavailable"))
    batches, session = _run(orch, _records(HYPE))
    assert batches[0].mode == "heuristic"
    assert session.error == "Local model reports unavailable."


def test_downloadable_model_waits_for_gesture():
    reply = json.dumps({"items": [{"index": 0, "category": "hyperbole", "confidence": 0.6}]})
    local = FakeLocalModel(availability="downloadable", replies=[reply])
    notices = []
    session = PassSession(1, URL)

    async def go():
        gesture = UserGesture()
        orch = ClassificationOrchestrator(FlaggerConfig(), local_model=local, gesture=gesture, notify=notices.append)

        async def collect():
            return [b async for b in orch.run(_records(HYPE), URL, session)]

        task = asyncio.create_task(collect())
        await asyncio.sleep(0.01)
        assert session.mode == "on-device-wait"
        assert not task.done()
        gesture.signal()
        return await task

    batches = asyncio.run(go())
    assert session.mode == "on-device"
    assert _items(batches)[0].category == "hyperbole"
    assert any("download" in n for n in notices)


def test_unknown_availability_counts_as_unavailable():
    local = FakeLocalModel(availability="warming-up")
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=local)
    batches, session = _run(orch, _records(HYPE))
    assert batches[0].mode == "heuristic"
    assert session.error == "Local model reports unavailable."
    assert local.sessions_created == 0


def test_signalled_gesture_skips_download_notice():
    reply = json.dumps({"items": [{"index": 0, "category": "hyperbole", "confidence": 0.6}]})
    local = FakeLocalModel(availability="downloading", replies=[reply])
    notices = []
    gesture = UserGesture()
    gesture.signal()
    orch = ClassificationOrchestrator(FlaggerConfig(), local_model=local, gesture=gesture, notify=notices.append)
    batches, session = _run(orch, _records(HYPE))
    assert session.mode == "on-device"
    assert _items(batches)[0].category == "hyperbole"
    assert not any("download" in n for n in notices)


def test_cancelled_session_stops_at_batch_boundary():
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False, batch_size=1))
    session = PassSession(1, URL)

    async def go():
        out = []
        async for batch in orch.run(_records(HYPE, PLAIN, DEBATE), URL, session):
            out.append(batch)
            session.cancel()
        return out

    assert len(asyncio.run(go())) == 1


# ── Fallback of last resort ──────────────────────────────────────────

def test_fallback_flags_when_nothing_flagged():
    texts = [
        "The committee is meeting again next Tuesday.",
        "Rain fell in the valley overnight.",
        "Tickets are available at the door.",
        "Prices were adjusted last spring.",
        "The bridge will reopen in June.",
    ]
    cache = FingerprintCache()
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False), cache)
    batches, _ = _run(orch, _records(*texts))

    assert len(batches) == 2
    fallback = batches[-1]
    assert fallback.fallback
    assert [it.global_index for it in fallback.items] == [0, 2, 3]
    assert all(it.category == "hyperbole" and it.confidence == FALLBACK_CONFIDENCE for it in fallback.items)
    assert all(v["category"] == "neutral" for v in cache.dump().values())


def test_no_fallback_without_claim_shaped_sentences():
    orch = ClassificationOrchestrator(FlaggerConfig(on_device_enabled=False))
    batches, _ = _run(orch, _records("Rain fell in the valley overnight."))
    assert not any(b.fallback for b in batches)


# ── Prompting ────────────────────────────────────────────────────────

def test_build_prompt_fills_placeholders():
    prompt = build_prompt(["First statement."], normalize_categories(None))
    assert '"index": 0' in prompt
    assert "First statement." in prompt
    assert "{{" not in prompt

    custom = build_prompt(["x"], normalize_categories(None), "IDS={{CLASS_IDS}}")
    assert custom == "IDS=debated|hyperbole|neutral"


def test_parse_model_output_tolerates_noise():
    raw = 'Sure! {"items": [{"index": 0, "category": "debated"}, {"index": "1"}, "junk"]} done'
    assert parse_model_output(raw)["items"] == [{"index": 0, "category": "debated"}]
    assert not parse_model_output(raw).get("malformed")
    assert parse_model_output('{"items": []}') == {"items": []}
    for bad in ("not json at all", "", '{"items": "nope"}'):
        assert parse_model_output(bad) == {"items": [], "malformed": True}


def test_extract_token_usage_reads_ollama_counters():
    usage = extract_token_usage({"response": "{}", "prompt_eval_count": 120, "eval_count": 30})
    assert usage == {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150}
    assert extract_token_usage({"usage": {"totalTokens": "42"}})["total_tokens"] == 42
    assert extract_token_usage({"items": []}) is None


# ── Sanitization ─────────────────────────────────────────────────────

def test_sanitize_masks_emails_and_long_numbers():
    assert sanitize_for_prompt("mail a.b@c.org or call 1234567") == "mail [EMAIL] or call [NUMBER]"
    assert sanitize_for_prompt("only 12345 here") == "only 12345 here"


def test_privacy_mode_truncates():
    out = sanitize_for_prompt("word " * 200, privacy_mode=True, use_presidio=False)
    assert len(out) == 320
