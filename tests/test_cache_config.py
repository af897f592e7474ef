"""Tests for the fingerprint caches, config loading and the outer surfaces."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import asyncio
import io
import json
import threading
from http.server import HTTPServer

import pytest
import requests

from fact_flagger import (
    ClassificationOrchestrator, FingerprintCache, FlaggerConfig, PassSession, SentenceRecord,
    SqliteFingerprintCache, create_annotator, load_config, load_from_yaml,
)
from fact_flagger import cli, server
from fact_flagger.cache import CACHE_TTL_MS
from fact_flagger.normalize import fingerprint, sentence_id
from fact_flagger.tiers import HttpRemoteClassifier, OllamaLocalModel

URL = "https://example.com/a"
HYPE = "This new phone is literally the best ever made."
PLAIN = "Water boils at one hundred degrees at sea level."


class Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


# ── Fingerprints ─────────────────────────────────────────────────────

def test_fingerprint_ignores_case_and_whitespace():
    assert fingerprint(URL, "Hello   World.", "v1") == fingerprint(URL, " hello world. ", "v1")
    assert fingerprint(URL, "Hello world.", "v1") == "v1::https://example.com/a::hello world."


def test_fingerprint_scoped_by_url_and_model_version():
    base = fingerprint(URL, "Same text.", "v1")
    assert fingerprint("https://example.com/b", "Same text.", "v1") != base
    assert fingerprint(URL, "Same text.", "v2") != base


# ── Memory cache ─────────────────────────────────────────────────────

def test_cache_hit_until_ttl():
    clock = Clock()
    cache = FingerprintCache(clock=clock)
    cache.put("k", {"category": "debated", "confidence": 0.7, "rationale": "r"})

    clock.now = CACHE_TTL_MS - 1
    assert cache.get("k")["category"] == "debated"
    clock.now = CACHE_TTL_MS
    assert cache.get("k") is None
    assert cache.size == 0


def test_cache_returns_copies():
    cache = FingerprintCache()
    cache.put("k", {"category": "hyperbole"})
    cache.get("k")["category"] = "tampered"
    assert cache.get("k") == {"category": "hyperbole"}


def test_cache_prune():
    clock = Clock()
    cache = FingerprintCache(ttl_ms=100, clock=clock)
    cache.put("old", {"category": "neutral"})
    clock.now = 50
    cache.put("new", {"category": "neutral"})
    clock.now = 120
    assert cache.prune() == 1
    assert list(cache.dump()) == ["new"]


# ── SQLite cache ─────────────────────────────────────────────────────

def test_sqlite_cache_seeds_new_instance(tmp_path):
    db = tmp_path / "cache.db"
    first = SqliteFingerprintCache(db_path=db)
    first.put("k", {"category": "debated", "confidence": 0.4, "rationale": "r"})
    first.close()

    second = SqliteFingerprintCache(db_path=db)
    assert second.get("k") == {"category": "debated", "confidence": 0.4, "rationale": "r"}
    second.close()


def test_sqlite_cache_skips_expired_rows(tmp_path):
    db = tmp_path / "cache.db"
    first = SqliteFingerprintCache(db_path=db, clock=Clock(0))
    first.put("k", {"category": "neutral"})
    first.close()

    later = SqliteFingerprintCache(db_path=db, clock=Clock(CACHE_TTL_MS + 1))
    assert later.size == 0
    assert later.prune() == 0
    later.close()

    # pruning removed the row from disk too
    again = SqliteFingerprintCache(db_path=db, clock=Clock(0))
    assert again.size == 0
    again.close()


def test_sqlite_cache_clear(tmp_path):
    db = tmp_path / "cache.db"
    cache = SqliteFingerprintCache(db_path=db)
    cache.put("k", {"category": "neutral"})
    cache.clear()
    cache.close()
    assert SqliteFingerprintCache(db_path=db).size == 0


# ── Config ───────────────────────────────────────────────────────────

def test_load_config_defaults():
    cfg = load_config({})
    assert cfg["max_sentences"] == 60
    assert cfg["batch_size"] == 20
    assert cfg["on_device_enabled"] is True
    assert cfg["tier_timeout_s"] == 60.0
    assert cfg["cache_backend"] == "memory"
    assert [c.id for c in cfg["categories"]] == ["debated", "hyperbole", "neutral"]


def test_load_config_nested_key():
    cfg = load_config({"fact_flagger": {
        "batch_size": 5,
        "tier_timeout_s": 0,
        "categories": [{"id": "false"}],
        "remote": {"endpoint": "http://127.0.0.1:9/classify-batch"},
    }})
    assert cfg["batch_size"] == 5
    assert cfg["tier_timeout_s"] is None
    assert [c.id for c in cfg["categories"]] == ["false", "neutral"]
    assert cfg["remote_endpoint"] == "http://127.0.0.1:9/classify-batch"


def test_load_from_yaml(tmp_path):
    path = tmp_path / "flagger.yaml"
    path.write_text(
        "fact_flagger:\n"
        "  privacy_mode: true\n"
        "  local_model:\n"
        "    model: qwen2.5:0.5b\n"
        "  cache:\n"
        "    backend: sqlite\n"
        "    path: /tmp/x.db\n"
    )
    cfg = load_from_yaml(path)
    assert cfg["privacy_mode"] is True
    assert cfg["local_model"] == "qwen2.5:0.5b"
    assert cfg["cache_backend"] == "sqlite"


def test_create_annotator_wires_tiers():
    annotator = create_annotator({"remote": {"endpoint": "http://127.0.0.1:9/classify-batch"}})
    orch = annotator.orchestrator
    assert isinstance(orch.local_model, OllamaLocalModel)
    assert isinstance(orch.remote, HttpRemoteClassifier)
    assert isinstance(orch.cache, FingerprintCache)

    annotator = create_annotator({"on_device_enabled": False})
    assert annotator.orchestrator.local_model is None
    assert annotator.orchestrator.remote is None


# ── CLI ──────────────────────────────────────────────────────────────

def test_cli_annotate(tmp_path, capsys):
    page = tmp_path / "page.html"
    page.write_text(f"<html><body><p>{HYPE} {PLAIN}</p></body></html>", encoding="utf-8")
    out = tmp_path / "out.html"
    state_path = tmp_path / "state.json"

    cli.main([
        "--db", str(tmp_path / "cache.db"), "--no-on-device",
        "annotate", str(page), "--url", URL, "--out", str(out), "--state", str(state_path),
    ])

    assert 'class="fact-flag"' in out.read_text(encoding="utf-8")
    state = json.loads(state_path.read_text(encoding="utf-8"))
    assert state["total"] == 2
    assert "1 of 2 sentences flagged" in capsys.readouterr().err


def test_cli_classify_text_and_cache_commands(tmp_path, capsys, monkeypatch):
    db = str(tmp_path / "cache.db")
    monkeypatch.setattr(sys, "stdin", io.StringIO(f"{HYPE}\n\n{PLAIN}\n"))
    cli.main(["--db", db, "--no-on-device", "classify-text", "--url", URL])
    result = json.loads(capsys.readouterr().out)
    assert [it["category"] for it in result["items"]] == ["hyperbole", "neutral"]
    assert result["meta"]["mode"] == "heuristic"

    cli.main(["--db", db, "dump-cache"])
    dumped = json.loads(capsys.readouterr().out)
    assert len(dumped) == 2

    cli.main(["--db", db, "purge-cache"])
    assert "Purged 2" in capsys.readouterr().err


# ── Sidecar ──────────────────────────────────────────────────────────

def _serve(annotator, monkeypatch):
    monkeypatch.setattr(server, "_annotator", annotator)
    httpd = HTTPServer(("127.0.0.1", 0), server.FlaggerHandler)
    threading.Thread(target=httpd.serve_forever, daemon=True).start()
    return httpd, f"http://127.0.0.1:{httpd.server_address[1]}"


@pytest.fixture
def sidecar(tmp_path, monkeypatch):
    httpd, url = _serve(create_annotator({
        "on_device_enabled": False,
        "cache": {"backend": "sqlite", "path": str(tmp_path / "cache.db")},
    }), monkeypatch)
    yield url
    httpd.shutdown()
    httpd.server_close()


def test_sidecar_classify_batch(sidecar):
    r = requests.post(f"{sidecar}/classify-batch", json={"sentences": [PLAIN, HYPE]}, timeout=10)
    assert r.status_code == 200
    body = r.json()
    assert body["mode"] == "heuristic"
    assert body["items"] == [{
        "index": 1, "category": "hyperbole", "confidence": 0.62,
        "rationale": "Promotional / intensity phrasing.",
    }]


def test_sidecar_remote_tier_contract(sidecar):
    remote = HttpRemoteClassifier(f"{sidecar}/classify-batch")
    reply = asyncio.run(remote.classify_batch([HYPE]))
    assert reply["items"][0]["index"] == 0


def test_sidecar_annotate_and_purge(sidecar):
    html = f"<html><body><p>{HYPE} {PLAIN}</p></body></html>"
    r = requests.post(f"{sidecar}/annotate", json={"url": URL, "html": html}, timeout=10)
    body = r.json()
    assert "fact-flag" in body["html"]
    assert body["state"]["total"] == 2

    assert requests.get(f"{sidecar}/health", timeout=10).json()["status"] == "ok"
    purged = requests.post(f"{sidecar}/purge-cache", json={}, timeout=10).json()
    assert purged["count"] == 2


def test_sidecar_rejects_bad_input(sidecar):
    r = requests.post(f"{sidecar}/classify-batch", json={"sentences": "nope"}, timeout=10)
    assert r.status_code == 400
    assert requests.post(f"{sidecar}/nope", json={}, timeout=10).status_code == 404


def test_sidecar_with_unreachable_ollama_still_serves_remote_tier(tmp_path, monkeypatch):
    # nothing listens on the discard port, so the local tier reports unavailable
    httpd, url = _serve(create_annotator({
        "local_model": {"base_url": "http://127.0.0.1:9", "timeout": 2},
        "cache": {"backend": "sqlite", "path": str(tmp_path / "cache.db")},
    }), monkeypatch)
    try:
        neutral = [PLAIN, "Rain fell in the valley overnight."]
        raw = requests.post(f"{url}/classify-batch", json={"sentences": neutral}, timeout=10).json()
        assert raw == {"items": [], "mode": "heuristic"}

        cache = FingerprintCache()
        orch = ClassificationOrchestrator(
            FlaggerConfig(on_device_enabled=False), cache,
            remote=HttpRemoteClassifier(f"{url}/classify-batch"),
        )
        session = PassSession(1, URL)

        async def go():
            return [b async for b in orch.run(
                [SentenceRecord(id=sentence_id(t), text=t) for t in neutral], URL, session,
            )]

        batches = asyncio.run(go())
        assert batches[0].mode == "remote"
        assert session.mode == "remote"
        assert session.errors == []
        assert [it.category for it in batches[0].items] == ["neutral", "neutral"]
        assert cache.size == 2
    finally:
        httpd.shutdown()
        httpd.server_close()
