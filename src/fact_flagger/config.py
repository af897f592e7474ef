"""YAML/dict config loader for fact-flagger.

Supports loading from a YAML file or a plain dict, flat or nested under a
``fact_flagger`` key.

Example YAML:

    fact_flagger:
      max_sentences: 60
      batch_size: 20
      on_device_enabled: true
      privacy_mode: false
      debug_enabled: false
      tier_timeout_s: 60
      categories:
        - id: debated
          label: Debated
          definition: Opinions disputed or with multiple viewpoints.
          color: "#f59e0b"
        - id: hyperbole
          label: Hyperbole
          color: "#8b5cf6"
      local_model:
        base_url: http://localhost:11434
        model: llama3.2:1b
        allow_download: true
      remote:
        endpoint: http://127.0.0.1:18792/classify-batch
      cache:
        backend: sqlite          # "memory" or "sqlite"
        path: ~/.fact-flagger/cache.db
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Callable

import yaml

from .annotator import PageAnnotator
from .cache import FingerprintCache
from .cache_sqlite import SqliteFingerprintCache
from .categories import normalize_categories
from .orchestrator import BATCH_SIZE, MODEL_VERSION, ClassificationOrchestrator, FlaggerConfig
from .tiers import HttpRemoteClassifier, OllamaLocalModel, UserGesture

DEFAULT_LOCAL_URL = "http://localhost:11434"
DEFAULT_LOCAL_MODEL = "llama3.2:1b"


def _int(value: Any, default: int, minimum: int = 1) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return default


def load_config(data: dict[str, Any] | None) -> dict[str, Any]:
    """Normalize a config dict (from YAML or inline)."""
    data = data or {}
    if "fact_flagger" in data:
        data = data["fact_flagger"] or {}

    local = data.get("local_model") or {}
    remote = data.get("remote") or {}
    cache = data.get("cache") or {}
    timeout = data.get("tier_timeout_s", 60.0)

    return {
        "categories": normalize_categories(data.get("categories")),
        "max_sentences": _int(data.get("max_sentences"), 60, minimum=0),
        "batch_size": _int(data.get("batch_size"), BATCH_SIZE),
        "on_device_enabled": bool(data.get("on_device_enabled", True)),
        "privacy_mode": bool(data.get("privacy_mode", False)),
        "prompt_template": data.get("prompt_template") or None,
        "debug_enabled": bool(data.get("debug_enabled", False)),
        "model_version": str(data.get("model_version") or MODEL_VERSION),
        "tier_timeout_s": float(timeout) if timeout else None,
        "min_sentence_chars": _int(data.get("min_sentence_chars"), 25),
        "use_presidio": bool(data.get("use_presidio", True)),
        "language": data.get("language", "en"),
        "local_base_url": local.get("base_url", DEFAULT_LOCAL_URL),
        "local_model": local.get("model", DEFAULT_LOCAL_MODEL),
        "local_timeout": float(local.get("timeout", 60)),
        "local_allow_download": bool(local.get("allow_download", True)),
        "remote_endpoint": remote.get("endpoint") or None,
        "remote_timeout": float(remote.get("timeout", 30)),
        "cache_backend": cache.get("backend", "memory"),
        "cache_path": cache.get("path", "cache.db"),
    }


def load_from_yaml(path: str | Path) -> dict[str, Any]:
    """Load config from a YAML file."""
    with open(path) as f:
        return load_config(yaml.safe_load(f))


def flagger_config(cfg: dict[str, Any]) -> FlaggerConfig:
    return FlaggerConfig(
        categories=cfg["categories"],
        max_sentences=cfg["max_sentences"],
        batch_size=cfg["batch_size"],
        on_device_enabled=cfg["on_device_enabled"],
        privacy_mode=cfg["privacy_mode"],
        prompt_template=cfg["prompt_template"],
        debug_enabled=cfg["debug_enabled"],
        model_version=cfg["model_version"],
        tier_timeout_s=cfg["tier_timeout_s"],
        min_sentence_chars=cfg["min_sentence_chars"],
        use_presidio=cfg["use_presidio"],
        language=cfg["language"],
    )


def create_cache(cfg: dict[str, Any]) -> FingerprintCache:
    if cfg["cache_backend"] == "sqlite":
        return SqliteFingerprintCache(db_path=cfg["cache_path"])
    return FingerprintCache()


def create_annotator(
    config: dict[str, Any],
    *,
    cache: FingerprintCache | None = None,
    gesture: UserGesture | None = None,
    listener: Callable[[str, dict[str, Any]], None] | None = None,
) -> PageAnnotator:
    """Create a fully wired annotator from a config dict."""
    cfg = load_config(config) if "cache_backend" not in config else config

    local = None
    if cfg["on_device_enabled"]:
        local = OllamaLocalModel(
            cfg["local_model"],
            base_url=cfg["local_base_url"],
            timeout=cfg["local_timeout"],
            allow_download=cfg["local_allow_download"],
        )
    remote = None
    if cfg["remote_endpoint"]:
        remote = HttpRemoteClassifier(cfg["remote_endpoint"], timeout=cfg["remote_timeout"])

    orchestrator = ClassificationOrchestrator(
        flagger_config(cfg),
        cache if cache is not None else create_cache(cfg),
        local_model=local,
        remote=remote,
        gesture=gesture,
    )
    annotator = PageAnnotator(orchestrator)
    orchestrator.notify = annotator.notify
    if listener is not None:
        annotator.add_listener(listener)
    return annotator
