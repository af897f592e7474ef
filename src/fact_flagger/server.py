"""HTTP sidecar server for fact-flagger.

Plain ``http.server`` on localhost. Doubles as the remote tier: point
another instance's ``remote.endpoint`` at ``/classify-batch``.

Endpoints:
    GET  /health          — Health check
    POST /classify-batch  — {"sentences": [...]} → {"items", "mode", "error"?}
    POST /annotate        — {"url", "html"} → {"html", "state"}
    POST /purge-cache     — Drop every cached classification

All endpoints expect/return JSON.
"""

from __future__ import annotations
import asyncio
import json
import logging
import os
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any

from .annotator import PageAnnotator
from .config import create_annotator, create_cache, load_config, load_from_yaml
from .extractor import parse_html
from .normalize import collapse_whitespace, sentence_id
from .types import PassSession, SentenceRecord

logger = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("FACT_FLAGGER_PORT", "18792"))
DEFAULT_DB = os.environ.get(
    "FACT_FLAGGER_DB",
    str(Path.home() / ".fact-flagger" / "cache.db"),
)

# Shared state
_config: dict[str, Any] | None = None
_annotator: PageAnnotator | None = None
_db_path: str = DEFAULT_DB


def _get_config() -> dict[str, Any]:
    global _config
    if _config is None:
        path = os.environ.get("FACT_FLAGGER_CONFIG", "")
        cfg = load_from_yaml(path) if path else load_config({})
        cfg["cache_backend"] = "sqlite"
        cfg["cache_path"] = _db_path
        # never forward to another remote from here
        cfg["remote_endpoint"] = None
        # no user to gesture on a server; only use a model that is already pulled
        cfg["local_allow_download"] = False
        _config = cfg
    return _config


def _get_annotator() -> PageAnnotator:
    global _annotator
    if _annotator is None:
        _annotator = create_annotator(_get_config())
    return _annotator


async def classify_batch(annotator: PageAnnotator, texts: list[str]) -> dict[str, Any]:
    """Classify raw texts; returns items keyed by their index in ``texts``."""
    sentences = [
        SentenceRecord(id=sentence_id(collapse_whitespace(t)), text=collapse_whitespace(t))
        for t in texts
    ]
    session = PassSession(0, "")
    items = []
    async for batch in annotator.orchestrator.run(sentences, "", session):
        if batch.fallback:
            continue
        for result in batch.items:
            if result.flagged:
                item = result.to_dict()
                del item["id"]
                items.append({"index": result.global_index, **item})
    out: dict[str, Any] = {"items": items, "mode": session.mode}
    if session.errors:
        out["error"] = session.errors[-1]
    return out


class FlaggerHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the fact-flagger sidecar."""

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length).decode("utf-8")
        return json.loads(body) if body else {}

    def _respond(self, status: int, data: Any) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self) -> None:
        if self.path == "/health":
            cache_size = _get_annotator().orchestrator.cache.size if _annotator else 0
            self._respond(200, {"status": "ok", "cached": cache_size})
        else:
            self._respond(404, {"error": "not found"})

    def do_POST(self) -> None:
        try:
            body = self._read_json()

            if self.path == "/classify-batch":
                sentences = body.get("sentences")
                if not isinstance(sentences, list) or not all(isinstance(s, str) for s in sentences):
                    self._respond(400, {"error": "sentences must be a list of strings"})
                    return
                self._respond(200, asyncio.run(classify_batch(_get_annotator(), sentences)))

            elif self.path == "/annotate":
                html = body.get("html", "")
                soup = parse_html(html)
                state = asyncio.run(_get_annotator().annotate(soup, body.get("url", "")))
                self._respond(200, {"html": str(soup), "state": state})

            elif self.path == "/purge-cache":
                cache = _get_annotator().orchestrator.cache if _annotator else create_cache(_get_config())
                count = cache.size
                cache.clear()
                self._respond(200, {"status": "purged", "count": count})

            else:
                self._respond(404, {"error": "not found"})

        except json.JSONDecodeError as e:
            self._respond(400, {"error": f"invalid JSON: {e}"})
        except Exception as e:  # noqa: BLE001
            logger.exception("request to %s failed", self.path)
            self._respond(500, {"error": str(e)})


def serve(port: int = DEFAULT_PORT, db_path: str = DEFAULT_DB) -> None:
    """Start the fact-flagger HTTP sidecar."""
    global _db_path
    _db_path = db_path

    server = HTTPServer(("127.0.0.1", port), FlaggerHandler)
    logger.info("fact-flagger sidecar listening on http://127.0.0.1:%d (cache %s)", port, db_path)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down")
        server.shutdown()


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="fact-flagger HTTP sidecar")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--db", default=DEFAULT_DB)
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    serve(port=args.port, db_path=args.db)
