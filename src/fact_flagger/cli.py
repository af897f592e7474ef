"""CLI interface for fact-flagger.

Usage:
    # Annotate a saved page (writes the highlighted HTML and the state JSON)
    fact-flagger annotate page.html --url https://example.com/a \
        --out page.flagged.html --state state.json

    # Classify plain text, one sentence per line (stdin → JSON)
    printf 'The moon landing was faked.\n' | fact-flagger classify-text

    # Inspect or empty the durable cache
    fact-flagger dump-cache
    fact-flagger purge-cache

Classifications are cached in SQLite so repeated runs skip inference.
"""

from __future__ import annotations
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .annotator import PageAnnotator
from .config import create_annotator, create_cache, load_config, load_from_yaml
from .extractor import parse_html
from .normalize import collapse_whitespace, sentence_id
from .progress import format_eta
from .types import PassSession, SentenceRecord

DEFAULT_DB = os.environ.get(
    "FACT_FLAGGER_DB",
    str(Path.home() / ".fact-flagger" / "cache.db"),
)


def _load(args: argparse.Namespace) -> dict[str, Any]:
    cfg = load_from_yaml(args.config) if args.config else load_config({})
    if args.db or cfg["cache_backend"] != "sqlite":
        cfg["cache_backend"] = "sqlite"
        cfg["cache_path"] = args.db or DEFAULT_DB
    if args.no_on_device:
        cfg["on_device_enabled"] = False
    if args.remote:
        cfg["remote_endpoint"] = args.remote
    cfg["local_allow_download"] = bool(getattr(args, "allow_download", False))
    return cfg


def _build_annotator(args: argparse.Namespace) -> PageAnnotator:
    annotator = create_annotator(_load(args))
    if getattr(args, "allow_download", False):
        annotator.signal_gesture()
    annotator.add_listener(_print_progress if args.verbose else _print_notice)
    return annotator


def _print_notice(kind: str, payload: dict[str, Any]) -> None:
    if kind == "notice":
        sys.stderr.write(f"{payload['message']}\n")


def _print_progress(kind: str, payload: dict[str, Any]) -> None:
    if kind == "notice":
        _print_notice(kind, payload)
        return
    progress = payload["progress"]
    if progress["status"] == "running":
        sys.stderr.write(
            f"  {progress['completed']}/{progress['total']} "
            f"(~{format_eta(progress['eta_ms'])} left, mode={payload['meta']['mode']})\n"
        )


def cmd_annotate(args: argparse.Namespace) -> None:
    """Annotate an HTML file and write the highlighted page."""
    annotator = _build_annotator(args)
    raw = Path(args.file).read_text(encoding="utf-8")
    soup = parse_html(raw)
    state = asyncio.run(annotator.annotate(soup, args.url or Path(args.file).resolve().as_uri()))

    html = str(soup)
    if args.out:
        Path(args.out).write_text(html, encoding="utf-8")
    else:
        sys.stdout.write(html)
        sys.stdout.write("\n")
    if args.state:
        with open(args.state, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, ensure_ascii=False)

    flagged = sum(1 for s in state["statements"] if s["category"] != "neutral")
    sys.stderr.write(
        f"{flagged} of {state['total']} sentences flagged (mode: {state['meta']['mode']})\n"
    )


def cmd_classify_text(args: argparse.Namespace) -> None:
    """Classify stdin lines; prints a JSON array of results."""
    annotator = _build_annotator(args)
    sentences = []
    seen = set()
    for line in sys.stdin.read().splitlines():
        text = collapse_whitespace(line)
        if not text or text in seen:
            continue
        seen.add(text)
        sentences.append(SentenceRecord(id=sentence_id(text), text=text))

    async def run() -> tuple[list[dict[str, Any]], PassSession]:
        session = PassSession(1, args.url)
        out: dict[str, dict[str, Any]] = {}
        async for batch in annotator.orchestrator.run(sentences, args.url, session):
            for result in batch.items:
                out[result.sentence_id] = result.to_dict()
        return [{"text": s.text, **out.get(s.id, {"id": s.id, "category": "neutral"})} for s in sentences], session

    results, session = asyncio.run(run())
    json.dump({"items": results, "meta": session.meta}, sys.stdout, ensure_ascii=False)
    sys.stdout.write("\n")


def cmd_dump_cache(args: argparse.Namespace) -> None:
    """Dump live cache entries as JSON."""
    cache = create_cache(_load(args))
    json.dump(cache.dump(), sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def cmd_purge_cache(args: argparse.Namespace) -> None:
    """Remove every cached classification."""
    cache = create_cache(_load(args))
    count = cache.size
    cache.clear()
    sys.stderr.write(f"Purged {count} cached classifications\n")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="fact-flagger",
        description="Flag debated, exaggerated or false claims in web pages",
    )
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--db", default=None, help=f"SQLite cache path (default {DEFAULT_DB})")
    parser.add_argument("--no-on-device", action="store_true", help="Skip the local model tier")
    parser.add_argument("--remote", default=None, help="Remote classifier endpoint URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log progress to stderr")

    sub = parser.add_subparsers(dest="command", required=True)
    p = sub.add_parser("annotate", help="Annotate an HTML file")
    p.add_argument("file")
    p.add_argument("--url", default="", help="Page URL (cache scope)")
    p.add_argument("--out", default=None, help="Write highlighted HTML here (default stdout)")
    p.add_argument("--state", default=None, help="Write the final state JSON here")
    p.add_argument("--allow-download", action="store_true", help="Let the local model be pulled")
    p = sub.add_parser("classify-text", help="Classify stdin lines")
    p.add_argument("--url", default="", help="Page URL (cache scope)")
    p.add_argument("--allow-download", action="store_true", help="Let the local model be pulled")
    sub.add_parser("dump-cache", help="Dump cached classifications")
    sub.add_parser("purge-cache", help="Clear the classification cache")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cmds = {
        "annotate": cmd_annotate,
        "classify-text": cmd_classify_text,
        "dump-cache": cmd_dump_cache,
        "purge-cache": cmd_purge_cache,
    }
    cmds[args.command](args)


if __name__ == "__main__":
    main()
