"""Prompt construction and model-output parsing for the model tiers."""

from __future__ import annotations
import json
import logging
import re
from typing import Any

from .categories import category_ids, definitions_block
from .types import CategoryDefinition

logger = logging.getLogger(__name__)

DEBUG_PROMPT_LIMIT = 12000
CHARS_PER_TOKEN = 4

DEFAULT_PROMPT_TEMPLATE = """You are a factuality, debate and rhetoric classifier. Output ONLY JSON.
Definitions:
{{DEFINITIONS}}
Statements (JSON array):
{{STATEMENTS_JSON}}
Categories: {{CLASS_IDS}}
Rules:
- Return {"items":[...]} with one object per statement that is NOT neutral.
- Each object has "index" and "category".
- Only include "confidence" (0-1) when category is not "neutral".
- Keep "rationale" to one short sentence.
- If insufficient info -> neutral."""

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def build_prompt(
    texts: list[str],
    categories: list[CategoryDefinition],
    template: str | None = None,
) -> str:
    """Fill the template; ``texts`` are expected to be sanitized already."""
    statements = [{"index": i, "text": t} for i, t in enumerate(texts)]
    body = template.strip() if template and template.strip() else DEFAULT_PROMPT_TEMPLATE
    return (
        body.replace("{{DEFINITIONS}}", definitions_block(categories))
        .replace("{{STATEMENTS_JSON}}", json.dumps(statements, ensure_ascii=False))
        .replace("{{CLASS_IDS}}", "|".join(category_ids(categories)))
    )


def response_schema(class_ids: list[str] | None = None) -> dict[str, Any]:
    category: dict[str, Any] = {"type": "string"}
    if class_ids:
        category["enum"] = list(class_ids)
    return {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "index": {"type": "integer"},
                        "category": category,
                        "confidence": {"type": "number"},
                        "rationale": {"type": "string"},
                    },
                    "required": ["index", "category"],
                },
            },
        },
        "required": ["items"],
    }


def parse_model_output(raw: Any) -> dict[str, Any]:
    """Parse ``{"items": [...]}`` from a model reply.

    Malformed replies yield no items and are marked ``"malformed": True``.
    """
    if isinstance(raw, dict):
        parsed = raw
    else:
        text = str(raw or "").strip()
        if not text:
            return {"items": [], "malformed": True}
        match = _JSON_BLOCK.search(text)
        try:
            parsed = json.loads(match.group() if match else text)
        except json.JSONDecodeError:
            logger.warning("unparseable model output: %.200s", text)
            return {"items": [], "malformed": True}
    if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
        return {"items": [], "malformed": True}
    items = [
        it for it in parsed["items"]
        if isinstance(it, dict) and isinstance(it.get("index"), int) and not isinstance(it.get("index"), bool)
    ]
    return {**parsed, "items": items}


# ----------------------------------------------------------------------
# Token usage
# ----------------------------------------------------------------------

_PROMPT_KEYS = ("promptTokens", "prompt_tokens", "inputTokens", "input_tokens", "prompt_eval_count")
_COMPLETION_KEYS = (
    "completionTokens", "completion_tokens", "outputTokens", "output_tokens",
    "generationTokens", "generation_tokens", "eval_count",
)
_TOTAL_KEYS = ("totalTokens", "total_tokens")


def _to_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def _read(src: dict[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        if key in src:
            num = _to_number(src[key])
            if num is not None:
                return num
    return None


def extract_token_usage(data: Any) -> dict[str, int | None] | None:
    """Find reported usage under ``usage``/``tokens``/``metrics.tokens``/top level."""
    if not isinstance(data, dict):
        return None
    candidates = [data]
    for key in ("usage", "tokens", "tokenUsage", "token_usage"):
        if isinstance(data.get(key), dict):
            candidates.append(data[key])
    metrics = data.get("metrics")
    if isinstance(metrics, dict) and isinstance(metrics.get("tokens"), dict):
        candidates.append(metrics["tokens"])

    prompt = completion = total = None
    for src in candidates:
        prompt = prompt if prompt is not None else _read(src, _PROMPT_KEYS)
        completion = completion if completion is not None else _read(src, _COMPLETION_KEYS)
        total = total if total is not None else _read(src, _TOTAL_KEYS)
    if total is None and prompt is not None and completion is not None:
        total = prompt + completion
    if prompt is None and completion is None and total is None:
        return None
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": total}


def estimate_token_usage(prompt: str, response: str) -> dict[str, int | None]:
    prompt_tokens = -(-len(prompt) // CHARS_PER_TOKEN)
    completion_tokens = -(-len(response) // CHARS_PER_TOKEN) if response else None
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens if completion_tokens is not None else None,
    }
