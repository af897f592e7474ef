"""Category set validation and per-item classification normalization.

The category set is open (supplied by configuration) but always contains
the ``neutral`` sentinel. Anything unrecognised degrades to neutral.
"""

from __future__ import annotations
import re
from typing import Any, Iterable

from .types import NEUTRAL, CategoryDefinition

RATIONALE_LIMIT = 240
DEFAULT_CONFIDENCE = 0.5

DEFAULT_CATEGORIES: list[CategoryDefinition] = [
    CategoryDefinition("debated", "Debated", "Opinions disputed or with multiple viewpoints.", "#facc15", "#ffffff"),
    CategoryDefinition("hyperbole", "Hyperbole", "Rhetorical or promotional exaggeration.", "#fb923c", "#ffffff"),
    CategoryDefinition(NEUTRAL, "Neutral", "No apparent factual issues.", "#9ca3af", "#ffffff"),
]

# Known ids that are not in the default set but get sensible colours.
_KNOWN: dict[str, CategoryDefinition] = {
    "false": CategoryDefinition("false", "False", "Contradicts well-established facts.", "#ef4444", "#ffffff"),
    **{c.id: c for c in DEFAULT_CATEGORIES},
}

_HEX = re.compile(r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


def valid_hex_color(value: Any) -> bool:
    return isinstance(value, str) and bool(_HEX.match(value.strip()))


def _rgb(hex_color: str) -> tuple[int, int, int]:
    clean = hex_color.strip().lstrip("#")
    if len(clean) == 3:
        clean = "".join(c * 2 for c in clean)
    return int(clean[0:2], 16), int(clean[2:4], 16), int(clean[4:6], 16)


def rgba_from_hex(hex_color: str, alpha: float = 0.28) -> str:
    if not valid_hex_color(hex_color):
        return f"rgba(156,163,175,{alpha})"
    r, g, b = _rgb(hex_color)
    return f"rgba({r},{g},{b},{alpha})"


def ideal_text_color(hex_color: str) -> str:
    """Dark or light text colour by relative luminance of the background."""
    if not valid_hex_color(hex_color):
        return "#0f172a"

    def linear(v: float) -> float:
        return v / 12.92 if v <= 0.03928 else ((v + 0.055) / 1.055) ** 2.4

    r, g, b = (c / 255 for c in _rgb(hex_color))
    lum = 0.2126 * linear(r) + 0.7152 * linear(g) + 0.0722 * linear(b)
    return "#0f172a" if lum > 0.55 else "#ffffff"


def normalize_categories(raw: Iterable[Any] | None) -> list[CategoryDefinition]:
    """Validate an externally supplied category list.

    Accepts dicts (``id``/``key``, ``label``/``name``,
    ``definition``/``description``, ``color``, ``text_color``/``textColor``),
    plain id strings, or CategoryDefinition instances. Missing or empty
    input yields the defaults.
    """
    items = list(raw) if raw else []
    if not items:
        return [CategoryDefinition(**c.to_dict()) for c in DEFAULT_CATEGORIES]

    out: list[CategoryDefinition] = []
    seen: set[str] = set()
    for item in items:
        if isinstance(item, CategoryDefinition):
            item = item.to_dict()
        elif isinstance(item, str):
            item = {"id": item}
        if not isinstance(item, dict):
            continue
        cid = str(item.get("id") or item.get("key") or "").strip().lower()
        if not cid or cid in seen:
            continue
        base = _KNOWN.get(cid)
        label = str(item.get("label") or item.get("name") or (base.label if base else cid)).strip() or cid
        definition = str(item.get("definition") or item.get("description") or (base.definition if base else "")).strip()
        color = item.get("color")
        if not valid_hex_color(color):
            color = base.color if base else "#9ca3af"
        text_color = item.get("text_color") or item.get("textColor")
        if not valid_hex_color(text_color):
            text_color = base.text_color if base else ideal_text_color(color)
        out.append(CategoryDefinition(cid, label, definition, color.strip(), text_color.strip()))
        seen.add(cid)

    if NEUTRAL not in seen:
        neutral = _KNOWN[NEUTRAL]
        out.append(CategoryDefinition(**neutral.to_dict()))
    return out


def category_ids(categories: Iterable[CategoryDefinition]) -> list[str]:
    ids = [c.id for c in categories]
    if NEUTRAL not in ids:
        ids.append(NEUTRAL)
    return ids


def find_category(categories: list[CategoryDefinition], cid: str) -> CategoryDefinition | None:
    return next((c for c in categories if c.id == cid), None)


def choose_category(categories: list[CategoryDefinition], preferred: str) -> CategoryDefinition:
    """The preferred category if present, else the first non-neutral one."""
    direct = find_category(categories, preferred)
    if direct:
        return direct
    non_neutral = next((c for c in categories if c.id != NEUTRAL), None)
    if non_neutral:
        return non_neutral
    return categories[0] if categories else DEFAULT_CATEGORIES[0]


def normalize_category(value: Any, allowed: Iterable[str]) -> str:
    if not value:
        return NEUTRAL
    cid = str(value).strip().lower()
    return cid if cid in set(allowed) else NEUTRAL


def normalize_classification(item: dict[str, Any], allowed: Iterable[str]) -> dict[str, Any]:
    """Coerce one raw tier item to ``{"category", "confidence"?, "rationale"?}``."""
    category = normalize_category(item.get("category"), allowed)
    if category == NEUTRAL:
        return {"category": NEUTRAL}
    confidence = item.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = DEFAULT_CONFIDENCE
    confidence = min(1.0, max(0.0, float(confidence)))
    rationale = str(item.get("rationale") or "")[:RATIONALE_LIMIT]
    return {"category": category, "confidence": confidence, "rationale": rationale}


def definitions_block(categories: Iterable[CategoryDefinition]) -> str:
    """Render ``id (Label):\\n  definition`` blocks for prompting."""
    parts = []
    for c in categories:
        header = f"{c.id} ({c.label})" if c.label and c.label.lower() != c.id else c.id
        parts.append(f"{header}:\n  {c.definition or 'No definition provided.'}")
    return "\n\n".join(parts)
