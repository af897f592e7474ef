"""Heuristic tier — deterministic pattern classifier.

Runs when the model tiers are disabled, unavailable or failing. Never
raises. Categories it produces that are not in the configured set are
coerced to neutral by the orchestrator.
"""

from __future__ import annotations
import re
from typing import Any

from .types import NEUTRAL

# Each rule: (category, compiled_regex, confidence, rationale)
_RULES: list[tuple[str, re.Pattern, float, str]] = [
    # Well-known falsehoods
    ("false", re.compile(
        r"\bthe earth has two moons\b|\bperpetual motion machine\b"
    ), 0.9, "Contradicts established science."),

    # Areas of live expert disagreement
    ("debated", re.compile(
        r"quantum supremacy|ai has achieved consciousness|cold fusion has been solved"
    ), 0.72, "Claim area has ongoing expert debate."),
]

# Promotional / absolutist intensity
_INTENSE = re.compile(
    r"literally|change.*forever|revolutionary|game-?chang|the best ever|unprecedented|absolutely incredible"
)

# Numbers and units soften hyperbole a little
_METRIC = re.compile(
    r"\b(\d+%|\d+x|\d+\.\d+|megapixel|fps|nm|gigabit|tera|petaflop|times?)(?!\w)"
)

# Sentences the last-resort fallback considers claim-like
CLAIM_SHAPE = re.compile(r" (is|are|was|were|will|can) ", re.IGNORECASE)


def classify_text(text: str) -> dict[str, Any]:
    """Classify one sentence. Neutral results carry no confidence/rationale."""
    lower = text.lower()
    for category, pattern, confidence, rationale in _RULES:
        if pattern.search(lower):
            return {"category": category, "confidence": confidence, "rationale": rationale}

    if _INTENSE.search(lower):
        has_metric = bool(_METRIC.search(lower))
        return {
            "category": "hyperbole",
            "confidence": 0.5 if has_metric else 0.62,
            "rationale": "Promotional / intensity phrasing"
                         + (" (some evidence present)" if has_metric else "") + ".",
        }
    return {"category": NEUTRAL}


def classify_batch(texts: list[str]) -> list[dict[str, Any]]:
    """Tier-shaped output: ``[{"index", "category", ...}]``."""
    return [{"index": i, **classify_text(t)} for i, t in enumerate(texts)]
