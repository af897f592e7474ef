"""Prompt sanitization — strip obvious PII before text leaves the page.

Layer 1 is two cheap regexes (emails, long digit runs). In privacy mode the
text is also truncated and, when enabled, Presidio NER masks names,
places and organisations.
"""

from __future__ import annotations
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from presidio_analyzer import AnalyzerEngine

PRIVACY_MAX_CHARS = 320

_EMAIL = re.compile(r"[A-Z0-9._%+\-]+@[A-Z0-9.\-]+", re.IGNORECASE)
_LONG_NUMBER = re.compile(r"\b\d{6,}\b")

# Built on first privacy-mode call; loading spaCy is slow
_engine: AnalyzerEngine | None = None
_engine_lang: str = ""

# Entity types masked in privacy mode
NER_ENTITIES = [
    "PERSON",
    "LOCATION",
    "ORGANIZATION",
    "NRP",           # nationality, religious, political group
    "PHONE_NUMBER",
]


def _get_engine(language: str = "en") -> AnalyzerEngine:
    """Lazy-init the Presidio analyzer engine."""
    global _engine, _engine_lang
    if _engine is None or _engine_lang != language:
        from presidio_analyzer import AnalyzerEngine
        from presidio_analyzer.nlp_engine import NlpEngineProvider

        provider = NlpEngineProvider(nlp_configuration={
            "nlp_engine_name": "spacy",
            "models": [{"lang_code": language, "model_name": f"{language}_core_web_sm"}],
        })
        _engine = AnalyzerEngine(nlp_engine=provider.create_engine(), supported_languages=[language])
        _engine_lang = language
    return _engine


def mask_entities(text: str, *, language: str = "en", score_threshold: float = 0.35) -> str:
    """Replace detected named entities with ``[TYPE]`` placeholders."""
    results = _get_engine(language).analyze(
        text=text,
        language=language,
        entities=NER_ENTITIES,
        score_threshold=score_threshold,
    )
    # right-to-left so earlier offsets stay valid; skip overlaps
    out = text
    last_start = len(text) + 1
    for r in sorted(results, key=lambda r: r.start, reverse=True):
        if r.end > last_start:
            continue
        out = out[:r.start] + f"[{r.entity_type}]" + out[r.end:]
        last_start = r.start
    return out


def sanitize_for_prompt(
    text: str,
    *,
    privacy_mode: bool = False,
    use_presidio: bool = False,
    language: str = "en",
) -> str:
    t = _EMAIL.sub("[EMAIL]", text)
    t = _LONG_NUMBER.sub("[NUMBER]", t)
    if privacy_mode:
        if use_presidio:
            t = mask_entities(t, language=language)
        t = t[:PRIVACY_MAX_CHARS]
    return t
