"""Whitespace canonicalization and stable sentence identifiers."""

from __future__ import annotations
import re

_WS = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace to one space and trim."""
    return _WS.sub(" ", text or "").strip()


def key_text(text: str) -> str:
    """Text form used for dedup and cache keys (collapsed, lower-cased)."""
    return collapse_whitespace(text).lower()


def sentence_id(text: str) -> str:
    """Stable 32-bit rolling hash of the collapsed text. Not cryptographic."""
    h = 0
    for ch in collapse_whitespace(text):
        h = (31 * h + ord(ch)) & 0xFFFFFFFF
    return f"s{h:x}"


def fingerprint(page_url: str, text: str, model_version: str) -> str:
    return f"{model_version}::{page_url}::{key_text(text)}"
