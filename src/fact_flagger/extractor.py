"""SentenceExtractor — block-level sentence candidates from an HTML tree.

Reads each paragraph-like block's rendered text (text nodes joined, line
breaks at ``<br>`` and block boundaries, whitespace collapsed), splits it on
a naive boundary heuristic, drops short fragments and deduplicates across
the page.
"""

from __future__ import annotations
import logging
import re
from itertools import islice
from typing import Iterator

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from .normalize import collapse_whitespace, key_text, sentence_id
from .types import ContainerRef, SentenceRecord

logger = logging.getLogger(__name__)

BLOCK_SELECTOR = "p, li, blockquote, td, th, dd, figcaption"

MAX_SENTENCES = 60
MIN_SENTENCE_CHARS = 25

# Break after . ! ? when followed by whitespace and an uppercase letter or digit
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9])")

SKIP_TAGS = frozenset({"script", "style", "noscript", "template", "head", "title"})

BLOCK_TAGS = frozenset({
    "address", "article", "aside", "blockquote", "dd", "details", "div", "dl",
    "dt", "fieldset", "figcaption", "figure", "footer", "form", "h1", "h2",
    "h3", "h4", "h5", "h6", "header", "hr", "li", "main", "nav", "ol", "p",
    "pre", "section", "summary", "table", "tbody", "td", "tfoot", "th",
    "thead", "tr", "ul",
})


def is_text_node(node: object) -> bool:
    """True for rendered text; comments, CDATA and doctypes are excluded."""
    return isinstance(node, NavigableString) and not isinstance(node, PreformattedString)


def rendered_text(element: Tag) -> str:
    """Approximate innerText: text nodes joined, breaks at br/blocks, collapsed."""
    parts: list[str] = []

    def walk(node: Tag) -> None:
        for child in node.children:
            if isinstance(child, Tag):
                if child.name in SKIP_TAGS:
                    continue
                if child.name == "br":
                    parts.append("\n")
                    continue
                is_block = child.name in BLOCK_TAGS
                if is_block:
                    parts.append("\n")
                walk(child)
                if is_block:
                    parts.append("\n")
            elif is_text_node(child):
                parts.append(str(child))

    walk(element)
    return collapse_whitespace("".join(parts))


def split_sentences(text: str) -> list[str]:
    return [s for s in SENTENCE_BOUNDARY.split(text) if s]


def _path_key(element: Tag) -> str:
    """A readable locator like ``body>div[2]>p[1]`` (1-based among same-name siblings)."""
    parts = []
    node: Tag | None = element
    while node is not None and not isinstance(node, BeautifulSoup):
        parent = node.parent
        if parent is None:
            parts.append(node.name)
            break
        same = [c for c in parent.children if isinstance(c, Tag) and c.name == node.name]
        pos = next(i for i, c in enumerate(same) if c is node)
        parts.append(f"{node.name}[{pos + 1}]" if len(same) > 1 else node.name)
        node = parent
    return ">".join(reversed(parts))


class SentenceExtractor:
    """Produces SentenceRecords from a document subtree."""

    def __init__(
        self,
        *,
        max_sentences: int = MAX_SENTENCES,
        min_chars: int = MIN_SENTENCE_CHARS,
        selector: str = BLOCK_SELECTOR,
    ) -> None:
        self.max_sentences = max_sentences
        self.min_chars = min_chars
        self.selector = selector

    def extract(self, root: Tag) -> Iterator[SentenceRecord]:
        """Lazily yield deduplicated sentences in document order, capped.

        Each call starts over; the iterator is not restartable.
        """
        return islice(self._candidates(root), max(0, self.max_sentences))

    def _candidates(self, root: Tag) -> Iterator[SentenceRecord]:
        document = _owner_document(root)
        seen: set[str] = set()
        for element in root.select(self.selector):
            if any(p.name in SKIP_TAGS for p in element.parents if isinstance(p, Tag)):
                continue
            text = rendered_text(element)
            if not text:
                continue
            for candidate in split_sentences(text):
                clean = candidate.strip()
                if len(clean) < self.min_chars:
                    continue
                key = key_text(clean)
                if key in seen:
                    continue
                seen.add(key)
                yield SentenceRecord(
                    id=sentence_id(clean),
                    text=clean,
                    origin=ContainerRef(element, document, _path_key(element)),
                )


def _owner_document(node: Tag) -> Tag:
    top = node
    for parent in node.parents:
        top = parent
    return top


def parse_html(raw: str) -> BeautifulSoup:
    return BeautifulSoup(raw, "lxml")
