"""DOMHighlighter — re-locate extracted sentences in a live tree and wrap them.

Sentences were read from a rendered-text projection (whitespace collapsed,
line breaks at ``<br>`` and block boundaries), so a literal search against
raw text nodes usually fails. ``locate`` rebuilds the same projection while
remembering, for every character, the text node and offset it came from,
then maps the match back to a node range.

Usage:
    hl = DOMHighlighter(categories)
    rng = hl.locate(paragraph, "Hello world.")
    marker = hl.wrap(rng, "hyperbole", {"id": "s1a2b", "rationale": "..."})
    hl.update_marker(marker, {...})     # in place, no re-wrap
    hl.clear(marker)
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, unquote

from bs4 import BeautifulSoup, NavigableString, Tag

from .categories import choose_category, find_category, normalize_categories, rgba_from_hex
from .extractor import BLOCK_TAGS, SKIP_TAGS, is_text_node
from .normalize import collapse_whitespace
from .types import CategoryDefinition, ClassificationResult

logger = logging.getLogger(__name__)

MARKER_CLASS = "fact-flag"


@dataclass(slots=True)
class _Char:
    node: NavigableString | None     # None for virtual breaks (<br>, block edges)
    offset: int
    char: str


@dataclass(slots=True)
class TextRange:
    """A span between two (text node, offset) boundary points."""
    container: Tag
    start_node: NavigableString
    start_offset: int
    end_node: NavigableString
    end_offset: int

    @property
    def text(self) -> str:
        """Text covered by the range; <br> and block edges read as spaces."""
        if self.start_node is self.end_node:
            return str(self.start_node)[self.start_offset:self.end_offset]
        parts = [str(self.start_node)[self.start_offset:]]
        for el in self.start_node.next_elements:
            if el is self.end_node:
                parts.append(str(el)[:self.end_offset])
                break
            if isinstance(el, Tag) and (el.name == "br" or el.name in BLOCK_TAGS):
                parts.append(" ")
            elif is_text_node(el) and not _inside_skipped(el):
                parts.append(str(el))
        return "".join(parts)


def _inside_skipped(node: Any) -> bool:
    return any(p.name in SKIP_TAGS for p in node.parents if isinstance(p, Tag))


def _is_marker(node: Any) -> bool:
    return isinstance(node, Tag) and node.name == "span" and MARKER_CLASS in (node.get("class") or [])


def _contains(ancestor: Any, node: Any) -> bool:
    """Inclusive, identity-based containment (bs4 ``==`` is structural)."""
    if ancestor is node:
        return True
    return any(p is ancestor for p in node.parents)


def _owner_document(node: Any) -> BeautifulSoup | None:
    top = node
    for parent in node.parents:
        top = parent
    return top if isinstance(top, BeautifulSoup) else None


def _index_chars(container: Tag) -> list[_Char]:
    """Step 1: per-character records for every rendered text node."""
    entries: list[_Char] = []
    virtual = _Char(None, 0, " ")

    def walk(node: Tag) -> None:
        for child in node.children:
            if isinstance(child, Tag):
                if child.name in SKIP_TAGS:
                    continue
                if child.name == "br":
                    entries.append(virtual)
                    continue
                is_block = child.name in BLOCK_TAGS
                if is_block:
                    entries.append(virtual)
                walk(child)
                if is_block:
                    entries.append(virtual)
            elif is_text_node(child):
                for offset, ch in enumerate(child):
                    entries.append(_Char(child, offset, " " if ch.isspace() else ch))

    walk(container)
    return entries


def _collapse(entries: list[_Char]) -> tuple[str, list[_Char]]:
    """Step 2: merge runs of spaces, trim both ends."""
    chars: list[str] = []
    kept: list[_Char] = []
    last_was_space = True
    for entry in entries:
        if entry.char == " ":
            if last_was_space:
                continue
            last_was_space = True
        else:
            last_was_space = False
        chars.append(entry.char)
        kept.append(entry)
    while chars and chars[-1] == " ":
        chars.pop()
        kept.pop()
    return "".join(chars), kept


class DOMHighlighter:
    """Locates sentences in a bs4 tree and wraps them in marker spans."""

    def __init__(self, categories: list[CategoryDefinition] | None = None) -> None:
        self.categories = categories or normalize_categories(None)

    # ------------------------------------------------------------------
    # Range recovery
    # ------------------------------------------------------------------

    def locate(self, container: Tag | None, sentence: str) -> TextRange | None:
        if container is None or not sentence:
            return None
        return self._collapsed_range(container, sentence) or self._simple_range(container, sentence)

    def _collapsed_range(self, container: Tag, sentence: str) -> TextRange | None:
        target = collapse_whitespace(sentence)
        if not target:
            return None
        haystack, kept = _collapse(_index_chars(container))
        start = haystack.find(target)
        if start == -1:
            return None
        first, last = kept[start], kept[start + len(target) - 1]
        if first.node is None or last.node is None:
            return None
        end_offset = min(last.offset + 1, len(last.node))
        return TextRange(container, first.node, first.offset, last.node, end_offset)

    def _simple_range(self, container: Tag, sentence: str) -> TextRange | None:
        """Step 5: the sentence sits verbatim inside one text node."""
        for node in container.find_all(string=True):
            if not is_text_node(node) or _inside_skipped(node):
                continue
            idx = str(node).find(sentence)
            if idx != -1:
                return TextRange(container, node, idx, node, idx + len(sentence))
        return None

    # ------------------------------------------------------------------
    # Markers
    # ------------------------------------------------------------------

    def wrap(self, rng: TextRange, category: str, metadata: dict[str, Any]) -> Tag | None:
        """Move the range's contents into a new marker span placed where they were.

        Returns None when the range is stale, empty, or touches an existing
        marker (the first wrapped sentence keeps the region).
        """
        doc = _owner_document(rng.start_node)
        if doc is None or rng.end_node.parent is None or _owner_document(rng.end_node) is not doc:
            return None
        if self._touches_marker(rng):
            return None

        bounds = _split_boundaries(rng)
        if bounds is None:
            return None
        start, end = _lift_boundaries(*bounds)

        marker = doc.new_tag("span")
        self._decorate(marker, category, metadata)

        if start is end:
            common = start.parent
            at = common.index(start)
            common.insert(at, marker)
            marker.append(start.extract())
            return marker

        common = next(p for p in start.parents if _contains(p, end))
        path_s = _path_from(common, start)
        path_e = _path_from(common, end)
        head, tail = path_s[0], path_e[0]

        middle: list[Any] = []
        sib = head.next_sibling
        while sib is not None and sib is not tail:
            middle.append(sib)
            sib = sib.next_sibling

        at = common.index(head) + (0 if len(path_s) == 1 else 1)
        fragment = [head.extract() if len(path_s) == 1 else _clone_right(doc, head, path_s[1:])]
        fragment.extend(n.extract() for n in middle)
        fragment.append(tail.extract() if len(path_e) == 1 else _clone_left(doc, tail, path_e[1:]))

        for node in fragment:
            marker.append(node)
        common.insert(at, marker)
        return marker

    def update_marker(self, marker: Tag, metadata: dict[str, Any]) -> None:
        """Refresh an existing marker in place."""
        self._decorate(marker, metadata.get("category") or marker.get("data-fact-category", ""), metadata)

    def clear(self, marker: Tag) -> None:
        parent = marker.parent
        if parent is None:
            return
        marker.unwrap()
        parent.smooth()

    def clear_all(self, root: Tag) -> int:
        markers = root.find_all(_is_marker)
        for marker in markers:
            if marker.parent is not None:
                marker.unwrap()
        if markers:
            root.smooth()
        return len(markers)

    def find_marker(self, root: Tag, sentence_id: str) -> Tag | None:
        return root.find(lambda t: _is_marker(t) and t.get("data-fact-id") == sentence_id)

    def highlight(self, container: Tag | None, text: str, result: ClassificationResult) -> Tag | None:
        """Wrap a flagged sentence, or update its marker if one already exists."""
        metadata = {"text": text, "global_index": result.global_index, **result.to_dict()}
        doc = _owner_document(container) if container is not None else None
        existing = self.find_marker(doc, result.sentence_id) if doc is not None else None
        if existing is not None:
            self.update_marker(existing, metadata)
            return existing
        rng = self.locate(container, text)
        if rng is None:
            logger.debug("sentence %s not found in container", result.sentence_id)
            return None
        return self.wrap(rng, result.category, metadata)

    @staticmethod
    def read_metadata(marker: Tag) -> dict[str, Any]:
        raw = marker.get("data-fact-meta") or ""
        try:
            return json.loads(unquote(raw)) if raw else {}
        except json.JSONDecodeError:
            return {}

    def _decorate(self, marker: Tag, category: str, metadata: dict[str, Any]) -> None:
        info = find_category(self.categories, category) or choose_category(self.categories, category)
        marker["class"] = [MARKER_CLASS]
        marker["data-fact-id"] = str(metadata.get("id", ""))
        marker["data-fact-category"] = category
        marker["data-fact-meta"] = quote(json.dumps(metadata, ensure_ascii=False))
        marker["data-fact-rationale"] = metadata.get("rationale") or ""
        marker["style"] = (
            f"background:{rgba_from_hex(info.color, 0.26)};"
            f"box-shadow:inset 0 0 0 1px {rgba_from_hex(info.color, 0.55)};"
            f"color:{info.text_color or '#111111'}"
        )

    def _touches_marker(self, rng: TextRange) -> bool:
        for node in (rng.start_node, rng.end_node):
            if any(_is_marker(p) for p in node.parents):
                return True
        if rng.start_node is rng.end_node:
            return False
        for el in rng.start_node.next_elements:
            if el is rng.end_node:
                return False
            if _is_marker(el):
                return True
        return True


# ----------------------------------------------------------------------
# Range extraction helpers
# ----------------------------------------------------------------------

def _split_boundaries(rng: TextRange) -> tuple[NavigableString, NavigableString] | None:
    """Split edge text nodes so the range starts and ends on whole nodes."""
    start, so = rng.start_node, rng.start_offset
    end, eo = rng.end_node, rng.end_offset

    if start is end:
        value = str(start)
        if not 0 <= so < eo <= len(value):
            return None
        mid = NavigableString(value[so:eo])
        start.replace_with(mid)
        if so > 0:
            mid.insert_before(NavigableString(value[:so]))
        if eo < len(value):
            mid.insert_after(NavigableString(value[eo:]))
        return mid, mid

    if not 0 <= so < len(start) or not 0 < eo <= len(end):
        return None
    if eo < len(end):
        value = str(end)
        left = NavigableString(value[:eo])
        end.replace_with(left)
        left.insert_after(NavigableString(value[eo:]))
        end = left
    if so > 0:
        value = str(start)
        right = NavigableString(value[so:])
        start.replace_with(right)
        right.insert_before(NavigableString(value[:so]))
        start = right
    return start, end


def _lift_boundaries(start: Any, end: Any) -> tuple[Any, Any]:
    """Promote boundaries to whole elements the range covers from edge to edge."""
    if start is end:
        return start, end
    while (
        start.previous_sibling is None
        and start.parent is not None
        and not isinstance(start.parent, BeautifulSoup)
        and not _contains(start.parent, end)
    ):
        start = start.parent
    while (
        end.next_sibling is None
        and end.parent is not None
        and not isinstance(end.parent, BeautifulSoup)
        and not _contains(end.parent, start)
    ):
        end = end.parent
    return start, end


def _path_from(common: Tag, node: Any) -> list[Any]:
    """Nodes from common's child down to node, inclusive."""
    path = [node]
    while path[-1].parent is not common:
        path.append(path[-1].parent)
    path.reverse()
    return path


def _shallow_clone(doc: BeautifulSoup, element: Tag) -> Tag:
    attrs = {k: (list(v) if isinstance(v, list) else v) for k, v in element.attrs.items()}
    return doc.new_tag(element.name, attrs=attrs)


def _clone_right(doc: BeautifulSoup, element: Tag, path: list[Any]) -> Tag:
    """Clone of element holding path[0]'s selected part and everything after it."""
    clone = _shallow_clone(doc, element)
    child = path[0]
    following = list(child.next_siblings)
    clone.append(child.extract() if len(path) == 1 else _clone_right(doc, child, path[1:]))
    for sib in following:
        clone.append(sib.extract())
    return clone


def _clone_left(doc: BeautifulSoup, element: Tag, path: list[Any]) -> Tag:
    """Clone of element holding everything before path[0] plus its selected part."""
    clone = _shallow_clone(doc, element)
    child = path[0]
    preceding = element.contents[:element.index(child)]
    for sib in preceding:
        clone.append(sib.extract())
    clone.append(child.extract() if len(path) == 1 else _clone_left(doc, child, path[1:]))
    return clone
