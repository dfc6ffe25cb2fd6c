"""
Minimal parsed-document model used by the locator and trackers.

Nodes carry tag, whitespace-normalized text, attributes and tree links only, so
locator strategies can be exercised against hand-built trees as well as HTML
parsed with BeautifulSoup.
"""

from __future__ import annotations

import re
from typing import Callable, Dict, Iterator, List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

_WS_RE = re.compile(r"\s+")
SKIPPED_TAGS = {"script", "style", "noscript", "template", "head"}
BLOCK_TAGS = {
    "address", "article", "aside", "blockquote", "br", "dd", "div", "dl", "dt", "footer",
    "form", "h1", "h2", "h3", "h4", "h5", "h6", "header", "hr", "li", "main", "nav", "ol",
    "p", "pre", "section", "table", "tbody", "td", "tfoot", "th", "thead", "tr", "ul",
}


def normalize_whitespace(text: Optional[str]) -> str:
    return _WS_RE.sub(" ", text or "").strip()


class Node:
    def __init__(
        self,
        tag: str,
        text: str = "",
        attrs: Optional[Dict[str, str]] = None,
        children: Optional[List["Node"]] = None,
    ) -> None:
        self.tag = (tag or "").lower()
        self.own_text = normalize_whitespace(text)
        self.attrs: Dict[str, str] = dict(attrs or {})
        self.parent: Optional[Node] = None
        self.children: List[Node] = []
        self._text: Optional[str] = None
        for child in children or []:
            self.append(child)

    def __repr__(self) -> str:
        return f"<Node {self.tag} {self.text[:40]!r}>"

    def append(self, child: "Node") -> "Node":
        child.parent = self
        self.children.append(child)
        self._invalidate()
        return child

    def _invalidate(self) -> None:
        node: Optional[Node] = self
        while node is not None:
            node._text = None
            node = node.parent

    @property
    def text(self) -> str:
        """Normalized text of this node and all descendants."""
        if self._text is None:
            parts = [self.own_text] + [c.text for c in self.children]
            self._text = normalize_whitespace(" ".join(p for p in parts if p))
        return self._text

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attrs.get(name, default)

    @property
    def is_element(self) -> bool:
        return not self.tag.startswith("#")

    def _element_siblings(self) -> List["Node"]:
        if self.parent is None:
            return []
        return [n for n in self.parent.children if n.is_element]

    @property
    def next_sibling(self) -> Optional["Node"]:
        """Next element sibling; text nodes are skipped."""
        siblings = self._element_siblings()
        for i, n in enumerate(siblings):
            if n is self:
                return siblings[i + 1] if i + 1 < len(siblings) else None
        return None

    @property
    def element_children(self) -> List["Node"]:
        return [c for c in self.children if c.is_element]

    def iter(self) -> Iterator["Node"]:
        """Pre-order walk, self first."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def find(self, predicate: Callable[["Node"], bool]) -> Optional["Node"]:
        for n in self.iter():
            if n is not self and predicate(n):
                return n
        return None

    def closest(self, tag: str) -> Optional["Node"]:
        tag = tag.lower()
        node: Optional[Node] = self
        while node is not None:
            if node.tag == tag:
                return node
            node = node.parent
        return None

    def has_class(self, name: str) -> bool:
        return name in (self.attrs.get("class") or "").split()


class Document:
    def __init__(self, root: Node, *, soup: Optional[BeautifulSoup] = None) -> None:
        self.root = root
        self._soup = soup
        self._by_tag_id: Dict[int, Node] = {}

    @classmethod
    def from_html(cls, html: str) -> "Document":
        soup = BeautifulSoup(html or "", "html.parser")
        doc = cls(Node("#document"), soup=soup)
        doc._build(soup, doc.root)
        return doc

    def _build(self, tag: Tag, into: Node) -> None:
        for child in tag.children:
            if isinstance(child, Tag):
                if child.name in SKIPPED_TAGS:
                    continue
                attrs = {k: " ".join(v) if isinstance(v, list) else str(v) for k, v in child.attrs.items()}
                node = into.append(Node(child.name, attrs=attrs))
                self._by_tag_id[id(child)] = node
                self._build(child, node)
            elif isinstance(child, NavigableString) and type(child) is NavigableString:
                text = normalize_whitespace(str(child))
                if text:
                    into.append(Node("#text", text=text))

    def iter_elements(self) -> Iterator[Node]:
        """Element nodes in document order (text nodes skipped)."""
        for node in self.root.iter():
            if node is not self.root and node.is_element:
                yield node

    @property
    def text(self) -> str:
        return self.root.text

    def rendered_text(self) -> str:
        """Text with line breaks at block boundaries, for regex scans across the page."""
        lines: List[str] = []
        current: List[str] = []

        def walk(node: Node) -> None:
            if node.tag in BLOCK_TAGS and current:
                lines.append(" ".join(current))
                current.clear()
            if node.own_text:
                current.append(node.own_text)
            for child in node.children:
                walk(child)
            if node.tag in BLOCK_TAGS and current:
                lines.append(" ".join(current))
                current.clear()

        walk(self.root)
        if current:
            lines.append(" ".join(current))
        return "\n".join(line for line in lines if line)

    def select(self, css: str) -> List[Node]:
        """CSS selection; only available for documents parsed from HTML."""
        if self._soup is None or not css:
            return []
        out: List[Node] = []
        for tag in self._soup.select(css):
            node = self._by_tag_id.get(id(tag))
            if node is not None:
                out.append(node)
        return out
