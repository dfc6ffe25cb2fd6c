"""
Heuristic price locator for quote pages without a configured selector.

Strategies run in a fixed order; each yields candidate texts and the first
candidate that parses to a number wins:
  1. table_label_cell   td/th whose text equals a label -> adjacent cell
  2. label_sibling      any element whose text equals a label -> next sibling element
  3. containing_label   innermost elements whose text contains a label
  4. label_regex        page text: label followed (within a short window) by a number
  5. first_number       first number-looking token anywhere on the page
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, List, NamedTuple, Optional, Sequence

from document import Document, Node
from extraction import NUMBER_RE, ExtractedPrice, extract_price

logger = logging.getLogger(__name__)

DEFAULT_LABELS: Sequence[str] = ("price", "last price", "cena", "poslednja cena", "цена")
LABEL_WINDOW_CHARS = 40
CELL_TAGS = {"td", "th"}


@dataclass(frozen=True)
class Candidate:
    text: str


class LocatorStrategy(NamedTuple):
    name: str
    find: Callable[[Document], List[Candidate]]


@dataclass(frozen=True)
class LocatorResult:
    price: ExtractedPrice
    strategy: str
    candidate: str

    @property
    def value(self) -> float:
        return self.price.numeric


def normalize_label(text: Optional[str]) -> str:
    return " ".join((text or "").split()).strip(" :").casefold()


def _label_set(labels: Iterable[str]) -> List[str]:
    out: List[str] = []
    for label in labels:
        norm = normalize_label(label)
        if norm and norm not in out:
            out.append(norm)
    return out


def table_label_cell(document: Document, labels: Sequence[str]) -> List[Candidate]:
    wanted = set(_label_set(labels))
    found: List[Candidate] = []
    for node in document.iter_elements():
        if node.tag not in CELL_TAGS or normalize_label(node.text) not in wanted:
            continue
        cell = node.next_sibling
        while cell is not None and cell.tag not in CELL_TAGS:
            cell = cell.next_sibling
        if cell is not None:
            found.append(Candidate(cell.text))
    return found


def label_sibling(document: Document, labels: Sequence[str]) -> List[Candidate]:
    wanted = set(_label_set(labels))
    found: List[Candidate] = []
    for node in document.iter_elements():
        if normalize_label(node.text) not in wanted:
            continue
        sibling = node.next_sibling
        if sibling is not None:
            found.append(Candidate(sibling.text))
    return found


def _contains_label(node: Node, wanted: Sequence[str]) -> bool:
    text = node.text.casefold()
    return any(label in text for label in wanted)


def containing_label(document: Document, labels: Sequence[str]) -> List[Candidate]:
    wanted = _label_set(labels)
    found: List[Candidate] = []
    for node in document.iter_elements():
        if not _contains_label(node, wanted):
            continue
        # Only the innermost match; <body> and friends contain every label on the page.
        if any(_contains_label(child, wanted) for child in node.element_children):
            continue
        found.append(Candidate(node.text))
    return found


def label_regex(document: Document, labels: Sequence[str]) -> List[Candidate]:
    text = document.rendered_text()
    found: List[Candidate] = []
    for label in _label_set(labels):
        pattern = re.compile(
            re.escape(label) + r"[^\d]{0,%d}?(%s)" % (LABEL_WINDOW_CHARS, NUMBER_RE.pattern),
            re.IGNORECASE,
        )
        for m in pattern.finditer(text):
            found.append(Candidate(m.group(1)))
    return found


def first_number(document: Document) -> List[Candidate]:
    m = NUMBER_RE.search(document.rendered_text())
    return [Candidate(m.group(0))] if m else []


def default_strategies(labels: Sequence[str] = DEFAULT_LABELS) -> List[LocatorStrategy]:
    labels = tuple(labels)
    return [
        LocatorStrategy("table_label_cell", partial(table_label_cell, labels=labels)),
        LocatorStrategy("label_sibling", partial(label_sibling, labels=labels)),
        LocatorStrategy("containing_label", partial(containing_label, labels=labels)),
        LocatorStrategy("label_regex", partial(label_regex, labels=labels)),
        LocatorStrategy("first_number", first_number),
    ]


def locate_detailed(document: Document, strategies: Optional[Sequence[LocatorStrategy]] = None) -> Optional[LocatorResult]:
    for strategy in strategies if strategies is not None else default_strategies():
        for candidate in strategy.find(document):
            price = extract_price(candidate.text)
            if price is not None:
                logger.debug(f"price {price.raw} found by {strategy.name}")
                return LocatorResult(price=price, strategy=strategy.name, candidate=candidate.text)
    return None


def locate(document: Document, strategies: Optional[Sequence[LocatorStrategy]] = None) -> Optional[float]:
    result = locate_detailed(document, strategies)
    return result.value if result else None


def locate_with_selector(document: Document, selector: str) -> Optional[ExtractedPrice]:
    """Explicit override: number in the first element matching ``selector``."""
    nodes = document.select(selector)
    if not nodes:
        return None
    return extract_price(nodes[0].text)
