"""
JSON state files: the seen-set of processed news PDFs and the per-ticker price history.

Files are read once at startup (missing -> empty, corrupt -> backed up, then empty)
and rewritten through a temp file + os.replace after each state-affecting cycle.
Each file has one writer object; its lock serializes snapshot + write.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from extraction import extract_number

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def save_json_file(path: str, data: Any) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def backup_corrupt_file(path: str) -> Optional[str]:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    backup = f"{path}.corrupt-{stamp}"
    try:
        os.replace(path, backup)
    except OSError as e:
        logger.error(f"Could not back up corrupt state file {path}: {e}")
        return None
    logger.warning(f"State file {path} was corrupt; moved to {backup}")
    return backup


def load_json_file(path: str, validate: Callable[[Any], bool]) -> Optional[Any]:
    """Parsed content of ``path``; None when missing or corrupt (corrupt files are backed up)."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read state file {path}: {e}")
        backup_corrupt_file(path)
        return None
    if not validate(data):
        logger.warning(f"State file {path} has unexpected structure")
        backup_corrupt_file(path)
        return None
    return data


class SeenStore:
    """Persisted set of already-processed item keys (news PDF URLs)."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._seen: Set[str] = set()

    def load(self) -> "SeenStore":
        data = load_json_file(self.path, lambda d: isinstance(d, (dict, list)))
        if isinstance(data, dict):
            items = data.get("seen") or []
        else:
            items = data or []
        with self._lock:
            self._seen = {str(x) for x in items if x} if isinstance(items, list) else set()
        logger.info(f"Loaded {len(self._seen)} seen items from {self.path}")
        return self

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def add(self, key: str) -> None:
        with self._lock:
            self._seen.add(key)
            save_json_file(self.path, {"seen": sorted(self._seen)})


class PriceStore:
    """Persisted mapping ticker -> {price, raw, updated}."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._prices: Dict[str, Dict[str, Any]] = {}

    def load(self) -> "PriceStore":
        data = load_json_file(self.path, lambda d: isinstance(d, dict))
        prices: Dict[str, Dict[str, Any]] = {}
        for ticker, entry in (data or {}).items():
            if isinstance(entry, dict):
                prices[str(ticker).upper()] = dict(entry)
            elif entry is not None:
                prices[str(ticker).upper()] = {"price": entry}
        with self._lock:
            self._prices = prices
        logger.info(f"Loaded {len(prices)} tracked prices from {self.path}")
        return self

    def tickers(self) -> List[str]:
        with self._lock:
            return list(self._prices.keys())

    def last_price(self, ticker: str) -> Optional[float]:
        with self._lock:
            entry = self._prices.get(ticker.upper())
        if not entry:
            return None
        value = entry.get("price")
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        # Older files stored the raw page text ("1.234,00").
        return extract_number(str(value)) if value is not None else None

    def entry(self, ticker: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._prices.get(ticker.upper())
            return dict(entry) if entry else None

    def update(self, ticker: str, price: float, raw: Optional[str] = None) -> None:
        self.update_many({ticker: (price, raw)})

    def update_many(self, updates: Dict[str, Any]) -> None:
        """``updates`` maps ticker -> (price, raw)."""
        if not updates:
            return
        now = utc_now_iso()
        with self._lock:
            for ticker, (price, raw) in updates.items():
                self._prices[ticker.upper()] = {"price": float(price), "raw": raw, "updated": now}
            save_json_file(self.path, self._prices)


def merge_tickers(*groups: Iterable[str]) -> List[str]:
    out: List[str] = []
    for group in groups:
        for t in group:
            t = (t or "").strip().upper()
            if t and t not in out:
                out.append(t)
    return out
