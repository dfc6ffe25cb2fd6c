"""
Ticker price tracking and inbound price requests.

Each pass fetches every tracked ticker's quote page in configuration order,
pulls the price (PRICE_SELECTOR when set, heuristic locator otherwise), alerts
ALERT_RECEIVER when the move against the stored price crosses
ALERT_UP_PERCENT / ALERT_DOWN_PERCENT, and stores the new price either way.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from context import MonitorContext, for_each_subject
from document import Document
from errors import FetchError
from extraction import ExtractedPrice
from locator import locate_detailed, locate_with_selector
from mail_watcher import InboundMessage
from notifier import build_price_alert_email, build_price_reply
from state_store import merge_tickers
from transport import ContentKind, Success, describe_error, outcome_summary

logger = logging.getLogger(__name__)

SUBJECT_PREFIX_RE = re.compile(r"^\s*(?:(?:re|fw|fwd|aw|odg)\s*:\s*)+", re.IGNORECASE)
TICKER_TOKEN_RE = re.compile(r"\b[A-Z0-9]{3,6}\b")
SUBJECT_STOP_WORDS = {"RE", "FW", "FWD", "PRICE", "PRICES", "CENA", "CENE", "QUOTE", "BELEX", "THE", "AND", "FOR"}


@dataclass(frozen=True)
class PriceCheck:
    ticker: str
    price: Optional[float]
    previous: Optional[float]
    change_percent: Optional[float]
    notified: bool = False


def price_url(template: str, ticker: str) -> str:
    return template.replace("{TICKER}", quote(ticker))


def percent_change(previous: Optional[float], current: float) -> Optional[float]:
    if previous is None or previous == 0:
        return None
    return (current - previous) / previous * 100.0


def crosses_threshold(change_percent: float, up_percent: float, down_percent: float) -> bool:
    return change_percent >= up_percent or change_percent <= -down_percent


def parse_tickers_from_subject(subject: Optional[str]) -> List[str]:
    """Upper-case 3-6 character tokens with at least one letter, minus reply prefixes and stop words."""
    text = SUBJECT_PREFIX_RE.sub("", subject or "")
    out: List[str] = []
    for token in TICKER_TOKEN_RE.findall(text):
        if token in SUBJECT_STOP_WORDS or token.isdigit() or token in out:
            continue
        out.append(token)
    return out


def fetch_price_for_ticker(ctx: MonitorContext, ticker: str) -> Optional[ExtractedPrice]:
    cfg = ctx.config
    url = price_url(cfg.price_url_template, ticker)
    if ctx.pool is not None:
        policy = cfg.retry.with_min_timeout(cfg.browser.page_load_timeout_seconds * 1000)
        outcome = ctx.transport.render(url, ctx.pool, policy)
    else:
        outcome = ctx.transport.fetch(url, kind=ContentKind.HTML)
    if not isinstance(outcome, Success):
        raise FetchError(url, outcome_summary(outcome))

    document = Document.from_html(outcome.text)
    if cfg.price_selector:
        found = locate_with_selector(document, cfg.price_selector)
        strategy = f"selector {cfg.price_selector!r}"
    else:
        result = locate_detailed(document, ctx.strategies)
        found = result.price if result else None
        strategy = result.strategy if result else ""

    if found is None:
        logger.info(f"[{ticker}] no price available at {url}")
        return None
    logger.info(f"[{ticker}] price {found.raw} -> {found.numeric:g} ({strategy})")
    return found


class PriceTracker:
    def __init__(self, ctx: MonitorContext) -> None:
        self.ctx = ctx
        self._lock = threading.Lock()
        self._tickers = merge_tickers(ctx.config.track_tickers, ctx.prices.tickers())

    def tickers(self) -> List[str]:
        with self._lock:
            return list(self._tickers)

    def add_tickers(self, tickers: Iterable[str]) -> None:
        with self._lock:
            added = [t for t in merge_tickers(tickers) if t not in self._tickers]
            self._tickers.extend(added)
        if added:
            logger.info(f"Now also tracking: {', '.join(added)}")

    def check_ticker(self, ticker: str) -> PriceCheck:
        ctx = self.ctx
        cfg = ctx.config
        previous = ctx.prices.last_price(ticker)
        found = fetch_price_for_ticker(ctx, ticker)
        if found is None:
            return PriceCheck(ticker=ticker, price=None, previous=previous, change_percent=None)

        change = percent_change(previous, found.numeric)
        notified = False
        if change is not None and crosses_threshold(change, cfg.alert_up_percent, cfg.alert_down_percent):
            logger.info(f"[{ticker}] moved {change:+.2f}% ({previous} -> {found.numeric})")
            if cfg.alert_receivers:
                email = build_price_alert_email(
                    ticker=ticker,
                    old_price=float(previous),
                    new_price=found.numeric,
                    change_percent=change,
                    url=price_url(cfg.price_url_template, ticker),
                )
                notified = ctx.notifier.send(list(cfg.alert_receivers), email["subject"], email["body"])
            else:
                logger.warning(f"[{ticker}] threshold crossed but ALERT_RECEIVER is empty")

        ctx.prices.update(ticker, found.numeric, found.raw)
        return PriceCheck(ticker=ticker, price=found.numeric, previous=previous, change_percent=change, notified=notified)

    def run_pass(self) -> Dict[str, Optional[PriceCheck]]:
        tickers = self.tickers()
        if not tickers:
            logger.debug("No tracked tickers; skipping price pass")
            return {}
        logger.info(f"Price check for {', '.join(tickers)}")
        return for_each_subject("prices", tickers, self.check_ticker)

    def handle_mail_request(self, message: InboundMessage) -> bool:
        """Reply to ``message`` with current prices of the tickers named in its subject."""
        logger.info(f"Incoming mail from {message.sender} subject: {message.subject}")
        tickers = parse_tickers_from_subject(message.subject)
        if not tickers:
            logger.info("No tickers parsed from subject; ignoring")
            return False
        if not message.sender:
            logger.warning("Price request without a sender address; ignoring")
            return False

        results: Dict[str, Dict[str, object]] = {}
        updates: Dict[str, Tuple[float, str]] = {}
        workers = min(self.ctx.config.imap.fetch_concurrency, len(tickers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="price-request") as executor:
            futures = {executor.submit(fetch_price_for_ticker, self.ctx, t): t for t in tickers}
            for future in as_completed(futures):
                t = futures[future]
                try:
                    found = future.result()
                except Exception as e:
                    results[t] = {"error": describe_error(e)}
                    continue
                results[t] = {"price": found.raw if found else None}
                if found is not None:
                    updates[t] = (found.numeric, found.raw)

        self.add_tickers([t for t in tickers if t in updates])
        self.ctx.prices.update_many(updates)

        reply = build_price_reply(message.subject, tickers, results)
        ok = self.ctx.notifier.send([message.sender], reply["subject"], reply["body"], is_html=False)
        if ok:
            logger.info(f"Replied to {message.sender}")
        return ok
