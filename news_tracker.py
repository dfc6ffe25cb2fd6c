"""
Company news tracker.

For each company news page, looks at the first dated row only. When that row
is dated today (in the configured timezone) and links a PDF that has not been
processed yet, the PDF is downloaded, its text extracted and mailed to the
ticker's subscribers with the PDF attached. Processed PDF URLs go to the seen
file so restarts do not resend them.
"""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple
from urllib.parse import urljoin, urlparse

from context import MonitorContext, for_each_subject
from document import Document, Node
from extraction import DateParts, ExtractedPrice, extract_date, extract_pdf_text
from notifier import Attachment, build_news_email
from transport import ContentKind

logger = logging.getLogger(__name__)

# process_page() results
NO_ITEM = "no_item"
NOT_TODAY = "not_today"
ALREADY_SEEN = "seen"
NO_RECIPIENTS = "no_recipients"
SENT = "sent"
SEND_FAILED = "send_failed"
NOTIFIER_DISABLED = "notifier_disabled"


@dataclass(frozen=True)
class NewsItem:
    page_url: str
    pdf_url: str
    date: DateParts
    ticker: Optional[str]
    link_title: str
    headline: str


def find_ticker_in_text(text: Optional[str], tickers: Iterable[str]) -> Optional[str]:
    if not text:
        return None
    upper = text.upper()
    for t in tickers:
        if t and re.search(rf"\b{re.escape(t.upper())}\b", upper):
            return t
    return None


def pdf_filename(pdf_url: str) -> str:
    return os.path.basename(urlparse(pdf_url).path)


def _is_pdf_link(node: Node) -> bool:
    return node.tag == "a" and (node.get("href") or "").strip().lower().endswith(".pdf")


def save_pdf(download_dir: str, pdf_url: str, data: bytes) -> str:
    os.makedirs(download_dir, exist_ok=True)
    stamp = int(time.time() * 1000)
    filename = pdf_filename(pdf_url) or f"news-{stamp}.pdf"
    local_path = os.path.join(download_dir, f"{stamp}-{filename}")
    with open(local_path, "wb") as f:
        f.write(data)
    return local_path


class NewsTracker:
    def __init__(
        self,
        ctx: MonitorContext,
        price_lookup: Optional[Callable[[str], Optional[ExtractedPrice]]] = None,
    ) -> None:
        self.ctx = ctx
        self.price_lookup = price_lookup
        # pdf_url -> local copy kept while its alert is still unsent
        self._saved: Dict[str, str] = {}

    def find_first_item(self, page_url: str, html: str) -> Optional[NewsItem]:
        document = Document.from_html(html)
        date_cell = document.root.find(lambda n: n.tag == "td" and n.has_class("date"))
        if date_cell is None:
            return None
        parsed = extract_date(date_cell.text)
        if parsed is None:
            return None

        row = date_cell.closest("tr") or date_cell.parent or document.root
        link = row.find(_is_pdf_link)
        if link is None:
            return None
        pdf_url = urljoin(page_url, (link.get("href") or "").strip())

        alert_keys = list(self.ctx.alerts.keys())
        ticker = (row.get("data-ticker") or "").strip().upper() or None
        if not ticker:
            ticker = find_ticker_in_text(row.text, alert_keys) or find_ticker_in_text(pdf_filename(pdf_url), alert_keys)

        text_cell = row.find(lambda n: n.tag == "td" and n.has_class("tekst"))
        link_title = (link.get("title") or "").strip() or link.text or pdf_filename(pdf_url)
        return NewsItem(
            page_url=page_url,
            pdf_url=pdf_url,
            date=parsed,
            ticker=ticker,
            link_title=link_title,
            headline=text_cell.text if text_cell is not None else "",
        )

    def _pdf_for(self, pdf_url: str) -> Tuple[bytes, str]:
        local_path = self._saved.get(pdf_url)
        if local_path and os.path.exists(local_path):
            with open(local_path, "rb") as f:
                return f.read(), local_path
        data = self.ctx.transport.get_bytes(pdf_url, ContentKind.PDF)
        local_path = save_pdf(self.ctx.config.download_dir, pdf_url, data)
        self._saved[pdf_url] = local_path
        return data, local_path

    def _current_price(self, ticker: Optional[str]) -> Optional[str]:
        if not ticker or self.price_lookup is None:
            return None
        try:
            found = self.price_lookup(ticker)
        except Exception as e:
            logger.warning(f"[{ticker}] price lookup for news mail failed: {e}")
            return None
        return found.raw if found else None

    def process_page(self, page_url: str) -> str:
        ctx = self.ctx
        html = ctx.transport.get_text(page_url)
        item = self.find_first_item(page_url, html)
        if item is None:
            return NO_ITEM
        if item.date != ctx.today():
            return NOT_TODAY
        if item.pdf_url in ctx.seen:
            return ALREADY_SEEN

        recipients = ctx.alerts.get(item.ticker, []) if item.ticker else []
        if not recipients:
            ctx.seen.add(item.pdf_url)
            logger.info(f"No recipients for {item.ticker} - marked as seen: {item.pdf_url}")
            return NO_RECIPIENTS

        data, local_path = self._pdf_for(item.pdf_url)
        text = extract_pdf_text(data)
        email = build_news_email(
            ticker=item.ticker,
            link_title=item.link_title or os.path.basename(local_path),
            headline=item.headline,
            price=self._current_price(item.ticker),
            pdf_text=text,
        )
        ok = ctx.notifier.send(
            recipients,
            email["subject"],
            email["body"],
            attachments=[Attachment(os.path.basename(local_path), data, "application/pdf")],
        )
        if not ok and ctx.notifier.enabled:
            logger.warning(f"Alert for {item.pdf_url} not sent; will retry on the next pass")
            return SEND_FAILED

        ctx.seen.add(item.pdf_url)
        self._saved.pop(item.pdf_url, None)
        if not ok:
            logger.info(f"E-mail disabled; marked as seen: {item.pdf_url}")
            return NOTIFIER_DISABLED
        logger.info(f"Alert sent for {item.pdf_url} ticker {item.ticker}")
        return SENT

    def run_pass(self) -> Dict[str, Optional[str]]:
        urls = self.ctx.config.news_list_urls()
        logger.info(f"News check for {len(urls)} pages")
        return for_each_subject("news", urls, self.process_page)
