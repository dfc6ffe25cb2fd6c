#!/usr/bin/env python3
"""
Belex monitor e-mail notifier.

Sends alert messages over SMTP (STARTTLS on 587 by default, implicit TLS when
SMTP_SECURE=true). When SMTP is not configured, or in dry-run mode, messages
are logged instead of sent.
"""

from __future__ import annotations

import html
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Dict, List, Optional, Sequence

from config import SmtpSettings

logger = logging.getLogger(__name__)

MAX_PDF_TEXT_CHARS = 10_000


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "application/octet-stream"


def escape_html(text: Optional[str]) -> str:
    return html.escape(text or "", quote=True)


def _now_local_str() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class EmailNotifier:
    def __init__(self, settings: SmtpSettings, *, dry_run: bool = False) -> None:
        self.settings = settings
        self.dry_run = dry_run

    @property
    def enabled(self) -> bool:
        return self.settings.configured and not self.dry_run

    def build_message(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        *,
        is_html: bool = True,
        attachments: Sequence[Attachment] = (),
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.settings.from_email
        msg["To"] = ", ".join(recipients)
        msg["Subject"] = subject
        if is_html:
            msg.set_content("This message is HTML; open it in an HTML-capable mail client.")
            msg.add_alternative(body, subtype="html")
        else:
            msg.set_content(body)
        for a in attachments:
            maintype, _, subtype = (a.mime_type or "application/octet-stream").partition("/")
            msg.add_attachment(a.content, maintype=maintype, subtype=subtype or "octet-stream", filename=a.filename)
        return msg

    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        *,
        is_html: bool = True,
        attachments: Sequence[Attachment] = (),
    ) -> bool:
        recipients = [r for r in (recipients or []) if r]
        if not recipients:
            logger.error(f"No recipients for message: {subject}")
            return False
        if not self.enabled:
            reason = "dry-run" if self.dry_run else "SMTP not configured (SMTP_HOST or SMTP_USER missing)"
            logger.warning(f"{reason}; would send email to {recipients} subject={subject!r}")
            return False

        msg = self.build_message(recipients, subject, body, is_html=is_html, attachments=attachments)
        s = self.settings
        try:
            if s.secure:
                server: smtplib.SMTP = smtplib.SMTP_SSL(s.host, s.port, timeout=s.timeout_seconds)
            else:
                server = smtplib.SMTP(s.host, s.port, timeout=s.timeout_seconds)
            with server:
                if not s.secure:
                    server.starttls()
                if s.user:
                    server.login(s.user, s.password)
                server.send_message(msg, from_addr=s.from_email, to_addrs=recipients)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email send failed: to={recipients} subject={subject!r} error={e}")
            return False

        logger.info(f"Email sent: to={recipients} subject={subject!r}")
        return True


def build_news_email(
    *,
    ticker: Optional[str],
    link_title: str,
    headline: str,
    price: Optional[str],
    pdf_text: Optional[str],
) -> Dict[str, str]:
    subject = f"VEST: {ticker + ' - ' if ticker else ''}{link_title}"
    parts: List[str] = [f"<h3>{escape_html(headline or subject)}</h3>"]
    if price and ticker:
        parts.append(f"<p><strong>Trenutna cena za {escape_html(ticker)}:</strong> {escape_html(price)}</p>")
    if pdf_text:
        parts.append(f'<pre style="white-space:pre-wrap">{escape_html(pdf_text[:MAX_PDF_TEXT_CHARS])}</pre>')
    parts.append("<p>U prilogu je originalni PDF.</p>")
    return {"subject": subject, "body": "".join(parts)}


def format_change(percent: float) -> str:
    return f"{percent:+.2f}%"


def build_price_alert_email(
    *,
    ticker: str,
    old_price: float,
    new_price: float,
    change_percent: float,
    url: str = "",
) -> Dict[str, str]:
    direction = "up" if change_percent >= 0 else "down"
    change = format_change(change_percent)
    subject = f"Price alert: {ticker} {change}"
    lines = [
        f"<h3>{escape_html(ticker)} moved {direction} {escape_html(change)}</h3>",
        f"<p>Time: {escape_html(_now_local_str())}</p>",
        f"<p>Previous price: {old_price:.2f}<br>Current price: {new_price:.2f}</p>",
    ]
    if url:
        lines.append(f'<p><a href="{escape_html(url)}">{escape_html(url)}</a></p>')
    return {"subject": subject, "body": "".join(lines)}


def build_price_reply(subject: str, tickers: Sequence[str], results: Dict[str, Dict[str, object]]) -> Dict[str, str]:
    lines: List[str] = []
    for t in tickers:
        r = results.get(t)
        if not r or r.get("price") is None and not r.get("error"):
            lines.append(f"{t}: no data")
        elif r.get("error"):
            lines.append(f"{t}: error ({r['error']})")
        else:
            lines.append(f"{t}: {r['price']}")
    body = "Current prices for requested tickers:\n\n" + "\n".join(lines)
    return {"subject": f"Re: {subject} - prices", "body": body}
