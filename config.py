"""
Typed monitor configuration read from the environment (and an optional .env file).

Every option has a default; malformed numbers fall back to the default rather
than aborting startup.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from locator import DEFAULT_LABELS
from logging_utils import DEFAULT_LOG_FILE
from transport import DEFAULT_USER_AGENT, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_COMPANY_PAGE_TEMPLATE = "https://www.belex.rs/trgovanje/vesti/hartija/{TICKER}"
DEFAULT_NEWS_LIST_URL = "https://www.belex.rs/trgovanje/vesti/hartija/JESV"
DEFAULT_PRICE_URL_TEMPLATE = "https://www.belex.rs/eng/quote/{TICKER}"

_TICKER_SPLIT_RE = re.compile(r"[ ,;|]+")


def parse_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return default


def parse_float(value: Any, default: float) -> float:
    try:
        return float(str(value).strip())
    except Exception:
        return default


def parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def split_list(value: Optional[str], pattern: str = ",") -> List[str]:
    out: List[str] = []
    for raw in re.split(pattern, value or ""):
        item = raw.strip()
        if item and item not in out:
            out.append(item)
    return out


def parse_tickers(value: Optional[str]) -> List[str]:
    return [t.upper() for t in split_list(value, _TICKER_SPLIT_RE.pattern)]


@dataclass(frozen=True)
class SmtpSettings:
    host: str = ""
    port: int = 587
    secure: bool = False
    user: str = ""
    password: str = ""
    from_email: str = "no-reply@example.com"
    timeout_seconds: int = 30

    @property
    def configured(self) -> bool:
        return bool(self.host or self.user)


@dataclass(frozen=True)
class ImapSettings:
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = ""
    folder: str = "INBOX"
    poll_ms: int = 30_000
    fetch_concurrency: int = 4
    max_consecutive_failures: int = 10
    cooldown_ms: int = 300_000
    timeout_seconds: int = 30

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user)


@dataclass(frozen=True)
class BrowserSettings:
    headless: bool = True
    pool_capacity: int = 4
    page_load_timeout_seconds: int = 25
    chrome_version_main: Optional[int] = None


@dataclass(frozen=True)
class MonitorConfig:
    # scheduling
    poll_interval_ms: int = 60_000
    check_interval_seconds: int = 90

    # transport
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    user_agent: str = DEFAULT_USER_AGENT

    # subjects
    track_tickers: Tuple[str, ...] = ()
    company_page_template: str = DEFAULT_COMPANY_PAGE_TEMPLATE
    news_list_url: str = DEFAULT_NEWS_LIST_URL
    price_url_template: str = DEFAULT_PRICE_URL_TEMPLATE
    price_selector: str = ""
    price_labels: Tuple[str, ...] = tuple(DEFAULT_LABELS)
    price_fetch_mode: str = "browser"

    # thresholds
    alert_up_percent: float = 5.0
    alert_down_percent: float = 5.0
    alert_receivers: Tuple[str, ...] = ()

    # state
    alerts_file: str = "alerts.json"
    default_alerts: str = ""
    seen_file: str = "pdf_seen_tracker.json"
    prices_file: str = "prices.json"
    download_dir: str = "pdfs"

    timezone: str = "Europe/Belgrade"
    log_level: str = "INFO"
    log_file: str = DEFAULT_LOG_FILE

    browser: BrowserSettings = field(default_factory=BrowserSettings)
    imap: ImapSettings = field(default_factory=ImapSettings)
    smtp: SmtpSettings = field(default_factory=SmtpSettings)

    def news_list_urls(self) -> List[str]:
        if self.track_tickers:
            return [self.company_page_template.replace("{TICKER}", t) for t in self.track_tickers]
        return [self.news_list_url] if self.news_list_url else []


def config_from_mapping(env: Mapping[str, str]) -> MonitorConfig:
    d = MonitorConfig()

    def get(key: str, default: str = "") -> str:
        value = env.get(key)
        return default if value is None else str(value)

    retry_defaults = RetryPolicy()
    base_ms = max(0, parse_int(env.get("BACKOFF_BASE_MS"), retry_defaults.backoff_base_ms))
    cap_ms = max(base_ms, parse_int(env.get("BACKOFF_CAP_MS"), retry_defaults.backoff_cap_ms))
    retry = RetryPolicy(
        timeout_ms=max(1, parse_int(env.get("FETCH_TIMEOUT_MS"), retry_defaults.timeout_ms)),
        max_attempts=max(1, parse_int(env.get("MAX_FETCH_RETRIES"), retry_defaults.max_attempts)),
        backoff_base_ms=base_ms,
        backoff_cap_ms=cap_ms,
        jitter_max_ms=max(0, parse_int(env.get("JITTER_MAX_MS"), retry_defaults.jitter_max_ms)),
    )

    chrome_version = get("CHROME_VERSION_MAIN").strip()
    browser = BrowserSettings(
        headless=parse_bool(env.get("BROWSER_HEADLESS"), d.browser.headless),
        pool_capacity=max(0, parse_int(env.get("PAGE_POOL_CAPACITY"), d.browser.pool_capacity)),
        page_load_timeout_seconds=max(1, parse_int(env.get("PAGE_LOAD_TIMEOUT_SECONDS"), d.browser.page_load_timeout_seconds)),
        chrome_version_main=int(chrome_version) if chrome_version.isdigit() else None,
    )

    imap = ImapSettings(
        host=get("IMAP_HOST").strip(),
        port=parse_int(env.get("IMAP_PORT"), d.imap.port),
        user=get("IMAP_USER").strip(),
        password=get("IMAP_PASSWORD"),
        folder=get("IMAP_FOLDER", d.imap.folder).strip() or d.imap.folder,
        poll_ms=max(1_000, parse_int(env.get("IMAP_POLL_MS"), d.imap.poll_ms)),
        fetch_concurrency=max(1, parse_int(env.get("IMAP_FETCH_CONCURRENCY"), d.imap.fetch_concurrency)),
        max_consecutive_failures=max(1, parse_int(env.get("IMAP_MAX_CONSECUTIVE_FAILURES"), d.imap.max_consecutive_failures)),
        cooldown_ms=max(0, parse_int(env.get("IMAP_COOLDOWN_MS"), d.imap.cooldown_ms)),
    )

    smtp_user = get("SMTP_USER").strip()
    smtp = SmtpSettings(
        host=get("SMTP_HOST").strip(),
        port=parse_int(env.get("SMTP_PORT"), d.smtp.port),
        secure=parse_bool(env.get("SMTP_SECURE"), d.smtp.secure),
        user=smtp_user,
        password=get("SMTP_PASS"),
        from_email=get("FROM_EMAIL").strip() or smtp_user or d.smtp.from_email,
    )

    mode = get("PRICE_FETCH_MODE", d.price_fetch_mode).strip().lower()
    if mode not in {"browser", "http"}:
        logger.warning(f"Unknown PRICE_FETCH_MODE={mode!r}; using {d.price_fetch_mode}")
        mode = d.price_fetch_mode

    labels = tuple(split_list(env.get("PRICE_LABELS"))) or d.price_labels

    return MonitorConfig(
        poll_interval_ms=max(1_000, parse_int(env.get("POLL_INTERVAL_MS"), d.poll_interval_ms)),
        check_interval_seconds=max(1, parse_int(env.get("CHECK_INTERVAL_SECONDS"), d.check_interval_seconds)),
        retry=retry,
        user_agent=get("HTTP_USER_AGENT").strip() or d.user_agent,
        track_tickers=tuple(parse_tickers(env.get("TRACK_TICKERS"))),
        company_page_template=get("COMPANY_PAGE_TEMPLATE").strip() or d.company_page_template,
        news_list_url=get("NEWS_LIST_URL").strip() or d.news_list_url,
        price_url_template=get("PRICE_URL_TEMPLATE").strip() or d.price_url_template,
        price_selector=get("PRICE_SELECTOR").strip(),
        price_labels=labels,
        price_fetch_mode=mode,
        alert_up_percent=parse_float(env.get("ALERT_UP_PERCENT"), d.alert_up_percent),
        alert_down_percent=parse_float(env.get("ALERT_DOWN_PERCENT"), d.alert_down_percent),
        alert_receivers=tuple(split_list(env.get("ALERT_RECEIVER"))),
        alerts_file=get("ALERTS_FILE").strip() or d.alerts_file,
        default_alerts=get("DEFAULT_ALERTS"),
        seen_file=get("SEEN_FILE").strip() or d.seen_file,
        prices_file=get("PRICES_FILE").strip() or d.prices_file,
        download_dir=get("DOWNLOAD_DIR").strip() or d.download_dir,
        timezone=get("TIMEZONE").strip() or d.timezone,
        log_level=get("LOG_LEVEL").strip() or d.log_level,
        log_file=get("LOG_FILE", d.log_file).strip(),
        browser=browser,
        imap=imap,
        smtp=smtp,
    )


def load_config(env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> MonitorConfig:
    if environ is None:
        # override=True so edits to .env take effect after a restart.
        if env_file:
            load_dotenv(env_file, override=True)
        else:
            load_dotenv(override=True)
        environ = os.environ
    return config_from_mapping(environ)


def load_alerts(cfg: MonitorConfig) -> Dict[str, List[str]]:
    """Ticker -> recipient list, from ALERTS_FILE, else the DEFAULT_ALERTS JSON."""
    raw: Any = None
    if os.path.exists(cfg.alerts_file):
        try:
            with open(cfg.alerts_file, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read alerts file {cfg.alerts_file}: {e}")
    if not raw and cfg.default_alerts:
        try:
            raw = json.loads(cfg.default_alerts)
        except ValueError:
            logger.warning("DEFAULT_ALERTS is not valid JSON; ignoring it")
    if not isinstance(raw, dict):
        return {}

    alerts: Dict[str, List[str]] = {}
    for ticker, recipients in raw.items():
        if isinstance(recipients, str):
            recipients = split_list(recipients)
        if not isinstance(recipients, list):
            continue
        alerts[str(ticker).strip().upper()] = [str(r).strip() for r in recipients if str(r).strip()]
    return alerts
