from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from browser_pool import BrowserPool, create_chrome_session
from config import MonitorConfig, load_alerts
from extraction import DateParts
from locator import LocatorStrategy, default_strategies
from notifier import EmailNotifier
from state_store import PriceStore, SeenStore
from transport import Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MonitorContext:
    """Everything the trackers and the mail handler share; built once at startup."""

    config: MonitorConfig
    transport: Transport
    notifier: EmailNotifier
    seen: SeenStore
    prices: PriceStore
    pool: Optional[BrowserPool] = None
    alerts: Dict[str, List[str]] = field(default_factory=dict)
    today: Optional[Callable[[], DateParts]] = None

    def __post_init__(self) -> None:
        if self.today is None:
            self.today = partial(DateParts.today, self.config.timezone)
        self.strategies: List[LocatorStrategy] = default_strategies(self.config.price_labels)

    def close(self) -> None:
        if self.pool is not None:
            self.pool.shutdown()
        self.transport.close()


def build_context(cfg: MonitorConfig, *, dry_run: bool = False) -> MonitorContext:
    pool: Optional[BrowserPool] = None
    if cfg.price_fetch_mode == "browser":
        pool = BrowserPool(
            cfg.browser.pool_capacity,
            session_factory=partial(
                create_chrome_session,
                headless=cfg.browser.headless,
                chrome_version_main=cfg.browser.chrome_version_main,
            ),
        )

    alerts = load_alerts(cfg)
    logger.info(f"Loaded alert recipients for {len(alerts)} tickers")

    return MonitorContext(
        config=cfg,
        transport=Transport(cfg.retry, user_agent=cfg.user_agent),
        notifier=EmailNotifier(cfg.smtp, dry_run=dry_run),
        seen=SeenStore(cfg.seen_file).load(),
        prices=PriceStore(cfg.prices_file).load(),
        pool=pool,
        alerts=alerts,
    )


def for_each_subject(name: str, subjects: Sequence[str], fn: Callable[[str], T]) -> Dict[str, Optional[T]]:
    """Run ``fn`` on each subject in order; a failing subject is logged and skipped."""
    results: Dict[str, Optional[T]] = {}
    for subject in subjects:
        try:
            results[subject] = fn(subject)
        except Exception as e:
            results[subject] = None
            logger.error(f"[{name}] {subject} failed: {e}", exc_info=True)
    return results
