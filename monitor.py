#!/usr/bin/env python3
"""
Belex monitor entrypoint: company news PDFs, ticker price moves and e-mail price
requests.

Config comes from environment variables / a .env file (see config.py).
The news pass and the price pass run once at startup, then on their own
intervals; the IMAP watcher runs alongside when IMAP_HOST and IMAP_USER are set.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any, Callable, List, Optional, Tuple

from config import load_config
from context import MonitorContext, build_context
from errors import SessionFault
from logging_utils import setup_logging
from mail_watcher import MailboxWatcher
from news_tracker import NewsTracker
from price_tracker import PriceTracker, fetch_price_for_ticker

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``fn`` immediately, then every ``interval_seconds`` until stopped."""

    def __init__(self, name: str, fn: Callable[[], Any], interval_seconds: float) -> None:
        self.name = name
        self.fn = fn
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def run_once(self) -> None:
        self.runs += 1
        try:
            self.fn()
        except Exception:
            logger.exception(f"[{self.name}] periodic run failed")

    def _loop(self) -> None:
        self.run_once()
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"[{self.name}] running every {self.interval_seconds:g}s")

    def stop(self, join_timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=join_timeout)


def build_trackers(ctx: MonitorContext) -> Tuple[NewsTracker, PriceTracker]:
    prices = PriceTracker(ctx)
    news = NewsTracker(ctx, price_lookup=lambda ticker: fetch_price_for_ticker(ctx, ticker))
    return news, prices


def run_forever(ctx: MonitorContext, stop_event: threading.Event) -> int:
    cfg = ctx.config
    news, prices = build_trackers(ctx)

    if ctx.pool is not None:
        try:
            ctx.pool.ensure_session()
        except SessionFault as e:
            logger.error(f"Startup failed: {e}")
            return 1

    if prices.tickers():
        logger.info(f"Tracking tickers: {', '.join(prices.tickers())}")
    else:
        logger.warning("No tracked tickers (set TRACK_TICKERS); e-mail price requests are still answered")

    tasks: List[PeriodicTask] = [
        PeriodicTask("news", news.run_pass, cfg.poll_interval_ms / 1000.0),
        PeriodicTask("prices", prices.run_pass, float(cfg.check_interval_seconds)),
    ]
    watcher: Optional[MailboxWatcher] = None
    if cfg.imap.configured:
        watcher = MailboxWatcher(cfg.imap, prices.handle_mail_request, backoff=cfg.retry)
    else:
        logger.info("IMAP not configured (IMAP_HOST / IMAP_USER); mail requests disabled")

    for task in tasks:
        task.start()
    if watcher is not None:
        watcher.start()

    while not stop_event.wait(1.0):
        pass

    logger.info("Shutdown initiated...")
    if watcher is not None:
        watcher.stop()
    for task in tasks:
        task.stop()
    logger.info("Shutdown complete.")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Belex news + price monitor")
    parser.add_argument("--env-file", type=str, default="", help="Path to a .env file (default: ./.env if present)")
    parser.add_argument("--once", action="store_true", help="Run one news pass and one price pass, then exit")
    parser.add_argument("--dry-run", action="store_true", help="Run and log only; do not send e-mail")
    parser.add_argument("--log-level", type=str, default="", help="Log level (DEBUG/INFO/WARNING/ERROR)")
    parser.add_argument("--log-file", type=str, default=None, help="Log file path ('' disables file logging)")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.env_file or None)
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 2

    setup_logging(
        level=args.log_level or cfg.log_level,
        log_file=cfg.log_file if args.log_file is None else args.log_file,
    )

    ctx = build_context(cfg, dry_run=bool(args.dry_run))
    try:
        if args.once:
            news, prices = build_trackers(ctx)
            news.run_pass()
            prices.run_pass()
            return 0

        stop_event = threading.Event()

        def _on_signal(signum: int, _frame: Any) -> None:
            logger.info(f"Received signal {signum}")
            stop_event.set()

        signal.signal(signal.SIGINT, _on_signal)
        signal.signal(signal.SIGTERM, _on_signal)
        return run_forever(ctx, stop_event)
    finally:
        ctx.close()


if __name__ == "__main__":
    raise SystemExit(main())
