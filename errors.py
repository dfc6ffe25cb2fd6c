"""
Error taxonomy shared by the transport, browser pool, mailbox watcher and trackers.

A missed extraction is not an error: extraction helpers return ``None``.
"""

from __future__ import annotations

from typing import Any, Optional


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class TransientNetworkError(MonitorError):
    """Timeouts, connection resets, broken pipes, 5xx responses. Worth retrying."""


class PermanentRequestError(MonitorError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SessionFault(MonitorError):
    """The shared browser session is gone; the pool must recreate it."""


class ProtocolDisconnect(MonitorError):
    """The mail server closed or ended the connection."""


class FetchError(MonitorError):
    """Raised by convenience helpers when a fetch did not end in ``Success``."""

    def __init__(self, url: str, outcome: Any) -> None:
        super().__init__(f"fetch {url} failed: {outcome}")
        self.url = url
        self.outcome = outcome
