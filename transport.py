"""
Retrying fetch layer for an unreliable remote site.

Every logical request produces exactly one FetchOutcome:
- Success(body, content_kind, ...)
- PermanentFailure(reason)   non-transient failure, no retry
- ExhaustedRetries(last_error) after max_attempts transient failures

Transient failures (timeouts, resets, broken pipes, 5xx, explicitly reclassified
4xx such as 408/429) are retried after min(cap, base * 2^(attempt-1)) plus
uniform jitter in [0, jitter_max).
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, FrozenSet, Optional, Union

import requests

from errors import FetchError, PermanentRequestError, SessionFault, TransientNetworkError

if TYPE_CHECKING:
    from browser_pool import BrowserPool

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
)
DEFAULT_RETRY_STATUSES: FrozenSet[int] = frozenset({408, 429})
PDF_MIN_TIMEOUT_MS = 20_000
READ_CHUNK_SIZE = 64 * 1024


class ContentKind(str, Enum):
    HTML = "html"
    PDF = "pdf"
    ANY = "any"


ACCEPT_HEADERS = {
    ContentKind.HTML: "text/html",
    ContentKind.PDF: "application/pdf",
    ContentKind.ANY: "*/*",
}


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int = 15_000
    max_attempts: int = 3
    backoff_base_ms: int = 1_000
    backoff_cap_ms: int = 10_000
    jitter_max_ms: int = 500

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.backoff_base_ms < 0 or self.jitter_max_ms < 0:
            raise ValueError("backoff_base_ms and jitter_max_ms must be >= 0")
        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ValueError("backoff_cap_ms must be >= backoff_base_ms")

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before the retry that follows failed attempt ``attempt`` (1-based), jitter excluded."""
        exponent = max(0, int(attempt) - 1)
        # Past 2^31 the cap always wins; avoid building huge ints for long outages.
        if exponent >= 31:
            return self.backoff_cap_ms
        return min(self.backoff_cap_ms, self.backoff_base_ms * (2 ** exponent))

    def with_min_timeout(self, min_timeout_ms: int) -> "RetryPolicy":
        return replace(self, timeout_ms=max(self.timeout_ms, int(min_timeout_ms)))


@dataclass(frozen=True)
class Success:
    body: bytes
    content_kind: ContentKind
    url: str = ""
    status_code: int = 200
    encoding: Optional[str] = None

    @property
    def text(self) -> str:
        enc = self.encoding or ""
        # requests reports ISO-8859-1 for any text/* response without a charset.
        if not enc or enc.lower() == "iso-8859-1":
            enc = "utf-8"
        return self.body.decode(enc, errors="replace")


@dataclass(frozen=True)
class PermanentFailure:
    reason: str
    status: Optional[int] = None


@dataclass(frozen=True)
class ExhaustedRetries:
    last_error: str
    attempts: int


FetchOutcome = Union[Success, PermanentFailure, ExhaustedRetries]


def _status_of(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    return int(status) if isinstance(status, int) else None


def describe_error(exc: BaseException) -> str:
    msg = " ".join(str(exc).split())
    return f"{type(exc).__name__}: {msg}" if msg else type(exc).__name__


class Transport:
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        session: Optional[requests.Session] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        retry_statuses: FrozenSet[int] = DEFAULT_RETRY_STATUSES,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.session = session or requests.Session()
        self.user_agent = user_agent
        self.retry_statuses = frozenset(retry_statuses)
        self._sleep = sleep
        self._rand = rand
        self.log = log or logger

    # -- classification ---------------------------------------------------

    def is_transient(self, exc: BaseException) -> bool:
        if isinstance(exc, (TransientNetworkError, SessionFault)):
            return True
        if isinstance(exc, PermanentRequestError):
            return False
        if isinstance(exc, requests.exceptions.HTTPError):
            status = _status_of(exc)
            return status is not None and (status >= 500 or status in self.retry_statuses)
        if isinstance(
            exc,
            (
                requests.exceptions.Timeout,
                requests.exceptions.ConnectionError,
                requests.exceptions.ChunkedEncodingError,
            ),
        ):
            return True
        return isinstance(exc, (ConnectionResetError, BrokenPipeError, TimeoutError))

    def compute_delay_ms(self, policy: RetryPolicy, attempt: int) -> int:
        jitter = int(self._rand() * policy.jitter_max_ms) if policy.jitter_max_ms > 0 else 0
        return policy.backoff_delay_ms(attempt) + jitter

    # -- retry loop -------------------------------------------------------

    def run_with_retries(
        self,
        url: str,
        attempt_fn: Callable[[RetryPolicy], Success],
        policy: Optional[RetryPolicy] = None,
    ) -> FetchOutcome:
        policy = policy or self.policy
        last_error = ""
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return attempt_fn(policy)
            except Exception as e:
                last_error = describe_error(e)
                self.log.warning(f"fetch attempt {attempt}/{policy.max_attempts} for {url} failed: {last_error}")
                if not self.is_transient(e):
                    return PermanentFailure(reason=last_error, status=_status_of(e))
                if attempt >= policy.max_attempts:
                    break
                wait_ms = self.compute_delay_ms(policy, attempt)
                self.log.info(f"Retrying {url} after {wait_ms}ms (attempt {attempt + 1}/{policy.max_attempts})")
                self._sleep(wait_ms / 1000.0)

        self.log.error(f"fetch {url} gave up after {policy.max_attempts} attempts: {last_error}")
        return ExhaustedRetries(last_error=last_error, attempts=policy.max_attempts)

    # -- HTTP -------------------------------------------------------------

    def _http_attempt(self, url: str, policy: RetryPolicy, kind: ContentKind) -> Success:
        timeout_s = policy.timeout_ms / 1000.0
        deadline = time.monotonic() + timeout_s
        headers = {"User-Agent": self.user_agent, "Accept": ACCEPT_HEADERS[kind]}

        with self.session.get(
            url,
            headers=headers,
            timeout=(timeout_s, timeout_s),
            stream=True,
            allow_redirects=True,
        ) as resp:
            resp.raise_for_status()
            chunks = []
            for chunk in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
                # Leaving the with-block closes the connection, cancelling the transfer.
                if time.monotonic() > deadline:
                    raise requests.exceptions.Timeout(f"reading {url} exceeded {policy.timeout_ms}ms")
                if chunk:
                    chunks.append(chunk)
            return Success(
                body=b"".join(chunks),
                content_kind=kind,
                url=str(getattr(resp, "url", "") or url),
                status_code=int(getattr(resp, "status_code", 200) or 200),
                encoding=getattr(resp, "encoding", None),
            )

    def fetch(
        self,
        url: str,
        policy: Optional[RetryPolicy] = None,
        kind: ContentKind = ContentKind.HTML,
    ) -> FetchOutcome:
        policy = policy or self.policy
        if kind == ContentKind.PDF:
            policy = policy.with_min_timeout(PDF_MIN_TIMEOUT_MS)
        return self.run_with_retries(url, lambda p: self._http_attempt(url, p, kind), policy)

    # -- browser ----------------------------------------------------------

    def render(self, url: str, pool: "BrowserPool", policy: Optional[RetryPolicy] = None) -> FetchOutcome:
        """Load ``url`` in a pooled browser page and return the rendered HTML."""

        def attempt(p: RetryPolicy) -> Success:
            page = pool.acquire_page()
            try:
                html = page.render(url, timeout_s=p.timeout_ms / 1000.0)
            finally:
                pool.release_page(page)
            return Success(body=html.encode("utf-8"), content_kind=ContentKind.HTML, url=url, encoding="utf-8")

        return self.run_with_retries(url, attempt, policy)

    # -- convenience --------------------------------------------------------

    def get_text(self, url: str, policy: Optional[RetryPolicy] = None) -> str:
        outcome = self.fetch(url, policy, ContentKind.HTML)
        if not isinstance(outcome, Success):
            raise FetchError(url, outcome)
        return outcome.text

    def get_bytes(self, url: str, kind: ContentKind = ContentKind.PDF, policy: Optional[RetryPolicy] = None) -> bytes:
        outcome = self.fetch(url, policy, kind)
        if not isinstance(outcome, Success):
            raise FetchError(url, outcome)
        return outcome.body

    def close(self) -> None:
        try:
            self.session.close()
        except Exception as e:
            self.log.debug(f"session close failed: {e}")


def outcome_summary(outcome: Any) -> str:
    if isinstance(outcome, Success):
        return f"ok ({len(outcome.body)} bytes)"
    if isinstance(outcome, PermanentFailure):
        status = f" HTTP {outcome.status}" if outcome.status else ""
        return f"permanent failure{status}: {outcome.reason}"
    if isinstance(outcome, ExhaustedRetries):
        return f"gave up after {outcome.attempts} attempts: {outcome.last_error}"
    return str(outcome)
