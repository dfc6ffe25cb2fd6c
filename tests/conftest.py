from collections import defaultdict, deque

import pytest
import requests

from config import MonitorConfig
from context import MonitorContext
from extraction import DateParts
from state_store import PriceStore, SeenStore
from transport import RetryPolicy, Transport


TODAY = DateParts(day=7, month=3, year=2025)


class FakeResponse:
    def __init__(self, body=b"", status_code=200, url="", encoding="utf-8"):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status_code = status_code
        self.url = url
        self.encoding = encoding
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error for {self.url}", response=self)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i : i + chunk_size]


class FakeHttpSession:
    """Maps URL -> queue of FakeResponse / exceptions; the last entry repeats."""

    def __init__(self):
        self.routes = defaultdict(deque)
        self.calls = []

    def add(self, url, *results):
        for r in results:
            self.routes[url].append(r)
        return self

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        queue = self.routes.get(url)
        if not queue:
            raise requests.exceptions.ConnectionError(f"no route for {url}")
        result = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(result, BaseException):
            raise result
        if result.url == "":
            result.url = url
        return result

    def close(self):
        pass


class FakeNotifier:
    def __init__(self, result=True, enabled=True):
        self.result = result
        self.enabled = enabled
        self.sent = []

    def send(self, recipients, subject, body, *, is_html=True, attachments=()):
        self.sent.append(
            {
                "recipients": list(recipients),
                "subject": subject,
                "body": body,
                "is_html": is_html,
                "attachments": list(attachments),
            }
        )
        return self.result


@pytest.fixture
def http():
    return FakeHttpSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def transport(http, sleeps):
    policy = RetryPolicy(timeout_ms=5_000, max_attempts=3, backoff_base_ms=100, backoff_cap_ms=1_000, jitter_max_ms=0)
    return Transport(policy, session=http, sleep=sleeps.append)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_ctx(tmp_path, transport, notifier):
    def _make(**overrides):
        alerts = overrides.pop("alerts", {})
        cfg_fields = {
            "price_fetch_mode": "http",
            "price_url_template": "https://quotes.test/{TICKER}",
            "company_page_template": "https://news.test/{TICKER}",
            "seen_file": str(tmp_path / "seen.json"),
            "prices_file": str(tmp_path / "prices.json"),
            "download_dir": str(tmp_path / "pdfs"),
            "alert_receivers": ("desk@example.com",),
        }
        cfg_fields.update(overrides)
        cfg = MonitorConfig(**cfg_fields)
        return MonitorContext(
            config=cfg,
            transport=transport,
            notifier=notifier,
            seen=SeenStore(cfg.seen_file).load(),
            prices=PriceStore(cfg.prices_file).load(),
            pool=None,
            alerts=alerts,
            today=lambda: TODAY,
        )

    return _make
