"""
Shared browser session with a bounded pool of reusable pages (tabs).

One automation session is created lazily and shared by every caller; creation
is single-flight. Pages are checked out exclusively and come back through
release_page(), which resets them to about:blank. Pages that fail the reset,
or that would grow the free list past capacity, are closed instead.
A SessionFault from any page operation drops the session; the next
acquire_page() creates a fresh one.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from errors import PermanentRequestError, SessionFault, TransientNetworkError
from transport import RetryPolicy

logger = logging.getLogger(__name__)

BLANK_URL = "about:blank"
SESSION_LOST_MARKERS = (
    "invalid session id",
    "no such session",
    "session deleted",
    "chrome not reachable",
    "disconnected",
    "connection refused",
    "max retries exceeded",
)


class BrowserSession:
    """Operations the pool needs from an automation backend. Page ids are opaque strings."""

    def new_page(self) -> str:
        raise NotImplementedError

    def navigate(self, page_id: str, url: str, timeout_s: float) -> None:
        raise NotImplementedError

    def page_source(self, page_id: str) -> str:
        raise NotImplementedError

    def close_page(self, page_id: str) -> None:
        raise NotImplementedError

    def quit(self) -> None:
        raise NotImplementedError


class SeleniumSession(BrowserSession):
    """Chrome driven through selenium; one driver, one tab per page."""

    def __init__(self, driver) -> None:
        self.driver = driver
        # A webdriver talks over one connection and has a single "current window".
        self._lock = threading.RLock()
        self._anchor = driver.current_window_handle

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        from selenium.common.exceptions import InvalidSessionIdException, TimeoutException, WebDriverException
        from urllib3.exceptions import HTTPError as DriverLinkError

        try:
            yield
        except InvalidSessionIdException as e:
            raise SessionFault(f"browser session lost: {e.msg or e}") from e
        except TimeoutException as e:
            raise TransientNetworkError(f"page load timed out: {e.msg or e}") from e
        except WebDriverException as e:
            msg = str(e.msg or e).lower()
            if any(marker in msg for marker in SESSION_LOST_MARKERS):
                raise SessionFault(f"browser session lost: {e.msg or e}") from e
            if "net::err_" in msg:
                raise TransientNetworkError(f"navigation failed: {e.msg or e}") from e
            raise PermanentRequestError(f"browser error: {e.msg or e}") from e
        except (OSError, DriverLinkError) as e:
            # chromedriver process gone: the HTTP link to it is refused/reset.
            raise SessionFault(f"browser driver unreachable: {e}") from e

    def new_page(self) -> str:
        with self._lock, self._translate_errors():
            self.driver.switch_to.new_window("tab")
            return self.driver.current_window_handle

    def navigate(self, page_id: str, url: str, timeout_s: float) -> None:
        with self._lock, self._translate_errors():
            self.driver.switch_to.window(page_id)
            self.driver.set_page_load_timeout(max(1, int(round(timeout_s))))
            self.driver.get(url)

    def page_source(self, page_id: str) -> str:
        with self._lock, self._translate_errors():
            self.driver.switch_to.window(page_id)
            return self.driver.page_source or ""

    def close_page(self, page_id: str) -> None:
        with self._lock, self._translate_errors():
            self.driver.switch_to.window(page_id)
            self.driver.close()
            self.driver.switch_to.window(self._anchor)

    def quit(self) -> None:
        with self._lock:
            self.driver.quit()


def _chrome_options(headless: bool):
    import undetected_chromedriver as uc

    options = uc.ChromeOptions()
    options.add_argument("--window-size=1920,1080")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    if headless:
        options.add_argument("--headless=new")
    return options


def create_chrome_session(
    *,
    headless: bool = True,
    chrome_version_main: Optional[int] = None,
) -> SeleniumSession:
    import undetected_chromedriver as uc

    try:
        if chrome_version_main:
            driver = uc.Chrome(options=_chrome_options(headless), version_main=int(chrome_version_main))
        else:
            driver = uc.Chrome(options=_chrome_options(headless))
    except Exception as e:
        logger.warning(f"Chrome start with version_main={chrome_version_main} failed ({e}); retrying with autodetect")
        driver = uc.Chrome(options=_chrome_options(headless))
    return SeleniumSession(driver)


class PageHandle:
    def __init__(self, pool: "BrowserPool", session: BrowserSession, page_id: str) -> None:
        self.pool = pool
        self.session = session
        self.page_id = page_id
        self.checked_out = False

    def __repr__(self) -> str:
        return f"<PageHandle {self.page_id} checked_out={self.checked_out}>"

    def render(self, url: str, *, timeout_s: float) -> str:
        """Navigate to ``url`` and return the rendered HTML."""
        self.pool._call(self.session, self.session.navigate, self.page_id, url, timeout_s)
        return self.pool._call(self.session, self.session.page_source, self.page_id)

    def reset(self) -> None:
        self.pool._call(self.session, self.session.navigate, self.page_id, BLANK_URL, self.pool.reset_timeout_s)


class BrowserPool:
    def __init__(
        self,
        capacity: int = 4,
        *,
        session_factory: Callable[[], BrowserSession],
        create_attempts: int = 3,
        create_policy: Optional[RetryPolicy] = None,
        reset_timeout_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        self.reset_timeout_s = reset_timeout_s
        self._factory = session_factory
        self._create_attempts = max(1, int(create_attempts))
        self._create_policy = create_policy or RetryPolicy(backoff_base_ms=2_000, backoff_cap_ms=30_000)
        self._sleep = sleep

        self._session: Optional[BrowserSession] = None
        self._session_lock = threading.Lock()
        self._free: List[PageHandle] = []
        self._free_lock = threading.Lock()
        self._closed = False
        self.sessions_created = 0

    # -- session lifecycle ---------------------------------------------------

    @property
    def free_count(self) -> int:
        with self._free_lock:
            return len(self._free)

    @property
    def has_session(self) -> bool:
        return self._session is not None

    def ensure_session(self) -> BrowserSession:
        with self._session_lock:
            if self._closed:
                raise PermanentRequestError("browser pool is shut down")
            if self._session is not None:
                return self._session

            last_error: Optional[BaseException] = None
            for attempt in range(1, self._create_attempts + 1):
                try:
                    self._session = self._factory()
                    self.sessions_created += 1
                    logger.info(f"Browser session started (#{self.sessions_created})")
                    return self._session
                except Exception as e:
                    last_error = e
                    logger.warning(f"Browser session start attempt {attempt}/{self._create_attempts} failed: {e}")
                    if attempt < self._create_attempts:
                        self._sleep(self._create_policy.backoff_delay_ms(attempt) / 1000.0)
            raise SessionFault(
                f"could not start browser session after {self._create_attempts} attempts: {last_error}"
            ) from last_error

    def invalidate(self, session: BrowserSession) -> None:
        with self._session_lock:
            if self._session is not session:
                return
            self._session = None
        with self._free_lock:
            self._free = [h for h in self._free if h.session is not session]
        logger.warning("Browser session invalidated; it will be recreated on next use")
        self._quit_quietly(session)

    def _call(self, session: BrowserSession, fn: Callable, *args):
        try:
            return fn(*args)
        except SessionFault:
            self.invalidate(session)
            raise

    @staticmethod
    def _quit_quietly(session: BrowserSession) -> None:
        try:
            session.quit()
        except Exception as e:
            logger.debug(f"browser quit failed: {e}")

    # -- pages --------------------------------------------------------------

    def acquire_page(self) -> PageHandle:
        session = self.ensure_session()
        with self._free_lock:
            while self._free:
                handle = self._free.pop()
                if handle.session is session:
                    handle.checked_out = True
                    return handle

        page_id = self._call(session, session.new_page)
        handle = PageHandle(self, session, page_id)
        handle.checked_out = True
        return handle

    def release_page(self, handle: PageHandle) -> None:
        if not handle.checked_out:
            logger.warning(f"release of a page that is not checked out: {handle}")
            return
        handle.checked_out = False

        if self._closed or handle.session is not self._session:
            return

        try:
            handle.reset()
        except Exception as e:
            logger.info(f"page reset failed, closing it: {e}")
            self._destroy(handle)
            return

        with self._free_lock:
            if len(self._free) < self.capacity:
                self._free.append(handle)
                return
        self._destroy(handle)

    def _destroy(self, handle: PageHandle) -> None:
        if handle.session is not self._session:
            return
        try:
            handle.session.close_page(handle.page_id)
        except SessionFault:
            self.invalidate(handle.session)
        except Exception as e:
            logger.debug(f"page close failed: {e}")

    def shutdown(self) -> None:
        with self._session_lock:
            self._closed = True
            session, self._session = self._session, None
        with self._free_lock:
            self._free = []
        if session is not None:
            self._quit_quietly(session)
            logger.info("Browser session closed")
