"""
Long-lived IMAP watcher.

States: DISCONNECTED -> CONNECTING -> POLLING -> (error / server close) ->
RECONNECT_SCHEDULED -> CONNECTING ...; STOPPED after stop().

Reconnect delays reuse the transport backoff (base * 2^(n-1), capped, plus jitter)
keyed by a consecutive-failure counter. The counter resets on every successful
login; once it reaches max_consecutive_failures it resets and a long cooldown
is used for that one wait.
"""

from __future__ import annotations

import imaplib
import logging
import random
import threading
from dataclasses import dataclass
from email import policy
from email.parser import BytesParser
from email.utils import parseaddr
from enum import Enum
from typing import Callable, List, Optional

from config import ImapSettings
from errors import ProtocolDisconnect
from transport import RetryPolicy, describe_error

logger = logging.getLogger(__name__)

HEADER_FIELDS = "(BODY.PEEK[HEADER.FIELDS (SUBJECT FROM MESSAGE-ID)])"


class MailboxState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    POLLING = "polling"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    STOPPED = "stopped"


@dataclass(frozen=True)
class InboundMessage:
    uid: str
    subject: str
    sender: str
    message_id: str = ""


def connect_imap(settings: ImapSettings) -> imaplib.IMAP4:
    client = imaplib.IMAP4_SSL(settings.host, settings.port, timeout=settings.timeout_seconds)
    try:
        client.login(settings.user, settings.password)
    except Exception:
        try:
            client.shutdown()
        except OSError:
            pass
        raise
    return client


def parse_header_block(uid: str, raw: bytes) -> InboundMessage:
    msg = BytesParser(policy=policy.default).parsebytes(raw, headersonly=True)
    subject = " ".join(str(msg.get("Subject") or "").split())
    sender = parseaddr(str(msg.get("From") or ""))[1]
    return InboundMessage(uid=uid, subject=subject, sender=sender, message_id=str(msg.get("Message-ID") or ""))


class MailboxWatcher:
    def __init__(
        self,
        settings: ImapSettings,
        handler: Callable[[InboundMessage], None],
        *,
        backoff: Optional[RetryPolicy] = None,
        client_factory: Optional[Callable[[], imaplib.IMAP4]] = None,
        wait: Optional[Callable[[float], bool]] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.settings = settings
        self.handler = handler
        self.backoff = backoff or RetryPolicy(backoff_base_ms=1_000, backoff_cap_ms=60_000, jitter_max_ms=500)
        self._client_factory = client_factory or (lambda: connect_imap(settings))
        self._stop_event = threading.Event()
        # wait(seconds) -> True when stopped during the wait.
        self._wait = wait or self._stop_event.wait
        self._rand = rand

        self._state = MailboxState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._client: Optional[imaplib.IMAP4] = None
        self._client_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.consecutive_failures = 0
        self.connects = 0

    # -- state -------------------------------------------------------------

    @property
    def state(self) -> MailboxState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _set_state(self, new: MailboxState) -> None:
        with self._state_lock:
            if self._state == MailboxState.STOPPED:
                return
            if new != self._state:
                logger.debug(f"mail watcher {self._state.value} -> {new.value}")
            self._state = new

    # -- reconnect schedule ------------------------------------------------

    def record_connect_success(self) -> None:
        self.consecutive_failures = 0
        self.connects += 1

    def next_reconnect_delay(self) -> float:
        """Count one more failure and return the wait (seconds) before reconnecting."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.settings.max_consecutive_failures:
            logger.warning(
                f"IMAP failed {self.consecutive_failures} times in a row; "
                f"cooling down for {self.settings.cooldown_ms / 1000:.0f}s"
            )
            self.consecutive_failures = 0
            return self.settings.cooldown_ms / 1000.0
        delay_ms = self.backoff.backoff_delay_ms(self.consecutive_failures)
        if self.backoff.jitter_max_ms > 0:
            delay_ms += int(self._rand() * self.backoff.jitter_max_ms)
        return delay_ms / 1000.0

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self.run, name="mail-watcher", daemon=True)
        self._thread.start()
        logger.info(f"IMAP watcher started for {self.settings.user}@{self.settings.host}")
        return self._thread

    def stop(self, join_timeout: float = 10.0) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        with self._state_lock:
            self._state = MailboxState.STOPPED
        self._close_client()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
        logger.info("IMAP watcher stopped")

    def _close_client(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is None:
            return
        try:
            client.logout()
        except Exception as e:
            logger.debug(f"IMAP logout failed (ignored): {e}")

    # -- main loop ---------------------------------------------------------

    def run(self) -> None:
        while not self.stopped:
            self._set_state(MailboxState.CONNECTING)
            try:
                client = self._client_factory()
            except Exception as e:
                logger.warning(f"IMAP connect failed: {describe_error(e)}")
                if self._schedule_reconnect():
                    break
                continue

            with self._client_lock:
                if self.stopped:
                    self._client = None
                else:
                    self._client = client
            if self.stopped:
                try:
                    client.logout()
                except Exception as e:
                    logger.debug(f"IMAP logout after stop failed: {e}")
                break

            self.record_connect_success()
            self._set_state(MailboxState.POLLING)
            logger.info("IMAP connected; polling for new messages")

            try:
                self._poll_loop(client)
            except ProtocolDisconnect as e:
                logger.info(f"IMAP server closed the connection: {e}")
            except (imaplib.IMAP4.error, OSError) as e:
                logger.warning(f"IMAP session error: {describe_error(e)}")
            except Exception:
                logger.exception("IMAP poll failed; reconnecting")
            finally:
                self._close_client()

            if self.stopped:
                break
            self._set_state(MailboxState.DISCONNECTED)
            if self._schedule_reconnect():
                break

        self._set_state(MailboxState.STOPPED)

    def _schedule_reconnect(self) -> bool:
        """Wait out the reconnect delay; True when stopped meanwhile."""
        if self.stopped:
            return True
        self._set_state(MailboxState.RECONNECT_SCHEDULED)
        delay = self.next_reconnect_delay()
        logger.info(f"IMAP reconnect in {delay:.1f}s (failures={self.consecutive_failures})")
        return bool(self._wait(delay))

    def _poll_loop(self, client: imaplib.IMAP4) -> None:
        interval = self.settings.poll_ms / 1000.0
        while not self.stopped:
            self.poll_once(client)
            if self._wait(interval):
                return

    def poll_once(self, client: imaplib.IMAP4) -> int:
        """Hand every unseen message to the handler; returns how many were handled."""
        try:
            typ, _ = client.select(self.settings.folder)
            if typ != "OK":
                raise imaplib.IMAP4.error(f"select {self.settings.folder} failed: {typ}")
            typ, data = client.uid("search", None, "UNSEEN")
            if typ != "OK":
                raise imaplib.IMAP4.error(f"search failed: {typ}")
            uids = (data[0] or b"").split() if data else []
            handled = 0
            for raw_uid in uids:
                if self.stopped:
                    break
                uid = raw_uid.decode() if isinstance(raw_uid, bytes) else str(raw_uid)
                message = self._fetch_headers(client, uid)
                if message is None:
                    # Left unseen; the next tick fetches it again.
                    continue
                self._dispatch(message)
                handled += 1
                client.uid("store", uid, "+FLAGS", r"(\Seen)")
            return handled
        except imaplib.IMAP4.abort as e:
            raise ProtocolDisconnect(str(e) or "connection aborted") from e
        except EOFError as e:
            raise ProtocolDisconnect("connection ended by server") from e

    def _fetch_headers(self, client: imaplib.IMAP4, uid: str) -> Optional[InboundMessage]:
        typ, data = client.uid("fetch", uid, HEADER_FIELDS)
        if typ != "OK" or not data:
            logger.warning(f"IMAP fetch of uid {uid} failed: {typ}")
            return None
        blocks: List[bytes] = [
            part[1] for part in data if isinstance(part, tuple) and len(part) > 1 and isinstance(part[1], bytes)
        ]
        if not blocks:
            logger.warning(f"IMAP fetch of uid {uid} returned no header block")
            return None
        return parse_header_block(uid, blocks[0])

    def _dispatch(self, message: InboundMessage) -> None:
        try:
            self.handler(message)
        except Exception:
            logger.exception(f"Mail handler failed for uid={message.uid} subject={message.subject!r}")
