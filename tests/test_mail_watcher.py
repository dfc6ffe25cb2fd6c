import imaplib

from config import ImapSettings
from mail_watcher import MailboxState, MailboxWatcher, parse_header_block
from transport import RetryPolicy

HEADERS = b"Subject: Re: INFM NIIS price\r\nFrom: Ana Petrovic <ana@example.com>\r\nMessage-ID: <m1@example.com>\r\n\r\n"


class FakeImap:
    def __init__(self, messages=None, abort_on_select=None):
        self.messages = dict(messages or {})
        self.abort_on_select = abort_on_select
        self.selects = 0
        self.stored = []
        self.logged_out = False

    def select(self, folder):
        self.selects += 1
        if self.abort_on_select is not None and self.selects >= self.abort_on_select:
            raise imaplib.IMAP4.abort("socket error: EOF")
        return "OK", [str(len(self.messages)).encode()]

    def uid(self, command, *args):
        if command == "search":
            unseen = [u.encode() for u in self.messages if u not in self.stored]
            return "OK", [b" ".join(unseen)]
        if command == "fetch":
            uid = args[0]
            raw = self.messages[uid]
            return "OK", [(f"{uid} (UID {uid} BODY[HEADER.FIELDS (SUBJECT FROM MESSAGE-ID)] {{{len(raw)}}}".encode(), raw), b")"]
        if command == "store":
            self.stored.append(args[0])
            return "OK", [b""]
        raise AssertionError(f"unexpected IMAP command {command}")

    def logout(self):
        self.logged_out = True


def make_watcher(handler, client_factory=None, wait=None, **settings):
    fields = {"host": "imap.example.com", "user": "prices@example.com", "poll_ms": 30_000}
    fields.update(settings)
    return MailboxWatcher(
        ImapSettings(**fields),
        handler,
        backoff=RetryPolicy(backoff_base_ms=1_000, backoff_cap_ms=60_000, jitter_max_ms=0),
        client_factory=client_factory,
        wait=wait,
    )


def test_parse_header_block():
    message = parse_header_block("7", HEADERS)

    assert message.subject == "Re: INFM NIIS price"
    assert message.sender == "ana@example.com"
    assert message.message_id == "<m1@example.com>"


def test_reconnect_schedule_resets_after_success():
    received = []
    waits = []
    client = FakeImap({"7": HEADERS}, abort_on_select=2)
    calls = {"n": 0}

    def factory():
        calls["n"] += 1
        if calls["n"] in (1, 2):
            raise OSError("connection refused")
        if calls["n"] == 3:
            return client
        watcher.stop()
        raise OSError("connection refused")

    def wait(seconds):
        waits.append(seconds)
        return False

    watcher = make_watcher(received.append, client_factory=factory, wait=wait)
    watcher.run()

    assert waits == [1.0, 2.0, 30.0, 1.0]
    assert [m.uid for m in received] == ["7"]
    assert client.stored == ["7"]
    assert client.logged_out
    assert watcher.connects == 1
    assert watcher.state == MailboxState.STOPPED


def test_cooldown_after_max_consecutive_failures():
    watcher = make_watcher(lambda m: None, max_consecutive_failures=3, cooldown_ms=300_000)

    delays = [watcher.next_reconnect_delay() for _ in range(4)]

    assert delays == [1.0, 2.0, 300.0, 1.0]


def test_success_resets_failure_counter():
    watcher = make_watcher(lambda m: None)
    watcher.next_reconnect_delay()
    watcher.next_reconnect_delay()

    watcher.record_connect_success()

    assert watcher.consecutive_failures == 0
    assert watcher.next_reconnect_delay() == 1.0


def test_handler_errors_are_logged_and_message_marked_seen(caplog):
    def handler(message):
        raise ValueError("boom")

    watcher = make_watcher(handler)
    client = FakeImap({"7": HEADERS})

    with caplog.at_level("ERROR"):
        handled = watcher.poll_once(client)

    assert handled == 1
    assert client.stored == ["7"]
    assert any("Mail handler failed" in r.getMessage() for r in caplog.records)


def test_stop_is_idempotent(caplog):
    watcher = make_watcher(lambda m: None)

    with caplog.at_level("INFO"):
        watcher.stop()
        watcher.stop()

    assert watcher.state == MailboxState.STOPPED
    assert sum("IMAP watcher stopped" in r.getMessage() for r in caplog.records) == 1


class NilHeaderImap(FakeImap):
    def uid(self, command, *args):
        if command == "fetch":
            return "OK", [(f"{args[0]} (UID {args[0]} BODY[HEADER.FIELDS (SUBJECT FROM MESSAGE-ID)] NIL".encode(), None), b")"]
        return super().uid(command, *args)


class PartlyFailingImap(FakeImap):
    def uid(self, command, *args):
        if command == "fetch" and args[0] == "8":
            return "NO", [b"fetch failed"]
        return super().uid(command, *args)


class BrokenSelectImap(FakeImap):
    def select(self, folder):
        raise KeyError(folder)


def test_message_without_headers_is_left_unseen():
    received = []
    watcher = make_watcher(received.append)
    client = NilHeaderImap({"7": HEADERS})

    assert watcher.poll_once(client) == 0
    assert received == []
    assert client.stored == []


def test_failed_fetch_only_skips_that_message():
    received = []
    watcher = make_watcher(received.append)
    client = PartlyFailingImap({"7": HEADERS, "8": HEADERS})

    assert watcher.poll_once(client) == 1
    assert [m.uid for m in received] == ["7"]
    assert client.stored == ["7"]


def test_unexpected_poll_error_reconnects(caplog):
    waits = []
    clients = []
    calls = {"n": 0}

    def factory():
        calls["n"] += 1
        if calls["n"] == 1:
            clients.append(BrokenSelectImap({"7": HEADERS}))
            return clients[0]
        watcher.stop()
        raise OSError("connection refused")

    def wait(seconds):
        waits.append(seconds)
        return False

    watcher = make_watcher(lambda m: None, client_factory=factory, wait=wait)
    with caplog.at_level("ERROR"):
        watcher.run()

    assert calls["n"] == 2
    assert waits == [1.0]
    assert clients[0].logged_out
    assert watcher.state == MailboxState.STOPPED
    assert any("IMAP poll failed" in r.getMessage() for r in caplog.records)
