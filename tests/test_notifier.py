import smtplib

from config import SmtpSettings
from notifier import Attachment, EmailNotifier, build_news_email, build_price_reply

SMTP = SmtpSettings(host="smtp.example.com", port=587, user="alerts@example.com", password="secret", from_email="alerts@example.com")


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.calls.append("quit")
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def send_message(self, msg, from_addr=None, to_addrs=None):
        self.sent.append((msg, from_addr, list(to_addrs)))


def test_send_uses_starttls_and_login(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

    ok = EmailNotifier(SMTP).send(
        ["investor@example.com"],
        "VEST: INFM - Dividenda",
        "<p>body</p>",
        attachments=[Attachment("vest.pdf", b"%PDF-1.4", "application/pdf")],
    )

    assert ok
    server = FakeSMTP.instances[0]
    assert server.calls[:2] == ["starttls", ("login", "alerts@example.com")]
    msg, from_addr, to_addrs = server.sent[0]
    assert from_addr == "alerts@example.com"
    assert to_addrs == ["investor@example.com"]
    assert msg["Subject"] == "VEST: INFM - Dividenda"
    assert [p.get_filename() for p in msg.iter_attachments()] == ["vest.pdf"]


def test_send_failure_returns_false(monkeypatch):
    class Refusing(FakeSMTP):
        def send_message(self, msg, from_addr=None, to_addrs=None):
            raise smtplib.SMTPRecipientsRefused({"x@example.com": (550, b"no such user")})

    monkeypatch.setattr(smtplib, "SMTP", Refusing)

    assert not EmailNotifier(SMTP).send(["x@example.com"], "s", "b")


def test_unconfigured_or_dry_run_does_not_send(monkeypatch, caplog):
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    FakeSMTP.instances = []

    assert not EmailNotifier(SmtpSettings()).send(["a@example.com"], "s", "b")
    assert not EmailNotifier(SMTP, dry_run=True).send(["a@example.com"], "s", "b")
    assert not EmailNotifier(SMTP).send([], "s", "b")
    assert FakeSMTP.instances == []
    assert any("would send email" in r.getMessage() for r in caplog.records)


def test_news_email_escapes_and_truncates():
    email = build_news_email(
        ticker="INFM",
        link_title="Dividenda",
        headline="Odluka <b>",
        price="845,00",
        pdf_text="x" * 20_000,
    )

    assert email["subject"] == "VEST: INFM - Dividenda"
    assert "Odluka &lt;b&gt;" in email["body"]
    assert "x" * 10_000 in email["body"]
    assert "x" * 10_001 not in email["body"]
    assert "U prilogu je originalni PDF." in email["body"]


def test_price_reply_lines():
    reply = build_price_reply(
        "INFM NIIS JESV",
        ["INFM", "NIIS", "JESV"],
        {"INFM": {"price": "845,00"}, "NIIS": {"price": None}, "JESV": {"error": "timeout"}},
    )

    assert reply["subject"] == "Re: INFM NIIS JESV - prices"
    assert reply["body"].splitlines()[2:] == ["INFM: 845,00", "NIIS: no data", "JESV: error (timeout)"]
