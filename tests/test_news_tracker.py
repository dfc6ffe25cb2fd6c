import os

import pytest

from config import SmtpSettings
from conftest import FakeResponse
from extraction import DateParts, ExtractedPrice
from notifier import EmailNotifier
from news_tracker import (
    ALREADY_SEEN,
    NO_ITEM,
    NO_RECIPIENTS,
    NOT_TODAY,
    NOTIFIER_DISABLED,
    SEND_FAILED,
    SENT,
    NewsTracker,
    find_ticker_in_text,
)

PAGE_URL = "https://news.test/INFM"
PDF_URL = "https://news.test/data/2025/03/00112345.pdf"


def news_page(date="07.03.2025.", ticker_attr=' data-ticker="INFM"', headline="Odluka o isplati dividende"):
    return f"""
    <html><body><table class="vesti">
      <tr{ticker_attr}>
        <td class="date">{date}</td>
        <td class="tekst">{headline}</td>
        <td><a class="pdf" href="/data/2025/03/00112345.pdf" title="Dividenda">PDF</a></td>
      </tr>
      <tr>
        <td class="date">01.03.2025.</td>
        <td class="tekst">Older item</td>
        <td><a class="pdf" href="/data/2025/03/00110000.pdf">PDF</a></td>
      </tr>
    </table></body></html>
    """


@pytest.fixture
def ctx(make_ctx):
    return make_ctx(track_tickers=("INFM",), alerts={"INFM": ["investor@example.com"]})


def test_find_first_item(ctx):
    item = NewsTracker(ctx).find_first_item(PAGE_URL, news_page())

    assert item.pdf_url == PDF_URL
    assert item.date == DateParts(7, 3, 2025)
    assert item.ticker == "INFM"
    assert item.link_title == "Dividenda"
    assert item.headline == "Odluka o isplati dividende"


def test_ticker_falls_back_to_row_text(make_ctx):
    ctx = make_ctx(alerts={"NIIS": ["a@example.com"]})

    item = NewsTracker(ctx).find_first_item(PAGE_URL, news_page(ticker_attr="", headline="NIIS: odluka skupstine"))

    assert item.ticker == "NIIS"


def test_find_ticker_in_text_matches_whole_words():
    assert find_ticker_in_text("Vest za NIIS danas", ["NIS", "NIIS"]) == "NIIS"
    assert find_ticker_in_text("nothing here", ["NIIS"]) is None


def test_new_item_is_sent_once(http, notifier, ctx):
    http.add(PAGE_URL, FakeResponse(news_page()))
    http.add(PDF_URL, FakeResponse(b"%PDF-1.4 not really a pdf"))
    tracker = NewsTracker(ctx, price_lookup=lambda ticker: ExtractedPrice("845,00", 845.0))

    assert tracker.process_page(PAGE_URL) == SENT
    assert tracker.process_page(PAGE_URL) == ALREADY_SEEN

    assert len(notifier.sent) == 1
    sent = notifier.sent[0]
    assert sent["recipients"] == ["investor@example.com"]
    assert sent["subject"] == "VEST: INFM - Dividenda"
    assert "Trenutna cena za INFM:</strong> 845,00" in sent["body"]
    assert sent["attachments"][0].content == b"%PDF-1.4 not really a pdf"
    assert PDF_URL in ctx.seen

    saved = os.listdir(ctx.config.download_dir)
    assert len(saved) == 1
    assert saved[0].endswith("-00112345.pdf")


def test_item_without_recipients_is_marked_seen(http, notifier, make_ctx):
    ctx = make_ctx(track_tickers=("INFM",))
    http.add(PAGE_URL, FakeResponse(news_page()))

    assert NewsTracker(ctx).process_page(PAGE_URL) == NO_RECIPIENTS

    assert PDF_URL in ctx.seen
    assert notifier.sent == []
    assert [url for url, _ in http.calls] == [PAGE_URL]


def test_item_from_another_day_is_ignored(http, notifier, ctx):
    http.add(PAGE_URL, FakeResponse(news_page(date="06.03.2025.")))

    assert NewsTracker(ctx).process_page(PAGE_URL) == NOT_TODAY
    assert PDF_URL not in ctx.seen


def test_failed_send_is_retried_next_pass(http, notifier, ctx):
    notifier.result = False
    http.add(PAGE_URL, FakeResponse(news_page()))
    http.add(PDF_URL, FakeResponse(b"%PDF-1.4"))
    tracker = NewsTracker(ctx)

    assert tracker.process_page(PAGE_URL) == SEND_FAILED
    assert PDF_URL not in ctx.seen

    notifier.result = True
    assert tracker.process_page(PAGE_URL) == SENT
    assert len(notifier.sent) == 2


def test_page_without_dated_rows(http, ctx):
    http.add(PAGE_URL, FakeResponse("<html><body><p>Nema vesti</p></body></html>"))

    assert NewsTracker(ctx).process_page(PAGE_URL) == NO_ITEM


def test_run_pass_covers_every_tracked_page(http, make_ctx):
    ctx = make_ctx(track_tickers=("INFM", "NIIS"), alerts={"INFM": ["investor@example.com"]})
    http.add(PAGE_URL, FakeResponse(news_page(date="06.03.2025.")))
    http.add("https://news.test/NIIS", FakeResponse("down", status_code=503))

    results = NewsTracker(ctx).run_pass()

    assert results == {PAGE_URL: NOT_TODAY, "https://news.test/NIIS": None}


def test_failed_send_reuses_saved_pdf(http, notifier, ctx):
    notifier.result = False
    http.add(PAGE_URL, FakeResponse(news_page()))
    http.add(PDF_URL, FakeResponse(b"%PDF-1.4"))
    tracker = NewsTracker(ctx)

    assert tracker.process_page(PAGE_URL) == SEND_FAILED
    assert tracker.process_page(PAGE_URL) == SEND_FAILED

    assert [url for url, _ in http.calls].count(PDF_URL) == 1
    assert len(os.listdir(ctx.config.download_dir)) == 1
    assert notifier.sent[1]["attachments"][0].content == b"%PDF-1.4"


def test_disabled_email_marks_item_seen(http, ctx):
    ctx.notifier = EmailNotifier(SmtpSettings())
    http.add(PAGE_URL, FakeResponse(news_page()))
    http.add(PDF_URL, FakeResponse(b"%PDF-1.4"))
    tracker = NewsTracker(ctx)

    assert tracker.process_page(PAGE_URL) == NOTIFIER_DISABLED
    assert tracker.process_page(PAGE_URL) == ALREADY_SEEN

    assert PDF_URL in ctx.seen
    assert [url for url, _ in http.calls].count(PDF_URL) == 1
    assert len(os.listdir(ctx.config.download_dir)) == 1
