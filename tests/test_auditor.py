import ssl
import threading

import httpx
import pytest
from bs4 import BeautifulSoup

from accessaudit.audit import auditor as auditor_module
from accessaudit.audit.auditor import (
    DEFAULT_RULES,
    HtmlPageAuditor,
    PageAuditOptions,
    classify_error,
    element_paths,
    evaluate_rules,
    make_fingerprint,
    select_rules,
)
from accessaudit.schemas import BrokenPageErrorType, Severity

pytestmark = pytest.mark.anyio

PAGE = """<html><head><title>Shop</title></head><body>
<div class="cards"><img src="1.png"><img src="2.png"><img src="3.png" alt="three"></div>
<a href="/empty"></a>
<a href="/ok">Fine</a>
<button></button>
<input type="text" id="q">
<label for="email">Email</label><input type="email" id="email">
<p id="dup">one</p><p id="dup">two</p>
</body></html>"""


def _by_rule(violations):
    out = {}
    for v in violations:
        out.setdefault(v.rule_id, []).append(v)
    return out


def test_evaluate_rules_finds_expected_violations():
    found = _by_rule(evaluate_rules(PAGE, DEFAULT_RULES))

    assert set(found) == {"html-has-lang", "image-alt", "link-name", "button-name", "label", "duplicate-id"}
    assert len(found["image-alt"]) == 2
    assert len(found["label"]) == 1
    assert found["label"][0].selector == "#q"
    assert found["image-alt"][0].impact is Severity.CRITICAL
    assert found["duplicate-id"][0].impact is Severity.MINOR


def test_templated_images_share_a_fingerprint():
    imgs = _by_rule(evaluate_rules(PAGE, DEFAULT_RULES))["image-alt"]
    assert imgs[0].selector != imgs[1].selector
    assert imgs[0].fingerprint == imgs[1].fingerprint
    assert imgs[0].fingerprint == make_fingerprint("image-alt", "html > body > div > img")


def test_missing_title_is_reported():
    found = _by_rule(evaluate_rules('<html lang="en"><body><p>x</p></body></html>', DEFAULT_RULES))
    assert set(found) == {"document-title"}


def test_element_paths():
    soup = BeautifulSoup("<html><body><div><img src='a'><img src='b'></div></body></html>", "html.parser")
    second = soup.find_all("img")[1]
    selector, full_path, xpath = element_paths(second)
    assert full_path == "html > body > div > img:nth-child(2)"
    assert selector == full_path
    assert xpath == "/html[1]/body[1]/div[1]/img[2]"


def test_select_rules_by_level():
    a_only = select_rules(DEFAULT_RULES, ["A"], include_best_practices=False)
    assert "duplicate-id" not in {r.id for r in a_only}
    assert "image-alt" in {r.id for r in a_only}
    assert select_rules(DEFAULT_RULES, ["AAA"], include_best_practices=False) == []
    assert [r.id for r in select_rules(DEFAULT_RULES, [], include_best_practices=True)] == ["duplicate-id"]


@pytest.mark.parametrize(
    "exc, expected",
    [
        (Exception("Navigation timeout of 30000 ms exceeded"), (BrokenPageErrorType.TIMEOUT, None)),
        (httpx.ReadTimeout("read timed out"), (BrokenPageErrorType.TIMEOUT, None)),
        (Exception("net::ERR_CERT_AUTHORITY_INVALID"), (BrokenPageErrorType.SSL_ERROR, None)),
        (Exception("net::ERR_CONNECTION_REFUSED"), (BrokenPageErrorType.CONNECTION_ERROR, None)),
        (httpx.ConnectError("refused"), (BrokenPageErrorType.CONNECTION_ERROR, None)),
        (Exception("Server responded with 503"), (BrokenPageErrorType.HTTP_ERROR, 503)),
        (Exception("page not found"), (BrokenPageErrorType.HTTP_ERROR, 404)),
        (Exception("something odd"), (BrokenPageErrorType.OTHER, None)),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) == expected


def test_classify_error_follows_cause_chain():
    try:
        try:
            raise ssl.SSLError("handshake failure")
        except ssl.SSLError as inner:
            raise RuntimeError("fetch failed") from inner
    except RuntimeError as outer:
        assert classify_error(outer) == (BrokenPageErrorType.SSL_ERROR, None)


def test_classify_http_status_error():
    request = httpx.Request("GET", "https://e.com/x")
    response = httpx.Response(410, request=request)
    exc = httpx.HTTPStatusError("gone", request=request, response=response)
    assert classify_error(exc) == (BrokenPageErrorType.HTTP_ERROR, 410)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_html_auditor_returns_violations_and_links():
    def handler(request):
        return httpx.Response(200, text=PAGE)

    async with _client(handler) as client:
        auditor = HtmlPageAuditor(client=client)
        result = await auditor.audit(
            "https://e.com/shop",
            PageAuditOptions(extract_links=True, base_url="https://e.com"),
        )

    assert result.ok
    assert result.load_time is not None
    assert {v.rule_id for v in result.violations} >= {"image-alt", "label"}
    assert result.discovered_links == ["https://e.com/empty", "https://e.com/ok"]


async def test_html_auditor_parses_off_the_event_loop(monkeypatch):
    threads = []

    def recording(html, rules):
        threads.append(threading.get_ident())
        return evaluate_rules(html, rules)

    monkeypatch.setattr(auditor_module, "evaluate_rules", recording)

    async with _client(lambda request: httpx.Response(200, text=PAGE)) as client:
        result = await HtmlPageAuditor(client=client).audit("https://e.com/shop", PageAuditOptions())

    assert result.ok
    assert result.violations
    assert len(threads) == 1
    assert threads[0] != threading.get_ident()


async def test_html_auditor_reports_http_errors():
    async with _client(lambda request: httpx.Response(404, text="nope")) as client:
        result = await HtmlPageAuditor(client=client).audit("https://e.com/missing", PageAuditOptions())

    assert not result.ok
    assert result.error_type is BrokenPageErrorType.HTTP_ERROR
    assert result.http_status == 404
    assert result.violations == []


async def test_html_auditor_reports_connection_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        result = await HtmlPageAuditor(client=client).audit("https://down.example/", PageAuditOptions())

    assert result.error_type is BrokenPageErrorType.CONNECTION_ERROR
    assert result.http_status is None
