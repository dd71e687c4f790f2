# accessaudit/audit/auditor.py
"""
Page auditing.

A page auditor takes one URL and returns the rule failures found on it (plus,
on request, the links it could follow next). Anything that goes wrong while
loading the page is reported back as a classified error on the result rather
than raised, so a single bad page never takes down a batch.

`HtmlPageAuditor` is the built-in implementation: it fetches the page with
httpx, parses it with BeautifulSoup and checks a small set of structural
rules. A headless-browser engine can be plugged in by implementing the
`PageAuditor` protocol.
"""
import asyncio
import hashlib
import logging
import re
import ssl
from collections import Counter
from dataclasses import dataclass, field
from time import perf_counter
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

import httpx
from bs4 import BeautifulSoup
from bs4.element import Tag

from ..schemas import AuthConfig, BrokenPageErrorType, Severity, SubdomainConfig
from .http import build_client
from .links import extract_links
from .patterns import normalize_selector

logger = logging.getLogger(__name__)

HTML_SNIPPET_LIMIT = 500


# ============================================================
# Data
# ============================================================

def make_fingerprint(rule_id: str, selector: str) -> str:
    key = f"{rule_id}|{normalize_selector(selector)}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RawViolation:
    rule_id: str
    impact: Severity
    selector: str
    html: str
    fingerprint: str
    help: str = ""
    description: str = ""
    help_url: Optional[str] = None
    wcag_tags: Tuple[str, ...] = ()
    full_path: Optional[str] = None
    xpath: Optional[str] = None
    parent_html: Optional[str] = None
    failure_summary: Optional[str] = None

    @classmethod
    def create(cls, rule_id: str, impact, selector: str, html: str, **extra) -> "RawViolation":
        return cls(
            rule_id=rule_id,
            impact=Severity(impact),
            selector=selector or "",
            html=html or "",
            fingerprint=make_fingerprint(rule_id, selector or ""),
            **extra,
        )


@dataclass
class BrokenPage:
    url: str
    error_type: BrokenPageErrorType
    error_message: str = ""
    http_status: Optional[int] = None
    discovered_from: Optional[str] = None


@dataclass
class PageAuditOptions:
    wcag_levels: List[str] = field(default_factory=lambda: ["A", "AA"])
    include_best_practices: bool = True
    timeout: float = 60.0
    auth: Optional[AuthConfig] = None
    extract_links: bool = False
    base_url: Optional[str] = None
    subdomain: Optional[SubdomainConfig] = None


@dataclass
class PageAuditResult:
    url: str
    violations: List[RawViolation] = field(default_factory=list)
    discovered_links: List[str] = field(default_factory=list)
    load_time: Optional[float] = None
    error: Optional[str] = None
    error_type: Optional[BrokenPageErrorType] = None
    http_status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PageAuditor(Protocol):
    async def audit(self, url: str, options: PageAuditOptions) -> PageAuditResult:
        ...


# ============================================================
# Error classification
# ============================================================

_STATUS_RE = re.compile(r"(\d{3})")

_STATUS_PHRASES = (
    (("404", "not found"), 404),
    (("500", "internal server error"), 500),
    (("502", "bad gateway"), 502),
    (("503", "service unavailable"), 503),
    (("403", "forbidden"), 403),
)


def _is_ssl_error(exc: BaseException) -> bool:
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, ssl.SSLError):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


def classify_error(exc: BaseException) -> Tuple[BrokenPageErrorType, Optional[int]]:
    """Map a page-load failure to (error_type, http_status)."""
    if isinstance(exc, httpx.HTTPStatusError):
        return BrokenPageErrorType.HTTP_ERROR, exc.response.status_code
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return BrokenPageErrorType.TIMEOUT, None
    if _is_ssl_error(exc):
        return BrokenPageErrorType.SSL_ERROR, None

    message = str(exc).lower()

    if "timeout" in message or "timed out" in message or ("waiting for" in message and "exceeded" in message):
        return BrokenPageErrorType.TIMEOUT, None

    if (
        "ssl" in message
        or "certificate" in message
        or "cert_" in message
        or ("https" in message and "secure" in message)
    ):
        return BrokenPageErrorType.SSL_ERROR, None

    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError, ConnectionError)):
        return BrokenPageErrorType.CONNECTION_ERROR, None

    if any(
        token in message
        for token in (
            "econnrefused", "enotfound", "econnreset", "connection refused",
            "network", "dns", "unreachable", "name or service not known", "err_connection",
        )
    ):
        return BrokenPageErrorType.CONNECTION_ERROR, None

    m = _STATUS_RE.search(message)
    if m:
        status = int(m.group(1))
        if 400 <= status < 600:
            return BrokenPageErrorType.HTTP_ERROR, status

    for phrases, status in _STATUS_PHRASES:
        if any(p in message for p in phrases):
            return BrokenPageErrorType.HTTP_ERROR, status

    return BrokenPageErrorType.OTHER, None


# ============================================================
# Element paths
# ============================================================

def _element_children(parent: Tag) -> List[Tag]:
    return [c for c in parent.children if isinstance(c, Tag)]


def _position(nodes: List[Tag], el: Tag) -> int:
    # 1-based; identity, since bs4 compares tags by markup
    for i, node in enumerate(nodes, start=1):
        if node is el:
            return i
    return 1


def _css_step(el: Tag) -> str:
    parent = el.parent
    if parent is None or not isinstance(parent, Tag) or parent.name == "[document]":
        return el.name
    siblings = _element_children(parent)
    same = [s for s in siblings if s.name == el.name]
    if len(same) == 1:
        return el.name
    return f"{el.name}:nth-child({_position(siblings, el)})"


def _xpath_step(el: Tag) -> str:
    parent = el.parent
    if parent is None or not isinstance(parent, Tag):
        return el.name
    same = [s for s in _element_children(parent) if s.name == el.name]
    return f"{el.name}[{_position(same, el)}]"


def element_paths(el: Tag) -> Tuple[str, str, str]:
    """(short selector, full css path, xpath) for an element."""
    chain: List[Tag] = []
    node = el
    while isinstance(node, Tag) and node.name != "[document]":
        chain.append(node)
        node = node.parent
    chain.reverse()

    full_path = " > ".join(_css_step(n) for n in chain)
    xpath = "/" + "/".join(_xpath_step(n) for n in chain)

    selector = full_path
    el_id = el.get("id")
    if isinstance(el_id, str) and el_id.strip() and re.fullmatch(r"[A-Za-z][\w-]*", el_id.strip()):
        selector = f"#{el_id.strip()}"
    return selector, full_path, xpath


def _snippet(el: Tag) -> str:
    return str(el)[:HTML_SNIPPET_LIMIT]


# ============================================================
# Rules
# ============================================================

@dataclass(frozen=True)
class Rule:
    id: str
    impact: Severity
    help: str
    description: str
    tags: Tuple[str, ...]
    check: Callable[[BeautifulSoup], Iterable[Tag]]

    @property
    def level(self) -> Optional[str]:
        if "best-practice" in self.tags:
            return None
        for tag in self.tags:
            m = re.fullmatch(r"wcag2\d?(a{1,3})", tag)
            if m:
                return m.group(1).upper()
        return None

    @property
    def help_url(self) -> str:
        return f"https://dequeuniversity.com/rules/axe/4.10/{self.id}"


def _text(el: Tag) -> str:
    return el.get_text(" ", strip=True)


def _has_aria_name(el: Tag) -> bool:
    for attr in ("aria-label", "aria-labelledby", "title"):
        value = el.get(attr)
        if isinstance(value, str) and value.strip():
            return True
    return False


def _check_html_lang(soup: BeautifulSoup) -> Iterable[Tag]:
    html = soup.find("html")
    if html is not None and not (html.get("lang") or "").strip():
        yield html


def _check_document_title(soup: BeautifulSoup) -> Iterable[Tag]:
    title = soup.find("title")
    if title is None or not _text(title):
        html = soup.find("html")
        yield html if html is not None else soup


def _check_image_alt(soup: BeautifulSoup) -> Iterable[Tag]:
    for img in soup.find_all("img"):
        role = (img.get("role") or "").strip().lower()
        if role in ("presentation", "none"):
            continue
        if img.has_attr("alt") or _has_aria_name(img):
            continue
        yield img


def _check_link_name(soup: BeautifulSoup) -> Iterable[Tag]:
    for a in soup.find_all("a", href=True):
        if _text(a) or _has_aria_name(a):
            continue
        if any((img.get("alt") or "").strip() for img in a.find_all("img")):
            continue
        yield a


_BUTTON_INPUT_TYPES = ("button", "submit", "reset")


def _check_button_name(soup: BeautifulSoup) -> Iterable[Tag]:
    for btn in soup.find_all("button"):
        if _text(btn) or _has_aria_name(btn):
            continue
        if any((img.get("alt") or "").strip() for img in btn.find_all("img")):
            continue
        yield btn
    for inp in soup.find_all("input"):
        kind = (inp.get("type") or "").strip().lower()
        if kind not in _BUTTON_INPUT_TYPES:
            continue
        # submit/reset have a default accessible name
        if kind in ("submit", "reset") and not inp.has_attr("value"):
            continue
        if (inp.get("value") or "").strip() or _has_aria_name(inp):
            continue
        yield inp


_UNLABELLED_INPUT_TYPES = ("hidden", "submit", "button", "reset", "image")


def _check_label(soup: BeautifulSoup) -> Iterable[Tag]:
    label_for = {
        (lbl.get("for") or "").strip()
        for lbl in soup.find_all("label")
        if (lbl.get("for") or "").strip()
    }
    for el in soup.find_all(["input", "select", "textarea"]):
        if el.name == "input" and (el.get("type") or "text").strip().lower() in _UNLABELLED_INPUT_TYPES:
            continue
        if _has_aria_name(el):
            continue
        el_id = (el.get("id") or "").strip()
        if el_id and el_id in label_for:
            continue
        if el.find_parent("label") is not None:
            continue
        yield el


def _check_duplicate_id(soup: BeautifulSoup) -> Iterable[Tag]:
    tagged = [el for el in soup.find_all(id=True) if (el.get("id") or "").strip()]
    counts = Counter(el["id"].strip() for el in tagged)
    seen = set()
    for el in tagged:
        key = el["id"].strip()
        if counts[key] < 2:
            continue
        if key in seen:
            yield el
        seen.add(key)


DEFAULT_RULES: Tuple[Rule, ...] = (
    Rule("html-has-lang", Severity.SERIOUS, "<html> element must have a lang attribute",
         "Ensures every HTML document has a lang attribute", ("wcag2a", "wcag311"), _check_html_lang),
    Rule("document-title", Severity.SERIOUS, "Documents must have <title> element to aid in navigation",
         "Ensures each HTML document contains a non-empty <title> element", ("wcag2a", "wcag242"),
         _check_document_title),
    Rule("image-alt", Severity.CRITICAL, "Images must have alternative text",
         "Ensures <img> elements have alternative text or a role of none or presentation",
         ("wcag2a", "wcag111"), _check_image_alt),
    Rule("link-name", Severity.SERIOUS, "Links must have discernible text",
         "Ensures links have discernible text", ("wcag2a", "wcag244", "wcag412"), _check_link_name),
    Rule("button-name", Severity.CRITICAL, "Buttons must have discernible text",
         "Ensures buttons have discernible text", ("wcag2a", "wcag412"), _check_button_name),
    Rule("label", Severity.CRITICAL, "Form elements must have labels",
         "Ensures every form element has a label", ("wcag2a", "wcag412", "wcag131"), _check_label),
    Rule("duplicate-id", Severity.MINOR, "id attribute values must be unique",
         "Ensures every id attribute value is unique", ("best-practice",), _check_duplicate_id),
)


def select_rules(rules: Iterable[Rule], wcag_levels: Iterable[str], include_best_practices: bool) -> List[Rule]:
    levels = {lvl.upper() for lvl in wcag_levels or ()}
    out = []
    for rule in rules:
        if rule.level is None:
            if include_best_practices:
                out.append(rule)
        elif rule.level in levels:
            out.append(rule)
    return out


def evaluate_rules(html: str, rules: Iterable[Rule]) -> List[RawViolation]:
    soup = BeautifulSoup(html or "", "html.parser")
    violations: List[RawViolation] = []
    for rule in rules:
        for el in rule.check(soup):
            if not isinstance(el, Tag):
                continue
            selector, full_path, xpath = element_paths(el)
            parent = el.parent if isinstance(el.parent, Tag) and el.parent.name != "[document]" else None
            violations.append(
                RawViolation.create(
                    rule.id,
                    rule.impact,
                    selector,
                    _snippet(el),
                    help=rule.help,
                    description=rule.description,
                    help_url=rule.help_url,
                    wcag_tags=rule.tags,
                    full_path=full_path,
                    xpath=xpath,
                    parent_html=str(parent)[:HTML_SNIPPET_LIMIT] if parent is not None else None,
                    failure_summary=f"Fix the following: {rule.help}",
                )
            )
    return violations


# ============================================================
# Built-in auditor
# ============================================================

class HtmlPageAuditor:
    """Static-HTML auditor: httpx fetch + BeautifulSoup rule checks."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rules: Optional[Iterable[Rule]] = None,
    ) -> None:
        self.client = client
        self.rules = tuple(rules) if rules is not None else DEFAULT_RULES

    async def _fetch(self, client: httpx.AsyncClient, url: str, timeout: float) -> httpx.Response:
        resp = await client.get(url, timeout=timeout, follow_redirects=True)
        resp.raise_for_status()
        return resp

    async def audit(self, url: str, options: PageAuditOptions) -> PageAuditResult:
        started = perf_counter()
        try:
            if self.client is not None:
                resp = await self._fetch(self.client, url, options.timeout)
            else:
                async with build_client(options.auth) as client:
                    resp = await self._fetch(client, url, options.timeout)
        except Exception as e:
            error_type, status = classify_error(e)
            logger.warning("Page load failed for %s (%s): %s", url, error_type.value, e)
            return PageAuditResult(
                url=url,
                load_time=perf_counter() - started,
                error=str(e) or e.__class__.__name__,
                error_type=error_type,
                http_status=status,
            )

        load_time = perf_counter() - started
        html = resp.text
        rules = select_rules(self.rules, options.wcag_levels, options.include_best_practices)
        # bs4 work runs in a worker thread
        violations = await asyncio.to_thread(evaluate_rules, html, rules)

        links: List[str] = []
        if options.extract_links:
            links = await asyncio.to_thread(
                extract_links, html, str(resp.url), options.base_url or url, options.subdomain
            )

        logger.info("Audited %s: %d violations, %d links (%.2fs)", url, len(violations), len(links), load_time)
        return PageAuditResult(url=url, violations=violations, discovered_links=links, load_time=load_time)
