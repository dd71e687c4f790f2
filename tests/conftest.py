import pytest

from accessaudit.audit.auditor import PageAuditResult, RawViolation
from accessaudit.audit.discovery import DiscoveryResult
from accessaudit.audit.store import SqlAuditStore
from accessaudit.config import Settings
from accessaudit.database import init_db, make_engine, make_session_factory
from accessaudit.models import Violation
from accessaudit.schemas import BrokenPageErrorType


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return SqlAuditStore(make_session_factory(engine))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        AUDIT_BATCH_SIZE=2,
        AUDIT_MAX_ITERATIONS=20,
        AUDIT_PAGE_TIMEOUT=5.0,
        AUDIT_RETRY_ATTEMPTS=2,
    )


def img_violation(selector="div.card:nth-child(1) > img", html='<img src="a.png">', impact="critical"):
    return RawViolation.create("image-alt", impact, selector, html, help="Images must have alternative text")


class FakeAuditor:
    """
    In-memory site: url -> (violations, links). URLs listed in `failing`
    come back as HTTP errors with the given status.
    """

    def __init__(self, site=None, failing=None, on_audit=None):
        self.site = site or {}
        self.failing = failing or {}
        self.on_audit = on_audit
        self.calls = []

    async def audit(self, url, options):
        self.calls.append(url)
        if self.on_audit is not None:
            self.on_audit(url)
        if url in self.failing:
            status = self.failing[url]
            return PageAuditResult(
                url=url, error=f"HTTP {status}", error_type=BrokenPageErrorType.HTTP_ERROR, http_status=status
            )
        violations, links = self.site.get(url, ([], []))
        return PageAuditResult(
            url=url,
            violations=list(violations),
            discovered_links=list(links) if options.extract_links else [],
            load_time=0.01,
        )


class StaticDiscovery:
    def __init__(self, urls):
        self.urls = list(urls)

    async def discover(self, config):
        return DiscoveryResult(urls=list(self.urls), meta={"method": "static"})


def stored_violations(store, audit_id):
    """Raw violation rows persisted for a run."""
    with store.session_factory() as db:
        return db.query(Violation).filter(Violation.audit_id == audit_id).count()
