# accessaudit/audit/store.py
"""
Persistence for audit runs.

`AuditStore` is what the runner needs from storage; `SqlAuditStore` is the
SQLAlchemy implementation. Each call opens its own short session and commits
before returning, so progress written mid-run is visible to pollers right
away. Database errors surface as `StoreError`.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models import (
    AggregatedViolationRecord,
    Audit,
    AuditPage,
    BrokenPageRecord,
    Page,
    Schedule,
    Violation,
)
from ..schemas import IN_PROGRESS_STATUSES, AuditRequest, AuditStatus, AuditSummary, PageAuditStatus

logger = logging.getLogger(__name__)

TERMINAL = {s.value for s in AuditStatus if s.is_terminal}
IN_PROGRESS = [s.value for s in IN_PROGRESS_STATUSES]


class StoreError(Exception):
    """Storage unreachable or a write failed."""


def utcnow() -> datetime:
    # naive UTC; SQLite has no timezone support
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for i in range(0, len(items), max(1, size)):
        yield items[i:i + size]


def _value(v):
    return getattr(v, "value", v)


class AuditStore(Protocol):
    def ping(self) -> None: ...
    def create_audit(self, request: AuditRequest, is_scheduled: bool = False,
                     previous_audit_id: Optional[int] = None) -> int: ...
    def set_status(self, audit_id: int, status: AuditStatus, **fields) -> bool: ...
    def is_cancelled(self, audit_id: int) -> bool: ...
    def upsert_page(self, project_id: str, url: str, path: str, found_via: str = "CRAWL") -> int: ...
    def start_audit_page(self, audit_id: int, page_id: int) -> int: ...
    def finish_audit_page(self, audit_page_id: int, status: PageAuditStatus, **fields) -> None: ...
    def insert_violations(self, audit_id: int, audit_page_id: int, violations: Sequence[Any]) -> int: ...
    def reset_audit(self, audit_id: int) -> bool: ...
    def update_progress(self, audit_id: int, processed: int, failed: int, iteration: int) -> None: ...
    def insert_broken_pages(self, audit_id: int, pages: Sequence[Any]) -> int: ...
    def insert_aggregated(self, audit_id: int, aggregated: Iterable[Any]) -> int: ...
    def previous_completed_audit(self, project_id: str, exclude_id: Optional[int] = None) -> Optional[int]: ...
    def complete(self, audit_id: int, summary: AuditSummary, health_score: int,
                 previous_audit_id: Optional[int] = None) -> bool: ...
    def fail(self, audit_id: int, message: str) -> bool: ...


class SqlAuditStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Store operation failed: %s", e)
            raise StoreError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------
    def ping(self) -> None:
        with self._session() as db:
            db.execute(text("SELECT 1"))

    def create_audit(
        self,
        request: AuditRequest,
        is_scheduled: bool = False,
        previous_audit_id: Optional[int] = None,
    ) -> int:
        with self._session() as db:
            audit = Audit(
                project_id=request.project_id,
                status=AuditStatus.PENDING.value,
                discovery_method=request.discovery.method,
                request=request.model_dump(mode="json", exclude={"audit_id"}),
                is_scheduled=is_scheduled,
                previous_audit_id=previous_audit_id,
            )
            db.add(audit)
            db.flush()
            logger.info("Created audit %s for project %s", audit.id, request.project_id)
            return audit.id

    def get_audit(self, audit_id: int) -> Optional[Audit]:
        with self._session() as db:
            audit = db.get(Audit, audit_id)
            if audit is not None:
                db.expunge(audit)
            return audit

    def _mutable(self, db: Session, audit_id: int) -> Optional[Audit]:
        audit = db.get(Audit, audit_id)
        if audit is None:
            logger.warning("Audit %s not found", audit_id)
            return None
        if audit.status in TERMINAL:
            logger.info("Audit %s already %s; not updating", audit_id, audit.status)
            return None
        return audit

    def set_status(self, audit_id: int, status: AuditStatus, **fields) -> bool:
        with self._session() as db:
            audit = self._mutable(db, audit_id)
            if audit is None:
                return False
            audit.status = _value(status)
            for key, value in fields.items():
                setattr(audit, key, value)
            return True

    def is_cancelled(self, audit_id: int) -> bool:
        with self._session() as db:
            status = db.execute(select(Audit.status).where(Audit.id == audit_id)).scalar_one_or_none()
            return status == AuditStatus.CANCELLED.value

    def request_cancel(self, audit_id: int) -> bool:
        """Flip an in-progress run to CANCELLED. False if it already finished."""
        with self._session() as db:
            audit = self._mutable(db, audit_id)
            if audit is None:
                return False
            audit.status = AuditStatus.CANCELLED.value
            audit.completed_at = utcnow()
            logger.info("Cancellation requested for audit %s", audit_id)
            return True

    def reset_audit(self, audit_id: int) -> bool:
        """Drop page, violation and broken-page rows of an unfinished run and zero its counters."""
        with self._session() as db:
            audit = self._mutable(db, audit_id)
            if audit is None:
                return False
            # violations reference audit_pages
            for model in (Violation, AuditPage, BrokenPageRecord, AggregatedViolationRecord):
                db.query(model).filter(model.audit_id == audit_id).delete(synchronize_session=False)
            audit.processed_pages = 0
            audit.failed_pages = 0
            audit.broken_pages_count = 0
            audit.crawl_iterations = 0
            audit.summary = None
            audit.health_score = None
            audit.error_message = None
            return True

    def update_progress(self, audit_id: int, processed: int, failed: int, iteration: int) -> None:
        with self._session() as db:
            audit = self._mutable(db, audit_id)
            if audit is None:
                return
            audit.processed_pages = processed
            audit.failed_pages = failed
            audit.crawl_iterations = iteration

    def complete(
        self,
        audit_id: int,
        summary: AuditSummary,
        health_score: int,
        previous_audit_id: Optional[int] = None,
    ) -> bool:
        with self._session() as db:
            audit = self._mutable(db, audit_id)
            if audit is None:
                return False
            audit.status = AuditStatus.COMPLETED.value
            audit.summary = summary.model_dump(mode="json")
            audit.health_score = health_score
            audit.completed_at = utcnow()
            if previous_audit_id is not None:
                audit.previous_audit_id = previous_audit_id
            return True

    def fail(self, audit_id: int, message: str) -> bool:
        with self._session() as db:
            audit = self._mutable(db, audit_id)
            if audit is None:
                return False
            audit.status = AuditStatus.FAILED.value
            audit.error_message = (message or "")[:2000]
            audit.completed_at = utcnow()
            return True

    def update_summary(self, audit_id: int, summary: AuditSummary, health_score: int) -> bool:
        """Rewrite the summary of a run regardless of its status."""
        with self._session() as db:
            audit = db.get(Audit, audit_id)
            if audit is None:
                return False
            audit.summary = summary.model_dump(mode="json")
            audit.health_score = health_score
            return True

    def previous_completed_audit(self, project_id: str, exclude_id: Optional[int] = None) -> Optional[int]:
        with self._session() as db:
            stmt = (
                select(Audit.id)
                .where(Audit.project_id == project_id, Audit.status == AuditStatus.COMPLETED.value)
                .order_by(Audit.completed_at.desc(), Audit.id.desc())
                .limit(1)
            )
            if exclude_id is not None:
                stmt = stmt.where(Audit.id != exclude_id)
            return db.execute(stmt).scalar_one_or_none()

    def has_run_in_progress(self, project_id: str) -> bool:
        with self._session() as db:
            stmt = select(Audit.id).where(
                Audit.project_id == project_id, Audit.status.in_(IN_PROGRESS)
            ).limit(1)
            return db.execute(stmt).first() is not None

    # ------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------
    def upsert_page(self, project_id: str, url: str, path: str, found_via: str = "CRAWL") -> int:
        with self._session() as db:
            page = db.execute(
                select(Page).where(Page.project_id == project_id, Page.url == url)
            ).scalar_one_or_none()
            if page is None:
                page = Page(project_id=project_id, url=url, path=path, found_via=found_via)
                db.add(page)
                db.flush()
            else:
                page.path = path
            return page.id

    def start_audit_page(self, audit_id: int, page_id: int) -> int:
        with self._session() as db:
            row = AuditPage(audit_id=audit_id, page_id=page_id, status=PageAuditStatus.PROCESSING.value)
            db.add(row)
            db.flush()
            return row.id

    def finish_audit_page(self, audit_page_id: int, status: PageAuditStatus, **fields) -> None:
        with self._session() as db:
            row = db.get(AuditPage, audit_page_id)
            if row is None:
                return
            row.status = _value(status)
            row.processed_at = utcnow()
            for key, value in fields.items():
                setattr(row, key, value)

    def insert_violations(self, audit_id: int, audit_page_id: int, violations: Sequence[Any]) -> int:
        if not violations:
            return 0
        with self._session() as db:
            db.add_all([
                Violation(
                    audit_id=audit_id,
                    audit_page_id=audit_page_id,
                    rule_id=v.rule_id,
                    impact=_value(v.impact),
                    fingerprint=v.fingerprint,
                    selector=v.selector,
                    html=v.html,
                    parent_html=v.parent_html,
                    failure_summary=v.failure_summary,
                    help=v.help,
                    description=v.description,
                    help_url=v.help_url,
                    wcag_tags=list(v.wcag_tags or ()),
                )
                for v in violations
            ])
            return len(violations)

    def insert_broken_pages(self, audit_id: int, pages: Sequence[Any], chunk_size: int = 50) -> int:
        pages = list(pages)
        for chunk in _chunks(pages, chunk_size):
            with self._session() as db:
                db.add_all([
                    BrokenPageRecord(
                        audit_id=audit_id,
                        url=p.url,
                        error_type=_value(p.error_type),
                        http_status=p.http_status,
                        error_message=(p.error_message or "")[:2000],
                        discovered_from=p.discovered_from,
                    )
                    for p in chunk
                ])
        if pages:
            with self._session() as db:
                audit = self._mutable(db, audit_id)
                if audit is not None:
                    audit.broken_pages_count = len(pages)
        return len(pages)

    def list_broken_pages(self, audit_id: int) -> List[BrokenPageRecord]:
        with self._session() as db:
            rows = db.execute(
                select(BrokenPageRecord).where(BrokenPageRecord.audit_id == audit_id).order_by(BrokenPageRecord.id)
            ).scalars().all()
            db.expunge_all()
            return list(rows)

    # ------------------------------------------------------------
    # Aggregated violations
    # ------------------------------------------------------------
    def insert_aggregated(self, audit_id: int, aggregated: Iterable[Any], chunk_size: int = 100) -> int:
        records: List[Dict[str, Any]] = [a.to_record() for a in aggregated]
        with self._session() as db:
            # a retried run replaces what an earlier attempt wrote
            db.query(AggregatedViolationRecord).filter(
                AggregatedViolationRecord.audit_id == audit_id
            ).delete(synchronize_session=False)
        for chunk in _chunks(records, chunk_size):
            with self._session() as db:
                db.add_all([AggregatedViolationRecord(audit_id=audit_id, **rec) for rec in chunk])
        return len(records)

    def load_aggregated(self, audit_id: int) -> List[AggregatedViolationRecord]:
        with self._session() as db:
            rows = db.execute(
                select(AggregatedViolationRecord)
                .where(AggregatedViolationRecord.audit_id == audit_id)
                .order_by(AggregatedViolationRecord.priority.desc(), AggregatedViolationRecord.fingerprint)
            ).scalars().all()
            db.expunge_all()
            return list(rows)

    # ------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------
    def create_schedule(self, request: AuditRequest, interval_hours: int = 24) -> int:
        now = utcnow()
        with self._session() as db:
            sc = Schedule(
                project_id=request.project_id,
                request=request.model_dump(mode="json", exclude={"audit_id"}),
                interval_hours=interval_hours,
                active=True,
                next_run_at=now,
            )
            db.add(sc)
            db.flush()
            return sc.id

    def due_schedules(self, now: Optional[datetime] = None) -> List[Schedule]:
        now = now or utcnow()
        with self._session() as db:
            rows = db.execute(
                select(Schedule)
                .where(Schedule.active == True)  # noqa: E712
                .where((Schedule.next_run_at.is_(None)) | (Schedule.next_run_at <= now))
                .order_by(Schedule.id)
            ).scalars().all()
            db.expunge_all()
            return list(rows)

    def mark_schedule_run(self, schedule_id: int, audit_id: Optional[int], now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        with self._session() as db:
            sc = db.get(Schedule, schedule_id)
            if sc is None:
                return
            sc.last_run_at = now
            sc.next_run_at = now + timedelta(hours=sc.interval_hours or 24)
            if audit_id is not None:
                sc.last_audit_id = audit_id
