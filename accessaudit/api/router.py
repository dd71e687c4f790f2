# accessaudit/api/router.py
import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..audit.aggregator import build_summary
from ..audit.grader import HealthReport, calculate_health_score, grade_summary, score_counts_for
from ..audit.store import SqlAuditStore, StoreError
from ..database import SessionLocal
from ..schemas import (
    AggregatedViolationOut,
    AuditOut,
    AuditRequest,
    AuditStatus,
    AuditStatusOut,
    AuditSummary,
    ScheduleCreate,
)
from ..services.scheduler import execute_audit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_store() -> SqlAuditStore:
    """Overridden in tests with a store bound to a scratch database."""
    return SqlAuditStore(SessionLocal)


def _load(store: SqlAuditStore, audit_id: int):
    try:
        audit = store.get_audit(audit_id)
    except StoreError as e:
        raise HTTPException(status_code=503, detail="Storage unavailable") from e
    if audit is None:
        raise HTTPException(status_code=404, detail=f"Audit {audit_id} not found")
    return audit


# ---------------------------
# Runs
# ---------------------------
@router.post("/audits", response_model=AuditStatusOut, status_code=202)
def start_audit(
    request: AuditRequest,
    background_tasks: BackgroundTasks,
    store: SqlAuditStore = Depends(get_store),
):
    try:
        if store.has_run_in_progress(request.project_id):
            raise HTTPException(status_code=409, detail=f"Project {request.project_id} already has a run in progress")
        previous_id = store.previous_completed_audit(request.project_id)
        audit_id = store.create_audit(request, previous_audit_id=previous_id)
    except StoreError as e:
        logger.exception("Could not create audit")
        raise HTTPException(status_code=503, detail="Storage unavailable") from e

    logger.info("Queued audit %s (%s discovery)", audit_id, request.discovery.method)
    background_tasks.add_task(execute_audit, request.model_copy(update={"audit_id": audit_id}), store)
    return _load(store, audit_id)


@router.get("/audits/{audit_id}", response_model=AuditOut)
def get_audit(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    return _load(store, audit_id)


@router.get("/audits/{audit_id}/status", response_model=AuditStatusOut)
def get_audit_status(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    return _load(store, audit_id)


@router.post("/audits/{audit_id}/cancel", response_model=AuditStatusOut)
def cancel_audit(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    audit = _load(store, audit_id)
    if AuditStatus(audit.status).is_terminal or not store.request_cancel(audit_id):
        raise HTTPException(status_code=400, detail=f"Audit {audit_id} is already {audit.status}")
    return _load(store, audit_id)


# ---------------------------
# Results
# ---------------------------
@router.get("/audits/{audit_id}/violations", response_model=List[AggregatedViolationOut])
def list_violations(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    _load(store, audit_id)
    return store.load_aggregated(audit_id)


@router.get("/audits/{audit_id}/broken-pages")
def list_broken_pages(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    _load(store, audit_id)
    return [
        {
            "url": p.url,
            "error_type": p.error_type,
            "http_status": p.http_status,
            "error_message": p.error_message,
            "discovered_from": p.discovered_from,
        }
        for p in store.list_broken_pages(audit_id)
    ]


@router.get("/audits/{audit_id}/health", response_model=HealthReport)
def get_health(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    audit = _load(store, audit_id)
    if not audit.summary:
        raise HTTPException(status_code=400, detail=f"Audit {audit_id} has no summary yet")
    return grade_summary(AuditSummary.model_validate(audit.summary))


@router.post("/audits/{audit_id}/recalculate-patterns", response_model=AuditOut)
def recalculate_patterns(audit_id: int, store: SqlAuditStore = Depends(get_store)):
    """
    Rebuild the summary (pattern counts included) and health score from the
    stored aggregated violations. Useful for runs written before pattern
    counting existed, or after the normalization rules changed.
    """
    _load(store, audit_id)
    summary = build_summary(store.load_aggregated(audit_id))
    score = calculate_health_score(score_counts_for(summary))
    store.update_summary(audit_id, summary, score)
    logger.info("Recalculated audit %s: patterns=%s score=%d", audit_id, summary.patterns, score)
    return _load(store, audit_id)


# ---------------------------
# Schedules
# ---------------------------
@router.post("/schedules", status_code=201)
def create_schedule(body: ScheduleCreate, store: SqlAuditStore = Depends(get_store)):
    try:
        schedule_id = store.create_schedule(body.request, body.interval_hours)
    except StoreError as e:
        raise HTTPException(status_code=503, detail="Storage unavailable") from e
    return {"id": schedule_id, "project_id": body.request.project_id, "interval_hours": body.interval_hours}
