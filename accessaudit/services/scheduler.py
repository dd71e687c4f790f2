import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from ..audit.runner import AuditRunError, AuditRunner
from ..audit.store import SqlAuditStore
from ..config import Settings, get_settings
from ..database import SessionLocal
from ..schemas import AuditRequest, AuditResult

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()

RunnerFactory = Callable[[SqlAuditStore, Settings], AuditRunner]


def default_store() -> SqlAuditStore:
    return SqlAuditStore(SessionLocal)


def _default_runner(store: SqlAuditStore, settings: Settings) -> AuditRunner:
    return AuditRunner(store, settings=settings)


async def execute_audit(
    request: AuditRequest,
    store: Optional[SqlAuditStore] = None,
    settings: Optional[Settings] = None,
    attempts: Optional[int] = None,
    runner_factory: RunnerFactory = _default_runner,
) -> Optional[AuditResult]:
    """
    Run the whole orchestration, starting over on AuditRunError.

    Only the last attempt is allowed to mark the run FAILED. Returns None
    when every attempt failed.
    """
    settings = settings or get_settings()
    store = store or default_store()
    attempts = max(1, attempts or settings.AUDIT_RETRY_ATTEMPTS)

    for attempt in range(1, attempts + 1):
        runner = runner_factory(store, settings)
        try:
            return await runner.run(request, mark_failed=(attempt == attempts))
        except AuditRunError as e:
            if attempt == attempts:
                logger.error("Audit %s failed after %d attempt(s): %s", request.audit_id, attempts, e)
                return None
            logger.warning("Audit %s attempt %d/%d failed, retrying: %s", request.audit_id, attempt, attempts, e)
    return None


def run_audit_job(
    request: AuditRequest,
    attempts: Optional[int] = None,
    store: Optional[SqlAuditStore] = None,
    settings: Optional[Settings] = None,
    runner_factory: RunnerFactory = _default_runner,
) -> Optional[AuditResult]:
    """Blocking entry point for scheduler threads."""
    return asyncio.run(execute_audit(request, store, settings, attempts, runner_factory))


def job_run_schedules(
    store: Optional[SqlAuditStore] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    runner_factory: RunnerFactory = _default_runner,
) -> List[int]:
    """Start a run for every due schedule. Returns the created audit ids."""
    store = store or default_store()
    settings = settings or get_settings()
    started: List[int] = []

    for sc in store.due_schedules(now):
        if store.has_run_in_progress(sc.project_id):
            logger.info("Schedule %s: project %s already has a run in progress", sc.id, sc.project_id)
            continue

        request = AuditRequest.model_validate(sc.request)
        previous_id = store.previous_completed_audit(sc.project_id)
        audit_id = store.create_audit(request, is_scheduled=True, previous_audit_id=previous_id)
        store.mark_schedule_run(sc.id, audit_id, now)
        started.append(audit_id)

        logger.info("Schedule %s: starting audit %s for project %s", sc.id, audit_id, sc.project_id)
        run_audit_job(
            request.model_copy(update={"audit_id": audit_id}),
            store=store,
            settings=settings,
            runner_factory=runner_factory,
        )

    return started


def start_scheduler(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    scheduler.add_job(
        job_run_schedules,
        "interval",
        minutes=settings.SCHEDULE_CHECK_MINUTES,
        id="scheduled_audits",
        replace_existing=True,
    )
    if not scheduler.running:
        scheduler.start()
    logger.info("Scheduler started (every %d min)", settings.SCHEDULE_CHECK_MINUTES)


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
