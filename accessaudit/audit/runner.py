# accessaudit/audit/runner.py
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set, Tuple

import httpx

from ..config import Settings, get_settings
from ..schemas import (
    AuditRequest,
    AuditResult,
    AuditStatus,
    AuditSummary,
    BrokenPageErrorType,
    PageAuditStatus,
)
from .aggregator import aggregate, build_summary
from .auditor import BrokenPage, HtmlPageAuditor, PageAuditOptions, PageAuditor, RawViolation
from .discovery import DiscoveryAdapter, get_discovery_adapter
from .grader import calculate_health_score, score_counts_for
from .http import build_client
from .parallel import run_bounded
from .store import AuditStore, StoreError
from .urls import canonicalize, is_html_url, relative_path

logger = logging.getLogger(__name__)


class AuditRunError(Exception):
    """A run could not finish; safe to retry from scratch."""


# ============================================================
# Run state
# ============================================================

@dataclass
class ScanState:
    candidates: Deque[str] = field(default_factory=deque)
    tried: Set[str] = field(default_factory=set)
    processed: int = 0
    failed: List[BrokenPage] = field(default_factory=list)
    iteration: int = 0
    collected: List[Tuple[str, List[RawViolation]]] = field(default_factory=list)
    # candidate url -> page it was found on
    referrers: Dict[str, str] = field(default_factory=dict)


@dataclass
class PageOutcome:
    url: str
    success: bool
    audit_page_id: Optional[int] = None
    violations: List[RawViolation] = field(default_factory=list)
    discovered_links: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: BrokenPageErrorType = BrokenPageErrorType.OTHER
    http_status: Optional[int] = None


# ============================================================
# Runner
# ============================================================

class AuditRunner:
    """
    Drives one audit run end to end:

    discovery -> batched page audits (growing the candidate pool from links
    found on audited pages) -> aggregation -> scoring -> completion.

    The loop stops when enough pages succeeded, when candidates run out, or
    at the iteration ceiling, whichever comes first. Cancellation is checked
    at the top of every iteration and once more before completing.
    """

    def __init__(
        self,
        store: AuditStore,
        auditor: Optional[PageAuditor] = None,
        settings: Optional[Settings] = None,
        discovery_adapter: Optional[DiscoveryAdapter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.client = client
        self.auditor = auditor
        self.discovery_adapter = discovery_adapter
        # SQLite sessions may share one connection
        self._store_lock = asyncio.Lock()

    async def _store(self, fn, *args, **kwargs):
        async with self._store_lock:
            return await asyncio.to_thread(fn, *args, **kwargs)

    async def run(self, request: AuditRequest, mark_failed: bool = True) -> AuditResult:
        """
        Execute the run for `request.audit_id` (a PENDING row is created when
        the request carries none). An existing run starts from a clean slate:
        rows left by an earlier attempt are dropped first.

        Any unexpected error marks the run FAILED (unless `mark_failed` is
        False, which the retry layer uses for non-final attempts) and is
        re-raised as AuditRunError.
        """
        try:
            self.store.ping()
        except StoreError as e:
            logger.error("Store unreachable, not starting audit: %s", e)
            raise AuditRunError(f"Store unreachable: {e}") from e

        audit_id = request.audit_id
        fresh = audit_id is None
        if fresh:
            audit_id = self.store.create_audit(request)
            request = request.model_copy(update={"audit_id": audit_id})

        own_client = self.client is None
        client = self.client or build_client(request.auth, self.settings)
        try:
            if not fresh:
                self.store.reset_audit(audit_id)
            auditor = self.auditor or HtmlPageAuditor(client=client)
            return await self._run(request, audit_id, client, auditor)
        except Exception as e:
            logger.exception("Audit %s failed", audit_id)
            message = str(e) or e.__class__.__name__
            if mark_failed:
                try:
                    self.store.fail(audit_id, message)
                except StoreError:
                    logger.error("Could not mark audit %s as failed", audit_id)
            raise AuditRunError(message) from e
        finally:
            if own_client:
                await client.aclose()

    # ------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------
    async def _discover(self, request: AuditRequest, client: httpx.AsyncClient) -> List[str]:
        adapter = self.discovery_adapter or get_discovery_adapter(
            request.discovery.method, client=client, settings=self.settings, subdomain=request.subdomain
        )
        result = await adapter.discover(request.discovery)
        logger.info("Discovery (%s) found %d candidate URLs: %s", request.discovery.method, len(result.urls), result.meta)
        return [u for u in result.urls if is_html_url(u)]

    async def _run(
        self,
        request: AuditRequest,
        audit_id: int,
        client: httpx.AsyncClient,
        auditor: PageAuditor,
    ) -> AuditResult:
        settings = self.settings
        requested = request.requested_pages
        base_url = request.base_url

        self.store.set_status(audit_id, AuditStatus.DISCOVERING)
        candidates = await self._discover(request, client)

        self.store.set_status(audit_id, AuditStatus.AUDITING, total_pages=requested)
        state = ScanState(candidates=deque(candidates))
        options = PageAuditOptions(
            wcag_levels=list(request.wcag_levels),
            include_best_practices=request.include_best_practices,
            timeout=settings.AUDIT_PAGE_TIMEOUT,
            auth=request.auth,
            extract_links=True,
            base_url=base_url,
            subdomain=request.subdomain,
        )

        while (
            state.processed < requested
            and state.iteration < settings.AUDIT_MAX_ITERATIONS
            and state.candidates
        ):
            state.iteration += 1

            if self.store.is_cancelled(audit_id):
                logger.info("Audit %s cancelled at iteration %d", audit_id, state.iteration)
                return self._partial_result(audit_id, state, requested)

            batch = self._next_batch(state, settings.AUDIT_BATCH_SIZE)
            if not batch:
                logger.info("Audit %s: no untried candidates left", audit_id)
                break

            logger.info(
                "Audit %s iteration %d: %d pages (done %d/%d, %d candidates left)",
                audit_id, state.iteration, len(batch), state.processed, requested, len(state.candidates),
            )

            store_errors: List[StoreError] = []

            async def worker(url: str, index: int) -> PageOutcome:
                try:
                    return await self._audit_one(auditor, request, audit_id, url, base_url, options)
                except StoreError as e:
                    store_errors.append(e)
                    raise

            outcomes = await run_bounded(batch, worker, settings.AUDIT_BATCH_SIZE)
            if store_errors:
                raise store_errors[0]
            for outcome in self._absorb(state, batch, outcomes, requested):
                if outcome.violations:
                    self.store.insert_violations(audit_id, outcome.audit_page_id, outcome.violations)
            self.store.update_progress(audit_id, state.processed, len(state.failed), state.iteration)

        return self._finish(request, audit_id, state, requested)

    def _next_batch(self, state: ScanState, size: int) -> List[str]:
        batch: List[str] = []
        while len(batch) < size and state.candidates:
            url = canonicalize(state.candidates.popleft())
            if url in state.tried:
                continue
            state.tried.add(url)
            batch.append(url)
        return batch

    async def _audit_one(
        self,
        auditor: PageAuditor,
        request: AuditRequest,
        audit_id: int,
        url: str,
        base_url: str,
        options: PageAuditOptions,
    ) -> PageOutcome:
        page_id = await self._store(self.store.upsert_page, request.project_id, url, relative_path(url, base_url))
        audit_page_id = await self._store(self.store.start_audit_page, audit_id, page_id)

        try:
            result = await asyncio.wait_for(auditor.audit(url, options), timeout=options.timeout)
        except asyncio.TimeoutError:
            message = f"Page audit timed out after {options.timeout:.0f}s"
            logger.warning("%s: %s", url, message)
            await self._store(self.store.finish_audit_page, audit_page_id, PageAuditStatus.FAILED, error_message=message)
            return PageOutcome(url=url, success=False, error=message, error_type=BrokenPageErrorType.TIMEOUT)
        except Exception as e:
            logger.warning("Auditor raised for %s: %s", url, e)
            await self._store(self.store.finish_audit_page, audit_page_id, PageAuditStatus.FAILED, error_message=str(e))
            return PageOutcome(url=url, success=False, error=str(e) or e.__class__.__name__)

        if not result.ok:
            await self._store(
                self.store.finish_audit_page,
                audit_page_id,
                PageAuditStatus.FAILED,
                error_message=result.error,
                load_time=result.load_time,
            )
            return PageOutcome(
                url=url,
                success=False,
                error=result.error,
                error_type=result.error_type or BrokenPageErrorType.OTHER,
                http_status=result.http_status,
            )

        await self._store(
            self.store.finish_audit_page,
            audit_page_id,
            PageAuditStatus.COMPLETED,
            violation_count=len(result.violations),
            load_time=result.load_time,
        )
        return PageOutcome(
            url=url,
            success=True,
            audit_page_id=audit_page_id,
            violations=list(result.violations),
            discovered_links=list(result.discovered_links),
        )

    def _absorb(
        self, state: ScanState, batch: List[str], outcomes: List[Optional[PageOutcome]], requested: int
    ) -> List[PageOutcome]:
        """Fold a batch into the run state; returns the successes that count toward the target."""
        counted: List[PageOutcome] = []
        goal_reached = False
        for url, outcome in zip(batch, outcomes):
            if outcome is None:
                outcome = PageOutcome(url=url, success=False, error="Unexpected error while auditing page")

            if outcome.success:
                # extra successes in the last batch are audited but not counted
                if goal_reached:
                    continue
                state.processed += 1
                counted.append(outcome)
                if outcome.violations:
                    state.collected.append((outcome.url, outcome.violations))
                for link in outcome.discovered_links:
                    link = canonicalize(link)
                    if link in state.tried or not is_html_url(link):
                        continue
                    state.referrers.setdefault(link, outcome.url)
                    state.candidates.append(link)
                if state.processed >= requested:
                    logger.info("Target of %d pages reached", requested)
                    goal_reached = True
            else:
                state.failed.append(
                    BrokenPage(
                        url=outcome.url,
                        error_type=outcome.error_type,
                        http_status=outcome.http_status,
                        error_message=outcome.error or "Unknown error",
                        discovered_from=state.referrers.get(outcome.url),
                    )
                )
        return counted

    def _partial_result(self, audit_id: int, state: ScanState, requested: int) -> AuditResult:
        summary = build_summary(aggregate(state.collected).values())
        return AuditResult(
            audit_id=audit_id,
            summary=summary,
            pages_audited=state.processed,
            pages_requested=requested,
            broken_pages=len(state.failed),
            target_reached=False,
            cancelled=True,
        )

    def _finish(self, request: AuditRequest, audit_id: int, state: ScanState, requested: int) -> AuditResult:
        settings = self.settings

        aggregated = aggregate(
            state.collected,
            affected_pages_cap=settings.AFFECTED_PAGES_CAP,
            unique_elements_cap=settings.UNIQUE_ELEMENTS_CAP,
        )
        summary: AuditSummary = build_summary(aggregated.values())
        health_score = calculate_health_score(score_counts_for(summary))

        # a cancelled run keeps what it had when it was cancelled
        if self.store.is_cancelled(audit_id):
            logger.info("Audit %s cancelled before completion", audit_id)
            result = self._partial_result(audit_id, state, requested)
            return result.model_copy(update={"summary": summary, "health_score": health_score})

        if state.failed:
            self.store.insert_broken_pages(audit_id, state.failed)

        self.store.set_status(audit_id, AuditStatus.AGGREGATING)
        self.store.insert_aggregated(audit_id, aggregated.values())
        logger.info(
            "Audit %s aggregated %d fingerprints; summary=%s score=%d",
            audit_id, len(aggregated), summary.model_dump(), health_score,
        )

        previous_id = self.store.previous_completed_audit(request.project_id, exclude_id=audit_id)
        self.store.complete(audit_id, summary, health_score, previous_audit_id=previous_id)
        target_reached = state.processed >= requested
        logger.info(
            "Audit %s completed: %d/%d pages, %d broken, %d iterations",
            audit_id, state.processed, requested, len(state.failed), state.iteration,
        )
        return AuditResult(
            audit_id=audit_id,
            summary=summary,
            pages_audited=state.processed,
            pages_requested=requested,
            broken_pages=len(state.failed),
            target_reached=target_reached,
            health_score=health_score,
        )
