"""
Sync Orchestrator

Drives one sync pass: Idle -> Running -> {Completed | Failed}.

Entry to Running is an atomic claim against the store, so orchestrators in
different processes exclude each other. A second trigger while a pass is
running is rejected, never queued. Partial failure is not rolled back:
tickets already reconciled stay written.
"""

import time
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

import httpx
import structlog

from repairshopr_sync.connector import (
    FetchResult,
    SourceConnector,
    build_connectors,
    fetch_sources,
)
from repairshopr_sync.config import SyncSettings
from repairshopr_sync.devices import DeviceCategorizer
from repairshopr_sync.models import RSTicket
from repairshopr_sync.policy import PolicyFilter
from repairshopr_sync.rate_limiter import SourceRateLimiters
from repairshopr_sync.reconciler import SKIPPED, TicketReconciler
from repairshopr_sync.records import (
    SyncKind,
    SyncOperation,
    SyncStatus,
    ticket_key,
    utcnow,
)
from repairshopr_sync.rework import ReworkDetector
from repairshopr_sync.scheduling import SyncScheduler
from repairshopr_sync.status import CanonicalStatus, StatusNormalizer
from repairshopr_sync.store import StoreError, TicketStore

logger = structlog.get_logger(__name__)

FILTERED = "filtered"
ERROR = "error"

TIMEOUT_MESSAGE = "Sync pass exceeded its time budget of {seconds:.0f}s; remaining work cancelled"


@dataclass
class SyncRequest:
    kind: SyncKind = SyncKind.INCREMENTAL
    date_from: datetime | None = None
    date_to: datetime | None = None
    priorities: list[int] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "priorities": self.priorities,
        }


@dataclass
class SyncTriggerResult:
    accepted: bool
    sync_operation_id: str | None
    reason: str | None = None
    operation: SyncOperation | None = None


@dataclass
class _Outcome:
    key: str
    action: str
    message: str | None = None


@dataclass
class _PassState:
    """Mutable bookkeeping for one pass; touched only by the driving thread."""
    failed: bool = False
    timed_out: bool = False
    reschedule_keys: set[str] = field(default_factory=set)


class SyncOrchestrator:
    """
    Example:
        orchestrator = SyncOrchestrator.from_settings(settings, JsonFileStore(path))
        result = orchestrator.trigger(SyncRequest(kind=SyncKind.INCREMENTAL))
        if not result.accepted:
            print(result.reason)
    """

    def __init__(
        self,
        store: TicketStore,
        connectors: Iterable[SourceConnector],
        reconciler: TicketReconciler,
        policy_filter: PolicyFilter | None = None,
        max_concurrency: int = 4,
        timeout_seconds: float = 600.0,
        claim_stale_after: timedelta = timedelta(minutes=60),
        max_refetch: int = 200,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.connectors = {c.source: c for c in connectors}
        self.reconciler = reconciler
        self.normalizer = reconciler.normalizer
        self.scheduler = reconciler.scheduler
        self.policy_filter = policy_filter or PolicyFilter()
        self.max_concurrency = max_concurrency
        self.timeout_seconds = timeout_seconds
        self.claim_stale_after = claim_stale_after
        self.max_refetch = max_refetch
        self.clock = clock
        self._log = logger.bind(sources=sorted(self.connectors))

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        store: TicketStore,
        transport: httpx.BaseTransport | None = None,
        connect: bool = True,
    ) -> "SyncOrchestrator":
        """
        Wire every component from configuration. With `connect=False` no
        source clients are built (reporting needs no credentials).
        """
        heuristics = settings.heuristics
        if heuristics.status_mapping_file:
            normalizer = StatusNormalizer.from_file(heuristics.status_mapping_file)
        else:
            normalizer = StatusNormalizer(mapping=heuristics.status_mapping)

        reconciler = TicketReconciler(
            store=store,
            calendar=settings.calendar.build(),
            normalizer=normalizer,
            detector=ReworkDetector(heuristics.rework_keywords),
            categorizer=DeviceCategorizer(heuristics.device_categories),
            scheduler=SyncScheduler(settings.stale_after_days, settings.finalize_after_days),
            default_active_ratio=heuristics.default_active_ratio,
        )
        connectors = []
        if connect:
            connectors = build_connectors(
                settings.sources,
                SourceRateLimiters(),
                timeout=settings.request_timeout_seconds,
                max_workers=settings.max_concurrency,
                transport=transport,
            )
        return cls(
            store=store,
            connectors=connectors,
            reconciler=reconciler,
            policy_filter=PolicyFilter.from_settings(settings.policies),
            max_concurrency=settings.max_concurrency,
            timeout_seconds=settings.timeout_seconds,
            claim_stale_after=timedelta(minutes=settings.claim_stale_after_minutes),
            max_refetch=settings.max_refetch,
        )

    # -------------------------------------------------------------------------
    # Trigger surface
    # -------------------------------------------------------------------------

    def trigger(self, request: SyncRequest | None = None) -> SyncTriggerResult:
        request = request or SyncRequest()
        now = self.clock()
        operation = SyncOperation(kind=request.kind, started_at=now, request=request.to_dict())

        claim = self.store.claim_sync_operation(operation, self.claim_stale_after, now)
        if not claim.claimed:
            existing = claim.existing
            reason = (
                f"Sync {existing.id} already running since {existing.started_at.isoformat()}"
                if existing else "Another sync is already running"
            )
            self._log.info("Sync rejected", reason=reason)
            return SyncTriggerResult(
                accepted=False,
                sync_operation_id=existing.id if existing else None,
                reason=reason,
            )

        log = self._log.bind(operation_id=operation.id, kind=request.kind.value)
        log.info("Sync started", abandoned=[op.id for op in claim.abandoned])

        failed = True
        try:
            state = self._run(operation, request, now, log)
            failed = state.failed
        except Exception as e:
            log.exception("Sync pass crashed")
            operation.errors += 1
            operation.error_log.append(f"Unexpected error: {type(e).__name__}: {e}")

        operation.unmapped_statuses = self.normalizer.unmapped
        operation.status = SyncStatus.FAILED if failed else SyncStatus.COMPLETED
        operation.completed_at = self.clock()
        try:
            self.store.finalize_sync_operation(operation)
        except StoreError:
            log.exception("Could not persist sync outcome")

        log.info("Sync finished", status=operation.status.value, **operation.counters())
        return SyncTriggerResult(accepted=True, sync_operation_id=operation.id, operation=operation)

    # -------------------------------------------------------------------------
    # Pass
    # -------------------------------------------------------------------------

    def _statuses_by_source(
        self,
        request: SyncRequest,
        due_statuses: dict[str, set[str]],
    ) -> dict[str, list[str]]:
        targets: dict[str, list[str]] = {}
        for source, connector in self.connectors.items():
            if request.kind == SyncKind.FULL:
                canonicals: set[str] = {s.value for s in CanonicalStatus}
            else:
                canonicals = set(connector.config.target_statuses)
            canonicals |= due_statuses.get(source, set())
            targets[source] = self.normalizer.raw_statuses_for(canonicals)
        return targets

    def _record_errors(
        self,
        operation: SyncOperation,
        state: _PassState,
        results: Iterable[FetchResult],
    ) -> None:
        for result in results:
            for error in result.errors:
                operation.error_log.append(error.describe())
                if error.kind in ("malformed", "comments_unavailable"):
                    operation.errors += 1
            if result.source_failed:
                state.failed = True
            if result.timed_out:
                state.timed_out = True

    def _remaining(self, deadline: float) -> float:
        return deadline - time.monotonic()

    def _run_tasks(self, tasks: list[Callable[[], Any]], deadline: float) -> tuple[list[Any], bool]:
        """
        Run callables on the bounded pool. Returns (results, timed_out).

        Past the deadline nothing new starts; tasks already running are
        waited for and their results kept, so every committed write is
        counted before the operation is finalized.
        """
        results: list[Any] = []
        if not tasks:
            return results, False
        expired = False
        executor = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="rs-sync")
        try:
            pending: set[Future] = {executor.submit(task) for task in tasks}
            while pending:
                remaining = self._remaining(deadline)
                if remaining <= 0:
                    expired = True
                    running = {f for f in pending if not f.cancel()}
                    done, _ = wait(running)
                    results.extend(f.result() for f in done)
                    break
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                results.extend(f.result() for f in done)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return results, expired

    def _run(
        self,
        operation: SyncOperation,
        request: SyncRequest,
        now: datetime,
        log: Any,
    ) -> _PassState:
        state = _PassState()
        deadline = time.monotonic() + self.timeout_seconds
        self.normalizer.reset_unmapped()

        def timed_out() -> _PassState:
            state.failed = True
            operation.error_log.append(TIMEOUT_MESSAGE.format(seconds=self.timeout_seconds))
            log.warning("Sync timed out")
            return state

        # 1. Due tickets
        due = self.store.due_tickets(now, request.priorities)
        due_by_key = {t.key: t for t in due if t.source_instance in self.connectors}
        due_statuses: dict[str, set[str]] = {}
        for ticket in due_by_key.values():
            due_statuses.setdefault(ticket.source_instance, set()).add(ticket.canonical_status)
        log.info("Due tickets selected", due=len(due_by_key))

        # 2. Fetch per (source, raw status)
        statuses = self._statuses_by_source(request, due_statuses)
        fetched = fetch_sources(
            self.connectors.values(),
            statuses,
            max_workers=self.max_concurrency,
            timeout=max(0.0, self._remaining(deadline)),
        )
        self._record_errors(operation, state, fetched.values())
        if state.timed_out:
            return timed_out()

        work: list[tuple[str, RSTicket]] = []
        seen: set[str] = set()
        for source, result in fetched.items():
            for raw in result.tickets:
                key = ticket_key(source, raw.id)
                if key not in seen:
                    seen.add(key)
                    work.append((source, raw))

        # 3. Re-fetch due tickets no status slice returned (e.g. status moved
        # into something not targeted)
        missing = [t for key, t in due_by_key.items() if key not in seen]
        if len(missing) > self.max_refetch:
            log.warning("Re-fetch capped", missing=len(missing), cap=self.max_refetch)
            missing = missing[: self.max_refetch]
        refetch_tasks = [
            (lambda t=t: (t, self.connectors[t.source_instance].fetch_ticket(t.source_id)))
            for t in missing
        ]
        refetched, expired = self._run_tasks(refetch_tasks, deadline)
        self._record_errors(operation, state, [r for _, r in refetched])
        if expired:
            return timed_out()
        for due_ticket, result in refetched:
            if result.tickets:
                raw = result.tickets[0]
                seen.add(due_ticket.key)
                work.append((due_ticket.source_instance, raw))
            elif not result.errors:
                # Gone upstream; push it back instead of leaving it due forever
                state.reschedule_keys.add(due_ticket.key)

        # 4. Filter + reconcile
        outcomes, expired = self._run_tasks(
            [
                (lambda s=source, r=raw: self._process(s, r, request, now, due_by_key))
                for source, raw in work
            ],
            deadline,
        )
        for outcome in outcomes:
            operation.processed += 1
            if outcome.action == ERROR:
                operation.errors += 1
                operation.error_log.append(f"{outcome.key}: {outcome.message}")
            elif outcome.action == FILTERED:
                operation.filtered += 1
            else:
                setattr(operation, outcome.action, getattr(operation, outcome.action) + 1)
            if outcome.key in due_by_key and outcome.action in (SKIPPED, FILTERED):
                state.reschedule_keys.add(outcome.key)
        if expired:
            return timed_out()

        # 5. Skipped due tickets only get their bookkeeping moved forward
        for key in sorted(state.reschedule_keys):
            self._reschedule(due_by_key[key], now, operation, log)

        return state

    def _process(
        self,
        source: str,
        raw: RSTicket,
        request: SyncRequest,
        now: datetime,
        due_by_key: dict[str, Any],
    ) -> _Outcome:
        key = ticket_key(source, raw.id)
        try:
            if request.date_from and raw.last_updated < request.date_from:
                return _Outcome(key, SKIPPED)
            if request.date_to and raw.last_updated > request.date_to:
                return _Outcome(key, SKIPPED)

            decision = self.policy_filter.evaluate(source, raw.assignee_name, raw.location_name)
            if not decision.in_scope:
                logger.debug("Ticket filtered", ticket=key, rule=decision.rule)
                return _Outcome(key, FILTERED)

            if request.kind == SyncKind.INCREMENTAL and key not in due_by_key:
                if self.store.get_ticket(key) is not None:
                    return _Outcome(key, SKIPPED)

            result = self.reconciler.reconcile(
                raw,
                source,
                now,
                force=request.kind == SyncKind.FULL,
                technician=decision.technician,
            )
            return _Outcome(key, result.action)
        except StoreError as e:
            logger.error("Persistence failure", ticket=key, error=str(e))
            return _Outcome(key, ERROR, f"persistence failure: {e}")
        except Exception as e:
            logger.exception("Reconcile failed", ticket=key)
            return _Outcome(key, ERROR, f"{type(e).__name__}: {e}")

    def _reschedule(self, ticket, now: datetime, operation: SyncOperation, log: Any) -> None:
        schedule = self.scheduler.schedule(
            ticket.canonical_status, ticket.created_at, ticket.completed_at, now
        )
        try:
            self.store.reschedule_ticket(
                ticket.key,
                schedule.next_sync_at,
                schedule.sync_priority,
                last_synced_at=now,
                is_finalized=schedule.is_finalized,
            )
        except StoreError as e:
            operation.errors += 1
            operation.error_log.append(f"{ticket.key}: reschedule failed: {e}")
            log.error("Reschedule failed", ticket=ticket.key, error=str(e))

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def status_report(self, now: datetime | None = None, recent: int = 10) -> dict[str, Any]:
        """Recent operations, 30-day success stats per kind, due tickets per priority."""
        now = now or self.clock()
        operations = self.store.list_sync_operations(since=now - timedelta(days=30))

        by_kind: dict[str, dict[str, Any]] = {}
        for kind in SyncKind:
            ops = [op for op in operations if op.kind == kind and not op.is_running]
            completed = [op for op in ops if op.status == SyncStatus.COMPLETED]
            durations = [
                (op.completed_at - op.started_at).total_seconds()
                for op in ops
                if op.completed_at
            ]
            by_kind[kind.value] = {
                "total": len(ops),
                "completed": len(completed),
                "failed": len(ops) - len(completed),
                "success_rate": round(len(completed) / len(ops), 4) if ops else None,
                "avg_duration_seconds": round(sum(durations) / len(durations), 1) if durations else None,
            }

        due = self.store.due_tickets(now)
        due_by_priority = dict(sorted(Counter(t.sync_priority for t in due).items()))
        running = next((op for op in operations if op.is_running), None)

        return {
            "generated_at": now.isoformat(),
            "running": running.id if running else None,
            "recent_operations": [
                {
                    "id": op.id,
                    "kind": op.kind.value,
                    "status": op.status.value,
                    "started_at": op.started_at.isoformat(),
                    "completed_at": op.completed_at.isoformat() if op.completed_at else None,
                    **op.counters(),
                }
                for op in operations[:recent]
            ],
            "stats_30d": by_kind,
            "due_tickets": {"total": len(due), "by_priority": due_by_priority},
        }
