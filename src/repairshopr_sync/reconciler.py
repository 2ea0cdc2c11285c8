"""
Ticket Reconciler

Turns one validated RepairShopr ticket into a CanonicalTicket mutation.
Steps run strictly in order for a ticket; tickets share no mutable state, so
the orchestrator reconciles them in parallel.

    normalize status -> status events -> business-minute timing ->
    active/waiting split -> rework + quality -> device heuristics ->
    schedule -> conditional upsert -> append events / wait samples
"""

from dataclasses import dataclass, field
from datetime import datetime

import structlog

from repairshopr_sync.business_hours import BusinessCalendar
from repairshopr_sync.devices import DeviceCategorizer, classify_repair_type, extract_device_info
from repairshopr_sync.models import RSTicket, ensure_utc
from repairshopr_sync.records import (
    CanonicalTicket,
    StatusChangeEvent,
    TicketComment,
    WaitTimeSample,
    ticket_key,
)
from repairshopr_sync.rework import ReworkDetector, quality_score
from repairshopr_sync.scheduling import SyncScheduler
from repairshopr_sync.status import StatusNormalizer, is_active_work, is_terminal
from repairshopr_sync.store import TicketStore

logger = structlog.get_logger(__name__)

# Share of open time counted as active work when no status history exists.
# A tunable default, not a measured constant; results carry timing_estimated.
DEFAULT_ACTIVE_RATIO = 0.3

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass
class ReconcileResult:
    action: str
    ticket: CanonicalTicket | None
    events: list[StatusChangeEvent] = field(default_factory=list)
    samples: list[WaitTimeSample] = field(default_factory=list)


@dataclass(frozen=True)
class TimingSplit:
    total: int
    active: int
    waiting: int
    estimated: bool


class TicketReconciler:
    """
    Example:
        reconciler = TicketReconciler(store, BusinessCalendar(), StatusNormalizer())
        result = reconciler.reconcile(rs_ticket, "platinum", now)
        result.action  # "inserted" on first sight, "skipped" when unchanged
    """

    def __init__(
        self,
        store: TicketStore,
        calendar: BusinessCalendar,
        normalizer: StatusNormalizer,
        detector: ReworkDetector | None = None,
        categorizer: DeviceCategorizer | None = None,
        scheduler: SyncScheduler | None = None,
        default_active_ratio: float = DEFAULT_ACTIVE_RATIO,
    ):
        if not 0.0 <= default_active_ratio <= 1.0:
            raise ValueError("default_active_ratio must be within [0, 1]")
        self.store = store
        self.calendar = calendar
        self.normalizer = normalizer
        self.detector = detector or ReworkDetector()
        self.categorizer = categorizer or DeviceCategorizer()
        self.scheduler = scheduler or SyncScheduler()
        self.default_active_ratio = default_active_ratio

    # -------------------------------------------------------------------------
    # Timing
    # -------------------------------------------------------------------------

    def split_timing(
        self,
        created_at: datetime,
        end: datetime,
        history: list[StatusChangeEvent],
    ) -> TimingSplit:
        """
        Active minutes are the business minutes spent in active-work statuses.
        History counts only once a real transition (non-null from_status) is
        known; otherwise the default ratio applies and the split is estimated.
        """
        total = self.calendar.business_minutes_between(created_at, end)
        ordered = sorted(history, key=lambda e: e.changed_at)

        if not any(e.from_status is not None for e in ordered):
            active = int(total * self.default_active_ratio)
            return TimingSplit(total, active, total - active, estimated=True)

        active = 0
        for i, event in enumerate(ordered):
            if not is_active_work(event.to_status):
                continue
            stop = ordered[i + 1].changed_at if i + 1 < len(ordered) else end
            active += self.calendar.business_minutes_between(
                max(event.changed_at, created_at), min(stop, end)
            )
        active = min(active, total)
        return TimingSplit(total, active, total - active, estimated=False)

    def wait_samples(
        self,
        key: str,
        source: str,
        created_at: datetime,
        history: list[StatusChangeEvent],
        technician: str | None,
    ) -> list[WaitTimeSample]:
        """One sample per transition from a non-active into an active status."""
        ordered = sorted(history, key=lambda e: e.changed_at)
        samples = []
        for i, event in enumerate(ordered):
            if event.from_status is None:
                continue
            if not is_active_work(event.to_status) or is_active_work(event.from_status):
                continue
            waiting_since = ordered[i - 1].changed_at if i > 0 else created_at
            picked_up_by = event.changed_by if event.changed_by != "system" else technician
            samples.append(WaitTimeSample(
                id=f"wait_{event.id[4:]}",
                ticket_key=key,
                source_instance=source,
                technician=picked_up_by,
                from_status=event.from_status,
                to_status=event.to_status,
                waited_minutes=self.calendar.business_minutes_between(
                    waiting_since, event.changed_at
                ),
                waiting_since=waiting_since,
                picked_up_at=event.changed_at,
            ))
        return samples

    # -------------------------------------------------------------------------
    # Reconcile
    # -------------------------------------------------------------------------

    def reconcile(
        self,
        raw: RSTicket,
        source: str,
        now: datetime,
        force: bool = False,
        technician: str | None = None,
    ) -> ReconcileResult:
        """
        Args:
            raw: Validated source ticket
            source: Source instance name
            now: Reference time for open tickets
            force: Overwrite even when last_source_update_at did not advance
            technician: Effective technician (after policy reassignment);
                defaults to the ticket's assignee
        """
        now = ensure_utc(now)
        key = ticket_key(source, raw.id)
        log = logger.bind(ticket=key)
        existing = self.store.get_ticket(key)
        last_update = raw.last_updated

        if existing is not None and not force and last_update <= existing.last_source_update_at:
            log.debug("Ticket unchanged", last_update=last_update.isoformat())
            return ReconcileResult(SKIPPED, existing)

        technician = technician or raw.assignee_name
        canonical = self.normalizer.normalize(raw.status)

        # Status events
        history = self.store.events_for(key)
        if existing is not None:
            previous = existing.canonical_status
        elif history:
            previous = history[-1].to_status
        else:
            previous = None

        new_events: list[StatusChangeEvent] = []
        if previous is None and not history:
            new_events.append(StatusChangeEvent.build(key, None, canonical, last_update, technician))
        elif previous != canonical:
            new_events.append(
                StatusChangeEvent.build(key, previous, canonical, last_update, technician)
            )
        timeline = history + new_events

        # Timing
        completed_at = (raw.resolved_at or last_update) if is_terminal(canonical) else None
        end = completed_at or now
        timing = self.split_timing(raw.created_at, end, timeline)
        samples = self.wait_samples(key, source, raw.created_at, timeline, technician)

        # Quality
        comments = [
            TicketComment(
                author=c.tech or "Unknown",
                text=c.text,
                timestamp=c.created_at,
                is_internal=c.is_internal,
            )
            for c in raw.comments
        ]
        rework = self.detector.classify(raw.body_text, comments)

        # Device heuristics
        asset_labels = [a.label for a in raw.assets if a.label]
        device_info = extract_device_info(*asset_labels, raw.body_text, raw.subject)
        device_category = self.categorizer.categorize(device_info, raw.body_text, raw.subject)

        schedule = self.scheduler.schedule(canonical, raw.created_at, completed_at, now)

        ticket = CanonicalTicket(
            source_instance=source,
            source_id=str(raw.id),
            number=raw.display_number,
            subject=raw.subject,
            description=raw.body_text,
            device_info=device_info,
            device_category=device_category,
            repair_type=classify_repair_type(raw.body_text or raw.subject),
            location_name=raw.location_name,
            claim_number=raw.claim_number,
            comments=comments,
            raw_status=raw.status,
            canonical_status=canonical,
            assigned_technician=technician,
            created_at=raw.created_at,
            last_source_update_at=last_update,
            completed_at=completed_at,
            total_business_minutes_open=timing.total,
            active_work_minutes=timing.active,
            waiting_minutes=timing.waiting,
            timing_estimated=timing.estimated,
            is_rework=rework.is_rework,
            rework_reason=rework.reason,
            rework_count=rework.count,
            quality_score=quality_score(rework),
            last_synced_at=now,
            next_sync_at=schedule.next_sync_at,
            sync_priority=schedule.sync_priority,
            is_finalized=schedule.is_finalized,
        )

        if not self.store.upsert_ticket(ticket, only_if_newer=True):
            # A newer version landed from an overlapping pass
            log.info("Newer ticket already stored")
            return ReconcileResult(SKIPPED, self.store.get_ticket(key))

        for event in new_events:
            self.store.append_event(event)
        for sample in samples:
            self.store.put_wait_sample(sample)

        action = INSERTED if existing is None else UPDATED
        log.debug(
            "Ticket reconciled",
            action=action,
            status=canonical,
            total_minutes=timing.total,
            estimated=timing.estimated,
            rework=rework.is_rework,
        )
        return ReconcileResult(action, ticket, new_events, samples)
