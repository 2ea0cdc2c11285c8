"""
Analytics Aggregator

Pure rollups over canonical tickets and wait-time samples. Nothing here reads
the clock or the store except AnalyticsService, which only selects the input
window before handing it to the pure functions.
"""

import statistics
from collections import Counter, defaultdict
from datetime import date, datetime, tzinfo
from typing import Iterable

from pydantic import BaseModel, Field

from repairshopr_sync.business_hours import BusinessCalendar
from repairshopr_sync.devices import DeviceCategorizer
from repairshopr_sync.records import CanonicalTicket, WaitTimeSample
from repairshopr_sync.status import display_rank, is_terminal
from repairshopr_sync.store import TicketStore

# Average wait (minutes) -> efficiency score; first bound that holds wins
EFFICIENCY_STEPS: list[tuple[int, int]] = [
    (2 * 60, 100),
    (4 * 60, 80),
    (8 * 60, 60),
    (16 * 60, 40),
]
EFFICIENCY_FLOOR = 20

GRADE_BOUNDS: list[tuple[int, str]] = [
    (2 * 60, "Excellent"),
    (4 * 60, "Good"),
    (8 * 60, "Average"),
]
GRADE_FLOOR = "Needs Improvement"

UNASSIGNED = "Unassigned"


def efficiency_score(avg_wait_minutes: float | None) -> int | None:
    if avg_wait_minutes is None:
        return None
    for bound, score in EFFICIENCY_STEPS:
        if avg_wait_minutes <= bound:
            return score
    return EFFICIENCY_FLOOR


def performance_grade(avg_wait_minutes: float | None) -> str | None:
    if avg_wait_minutes is None:
        return None
    for bound, grade in GRADE_BOUNDS:
        if avg_wait_minutes <= bound:
            return grade
    return GRADE_FLOOR


def _mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


def _rate(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------

class WaitStats(BaseModel):
    samples: int = 0
    avg_minutes: float | None = None
    median_minutes: float | None = None
    min_minutes: int | None = None
    max_minutes: int | None = None


class DepartmentSummary(BaseModel):
    total_tickets: int
    counts_by_status: dict[str, int]
    wait: WaitStats
    rework_rate: float
    efficiency_score: int | None
    grade: str | None
    grade_distribution: dict[str, int]


class TechnicianRollup(BaseModel):
    technician: str
    ticket_count: int
    completed: int
    avg_wait_minutes: float | None
    wait_samples: int
    efficiency_score: int | None
    grade: str | None
    rework_rate: float
    avg_quality_score: float | None


class DeviceRollup(BaseModel):
    category: str
    ticket_count: int
    completed: int
    avg_completion_minutes: float | None
    rework_rate: float
    top_technicians: list[str]


class DayBucket(BaseModel):
    day: date
    ticket_count: int
    avg_total_minutes: float | None
    rework_rate: float


class TimeBuckets(BaseModel):
    by_day: list[DayBucket]
    by_hour: dict[int, int]
    peak_hours: list[int]


class RepairTypeRollup(BaseModel):
    repair_type: str
    ticket_count: int
    avg_total_minutes: float | None
    rework_rate: float


class ReworkBreakdown(BaseModel):
    rework_tickets: int
    rework_rate: float
    by_technician: dict[str, int]
    by_device_category: dict[str, int]
    avg_rework_minutes: float | None
    top_keywords: list[tuple[str, int]]


class AnalyticsReport(BaseModel):
    start: datetime
    end: datetime
    filters: dict[str, str | None] = Field(default_factory=dict)
    department: DepartmentSummary
    technicians: list[TechnicianRollup]
    devices: list[DeviceRollup]
    time: TimeBuckets
    repair_types: list[RepairTypeRollup]
    rework: ReworkBreakdown


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------

def wait_stats(samples: Iterable[WaitTimeSample]) -> WaitStats:
    minutes = [s.waited_minutes for s in samples]
    if not minutes:
        return WaitStats()
    return WaitStats(
        samples=len(minutes),
        avg_minutes=_mean(minutes),
        median_minutes=float(statistics.median(minutes)),
        min_minutes=min(minutes),
        max_minutes=max(minutes),
    )


def grade_distribution(samples: Iterable[WaitTimeSample]) -> dict[str, int]:
    """Wait samples bucketed: excellent < 2h <= good < 4h <= average < 8h <= poor."""
    dist = {"excellent": 0, "good": 0, "average": 0, "poor": 0}
    for sample in samples:
        minutes = sample.waited_minutes
        if minutes < 2 * 60:
            dist["excellent"] += 1
        elif minutes < 4 * 60:
            dist["good"] += 1
        elif minutes < 8 * 60:
            dist["average"] += 1
        else:
            dist["poor"] += 1
    return dist


def department_summary(
    tickets: list[CanonicalTicket],
    samples: list[WaitTimeSample],
) -> DepartmentSummary:
    counts = Counter(t.canonical_status for t in tickets)
    ordered = dict(sorted(counts.items(), key=lambda kv: (display_rank(kv[0]), kv[0])))
    stats = wait_stats(samples)
    return DepartmentSummary(
        total_tickets=len(tickets),
        counts_by_status=ordered,
        wait=stats,
        rework_rate=_rate(sum(t.is_rework for t in tickets), len(tickets)),
        efficiency_score=efficiency_score(stats.avg_minutes),
        grade=performance_grade(stats.avg_minutes),
        grade_distribution=grade_distribution(samples),
    )


def technician_rollups(
    tickets: list[CanonicalTicket],
    samples: list[WaitTimeSample],
) -> list[TechnicianRollup]:
    """Per-technician rollups, best (lowest average wait) first."""
    by_tech: dict[str, list[CanonicalTicket]] = defaultdict(list)
    for ticket in tickets:
        by_tech[ticket.assigned_technician or UNASSIGNED].append(ticket)

    waits: dict[str, list[int]] = defaultdict(list)
    for sample in samples:
        waits[sample.technician or UNASSIGNED].append(sample.waited_minutes)

    rollups = []
    for tech in sorted(set(by_tech) | set(waits)):
        own = by_tech.get(tech, [])
        avg_wait = _mean(waits.get(tech, []))
        rollups.append(TechnicianRollup(
            technician=tech,
            ticket_count=len(own),
            completed=sum(is_terminal(t.canonical_status) for t in own),
            avg_wait_minutes=avg_wait,
            wait_samples=len(waits.get(tech, [])),
            efficiency_score=efficiency_score(avg_wait),
            grade=performance_grade(avg_wait),
            rework_rate=_rate(sum(t.is_rework for t in own), len(own)),
            avg_quality_score=_mean([t.quality_score for t in own]),
        ))

    # Technicians without wait samples sort after everyone with a measurement
    rollups.sort(key=lambda r: (
        r.avg_wait_minutes is None,
        r.avg_wait_minutes or 0.0,
        -r.ticket_count,
        r.technician,
    ))
    return rollups


def categorize(ticket: CanonicalTicket, categorizer: DeviceCategorizer | None) -> str:
    if categorizer is None:
        return ticket.device_category
    return categorizer.categorize(ticket.device_info, ticket.description, ticket.subject)


def device_rollups(
    tickets: list[CanonicalTicket],
    categorizer: DeviceCategorizer | None = None,
) -> list[DeviceRollup]:
    by_category: dict[str, list[CanonicalTicket]] = defaultdict(list)
    for ticket in tickets:
        by_category[categorize(ticket, categorizer)].append(ticket)

    rollups = []
    for category, own in by_category.items():
        completed = [t for t in own if is_terminal(t.canonical_status)]
        volume = Counter(t.assigned_technician for t in own if t.assigned_technician)
        top = sorted(volume.items(), key=lambda kv: (-kv[1], kv[0]))[:3]
        rollups.append(DeviceRollup(
            category=category,
            ticket_count=len(own),
            completed=len(completed),
            avg_completion_minutes=_mean([t.total_business_minutes_open for t in completed]),
            rework_rate=_rate(sum(t.is_rework for t in own), len(own)),
            top_technicians=[name for name, _ in top],
        ))
    rollups.sort(key=lambda r: (-r.ticket_count, r.category))
    return rollups


def time_buckets(tickets: list[CanonicalTicket], tz: tzinfo) -> TimeBuckets:
    """Per calendar day and per hour-of-day (of creation, in `tz`)."""
    by_day: dict[date, list[CanonicalTicket]] = defaultdict(list)
    by_hour = {hour: 0 for hour in range(24)}
    for ticket in tickets:
        local = ticket.created_at.astimezone(tz)
        by_day[local.date()].append(ticket)
        by_hour[local.hour] += 1

    days = [
        DayBucket(
            day=day,
            ticket_count=len(own),
            avg_total_minutes=_mean([t.total_business_minutes_open for t in own]),
            rework_rate=_rate(sum(t.is_rework for t in own), len(own)),
        )
        for day, own in sorted(by_day.items())
    ]
    busiest = sorted((h for h, n in by_hour.items() if n), key=lambda h: (-by_hour[h], h))
    return TimeBuckets(by_day=days, by_hour=by_hour, peak_hours=busiest[:3])


def repair_type_rollups(tickets: list[CanonicalTicket]) -> list[RepairTypeRollup]:
    by_type: dict[str, list[CanonicalTicket]] = defaultdict(list)
    for ticket in tickets:
        by_type[ticket.repair_type].append(ticket)
    rollups = [
        RepairTypeRollup(
            repair_type=repair_type,
            ticket_count=len(own),
            avg_total_minutes=_mean([t.total_business_minutes_open for t in own]),
            rework_rate=_rate(sum(t.is_rework for t in own), len(own)),
        )
        for repair_type, own in by_type.items()
    ]
    rollups.sort(key=lambda r: (-r.ticket_count, r.repair_type))
    return rollups


def rework_breakdown(
    tickets: list[CanonicalTicket],
    categorizer: DeviceCategorizer | None = None,
) -> ReworkBreakdown:
    rework = [t for t in tickets if t.is_rework]
    keywords = Counter(
        t.rework_reason.rsplit(": ", 1)[-1] for t in rework if t.rework_reason
    )
    return ReworkBreakdown(
        rework_tickets=len(rework),
        rework_rate=_rate(len(rework), len(tickets)),
        by_technician=dict(Counter(t.assigned_technician or UNASSIGNED for t in rework).most_common()),
        by_device_category=dict(Counter(categorize(t, categorizer) for t in rework).most_common()),
        avg_rework_minutes=_mean([t.total_business_minutes_open for t in rework]),
        top_keywords=keywords.most_common(5),
    )


# ---------------------------------------------------------------------------
# Read surface
# ---------------------------------------------------------------------------

class AnalyticsService:
    """
    Builds an AnalyticsReport for tickets created within [start, end].

    Example:
        service = AnalyticsService(store, BusinessCalendar())
        report = service.build_report(start, end, technician="Thasveer")
    """

    def __init__(
        self,
        store: TicketStore,
        calendar: BusinessCalendar,
        categorizer: DeviceCategorizer | None = None,
    ):
        self.store = store
        self.calendar = calendar
        self.categorizer = categorizer

    def build_report(
        self,
        start: datetime,
        end: datetime,
        technician: str | None = None,
        device_category: str | None = None,
    ) -> AnalyticsReport:
        start, end = self.calendar.localize(start), self.calendar.localize(end)
        tickets = self.store.scan_tickets(ranges={"created_at": (start, end)})
        samples = self.store.scan_wait_samples(ranges={"picked_up_at": (start, end)})

        if technician:
            wanted = technician.casefold()
            tickets = [t for t in tickets if (t.assigned_technician or "").casefold() == wanted]
            samples = [s for s in samples if (s.technician or "").casefold() == wanted]
        if device_category:
            wanted = device_category.casefold()
            tickets = [t for t in tickets if categorize(t, self.categorizer).casefold() == wanted]
            keys = {t.key for t in tickets}
            samples = [s for s in samples if s.ticket_key in keys]

        return AnalyticsReport(
            start=start,
            end=end,
            filters={"technician": technician, "device_category": device_category},
            department=department_summary(tickets, samples),
            technicians=technician_rollups(tickets, samples),
            devices=device_rollups(tickets, self.categorizer),
            time=time_buckets(tickets, self.calendar.tz),
            repair_types=repair_type_rollups(tickets),
            rework=rework_breakdown(tickets, self.categorizer),
        )
