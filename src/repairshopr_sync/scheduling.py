"""
Sync scheduling: how soon each ticket should be looked at again.

Effort concentrates on tickets likely to still be changing. Active work is
re-checked every 30 minutes; old terminal tickets are finalized and never
become due again unless a full pass observes a change.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from repairshopr_sync.status import CanonicalStatus, is_terminal

PRIORITY_ACTIVE = 1
PRIORITY_OPERATIONAL = 2
PRIORITY_SLOW = 3
PRIORITY_FINALIZED = 4

DEFERRALS: dict[int, timedelta] = {
    PRIORITY_ACTIVE: timedelta(minutes=30),
    PRIORITY_OPERATIONAL: timedelta(hours=2),
    PRIORITY_SLOW: timedelta(hours=24),
}


@dataclass(frozen=True)
class Schedule:
    sync_priority: int
    next_sync_at: datetime | None
    is_finalized: bool = False


class SyncScheduler:
    """
    Example:
        scheduler = SyncScheduler(stale_after_days=30, finalize_after_days=7)
        scheduler.schedule("In Progress", created_at, None, now)
        # Schedule(sync_priority=1, next_sync_at=now + 30min)
    """

    def __init__(self, stale_after_days: int = 30, finalize_after_days: int = 7):
        self.stale_after = timedelta(days=stale_after_days)
        self.finalize_after = timedelta(days=finalize_after_days)

    def schedule(
        self,
        canonical_status: str,
        created_at: datetime,
        completed_at: datetime | None,
        now: datetime,
    ) -> Schedule:
        if is_terminal(canonical_status):
            # Age of a finished ticket counts from when it finished
            finished = completed_at or created_at
            if now - finished >= self.finalize_after:
                return Schedule(PRIORITY_FINALIZED, None, is_finalized=True)
            return self._deferred(PRIORITY_SLOW, now)

        if canonical_status == CanonicalStatus.IN_PROGRESS.value:
            return self._deferred(PRIORITY_ACTIVE, now)

        if now - created_at >= self.stale_after:
            return self._deferred(PRIORITY_SLOW, now)
        # Unmapped pass-through statuses are treated as operational
        return self._deferred(PRIORITY_OPERATIONAL, now)

    @staticmethod
    def _deferred(priority: int, now: datetime) -> Schedule:
        return Schedule(priority, now + DEFERRALS[priority])
