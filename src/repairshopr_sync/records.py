"""
Canonical records owned by the sync pipeline.

CanonicalTicket is written only by the reconciler; everything else reads it.
StatusChangeEvent and WaitTimeSample are append-only. SyncOperation is
created when a pass claims the run slot and frozen once finalized.
"""

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ticket_key(source_instance: str, source_id: str | int) -> str:
    return f"{source_instance}:{source_id}"


class TicketComment(BaseModel):
    author: str = "Unknown"
    text: str = ""
    timestamp: datetime | None = None
    is_internal: bool = False


class CanonicalTicket(BaseModel):
    """The single reconciled representation of a ticket."""

    # Identity
    source_instance: str
    source_id: str
    number: str

    # Content
    subject: str = ""
    description: str = ""
    device_info: str = ""
    device_category: str = "Other"
    repair_type: str = "General Repair"
    location_name: str | None = None
    claim_number: str | None = None
    comments: list[TicketComment] = Field(default_factory=list)

    # State
    raw_status: str
    canonical_status: str
    assigned_technician: str | None = None

    # Timing (business minutes)
    created_at: datetime
    last_source_update_at: datetime
    completed_at: datetime | None = None
    total_business_minutes_open: int = 0
    active_work_minutes: int = 0
    waiting_minutes: int = 0
    timing_estimated: bool = False

    # Quality
    is_rework: bool = False
    rework_reason: str | None = None
    rework_count: int = Field(default=0, ge=0)
    quality_score: float = Field(default=5.0, ge=0.0, le=5.0)

    # Sync bookkeeping
    last_synced_at: datetime | None = None
    next_sync_at: datetime | None = None
    sync_priority: int = 3
    is_finalized: bool = False

    @model_validator(mode="after")
    def check_timing_split(self) -> "CanonicalTicket":
        if self.active_work_minutes + self.waiting_minutes != self.total_business_minutes_open:
            raise ValueError(
                "active_work_minutes + waiting_minutes must equal total_business_minutes_open"
            )
        return self

    @property
    def key(self) -> str:
        return ticket_key(self.source_instance, self.source_id)


class StatusChangeEvent(BaseModel):
    """Append-only canonical status transition."""

    id: str
    ticket_key: str
    from_status: str | None = None
    to_status: str
    changed_at: datetime
    changed_by: str = "system"

    @classmethod
    def build(
        cls,
        ticket_key: str,
        from_status: str | None,
        to_status: str,
        changed_at: datetime,
        changed_by: str | None = None,
    ) -> "StatusChangeEvent":
        # Deterministic id so re-observing the same transition is a no-op append
        digest = hashlib.sha1(
            f"{ticket_key}|{changed_at.isoformat()}|{to_status}".encode()
        ).hexdigest()[:16]
        return cls(
            id=f"evt_{digest}",
            ticket_key=ticket_key,
            from_status=from_status,
            to_status=to_status,
            changed_at=changed_at,
            changed_by=changed_by or "system",
        )


class WaitTimeSample(BaseModel):
    """Business minutes a ticket waited before a technician picked it up."""

    id: str
    ticket_key: str
    source_instance: str
    technician: str | None = None
    from_status: str | None = None
    to_status: str
    waited_minutes: int = Field(ge=0)
    waiting_since: datetime
    picked_up_at: datetime


class SyncKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncOperation(BaseModel):
    """One execution record of the sync orchestrator."""

    id: str = Field(default_factory=lambda: f"sync_{uuid.uuid4().hex[:12]}")
    kind: SyncKind = SyncKind.INCREMENTAL
    status: SyncStatus = SyncStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    filtered: int = 0
    errors: int = 0
    error_log: list[str] = Field(default_factory=list)
    unmapped_statuses: dict[str, int] = Field(default_factory=dict)

    request: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status == SyncStatus.RUNNING

    def counters(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "filtered": self.filtered,
            "errors": self.errors,
        }
