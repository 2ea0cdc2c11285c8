"""
RepairShopr Ticket Sync & Business-Hours Analytics

Ingests repair tickets from several RepairShopr instances, reconciles them
into one canonical model and computes business-hours timing, rework and
per-technician / per-device analytics.

Features:
- Per-status concurrent fetching with partial-failure reporting
- Versioned, operator-extensible status mapping
- Business-calendar wait/active time
- Idempotent incremental sync with atomic run claim
- Token bucket rate limiting per source

Quick Start:
    pip install repairshopr-sync
    rs-sync check-config   # Validate configuration
    rs-sync test           # Verify source credentials
    rs-sync sync           # Run an incremental pass
"""

from repairshopr_sync.analytics import AnalyticsReport, AnalyticsService
from repairshopr_sync.business_hours import (
    BusinessCalendar,
    CalendarConfigError,
    format_business_minutes,
)
from repairshopr_sync.client import (
    RepairShoprAPIError,
    RepairShoprAuthError,
    RepairShoprClient,
    RepairShoprNotFoundError,
    RepairShoprRateLimitError,
    RepairShoprServerError,
)
from repairshopr_sync.config import ConfigError, SyncSettings, load_settings
from repairshopr_sync.connector import (
    ConnectorMissingCredentialError,
    FetchResult,
    SliceError,
    SourceConnector,
    fetch_sources,
)
from repairshopr_sync.orchestrator import SyncOrchestrator, SyncRequest, SyncTriggerResult
from repairshopr_sync.policy import PolicyDecision, PolicyFilter, TechnicianPolicy
from repairshopr_sync.rate_limiter import SourceRateLimiters, TokenBucketRateLimiter
from repairshopr_sync.reconciler import ReconcileResult, TicketReconciler
from repairshopr_sync.records import (
    CanonicalTicket,
    StatusChangeEvent,
    SyncKind,
    SyncOperation,
    SyncStatus,
    WaitTimeSample,
)
from repairshopr_sync.rework import ReworkDetector, ReworkResult, quality_score
from repairshopr_sync.status import CanonicalStatus, StatusNormalizer
from repairshopr_sync.store import (
    InMemoryStore,
    JsonFileStore,
    StoreError,
    SyncOperationStateError,
    TicketStore,
)

__version__ = "1.0.0"
__all__ = [
    # Calendar
    "BusinessCalendar",
    "CalendarConfigError",
    "format_business_minutes",

    # Status
    "CanonicalStatus",
    "StatusNormalizer",

    # API client
    "RepairShoprClient",
    "RepairShoprAPIError",
    "RepairShoprAuthError",
    "RepairShoprNotFoundError",
    "RepairShoprRateLimitError",
    "RepairShoprServerError",

    # Fetching
    "ConnectorMissingCredentialError",
    "FetchResult",
    "SliceError",
    "SourceConnector",
    "fetch_sources",
    "SourceRateLimiters",
    "TokenBucketRateLimiter",

    # Pipeline
    "PolicyDecision",
    "PolicyFilter",
    "TechnicianPolicy",
    "ReworkDetector",
    "ReworkResult",
    "quality_score",
    "TicketReconciler",
    "ReconcileResult",
    "SyncOrchestrator",
    "SyncRequest",
    "SyncTriggerResult",

    # Records
    "CanonicalTicket",
    "StatusChangeEvent",
    "SyncKind",
    "SyncOperation",
    "SyncStatus",
    "WaitTimeSample",

    # Storage
    "TicketStore",
    "InMemoryStore",
    "JsonFileStore",
    "StoreError",
    "SyncOperationStateError",

    # Analytics
    "AnalyticsService",
    "AnalyticsReport",

    # Configuration
    "ConfigError",
    "SyncSettings",
    "load_settings",
]
