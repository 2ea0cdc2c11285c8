"""
Status Normalizer

Maps each RepairShopr instance's free-form status vocabulary onto the fixed
canonical taxonomy. The mapping is data, not code: operators extend it with a
versioned JSON file when a shop adds new statuses.
"""

import json
import threading
from collections import Counter
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

import structlog

logger = structlog.get_logger(__name__)


class CanonicalStatus(str, Enum):
    """The six operational states plus the terminal bucket."""

    AWAITING_REWORK = "Awaiting Rework"
    AWAITING_WORKSHOP_REPAIRS = "Awaiting Workshop Repairs"
    AWAITING_DAMAGE_REPORT = "Awaiting Damage Report"
    AWAITING_REPAIR = "Awaiting Repair"
    AWAITING_AUTHORIZATION = "Awaiting Authorization"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"

    def __str__(self) -> str:
        return self.value


OPERATIONAL_STATUSES: tuple[CanonicalStatus, ...] = tuple(
    s for s in CanonicalStatus if s is not CanonicalStatus.COMPLETED
)
TERMINAL_STATUSES = frozenset({CanonicalStatus.COMPLETED})
ACTIVE_WORK_STATUSES = frozenset({CanonicalStatus.IN_PROGRESS})

# Dashboard ordering: most urgent queue first
STATUS_DISPLAY_ORDER: dict[CanonicalStatus, int] = {
    CanonicalStatus.AWAITING_REWORK: 1,
    CanonicalStatus.AWAITING_WORKSHOP_REPAIRS: 2,
    CanonicalStatus.AWAITING_DAMAGE_REPORT: 3,
    CanonicalStatus.AWAITING_REPAIR: 4,
    CanonicalStatus.AWAITING_AUTHORIZATION: 5,
    CanonicalStatus.IN_PROGRESS: 6,
    CanonicalStatus.COMPLETED: 7,
}

DEFAULT_MAPPING_VERSION = "2024.1"

DEFAULT_STATUS_MAPPING: dict[str, CanonicalStatus] = {
    "Parts Allocated": CanonicalStatus.AWAITING_REWORK,
    "Waiting for Parts": CanonicalStatus.AWAITING_REWORK,

    "Parts Required": CanonicalStatus.AWAITING_WORKSHOP_REPAIRS,
    "Parts Ordered": CanonicalStatus.AWAITING_WORKSHOP_REPAIRS,
    "Parts Transferred": CanonicalStatus.AWAITING_WORKSHOP_REPAIRS,
    "To Be Repaired Off-site": CanonicalStatus.AWAITING_WORKSHOP_REPAIRS,
    "Cape Town Repair": CanonicalStatus.AWAITING_WORKSHOP_REPAIRS,

    "Damage Report": CanonicalStatus.AWAITING_DAMAGE_REPORT,

    "Awaiting Virtual Assessment": CanonicalStatus.AWAITING_REPAIR,
    "No Parts": CanonicalStatus.AWAITING_REPAIR,

    "Resolved": CanonicalStatus.COMPLETED,
    "Closed": CanonicalStatus.COMPLETED,
    "Closed File": CanonicalStatus.COMPLETED,
    "Salvage": CanonicalStatus.COMPLETED,
    "BER": CanonicalStatus.COMPLETED,
    "Invoiced": CanonicalStatus.COMPLETED,
}


def _fold(value: str) -> str:
    return " ".join(value.split()).casefold()


class StatusNormalizer:
    """
    Raw status -> canonical status lookup.

    Unknown statuses are passed through unchanged (stripped) and counted in
    `unmapped`, so table gaps show up in sync reports instead of vanishing.

    Example:
        normalizer = StatusNormalizer()
        normalizer.normalize("Parts Ordered")  # "Awaiting Workshop Repairs"
        normalizer.normalize("Foo Bar")        # "Foo Bar"
    """

    def __init__(
        self,
        mapping: dict[str, str] | None = None,
        version: str = DEFAULT_MAPPING_VERSION,
        include_defaults: bool = True,
    ):
        table: dict[str, CanonicalStatus] = {}
        if include_defaults:
            table.update(DEFAULT_STATUS_MAPPING)
        for raw, canonical in (mapping or {}).items():
            try:
                table[raw.strip()] = CanonicalStatus(canonical)
            except ValueError as e:
                raise ValueError(
                    f"Status mapping for '{raw}' targets unknown canonical status '{canonical}'"
                ) from e

        # Canonical names always map to themselves, keeping normalize idempotent
        for status in CanonicalStatus:
            table[status.value] = status

        self.version = version
        self._table = table
        self._folded = {_fold(raw): canonical for raw, canonical in table.items()}
        self._unmapped: Counter[str] = Counter()
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: str | Path) -> "StatusNormalizer":
        """
        Load a mapping extension file:

            {"version": "2024.3", "mapping": {"Awaiting Walk-in Repair": "Awaiting Repair"}}
        """
        with open(path) as f:
            data: dict[str, Any] = json.load(f)
        normalizer = cls(
            mapping=data.get("mapping", {}),
            version=str(data.get("version", DEFAULT_MAPPING_VERSION)),
        )
        logger.info(
            "Loaded status mapping",
            path=str(path),
            version=normalizer.version,
            entries=len(normalizer._table),
        )
        return normalizer

    def lookup(self, raw_status: str | None) -> CanonicalStatus | None:
        """Canonical status for a raw string, or None when unmapped."""
        if raw_status is None:
            return None
        stripped = raw_status.strip()
        found = self._table.get(stripped)
        if found is None:
            found = self._folded.get(_fold(stripped))
        return found

    def normalize(self, raw_status: str | None) -> str:
        """Total mapping: canonical value when known, else the raw string itself."""
        found = self.lookup(raw_status)
        if found is not None:
            return found.value

        passthrough = (raw_status or "").strip()
        with self._lock:
            self._unmapped[passthrough] += 1
        logger.debug("Unmapped raw status", raw_status=passthrough)
        return passthrough

    @property
    def unmapped(self) -> dict[str, int]:
        with self._lock:
            return dict(self._unmapped)

    def reset_unmapped(self) -> None:
        with self._lock:
            self._unmapped.clear()

    def raw_statuses_for(self, canonicals: Iterable[CanonicalStatus | str]) -> list[str]:
        """Every raw vocabulary entry that lands in one of `canonicals`."""
        wanted = {str(c) for c in canonicals}
        raws = [raw for raw, canonical in self._table.items() if canonical.value in wanted]
        # Pass-through statuses (not in the table) are fetched verbatim
        known = {c.value for c in CanonicalStatus}
        raws.extend(w for w in sorted(wanted) if w not in known and w not in raws)
        return sorted(set(raws))

    def mapping(self) -> dict[str, str]:
        return {raw: canonical.value for raw, canonical in sorted(self._table.items())}


def is_terminal(status: str) -> bool:
    return status in {s.value for s in TERMINAL_STATUSES}


def is_active_work(status: str | None) -> bool:
    return status in {s.value for s in ACTIVE_WORK_STATUSES}


def display_rank(status: str) -> int:
    try:
        return STATUS_DISPLAY_ORDER[CanonicalStatus(status)]
    except ValueError:
        return 999
