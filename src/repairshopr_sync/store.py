"""
Persistence boundary.

The core only needs get-by-key, upsert-by-key, append, scan with simple
equality/range filters, and an atomic "claim the run slot" operation. Two
implementations are provided:

- InMemoryStore: process-local, guarded by a lock (tests, one-shot runs)
- JsonFileStore: one JSON document on disk, every read-modify-write done
  under an exclusive lock file so separate processes exclude each other
"""

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

import structlog
from pydantic import ValidationError

from repairshopr_sync.records import (
    CanonicalTicket,
    StatusChangeEvent,
    SyncOperation,
    SyncStatus,
    WaitTimeSample,
    utcnow,
)

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    """Raised when the datastore cannot be read or written."""
    pass


class SyncOperationStateError(StoreError):
    """Raised on an illegal SyncOperation transition (e.g. re-finalizing)."""
    pass


@dataclass
class ClaimResult:
    claimed: bool
    operation: SyncOperation | None = None
    # Running operation that blocked the claim
    existing: SyncOperation | None = None
    # Stale running operations failed as abandoned by this claim
    abandoned: list[SyncOperation] = field(default_factory=list)


def _matches(
    record: Any,
    equals: Mapping[str, Any] | None,
    ranges: Mapping[str, tuple[Any, Any]] | None,
) -> bool:
    for name, expected in (equals or {}).items():
        if getattr(record, name) != expected:
            return False
    for name, (low, high) in (ranges or {}).items():
        value = getattr(record, name)
        if value is None:
            return False
        if low is not None and value < low:
            return False
        if high is not None and value > high:
            return False
    return True


class TicketStore(ABC):
    """Abstract datastore for canonical records. Ranges are inclusive."""

    # --- tickets ----------------------------------------------------------

    @abstractmethod
    def get_ticket(self, key: str) -> CanonicalTicket | None: ...

    @abstractmethod
    def upsert_ticket(self, ticket: CanonicalTicket, only_if_newer: bool = True) -> bool:
        """
        Write by key. With `only_if_newer`, a ticket whose
        last_source_update_at is older than the stored one is not written.
        Returns True when written.
        """

    @abstractmethod
    def reschedule_ticket(
        self,
        key: str,
        next_sync_at: datetime | None,
        sync_priority: int,
        last_synced_at: datetime,
        is_finalized: bool | None = None,
    ) -> bool:
        """Update only sync bookkeeping fields."""

    @abstractmethod
    def scan_tickets(
        self,
        equals: Mapping[str, Any] | None = None,
        ranges: Mapping[str, tuple[Any, Any]] | None = None,
    ) -> list[CanonicalTicket]: ...

    def due_tickets(
        self,
        now: datetime,
        priorities: Iterable[int] | None = None,
        limit: int | None = None,
    ) -> list[CanonicalTicket]:
        """Tickets with next_sync_at <= now, by priority then next_sync_at."""
        due = self.scan_tickets(ranges={"next_sync_at": (None, now)})
        if priorities is not None:
            wanted = set(priorities)
            due = [t for t in due if t.sync_priority in wanted]
        due.sort(key=lambda t: (t.sync_priority, t.next_sync_at, t.key))
        return due[:limit] if limit is not None else due

    # --- append-only history ----------------------------------------------

    @abstractmethod
    def append_event(self, event: StatusChangeEvent) -> bool:
        """Append; returns False (no-op) when the event id already exists."""

    @abstractmethod
    def scan_events(
        self,
        equals: Mapping[str, Any] | None = None,
        ranges: Mapping[str, tuple[Any, Any]] | None = None,
    ) -> list[StatusChangeEvent]: ...

    def events_for(self, ticket_key: str) -> list[StatusChangeEvent]:
        events = self.scan_events(equals={"ticket_key": ticket_key})
        return sorted(events, key=lambda e: e.changed_at)

    @abstractmethod
    def put_wait_sample(self, sample: WaitTimeSample) -> None:
        """Insert or replace by id (samples are recomputed, never patched)."""

    @abstractmethod
    def scan_wait_samples(
        self,
        equals: Mapping[str, Any] | None = None,
        ranges: Mapping[str, tuple[Any, Any]] | None = None,
    ) -> list[WaitTimeSample]: ...

    # --- sync operations --------------------------------------------------

    @abstractmethod
    def claim_sync_operation(
        self,
        operation: SyncOperation,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Atomically insert `operation` as the single running operation."""

    @abstractmethod
    def finalize_sync_operation(self, operation: SyncOperation) -> SyncOperation: ...

    @abstractmethod
    def get_sync_operation(self, operation_id: str) -> SyncOperation | None: ...

    @abstractmethod
    def list_sync_operations(self, since: datetime | None = None) -> list[SyncOperation]:
        """Newest first."""


@dataclass
class _State:
    tickets: dict[str, CanonicalTicket] = field(default_factory=dict)
    events: dict[str, StatusChangeEvent] = field(default_factory=dict)
    samples: dict[str, WaitTimeSample] = field(default_factory=dict)
    operations: dict[str, SyncOperation] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": 1,
            "tickets": [t.model_dump(mode="json") for t in self.tickets.values()],
            "events": [e.model_dump(mode="json") for e in self.events.values()],
            "samples": [s.model_dump(mode="json") for s in self.samples.values()],
            "operations": [o.model_dump(mode="json") for o in self.operations.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "_State":
        state = cls()
        for raw in data.get("tickets", []):
            ticket = CanonicalTicket.model_validate(raw)
            state.tickets[ticket.key] = ticket
        for raw in data.get("events", []):
            event = StatusChangeEvent.model_validate(raw)
            state.events[event.id] = event
        for raw in data.get("samples", []):
            sample = WaitTimeSample.model_validate(raw)
            state.samples[sample.id] = sample
        for raw in data.get("operations", []):
            op = SyncOperation.model_validate(raw)
            state.operations[op.id] = op
        return state


class InMemoryStore(TicketStore):
    """Dict-backed store; every operation runs under one re-entrant lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._state = _State()

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[_State]:
        with self._lock:
            yield self._state

    def get_ticket(self, key: str) -> CanonicalTicket | None:
        with self._transaction() as state:
            ticket = state.tickets.get(key)
            return ticket.model_copy(deep=True) if ticket else None

    def upsert_ticket(self, ticket: CanonicalTicket, only_if_newer: bool = True) -> bool:
        with self._transaction(write=True) as state:
            existing = state.tickets.get(ticket.key)
            if (
                only_if_newer
                and existing is not None
                and ticket.last_source_update_at < existing.last_source_update_at
            ):
                logger.debug("Stale upsert ignored", key=ticket.key)
                return False
            state.tickets[ticket.key] = ticket.model_copy(deep=True)
            return True

    def reschedule_ticket(
        self,
        key: str,
        next_sync_at: datetime | None,
        sync_priority: int,
        last_synced_at: datetime,
        is_finalized: bool | None = None,
    ) -> bool:
        with self._transaction(write=True) as state:
            existing = state.tickets.get(key)
            if existing is None:
                return False
            update: dict[str, Any] = {
                "next_sync_at": next_sync_at,
                "sync_priority": sync_priority,
                "last_synced_at": last_synced_at,
            }
            if is_finalized is not None:
                update["is_finalized"] = is_finalized
            state.tickets[key] = existing.model_copy(update=update)
            return True

    def scan_tickets(self, equals=None, ranges=None) -> list[CanonicalTicket]:
        with self._transaction() as state:
            return [
                t.model_copy(deep=True)
                for t in state.tickets.values()
                if _matches(t, equals, ranges)
            ]

    def append_event(self, event: StatusChangeEvent) -> bool:
        with self._transaction(write=True) as state:
            if event.id in state.events:
                return False
            state.events[event.id] = event
            return True

    def scan_events(self, equals=None, ranges=None) -> list[StatusChangeEvent]:
        with self._transaction() as state:
            return [e for e in state.events.values() if _matches(e, equals, ranges)]

    def put_wait_sample(self, sample: WaitTimeSample) -> None:
        with self._transaction(write=True) as state:
            state.samples[sample.id] = sample

    def scan_wait_samples(self, equals=None, ranges=None) -> list[WaitTimeSample]:
        with self._transaction() as state:
            return [s for s in state.samples.values() if _matches(s, equals, ranges)]

    def claim_sync_operation(
        self,
        operation: SyncOperation,
        stale_after: timedelta,
        now: datetime | None = None,
    ) -> ClaimResult:
        now = now or utcnow()
        with self._transaction(write=True) as state:
            running = [op for op in state.operations.values() if op.is_running]
            for op in running:
                if now - op.started_at < stale_after:
                    return ClaimResult(claimed=False, existing=op.model_copy(deep=True))

            abandoned = []
            for op in running:
                failed = op.model_copy(deep=True)
                failed.status = SyncStatus.FAILED
                failed.completed_at = now
                failed.error_log.append(
                    f"Abandoned: still running after {stale_after}; superseded by {operation.id}"
                )
                state.operations[op.id] = failed
                abandoned.append(failed)
                logger.warning("Abandoned stale sync operation", operation_id=op.id)

            state.operations[operation.id] = operation.model_copy(deep=True)
            return ClaimResult(claimed=True, operation=operation, abandoned=abandoned)

    def finalize_sync_operation(self, operation: SyncOperation) -> SyncOperation:
        if operation.is_running:
            raise SyncOperationStateError(
                f"Operation {operation.id} must be completed or failed to finalize"
            )
        with self._transaction(write=True) as state:
            stored = state.operations.get(operation.id)
            if stored is None:
                raise SyncOperationStateError(f"Unknown sync operation {operation.id}")
            if not stored.is_running:
                raise SyncOperationStateError(
                    f"Operation {operation.id} is already {stored.status.value}"
                )
            state.operations[operation.id] = operation.model_copy(deep=True)
            return operation

    def get_sync_operation(self, operation_id: str) -> SyncOperation | None:
        with self._transaction() as state:
            op = state.operations.get(operation_id)
            return op.model_copy(deep=True) if op else None

    def list_sync_operations(self, since: datetime | None = None) -> list[SyncOperation]:
        with self._transaction() as state:
            ops = [
                op.model_copy(deep=True)
                for op in state.operations.values()
                if since is None or op.started_at >= since
            ]
        return sorted(ops, key=lambda op: op.started_at, reverse=True)


class JsonFileStore(InMemoryStore):
    """
    Single JSON document store safe across processes.

    Every transaction takes `<root>/store.lock` (created with O_EXCL),
    reloads the document if another process changed it, and writes changes
    atomically (write temp file, then rename).
    """

    LOCK_POLL_SECONDS = 0.05

    def __init__(
        self,
        root: str | Path,
        lock_timeout: float = 30.0,
        stale_lock_seconds: float = 300.0,
    ):
        super().__init__()
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.data_file = self.root / "store.json"
        self.lock_file = self.root / "store.lock"
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds
        self._loaded_signature: tuple[int, int] | None = None
        self._log = logger.bind(store=str(self.root))

    @contextmanager
    def _file_lock(self) -> Iterator[None]:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
                break
            except FileExistsError:
                self._break_stale_lock()
                if time.monotonic() >= deadline:
                    raise StoreError(f"Timed out waiting for store lock {self.lock_file}")
                time.sleep(self.LOCK_POLL_SECONDS)
            except OSError as e:
                raise StoreError(f"Cannot create store lock {self.lock_file}: {e}") from e

        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _break_stale_lock(self) -> None:
        # A crashed process leaves its lock behind
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_lock_seconds:
            self._log.warning("Removing stale store lock", age_seconds=round(age))
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _signature(self) -> tuple[int, int] | None:
        try:
            st = self.data_file.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _load(self) -> None:
        signature = self._signature()
        if signature is not None and signature == self._loaded_signature:
            return
        if signature is None:
            self._state = _State()
        else:
            try:
                with open(self.data_file) as f:
                    self._state = _State.from_dict(json.load(f))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                raise StoreError(f"Cannot read store {self.data_file}: {e}") from e
        self._loaded_signature = signature

    def _save(self) -> None:
        temp_file = self.data_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(self._state.to_dict(), f)
            os.replace(temp_file, self.data_file)
        except OSError as e:
            raise StoreError(f"Cannot write store {self.data_file}: {e}") from e
        self._loaded_signature = self._signature()

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[_State]:
        with self._lock, self._file_lock():
            self._load()
            try:
                yield self._state
            except BaseException:
                # Body may have mutated the cache; reload from disk next time
                self._loaded_signature = None
                raise
            if write:
                try:
                    self._save()
                except StoreError:
                    self._loaded_signature = None
                    raise
