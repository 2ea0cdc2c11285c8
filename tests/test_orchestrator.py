"""
Tests for the sync orchestrator.
"""

import threading
import time
from datetime import timedelta

import pytest

from repairshopr_sync.config import SyncSettings
from repairshopr_sync.orchestrator import SyncOrchestrator, SyncRequest
from repairshopr_sync.policy import PolicyFilter, TechnicianPolicy
from repairshopr_sync.records import SyncKind, SyncOperation, SyncStatus
from repairshopr_sync.store import InMemoryStore

from conftest import FakeRepairShopr, make_ticket_payload, utc

NOW = utc(2024, 1, 15, 16)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def make_orchestrator(store, reconciler, make_connector, clock):
    def _make(api, policy_filter=None, timeout_seconds=600, sources=("platinum",)):
        return SyncOrchestrator(
            store=store,
            connectors=[make_connector(api, name=name) for name in sources],
            reconciler=reconciler,
            policy_filter=policy_filter,
            max_concurrency=4,
            timeout_seconds=timeout_seconds,
            clock=clock,
        )
    return _make


class TestTrigger:
    """Tests for pass admission and outcome."""

    def test_incremental_pass_inserts(self, fake_api, make_orchestrator, store):
        fake_api.add(make_ticket_payload(ticket_id=1, status="Parts Ordered"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="In Progress"))
        fake_api.add(make_ticket_payload(ticket_id=3, status="Resolved"))

        result = make_orchestrator(fake_api).trigger()

        assert result.accepted
        op = result.operation
        assert op.status == SyncStatus.COMPLETED
        assert (op.processed, op.inserted, op.errors) == (2, 2, 0)
        # Terminal statuses are not targeted by incremental passes
        assert "Resolved" not in fake_api.status_requests()
        assert store.get_ticket("platinum:3") is None
        assert store.get_sync_operation(op.id).status == SyncStatus.COMPLETED

    def test_full_pass_fetches_every_status_and_forces(self, fake_api, make_orchestrator, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        fake_api.add(make_ticket_payload(ticket_id=3, status="Resolved"))
        orchestrator = make_orchestrator(fake_api)

        first = orchestrator.trigger(SyncRequest(kind=SyncKind.FULL)).operation
        clock.advance(minutes=5)
        second = orchestrator.trigger(SyncRequest(kind=SyncKind.FULL)).operation

        assert first.inserted == 2
        assert "Resolved" in fake_api.status_requests()
        assert (second.inserted, second.updated) == (0, 2)

    def test_rejected_while_running(self, fake_api, make_orchestrator, store):
        running = SyncOperation(started_at=NOW - timedelta(minutes=5))
        store.claim_sync_operation(running, timedelta(hours=1), NOW - timedelta(minutes=5))

        result = make_orchestrator(fake_api).trigger()

        assert not result.accepted
        assert result.sync_operation_id == running.id
        assert "already running" in result.reason
        assert fake_api.requests == []

    def test_stale_running_pass_is_superseded(self, fake_api, make_orchestrator, store):
        stale = SyncOperation(started_at=NOW - timedelta(hours=3))
        store.claim_sync_operation(stale, timedelta(hours=1), stale.started_at)

        result = make_orchestrator(fake_api).trigger()

        assert result.accepted
        assert store.get_sync_operation(stale.id).status == SyncStatus.FAILED

    def test_partial_failure_keeps_reconciled_tickets(self, fake_api, make_orchestrator, store):
        fake_api.add(make_ticket_payload(ticket_id=1, status="Parts Ordered"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="In Progress"))
        fake_api.failing_statuses.add("Parts Ordered")

        op = make_orchestrator(fake_api).trigger().operation

        assert op.status == SyncStatus.FAILED
        assert any("source_unavailable" in e and "Parts Ordered" in e for e in op.error_log)
        assert store.get_ticket("platinum:2") is not None
        assert op.inserted == 1

    def test_malformed_ticket_counted_as_error(self, fake_api, make_orchestrator):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        bad = fake_api.add(make_ticket_payload(ticket_id=2, status="In Progress"))
        del bad["created_at"]

        op = make_orchestrator(fake_api).trigger().operation

        assert op.status == SyncStatus.COMPLETED
        assert op.errors == 1
        assert op.inserted == 1
        assert any(e.startswith("[malformed]") for e in op.error_log)

    def test_policy_filtered(self, fake_api, make_orchestrator, store):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress", technician="Shannon"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="In Progress", technician="Ben"))
        policy = PolicyFilter({"platinum": TechnicianPolicy.create(denied_technicians=["Shannon"])})

        op = make_orchestrator(fake_api, policy_filter=policy).trigger().operation

        assert (op.processed, op.filtered, op.inserted) == (2, 1, 1)
        assert store.get_ticket("platinum:1") is None

    def test_workshop_reassignment_applied(self, fake_api, make_orchestrator, store):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress", technician="Durban Workshop"))
        policy = PolicyFilter({
            "platinum": TechnicianPolicy.create(workshop_assignments={"Durban Workshop": "Thasveer"}),
        })

        make_orchestrator(fake_api, policy_filter=policy).trigger()

        assert store.get_ticket("platinum:1").assigned_technician == "Thasveer"

    def test_date_range_skips_outside_tickets(self, fake_api, make_orchestrator):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))

        op = make_orchestrator(fake_api).trigger(
            SyncRequest(date_from=utc(2024, 1, 16))
        ).operation

        assert (op.skipped, op.inserted) == (1, 0)

    def test_timeout_fails_pass(self, make_orchestrator):
        release = threading.Event()

        class SlowApi(FakeRepairShopr):
            def handler(self, request):
                release.wait(5)
                return super().handler(request)

        api = SlowApi()
        api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        timer = threading.Timer(0.5, release.set)
        timer.start()
        try:
            op = make_orchestrator(api, timeout_seconds=0.2).trigger().operation
        finally:
            release.set()
            timer.cancel()

        assert op.status == SyncStatus.FAILED
        assert any("time budget" in e for e in op.error_log)
        assert op.completed_at is not None

    def test_running_work_drained_before_finalize(
        self, fake_api, make_orchestrator, reconciler, store, monkeypatch
    ):
        """Tickets still reconciling at the deadline are waited for and counted."""
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="Parts Ordered"))
        finished = []
        reconcile = reconciler.reconcile

        def slow_reconcile(raw, *args, **kwargs):
            time.sleep(1.0)
            result = reconcile(raw, *args, **kwargs)
            finished.append(raw.id)
            return result

        monkeypatch.setattr(reconciler, "reconcile", slow_reconcile)

        op = make_orchestrator(fake_api, timeout_seconds=0.5).trigger().operation

        assert sorted(finished) == [1, 2]
        assert op.status == SyncStatus.FAILED
        assert any("time budget" in e for e in op.error_log)
        assert (op.processed, op.inserted) == (2, 2)
        stored = store.get_sync_operation(op.id)
        assert (stored.status, stored.inserted) == (SyncStatus.FAILED, 2)

    def test_comment_failure_does_not_fail_pass(self, fake_api, store, reconciler, make_connector, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="In Progress"))
        fake_api.failing_comments.add(1)
        orchestrator = SyncOrchestrator(
            store, [make_connector(fake_api, fetch_comments=True)], reconciler, clock=clock
        )

        op = orchestrator.trigger().operation

        assert op.status == SyncStatus.COMPLETED
        assert (op.inserted, op.errors) == (2, 1)
        assert any("comments_unavailable" in e for e in op.error_log)
        assert store.get_ticket("platinum:1") is not None

    def test_unexpected_error_fails_operation(self, fake_api, reconciler, make_connector, clock):
        class BrokenStore(InMemoryStore):
            def due_tickets(self, now, priorities=None, limit=None):
                raise RuntimeError("disk on fire")

        store = BrokenStore()
        reconciler.store = store
        orchestrator = SyncOrchestrator(store, [make_connector(fake_api)], reconciler, clock=clock)

        result = orchestrator.trigger()

        assert result.accepted
        assert result.operation.status == SyncStatus.FAILED
        assert "RuntimeError: disk on fire" in result.operation.error_log[-1]
        assert store.get_sync_operation(result.sync_operation_id).status == SyncStatus.FAILED


class TestDueTickets:
    """Tests for rescheduling and targeted re-fetch."""

    def test_unchanged_due_ticket_rescheduled(self, fake_api, make_orchestrator, store, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        orchestrator = make_orchestrator(fake_api)
        orchestrator.trigger()

        clock.advance(hours=1)
        op = orchestrator.trigger().operation

        assert op.skipped == 1
        ticket = store.get_ticket("platinum:1")
        assert ticket.next_sync_at == clock.now + timedelta(minutes=30)
        assert ticket.last_synced_at == clock.now

    def test_known_ticket_not_due_is_skipped(self, fake_api, make_orchestrator, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="Parts Ordered"))
        orchestrator = make_orchestrator(fake_api)
        orchestrator.trigger()

        fake_api.tickets[0]["updated_at"] = "2024-01-15T16:10:00Z"
        clock.advance(minutes=30)
        op = orchestrator.trigger().operation

        assert (op.skipped, op.updated) == (1, 0)

    def test_due_ticket_moved_out_of_targets_is_refetched(self, fake_api, make_orchestrator, store, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        orchestrator = make_orchestrator(fake_api)
        orchestrator.trigger()

        fake_api.tickets[0].update(status="Foo Bar", updated_at="2024-01-15T16:20:00Z")
        clock.advance(hours=1)
        op = orchestrator.trigger().operation

        assert op.updated == 1
        assert store.get_ticket("platinum:1").canonical_status == "Foo Bar"
        assert op.unmapped_statuses == {"Foo Bar": 1}
        assert any(r.url.path.endswith("/tickets/1") for r in fake_api.requests)

    def test_due_ticket_gone_upstream_rescheduled(self, fake_api, make_orchestrator, store, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        orchestrator = make_orchestrator(fake_api)
        orchestrator.trigger()

        fake_api.tickets.clear()
        clock.advance(hours=1)
        op = orchestrator.trigger().operation

        assert op.status == SyncStatus.COMPLETED
        assert store.get_ticket("platinum:1").next_sync_at == clock.now + timedelta(minutes=30)

    def test_priority_filter_limits_due_set(self, fake_api, make_orchestrator, store, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        orchestrator = make_orchestrator(fake_api)
        orchestrator.trigger()

        clock.advance(hours=1)
        orchestrator.trigger(SyncRequest(priorities=[3]))

        # Not selected as due, so its schedule was left alone
        assert store.get_ticket("platinum:1").next_sync_at == NOW + timedelta(minutes=30)


class TestStatusReport:
    """Tests for status_report."""

    def test_report(self, fake_api, make_orchestrator, clock):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="Parts Ordered"))
        orchestrator = make_orchestrator(fake_api)
        orchestrator.trigger()

        report = orchestrator.status_report(now=NOW + timedelta(hours=3))

        assert report["running"] is None
        assert len(report["recent_operations"]) == 1
        assert report["stats_30d"]["incremental"]["success_rate"] == 1.0
        assert report["stats_30d"]["full"]["total"] == 0
        assert report["due_tickets"] == {"total": 2, "by_priority": {1: 1, 2: 1}}


class TestFromSettings:
    """Tests for wiring from configuration."""

    def test_end_to_end(self, fake_api, store):
        fake_api.add(make_ticket_payload(ticket_id=1, status="Parts Ordered", technician="Marshal"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="Parts Ordered", technician="Someone"))
        settings = SyncSettings.model_validate({
            "sources": [{
                "name": "devicedoctor",
                "subdomain": "devicedoctorsa",
                "api_key": "dd-key-0123456789",
                "requests_per_minute": 6000,
            }],
            "policies": {"DeviceDoctor": {"allowed_technicians": ["Marshal"]}},
        })

        orchestrator = SyncOrchestrator.from_settings(settings, store, transport=fake_api.transport)
        op = orchestrator.trigger().operation

        assert (op.inserted, op.filtered) == (1, 1)
        assert store.get_ticket("devicedoctor:1").assigned_technician == "Marshal"

    def test_without_connections(self, store):
        settings = SyncSettings.model_validate({
            "sources": [{"name": "platinum", "subdomain": "platinumrepairs"}],
        })
        orchestrator = SyncOrchestrator.from_settings(settings, store, connect=False)
        assert orchestrator.connectors == {}
        assert orchestrator.status_report(now=NOW)["due_tickets"]["total"] == 0
