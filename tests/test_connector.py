"""
Tests for per-status fetching and fan-out.
"""

import threading

import httpx
import pytest

from repairshopr_sync.config import SourceSettings
from repairshopr_sync.connector import (
    ConnectorMissingCredentialError,
    FetchResult,
    build_connectors,
    fetch_sources,
)
from repairshopr_sync.rate_limiter import SourceRateLimiters

from conftest import make_ticket_payload


class TestSourceConnector:
    """Tests for SourceConnector."""

    def test_fetch_status_collects_all_pages(self, fake_api, make_connector):
        for i in range(5):
            fake_api.add(make_ticket_payload(ticket_id=i + 1, status="Parts Ordered"))
        connector = make_connector(fake_api, per_page=2)

        result = connector.fetch_status("Parts Ordered")

        assert sorted(t.id for t in result.tickets) == [1, 2, 3, 4, 5]
        assert not result.partial

    def test_malformed_ticket_reported_not_dropped_silently(self, fake_api, make_connector):
        fake_api.add(make_ticket_payload(ticket_id=1, status="Parts Ordered"))
        bad = fake_api.add(make_ticket_payload(ticket_id=2, status="Parts Ordered"))
        del bad["created_at"]

        result = make_connector(fake_api).fetch_status("Parts Ordered")

        assert [t.id for t in result.tickets] == [1]
        assert len(result.errors) == 1
        assert result.errors[0].kind == "malformed"
        assert result.errors[0].ticket_id == 2
        assert result.partial
        assert not result.source_failed

    def test_failed_slice_is_error_not_empty(self, fake_api, make_connector):
        fake_api.failing_statuses.add("Parts Ordered")

        result = make_connector(fake_api).fetch_status("Parts Ordered")

        assert result.tickets == []
        assert result.source_failed
        assert result.errors[0].kind == "source_unavailable"
        assert "Parts Ordered" in result.errors[0].describe()

    def test_fetch_merges_slices(self, fake_api, make_connector):
        fake_api.add(make_ticket_payload(ticket_id=1, status="Parts Ordered"))
        fake_api.add(make_ticket_payload(ticket_id=2, status="In Progress"))
        fake_api.failing_statuses.add("Damage Report")

        result = make_connector(fake_api).fetch(["Parts Ordered", "In Progress", "Damage Report"])

        assert sorted(t.id for t in result.tickets) == [1, 2]
        assert result.source_failed
        assert sorted(fake_api.status_requests()) == ["Damage Report", "In Progress", "Parts Ordered"]

    def test_fetch_comments_when_enabled(self, fake_api, make_connector):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        fake_api.comments[1] = [{"id": 9, "body": "Still broken after repair", "tech": "Ben"}]

        result = make_connector(fake_api, fetch_comments=True).fetch_status("In Progress")

        assert [c.text for c in result.tickets[0].comments] == ["Still broken after repair"]

    def test_comment_failure_costs_only_that_ticket(self, fake_api, make_connector):
        """One ticket's comment endpoint failing keeps the rest of the slice."""
        for i in range(3):
            fake_api.add(make_ticket_payload(ticket_id=i + 1, status="In Progress"))
        fake_api.comments[3] = [{"id": 7, "body": "Screen replaced", "tech": "Ben"}]
        fake_api.failing_comments.add(1)

        result = make_connector(fake_api, per_page=2, fetch_comments=True).fetch_status("In Progress")

        assert [t.id for t in result.tickets] == [1, 2, 3]
        assert result.tickets[0].comments == []
        assert [c.text for c in result.tickets[2].comments] == ["Screen replaced"]
        assert [(e.kind, e.ticket_id) for e in result.errors] == [("comments_unavailable", 1)]
        assert not result.source_failed

    def test_fetch_ticket_with_malformed_comments(self, fake_api, make_connector):
        fake_api.add(make_ticket_payload(ticket_id=5, status="In Progress"))
        fake_api.comments[5] = "not a list"

        result = make_connector(fake_api, fetch_comments=True).fetch_ticket(5)

        assert [t.id for t in result.tickets] == [5]
        assert result.errors[0].kind == "comments_unavailable"
        assert not result.source_failed

    def test_fetch_ticket(self, fake_api, make_connector):
        fake_api.add(make_ticket_payload(ticket_id=5, status="Resolved"))
        result = make_connector(fake_api).fetch_ticket(5)
        assert [t.status for t in result.tickets] == ["Resolved"]

    def test_fetch_ticket_gone(self, fake_api, make_connector):
        result = make_connector(fake_api).fetch_ticket(404)
        assert result.tickets == []
        assert result.errors == []


class TestFetchResult:
    """Tests for FetchResult.merge."""

    def test_merge_keeps_newest_copy(self, rs_ticket):
        older = FetchResult("platinum", tickets=[rs_ticket(ticket_id=1, updated_at="2024-01-15T10:00:00Z")])
        newer = FetchResult("platinum", tickets=[rs_ticket(ticket_id=1, updated_at="2024-01-15T12:00:00Z")])
        older.merge(newer)
        assert len(older.tickets) == 1
        assert older.tickets[0].updated_at.hour == 12


class TestFetchSources:
    """Tests for fan-out across sources."""

    def test_results_per_source(self, fake_api, make_connector):
        fake_api.add(make_ticket_payload(ticket_id=1, status="In Progress"))
        connectors = [make_connector(fake_api, name="platinum"), make_connector(fake_api, name="devicedoctor")]

        results = fetch_sources(
            connectors,
            {"platinum": ["In Progress"], "devicedoctor": ["In Progress"]},
            max_workers=4,
        )

        assert set(results) == {"platinum", "devicedoctor"}
        assert all(len(r.tickets) == 1 for r in results.values())

    def test_timeout_marks_unfinished_slices(self, make_connector):
        release = threading.Event()

        class _Blocking:
            @staticmethod
            def handler(request):
                release.wait(5)
                return httpx.Response(200, json={"tickets": []})

            @property
            def transport(self):
                return httpx.MockTransport(self.handler)

        connector = make_connector(_Blocking())
        timer = threading.Timer(0.3, release.set)
        timer.start()
        try:
            results = fetch_sources([connector], {"platinum": ["In Progress"]}, timeout=0.1)
        finally:
            release.set()
            timer.cancel()

        result = results["platinum"]
        assert result.timed_out
        assert result.errors[0].kind == "timeout"


class TestBuildConnectors:
    """Tests for connector wiring."""

    def test_missing_api_key(self):
        source = SourceSettings(name="platinum", subdomain="platinumrepairs")
        with pytest.raises(ConnectorMissingCredentialError):
            build_connectors([source], SourceRateLimiters())

    def test_disabled_sources_skipped(self):
        sources = [
            SourceSettings(name="platinum", subdomain="platinumrepairs", api_key="k" * 20),
            SourceSettings(name="devicedoctor", subdomain="devicedoctorsa", enabled=False),
        ]
        limiters = SourceRateLimiters()
        connectors = build_connectors(sources, limiters)
        assert [c.source for c in connectors] == ["platinum"]
        assert connectors[0].client.rate_limiter is limiters.for_source("platinum")
