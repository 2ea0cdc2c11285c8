"""
Pytest configuration and fixtures for RepairShopr sync tests.
"""

import json
import re
from datetime import datetime, timezone

import httpx
import pytest

from repairshopr_sync.business_hours import BusinessCalendar
from repairshopr_sync.client import RepairShoprClient
from repairshopr_sync.config import SourceSettings
from repairshopr_sync.connector import SourceConnector
from repairshopr_sync.models import RSTicket
from repairshopr_sync.rate_limiter import TokenBucketRateLimiter
from repairshopr_sync.reconciler import TicketReconciler
from repairshopr_sync.status import StatusNormalizer
from repairshopr_sync.store import InMemoryStore

TEST_API_KEY = "test-api-key-12345"

# 2024-01-15 is a Monday
MONDAY = datetime(2024, 1, 15, tzinfo=timezone.utc)


def utc(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_ticket_payload(
    ticket_id=12345,
    status="In Progress",
    created_at="2024-01-15T09:00:00Z",
    updated_at="2024-01-15T15:00:00Z",
    technician="Thasveer",
    **extra,
):
    """RS ticket payload as returned by GET /tickets."""
    payload = {
        "id": ticket_id,
        "number": 1000 + ticket_id % 1000,
        "subject": "iPhone 12 screen cracked",
        "status": status,
        "problem_type": "Hardware",
        "created_at": created_at,
        "updated_at": updated_at,
        "customer_business_then_name": "Acme Insurance",
        "location_name": "Durban",
        "user_id": 101,
        "user": {"id": 101, "full_name": technician, "email": "tech@example.com"} if technician else None,
        "problem_type_description": "Customer dropped iPhone 12, display cracked",
        "comments": [],
        "assets": [],
    }
    payload.update(extra)
    return payload


class FakeRepairShopr:
    """
    In-process RepairShopr API behind an httpx.MockTransport.

    Tickets are served per `status` query param in pages of the requested
    `per_page` (falling back to `self.per_page`). Statuses in
    `failing_statuses` and comment lists of ids in `failing_comments` answer
    500; ids in `missing_ids` 404.
    """

    def __init__(self, per_page=100):
        self.tickets: list[dict] = []
        self.comments: dict[int, list[dict]] = {}
        self.failing_statuses: set[str] = set()
        self.failing_comments: set[int] = set()
        self.missing_ids: set[int] = set()
        self.per_page = per_page
        self.requests: list[httpx.Request] = []
        self.me = {"user": {"email": "owner@example.com"}}
        self.auth_valid = True

    def add(self, payload):
        self.tickets.append(payload)
        return payload

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.auth_valid:
            return httpx.Response(401, json={"error": "unauthorized"})

        path = request.url.path
        params = request.url.params

        if path.endswith("/me"):
            return httpx.Response(200, json=self.me)

        match = re.search(r"/tickets/(\d+)/comments$", path)
        if match:
            if int(match.group(1)) in self.failing_comments:
                return httpx.Response(500, text="comments unavailable")
            return httpx.Response(200, json={"comments": self.comments.get(int(match.group(1)), [])})

        match = re.search(r"/tickets/(\d+)$", path)
        if match:
            ticket_id = int(match.group(1))
            for ticket in self.tickets:
                if ticket["id"] == ticket_id and ticket_id not in self.missing_ids:
                    return httpx.Response(200, json={"ticket": ticket})
            return httpx.Response(404, json={"error": "not found"})

        if path.endswith("/tickets"):
            status = params.get("status")
            if status in self.failing_statuses:
                return httpx.Response(500, text="upstream exploded")
            selected = [t for t in self.tickets if status is None or t["status"] == status]
            page = int(params.get("page", 1))
            per_page = int(params.get("per_page", self.per_page))
            total_pages = max(1, -(-len(selected) // per_page))
            start = (page - 1) * per_page
            return httpx.Response(200, json={
                "tickets": selected[start:start + per_page],
                "meta": {"total_pages": total_pages, "page": page, "total_entries": len(selected)},
            })

        return httpx.Response(404, json={"error": "no route"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def status_requests(self):
        return [r.url.params.get("status") for r in self.requests if r.url.path.endswith("/tickets")]


@pytest.fixture
def sample_ticket_data():
    """Sample ticket data from RS API."""
    return make_ticket_payload()


@pytest.fixture
def rs_ticket():
    """Factory for validated RSTicket instances."""
    def _make(**kwargs):
        return RSTicket.model_validate(make_ticket_payload(**kwargs))
    return _make


@pytest.fixture
def fake_api():
    return FakeRepairShopr()


@pytest.fixture
def make_client():
    """Client wired to a mock transport with retries disabled."""
    def _make(api, per_page=100):
        return RepairShoprClient(
            base_url="https://testshop.repairshopr.com/api/v1",
            api_key=TEST_API_KEY,
            rate_limiter=TokenBucketRateLimiter(requests_per_minute=6000),
            per_page=per_page,
            max_retries=1,
            transport=api.transport,
        )
    return _make


@pytest.fixture
def make_connector(make_client):
    def _make(api, name="platinum", per_page=100, **settings):
        config = SourceSettings(name=name, subdomain="testshop", api_key=TEST_API_KEY, **settings)
        return SourceConnector(config, make_client(api, per_page=per_page), max_workers=2)
    return _make


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def calendar():
    """Mon-Fri 08:00-18:00 UTC."""
    return BusinessCalendar()


@pytest.fixture
def normalizer():
    return StatusNormalizer()


@pytest.fixture
def reconciler(store, calendar, normalizer):
    return TicketReconciler(store, calendar, normalizer)


@pytest.fixture
def mapping_file(tmp_path):
    path = tmp_path / "status_mapping.json"
    path.write_text(json.dumps({
        "version": "2024.3",
        "mapping": {"Awaiting Walk-in Repair": "Awaiting Repair"},
    }))
    return path
