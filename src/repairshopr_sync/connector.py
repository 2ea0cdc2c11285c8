"""
Source Connector

Fetches raw tickets from one RepairShopr instance. Source APIs cap the
volume returned per call, so fetching is done per raw status (server-side
filter) rather than fetching everything and filtering locally. Slices run
concurrently on a bounded thread pool; a failing slice is recorded as an
error and never turns into an empty result that looks like "no tickets".
"""

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx
import structlog
from pydantic import ValidationError

from repairshopr_sync.client import (
    RepairShoprAPIError,
    RepairShoprClient,
    RepairShoprNotFoundError,
)
from repairshopr_sync.config import SourceSettings
from repairshopr_sync.models import RSTicket
from repairshopr_sync.rate_limiter import SourceRateLimiters

logger = structlog.get_logger(__name__)


class ConnectorMissingCredentialError(Exception):
    """Raised when a source has no API key configured."""
    pass


@dataclass
class SliceError:
    """One failure while fetching a (source, status) slice."""
    source: str
    kind: str  # "malformed" | "comments_unavailable" | "source_unavailable" | "timeout"
    message: str
    status: str | None = None
    ticket_id: Any = None

    def describe(self) -> str:
        where = self.source
        if self.status:
            where += f"/{self.status}"
        if self.ticket_id is not None:
            where += f"#{self.ticket_id}"
        return f"[{self.kind}] {where}: {self.message}"


@dataclass
class FetchResult:
    """Validated tickets plus every error seen while fetching them."""
    source: str
    tickets: list[RSTicket] = field(default_factory=list)
    errors: list[SliceError] = field(default_factory=list)
    statuses: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    @property
    def source_failed(self) -> bool:
        """True when a whole slice could not be fetched (not just bad records)."""
        return any(e.kind in ("source_unavailable", "timeout") for e in self.errors)

    def merge(self, other: "FetchResult") -> None:
        seen = {t.id: i for i, t in enumerate(self.tickets)}
        for ticket in other.tickets:
            idx = seen.get(ticket.id)
            if idx is None:
                seen[ticket.id] = len(self.tickets)
                self.tickets.append(ticket)
            elif ticket.last_updated > self.tickets[idx].last_updated:
                # Same ticket seen by two slices while it moved; keep the newest
                self.tickets[idx] = ticket
        self.errors.extend(other.errors)
        self.statuses.extend(s for s in other.statuses if s not in self.statuses)
        self.timed_out = self.timed_out or other.timed_out


class SourceConnector:
    """
    Fetcher for one configured source instance.

    Example:
        connector = SourceConnector(settings.sources[0], client)
        result = connector.fetch(["Parts Ordered", "In Progress"])
        if result.partial:
            for err in result.errors:
                print(err.describe())
    """

    def __init__(
        self,
        source_config: SourceSettings,
        client: RepairShoprClient,
        max_workers: int = 4,
    ):
        self.config = source_config
        self.source = source_config.name
        self.client = client
        self.max_workers = max_workers
        self._log = logger.bind(source=self.source)

    def _validate(
        self,
        raw: dict[str, Any],
        status: str | None,
        result: FetchResult,
    ) -> RSTicket | None:
        try:
            return RSTicket.model_validate(raw)
        except ValidationError as e:
            ticket_id = raw.get("id") if isinstance(raw, dict) else None
            result.errors.append(SliceError(
                source=self.source,
                kind="malformed",
                status=status,
                ticket_id=ticket_id,
                message=f"{e.error_count()} validation error(s): {e.errors()[0]['loc']}",
            ))
            self._log.warning("Malformed ticket", ticket_id=ticket_id, status=status)
            return None

    def _attach_comments(self, ticket: RSTicket, status: str | None, result: FetchResult) -> RSTicket:
        """Comments are best effort; a failure costs only this ticket's comments."""
        if ticket.comments or not self.config.fetch_comments:
            return ticket
        try:
            comments = self.client.get_ticket_comments(ticket.id)
        except (RepairShoprAPIError, httpx.HTTPError, ValidationError) as e:
            result.errors.append(SliceError(
                source=self.source,
                kind="comments_unavailable",
                status=status,
                ticket_id=ticket.id,
                message=str(e),
            ))
            self._log.warning("Comment fetch failed", ticket_id=ticket.id, error=str(e))
            return ticket
        return ticket.model_copy(update={"comments": comments})

    def fetch_status(self, raw_status: str) -> FetchResult:
        """Fetch every page of one raw status. Errors are captured, not raised."""
        result = FetchResult(source=self.source, statuses=[raw_status])
        try:
            for page in self.client.iter_ticket_pages(status=raw_status):
                for raw in page.tickets:
                    ticket = self._validate(raw, raw_status, result)
                    if ticket is not None:
                        result.tickets.append(self._attach_comments(ticket, raw_status, result))
        except (RepairShoprAPIError, httpx.HTTPError, ValidationError) as e:
            result.errors.append(SliceError(
                source=self.source,
                kind="source_unavailable",
                status=raw_status,
                message=str(e),
            ))
            self._log.error("Status slice failed", status=raw_status, error=str(e))

        self._log.info(
            "Status slice fetched",
            status=raw_status,
            tickets=len(result.tickets),
            errors=len(result.errors),
        )
        return result

    def fetch(self, raw_statuses: Iterable[str]) -> FetchResult:
        """Fetch several raw statuses concurrently and merge the slices."""
        return fetch_sources([self], {self.source: list(raw_statuses)}, self.max_workers)[
            self.source
        ]

    def fetch_ticket(self, ticket_id: int | str) -> FetchResult:
        """Targeted re-fetch of one ticket (e.g. a due ticket no slice returned)."""
        result = FetchResult(source=self.source)
        try:
            raw = self.client.get_ticket(ticket_id)
        except RepairShoprNotFoundError:
            self._log.info("Ticket no longer exists upstream", ticket_id=ticket_id)
            return result
        except (RepairShoprAPIError, httpx.HTTPError) as e:
            result.errors.append(SliceError(
                source=self.source,
                kind="source_unavailable",
                ticket_id=ticket_id,
                message=str(e),
            ))
            return result

        ticket = self._validate(raw, None, result)
        if ticket is not None:
            result.tickets.append(self._attach_comments(ticket, None, result))
        return result


def fetch_sources(
    connectors: Iterable[SourceConnector],
    statuses_by_source: dict[str, list[str]],
    max_workers: int = 4,
    timeout: float | None = None,
) -> dict[str, FetchResult]:
    """
    Fan out one task per (source, raw status) on a shared bounded pool.

    When `timeout` seconds elapse, no further slices start, pending ones are
    cancelled and each unfinished slice is recorded as a timeout error.
    Slices already running are drained before returning, so no fetch
    outlives the call.
    """
    connectors = list(connectors)
    results = {c.source: FetchResult(source=c.source) for c in connectors}
    deadline = None if timeout is None else time.monotonic() + timeout

    executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="rs-fetch")
    futures: dict[Future, tuple[SourceConnector, str]] = {}
    try:
        for connector in connectors:
            for status in statuses_by_source.get(connector.source, []):
                futures[executor.submit(connector.fetch_status, status)] = (connector, status)

        pending = set(futures)
        while pending:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                break
            done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
            for future in done:
                connector, status = futures[future]
                results[connector.source].merge(future.result())

        for future in pending:
            future.cancel()
            connector, status = futures[future]
            result = results[connector.source]
            result.timed_out = True
            result.errors.append(SliceError(
                source=connector.source,
                kind="timeout",
                status=status,
                message="fetch cancelled: sync time budget exhausted",
            ))
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    return results


def build_connectors(
    sources: Iterable[SourceSettings],
    limiters: SourceRateLimiters,
    timeout: float = 30.0,
    max_workers: int = 4,
    transport: httpx.BaseTransport | None = None,
) -> list[SourceConnector]:
    """One client + connector per enabled source, sharing per-source buckets."""
    connectors = []
    for source in sources:
        if not source.enabled:
            continue
        if not source.api_key:
            raise ConnectorMissingCredentialError(
                f"No API key for source '{source.name}'. "
                f"Set RS_API_KEY_{source.name.upper()} or add api_key to the config."
            )
        client = RepairShoprClient(
            base_url=source.base_url,
            api_key=source.api_key,
            rate_limiter=limiters.for_source(source.name, source.requests_per_minute),
            per_page=source.per_page,
            timeout=timeout,
            transport=transport,
        )
        connectors.append(SourceConnector(source, client, max_workers=max_workers))
    return connectors
