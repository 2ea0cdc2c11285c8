"""
RepairShopr API Client

Synchronous HTTP client for one RepairShopr instance with:
- Shared per-source token bucket rate limiting
- Retry with exponential backoff for transient errors (429, 5xx, network)
- Connection pooling
- Structured request/response logging
- Page iteration for status-filtered ticket lists
"""

import logging
import re
import time
from typing import Any, Iterator

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from repairshopr_sync.models import RSComment, RSCommentsResponse, RSTicketsPage
from repairshopr_sync.rate_limiter import TokenBucketRateLimiter

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RepairShoprAPIError(Exception):
    """Base exception for RS API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class RepairShoprRateLimitError(RepairShoprAPIError):
    """Raised when API rate limit is exceeded (429)."""
    pass


class RepairShoprAuthError(RepairShoprAPIError):
    """Raised when authentication fails (401/403)."""
    pass


class RepairShoprServerError(RepairShoprAPIError):
    """Raised on server errors (5xx) - these are retryable."""
    pass


class RepairShoprNotFoundError(RepairShoprAPIError):
    """Raised when resource not found (404)."""
    pass


def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    return isinstance(
        exception,
        (
            RepairShoprRateLimitError,
            RepairShoprServerError,
            httpx.TransportError,
            httpx.TimeoutException,
        ),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class RepairShoprClient:
    """
    API client bound to one RepairShopr instance.

    Example:
        client = RepairShoprClient(
            base_url="https://yourshop.repairshopr.com/api/v1",
            api_key="your-key",
        )
        with client:
            for page in client.iter_ticket_pages(status="In Progress"):
                print(len(page.tickets))
    """

    SUBDOMAIN_PATTERN = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$')

    def __init__(
        self,
        base_url: str,
        api_key: str,
        rate_limiter: TokenBucketRateLimiter | None = None,
        per_page: int = 100,
        timeout: float = 30.0,
        max_retries: int = 4,
        backoff_min: float = 2.0,
        backoff_max: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            base_url: API root, e.g. https://shop.repairshopr.com/api/v1
            api_key: API key from the RS profile page
            rate_limiter: Bucket shared with other clients of the same source
            per_page: Page size requested from /tickets
            timeout: Request timeout in seconds
            max_retries: Attempts for transient errors
            backoff_min/backoff_max: Exponential backoff bounds in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid base_url '{base_url}': must be an http(s) URL")
        if not api_key or len(api_key) < 10:
            raise ValueError("API key appears invalid (too short)")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.per_page = per_page
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max

        self.rate_limiter = rate_limiter or TokenBucketRateLimiter()
        self._transport = transport
        self._client: httpx.Client | None = None

        self._request_count = 0
        self._error_count = 0

        self._log = logger.bind(base_url=self.base_url)

    @classmethod
    def for_subdomain(cls, subdomain: str, api_key: str, **kwargs: Any) -> "RepairShoprClient":
        # Validate subdomain to prevent URL injection
        if not cls.SUBDOMAIN_PATTERN.match(subdomain):
            raise ValueError(
                f"Invalid subdomain '{subdomain}'. "
                "Must be alphanumeric with optional hyphens, 1-63 characters."
            )
        return cls(f"https://{subdomain}.repairshopr.com/api/v1", api_key, **kwargs)

    def _new_http_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={"User-Agent": "repairshopr-sync/1.0", "Accept": "application/json"},
            transport=self._transport,
        )

    def __enter__(self) -> "RepairShoprClient":
        if self._client is None:
            self._client = self._new_http_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = self._new_http_client()
        return self._client

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Rate-limited, retrying request returning the decoded JSON object."""
        log = self._log.bind(endpoint=endpoint, method=method)

        @retry(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=2, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(log, logging.INFO),
            reraise=True,
        )
        def _do_request() -> dict[str, Any]:
            self.rate_limiter.acquire()

            url = f"{self.base_url}{endpoint}"
            request_params = params.copy() if params else {}
            request_params["api_key"] = self.api_key

            self._request_count += 1
            request_id = self._request_count
            log.debug("API request", request_id=request_id, status=request_params.get("status"))

            start_time = time.monotonic()
            response = self.client.request(method, url, params=request_params)
            elapsed = time.monotonic() - start_time

            log.debug(
                "API response",
                request_id=request_id,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            if response.status_code == 429:
                self._error_count += 1
                raise RepairShoprRateLimitError(
                    "Rate limit exceeded - will retry",
                    status_code=429,
                    response_body=response.text[:500],
                )

            if response.status_code in (401, 403):
                self._error_count += 1
                raise RepairShoprAuthError(
                    "Authentication failed - check your API key",
                    status_code=response.status_code,
                )

            if response.status_code == 404:
                self._error_count += 1
                raise RepairShoprNotFoundError(
                    f"Resource not found: {endpoint}",
                    status_code=404,
                )

            if response.status_code >= 500:
                self._error_count += 1
                raise RepairShoprServerError(
                    f"Server error {response.status_code} - will retry",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                )

            if response.status_code >= 400:
                self._error_count += 1
                raise RepairShoprAPIError(
                    f"API error: {response.text[:200]}",
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise RepairShoprAPIError(f"Invalid JSON response: {e}") from e
            if not isinstance(data, dict):
                raise RepairShoprAPIError(
                    f"Unexpected JSON payload type {type(data).__name__} from {endpoint}"
                )
            return data

        return _do_request()

    # -------------------------------------------------------------------------
    # Tickets
    # -------------------------------------------------------------------------

    def get_tickets(self, page: int = 1, status: str | None = None) -> RSTicketsPage:
        """Get one page of tickets, optionally filtered server-side by raw status."""
        params: dict[str, Any] = {"page": page, "per_page": self.per_page}
        if status:
            params["status"] = status

        data = self._make_request("GET", "/tickets", params)
        return RSTicketsPage.model_validate(data)

    def iter_ticket_pages(self, status: str | None = None) -> Iterator[RSTicketsPage]:
        """Yield pages until `total_pages` is reached or a page comes back empty."""
        page = 1
        while True:
            response = self.get_tickets(page=page, status=status)
            if not response.tickets:
                break

            self._log.info(
                "Fetched tickets page",
                status=status,
                page=page,
                total_pages=response.total_pages,
                count=len(response.tickets),
            )
            yield response

            if page >= response.total_pages:
                break
            page += 1

    def get_ticket(self, ticket_id: int | str) -> dict[str, Any]:
        """Raw payload of a single ticket (validated by the caller)."""
        data = self._make_request("GET", f"/tickets/{ticket_id}")
        ticket = data.get("ticket", data)
        if not isinstance(ticket, dict):
            raise RepairShoprAPIError(f"Unexpected ticket payload for {ticket_id}")
        return ticket

    def get_ticket_comments(self, ticket_id: int | str) -> list[RSComment]:
        try:
            data = self._make_request("GET", f"/tickets/{ticket_id}/comments")
        except RepairShoprNotFoundError:
            return []
        return RSCommentsResponse.model_validate(data).comments

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "base_url": self.base_url,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "rate_limiter": self.rate_limiter.get_stats(),
        }

    def health_check(self) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        try:
            data = self._make_request("GET", "/me")
        except RepairShoprAuthError:
            return {"status": "auth_error", "message": "Invalid API key"}
        except (RepairShoprAPIError, httpx.HTTPError) as e:
            return {"status": "error", "message": str(e)}
        return {
            "status": "healthy",
            "user": (data.get("user") or {}).get("email", "unknown"),
            "base_url": self.base_url,
        }
