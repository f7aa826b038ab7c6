"""Microsoft Graph HTTP client with retry, backoff and proactive rate limiting.

Every mailbox call the tracker makes (listing conversation threads, scanning
folders, sending drafts, moving sent RFQs) goes through GraphClient.request().
Transient failures (5xx, 429, timeouts, dropped connections) are retried
here with jittered exponential backoff; anything still failing surfaces as a
GraphAPIError for the engine to log and skip until the next tick.

Usage:
    from rfq_tracker.auth import GraphAuth
    from rfq_tracker.graph.client import GraphClient

    client = GraphClient(GraphAuth(client_id, tenant_id, scopes, cache_path))
    me = client.get("/me")
"""

import random
import time
from typing import Any

import requests

from rfq_tracker.auth.msal_auth import GraphAuth
from rfq_tracker.core.errors import (
    AuthenticationError,
    ConflictError,
    GraphAPIError,
    RateLimitExceeded,
)
from rfq_tracker.core.logging import get_logger
from rfq_tracker.core.rate_limiter import get_bucket

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Graph allows 10,000 requests per 10 minutes per mailbox; 10 req/s is a safe ceiling
MS_GRAPH_RATE = 10.0
MS_GRAPH_CAPACITY = 10

# Graph caps message pages at 50 items unless $top says otherwise
MAX_PAGE_SIZE = 50


def _jitter(delay: float) -> float:
    """Apply ±20% jitter to a delay."""
    return delay + delay * 0.2 * (2 * random.random() - 1)


class GraphClient:
    """Synchronous Microsoft Graph client.

    Requests carry ``Prefer: IdType="ImmutableId"`` so message ids survive
    moves between folders. The reconciliation engine relies on this: a reply
    counted while still in the Inbox keeps the same id after the user files
    it into a Quotes folder.

    Attributes:
        auth: GraphAuth instance for token management
        base_url: Graph API base URL
        max_retries: Maximum retry attempts for transient errors
        retry_delays: Backoff delays (seconds) per retry
    """

    def __init__(
        self,
        auth: GraphAuth,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = requests.Session()
        self._rate_bucket = get_bucket(
            name="ms_graph",
            rate=MS_GRAPH_RATE,
            capacity=MS_GRAPH_CAPACITY,
        )

    def _get_headers(self) -> dict[str, str]:
        """Build request headers with a fresh access token.

        Raises:
            AuthenticationError: If a token cannot be acquired
        """
        try:
            token = self.auth.get_access_token()
        except Exception as e:
            raise AuthenticationError(
                f"Cannot authenticate with Microsoft Graph: {e}. "
                "Run 'python -m rfq_tracker validate-config' to check your auth settings."
            ) from e

        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Prefer": 'IdType="ImmutableId"',
        }

    def _make_url(self, endpoint: str) -> str:
        """Join an endpoint path onto the base URL; absolute URLs pass through."""
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str) -> None:
        """Translate a non-retryable error response into an exception.

        Raises:
            RateLimitExceeded: For 429 once retries are exhausted
            GraphAPIError: For every other error status
        """
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "graph_api_error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Rate limit exceeded (429). Retry after: {retry_after} seconds. "
                "Increase monitor.poll_interval_seconds or lower monitor.fan_out."
            )

        hints = {
            401: "Your access token may have expired. Delete the token cache and sign in again.",
            403: "Check that Mail.ReadWrite and Mail.Send are granted in Azure Portal.",
            404: f"The resource behind '{endpoint}' does not exist (it may have been moved or deleted).",
        }
        hint = hints.get(status, "")
        raise GraphAPIError(
            f"Graph API error ({status}): {error_message}. {hint}".rstrip(),
            status_code=status,
            error_code=error_code,
        )

    def _is_retryable(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return response.status_code == 429 or 500 <= response.status_code < 600

    def _retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Delay before the next attempt, honouring Retry-After on 429."""
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return _jitter(float(retry_after))
                except ValueError:
                    pass
        return _jitter(self.retry_delays[min(attempt, len(self.retry_delays) - 1)])

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Make a Graph request with retry logic.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE)
            endpoint: API endpoint path or absolute URL
            params: URL query parameters
            json: JSON body for POST/PATCH requests
            timeout: Request timeout in seconds
            extra_headers: Additional headers (e.g., If-Match for ETags)

        Returns:
            Parsed JSON response, or {} for 202/204 responses

        Raises:
            GraphAPIError: For API errors after retries
            ConflictError: For 412 Precondition Failed (never retried)
            RateLimitExceeded: When rate limits cannot be recovered
            AuthenticationError: When authentication fails
        """
        url = self._make_url(endpoint)
        last_response: requests.Response | None = None

        for attempt in range(self.max_retries + 1):
            self._rate_bucket.consume()
            headers = self._get_headers()
            if extra_headers:
                headers.update(extra_headers)

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if attempt < self.max_retries:
                    delay = self._retry_delay(None, attempt)
                    logger.warning(
                        "graph_request_transport_error",
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=type(e).__name__,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise GraphAPIError(
                    f"Request to {endpoint} failed after {self.max_retries} retries: {e}. "
                    "Check your internet connection; Microsoft Graph may be unavailable.",
                    status_code=None,
                ) from e

            last_response = response

            if response.status_code < 400:
                if response.status_code in (202, 204) or not response.content:
                    return {}
                return response.json()

            if response.status_code == 412:
                raise ConflictError(
                    f"The ETag did not match for {endpoint}; the resource changed "
                    "since it was read. Retry with fresh data.",
                    resource_id=endpoint,
                )

            if self._is_retryable(response, attempt):
                delay = self._retry_delay(response, attempt)
                logger.warning(
                    "graph_request_retrying",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            self._raise_for_response(response, method, endpoint)

        if last_response is not None:
            self._raise_for_response(last_response, method, endpoint)
        raise GraphAPIError(f"Request to {endpoint} failed after {self.max_retries} retries")

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make a GET request."""
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make a POST request."""
        return self.request("POST", endpoint, params=params, json=json, timeout=timeout)

    def patch(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
        if_match: str | None = None,
    ) -> dict[str, Any]:
        """Make a PATCH request, optionally guarded by an ETag.

        Raises:
            ConflictError: If if_match is given and the ETag no longer matches
        """
        extra_headers = {"If-Match": if_match} if if_match else None
        return self.request("PATCH", endpoint, json=json, timeout=timeout, extra_headers=extra_headers)

    def get_user_email(self) -> str:
        """Get the signed-in user's email address.

        Raises:
            GraphAPIError: If the request fails or no address is present
        """
        user_info = self.get("/me", params={"$select": "mail,userPrincipalName"})
        email = user_info.get("mail") or user_info.get("userPrincipalName")
        if not email:
            raise GraphAPIError(
                "Could not determine user email: /me returned neither 'mail' nor "
                "'userPrincipalName'. Check that User.Read is granted.",
                status_code=None,
            )
        return email

    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        max_items: int | None = None,
    ) -> list[dict[str, Any]]:
        """Collect items across @odata.nextLink pages.

        Args:
            endpoint: API endpoint path
            params: Query parameters for the first page
            max_items: Stop once this many items were collected (None for all)

        Returns:
            Items from every page, truncated to max_items
        """
        params = dict(params) if params else {}
        params.setdefault("$top", MAX_PAGE_SIZE)

        items: list[dict[str, Any]] = []
        response = self.get(endpoint, params=params)
        while True:
            items.extend(response.get("value", []))
            next_link = response.get("@odata.nextLink")
            if not next_link or (max_items is not None and len(items) >= max_items):
                break
            response = self.get(next_link)

        if max_items is not None:
            items = items[:max_items]

        logger.debug("graph_pagination_complete", endpoint=endpoint, total_items=len(items))
        return items
