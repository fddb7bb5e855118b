"""GitHub GraphQL API client.

Provides an async httpx-based transport for the GitHub GraphQL endpoint with
token auth. Every call produces a ``GraphQLResult`` that carries the parsed
rate-limit block next to either data or errors, so retry logic can inspect a
value instead of an exception.

Reference: https://docs.github.com/en/graphql
Rate limits: https://docs.github.com/en/graphql/overview/rate-limits-and-node-limits-for-the-graphql-api
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from github_activity_sync import config
from github_activity_sync.github.nodes import parse_timestamp

logger = logging.getLogger(__name__)

RATE_LIMIT_ERROR_CODES = {"RATE_LIMIT", "RATE_LIMITED", "GRAPHQL_RATE_LIMIT"}
RETRYABLE_STATUS_CODES = {500, 502, 503, 504}

# Keys GitHub (and proxies in front of it) use in error extensions
EXTENSION_DELAY_KEYS = (
    "retryAfter",
    "retry_after",
    "retryAfterSeconds",
    "retry_after_seconds",
    "wait",
    "seconds",
    "resetAfter",
    "reset_after",
)
EXTENSION_RESET_KEYS = ("resetAt", "reset_at", "resetTime", "reset_time")


class GitHubClientError(Exception):
    """Raised when a GitHub GraphQL request fails."""

    pass


class GraphQLRequestError(GitHubClientError):
    """The endpoint answered with GraphQL errors or a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors=None):
        self.status_code = status_code
        self.errors = errors or []
        super().__init__(message)


class RateLimitExceeded(GitHubClientError):
    """Raised when the GitHub rate limit is exhausted."""

    def __init__(
        self,
        retry_after: Optional[float] = None,
        reset_at: Optional[datetime] = None,
        message: str = "Rate limit exceeded",
    ):
        self.retry_after = retry_after
        self.reset_at = reset_at
        detail = message
        if reset_at is not None:
            detail = f"{message}. Resets at {reset_at.isoformat()}"
        elif retry_after is not None:
            detail = f"{message}. Retry after {retry_after:.0f}s"
        super().__init__(detail)


class GitHubTransportError(GitHubClientError):
    """Network-level failure talking to GitHub."""

    pass


@dataclass
class RateLimit:
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    cost: Optional[int] = None

    @classmethod
    def from_payload(cls, block: Optional[Dict[str, Any]]) -> Optional["RateLimit"]:
        if not isinstance(block, dict):
            return None
        remaining = block.get("remaining")
        cost = block.get("cost")
        return cls(
            remaining=int(remaining) if remaining is not None else None,
            reset_at=parse_timestamp(block.get("resetAt")),
            cost=int(cost) if cost is not None else None,
        )

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0


def _seconds_until(moment: Optional[datetime], now: datetime) -> Optional[float]:
    if moment is None:
        return None
    return max((moment - now).total_seconds(), 0.0)


def _parse_delay(value, now: datetime) -> Optional[float]:
    """Seconds from a number of seconds or an absolute date."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return max(float(value), 0.0)
    if isinstance(value, str) and value.strip():
        try:
            return max(float(value.strip()), 0.0)
        except ValueError:
            pass
        moment = parse_timestamp(value)
        if moment is None:
            try:
                moment = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                return None
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=timezone.utc)
        return _seconds_until(moment, now)
    return None


def _parse_reset(value, now: datetime) -> Optional[datetime]:
    """Absolute reset moment from an epoch-seconds value or an ISO date."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromtimestamp(float(value.strip()), tz=timezone.utc)
        except ValueError:
            return parse_timestamp(value)
    return None


def _error_markers(error: Dict[str, Any]) -> List[str]:
    markers = []
    for source in (error, error.get("extensions") or {}):
        for key in ("type", "code"):
            value = source.get(key)
            if isinstance(value, str):
                markers.append(value)
    return markers


@dataclass
class GraphQLResult:
    """Outcome of one GraphQL call: data or errors, always with rate-limit info."""

    data: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    status_code: Optional[int] = None
    rate_limit: Optional[RateLimit] = None
    headers: Dict[str, str] = field(default_factory=dict)
    transport_error: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return (
            self.transport_error is None
            and self.status_code == 200
            and not self.errors
            and self.data is not None
        )

    @property
    def is_rate_limited(self) -> bool:
        if self.transport_error is not None:
            return False
        if self.status_code == 429:
            return True
        if self.status_code == 403 and self.headers.get("x-ratelimit-remaining") == "0":
            return True
        for error in self.errors:
            if any(marker in RATE_LIMIT_ERROR_CODES for marker in _error_markers(error)):
                return True
            if "rate limit" in str(error.get("message", "")).lower():
                return True
        return False

    @property
    def is_retryable(self) -> bool:
        """Transient failure worth repeating with backoff."""
        if self.transport_error is not None:
            return True
        return self.status_code in RETRYABLE_STATUS_CODES

    @property
    def is_not_found(self) -> bool:
        return any("NOT_FOUND" in _error_markers(error) for error in self.errors)

    @property
    def message(self) -> str:
        if self.transport_error is not None:
            return self.transport_error
        if self.errors:
            return "; ".join(str(error.get("message", "unknown error")) for error in self.errors)
        if self.status_code != 200:
            return f"GitHub GraphQL request failed with status {self.status_code}"
        return "GitHub GraphQL response contained no data"

    def reset_at(self) -> Optional[datetime]:
        reset_at = _parse_reset(self.headers.get("x-ratelimit-reset"), self.received_at)
        if reset_at is None and self.rate_limit is not None:
            reset_at = self.rate_limit.reset_at
        return reset_at

    def retry_after(self) -> Optional[float]:
        """
        Seconds to wait before repeating a throttled request, or None when
        the response carries no hint.
        """
        now = self.received_at
        delay = _parse_delay(self.headers.get("retry-after"), now)
        if delay is not None:
            return delay
        reset_header = _parse_reset(self.headers.get("x-ratelimit-reset"), now)
        if reset_header is not None:
            return _seconds_until(reset_header, now)
        for error in self.errors:
            extensions = error.get("extensions") or {}
            for key in EXTENSION_DELAY_KEYS:
                delay = _parse_delay(extensions.get(key), now)
                if delay is not None:
                    return delay
            for key in EXTENSION_RESET_KEYS:
                moment = _parse_reset(extensions.get(key), now)
                if moment is not None:
                    return _seconds_until(moment, now)
        if self.rate_limit is not None and self.rate_limit.exhausted:
            return _seconds_until(self.rate_limit.reset_at, now)
        return None

    def raise_for_error(self):
        if self.ok:
            return
        if self.is_rate_limited:
            raise RateLimitExceeded(retry_after=self.retry_after(), reset_at=self.reset_at())
        if self.transport_error is not None:
            raise GitHubTransportError(self.transport_error)
        raise GraphQLRequestError(self.message, self.status_code, self.errors)


class GitHubGraphQLClient:
    """GitHub GraphQL client using httpx with Bearer token auth.

    Uses one long-lived ``httpx.AsyncClient`` with connection pooling.

    Example:
        >>> async with GitHubGraphQLClient("ghp_token") as client:
        ...     data = await client.request(ORGANIZATION_REPOSITORIES, {"login": "acme"})
    """

    def __init__(
        self,
        token: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or config.GITHUB_GRAPHQL_URL
        token = config.GITHUB_TOKEN if token is None else token
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "github-activity-sync",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning(
                "No GitHub token provided. GraphQL requests will be rejected. "
                "Set the GITHUB_TOKEN environment variable."
            )
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=timeout or config.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubGraphQLClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def execute(self, document: str, variables: Optional[Dict[str, Any]] = None) -> GraphQLResult:
        """
        Send one GraphQL request.

        Never raises for remote or transport failures; those are reported on
        the returned result.
        """
        payload = {"query": document, "variables": variables or {}}
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.debug(f"Transport error calling {self.url}: {e}")
            return GraphQLResult(transport_error=f"{type(e).__name__}: {e}")

        headers = {key.lower(): value for key, value in response.headers.items()}
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return GraphQLResult(
                errors=[{"message": f"Unexpected response body (status {response.status_code})"}],
                status_code=response.status_code,
                headers=headers,
            )

        data = body.get("data")
        rate_limit = RateLimit.from_payload((data or {}).get("rateLimit"))
        errors = body.get("errors") or []
        if response.status_code != 200 and not errors and body.get("message"):
            errors = [{"message": body["message"]}]
        return GraphQLResult(
            data=data,
            errors=errors,
            status_code=response.status_code,
            rate_limit=rate_limit,
            headers=headers,
        )

    async def request(self, document: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one GraphQL request and return ``data`` or raise the typed error."""
        result = await self.execute(document, variables)
        result.raise_for_error()
        return result.data
