"""GroupMe HTTP API client.

Thin wrapper around a `requests.Session` that:
- Authenticates every API call with the user's token.
- Paces calls through the shared `RateLimiter`.
- Maps HTTP failures onto the fetch error taxonomy (429 also penalizes the limiter).
- Emits Prometheus metrics for per-call latency/count.

GroupMe wraps every JSON response as {"response": ..., "meta": {"code": ...}}.
"""

import logging
from time import perf_counter
from typing import Any, Dict, Final, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests

from groupme_download.metrics.metrics import API_CALLS, API_LATENCY
from groupme_download.models.messages import Group
from groupme_download.sources.errors import ConfigurationError, FatalFetchError, TransientFetchError
from groupme_download.sources.ratelimiter import RateLimiter

logger = logging.getLogger(__name__)

API_BASE: Final[str] = "https://api.groupme.com/v3"
# Hosts that require the token to serve content (file attachments)
_AUTHENTICATED_HOSTS: Final[Tuple[str, ...]] = ("api.groupme.com", "file.groupme.com")


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Return the Retry-After header in seconds, if it is a number."""
    value = headers.get("Retry-After") if headers else None
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


class GroupMeClient:
    """Authenticated access to the GroupMe v3 API.

    Args:
        token: GroupMe API access token.
        rate_limiter: Limiter shared with attachment downloads.
        session: Optional preconfigured session (tests inject fakes here).
        timeout: (connect, read) timeouts in seconds.
        base_url: API root.
    """

    GROUPS_PER_PAGE: Final[int] = 10
    """Groups requested per page when listing groups"""

    def __init__(
        self,
        token: str,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = (10.0, 30.0),
        base_url: str = API_BASE,
    ):
        if not token:
            raise ConfigurationError("GroupMe API token is not set")
        self._token = token
        self.rate_limiter = rate_limiter or RateLimiter()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "GroupMeClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, endpoint: str = "api") -> requests.Response:
        """Issue one rate-limited GET against the API.

        The response is returned whatever its status; only network level
        failures raise (as `TransientFetchError`).
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        query["token"] = self._token
        self.rate_limiter.acquire()
        call_start = perf_counter()
        try:
            response = self.session.get(f"{self.base_url}{path}", params=query, timeout=self.timeout)
        except requests.RequestException as err:
            API_CALLS.labels(endpoint=endpoint, status="error").inc()
            raise TransientFetchError(f"GET {path} failed: {err}") from err
        status = str(response.status_code)
        API_CALLS.labels(endpoint=endpoint, status=status).inc()
        API_LATENCY.labels(endpoint=endpoint, status=status).observe(perf_counter() - call_start)
        logger.debug(f"GET {path} -> {status}")
        return response

    def stream(self, url: str) -> requests.Response:
        """Open a streamed, rate-limited GET for an attachment URL."""
        headers = {}
        if urlparse(url).hostname in _AUTHENTICATED_HOSTS:
            headers["X-Access-Token"] = self._token
        self.rate_limiter.acquire()
        call_start = perf_counter()
        try:
            response = self.session.get(url, headers=headers, stream=True, timeout=self.timeout)
        except requests.RequestException as err:
            API_CALLS.labels(endpoint="attachment", status="error").inc()
            raise TransientFetchError(f"GET {url} failed: {err}") from err
        status = str(response.status_code)
        API_CALLS.labels(endpoint="attachment", status=status).inc()
        API_LATENCY.labels(endpoint="attachment", status=status).observe(perf_counter() - call_start)
        return response

    def raise_for_status(self, response: requests.Response, group_id: Optional[str] = None) -> None:
        """Classify a non-2xx response.

        Raises:
            TransientFetchError: 429 (after penalizing the limiter) and 5xx.
            FatalFetchError: 401/403 (bad credentials), 404 (group vanished), other 4xx.
        """
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 429:
            retry_after = parse_retry_after(response.headers)
            self.rate_limiter.penalize(retry_after)
            raise TransientFetchError("rate limited (429)", status=status, retry_after=retry_after)
        if status >= 500:
            raise TransientFetchError(f"server error {status}", status=status)
        if status in (401, 403):
            raise FatalFetchError(f"access denied ({status}): check the API token", group_id=group_id, status=status)
        if status == 404:
            raise FatalFetchError("group not found (404)", group_id=group_id, status=status)
        raise FatalFetchError(f"unexpected response {status}", group_id=group_id, status=status)

    @staticmethod
    def unwrap(response: requests.Response) -> Any:
        """Return the `response` member of a GroupMe envelope."""
        try:
            body = response.json()
        except ValueError as err:
            raise TransientFetchError(f"malformed JSON body: {err}", status=response.status_code) from err
        if not isinstance(body, dict) or "response" not in body:
            raise TransientFetchError("response envelope missing", status=response.status_code)
        return body["response"]

    def get_group(self, group_id: str) -> Group:
        """Fetch a single group with its members."""
        response = self.get(f"/groups/{group_id}", endpoint="groups.show")
        self.raise_for_status(response, group_id)
        return Group.from_api(self.unwrap(response))

    def list_groups(self, max_groups: Optional[int] = None) -> List[Group]:
        """List the user's groups using page-number pagination.

        Args:
            max_groups: Optional cap on the number of groups returned.
        """
        groups: List[Group] = []
        page = 1
        while True:
            response = self.get(
                "/groups",
                {"per_page": self.GROUPS_PER_PAGE, "page": page},
                endpoint="groups.index",
            )
            self.raise_for_status(response)
            items = self.unwrap(response) or []
            if not items:
                break
            groups.extend(Group.from_api(item) for item in items)
            logger.debug(f"list_groups: page={page} groups={len(items)}")
            if max_groups is not None and len(groups) >= max_groups:
                return groups[:max_groups]
            page += 1
        return groups
