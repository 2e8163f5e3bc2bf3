"""Page-at-a-time retrieval of a group's messages.

GroupMe paginates messages with message-id cursors:
- `after_id` returns messages created after the given id, oldest first.
  `after_id=0` starts at the beginning of the history.
- `before_id` returns messages created before the given id, newest first.
  Omitting it starts at the most recent message.
An exhausted cursor is answered with HTTP 304 Not Modified.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Final, List, Optional

from groupme_download.models.config import CrawlMode
from groupme_download.models.messages import Message, message_id_key
from groupme_download.sources.errors import (
    FatalFetchError,
    PaginationProtocolError,
    TransientFetchError,
)
from groupme_download.sources.groupme import GroupMeClient
from groupme_download.sources.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One page of messages, ordered per crawl mode."""

    messages: List[Message] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class PageFetcher:
    """Fetches message pages for one crawl mode.

    Args:
        client: GroupMe API client (owns rate limiting).
        mode: Crawl ordering, selects `after_id` or `before_id` pagination.
        retry_policy: Backoff used by `fetch_page_with_retry`.
        page_size: Messages per request (GroupMe allows at most 100).
    """

    START_OF_HISTORY: Final[str] = "0"

    def __init__(
        self,
        client: GroupMeClient,
        mode: CrawlMode = CrawlMode.oldest_first,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: int = 100,
    ):
        self.client = client
        self.mode = mode
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_size = page_size

    def _advances(self, next_cursor: str, cursor: Optional[str]) -> bool:
        if cursor is None:
            return True
        if self.mode is CrawlMode.oldest_first:
            return message_id_key(next_cursor) > message_id_key(cursor)
        return message_id_key(next_cursor) < message_id_key(cursor)

    def fetch_page(self, group_id: str, cursor: Optional[str]) -> Page:
        """Fetch the page that follows `cursor`.

        Args:
            group_id: Group to read.
            cursor: Id of the last message of the previous page, None to start.

        Raises:
            TransientFetchError: Network failures, 5xx, 429, malformed bodies.
            FatalFetchError: 401/403/404 and other client errors.
            PaginationProtocolError: More pages announced but the cursor did not move.
        """
        params: Dict[str, Any] = {"limit": self.page_size}
        if self.mode is CrawlMode.oldest_first:
            params["after_id"] = cursor or self.START_OF_HISTORY
        elif cursor is not None:
            params["before_id"] = cursor

        response = self.client.get(f"/groups/{group_id}/messages", params, endpoint="groups.messages")
        if response.status_code == 304:
            logger.debug(f"fetch_page: group={group_id} cursor={cursor} end of history (304)")
            return Page(messages=[], next_cursor=cursor, has_more=False)
        self.client.raise_for_status(response, group_id)

        body = self.client.unwrap(response) or {}
        if not isinstance(body, dict):
            raise TransientFetchError(
                f"unexpected message page payload: {type(body).__name__}", status=response.status_code
            )
        raw_messages = body.get("messages") or []
        if not isinstance(raw_messages, list):
            raise TransientFetchError("message page without a message list", status=response.status_code)
        try:
            messages = [Message.from_api(raw) for raw in raw_messages]
        except (KeyError, TypeError, ValueError) as err:
            raise TransientFetchError(f"malformed message in page: {err}") from err

        messages.sort(key=Message.sort_key, reverse=self.mode is CrawlMode.newest_first)
        has_more = len(raw_messages) >= self.page_size
        if not messages:
            return Page(messages=[], next_cursor=cursor, has_more=False)

        ids = [m.id for m in messages]
        if self.mode is CrawlMode.oldest_first:
            next_cursor = max(ids, key=message_id_key)
        else:
            next_cursor = min(ids, key=message_id_key)
        if has_more and not self._advances(next_cursor, cursor):
            raise PaginationProtocolError(
                f"pagination did not advance past cursor {cursor} (got {next_cursor})",
                group_id=group_id,
            )
        logger.debug(
            f"fetch_page: group={group_id} cursor={cursor} messages={len(messages)} "
            f"next={next_cursor} has_more={has_more}"
        )
        return Page(messages=messages, next_cursor=next_cursor, has_more=has_more)

    def fetch_page_with_retry(self, group_id: str, cursor: Optional[str]) -> Page:
        """`fetch_page` with transient failures retried; exhaustion escalates to `FatalFetchError`."""
        try:
            return self.retry_policy.call(
                lambda: self.fetch_page(group_id, cursor),
                should_retry=lambda err: isinstance(err, TransientFetchError),
                description=f"fetch_page group={group_id} cursor={cursor}",
            )
        except TransientFetchError as err:
            raise FatalFetchError(
                f"retries exhausted while fetching messages after cursor {cursor}: {err}",
                group_id=group_id,
                status=err.status,
            ) from err
