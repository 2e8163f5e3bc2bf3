"""Full-history crawl of a group on top of `PageFetcher`.

The crawler turns pages into a linear, deduplicated message sequence:
- Oldest-first (default): resumes from the checkpoint cursor and skips every
  id the checkpoint already lists as committed, so a re-run yields exactly the
  messages not yet committed, in the order an uninterrupted run would have.
- Newest-first: walks backwards from the most recent message, optionally
  stopping after `limit` messages. Checkpoints are neither read nor advanced
  in this mode; an interrupted newest-first run starts over.
"""

import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Iterator, List, Optional, Set

from groupme_download.metrics.metrics import OP_ITEMS, OP_LATENCY
from groupme_download.models.config import CrawlMode
from groupme_download.models.messages import CrawlCursor, Message
from groupme_download.sources.checkpoint import CheckpointStore
from groupme_download.sources.fetcher import PageFetcher

logger = logging.getLogger(__name__)


@dataclass
class CrawlBatch:
    """New messages from one page and the cursor to persist once they are durable."""

    messages: List[Message]
    cursor: CrawlCursor


class Crawler:
    """Drives a `PageFetcher` across the history of a group.

    Args:
        fetcher: Page source (its mode must match `mode`).
        checkpoints: Store consulted for the resume cursor and committed ids.
        mode: Crawl ordering.
        limit: Maximum number of messages to emit (newest-first windows).
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        checkpoints: Optional[CheckpointStore] = None,
        mode: CrawlMode = CrawlMode.oldest_first,
        limit: Optional[int] = None,
    ):
        if fetcher.mode is not mode:
            raise ValueError(f"fetcher paginates {fetcher.mode.value}, crawler expects {mode.value}")
        self.fetcher = fetcher
        self.checkpoints = checkpoints
        self.mode = mode
        self.limit = limit

    @property
    def resumable(self) -> bool:
        return self.mode is CrawlMode.oldest_first and self.checkpoints is not None

    def crawl_batches(self, group_id: str) -> Iterator[CrawlBatch]:
        """Yield the group's uncommitted messages, one batch per fetched page.

        Pages whose messages were all seen before are skipped without yielding.
        """
        op_start = perf_counter()
        emitted = 0
        token: Optional[str] = None
        seen: Set[str] = set()
        checkpoints = self.checkpoints if self.resumable else None
        if checkpoints is not None:
            resume = checkpoints.load(group_id)
            seen = checkpoints.committed_ids(group_id)
            if resume is not None:
                token = resume.token
                logger.info(
                    f"crawl: resuming group={group_id} after message {resume.last_message_id} "
                    f"({len(seen)} already committed)"
                )
        logger.debug(f"crawl: start group={group_id} mode={self.mode.value} limit={self.limit}")

        while True:
            page = self.fetcher.fetch_page_with_retry(group_id, token)
            fresh: List[Message] = []
            skipped = 0
            for message in page.messages:
                if message.id in seen:
                    skipped += 1
                    continue
                seen.add(message.id)
                fresh.append(message)
                if self.limit is not None and emitted + len(fresh) >= self.limit:
                    break
            if skipped:
                logger.debug(f"crawl: group={group_id} skipped {skipped} known messages")

            if fresh:
                emitted += len(fresh)
                last = fresh[-1]
                cursor = CrawlCursor(
                    token=page.next_cursor,
                    last_message_id=last.id,
                    last_created_at=last.created_at,
                    mode=self.mode,
                )
                yield CrawlBatch(messages=fresh, cursor=cursor)

            if self.limit is not None and emitted >= self.limit:
                break
            if not page.has_more:
                break
            token = page.next_cursor

        op_elapsed = perf_counter() - op_start
        logger.info(f"crawl: done group={group_id} items={emitted} elapsed={op_elapsed:.3f}s")
        OP_LATENCY.labels(operation="crawl", group_id=group_id).observe(op_elapsed)
        OP_ITEMS.labels(operation="crawl", group_id=group_id).observe(emitted)

    def crawl(self, group_id: str) -> Iterator[Message]:
        """Lazy, finite, restartable sequence of the group's uncommitted messages."""
        for batch in self.crawl_batches(group_id):
            yield from batch.messages
