"""Run orchestration: one `GroupArchiver` per run, groups archived sequentially.

Per group the commit order is:

    crawl batch -> materialize attachments -> archive commit (fsync) -> checkpoint commit

so a checkpoint never names a message that is not durable in the archive.
Newest-first runs keep no checkpoint; their window replaces
`<group_id>/newest-first.log` once it is complete.
Everything a run shares (HTTP session, rate limiter, retry policy, cancel
event) lives in an explicitly constructed `RunContext`.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, List, Optional

import requests

from groupme_download.archive.attachments import AttachmentManager
from groupme_download.archive.writer import NEWEST_FIRST_FILENAME, ArchiveWriter, archive_path, write_snapshot
from groupme_download.metrics.metrics import OP_ITEMS, OP_LATENCY
from groupme_download.models.config import ArchiveConfig, CrawlMode, RateLimitConfig, RetryConfig
from groupme_download.models.messages import ArchiveRecord, Group, Message
from groupme_download.sources.checkpoint import CheckpointStore
from groupme_download.sources.crawler import Crawler
from groupme_download.sources.errors import ArchiveWriteError, CrawlCancelled, FatalFetchError, TransientFetchError
from groupme_download.sources.fetcher import PageFetcher
from groupme_download.sources.groupme import GroupMeClient
from groupme_download.sources.ratelimiter import RateLimiter
from groupme_download.sources.retry import RetryPolicy
from groupme_download.utils.atomic import atomic_write_json

logger = logging.getLogger(__name__)

CHECKPOINT_DIRNAME = ".checkpoint"
GROUP_FILENAME = "group.json"


def cancellable_sleep(event: threading.Event) -> Callable[[float], None]:
    """Build a sleep function that wakes up, and raises, when `event` is set."""

    def _sleep(seconds: float) -> None:
        if event.wait(max(0.0, seconds)):
            raise CrawlCancelled("run cancelled")

    return _sleep


@dataclass
class RunContext:
    """Collaborators owned by one archive run."""

    config: ArchiveConfig
    client: GroupMeClient
    rate_limiter: RateLimiter
    retry_policy: RetryPolicy
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def create(
        cls,
        config: ArchiveConfig,
        token: str,
        rate_config: Optional[RateLimitConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RunContext":
        """Wire a run: limiter and retries sleep through the cancel event."""
        cancel_event = threading.Event()
        sleep = cancellable_sleep(cancel_event)
        rate_config = rate_config or RateLimitConfig()
        rate_limiter = RateLimiter(
            rpm=rate_config.rpm,
            cap=rate_config.cap,
            burst=rate_config.burst,
            min_rpm=rate_config.min_rpm,
            clock=clock,
            sleep=sleep,
        )
        client = GroupMeClient(token, rate_limiter=rate_limiter, session=session)
        return cls(
            config=config,
            client=client,
            rate_limiter=rate_limiter,
            retry_policy=RetryPolicy(retry_config, sleep=sleep),
            cancel_event=cancel_event,
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def sleep(self, seconds: float) -> None:
        """Sleep unless the run is cancelled first.

        Raises:
            CrawlCancelled: The cancel event was set before `seconds` elapsed.
        """
        cancellable_sleep(self.cancel_event)(seconds)

    def close(self) -> None:
        self.client.close()


@dataclass
class GroupArchiveResult:
    """Outcome of archiving one group."""

    group_id: str
    group_name: str = ""
    messages_written: int = 0
    batches: int = 0
    attachments_stored: int = 0
    attachments_reused: int = 0
    tombstones: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class GroupArchiver:
    """Archives the configured groups of a run.

    Args:
        context: Run context (configuration, client, limiter, retries, cancel event).
    """

    def __init__(self, context: RunContext):
        self.context = context
        self.config = context.config
        self.output_dir = Path(self.config.output_dir)
        self.checkpoints = CheckpointStore(self.output_dir / CHECKPOINT_DIRNAME, mode=self.config.mode)
        self.attachments = AttachmentManager(
            self.output_dir,
            context.client,
            retry_policy=context.retry_policy,
            concurrency=self.config.concurrency,
            cancel_event=context.cancel_event,
        )

    def __enter__(self) -> "GroupArchiver":
        return self

    def __exit__(self, exc_type: Any, *exc_info: Any) -> None:
        if exc_type is not None:
            # Abort in-flight downloads before waiting for the worker pool
            self.context.cancel()
        self.close()

    def close(self) -> None:
        self.attachments.close()

    def _check_cancelled(self) -> None:
        if self.context.cancelled:
            raise CrawlCancelled("run cancelled")

    def _fetch_group(self, group_id: str) -> Group:
        """Fetch the group definition and persist it as group.json."""
        try:
            group = self.context.retry_policy.call(
                lambda: self.context.client.get_group(group_id),
                should_retry=lambda err: isinstance(err, TransientFetchError),
                description=f"get_group group={group_id}",
            )
        except TransientFetchError as err:
            raise FatalFetchError(
                f"retries exhausted while fetching group: {err}", group_id=group_id, status=err.status
            ) from err
        group_dir = self.output_dir / group_id
        try:
            group_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(group_dir / GROUP_FILENAME, group.model_dump(mode="json"))
        except OSError as err:
            raise ArchiveWriteError(f"cannot write {group_dir / GROUP_FILENAME}: {err}") from err
        logger.debug(f"Stored group metadata at {group_dir / GROUP_FILENAME}")
        return group

    def _resolve_batch(self, messages: List[Message]) -> List[ArchiveRecord]:
        """Materialize a batch's attachments on the worker pool and build its records.

        Raises:
            CrawlCancelled: The run was cancelled before or during the batch.
        """
        self._check_cancelled()
        refs = [ref for message in messages for ref in message.attachments]
        resolved = self.attachments.materialize_all(refs)
        records: List[ArchiveRecord] = []
        offset = 0
        for message in messages:
            count = len(message.attachments)
            records.append(ArchiveRecord(message=message, attachments=resolved[offset : offset + count]))
            offset += count
        self._check_cancelled()
        return records

    def archive_group(self, group_id: str) -> GroupArchiveResult:
        """Crawl one group into the archive.

        Fetch failures end this group's crawl and are reported in the result;
        cancellation and archive write failures propagate.

        Raises:
            CrawlCancelled: The run was cancelled; the last committed checkpoint is kept.
            ArchiveWriteError: The archive or its checkpoint could not be written.
        """
        result = GroupArchiveResult(group_id=group_id)
        op_start = perf_counter()
        before = dict(self.attachments.stats)
        newest_first = self.config.mode is CrawlMode.newest_first
        try:
            group = self._fetch_group(group_id)
            result.group_name = group.name
            logger.info(f"archive: start group={group_id} name={group.name!r} mode={self.config.mode.value}")

            fetcher = PageFetcher(
                self.context.client,
                mode=self.config.mode,
                retry_policy=self.context.retry_policy,
                page_size=self.config.page_size,
            )
            crawler = Crawler(
                fetcher,
                checkpoints=None if newest_first else self.checkpoints,
                mode=self.config.mode,
                limit=self.config.limit,
            )
            if newest_first:
                window: List[ArchiveRecord] = []
                for batch in crawler.crawl_batches(group_id):
                    window.extend(self._resolve_batch(batch.messages))
                    result.batches += 1
                self._check_cancelled()
                # Kept apart from messages.log, which stays in ascending order
                result.messages_written = write_snapshot(
                    archive_path(self.output_dir, group_id, NEWEST_FIRST_FILENAME), window
                )
            else:
                with ArchiveWriter(self.output_dir, group_id) as writer:
                    for batch in crawler.crawl_batches(group_id):
                        records = self._resolve_batch(batch.messages)
                        result.batches += 1
                        result.messages_written += writer.commit(records)
                        self.checkpoints.commit(group_id, batch.cursor, writer.ids)
                        logger.debug(
                            f"archive: group={group_id} batch={result.batches} "
                            f"committed through {batch.cursor.token}"
                        )
        except FatalFetchError as err:
            if err.group_id is None:
                err.group_id = group_id
            result.error = str(err)
            logger.error(f"Group {group_id} aborted: {err}")
        finally:
            after = self.attachments.stats
            result.attachments_stored = after.get("stored", 0) - before.get("stored", 0)
            result.attachments_reused = after.get("reused", 0) - before.get("reused", 0)
            result.tombstones = after.get("tombstone", 0) - before.get("tombstone", 0)

        op_elapsed = perf_counter() - op_start
        logger.info(
            f"archive: done group={group_id} items={result.messages_written} "
            f"tombstones={result.tombstones} elapsed={op_elapsed:.3f}s"
        )
        OP_LATENCY.labels(operation="archive", group_id=group_id).observe(op_elapsed)
        OP_ITEMS.labels(operation="archive", group_id=group_id).observe(result.messages_written)
        return result

    def run(
        self,
        group_ids: Optional[List[str]] = None,
        on_group_done: Optional[Callable[[GroupArchiveResult], None]] = None,
    ) -> List[GroupArchiveResult]:
        """Archive groups in order.

        Args:
            group_ids: Groups to archive; defaults to the configured ones.
            on_group_done: Optional callback invoked with each group's result.
        """
        results: List[GroupArchiveResult] = []
        for group_id in group_ids or self.config.group_ids:
            self._check_cancelled()
            result = self.archive_group(group_id)
            results.append(result)
            if on_group_done is not None:
                on_group_done(result)
        return results
