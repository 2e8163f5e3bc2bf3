"""Content-addressed attachment store with single-flight downloads.

`AttachmentManager.materialize(ref)` turns an `AttachmentRef` into either a
`LocalAttachment` (bytes stored under their sha256) or an
`AttachmentTombstone` (the asset is permanently gone). It guarantees:

- At most one in-flight download per locator. Concurrent callers for the same
  locator wait on the same `Future`; the entry is reference counted and
  dropped when its last waiter leaves.
- Completed downloads are remembered in a persistent locator index, so the
  same attachment is never downloaded twice, across runs included.
- Bytes are streamed into `attachments/.tmp/`, hashed, verified, then moved
  into `attachments/<hash[:2]>/<hash>` with `os.replace`. An interrupted
  download never shows up as a stored attachment.
- Only permanent failures become tombstones. An attachment that keeps failing
  transiently raises `AttachmentRetriesExhausted`, so its batch stays
  uncommitted and a later run fetches it again.

Layout:
    <output_dir>/attachments/<hash[:2]>/<hash>
    <output_dir>/attachments/index.json
"""

import hashlib
import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import requests

from groupme_download.metrics.metrics import ATTACHMENT_BYTES, ATTACHMENT_DOWNLOADS
from groupme_download.models.messages import (
    AttachmentRef,
    AttachmentTombstone,
    InlineAttachment,
    LocalAttachment,
)
from groupme_download.sources.errors import (
    ArchiveWriteError,
    AttachmentDownloadError,
    AttachmentRetriesExhausted,
    CrawlCancelled,
    DownloadErrorKind,
    TransientFetchError,
)
from groupme_download.sources.groupme import GroupMeClient, parse_retry_after
from groupme_download.sources.retry import RetryPolicy
from groupme_download.utils.persistent_cache import PersistentCache

logger = logging.getLogger(__name__)

Materialized = Union[LocalAttachment, AttachmentTombstone]
Resolved = Union[LocalAttachment, AttachmentTombstone, InlineAttachment]

ATTACHMENTS_DIRNAME = "attachments"


class _InFlight:
    """Pending download shared by every caller asking for the same locator."""

    __slots__ = ("future", "waiters")

    def __init__(self) -> None:
        self.future: "Future[Materialized]" = Future()
        self.waiters = 0


def _hash_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


class AttachmentManager:
    """Downloads attachments into a content-addressed store.

    Args:
        output_dir: Archive root; the store lives in `<output_dir>/attachments`.
        client: GroupMe client used for rate-limited streaming downloads.
        retry_policy: Backoff applied to transient download failures.
        concurrency: Size of the download worker pool used by `materialize_all`.
        cancel_event: Set to stop starting new downloads and abort running streams.
        chunk_size: Bytes read per streamed chunk.
    """

    def __init__(
        self,
        output_dir: Path,
        client: GroupMeClient,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 4,
        cancel_event: Optional[threading.Event] = None,
        chunk_size: int = 64 * 1024,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.output_dir = Path(output_dir)
        self.store_dir = self.output_dir / ATTACHMENTS_DIRNAME
        self.tmp_dir = self.store_dir / ".tmp"
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.chunk_size = chunk_size
        try:
            self.tmp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise ArchiveWriteError(f"cannot create attachment store {self.store_dir}: {err}") from err
        # Flushed once per batch and on close, see flush()
        self._index = PersistentCache(str(self.store_dir / "index.json"), ttl_seconds=0, autosave=False)
        self._inflight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="attachment")
        self.stats = {"stored": 0, "reused": 0, "tombstone": 0}

    def __enter__(self) -> "AttachmentManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
        self.flush()

    def flush(self) -> None:
        """Persist the locator index; an entry lost before a flush only costs a re-download."""
        self._index.flush()

    def _count(self, outcome: str) -> None:
        with self._lock:
            self.stats[outcome] = self.stats.get(outcome, 0) + 1
        ATTACHMENT_DOWNLOADS.labels(outcome=outcome).inc()

    def path_for(self, content_hash: str) -> Path:
        return self.store_dir / content_hash[:2] / content_hash

    # --------- public API ----------
    def materialize(self, ref: AttachmentRef) -> Materialized:
        """Resolve one downloadable attachment.

        Raises:
            AttachmentRetriesExhausted: Transient failures outlasted the retry policy.
            ArchiveWriteError: The attachment store could not be written.
            CrawlCancelled: The run was cancelled before the download completed.
            ValueError: The reference has nothing to download.
        """
        if not ref.downloadable or ref.locator is None:
            raise ValueError(f"{ref.kind.value} attachment has nothing to download")
        locator = ref.locator

        known = self._lookup(ref)
        if known is not None:
            self._count("reused")
            return known

        with self._lock:
            entry = self._inflight.get(locator)
            owner = entry is None
            if entry is None:
                entry = _InFlight()
                self._inflight[locator] = entry
            entry.waiters += 1

        try:
            if not owner:
                logger.debug(f"attachment: joining in-flight download of {locator}")
                result = entry.future.result()
                return result.model_copy(update={"ref": ref})
            try:
                # A previous owner may have finished between the lookup and the lock
                result = self._lookup(ref)
                if result is None:
                    result = self._download_with_retry(ref)
                else:
                    self._count("reused")
            except BaseException as err:
                entry.future.set_exception(err)
                raise
            entry.future.set_result(result)
            return result
        finally:
            with self._lock:
                entry.waiters -= 1
                if entry.waiters == 0 and self._inflight.get(locator) is entry:
                    del self._inflight[locator]

    def materialize_all(self, refs: Sequence[AttachmentRef]) -> List[Resolved]:
        """Resolve a batch of attachments on the worker pool, preserving order.

        Non-downloadable references (locations, emoji, ...) come back inline.

        Raises:
            AttachmentRetriesExhausted: An attachment kept failing transiently.
            ArchiveWriteError: The attachment store could not be written.
            CrawlCancelled: The run was cancelled.
        """
        futures: Dict[int, "Future[Materialized]"] = {}
        resolved: List[Optional[Resolved]] = [None] * len(refs)
        for index, ref in enumerate(refs):
            if ref.downloadable:
                futures[index] = self._executor.submit(self.materialize, ref)
            else:
                resolved[index] = InlineAttachment(ref=ref)
        try:
            for index, future in futures.items():
                resolved[index] = future.result()
        except BaseException:
            for future in futures.values():
                future.cancel()
            raise
        finally:
            self.flush()
        return [item for item in resolved if item is not None]

    # --------- internals ----------
    def _lookup(self, ref: AttachmentRef) -> Optional[Materialized]:
        """Return a previous outcome for this locator if it is still valid."""
        entry = self._index.get(ref.locator or "")
        if not isinstance(entry, dict):
            return None
        if entry.get("state") == "tombstone":
            return AttachmentTombstone(reason=str(entry.get("reason", "")), status=entry.get("status"), ref=ref)
        content_hash = entry.get("content_hash")
        if not content_hash:
            return None
        path = self.path_for(content_hash)
        try:
            size = path.stat().st_size
        except OSError:
            logger.warning(f"Attachment {content_hash} listed in index but missing on disk; downloading again")
            return None
        if size != entry.get("size"):
            logger.warning(f"Attachment {content_hash} has unexpected size on disk; downloading again")
            return None
        return LocalAttachment(
            content_hash=content_hash,
            size=size,
            path=path.relative_to(self.output_dir).as_posix(),
            ref=ref,
        )

    def _download_with_retry(self, ref: AttachmentRef) -> Materialized:
        """Download with backoff.

        Raises:
            AttachmentRetriesExhausted: Transient failures outlasted the retry policy.
            ArchiveWriteError: The attachment store could not be written.
        """
        try:
            return self.retry_policy.call(
                lambda: self._download(ref),
                should_retry=lambda err: isinstance(err, AttachmentDownloadError) and err.transient,
                description=f"download {ref.locator}",
            )
        except AttachmentDownloadError as err:
            if err.transient:
                raise AttachmentRetriesExhausted(
                    f"retries exhausted while downloading {ref.locator}: {err}",
                    locator=ref.locator or "",
                    status=err.status,
                ) from err
            self._count("tombstone")
            logger.warning(f"Attachment {ref.locator} permanently unavailable: {err}")
            self._index.set(ref.locator or "", {"state": "tombstone", "reason": str(err), "status": err.status})
            return AttachmentTombstone(reason=str(err), status=err.status, ref=ref)

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise CrawlCancelled("attachment download cancelled")

    def _classify(self, response: requests.Response, locator: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 429:
            retry_after = parse_retry_after(response.headers)
            self.client.rate_limiter.penalize(retry_after)
            raise AttachmentDownloadError(
                "rate limited (429)", DownloadErrorKind.transient, status=status, retry_after=retry_after
            )
        if status >= 500:
            raise AttachmentDownloadError(f"server error {status}", DownloadErrorKind.transient, status=status)
        raise AttachmentDownloadError(f"HTTP {status} for {locator}", DownloadErrorKind.permanent, status=status)

    def _download(self, ref: AttachmentRef) -> LocalAttachment:
        self._check_cancelled()
        locator = ref.locator or ""
        tmp_path = self.tmp_dir / f"{uuid.uuid4().hex}.part"
        digest = hashlib.sha256()
        size = 0
        try:
            try:
                response = self.client.stream(locator)
            except TransientFetchError as err:
                raise AttachmentDownloadError(str(err), DownloadErrorKind.transient) from err
            with response:
                self._classify(response, locator)
                # requests errors subclass OSError, so they are told apart first
                try:
                    with tmp_path.open("wb") as handle:
                        for chunk in response.iter_content(chunk_size=self.chunk_size):
                            self._check_cancelled()
                            if not chunk:
                                continue
                            handle.write(chunk)
                            digest.update(chunk)
                            size += len(chunk)
                        handle.flush()
                        os.fsync(handle.fileno())
                except requests.RequestException as err:
                    raise AttachmentDownloadError(
                        f"stream interrupted: {err}", DownloadErrorKind.transient
                    ) from err
                except OSError as err:
                    raise ArchiveWriteError(f"cannot write {tmp_path}: {err}") from err

            content_hash = digest.hexdigest()
            if ref.content_hash and ref.content_hash.lower() != content_hash:
                raise AttachmentDownloadError(
                    f"content hash mismatch (expected {ref.content_hash}, got {content_hash})",
                    DownloadErrorKind.permanent,
                )
            try:
                verified = _hash_file(tmp_path) == content_hash
            except OSError as err:
                raise ArchiveWriteError(f"cannot read back {tmp_path}: {err}") from err
            if not verified:
                raise AttachmentDownloadError("temporary file failed verification", DownloadErrorKind.transient)

            final_path = self.path_for(content_hash)
            try:
                final_path.parent.mkdir(parents=True, exist_ok=True)
                if final_path.exists() and final_path.stat().st_size == size:
                    logger.debug(f"attachment: {locator} has the same content as stored {content_hash}")
                else:
                    os.replace(tmp_path, final_path)
                    ATTACHMENT_BYTES.inc(size)
            except OSError as err:
                raise ArchiveWriteError(f"cannot store attachment {content_hash}: {err}") from err
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError as err:
                    logger.warning(f"Could not remove partial download {tmp_path}: {err}")

        self._index.set(locator, {"state": "stored", "content_hash": content_hash, "size": size})
        self._count("stored")
        logger.debug(f"attachment: stored {locator} -> {content_hash} ({size} bytes)")
        return LocalAttachment(
            content_hash=content_hash,
            size=size,
            path=final_path.relative_to(self.output_dir).as_posix(),
            ref=ref,
        )
