"""Error taxonomy for fetching, downloading and persisting an archive."""

from enum import Enum
from typing import Optional


class GroupMeDownloadError(Exception):
    """Base class for all groupme-download errors."""


class ConfigurationError(GroupMeDownloadError):
    """Missing token, invalid run configuration, unusable output directory."""


class TransientFetchError(GroupMeDownloadError):
    """Retryable network or server condition (timeouts, 5xx, 429)."""

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class FatalFetchError(GroupMeDownloadError):
    """Unrecoverable failure that aborts the crawl of one group (401/403/404, exhausted retries)."""

    def __init__(self, message: str, group_id: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.group_id = group_id
        self.status = status


class PaginationProtocolError(FatalFetchError):
    """The API claimed more pages but the cursor did not advance."""


class AttachmentRetriesExhausted(FatalFetchError):
    """A transiently failing attachment kept failing; the batch holding it is not committed."""

    def __init__(self, message: str, locator: str, status: Optional[int] = None):
        super().__init__(message, status=status)
        self.locator = locator


class DownloadErrorKind(str, Enum):
    transient = "transient"
    permanent = "permanent"


class AttachmentDownloadError(GroupMeDownloadError):
    """Attachment could not be downloaded; `kind` tells whether retrying can help."""

    def __init__(
        self,
        message: str,
        kind: DownloadErrorKind,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return self.kind is DownloadErrorKind.transient


class CheckpointCorruptionError(GroupMeDownloadError):
    """Checkpoint file exists but cannot be read back."""


class ArchiveWriteError(GroupMeDownloadError):
    """The archive or its checkpoint could not be written (disk full, permissions)."""


class CrawlCancelled(GroupMeDownloadError):
    """The run was cancelled; nothing past the last committed batch was persisted."""
