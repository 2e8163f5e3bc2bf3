"""Checkpoint management for group crawls.

A checkpoint records, per group, the cursor of the last committed batch and
the identifiers already written to the archive. It is replaced atomically
(temp file, fsync, rename), so a crash leaves either the previous checkpoint
or the new one.

Layout: <output_dir>/.checkpoint/<group_id>.json
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

from pydantic import ValidationError

from groupme_download.models.config import CrawlMode
from groupme_download.models.messages import CrawlCursor, message_id_key
from groupme_download.sources.errors import ArchiveWriteError, CheckpointCorruptionError
from groupme_download.utils.atomic import atomic_write_json

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


@dataclass
class Checkpoint:
    """Crawl progress for one group.

    Parameters:
        group_id: Group the checkpoint belongs to.
        cursor: Position of the last committed batch.
        committed_ids: Message ids already durable in the archive.
    """

    group_id: str
    cursor: CrawlCursor
    committed_ids: Set[str] = field(default_factory=set)
    updated_at: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": CHECKPOINT_VERSION,
            "group_id": self.group_id,
            "cursor": self.cursor.model_dump(mode="json"),
            "committed_ids": sorted(self.committed_ids, key=message_id_key),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_payload(cls, data: Any) -> "Checkpoint":
        """Rebuild a checkpoint, raising `CheckpointCorruptionError` on any inconsistency."""
        if not isinstance(data, dict):
            raise CheckpointCorruptionError("checkpoint is not a JSON object")
        if data.get("version") != CHECKPOINT_VERSION:
            raise CheckpointCorruptionError(f"unsupported checkpoint version {data.get('version')!r}")
        try:
            cursor = CrawlCursor(**data["cursor"])
            ids = data["committed_ids"]
            if not isinstance(ids, list):
                raise TypeError("committed_ids must be a list")
            return cls(
                group_id=str(data["group_id"]),
                cursor=cursor,
                committed_ids={str(i) for i in ids},
                updated_at=float(data.get("updated_at", 0.0)),
            )
        except (KeyError, TypeError, ValueError, ValidationError) as err:
            raise CheckpointCorruptionError(f"invalid checkpoint content: {err}") from err


class CheckpointStore:
    """Loads and atomically commits per-group checkpoints.

    Args:
        root: Directory holding the checkpoint files.
        mode: Crawl mode of the current run; checkpoints of another mode are ignored.
    """

    def __init__(self, root: Path, mode: CrawlMode = CrawlMode.oldest_first):
        self.root = Path(root)
        self.mode = mode
        self._loaded: Dict[str, Optional[Checkpoint]] = {}

    def path_for(self, group_id: str) -> Path:
        return self.root / f"{group_id}.json"

    def read(self, group_id: str) -> Optional[Checkpoint]:
        """Read a checkpoint from disk.

        Raises:
            CheckpointCorruptionError: The file exists but cannot be parsed.
        """
        path = self.path_for(group_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as err:
            raise CheckpointCorruptionError(f"cannot read {path}: {err}") from err
        checkpoint = Checkpoint.from_payload(data)
        if checkpoint.group_id != group_id:
            raise CheckpointCorruptionError(f"{path} belongs to group {checkpoint.group_id}")
        return checkpoint

    def _get(self, group_id: str) -> Optional[Checkpoint]:
        if group_id in self._loaded:
            return self._loaded[group_id]
        try:
            checkpoint = self.read(group_id)
        except CheckpointCorruptionError as err:
            logger.error(
                f"Checkpoint for group {group_id} is unreadable ({err}); "
                "restarting the group from scratch, already archived messages will be fetched again"
            )
            checkpoint = None
        if checkpoint is not None and checkpoint.cursor.mode is not self.mode:
            logger.warning(
                f"Ignoring checkpoint for group {group_id} recorded in {checkpoint.cursor.mode.value} mode"
            )
            checkpoint = None
        self._loaded[group_id] = checkpoint
        return checkpoint

    def load(self, group_id: str) -> Optional[CrawlCursor]:
        """Return the last committed cursor for a group, if any."""
        checkpoint = self._get(group_id)
        return checkpoint.cursor if checkpoint else None

    def committed_ids(self, group_id: str) -> Set[str]:
        """Return the ids already committed for a group (empty without a checkpoint)."""
        checkpoint = self._get(group_id)
        return set(checkpoint.committed_ids) if checkpoint else set()

    def commit(self, group_id: str, cursor: CrawlCursor, committed_ids: Iterable[str]) -> None:
        """Atomically persist the checkpoint of a fully durable batch.

        Raises:
            ArchiveWriteError: The checkpoint could not be written; the previous one is intact.
        """
        checkpoint = Checkpoint(
            group_id=group_id,
            cursor=cursor,
            committed_ids=set(committed_ids),
            updated_at=time.time(),
        )
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.path_for(group_id), checkpoint.to_payload(), prefix=f".tmp_{group_id}_")
        except OSError as err:
            raise ArchiveWriteError(f"failed to write checkpoint for group {group_id}: {err}") from err
        self._loaded[group_id] = checkpoint
        logger.debug(
            f"checkpoint: group={group_id} cursor={cursor.token} committed={len(checkpoint.committed_ids)}"
        )
