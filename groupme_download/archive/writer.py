"""Append-only message archive.

Each group's archive is a log of self-delimited JSON lines:

    {"record": {...ArchiveRecord...}, "sha256": "<digest of the canonical record JSON>"}

A line only counts once it is newline-terminated and its digest verifies, so
a record torn by a crash is detectable. The writer truncates a torn tail
before appending, and readers skip any line that does not verify.

Layout:
    <output_dir>/<group_id>/messages.log      oldest-first history, appended per batch
    <output_dir>/<group_id>/newest-first.log  latest newest-first window, replaced per run
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from groupme_download.models.messages import ArchiveRecord
from groupme_download.sources.errors import ArchiveWriteError
from groupme_download.utils.atomic import atomic_write_text

logger = logging.getLogger(__name__)

ARCHIVE_FILENAME = "messages.log"
NEWEST_FIRST_FILENAME = "newest-first.log"


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encode_record(record: ArchiveRecord) -> bytes:
    """Serialize a record as one verified archive line."""
    payload = record.model_dump(mode="json")
    digest = hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest()
    return (_canonical({"record": payload, "sha256": digest}) + "\n").encode("utf-8")


def decode_line(line: bytes) -> Optional[ArchiveRecord]:
    """Parse one archive line; None when it is truncated or does not verify."""
    if not line.endswith(b"\n"):
        return None
    try:
        envelope = json.loads(line.decode("utf-8"))
        payload = envelope["record"]
        digest = envelope["sha256"]
    except (UnicodeDecodeError, ValueError, KeyError, TypeError):
        return None
    if hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest() != digest:
        return None
    try:
        return ArchiveRecord.model_validate(payload)
    except ValidationError:
        return None


def archive_path(output_dir: Path, group_id: str, filename: str = ARCHIVE_FILENAME) -> Path:
    return Path(output_dir) / group_id / filename


def scan_archive(path: Path) -> Tuple[List[ArchiveRecord], int, int]:
    """Read every verifiable record of an archive file.

    Returns:
        (records, valid_end, corrupt_lines) where `valid_end` is the byte offset
        right after the last verified line.
    """
    records: List[ArchiveRecord] = []
    valid_end = 0
    corrupt = 0
    if not path.exists():
        return records, valid_end, corrupt
    offset = 0
    with path.open("rb") as handle:
        for line in handle:
            offset += len(line)
            record = decode_line(line)
            if record is None:
                corrupt += 1
                continue
            records.append(record)
            valid_end = offset
    return records, valid_end, corrupt


def read_archive(path: Path) -> Iterator[ArchiveRecord]:
    """Yield verified records in commit order, skipping corrupt or truncated lines."""
    if not path.exists():
        return
    with path.open("rb") as handle:
        for lineno, line in enumerate(handle, start=1):
            record = decode_line(line)
            if record is None:
                logger.warning(f"Skipping corrupt archive line {lineno} in {path}")
                continue
            yield record


class ArchiveWriter:
    """Crash-safe appender for one group's archive.

    Use as a context manager; `commit` returns once the batch is fsynced.

    Args:
        output_dir: Archive root.
        group_id: Group whose log is written.
    """

    def __init__(self, output_dir: Path, group_id: str):
        self.group_id = group_id
        self.path = archive_path(output_dir, group_id)
        self._ids: Set[str] = set()
        self._handle: Optional[BinaryIO] = None

    def __enter__(self) -> "ArchiveWriter":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def ids(self) -> Set[str]:
        return set(self._ids)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def open(self) -> None:
        """Load existing ids, drop a torn tail, and open the log for appending."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            records, valid_end, corrupt = scan_archive(self.path)
            size = self.path.stat().st_size if self.path.exists() else 0
            if size > valid_end:
                logger.warning(
                    f"Archive {self.path} has {size - valid_end} unverified trailing bytes; truncating torn tail"
                )
                with self.path.open("r+b") as handle:
                    handle.truncate(valid_end)
                    handle.flush()
                    os.fsync(handle.fileno())
            elif corrupt:
                logger.warning(f"Archive {self.path} contains {corrupt} corrupt lines; readers will skip them")
            self._ids = {record.id for record in records}
            self._handle = self.path.open("ab")
        except OSError as err:
            raise ArchiveWriteError(f"cannot open archive {self.path}: {err}") from err
        logger.debug(f"archive: opened {self.path} records={len(self._ids)}")

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def read_records(self) -> Iterator[ArchiveRecord]:
        """Yield the group's verified records in commit order."""
        return read_archive(self.path)

    def commit(self, records: Sequence[ArchiveRecord]) -> int:
        """Durably append a batch, skipping ids already archived.

        Returns:
            Number of records written.

        Raises:
            ArchiveWriteError: The batch could not be made durable; the log is
                rolled back to its previous end when possible.
        """
        if self._handle is None:
            raise ArchiveWriteError("archive writer is not open")
        batch_ids: Set[str] = set()
        lines: List[bytes] = []
        for record in records:
            if record.id in self._ids or record.id in batch_ids:
                logger.debug(f"archive: skipping duplicate message {record.id}")
                continue
            batch_ids.add(record.id)
            lines.append(encode_record(record))
        if not lines:
            return 0

        handle = self._handle
        start = handle.tell()
        try:
            handle.write(b"".join(lines))
            handle.flush()
            os.fsync(handle.fileno())
        except OSError as err:
            self._rollback(start)
            raise ArchiveWriteError(f"failed to append to {self.path}: {err}") from err
        self._ids.update(batch_ids)
        return len(lines)

    def _rollback(self, offset: int) -> None:
        try:
            if self._handle is not None:
                self._handle.truncate(offset)
                self._handle.flush()
        except OSError as err:
            logger.error(f"Could not roll back partial batch in {self.path}: {err}")


def write_snapshot(path: Path, records: Sequence[ArchiveRecord]) -> int:
    """Atomically replace `path` with `records`, in the given order, without duplicate ids.

    Returns:
        Number of records written.

    Raises:
        ArchiveWriteError: The file could not be written; the previous snapshot is intact.
    """
    seen: Set[str] = set()
    lines: List[str] = []
    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)
        lines.append(encode_record(record).decode("utf-8"))
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(path, "".join(lines), prefix=f".tmp_{path.name}_")
    except OSError as err:
        raise ArchiveWriteError(f"failed to write {path}: {err}") from err
    return len(lines)


def archive_stats(path: Path) -> Dict[str, int]:
    """Counts used by the CLI summary."""
    records, _, corrupt = scan_archive(path)
    tombstones = sum(len(r.tombstones) for r in records)
    return {"records": len(records), "tombstones": tombstones, "corrupt_lines": corrupt}
