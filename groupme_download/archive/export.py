"""Export archived photos and videos into a flat, human readable directory.

Files are named after the message time (local timezone), the attachment's
position in the message and the sender's nickname:

    2023-05-01T18_30_05.0.alice.jpeg
"""

import json
import logging
import os
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional, Set

from groupme_download.archive.pipeline import GROUP_FILENAME
from groupme_download.archive.writer import NEWEST_FIRST_FILENAME, archive_path, read_archive
from groupme_download.models.messages import AttachmentKind, Group, LocalAttachment

logger = logging.getLogger(__name__)

EXPORTED_KINDS = (AttachmentKind.image, AttachmentKind.video)
UNKNOWN_SENDER = "unknown"


def extension_for(url: Optional[str]) -> str:
    """Infer a file extension from a GroupMe image/video URL.

    GroupMe image URLs look like `https://i.groupme.com/1024x768.jpeg.<hash>`,
    so the format sits between dots rather than at the end.
    """
    if not url:
        return "bin"
    if ".jpeg." in url:
        return "jpeg"
    if ".png." in url:
        return "png"
    if ".gif." in url:
        return "gif"
    if url.endswith(".mp4"):
        return "mp4"
    return "bin"


def _safe_name(name: str) -> str:
    cleaned = name.replace("/", "_").replace(os.sep, "_").strip()
    return cleaned or UNKNOWN_SENDER


def _local_midnight(day: date) -> float:
    return datetime(day.year, day.month, day.day).timestamp()


def export_filename(created_at: int, index: int, nickname: str, ext: str) -> str:
    stamp = datetime.fromtimestamp(created_at).strftime("%Y-%m-%dT%H_%M_%S")
    return f"{stamp}.{index}.{_safe_name(nickname)}.{ext}"


class ImageExporter:
    """Copies stored image and video attachments of one archived group.

    Args:
        output_dir: Archive root (the `download` output directory).
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def _nicknames(self, group_id: str) -> Dict[str, str]:
        path = self.output_dir / group_id / GROUP_FILENAME
        if not path.exists():
            logger.warning(f"No {GROUP_FILENAME} for group {group_id}; senders will be named by their message name")
            return {}
        try:
            with path.open("r", encoding="utf-8") as handle:
                group = Group.model_validate(json.load(handle))
        except (OSError, ValueError) as err:
            logger.warning(f"Could not read {path}: {err}")
            return {}
        return group.nicknames()

    def export(
        self,
        group_id: str,
        destination: Path,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[Path]:
        """Copy matching attachments into `destination`.

        Args:
            group_id: Archived group to export.
            destination: Target directory, created if needed.
            start: First local day included.
            end: First local day excluded.

        Returns:
            Paths of the files created by this call; existing files are skipped.
        """
        sources = [
            path
            for path in (
                archive_path(self.output_dir, group_id),
                archive_path(self.output_dir, group_id, NEWEST_FIRST_FILENAME),
            )
            if path.exists()
        ]
        if not sources:
            raise FileNotFoundError(f"no archive for group {group_id} under {self.output_dir}")
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        nicknames = self._nicknames(group_id)
        lower = _local_midnight(start) if start else None
        upper = _local_midnight(end) if end else None

        created: List[Path] = []
        skipped = 0
        seen: Set[str] = set()
        for record in (r for source in sources for r in read_archive(source)):
            if record.id in seen:
                continue
            seen.add(record.id)
            message = record.message
            if lower is not None and message.created_at < lower:
                continue
            if upper is not None and message.created_at >= upper:
                continue
            nickname = nicknames.get(message.user_id) or message.name or UNKNOWN_SENDER
            for index, attachment in enumerate(record.attachments):
                if not isinstance(attachment, LocalAttachment) or attachment.ref.kind not in EXPORTED_KINDS:
                    continue
                name = export_filename(message.created_at, index, nickname, extension_for(attachment.ref.locator))
                target = destination / name
                if target.exists():
                    logger.debug(f"export: file already exists: {target}")
                    skipped += 1
                    continue
                stored = self.output_dir / attachment.path
                if not stored.exists():
                    logger.warning(f"Stored attachment {attachment.content_hash} is missing; skipping {name}")
                    continue
                partial = target.with_name(target.name + ".part")
                shutil.copyfile(stored, partial)
                os.replace(partial, target)
                created.append(target)
                logger.debug(f"export: wrote {target}")

        logger.info(f"export: group={group_id} files={len(created)} skipped={skipped} dest={destination}")
        return created
