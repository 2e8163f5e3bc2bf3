"""Data model for groups, messages, attachments and archive records.

GroupMe API payloads are parsed into these models with `from_api`; the archive
stores `ArchiveRecord` objects, where every attachment of the message is
resolved into a stored file, a tombstone, or kept inline when there is nothing
to download (locations, emoji, mentions, replies, ...).
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from groupme_download.models.config import CrawlMode

GROUPME_FILE_BASE = "https://file.groupme.com/v1"


def message_id_key(message_id: str) -> Tuple[int, int, str]:
    """Sort key for GroupMe identifiers.

    GroupMe ids are numeric strings that grow over time; compare them as
    integers so "99" sorts before "100". Non-numeric ids sort after numeric
    ones, lexicographically.
    """
    if message_id.isdigit():
        return (0, int(message_id), message_id)
    return (1, 0, message_id)


class AttachmentKind(str, Enum):
    """Normalized attachment categories."""

    image = "image"
    video = "video"
    file = "file"
    location = "location"
    other = "other"


DOWNLOADABLE_KINDS = (AttachmentKind.image, AttachmentKind.video, AttachmentKind.file)


class GroupMember(BaseModel):
    """A member of a `Group`."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    nickname: str = ""
    muted: bool = False
    image_url: Optional[str] = None


class Group(BaseModel):
    """A group's definition, refreshed at the start of every crawl."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    name: str = ""
    type: Optional[str] = None
    description: Optional[str] = None
    creator_user_id: Optional[str] = None
    image_url: Optional[str] = None
    share_url: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    members: List[GroupMember] = Field(default_factory=list)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Group":
        """Build a group from a `/groups` payload (ids may arrive as integers)."""
        data = dict(raw)
        data["id"] = str(data.get("id") or data.get("group_id") or "")
        data["members"] = [
            {**member, "user_id": str(member.get("user_id", "")), "muted": bool(member.get("muted"))}
            for member in data.get("members") or []
        ]
        return cls(**data)

    def nicknames(self) -> Dict[str, str]:
        """Map user id to nickname."""
        return {member.user_id: member.nickname for member in self.members}


class AttachmentRef(BaseModel):
    """Reference to an attachment as published by the remote API."""

    kind: AttachmentKind
    locator: Optional[str] = Field(default=None, description="Download URL or opaque token")
    content_hash: Optional[str] = Field(default=None, description="sha256 hex digest, when the source provides one")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Raw attachment object")

    @property
    def downloadable(self) -> bool:
        return self.kind in DOWNLOADABLE_KINDS and bool(self.locator)

    @classmethod
    def from_api(cls, raw: Dict[str, Any], group_id: Optional[str] = None) -> "AttachmentRef":
        """Classify a GroupMe attachment object."""
        a_type = str(raw.get("type", ""))
        locator: Optional[str] = None
        if a_type in ("image", "linked_image"):
            kind = AttachmentKind.image
            locator = raw.get("url")
        elif a_type == "video":
            kind = AttachmentKind.video
            locator = raw.get("url")
        elif a_type == "file":
            kind = AttachmentKind.file
            locator = raw.get("url")
            file_id = raw.get("file_id")
            if not locator and file_id and group_id:
                locator = f"{GROUPME_FILE_BASE}/{group_id}/files/{file_id}"
        elif a_type == "location":
            kind = AttachmentKind.location
        else:
            kind = AttachmentKind.other
        content_hash = raw.get("sha256")
        return cls(kind=kind, locator=locator, content_hash=content_hash, payload=dict(raw))


class Message(BaseModel):
    """A message in a `Group`."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    group_id: Optional[str] = None
    user_id: str = ""
    name: str = ""
    created_at: int
    text: Optional[str] = None
    system: bool = False
    source_guid: Optional[str] = None
    avatar_url: Optional[str] = None
    favorited_by: List[str] = Field(default_factory=list)
    attachments: List[AttachmentRef] = Field(default_factory=list)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Message":
        """Build a message from a `/groups/:id/messages` item."""
        group_id = raw.get("group_id")
        group_id = str(group_id) if group_id is not None else None
        return cls(
            id=str(raw["id"]),
            group_id=group_id,
            user_id=str(raw.get("user_id") or raw.get("sender_id") or ""),
            name=raw.get("name") or "",
            created_at=int(raw.get("created_at", 0)),
            text=raw.get("text"),
            system=bool(raw.get("system", False)),
            source_guid=raw.get("source_guid"),
            avatar_url=raw.get("avatar_url"),
            favorited_by=[str(uid) for uid in raw.get("favorited_by") or []],
            attachments=[AttachmentRef.from_api(a, group_id) for a in raw.get("attachments") or []],
        )

    def sort_key(self) -> Tuple[int, Tuple[int, int, str]]:
        """Canonical ordering: timestamp ascending, tie-broken by identifier."""
        return (self.created_at, message_id_key(self.id))


class CrawlCursor(BaseModel):
    """Persisted crawl position for one group."""

    token: Optional[str] = Field(default=None, description="Opaque pagination token for the next page")
    last_message_id: Optional[str] = None
    last_created_at: Optional[int] = None
    mode: CrawlMode = CrawlMode.oldest_first


class LocalAttachment(BaseModel):
    """An attachment stored in the content-addressed store."""

    state: Literal["stored"] = "stored"
    content_hash: str
    size: int
    path: str = Field(..., description="Path relative to the archive root")
    ref: AttachmentRef


class AttachmentTombstone(BaseModel):
    """Marker for an attachment that is permanently unavailable."""

    state: Literal["tombstone"] = "tombstone"
    reason: str
    status: Optional[int] = None
    ref: AttachmentRef


class InlineAttachment(BaseModel):
    """An attachment without a binary payload, archived as-is."""

    state: Literal["inline"] = "inline"
    ref: AttachmentRef


ResolvedAttachment = Annotated[
    Union[LocalAttachment, AttachmentTombstone, InlineAttachment],
    Field(discriminator="state"),
]


class ArchiveRecord(BaseModel):
    """A message with every attachment resolved, as written to the archive."""

    message: Message
    attachments: List[ResolvedAttachment] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.message.id

    @property
    def tombstones(self) -> List[AttachmentTombstone]:
        return [a for a in self.attachments if isinstance(a, AttachmentTombstone)]
