"""
Data models for media files, tags, folders, comments and audit history.

This module defines the core records persisted in a library and the
shared-user records kept by the sharing server. Every record is a plain
dataclass serialised with ``to_dict``/``from_dict``; ``from_dict`` drops
unknown keys and accepts the camelCase spellings written by older
libraries.
"""

from dataclasses import dataclass, asdict, field, fields
from typing import List, Dict, Optional, Any
from enum import Enum
import uuid
from datetime import datetime, timezone


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _filter_fields(cls, data: Dict[str, Any], aliases: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Map legacy aliases onto field names and drop keys the dataclass doesn't know."""
    field_names = {f.name for f in fields(cls)}
    filtered = {}
    for key, value in data.items():
        if aliases and key in aliases:
            key = aliases[key]
        if key in field_names and key not in filtered:
            filtered[key] = value
    return filtered


class FileType(Enum):
    VIDEO = "video"
    AUDIO = "audio"


class Permission(Enum):
    """Scopes granted to a shared user. FULL satisfies every route."""
    READ_ONLY = "READ_ONLY"
    EDIT = "EDIT"
    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"
    FULL = "FULL"

    @classmethod
    def parse_all(cls, values) -> List['Permission']:
        """Parse scope names, silently ignoring anything unknown."""
        result = []
        for value in values or []:
            try:
                perm = value if isinstance(value, cls) else cls(str(value).upper())
            except ValueError:
                continue
            if perm not in result:
                result.append(perm)
        return result


@dataclass
class Tag:
    id: int
    name: str
    group_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Tag':
        return cls(**_filter_fields(cls, data, {"groupId": "group_id", "folderId": "group_id"}))


@dataclass
class TagGroup:
    id: int
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TagGroup':
        return cls(**_filter_fields(cls, data))


@dataclass
class Folder:
    id: int
    name: str
    parent_id: Optional[int] = None
    order_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Folder':
        filtered = _filter_fields(cls, data, {"parentId": "parent_id", "orderIndex": "order_index"})
        if filtered.get("order_index") is None:
            filtered["order_index"] = 0
        return cls(**filtered)


@dataclass
class Comment:
    id: int
    media_id: int
    text: str
    time: float = 0
    nickname: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Comment':
        return cls(**_filter_fields(cls, data, {"mediaId": "media_id", "createdAt": "created_at"}))


@dataclass
class MediaFile:
    """
    Represents a single media file stored in a library.

    Attributes:
        id: Sequential per-library id, immutable once assigned
        unique_id: Random hex id naming the storage directory (images/<unique_id>)
        file_path: Absolute path of the media file inside the library
        file_type: "video" or "audio"
        rating: 0-5
        is_deleted: Soft-delete flag (in the trash)
        parent_id: Optional one-level grouping under another media file
        tags / folders / comments: Embedded copies of the related records
    """
    id: int
    unique_id: Optional[str]
    file_path: str
    file_name: str
    file_type: str
    file_size: int = 0
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    rating: int = 0
    created_date: Optional[str] = None
    modified_date: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    last_played_at: Optional[str] = None
    is_deleted: bool = False
    thumbnail_path: Optional[str] = None
    artist: Optional[str] = None
    artists: List[str] = field(default_factory=list)
    description: Optional[str] = None
    url: Optional[str] = None
    dominant_color: Optional[str] = None
    parent_id: Optional[int] = None
    tags: List[Tag] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    comments: List[Comment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert media file to dictionary, embedded records included."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MediaFile':
        """Create MediaFile from dictionary, filtering unknown keys."""
        filtered = _filter_fields(cls, data, {
            "uniqueId": "unique_id",
            "parentId": "parent_id",
            "genres": "folders",
        })
        filtered.setdefault("unique_id", None)
        filtered.setdefault("file_path", "")
        filtered.setdefault("file_name", "")
        filtered.setdefault("file_type", FileType.VIDEO.value)
        # Older documents stored bare ids instead of embedded records
        filtered["tags"] = [
            Tag.from_dict(t) if isinstance(t, dict) else Tag(id=int(t), name="")
            for t in (filtered.get("tags") or [])
        ]
        filtered["folders"] = [
            Folder.from_dict(f) if isinstance(f, dict) else Folder(id=int(f), name="")
            for f in (filtered.get("folders") or [])
        ]
        filtered["comments"] = [
            Comment.from_dict(c if ("media_id" in c or "mediaId" in c) else dict(c, media_id=filtered.get("id")))
            for c in (filtered.get("comments") or []) if isinstance(c, dict)
        ]
        if filtered.get("artists") is None:
            filtered["artists"] = []
        if filtered.get("rating") is None:
            filtered["rating"] = 0
        if filtered.get("is_deleted") is None:
            filtered["is_deleted"] = False
        return cls(**filtered)

    def summary(self) -> Dict[str, Any]:
        """Shallow projection used for parent/children links."""
        title = self.file_name.rsplit(".", 1)[0] if "." in self.file_name else self.file_name
        return {
            "id": self.id,
            "title": title,
            "file_name": self.file_name,
            "thumbnail_path": self.thumbnail_path,
        }


@dataclass
class AuditLogEntry:
    """One mutating action (library log) or security event (server log)."""
    action: str
    description: str = ""
    target_id: Optional[Any] = None
    target_name: Optional[str] = None
    details: Optional[Any] = None
    user_nickname: str = "System"
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    success: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditLogEntry':
        return cls(**_filter_fields(cls, data, {
            "targetId": "target_id",
            "targetName": "target_name",
            "userNickname": "user_nickname",
            "nickname": "user_nickname",
            "userId": "user_id",
            "ipAddress": "ip_address",
        }))


@dataclass
class SharedUser:
    """
    A remote user granted access to the published library.

    The user token is held by the remote user; the access token is issued
    by this host. Both must be presented on every request.
    """
    id: str
    user_token: str
    access_token: str
    nickname: str
    permissions: List[str] = field(default_factory=lambda: [Permission.READ_ONLY.value])
    is_active: bool = True
    created_at: str = field(default_factory=utc_now_iso)
    last_access_at: Optional[str] = None
    icon_url: Optional[str] = None
    hardware_id: Optional[str] = None
    ip_address: Optional[str] = None

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SharedUser':
        return cls(**_filter_fields(cls, data, {
            "userToken": "user_token",
            "accessToken": "access_token",
            "isActive": "is_active",
            "createdAt": "created_at",
            "lastAccessAt": "last_access_at",
            "iconUrl": "icon_url",
            "hardwareId": "hardware_id",
            "ipAddress": "ip_address",
        }))
