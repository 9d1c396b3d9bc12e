"""
In-memory library state synchronised to per-entity JSON documents.

Layout of a library root::

    images/<unique_id>/metadata.json   one document per media file
    tags.json                          all tags
    tag_folders.json                   all tag groups
    folders.json                       all folders
    audit_logs.json                    newest-first audit log

Media files embed copies of their tags, folders and comments. All changes
to those embedded copies go through ``_sync_embedded`` so a rename, regroup
or delete reaches every media file that holds the entity.
"""

from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import List, Dict, Optional, Any, Callable, Tuple, Iterable
import logging
import math
import os
import random
import threading

from common.audit import AuditLog
from common.constants import (
    MEDIA_DIR,
    MEDIA_METADATA_FILENAME,
    TAGS_FILENAME,
    TAG_GROUPS_FILENAME,
    FOLDERS_FILENAME,
    AUDIT_LOG_FILENAME,
    LIBRARY_AUDIT_LOG_MAX,
    RANDOM_ID_MIN,
    RANDOM_ID_MAX,
    DEFAULT_PAGE_SIZE,
    MOVE_TIMEOUT_SEC,
)
from common.models import (
    MediaFile,
    Tag,
    TagGroup,
    Folder,
    Comment,
    AuditLogEntry,
    FileType,
    utc_now_iso,
)
from library.importer import ImportPipeline, ProgressCallback, sanitize_filename
from library.migration import needs_migration, migrate_legacy_database
from library.provider import MediaProvider
from library.storage import LibraryStorage, LocalLibraryStorage

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_CRITERIA = {"name": True, "size": True, "duration": False, "modified": False}


class LibraryStore:
    """
    One library root: its media files, tags, tag groups, folders, comments
    and audit log.

    Lookups of missing entities return None (or an empty list) instead of
    raising. Every successful mutation persists the documents it touched
    and appends one audit entry.
    """

    def __init__(self, library_path: str, storage: Optional[LibraryStorage] = None,
                 provider: Optional[MediaProvider] = None, move_timeout_sec: float = MOVE_TIMEOUT_SEC,
                 extract_color: bool = True):
        self.path = str(Path(library_path).expanduser().absolute())
        self.storage = storage or LocalLibraryStorage(self.path)

        self.media_files: List[MediaFile] = []
        self.tags: List[Tag] = []
        self.tag_groups: List[TagGroup] = []
        self.folders: List[Folder] = []
        self.media_tags: List[Tuple[int, int]] = []
        self.media_folders: List[Tuple[int, int]] = []
        self.comments: List[Comment] = []
        self.next_media_id = 1
        self.loaded = False

        self.audit = AuditLog(Path(self.storage.absolute_path(AUDIT_LOG_FILENAME)), LIBRARY_AUDIT_LOG_MAX)
        self.importer = ImportPipeline(self, provider, move_timeout_sec=move_timeout_sec,
                                       extract_color=extract_color)

        self._media_by_id: Dict[int, MediaFile] = {}
        self._lock = threading.RLock()
        self._default_operator = "System"
        self._local = threading.local()
        self._on_change_callbacks: List[Callable[[str, Any], None]] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> None:
        """
        Read the library from disk.

        Runs the legacy migration first when needed (a MigrationError
        propagates). Other read failures are logged and leave whatever was
        read so far in place.
        """
        with self._lock:
            if needs_migration(self.storage):
                migrate_legacy_database(self.storage)

            self.tags = self._load_collection(TAGS_FILENAME, Tag)
            self.tag_groups = self._load_collection(TAG_GROUPS_FILENAME, TagGroup)
            self.folders = self._load_collection(FOLDERS_FILENAME, Folder)
            self.audit.load()

            self.media_files = []
            try:
                unique_ids = self.storage.list_dirs(MEDIA_DIR)
            except OSError as e:
                logger.error(f"Cannot list {MEDIA_DIR} in {self.path}: {e}")
                unique_ids = []

            for unique_id in unique_ids:
                doc_path = f"{MEDIA_DIR}/{unique_id}/{MEDIA_METADATA_FILENAME}"
                try:
                    data = self.storage.read_json(doc_path)
                except (OSError, ValueError) as e:
                    logger.error(f"Skipping unreadable media document {doc_path}: {e}")
                    continue
                if not isinstance(data, dict):
                    continue
                try:
                    media = MediaFile.from_dict(data)
                except (TypeError, ValueError) as e:
                    logger.error(f"Skipping malformed media document {doc_path}: {e}")
                    continue
                if not media.unique_id:
                    media.unique_id = unique_id
                self.media_files.append(media)

            self.media_files.sort(key=lambda m: m.id)
            self.rebuild_indices()
            self.loaded = True
            logger.info(
                f"Loaded library {self.path}: {len(self.media_files)} media, "
                f"{len(self.tags)} tags, {len(self.folders)} folders"
            )

    def _load_collection(self, filename: str, cls) -> list:
        try:
            data = self.storage.read_json(filename)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read {filename} in {self.path}: {e}")
            return []
        items = []
        for raw in data or []:
            try:
                items.append(cls.from_dict(raw))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed entry in {filename}: {e}")
        return items

    def rebuild_indices(self) -> None:
        """
        Recompute the join tables, the flat comment list and the next media id
        from the embedded arrays.

        Embedded tag/folder copies are refreshed from the canonical
        collections so records written with bare ids get their names back.
        """
        with self._lock:
            tags_by_id = {t.id: t for t in self.tags}
            folders_by_id = {f.id: f for f in self.folders}

            self.media_tags = []
            self.media_folders = []
            self.comments = []
            self._media_by_id = {}

            for media in self.media_files:
                self._media_by_id[media.id] = media
                media.tags = [replace(tags_by_id[t.id]) if t.id in tags_by_id else t for t in media.tags]
                media.folders = [replace(folders_by_id[f.id]) if f.id in folders_by_id else f
                                 for f in media.folders]
                for tag in media.tags:
                    if tag.id:
                        self.media_tags.append((media.id, tag.id))
                for folder in media.folders:
                    if folder.id:
                        self.media_folders.append((media.id, folder.id))
                for comment in media.comments:
                    if not comment.media_id:
                        comment.media_id = media.id
                    self.comments.append(comment)

            self.next_media_id = self._recovered_next_id()

    def _recovered_next_id(self) -> int:
        return max((m.id for m in self.media_files), default=0) + 1

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _save_media(self, media: MediaFile) -> None:
        if not media.unique_id:
            logger.warning(f"Media {media.id} has no unique id, not saved")
            return
        self.storage.write_json(f"{MEDIA_DIR}/{media.unique_id}/{MEDIA_METADATA_FILENAME}", media.to_dict())

    def _save_tags(self) -> None:
        self.storage.write_json(TAGS_FILENAME, [t.to_dict() for t in self.tags])

    def _save_tag_groups(self) -> None:
        self.storage.write_json(TAG_GROUPS_FILENAME, [g.to_dict() for g in self.tag_groups])

    def _save_folders(self) -> None:
        self.storage.write_json(FOLDERS_FILENAME, [f.to_dict() for f in self.folders])

    def _sync_embedded(self, attr: str, entity_id: int, source=None) -> List[MediaFile]:
        """
        Replace (``source`` given) or remove (``source`` None) the embedded
        copy of a tag/folder on every media file, saving each one touched.
        """
        touched = []
        for media in self.media_files:
            items = getattr(media, attr)
            if not any(item.id == entity_id for item in items):
                continue
            if source is None:
                setattr(media, attr, [item for item in items if item.id != entity_id])
            else:
                setattr(media, attr, [replace(source) if item.id == entity_id else item for item in items])
            touched.append(media)
        for media in touched:
            self._save_media(media)
        return touched

    # ------------------------------------------------------------------
    # Ids, operators, audit and change notification
    # ------------------------------------------------------------------

    def allocate_media_id(self) -> int:
        """Reserve the next sequential media id."""
        with self._lock:
            if not isinstance(self.next_media_id, int) or self.next_media_id <= 0:
                self.next_media_id = self._recovered_next_id()
            media_id = self.next_media_id
            self.next_media_id += 1
            return media_id

    @staticmethod
    def generate_random_id(existing: Iterable) -> int:
        """Random id in 1..1,000,000,000 not used by any item in ``existing``."""
        used = {item.id for item in existing}
        while True:
            candidate = random.randint(RANDOM_ID_MIN, RANDOM_ID_MAX)
            if candidate not in used:
                return candidate

    def set_current_operator(self, nickname: str) -> None:
        """Name recorded in audit entries when no per-request operator is set."""
        self._default_operator = nickname or "System"

    @contextmanager
    def acting_as(self, nickname: str, user_id: Optional[str] = None):
        """Attribute audit entries written by this thread inside the block."""
        previous = getattr(self._local, "operator", None)
        self._local.operator = (nickname, user_id)
        try:
            yield self
        finally:
            self._local.operator = previous

    def add_audit_log(self, action: str, target_id: Any = None, target_name: Optional[str] = None,
                      description: str = "", details: Any = None,
                      user_nickname: Optional[str] = None, user_id: Optional[str] = None) -> AuditLogEntry:
        operator = getattr(self._local, "operator", None)
        if user_nickname is None:
            user_nickname = operator[0] if operator else self._default_operator
        if user_id is None and operator:
            user_id = operator[1]
        entry = AuditLogEntry(
            action=action,
            target_id=target_id,
            target_name=target_name,
            description=description,
            details=details,
            user_nickname=user_nickname,
            user_id=user_id,
        )
        self.audit.append(entry)
        return entry

    def get_audit_logs(self, limit: Optional[int] = None) -> List[AuditLogEntry]:
        return self.audit.entries(limit=limit)

    def add_change_callback(self, callback: Callable[[str, Any], None]) -> None:
        """Register ``callback(action, target_id)`` run after every mutation."""
        if callback not in self._on_change_callbacks:
            self._on_change_callbacks.append(callback)

    def remove_change_callback(self, callback: Callable[[str, Any], None]) -> None:
        if callback in self._on_change_callbacks:
            self._on_change_callbacks.remove(callback)

    def _changed(self, action: str, target_id: Any = None, target_name: Optional[str] = None,
                 description: str = "", details: Any = None) -> None:
        self.add_audit_log(action, target_id, target_name, description, details)
        for callback in list(self._on_change_callbacks):
            try:
                callback(action, target_id)
            except Exception as e:
                logger.error(f"Error in library change callback: {e}")

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def import_media_files(self, file_paths: List[str], on_progress: Optional[ProgressCallback] = None,
                           check_duplicates: bool = False) -> List[MediaFile]:
        return self.importer.import_files(file_paths, on_progress=on_progress, check_duplicates=check_duplicates)

    def add_imported_media(self, media: MediaFile) -> None:
        """Register a media file produced by the import pipeline."""
        with self._lock:
            self._save_media(media)
            self.media_files.append(media)
            self._media_by_id[media.id] = media
            self._changed("media_import", media.id, media.file_name, f"Imported: {media.file_name}")

    def get(self, media_id: int) -> Optional[MediaFile]:
        return self._media_by_id.get(media_id)

    def get_all_media_files(self, include_deleted: bool = False) -> List[MediaFile]:
        if include_deleted:
            return list(self.media_files)
        return [m for m in self.media_files if not m.is_deleted]

    def get_media_files(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE,
                        search: Optional[str] = None) -> Dict[str, Any]:
        """
        One page of active media, newest first.

        ``search`` matches case-insensitively against file name,
        description and artist.
        """
        page = max(1, int(page))
        limit = max(1, int(limit))
        results = [m for m in self.media_files if not m.is_deleted]
        if search:
            needle = search.lower()
            results = [
                m for m in results
                if needle in m.file_name.lower()
                or (m.description and needle in m.description.lower())
                or (m.artist and needle in m.artist.lower())
            ]
        results.sort(key=lambda m: m.id, reverse=True)

        start = (page - 1) * limit
        return {
            "media": results[start:start + limit],
            "total": len(results),
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(len(results) / limit),
        }

    def get_trash(self) -> List[MediaFile]:
        return [m for m in self.media_files if m.is_deleted]

    def get_media_file_with_details(self, media_id: int) -> Optional[Dict[str, Any]]:
        """
        A media record with tags, folders and comments resolved from the
        canonical collections, plus a one-level parent/children summary.
        """
        media = self.get(media_id)
        if media is None:
            return None

        tags_by_id = {t.id: t for t in self.tags}
        folders_by_id = {f.id: f for f in self.folders}
        tag_ids = [tid for mid, tid in self.media_tags if mid == media_id]
        folder_ids = [fid for mid, fid in self.media_folders if mid == media_id]

        details = media.to_dict()
        details["tags"] = [tags_by_id[t].to_dict() for t in tag_ids if t in tags_by_id]
        details["folders"] = [folders_by_id[f].to_dict() for f in folder_ids if f in folders_by_id]
        details["comments"] = [c.to_dict() for c in self.get_comments(media_id)]

        parent = self.get(media.parent_id) if media.parent_id is not None else None
        details["parent"] = parent.summary() if parent else None
        details["children"] = [m.summary() for m in self.media_files if m.parent_id == media_id]
        return details

    def update_parent_id(self, child_id: int, parent_id: Optional[int]) -> Optional[MediaFile]:
        """
        Set or clear a media file's parent.

        Self-reference and the direct two-node cycle are rejected (no-op,
        returns None). Longer cycles are not detected.
        """
        with self._lock:
            child = self.get(child_id)
            if child is None:
                return None
            if parent_id is not None:
                if parent_id == child_id:
                    logger.warning(f"Rejected self-parenting of media {child_id}")
                    return None
                parent = self.get(parent_id)
                if parent is None:
                    return None
                if parent.parent_id == child_id:
                    logger.warning(f"Rejected circular parent {parent_id} for media {child_id}")
                    return None
            child.parent_id = parent_id
            self._save_media(child)
            self._changed("media_update_parent", child_id, child.file_name,
                          f"Set parent of {child.file_name} to {parent_id}", {"parentId": parent_id})
            return child

    def _update_media_field(self, media_id: int, action: str, summary: str, **values) -> Optional[MediaFile]:
        with self._lock:
            media = self.get(media_id)
            if media is None:
                return None
            for key, value in values.items():
                setattr(media, key, value)
            self._save_media(media)
            self._changed(action, media_id, media.file_name, f"{summary}: {media.file_name}", values)
            return media

    def update_rating(self, media_id: int, rating: int) -> Optional[MediaFile]:
        rating = max(0, min(5, int(rating)))
        return self._update_media_field(media_id, "media_update_rating", f"Updated rating to {rating}",
                                        rating=rating)

    def update_artist(self, media_id: int, artist: Optional[str]) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_update_artist", "Updated artist", artist=artist)

    def update_artists(self, media_id: int, artists: List[str]) -> Optional[MediaFile]:
        artists = [a for a in (artists or []) if a]
        return self._update_media_field(media_id, "media_update_artist", "Updated artists",
                                        artists=artists, artist=artists[0] if artists else None)

    def update_description(self, media_id: int, description: Optional[str]) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_update_description", "Updated description",
                                        description=description)

    def update_url(self, media_id: int, url: Optional[str]) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_update_url", "Updated URL", url=url)

    def update_last_played(self, media_id: int) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_play", "Played", last_played_at=utc_now_iso())

    def update_video_metadata(self, media_id: int, width: Optional[int], height: Optional[int],
                              duration: Optional[float]) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_update_metadata", "Updated metadata",
                                        width=width, height=height, duration=duration)

    def get_videos_missing_metadata(self) -> List[MediaFile]:
        return [
            m for m in self.media_files
            if not m.is_deleted and m.file_type == FileType.VIDEO.value
            and (not m.width or not m.duration)
        ]

    def move_to_trash(self, media_id: int) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_trash", "Moved to trash", is_deleted=True)

    def restore_from_trash(self, media_id: int) -> Optional[MediaFile]:
        return self._update_media_field(media_id, "media_restore", "Restored from trash", is_deleted=False)

    def rename_media(self, media_id: int, new_name: str) -> Optional[MediaFile]:
        """
        Rename the physical file inside its directory.

        Raises:
            ValueError: If a different file with the new name already exists
            OSError: If the rename itself fails
        """
        with self._lock:
            media = self.get(media_id)
            if media is None:
                return None
            new_name = sanitize_filename(new_name)
            old_name = media.file_name
            if new_name == old_name:
                return media

            if media.file_path and os.path.exists(media.file_path):
                new_path = os.path.join(os.path.dirname(media.file_path), new_name)
                if os.path.exists(new_path):
                    raise ValueError(f"A file named {new_name} already exists")
                os.rename(media.file_path, new_path)
                media.file_path = new_path
            media.file_name = new_name
            self._save_media(media)
            self._changed("media_rename", media_id, new_name, f"Renamed: {old_name} -> {new_name}")
            return media

    def delete_permanently(self, media_ids: List[int]) -> List[int]:
        """
        Remove media records and their ``images/<unique_id>`` directories.

        Returns:
            Ids that were actually deleted
        """
        deleted = []
        with self._lock:
            for media_id in media_ids:
                media = self.get(media_id)
                if media is None:
                    continue
                if media.unique_id:
                    try:
                        self.storage.remove_tree(f"{MEDIA_DIR}/{media.unique_id}")
                    except OSError as e:
                        logger.error(f"Failed to delete files of media {media_id}: {e}")
                        continue
                self.media_files.remove(media)
                del self._media_by_id[media_id]
                self.media_tags = [(m, t) for m, t in self.media_tags if m != media_id]
                self.media_folders = [(m, f) for m, f in self.media_folders if m != media_id]
                self.comments = [c for c in self.comments if c.media_id != media_id]
                for other in self.media_files:
                    if other.parent_id == media_id:
                        other.parent_id = None
                        self._save_media(other)
                deleted.append(media_id)
                self._changed("media_delete", media_id, media.file_name, f"Deleted permanently: {media.file_name}")
        return deleted

    # ------------------------------------------------------------------
    # Duplicates
    # ------------------------------------------------------------------

    def check_duplicates(self, file_paths: List[str], strict: bool = False) -> List[Dict[str, Any]]:
        """
        Match candidate source files against active media.

        A match shares the file size, and with ``strict`` also the file name.
        Unreadable candidates are skipped.
        """
        duplicates = []
        active = [m for m in self.media_files if not m.is_deleted]
        for src_path in file_paths:
            try:
                size = self.storage.stat(src_path).size
            except OSError:
                continue
            name = os.path.basename(src_path)
            existing = next(
                (m for m in active if m.file_size == size and (not strict or m.file_name == name)),
                None,
            )
            if existing:
                duplicates.append({
                    "new_file": {"path": src_path, "name": name, "size": size},
                    "existing": existing,
                })
        return duplicates

    def find_library_duplicates(self, criteria: Optional[Dict[str, bool]] = None) -> List[List[MediaFile]]:
        """
        Group active media by the selected subset of name, size, duration
        (rounded) and modified date. Groups with one member are dropped.
        """
        if criteria is None:
            criteria = DEFAULT_DUPLICATE_CRITERIA
        groups: Dict[Tuple, List[MediaFile]] = {}
        for media in self.media_files:
            if media.is_deleted:
                continue
            key = []
            if criteria.get("size"):
                key.append(("size", media.file_size))
            if criteria.get("name"):
                key.append(("name", media.file_name))
            if criteria.get("duration") and media.duration:
                key.append(("duration", round(media.duration)))
            if criteria.get("modified") and media.modified_date:
                key.append(("modified", media.modified_date))
            if key:
                groups.setdefault(tuple(key), []).append(media)
        return [group for group in groups.values() if len(group) > 1]

    def get_duplicates_for_media(self, media_id: int) -> List[MediaFile]:
        media = self.get(media_id)
        if media is None:
            return []
        return [
            m for m in self.media_files
            if m.id != media_id and not m.is_deleted
            and (m.file_size == media.file_size or m.file_name == media.file_name)
        ]

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def get_all_tags(self) -> List[Tag]:
        return sorted(self.tags, key=lambda t: t.name.lower())

    def get_tag(self, tag_id: int) -> Optional[Tag]:
        return next((t for t in self.tags if t.id == tag_id), None)

    def create_tag(self, name: str, group_id: Optional[int] = None) -> Tag:
        """Create a tag, or return the existing one with the same name."""
        with self._lock:
            existing = next((t for t in self.tags if t.name == name), None)
            if existing:
                return existing
            tag = Tag(id=self.generate_random_id(self.tags), name=name, group_id=group_id)
            self.tags.append(tag)
            self._save_tags()
            self._changed("tag_create", tag.id, name, f"Created tag: {name}")
            return tag

    def delete_tag(self, tag_id: int) -> bool:
        with self._lock:
            tag = self.get_tag(tag_id)
            if tag is None:
                return False
            self.tags.remove(tag)
            self.media_tags = [(m, t) for m, t in self.media_tags if t != tag_id]
            self._save_tags()
            self._sync_embedded("tags", tag_id)
            self._changed("tag_delete", tag_id, tag.name, f"Deleted tag: {tag.name}")
            return True

    def rename_tag(self, tag_id: int, new_name: str) -> Optional[Tag]:
        with self._lock:
            tag = self.get_tag(tag_id)
            if tag is None:
                return None
            old_name = tag.name
            tag.name = new_name
            self._save_tags()
            self._sync_embedded("tags", tag_id, tag)
            self._changed("tag_rename", tag_id, new_name, f"Renamed tag: {old_name} -> {new_name}")
            return tag

    def update_tag_group(self, tag_id: int, group_id: Optional[int]) -> Optional[Tag]:
        with self._lock:
            tag = self.get_tag(tag_id)
            if tag is None:
                return None
            if group_id is not None and not any(g.id == group_id for g in self.tag_groups):
                return None
            tag.group_id = group_id
            self._save_tags()
            self._sync_embedded("tags", tag_id, tag)
            self._changed("tag_update_group", tag_id, tag.name,
                          f"Moved tag {tag.name} to group {group_id}", {"groupId": group_id})
            return tag

    def _attach_tag(self, media: MediaFile, tag: Tag) -> bool:
        if any(t.id == tag.id for t in media.tags):
            return False
        media.tags.append(replace(tag))
        self.media_tags.append((media.id, tag.id))
        self._save_media(media)
        return True

    def add_tag_to_media(self, media_id: int, tag_id: int) -> bool:
        with self._lock:
            media, tag = self.get(media_id), self.get_tag(tag_id)
            if media is None or tag is None or not self._attach_tag(media, tag):
                return False
            self._changed("tag_add", media_id, media.file_name, f"Added tag {tag.name} to {media.file_name}",
                          {"tagId": tag_id})
            return True

    def add_tags_to_media(self, media_ids: List[int], tag_ids: List[int]) -> int:
        """Attach every tag to every media file. Returns the number of new links."""
        with self._lock:
            added = 0
            for media_id in media_ids:
                media = self.get(media_id)
                if media is None:
                    continue
                for tag_id in tag_ids:
                    tag = self.get_tag(tag_id)
                    if tag is not None and self._attach_tag(media, tag):
                        added += 1
            if added:
                self._changed("tag_add", None, None, f"Added {len(tag_ids)} tag(s) to {len(media_ids)} media",
                              {"mediaIds": list(media_ids), "tagIds": list(tag_ids)})
            return added

    def remove_tag_from_media(self, media_id: int, tag_id: int) -> bool:
        with self._lock:
            media = self.get(media_id)
            if media is None or not any(t.id == tag_id for t in media.tags):
                return False
            media.tags = [t for t in media.tags if t.id != tag_id]
            self.media_tags = [(m, t) for m, t in self.media_tags if not (m == media_id and t == tag_id)]
            self._save_media(media)
            self._changed("tag_remove", media_id, media.file_name, f"Removed tag {tag_id} from {media.file_name}",
                          {"tagId": tag_id})
            return True

    # ------------------------------------------------------------------
    # Tag groups
    # ------------------------------------------------------------------

    def get_all_tag_groups(self) -> List[TagGroup]:
        return sorted(self.tag_groups, key=lambda g: g.name.lower())

    def create_tag_group(self, name: str) -> TagGroup:
        with self._lock:
            existing = next((g for g in self.tag_groups if g.name == name), None)
            if existing:
                return existing
            group = TagGroup(id=self.generate_random_id(self.tag_groups), name=name)
            self.tag_groups.append(group)
            self._save_tag_groups()
            self._changed("tag_group_create", group.id, name, f"Created tag group: {name}")
            return group

    def rename_tag_group(self, group_id: int, new_name: str) -> Optional[TagGroup]:
        with self._lock:
            group = next((g for g in self.tag_groups if g.id == group_id), None)
            if group is None:
                return None
            old_name = group.name
            group.name = new_name
            self._save_tag_groups()
            self._changed("tag_group_rename", group_id, new_name, f"Renamed tag group: {old_name} -> {new_name}")
            return group

    def delete_tag_group(self, group_id: int) -> bool:
        """Delete a group; its tags become ungrouped everywhere."""
        with self._lock:
            group = next((g for g in self.tag_groups if g.id == group_id), None)
            if group is None:
                return False
            self.tag_groups.remove(group)
            ungrouped = [t for t in self.tags if t.group_id == group_id]
            for tag in ungrouped:
                tag.group_id = None
            self._save_tag_groups()
            self._save_tags()
            for tag in ungrouped:
                self._sync_embedded("tags", tag.id, tag)
            self._changed("tag_group_delete", group_id, group.name, f"Deleted tag group: {group.name}")
            return True

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def get_all_folders(self) -> List[Folder]:
        return sorted(self.folders, key=lambda f: (f.order_index or 0, f.name.lower()))

    def get_folder(self, folder_id: int) -> Optional[Folder]:
        return next((f for f in self.folders if f.id == folder_id), None)

    def create_folder(self, base_name: str, parent_id: Optional[int] = None) -> Folder:
        """
        Create a folder. Names are made unique among siblings by appending
        `` (1)``, `` (2)``... and the folder is ordered after its siblings.
        """
        with self._lock:
            siblings = [f for f in self.folders if f.parent_id == parent_id]
            sibling_names = {f.name for f in siblings}
            name, counter = base_name, 1
            while name in sibling_names:
                name = f"{base_name} ({counter})"
                counter += 1
            max_order = max((f.order_index or 0 for f in siblings), default=0)

            folder = Folder(id=self.generate_random_id(self.folders), name=name,
                            parent_id=parent_id, order_index=max_order + 100)
            self.folders.append(folder)
            self._save_folders()
            self._changed("folder_create", folder.id, name, f"Created folder: {name}")
            return folder

    def rename_folder(self, folder_id: int, new_name: str) -> Optional[Folder]:
        with self._lock:
            folder = self.get_folder(folder_id)
            if folder is None:
                return None
            old_name = folder.name
            folder.name = new_name
            self._save_folders()
            self._sync_embedded("folders", folder_id, folder)
            self._changed("folder_rename", folder_id, new_name, f"Renamed folder: {old_name} -> {new_name}")
            return folder

    def delete_folder(self, folder_id: int) -> bool:
        """Delete a folder; its direct children move to the top level."""
        with self._lock:
            folder = self.get_folder(folder_id)
            if folder is None:
                return False
            self.folders.remove(folder)
            children = [f for f in self.folders if f.parent_id == folder_id]
            for child in children:
                child.parent_id = None
            self.media_folders = [(m, f) for m, f in self.media_folders if f != folder_id]
            self._save_folders()
            self._sync_embedded("folders", folder_id)
            for child in children:
                self._sync_embedded("folders", child.id, child)
            self._changed("folder_delete", folder_id, folder.name, f"Deleted folder: {folder.name}")
            return True

    def update_folder_structure(self, updates: List[Dict[str, Any]]) -> int:
        """
        Apply ``{"id", "parent_id", "order_index"}`` changes in one go.

        A folder can't become its own parent, nor the child of a folder
        whose parent is that folder; such updates are skipped.

        Returns:
            Number of folders changed
        """
        with self._lock:
            changed = []
            for update in updates:
                folder = self.get_folder(update.get("id"))
                if folder is None:
                    continue
                parent_id = update.get("parent_id", update.get("parentId", folder.parent_id))
                order_index = update.get("order_index", update.get("orderIndex", folder.order_index))
                if parent_id is not None:
                    parent = self.get_folder(parent_id)
                    if parent_id == folder.id or parent is None or parent.parent_id == folder.id:
                        logger.warning(f"Skipping invalid parent {parent_id} for folder {folder.id}")
                        continue
                folder.parent_id = parent_id
                folder.order_index = order_index or 0
                changed.append(folder)

            if changed:
                self._save_folders()
                for folder in changed:
                    self._sync_embedded("folders", folder.id, folder)
                self._changed("folder_move", None, None, f"Reorganised {len(changed)} folder(s)",
                              {"folderIds": [f.id for f in changed]})
            return len(changed)

    def add_folder_to_media(self, media_id: int, folder_id: int) -> bool:
        with self._lock:
            media, folder = self.get(media_id), self.get_folder(folder_id)
            if media is None or folder is None or any(f.id == folder_id for f in media.folders):
                return False
            media.folders.append(replace(folder))
            self.media_folders.append((media_id, folder_id))
            self._save_media(media)
            self._changed("folder_add", media_id, media.file_name,
                          f"Added {media.file_name} to folder {folder.name}", {"folderId": folder_id})
            return True

    def remove_folder_from_media(self, media_id: int, folder_id: int) -> bool:
        with self._lock:
            media = self.get(media_id)
            if media is None or not any(f.id == folder_id for f in media.folders):
                return False
            media.folders = [f for f in media.folders if f.id != folder_id]
            self.media_folders = [(m, f) for m, f in self.media_folders if not (m == media_id and f == folder_id)]
            self._save_media(media)
            self._changed("folder_remove", media_id, media.file_name,
                          f"Removed {media.file_name} from folder {folder_id}", {"folderId": folder_id})
            return True

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def add_comment(self, media_id: int, text: str, time: float = 0,
                    nickname: Optional[str] = None) -> Optional[Comment]:
        with self._lock:
            media = self.get(media_id)
            if media is None:
                return None
            comment = Comment(id=self.generate_random_id(self.comments), media_id=media_id,
                              text=text, time=time or 0, nickname=nickname)
            self.comments.append(comment)
            media.comments.append(comment)
            self._save_media(media)
            self._changed("comment_add", media_id, media.file_name, f"Commented on {media.file_name}",
                          {"commentId": comment.id})
            return comment

    def get_comments(self, media_id: int) -> List[Comment]:
        return sorted((c for c in self.comments if c.media_id == media_id), key=lambda c: c.time or 0)

    def delete_comment(self, comment_id: int) -> bool:
        with self._lock:
            comment = next((c for c in self.comments if c.id == comment_id), None)
            if comment is None:
                return False
            self.comments.remove(comment)
            media = self.get(comment.media_id)
            if media is not None:
                media.comments = [c for c in media.comments if c.id != comment_id]
                self._save_media(media)
            self._changed("comment_delete", comment.media_id, media.file_name if media else None,
                          "Deleted comment", {"commentId": comment_id})
            return True

    def close(self) -> None:
        self.importer.shutdown()
