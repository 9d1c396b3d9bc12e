"""
Migration of the legacy single-document library layout.

Old libraries kept every entity in one ``database.json``. The current
layout stores each media file in ``images/<unique_id>/metadata.json`` and
each collection (tags, tag groups, folders) in its own document. After a
successful migration the legacy document is renamed with a ``.migrated``
suffix so the migration never runs twice.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Any
import logging
import secrets

from common.constants import (
    MEDIA_DIR,
    MEDIA_METADATA_FILENAME,
    TAGS_FILENAME,
    TAG_GROUPS_FILENAME,
    FOLDERS_FILENAME,
    LEGACY_DATABASE_FILENAME,
    LEGACY_MIGRATED_SUFFIX,
    UNIQUE_ID_BYTES,
)
from common.errors import MigrationError
from common.models import MediaFile, Tag, TagGroup, Folder, Comment
from library.storage import LibraryStorage

logger = logging.getLogger(__name__)

COLLECTION_FILENAMES = (TAGS_FILENAME, TAG_GROUPS_FILENAME, FOLDERS_FILENAME)


@dataclass
class MigrationReport:
    media_count: int = 0
    tag_count: int = 0
    tag_group_count: int = 0
    folder_count: int = 0
    comment_count: int = 0
    assigned_unique_ids: int = 0


def needs_migration(storage: LibraryStorage) -> bool:
    """True if a legacy document exists and no collection document does."""
    if not storage.exists(LEGACY_DATABASE_FILENAME):
        return False
    return not any(storage.exists(name) for name in COLLECTION_FILENAMES)


def migrate_legacy_database(storage: LibraryStorage) -> MigrationReport:
    """
    Split the legacy document into the per-entity layout.

    Raises:
        MigrationError: If the legacy document can't be read or any
            document can't be written. The legacy file is left untouched.
    """
    logger.info(f"Migrating legacy library document in {storage.absolute_path('')}")
    try:
        raw = storage.read_json(LEGACY_DATABASE_FILENAME)
    except (OSError, ValueError) as e:
        raise MigrationError(f"Cannot read {LEGACY_DATABASE_FILENAME}: {e}") from e
    if not isinstance(raw, dict):
        raise MigrationError(f"{LEGACY_DATABASE_FILENAME} is not a library document")

    try:
        report = _migrate(storage, raw)
        storage.rename(LEGACY_DATABASE_FILENAME, LEGACY_DATABASE_FILENAME + LEGACY_MIGRATED_SUFFIX)
    except MigrationError:
        raise
    except Exception as e:
        raise MigrationError(f"Migration failed: {e}") from e

    logger.info(
        f"Migrated {report.media_count} media files, {report.tag_count} tags, "
        f"{report.folder_count} folders, {report.comment_count} comments"
    )
    return report


def _migrate(storage: LibraryStorage, raw: Dict[str, Any]) -> MigrationReport:
    report = MigrationReport()

    tags = [Tag.from_dict(t) for t in raw.get("tags") or []]
    tag_groups = [TagGroup.from_dict(g) for g in raw.get("tagFolders") or raw.get("tagGroups") or []]
    # Folders were called genres in the legacy layout
    folders = [Folder.from_dict(g) for g in raw.get("genres") or raw.get("folders") or []]
    tags_by_id = {t.id: t for t in tags}
    folders_by_id = {f.id: f for f in folders}

    tag_links: Dict[int, List[int]] = {}
    for link in raw.get("mediaTags") or []:
        tag_links.setdefault(link.get("mediaId"), []).append(link.get("tagId"))

    folder_links: Dict[int, List[int]] = {}
    for link in raw.get("mediaGenres") or raw.get("mediaFolders") or []:
        folder_id = link.get("genreId", link.get("folderId"))
        folder_links.setdefault(link.get("mediaId"), []).append(folder_id)

    comments_by_media: Dict[int, List[Comment]] = {}
    for c in raw.get("comments") or []:
        comment = Comment.from_dict(c)
        comments_by_media.setdefault(comment.media_id, []).append(comment)

    for data in raw.get("mediaFiles") or []:
        # Relations come from the join tables, not from whatever the record embedded
        data = {k: v for k, v in data.items() if k not in ("tags", "folders", "genres", "comments")}
        media = MediaFile.from_dict(data)
        if not media.unique_id:
            media.unique_id = secrets.token_hex(UNIQUE_ID_BYTES)
            report.assigned_unique_ids += 1

        seen = set()
        for tag_id in tag_links.get(media.id, []):
            if tag_id in tags_by_id and tag_id not in seen:
                seen.add(tag_id)
                media.tags.append(replace(tags_by_id[tag_id]))
        seen = set()
        for folder_id in folder_links.get(media.id, []):
            if folder_id in folders_by_id and folder_id not in seen:
                seen.add(folder_id)
                media.folders.append(replace(folders_by_id[folder_id]))
        media.comments = comments_by_media.get(media.id, [])

        storage.write_json(f"{MEDIA_DIR}/{media.unique_id}/{MEDIA_METADATA_FILENAME}", media.to_dict())
        report.media_count += 1
        report.comment_count += len(media.comments)

    storage.write_json(TAGS_FILENAME, [t.to_dict() for t in tags])
    storage.write_json(TAG_GROUPS_FILENAME, [g.to_dict() for g in tag_groups])
    storage.write_json(FOLDERS_FILENAME, [f.to_dict() for f in folders])
    report.tag_count = len(tags)
    report.tag_group_count = len(tag_groups)
    report.folder_count = len(folders)
    return report
