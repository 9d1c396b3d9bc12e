"""
Sequential import of media files into a library.

A library owns one ImportQueue. Every batch holds the queue for its whole
run, so batches against the same library never interleave: ids handed out
to one batch are contiguous and directory creation never races.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Callable, TYPE_CHECKING
import concurrent.futures
import logging
import os
import secrets
import threading

from common.constants import (
    MEDIA_DIR,
    SUPPORTED_MEDIA_FORMATS,
    SUPPORTED_AUDIO_FORMATS,
    UNIQUE_ID_BYTES,
    MOVE_TIMEOUT_SEC,
    MAX_FILENAME_LENGTH,
    ILLEGAL_FILENAME_CHARS,
    STAGE_STARTING,
    STAGE_MOVING,
    STAGE_METADATA,
    STAGE_THUMBNAIL,
    STAGE_COLOR,
    STAGE_DONE,
)
from common.errors import ImportTimeoutError
from common.models import MediaFile, FileType, utc_now_iso
from library.provider import MediaProvider

if TYPE_CHECKING:
    from library.store import LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class ImportProgress:
    current: int
    total: int
    file_name: str
    step: str
    percentage: int

    def to_dict(self):
        return {
            "current": self.current,
            "total": self.total,
            "fileName": self.file_name,
            "step": self.step,
            "percentage": self.percentage,
        }


ProgressCallback = Callable[[ImportProgress], None]


def sanitize_filename(name: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """
    Replace characters that are illegal on common filesystems and cap the length.

    The extension survives truncation.
    """
    cleaned = "".join(
        "_" if (ch in ILLEGAL_FILENAME_CHARS or ord(ch) < 32) else ch
        for ch in name
    ).strip()
    if not cleaned or cleaned in (".", ".."):
        cleaned = "untitled"
    if len(cleaned) <= max_length:
        return cleaned

    stem, ext = os.path.splitext(cleaned)
    if len(ext) >= max_length:
        return cleaned[:max_length]
    return stem[:max_length - len(ext)] + ext


def calculate_percentage(index: int, total: int, weight: float) -> int:
    """Overall progress for file ``index`` (0-based) at a stage ``weight``."""
    if total <= 0:
        return 100
    return round((index / total + weight / total) * 100)


class ImportQueue:
    """
    Per-library mutex for import batches.

    ``acquire`` blocks until no other batch is in flight; ``release`` must
    be called exactly once per successful acquire. Usable as a context
    manager.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._batches_run = 0

    def acquire(self, timeout: Optional[float] = None) -> bool:
        if timeout is None:
            return self._lock.acquire()
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._batches_run += 1
        self._lock.release()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def batches_run(self) -> int:
        return self._batches_run

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class ImportPipeline:
    """
    Turns source file paths into persisted media files.

    Per file: validate, sanitize the name, allocate ids, move the file in
    (with a timeout), extract metadata, render a thumbnail, pick the
    dominant colour, then persist. Thumbnail and colour failures are
    tolerated; any other failure skips the file.
    """

    def __init__(self, store: 'LibraryStore', provider: Optional[MediaProvider] = None,
                 move_timeout_sec: float = MOVE_TIMEOUT_SEC, extract_color: bool = True):
        self.store = store
        self.provider = provider
        self.move_timeout_sec = move_timeout_sec
        self.extract_color = extract_color
        self.queue = ImportQueue()
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=2, thread_name_prefix="ImportMove")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def import_files(self, file_paths: List[str], on_progress: Optional[ProgressCallback] = None,
                     check_duplicates: bool = False) -> List[MediaFile]:
        """
        Import one batch. Blocks while another batch for this library runs.

        Args:
            file_paths: Absolute source paths
            on_progress: Called with an ImportProgress at every stage
            check_duplicates: Drop files whose name and size already exist

        Returns:
            The media files created, in batch order. Empty if every file was
            a duplicate or the batch failed outright.
        """
        with self.queue:
            try:
                return self._run_batch(list(file_paths), on_progress, check_duplicates)
            except Exception:
                logger.exception(f"Import batch failed for library {self.store.path}")
                return []

    def _run_batch(self, file_paths: List[str], on_progress: Optional[ProgressCallback],
                   check_duplicates: bool) -> List[MediaFile]:
        files = file_paths
        if check_duplicates:
            duplicates = self.store.check_duplicates(files, strict=True)
            if duplicates:
                duplicate_paths = {d["new_file"]["path"] for d in duplicates}
                files = [p for p in files if p not in duplicate_paths]
                logger.info(f"Skipping {len(duplicate_paths)} duplicate file(s)")
                if not files:
                    return []

        imported = []
        total = len(files)
        for index, src_path in enumerate(files):
            def report(stage, index=index, src_path=src_path):
                if on_progress is None:
                    return
                step, weight = stage
                progress = ImportProgress(
                    current=index + 1,
                    total=total,
                    file_name=os.path.basename(src_path),
                    step=step,
                    percentage=calculate_percentage(index, total, weight),
                )
                try:
                    on_progress(progress)
                except Exception as e:
                    logger.warning(f"Import progress callback failed: {e}")

            try:
                media = self._import_one(src_path, report)
            except ImportTimeoutError as e:
                logger.error(str(e))
                continue
            except Exception:
                logger.exception(f"Failed to import {src_path}")
                continue
            if media is not None:
                imported.append(media)

        logger.info(f"Imported {len(imported)}/{total} file(s) into {self.store.path}")
        return imported

    def _import_one(self, src_path: str, report: Callable) -> Optional[MediaFile]:
        report(STAGE_STARTING)
        storage = self.store.storage

        if not os.path.isfile(src_path):
            logger.warning(f"Skipping missing file: {src_path}")
            return None
        ext = Path(src_path).suffix.lower()
        if ext not in SUPPORTED_MEDIA_FORMATS:
            logger.warning(f"Skipping unsupported file type: {src_path}")
            return None

        stats = storage.stat(src_path)
        file_name = sanitize_filename(os.path.basename(src_path))

        media_id = self.store.allocate_media_id()
        unique_id = secrets.token_hex(UNIQUE_ID_BYTES)
        while storage.exists(f"{MEDIA_DIR}/{unique_id}"):
            unique_id = secrets.token_hex(UNIQUE_ID_BYTES)

        dest_dir = f"{MEDIA_DIR}/{unique_id}"
        dest_rel = f"{dest_dir}/{file_name}"
        storage.ensure_dir(dest_dir)

        report(STAGE_MOVING)
        self._move_with_timeout(src_path, dest_rel, dest_dir)
        dest_abs = storage.absolute_path(dest_rel)

        try:
            report(STAGE_METADATA)
            metadata = self.provider.extract_metadata(dest_abs) if self.provider else {}
        except Exception:
            self._restore(src_path, dest_rel, dest_dir)
            raise

        report(STAGE_THUMBNAIL)
        thumbnail_path = None
        dominant_color = None
        if self.provider:
            stem = os.path.splitext(file_name)[0]
            thumb_abs = storage.absolute_path(f"{dest_dir}/{stem}_thumbnail.png")
            try:
                thumbnail_path = self.provider.generate_thumbnail(dest_abs, thumb_abs)
            except Exception as e:
                logger.warning(f"Thumbnail generation failed for {file_name}: {e}")

            report(STAGE_COLOR)
            if thumbnail_path and self.extract_color:
                try:
                    dominant_color = self.provider.dominant_color(thumbnail_path)
                except Exception as e:
                    logger.warning(f"Dominant colour extraction failed for {file_name}: {e}")
        else:
            report(STAGE_COLOR)

        media = MediaFile(
            id=media_id,
            unique_id=unique_id,
            file_path=dest_abs,
            file_name=file_name,
            file_type=FileType.AUDIO.value if ext in SUPPORTED_AUDIO_FORMATS else FileType.VIDEO.value,
            file_size=stats.size,
            duration=metadata.get("duration") or None,
            width=metadata.get("width") or None,
            height=metadata.get("height") or None,
            created_date=stats.created_iso,
            modified_date=stats.modified_iso,
            created_at=utc_now_iso(),
            thumbnail_path=thumbnail_path,
            artist=metadata.get("artist"),
            description=metadata.get("description"),
            url=metadata.get("url"),
            dominant_color=dominant_color,
        )
        try:
            self.store.add_imported_media(media)
        except Exception:
            self._restore(src_path, dest_rel, dest_dir)
            raise

        report(STAGE_DONE)
        return media

    def _move_with_timeout(self, src_path: str, dest_rel: str, dest_dir: str) -> None:
        storage = self.store.storage
        future = self._executor.submit(storage.move_in, src_path, dest_rel)
        try:
            future.result(timeout=self.move_timeout_sec)
        except concurrent.futures.TimeoutError:
            future.cancel()
            self._cleanup(dest_dir)
            raise ImportTimeoutError(
                f"Moving {src_path} took longer than {self.move_timeout_sec}s, import aborted"
            )
        except Exception:
            self._cleanup(dest_dir)
            raise

    def _restore(self, src_path: str, dest_rel: str, dest_dir: str) -> None:
        """Put a moved file back where it came from after a failed import."""
        try:
            self.store.storage.move_out(dest_rel, src_path)
        except OSError as e:
            logger.error(f"Could not restore {src_path} from {dest_rel}: {e}")
            return
        self._cleanup(dest_dir)

    def _cleanup(self, dest_dir: str) -> None:
        try:
            self.store.storage.remove_tree(dest_dir)
        except OSError as e:
            logger.error(f"Failed to clean up {dest_dir}: {e}")
