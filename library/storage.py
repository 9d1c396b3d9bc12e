"""
Storage backends for a library root.

This module defines the interface the library engine uses for every disk
access (documents, media directories, file relocation), allowing the
engine to be exercised against the local filesystem or any other backend
that can provide the same operations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Any, List
import json
import logging
import os
import shutil
import tempfile

logger = logging.getLogger(__name__)


@dataclass
class FileStats:
    """Size and timestamps of a file outside or inside the library."""
    size: int
    created: datetime
    modified: datetime

    @property
    def created_iso(self) -> str:
        return self.created.isoformat()

    @property
    def modified_iso(self) -> str:
        return self.modified.isoformat()


class LibraryStorage(ABC):
    """
    Abstract base class for library storage backends.

    All paths passed to these methods are relative to the library root
    unless the parameter name says otherwise.
    """

    @abstractmethod
    def read_json(self, relative_path: str) -> Optional[Any]:
        """
        Read and parse a JSON document.

        Returns:
            Parsed document, or None if it doesn't exist

        Raises:
            ValueError: If the document exists but isn't valid JSON
        """
        pass

    @abstractmethod
    def write_json(self, relative_path: str, data: Any) -> None:
        """Serialise ``data`` to a JSON document, creating parent directories."""
        pass

    @abstractmethod
    def exists(self, relative_path: str) -> bool:
        pass

    @abstractmethod
    def rename(self, relative_path: str, new_relative_path: str) -> None:
        pass

    @abstractmethod
    def ensure_dir(self, relative_path: str) -> None:
        pass

    @abstractmethod
    def list_dirs(self, relative_path: str) -> List[str]:
        """Names of the immediate subdirectories, empty if the directory is missing."""
        pass

    @abstractmethod
    def remove_tree(self, relative_path: str) -> bool:
        pass

    @abstractmethod
    def move_in(self, source_absolute_path: str, relative_path: str) -> None:
        """Move an external file into the library, overwriting any existing file."""
        pass

    @abstractmethod
    def move_out(self, relative_path: str, dest_absolute_path: str) -> None:
        """Move a library file back out to an external location."""
        pass

    @abstractmethod
    def absolute_path(self, relative_path: str) -> str:
        pass

    @abstractmethod
    def stat(self, absolute_path: str) -> FileStats:
        """
        Raises:
            FileNotFoundError: If the file doesn't exist
        """
        pass


class LocalLibraryStorage(LibraryStorage):
    """
    Storage backend that uses the local filesystem.
    Documents are written to a temp file and renamed over the target.
    """

    def __init__(self, root: str):
        self.root = Path(root).expanduser().absolute()

    def _get_path(self, relative_path: str) -> Path:
        return self.root / relative_path

    def read_json(self, relative_path: str) -> Optional[Any]:
        path = self._get_path(relative_path)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        if not content.strip():
            return None
        return json.loads(content)

    def write_json(self, relative_path: str, data: Any) -> None:
        path = self._get_path(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def exists(self, relative_path: str) -> bool:
        return self._get_path(relative_path).exists()

    def rename(self, relative_path: str, new_relative_path: str) -> None:
        os.replace(self._get_path(relative_path), self._get_path(new_relative_path))

    def ensure_dir(self, relative_path: str) -> None:
        self._get_path(relative_path).mkdir(parents=True, exist_ok=True)

    def list_dirs(self, relative_path: str) -> List[str]:
        path = self._get_path(relative_path)
        if not path.is_dir():
            return []
        return sorted(p.name for p in path.iterdir() if p.is_dir())

    def remove_tree(self, relative_path: str) -> bool:
        path = self._get_path(relative_path)
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    def move_in(self, source_absolute_path: str, relative_path: str) -> None:
        dest_path = self._get_path(relative_path)

        # Skip if same file
        if Path(source_absolute_path).resolve() == dest_path.resolve():
            return

        dest_path.parent.mkdir(parents=True, exist_ok=True)
        if dest_path.exists():
            dest_path.unlink()
        shutil.move(str(source_absolute_path), str(dest_path))

    def move_out(self, relative_path: str, dest_absolute_path: str) -> None:
        Path(dest_absolute_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self._get_path(relative_path)), str(dest_absolute_path))

    def absolute_path(self, relative_path: str) -> str:
        return str(self._get_path(relative_path))

    def stat(self, absolute_path: str) -> FileStats:
        st = os.stat(absolute_path)
        created = getattr(st, "st_birthtime", None) or st.st_ctime
        return FileStats(
            size=st.st_size,
            created=datetime.fromtimestamp(created, tz=timezone.utc),
            modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )
