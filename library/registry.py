"""
Registry of known libraries and their loaded stores.
"""

from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Dict, List, Optional, Callable, Any
import json
import logging
import threading

from common.constants import LIBRARIES_FILENAME, LIBRARY_DIR_SUFFIX, MEDIA_DIR, DEFAULT_CONFIG_DIR
from common.models import utc_now_iso
from library.store import LibraryStore

logger = logging.getLogger(__name__)


@dataclass
class LibraryInfo:
    name: str
    path: str
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LibraryInfo':
        return cls(
            name=data.get("name") or Path(data.get("path", "")).stem,
            path=data.get("path", ""),
            created_at=data.get("created_at") or data.get("createdAt") or utc_now_iso(),
        )


class LibraryRegistry:
    """
    Hands out one loaded LibraryStore per library root.

    Stores are created lazily on first request and keyed by the resolved
    absolute path, so two spellings of the same root share one store.
    Different roots are fully independent.
    """

    def __init__(self, config_dir: str = DEFAULT_CONFIG_DIR,
                 store_factory: Optional[Callable[[str], LibraryStore]] = None):
        self.config_dir = Path(config_dir).expanduser()
        self._libraries_file = self.config_dir / LIBRARIES_FILENAME
        self._store_factory = store_factory or LibraryStore
        self._stores: Dict[str, LibraryStore] = {}
        self._libraries: List[LibraryInfo] = []
        self._lock = threading.Lock()
        self._load_locks: Dict[str, threading.Lock] = {}
        self._load_libraries()

    @staticmethod
    def _key(library_path: str) -> str:
        return str(Path(library_path).expanduser().resolve())

    def get_store(self, library_path: str) -> LibraryStore:
        """
        Return the store for ``library_path``, loading it on first use.

        Loading holds only that root's lock, so other roots stay usable
        while a large library is read.

        Raises:
            MigrationError: If the library needs a legacy migration that fails
        """
        key = self._key(library_path)
        with self._lock:
            store = self._stores.get(key)
            if store is not None:
                return store
            key_lock = self._load_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                store = self._stores.get(key)
            if store is None:
                store = self._store_factory(key)
                store.load()
                with self._lock:
                    self._stores[key] = store
            return store

    def is_loaded(self, library_path: str) -> bool:
        return self._key(library_path) in self._stores

    def unload(self, library_path: str) -> bool:
        with self._lock:
            store = self._stores.pop(self._key(library_path), None)
        if store is None:
            return False
        store.close()
        return True

    def close(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.close()

    # Known libraries

    def list_libraries(self) -> List[LibraryInfo]:
        return list(self._libraries)

    def create_library(self, name: str, parent_dir: str) -> LibraryInfo:
        """
        Create ``<parent_dir>/<name>.library`` and register it.

        Raises:
            FileExistsError: If the directory already exists
        """
        library_path = Path(parent_dir).expanduser() / f"{name}{LIBRARY_DIR_SUFFIX}"
        if library_path.exists():
            raise FileExistsError(f"Library already exists: {library_path}")
        (library_path / MEDIA_DIR).mkdir(parents=True)
        info = self.register_library(str(library_path), name)
        logger.info(f"Created library {name} at {library_path}")
        return info

    def register_library(self, library_path: str, name: Optional[str] = None) -> LibraryInfo:
        key = self._key(library_path)
        with self._lock:
            existing = next((lib for lib in self._libraries if self._key(lib.path) == key), None)
            if existing:
                return existing
            info = LibraryInfo(name=name or Path(key).stem, path=key)
            self._libraries.append(info)
            self._save_libraries()
            return info

    def forget_library(self, library_path: str) -> bool:
        """Drop a library from the list. Files on disk are left alone."""
        key = self._key(library_path)
        with self._lock:
            before = len(self._libraries)
            self._libraries = [lib for lib in self._libraries if self._key(lib.path) != key]
            if len(self._libraries) == before:
                return False
            self._save_libraries()
        self.unload(library_path)
        return True

    def _load_libraries(self) -> None:
        if not self._libraries_file.exists():
            return
        try:
            with open(self._libraries_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            entries = data.get("libraries", []) if isinstance(data, dict) else data
            self._libraries = [LibraryInfo.from_dict(e) for e in entries if isinstance(e, dict)]
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self._libraries_file}: {e}")
            self._libraries = []

    def _save_libraries(self) -> None:
        try:
            self._libraries_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._libraries_file, 'w', encoding='utf-8') as f:
                json.dump({"libraries": [lib.to_dict() for lib in self._libraries]}, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save {self._libraries_file}: {e}")
