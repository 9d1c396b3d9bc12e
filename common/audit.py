"""
Append-only, size-capped audit log with JSON persistence.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Callable

from common.models import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Newest-first ring buffer of audit entries.

    Entries beyond ``max_entries`` are dropped oldest first. When
    ``retention_days`` is set, entries older than that are discarded on load.
    Every append is written through to ``path``.
    """

    def __init__(self, path: Path, max_entries: int, retention_days: Optional[int] = None,
                 enabled: Callable[[], bool] = lambda: True):
        self.path = Path(path)
        self.max_entries = max_entries
        self.retention_days = retention_days
        self._enabled = enabled
        self._entries: List[AuditLogEntry] = []
        self._lock = threading.Lock()

    def load(self) -> None:
        """Read entries from disk. A missing or corrupt file leaves the log empty."""
        entries = []
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                entries = [AuditLogEntry.from_dict(e) for e in raw if isinstance(e, dict)]
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Failed to load audit log {self.path}: {e}")
                entries = []

        if self.retention_days is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
            entries = [e for e in entries if _parse_ts(e.timestamp) > cutoff]

        with self._lock:
            self._entries = entries[:self.max_entries]

    def append(self, entry: AuditLogEntry) -> Optional[AuditLogEntry]:
        """Record one entry. Returns None when logging is disabled."""
        if not self._enabled():
            return None
        with self._lock:
            self._entries.insert(0, entry)
            if len(self._entries) > self.max_entries:
                del self._entries[self.max_entries:]
            self._save_locked()
        return entry

    def entries(self, limit: Optional[int] = None, user_id: Optional[str] = None) -> List[AuditLogEntry]:
        with self._lock:
            items = list(self._entries)
        if user_id is not None:
            items = [e for e in items if e.user_id == user_id]
        return items[:limit] if limit is not None else items

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._save_locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _save_locked(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = json.dumps([e.to_dict() for e in self._entries], indent=2, ensure_ascii=False)
            fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".audit-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, self.path)
        except OSError as e:
            logger.error(f"Failed to save audit log {self.path}: {e}")


def _parse_ts(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
