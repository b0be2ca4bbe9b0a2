"""
Swap persistence.

Swaps are kept as plain dicts keyed by order hash and written to a JSON file
on every change, so a restarted coordinator resumes every in-flight swap.
Finished swaps are moved to a separate archive file that is only written
when a swap is archived.
"""

import os
import json
import logging
import threading
from typing import Optional, Dict, Any, List

log = logging.getLogger(__name__)

DEFAULT_DB_PATH = "~/.crosslock/swaps.json"


def archive_path_for(path: str) -> str:
    root, ext = os.path.splitext(path)
    return f"{root}.archive{ext or '.json'}"


class SwapStore:
    """JSON file store. With no path it only keeps swaps in memory."""

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self.archive_path = archive_path_for(self.path) if self.path else None
        self._records: Dict[str, Dict[str, Any]] = {}
        self._archive: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        if self.path:
            self.load()

    @classmethod
    def from_env(cls) -> "SwapStore":
        return cls(os.environ.get("CROSSLOCK_DB", DEFAULT_DB_PATH))

    def load(self) -> int:
        """Load records from disk; returns how many live swaps were read."""
        with self._lock:
            if not self.path:
                return 0
            if os.path.exists(self.path):
                with open(self.path, "r") as f:
                    self._records = json.load(f)
            if os.path.exists(self.archive_path):
                with open(self.archive_path, "r") as f:
                    self._archive = json.load(f)
            log.info(f"Loaded {len(self._records)} swaps ({len(self._archive)} archived) from {self.path}")
            return len(self._records)

    def save(self, order_hash: str, record: Dict[str, Any]):
        # internal flags never reach disk
        entry = {k: v for k, v in record.items() if not k.startswith("_")}
        with self._lock:
            self._records[order_hash] = entry
            self._write(self.path, self._records)

    def get(self, order_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(order_hash)
            return dict(record) if record else None

    def find_by_hashlock(self, hashlock: str) -> Optional[Dict[str, Any]]:
        hashlock = hashlock.lower()
        with self._lock:
            for record in self._records.values():
                if str(record.get("hashlock", "")).lower() == hashlock:
                    return dict(record)
        return None

    def all(self) -> List[Dict[str, Any]]:
        """Live (not archived) swaps."""
        with self._lock:
            return [dict(r) for r in self._records.values()]

    def archive(self, order_hash: str) -> bool:
        """Move a swap from the live file to the archive."""
        with self._lock:
            record = self._records.pop(order_hash, None)
            if record is None:
                return False
            self._archive[order_hash] = record
            self._write(self.archive_path, self._archive)
            self._write(self.path, self._records)
            return True

    def get_archived(self, order_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._archive.get(order_hash)
            return dict(record) if record else None

    def archived_count(self) -> int:
        with self._lock:
            return len(self._archive)

    def _write(self, path: Optional[str], records: Dict[str, Dict[str, Any]]):
        if not path:
            return
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w") as f:
                json.dump(records, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            log.error(f"Failed to save swaps to {path}: {e}")
            raise
