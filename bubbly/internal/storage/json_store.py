import copy
import json
import logging
import os
import tempfile
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

logger = logging.getLogger(__name__)

USERS = "users"
GROUPS = "groups"
HISTORY_DIR = "chat_history"

DEFAULT_MAX_CACHED_DOCUMENTS = 128


class JsonStore:
    """Whole-document JSON persistence under a single data directory.

    Each named document is one JSON array at ``<data_dir>/<name>.json``.
    Reads degrade to an empty list on any error; writes report success as a
    boolean and are never retried. The optional read cache is only replaced
    after a successful save and keeps at most ``max_cached_documents``
    documents, evicting the least recently used one first. A document lock
    exists only while some thread holds or waits for it.

    Attributes:
        data_dir (str): Root directory holding the documents.
        cache_enabled (bool): Whether loaded documents are kept in memory.
        max_cached_documents (int): Upper bound on cached documents.
    """

    def __init__(self, data_dir: str, cache_enabled: bool = True,
                 max_cached_documents: int = DEFAULT_MAX_CACHED_DOCUMENTS):
        self.data_dir = data_dir
        self.cache_enabled = cache_enabled
        self.max_cached_documents = max(1, max_cached_documents)
        self._cache: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        self._locks: Dict[str, threading.RLock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._locks_guard = threading.Lock()
        self._cache_guard = threading.Lock()

    def ensure_layout(self) -> None:
        """Create the data directory, the history directory and empty user and group documents."""
        os.makedirs(os.path.join(self.data_dir, HISTORY_DIR), exist_ok=True)
        for name in (USERS, GROUPS):
            if not os.path.exists(self.path_for(name)):
                self.save(name, [])

    def path_for(self, name: str) -> str:
        return os.path.join(self.data_dir, f"{name}.json")

    @contextmanager
    def locked(self, name: str) -> Iterator[None]:
        """Hold the document lock across a read-modify-write."""
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.RLock()
            self._lock_holders[name] = self._lock_holders.get(name, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                self._lock_holders[name] -= 1
                if not self._lock_holders[name]:
                    del self._lock_holders[name]
                    del self._locks[name]

    def cached_documents(self) -> List[str]:
        with self._cache_guard:
            return list(self._cache)

    def _cache_get(self, name: str):
        with self._cache_guard:
            records = self._cache.get(name)
            if records is not None:
                self._cache.move_to_end(name)
            return records

    def _cache_put(self, name: str, records: List[Dict[str, Any]]) -> None:
        with self._cache_guard:
            self._cache[name] = copy.deepcopy(records)
            self._cache.move_to_end(name)
            while len(self._cache) > self.max_cached_documents:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug(f"Evicted document '{evicted}' from the cache")

    def load(self, name: str) -> List[Dict[str, Any]]:
        with self.locked(name):
            if self.cache_enabled:
                cached = self._cache_get(name)
                if cached is not None:
                    return copy.deepcopy(cached)

            path = self.path_for(name)
            if not os.path.exists(path):
                return []
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    records = json.load(f)
            except (OSError, ValueError) as e:
                logger.error(f"Error loading document '{name}' from {path}: {e}")
                return []
            if not isinstance(records, list):
                logger.error(f"Document '{name}' at {path} is not a JSON array, ignoring it")
                return []

            if self.cache_enabled:
                self._cache_put(name, records)
            return records

    def save(self, name: str, records: List[Dict[str, Any]]) -> bool:
        with self.locked(name):
            path = self.path_for(name)
            try:
                self._write_atomically(path, records)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Error saving document '{name}' to {path}: {e}")
                return False

            if self.cache_enabled:
                self._cache_put(name, records)
            return True

    def invalidate(self, name: str) -> None:
        with self.locked(name):
            with self._cache_guard:
                self._cache.pop(name, None)

    def _write_atomically(self, path: str, records: List[Dict[str, Any]]) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        data = json.dumps(records, indent=2)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.tmp-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
