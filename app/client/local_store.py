"""
Local persistence for the client sync engine.

`LocalStore` is a tiny key-value surface over named slots. The sync engine only
talks to it through `WorkspaceRepository`, so it never depends on a concrete
storage backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional
import copy
import json
import logging
import os
import tempfile
import threading
import uuid

logger = logging.getLogger(__name__)

# Slot names
TABLES = "tables"
SETTINGS = "settings"
TASK_GROUPS = "task_groups"
NOTEBOOKS = "notebooks"
DIARIES = "diaries"
ARCHIVED_TABLES = "archived_tables"
SYNC_VERSION = "sync_version"
SYNC_DIRTY = "sync_dirty"
SYNC_CLIENT_ID = "sync_client_id"
SHARING_PRIVATE_KEY = "sharing_private_key"
SHARING_PUBLIC_KEY = "sharing_public_key"

# Snapshot key -> slot
SNAPSHOT_SLOTS = {
    "tables": TABLES,
    "settings": SETTINGS,
    "taskGroups": TASK_GROUPS,
    "notebooks": NOTEBOOKS,
    "diaries": DIARIES,
    "archivedTables": ARCHIVED_TABLES,
}


def empty_notebooks() -> Dict[str, Any]:
    return {"workspace": "", "tasks": {}}


class LocalStore(ABC):
    """Durable get/set/remove on named slots, plus an atomic multi-slot update."""

    @abstractmethod
    def get(self, slot: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, slot: str, value: Any) -> None:
        ...

    @abstractmethod
    def remove(self, slot: str) -> None:
        ...

    @abstractmethod
    def update(self, values: Dict[str, Any], remove: Iterable[str] = ()) -> None:
        """Write several slots (and drop others) as one unit."""

    def has(self, slot: str) -> bool:
        return self.get(slot) is not None


class MemoryLocalStore(LocalStore):
    """In-process store; values are deep-copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})
        self._lock = threading.Lock()

    def get(self, slot, default=None):
        with self._lock:
            if slot not in self._data:
                return default
            return copy.deepcopy(self._data[slot])

    def set(self, slot, value):
        self.update({slot: value})

    def remove(self, slot):
        self.update({}, remove=[slot])

    def update(self, values, remove=()):
        with self._lock:
            staged = dict(self._data)
            for slot in remove:
                staged.pop(slot, None)
            for slot, value in values.items():
                staged[slot] = copy.deepcopy(value)
            self._data = staged

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)


class JsonFileLocalStore(LocalStore):
    """
    All slots in one JSON document on disk.

    Every write replaces the whole file through a temp file and os.replace, so a
    crash leaves either the old or the new document, never a mix.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            logger.info("Local store %s not found, starting empty", self.path)
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Local store {self.path} is not a JSON object")
        return data

    def _flush(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".local-store-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, slot, default=None):
        with self._lock:
            if slot not in self._data:
                return default
            return copy.deepcopy(self._data[slot])

    def set(self, slot, value):
        self.update({slot: value})

    def remove(self, slot):
        self.update({}, remove=[slot])

    def update(self, values, remove=()):
        with self._lock:
            staged = dict(self._data)
            for slot in remove:
                staged.pop(slot, None)
            for slot, value in values.items():
                staged[slot] = copy.deepcopy(value)
            self._flush(staged)
            self._data = staged


class WorkspaceRepository:
    """Typed access to the workspace snapshot and sync bookkeeping in a LocalStore."""

    def __init__(self, store: LocalStore):
        self.store = store

    def load_snapshot(self) -> Optional[Dict[str, Any]]:
        """Current local workspace, or None when no tables were ever written."""
        tables = self.store.get(TABLES)
        if tables is None:
            return None
        return {
            "tables": tables,
            "settings": self.store.get(SETTINGS) or {},
            "taskGroups": self.store.get(TASK_GROUPS) or [],
            "notebooks": self.store.get(NOTEBOOKS) or empty_notebooks(),
            "diaries": self.store.get(DIARIES) or {},
            "archivedTables": self.store.get(ARCHIVED_TABLES) or [],
        }

    def save_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Write whatever snapshot keys are present; used by the UI layer."""
        self.store.update({
            SNAPSHOT_SLOTS[key]: value for key, value in snapshot.items() if key in SNAPSHOT_SLOTS
        })

    def commit(
        self,
        values: Dict[str, Any],
        version: Optional[int] = None,
        dirty: Optional[bool] = None,
        remove: Iterable[str] = ()
    ) -> None:
        """Write slots together with the synced version and dirty flag in one update."""
        values = dict(values)
        if version is not None:
            values[SYNC_VERSION] = version
        if dirty is not None:
            values[SYNC_DIRTY] = dirty
        self.store.update(values, remove=remove)

    @property
    def tables(self) -> list:
        return self.store.get(TABLES) or []

    @property
    def settings(self) -> Dict[str, Any]:
        return self.store.get(SETTINGS) or {}

    @property
    def task_groups(self) -> list:
        return self.store.get(TASK_GROUPS) or []

    @property
    def version(self) -> int:
        return int(self.store.get(SYNC_VERSION, 0) or 0)

    @version.setter
    def version(self, value: int) -> None:
        self.store.set(SYNC_VERSION, int(value))

    @property
    def dirty(self) -> bool:
        return bool(self.store.get(SYNC_DIRTY, False))

    @dirty.setter
    def dirty(self, value: bool) -> None:
        self.store.set(SYNC_DIRTY, bool(value))

    def client_id(self) -> str:
        """Stable per-installation id, created on first use."""
        client_id = self.store.get(SYNC_CLIENT_ID)
        if not client_id:
            client_id = str(uuid.uuid4())
            self.store.set(SYNC_CLIENT_ID, client_id)
        return client_id

    def sharing_key_pair(self) -> Optional[Dict[str, str]]:
        private_key = self.store.get(SHARING_PRIVATE_KEY)
        public_key = self.store.get(SHARING_PUBLIC_KEY)
        if not private_key or not public_key:
            return None
        return {"private_key": private_key, "public_key": public_key}

    def save_sharing_key_pair(self, private_key: str, public_key: str) -> None:
        self.store.update({SHARING_PRIVATE_KEY: private_key, SHARING_PUBLIC_KEY: public_key})
